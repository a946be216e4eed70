"""Single-flight request ownership with timeout and backoff policy."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from turnpilot.agent.scheduling import BlockingCallRunner, Cancellable, Scheduler
from turnpilot.llm.client import (
    FatalFailure,
    HttpExchange,
    RecoverableFailure,
    RequestOutcome,
    RequestSuccess,
    TransportError,
    classify_exchange,
    classify_transport_error,
)

LOGGER = logging.getLogger(__name__)

OutcomeCallback = Callable[[RequestOutcome], None]


class Transport(Protocol):
    def post(self, payload: dict[str, object]) -> HttpExchange: ...


@dataclass(slots=True)
class RequestContext:
    """State of the one live exchange."""

    in_flight: bool = False
    timeout_handle: Cancellable | None = None
    consecutive_errors: int = 0
    backoff_multiplier: int = 1
    epoch: int = 0
    on_outcome: OutcomeCallback | None = None
    started_at: float = 0.0


class RequestLifecycle:
    """Owns at most one outstanding exchange with the reasoning service."""

    def __init__(
        self,
        client: Transport,
        *,
        scheduler: Scheduler,
        runner: BlockingCallRunner,
        timeout: float = 30.0,
        base_backoff: float = 2.0,
        backoff_ceiling: float = 30.0,
        max_backoff_multiplier: int = 16,
        fatal_error_threshold: int = 3,
    ) -> None:
        self.client = client
        self.scheduler = scheduler
        self.runner = runner
        self.timeout = timeout
        self.base_backoff = base_backoff
        self.backoff_ceiling = backoff_ceiling
        self.max_backoff_multiplier = max(1, max_backoff_multiplier)
        self.fatal_error_threshold = max(1, fatal_error_threshold)
        self.context = RequestContext()

    @property
    def in_flight(self) -> bool:
        return self.context.in_flight

    @property
    def consecutive_errors(self) -> int:
        return self.context.consecutive_errors

    @property
    def backoff_multiplier(self) -> int:
        return self.context.backoff_multiplier

    def backoff_delay(self) -> float:
        if self.context.consecutive_errors == 0:
            return 0.0
        return min(self.base_backoff * self.context.backoff_multiplier, self.backoff_ceiling)

    def next_delay(self, base_cadence: float) -> float:
        return base_cadence + self.backoff_delay()

    def send(self, payload: dict[str, object], on_outcome: OutcomeCallback) -> bool:
        """Dispatch ``payload``; returns False if an exchange is already out."""
        if self.context.in_flight:
            LOGGER.warning("request_rejected_in_flight", extra={"epoch": self.context.epoch})
            return False

        self.context.epoch += 1
        epoch = self.context.epoch
        self.context.in_flight = True
        self.context.on_outcome = on_outcome
        self.context.started_at = self.scheduler.time()
        self.context.timeout_handle = self.scheduler.call_later(
            self.timeout, self._on_timeout, epoch
        )
        LOGGER.info("request_dispatched", extra={"epoch": epoch})
        self.runner.submit(
            lambda: self.client.post(payload),
            lambda future: self._on_done(epoch, future),
        )
        return True

    def cancel(self) -> None:
        """Forget the live exchange; a late reply is ignored."""
        if self.context.timeout_handle is not None:
            self.context.timeout_handle.cancel()
        if self.context.in_flight:
            LOGGER.info("request_cancelled", extra={"epoch": self.context.epoch})
        self.context.epoch += 1
        self.context.in_flight = False
        self.context.timeout_handle = None
        self.context.on_outcome = None

    def reset(self) -> None:
        self.cancel()
        self.context.consecutive_errors = 0
        self.context.backoff_multiplier = 1

    def _on_timeout(self, epoch: int) -> None:
        if epoch != self.context.epoch or not self.context.in_flight:
            return
        self.context.timeout_handle = None
        LOGGER.warning("request_timed_out", extra={"epoch": epoch, "timeout_seconds": self.timeout})
        self._finish(
            RecoverableFailure(
                detail=f"Model request timed out after {self.timeout:.1f}s",
                kind="timeout",
            )
        )

    def _on_done(self, epoch: int, future: Any) -> None:
        if epoch != self.context.epoch or not self.context.in_flight:
            LOGGER.info("late_response_ignored", extra={"epoch": epoch})
            return
        try:
            exchange = future.result()
        except TransportError as exc:
            outcome = classify_transport_error(exc)
        except Exception as exc:
            LOGGER.warning(
                "request_worker_failed",
                extra={"epoch": epoch, "error": f"{type(exc).__name__}: {exc}"},
            )
            outcome = RecoverableFailure(
                detail=f"Model request failed: {type(exc).__name__}: {exc}",
                kind="transport",
            )
        else:
            outcome = classify_exchange(exchange)
        if self.context.timeout_handle is not None:
            self.context.timeout_handle.cancel()
            self.context.timeout_handle = None
        self._finish(outcome)

    def _finish(self, outcome: RequestOutcome) -> None:
        callback = self.context.on_outcome
        self.context.in_flight = False
        self.context.on_outcome = None
        outcome = self._apply_policy(outcome)
        if callback is not None:
            callback(outcome)

    def _apply_policy(self, outcome: RequestOutcome) -> RequestOutcome:
        if isinstance(outcome, RequestSuccess):
            if self.context.consecutive_errors:
                LOGGER.info(
                    "request_recovered",
                    extra={"after_errors": self.context.consecutive_errors},
                )
            self.context.consecutive_errors = 0
            self.context.backoff_multiplier = 1
            return outcome

        if isinstance(outcome, FatalFailure):
            LOGGER.error("request_fatal", extra={"code": outcome.code, "detail": outcome.detail})
            return outcome

        self.context.consecutive_errors += 1
        self.context.backoff_multiplier = min(
            self.context.backoff_multiplier * 2,
            self.max_backoff_multiplier,
        )
        LOGGER.warning(
            "request_recoverable_failure",
            extra={
                "kind": outcome.kind,
                "detail": outcome.detail,
                "consecutive_errors": self.context.consecutive_errors,
                "backoff_multiplier": self.context.backoff_multiplier,
            },
        )
        if self.context.consecutive_errors >= self.fatal_error_threshold:
            escalated = FatalFailure(
                detail=(
                    f"{self.context.consecutive_errors} consecutive failures;"
                    f" last error: {outcome.detail}"
                ),
                code="repeated_failures",
            )
            LOGGER.error(
                "request_fatal",
                extra={"code": escalated.code, "detail": escalated.detail},
            )
            return escalated
        return outcome
