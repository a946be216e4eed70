"""Serialized button delivery with tap and directional-hold timing."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from turnpilot.agent.models import Button, LogicalInput, PendingInput, is_directional
from turnpilot.agent.scheduling import Cancellable, Scheduler

LOGGER = logging.getLogger(__name__)


class InputSink(Protocol):
    def press(self, button: Button) -> None: ...

    def release(self, button: Button) -> None: ...


@dataclass(slots=True, frozen=True)
class Idle:
    pass


@dataclass(slots=True, frozen=True)
class Holding:
    key: Button
    release_at: float


@dataclass(slots=True, frozen=True)
class Settling:
    """Key released; waiting out the gap before the next press."""

    resume_at: float


PacingState = Idle | Holding | Settling


class InputPacingQueue:
    """Delivers one key at a time; the queue alone decides release timing."""

    def __init__(
        self,
        sink: InputSink,
        *,
        scheduler: Scheduler,
        hold_duration: float = 0.25,
        tap_duration: float = 0.1,
        release_gap: float = 0.05,
        max_repeat: int = 10,
        on_idle: Callable[[], None] | None = None,
    ) -> None:
        self.sink = sink
        self.scheduler = scheduler
        self.hold_duration = hold_duration
        self.tap_duration = tap_duration
        self.release_gap = release_gap
        self.max_repeat = max(1, max_repeat)
        self.on_idle = on_idle
        self.state: PacingState = Idle()
        self._queue: deque[PendingInput] = deque()
        self._timer: Cancellable | None = None

    @property
    def busy(self) -> bool:
        return not isinstance(self.state, Idle) or bool(self._queue)

    @property
    def pending(self) -> list[PendingInput]:
        return list(self._queue)

    def enqueue(self, inputs: Sequence[LogicalInput]) -> None:
        """Replace whatever is still queued with this turn's inputs."""
        if self._queue:
            LOGGER.info("stale_inputs_discarded", extra={"discarded": len(self._queue)})
            self._queue.clear()
        for logical in inputs:
            self._queue.append(self._expand(logical))
        if isinstance(self.state, Idle):
            self._drain()

    def clear(self) -> None:
        """Drop queued inputs and release any held key right away."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue.clear()
        if isinstance(self.state, Holding):
            self.sink.release(self.state.key)
            LOGGER.debug("input_released_on_clear", extra={"button": self.state.key})
        self.state = Idle()

    def _expand(self, logical: LogicalInput) -> PendingInput:
        count = min(max(1, logical.repeat_count), self.max_repeat)
        directional = is_directional(logical.button)
        if directional and count > 1:
            return PendingInput(
                key=logical.button,
                remaining_taps=1,
                is_directional=True,
                original_count=count,
            )
        return PendingInput(
            key=logical.button,
            remaining_taps=count,
            is_directional=directional,
            original_count=count,
        )

    def _drain(self) -> None:
        if not isinstance(self.state, Idle):
            return
        if not self._queue:
            if self.on_idle is not None:
                self.on_idle()
            return

        entry = self._queue[0]
        entry.remaining_taps -= 1
        if entry.remaining_taps <= 0:
            self._queue.popleft()

        delay = self.hold_duration * entry.original_count if entry.is_hold else self.tap_duration
        self.sink.press(entry.key)
        self.state = Holding(key=entry.key, release_at=self.scheduler.time() + delay)
        self._timer = self.scheduler.call_later(delay, self._release)
        LOGGER.debug(
            "input_pressed",
            extra={"button": entry.key, "hold_seconds": delay, "queued": len(self._queue)},
        )

    def _release(self) -> None:
        self._timer = None
        if not isinstance(self.state, Holding):
            return
        self.sink.release(self.state.key)
        if self.release_gap > 0:
            self.state = Settling(resume_at=self.scheduler.time() + self.release_gap)
            self._timer = self.scheduler.call_later(self.release_gap, self._settle)
            return
        self.state = Idle()
        self._drain()

    def _settle(self) -> None:
        self._timer = None
        self.state = Idle()
        self._drain()
