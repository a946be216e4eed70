from __future__ import annotations

import pytest
from fakes import FakeClient, error_exchange, text_exchange

from turnpilot.llm.client import (
    FatalFailure,
    HttpExchange,
    RecoverableFailure,
    RequestSuccess,
    TransportError,
)
from turnpilot.llm.lifecycle import RequestLifecycle


def _lifecycle(client, scheduler, runner, **kwargs) -> RequestLifecycle:
    kwargs.setdefault("timeout", 30.0)
    kwargs.setdefault("base_backoff", 2.0)
    kwargs.setdefault("backoff_ceiling", 30.0)
    return RequestLifecycle(client, scheduler=scheduler, runner=runner, **kwargs)


def test_success_is_delivered(scheduler, runner) -> None:
    lifecycle = _lifecycle(FakeClient([text_exchange("BUTTONS: A")]), scheduler, runner)
    outcomes = []

    assert lifecycle.send({"messages": []}, outcomes.append) is True
    assert lifecycle.in_flight is True
    runner.run_next()

    assert outcomes == [RequestSuccess(text="BUTTONS: A")]
    assert lifecycle.in_flight is False
    assert scheduler.pending() == []


def test_second_send_while_in_flight_is_rejected(scheduler, runner) -> None:
    client = FakeClient([text_exchange("BUTTONS: A")])
    lifecycle = _lifecycle(client, scheduler, runner)
    outcomes = []

    assert lifecycle.send({"n": 1}, outcomes.append) is True
    assert lifecycle.send({"n": 2}, outcomes.append) is False

    assert len(runner.submitted) == 1
    runner.run_next()
    assert client.payloads == [{"n": 1}]
    assert len(outcomes) == 1


def test_timeout_is_recoverable_and_late_reply_ignored(scheduler, runner) -> None:
    lifecycle = _lifecycle(FakeClient([text_exchange("late")]), scheduler, runner, timeout=5.0)
    outcomes = []
    lifecycle.send({}, outcomes.append)

    scheduler.advance(5.0)

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], RecoverableFailure)
    assert outcomes[0].kind == "timeout"
    assert lifecycle.in_flight is False

    runner.run_next()

    assert len(outcomes) == 1
    assert lifecycle.consecutive_errors == 1


def test_backoff_doubles_and_caps(scheduler, runner) -> None:
    failures = [TransportError("reset") for _ in range(4)]
    lifecycle = _lifecycle(
        FakeClient(failures),
        scheduler,
        runner,
        base_backoff=2.0,
        backoff_ceiling=5.0,
        fatal_error_threshold=10,
    )

    assert lifecycle.next_delay(2.0) == 2.0
    lifecycle.send({}, lambda _outcome: None)
    runner.run_next()
    assert lifecycle.backoff_multiplier == 2
    assert lifecycle.next_delay(2.0) == pytest.approx(6.0)

    lifecycle.send({}, lambda _outcome: None)
    runner.run_next()
    assert lifecycle.backoff_multiplier == 4
    assert lifecycle.next_delay(2.0) == pytest.approx(7.0)


def test_success_resets_error_count_and_multiplier(scheduler, runner) -> None:
    client = FakeClient([TransportError("reset"), text_exchange("BUTTONS: B")])
    lifecycle = _lifecycle(client, scheduler, runner)

    lifecycle.send({}, lambda _outcome: None)
    runner.run_next()
    assert lifecycle.consecutive_errors == 1

    lifecycle.send({}, lambda _outcome: None)
    runner.run_next()
    assert lifecycle.consecutive_errors == 0
    assert lifecycle.backoff_multiplier == 1
    assert lifecycle.backoff_delay() == 0.0


def test_three_consecutive_failures_escalate_to_fatal(scheduler, runner) -> None:
    client = FakeClient([TransportError("reset") for _ in range(3)])
    lifecycle = _lifecycle(client, scheduler, runner, fatal_error_threshold=3)
    outcomes = []

    for _ in range(3):
        lifecycle.send({}, outcomes.append)
        runner.run_next()

    assert [type(outcome) for outcome in outcomes] == [
        RecoverableFailure,
        RecoverableFailure,
        FatalFailure,
    ]
    assert outcomes[-1].code == "repeated_failures"
    assert "reset" in outcomes[-1].detail


def test_auth_error_is_fatal_on_first_attempt(scheduler, runner) -> None:
    client = FakeClient([error_exchange("authentication_error", "invalid x-api-key", status=401)])
    lifecycle = _lifecycle(client, scheduler, runner)
    outcomes = []

    lifecycle.send({}, outcomes.append)
    runner.run_next()

    assert isinstance(outcomes[0], FatalFailure)
    assert outcomes[0].code == "auth"
    assert lifecycle.consecutive_errors == 0


def test_cancel_drops_reply_and_allows_new_send(scheduler, runner) -> None:
    client = FakeClient([text_exchange("first"), HttpExchange(status=200, body=b"oops")])
    lifecycle = _lifecycle(client, scheduler, runner)
    outcomes = []

    lifecycle.send({}, outcomes.append)
    lifecycle.cancel()
    assert lifecycle.in_flight is False
    assert scheduler.pending() == []

    runner.run_next()
    assert outcomes == []

    assert lifecycle.send({}, outcomes.append) is True
    runner.run_next()
    assert isinstance(outcomes[0], RecoverableFailure)
    assert outcomes[0].kind == "parse_error"


def test_unexpected_worker_error_is_recoverable_transport(scheduler, runner) -> None:
    lifecycle = _lifecycle(FakeClient([KeyError("content")]), scheduler, runner)
    outcomes = []
    lifecycle.send({}, outcomes.append)

    runner.run_next()

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], RecoverableFailure)
    assert outcomes[0].kind == "transport"
    assert "KeyError" in outcomes[0].detail
    assert lifecycle.in_flight is False
    assert lifecycle.consecutive_errors == 1
    assert scheduler.pending() == []
