"""Turn-by-turn verification of issued inputs against ground truth."""

from __future__ import annotations

import logging
from collections import Counter, deque
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from turnpilot.agent.models import (
    DIRECTIONAL_BUTTONS,
    Position,
    StuckSignal,
    TurnRecord,
    TurnVerdict,
)

LOGGER = logging.getLogger(__name__)

PositionOracle = Callable[[], Position | None]

SUMMARY_WINDOW = 5
STUCK_FAILURES = 3
REPETITION_MIN_TURNS = 3
REPETITION_THRESHOLD = 4


def compute_verdict(
    inputs: Sequence[str],
    before: Position | None,
    after: Position | None,
) -> tuple[TurnVerdict, bool, str]:
    """Return (verdict, position_changed, reason) for one turn."""
    buttons = {entry.split()[0] for entry in inputs if entry.strip()}
    directional = sorted(buttons & DIRECTIONAL_BUTTONS)
    changed = before is not None and after is not None and before != after

    if not directional:
        return (
            "UNKNOWN",
            changed,
            "Non-directional inputs only; outcome cannot be verified automatically.",
        )
    if before is None or after is None:
        return "UNKNOWN", False, "Position was not observable before and after the turn."
    if changed:
        return (
            "SUCCESS",
            True,
            (
                f"{'/'.join(directional)} moved the player from {before.describe()}"
                f" to {after.describe()}."
            ),
        )
    return (
        "FAILED",
        False,
        f"{'/'.join(directional)} pressed but the player stayed at {after.describe()}.",
    )


class TurnLedger:
    """Bounded history of verified turns plus stuck-pattern detection."""

    def __init__(self, oracle: PositionOracle, *, capacity: int = 20) -> None:
        self.oracle = oracle
        self.capacity = max(SUMMARY_WINDOW, capacity)
        self._records: deque[TurnRecord] = deque(maxlen=self.capacity)
        self._position_before: Position | None = None
        self._pending_turn: int | None = None
        self._turn_number = 0

    @property
    def records(self) -> list[TurnRecord]:
        return list(self._records)

    @property
    def last_record(self) -> TurnRecord | None:
        return self._records[-1] if self._records else None

    def recent(self, count: int = SUMMARY_WINDOW) -> list[TurnRecord]:
        return list(self._records)[-count:]

    @property
    def position_before(self) -> Position | None:
        return self._position_before

    def begin_turn(self, turn_number: int | None = None) -> Position | None:
        """Snapshot the position the coming inputs start from.

        ``turn_number`` labels the record these inputs will produce; by
        default records are numbered consecutively.
        """
        self._position_before = self.oracle()
        self._pending_turn = turn_number
        return self._position_before

    def complete_turn(self, inputs: Sequence[str], position_after: Position | None) -> TurnRecord:
        if self._pending_turn is not None:
            self._turn_number = self._pending_turn
        else:
            self._turn_number += 1
        verdict, changed, reason = compute_verdict(inputs, self._position_before, position_after)
        record = TurnRecord(
            turn_number=self._turn_number,
            timestamp=datetime.now(timezone.utc).isoformat(),
            inputs=list(inputs),
            position_before=self._position_before,
            position_after=position_after,
            position_changed=changed,
            result=verdict,
            reason=reason,
        )
        self._records.append(record)
        self._position_before = None
        self._pending_turn = None
        LOGGER.info(
            "turn_verified",
            extra={"turn": record.turn_number, "result": verdict, "inputs": record.inputs},
        )
        return record

    def reset(self) -> None:
        self._position_before = None
        self._pending_turn = None

    def stuck_signal(self) -> StuckSignal | None:
        window = self.recent(SUMMARY_WINDOW)
        failures = sum(1 for record in window if record.result == "FAILED")
        if failures >= STUCK_FAILURES:
            return StuckSignal(
                kind="likely_stuck",
                detail=(
                    f"{failures} of the last {len(window)} turns failed to move the player;"
                    " try a different direction or interact with what is blocking the way."
                ),
            )
        return None

    def repetition_signal(self) -> StuckSignal | None:
        window = self.recent(SUMMARY_WINDOW)
        if len(window) < REPETITION_MIN_TURNS:
            return None
        turns_with: Counter[str] = Counter()
        for record in window:
            for button in set(record.buttons) & DIRECTIONAL_BUTTONS:
                turns_with[button] += 1
        for button, turns in turns_with.most_common():
            if turns >= REPETITION_THRESHOLD:
                return StuckSignal(
                    kind="repetition",
                    button=button,
                    detail=(
                        f"{button} was pressed in {turns} of the last {len(window)} turns;"
                        " repeating it again is unlikely to help."
                    ),
                )
        return None

    def signals(self) -> list[StuckSignal]:
        return [signal for signal in (self.stuck_signal(), self.repetition_signal()) if signal]

    def summary(self) -> dict[str, int]:
        window = self.recent(SUMMARY_WINDOW)
        counts = Counter(record.result for record in window)
        return {
            "turns": len(window),
            "success": counts.get("SUCCESS", 0),
            "failed": counts.get("FAILED", 0),
            "unknown": counts.get("UNKNOWN", 0),
        }
