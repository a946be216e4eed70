"""Data models shared by the turn orchestration engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Button = Literal["A", "B", "L", "R", "START", "SELECT", "UP", "DOWN", "LEFT", "RIGHT"]
TurnVerdict = Literal["SUCCESS", "FAILED", "UNKNOWN"]
NoteStatus = Literal["UNVERIFIED", "VERIFIED", "CONTRADICTED"]
StuckKind = Literal["likely_stuck", "repetition"]

VALID_BUTTONS: tuple[Button, ...] = (
    "A",
    "B",
    "L",
    "R",
    "START",
    "SELECT",
    "UP",
    "DOWN",
    "LEFT",
    "RIGHT",
)
DIRECTIONAL_BUTTONS: frozenset[str] = frozenset({"UP", "DOWN", "LEFT", "RIGHT"})
VALID_NOTE_STATUSES: set[NoteStatus] = {"UNVERIFIED", "VERIFIED", "CONTRADICTED"}


def is_directional(button: str) -> bool:
    return button in DIRECTIONAL_BUTTONS


@dataclass(slots=True, frozen=True)
class Position:
    """Player location as reported by the ground-truth snapshot."""

    x: int
    y: int
    map_group: int | None = None
    map_num: int | None = None

    def describe(self) -> str:
        if self.map_group is None or self.map_num is None:
            return f"({self.x}, {self.y})"
        return f"({self.x}, {self.y}) on map {self.map_group}.{self.map_num}"


@dataclass(slots=True)
class LogicalInput:
    """One button decision parsed from a reply."""

    button: Button
    repeat_count: int = 1

    def label(self) -> str:
        if self.repeat_count > 1:
            return f"{self.button} x{self.repeat_count}"
        return self.button


@dataclass(slots=True)
class PendingInput:
    """Queue entry awaiting delivery to the input sink."""

    key: Button
    remaining_taps: int
    is_directional: bool
    original_count: int

    @property
    def is_hold(self) -> bool:
        return self.is_directional and self.original_count > 1


@dataclass(slots=True)
class TurnRecord:
    """Verified outcome of the inputs issued in one turn."""

    turn_number: int
    timestamp: str
    inputs: list[str]
    position_before: Position | None
    position_after: Position | None
    position_changed: bool
    result: TurnVerdict
    reason: str

    @property
    def buttons(self) -> list[str]:
        return [entry.split()[0] for entry in self.inputs if entry.strip()]


@dataclass(slots=True)
class StuckSignal:
    """Structured warning surfaced to prompt assembly."""

    kind: StuckKind
    detail: str
    button: str | None = None


@dataclass(slots=True)
class Note:
    """Long-term memory slot written by the reasoning service."""

    id: int
    timestamp: str
    content: str
    verification_status: NoteStatus = "UNVERIFIED"
    written_this_turn: bool = False
    origin_position: Position | None = None


@dataclass(slots=True)
class SessionState:
    """Everything persisted between runs."""

    model: str | None = None
    feature_toggles: dict[str, bool] = field(default_factory=dict)
    conversation_history: list[dict[str, str]] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    next_note_id: int = 1
