"""Bounded note memory with prediction and ground-truth checks."""

from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from turnpilot.agent.models import Note, NoteStatus, Position, TurnRecord

LOGGER = logging.getLogger(__name__)

PREDICTION_TAG = "[UNVERIFIED PREDICTION]"

_SUCCESS_CLAIMS = (
    r"\bworked\b",
    r"\bworks\b",
    r"\bsucceeded\b",
    r"\bsuccess(?:ful(?:ly)?)?\b",
    r"\bopened\b",
    r"\bmoved\b",
    r"\bentered\b",
    r"\barrived\b",
    r"\breached\b",
    r"\bprogressed\b",
    r"\badvanced\b",
)
_FAILURE_CLAIMS = (
    r"\bdid(?:n'?t| not) work\b",
    r"\bdoes(?:n'?t| not) work\b",
    r"\bnot working\b",
    r"\bno change\b",
    r"\bnothing happened\b",
    r"\bfailed\b",
    r"\bblocked\b",
    r"\bstuck\b",
    r"\bcan'?t\b",
    r"\bcannot\b",
    r"\bdid(?:n'?t| not) move\b",
    r"\bwall\b",
)
_MOVEMENT_CLAIMS = (
    r"\bmoved\b",
    r"\bwent\b",
    r"\bwalked\b",
    r"\bentered\b",
    r"\barrived\b",
    r"\breached\b",
    r"\bexited\b",
    r"\bleft the\b",
    r"\bmade it\b",
    r"\bnow (?:in|at|on|outside|inside)\b",
)
_LOCATION_KEYWORDS = (
    "house",
    "room",
    "town",
    "city",
    "route",
    "door",
    "building",
    "outside",
    "inside",
    "upstairs",
    "downstairs",
    "floor",
    "lab",
    "gym",
    "center",
    "centre",
    "mart",
    "cave",
    "forest",
    "exit",
    "entrance",
    "stairs",
)

_SUCCESS_RE = re.compile("|".join(_SUCCESS_CLAIMS), re.IGNORECASE)
_FAILURE_RE = re.compile("|".join(_FAILURE_CLAIMS), re.IGNORECASE)
_MOVEMENT_RE = re.compile("|".join(_MOVEMENT_CLAIMS), re.IGNORECASE)
_LOCATION_RE = re.compile(r"\b(?:" + "|".join(_LOCATION_KEYWORDS) + r")s?\b", re.IGNORECASE)


def mentions_button(text: str, button: str) -> bool:
    """Return whether ``text`` refers to ``button``.

    Single-letter buttons only count when written in capitals or next to
    a press verb or the word "button", so the article "a" is ignored.
    """
    if len(button) > 1:
        return re.search(rf"\b{re.escape(button)}\b", text, re.IGNORECASE) is not None
    for match in re.finditer(rf"(?<![\w'])({re.escape(button)})(?![\w'])", text):
        if not _reads_as_article(text, match.start(), match.end()):
            return True
    contextual = (
        rf"\bpress(?:ed|ing|es)?\s+{button}\b",
        rf"\b{button}\s+button\b",
        rf"\bhit(?:ting)?\s+{button}\b",
    )
    return any(re.search(pattern, text, re.IGNORECASE) for pattern in contextual)


_BUTTON_FOLLOWERS = {
    "did",
    "didn't",
    "does",
    "doesn't",
    "worked",
    "works",
    "opened",
    "failed",
    "succeeded",
    "press",
    "pressed",
    "button",
    "again",
    "x2",
    "x3",
}


def _reads_as_article(text: str, start: int, end: int) -> bool:
    """Sentence-initial "A door..." is prose, "A didn't work" is not."""
    before = text[:start].rstrip()
    if before and before[-1] not in ".!?:;\n":
        return False
    following = text[end:].split(maxsplit=1)
    if not following:
        return False
    word = following[0].strip(".,!?;:").lower()
    return word[:1].islower() and word not in _BUTTON_FOLLOWERS


def claims_outcome(text: str) -> str | None:
    """Classify the outcome a note asserts: "failure", "success", or None."""
    if _FAILURE_RE.search(text):
        return "failure"
    if _SUCCESS_RE.search(text):
        return "success"
    return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class NoteStore:
    """FIFO note slots with stable ids and periodic id compaction."""

    def __init__(self, capacity: int = 20, *, next_id: int = 1) -> None:
        self.capacity = max(1, capacity)
        self.next_id = max(1, next_id)
        self._notes: deque[Note] = deque(maxlen=self.capacity)

    @classmethod
    def from_notes(
        cls,
        notes: Iterable[Note],
        *,
        capacity: int = 20,
        next_id: int = 1,
    ) -> NoteStore:
        store = cls(capacity, next_id=next_id)
        for note in notes:
            store._notes.append(note)
        highest = max((note.id for note in store._notes), default=0)
        store.next_id = max(store.next_id, highest + 1)
        return store

    def __len__(self) -> int:
        return len(self._notes)

    def list(self) -> list[Note]:
        return list(self._notes)

    def get(self, note_id: int) -> Note | None:
        for note in self._notes:
            if note.id == note_id:
                return note
        return None

    def begin_turn(self) -> None:
        for note in self._notes:
            note.written_this_turn = False

    def add_note(
        self,
        text: str,
        *,
        current_buttons: Sequence[str] = (),
        origin: Position | None = None,
    ) -> int:
        """Store a note as UNVERIFIED and return its id.

        Notes that claim an outcome for a button being pressed this very
        turn are kept, but rewritten as a tagged prediction. ``origin`` is
        where the player stood before the move the note reports on.
        """
        content = self.guard_prediction(text, current_buttons)
        note = Note(
            id=self.next_id,
            timestamp=_now(),
            content=content,
            written_this_turn=True,
            origin_position=origin,
        )
        self.next_id += 1
        if len(self._notes) == self.capacity:
            evicted = self._notes[0]
            LOGGER.info("note_evicted", extra={"note_id": evicted.id})
        self._notes.append(note)
        LOGGER.info(
            "note_added",
            extra={"note_id": note.id, "prediction": content.startswith(PREDICTION_TAG)},
        )
        if self.next_id > 2 * self.capacity:
            self.compact()
        return note.id

    def clear_note(self, note_id: int) -> bool:
        for note in self._notes:
            if note.id == note_id:
                self._notes.remove(note)
                LOGGER.info("note_cleared", extra={"note_id": note_id})
                return True
        LOGGER.warning("note_clear_missing", extra={"note_id": note_id})
        return False

    def clear_all(self) -> None:
        self._notes.clear()
        self.next_id = 1
        LOGGER.info("notes_cleared_all")

    def compact(self) -> None:
        """Renumber live notes 1..n so ids stay short."""
        for new_id, note in enumerate(self._notes, start=1):
            note.id = new_id
        self.next_id = len(self._notes) + 1
        LOGGER.info("note_ids_compacted", extra={"live_notes": len(self._notes)})

    @staticmethod
    def guard_prediction(text: str, current_buttons: Sequence[str]) -> str:
        content = text.strip()
        if content.startswith(PREDICTION_TAG) or claims_outcome(content) is None:
            return content
        for button in dict.fromkeys(current_buttons):
            if mentions_button(content, button):
                LOGGER.warning(
                    "note_prediction_flagged",
                    extra={"button": button, "excerpt": content[:120]},
                )
                return (
                    f"{PREDICTION_TAG} {content} "
                    f"(claims the outcome of {button}, which is pressed this turn; "
                    "result not yet observed)"
                )
        return content

    def validate_against_ground_truth(
        self,
        position: Position | None,
        *,
        last_record: TurnRecord | None = None,
    ) -> list[int]:
        """Re-check UNVERIFIED notes and return ids whose status changed.

        A movement or arrival claim naming a place is CONTRADICTED when the
        player still stands where the reported move started. A note written in
        the pass that verified the last turn, reporting how that turn's
        button went, is VERIFIED or CONTRADICTED by the turn's verdict.
        """
        changed: list[int] = []
        for note in self._notes:
            if note.verification_status != "UNVERIFIED" or note.content.startswith(PREDICTION_TAG):
                continue
            if self._contradicted_by_position(note, position):
                note.verification_status = "CONTRADICTED"
                changed.append(note.id)
                continue
            status = self._status_from_record(note, last_record)
            if status is not None:
                note.verification_status = status
                changed.append(note.id)

        if changed:
            LOGGER.info("notes_revalidated", extra={"note_ids": changed})
        return changed

    @staticmethod
    def _contradicted_by_position(note: Note, position: Position | None) -> bool:
        if position is None or note.origin_position is None:
            return False
        if not _MOVEMENT_RE.search(note.content) or not _LOCATION_RE.search(note.content):
            return False
        return note.origin_position == position

    @staticmethod
    def _status_from_record(note: Note, record: TurnRecord | None) -> NoteStatus | None:
        if record is None or record.result == "UNKNOWN" or not note.written_this_turn:
            return None
        if not any(mentions_button(note.content, button) for button in record.buttons):
            return None
        claim = claims_outcome(note.content)
        if claim is None:
            return None
        observed = "success" if record.result == "SUCCESS" else "failure"
        return "VERIFIED" if claim == observed else "CONTRADICTED"
