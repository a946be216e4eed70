"""Durable session state: conversation history, notes, and toggles."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from turnpilot.agent.models import VALID_NOTE_STATUSES, Note, Position, SessionState

LOGGER = logging.getLogger(__name__)

SESSION_VERSION = 1
_ROLES = {"user", "assistant"}


class SessionStore:
    """Loads once at startup and rewrites the session file after each turn.

    Both operations are best-effort: a missing or corrupt file loads as an
    empty session and a failed write is logged, never raised.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        history_limit: int = 10,
        note_capacity: int = 20,
    ) -> None:
        self.path = Path(path)
        self.history_limit = max(1, history_limit)
        self.note_capacity = max(1, note_capacity)

    def load(self) -> SessionState:
        if not self.path.exists():
            LOGGER.info("session_not_found", extra={"path": str(self.path)})
            return SessionState()
        payload = _read_json(self.path)
        if payload is None:
            LOGGER.warning("session_unreadable", extra={"path": str(self.path)})
            return SessionState()

        notes = [note for note in map(_note_from_dict, _as_list(payload.get("notes"))) if note]
        history = [
            message
            for message in map(_message_from_dict, _as_list(payload.get("conversation_history")))
            if message
        ]
        state = SessionState(
            model=_as_string(payload.get("model")),
            feature_toggles={
                str(key): value
                for key, value in _as_dict(payload.get("feature_toggles")).items()
                if isinstance(value, bool)
            },
            conversation_history=self.bound_history(history),
            notes=notes[-self.note_capacity :],
            next_note_id=_as_positive_int(payload.get("next_note_id"), default=1),
        )
        highest = max((note.id for note in state.notes), default=0)
        state.next_note_id = max(state.next_note_id, highest + 1)
        LOGGER.info(
            "session_loaded",
            extra={
                "path": str(self.path),
                "history_messages": len(state.conversation_history),
                "notes": len(state.notes),
            },
        )
        return state

    def save(self, state: SessionState) -> bool:
        payload = {
            "version": SESSION_VERSION,
            "model": state.model,
            "feature_toggles": dict(state.feature_toggles),
            "conversation_history": self.bound_history(state.conversation_history),
            "notes": [_note_to_dict(note) for note in state.notes[-self.note_capacity :]],
            "next_note_id": state.next_note_id,
        }
        try:
            _write_json_atomic(self.path, payload)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("session_save_failed", extra={"path": str(self.path), "error": str(exc)})
            return False
        LOGGER.debug("session_saved", extra={"path": str(self.path)})
        return True

    def bound_history(self, history: list[dict[str, str]]) -> list[dict[str, str]]:
        """Keep the newest ``history_limit`` exchanges, starting on a user turn."""
        bounded = list(history)[-2 * self.history_limit :]
        while bounded and bounded[0].get("role") != "user":
            bounded.pop(0)
        return bounded


def _note_to_dict(note: Note) -> dict[str, Any]:
    position = note.origin_position
    return {
        "id": note.id,
        "timestamp": note.timestamp,
        "content": note.content,
        "verification_status": note.verification_status,
        "written_this_turn": note.written_this_turn,
        "origin_position": (
            None
            if position is None
            else {
                "x": position.x,
                "y": position.y,
                "map_group": position.map_group,
                "map_num": position.map_num,
            }
        ),
    }


def _note_from_dict(raw: object) -> Note | None:
    if not isinstance(raw, dict):
        return None
    note_id = raw.get("id")
    content = raw.get("content")
    if isinstance(note_id, bool) or not isinstance(note_id, int) or note_id < 1:
        return None
    if not isinstance(content, str) or not content.strip():
        return None
    status = raw.get("verification_status")
    return Note(
        id=note_id,
        timestamp=str(raw.get("timestamp") or ""),
        content=content,
        verification_status=status if status in VALID_NOTE_STATUSES else "UNVERIFIED",
        written_this_turn=raw.get("written_this_turn") is True,
        origin_position=_position_from_dict(raw.get("origin_position")),
    )


def _position_from_dict(raw: object) -> Position | None:
    if not isinstance(raw, dict):
        return None
    x, y = raw.get("x"), raw.get("y")
    if not isinstance(x, int) or not isinstance(y, int):
        return None
    map_group, map_num = raw.get("map_group"), raw.get("map_num")
    return Position(
        x=x,
        y=y,
        map_group=map_group if isinstance(map_group, int) else None,
        map_num=map_num if isinstance(map_num, int) else None,
    )


def _message_from_dict(raw: object) -> dict[str, str] | None:
    if not isinstance(raw, dict):
        return None
    role, content = raw.get("role"), raw.get("content")
    if role not in _ROLES or not isinstance(content, str):
        return None
    return {"role": role, "content": content}


def _as_list(value: object) -> list[object]:
    return value if isinstance(value, list) else []


def _as_dict(value: object) -> dict[object, object]:
    return value if isinstance(value, dict) else {}


def _as_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return default
    return value


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload
