"""Read the out-of-band position/map snapshot."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from turnpilot.agent.models import Position

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class GroundTruth:
    x: int
    y: int
    in_battle: bool = False
    map_group: int | None = None
    map_num: int | None = None

    @property
    def position(self) -> Position:
        return Position(x=self.x, y=self.y, map_group=self.map_group, map_num=self.map_num)

    def describe(self) -> str:
        battle = "in battle" if self.in_battle else "not in battle"
        return f"{self.position.describe()}, {battle}"


class GroundTruthFile:
    """Polls the JSON file an extractor script rewrites every second."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_error: str | None = None

    def read(self) -> GroundTruth | None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self._note_unavailable("missing")
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._note_unavailable(f"unreadable: {exc}")
            return None
        snapshot = parse_ground_truth(raw)
        if snapshot is None:
            reason = raw.get("error") if isinstance(raw, dict) else None
            self._note_unavailable(str(reason or "malformed"))
            return None
        self._last_error = None
        return snapshot

    def position(self) -> Position | None:
        snapshot = self.read()
        return snapshot.position if snapshot is not None else None

    def _note_unavailable(self, reason: str) -> None:
        if reason != self._last_error:
            LOGGER.info(
                "ground_truth_unavailable",
                extra={"path": str(self.path), "reason": reason},
            )
        self._last_error = reason


def parse_ground_truth(raw: object) -> GroundTruth | None:
    if not isinstance(raw, dict) or "error" in raw:
        return None
    x = _to_int(raw.get("x"))
    y = _to_int(raw.get("y"))
    if x is None or y is None:
        return None
    in_battle = raw.get("in_battle", False)
    return GroundTruth(
        x=x,
        y=y,
        in_battle=in_battle if isinstance(in_battle, bool) else False,
        map_group=_to_int(raw.get("map_group")),
        map_num=_to_int(raw.get("map_num")),
    )


def _to_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
