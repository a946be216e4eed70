"""Emulator core seam consumed by the engine."""

from __future__ import annotations

import abc
from pathlib import Path

from turnpilot.agent.models import Button

GBA_KEY_BITS: dict[Button, int] = {
    "A": 0,
    "B": 1,
    "SELECT": 2,
    "START": 3,
    "RIGHT": 4,
    "LEFT": 5,
    "UP": 6,
    "DOWN": 7,
    "R": 8,
    "L": 9,
}


def key_mask(button: Button) -> int:
    return 1 << GBA_KEY_BITS[button]


class EmulatorCore(abc.ABC):
    """The handful of core operations the engine needs."""

    @abc.abstractmethod
    def video_dimensions(self) -> tuple[int, int]:
        """Width and height of the current frame in pixels."""

    @abc.abstractmethod
    def pixels(self) -> bytes:
        """Current frame as 32-bit RGBX, row-major."""

    @abc.abstractmethod
    def read8(self, address: int) -> int:
        """Read one byte from the bus."""

    @abc.abstractmethod
    def frame_counter(self) -> int:
        """Frames emulated so far."""

    @abc.abstractmethod
    def set_keys(self, mask: int) -> None:
        """Assert the keys in ``mask``."""

    @abc.abstractmethod
    def clear_keys(self, mask: int) -> None:
        """Deassert the keys in ``mask``."""

    @abc.abstractmethod
    def save_snapshot(self, path: Path) -> None:
        """Write a save-state to ``path``."""


class CoreInputSink:
    """Input sink that presses buttons on an emulator core."""

    def __init__(self, core: EmulatorCore) -> None:
        self.core = core

    def press(self, button: Button) -> None:
        self.core.set_keys(key_mask(button))

    def release(self, button: Button) -> None:
        self.core.clear_keys(key_mask(button))
