"""Capture the visual and memory evidence sent with each turn."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

from PIL import Image

from turnpilot.emulator.base import EmulatorCore

LOGGER = logging.getLogger(__name__)

ROM_TITLE_ADDRESS = 0x080000A0
ROM_TITLE_LENGTH = 12
ROM_CODE_ADDRESS = 0x080000AC
ROM_CODE_LENGTH = 4
EWRAM_BASE = 0x02000000
RAM_DUMP_BYTES = 1024


class EvidenceCaptureError(RuntimeError):
    """Raised when the current frame or memory cannot be read."""


@dataclass(slots=True)
class GameEvidence:
    game_title: str
    game_code: str
    frame: int
    screenshot_png: bytes | None = None
    ram_hex_dump: str | None = None


def capture_evidence(
    core: EmulatorCore,
    *,
    include_screenshot: bool = True,
    include_ram: bool = False,
) -> GameEvidence:
    try:
        evidence = GameEvidence(
            game_title=read_rom_title(core),
            game_code=read_rom_code(core),
            frame=core.frame_counter(),
        )
        if include_screenshot:
            evidence.screenshot_png = encode_frame_png(core)
        if include_ram:
            evidence.ram_hex_dump = ram_hex_dump(core)
    except EvidenceCaptureError:
        raise
    except Exception as exc:
        raise EvidenceCaptureError(f"Failed to capture game state: {exc}") from exc
    return evidence


def read_rom_title(core: EmulatorCore) -> str:
    chars = []
    for offset in range(ROM_TITLE_LENGTH):
        byte = core.read8(ROM_TITLE_ADDRESS + offset)
        chars.append(chr(byte) if 32 <= byte < 127 else " ")
    return "".join(chars).strip()


def read_rom_code(core: EmulatorCore) -> str:
    raw = bytes(core.read8(ROM_CODE_ADDRESS + offset) & 0xFF for offset in range(ROM_CODE_LENGTH))
    return raw.decode("ascii", errors="replace").strip("\x00 ")


def encode_frame_png(core: EmulatorCore) -> bytes:
    width, height = core.video_dimensions()
    pixels = core.pixels()
    expected = width * height * 4
    if width <= 0 or height <= 0 or len(pixels) < expected:
        msg = f"Frame buffer too small: {len(pixels)} bytes for {width}x{height}"
        raise EvidenceCaptureError(msg)
    image = Image.frombytes("RGBX", (width, height), bytes(pixels[:expected])).convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def ram_hex_dump(core: EmulatorCore, *, length: int = RAM_DUMP_BYTES) -> str:
    lines = [f"RAM (first {length // 1024 or 1}KB of EWRAM):"]
    for row in range(0, length, 16):
        address = EWRAM_BASE + row
        values = " ".join(f"{core.read8(address + column) & 0xFF:02X}" for column in range(16))
        lines.append(f"{address:08X}: {values}")
    return "\n".join(lines)
