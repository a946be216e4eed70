"""Environment-backed application configuration."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from turnpilot.agent.directives import normalize_button
from turnpilot.agent.models import Button
from turnpilot.llm.client import DEFAULT_API_URL

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
SAVED_KEYS = (
    "api_key",
    "model",
    "max_tokens",
    "loop_interval",
    "include_screenshot",
    "include_ram",
    "temperature",
)

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You are an expert player controlling a Game Boy Advance game through button presses.",
        (
            "Each turn you see the current screen, verified results of your recent turns,"
            " and your saved notes."
        ),
        (
            "Treat the verified turn results and ground truth position as authoritative;"
            " they override anything your notes claim."
        ),
        "Make steady progress and avoid repeating inputs that have already failed.",
    ]
)


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from config files and environment variables."""

    api_key: str | None
    api_url: str
    model: str
    max_tokens: int
    temperature: float
    extended_thinking: bool
    system_prompt: str
    include_screenshot: bool
    include_ram: bool
    loop_interval: float
    request_timeout: float
    base_backoff: float
    backoff_ceiling: float
    max_backoff_multiplier: int
    fatal_error_threshold: int
    hold_duration: float
    tap_duration: float
    release_gap: float
    max_repeat: int
    fallback_button: Button
    wait_for_input_drain: bool
    note_capacity: int
    history_limit: int
    ledger_capacity: int
    session_path: str
    game_state_path: str
    snapshot_dir: str
    log_dir: str

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        anthropic_from_file = file_config.get("anthropic")
        anthropic_config = anthropic_from_file if isinstance(anthropic_from_file, dict) else {}

        def setting(name: str) -> object:
            return os.getenv(f"TURNPILOT_{name.upper()}") or file_config.get(name)

        def flag(name: str, default: bool) -> bool:
            from_file = file_config.get(name)
            return _to_bool(
                os.getenv(f"TURNPILOT_{name.upper()}"),
                default=from_file if isinstance(from_file, bool) else default,
            )

        return cls(
            api_key=(
                os.getenv("TURNPILOT_API_KEY")
                or os.getenv("ANTHROPIC_API_KEY")
                or _to_optional_string(anthropic_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            api_url=(
                os.getenv("TURNPILOT_API_URL")
                or _to_optional_string(anthropic_config.get("api_url"))
                or DEFAULT_API_URL
            ),
            model=(
                os.getenv("TURNPILOT_MODEL")
                or _to_optional_string(file_config.get("model"))
                or DEFAULT_MODEL
            ),
            max_tokens=_to_positive_int(setting("max_tokens"), default=1024),
            temperature=_to_non_negative_float(setting("temperature"), default=1.0),
            extended_thinking=flag("extended_thinking", False),
            system_prompt=(
                os.getenv("TURNPILOT_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            include_screenshot=flag("include_screenshot", True),
            include_ram=flag("include_ram", False),
            loop_interval=_to_positive_float(setting("loop_interval"), default=2.0),
            request_timeout=_to_positive_float(setting("request_timeout"), default=30.0),
            base_backoff=_to_positive_float(setting("base_backoff"), default=2.0),
            backoff_ceiling=_to_positive_float(setting("backoff_ceiling"), default=30.0),
            max_backoff_multiplier=_to_positive_int(setting("max_backoff_multiplier"), default=16),
            fatal_error_threshold=_to_positive_int(setting("fatal_error_threshold"), default=3),
            hold_duration=_to_positive_float(setting("hold_duration"), default=0.25),
            tap_duration=_to_positive_float(setting("tap_duration"), default=0.1),
            release_gap=_to_non_negative_float(setting("release_gap"), default=0.05),
            max_repeat=_to_positive_int(setting("max_repeat"), default=10),
            fallback_button=_to_button(setting("fallback_button"), default="B"),
            wait_for_input_drain=flag("wait_for_input_drain", True),
            note_capacity=_to_positive_int(setting("note_capacity"), default=20),
            history_limit=_to_positive_int(setting("history_limit"), default=10),
            ledger_capacity=_to_positive_int(setting("ledger_capacity"), default=20),
            session_path=_to_optional_string(setting("session_path")) or "turnpilot.session.json",
            game_state_path=(
                _to_optional_string(setting("game_state_path")) or "scripts/game_state.json"
            ),
            snapshot_dir=_to_optional_string(setting("snapshot_dir")) or "snapshots",
            log_dir=_to_optional_string(setting("log_dir")) or "logs",
        )


def save_config_file(config: AppConfig, path: str | Path) -> bool:
    """Write the user-editable settings as JSON. Returns False on failure."""
    target = Path(path)
    payload = {key: getattr(config, key) for key in SAVED_KEYS}
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
    except OSError as exc:
        LOGGER.error("config_save_failed", extra={"path": str(target), "error": str(exc)})
        return False
    LOGGER.info("config_saved", extra={"path": str(target)})
    return True


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("TURNPILOT_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("turnpilot.config.json")
    local_override = _load_file_config("turnpilot.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_button(value: object, *, default: Button) -> Button:
    if isinstance(value, str):
        button = normalize_button(value)
        if button is not None:
            return button
    return default


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_positive_float(value: object, *, default: float) -> float:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed > 0 else default


def _to_non_negative_float(value: object, *, default: float) -> float:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed >= 0 else default
