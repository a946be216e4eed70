"""Parse button and note directives out of free-text replies."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import cast

from turnpilot.agent.models import VALID_BUTTONS, Button, LogicalInput

_BUTTONS_LINE = re.compile(
    r"^\s*\**\s*BUTTONS?\s*\**\s*:\s*(?P<body>.*)$",
    re.IGNORECASE | re.MULTILINE,
)
_NOTE = re.compile(r"\[\s*NOTE\s*:\s*(?P<text>[^\]]+?)\s*\]", re.IGNORECASE)
_CLEAR_NOTE = re.compile(r"\[\s*CLEAR\s+NOTE\s*:?\s*#?\s*(?P<id>\d+)\s*\]", re.IGNORECASE)
_CLEAR_ALL = re.compile(r"\[\s*CLEAR\s+ALL(?:\s+NOTES)?\s*\]", re.IGNORECASE)
_ANY_DIRECTIVE = re.compile(r"\[[^\]]*\]")
_COUNT = re.compile(r"^(?:x\s*)?(?P<count>\d+)(?:\s*x)?$", re.IGNORECASE)
_TOKEN_SPLIT = re.compile(r"[,\s]+")
_BUTTON_ALIASES = {
    "ENTER": "START",
    "BACK": "B",
    "CANCEL": "B",
    "CONFIRM": "A",
}
_NO_INPUT_TOKENS = {"NONE", "NOTHING", "WAIT"}


@dataclass(slots=True)
class ParsedInputs:
    """Button decisions for one reply."""

    inputs: list[LogicalInput]
    explicit_none: bool = False
    used_fallback: bool = False

    def labels(self) -> list[str]:
        return [logical.label() for logical in self.inputs]


@dataclass(slots=True)
class NoteDirectives:
    """Note mutations requested by one reply, in application order."""

    clear_all: bool = False
    clear_ids: list[int] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.clear_all or self.clear_ids or self.notes)


def parse_inputs(text: str, *, max_repeat: int = 10, fallback: Button = "B") -> ParsedInputs:
    """Extract inputs from a reply, falling back to one safe press.

    A ``BUTTONS:`` line wins. Otherwise any line made only of button
    tokens and counts (``up 3``, ``a, b``) is used. Prose that merely
    mentions a button does not count.
    """
    stripped = _ANY_DIRECTIVE.sub(" ", text)
    match = _BUTTONS_LINE.search(stripped)
    if match is not None:
        inputs, explicit_none = _parse_token_run(match.group("body"), max_repeat=max_repeat)
        if inputs or explicit_none:
            return ParsedInputs(inputs=inputs, explicit_none=explicit_none)

    for line in stripped.splitlines():
        inputs, explicit_none = _parse_token_run(line, max_repeat=max_repeat, strict=True)
        if inputs:
            return ParsedInputs(inputs=inputs, explicit_none=explicit_none)

    return ParsedInputs(inputs=[LogicalInput(button=fallback)], used_fallback=True)


def parse_note_directives(text: str) -> NoteDirectives:
    directives = NoteDirectives()
    directives.clear_all = _CLEAR_ALL.search(text) is not None
    directives.clear_ids = [int(match.group("id")) for match in _CLEAR_NOTE.finditer(text)]
    directives.notes = [
        " ".join(match.group("text").split())
        for match in _NOTE.finditer(text)
        if match.group("text").strip()
    ]
    return directives


def normalize_button(token: str) -> Button | None:
    upper = token.strip().upper().strip(".*`'\"()")
    upper = _BUTTON_ALIASES.get(upper, upper)
    if upper in VALID_BUTTONS:
        return cast(Button, upper)
    return None


def _parse_token_run(
    body: str,
    *,
    max_repeat: int,
    strict: bool = False,
) -> tuple[list[LogicalInput], bool]:
    """Parse ``A, UP+B 3, x2`` style runs.

    In strict mode any unknown token rejects the whole run.
    """
    inputs: list[LogicalInput] = []
    explicit_none = False
    previous_group: list[LogicalInput] = []
    tokens = [token for token in _TOKEN_SPLIT.split(body.strip()) if token]
    if not tokens:
        return [], False

    for token in tokens:
        count_match = _COUNT.match(token)
        if count_match is not None:
            if not previous_group:
                if strict:
                    return [], False
                continue
            count = min(max(1, int(count_match.group("count"))), max_repeat)
            for logical in previous_group:
                logical.repeat_count = count
            previous_group = []
            continue

        if token.upper().strip(".") in _NO_INPUT_TOKENS:
            explicit_none = True
            previous_group = []
            continue

        group: list[LogicalInput] = []
        for part in token.split("+"):
            if not part:
                continue
            button = normalize_button(part)
            if button is None:
                if strict:
                    return [], False
                group = []
                break
            group.append(LogicalInput(button=button))
        inputs.extend(group)
        previous_group = group

    if explicit_none and inputs:
        explicit_none = False
    return inputs, explicit_none
