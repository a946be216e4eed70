"""Turn prompt assembly from evidence, ledger, and notes."""

from __future__ import annotations

from collections.abc import Sequence

from turnpilot.agent.models import Note, StuckSignal, TurnRecord
from turnpilot.emulator.evidence import GameEvidence
from turnpilot.emulator.ground_truth import GroundTruth

RESPONSE_FORMAT = "\n".join(
    [
        "Available buttons: A, B, START, SELECT, UP, DOWN, LEFT, RIGHT, L, R",
        "Join buttons with + to press them in one step (e.g. UP+A).",
        "Add a count after a button to repeat it (e.g. UP 3); directions with a count are held.",
        "",
        "Respond with your reasoning, then end with exactly one line:",
        "BUTTONS: <comma-separated list of buttons to press>",
        "Use BUTTONS: NONE to wait without pressing anything.",
        "",
        "Notes are your long-term memory:",
        "  [NOTE: text] saves a note.",
        "  [CLEAR NOTE: id] deletes one note. [CLEAR ALL NOTES] deletes every note.",
        "Only record outcomes you have already seen in the VERIFIED TURNS section.",
        "Never write a note about the result of the buttons you are pressing now.",
    ]
)


def build_turn_prompt(
    *,
    evidence: GameEvidence,
    ground_truth: GroundTruth | None,
    records: Sequence[TurnRecord],
    summary: dict[str, int],
    signals: Sequence[StuckSignal],
    notes: Sequence[Note],
) -> str:
    sections = [
        (
            f"You are playing {evidence.game_title or 'an unknown game'}"
            f" (Game Code: {evidence.game_code or '????'}) on a Game Boy Advance emulator.\n"
            f"Current Frame: {evidence.frame}"
        ),
        _ground_truth_section(ground_truth),
        _records_section(records, summary),
    ]
    if signals:
        sections.append(_signals_section(signals))
    sections.append(_notes_section(notes))
    if evidence.ram_hex_dump:
        sections.append(evidence.ram_hex_dump)
    sections.append(
        "Analyze the screenshot and game state. What should you do next?\n"
        "Think step by step about the current situation and your goal."
    )
    sections.append(RESPONSE_FORMAT)
    return "\n\n".join(sections)


def _ground_truth_section(ground_truth: GroundTruth | None) -> str:
    if ground_truth is None:
        return "GROUND TRUTH: position unavailable this turn."
    return f"GROUND TRUTH: player at {ground_truth.describe()}."


def _records_section(records: Sequence[TurnRecord], summary: dict[str, int]) -> str:
    if not records:
        return "VERIFIED TURNS: none yet."
    lines = [
        "VERIFIED TURNS (checked against ground truth; trust these over your own notes):",
    ]
    for record in records:
        inputs = ", ".join(record.inputs) or "no input"
        lines.append(f"- Turn {record.turn_number}: {inputs} -> {record.result}. {record.reason}")
    lines.append(
        f"Last {summary.get('turns', 0)} turns: {summary.get('success', 0)} succeeded,"
        f" {summary.get('failed', 0)} failed, {summary.get('unknown', 0)} unverified."
    )
    return "\n".join(lines)


def _signals_section(signals: Sequence[StuckSignal]) -> str:
    lines = ["WARNINGS:"]
    for signal in signals:
        label = "LIKELY STUCK" if signal.kind == "likely_stuck" else "REPETITION"
        lines.append(f"- {label}: {signal.detail}")
    return "\n".join(lines)


def _notes_section(notes: Sequence[Note]) -> str:
    if not notes:
        return "NOTES: none saved."
    lines = ["NOTES:"]
    for note in notes:
        lines.append(f"- #{note.id} [{note.verification_status}] {note.content}")
    return "\n".join(lines)
