"""Command-line interface for turnpilot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import cast

from .agent.loop import OrchestratorState, TurnOrchestrator
from .agent.notes import NoteStore
from .agent.scheduling import LoopExecutorRunner
from .agent.session import SessionStore
from .config import AppConfig, save_config_file
from .emulator import EmulatorCore, load_core
from .emulator.ground_truth import GroundTruthFile
from .llm.client import ReasoningClient

LOGGER = logging.getLogger(__name__)


class CLIArgs(argparse.Namespace):
    command: str
    core: str
    session: str | None
    game_state: str | None
    log_level: str
    clear: bool
    clear_id: int | None
    save: str


class ConsoleListener:
    """Prints orchestrator status lines and remembers how the run ended."""

    def __init__(self) -> None:
        self.stopped = asyncio.Event()
        self.fatal_code: str | None = None

    def log(self, message: str) -> None:
        print(message)

    def error(self, message: str, code: str) -> None:
        self.fatal_code = code
        print(f"error [{code}]: {message}", file=sys.stderr)

    def state_changed(self, state: OrchestratorState) -> None:
        print(f"[{state}]")
        if state == "stopped":
            self.stopped.set()


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--session",
        help="Session file path. Takes precedence over config/env session_path.",
    )
    common.add_argument(
        "--log-level",
        dest="log_level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for diagnostic output.",
    )

    parser = argparse.ArgumentParser(
        prog="turnpilot",
        description="Model-driven autopilot for emulated games",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", parents=[common], help="Drive the game until stopped"
    )
    run_parser.add_argument(
        "--core",
        required=True,
        help="Emulator core factory as module:attribute.",
    )
    run_parser.add_argument(
        "--game-state",
        dest="game_state",
        help="Ground-truth JSON path. Takes precedence over config/env game_state_path.",
    )

    notes_parser = subparsers.add_parser(
        "notes", parents=[common], help="List or clear saved notes"
    )
    notes_group = notes_parser.add_mutually_exclusive_group()
    notes_group.add_argument("--clear", action="store_true", help="Delete every note")
    notes_group.add_argument("--clear-id", dest="clear_id", type=int, help="Delete one note")

    subparsers.add_parser("history", parents=[common], help="Print stored conversation turns")

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Write the effective config"
    )
    config_parser.add_argument("--save", required=True, help="Destination JSON path")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    logging.basicConfig(level=getattr(logging, args.log_level))
    config = AppConfig.from_env()
    store = SessionStore(
        args.session or config.session_path,
        history_limit=config.history_limit,
        note_capacity=config.note_capacity,
    )

    if args.command == "notes":
        return _notes_command(store, config, clear=args.clear, clear_id=args.clear_id)
    if args.command == "history":
        return _history_command(store)
    if args.command == "config":
        return 0 if save_config_file(config, args.save) else 1

    try:
        core = load_core(args.core)
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        print(f"Could not load emulator core: {exc}")
        return 1
    ground_truth = GroundTruthFile(args.game_state or config.game_state_path)
    try:
        return asyncio.run(_run(config, core, store, ground_truth))
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130


async def _run(
    config: AppConfig,
    core: EmulatorCore,
    store: SessionStore,
    ground_truth: GroundTruthFile,
) -> int:
    loop = asyncio.get_running_loop()
    listener = ConsoleListener()
    client = ReasoningClient(
        api_key=config.api_key,
        model=config.model,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        api_url=config.api_url,
        extended_thinking=config.extended_thinking,
        system_prompt=config.system_prompt,
        timeout=config.request_timeout,
    )
    orchestrator = TurnOrchestrator(
        config=config,
        core=core,
        client=client,
        scheduler=loop,
        runner=LoopExecutorRunner(loop),
        session_store=store,
        ground_truth=ground_truth,
        listener=listener,
    )
    if not orchestrator.start():
        return 1
    try:
        await listener.stopped.wait()
    finally:
        orchestrator.stop()
    LOGGER.debug("run_finished", extra={"turns": orchestrator.turn_number})
    return 1 if listener.fatal_code else 0


def _notes_command(
    store: SessionStore,
    config: AppConfig,
    *,
    clear: bool,
    clear_id: int | None,
) -> int:
    state = store.load()
    notes = NoteStore.from_notes(
        state.notes,
        capacity=config.note_capacity,
        next_id=state.next_note_id,
    )
    if clear or clear_id is not None:
        if clear:
            notes.clear_all()
        elif not notes.clear_note(clear_id):
            print(f"No note with id {clear_id}.")
            return 1
        state.notes = notes.list()
        state.next_note_id = notes.next_id
        return 0 if store.save(state) else 1

    if not len(notes):
        print("No notes saved.")
        return 0
    for note in notes.list():
        print(f"#{note.id} [{note.verification_status}] {note.content}")
    return 0


def _history_command(store: SessionStore) -> int:
    state = store.load()
    if not state.conversation_history:
        print("No conversation history saved.")
        return 0
    if state.model:
        print(f"model: {state.model}")
    for idx, message in enumerate(state.conversation_history, start=1):
        print(f"=== {idx} ({message['role']}) ===")
        print(message["content"].rstrip())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
