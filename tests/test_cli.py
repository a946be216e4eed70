from __future__ import annotations

import json
import os
import sys
import types
from pathlib import Path

import pytest
from fakes import FakeClient, FakeCore, error_exchange

from turnpilot import cli
from turnpilot.agent.models import Note, SessionState
from turnpilot.agent.session import SessionStore


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("TURNPILOT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_core_module(monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
    module = types.ModuleType("cli_fake_core")
    module.make_core = FakeCore
    monkeypatch.setitem(sys.modules, "cli_fake_core", module)
    return module


def _seed_session(path: Path) -> None:
    SessionStore(path).save(
        SessionState(
            model="claude-test",
            conversation_history=[
                {"role": "user", "content": "What next?"},
                {"role": "assistant", "content": "BUTTONS: A\n"},
            ],
            notes=[
                Note(id=1, timestamp="t", content="lab is south"),
                Note(id=2, timestamp="t", content="LEFT worked", verification_status="VERIFIED"),
            ],
            next_note_id=3,
        )
    )


def test_parser_requires_subcommand() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_run_options() -> None:
    args = cli.build_parser().parse_args(
        ["run", "--core", "pkg.mod:factory", "--game-state", "gs.json", "--log-level", "DEBUG"]
    )

    assert args.command == "run"
    assert args.core == "pkg.mod:factory"
    assert args.game_state == "gs.json"
    assert args.log_level == "DEBUG"
    assert args.session is None


def test_notes_clear_flags_are_exclusive() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["notes", "--clear", "--clear-id", "2"])


def test_notes_lists_saved_notes(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    session = tmp_path / "session.json"
    _seed_session(session)

    assert cli.main(["notes", "--session", str(session)]) == 0

    out = capsys.readouterr().out
    assert "#1 [UNVERIFIED] lab is south" in out
    assert "#2 [VERIFIED] LEFT worked" in out


def test_notes_clear_id_and_clear_all(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    session = tmp_path / "session.json"
    _seed_session(session)

    assert cli.main(["notes", "--session", str(session), "--clear-id", "1"]) == 0
    assert [note.id for note in SessionStore(session).load().notes] == [2]

    assert cli.main(["notes", "--session", str(session), "--clear-id", "9"]) == 1
    assert "No note with id 9." in capsys.readouterr().out

    assert cli.main(["notes", "--session", str(session), "--clear"]) == 0
    loaded = SessionStore(session).load()
    assert loaded.notes == []
    assert loaded.next_note_id == 1


def test_notes_without_session(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["notes"]) == 0
    assert "No notes saved." in capsys.readouterr().out


def test_history_prints_turns(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    session = tmp_path / "session.json"
    _seed_session(session)

    assert cli.main(["history", "--session", str(session)]) == 0

    out = capsys.readouterr().out
    assert "model: claude-test" in out
    assert "=== 1 (user) ===\nWhat next?" in out
    assert "=== 2 (assistant) ===\nBUTTONS: A" in out


def test_config_save_writes_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TURNPILOT_MODEL", "claude-test")
    target = tmp_path / "saved.json"

    assert cli.main(["config", "--save", str(target)]) == 0

    assert json.loads(target.read_text(encoding="utf-8"))["model"] == "claude-test"


def test_run_rejects_bad_core_reference(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["run", "--core", "no_such_module_here:factory"]) == 1
    assert "Could not load emulator core" in capsys.readouterr().out


def test_run_without_api_key_fails_fast(
    fake_core_module: types.ModuleType,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert cli.main(["run", "--core", "cli_fake_core:make_core"]) == 1
    assert "error [auth]" in capsys.readouterr().err


def test_run_stops_on_fatal_reply(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_core_module: types.ModuleType,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("TURNPILOT_API_KEY", "bad-key")
    monkeypatch.setattr(
        cli,
        "ReasoningClient",
        lambda **kwargs: FakeClient(
            [error_exchange("authentication_error", "invalid x-api-key", status=401)],
            **kwargs,
        ),
    )

    assert cli.main(["run", "--core", "cli_fake_core:make_core"]) == 1

    captured = capsys.readouterr()
    assert "error [auth]: API error (authentication_error): invalid x-api-key" in captured.err
    assert "[stopped]" in captured.out
    assert list((tmp_path / "snapshots").glob("autosave-*.ss0"))
    assert (tmp_path / "turnpilot.session.json").exists()
