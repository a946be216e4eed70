"""Cadence-driven turn orchestration against the emulator and the model."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Protocol

from turnpilot.agent.directives import (
    NoteDirectives,
    ParsedInputs,
    parse_inputs,
    parse_note_directives,
)
from turnpilot.agent.ledger import TurnLedger
from turnpilot.agent.models import Position, TurnRecord
from turnpilot.agent.notes import NoteStore
from turnpilot.agent.pacing import InputPacingQueue, InputSink
from turnpilot.agent.prompt import build_turn_prompt
from turnpilot.agent.scheduling import BlockingCallRunner, Cancellable, Scheduler
from turnpilot.agent.session import SessionStore
from turnpilot.config import AppConfig
from turnpilot.emulator.base import CoreInputSink, EmulatorCore
from turnpilot.emulator.evidence import EvidenceCaptureError, capture_evidence
from turnpilot.emulator.ground_truth import GroundTruthFile
from turnpilot.llm.client import (
    FatalFailure,
    ReasoningClient,
    RecoverableFailure,
    RequestOutcome,
    RequestSuccess,
)
from turnpilot.llm.lifecycle import RequestLifecycle

LOGGER = logging.getLogger(__name__)

OrchestratorState = Literal["stopped", "running", "paused"]
LOG_VERSION = 1
RESPONSE_EXCERPT_CHARS = 500


class StatusListener(Protocol):
    """Presentation-layer hooks."""

    def log(self, message: str) -> None: ...

    def error(self, message: str, code: str) -> None: ...

    def state_changed(self, state: OrchestratorState) -> None: ...


class TurnOrchestrator:
    """Runs the capture/query/verify/deliver cycle on a fixed cadence.

    Everything here runs on the scheduler's thread. Network replies arrive
    through the request lifecycle, which marshals them back onto that
    thread, and every callback checks the run epoch so nothing mutates
    state after ``stop()``.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        core: EmulatorCore,
        client: ReasoningClient,
        scheduler: Scheduler,
        runner: BlockingCallRunner,
        session_store: SessionStore,
        ground_truth: GroundTruthFile,
        sink: InputSink | None = None,
        listener: StatusListener | None = None,
    ) -> None:
        self.config = config
        self.core = core
        self.client = client
        self.scheduler = scheduler
        self.session_store = session_store
        self.ground_truth = ground_truth
        self.listener = listener
        self.log_dir = Path(config.log_dir)

        self.session = session_store.load()
        self.notes = NoteStore.from_notes(
            self.session.notes,
            capacity=config.note_capacity,
            next_id=self.session.next_note_id,
        )
        self.ledger = TurnLedger(self._read_position, capacity=config.ledger_capacity)
        self.pacing = InputPacingQueue(
            sink if sink is not None else CoreInputSink(core),
            scheduler=scheduler,
            hold_duration=config.hold_duration,
            tap_duration=config.tap_duration,
            release_gap=config.release_gap,
            max_repeat=config.max_repeat,
            on_idle=self._on_inputs_delivered,
        )
        self.lifecycle = RequestLifecycle(
            client,
            scheduler=scheduler,
            runner=runner,
            timeout=config.request_timeout,
            base_backoff=config.base_backoff,
            backoff_ceiling=config.backoff_ceiling,
            max_backoff_multiplier=config.max_backoff_multiplier,
            fatal_error_threshold=config.fatal_error_threshold,
        )

        self.state: OrchestratorState = "stopped"
        self.turn_number = 0
        self.last_response: str | None = None
        self.last_error: str | None = None
        self._epoch = 0
        self._tick_handle: Cancellable | None = None
        self._awaiting_verification: list[str] | None = None
        self._tick_deferred = False

    @property
    def running(self) -> bool:
        return self.state == "running"

    def start(self) -> bool:
        if self.state != "stopped":
            return True
        if not self.client.api_key:
            self._surface_error("No API key configured. Set TURNPILOT_API_KEY or api_key.", "auth")
            return False
        self.lifecycle.reset()
        self.last_error = None
        self._set_state("running")
        self._schedule_tick(0.0)
        LOGGER.info("orchestrator_started", extra={"model": self.client.model})
        return True

    def stop(self) -> None:
        """Release held input, drop queued input, and forget the live request."""
        self._epoch += 1
        self._cancel_tick()
        self.pacing.clear()
        self.lifecycle.cancel()
        self.ledger.reset()
        self._awaiting_verification = None
        self._tick_deferred = False
        if self.state != "stopped":
            self._set_state("stopped")
            LOGGER.info("orchestrator_stopped", extra={"turns": self.turn_number})

    def pause(self) -> None:
        if self.state != "running":
            return
        self._cancel_tick()
        self._set_state("paused")

    def resume(self) -> None:
        if self.state != "paused":
            return
        self._set_state("running")
        self._schedule_tick(0.0)

    def update_config(self, config: AppConfig) -> None:
        """Apply new model and timing settings without a restart."""
        self.config = config
        self.log_dir = Path(config.log_dir)
        self.client.api_key = config.api_key
        self.client.model = config.model
        self.client.max_tokens = config.max_tokens
        self.client.temperature = config.temperature
        self.client.extended_thinking = config.extended_thinking
        self.client.system_prompt = config.system_prompt
        self.lifecycle.timeout = config.request_timeout
        self.lifecycle.base_backoff = config.base_backoff
        self.lifecycle.backoff_ceiling = config.backoff_ceiling
        self.lifecycle.max_backoff_multiplier = max(1, config.max_backoff_multiplier)
        self.lifecycle.fatal_error_threshold = max(1, config.fatal_error_threshold)
        self.pacing.hold_duration = config.hold_duration
        self.pacing.tap_duration = config.tap_duration
        self.pacing.release_gap = config.release_gap
        self.pacing.max_repeat = max(1, config.max_repeat)
        LOGGER.info("orchestrator_config_updated", extra={"model": config.model})

    def _schedule_tick(self, delay: float) -> None:
        self._cancel_tick()
        self._tick_handle = self.scheduler.call_later(delay, self._tick, self._epoch)
        LOGGER.debug("tick_scheduled", extra={"delay_seconds": delay})

    def _cancel_tick(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    def _tick(self, epoch: int) -> None:
        if epoch != self._epoch or self.state != "running":
            return
        self._tick_handle = None
        self._tick_deferred = False
        try:
            self._run_tick()
        finally:
            if epoch == self._epoch and self.state == "running":
                self._schedule_tick(self.lifecycle.next_delay(self.config.loop_interval))

    def _run_tick(self) -> None:
        if self.lifecycle.in_flight:
            LOGGER.debug("tick_skipped_in_flight")
            return
        if self.config.wait_for_input_drain and self.pacing.busy:
            LOGGER.debug("tick_skipped_inputs_pending")
            self._tick_deferred = True
            return

        snapshot = self.ground_truth.read()
        position = snapshot.position if snapshot is not None else None
        if self.notes.validate_against_ground_truth(position, last_record=self.ledger.last_record):
            self._save_session()

        try:
            evidence = capture_evidence(
                self.core,
                include_screenshot=self.config.include_screenshot,
                include_ram=self.config.include_ram,
            )
        except EvidenceCaptureError as exc:
            LOGGER.warning("evidence_capture_failed", extra={"error": str(exc)})
            self._status(f"Skipped turn: {exc}")
            return

        prompt = build_turn_prompt(
            evidence=evidence,
            ground_truth=snapshot,
            records=self.ledger.recent(),
            summary=self.ledger.summary(),
            signals=self.ledger.signals(),
            notes=self.notes.list(),
        )
        payload = self.client.build_payload(
            self.session.conversation_history,
            prompt,
            images=[evidence.screenshot_png] if evidence.screenshot_png else None,
        )
        epoch = self._epoch
        if self.lifecycle.send(payload, lambda outcome: self._on_outcome(epoch, prompt, outcome)):
            self._status(f"Turn {self.turn_number + 1}: asking {self.client.model}...")

    def _on_outcome(self, epoch: int, prompt: str, outcome: RequestOutcome) -> None:
        if epoch != self._epoch:
            LOGGER.info("outcome_ignored_after_stop", extra={"epoch": epoch})
            return
        if isinstance(outcome, RequestSuccess):
            self._handle_success(prompt, outcome.text)
        elif isinstance(outcome, FatalFailure):
            self._handle_fatal(outcome)
        else:
            self._handle_recoverable(outcome)

    def _handle_success(self, prompt: str, text: str) -> None:
        self.turn_number += 1
        self.last_response = text
        self.last_error = None

        parsed = parse_inputs(
            text,
            max_repeat=self.config.max_repeat,
            fallback=self.config.fallback_button,
        )
        buttons = [logical.button for logical in parsed.inputs]
        position = self._read_position()

        self.notes.begin_turn()
        directives = parse_note_directives(text)
        if not directives.empty:
            self._apply_note_directives(directives, buttons, self._claim_origin())

        record: TurnRecord | None = None
        if self._awaiting_verification is not None:
            record = self.ledger.complete_turn(self._awaiting_verification, position)
        self.ledger.begin_turn(self.turn_number)
        labels = parsed.labels()
        self._awaiting_verification = labels or None

        self.session.conversation_history = self.session_store.bound_history(
            [
                *self.session.conversation_history,
                {"role": "user", "content": prompt},
                {"role": "assistant", "content": text},
            ]
        )
        self._save_session()

        self.pacing.enqueue(parsed.inputs)
        self._append_log(parsed, record, text)
        self._status(self._describe_turn(parsed, record))

    def _apply_note_directives(
        self,
        directives: NoteDirectives,
        buttons: list[str],
        origin: Position | None,
    ) -> None:
        if directives.clear_all:
            self.notes.clear_all()
        for note_id in directives.clear_ids:
            self.notes.clear_note(note_id)
        for content in directives.notes:
            self.notes.add_note(content, current_buttons=buttons, origin=origin)
        self._save_session()

    def _handle_recoverable(self, outcome: RecoverableFailure) -> None:
        self.last_error = outcome.detail
        delay = self.lifecycle.backoff_delay()
        if self.state == "running":
            self._schedule_tick(self.lifecycle.next_delay(self.config.loop_interval))
        self._status(
            f"Request failed ({outcome.kind}): {outcome.detail}."
            f" Retrying with {delay:.1f}s extra delay."
        )

    def _handle_fatal(self, outcome: FatalFailure) -> None:
        self.stop()
        self._autosave()
        self._save_session()
        self._surface_error(outcome.detail, outcome.code)

    def _autosave(self) -> Path | None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path = Path(self.config.snapshot_dir) / f"autosave-{stamp}.ss0"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self.core.save_snapshot(path)
        except (OSError, RuntimeError) as exc:
            LOGGER.error("autosave_failed", extra={"path": str(path), "error": str(exc)})
            return None
        LOGGER.info("autosave_written", extra={"path": str(path)})
        self._status(f"Saved game state to {path}")
        return path

    def _save_session(self) -> bool:
        self.session.model = self.config.model
        self.session.feature_toggles = {
            "include_screenshot": self.config.include_screenshot,
            "include_ram": self.config.include_ram,
            "extended_thinking": self.config.extended_thinking,
        }
        self.session.notes = self.notes.list()
        self.session.next_note_id = self.notes.next_id
        return self.session_store.save(self.session)

    def _read_position(self) -> Position | None:
        return self.ground_truth.position()

    def _claim_origin(self) -> Position | None:
        """Where the move a note written now would report on started."""
        if self._awaiting_verification is not None:
            return self.ledger.position_before
        record = self.ledger.last_record
        return record.position_before if record is not None else None

    def _on_inputs_delivered(self) -> None:
        LOGGER.debug("inputs_delivered", extra={"turn": self.turn_number})
        if self._tick_deferred and self.state == "running":
            self._schedule_tick(0.0)

    def _set_state(self, state: OrchestratorState) -> None:
        self.state = state
        if self.listener is not None:
            self.listener.state_changed(state)

    def _status(self, message: str) -> None:
        if self.listener is not None:
            self.listener.log(message)

    def _surface_error(self, message: str, code: str) -> None:
        self.last_error = message
        LOGGER.error("orchestrator_error", extra={"code": code, "detail": message})
        if self.listener is not None:
            self.listener.error(message, code)

    @staticmethod
    def _describe_turn(parsed: ParsedInputs, record: TurnRecord | None) -> str:
        if parsed.explicit_none:
            pressed = "no input"
        else:
            pressed = ", ".join(parsed.labels())
            if parsed.used_fallback:
                pressed += " (fallback)"
        message = f"Pressing {pressed}"
        if record is not None:
            message += f"; previous turn {record.result}"
        return message

    def _append_log(self, parsed: ParsedInputs, record: TurnRecord | None, text: str) -> None:
        entry = {
            "log_version": LOG_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": self.client.model,
            "turn": self.turn_number,
            "inputs": parsed.labels(),
            "explicit_none": parsed.explicit_none,
            "used_fallback": parsed.used_fallback,
            "verified_turn": record.turn_number if record else None,
            "verified_inputs": record.inputs if record else None,
            "verdict": record.result if record else None,
            "reason": record.reason if record else None,
            "notes": len(self.notes),
            "response_excerpt": text[:RESPONSE_EXCERPT_CHARS],
        }
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
        except OSError as exc:
            LOGGER.error("turn_log_write_failed", extra={"error": str(exc)})
