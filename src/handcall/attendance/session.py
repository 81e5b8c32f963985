"""
CONTRACT: inline
ROLE: Detection-confirmation session state machine.

INPUTS:
  - PerceptionSource: open() / sample_once(handle) / close(handle)
  - Control calls: start, stop, request_stop, reset, select, confirm, reject
OUTPUTS:
  - Topic: attendance.status  Type: SessionStatus
  - Topic: attendance.confirmations  Type: ConfirmationEvent
  - Topic: vision.presence  Type: PresenceSample
  - ConfirmationSink.record(ConfirmationEvent)

CONFIG KEYS:
  - attendance.hold_threshold_ms: hold needed to confirm (default 1500)
  - attendance.grace_ms: tolerated gap inside a hold (default 0)
  - attendance.strict_sequencing: confirm in roster order only
  - attendance.max_subjects: bounded window over the roster (null = all)
  - attendance.auto_confirm: false -> wait for confirm()/reject() after each hold
  - attendance.snapshots.enabled: save the confirming frame as a JPEG
  - video.camera.fps: sampling rate of start_session_loop

PERF / TIMING:
  - one sample per tick; ticks never overlap
  - stop() returns after the source is released

FAILURE MODES:
  - acquisition failure -> IDLE with status.error -> log acquisition_failed
  - sample failure -> tick skipped -> log sample_failed
  - source crash mid-scan -> release, IDLE -> log source_failed
  - sink failure -> roster kept, status.warning -> log persist_failed
  - snapshot failure -> confirmation kept without a snapshot -> log snapshot_failed
  - guard failure on a selected subject -> no-op -> log confirm_rejected
  - cursor rejects its own active subject -> release, IDLE -> log invariant_violation

LOG EVENTS:
  - module=attendance.session, event=started|stopped|confirmed|confirm_rejected|
    candidate_rejected|acquisition_failed|sample_failed|source_failed|
    persist_failed|snapshot_failed|release_failed|invariant_violation|all_confirmed

TESTS:
  - tests/test_session.py must cover every transition and balanced acquire/release

CONTRACT DETAILS:
# Session states

IDLE -> ARMING -> SCANNING <-> AWAITING_CONFIRM
SCANNING -> RECORDED -> SCANNING (RECORDED is published, never resident)
SCANNING -> ALL_CONFIRMED (ignores signals until stop/reset)
any -> STOPPED -> IDLE (STOPPED is published, never resident)

# Stop and release

- request_stop() only sets a flag and is safe from any thread or callback.
- A tick checks the flag after sampling and before touching session state,
  so a stop never yields a half-applied confirmation.
- The handle is swapped out under the lock before close(), so it is closed
  exactly once however many stops race.
- Only a hard reset forgets confirmations and returns subjects to Absent.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from handcall.attendance.debounce import DebounceOutcome, DebounceTimer, IDLE as OUTCOME_IDLE
from handcall.attendance.errors import AcquisitionError, GuardViolation, InvariantViolation, PersistError, SampleError
from handcall.attendance.roster import Roster, RosterCursor
from handcall.contracts.messages import ConfirmationEvent, PresenceSignal, Subject
from handcall.core.clock import now_ns, wall_time_s
from handcall.core.config import get_path
from handcall.core.logging import LogEmitter


IDLE = "IDLE"
ARMING = "ARMING"
SCANNING = "SCANNING"
AWAITING_CONFIRM = "AWAITING_CONFIRM"
RECORDED = "RECORDED"
ALL_CONFIRMED = "ALL_CONFIRMED"
STOPPED = "STOPPED"

ACTIVE_STATES = frozenset({SCANNING, AWAITING_CONFIRM, ALL_CONFIRMED})

MODULE = "attendance.session"


@dataclass(frozen=True)
class SessionConfig:
    hold_threshold_ms: float = 1500.0
    strict_sequencing: bool = False
    max_subjects: Optional[int] = None
    auto_confirm: bool = True
    grace_ms: float = 0.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SessionConfig":
        attendance = config.get("attendance", {}) or {}
        max_subjects = attendance.get("max_subjects")
        return cls(
            hold_threshold_ms=float(attendance.get("hold_threshold_ms", 1500.0)),
            strict_sequencing=bool(attendance.get("strict_sequencing", False)),
            max_subjects=None if max_subjects is None else int(max_subjects),
            auto_confirm=bool(attendance.get("auto_confirm", True)),
            grace_ms=float(attendance.get("grace_ms", 0.0) or 0.0),
        )


class SessionStateMachine:
    """Owns the perception handle, the debounce timer and the roster cursor."""

    def __init__(
        self,
        roster: Roster,
        source: Any,
        sink: Optional[Any] = None,
        config: Optional[SessionConfig] = None,
        bus: Optional[Any] = None,
        logger: Optional[Any] = None,
        clock: Callable[[], int] = now_ns,
        wall_clock: Callable[[], float] = wall_time_s,
        cursor: Optional[RosterCursor] = None,
        camera_id: str = "cam0",
        snapshots: Optional[Any] = None,
    ) -> None:
        self._config = config or SessionConfig()
        self._roster = roster
        self._source = source
        self._sink = sink
        self._snapshots = snapshots
        self._bus = bus
        self._logger = logger if logger is not None else LogEmitter(bus, min_level="warning")
        self._clock = clock
        self._wall_clock = wall_clock
        self._camera_id = camera_id
        self._cursor = cursor or RosterCursor(
            roster,
            strict_sequencing=self._config.strict_sequencing,
            max_subjects=self._config.max_subjects,
        )
        self._debounce = DebounceTimer(self._config.hold_threshold_ms, self._config.grace_ms)

        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._pending_hard_reset = False
        self._state = IDLE
        self._handle: Any = None
        self._selected: Optional[str] = None
        self._candidate: Optional[str] = None
        self._candidate_frame: Any = None
        self._last_outcome = DebounceOutcome(OUTCOME_IDLE)
        self._message = "Idle"
        self._last_error: Optional[str] = None
        self._last_warning: Optional[str] = None
        self._last_status: Dict[str, Any] = {}
        self._seq = 0
        self._event_seq = 0
        self._presence_seq = 0

    # -- read side -----------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    @property
    def roster(self) -> Roster:
        return self._roster

    @property
    def cursor(self) -> RosterCursor:
        return self._cursor

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def stop_requested(self) -> bool:
        return self._cancel.is_set()

    def snapshot(self) -> Dict[str, Any]:
        """Consistent copy of status and roster for UI and export."""
        with self._lock:
            return {
                "status": dict(self._last_status) if self._last_status else self._status("snapshot"),
                "roster": [s.to_dict() for s in self._roster.snapshot()],
            }

    def roster_snapshot(self) -> List[Subject]:
        with self._lock:
            return self._roster.snapshot()

    # -- transitions ---------------------------------------------------

    def start(self) -> Dict[str, Any]:
        """Open the source and begin scanning.

        A hard reset requested while IDLE is applied here, before the source opens.
        """
        with self._lock:
            if self._state != IDLE:
                return self._publish("start_refused")
            if self._pending_hard_reset:
                self._apply_hard_reset()
            self._cancel.clear()
            self._pending_hard_reset = False
            self._last_error = None
            self._last_warning = None
            self._state = ARMING
            self._message = "Opening camera..."
            self._publish("arming")
            try:
                handle = self._source.open()
            except AcquisitionError as exc:
                return self._fail_acquisition(exc)
            except Exception as exc:  # noqa: BLE001
                return self._fail_acquisition(exc)
            self._handle = handle
            if self._cancel.is_set():
                return self._stop_locked("stopped_while_arming")
            self._debounce.reset()
            self._last_outcome = DebounceOutcome(OUTCOME_IDLE)
            self._state = SCANNING
            self._message = self._prompt()
            self._logger.emit("info", MODULE, "started", self._config_payload())
            return self._publish("started")

    def tick(self) -> Dict[str, Any]:
        """Run one sampling tick and return the status it produced."""
        with self._lock:
            if self._state not in ACTIVE_STATES:
                return self._status("inactive")
            if self._cancel.is_set():
                return self._stop_locked("stopped")
            if self._state == ALL_CONFIRMED:
                return self._status("all_confirmed")
            if self._state == AWAITING_CONFIRM:
                return self._status("awaiting_confirm")

            try:
                signal = self._source.sample_once(self._handle)
            except SampleError as exc:
                self._logger.emit("warning", MODULE, "sample_failed", {"error": str(exc)})
                return self._publish("sample_skipped")
            except Exception as exc:  # noqa: BLE001
                self._last_error = f"source failed: {exc}"
                self._logger.emit("error", MODULE, "source_failed", {"error": str(exc), "type": type(exc).__name__})
                return self._stop_locked("source_failed")

            if self._cancel.is_set():
                return self._stop_locked("stopped")
            return self._observe(signal)

    def request_stop(self, hard_reset: bool = False) -> None:
        """Ask the machine to stop at the next tick boundary. Never blocks."""
        if hard_reset:
            self._pending_hard_reset = True
        self._cancel.set()

    def stop(self, hard_reset: bool = False) -> Dict[str, Any]:
        self.request_stop(hard_reset=hard_reset)
        with self._lock:
            return self._stop_locked("reset" if self._pending_hard_reset else "stopped")

    def reset(self) -> Dict[str, Any]:
        return self.stop(hard_reset=True)

    def select(self, identifier: Optional[str]) -> Dict[str, Any]:
        """Request a specific subject for the next confirmed hold."""
        with self._lock:
            if identifier is None or identifier == "":
                self._selected = None
                self._debounce.reset()
                self._message = self._prompt()
                return self._publish("selection_cleared")
            if identifier not in self._roster:
                self._logger.emit("info", MODULE, "confirm_rejected", {"identifier": identifier, "reason": "unknown_subject"})
                return self._publish("rejected_unknown_subject")
            if identifier != self._selected:
                self._debounce.reset()
            self._selected = identifier
            self._message = self._prompt()
            return self._publish("selected")

    def clear_selection(self) -> Dict[str, Any]:
        return self.select(None)

    def confirm(self) -> Dict[str, Any]:
        """Accept the pending candidate (UI-gated mode)."""
        with self._lock:
            if self._state != AWAITING_CONFIRM or self._candidate is None:
                return self._status("confirm_ignored")
            if self._cancel.is_set():
                return self._stop_locked("stopped")
            identifier = self._candidate
            self._candidate = None
            frame, self._candidate_frame = self._candidate_frame, None
            self._state = SCANNING
            return self._apply_confirm(
                identifier, explicit=self._selected is not None, t_ns=self._clock(), frame=frame
            )

    def reject(self) -> Dict[str, Any]:
        """Decline the pending candidate; the subject stays Absent."""
        with self._lock:
            if self._state != AWAITING_CONFIRM or self._candidate is None:
                return self._status("reject_ignored")
            identifier = self._candidate
            self._candidate = None
            self._selected = None
            self._candidate_frame = None
            self._state = SCANNING
            self._logger.emit("info", MODULE, "candidate_rejected", {"identifier": identifier})
            self._message = self._prompt()
            return self._publish("candidate_rejected", identifier=identifier)

    # -- internals -----------------------------------------------------

    def _observe(self, signal: PresenceSignal) -> Dict[str, Any]:
        self._publish_presence(signal)
        outcome = self._debounce.observe(bool(signal.present), int(signal.t_ns))
        self._last_outcome = outcome
        target = self._target_subject()
        if not outcome.confirmed:
            self._message = self._hold_message(target, outcome)
            return self._publish("holding" if outcome.kind != OUTCOME_IDLE else "no_hand")

        if target is None:
            self._state = ALL_CONFIRMED
            self._message = "All subjects confirmed"
            self._logger.emit("info", MODULE, "all_confirmed", {"present": self._roster.present_count()})
            return self._publish("all_confirmed")

        if not self._config.auto_confirm:
            self._candidate = target.identifier
            self._candidate_frame = signal.frame
            self._state = AWAITING_CONFIRM
            self._message = f"Confirm {target.display_name} ({target.identifier})?"
            return self._publish("awaiting_confirm", identifier=target.identifier)

        return self._apply_confirm(
            target.identifier, explicit=self._selected is not None, t_ns=int(signal.t_ns), frame=signal.frame
        )

    def _apply_confirm(self, identifier: str, explicit: bool, t_ns: int, frame: Any = None) -> Dict[str, Any]:
        try:
            subject = self._cursor.confirm(identifier)
        except GuardViolation as exc:
            if not explicit:
                return self._fail_invariant(identifier, exc)
            self._selected = None
            self._state = SCANNING
            self._logger.emit("info", MODULE, "confirm_rejected", {"identifier": identifier, "reason": exc.reason})
            self._message = f"{identifier} rejected: {exc.reason.replace('_', ' ')}"
            return self._publish(f"rejected_{exc.reason}", identifier=identifier)

        self._selected = None
        self._event_seq += 1
        event = ConfirmationEvent(
            subject_identifier=subject.identifier,
            display_name=subject.display_name,
            confirmed_at=float(self._wall_clock()),
            t_ns=int(t_ns),
            seq=self._event_seq,
            snapshot_path=self._save_snapshot(subject.identifier, self._event_seq, frame),
        )
        self._persist(event)
        if self._bus is not None:
            self._bus.publish("attendance.confirmations", event.to_dict())
        self._logger.emit("info", MODULE, "confirmed", {"identifier": subject.identifier, "seq": event.seq})

        self._state = RECORDED
        self._message = f"{subject.display_name} marked present"
        recorded = self._publish("recorded", event=event.to_dict())
        self._state = SCANNING
        return recorded

    def _save_snapshot(self, identifier: str, seq: int, frame: Any) -> Optional[str]:
        if self._snapshots is None or frame is None:
            return None
        try:
            return str(self._snapshots.save(identifier, seq, frame))
        except Exception as exc:  # noqa: BLE001
            self._logger.emit("warning", MODULE, "snapshot_failed", {"identifier": identifier, "seq": seq, "error": str(exc)})
            return None

    def _persist(self, event: ConfirmationEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink.record(event)
        except PersistError as exc:
            self._persist_failed(event, exc)
        except Exception as exc:  # noqa: BLE001
            self._persist_failed(event, exc)

    def _persist_failed(self, event: ConfirmationEvent, exc: Exception) -> None:
        self._last_warning = f"confirmation for {event.subject_identifier} not saved: {exc}"
        self._logger.emit(
            "warning",
            MODULE,
            "persist_failed",
            {"identifier": event.subject_identifier, "seq": event.seq, "error": str(exc)},
        )

    def _fail_acquisition(self, exc: Exception) -> Dict[str, Any]:
        self._state = IDLE
        self._handle = None
        self._last_error = f"camera unavailable: {exc}"
        self._message = f"Error: {self._last_error}"
        self._logger.emit("error", MODULE, "acquisition_failed", {"error": str(exc), "type": type(exc).__name__})
        return self._publish("acquisition_failed")

    def _fail_invariant(self, identifier: str, exc: GuardViolation) -> Dict[str, Any]:
        violation = InvariantViolation(f"active subject {identifier} rejected ({exc.reason})")
        self._last_error = f"invariant violation: {violation}"
        self._logger.emit(
            "error",
            MODULE,
            "invariant_violation",
            {
                "identifier": identifier,
                "reason": exc.reason,
                "confirmed": self._cursor.confirmed_identifiers(),
            },
        )
        return self._stop_locked("invariant_violation")

    def _stop_locked(self, reason: str) -> Dict[str, Any]:
        hard = self._pending_hard_reset
        self._pending_hard_reset = False
        prior = self._state
        released = self._release()
        self._debounce.reset()
        self._last_outcome = DebounceOutcome(OUTCOME_IDLE)
        self._selected = None
        self._candidate = None
        self._candidate_frame = None
        if prior == IDLE and not released and not hard:
            return self._status(reason, prior_state=prior, released=False, hard_reset=False)
        if hard:
            self._apply_hard_reset()
        self._state = STOPPED
        if self._last_error and reason != "stopped":
            self._message = f"Error: {self._last_error}"
        else:
            self._message = "Attendance reset" if hard else "Attendance stopped"
        stopped = self._publish(reason, prior_state=prior, released=released, hard_reset=hard)
        self._state = IDLE
        self._logger.emit("info", MODULE, "stopped", {"reason": reason, "prior_state": prior, "hard_reset": hard})
        return stopped

    def _apply_hard_reset(self) -> None:
        self._cursor.clear()
        self._roster.mark_all_absent()
        self._last_error = None
        self._last_warning = None

    def _release(self) -> bool:
        handle, self._handle = self._handle, None
        if handle is None:
            return False
        try:
            self._source.close(handle)
        except Exception as exc:  # noqa: BLE001
            self._logger.emit("warning", MODULE, "release_failed", {"error": str(exc)})
        return True

    def _target_subject(self) -> Optional[Subject]:
        if self._selected is not None:
            return self._roster.get(self._selected)
        return self._cursor.active_subject()

    def _prompt(self) -> str:
        target = self._target_subject()
        if target is None:
            return "All subjects confirmed"
        return f"Raise your hand, {target.display_name} ({target.identifier})"

    def _hold_message(self, target: Optional[Subject], outcome: DebounceOutcome) -> str:
        if target is None:
            return "All subjects confirmed"
        if outcome.kind == OUTCOME_IDLE:
            return f"No hand detected for {target.display_name}"
        return (
            f"Hand detected for {target.display_name} "
            f"({outcome.elapsed_ms / 1000.0:.1f}s / {self._config.hold_threshold_ms / 1000.0:.1f}s)"
        )

    def _publish_presence(self, signal: PresenceSignal) -> None:
        if self._bus is None:
            return
        self._presence_seq += 1
        self._bus.publish("vision.presence", signal.to_message(self._presence_seq, self._camera_id))

    def _config_payload(self) -> Dict[str, Any]:
        return {
            "hold_threshold_ms": self._config.hold_threshold_ms,
            "grace_ms": self._config.grace_ms,
            "strict_sequencing": self._config.strict_sequencing,
            "max_subjects": self._config.max_subjects,
            "auto_confirm": self._config.auto_confirm,
            "roster_size": len(self._roster),
        }

    def _status(self, reason: str, **extra: Any) -> Dict[str, Any]:
        active = self._cursor.active_subject()
        target = self._target_subject()
        present = self._roster.present_count()
        status = {
            "t_ns": self._clock(),
            "seq": self._seq,
            "state": self._state,
            "reason": reason,
            "message": self._message,
            "active_subject": active.identifier if active else None,
            "target_subject": target.identifier if target else None,
            "selected": self._selected,
            "candidate": self._candidate,
            "hold": {
                "kind": self._last_outcome.kind,
                "elapsed_ms": self._last_outcome.elapsed_ms,
                "threshold_ms": self._config.hold_threshold_ms,
            },
            "counts": {
                "total": len(self._roster),
                "present": present,
                "absent": len(self._roster) - present,
            },
            "confirmed": self._cursor.confirmed_identifiers(),
            "error": self._last_error,
            "warning": self._last_warning,
        }
        status.update(extra)
        return status

    def _publish(self, reason: str, **extra: Any) -> Dict[str, Any]:
        self._seq += 1
        status = self._status(reason, **extra)
        self._last_status = status
        if self._bus is not None:
            self._bus.publish("attendance.status", status)
        return status


def start_session_loop(
    machine: SessionStateMachine,
    config: Dict[str, Any],
    logger: Any,
    stop_event: threading.Event,
    autostart: bool = False,
) -> threading.Thread:
    """Drive machine.tick() at video.camera.fps until stop_event is set."""
    fps = float(get_path(config, "video.camera.fps", 30) or 30)
    period_s = 1.0 / fps if fps > 0 else 1.0 / 30.0

    def _run() -> None:
        if autostart:
            machine.start()
        next_tick = time.monotonic()
        try:
            while not stop_event.is_set():
                if not machine.is_active:
                    time.sleep(0.05)
                    next_tick = time.monotonic()
                    continue
                machine.tick()
                next_tick += period_s
                delay = next_tick - time.monotonic()
                if delay > 0:
                    time.sleep(delay)
                else:
                    next_tick = time.monotonic()
        finally:
            machine.stop()
            logger.emit("info", MODULE, "loop_exited", {})

    thread = threading.Thread(target=_run, name="session-loop", daemon=True)
    thread.start()
    return thread
