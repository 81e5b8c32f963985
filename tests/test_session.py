import threading
import time
import unittest
from typing import Any, Callable, List, Optional

from handcall.attendance.errors import AcquisitionError, AlreadyConfirmed, PersistError, SampleError
from handcall.attendance.roster import Roster, RosterCursor
from handcall.attendance.session import (
    ALL_CONFIRMED,
    AWAITING_CONFIRM,
    IDLE,
    RECORDED,
    SCANNING,
    STOPPED,
    SessionConfig,
    SessionStateMachine,
)
from handcall.attendance.sink import MemorySink
from handcall.contracts.messages import PresenceSignal, Subject
from handcall.core.bus import Bus, drain


STEP_NS = 100 * 1_000_000
HOLD = [True] * 16


class _DummyLogger:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def emit(self, level: str, module: str, event: str, payload: Optional[dict] = None) -> None:
        self.events.append((level, module, event, payload or {}))

    def names(self) -> List[str]:
        return [e[2] for e in self.events]


class _RecordingSource:
    """Plays scripted samples and counts every open/close."""

    def __init__(self, samples: Optional[List[Any]] = None, open_error: Optional[Exception] = None) -> None:
        self.samples = list(samples or [])
        self.open_error = open_error
        self.on_open: Optional[Callable[[], None]] = None
        self.on_sample: Optional[Callable[[int], None]] = None
        self.open_count = 0
        self.close_count = 0
        self.sample_count = 0
        self.live: set = set()
        self.frame: Any = None
        self._t_ns = 0

    def open(self) -> object:
        if self.open_error is not None:
            raise self.open_error
        self.open_count += 1
        handle = object()
        self.live.add(id(handle))
        if self.on_open is not None:
            self.on_open()
        return handle

    def sample_once(self, handle: object) -> PresenceSignal:
        if id(handle) not in self.live:
            raise AssertionError("sampled a closed handle")
        self.sample_count += 1
        if self.on_sample is not None:
            self.on_sample(self.sample_count)
        item = self.samples.pop(0) if self.samples else False
        if isinstance(item, Exception):
            raise item
        signal = PresenceSignal(present=bool(item), t_ns=self._t_ns, frame=self.frame)
        self._t_ns += STEP_NS
        return signal

    def close(self, handle: object) -> None:
        self.close_count += 1
        self.live.discard(id(handle))


class _FailingSink:
    def record(self, event: Any) -> None:
        raise PersistError("disk full")


class _SnapshotRecorder:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.saves: List[tuple] = []

    def save(self, identifier: str, seq: int, frame: Any) -> str:
        if self.error is not None:
            raise self.error
        self.saves.append((identifier, seq, frame))
        return f"snaps/{seq:06d}_{identifier}.jpg"


class _BrokenCursor(RosterCursor):
    def confirm(self, identifier: str) -> Subject:
        raise AlreadyConfirmed(identifier)


def _roster(n: int = 3) -> Roster:
    return Roster(Subject(f"S{i}", f"Name {i}") for i in range(1, n + 1))


def _machine(samples: Optional[List[Any]] = None, roster: Optional[Roster] = None, **kwargs: Any):
    source = kwargs.pop("source", None) or _RecordingSource(samples)
    config = kwargs.pop("config", None) or SessionConfig()
    logger = _DummyLogger()
    machine = SessionStateMachine(
        roster if roster is not None else _roster(),
        source,
        sink=kwargs.pop("sink", None),
        config=config,
        bus=kwargs.pop("bus", None),
        logger=logger,
        clock=lambda: 0,
        wall_clock=lambda: 1_700_000_000.0,
        **kwargs,
    )
    return machine, source, logger


def _tick(machine: SessionStateMachine, n: int) -> List[dict]:
    return [machine.tick() for _ in range(n)]


class SessionLifecycleTests(unittest.TestCase):
    def test_start_scans_and_stop_releases(self) -> None:
        machine, source, logger = _machine()
        status = machine.start()
        self.assertEqual(status["state"], SCANNING)
        self.assertEqual(status["message"], "Raise your hand, Name 1 (S1)")
        self.assertEqual(source.open_count, 1)
        stopped = machine.stop()
        self.assertEqual(stopped["state"], STOPPED)
        self.assertTrue(stopped["released"])
        self.assertEqual(machine.state, IDLE)
        self.assertEqual(source.close_count, 1)
        self.assertIn("started", logger.names())
        self.assertIn("stopped", logger.names())

    def test_start_while_active_is_refused(self) -> None:
        machine, source, _ = _machine()
        machine.start()
        status = machine.start()
        self.assertEqual(status["reason"], "start_refused")
        self.assertEqual(source.open_count, 1)
        machine.stop()

    def test_tick_when_idle_does_not_sample(self) -> None:
        machine, source, _ = _machine(HOLD)
        self.assertEqual(machine.tick()["reason"], "inactive")
        self.assertEqual(source.sample_count, 0)

    def test_acquisition_failure_returns_to_idle(self) -> None:
        source = _RecordingSource(open_error=AcquisitionError("no camera"))
        machine, _, logger = _machine(source=source)
        status = machine.start()
        self.assertEqual(status["state"], IDLE)
        self.assertEqual(status["reason"], "acquisition_failed")
        self.assertIn("camera unavailable", status["error"])
        self.assertIn("acquisition_failed", logger.names())
        self.assertEqual(source.close_count, 0)
        # A later start may succeed once the camera is back.
        source.open_error = None
        self.assertEqual(machine.start()["state"], SCANNING)
        self.assertIsNone(machine.snapshot()["status"]["error"])
        machine.stop()

    def test_stop_requested_while_arming_closes_fresh_handle(self) -> None:
        machine, source, _ = _machine(HOLD)
        source.on_open = machine.request_stop
        status = machine.start()
        self.assertEqual(status["reason"], "stopped_while_arming")
        self.assertEqual(machine.state, IDLE)
        self.assertEqual((source.open_count, source.close_count), (1, 1))
        self.assertEqual(source.sample_count, 0)

    def test_concurrent_stops_release_once(self) -> None:
        machine, source, _ = _machine()
        machine.start()
        threads = [threading.Thread(target=machine.stop) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=2.0)
        self.assertEqual(source.close_count, 1)
        self.assertEqual(machine.state, IDLE)

    def test_stop_during_sample_discards_pending_confirmation(self) -> None:
        sink = MemorySink()
        machine, source, _ = _machine(HOLD, sink=sink)
        source.on_sample = lambda n: machine.request_stop() if n == 16 else None
        machine.start()
        statuses = _tick(machine, 16)
        self.assertEqual(statuses[-1]["reason"], "stopped")
        self.assertEqual(sink.events, [])
        self.assertEqual(machine.roster.get("S1").status, "Absent")
        self.assertEqual(source.close_count, 1)

    def test_stop_from_other_thread_while_sample_blocks(self) -> None:
        sink = MemorySink()
        machine, source, _ = _machine(HOLD, sink=sink)
        entered = threading.Event()
        gate = threading.Event()

        def _block(n: int) -> None:
            if n == 16:
                entered.set()
                gate.wait(timeout=2.0)

        source.on_sample = _block
        machine.start()
        _tick(machine, 15)
        results: dict = {}
        ticker = threading.Thread(target=lambda: results.setdefault("tick", machine.tick()))
        ticker.start()
        self.assertTrue(entered.wait(timeout=2.0))
        stopper = threading.Thread(target=lambda: results.setdefault("stop", machine.stop()))
        stopper.start()
        for _ in range(200):
            if machine.stop_requested:
                break
            time.sleep(0.01)
        gate.set()
        ticker.join(timeout=2.0)
        stopper.join(timeout=2.0)

        self.assertEqual(results["tick"]["reason"], "stopped")
        self.assertTrue(results["tick"]["released"])
        self.assertFalse(results["stop"]["released"])
        self.assertEqual(source.close_count, 1)
        self.assertEqual(sink.events, [])
        self.assertEqual(machine.roster.get("S1").status, "Absent")
        self.assertEqual(machine.cursor.confirmed_identifiers(), [])
        self.assertEqual(machine.state, IDLE)

    def test_stop_after_tick_stopped_publishes_nothing(self) -> None:
        bus = Bus(max_queue_depth=8)
        q_status = bus.subscribe("attendance.status", max_queue_depth=256)
        machine, source, logger = _machine(HOLD, bus=bus)
        machine.start()
        machine.request_stop()
        self.assertEqual(machine.tick()["reason"], "stopped")
        self.assertEqual([m["state"] for m in drain(q_status)][-1], STOPPED)
        stopped_logs = logger.names().count("stopped")

        status = machine.stop()
        self.assertFalse(status["released"])
        self.assertEqual(status["state"], IDLE)
        self.assertEqual(drain(q_status), [])
        self.assertEqual(logger.names().count("stopped"), stopped_logs)
        self.assertEqual(source.close_count, 1)


class SessionConfirmationTests(unittest.TestCase):
    def test_hold_confirms_active_subject(self) -> None:
        bus = Bus(max_queue_depth=8)
        q_status = bus.subscribe("attendance.status", max_queue_depth=256)
        q_events = bus.subscribe("attendance.confirmations", max_queue_depth=16)
        sink = MemorySink()
        machine, source, _ = _machine(HOLD, sink=sink, bus=bus)
        machine.start()
        statuses = _tick(machine, 16)
        self.assertEqual(statuses[0]["reason"], "holding")
        self.assertEqual(statuses[0]["message"], "Hand detected for Name 1 (0.0s / 1.5s)")
        self.assertTrue(all(s["state"] == SCANNING for s in statuses[:15]))
        self.assertEqual(statuses[-1]["state"], RECORDED)
        self.assertEqual(statuses[-1]["event"]["subject_identifier"], "S1")
        self.assertEqual(machine.state, SCANNING)
        self.assertEqual(machine.roster.get("S1").status, "Present")
        self.assertEqual(machine.cursor.active_subject().identifier, "S2")
        self.assertEqual([e.subject_identifier for e in sink.events], ["S1"])

        states = [msg["state"] for msg in drain(q_status)]
        self.assertIn(RECORDED, states)
        self.assertEqual(len(drain(q_events)), 1)
        machine.stop()
        self.assertEqual(source.open_count, source.close_count)

    def test_no_hand_message(self) -> None:
        machine, _, _ = _machine([False])
        machine.start()
        status = machine.tick()
        self.assertEqual(status["reason"], "no_hand")
        self.assertEqual(status["message"], "No hand detected for Name 1")
        machine.stop()

    def test_gap_restarts_hold(self) -> None:
        machine, _, _ = _machine([True] * 10 + [False] + HOLD)
        machine.start()
        statuses = _tick(machine, 27)
        recorded = [i for i, s in enumerate(statuses) if s["state"] == RECORDED]
        self.assertEqual(recorded, [26])
        machine.stop()

    def test_confirmations_follow_roster_order(self) -> None:
        sink = MemorySink()
        machine, _, _ = _machine(HOLD * 3, sink=sink)
        machine.start()
        _tick(machine, 48)
        self.assertEqual([e.subject_identifier for e in sink.events], ["S1", "S2", "S3"])
        self.assertEqual([e.seq for e in sink.events], [1, 2, 3])
        machine.stop()

    def test_all_confirmed_ignores_signals(self) -> None:
        machine, source, logger = _machine(HOLD * 2, roster=_roster(1))
        machine.start()
        _tick(machine, 32)
        self.assertEqual(machine.state, ALL_CONFIRMED)
        self.assertIn("all_confirmed", logger.names())
        before = source.sample_count
        self.assertEqual(machine.tick()["reason"], "all_confirmed")
        self.assertEqual(source.sample_count, before)
        machine.stop()
        self.assertEqual(source.close_count, 1)

    def test_sample_error_skips_tick(self) -> None:
        machine, _, logger = _machine([SampleError("blurry")] + HOLD)
        machine.start()
        status = machine.tick()
        self.assertEqual(status["reason"], "sample_skipped")
        self.assertEqual(machine.state, SCANNING)
        self.assertIn("sample_failed", logger.names())
        statuses = _tick(machine, 16)
        self.assertEqual(statuses[-1]["state"], RECORDED)
        machine.stop()

    def test_source_crash_releases_and_idles(self) -> None:
        machine, source, logger = _machine([True, RuntimeError("usb unplugged")])
        machine.start()
        machine.tick()
        status = machine.tick()
        self.assertEqual(status["reason"], "source_failed")
        self.assertEqual(machine.state, IDLE)
        self.assertIn("usb unplugged", status["error"])
        self.assertEqual(source.close_count, 1)
        self.assertIn("source_failed", logger.names())

    def test_persist_failure_keeps_roster(self) -> None:
        machine, _, logger = _machine(HOLD, sink=_FailingSink())
        machine.start()
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["state"], RECORDED)
        self.assertIn("disk full", status["warning"])
        self.assertEqual(machine.roster.get("S1").status, "Present")
        self.assertIn("persist_failed", logger.names())
        machine.stop()

    def test_confirming_frame_saved_as_snapshot(self) -> None:
        sink = MemorySink()
        snapshots = _SnapshotRecorder()
        machine, source, _ = _machine(HOLD, sink=sink, snapshots=snapshots)
        source.frame = "frame-0"
        machine.start()
        status = _tick(machine, 16)[-1]
        self.assertEqual(snapshots.saves, [("S1", 1, "frame-0")])
        self.assertEqual(status["event"]["snapshot_path"], "snaps/000001_S1.jpg")
        self.assertEqual(sink.events[0].snapshot_path, "snaps/000001_S1.jpg")
        machine.stop()

    def test_snapshot_failure_keeps_confirmation(self) -> None:
        sink = MemorySink()
        snapshots = _SnapshotRecorder(error=PersistError("read-only"))
        machine, source, logger = _machine(HOLD, sink=sink, snapshots=snapshots)
        source.frame = "frame-0"
        machine.start()
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["state"], RECORDED)
        self.assertIsNone(sink.events[0].snapshot_path)
        self.assertEqual(machine.roster.get("S1").status, "Present")
        self.assertIn("snapshot_failed", logger.names())
        machine.stop()

    def test_no_frame_skips_snapshot(self) -> None:
        snapshots = _SnapshotRecorder()
        machine, _, _ = _machine(HOLD, snapshots=snapshots)
        machine.start()
        status = _tick(machine, 16)[-1]
        self.assertEqual(snapshots.saves, [])
        self.assertIsNone(status["event"]["snapshot_path"])
        machine.stop()

    def test_cursor_rejecting_active_subject_terminates(self) -> None:
        roster = _roster(2)
        machine, source, logger = _machine(HOLD, roster=roster, cursor=_BrokenCursor(roster))
        machine.start()
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["reason"], "invariant_violation")
        self.assertIn("active subject S1 rejected", status["error"])
        self.assertEqual(machine.state, IDLE)
        self.assertEqual(source.close_count, 1)
        self.assertIn("invariant_violation", logger.names())


class SessionSelectionTests(unittest.TestCase):
    def test_selected_subject_confirmed_out_of_order(self) -> None:
        machine, _, _ = _machine(HOLD)
        machine.start()
        self.assertEqual(machine.select("S3")["selected"], "S3")
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["event"]["subject_identifier"], "S3")
        self.assertIsNone(status["selected"])
        self.assertEqual(machine.cursor.active_subject().identifier, "S1")
        machine.stop()

    def test_strict_selection_is_rejected_then_active_confirmed(self) -> None:
        config = SessionConfig(strict_sequencing=True)
        machine, _, logger = _machine(HOLD * 2, config=config)
        machine.start()
        machine.select("S2")
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["reason"], "rejected_not_active")
        self.assertEqual(status["state"], SCANNING)
        self.assertIsNone(status["selected"])
        self.assertEqual(machine.roster.get("S2").status, "Absent")
        self.assertIn("confirm_rejected", logger.names())
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["event"]["subject_identifier"], "S1")
        machine.stop()

    def test_selecting_confirmed_subject_is_rejected(self) -> None:
        machine, _, _ = _machine(HOLD * 2)
        machine.start()
        _tick(machine, 16)
        machine.select("S1")
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["reason"], "rejected_already_confirmed")
        self.assertEqual(machine.cursor.confirmed_identifiers(), ["S1"])
        machine.stop()

    def test_unknown_selection(self) -> None:
        machine, _, _ = _machine()
        status = machine.select("S404")
        self.assertEqual(status["reason"], "rejected_unknown_subject")
        self.assertIsNone(status["selected"])
        self.assertEqual(machine.clear_selection()["reason"], "selection_cleared")

    def test_changing_selection_restarts_hold(self) -> None:
        machine, _, _ = _machine(HOLD)
        machine.start()
        _tick(machine, 10)
        machine.select("S2")
        statuses = _tick(machine, 6)
        self.assertTrue(all(s["state"] == SCANNING for s in statuses))
        self.assertAlmostEqual(statuses[-1]["hold"]["elapsed_ms"], 500.0)
        machine.stop()


class SessionGatedTests(unittest.TestCase):
    def test_confirm_and_reject_candidates(self) -> None:
        sink = MemorySink()
        machine, source, logger = _machine(HOLD * 2, sink=sink, config=SessionConfig(auto_confirm=False))
        machine.start()
        status = _tick(machine, 16)[-1]
        self.assertEqual(status["state"], AWAITING_CONFIRM)
        self.assertEqual(status["candidate"], "S1")
        before = source.sample_count
        self.assertEqual(machine.tick()["reason"], "awaiting_confirm")
        self.assertEqual(source.sample_count, before)

        status = machine.confirm()
        self.assertEqual(status["state"], RECORDED)
        self.assertEqual(machine.state, SCANNING)
        self.assertEqual([e.subject_identifier for e in sink.events], ["S1"])

        status = _tick(machine, 16)[-1]
        self.assertEqual(status["candidate"], "S2")
        status = machine.reject()
        self.assertEqual(status["reason"], "candidate_rejected")
        self.assertEqual(machine.state, SCANNING)
        self.assertEqual(machine.roster.get("S2").status, "Absent")
        self.assertIn("candidate_rejected", logger.names())
        machine.stop()

    def test_gated_confirm_saves_candidate_frame(self) -> None:
        snapshots = _SnapshotRecorder()
        machine, source, _ = _machine(HOLD, snapshots=snapshots, config=SessionConfig(auto_confirm=False))
        source.frame = "frame-0"
        machine.start()
        _tick(machine, 16)
        source.frame = "frame-later"
        machine.confirm()
        self.assertEqual(snapshots.saves, [("S1", 1, "frame-0")])
        machine.stop()

    def test_confirm_without_candidate_is_ignored(self) -> None:
        machine, _, _ = _machine(config=SessionConfig(auto_confirm=False))
        self.assertEqual(machine.confirm()["reason"], "confirm_ignored")
        self.assertEqual(machine.reject()["reason"], "reject_ignored")

    def test_stop_while_awaiting_clears_candidate(self) -> None:
        machine, source, _ = _machine(HOLD, config=SessionConfig(auto_confirm=False))
        machine.start()
        _tick(machine, 16)
        machine.stop()
        self.assertIsNone(machine.snapshot()["status"]["candidate"])
        self.assertEqual(machine.roster.get("S1").status, "Absent")
        self.assertEqual(source.close_count, 1)


class SessionResetTests(unittest.TestCase):
    def test_soft_stop_keeps_confirmations(self) -> None:
        machine, source, _ = _machine(HOLD)
        machine.start()
        _tick(machine, 16)
        machine.stop()
        self.assertEqual(machine.roster.get("S1").status, "Present")
        machine.start()
        self.assertEqual(machine.cursor.active_subject().identifier, "S2")
        machine.stop()
        self.assertEqual((source.open_count, source.close_count), (2, 2))

    def test_reset_clears_session(self) -> None:
        machine, source, _ = _machine(HOLD)
        machine.start()
        _tick(machine, 16)
        status = machine.reset()
        self.assertEqual(status["reason"], "reset")
        self.assertTrue(status["hard_reset"])
        self.assertEqual(status["message"], "Attendance reset")
        self.assertEqual(machine.state, IDLE)
        self.assertEqual(machine.roster.present_count(), 0)
        self.assertEqual(machine.cursor.confirmed_identifiers(), [])
        self.assertEqual(source.close_count, 1)

    def test_reset_from_idle(self) -> None:
        machine, source, _ = _machine()
        status = machine.reset()
        self.assertFalse(status["released"])
        self.assertEqual(machine.state, IDLE)
        self.assertEqual(source.close_count, 0)

    def test_hard_reset_requested_while_idle_applies_on_start(self) -> None:
        machine, source, _ = _machine(HOLD)
        machine.start()
        _tick(machine, 16)
        machine.stop()
        self.assertEqual(machine.roster.get("S1").status, "Present")
        machine.request_stop(hard_reset=True)
        status = machine.start()
        self.assertEqual(status["state"], SCANNING)
        self.assertEqual(machine.roster.get("S1").status, "Absent")
        self.assertEqual(machine.cursor.confirmed_identifiers(), [])
        self.assertEqual(status["active_subject"], "S1")
        machine.stop()
        self.assertEqual((source.open_count, source.close_count), (2, 2))

    def test_snapshot_roster_is_detached(self) -> None:
        machine, _, _ = _machine()
        snap = machine.snapshot()
        snap["roster"][0]["status"] = "Present"
        self.assertEqual(machine.roster.get("S1").status, "Absent")
        self.assertEqual(snap["status"]["counts"], {"total": 3, "present": 0, "absent": 3})


if __name__ == "__main__":
    unittest.main()
