"""
CONTRACT: inline
ROLE: Orchestration entrypoint for a HandCall attendance run.

INPUTS:
  - CLI: --config, --mode, --source, --export
OUTPUTS:
  - Topic: log.events  Type: LogEvent
  - <run_dir>/attendance/attendance_list.csv on exit
  - <run_dir>/attendance/snapshots/*.jpg when attendance.snapshots.enabled

CONFIG KEYS:
  - runtime.fail_fast: exit non-zero after a thread crash (bool)
  - runtime.artifacts.*: see core.artifacts
  - perception.source: hands | replay
  - attendance.export.path: export file written on exit

PERF / TIMING:
  - start sinks and logging before the session loop; stop the loop first

FAILURE MODES:
  - thread crash -> write crash/crash.json -> log thread_crash -> stop
  - invalid mode -> log invalid_mode -> exit

LOG EVENTS:
  - module=main.run, event=started|shutdown|exported|thread_crash|crash|invalid_mode

TESTS:
  - tests/test_run.py covers build_source and a headless replay run
"""

from __future__ import annotations

import argparse
import json
import sys
import threading
import time
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

from handcall.attendance.export import write_export
from handcall.attendance.roster import roster_from_config
from handcall.attendance.session import ALL_CONFIRMED, SessionConfig, SessionStateMachine, start_session_loop
from handcall.attendance.sink import build_sink
from handcall.attendance.snapshots import build_snapshot_writer
from handcall.core.artifacts import create_run_dir, write_run_metadata
from handcall.core.bus import Bus, drain_latest
from handcall.core.clock import now_ns
from handcall.core.config import get_path, load_config
from handcall.core.log_sink import start_log_sink
from handcall.core.logging import LogEmitter
from handcall.ui.server import start_ui_server
from handcall.ui.telemetry import start_telemetry
from handcall.vision.replay import ReplayPresenceSource


MODES = ("live", "headless")


def build_source(config: Dict[str, Any]) -> Any:
    kind = str(get_path(config, "perception.source", "hands") or "hands").lower()
    if kind == "replay":
        return ReplayPresenceSource.from_config(config)
    if kind == "hands":
        from handcall.vision.hands import HandPresenceSource

        return HandPresenceSource.from_config(config)
    raise ValueError(f"unknown perception.source: {kind}")


def _ensure_artifacts(config: Dict[str, Any]) -> Path:
    runtime = config.setdefault("runtime", {})
    artifacts_cfg = runtime.setdefault("artifacts", {})
    base_dir = str(artifacts_cfg.get("dir", "artifacts"))
    retention = artifacts_cfg.get("retention", {})
    if not isinstance(retention, dict):
        retention = {}
    run_dir = create_run_dir(base_dir, run_id=str(runtime.get("run_id", "") or ""), max_runs=int(retention.get("max_runs", 10)))
    runtime["run_id"] = run_dir.name
    artifacts_cfg["dir_run"] = str(run_dir)
    write_run_metadata(run_dir, config)
    return run_dir


def _install_crash_handlers(
    bus: Bus,
    run_dir: Path,
    config: Dict[str, Any],
    logger: LogEmitter,
    stop_event: threading.Event,
) -> tuple[threading.Event, Dict[str, Any]]:
    fail_fast = bool(config.get("runtime", {}).get("fail_fast", True))
    crash_event = threading.Event()
    crash_info: Dict[str, Any] = {}
    q_status = bus.subscribe("attendance.status", max_queue_depth=4)

    def _write_crash_report(exc_type: type[BaseException], exc: BaseException, tb, thread_name: str) -> None:
        crash_dir = run_dir / "crash"
        crash_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "t_ns": now_ns(),
            "thread": thread_name,
            "exception": {
                "type": getattr(exc_type, "__name__", str(exc_type)),
                "message": str(exc),
                "traceback": traceback.format_exception(exc_type, exc, tb),
            },
            "runtime": {
                "run_id": config.get("runtime", {}).get("run_id"),
                "fail_fast": fail_fast,
            },
            "last_status": drain_latest(q_status),
        }
        try:
            with open(crash_dir / "crash.json", "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, default=str)
        except OSError as write_exc:
            print(f"Failed to write crash report: {write_exc}", file=sys.stderr)

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        crash_info.clear()
        crash_info.update(
            {
                "thread": getattr(args.thread, "name", "<unknown>"),
                "type": getattr(args.exc_type, "__name__", str(args.exc_type)),
                "message": str(args.exc_value),
            }
        )
        _write_crash_report(args.exc_type, args.exc_value, args.exc_traceback, crash_info["thread"])
        logger.emit("error", "main.run", "thread_crash", dict(crash_info))
        crash_event.set()
        stop_event.set()

    threading.excepthook = _thread_excepthook

    def _sys_excepthook(exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        _write_crash_report(exc_type, exc, tb, "main")
        logger.emit("error", "main.run", "crash", {"thread": "main", "type": getattr(exc_type, "__name__", str(exc_type)), "message": str(exc)})
        crash_event.set()
        stop_event.set()
        if fail_fast:
            raise SystemExit(1)

    sys.excepthook = _sys_excepthook
    return crash_event, crash_info


def _export_path(config: Dict[str, Any], run_dir: Path, override: Optional[str]) -> str:
    if override:
        return override
    configured = str(get_path(config, "attendance.export.path", "") or "")
    return configured or str(run_dir / "attendance" / "attendance_list.csv")


def run_headless(machine: SessionStateMachine, source: Any, stop_event: threading.Event, poll_s: float = 0.05) -> None:
    """Block until every subject is confirmed, the replay runs out, or the session dies."""
    while not stop_event.is_set():
        state = machine.state
        if state == ALL_CONFIRMED or machine.cursor.is_exhausted():
            return
        if getattr(source, "exhausted", False):
            return
        if not machine.is_active and machine.snapshot()["status"].get("error"):
            return
        time.sleep(poll_s)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="HandCall hand-raise attendance")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--mode", default="live", help="Run mode (live|headless)")
    parser.add_argument("--source", default=None, help="Override perception.source (hands|replay)")
    parser.add_argument("--export", default=None, help="Write the roster export here on exit")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.source:
        config.setdefault("perception", {})["source"] = args.source
    run_dir = _ensure_artifacts(config)
    bus = Bus(max_queue_depth=int(config.get("bus", {}).get("max_queue_depth", 8)))
    logger = LogEmitter(bus, min_level=config.get("logging", {}).get("level", "info"), run_id=str(config.get("runtime", {}).get("run_id", "")))
    stop_event = threading.Event()

    drop_throttle: Dict[str, float] = {}

    def _on_drop(topic: str, depth: int) -> None:
        if topic in {"log.events", "vision.presence"}:
            return
        now_s = time.time()
        if now_s - drop_throttle.get(topic, 0.0) < 1.0:
            return
        drop_throttle[topic] = now_s
        logger.emit("debug", "core.bus", "queue_full", {"topic": topic, "depth": depth})

    bus.set_drop_handler(_on_drop)
    crash_event, crash_info = _install_crash_handlers(bus, run_dir, config, logger, stop_event)

    if args.mode not in MODES:
        logger.emit("error", "main.run", "invalid_mode", {"mode": args.mode})
        raise SystemExit(f"Unsupported mode: {args.mode}")

    threads: List[threading.Thread] = []
    log_thread = start_log_sink(bus, config, logger, stop_event)
    if log_thread is not None:
        threads.append(log_thread)

    roster = roster_from_config(config)
    sink = build_sink(config, run_dir=str(run_dir))
    source = build_source(config)
    machine = SessionStateMachine(
        roster,
        source,
        sink=sink,
        snapshots=build_snapshot_writer(config, run_dir=str(run_dir)),
        config=SessionConfig.from_config(config),
        bus=bus,
        logger=logger,
        camera_id=str(get_path(config, "video.camera.id", "cam0")),
    )

    session_stop = threading.Event()
    loop_thread = start_session_loop(machine, config, logger, session_stop, autostart=args.mode == "headless")
    if args.mode == "live":
        threads.append(start_telemetry(bus, config, logger, stop_event, machine=machine))
        threads.append(start_ui_server(bus, config, logger, stop_event, machine, sink=sink))

    logger.emit("info", "main.run", "started", {"mode": args.mode, "roster_size": len(roster), "run_dir": str(run_dir)})
    try:
        if args.mode == "headless":
            run_headless(machine, source, stop_event)
        else:
            while not stop_event.is_set():
                time.sleep(0.2)
    except KeyboardInterrupt:
        logger.emit("info", "main.run", "shutdown", {})
    finally:
        session_stop.set()
        loop_thread.join(timeout=2.0)
        path = write_export(machine.roster_snapshot(), _export_path(config, run_dir, args.export))
        logger.emit(
            "info",
            "main.run",
            "exported",
            {"path": str(path), "present": roster.present_count(), "absent": roster.absent_count()},
        )
        stop_event.set()
        for thread in threads:
            thread.join(timeout=1.0)

    if crash_event.is_set() and bool(config.get("runtime", {}).get("fail_fast", True)):
        logger.emit("error", "main.run", "crashed", crash_info)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
