"""
CONTRACT: inline
ROLE: Merge session status, confirmations and logs into UI telemetry.

INPUTS:
  - Topic: attendance.status  Type: SessionStatus
  - Topic: attendance.confirmations  Type: ConfirmationEvent
  - Topic: log.events  Type: LogEvent
OUTPUTS:
  - Topic: ui.telemetry  Type: TelemetrySnapshot

CONFIG KEYS:
  - ui.telemetry_hz: publish rate

PERF / TIMING:
  - fixed publish rate; only the newest status is kept

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_ui.py covers build_snapshot
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from handcall.core.bus import drain, drain_latest
from handcall.core.clock import now_ns


MAX_LOGS = 50
MAX_CONFIRMATIONS = 20


def start_telemetry(
    bus: Any,
    config: Dict[str, Any],
    logger: Any,
    stop_event: threading.Event,
    machine: Optional[Any] = None,
) -> threading.Thread:
    telemetry_hz = float(config.get("ui", {}).get("telemetry_hz", 10.0))
    q_status = bus.subscribe("attendance.status", max_queue_depth=32)
    q_confirm = bus.subscribe("attendance.confirmations", max_queue_depth=64)
    q_logs = bus.subscribe("log.events", max_queue_depth=64)

    state: Dict[str, Any] = {
        "status": None,
        "confirmations": [],
        "logs": [],
    }
    seq = 0

    def _run() -> None:
        nonlocal seq
        period = 1.0 / telemetry_hz if telemetry_hz > 0 else 0.1
        next_tick = time.time()
        while not stop_event.is_set():
            status = drain_latest(q_status)
            if status is not None:
                state["status"] = status
            confirmations: List[Dict[str, Any]] = state["confirmations"] + drain(q_confirm)
            state["confirmations"] = confirmations[-MAX_CONFIRMATIONS:]
            logs: List[Dict[str, Any]] = state["logs"] + drain(q_logs)
            state["logs"] = logs[-MAX_LOGS:]

            now = time.time()
            if now < next_tick:
                time.sleep(0.01)
                continue
            next_tick = now + period
            seq += 1
            roster = machine.snapshot()["roster"] if machine is not None else []
            bus.publish("ui.telemetry", build_snapshot(state, roster, seq))

    thread = threading.Thread(target=_run, name="ui-telemetry", daemon=True)
    thread.start()
    return thread


def build_snapshot(state: Dict[str, Any], roster: List[Dict[str, Any]], seq: int) -> Dict[str, Any]:
    status = state.get("status") or {}
    present = sum(1 for s in roster if s.get("status") == "Present")
    return {
        "t_ns": now_ns(),
        "seq": seq,
        "session": {
            "state": status.get("state", "IDLE"),
            "reason": status.get("reason", ""),
            "message": status.get("message", "Idle"),
            "active_subject": status.get("active_subject"),
            "target_subject": status.get("target_subject"),
            "selected": status.get("selected"),
            "candidate": status.get("candidate"),
            "hold": status.get("hold") or {},
            "error": status.get("error"),
            "warning": status.get("warning"),
        },
        "summary": {
            "total": len(roster),
            "present": present,
            "absent": len(roster) - present,
        },
        "roster": roster,
        "confirmations": list(state.get("confirmations", [])),
        "logs": list(state.get("logs", [])),
    }
