"""
CONTRACT: inline
ROLE: Structured logging to the bus + console.

INPUTS:
  - n/a
OUTPUTS:
  - Topic: log.events  Type: LogEvent

CONFIG KEYS:
  - logging.level: minimum console level (debug/info/warning/error)

PERF / TIMING:
  - emit never blocks; the bus drops oldest records on overflow

FAILURE MODES:
  - console write failure -> ignored, bus copy still published

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_artifacts_and_logging.py must cover the JSONL sink round trip

CONTRACT DETAILS:
# Logging contract

- LogEvent = {t_ns, level, run_id, message, context: {module, event, details}}.
- Every record reaches log.events regardless of level; console output is filtered.
- Invariant violations are logged at level=error before the session unwinds.
"""

from __future__ import annotations

import json
import sys
from typing import Any, Dict, Optional

from handcall.core.clock import now_ns


LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class LogEmitter:
    """Emit structured LogEvents to the bus and stdout."""

    def __init__(self, bus: Optional[Any], min_level: str = "info", run_id: str = "") -> None:
        self._bus = bus
        self._min_level = LEVELS.get(str(min_level).lower(), 20)
        self._run_id = run_id

    def emit(self, level: str, module: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        record = {
            "t_ns": now_ns(),
            "level": level,
            "run_id": self._run_id,
            "message": event,
            "context": {
                "module": module,
                "event": event,
                "details": payload or {},
            },
        }
        if self._bus is not None:
            self._bus.publish("log.events", record)
        if LEVELS.get(level, 0) >= self._min_level:
            try:
                print(json.dumps(record, sort_keys=True, default=str))
            except (OSError, ValueError):
                print(f"{level} {module} {event}", file=sys.stderr)
