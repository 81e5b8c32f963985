"""
CONTRACT: inline
ROLE: Monotonic timestamps and wall-clock helpers.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: n/a  Type: n/a

CONFIG KEYS:
  - n/a

PERF / TIMING:
  - monotonic now_ns() for all modules

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_debounce.py drives the debounce timer with explicit t_ns values

CONTRACT DETAILS:
# Clock and timestamps

- t_ns is monotonic per process and drives every hold measurement.
- Wall time is used only for confirmation records and log file names.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_ns() -> int:
    """Monotonic nanoseconds."""
    return time.monotonic_ns()


def wall_time_s() -> float:
    return time.time()


def ms_to_ns(value_ms: float) -> int:
    return int(float(value_ms) * 1_000_000)


def ns_to_ms(value_ns: int) -> float:
    return float(value_ns) / 1_000_000.0


def iso_utc(epoch_s: float) -> str:
    """Format epoch seconds as an ISO-8601 UTC timestamp."""
    return datetime.fromtimestamp(float(epoch_s), tz=timezone.utc).isoformat(timespec="milliseconds")
