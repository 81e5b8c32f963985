"""
CONTRACT: inline
ROLE: Hold-to-confirm debounce over a per-frame presence signal.

INPUTS:
  - observe(signal_present, t_ns)
OUTPUTS:
  - DebounceOutcome(kind=IDLE|HOLDING|CONFIRMED, elapsed_ms)

CONFIG KEYS:
  - attendance.hold_threshold_ms: uninterrupted hold needed to confirm
  - attendance.grace_ms: tolerated gap inside a hold (0 = reset on any gap)

PERF / TIMING:
  - O(1) per sample; pure function of (signal, time, start marker)

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_debounce.py must cover reset-on-gap and the 100 ms / 1.5 s scenario

CONTRACT DETAILS:
# Debounce

- A hold starts on the first true sample after a false one (or after a confirm).
- elapsed = t_ns - hold start; CONFIRMED once elapsed >= threshold, then the
  timer is cleared so the next confirmation needs a fresh full hold.
- A false sample clears the hold. With grace_ms > 0 a false sample no later
  than grace_ms after the last true sample keeps the hold alive instead.
- The threshold is re-armed on signal loss. It is not a deadline and it does
  not cancel anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from handcall.core.clock import ms_to_ns, ns_to_ms


IDLE = "IDLE"
HOLDING = "HOLDING"
CONFIRMED = "CONFIRMED"


@dataclass(frozen=True)
class DebounceOutcome:
    kind: str
    elapsed_ms: float = 0.0

    @property
    def confirmed(self) -> bool:
        return self.kind == CONFIRMED


class DebounceTimer:
    """Turns a flickering boolean into single CONFIRMED outcomes."""

    def __init__(self, threshold_ms: float = 1500.0, grace_ms: float = 0.0) -> None:
        if float(threshold_ms) <= 0:
            raise ValueError("threshold_ms must be > 0")
        if float(grace_ms) < 0:
            raise ValueError("grace_ms must be >= 0")
        self._threshold_ns = ms_to_ns(threshold_ms)
        self._grace_ns = ms_to_ns(grace_ms)
        self._hold_started_ns: Optional[int] = None
        self._last_true_ns: Optional[int] = None
        self._in_gap = False

    @property
    def threshold_ms(self) -> float:
        return ns_to_ms(self._threshold_ns)

    @property
    def hold_started_ns(self) -> Optional[int]:
        return self._hold_started_ns

    @property
    def holding(self) -> bool:
        return self._hold_started_ns is not None

    def reset(self) -> None:
        self._hold_started_ns = None
        self._last_true_ns = None
        self._in_gap = False

    def observe(self, signal_present: bool, t_ns: int) -> DebounceOutcome:
        if not signal_present:
            if self._within_grace(t_ns):
                self._in_gap = True
                return DebounceOutcome(HOLDING, ns_to_ms(t_ns - self._hold_started_ns))
            self.reset()
            return DebounceOutcome(IDLE)

        if self._in_gap and self._last_true_ns is not None and t_ns - self._last_true_ns > self._grace_ns:
            # Gap outlived the grace window between two samples.
            self.reset()
        self._in_gap = False
        self._last_true_ns = t_ns
        if self._hold_started_ns is None:
            self._hold_started_ns = t_ns
            return DebounceOutcome(HOLDING, 0.0)

        elapsed_ns = t_ns - self._hold_started_ns
        if elapsed_ns >= self._threshold_ns:
            self.reset()
            return DebounceOutcome(CONFIRMED, ns_to_ms(elapsed_ns))
        return DebounceOutcome(HOLDING, ns_to_ms(elapsed_ns))

    def _within_grace(self, t_ns: int) -> bool:
        if self._grace_ns <= 0 or self._hold_started_ns is None or self._last_true_ns is None:
            return False
        return (t_ns - self._last_true_ns) <= self._grace_ns
