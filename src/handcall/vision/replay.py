"""
CONTRACT: inline
ROLE: Scripted presence source for headless runs and demos.

INPUTS:
  - perception.replay.signals or a JSONL / YAML trace file
OUTPUTS:
  - PresenceSignal per sample_once() call

CONFIG KEYS:
  - perception.replay.path: .jsonl ({"present": bool, "repeat": n} per line) or .yaml list
  - perception.replay.signals: inline list of booleans / {present, repeat} items
  - perception.replay.loop: restart from the top when exhausted
  - video.camera.fps: spacing of synthetic timestamps

PERF / TIMING:
  - sample n is stamped round(n * step_ms) ms (as ns) regardless of wall time,
    so replays confirm at the same sample every run

FAILURE MODES:
  - exhausted without loop -> raise SampleError, exhausted=True
  - unreadable trace -> raise ValueError at load

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_perception.py must cover repeat expansion and exhaustion
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from handcall.attendance.errors import SampleError
from handcall.contracts.messages import PresenceSignal


class _ReplayHandle:
    def __init__(self) -> None:
        self.index = 0
        self.count = 0


class ReplayPresenceSource:
    def __init__(self, signals: Iterable[bool], step_ms: float = 1000.0 / 30.0, loop: bool = False) -> None:
        self._signals: List[bool] = [bool(s) for s in signals]
        self._step_ms = float(step_ms)
        self._loop = bool(loop)
        self.exhausted = False
        self.open_count = 0
        self.close_count = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ReplayPresenceSource":
        replay = config.get("perception", {}).get("replay", {}) or {}
        fps = float(config.get("video", {}).get("camera", {}).get("fps", 30) or 30)
        path = str(replay.get("path", "") or "")
        signals = load_replay_signals(path) if path else expand_signals(replay.get("signals", []) or [])
        return cls(signals, step_ms=1000.0 / fps, loop=bool(replay.get("loop", False)))

    def __len__(self) -> int:
        return len(self._signals)

    def open(self) -> _ReplayHandle:
        self.open_count += 1
        self.exhausted = False
        return _ReplayHandle()

    def sample_once(self, handle: _ReplayHandle) -> PresenceSignal:
        if handle.index >= len(self._signals):
            if not self._loop or not self._signals:
                self.exhausted = True
                raise SampleError("replay exhausted")
            handle.index = 0
        present = self._signals[handle.index]
        signal = PresenceSignal(present=present, t_ns=self._timestamp_ns(handle.count))
        handle.index += 1
        handle.count += 1
        return signal

    def close(self, handle: _ReplayHandle) -> None:
        self.close_count += 1

    def _timestamp_ns(self, count: int) -> int:
        return int(round(count * self._step_ms * 1_000_000))


def expand_signals(items: Iterable[Any]) -> List[bool]:
    """Expand booleans and {present, repeat} items into a flat list."""
    out: List[bool] = []
    for item in items:
        if isinstance(item, dict):
            repeat = int(item.get("repeat", 1))
            if repeat < 0:
                raise ValueError(f"negative repeat in replay item: {item!r}")
            out.extend([bool(item.get("present", False))] * repeat)
        else:
            out.append(_as_bool(item))
    return out


def load_replay_signals(path: str) -> List[bool]:
    file_path = Path(path)
    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() == ".jsonl":
        items: List[Any] = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_no}: {exc}") from exc
        return expand_signals(items)
    data = yaml.safe_load(text) or []
    if isinstance(data, dict):
        data = data.get("signals", [])
    if not isinstance(data, list):
        raise ValueError(f"replay file must hold a list: {path}")
    return expand_signals(data)


def _as_bool(value: Optional[Any]) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "present"}
    return bool(value)
