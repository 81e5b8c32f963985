"""
CONTRACT: inline
ROLE: Durable confirmation sinks and the attendance report reader.

INPUTS:
  - record(ConfirmationEvent) from the session machine
OUTPUTS:
  - <run_dir>/attendance/confirmations.jsonl or confirmations.csv

CONFIG KEYS:
  - attendance.sink.kind: jsonl | csv | memory
  - attendance.sink.path: explicit file path (default inside the run directory)

PERF / TIMING:
  - one append + flush per confirmation

FAILURE MODES:
  - write failure -> raise PersistError (the session logs and keeps going)

LOG EVENTS:
  - n/a (module=attendance.session, event=persist_failed is emitted by the caller)

TESTS:
  - tests/test_sink_and_export.py must cover append, header and newest-first report

CONTRACT DETAILS:
# Sinks

- Events are appended, never rewritten.
- The CSV layout is timestamp,subject_identifier,display_name,source.
- read_confirmations returns records newest first, for the report view.
"""

from __future__ import annotations

import csv
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from handcall.attendance.errors import PersistError
from handcall.contracts.messages import ConfirmationEvent
from handcall.core.clock import iso_utc


CSV_HEADER = ["timestamp", "subject_identifier", "display_name", "source"]


class MemorySink:
    """Keeps events in a list. Used for tests and dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[ConfirmationEvent] = []

    def record(self, event: ConfirmationEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[ConfirmationEvent]:
        with self._lock:
            return list(self._events)

    def read(self) -> List[Dict[str, Any]]:
        return [_event_record(e) for e in reversed(self.events)]


class JsonlSink:
    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, event: ConfirmationEvent) -> None:
        line = json.dumps(_event_record(event), sort_keys=True)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
            except OSError as exc:
                raise PersistError(f"failed to append to {self.path}: {exc}") from exc

    def read(self) -> List[Dict[str, Any]]:
        return read_confirmations(str(self.path))


class CsvSink:
    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, event: ConfirmationEvent) -> None:
        rec = _event_record(event)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                write_header = not self.path.exists() or self.path.stat().st_size == 0
                with open(self.path, "a", newline="", encoding="utf-8") as fh:
                    writer = csv.writer(fh)
                    if write_header:
                        writer.writerow(CSV_HEADER)
                    writer.writerow([rec["timestamp"], rec["subject_identifier"], rec["display_name"], rec["source"]])
            except OSError as exc:
                raise PersistError(f"failed to append to {self.path}: {exc}") from exc

    def read(self) -> List[Dict[str, Any]]:
        return read_confirmations(str(self.path))


def build_sink(config: Dict[str, Any], run_dir: Optional[str] = None) -> Any:
    sink_cfg = config.get("attendance", {}).get("sink", {}) or {}
    kind = str(sink_cfg.get("kind", "jsonl") or "jsonl").lower()
    path = str(sink_cfg.get("path", "") or "")
    if kind == "memory":
        return MemorySink()
    base = Path(run_dir) / "attendance" if run_dir else Path("attendance")
    if kind == "csv":
        return CsvSink(path or str(base / "confirmations.csv"))
    if kind == "jsonl":
        return JsonlSink(path or str(base / "confirmations.jsonl"))
    raise ValueError(f"unknown sink kind: {kind}")


def read_confirmations(path: str) -> List[Dict[str, Any]]:
    """Read a JSONL or CSV sink file, newest record first."""
    file_path = Path(path)
    if not file_path.exists():
        return []
    records: List[Dict[str, Any]] = []
    with open(file_path, newline="", encoding="utf-8") as fh:
        if file_path.suffix.lower() == ".csv":
            records.extend(dict(row) for row in csv.DictReader(fh))
        else:
            for line in fh:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
    # Appended oldest first; reversing keeps ties newest first after the stable sort.
    records.reverse()
    records.sort(key=lambda r: str(r.get("timestamp", "")), reverse=True)
    return records


def _event_record(event: ConfirmationEvent) -> Dict[str, Any]:
    rec = {
        "timestamp": iso_utc(event.confirmed_at),
        "subject_identifier": event.subject_identifier,
        "display_name": event.display_name,
        "source": event.source,
        "seq": event.seq,
    }
    if event.snapshot_path:
        rec["snapshot_path"] = event.snapshot_path
    return rec
