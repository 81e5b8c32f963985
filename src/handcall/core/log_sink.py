"""
CONTRACT: inline
ROLE: Persist log.events to <run_dir>/logs/events.jsonl.

INPUTS:
  - Topic: log.events  Type: LogEvent
OUTPUTS:
  - n/a

CONFIG KEYS:
  - logging.file.enabled: write the JSONL log (bool)
  - logging.file.flush_interval_ms: flush cadence
  - logging.file.rotate_mb: rotate size, 0 disables rotation
  - runtime.artifacts.dir_run: run directory (set by main.run)

PERF / TIMING:
  - buffered writes, flushed every flush_interval_ms and on stop

FAILURE MODES:
  - write failure -> log log_write_failed, thread exits

LOG EVENTS:
  - module=core.log_sink, event=log_write_failed, payload keys=path, error

TESTS:
  - tests/test_artifacts_and_logging.py
"""

from __future__ import annotations

import json
import queue
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional


def start_log_sink(
    bus: Any,
    config: Dict[str, Any],
    logger: Any,
    stop_event: threading.Event,
) -> Optional[threading.Thread]:
    file_cfg = config.get("logging", {}).get("file", {})
    if not isinstance(file_cfg, dict):
        file_cfg = {}
    if not bool(file_cfg.get("enabled", False)):
        return None

    flush_interval_s = float(file_cfg.get("flush_interval_ms", 200.0)) / 1000.0
    rotate_bytes = int(float(file_cfg.get("rotate_mb", 0.0)) * 1024 * 1024)
    run_dir = config.get("runtime", {}).get("artifacts", {}).get("dir_run")
    if not run_dir:
        return None

    logs_dir = Path(str(run_dir)) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    path = logs_dir / "events.jsonl"
    q = bus.subscribe("log.events", max_queue_depth=256)

    def _write_pending(fh) -> None:
        try:
            while True:
                event = q.get_nowait()
                fh.write(json.dumps(event, sort_keys=True, default=str) + "\n")
        except queue.Empty:
            return

    def _run() -> None:
        fh = open(path, "a", encoding="utf-8")
        next_flush = time.time() + flush_interval_s
        rotations = 0
        try:
            while not stop_event.is_set():
                try:
                    event = q.get(timeout=0.1)
                except queue.Empty:
                    event = None
                if event is not None:
                    fh.write(json.dumps(event, sort_keys=True, default=str) + "\n")
                now = time.time()
                if now < next_flush:
                    continue
                fh.flush()
                next_flush = now + flush_interval_s
                if rotate_bytes > 0 and fh.tell() >= rotate_bytes:
                    fh.close()
                    rotations += 1
                    path.rename(logs_dir / f"events.{rotations:03d}.jsonl")
                    fh = open(path, "a", encoding="utf-8")
            _write_pending(fh)
        except OSError as exc:
            logger.emit("warning", "core.log_sink", "log_write_failed", {"path": str(path), "error": str(exc)})
        finally:
            try:
                fh.flush()
                fh.close()
            except OSError:
                pass

    thread = threading.Thread(target=_run, name="log-sink", daemon=True)
    thread.start()
    return thread
