"""
CONTRACT: inline
ROLE: Save the camera frame that confirmed a subject as a JPEG.

INPUTS:
  - save(identifier, seq, frame) from the session machine
OUTPUTS:
  - <run_dir>/attendance/snapshots/<seq>_<identifier>.jpg

CONFIG KEYS:
  - attendance.snapshots.enabled: save a frame per confirmation (default false)
  - attendance.snapshots.dir: explicit directory (default inside the run directory)

PERF / TIMING:
  - one JPEG encode + write per confirmation, on the session thread

FAILURE MODES:
  - encode or write failure -> raise PersistError (the session logs and keeps going)

LOG EVENTS:
  - n/a (module=attendance.session, event=snapshot_failed is emitted by the caller)

TESTS:
  - tests/test_sink_and_export.py must cover file naming and JPEG output
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Optional

from handcall.attendance.errors import PersistError


_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


class SnapshotWriter:
    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def path_for(self, identifier: str, seq: int) -> Path:
        safe_id = _UNSAFE.sub("_", str(identifier)).strip("_") or "subject"
        return self.directory / f"{int(seq):06d}_{safe_id}.jpg"

    def save(self, identifier: str, seq: int, frame: Any) -> Path:
        if frame is None:
            raise PersistError(f"no frame to save for {identifier}")
        import cv2

        try:
            ok, encoded = cv2.imencode(".jpg", frame)
        except cv2.error as exc:
            raise PersistError(f"failed to encode frame for {identifier}: {exc}") from exc
        if not ok:
            raise PersistError(f"failed to encode frame for {identifier}")
        out = self.path_for(identifier, seq)
        try:
            out.parent.mkdir(parents=True, exist_ok=True)
            with open(out, "wb") as handle:
                handle.write(encoded.tobytes())
        except OSError as exc:
            raise PersistError(f"failed to write {out}: {exc}") from exc
        return out


def build_snapshot_writer(config: Dict[str, Any], run_dir: Optional[str] = None) -> Optional[SnapshotWriter]:
    snap_cfg = config.get("attendance", {}).get("snapshots", {}) or {}
    if not bool(snap_cfg.get("enabled", False)):
        return None
    directory = str(snap_cfg.get("dir", "") or "")
    if not directory:
        base = Path(run_dir) / "attendance" if run_dir else Path("attendance")
        directory = str(base / "snapshots")
    return SnapshotWriter(directory)
