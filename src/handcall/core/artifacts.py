"""
CONTRACT: inline
ROLE: Run directory layout, retention and run metadata.

INPUTS:
  - n/a
OUTPUTS:
  - n/a

CONFIG KEYS:
  - runtime.artifacts.dir: base directory for runs
  - runtime.artifacts.retention.max_runs: number of runs kept
  - runtime.run_id: explicit run id (default: timestamp)

PERF / TIMING:
  - once at startup

FAILURE MODES:
  - metadata write failure -> raise OSError (startup aborts)

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_artifacts_and_logging.py must cover retention and layout

CONTRACT DETAILS:
# Run artifacts

<base>/<run_id>/
  logs/events.jsonl
  crash/crash.json
  attendance/confirmations.jsonl | confirmations.csv
  attendance/attendance_list.csv
  run_meta.json
  config_effective.yaml
<base>/LATEST holds the newest run id.
"""

from __future__ import annotations

import json
import platform
import shutil
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from handcall.core.clock import now_ns, wall_time_s


RUN_SUBDIRS = ("logs", "crash", "attendance")


def create_run_dir(base_dir: str, run_id: Optional[str] = None, max_runs: int = 10) -> Path:
    """Create and return the run artifact directory."""

    base_path = Path(base_dir)
    base_path.mkdir(parents=True, exist_ok=True)
    run_id_final = (run_id or "").strip() or _default_run_id()
    run_path = base_path / run_id_final
    if run_path.exists():
        suffix = 2
        while (base_path / f"{run_id_final}_{suffix:02d}").exists():
            suffix += 1
        run_path = base_path / f"{run_id_final}_{suffix:02d}"

    for name in RUN_SUBDIRS:
        (run_path / name).mkdir(parents=True, exist_ok=True)

    apply_retention(base_path, max_runs=max_runs, keep_dir=run_path)
    return run_path


def apply_retention(base_dir: Path, max_runs: int, keep_dir: Optional[Path] = None) -> None:
    if max_runs <= 0:
        return
    keep_resolved = keep_dir.resolve() if keep_dir is not None else None
    run_dirs = [p for p in base_dir.iterdir() if p.is_dir()]
    run_dirs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    for old in run_dirs[max_runs:]:
        if keep_resolved is not None and old.resolve() == keep_resolved:
            continue
        shutil.rmtree(old, ignore_errors=True)


def write_run_metadata(run_dir: Path, config: Dict[str, Any]) -> None:
    """Write run_meta.json and config_effective.yaml."""

    meta = {
        "t_start_ns": now_ns(),
        "t_start_wall_s": wall_time_s(),
        "platform": {
            "python": sys.version,
            "machine": platform.machine(),
            "system": platform.system(),
            "release": platform.release(),
        },
        "versions": _versions(),
        "camera": _camera_meta(config),
        "attendance": dict(config.get("attendance", {}) or {}),
    }
    with open(run_dir / "run_meta.json", "w", encoding="utf-8") as handle:
        json.dump(meta, handle, indent=2, default=str)

    with open(run_dir / "config_effective.yaml", "w", encoding="utf-8") as handle:
        yaml.safe_dump(config, handle, sort_keys=False)

    latest_path = run_dir.parent / "LATEST"
    try:
        latest_path.write_text(str(run_dir.name), encoding="utf-8")
    except OSError:
        pass


def _default_run_id() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


def _versions() -> Dict[str, Optional[str]]:
    versions: Dict[str, Optional[str]] = {}
    from handcall.version import __version__

    versions["handcall"] = str(__version__)
    versions["pyyaml"] = str(getattr(yaml, "__version__", None))
    try:
        import numpy

        versions["numpy"] = str(numpy.__version__)
    except ImportError:
        versions["numpy"] = None
    try:
        import cv2

        versions["opencv"] = str(getattr(cv2, "__version__", None))
    except ImportError:
        versions["opencv"] = None
    try:
        import mediapipe

        versions["mediapipe"] = str(getattr(mediapipe, "__version__", None))
    except ImportError:
        versions["mediapipe"] = None
    return versions


def _camera_meta(config: Dict[str, Any]) -> Dict[str, Any]:
    cam = config.get("video", {}).get("camera", {})
    if not isinstance(cam, dict):
        return {}
    return {
        "id": cam.get("id"),
        "device_path": cam.get("device_path"),
        "device_index": cam.get("device_index"),
        "width": cam.get("width"),
        "height": cam.get("height"),
        "fps": cam.get("fps"),
    }
