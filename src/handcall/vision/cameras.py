"""
CONTRACT: inline
ROLE: Open and read the single attendance camera.

INPUTS:
  - n/a
OUTPUTS:
  - BGR frames for the perception source

CONFIG KEYS:
  - video.camera.device_index: camera index
  - video.camera.device_path: optional /dev/video* or /dev/v4l/by-id path
  - video.camera.width: frame width
  - video.camera.height: frame height
  - video.camera.fps: frame rate
  - video.camera.flip_horizontal: mirror frames before detection

PERF / TIMING:
  - open once per session, read once per tick

FAILURE MODES:
  - camera missing -> raise AcquisitionError
  - read failure -> raise SampleError

LOG EVENTS:
  - n/a (the session logs acquisition_failed / sample_failed)

TESTS:
  - tests/test_perception.py must cover candidate ordering and read failures

CONTRACT DETAILS:
# Camera capture

- Prefer V4L2 on resolved /dev/videoN nodes, fall back to CAP_ANY.
- A capture that fails to open is released before the next candidate is tried.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from handcall.attendance.errors import AcquisitionError, SampleError


_V4L2_CAPTURE_BITS = (0x00000001, 0x00001000, 0x0000000200, 0x0000080000)


@dataclass(frozen=True)
class CameraSettings:
    camera_id: str = "cam0"
    device_index: int = 0
    device_path: Optional[str] = None
    width: int = 640
    height: int = 480
    fps: float = 30.0
    flip_horizontal: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CameraSettings":
        cam = config.get("video", {}).get("camera", {}) or {}
        return cls(
            camera_id=str(cam.get("id", "cam0")),
            device_index=int(cam.get("device_index", 0) or 0),
            device_path=cam.get("device_path") or None,
            width=int(cam.get("width", 640)),
            height=int(cam.get("height", 480)),
            fps=float(cam.get("fps", 30)),
            flip_horizontal=bool(cam.get("flip_horizontal", True)),
        )


def open_camera(settings: CameraSettings) -> cv2.VideoCapture:
    """Open the configured camera or raise AcquisitionError."""
    cap = _open_capture(settings.device_path, settings.device_index)
    if not cap.isOpened():
        cap.release()
        raise AcquisitionError(
            f"camera {settings.camera_id} not available (device_path={settings.device_path}, index={settings.device_index})"
        )
    try:
        cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))
    except cv2.error:
        pass
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, settings.width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, settings.height)
    cap.set(cv2.CAP_PROP_FPS, settings.fps)
    return cap


def read_frame(cap: Any, flip_horizontal: bool = False) -> np.ndarray:
    ok, frame = cap.read()
    if not ok or frame is None:
        raise SampleError("camera frame read failed")
    if flip_horizontal:
        frame = cv2.flip(frame, 1)
    return frame


def _camera_candidates(device_path: object, device_index: int) -> List[object]:
    candidates: List[object] = []
    if isinstance(device_path, str) and device_path.strip():
        path = device_path.strip()
        if path.startswith("/dev/video") and _is_capture_node(path) is False:
            return []
        try:
            resolved: Optional[str] = str(Path(path).resolve())
        except OSError:
            resolved = None
        if resolved and resolved.startswith("/dev/video"):
            if _is_capture_node(resolved):
                candidates.append(resolved)
            return candidates
        if resolved:
            candidates.append(resolved)
        candidates.append(path)

    try:
        candidates.append(int(device_index))
    except (TypeError, ValueError):
        pass

    deduped: List[object] = []
    for value in candidates:
        if value not in deduped:
            deduped.append(value)
    return deduped


def _as_open_target(source: object) -> object:
    if not isinstance(source, str):
        return source
    match = re.search(r"/dev/video(\d+)$", source)
    if match is None:
        return source
    return int(match.group(1))


def _is_capture_node(path: str) -> bool:
    match = re.search(r"/dev/video(\d+)$", path)
    if match is None:
        return True
    capabilities_path = Path(f"/sys/class/video4linux/video{match.group(1)}/capabilities")
    if not capabilities_path.exists():
        return True
    try:
        caps = int(capabilities_path.read_text(encoding="utf-8", errors="ignore").strip(), 0)
    except (OSError, ValueError):  # pragma: no cover - platform dependent
        return True
    return any(caps & bit for bit in _V4L2_CAPTURE_BITS)


def _open_capture(device_path: object, device_index: int) -> cv2.VideoCapture:
    candidates = _camera_candidates(device_path, device_index)
    for backend in (cv2.CAP_V4L2, cv2.CAP_ANY):
        for candidate in candidates:
            cap = cv2.VideoCapture(_as_open_target(candidate), backend)
            if cap.isOpened():
                return cap
            cap.release()
    return cv2.VideoCapture()
