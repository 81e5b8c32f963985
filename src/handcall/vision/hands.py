"""
CONTRACT: inline
ROLE: Hand presence perception source (OpenCV camera + MediaPipe HandLandmarker).

INPUTS:
  - camera frames (vision.cameras)
OUTPUTS:
  - PresenceSignal per sample_once() call

CONFIG KEYS:
  - perception.hands.max_hands: hands tracked per frame
  - perception.hands.min_detection_confidence: palm detection threshold
  - perception.hands.min_presence_confidence: hand presence threshold
  - perception.hands.min_tracking_confidence: landmark tracking threshold
  - perception.hands.model_path: .task file (downloaded to ~/.cache/handcall if empty)
  - video.camera.*: see vision.cameras

PERF / TIMING:
  - one detect() per tick; the camera and landmarker live for one session

FAILURE MODES:
  - camera or model unavailable -> raise AcquisitionError (camera released)
  - frame read or detect failure -> raise SampleError

LOG EVENTS:
  - n/a (the session logs)

TESTS:
  - tests/test_perception.py covers open/close pairing and keypoint scaling with fakes

CONTRACT DETAILS:
# Hand presence

- present = at least one hand in the frame; which hand is irrelevant.
- Keypoints are the 21 landmarks of every detected hand, in pixels, for the
  overlay only.
"""

from __future__ import annotations

import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np
try:
    import mediapipe as mp
    from mediapipe.tasks import python as mp_python
    from mediapipe.tasks.python import vision as mp_vision
except ImportError:  # pragma: no cover
    mp = None
    mp_python = None
    mp_vision = None

from handcall.attendance.errors import AcquisitionError, SampleError
from handcall.contracts.messages import PresenceSignal
from handcall.core.clock import now_ns
from handcall.vision.cameras import CameraSettings, open_camera, read_frame


MODEL_URL = (
    "https://storage.googleapis.com/mediapipe-models/hand_landmarker/"
    "hand_landmarker/float16/latest/hand_landmarker.task"
)

NormalizedHand = List[Tuple[float, float]]


@dataclass(frozen=True)
class HandSettings:
    max_hands: int = 2
    min_detection_confidence: float = 0.5
    min_presence_confidence: float = 0.5
    min_tracking_confidence: float = 0.5
    model_path: str = ""

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "HandSettings":
        hands = config.get("perception", {}).get("hands", {}) or {}
        return cls(
            max_hands=int(hands.get("max_hands", 2)),
            min_detection_confidence=float(hands.get("min_detection_confidence", 0.5)),
            min_presence_confidence=float(hands.get("min_presence_confidence", 0.5)),
            min_tracking_confidence=float(hands.get("min_tracking_confidence", 0.5)),
            model_path=str(hands.get("model_path", "") or ""),
        )


class TasksHandDetector:
    """MediaPipe Tasks HandLandmarker returning normalized (x, y) landmarks."""

    def __init__(self, settings: HandSettings) -> None:
        if mp is None or mp_python is None or mp_vision is None:
            raise RuntimeError("mediapipe tasks API is not available")
        base_options = mp_python.BaseOptions(model_asset_path=_ensure_model_path(settings.model_path))
        options = mp_vision.HandLandmarkerOptions(
            base_options=base_options,
            num_hands=settings.max_hands,
            min_hand_detection_confidence=settings.min_detection_confidence,
            min_hand_presence_confidence=settings.min_presence_confidence,
            min_tracking_confidence=settings.min_tracking_confidence,
        )
        self._landmarker = mp_vision.HandLandmarker.create_from_options(options)

    def detect(self, frame_bgr: np.ndarray) -> List[NormalizedHand]:
        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        result = self._landmarker.detect(mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb))
        return [[(float(lm.x), float(lm.y)) for lm in hand] for hand in (result.hand_landmarks or [])]

    def close(self) -> None:
        self._landmarker.close()


@dataclass
class _HandHandle:
    capture: Any
    detector: Any


class HandPresenceSource:
    """PerceptionSource over one camera and one hand landmarker."""

    def __init__(
        self,
        camera: CameraSettings,
        hands: HandSettings,
        capture_factory: Callable[[CameraSettings], Any] = open_camera,
        detector_factory: Callable[[HandSettings], Any] = TasksHandDetector,
        clock: Callable[[], int] = now_ns,
    ) -> None:
        self._camera = camera
        self._hands = hands
        self._capture_factory = capture_factory
        self._detector_factory = detector_factory
        self._clock = clock

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "HandPresenceSource":
        return cls(CameraSettings.from_config(config), HandSettings.from_config(config))

    def open(self) -> _HandHandle:
        capture = self._capture_factory(self._camera)
        try:
            detector = self._detector_factory(self._hands)
        except Exception as exc:  # noqa: BLE001
            capture.release()
            raise AcquisitionError(f"hand landmarker unavailable: {exc}") from exc
        return _HandHandle(capture=capture, detector=detector)

    def sample_once(self, handle: _HandHandle) -> PresenceSignal:
        frame = read_frame(handle.capture, flip_horizontal=self._camera.flip_horizontal)
        t_ns = self._clock()
        try:
            hands = handle.detector.detect(frame)
        except Exception as exc:  # noqa: BLE001
            raise SampleError(f"hand detection failed: {exc}") from exc
        height, width = frame.shape[:2]
        keypoints = [(x * width, y * height) for hand in hands for x, y in hand]
        return PresenceSignal(
            present=len(hands) > 0,
            t_ns=t_ns,
            keypoints=keypoints,
            frame=frame,
            width=int(width),
            height=int(height),
        )

    def close(self, handle: _HandHandle) -> None:
        try:
            handle.detector.close()
        finally:
            handle.capture.release()


def _ensure_model_path(model_path: Optional[str]) -> str:
    if model_path:
        path = Path(model_path)
    else:
        cache_dir = Path.home() / ".cache" / "handcall"
        cache_dir.mkdir(parents=True, exist_ok=True)
        path = cache_dir / "hand_landmarker.task"
    if not path.exists():
        try:
            urllib.request.urlretrieve(MODEL_URL, path)
        except OSError as exc:
            raise RuntimeError(f"failed to download HandLandmarker model: {exc}") from exc
    return str(path)
