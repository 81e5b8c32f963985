"""
CONTRACT: inline
ROLE: Typed message model shared by perception, session, sinks and UI.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: n/a  Type: n/a

CONFIG KEYS:
  - n/a

PERF / TIMING:
  - n/a

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - covered through tests/test_roster.py and tests/test_sink_and_export.py

CONTRACT DETAILS:
# Messages

- Subject: roster entry, status Absent | Present.
- PresenceSignal: one sampled frame reduced to "hand visible".
- ConfirmationEvent: immutable attendance fact, appended to a sink.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


STATUS_ABSENT = "Absent"
STATUS_PRESENT = "Present"
SUBJECT_STATUSES = (STATUS_ABSENT, STATUS_PRESENT)
IDENTIFIER_KEYS = ("identifier", "matric_number", "id")

Keypoint = Tuple[float, float]


def record_identifier(record: Dict[str, Any]) -> str:
    """First non-empty identifier alias in a roster record, else ""."""
    for key in IDENTIFIER_KEYS:
        value = str(record.get(key, "") or "").strip()
        if value:
            return value
    return ""


@dataclass
class Subject:
    identifier: str
    display_name: str
    status: str = STATUS_ABSENT

    def __post_init__(self) -> None:
        self.identifier = str(self.identifier).strip()
        self.display_name = str(self.display_name).strip() or self.identifier
        if not self.identifier:
            raise ValueError("subject identifier must be non-empty")
        if self.status not in SUBJECT_STATUSES:
            raise ValueError(f"unknown subject status: {self.status!r}")

    @property
    def is_present(self) -> bool:
        return self.status == STATUS_PRESENT

    def to_dict(self) -> Dict[str, Any]:
        return {"identifier": self.identifier, "display_name": self.display_name, "status": self.status}


@dataclass(frozen=True)
class PresenceSignal:
    """Per-frame presence. Keypoints and frame feed overlays only."""

    present: bool
    t_ns: int
    keypoints: List[Keypoint] = field(default_factory=list)
    frame: Optional[Any] = None
    width: int = 0
    height: int = 0

    def to_message(self, seq: int, camera_id: str = "") -> Dict[str, Any]:
        return {
            "t_ns": self.t_ns,
            "seq": seq,
            "present": bool(self.present),
            "keypoints": [[float(x), float(y)] for x, y in self.keypoints],
            "width": int(self.width),
            "height": int(self.height),
            "camera_id": camera_id,
            "data": self.frame,
        }


@dataclass(frozen=True)
class ConfirmationEvent:
    subject_identifier: str
    display_name: str
    confirmed_at: float
    t_ns: int
    seq: int
    source: str = "hand"
    snapshot_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_identifier": self.subject_identifier,
            "display_name": self.display_name,
            "confirmed_at": self.confirmed_at,
            "t_ns": self.t_ns,
            "seq": self.seq,
            "source": self.source,
            "snapshot_path": self.snapshot_path,
        }
