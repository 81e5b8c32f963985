"""Error taxonomy for the attendance session.

AcquisitionError and SampleError come from perception sources, PersistError from
confirmation sinks. GuardViolation subclasses come from RosterCursor.confirm and
are rejected as no-ops by the session. InvariantViolation marks a logic defect.
"""

from __future__ import annotations


class AttendanceError(Exception):
    """Base class for attendance errors."""


class AcquisitionError(AttendanceError):
    """Camera or model could not be opened."""


class SampleError(AttendanceError):
    """A single frame could not be sampled; the next tick may succeed."""


class PersistError(AttendanceError):
    """A confirmation could not be written to its sink."""


class GuardViolation(AttendanceError):
    reason = "guard_violation"

    def __init__(self, identifier: str, message: str = "") -> None:
        super().__init__(message or f"{self.reason}: {identifier}")
        self.identifier = identifier


class AlreadyConfirmed(GuardViolation):
    reason = "already_confirmed"


class NotActive(GuardViolation):
    reason = "not_active"


class UnknownSubject(GuardViolation):
    reason = "unknown_subject"


class InvariantViolation(AttendanceError):
    """Raised when the cursor rejects its own active subject."""
