"""
Domain values shared by the gate, ledger, matcher and capture workflow.

Results are returned as plain values rather than raised, so every caller
sees the same taxonomy whether it comes from the camera, the HTTP layer or a
test.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the database round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Outcome(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


class Method(str, Enum):
    MANUAL = "manual"
    FINGERPRINT_MATCH = "fingerprint-match"
    VISUAL_MATCH = "visual-match"


class MatchStatus(str, Enum):
    MATCH = "MATCH"
    NO_MATCH = "NO_MATCH"
    NO_FACE = "NO_FACE"
    MULTIPLE_FACES = "MULTIPLE_FACES"
    ERROR = "ERROR"


class RejectReason(str, Enum):
    UNKNOWN_IDENTITY = "unknown_identity"
    ALREADY_MARKED = "already_marked"
    DUPLICATE_FINGERPRINT = "duplicate_fingerprint"
    IDENTITY_EXISTS = "identity_exists"
    INVALID_ENTRY = "invalid_entry"
    DECODE_ERROR = "decode_error"
    STORAGE_ERROR = "storage_error"
    FORBIDDEN = "forbidden"


class CaptureStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_MARKED = "already_marked"
    NO_MATCH = "no_match"
    ERROR = "error"


class OutcomeReason(str, Enum):
    MATCHED = "matched"
    ALREADY_MARKED = "already_marked"
    NO_MATCH = "no_match"
    NO_FACE = "no_face"
    MULTIPLE_FACES = "multiple_faces"
    DECODE_ERROR = "decode_error"
    UNKNOWN_IDENTITY = "unknown_identity"
    MATCHER_ERROR = "matcher_error"
    STORAGE_ERROR = "storage_error"
    FORBIDDEN = "forbidden"
    CAMERA_ERROR = "camera_error"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"


# User-facing text for each capture result
OUTCOME_MESSAGES = {
    OutcomeReason.MATCHED: "Attendance marked.",
    OutcomeReason.ALREADY_MARKED: "Attendance already marked for today.",
    OutcomeReason.NO_MATCH: "No matching student found. Please try again.",
    OutcomeReason.NO_FACE: "No face detected. Please face the camera and retake.",
    OutcomeReason.MULTIPLE_FACES: "Multiple faces detected. Only one person should be in frame.",
    OutcomeReason.DECODE_ERROR: "The captured image could not be read. Please retake.",
    OutcomeReason.UNKNOWN_IDENTITY: "Matched identity is not enrolled. Contact an administrator.",
    OutcomeReason.MATCHER_ERROR: "Face recognition service failed. Please try again.",
    OutcomeReason.STORAGE_ERROR: "Attendance could not be saved. Please try again.",
    OutcomeReason.FORBIDDEN: "Not allowed to save attendance.",
    OutcomeReason.CAMERA_ERROR: "Camera is unavailable.",
    OutcomeReason.INTERNAL_ERROR: "Something went wrong. Please try again.",
    OutcomeReason.CANCELLED: "Capture cancelled.",
}


@dataclass(frozen=True)
class Candidate:
    """An enrolled identity and its reference photo, offered to the matcher."""
    identity_id: str
    reference_image: bytes


@dataclass(frozen=True)
class MatchResult:
    status: MatchStatus
    identity_id: Optional[str] = None
    confidence: Optional[float] = None
    detail: Optional[str] = None

    @classmethod
    def match(cls, identity_id: str, confidence: float) -> "MatchResult":
        return cls(MatchStatus.MATCH, identity_id=identity_id, confidence=confidence)

    @classmethod
    def no_match(cls, confidence: Optional[float] = None) -> "MatchResult":
        return cls(MatchStatus.NO_MATCH, confidence=confidence)

    @classmethod
    def no_face(cls) -> "MatchResult":
        return cls(MatchStatus.NO_FACE)

    @classmethod
    def multiple_faces(cls) -> "MatchResult":
        return cls(MatchStatus.MULTIPLE_FACES)

    @classmethod
    def error(cls, detail: str) -> "MatchResult":
        return cls(MatchStatus.ERROR, detail=detail)

    @property
    def is_match(self) -> bool:
        return self.status is MatchStatus.MATCH


@dataclass
class AttendanceEntry:
    """
    One attendance outcome for (identity_id, day).

    A leave reason is only valid on a "present" outcome and may not be
    blank. An entry without a leave reason means the stored row must not
    carry one either.
    """
    identity_id: str
    day: date
    outcome: Outcome
    method: Method
    committed_by: str
    leave_reason: Optional[str] = None
    confidence: Optional[float] = None
    committed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if isinstance(self.day, datetime) or not isinstance(self.day, date):
            raise ValueError("day must be a calendar date without a time component")
        self.outcome = Outcome(self.outcome)
        self.method = Method(self.method)
        if self.leave_reason is not None:
            if self.outcome is not Outcome.PRESENT:
                raise ValueError("leave_reason is only allowed when outcome is present")
            self.leave_reason = self.leave_reason.strip()
            if not self.leave_reason:
                raise ValueError("leave_reason must not be blank")

    @property
    def on_leave(self) -> bool:
        return self.leave_reason is not None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[RejectReason] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def reject(cls, reason: RejectReason) -> "ValidationResult":
        return cls(False, reason)


@dataclass(frozen=True)
class CommitResult:
    committed: bool
    entry: Optional[AttendanceEntry] = None
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls, entry: AttendanceEntry) -> "CommitResult":
        return cls(True, entry=entry)

    @classmethod
    def reject(cls, reason: RejectReason, detail: Optional[str] = None) -> "CommitResult":
        return cls(False, reason=reason, detail=detail)


@dataclass(frozen=True)
class EnrollmentDecision:
    accepted: bool
    fingerprint: Optional[str] = None
    existing_identity_id: Optional[str] = None
    reason: Optional[RejectReason] = None

    @classmethod
    def accept(cls, fingerprint: str) -> "EnrollmentDecision":
        return cls(True, fingerprint=fingerprint)

    @classmethod
    def reject(cls, reason: RejectReason, existing_identity_id: Optional[str] = None,
               fingerprint: Optional[str] = None) -> "EnrollmentDecision":
        return cls(False, fingerprint=fingerprint,
                   existing_identity_id=existing_identity_id, reason=reason)


@dataclass(frozen=True)
class CaptureOutcome:
    """Terminal result of one resolve-and-commit cycle."""
    status: CaptureStatus
    reason: OutcomeReason
    identity_id: Optional[str] = None
    confidence: Optional[float] = None
    method: Optional[Method] = None
    detail: Optional[str] = None

    @property
    def message(self) -> str:
        return OUTCOME_MESSAGES[self.reason]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reason": self.reason.value,
            "message": self.message,
            "identity_id": self.identity_id,
            "confidence": self.confidence,
            "method": self.method.value if self.method else None,
            "detail": self.detail,
        }
