"""
Exceptions raised by the fingerprint engine, storage gateways, matcher
service and capture device. The core converts them into typed results.
"""


class AttendanceError(Exception):
    """Base class for every error raised by this service."""


class DecodeError(AttendanceError):
    """Image bytes could not be decoded."""


class StorageError(AttendanceError):
    """Storage layer unavailable or failed; nothing was written."""


class Forbidden(AttendanceError):
    """Storage layer refused the operation."""


class DuplicateFingerprint(AttendanceError):
    """Fingerprint already belongs to another identity."""

    def __init__(self, existing_identity_id: str):
        super().__init__(f"Photo already enrolled under {existing_identity_id}")
        self.existing_identity_id = existing_identity_id


class MatcherError(AttendanceError):
    """Visual matcher service failed (timeout, malformed response, crash)."""


class CameraError(AttendanceError):
    """Capture device could not be opened, is busy, or returned no frame."""


class InvariantViolation(AttendanceError):
    """More than one attendance row exists for a single (identity, day)."""
