"""
Attendance core: enrollment guard, identity resolution and gated commits.

This is what the HTTP layer, the capture workflow and any CLI call into.
Every failure comes back as a typed result; nothing here raises for an
expected outcome.
"""
import asyncio
import logging
from datetime import date
from typing import Callable, List, Optional

import fingerprint as fingerprint_engine
from config import STRICT_LEDGER_INVARIANTS
from domain import (AttendanceEntry, CaptureOutcome, CaptureStatus, CommitResult,
                    EnrollmentDecision, MatchStatus, Method, Outcome, OutcomeReason,
                    RejectReason)
from enrollment import EnrollmentGuard
from errors import DecodeError, Forbidden, StorageError
from ledger import AttendanceLedger, AttendanceStore
from matcher import VisualIdentityMatcher
from registry import IdentityRegistry
from validation import ValidationGate

logger = logging.getLogger(__name__)

_MATCH_FAILURES = {
    MatchStatus.NO_MATCH: OutcomeReason.NO_MATCH,
    MatchStatus.NO_FACE: OutcomeReason.NO_FACE,
    MatchStatus.MULTIPLE_FACES: OutcomeReason.MULTIPLE_FACES,
}

_GATE_FAILURES = {
    RejectReason.ALREADY_MARKED: (CaptureStatus.ALREADY_MARKED, OutcomeReason.ALREADY_MARKED),
    RejectReason.UNKNOWN_IDENTITY: (CaptureStatus.ERROR, OutcomeReason.UNKNOWN_IDENTITY),
    RejectReason.STORAGE_ERROR: (CaptureStatus.ERROR, OutcomeReason.STORAGE_ERROR),
    RejectReason.FORBIDDEN: (CaptureStatus.ERROR, OutcomeReason.FORBIDDEN),
}


def _no_match(reason: OutcomeReason, confidence: Optional[float] = None) -> CaptureOutcome:
    return CaptureOutcome(CaptureStatus.NO_MATCH, reason, confidence=confidence)


def _error(reason: OutcomeReason, detail: Optional[str] = None) -> CaptureOutcome:
    return CaptureOutcome(CaptureStatus.ERROR, reason, detail=detail)


class AttendanceService:

    def __init__(self, registry: IdentityRegistry, store: AttendanceStore,
                 matcher: VisualIdentityMatcher):
        self.registry = registry
        self.store = store
        self.matcher = matcher
        self.guard = EnrollmentGuard(registry)
        self.gate = ValidationGate(registry, store)
        self.ledger = AttendanceLedger(store)

    @classmethod
    def from_session_factory(cls, session_factory, matcher: VisualIdentityMatcher,
                             strict: bool = STRICT_LEDGER_INVARIANTS) -> "AttendanceService":
        return cls(IdentityRegistry(session_factory), AttendanceStore(session_factory, strict), matcher)

    # Enrollment

    def guard_enroll(self, identity_id: str, image_bytes: bytes) -> EnrollmentDecision:
        return self.guard.guard_enroll(identity_id, image_bytes)

    def enroll(self, identity_id: str, name: str, image_bytes: bytes) -> EnrollmentDecision:
        return self.guard.enroll(identity_id, name, image_bytes)

    def replace_photo(self, identity_id: str, image_bytes: bytes) -> Optional[EnrollmentDecision]:
        return self.guard.replace_photo(identity_id, image_bytes)

    # Capture pipeline

    async def resolve_and_commit(self, captured_image: bytes, day: date, actor: str,
                                 is_live: Optional[Callable[[], bool]] = None) -> CaptureOutcome:
        """
        Resolve who is in ``captured_image`` and mark them present for ``day``.

        The exact fingerprint lookup runs first; a hit there is final and the
        visual matcher is not consulted. ``is_live`` is checked right before
        the write so a cycle abandoned by its caller never commits.
        """
        try:
            resolved = await self._resolve(captured_image, day)
        except Forbidden as e:
            return _error(OutcomeReason.FORBIDDEN, str(e))
        except StorageError as e:
            return _error(OutcomeReason.STORAGE_ERROR, str(e))
        if isinstance(resolved, CaptureOutcome):
            return resolved
        identity_id, confidence, method = resolved

        validation = await asyncio.to_thread(self.gate.validate, identity_id, day)
        if not validation.valid:
            status, reason = _GATE_FAILURES[validation.reason]
            return CaptureOutcome(status, reason, identity_id=identity_id,
                                  confidence=confidence, method=method)

        if is_live is not None and not is_live():
            logger.info("Capture for %s abandoned before commit", identity_id)
            return _error(OutcomeReason.CANCELLED)

        entry = AttendanceEntry(identity_id=identity_id, day=day, outcome=Outcome.PRESENT,
                                method=method, committed_by=actor, confidence=confidence)
        result = await self._commit_unabandonable(entry)
        if result.committed:
            return CaptureOutcome(CaptureStatus.SUCCESS, OutcomeReason.MATCHED, identity_id=identity_id,
                                  confidence=confidence, method=method)
        if result.reason is RejectReason.ALREADY_MARKED:
            return CaptureOutcome(CaptureStatus.ALREADY_MARKED, OutcomeReason.ALREADY_MARKED,
                                  identity_id=identity_id, confidence=confidence, method=method)
        reason = OutcomeReason.FORBIDDEN if result.reason is RejectReason.FORBIDDEN else OutcomeReason.STORAGE_ERROR
        return CaptureOutcome(CaptureStatus.ERROR, reason, identity_id=identity_id,
                              confidence=confidence, method=method, detail=result.detail)

    async def _commit_unabandonable(self, entry: AttendanceEntry) -> CommitResult:
        """
        Run the ledger write in a worker thread. If the caller is cancelled
        mid-write, the cancellation is delivered only after the write has
        finished, so no row appears after the caller has moved on.
        """
        write = asyncio.ensure_future(asyncio.to_thread(self.ledger.commit_if_absent, entry))
        try:
            return await asyncio.shield(write)
        except asyncio.CancelledError:
            logger.info("Capture for %s cancelled during commit, finishing the write", entry.identity_id)
            await write
            raise

    async def _resolve(self, captured_image: bytes, day: date):
        try:
            digest = await asyncio.to_thread(fingerprint_engine.fingerprint, captured_image)
        except DecodeError as e:
            logger.info("Captured frame could not be decoded: %s", e)
            return _no_match(OutcomeReason.DECODE_ERROR)

        owner = await asyncio.to_thread(self.registry.find_by_fingerprint, digest)
        if owner is not None and not owner.deleted:
            logger.info("Fingerprint fast path resolved %s", owner.id)
            return owner.id, 1.0, Method.FINGERPRINT_MATCH

        candidates = await asyncio.to_thread(self.registry.list_candidates, day)
        match = await self.matcher.resolve(captured_image, candidates)
        if match.is_match:
            logger.info("Visual match %s (confidence %.3f)", match.identity_id, match.confidence)
            return match.identity_id, match.confidence, Method.VISUAL_MATCH
        if match.status is MatchStatus.ERROR:
            return _error(OutcomeReason.MATCHER_ERROR, match.detail)
        return _no_match(_MATCH_FAILURES[match.status], match.confidence)

    # Manual marking

    def manual_commit(self, identity_id: str, day: date, outcome: Outcome,
                      leave_reason: Optional[str], actor: str) -> CommitResult:
        """Mark attendance by hand; gated like the camera path."""
        try:
            entry = AttendanceEntry(identity_id=identity_id, day=day, outcome=outcome,
                                    method=Method.MANUAL, committed_by=actor, leave_reason=leave_reason)
        except ValueError as e:
            return CommitResult.reject(RejectReason.INVALID_ENTRY, str(e))

        validation = self.gate.validate(identity_id, day)
        if not validation.valid:
            return CommitResult.reject(validation.reason)
        return self.ledger.commit_if_absent(entry)

    def correct_entry(self, identity_id: str, day: date, outcome: Outcome,
                      leave_reason: Optional[str], actor: str) -> CommitResult:
        """
        Administrative correction: overwrite the day's entry for an enrolled
        identity, skipping the already-marked check. Omitting the leave
        reason clears a stored one.
        """
        try:
            entry = AttendanceEntry(identity_id=identity_id, day=day, outcome=outcome,
                                    method=Method.MANUAL, committed_by=actor, leave_reason=leave_reason)
        except ValueError as e:
            return CommitResult.reject(RejectReason.INVALID_ENTRY, str(e))

        try:
            if self.registry.get_by_id(identity_id) is None:
                return CommitResult.reject(RejectReason.UNKNOWN_IDENTITY)
        except Forbidden as e:
            return CommitResult.reject(RejectReason.FORBIDDEN, str(e))
        except StorageError as e:
            return CommitResult.reject(RejectReason.STORAGE_ERROR, str(e))
        return self.ledger.commit(entry)

    def day_entries(self, day: date) -> List[AttendanceEntry]:
        return self.store.list_for_day(day)
