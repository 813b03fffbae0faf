"""
Attendance ledger.

Entries are keyed by (identity_id, day). A commit is an upsert that fully
replaces the stored row, optional fields included: an entry without a
leave reason clears any leave reason stored before it. Committing the same
entry twice leaves exactly one row with the same content.
"""
import logging
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from config import STRICT_LEDGER_INVARIANTS
from database import session_scope
from domain import AttendanceEntry, CommitResult, RejectReason
from errors import Forbidden, InvariantViolation, StorageError
from models import AttendanceRecord

logger = logging.getLogger(__name__)


def record_to_entry(record: AttendanceRecord) -> AttendanceEntry:
    return AttendanceEntry(
        identity_id=record.identity_id,
        day=record.day,
        outcome=record.outcome,
        method=record.method,
        committed_by=record.committed_by,
        leave_reason=record.leave_reason,
        confidence=record.confidence,
        committed_at=record.committed_at,
    )


def write_entry(record: AttendanceRecord, entry: AttendanceEntry) -> AttendanceRecord:
    """Copy every field of ``entry`` onto ``record``, clearing absent optionals."""
    record.identity_id = entry.identity_id
    record.day = entry.day
    record.outcome = entry.outcome.value
    record.leave_reason = entry.leave_reason
    record.method = entry.method.value
    record.committed_by = entry.committed_by
    record.committed_at = entry.committed_at
    record.confidence = entry.confidence
    return record


def collapse_duplicates(records: List[AttendanceRecord],
                        strict: bool) -> Tuple[Optional[AttendanceRecord], List[AttendanceRecord]]:
    """
    Split the rows stored for one key into the row to keep and the extras.

    More than one row is an invariant violation: raised in strict mode,
    otherwise the most recently committed row wins.
    """
    if not records:
        return None, []
    if len(records) == 1:
        return records[0], []

    key = (records[0].identity_id, records[0].day)
    if strict:
        raise InvariantViolation(f"{len(records)} attendance rows for {key}")

    ordered = sorted(records, key=lambda r: (r.committed_at, r.id or 0), reverse=True)
    logger.error("Found %d attendance rows for %s, keeping the newest", len(records), key)
    return ordered[0], ordered[1:]


class AttendanceStore:
    """SQLAlchemy-backed storage for attendance entries."""

    def __init__(self, session_factory, strict: bool = STRICT_LEDGER_INVARIANTS):
        self.session_factory = session_factory
        self.strict = strict

    def _load(self, db, identity_id: str, day: date) -> Optional[AttendanceRecord]:
        records = db.query(AttendanceRecord).filter(
            AttendanceRecord.identity_id == identity_id,
            AttendanceRecord.day == day,
        ).all()
        keep, extras = collapse_duplicates(records, self.strict)
        for extra in extras:
            db.delete(extra)
        return keep

    def get(self, identity_id: str, day: date) -> Optional[AttendanceEntry]:
        with session_scope(self.session_factory) as db:
            record = self._load(db, identity_id, day)
            return record_to_entry(record) if record is not None else None

    def upsert(self, entry: AttendanceEntry) -> AttendanceEntry:
        with session_scope(self.session_factory) as db:
            record = self._load(db, entry.identity_id, entry.day)
            if record is None:
                db.add(write_entry(AttendanceRecord(), entry))
            else:
                write_entry(record, entry)
        return entry

    def insert_if_absent(self, entry: AttendanceEntry) -> bool:
        """
        Atomic conditional insert; False if a row for the key already exists.
        Any other constraint failure is a StorageError.
        """
        try:
            with session_scope(self.session_factory) as db:
                db.add(write_entry(AttendanceRecord(), entry))
                db.flush()
        except IntegrityError as e:
            if self.get(entry.identity_id, entry.day) is None:
                raise StorageError(str(e.orig)) from e
            return False
        return True

    def list_for_day(self, day: date) -> List[AttendanceEntry]:
        with session_scope(self.session_factory) as db:
            records = db.query(AttendanceRecord).filter(
                AttendanceRecord.day == day
            ).order_by(AttendanceRecord.identity_id).all()
            return [record_to_entry(r) for r in records]


class AttendanceLedger:
    """
    Commit protocol on top of the store. Commits are not gated here;
    automated flows validate first, administrative corrections may not.
    """

    def __init__(self, store: AttendanceStore):
        self.store = store

    def commit(self, entry: AttendanceEntry) -> CommitResult:
        return self._write(self.store.upsert, entry)

    def commit_if_absent(self, entry: AttendanceEntry) -> CommitResult:
        def insert(e):
            if not self.store.insert_if_absent(e):
                return None
            return e
        return self._write(insert, entry)

    def _write(self, write, entry: AttendanceEntry) -> CommitResult:
        try:
            stored = write(entry)
        except Forbidden as e:
            logger.error("Commit for %s on %s forbidden: %s", entry.identity_id, entry.day, e)
            return CommitResult.reject(RejectReason.FORBIDDEN, str(e))
        except StorageError as e:
            logger.error("Commit for %s on %s failed: %s", entry.identity_id, entry.day, e)
            return CommitResult.reject(RejectReason.STORAGE_ERROR, str(e))

        if stored is None:
            logger.info("%s already marked on %s", entry.identity_id, entry.day)
            return CommitResult.reject(RejectReason.ALREADY_MARKED)

        logger.info("Committed %s for %s on %s (%s%s)", entry.outcome.value, entry.identity_id,
                    entry.day, entry.method.value, ", on leave" if entry.on_leave else "")
        return CommitResult.ok(stored)
