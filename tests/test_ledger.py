from datetime import datetime, timedelta

import pytest
from sqlalchemy import event

from conftest import DAY
from database import init_db, make_engine, make_session_factory
from domain import AttendanceEntry, Method, Outcome, RejectReason
from errors import InvariantViolation
from ledger import AttendanceLedger, AttendanceStore, collapse_duplicates
from models import AttendanceRecord


def entry(outcome=Outcome.PRESENT, leave_reason=None, **kwargs):
    kwargs.setdefault("committed_at", datetime(2024, 7, 1, 9, 0, 0))
    kwargs.setdefault("committed_by", "teacher@example.edu")
    return AttendanceEntry(identity_id="S100", day=DAY, outcome=outcome, method=Method.MANUAL,
                           leave_reason=leave_reason, **kwargs)


def row_count(session_factory):
    db = session_factory()
    try:
        return db.query(AttendanceRecord).count()
    finally:
        db.close()


def test_committing_same_entry_twice_stores_one_row(store, session_factory):
    ledger = AttendanceLedger(store)
    e = entry()

    assert ledger.commit(e).committed
    assert ledger.commit(e).committed

    assert row_count(session_factory) == 1
    assert store.get("S100", DAY) == e


def test_commit_without_leave_reason_clears_stored_one(store):
    ledger = AttendanceLedger(store)
    ledger.commit(entry(leave_reason="medical"))
    assert store.get("S100", DAY).leave_reason == "medical"

    ledger.commit(entry(leave_reason=None))

    assert store.get("S100", DAY).leave_reason is None


def test_commit_replaces_every_field(store, session_factory):
    ledger = AttendanceLedger(store)
    ledger.commit(entry(leave_reason="family event"))
    later = entry(outcome=Outcome.ABSENT, committed_at=datetime(2024, 7, 1, 15, 0, 0),
                  committed_by="admin@example.edu")

    ledger.commit(later)

    stored = store.get("S100", DAY)
    assert stored.outcome is Outcome.ABSENT
    assert stored.leave_reason is None
    assert stored.committed_by == "admin@example.edu"
    assert stored.committed_at == later.committed_at
    assert row_count(session_factory) == 1


def test_commit_if_absent_refuses_second_entry(store, session_factory):
    ledger = AttendanceLedger(store)
    assert ledger.commit_if_absent(entry()).committed

    result = ledger.commit_if_absent(entry(outcome=Outcome.ABSENT))

    assert not result.committed
    assert result.reason is RejectReason.ALREADY_MARKED
    assert store.get("S100", DAY).outcome is Outcome.PRESENT
    assert row_count(session_factory) == 1


def test_list_for_day(store):
    ledger = AttendanceLedger(store)
    ledger.commit(entry())
    ledger.commit(AttendanceEntry("S200", DAY, Outcome.ABSENT, Method.MANUAL, "teacher"))
    ledger.commit(AttendanceEntry("S200", DAY + timedelta(days=1), Outcome.PRESENT, Method.MANUAL, "teacher"))

    assert [e.identity_id for e in store.list_for_day(DAY)] == ["S100", "S200"]


def test_unreachable_storage_is_storage_error(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path}/missing/dir/attendance.db")
    ledger = AttendanceLedger(AttendanceStore(make_session_factory(engine)))

    result = ledger.commit(entry())

    assert not result.committed
    assert result.reason is RejectReason.STORAGE_ERROR


def test_read_only_storage_is_forbidden(tmp_path):
    path = tmp_path / "attendance.db"
    writable = make_engine(f"sqlite:///{path}")
    init_db(writable)
    writable.dispose()

    read_only = make_engine(f"sqlite:///file:{path}?mode=ro&uri=true")
    ledger = AttendanceLedger(AttendanceStore(make_session_factory(read_only)))

    result = ledger.commit(entry())

    assert not result.committed
    assert result.reason is RejectReason.FORBIDDEN
    read_only.dispose()


class TestAttendanceEntry:

    def test_leave_reason_requires_present(self):
        with pytest.raises(ValueError):
            entry(outcome=Outcome.ABSENT, leave_reason="medical")

    def test_blank_leave_reason_is_rejected(self):
        with pytest.raises(ValueError):
            entry(leave_reason="   ")

    def test_leave_reason_is_stripped(self):
        assert entry(leave_reason="  medical ").leave_reason == "medical"

    def test_day_must_not_carry_time(self):
        with pytest.raises(ValueError):
            AttendanceEntry("S100", datetime(2024, 7, 1, 9), Outcome.PRESENT, Method.MANUAL, "teacher")

    def test_string_values_are_coerced(self):
        e = AttendanceEntry("S100", DAY, "absent", "visual-match", "camera")
        assert e.outcome is Outcome.ABSENT
        assert e.method is Method.VISUAL_MATCH


class TestCollapseDuplicates:

    def rows(self):
        older = AttendanceRecord(id=1, identity_id="S100", day=DAY, committed_at=datetime(2024, 7, 1, 8))
        newer = AttendanceRecord(id=2, identity_id="S100", day=DAY, committed_at=datetime(2024, 7, 1, 12))
        return older, newer

    def test_single_row_is_kept(self):
        older, _ = self.rows()
        assert collapse_duplicates([older], strict=True) == (older, [])

    def test_no_rows(self):
        assert collapse_duplicates([], strict=True) == (None, [])

    def test_strict_mode_raises(self):
        with pytest.raises(InvariantViolation):
            collapse_duplicates(list(self.rows()), strict=True)

    def test_lenient_mode_keeps_newest(self):
        older, newer = self.rows()
        keep, extras = collapse_duplicates([older, newer], strict=False)
        assert keep is newer
        assert extras == [older]


def test_other_constraint_failure_is_not_already_marked(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path}/attendance.db")

    @event.listens_for(engine, "connect")
    def enforce_foreign_keys(dbapi_connection, connection_record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    init_db(engine)
    ledger = AttendanceLedger(AttendanceStore(make_session_factory(engine)))

    result = ledger.commit_if_absent(entry())

    assert not result.committed
    assert result.reason is RejectReason.STORAGE_ERROR
    engine.dispose()
