from conftest import DAY, make_image
from domain import AttendanceEntry, Method, Outcome, RejectReason
from enrollment import EnrollmentGuard
from ledger import AttendanceLedger
from validation import ValidationGate


def test_unknown_identity_is_rejected(registry, store):
    result = ValidationGate(registry, store).validate("S200", DAY)
    assert not result.valid
    assert result.reason is RejectReason.UNKNOWN_IDENTITY


def test_enrolled_identity_without_entry_is_valid(registry, store):
    EnrollmentGuard(registry).enroll("S200", "Sam", make_image(30))
    assert ValidationGate(registry, store).validate("S200", DAY).valid


def test_existing_entry_blocks_whatever_its_outcome(registry, store):
    EnrollmentGuard(registry).enroll("S100", "Sara", make_image(31))
    AttendanceLedger(store).commit(
        AttendanceEntry("S100", DAY, Outcome.ABSENT, Method.MANUAL, "teacher"))

    result = ValidationGate(registry, store).validate("S100", DAY)
    assert result.reason is RejectReason.ALREADY_MARKED


def test_entry_on_another_day_does_not_block(registry, store):
    EnrollmentGuard(registry).enroll("S100", "Sara", make_image(32))
    AttendanceLedger(store).commit(
        AttendanceEntry("S100", DAY, Outcome.PRESENT, Method.MANUAL, "teacher"))

    assert ValidationGate(registry, store).validate("S100", DAY.replace(day=2)).valid


def test_deleted_identity_is_unknown(registry, store):
    EnrollmentGuard(registry).enroll("S100", "Sara", make_image(33))
    registry.soft_delete("S100")

    assert ValidationGate(registry, store).validate("S100", DAY).reason is RejectReason.UNKNOWN_IDENTITY
