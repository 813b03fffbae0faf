from conftest import make_image
from domain import RejectReason
from enrollment import EnrollmentGuard


def test_same_photo_under_another_identity_is_rejected(registry):
    guard = EnrollmentGuard(registry)
    photo = make_image(10)

    assert guard.enroll("A100", "Alice", photo).accepted

    decision = guard.guard_enroll("B200", photo)
    assert not decision.accepted
    assert decision.reason is RejectReason.DUPLICATE_FINGERPRINT
    assert decision.existing_identity_id == "A100"

    decision = guard.enroll("B200", "Bob", photo)
    assert decision.existing_identity_id == "A100"
    assert registry.get_by_id("B200") is None


def test_resubmitting_own_photo_is_accepted(registry):
    guard = EnrollmentGuard(registry)
    photo = make_image(11)
    guard.enroll("A100", "Alice", photo)

    decision = guard.guard_enroll("A100", photo)
    assert decision.accepted
    assert decision.fingerprint == registry.get_by_id("A100").fingerprint


def test_unused_photo_is_accepted(registry):
    decision = EnrollmentGuard(registry).guard_enroll("S200", make_image(12))
    assert decision.accepted
    assert decision.existing_identity_id is None


def test_enroll_stores_normalized_photo_and_fingerprint(registry):
    guard = EnrollmentGuard(registry)
    photo = make_image(13)
    decision = guard.enroll("A100", "Alice", photo)

    identity = registry.get_by_id("A100")
    assert identity.name == "Alice"
    assert identity.fingerprint == decision.fingerprint
    assert identity.image_data[:2] == b"\xff\xd8"  # JPEG
    assert identity.enrolled_at is not None


def test_enroll_rejects_existing_identity_id(registry):
    guard = EnrollmentGuard(registry)
    guard.enroll("A100", "Alice", make_image(14))

    decision = guard.enroll("A100", "Alice again", make_image(15))
    assert decision.reason is RejectReason.IDENTITY_EXISTS


def test_undecodable_photo_is_rejected(registry):
    guard = EnrollmentGuard(registry)
    assert guard.guard_enroll("A100", b"garbage").reason is RejectReason.DECODE_ERROR
    assert guard.enroll("A100", "Alice", b"garbage").reason is RejectReason.DECODE_ERROR
    assert registry.get_by_id("A100") is None


def test_replace_photo_releases_old_fingerprint(registry):
    guard = EnrollmentGuard(registry)
    old_photo, new_photo = make_image(16), make_image(17)
    guard.enroll("A100", "Alice", old_photo)

    assert guard.replace_photo("A100", new_photo).accepted
    assert registry.find_by_fingerprint(guard.guard_enroll("A100", new_photo).fingerprint).id == "A100"

    # The old photo is free for someone else now
    assert guard.enroll("B200", "Bob", old_photo).accepted


def test_replace_photo_cannot_take_another_identitys_photo(registry):
    guard = EnrollmentGuard(registry)
    alice_photo = make_image(18)
    guard.enroll("A100", "Alice", alice_photo)
    guard.enroll("B200", "Bob", make_image(19))
    bob_before = registry.get_by_id("B200").fingerprint

    decision = guard.replace_photo("B200", alice_photo)
    assert decision.reason is RejectReason.DUPLICATE_FINGERPRINT
    assert decision.existing_identity_id == "A100"
    assert registry.get_by_id("B200").fingerprint == bob_before


def test_replace_photo_for_unknown_identity(registry):
    assert EnrollmentGuard(registry).replace_photo("nobody", make_image(20)) is None
