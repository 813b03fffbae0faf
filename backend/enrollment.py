"""
Enrollment guard: a photo may only be enrolled under one identity.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

import fingerprint as fingerprint_engine
from domain import EnrollmentDecision, RejectReason
from errors import DecodeError, DuplicateFingerprint
from registry import IdentityRegistry

logger = logging.getLogger(__name__)


class EnrollmentGuard:
    """
    Blocks enrollment of a photo whose fingerprint already belongs to a
    different identity. Resubmitting an identity's own photo is accepted.
    """

    def __init__(self, registry: IdentityRegistry):
        self.registry = registry

    def guard_enroll(self, identity_id: str, image_bytes: bytes) -> EnrollmentDecision:
        try:
            digest = fingerprint_engine.fingerprint(image_bytes)
        except DecodeError as e:
            logger.info("Enrollment photo for %s could not be decoded: %s", identity_id, e)
            return EnrollmentDecision.reject(RejectReason.DECODE_ERROR)
        return self._check(identity_id, digest)

    def _check(self, identity_id: str, digest: str) -> EnrollmentDecision:
        owner = self.registry.find_by_fingerprint(digest)
        if owner is not None and owner.id != identity_id:
            logger.warning("Photo for %s is already enrolled under %s", identity_id, owner.id)
            return EnrollmentDecision.reject(
                RejectReason.DUPLICATE_FINGERPRINT,
                existing_identity_id=owner.id,
                fingerprint=digest,
            )
        return EnrollmentDecision.accept(digest)

    def enroll(self, identity_id: str, name: str, image_bytes: bytes) -> EnrollmentDecision:
        """Create a new identity after the guard accepts its photo."""
        if self.registry.get_by_id(identity_id, include_deleted=True) is not None:
            return EnrollmentDecision.reject(RejectReason.IDENTITY_EXISTS, existing_identity_id=identity_id)

        try:
            normalized = fingerprint_engine.normalize(image_bytes)
        except DecodeError:
            return EnrollmentDecision.reject(RejectReason.DECODE_ERROR)
        # The digest is taken over the normalized upload, same as guard_enroll
        decision = self._check(identity_id, fingerprint_engine.digest(normalized))
        if not decision.accepted:
            return decision

        try:
            self.registry.add(identity_id, name, normalized, decision.fingerprint)
        except DuplicateFingerprint as e:
            return EnrollmentDecision.reject(RejectReason.DUPLICATE_FINGERPRINT,
                                             existing_identity_id=e.existing_identity_id,
                                             fingerprint=decision.fingerprint)
        except IntegrityError:
            return EnrollmentDecision.reject(RejectReason.IDENTITY_EXISTS, existing_identity_id=identity_id)
        return decision

    def replace_photo(self, identity_id: str, image_bytes: bytes) -> Optional[EnrollmentDecision]:
        """
        Replace an identity's reference photo.

        Returns None if the identity does not exist.
        """
        if self.registry.get_by_id(identity_id, include_deleted=True) is None:
            return None

        try:
            normalized = fingerprint_engine.normalize(image_bytes)
        except DecodeError:
            return EnrollmentDecision.reject(RejectReason.DECODE_ERROR)
        decision = self._check(identity_id, fingerprint_engine.digest(normalized))
        if not decision.accepted:
            return decision

        try:
            self.registry.replace_photo(identity_id, normalized, decision.fingerprint)
        except DuplicateFingerprint as e:
            return EnrollmentDecision.reject(RejectReason.DUPLICATE_FINGERPRINT,
                                             existing_identity_id=e.existing_identity_id,
                                             fingerprint=decision.fingerprint)
        return decision
