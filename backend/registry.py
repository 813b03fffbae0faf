"""
Identity registry: enrolled identities, their reference photos and the
fingerprint index.
"""
import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from database import session_scope
from domain import Candidate, utcnow
from errors import DuplicateFingerprint
from models import Identity

logger = logging.getLogger(__name__)


class IdentityRegistry:
    """SQLAlchemy-backed read/write access to enrolled identities."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_by_id(self, identity_id: str, include_deleted: bool = False) -> Optional[Identity]:
        with session_scope(self.session_factory) as db:
            query = db.query(Identity).filter(Identity.id == identity_id)
            if not include_deleted:
                query = query.filter(Identity.deleted == False)  # noqa: E712
            identity = query.first()
            if identity is not None:
                db.expunge(identity)
            return identity

    def find_by_fingerprint(self, fingerprint: str) -> Optional[Identity]:
        """Exact lookup; soft-deleted identities still own their fingerprint."""
        with session_scope(self.session_factory) as db:
            identity = db.query(Identity).filter(Identity.fingerprint == fingerprint).first()
            if identity is not None:
                db.expunge(identity)
            return identity

    def list_candidates(self, day: date) -> List[Candidate]:
        """
        Gallery for matching captures taken on ``day``: every identity that
        is not deleted. Already-marked identities stay in the gallery so a
        repeat capture resolves to them and is reported as already marked.
        """
        with session_scope(self.session_factory) as db:
            rows = db.query(Identity.id, Identity.image_data).filter(
                Identity.deleted == False  # noqa: E712
            ).order_by(Identity.id).all()
            logger.debug("%d candidates for %s", len(rows), day)
            return [Candidate(identity_id=row.id, reference_image=row.image_data) for row in rows]

    def add(self, identity_id: str, name: str, image_data: bytes, fingerprint: str,
            enrolled_at: Optional[datetime] = None) -> Identity:
        identity = Identity(
            id=identity_id,
            name=name,
            fingerprint=fingerprint,
            image_data=image_data,
            enrolled_at=enrolled_at or utcnow(),
            deleted=False,
        )
        try:
            with session_scope(self.session_factory) as db:
                db.add(identity)
                db.flush()
                db.expunge(identity)
        except IntegrityError:
            self._raise_conflict(fingerprint, identity_id)
            raise
        logger.info("Enrolled identity %s", identity_id)
        return identity

    def replace_photo(self, identity_id: str, image_data: bytes, fingerprint: str) -> Identity:
        """Swap the reference photo; the previous fingerprint is released."""
        try:
            with session_scope(self.session_factory) as db:
                identity = db.query(Identity).filter(Identity.id == identity_id).first()
                if identity is None:
                    raise LookupError(identity_id)
                identity.image_data = image_data
                identity.fingerprint = fingerprint
                db.flush()
                db.expunge(identity)
        except IntegrityError:
            self._raise_conflict(fingerprint, identity_id)
            raise
        logger.info("Replaced reference photo for %s", identity_id)
        return identity

    def soft_delete(self, identity_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            identity = db.query(Identity).filter(Identity.id == identity_id).first()
            if identity is None:
                return False
            identity.deleted = True
            return True

    def _raise_conflict(self, fingerprint: str, identity_id: str):
        """Turn a unique-constraint failure into DuplicateFingerprint when that is the cause."""
        owner = self.find_by_fingerprint(fingerprint)
        if owner is not None and owner.id != identity_id:
            raise DuplicateFingerprint(owner.id)
