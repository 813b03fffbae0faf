"""
Pre-commit validation: the identity must exist and must not already have an
attendance entry for the day.
"""
import logging
from datetime import date

from domain import RejectReason, ValidationResult
from errors import Forbidden, StorageError
from ledger import AttendanceStore
from registry import IdentityRegistry

logger = logging.getLogger(__name__)


class ValidationGate:

    def __init__(self, registry: IdentityRegistry, store: AttendanceStore):
        self.registry = registry
        self.store = store

    def validate(self, identity_id: str, day: date) -> ValidationResult:
        """
        Read-only check. Any existing entry blocks, whatever its outcome;
        corrections go through the ledger's explicit update path.
        """
        try:
            if self.registry.get_by_id(identity_id) is None:
                return ValidationResult.reject(RejectReason.UNKNOWN_IDENTITY)
            if self.store.get(identity_id, day) is not None:
                return ValidationResult.reject(RejectReason.ALREADY_MARKED)
        except Forbidden as e:
            logger.error("Validation for %s on %s forbidden: %s", identity_id, day, e)
            return ValidationResult.reject(RejectReason.FORBIDDEN)
        except StorageError as e:
            logger.error("Validation for %s on %s failed: %s", identity_id, day, e)
            return ValidationResult.reject(RejectReason.STORAGE_ERROR)
        return ValidationResult.ok()
