"""Typed failures surfaced by identity resolution.

Each error carries a stable ``code`` and the HTTP status the API maps it to.
"""

from typing import Any, Dict


class ReconciliationError(Exception):
    code = "reconciliation.error"
    status_code = 500

    def __init__(self, message: str, *, code: str = None, status_code: int = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_public_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class InvalidObservation(ReconciliationError):
    """Neither email nor phoneNumber was supplied."""

    code = "observation.invalid"
    status_code = 400


class InvalidContact(ReconciliationError):
    """A raw contact insert would break the linking invariants."""

    code = "contact.invalid"
    status_code = 400


class StoreUnavailable(ReconciliationError):
    """A storage call failed; any transaction in flight was rolled back."""

    code = "store.unavailable"
    status_code = 503


class MergeConflict(StoreUnavailable):
    """A concurrent merge changed one of the groups first. Safe to retry."""

    code = "store.merge_conflict"
    status_code = 409


class InvariantViolation(ReconciliationError):
    code = "identity.invariant_violation"
    status_code = 500
