"""
Error taxonomy for the ledger.

Every failure raised by the stores, the validator or the service derives from
``LedgerError`` and carries a stable ``code`` that the HTTP layer renders
verbatim. Nothing here is fatal to the process: each error is scoped to the
request that triggered it.
"""

from typing import Dict, Optional


class LedgerError(Exception):
    code = "ledger_error"
    status = 500

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> Dict[str, object]:
        return {"error": self.code, "message": self.message}


class NotFoundError(LedgerError):
    """No matching row, or the row does not belong to the claimed parent."""

    code = "not_found"
    status = 404


class EditConflictError(LedgerError):
    """The version token supplied by the caller no longer matches the row."""

    code = "edit_conflict"
    status = 409


class InvalidTransitionError(LedgerError):
    """A membership transition was requested from the wrong state."""

    code = "invalid_transition"
    status = 409


class DuplicateEntryError(LedgerError):
    code = "duplicate_entry"
    status = 409


class ForeignKeyViolationError(LedgerError):
    code = "foreign_key_violation"
    status = 422


class ConstraintViolationError(LedgerError):
    code = "constraint_violation"
    status = 422


class ForbiddenError(LedgerError):
    code = "forbidden"
    status = 403


class TransientIOError(LedgerError):
    """Timeout or unavailable store. Safe to retry."""

    code = "transient_io"
    status = 503


class ValidationError(LedgerError):
    """
    Domain validation failure with field-scoped messages.

    ``fields`` maps a field name to a short reason code such as
    ``invalid_amount`` or ``overallocated``.
    """

    code = "failed_validation"
    status = 422

    def __init__(self, fields: Dict[str, str]) -> None:
        super().__init__(", ".join(f"{k}: {v}" for k, v in fields.items()))
        self.fields = dict(fields)

    def to_dict(self) -> Dict[str, object]:
        return {"error": self.code, "fields": self.fields}
