from typing import Optional


class LedgerError(ValueError):
    """Base class for failures the request layer renders to the caller.

    Subclasses ``ValueError`` so callers that only know about ``ValueError``
    keep working; ``kind`` and ``status_code`` give the stable error kind and
    its HTTP mapping.
    """

    kind = "ledger_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.kind, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(LedgerError):
    kind = "not_found"
    status_code = 404


class Forbidden(LedgerError):
    kind = "forbidden"
    status_code = 403


class InvalidArgument(LedgerError):
    kind = "invalid_argument"
    status_code = 400


class Conflict(LedgerError):
    kind = "conflict"
    status_code = 409


class TransientStorageConflict(LedgerError):
    """Raised when a write kept losing serialization races; safe to retry."""

    kind = "transient_storage_conflict"
    status_code = 503
