# backend/app/errors.py
from typing import Any, Dict, Optional


class TraceabilityError(Exception):
    """Base error carrying a stable code and an HTTP status for the API layer."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(TraceabilityError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthorizationError(TraceabilityError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(TraceabilityError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(TraceabilityError):
    status_code = 409
    code = "CONFLICT"


class LedgerError(TraceabilityError):
    """Anchoring failure. `retryable` tells the caller whether trying later can help."""

    status_code = 502
    code = "LEDGER_ERROR"

    def __init__(self, message: str, retryable: bool = False, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)
        self.retryable = retryable
        self.details.setdefault("retryable", retryable)
