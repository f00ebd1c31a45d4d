"""Error taxonomy for Machine Gate.

Every error raised by the core services carries:
- a stable category (VALIDATION_ERROR, NOT_FOUND, CONFLICT, FORBIDDEN, INTERNAL)
- a specific machine-readable code (e.g. PENDING_APPROVAL_EXISTS)
- a human-readable message
- for validation errors, a list of field-level details

The API layer maps ``status_code`` onto the HTTP response.
"""

from typing import Any, Dict, List, Optional


class GateError(Exception):
    """Base class for all domain errors."""

    category = "INTERNAL"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.category
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for API responses and logs."""
        return {
            "error": self.category,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.code}: {self.message}>"


class ValidationError(GateError):
    """Malformed input, detected before any write."""

    category = "VALIDATION_ERROR"
    status_code = 400

    @classmethod
    def for_field(cls, field: str, message: str, *, code: Optional[str] = None) -> "ValidationError":
        return cls(message, code=code, details=[{"field": field, "message": message}])


class NotFoundError(GateError):
    category = "NOT_FOUND"
    status_code = 404


class ConflictError(GateError):
    """Uniqueness or state conflict. Reported as-is, never retried."""

    category = "CONFLICT"
    status_code = 409


class ForbiddenError(GateError):
    category = "FORBIDDEN"
    status_code = 403


class InternalError(GateError):
    """Storage or synchronization failure."""

    category = "INTERNAL"
    status_code = 500
