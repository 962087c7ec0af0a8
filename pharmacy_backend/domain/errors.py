"""
Domain error taxonomy.

Each class carries the HTTP status the API layer answers with; the
machine-readable ``code`` distinguishes cases inside a class
(e.g. ``TOTAL_MISMATCH`` vs ``CANNOT_CANCEL`` are both conflicts).
"""
from typing import Any, Dict, Optional


class PharmacyError(Exception):
    """Base exception for all domain errors."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(PharmacyError):
    """Bad or missing input."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(PharmacyError):
    """Order, payment, product or user missing."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(PharmacyError):
    """Request conflicts with current state (total mismatch, illegal transition)."""

    status_code = 400
    default_code = "CONFLICT"


class AuthenticationError(PharmacyError):
    """Credentials or tokens are missing, invalid or expired."""

    status_code = 401
    default_code = "UNAUTHORIZED"


class AuthzError(PharmacyError):
    """Authenticated but not allowed (non-owner, non-admin)."""

    status_code = 403
    default_code = "FORBIDDEN"


class UpstreamError(PharmacyError):
    """Payment gateway call failed or returned a non-success acknowledgment."""

    status_code = 502
    default_code = "UPSTREAM_ERROR"
