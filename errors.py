"""
Error taxonomy shared by every component.

Each error carries a short machine-checkable `code`, the HTTP status the
API layer answers with, and optional `details` merged into the response.
"""

from typing import Any, Dict, Optional


class ShopError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(ShopError):
    """Missing or out-of-range input."""

    code = "validation_error"
    status_code = 400


class NotFoundError(ShopError):
    code = "not_found"
    status_code = 404


class PermissionDeniedError(ShopError):
    """Eligibility or ownership check failed."""

    code = "permission_denied"
    status_code = 403


class ConflictError(ShopError):
    code = "conflict"
    status_code = 409


class DependencyError(ShopError):
    """A store, filter, rendering or mail collaborator failed."""

    code = "dependency_error"
    status_code = 503
