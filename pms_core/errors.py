"""
Error Types
===========

Typed service errors. Routes never build HTTP errors themselves; the
application maps these to the response envelope in ``pms_core.api``.
"""

from typing import Any, Optional


class PmsError(Exception):
    """Base exception for all PMS core errors."""
    status_code: int = 500

    def __init__(self, message: str, data: Optional[Any] = None):
        self.message = message
        self.data = data
        super().__init__(message)


class NotFoundError(PmsError):
    """Raised when a referenced entity does not exist."""
    status_code = 404

    def __init__(self, entity: str, message: Optional[str] = None):
        self.entity = entity
        super().__init__(message or f"{entity} not found")


class ValidationError(PmsError):
    """Raised on malformed input or a forbidden state transition."""
    status_code = 400


class ConflictError(PmsError):
    """Raised on uniqueness violations and stale writes."""
    status_code = 409


class ExternalServiceError(PmsError):
    """Raised when the channel API or another remote service fails."""
    status_code = 502


class UnauthorizedError(PmsError):
    """Raised when a guest request carries no usable credentials."""
    status_code = 401


class ExpiredTokenError(UnauthorizedError):
    """Raised when a check-in access token is past its expiry."""

    def __init__(self, message: str = "Access token has expired"):
        super().__init__(message)
