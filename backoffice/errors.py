# ==== DOMAIN ERROR TAXONOMY ==== #

"""
Error taxonomy for the numbering and billing core.

Each error carries a ``status_code`` hint so the transport layer that wraps
this package can map it without inspecting messages.
"""

from typing import Any, Dict, Optional


class BackofficeError(Exception):
    """Base class for all domain errors raised by the core."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error for API responses and structured logs."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class NotFound(BackofficeError):
    """Referenced client, plan, fee or charge record does not exist."""

    status_code = 404


class ValidationError(BackofficeError):
    """Malformed or out-of-range input."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        super().__init__(message, {"field": field, **details} if field else details)
        self.field = field


class PeriodClosed(BackofficeError):
    """Mutation attempted on a charge period that has been closed."""

    status_code = 409


class InfrastructuralFailure(BackofficeError):
    """Record store unreachable or failing unexpectedly."""

    status_code = 500


class SchemaAbsence(BackofficeError):
    """Expected table or column is not provisioned yet.

    Soft condition for optional identifier columns, where the allocator
    issues no identifier; required series use the timestamp fallback.
    """

    status_code = 503
