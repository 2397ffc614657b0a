"""Error taxonomy shared by the service layer and the HTTP layer.

Services raise these; ``main.py`` maps them onto HTTP status codes and the
``{"success": false, "error": ..., "message": ...}`` envelope.
"""
from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Any] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(AppError):
    status_code = 401
    code = "authentication_error"


class AuthorizationError(AppError):
    status_code = 403
    code = "authorization_error"


class NotFoundError(AppError):
    """Raised both for missing rows and rows the caller does not own."""

    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class InsufficientFundsError(AppError):
    status_code = 400
    code = "insufficient_funds"


class InsufficientGasError(AppError):
    status_code = 400
    code = "insufficient_gas"


class LimitExceededError(AppError):
    status_code = 400
    code = "limit_exceeded"

    def __init__(self, message: str, limit, used, remaining, period: Optional[str] = None,
                 status_code: Optional[int] = None):
        details = {"limit": float(limit), "used": float(used), "remaining": float(remaining)}
        if period:
            details["period"] = period
        super().__init__(message, details=details, status_code=status_code)
        self.limit = limit
        self.used = used
        self.remaining = remaining


class UpstreamError(AppError):
    """Chain RPC or webhook target failure. Retrying is up to the caller."""

    status_code = 502
    code = "upstream_error"


class DecryptionError(AppError):
    status_code = 400
    code = "decryption_error"
