from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error codes returned in the API error envelope."""

    VALIDATION = "validation_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNAUTHORIZED = "unauthorized"
    INVALID_TOKEN = "invalid_token"
    ACCOUNT_LOCKED = "account_locked"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    EMAIL_TAKEN = "email_taken"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"


# Every ErrorCode must appear here; checked below at import time.
STATUS_FOR_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.ACCOUNT_LOCKED: 403,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.EMAIL_TAKEN: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.SERVER_ERROR: 500,
}

_missing = set(ErrorCode) - set(STATUS_FOR_CODE)
if _missing:  # pragma: no cover - guards against adding a code without a status
    raise RuntimeError(f"error codes without HTTP status: {sorted(c.value for c in _missing)}")


def status_for(code: ErrorCode) -> int:
    return STATUS_FOR_CODE[code]


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins one ``ErrorCode``; the HTTP layer resolves the status
    through ``STATUS_FOR_CODE`` rather than inspecting exception types.
    """

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        code: Optional[ErrorCode] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return status_for(self.code)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    code = ErrorCode.VALIDATION


class InvalidCredentialsError(ServiceError):
    """Wrong key/PIN or unknown email (401); the two are indistinguishable."""
    code = ErrorCode.INVALID_CREDENTIALS

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Missing or malformed authorization header (401)."""
    code = ErrorCode.UNAUTHORIZED


class InvalidTokenError(ServiceError):
    """Bad signature, expired, wrong type or malformed token (401).

    ``reason`` is for server-side logging only; the public message never varies.
    """

    code = ErrorCode.INVALID_TOKEN

    def __init__(self, reason: str) -> None:
        super().__init__("invalid token")
        self.reason = reason


class AccountLockedError(ServiceError):
    """Too many failed attempts; account temporarily locked (403)."""
    code = ErrorCode.ACCOUNT_LOCKED

    def __init__(self, message: str = "account is locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    code = ErrorCode.FORBIDDEN


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    code = ErrorCode.NOT_FOUND


class EmailTakenError(ServiceError):
    """Email already registered (409)."""
    code = ErrorCode.EMAIL_TAKEN

    def __init__(self, email: str) -> None:
        super().__init__("email is already registered", detail={"field": "email"})
        self.email = email


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    code = ErrorCode.CONFLICT


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    code = ErrorCode.RATE_LIMITED


class ServerError(ServiceError):
    """Internal server error (500): persistence, signing or entropy failures."""
    code = ErrorCode.SERVER_ERROR


__all__ = [
    "ErrorCode",
    "STATUS_FOR_CODE",
    "status_for",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "InvalidTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "EmailTakenError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
