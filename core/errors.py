"""
core/errors.py -- Typed failures raised by the session core.

Every class carries a stable error_code and the HTTP status it maps to. The
core raises these; api/main.py renders them into the shared error envelope.
Nothing here knows about FastAPI.

Authentication-class failures are never retried or masked. Store and cache
faults surface as ServerFailure subclasses; retry, if any, belongs to the
store client.
"""

from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for failures surfaced by the session core."""

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationFailure(SessionError):
    """Malformed or missing input (400)."""

    status_code = 400
    error_code = "validation_error"


class AuthenticationFailure(SessionError):
    """Bad credential, bad token, expired token or challenge (401)."""

    status_code = 401
    error_code = "unauthorized"


class Forbidden(SessionError):
    """Revoked token, blocked identity, or cross-owner access (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFound(SessionError):
    """Unknown identity, refresh record, or challenge (404)."""

    status_code = 404
    error_code = "not_found"


class ServerFailure(SessionError):
    """Store, cache, or delivery fault (500)."""

    status_code = 500
    error_code = "server_error"


class CacheUnavailable(ServerFailure):
    error_code = "cache_unavailable"


class DeliveryFailure(ServerFailure):
    """The OTP was persisted but could not be handed to the mail transport."""

    error_code = "delivery_failed"


__all__ = [
    "SessionError",
    "ValidationFailure",
    "AuthenticationFailure",
    "Forbidden",
    "NotFound",
    "ServerFailure",
    "CacheUnavailable",
    "DeliveryFailure",
]
