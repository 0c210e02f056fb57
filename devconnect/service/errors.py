from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``.
    ``message`` is the client-facing summary; ``error`` optionally carries the
    underlying cause (verifier detail, storage or bus failure text):
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error = error
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class ValidationError(ServiceError):
    """Missing or malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NoCredential(AuthenticationError):
    """No bearer token on the request."""

    def __init__(self, message: str = "Access Denied. No token provided.") -> None:
        super().__init__(message)


class InvalidCredential(AuthenticationError):
    """Token failed signature, format or expiry verification."""

    def __init__(self, error: Optional[str] = None, message: str = "Invalid token") -> None:
        super().__init__(message, error=error)


class StaleCredential(AuthenticationError):
    """Token verifies but is no longer the registered session for its user.

    Raised after logout, after a newer login superseded the token, or once the
    registry entry expired.
    """

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class AuthorizationError(ServiceError):
    """Acting on a resource not owned by the caller (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class DependencyError(ServiceError):
    """Storage or message bus failure (500)."""
    status_code = 500
    error_code = "server_error"


class TokenLifetimeError(DependencyError):
    """Issued token has no remaining lifetime; login/signup must not complete."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NoCredential",
    "InvalidCredential",
    "StaleCredential",
    "AuthorizationError",
    "NotFoundError",
    "RateLimitedError",
    "DependencyError",
    "TokenLifetimeError",
]
