from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries both an HTTP-style status_code and a stable
    error_code so a transport layer can map failures without inspecting
    messages:
    - configuration_error (500)
    - unauthorized (401)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Invalid engine configuration; raised at construction and never recovered."""
    status_code = 500
    error_code = "configuration_error"


class AuthenticationFailure(ServiceError):
    """Expected, user-visible authentication failure (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationFailure):
    """Credentials were rejected. The message never says why."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(AuthenticationFailure):
    """Too many attempts for an identifier (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many login attempts. Please try again later.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationFailure):
    """Token failed signature, algorithm, expiry, issuer or audience checks."""


class ServerError(ServiceError):
    """Internal failure surfaced to callers only as a generic message (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "AuthenticationFailure",
    "InvalidCredentialsError",
    "RateLimitedError",
    "TokenError",
    "ServerError",
]
