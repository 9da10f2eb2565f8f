from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope. Clients branch on the code:
    a refresh failure with any token code means "start a fresh login", while
    token_reuse_detected additionally means every other session is gone.
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class StateError(ServiceError):
    """OAuth transaction state is malformed, forged, expired or replayed (400)."""
    status_code = 400
    error_code = "invalid_state"


class ProviderError(ServiceError):
    """Identity provider call failed."""
    status_code = 502
    error_code = "provider_unavailable"


class ProviderRejectedError(ProviderError):
    """Provider rejected the request, e.g. a bad or expired authorization code (400)."""
    status_code = 400
    error_code = "provider_rejected"


class ProviderUnavailableError(ProviderError):
    """Provider outage, timeout or network failure (502)."""
    status_code = 502
    error_code = "provider_unavailable"


class AuthzError(ServiceError):
    """Role not permitted for this portal or operation (403)."""
    status_code = 403
    error_code = "forbidden"


class TokenError(ServiceError):
    """Access or refresh token cannot be used (401)."""
    status_code = 401
    error_code = "invalid_token"


class NoTokenError(TokenError):
    status_code = 401
    error_code = "no_token"


class MalformedTokenError(TokenError):
    status_code = 401
    error_code = "malformed_token"


class TokenNotFoundError(TokenError):
    status_code = 403
    error_code = "token_not_found"


class TokenExpiredError(TokenError):
    status_code = 403
    error_code = "token_expired"


class TokenRevokedError(TokenError):
    status_code = 403
    error_code = "token_revoked"


class ReuseDetectedError(ServiceError):
    """A consumed refresh token was presented again; all sessions were revoked (403).

    Not a TokenError subclass: handlers catching TokenError must never see it.
    """
    status_code = 403
    error_code = "token_reuse_detected"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "StateError",
    "ProviderError",
    "ProviderRejectedError",
    "ProviderUnavailableError",
    "AuthzError",
    "TokenError",
    "NoTokenError",
    "MalformedTokenError",
    "TokenNotFoundError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ReuseDetectedError",
    "NotFoundError",
    "ServerError",
]
