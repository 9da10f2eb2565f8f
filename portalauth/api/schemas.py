from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_state",
    "provider_rejected",
    "provider_unavailable",
    "invalid_token",
    "no_token",
    "malformed_token",
    "token_not_found",
    "token_expired",
    "token_revoked",
    "token_reuse_detected",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_role(value: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in {"INVESTOR", "ISSUER", "ADMIN"}:
        raise ValueError("role must be one of INVESTOR, ISSUER, ADMIN")
    return normalized


class RefreshTokenRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenRefreshResponse(BaseModel):
    access_token: str
    expires_in: int
    active_role: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None


class SwitchRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        return _normalize_role(value)


class CompleteOnboardingRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_onboarding_role(cls, value: str) -> str:
        normalized = _normalize_role(value)
        if normalized == "ADMIN":
            raise ValueError("onboarding is only available for INVESTOR and ISSUER")
        return normalized


class UserResponse(BaseModel):
    id: str
    email: str
    roles: List[str]
    active_role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    investor_onboarding_completed: bool = False
    issuer_onboarding_completed: bool = False
    onboarding_required: bool = False
    created_at: datetime


class PasswordChangedResponse(BaseModel):
    revoked_count: int
