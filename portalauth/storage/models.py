from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from portalauth.service.roles import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    provider_subject: Optional[str] = None
    email_verified: bool = False
    roles: List[Role] = field(default_factory=list)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    investor_onboarding_completed: bool = False
    issuer_onboarding_completed: bool = False
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        provider_subject: str | None = None,
        email_verified: bool = False,
        roles: List[Role] | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            provider_subject=provider_subject,
            email_verified=email_verified,
            roles=list(roles or []),
            first_name=first_name,
            last_name=last_name,
        )

    def has_role(self, role: Role) -> bool:
        return role in self.roles


@dataclass
class RefreshToken:
    """Persisted refresh-token capability, keyed by the sha256 of the token value."""

    id: str
    token_hash: str
    user_id: str
    active_role: Role
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccessLogEntry:
    """Append-only audit record of a security-relevant transition."""

    id: str
    event_type: str
    success: bool
    user_id: Optional[str] = None
    portal: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    device_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
