from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlparse

from portalauth.service.errors import ValidationError

if TYPE_CHECKING:
    from portalauth.config import Settings
    from portalauth.storage.models import User


class Role(str, Enum):
    """Application roles a user may hold; a session acts as exactly one of them."""

    INVESTOR = "INVESTOR"
    ISSUER = "ISSUER"
    ADMIN = "ADMIN"


class Portal(str, Enum):
    INVESTOR = "investor"
    ISSUER = "issuer"
    ADMIN = "admin"
    LANDING = "landing"


DEFAULT_ROLE = Role.INVESTOR

_ROLE_PORTALS = {
    Role.INVESTOR: Portal.INVESTOR,
    Role.ISSUER: Portal.ISSUER,
    Role.ADMIN: Portal.ADMIN,
}

# Checked in order: an "admin-issuer" host is an admin portal
_HOST_HINTS = (
    ("admin", Role.ADMIN),
    ("issuer", Role.ISSUER),
    ("investor", Role.INVESTOR),
)


def parse_role(value: str | Role | None) -> Role:
    if isinstance(value, Role):
        return value
    if not value or not isinstance(value, str):
        raise ValidationError("role is required", detail={"field": "role"})
    try:
        return Role(value.strip().upper())
    except ValueError as exc:
        raise ValidationError(
            "unknown role",
            detail={"field": "role", "allowed": [role.value for role in Role]},
        ) from exc


def _role_from_host(url: str | None) -> Optional[Role]:
    if not url:
        return None
    host = (urlparse(url).hostname or "").lower()
    for hint, role in _HOST_HINTS:
        if hint in host:
            return role
    return None


def detect_role(
    role_param: str | None,
    origin: str | None = None,
    settings: Optional["Settings"] = None,
) -> Role:
    """Resolve the requested role for a login.

    An explicit ``role`` query parameter wins; otherwise the originating
    portal is matched by configured URL, then by hostname; otherwise INVESTOR.
    """
    if role_param:
        return parse_role(role_param)
    portal = portal_from_origin(origin, settings)
    if portal is None or portal == Portal.LANDING:
        return DEFAULT_ROLE
    return Role(portal.value.upper())


def portal_for_role(role: Role) -> Portal:
    return _ROLE_PORTALS[role]


def _origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def portal_from_origin(
    origin: str | None, settings: Optional["Settings"] = None
) -> Optional[Portal]:
    """Portal an Origin or Referer belongs to; configured portal URLs match first."""
    if not origin:
        return None
    if settings is not None:
        source = _origin_of(origin)
        for portal in (Portal.ADMIN, Portal.ISSUER, Portal.INVESTOR):
            if _origin_of(portal_url(settings, portal)) == source:
                return portal
    role = _role_from_host(origin)
    return portal_for_role(role) if role else None


def portal_url(settings: "Settings", portal: Portal) -> str:
    if portal == Portal.INVESTOR:
        return settings.investor_portal_url
    if portal == Portal.ISSUER:
        return settings.issuer_portal_url
    if portal == Portal.ADMIN:
        return settings.admin_portal_url
    return settings.frontend_url


def onboarding_required(user: "User", role: Role) -> bool:
    if role == Role.ADMIN:
        return False
    if role == Role.ISSUER:
        return not user.issuer_onboarding_completed
    return not user.investor_onboarding_completed


def primary_role(user: "User") -> Optional[Role]:
    """First role held, preferring ADMIN, then ISSUER, then INVESTOR."""
    for role in (Role.ADMIN, Role.ISSUER, Role.INVESTOR):
        if role in user.roles:
            return role
    return None
