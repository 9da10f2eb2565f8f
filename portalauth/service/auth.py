from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Mapping, Optional, Tuple
from urllib.parse import urlencode

from portalauth.config import Settings
from portalauth.logging import get_logger, sanitize_error_message
from portalauth.service.audit import AuditEvent, AuditRecorder
from portalauth.service.errors import (
    AuthzError,
    NoTokenError,
    ProviderRejectedError,
    StateError,
    TokenError,
    ValidationError,
)
from portalauth.service.fingerprint import DeviceInfo
from portalauth.service.identity_provider import IdentityProviderGateway, ProviderUserInfo
from portalauth.service.roles import (
    Portal,
    Role,
    detect_role,
    onboarding_required,
    portal_for_role,
    portal_from_origin,
    portal_url,
    primary_role,
)
from portalauth.service.state_codec import OAuthTransactionState, StateCodec
from portalauth.service.tokens import AccessClaims, TokenEngine, TokenPair
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import User

logger = get_logger(__name__)

_USER_EXISTS_MARKER = "already exists"
_USER_EXISTS_MESSAGE = "An account with this email already exists. Please sign in instead."


@dataclass(frozen=True)
class LoginRedirect:
    authorization_url: str
    requested_role: Role
    is_signup: bool


@dataclass(frozen=True)
class CallbackOutcome:
    """Where the browser goes after the callback; ``pair`` is None for hint-only redirects."""

    redirect_url: str
    pair: Optional[TokenPair] = None
    user: Optional[User] = None
    active_role: Optional[Role] = None
    onboarding_required: bool = False


@dataclass(frozen=True)
class LogoutOutcome:
    redirect_url: str
    user_id: Optional[str] = None
    revoked_count: int = 0


def _parse_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


class AuthService:
    """Login, callback, logout and session operations for all portals."""

    def __init__(
        self,
        store,
        gateway: IdentityProviderGateway,
        codec: StateCodec,
        tokens: TokenEngine,
        audit: AuditRecorder,
        settings: Settings,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.codec = codec
        self.tokens = tokens
        self.audit = audit
        self.settings = settings
        self.logger = logger
        self._side_calls: set[asyncio.Task] = set()

    # -- helpers -----------------------------------------------------------

    def _portal_base(self, portal: Portal) -> str:
        return portal_url(self.settings, portal)

    def error_redirect(self, portal: Portal, error_code: str, message: str) -> str:
        query = urlencode({"error": error_code, "message": message})
        return f"{self._portal_base(portal)}/auth-error?{query}"

    async def _best_effort(self, operation: str, call: Awaitable[bool]) -> bool:
        """Await a provider side-call; failures and cancellation are logged, never raised."""
        try:
            return await call
        except asyncio.CancelledError:
            self.logger.warning("best_effort_cancelled", operation=operation)
            raise
        except Exception as exc:
            self.logger.warning(
                "best_effort_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _schedule_side_call(self, operation: str, call: Awaitable[bool]) -> asyncio.Task:
        """Run a provider side-call off the response path; tracked until it finishes."""
        task = asyncio.create_task(self._best_effort(operation, call))
        self._side_calls.add(task)
        task.add_done_callback(self._side_calls.discard)
        return task

    @property
    def pending_side_calls(self) -> int:
        return len(self._side_calls)

    async def drain_side_calls(self, timeout: Optional[float] = None) -> None:
        """Wait for scheduled provider side-calls; stragglers past ``timeout`` are cancelled."""
        pending = {task for task in self._side_calls if not task.done()}
        if not pending:
            return
        _, late = await asyncio.wait(pending, timeout=timeout)
        for task in late:
            task.cancel()
        if late:
            await asyncio.gather(*late, return_exceptions=True)

    # -- login -------------------------------------------------------------

    def start_login(
        self,
        role_param: Optional[str],
        signup_param: Optional[str],
        origin: Optional[str] = None,
    ) -> LoginRedirect:
        """Build the provider redirect for a login or signup.

        Raises:
            ValidationError: unknown role
            AuthzError: ADMIN requested together with signup
        """
        requested_role = detect_role(role_param, origin, self.settings)
        is_signup = _parse_flag(signup_param)
        if requested_role == Role.ADMIN and is_signup:
            self.logger.warning("admin_signup_rejected", origin=origin)
            raise AuthzError(
                "Admin accounts cannot be created through signup",
                detail={"reason": "admin_signup_forbidden", "portal": Portal.ADMIN.value},
            )
        state = self.codec.new_state(requested_role, is_signup)
        url = self.gateway.build_authorization_url(
            self.settings.oidc_scope,
            self.codec.encode(state),
            state.nonce,
            signup=is_signup,
        )
        self.logger.info(
            "login_initiated",
            requested_role=requested_role.value,
            signup=is_signup,
            transaction_id=state.transaction_id,
        )
        return LoginRedirect(url, requested_role, is_signup)

    # -- callback ----------------------------------------------------------

    def _user_exists_redirect(self) -> str:
        query = urlencode({"error": "user_exists", "message": _USER_EXISTS_MESSAGE})
        return f"{self.settings.frontend_url}/get-started?{query}"

    def _resolve_user(
        self, info: ProviderUserInfo, state: OAuthTransactionState
    ) -> Tuple[User, bool]:
        """Find the user by subject, then by email (binding the subject), else create.

        Returns the user and whether it was created by this call.
        """
        profile = {
            "email_verified": info.email_verified,
            "first_name": info.given_name,
            "last_name": info.family_name,
        }
        user = self.store.get_user_by_subject(info.subject)
        if user:
            return self.store.update_user_profile(user.id, **profile) or user, False

        user = self.store.get_user_by_email(info.email)
        if user:
            bound = self.store.bind_provider_subject(user.id, info.subject)
            self.logger.info("provider_subject_bound", user_id=user.id)
            return self.store.update_user_profile(user.id, **profile) or bound or user, False

        # Roles are earned through onboarding; only an admin signup starts with one
        roles = [Role.ADMIN] if state.is_signup and state.requested_role == Role.ADMIN else []
        try:
            user = self.store.create_user(
                info.email,
                provider_subject=info.subject,
                email_verified=info.email_verified,
                roles=roles,
                first_name=info.given_name,
                last_name=info.family_name,
            )
        except ConstraintViolation:
            # A concurrent callback for the same identity created the row first
            user = self.store.get_user_by_subject(info.subject)
            if user is None:
                raise
            return user, False
        self.logger.info("user_created", user_id=user.id, roles=[r.value for r in roles])
        return user, True

    async def _deny_admin(self, user: User, device: Optional[DeviceInfo]) -> None:
        self.audit.record(
            AuditEvent.LOGIN,
            user_id=user.id,
            success=False,
            portal=Portal.ADMIN,
            device=device,
            metadata={"reason": "admin_role_required", "requested_role": Role.ADMIN.value},
        )
        if user.provider_subject:
            # Stops the provider from silently re-authenticating into the admin portal
            self._schedule_side_call(
                "global_sign_out", self.gateway.force_global_sign_out(user.provider_subject)
            )
        self.logger.warning("admin_access_denied", user_id=user.id)
        raise AuthzError(
            "Admin access required",
            detail={
                "reason": "admin_role_required",
                "portal": Portal.ADMIN.value,
                "redirect_url": self.error_redirect(
                    Portal.ADMIN, "access_denied", "You do not have access to the admin portal."
                ),
            },
        )

    async def handle_callback(
        self, params: Mapping[str, str], device: Optional[DeviceInfo] = None
    ) -> CallbackOutcome:
        """Run the provider callback through to issued tokens.

        Order: decode state, provider error, code exchange with the decoded
        nonce/state, user info, user resolution, role authorization, token
        issuance with its audit entry, redirect.

        Raises:
            StateError: missing, forged, expired or replayed state
            ProviderRejectedError / ProviderUnavailableError: provider failures
            ValidationError: callback without code or error
            AuthzError: ADMIN requested by a user without ADMIN
        """
        raw_state = params.get("state")
        if not raw_state:
            raise StateError("missing state", detail={"reason": "missing_state"})
        state = await self.codec.decode(raw_state)
        requested_role = state.requested_role
        portal = portal_for_role(requested_role)

        provider_error = params.get("error")
        if provider_error:
            description = params.get("error_description") or ""
            if state.is_signup and _USER_EXISTS_MARKER in f"{provider_error} {description}".lower():
                self.logger.info("signup_user_exists", requested_role=requested_role.value)
                return CallbackOutcome(redirect_url=self._user_exists_redirect())
            self.logger.warning(
                "provider_callback_error",
                provider_error=provider_error,
                requested_role=requested_role.value,
            )
            raise ProviderRejectedError(
                sanitize_error_message(description) if description else "Authentication failed",
                detail={"provider_error": provider_error, "portal": portal.value},
            )

        code = params.get("code")
        if not code:
            raise ValidationError(
                "authorization code is missing", detail={"field": "code", "portal": portal.value}
            )

        token_set = await self.gateway.exchange_code(
            self.settings.oidc_redirect_uri,
            code,
            state.nonce,
            state.csrf_state,
        )
        info = await self.gateway.fetch_user_info(token_set.access_token)
        user, created = self._resolve_user(info, state)

        if requested_role == Role.ADMIN and not user.has_role(Role.ADMIN):
            await self._deny_admin(user, device)

        event = AuditEvent.SIGNUP if created else AuditEvent.LOGIN
        entry = self.audit.entry(
            event,
            user_id=user.id,
            portal=portal,
            device=device,
            metadata={"active_role": requested_role.value, "signup": state.is_signup},
        )
        pair = self.tokens.issue_pair(user, requested_role, device, audit=entry)
        needs_onboarding = onboarding_required(user, requested_role)

        query = {"role": requested_role.value, "portal": portal.value}
        if needs_onboarding:
            query["onboarding"] = "required"
        if not self.settings.is_production:
            # Cross-port dev portals cannot read cookies set for the API origin
            query["access_token"] = pair.access_token
            query["refresh_token"] = pair.refresh_token
        redirect_url = f"{self._portal_base(portal)}/callback?{urlencode(query)}"
        self.logger.info(
            "callback_completed",
            user_id=user.id,
            audit_event=event.value,
            active_role=requested_role.value,
            onboarding_required=needs_onboarding,
        )
        return CallbackOutcome(
            redirect_url=redirect_url,
            pair=pair,
            user=user,
            active_role=requested_role,
            onboarding_required=needs_onboarding,
        )

    # -- authenticated session operations ---------------------------------

    def authenticate(self, access_token: Optional[str]) -> Tuple[User, AccessClaims]:
        claims = self.tokens.verify_access_token(access_token)
        user = self.store.get_user(claims.user_id)
        if user is None:
            raise TokenError("user no longer exists")
        return user, claims

    def _require_same_owner(self, user: User, refresh_token: Optional[str]) -> None:
        owner = self.tokens.identify_refresh_owner(refresh_token)
        if owner is not None and owner != user.id:
            raise AuthzError("refresh token belongs to another user")

    def switch_role(
        self,
        user: User,
        role: Role,
        refresh_token: Optional[str],
        device: Optional[DeviceInfo] = None,
    ) -> TokenPair:
        """Rotate the session into another held role."""
        if not user.has_role(role):
            raise AuthzError(
                f"User does not have {role.value} role",
                detail={"reason": "role_not_held", "role": role.value},
            )
        self._require_same_owner(user, refresh_token)
        result = self.tokens.rotate(
            refresh_token,
            device,
            active_role=role,
            event=AuditEvent.ROLE_SWITCHED,
            metadata={"new_role": role.value},
        )
        self.logger.info("role_switched", user_id=user.id, new_role=role.value)
        return result.pair

    async def complete_onboarding(
        self,
        user: User,
        role: Role,
        refresh_token: Optional[str],
        device: Optional[DeviceInfo] = None,
    ) -> Tuple[User, TokenPair]:
        """Grant the role earned by onboarding and rotate the session into it."""
        if role == Role.ADMIN:
            raise AuthzError(
                "ADMIN cannot be granted through onboarding",
                detail={"reason": "admin_provisioned_out_of_band"},
            )
        if not refresh_token:
            raise NoTokenError("refresh token is required")
        self._require_same_owner(user, refresh_token)
        added = not user.has_role(role)

        def grant(current: User) -> User:
            # Runs only once the presented token has been consumed
            updated = self.store.add_user_role(current.id, role) or current
            return self.store.set_onboarding_completed(current.id, role) or updated

        result = self.tokens.rotate(
            refresh_token,
            device,
            active_role=role,
            event=AuditEvent.ROLE_ADDED,
            metadata={"role": role.value, "role_added": added},
            before_issue=grant,
        )
        if added and result.user.provider_subject:
            self._schedule_side_call(
                "update_role_attribute",
                self.gateway.update_role_attribute(result.user.provider_subject, result.user.roles),
            )
        self.logger.info("onboarding_completed", user_id=user.id, role=role.value, role_added=added)
        return result.user, result.pair

    async def password_changed(
        self, user: User, device: Optional[DeviceInfo] = None
    ) -> int:
        """Void every session after a password change at the provider."""
        self.store.mark_password_changed(user.id)
        role = primary_role(user)
        entry = self.audit.entry(
            AuditEvent.PASSWORD_CHANGED,
            user_id=user.id,
            portal=portal_for_role(role) if role else None,
            device=device,
        )
        count = self.tokens.revoke_all(user.id, "PASSWORD_CHANGED", audit=entry)
        if user.provider_subject:
            self._schedule_side_call(
                "global_sign_out", self.gateway.force_global_sign_out(user.provider_subject)
            )
        return count

    # -- logout ------------------------------------------------------------

    def _identify_for_logout(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> Optional[User]:
        user_id = None
        if access_token:
            try:
                user_id = self.tokens.verify_access_token(access_token).user_id
            except TokenError:
                user_id = None
        if user_id is None:
            user_id = self.tokens.identify_refresh_owner(refresh_token)
        return self.store.get_user(user_id) if user_id else None

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        device: Optional[DeviceInfo] = None,
        origin: Optional[str] = None,
    ) -> LogoutOutcome:
        """Revoke every refresh token of the caller and route through provider logout.

        Always succeeds: an unidentifiable caller is still sent through the
        provider logout so its cookies get cleared.
        """
        user = self._identify_for_logout(access_token, refresh_token)
        portal = portal_from_origin(origin, self.settings)
        if portal is None and user is not None and primary_role(user):
            portal = portal_for_role(primary_role(user))
        portal = portal or Portal.LANDING

        revoked = 0
        if user is not None:
            entry = self.audit.entry(
                AuditEvent.LOGOUT, user_id=user.id, portal=portal, device=device
            )
            revoked = self.tokens.revoke_all(user.id, "LOGOUT", audit=entry)
            if user.provider_subject:
                self._schedule_side_call(
                    "global_sign_out",
                    self.gateway.force_global_sign_out(user.provider_subject),
                )
        else:
            self.logger.info("logout_without_session", portal=portal.value)
        return LogoutOutcome(
            redirect_url=self.gateway.logout_url(self._portal_base(portal)),
            user_id=user.id if user else None,
            revoked_count=revoked,
        )
