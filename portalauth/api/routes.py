from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from portalauth.api.error_handling import service_error_response
from portalauth.api.schemas import (
    CompleteOnboardingRequest,
    Envelope,
    PasswordChangedResponse,
    RefreshTokenRequest,
    SwitchRoleRequest,
    TokenRefreshResponse,
    UserResponse,
)
from portalauth.config import Settings, get_settings
from portalauth.logging import get_logger
from portalauth.service.auth import AuthService
from portalauth.service.errors import ReuseDetectedError, ServiceError, TokenError
from portalauth.service.fingerprint import extract_device
from portalauth.service.roles import Portal, Role, onboarding_required, portal_url
from portalauth.service.runtime import get_runtime
from portalauth.service.tokens import AccessClaims, TokenPair
from portalauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

_GENERIC_ERROR_MESSAGES = {
    "invalid_state": "Your sign-in session expired. Please try again.",
    "provider_rejected": "Authentication failed. Please try again.",
    "provider_unavailable": "Sign-in is temporarily unavailable. Please try again later.",
    "forbidden": "You do not have access to this portal.",
    "validation_error": "The sign-in request was invalid.",
}


class Principal:
    """Authenticated caller resolved from the access token."""

    def __init__(self, user: User, claims: AccessClaims):
        self.user = user
        self.claims = claims

    @property
    def active_role(self) -> Role:
        return self.claims.active_role


# -- cookies -------------------------------------------------------------


def _cookie_attributes(settings: Settings) -> dict:
    """Attributes shared by set and delete so browsers match the same cookie."""
    return {
        "httponly": True,
        "path": "/",
        "domain": settings.cookie_domain or None,
        "secure": settings.is_production,
        "samesite": "strict" if settings.is_production else "lax",
    }


def _apply_session_cookies(response: Response, pair: TokenPair, settings: Settings) -> None:
    attributes = _cookie_attributes(settings)
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        **attributes,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        **attributes,
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    attributes = _cookie_attributes(settings)
    response.delete_cookie(ACCESS_COOKIE, **attributes)
    response.delete_cookie(REFRESH_COOKIE, **attributes)


# -- request helpers -----------------------------------------------------


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _request_origin(request: Request) -> Optional[str]:
    return request.headers.get("origin") or request.headers.get("referer")


def _wants_json(request: Request) -> bool:
    return "application/json" in (request.headers.get("accept") or "").lower()


def _auth_service() -> AuthService:
    return get_runtime().auth


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Principal:
    token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(authorization)
    user, claims = _auth_service().authenticate(token)
    return Principal(user, claims)


def _user_to_response(user: User, active_role: Role) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        roles=[role.value for role in user.roles],
        active_role=active_role.value,
        first_name=user.first_name,
        last_name=user.last_name,
        email_verified=user.email_verified,
        investor_onboarding_completed=user.investor_onboarding_completed,
        issuer_onboarding_completed=user.issuer_onboarding_completed,
        onboarding_required=onboarding_required(user, active_role),
        created_at=user.created_at,
    )


def _token_payload(pair: TokenPair, settings: Settings) -> TokenRefreshResponse:
    return TokenRefreshResponse(
        access_token=pair.access_token,
        expires_in=pair.access_expires_in,
        active_role=pair.active_role.value,
        refresh_token=None if settings.is_production else pair.refresh_token,
    )


def _callback_error_redirect(settings: Settings, exc: ServiceError) -> str:
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    if detail.get("redirect_url"):
        return detail["redirect_url"]
    try:
        portal = Portal(detail.get("portal", Portal.LANDING.value))
    except ValueError:
        portal = Portal.LANDING
    message = _GENERIC_ERROR_MESSAGES.get(exc.error_code, "Sign-in failed. Please try again.")
    query = urlencode({"error": exc.error_code, "message": message})
    return f"{portal_url(settings, portal)}/auth-error?{query}"


# -- login / callback ----------------------------------------------------


@router.get("/auth/login", tags=["auth"])
async def login(
    request: Request,
    role: Optional[str] = Query(None, max_length=32),
    signup: Optional[str] = Query(None, max_length=8),
):
    """Redirect the browser to the identity provider.

    ``role`` selects the portal being signed into (detected from the
    Origin/Referer when absent); ``signup=true`` opens the provider's
    registration page instead of its login page.

    Raises:
        400: unknown role
        403: ADMIN requested together with signup
    """
    redirect = _auth_service().start_login(role, signup, _request_origin(request))
    return RedirectResponse(redirect.authorization_url, status_code=302)


@router.get("/auth/callback", tags=["auth"])
async def callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=4096),
    error: Optional[str] = Query(None, max_length=256),
    error_description: Optional[str] = Query(None, max_length=1024),
):
    """Complete the provider round trip, set session cookies and redirect to the portal."""
    settings = get_settings()
    params = {
        key: value
        for key, value in (
            ("code", code),
            ("state", state),
            ("error", error),
            ("error_description", error_description),
        )
        if value is not None
    }
    try:
        outcome = await _auth_service().handle_callback(params, extract_device(request))
    except ServiceError as exc:
        if _wants_json(request):
            return service_error_response(request, exc)
        logger.warning(
            "callback_failed",
            error_code=exc.error_code,
            status_code=exc.status_code,
            error=exc.message,
        )
        return RedirectResponse(_callback_error_redirect(settings, exc), status_code=302)

    response = RedirectResponse(outcome.redirect_url, status_code=302)
    if outcome.pair is not None:
        _apply_session_cookies(response, outcome.pair, settings)
    return response


# -- logout --------------------------------------------------------------


@router.get("/auth/logout", tags=["auth"])
async def logout(request: Request, authorization: Optional[str] = Header(None)):
    """Revoke every refresh token of the caller, clear cookies, redirect via provider logout."""
    settings = get_settings()
    access_token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(authorization)
    outcome = await _auth_service().logout(
        access_token,
        request.cookies.get(REFRESH_COOKIE),
        extract_device(request),
        _request_origin(request),
    )
    response = RedirectResponse(outcome.redirect_url, status_code=302)
    _clear_session_cookies(response, settings)
    return response


# -- refresh -------------------------------------------------------------


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    body: Optional[RefreshTokenRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    """Rotate the refresh token and mint a new access token.

    The refresh token is read from its cookie. Outside production a Bearer
    header or a JSON body ``refresh_token`` is also accepted for portals
    served from another origin.

    Raises:
        401: no token, or a malformed one
        403: unknown, expired or revoked token, or reuse of a consumed token
    """
    settings = get_settings()
    presented = request.cookies.get(REFRESH_COOKIE)
    if not presented and not settings.is_production:
        presented = _bearer_token(authorization) or (body.refresh_token if body else None)

    try:
        result = _auth_service().tokens.rotate(presented, extract_device(request))
    except (TokenError, ReuseDetectedError) as exc:
        failure = service_error_response(request, exc)
        _clear_session_cookies(failure, settings)
        return failure

    envelope = Envelope(status="ok", data=_token_payload(result.pair, settings))
    response = JSONResponse(content=envelope.model_dump(mode="json"))
    _apply_session_cookies(response, result.pair, settings)
    return response


# -- authenticated session operations -------------------------------------


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=_user_to_response(principal.user, principal.active_role))


@router.post("/auth/switch-role", response_model=Envelope, tags=["auth"])
async def switch_role(
    body: SwitchRoleRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    """Move the session to another role the user already holds."""
    settings = get_settings()
    pair = _auth_service().switch_role(
        principal.user,
        Role(body.role),
        request.cookies.get(REFRESH_COOKIE),
        extract_device(request),
    )
    envelope = Envelope(status="ok", data=_token_payload(pair, settings))
    response = JSONResponse(content=envelope.model_dump(mode="json"))
    _apply_session_cookies(response, pair, settings)
    return response


@router.post("/auth/complete-onboarding", response_model=Envelope, tags=["auth"])
async def complete_onboarding(
    body: CompleteOnboardingRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    """Grant INVESTOR or ISSUER after onboarding and rotate the session into it."""
    settings = get_settings()
    role = Role(body.role)
    user, pair = await _auth_service().complete_onboarding(
        principal.user,
        role,
        request.cookies.get(REFRESH_COOKIE),
        extract_device(request),
    )
    envelope = Envelope(
        status="ok",
        data={
            "user": _user_to_response(user, role).model_dump(mode="json"),
            "tokens": _token_payload(pair, settings).model_dump(mode="json"),
        },
    )
    response = JSONResponse(content=envelope.model_dump(mode="json"))
    _apply_session_cookies(response, pair, settings)
    return response


@router.post("/auth/password-changed", response_model=Envelope, tags=["auth"])
async def password_changed(
    request: Request,
    principal: Principal = Depends(get_principal),
):
    """Revoke all sessions after the user changed their password at the provider."""
    settings = get_settings()
    count = await _auth_service().password_changed(principal.user, extract_device(request))
    envelope = Envelope(status="ok", data=PasswordChangedResponse(revoked_count=count))
    response = JSONResponse(content=envelope.model_dump(mode="json"))
    _clear_session_cookies(response, settings)
    return response
