from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import quote, urlencode, urlparse, urlunparse

import httpx
import jwt

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import (
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
)

logger = get_logger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"
_LOGIN_PATHS = ("/oauth2/authorize", "/login")
_SIGNUP_PATH = "/signup"
ID_TOKEN_ALGORITHMS = ("RS256",)
ID_TOKEN_LEEWAY_SECONDS = 30


@dataclass(frozen=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    end_session_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "ProviderMetadata":
        try:
            return cls(
                issuer=document["issuer"],
                authorization_endpoint=document["authorization_endpoint"],
                token_endpoint=document["token_endpoint"],
                userinfo_endpoint=document["userinfo_endpoint"],
                end_session_endpoint=document.get("end_session_endpoint"),
                jwks_uri=document.get("jwks_uri"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"discovery document missing field: {exc}") from exc


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    id_token_claims: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderUserInfo:
    subject: str
    email: str
    email_verified: bool = False
    given_name: Optional[str] = None
    family_name: Optional[str] = None


def _split_name(userinfo: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    given = userinfo.get("given_name")
    family = userinfo.get("family_name")
    if given or family:
        return given, family
    name = (userinfo.get("name") or "").strip()
    if not name:
        return None, None
    parts = name.split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class IdentityProviderGateway:
    """Adapter over the external OIDC provider.

    Constructed once by the runtime and initialized during application
    startup, where discovery failure is fatal. Critical-path calls raise
    ``ProviderRejectedError`` when the provider refuses the request (bad or
    expired code, invalid token) and ``ProviderUnavailableError`` on
    timeouts, transport errors and 5xx responses. Administrative calls are
    best-effort: they are time-boxed and never raise.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self.metadata: Optional[ProviderMetadata] = None
        self._jwks: Optional[jwt.PyJWKSet] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.provider_timeout_seconds),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    @property
    def initialized(self) -> bool:
        return self.metadata is not None

    async def initialize(self) -> ProviderMetadata:
        """Fetch the discovery document, retrying with exponential backoff.

        Raises:
            ProviderUnavailableError: after ``discovery_max_attempts`` failures
        """
        if self.metadata is not None:
            return self.metadata
        url = f"{self.settings.oidc_issuer_url}{DISCOVERY_PATH}"
        attempts = self.settings.discovery_max_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            logger.info("oidc_discovery_attempt", attempt=attempt, max_attempts=attempts, url=url)
            try:
                response = await self._get_client().get(url)
                response.raise_for_status()
                self.metadata = ProviderMetadata.from_document(response.json())
                logger.info(
                    "oidc_discovery_succeeded",
                    issuer=self.metadata.issuer,
                    attempt=attempt,
                )
                return self.metadata
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                logger.warning(
                    "oidc_discovery_failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt < attempts:
                    await self._sleep(
                        self.settings.discovery_base_delay_seconds * 2 ** (attempt - 1)
                    )
        logger.error("oidc_discovery_exhausted", attempts=attempts, url=url)
        raise ProviderUnavailableError(
            "identity provider discovery failed",
            detail={"attempts": attempts},
        ) from last_error

    def _require_metadata(self) -> ProviderMetadata:
        if self.metadata is None:
            raise ProviderUnavailableError("identity provider not initialized")
        return self.metadata

    def build_authorization_url(
        self, scope: str, state: str, nonce: str, signup: bool = False
    ) -> str:
        metadata = self._require_metadata()
        endpoint = metadata.authorization_endpoint
        if signup:
            parsed = urlparse(endpoint)
            path = parsed.path
            for login_path in _LOGIN_PATHS:
                if path.endswith(login_path):
                    path = path[: -len(login_path)] + _SIGNUP_PATH
                    break
            endpoint = urlunparse(parsed._replace(path=path))
        params = {
            "client_id": self.settings.oidc_client_id,
            "response_type": "code",
            "scope": scope,
            "redirect_uri": self.settings.oidc_redirect_uri,
            "state": state,
            "nonce": nonce,
        }
        return f"{endpoint}?{urlencode(params)}"

    @staticmethod
    def _raise_for_response(response: httpx.Response, operation: str) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        description = body.get("error_description") if isinstance(body, dict) else None
        detail = {"operation": operation, "status": response.status_code, "error": error}
        if response.status_code >= 500:
            raise ProviderUnavailableError(f"identity provider {operation} failed", detail=detail)
        raise ProviderRejectedError(
            description or f"identity provider rejected {operation}", detail=detail
        )

    async def _fetch_jwks(self) -> jwt.PyJWKSet:
        metadata = self._require_metadata()
        if not metadata.jwks_uri:
            logger.error("oidc_jwks_uri_missing", issuer=metadata.issuer)
            raise ProviderUnavailableError("identity provider publishes no signing keys")
        try:
            response = await self._get_client().get(
                metadata.jwks_uri, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            document = response.json()
            if not isinstance(document, dict):
                raise ValueError("JWKS document is not an object")
            jwks = jwt.PyJWKSet.from_dict(document)
        except httpx.HTTPError as exc:
            logger.error("oidc_jwks_fetch_failed", error_type=type(exc).__name__, error=str(exc))
            raise ProviderUnavailableError("identity provider signing keys unavailable") from exc
        except (ValueError, jwt.PyJWTError) as exc:
            logger.error("oidc_jwks_invalid", error_type=type(exc).__name__, error=str(exc))
            raise ProviderUnavailableError("identity provider signing keys are invalid") from exc
        logger.info("oidc_jwks_loaded", key_count=len(jwks.keys))
        return jwks

    async def _signing_key(self, id_token: str) -> jwt.PyJWK:
        """Key named by the id_token's ``kid``; the key set is refetched once on a miss."""
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except jwt.PyJWTError as exc:
            raise ProviderRejectedError("id_token is malformed") from exc
        for refresh in (False, True):
            if self._jwks is None or refresh:
                self._jwks = await self._fetch_jwks()
            for key in self._jwks.keys:
                if kid is None or key.key_id == kid:
                    return key
        raise ProviderRejectedError(
            "id_token signed with an unknown key", detail={"reason": "unknown_signing_key"}
        )

    async def _verify_id_token(self, id_token: str, expected_nonce: str) -> Dict[str, Any]:
        """Check signature, issuer, audience, expiry and nonce of the id_token.

        Raises:
            ProviderRejectedError: any check fails
            ProviderUnavailableError: the signing keys cannot be loaded
        """
        metadata = self._require_metadata()
        signing_key = await self._signing_key(id_token)
        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=list(ID_TOKEN_ALGORITHMS),
                audience=self.settings.oidc_client_id,
                issuer=metadata.issuer,
                leeway=ID_TOKEN_LEEWAY_SECONDS,
                options={"require": ["iss", "aud", "exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise ProviderRejectedError(
                "id_token has expired", detail={"reason": "id_token_expired"}
            ) from exc
        except jwt.InvalidIssuerError as exc:
            raise ProviderRejectedError(
                "id_token issuer does not match", detail={"reason": "issuer_mismatch"}
            ) from exc
        except jwt.InvalidAudienceError as exc:
            raise ProviderRejectedError(
                "id_token audience does not match", detail={"reason": "audience_mismatch"}
            ) from exc
        except jwt.PyJWTError as exc:
            logger.warning("oidc_id_token_invalid", error_type=type(exc).__name__, error=str(exc))
            raise ProviderRejectedError(
                "id_token is invalid", detail={"reason": "invalid_id_token"}
            ) from exc
        nonce = claims.get("nonce")
        if not nonce or not hmac.compare_digest(str(nonce).encode(), expected_nonce.encode()):
            raise ProviderRejectedError(
                "id_token nonce does not match", detail={"reason": "nonce_mismatch"}
            )
        return claims

    async def exchange_code(
        self,
        redirect_uri: str,
        code: str,
        expected_nonce: str,
        expected_state: str,
        *,
        returned_state: Optional[str] = None,
    ) -> TokenSet:
        """Exchange an authorization code using the nonce/state recovered from our own state payload."""
        metadata = self._require_metadata()
        if returned_state is not None and not hmac.compare_digest(returned_state.encode(), expected_state.encode()):
            raise ProviderRejectedError("state mismatch", detail={"reason": "state_mismatch"})
        if not code:
            raise ProviderRejectedError("authorization code is missing")
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.settings.oidc_client_id,
        }
        auth = None
        if self.settings.oidc_client_secret:
            auth = httpx.BasicAuth(self.settings.oidc_client_id, self.settings.oidc_client_secret)
        try:
            response = await self._get_client().post(
                metadata.token_endpoint,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("oidc_token_exchange_transport_error", error_type=type(exc).__name__, error=str(exc))
            raise ProviderUnavailableError("identity provider unreachable") from exc
        self._raise_for_response(response, "token_exchange")
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError("identity provider returned invalid JSON") from exc
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise ProviderRejectedError("no access token received from identity provider")
        id_token = body.get("id_token")
        if not id_token:
            raise ProviderRejectedError("no id_token received from identity provider")
        claims = await self._verify_id_token(id_token, expected_nonce)
        logger.info("oidc_token_exchange_succeeded", has_refresh=bool(body.get("refresh_token")))
        return TokenSet(
            access_token=access_token,
            id_token=id_token,
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            token_type=body.get("token_type", "Bearer"),
            id_token_claims=claims,
        )

    async def fetch_user_info(self, access_token: str) -> ProviderUserInfo:
        metadata = self._require_metadata()
        try:
            response = await self._get_client().get(
                metadata.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("oidc_userinfo_transport_error", error_type=type(exc).__name__, error=str(exc))
            raise ProviderUnavailableError("identity provider unreachable") from exc
        self._raise_for_response(response, "userinfo")
        try:
            userinfo = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError("identity provider returned invalid JSON") from exc
        if not isinstance(userinfo, dict) or not userinfo.get("sub") or not userinfo.get("email"):
            raise ProviderRejectedError(
                "user info is missing subject or email", detail={"reason": "incomplete_userinfo"}
            )
        given, family = _split_name(userinfo)
        return ProviderUserInfo(
            subject=str(userinfo["sub"]),
            email=str(userinfo["email"]).strip().lower(),
            email_verified=_as_bool(userinfo.get("email_verified", False)),
            given_name=given,
            family_name=family,
        )

    async def _admin_call(self, operation: str, method: str, path: str, payload: Optional[dict] = None) -> bool:
        if not self.settings.oidc_admin_api_url:
            logger.info("oidc_admin_call_skipped", operation=operation, reason="admin_api_not_configured")
            return False
        headers = {"Accept": "application/json"}
        if self.settings.oidc_admin_api_token:
            headers["Authorization"] = f"Bearer {self.settings.oidc_admin_api_token}"
        url = f"{self.settings.oidc_admin_api_url.rstrip('/')}{path}"
        try:
            response = await asyncio.wait_for(
                self._get_client().request(method, url, json=payload, headers=headers),
                timeout=self.settings.provider_admin_timeout_seconds,
            )
            self._raise_for_response(response, operation)
        except (asyncio.TimeoutError, httpx.HTTPError, ProviderError) as exc:
            logger.warning(
                "oidc_admin_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("oidc_admin_call_succeeded", operation=operation)
        return True

    async def force_global_sign_out(self, subject: str) -> bool:
        """Sign the user out of every provider session. Best-effort."""
        return await self._admin_call(
            "global_sign_out", "POST", f"/users/{quote(subject, safe='')}/global-sign-out"
        )

    async def update_role_attribute(self, subject: str, roles: Iterable[Any]) -> bool:
        """Mirror the user's roles into the provider's custom:roles attribute. Best-effort."""
        values = [getattr(role, "value", role) for role in roles]
        return await self._admin_call(
            "update_role_attribute",
            "POST",
            f"/users/{quote(subject, safe='')}/attributes",
            {"attributes": {"custom:roles": ",".join(values)}},
        )

    def logout_url(self, return_to: str) -> str:
        if self.metadata and self.metadata.end_session_endpoint:
            endpoint = self.metadata.end_session_endpoint
        else:
            endpoint = f"{self.settings.oidc_issuer_url}/logout"
        params = {"client_id": self.settings.oidc_client_id, "logout_uri": return_to}
        return f"{endpoint}?{urlencode(params)}"

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
