from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.audit import AuditEvent, AuditRecorder
from portalauth.service.errors import (
    AuthzError,
    MalformedTokenError,
    NoTokenError,
    ReuseDetectedError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRevokedError,
)
from portalauth.service.fingerprint import DeviceInfo
from portalauth.service.roles import Role, portal_for_role
from portalauth.storage.models import AccessLogEntry, RefreshToken, User

logger = get_logger(__name__)

REUSE_REVOCATION_REASON = "TOKEN_REUSE_DETECTED"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    active_role: Role
    access_expires_at: datetime
    refresh_expires_at: datetime

    @property
    def access_expires_in(self) -> int:
        return max(0, int((self.access_expires_at - datetime.now(timezone.utc)).total_seconds()))


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    roles: List[Role]
    active_role: Role
    expires_at: datetime


@dataclass(frozen=True)
class RotationResult:
    user: User
    pair: TokenPair


class TokenEngine:
    """Issues access tokens and single-use, device-bound refresh tokens.

    Access tokens are stateless HS256 JWTs. Refresh tokens are HS256 JWTs
    whose ``jti`` names a persisted record; only the sha256 of the token is
    stored. All methods are synchronous so a rotation, once started, is
    never interrupted between marking the old token used and persisting the
    replacement.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        audit: AuditRecorder,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self._clock = clock
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # -- JWT ---------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, expected_type: str, *, verify_exp: bool = True
    ) -> dict[str, Any]:
        """Verify signature, algorithm, issuer, audience, type and expiry.

        Raises:
            MalformedTokenError: structure, signature or claims are invalid
            TokenExpiredError: ``exp`` is in the past beyond the leeway
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token is malformed")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise MalformedTokenError("token is malformed")
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise MalformedTokenError("token is malformed")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise MalformedTokenError("token signature is invalid")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError:
            raise MalformedTokenError("token is malformed")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token is malformed")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError("token issuer is invalid")
        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if self.settings.jwt_audience not in audiences:
            raise MalformedTokenError("token audience is invalid")
        if payload.get("token_type") != expected_type:
            raise MalformedTokenError("token type is invalid")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise MalformedTokenError("token is missing expiry")
        if verify_exp:
            try:
                expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                raise MalformedTokenError("token expiry is invalid")
            if expires_at + self._clock_skew_leeway < self._now():
                raise TokenExpiredError("token has expired")
        return payload

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    # -- issuance ----------------------------------------------------------

    def _build_pair(
        self, user: User, active_role: Role, device: Optional[DeviceInfo]
    ) -> tuple[TokenPair, RefreshToken]:
        now = self._now()
        access_expires = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_expires = now + timedelta(days=self.settings.refresh_token_ttl_days)
        common = {
            "sub": user.id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
        }
        access_token = self._encode_jwt(
            {
                **common,
                "email": user.email,
                "roles": [role.value for role in user.roles],
                "activeRole": active_role.value,
                "token_type": "access",
                "exp": int(access_expires.timestamp()),
            }
        )
        token_id = str(uuid.uuid4())
        refresh_token = self._encode_jwt(
            {
                **common,
                "jti": token_id,
                "token_type": "refresh",
                "exp": int(refresh_expires.timestamp()),
            }
        )
        record = RefreshToken(
            id=token_id,
            token_hash=self.hash_token(refresh_token),
            user_id=user.id,
            active_role=active_role,
            expires_at=refresh_expires,
            device_fingerprint=device.fingerprint if device else None,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            created_at=now,
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            active_role=active_role,
            access_expires_at=access_expires,
            refresh_expires_at=refresh_expires,
        )
        return pair, record

    def issue_pair(
        self,
        user: User,
        active_role: Role,
        device: Optional[DeviceInfo] = None,
        *,
        audit: Optional[AccessLogEntry] = None,
    ) -> TokenPair:
        """Mint an access/refresh pair and persist the refresh record.

        ``audit`` is written in the same storage transaction as the record.
        """
        pair, record = self._build_pair(user, active_role, device)
        self.store.create_refresh_token(record, audit=audit)
        logger.info(
            "tokens_issued",
            user_id=user.id,
            active_role=active_role.value,
            token_id=record.id,
        )
        return pair

    # -- rotation ----------------------------------------------------------

    def _revoke_for_reuse(self, record: RefreshToken, device: Optional[DeviceInfo]) -> int:
        entry = self.audit.entry(
            AuditEvent.REUSE_DETECTED,
            user_id=record.user_id,
            success=False,
            portal=portal_for_role(record.active_role),
            device=device,
            metadata={"token_id": record.id, "reason": REUSE_REVOCATION_REASON},
        )
        revoked = self.store.revoke_all_refresh_tokens(
            record.user_id, reason=REUSE_REVOCATION_REASON, audit=entry
        )
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            token_id=record.id,
            revoked_count=revoked,
        )
        return revoked

    def rotate(
        self,
        presented: Optional[str],
        device: Optional[DeviceInfo] = None,
        *,
        active_role: Optional[Role] = None,
        event: AuditEvent = AuditEvent.REFRESH,
        metadata: Optional[dict] = None,
        before_issue: Optional[Callable[[User], User]] = None,
    ) -> RotationResult:
        """Exchange a refresh token for a new pair; the presented token is consumed.

        The new pair keeps the record's active role unless ``active_role`` is
        given; ``event`` names the audit entry written with the new record.
        ``before_issue`` runs after the presented token is consumed and before
        the new pair is minted.

        Raises:
            NoTokenError, MalformedTokenError, TokenNotFoundError,
            TokenExpiredError, TokenRevokedError: the token cannot be used
            ReuseDetectedError: the token was already consumed; every
                refresh token of the owner has been revoked
        """
        if not presented:
            raise NoTokenError("refresh token is required")
        payload = self._decode_jwt(presented, "refresh")
        record = self.store.get_refresh_token_by_hash(self.hash_token(presented))
        if record is None or record.id != payload.get("jti") or record.user_id != payload.get("sub"):
            raise TokenNotFoundError("refresh token not found")
        if record.revoked:
            raise TokenRevokedError("refresh token has been revoked")
        if record.expires_at <= self._now():
            raise TokenExpiredError("refresh token has expired")
        if record.used:
            self._revoke_for_reuse(record, device)
            raise ReuseDetectedError("Token reuse detected - all sessions revoked")

        if device and record.device_fingerprint and device.fingerprint != record.device_fingerprint:
            logger.warning(
                "refresh_fingerprint_mismatch",
                user_id=record.user_id,
                token_id=record.id,
                stored_fingerprint=record.device_fingerprint[:12],
                presented_fingerprint=device.fingerprint[:12],
            )

        user = self.store.get_user(record.user_id)
        if user is None:
            raise TokenNotFoundError("refresh token owner not found")
        target_role = active_role or record.active_role
        if target_role == Role.ADMIN and not user.has_role(Role.ADMIN):
            raise AuthzError("admin role is no longer held")

        if not self.store.mark_refresh_token_used(record.id, self._now()):
            # Another request consumed or revoked this token between our read and write
            current = self.store.get_refresh_token_by_hash(record.token_hash)
            if current is not None and current.revoked and not current.used:
                raise TokenRevokedError("refresh token has been revoked")
            self._revoke_for_reuse(record, device)
            raise ReuseDetectedError("Token reuse detected - all sessions revoked")

        if before_issue is not None:
            user = before_issue(user)

        entry = self.audit.entry(
            event,
            user_id=user.id,
            portal=portal_for_role(target_role),
            device=device,
            metadata={**(metadata or {}), "previous_token_id": record.id},
        )
        pair = self.issue_pair(user, target_role, device, audit=entry)
        return RotationResult(user=user, pair=pair)

    # -- verification and revocation ----------------------------------------

    def verify_access_token(self, token: Optional[str]) -> AccessClaims:
        if not token:
            raise NoTokenError("access token is required")
        payload = self._decode_jwt(token, "access")
        try:
            return AccessClaims(
                user_id=str(payload["sub"]),
                email=str(payload.get("email", "")),
                roles=[Role(r) for r in payload.get("roles", [])],
                active_role=Role(payload["activeRole"]),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, ValueError, TypeError):
            raise MalformedTokenError("token claims are invalid")

    def identify_refresh_owner(self, token: Optional[str]) -> Optional[str]:
        """User id behind a refresh token, ignoring expiry; None when unusable."""
        if not token:
            return None
        try:
            payload = self._decode_jwt(token, "refresh", verify_exp=False)
        except MalformedTokenError:
            return None
        record = self.store.get_refresh_token_by_hash(self.hash_token(token))
        if record is None or record.user_id != payload.get("sub"):
            return None
        return record.user_id

    def revoke_all(
        self, user_id: str, reason: str, audit: Optional[AccessLogEntry] = None
    ) -> int:
        count = self.store.revoke_all_refresh_tokens(user_id, reason=reason, audit=audit)
        logger.info("refresh_tokens_revoked", user_id=user_id, reason=reason, revoked_count=count)
        return count
