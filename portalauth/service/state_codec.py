from __future__ import annotations

import base64
import binascii
import hashlib
import json
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from portalauth.logging import get_logger
from portalauth.service.errors import StateError, ValidationError
from portalauth.service.roles import Role, parse_role

logger = get_logger(__name__)

MAX_STATE_LENGTH = 4096
CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class OAuthTransactionState:
    """Ephemeral login round-trip state carried inside the redirect URL."""

    nonce: str
    csrf_state: str
    requested_role: Role
    is_signup: bool
    issued_at: int
    transaction_id: str

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["requested_role"] = self.requested_role.value
        return payload


class _ConsumedIdSet:
    """In-process expiring set used when no Redis cache is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._expiry: Dict[str, float] = {}

    def consume(self, transaction_id: str, ttl_seconds: int, now: float) -> bool:
        with self._lock:
            expired = [key for key, expires in self._expiry.items() if expires <= now]
            for key in expired:
                del self._expiry[key]
            if transaction_id in self._expiry:
                return False
            self._expiry[transaction_id] = now + ttl_seconds
            return True


class StateCodec:
    """Authenticated encryption of OAuth transaction state.

    Payloads are sealed with Fernet (AES-CBC + HMAC-SHA256) under a key
    derived from the server secret, then emitted as unpadded URL-safe base64.
    ``decode`` accepts a payload once: it must be canonically encoded,
    authentic, younger than ``ttl_seconds`` and carry a transaction id that
    has not been consumed before.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 600,
        *,
        cache=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("state codec secret is required")
        self._cipher = Fernet(self._derive_cipher_key(secret))
        self.ttl_seconds = ttl_seconds
        self.cache = cache
        self._clock = clock
        self._consumed = _ConsumedIdSet()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def new_state(self, requested_role: Role, is_signup: bool) -> OAuthTransactionState:
        return OAuthTransactionState(
            nonce=secrets.token_urlsafe(24),
            csrf_state=secrets.token_urlsafe(24),
            requested_role=requested_role,
            is_signup=bool(is_signup),
            issued_at=int(self._clock()),
            transaction_id=secrets.token_hex(16),
        )

    def encode(self, state: OAuthTransactionState) -> str:
        plaintext = json.dumps(state.to_payload(), separators=(",", ":")).encode()
        sealed = self._cipher.encrypt_at_time(plaintext, int(self._clock()))
        return sealed.decode("ascii").rstrip("=")

    def _open(self, token: str) -> dict:
        if not token or len(token) > MAX_STATE_LENGTH:
            raise StateError("missing or oversized state")
        try:
            raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        except (binascii.Error, ValueError) as exc:
            raise StateError("state is not valid base64") from exc
        # Reject alternate encodings of the same bytes so every character is significant
        if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != token:
            raise StateError("state is not canonically encoded")
        try:
            plaintext = self._cipher.decrypt_at_time(
                base64.urlsafe_b64encode(raw), self.ttl_seconds, int(self._clock())
            )
        except InvalidToken as exc:
            raise StateError("state failed authentication or has expired") from exc
        try:
            payload = json.loads(plaintext)
        except ValueError as exc:
            raise StateError("state payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise StateError("state payload has unexpected shape")
        return payload

    def _parse(self, payload: dict) -> OAuthTransactionState:
        try:
            state = OAuthTransactionState(
                nonce=str(payload["nonce"]),
                csrf_state=str(payload["csrf_state"]),
                requested_role=parse_role(payload["requested_role"]),
                is_signup=bool(payload["is_signup"]),
                issued_at=int(payload["issued_at"]),
                transaction_id=str(payload["transaction_id"]),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise StateError("state payload is missing required fields") from exc
        if not state.nonce or not state.csrf_state or not state.transaction_id:
            raise StateError("state payload is missing required fields")
        return state

    async def _consume(self, transaction_id: str) -> bool:
        if self.cache is not None:
            return await self.cache.consume_state_id(transaction_id, self.ttl_seconds)
        return self._consumed.consume(transaction_id, self.ttl_seconds, self._clock())

    async def decode(self, token: Optional[str]) -> OAuthTransactionState:
        state = self._parse(self._open(token or ""))
        age = int(self._clock()) - state.issued_at
        if age < -CLOCK_SKEW_SECONDS or age > self.ttl_seconds:
            logger.warning("oauth_state_stale", age_seconds=age, ttl_seconds=self.ttl_seconds)
            raise StateError("state has expired")
        if not await self._consume(state.transaction_id):
            logger.warning("oauth_state_replayed", transaction_id=state.transaction_id)
            raise StateError("state has already been used")
        logger.debug("oauth_state_decoded", age_seconds=age, signup=state.is_signup)
        return state
