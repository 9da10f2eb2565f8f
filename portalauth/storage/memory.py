from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from portalauth.logging import get_logger
from portalauth.service.roles import Role
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import AccessLogEntry, RefreshToken, User, utcnow


class MemoryStore:
    """In-memory backing store with a JSON snapshot, for tests and local development.

    Every method holds ``_data_lock`` for its whole read-modify-write, which
    gives the same atomicity the Postgres store gets from single-statement
    conditional updates and transactions.
    """

    def __init__(self, fs_root: str = "/tmp/portalauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.access_logs: List[AccessLogEntry] = []
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        provider_subject: Optional[str] = None,
        email_verified: bool = False,
        roles: Optional[List[Role]] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        user = User.new(
            email,
            provider_subject=provider_subject,
            email_verified=email_verified,
            roles=roles,
            first_name=first_name,
            last_name=last_name,
        )
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if provider_subject and self._user_by_subject(provider_subject):
                raise ConstraintViolation(
                    "provider subject already bound", {"field": "provider_subject"}
                )
            self.users[user.id] = user
            self._persist_state()
            return replace(user, roles=list(user.roles))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, roles=list(user.roles)) if user else None

    def _user_by_subject(self, subject: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.provider_subject == subject), None
        )

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        with self._data_lock:
            user = self._user_by_subject(subject)
            return replace(user, roles=list(user.roles)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user, roles=list(user.roles)) if user else None

    def _mutate_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user, roles=list(user.roles))

    def bind_provider_subject(self, user_id: str, subject: str) -> Optional[User]:
        with self._data_lock:
            owner = self._user_by_subject(subject)
            if owner and owner.id != user_id:
                raise ConstraintViolation(
                    "provider subject already bound", {"field": "provider_subject"}
                )
            return self._mutate_user(user_id, provider_subject=subject)

    def update_user_profile(
        self,
        user_id: str,
        *,
        email_verified: Optional[bool] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[User]:
        changes = {
            key: value
            for key, value in (
                ("email_verified", email_verified),
                ("first_name", first_name),
                ("last_name", last_name),
            )
            if value is not None
        }
        return self._mutate_user(user_id, **changes)

    def add_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if role in user.roles:
                return replace(user, roles=list(user.roles))
            return self._mutate_user(user_id, roles=[*user.roles, role])

    def set_onboarding_completed(self, user_id: str, role: Role) -> Optional[User]:
        if role == Role.INVESTOR:
            return self._mutate_user(user_id, investor_onboarding_completed=True)
        if role == Role.ISSUER:
            return self._mutate_user(user_id, issuer_onboarding_completed=True)
        raise ValueError(f"role {role.value} has no onboarding flow")

    def mark_password_changed(
        self, user_id: str, changed_at: Optional[datetime] = None
    ) -> Optional[User]:
        return self._mutate_user(user_id, password_changed_at=changed_at or utcnow())

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(
        self, token: RefreshToken, *, audit: Optional[AccessLogEntry] = None
    ) -> RefreshToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            self.refresh_tokens[token.id] = replace(token)
            if audit is not None:
                self.access_logs.append(audit)
            self._persist_state()
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(token) if token else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id]
            return sorted(tokens, key=lambda t: t.created_at)

    def mark_refresh_token_used(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> bool:
        """Flip ``used`` from False to True; False when another caller already did."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.used or token.revoked:
                return False
            token.used = True
            token.used_at = used_at or utcnow()
            self._persist_state()
            return True

    def revoke_all_refresh_tokens(
        self,
        user_id: str,
        *,
        reason: str,
        audit: Optional[AccessLogEntry] = None,
    ) -> int:
        """Revoke every unrevoked token of a user and append ``audit`` atomically."""
        now = utcnow()
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.revoked:
                    token.revoked = True
                    token.revoked_at = now
                    token.revoked_reason = reason
                    count += 1
            if audit is not None:
                audit.metadata = {**audit.metadata, "revoked_count": count}
                self.access_logs.append(audit)
            self._persist_state()
            return count

    # -- access logs -------------------------------------------------------

    def append_access_log(self, entry: AccessLogEntry) -> AccessLogEntry:
        with self._data_lock:
            self.access_logs.append(entry)
            self._persist_state()
            return entry

    def list_access_logs(
        self,
        user_id: Optional[str] = None,
        *,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AccessLogEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.access_logs
                if (user_id is None or e.user_id == user_id)
                and (event_type is None or e.event_type == event_type)
            ]
            return sorted(entries, key=lambda e: e.created_at, reverse=True)[:limit]

    def ping(self) -> bool:
        return True

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "access_logs": [self._serialize_access_log(e) for e in self.access_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.access_logs = [
            self._deserialize_access_log(e) for e in data.get("access_logs", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "provider_subject": user.provider_subject,
            "email_verified": user.email_verified,
            "roles": [role.value for role in user.roles],
            "first_name": user.first_name,
            "last_name": user.last_name,
            "investor_onboarding_completed": user.investor_onboarding_completed,
            "issuer_onboarding_completed": user.issuer_onboarding_completed,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            provider_subject=data.get("provider_subject"),
            email_verified=data.get("email_verified", False),
            roles=[Role(r) for r in data.get("roles", [])],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            investor_onboarding_completed=data.get("investor_onboarding_completed", False),
            issuer_onboarding_completed=data.get("issuer_onboarding_completed", False),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "active_role": token.active_role.value,
            "expires_at": self._serialize_datetime(token.expires_at),
            "used": token.used,
            "used_at": self._serialize_datetime(token.used_at),
            "revoked": token.revoked,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "revoked_reason": token.revoked_reason,
            "device_fingerprint": token.device_fingerprint,
            "ip_address": token.ip_address,
            "user_agent": token.user_agent,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            active_role=Role(data["active_role"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            used_at=self._deserialize_datetime(data.get("used_at")),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            device_fingerprint=data.get("device_fingerprint"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_access_log(self, entry: AccessLogEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "event_type": entry.event_type,
            "portal": entry.portal,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "device_info": entry.device_info,
            "device_type": entry.device_type,
            "success": entry.success,
            "metadata": entry.metadata,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_access_log(self, data: dict) -> AccessLogEntry:
        return AccessLogEntry(
            id=data.get("id") or str(uuid.uuid4()),
            event_type=data["event_type"],
            success=data.get("success", True),
            user_id=data.get("user_id"),
            portal=data.get("portal"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_info=data.get("device_info"),
            device_type=data.get("device_type"),
            metadata=data.get("metadata") or {},
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
