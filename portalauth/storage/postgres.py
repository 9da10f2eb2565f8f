from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portalauth.logging import get_logger
from portalauth.service.roles import Role
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import AccessLogEntry, RefreshToken, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        provider_subject TEXT UNIQUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        roles TEXT[] NOT NULL DEFAULT '{}',
        first_name TEXT,
        last_name TEXT,
        investor_onboarding_completed BOOLEAN NOT NULL DEFAULT FALSE,
        issuer_onboarding_completed BOOLEAN NOT NULL DEFAULT FALSE,
        password_changed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        active_role TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        device_fingerprint TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id) WHERE revoked = FALSE",
    """
    CREATE TABLE IF NOT EXISTS access_log (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        event_type TEXT NOT NULL,
        portal TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_info TEXT,
        device_type TEXT,
        success BOOLEAN NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS access_log_user_idx ON access_log (user_id, created_at DESC)",
)

_REQUIRED_TABLES = ("app_user", "refresh_token", "access_log")


class PostgresStore:
    """Postgres-backed repository for users, refresh tokens and the access log."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            provider_subject=row.get("provider_subject"),
            email_verified=bool(row.get("email_verified")),
            roles=[Role(r) for r in (row.get("roles") or [])],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            investor_onboarding_completed=bool(row.get("investor_onboarding_completed")),
            issuer_onboarding_completed=bool(row.get("issuer_onboarding_completed")),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            token_hash=row["token_hash"],
            user_id=row["user_id"],
            active_role=Role(row["active_role"]),
            expires_at=row["expires_at"],
            used=bool(row.get("used")),
            used_at=row.get("used_at"),
            revoked=bool(row.get("revoked")),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            device_fingerprint=row.get("device_fingerprint"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _log_from_row(row: Dict[str, Any]) -> AccessLogEntry:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AccessLogEntry(
            id=row["id"],
            event_type=row["event_type"],
            success=bool(row.get("success")),
            user_id=row.get("user_id"),
            portal=row.get("portal"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_info=row.get("device_info"),
            device_type=row.get("device_type"),
            metadata=metadata,
            created_at=row.get("created_at") or utcnow(),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, provider_subject, email_verified, roles, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        user.email,
                        user.provider_subject,
                        user.email_verified,
                        [role.value for role in user.roles],
                        user.first_name,
                        user.last_name,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "provider_subject" if "provider_subject" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _fetch_user(self, where: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where} = %s", (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        return self._fetch_user("provider_subject", subject)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email.strip().lower())

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def bind_provider_subject(self, user_id: str, subject: str) -> Optional[User]:
        try:
            return self._update_user(user_id, "provider_subject = %s", (subject,))
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider subject already bound", {"field": "provider_subject"}
            )

    def update_user_profile(
        self,
        user_id: str,
        *,
        email_verified: Optional[bool] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "email_verified = COALESCE(%s, email_verified), "
            "first_name = COALESCE(%s, first_name), "
            "last_name = COALESCE(%s, last_name)",
            (email_verified, first_name, last_name),
        )

    def add_user_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(
            user_id,
            "roles = CASE WHEN %s = ANY(roles) THEN roles ELSE array_append(roles, %s) END",
            (role.value, role.value),
        )

    def set_onboarding_completed(self, user_id: str, role: Role) -> Optional[User]:
        if role == Role.INVESTOR:
            return self._update_user(user_id, "investor_onboarding_completed = TRUE", ())
        if role == Role.ISSUER:
            return self._update_user(user_id, "issuer_onboarding_completed = TRUE", ())
        raise ValueError(f"role {role.value} has no onboarding flow")

    def mark_password_changed(
        self, user_id: str, changed_at: Optional[datetime] = None
    ) -> Optional[User]:
        return self._update_user(
            user_id, "password_changed_at = %s", (changed_at or utcnow(),)
        )

    # -- refresh tokens ----------------------------------------------------

    @staticmethod
    def _insert_access_log(conn, entry: AccessLogEntry) -> None:
        conn.execute(
            """
            INSERT INTO access_log (id, user_id, event_type, portal, ip_address, user_agent,
                                    device_info, device_type, success, metadata, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.id,
                entry.user_id,
                entry.event_type,
                entry.portal,
                entry.ip_address,
                entry.user_agent,
                entry.device_info,
                entry.device_type,
                entry.success,
                json.dumps(entry.metadata or {}),
                entry.created_at,
            ),
        )

    def create_refresh_token(
        self, token: RefreshToken, *, audit: Optional[AccessLogEntry] = None
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO refresh_token (id, token_hash, user_id, active_role, expires_at,
                                                   device_fingerprint, ip_address, user_agent, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            token.id,
                            token.token_hash,
                            token.user_id,
                            token.active_role.value,
                            token.expires_at,
                            token.device_fingerprint,
                            token.ip_address,
                            token.user_agent,
                            token.created_at,
                        ),
                    ).fetchone()
                    if audit is not None:
                        self._insert_access_log(conn, audit)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        return self._token_from_row(row)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def mark_refresh_token_used(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> bool:
        """Conditional single-row update; exactly one concurrent caller sees True."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE AND revoked = FALSE
                RETURNING id
                """,
                (used_at or utcnow(), token_id),
            ).fetchone()
        return row is not None

    def revoke_all_refresh_tokens(
        self,
        user_id: str,
        *,
        reason: str,
        audit: Optional[AccessLogEntry] = None,
    ) -> int:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    """
                    UPDATE refresh_token SET revoked = TRUE, revoked_at = now(), revoked_reason = %s
                    WHERE user_id = %s AND revoked = FALSE
                    RETURNING id
                    """,
                    (reason, user_id),
                ).fetchall()
                count = len(rows)
                if audit is not None:
                    audit.metadata = {**audit.metadata, "revoked_count": count}
                    self._insert_access_log(conn, audit)
        return count

    # -- access logs -------------------------------------------------------

    def append_access_log(self, entry: AccessLogEntry) -> AccessLogEntry:
        with self._connect() as conn:
            self._insert_access_log(conn, entry)
        return entry

    def list_access_logs(
        self,
        user_id: Optional[str] = None,
        *,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AccessLogEntry]:
        clauses = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM access_log {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._log_from_row(row) for row in rows]
