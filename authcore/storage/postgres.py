from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger, sanitize_error_message
from authcore.service.authorization import Role
from authcore.storage.common import (
    MUTABLE_SESSION_FIELDS,
    MUTABLE_USER_FIELDS,
    build_secret_cipher,
    normalize_email,
    open_secret,
    plan_eviction,
    seal_secret,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    BlacklistEntry,
    PasswordResetToken,
    Session,
    SessionInsertResult,
    User,
    utcnow,
)

_REQUIRED_TABLES = (
    "app_user",
    "auth_session",
    "token_blacklist",
    "consumed_refresh_token",
    "password_reset_token",
)


class PostgresStore:
    """Postgres-backed store for users, sessions and revocation state.

    Per-user session invariants are serialized with a transaction-scoped
    advisory lock keyed on the user id, so concurrent logins from any number
    of processes cannot overshoot the session cap.
    """

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        encryption_key: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": int(timeout_seconds),
            },
            open=True,
        )
        self._cipher = build_secret_cipher(encryption_key)
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error=sanitize_error_message(str(exc))
            )
            raise StoreUnavailable("database unavailable") from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row.get("role") or Role.USER.value),
            tenant_id=row.get("tenant_id") or "public",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            lockout_until=row.get("lockout_until"),
            two_factor_secret=open_secret(self._cipher, row.get("two_factor_secret")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        data = dict(row)
        for key in ("id", "user_id", "family_id"):
            if data.get(key) is not None:
                data[key] = str(data[key])
        return Session.from_record(data)

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        tenant_id: str = "public",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, tenant_id, first_name, last_name, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        password_hash,
                        role.value,
                        tenant_id,
                        first_name,
                        last_name,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        values = dict(fields)
        if "role" in values:
            values["role"] = Role(values["role"]).value
        if "two_factor_secret" in values:
            values["two_factor_secret"] = seal_secret(self._cipher, values["two_factor_secret"])
        # Column names come from the MUTABLE_USER_FIELDS allow-list
        assignments = ", ".join(f"{name} = %s" for name in values)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*values.values(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def register_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    lockout_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE lockout_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lockout_until, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # sessions
    def insert_session_capped(self, session: Session, max_active: int) -> SessionInsertResult:
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))", (session.user_id,)
                )
                rows = conn.execute(
                    """
                    SELECT * FROM auth_session
                    WHERE user_id = %s AND is_active AND refresh_expires_at > %s
                    """,
                    (session.user_id, now),
                ).fetchall()
                kept, evicted = plan_eviction(
                    [self._row_to_session(r) for r in rows], max_active
                )
                if evicted:
                    conn.execute(
                        "DELETE FROM auth_session WHERE id = ANY(%s)",
                        ([s.id for s in evicted],),
                    )
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, token_id, token_expires_at, family_id, refresh_expires_at,
                        role, email, device_info, device_fingerprint, ip_address,
                        created_at, last_accessed_at, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                    RETURNING sequence
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_id,
                        session.token_expires_at,
                        session.family_id,
                        session.refresh_expires_at,
                        session.role.value,
                        session.email,
                        session.device_info,
                        session.device_fingerprint,
                        session.ip_address,
                        session.created_at,
                        session.last_accessed_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        session.sequence = int(row["sequence"])
        return SessionInsertResult(
            session=session,
            evicted=evicted,
            other_fingerprints={s.device_fingerprint for s in kept if s.device_fingerprint},
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at, sequence",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def update_session(self, session_id: str, *, persist: bool = True, **fields: Any) -> Optional[Session]:
        unknown = set(fields) - MUTABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        if not fields:
            return self.get_session(session_id)
        values = dict(fields)
        if "role" in values:
            values["role"] = Role(values["role"]).value
        assignments = ", ".join(f"{name} = %s" for name in values)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_session SET {assignments} WHERE id = %s RETURNING *",
                (*values.values(), session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE id = %s RETURNING *", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))
            rows = conn.execute(
                """
                DELETE FROM auth_session
                WHERE user_id = %s AND (%s::uuid IS NULL OR id <> %s::uuid)
                RETURNING *
                """,
                (user_id, except_session_id, except_session_id),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def delete_sessions_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE NOT is_active OR refresh_expires_at < %s",
                (cutoff,),
            )
            return result.rowcount

    def active_session_counts(self, now: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, count(*) AS n FROM auth_session
                WHERE is_active AND refresh_expires_at > %s
                GROUP BY user_id
                """,
                (now,),
            ).fetchall()
        return {str(r["user_id"]): int(r["n"]) for r in rows}

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO token_blacklist (token_id, expires_at, revoked_at, reason)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (token_id) DO NOTHING
                """,
                (entry.token_id, entry.expires_at, entry.revoked_at, entry.reason),
            )

    def is_blacklisted(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM token_blacklist WHERE token_id = %s", (token_id,)
            ).fetchone()
        return row is not None

    def prune_blacklist(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM token_blacklist WHERE expires_at <= %s", (now,)
            )
            pruned = result.rowcount
            conn.execute(
                "DELETE FROM consumed_refresh_token WHERE expires_at <= %s", (now,)
            )
        return pruned

    # refresh rotation
    def consume_refresh_token(
        self, jti: str, family_id: str, user_id: str, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO consumed_refresh_token (jti, family_id, user_id, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                RETURNING jti
                """,
                (jti, family_id, user_id, expires_at),
            ).fetchone()
        return row is not None

    # password reset
    def put_reset_token(self, token: PasswordResetToken) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM password_reset_token WHERE user_id = %s AND consumed_at IS NULL",
                (token.user_id,),
            )
            conn.execute(
                """
                INSERT INTO password_reset_token (token_hash, user_id, created_at, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (token.token_hash, token.user_id, token.created_at, token.expires_at),
            )

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
        )

    def complete_password_reset(
        self, token_hash: str, now: datetime, *, password_hash: str
    ) -> Optional[User]:
        with self._connect() as conn:
            consumed = conn.execute(
                """
                UPDATE password_reset_token SET consumed_at = %s
                WHERE token_hash = %s AND consumed_at IS NULL
                RETURNING user_id
                """,
                (now, token_hash),
            ).fetchone()
            if not consumed:
                return None
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_changed_at = %s,
                    failed_login_attempts = 0, lockout_until = NULL, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, now, consumed["user_id"]),
            ).fetchone()
            if not row:
                conn.rollback()
                return None
        return self._row_to_user(row)

    def prune_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

