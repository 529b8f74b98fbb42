from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authcore.logging import get_logger
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
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    BlacklistEntry,
    PasswordResetToken,
    Session,
    SessionInsertResult,
    User,
    ensure_utc,
    utcnow,
)


class MemoryStore:
    """In-process store persisted to a JSON file under ``fs_root``.

    Every public method takes ``_data_lock`` so compound operations (the
    capped session insert, refresh consumption, reset-token consumption) are
    atomic for all threads in the process. State is rewritten to disk after
    each mutation so revocations and the session cap survive restarts.
    """

    def __init__(self, fs_root: str = "/tmp/authcore", *, encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        # jti -> (family_id, user_id, expires_at)
        self.consumed_refresh: Dict[str, tuple[str, str, datetime]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self._session_seq: int = 0
        # RLock so helpers can re-enter from within a locked public method
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_secret_cipher(encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

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
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=role,
                tenant_id=tenant_id,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, Role(value) if name == "role" else value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def register_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]:
        """Atomically bump the failure counter, locking at ``max_attempts``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.lockout_until = lockout_until
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # sessions
    def insert_session_capped(self, session: Session, max_active: int) -> SessionInsertResult:
        now = utcnow()
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            live = [
                s
                for s in self.sessions.values()
                if s.user_id == session.user_id and s.is_live(now)
            ]
            kept, evicted = plan_eviction(live, max_active)
            for old in evicted:
                self.sessions.pop(old.id, None)
            self._session_seq += 1
            session.sequence = self._session_seq
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return SessionInsertResult(
                session=replace(session),
                evicted=[replace(s) for s in evicted],
                other_fingerprints={s.device_fingerprint for s in kept if s.device_fingerprint},
            )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def update_session(self, session_id: str, *, persist: bool = True, **fields: Any) -> Optional[Session]:
        unknown = set(fields) - MUTABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            for name, value in fields.items():
                setattr(sess, name, Role(value) if name == "role" else value)
            if persist:
                self._persist_state()
            return replace(sess)

    def delete_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.pop(session_id, None)
            if sess:
                self._persist_state()
            return sess

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._data_lock:
            stale = [
                sess
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sess in stale:
                self.sessions.pop(sess.id, None)
            if stale:
                self._persist_state()
            return stale

    def delete_sessions_before(self, cutoff: datetime) -> int:
        """Drop sessions that are inactive or whose refresh window ended before ``cutoff``."""
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_active or ensure_utc(sess.refresh_expires_at) < cutoff
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def active_session_counts(self, now: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.is_live(now):
                    counts[sess.user_id] = counts.get(sess.user_id, 0) + 1
        return counts

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> None:
        with self._data_lock:
            if entry.token_id in self.blacklist:
                return
            self.blacklist[entry.token_id] = entry
            self._persist_state()

    def is_blacklisted(self, token_id: str) -> bool:
        with self._data_lock:
            return token_id in self.blacklist

    def prune_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                jti
                for jti, entry in self.blacklist.items()
                if ensure_utc(entry.expires_at) <= now
            ]
            for jti in expired:
                self.blacklist.pop(jti, None)
            consumed = [
                jti
                for jti, (_, _, exp) in self.consumed_refresh.items()
                if ensure_utc(exp) <= now
            ]
            for jti in consumed:
                self.consumed_refresh.pop(jti, None)
            if expired or consumed:
                self._persist_state()
            return len(expired)

    # refresh rotation
    def consume_refresh_token(
        self, jti: str, family_id: str, user_id: str, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            if jti in self.consumed_refresh:
                return False
            self.consumed_refresh[jti] = (family_id, user_id, expires_at)
            self._persist_state()
            return True

    # password reset
    def put_reset_token(self, token: PasswordResetToken) -> None:
        """Store ``token`` and drop any other outstanding token for the user."""
        with self._data_lock:
            prior = [
                h
                for h, rec in self.reset_tokens.items()
                if rec.user_id == token.user_id and rec.consumed_at is None
            ]
            for h in prior:
                self.reset_tokens.pop(h, None)
            self.reset_tokens[token.token_hash] = replace(token)
            self._persist_state()

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            rec = self.reset_tokens.get(token_hash)
            return replace(rec) if rec else None

    def complete_password_reset(
        self, token_hash: str, now: datetime, *, password_hash: str
    ) -> Optional[User]:
        """Consume the reset token and install ``password_hash`` in one step.

        Returns None, leaving everything untouched, when the token is unknown,
        already consumed or its user is gone.
        """
        with self._data_lock:
            rec = self.reset_tokens.get(token_hash)
            user = self.users.get(rec.user_id) if rec else None
            if not rec or rec.consumed_at is not None or not user:
                return None
            rec.consumed_at = now
            user.password_hash = password_hash
            user.password_changed_at = now
            user.failed_login_attempts = 0
            user.lockout_until = None
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def prune_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                h for h, rec in self.reset_tokens.items() if ensure_utc(rec.expires_at) <= now
            ]
            for h in stale:
                self.reset_tokens.pop(h, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _serialize_user(self, user: User) -> dict:
        data = user.to_record()
        data["two_factor_secret"] = seal_secret(self._cipher, user.two_factor_secret)
        return data

    def _deserialize_user(self, data: dict) -> User:
        user = User.from_record(data)
        user.two_factor_secret = open_secret(self._cipher, user.two_factor_secret)
        return user

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_utc(datetime.fromisoformat(raw))

    def _persist_state(self) -> None:
        state = {
            "session_seq": self._session_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [s.to_record() for s in self.sessions.values()],
            "blacklist": [
                {
                    "token_id": e.token_id,
                    "expires_at": self._serialize_datetime(e.expires_at),
                    "revoked_at": self._serialize_datetime(e.revoked_at),
                    "reason": e.reason,
                }
                for e in self.blacklist.values()
            ],
            "consumed_refresh": [
                {
                    "jti": jti,
                    "family_id": fam,
                    "user_id": uid,
                    "expires_at": self._serialize_datetime(exp),
                }
                for jti, (fam, uid, exp) in self.consumed_refresh.items()
            ],
            "reset_tokens": [
                {
                    "token_hash": rec.token_hash,
                    "user_id": rec.user_id,
                    "created_at": self._serialize_datetime(rec.created_at),
                    "expires_at": self._serialize_datetime(rec.expires_at),
                    "consumed_at": self._serialize_datetime(rec.consumed_at)
                    if rec.consumed_at
                    else None,
                }
                for rec in self.reset_tokens.values()
            ],
        }
        path = self._state_path()
        # Write to a sibling temp file then rename so a crash never leaves half a file
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".auth_store_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._session_seq = int(data.get("session_seq", 0))
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: Session.from_record(s) for s in data.get("sessions", [])
        }
        self.blacklist = {
            e["token_id"]: BlacklistEntry(
                token_id=e["token_id"],
                expires_at=self._deserialize_datetime(e["expires_at"]),
                revoked_at=self._deserialize_datetime(e["revoked_at"]),
                reason=e.get("reason", "revoked"),
            )
            for e in data.get("blacklist", [])
        }
        self.consumed_refresh = {
            c["jti"]: (c["family_id"], c["user_id"], self._deserialize_datetime(c["expires_at"]))
            for c in data.get("consumed_refresh", [])
        }
        self.reset_tokens = {
            r["token_hash"]: PasswordResetToken(
                token_hash=r["token_hash"],
                user_id=r["user_id"],
                created_at=self._deserialize_datetime(r["created_at"]),
                expires_at=self._deserialize_datetime(r["expires_at"]),
                consumed_at=self._deserialize_datetime(r["consumed_at"])
                if r.get("consumed_at")
                else None,
            )
            for r in data.get("reset_tokens", [])
        }
        self.logger.info(
            "auth_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            blacklist=len(self.blacklist),
        )
        return True
