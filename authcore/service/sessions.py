from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from authcore.logging import get_logger, sanitize_error_message
from authcore.service.revocation import RevocationRegistry
from authcore.storage.models import Session, SessionInsertResult, User

logger = get_logger(__name__)


class SessionStore(Protocol):
    def insert_session_capped(self, session: Session, max_active: int) -> SessionInsertResult: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def update_session(self, session_id: str, *, persist: bool = True, **fields) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> Optional[Session]: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[Session]: ...

    def delete_sessions_before(self, cutoff: datetime) -> int: ...

    def active_session_counts(self, now: datetime) -> Dict[str, int]: ...


@dataclass(frozen=True)
class SessionPolicy:
    max_concurrent_sessions: int = 5
    require_device_consistency: bool = True


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        """Short digest of request headers and IP; a heuristic, not an identity."""
        components = [
            self.user_agent or "",
            self.accept_language or "",
            self.accept_encoding or "",
            self.ip_address or "",
        ]
        return hashlib.sha256("|".join(components).encode()).hexdigest()[:16]


@dataclass
class SessionCreateResult:
    session: Session
    evicted: List[Session] = field(default_factory=list)
    device_mismatch: bool = False


class SessionManager:
    """Per-user session records with a concurrency cap.

    Lifecycle: Created -> Active -> Revoked | Expired. Revocation always
    cascades into the revocation registry for the session's live access
    token, so a deleted session cannot be used even before its token expires.
    """

    def __init__(
        self,
        store: SessionStore,
        revocations: RevocationRegistry,
        *,
        default_policy: Optional[SessionPolicy] = None,
        expired_grace: timedelta = timedelta(hours=24),
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.default_policy = default_policy or SessionPolicy()
        self.expired_grace = expired_grace

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create_session(
        self,
        user: User,
        *,
        session_id: str,
        token_id: str,
        token_expires_at: datetime,
        refresh_expires_at: datetime,
        device: DeviceInfo,
        policy: Optional[SessionPolicy] = None,
    ) -> SessionCreateResult:
        """Insert a session, evicting the oldest ones first if at the cap.

        Counting, eviction and insert happen in one store call that is atomic
        per user, so concurrent logins cannot overshoot the cap.
        """
        policy = policy or self.default_policy
        fingerprint = device.fingerprint
        session = Session.new(
            user.id,
            session_id=session_id,
            token_id=token_id,
            token_expires_at=token_expires_at,
            refresh_expires_at=refresh_expires_at,
            role=user.role,
            email=user.email,
            device_info=device.user_agent,
            device_fingerprint=fingerprint,
            ip_address=device.ip_address,
        )
        inserted = self.store.insert_session_capped(
            session, policy.max_concurrent_sessions
        )
        for old in inserted.evicted:
            await self.revocations.revoke(
                old.token_id, old.token_expires_at, reason="session_evicted"
            )
        if inserted.evicted:
            logger.info(
                "session_limit_evicted",
                user_id=user.id,
                evicted=[s.id for s in inserted.evicted],
                max_sessions=policy.max_concurrent_sessions,
            )

        mismatch = bool(
            policy.require_device_consistency
            and inserted.other_fingerprints
            and any(fp != fingerprint for fp in inserted.other_fingerprints)
        )
        if mismatch:
            logger.warning(
                "session_device_mismatch",
                user_id=user.id,
                session_id=inserted.session.id,
                known_devices=len(inserted.other_fingerprints),
            )
        return SessionCreateResult(
            session=inserted.session, evicted=inserted.evicted, device_mismatch=mismatch
        )

    def get_active_session(self, session_id: str) -> Optional[Session]:
        sess = self.store.get_session(session_id)
        if not sess or not sess.is_live(self._now()):
            return None
        return sess

    def touch(self, session_id: str) -> None:
        """Stamp ``last_accessed_at``; never raises."""
        try:
            self.store.update_session(
                session_id, persist=False, last_accessed_at=self._now()
            )
        except Exception as exc:
            logger.warning(
                "session_touch_failed",
                session_id=session_id,
                error=sanitize_error_message(str(exc)),
            )

    async def rotate_session_token(
        self,
        session: Session,
        *,
        new_token_id: str,
        new_token_expires_at: datetime,
        new_refresh_expires_at: datetime,
    ) -> Optional[Session]:
        """Point ``session`` at a freshly minted access token and revoke the old one."""
        updated = self.store.update_session(
            session.id,
            token_id=new_token_id,
            token_expires_at=new_token_expires_at,
            refresh_expires_at=new_refresh_expires_at,
            last_accessed_at=self._now(),
        )
        if updated is None:
            return None
        await self.revocations.revoke(
            session.token_id, session.token_expires_at, reason="token_rotated"
        )
        return updated

    async def delete_session(self, session_id: str) -> Optional[Session]:
        removed = self.store.delete_session(session_id)
        if removed:
            await self.revocations.revoke(
                removed.token_id, removed.token_expires_at, reason="logout"
            )
            logger.info("session_deleted", session_id=session_id, user_id=removed.user_id)
        return removed

    async def revoke_all_for_user(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str = "revoke_all",
    ) -> int:
        """Delete every session of ``user_id`` (optionally keeping one).

        The store serializes this with ``create_session`` for the same user,
        so no session created before the call can survive it. Expired rows are
        swept too but only live sessions are counted.
        """
        now = self._now()
        removed = self.store.delete_user_sessions(user_id, except_session_id)
        for sess in removed:
            await self.revocations.revoke(
                sess.token_id, sess.token_expires_at, reason=reason
            )
        live = sum(1 for sess in removed if sess.is_live(now))
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            count=live,
            kept_session=except_session_id,
            revoke_reason=reason,
        )
        return live

    def list_active_for_user(self, user_id: str) -> List[Session]:
        now = self._now()
        live = [s for s in self.store.list_sessions_for_user(user_id) if s.is_live(now)]
        return sorted(live, key=lambda s: s.eviction_key())

    def count_active_for_user(self, user_id: str) -> int:
        return len(self.list_active_for_user(user_id))

    def cleanup_expired(self) -> int:
        """Reclaim rows that ended more than ``expired_grace`` ago; best effort."""
        cutoff = self._now() - self.expired_grace
        try:
            removed = self.store.delete_sessions_before(cutoff)
        except Exception as exc:
            logger.warning(
                "session_cleanup_failed", error=sanitize_error_message(str(exc))
            )
            return 0
        if removed:
            logger.info("expired_sessions_cleaned", count=removed)
        return removed

    def stats(self) -> dict:
        counts = self.store.active_session_counts(self._now())
        total = sum(counts.values())
        users_with_sessions = len(counts)
        return {
            "totalActiveSessions": total,
            "uniqueUsers": users_with_sessions,
            "averageSessionsPerUser": round(total / users_with_sessions, 2)
            if users_with_sessions
            else 0.0,
        }
