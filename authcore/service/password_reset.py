from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.credentials import CredentialManager
from authcore.service.errors import (
    PasswordPolicyViolationError,
    ResetTokenConsumedError,
    ResetTokenExpiredError,
    ResetTokenInvalidError,
)
from authcore.service.sessions import SessionManager
from authcore.storage.common import hash_reset_token
from authcore.storage.models import PasswordResetToken, User

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = (
    "If an account with this email exists, a password reset link has been sent."
)

# Called with (user, plaintext_token); the token never leaves through HTTP
ResetDelivery = Callable[[User, str], None]


class ResetStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def put_reset_token(self, token: PasswordResetToken) -> None: ...

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def complete_password_reset(
        self, token_hash: str, now: datetime, *, password_hash: str
    ) -> Optional[User]: ...


def log_reset_delivery(user: User, token: str) -> None:
    """Development delivery hook: records that a token went out, not the token."""
    logger.info("password_reset_token_issued", user_id=user.id)


class PasswordResetFlow:
    """Single-use, time-boxed password reset tokens."""

    def __init__(
        self,
        store: ResetStore,
        credentials: CredentialManager,
        sessions: SessionManager,
        *,
        ttl_minutes: int = 60,
        deliver: Optional[ResetDelivery] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.sessions = sessions
        self.ttl_minutes = ttl_minutes
        self.deliver = deliver or log_reset_delivery

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_reset(
        self, email: str, *, schedule: Optional[Callable[..., None]] = None
    ) -> str:
        """Issue a reset token if ``email`` belongs to an active user.

        Returns the same generic message either way so the response never
        reveals whether the account exists. Known and unknown addresses do
        the same hashing work. Delivery goes to ``schedule`` (a background
        task hook) when given, otherwise to a worker thread.
        """
        user = self.store.get_user_by_email(email)
        token = secrets.token_urlsafe(32)
        token_hash = hash_reset_token(token)
        # One argon2 verification on every path
        self.credentials.burn_verification(token)
        if user is None or not user.is_active:
            logger.info("password_reset_requested_unknown")
            return RESET_REQUESTED_MESSAGE
        self.store.put_reset_token(
            PasswordResetToken.new(token_hash, user.id, self.ttl_minutes)
        )
        if schedule is not None:
            schedule(self.deliver, user, token)
        else:
            await asyncio.to_thread(self.deliver, user, token)
        logger.info("password_reset_requested", user_id=user.id)
        return RESET_REQUESTED_MESSAGE

    async def confirm_reset(self, token: str, new_password: str) -> User:
        """Consume ``token`` and set ``new_password``; every session is then revoked.

        Consuming the token and storing the new hash happen in one store
        call, so a failure leaves both untouched.

        Raises:
            PasswordPolicyViolationError: new password fails the strength rules.
            ResetTokenInvalidError: unknown or superseded token.
            ResetTokenExpiredError: token outlived its TTL.
            ResetTokenConsumedError: token was already used.
        """
        strength = self.credentials.validate_strength(new_password)
        if not strength.is_valid:
            raise PasswordPolicyViolationError(strength.errors)

        token_hash = hash_reset_token(token or "")
        record = self.store.get_reset_token(token_hash)
        if record is None:
            logger.warning("password_reset_invalid_token")
            raise ResetTokenInvalidError()
        if record.consumed_at is not None:
            logger.warning("password_reset_token_reused", user_id=record.user_id)
            raise ResetTokenConsumedError()
        now = self._now()
        if record.is_expired(now):
            raise ResetTokenExpiredError()

        user = self.store.complete_password_reset(
            token_hash, now, password_hash=self.credentials.hash_password(new_password)
        )
        if user is None:
            current = self.store.get_reset_token(token_hash)
            if current is not None and current.consumed_at is not None:
                # Lost the race against a concurrent confirm
                raise ResetTokenConsumedError()
            raise ResetTokenInvalidError()
        revoked = await self.sessions.revoke_all_for_user(
            user.id, reason="password_reset"
        )
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user
