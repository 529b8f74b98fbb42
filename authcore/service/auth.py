from __future__ import annotations

import contextlib
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from redis.exceptions import RedisError

from authcore.config import Settings
from authcore.logging import get_logger, sanitize_error_message
from authcore.service.authorization import AuthorizationEngine, Role
from authcore.service.credentials import CredentialManager, StrengthResult
from authcore.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    BackendUnavailableError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    PasswordPolicyViolationError,
    SignupDisabledError,
    TokenBlacklistedError,
    TokenInvalidError,
    TokenReusedError,
    UnauthenticatedError,
    ValidationError,
)
from authcore.service.password_reset import PasswordResetFlow
from authcore.service.revocation import RevocationRegistry
from authcore.service.sessions import DeviceInfo, SessionManager
from authcore.service.tokens import ACCESS, TokenIssuer, TokenPair
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    BlacklistEntry,
    PasswordResetToken,
    Session,
    SessionInsertResult,
    User,
)

logger = get_logger(__name__)

# Fields a user may change on their own record
PROFILE_FIELDS = frozenset({"first_name", "last_name"})


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def register_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]: ...

    def insert_session_capped(self, session: Session, max_active: int) -> SessionInsertResult: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def update_session(self, session_id: str, *, persist: bool = True, **fields: Any) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> Optional[Session]: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[Session]: ...

    def delete_sessions_before(self, cutoff: datetime) -> int: ...

    def active_session_counts(self, now: datetime) -> Dict[str, int]: ...

    def add_blacklist_entry(self, entry: BlacklistEntry) -> None: ...

    def is_blacklisted(self, token_id: str) -> bool: ...

    def prune_blacklist(self, now: datetime) -> int: ...

    def consume_refresh_token(
        self, jti: str, family_id: str, user_id: str, expires_at: datetime
    ) -> bool: ...

    def put_reset_token(self, token: PasswordResetToken) -> None: ...

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def complete_password_reset(
        self, token_hash: str, now: datetime, *, password_hash: str
    ) -> Optional[User]: ...

    def prune_reset_tokens(self, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: Role
    tenant_id: str
    session_id: Optional[str] = None
    email: Optional[str] = None
    token_id: Optional[str] = None


@dataclass
class AuthResult:
    """Outcome of signup, login or refresh."""

    user: User
    session: Session
    tokens: TokenPair
    device_mismatch: bool = False
    evicted_sessions: List[str] = field(default_factory=list)


class AuthService:
    """Signup, login, token rotation and session teardown over the auth components."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        credentials: CredentialManager,
        tokens: TokenIssuer,
        revocations: RevocationRegistry,
        sessions: SessionManager,
        password_reset: PasswordResetFlow,
        authorization: Optional[AuthorizationEngine] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.credentials = credentials
        self.tokens = tokens
        self.revocations = revocations
        self.sessions = sessions
        self.password_reset = password_reset
        self.authorization = authorization or AuthorizationEngine()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _backend_errors(self, operation: str) -> Iterator[None]:
        """Report storage/cache outages as 500s instead of auth failures."""
        try:
            yield
        except (StoreUnavailable, RedisError) as exc:
            self.logger.error(
                "auth_backend_unavailable",
                operation=operation,
                error=sanitize_error_message(str(exc)),
            )
            raise BackendUnavailableError() from exc

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def _start_session(self, user: User, device: DeviceInfo) -> AuthResult:
        session_id = str(uuid.uuid4())
        pair = self.tokens.issue(user, session_id=session_id, family_id=session_id)
        created = await self.sessions.create_session(
            user,
            session_id=session_id,
            token_id=pair.access_jti,
            token_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            device=device,
        )
        return AuthResult(
            user=user,
            session=created.session,
            tokens=pair,
            device_mismatch=created.device_mismatch,
            evicted_sessions=[s.id for s in created.evicted],
        )

    async def signup(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise SignupDisabledError()
        strength = self.credentials.validate_strength(password)
        if not strength.is_valid:
            raise PasswordPolicyViolationError(strength.errors)
        password_hash = self.credentials.hash_password(password)
        with self._backend_errors("signup"):
            try:
                user = self.store.create_user(
                    email,
                    password_hash,
                    role=Role.USER,
                    tenant_id=self.settings.default_tenant_id,
                    first_name=first_name,
                    last_name=last_name,
                )
            except ConstraintViolation:
                raise DuplicateEmailError()
            self.logger.info("user_signed_up", user_id=user.id)
            return await self._start_session(user, device or DeviceInfo())

    async def login(
        self, email: str, password: str, *, device: Optional[DeviceInfo] = None
    ) -> AuthResult:
        """Verify credentials and open a new session.

        Checks run in a fixed order: account exists, account active, lock
        state, password. An unknown email still pays for one hash check so
        it cannot be told apart by timing.

        Raises:
            InvalidCredentialsError: unknown email or wrong password.
            AccountDeactivatedError: the account was deactivated.
            AccountLockedError: too many recent failures.
        """
        with self._backend_errors("login"):
            user = self.store.get_user_by_email(email)
            if user is None:
                self.credentials.burn_verification(password)
                self.logger.info("login_failed", reason="unknown_email")
                raise InvalidCredentialsError()
            if not user.is_active:
                self.logger.info("login_failed", user_id=user.id, reason="deactivated")
                raise AccountDeactivatedError()

            now = self._now()
            if user.is_locked(now):
                remaining = max(
                    1, math.ceil((user.lockout_until - now).total_seconds() / 60)
                )
                self.logger.info("login_failed", user_id=user.id, reason="locked")
                raise AccountLockedError(remaining)
            if user.lockout_until is not None:
                # Lock ran out; start counting afresh
                user = self.store.update_user(
                    user.id, failed_login_attempts=0, lockout_until=None
                ) or user

            if not self.credentials.verify_password(password, user.password_hash):
                updated = self.store.register_failed_login(
                    user.id,
                    max_attempts=self.settings.max_login_attempts,
                    lockout_until=now
                    + timedelta(minutes=self.settings.lockout_duration_minutes),
                )
                attempts = updated.failed_login_attempts if updated else None
                self.logger.info(
                    "login_failed",
                    user_id=user.id,
                    reason="bad_password",
                    failed_attempts=attempts,
                )
                if updated and updated.is_locked(now):
                    self.logger.warning(
                        "account_locked",
                        user_id=user.id,
                        lockout_minutes=self.settings.lockout_duration_minutes,
                    )
                raise InvalidCredentialsError()

            changes: Dict[str, Any] = {
                "failed_login_attempts": 0,
                "lockout_until": None,
                "last_login_at": now,
            }
            if self.credentials.needs_rehash(user.password_hash):
                changes["password_hash"] = self.credentials.hash_password(password)
            user = self.store.update_user(user.id, **changes) or user
            result = await self._start_session(user, device or DeviceInfo())
            self.logger.info(
                "login_succeeded",
                user_id=user.id,
                session_id=result.session.id,
                device_mismatch=result.device_mismatch,
            )
            return result

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate ``refresh_token`` into a new pair on the same session.

        Presenting an already rotated token revokes every session of its
        owner before the error propagates.
        """
        rotated: Dict[str, Any] = {}

        async def mint(claims: Dict[str, Any]) -> TokenPair:
            session = self.sessions.get_active_session(claims["sid"])
            if session is None or session.user_id != claims["sub"]:
                raise TokenInvalidError("Session is no longer active")
            user = self.store.get_user(claims["sub"])
            if user is None:
                raise TokenInvalidError()
            if not user.is_active:
                raise AccountDeactivatedError()
            pair = self.tokens.issue(
                user, session_id=session.id, family_id=session.family_id
            )
            updated = await self.sessions.rotate_session_token(
                session,
                new_token_id=pair.access_jti,
                new_token_expires_at=pair.access_expires_at,
                new_refresh_expires_at=pair.refresh_expires_at,
            )
            if updated is None:
                raise TokenInvalidError("Session is no longer active")
            rotated["user"] = user
            rotated["session"] = updated
            return pair

        with self._backend_errors("refresh"):
            try:
                pair = await self.tokens.rotate_refresh(refresh_token, mint)
            except TokenReusedError as exc:
                if exc.user_id:
                    await self.sessions.revoke_all_for_user(
                        exc.user_id, reason="refresh_token_reuse"
                    )
                raise
            self.logger.info(
                "token_refreshed",
                user_id=rotated["user"].id,
                session_id=rotated["session"].id,
            )
            return AuthResult(user=rotated["user"], session=rotated["session"], tokens=pair)

    async def logout(self, authorization: Optional[str]) -> Optional[str]:
        """End the session behind the presented access token.

        Idempotent: an already revoked or expired token still logs out
        successfully but touches nothing. Only the session's current access
        token can end it. Returns the session id that was ended, if any.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise ValidationError("No token provided")
        with self._backend_errors("logout"):
            claims = self.tokens.verify_for_logout(token)
            if claims is None:
                return None
            if await self.revocations.is_revoked(claims["jti"]):
                self.logger.info("logout_with_revoked_token", user_id=claims.get("sub"))
                return None
            expires_at = datetime.fromtimestamp(float(claims["exp"]), timezone.utc)
            await self.revocations.revoke(claims["jti"], expires_at, reason="logout")
            ended = None
            session_id = claims.get("sid")
            if session_id:
                session = self.store.get_session(session_id)
                if (
                    session
                    and session.user_id == claims.get("sub")
                    and session.token_id == claims["jti"]
                ):
                    await self.sessions.delete_session(session_id)
                    ended = session_id
            self.logger.info("user_logged_out", user_id=claims.get("sub"), session_id=ended)
            return ended

    async def logout_all(self, context: AuthContext) -> int:
        with self._backend_errors("logout_all"):
            return await self.sessions.revoke_all_for_user(
                context.user_id, reason="logout_all"
            )

    async def change_password(
        self, context: AuthContext, current_password: str, new_password: str
    ) -> int:
        """Replace the password and end every other session of the user.

        Returns the number of sessions revoked; the calling session survives.
        """
        with self._backend_errors("change_password"):
            user = self.store.get_user(context.user_id)
            if user is None:
                raise UnauthenticatedError()
            if not self.credentials.verify_password(current_password, user.password_hash):
                self.logger.info("password_change_rejected", user_id=user.id)
                raise InvalidCurrentPasswordError()
            strength = self.credentials.validate_strength(new_password)
            if not strength.is_valid:
                raise PasswordPolicyViolationError(strength.errors)
            self.store.update_user(
                user.id,
                password_hash=self.credentials.hash_password(new_password),
                password_changed_at=self._now(),
            )
            revoked = await self.sessions.revoke_all_for_user(
                user.id,
                except_session_id=context.session_id,
                reason="password_changed",
            )
            self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
            return revoked

    async def request_password_reset(
        self, email: str, *, schedule: Optional[Callable[..., None]] = None
    ) -> str:
        with self._backend_errors("request_password_reset"):
            return await self.password_reset.request_reset(email, schedule=schedule)

    async def confirm_password_reset(self, token: str, new_password: str) -> User:
        with self._backend_errors("confirm_password_reset"):
            return await self.password_reset.confirm_reset(token, new_password)

    def list_sessions(self, context: AuthContext) -> List[Session]:
        with self._backend_errors("list_sessions"):
            return self.sessions.list_active_for_user(context.user_id)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._backend_errors("get_user"):
            return self.store.get_user(user_id)

    def update_profile(self, context: AuthContext, changes: Dict[str, Any]) -> User:
        """Apply name changes to the caller's own record."""
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update profile fields: {sorted(unknown)}")
        with self._backend_errors("update_profile"):
            if not changes:
                user = self.store.get_user(context.user_id)
            else:
                user = self.store.update_user(context.user_id, **changes)
            if user is None:
                raise UnauthenticatedError()
            self.logger.info(
                "profile_updated", user_id=user.id, fields=sorted(changes)
            )
            return user

    def validate_password(self, password: str) -> StrengthResult:
        return self.credentials.validate_strength(password)

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        device: Optional[DeviceInfo] = None,
    ) -> AuthContext:
        """Resolve a bearer header into an ``AuthContext``.

        Order: revocation check, token verification, live session lookup,
        active user check. A fingerprint that differs from the one recorded
        at login is logged and otherwise ignored.

        Raises:
            UnauthenticatedError: no bearer token was presented.
            TokenBlacklistedError: the token id is revoked.
            TokenInvalidError / TokenExpiredError: the token fails verification
                or its session has ended.
            AccountDeactivatedError: the user was deactivated after login.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError("Access token is required")
        with self._backend_errors("authenticate"):
            jti = self.tokens.read_token_id(token)
            if jti is None:
                raise TokenInvalidError()
            if await self.revocations.is_revoked(jti):
                self.logger.info("access_token_denylisted", jti=jti)
                raise TokenBlacklistedError()
            claims = self.tokens.verify(token, ACCESS)

            session = self.sessions.get_active_session(claims["sid"])
            if (
                session is None
                or session.user_id != claims["sub"]
                or session.token_id != claims["jti"]
            ):
                raise TokenInvalidError("Session is no longer active")
            user = self.store.get_user(claims["sub"])
            if user is None:
                raise TokenInvalidError()
            if not user.is_active:
                raise AccountDeactivatedError()

            self.sessions.touch(session.id)
            if (
                device is not None
                and session.device_fingerprint
                and device.fingerprint != session.device_fingerprint
            ):
                self.logger.warning(
                    "session_device_mismatch",
                    user_id=user.id,
                    session_id=session.id,
                )
            return AuthContext(
                user_id=user.id,
                role=user.role,
                tenant_id=user.tenant_id,
                session_id=session.id,
                email=user.email,
                token_id=claims["jti"],
            )

    def run_maintenance(self) -> Dict[str, int]:
        """Periodic sweep of dead sessions, denylist entries and reset tokens."""
        sessions_removed = self.sessions.cleanup_expired()
        blacklist_pruned = self.revocations.prune()
        try:
            reset_pruned = self.store.prune_reset_tokens(self._now())
        except Exception as exc:
            self.logger.warning(
                "reset_token_prune_failed", error=sanitize_error_message(str(exc))
            )
            reset_pruned = 0
        return {
            "sessions_removed": sessions_removed,
            "blacklist_pruned": blacklist_pruned,
            "reset_tokens_pruned": reset_pruned,
        }
