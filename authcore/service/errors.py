from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable snake_case
    ``error_code`` that clients may branch on. ``errors`` carries the list of
    individual violations when one failure has several causes (password
    policy, request validation).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.errors = list(errors) if errors else []


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """No credentials were presented at all."""
    error_code = "unauthenticated"

    def __init__(self, message: str = "Authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair did not match; never says which half was wrong."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenBlacklistedError(AuthenticationError):
    error_code = "token_blacklisted"

    def __init__(self, message: str = "Token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReusedError(AuthenticationError):
    """A refresh token was presented after it had already been rotated.

    ``user_id`` and ``family_id`` identify whose sessions must be revoked.
    """

    error_code = "token_reused"

    def __init__(
        self,
        message: str = "Refresh token has already been used",
        *,
        user_id: Optional[str] = None,
        family_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.user_id = user_id
        self.family_id = family_id


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientPermissionsError(ForbiddenError):
    error_code = "insufficient_permissions"

    def __init__(self, message: str = "Insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDeactivatedError(ForbiddenError):
    error_code = "account_deactivated"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; carries the minutes left on the lock."""

    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_minutes: int, **kwargs) -> None:
        super().__init__(
            f"Account is locked. Try again in {remaining_minutes} minutes.",
            detail={"remaining_minutes": remaining_minutes},
            **kwargs,
        )
        self.remaining_minutes = remaining_minutes


class PasswordPolicyViolationError(ValidationError):
    error_code = "password_policy_violation"

    def __init__(self, errors: List[str], message: str = "Password does not meet requirements") -> None:
        super().__init__(message, errors=errors)


class DuplicateEmailError(ValidationError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "User with this email already exists") -> None:
        super().__init__(message)


class InvalidCurrentPasswordError(ValidationError):
    error_code = "invalid_current_password"

    def __init__(self, message: str = "Current password is incorrect") -> None:
        super().__init__(message)


class ResetTokenInvalidError(ValidationError):
    error_code = "reset_token_invalid"

    def __init__(self, message: str = "Invalid password reset token") -> None:
        super().__init__(message)


class ResetTokenExpiredError(ValidationError):
    error_code = "reset_token_expired"

    def __init__(self, message: str = "Password reset token has expired") -> None:
        super().__init__(message)


class ResetTokenConsumedError(ValidationError):
    error_code = "reset_token_consumed"

    def __init__(self, message: str = "Password reset token has already been used") -> None:
        super().__init__(message)


class SignupDisabledError(ForbiddenError):
    error_code = "signup_disabled"

    def __init__(self, message: str = "Signup is disabled") -> None:
        super().__init__(message)


class BackendUnavailableError(ServiceError):
    """Storage or cache failure; deliberately distinct from auth failures (500)."""
    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "Internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenBlacklistedError",
    "TokenReusedError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "AccountDeactivatedError",
    "AccountLockedError",
    "PasswordPolicyViolationError",
    "DuplicateEmailError",
    "InvalidCurrentPasswordError",
    "ResetTokenInvalidError",
    "ResetTokenExpiredError",
    "ResetTokenConsumedError",
    "SignupDisabledError",
    "BackendUnavailableError",
]
