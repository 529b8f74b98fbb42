from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from authcore.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordStrengthRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    SignupRequest,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthContext, AuthResult
from authcore.service.authorization import Role
from authcore.service.errors import ValidationError
from authcore.service.runtime import get_runtime
from authcore.service.sessions import DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def device_from_request(request: Request) -> DeviceInfo:
    return DeviceInfo(
        user_agent=request.headers.get("user-agent") or "Unknown",
        ip_address=_client_ip(request),
        accept_language=request.headers.get("accept-language"),
        accept_encoding=request.headers.get("accept-encoding"),
    )


def _auth_payload(result: AuthResult) -> dict:
    return {
        "user": result.user.to_public(),
        **result.tokens.as_response(),
        "sessionId": result.session.id,
    }


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization, device=device_from_request(request)
    )


@router.post("/signup", response_model=Envelope, response_model_exclude_none=True, status_code=201)
async def signup(body: SignupRequest, request: Request):
    """Create an account and open its first session.

    Raises:
        400: duplicate email or a password that fails the policy
        403: signup disabled
    """
    runtime = get_runtime()
    result = await runtime.auth.signup(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        device=device_from_request(request),
    )
    return Envelope(
        success=True,
        message="User registered successfully",
        data=_auth_payload(result),
    )


@router.post("/login", response_model=Envelope, response_model_exclude_none=True)
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    A device that does not match the user's other sessions is flagged in
    ``deviceMismatch`` but not refused.

    Raises:
        401: invalid credentials
        403: account deactivated
        423: account locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, device=device_from_request(request)
    )
    payload = _auth_payload(result)
    payload["deviceMismatch"] = result.device_mismatch
    return Envelope(success=True, message="Login successful", data=payload)


@router.post("/refresh", response_model=Envelope, response_model_exclude_none=True)
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        success=True,
        message="Token refreshed successfully",
        data=_auth_payload(result),
    )


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True)
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.logout(authorization)
    return Envelope(success=True, message="Logged out successfully")


@router.post("/logout-all", response_model=Envelope, response_model_exclude_none=True)
async def logout_all(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal)
    return Envelope(
        success=True,
        message="Logged out from all devices successfully",
        data={"devicesLoggedOut": count},
    )


@router.post("/change-password", response_model=Envelope, response_model_exclude_none=True)
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_auth_context),
):
    """Change the caller's password; every other session is signed out."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(
        success=True,
        message="Password changed successfully",
        data={"otherSessionsRevoked": revoked},
    )


@router.post("/password-reset/request", response_model=Envelope, response_model_exclude_none=True)
async def request_password_reset(body: PasswordResetRequest, background_tasks: BackgroundTasks):
    if not body.email:
        raise ValidationError("Email is required")
    runtime = get_runtime()
    # Delivery runs after the response is sent
    message = await runtime.auth.request_password_reset(
        body.email, schedule=background_tasks.add_task
    )
    return Envelope(success=True, message=message)


@router.post("/password-reset/confirm", response_model=Envelope, response_model_exclude_none=True)
async def confirm_password_reset(body: PasswordResetConfirm):
    if not body.token or not body.new_password:
        raise ValidationError("Token and new password are required")
    runtime = get_runtime()
    await runtime.auth.confirm_password_reset(body.token, body.new_password)
    return Envelope(success=True, message="Password reset successfully")


@router.get("/sessions", response_model=Envelope, response_model_exclude_none=True)
async def list_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal)
    summaries = []
    for sess in sessions:
        summary = sess.to_summary()
        summary["current"] = sess.id == principal.session_id
        summaries.append(summary)
    return Envelope(
        success=True,
        message="Sessions retrieved successfully",
        data={"sessions": summaries, "totalActiveSessions": len(summaries)},
    )


@router.get("/me", response_model=Envelope, response_model_exclude_none=True)
async def me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    if user is None:
        raise ValidationError("User not found", status_code=404, error_code="not_found")
    return Envelope(
        success=True,
        message="User retrieved successfully",
        data={"user": user.to_public()},
    )


@router.put("/profile", response_model=Envelope, response_model_exclude_none=True)
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(principal, body.changes())
    return Envelope(
        success=True,
        message="Profile updated successfully",
        data={"user": user.to_public()},
    )


@router.post("/validate-password", response_model=Envelope, response_model_exclude_none=True)
async def validate_password(body: PasswordStrengthRequest):
    """Grade a candidate password against the policy without storing anything."""
    if not body.password:
        raise ValidationError("Password is required")
    runtime = get_runtime()
    result = runtime.auth.validate_password(body.password)
    return Envelope(
        success=True,
        message="Password validation completed",
        data={"isValid": result.is_valid, "errors": result.errors},
    )


def require_role(required: Role):
    """Dependency factory: the caller must hold ``required`` or a higher role."""

    async def _dependency(principal: AuthContext = Depends(get_auth_context)) -> AuthContext:
        return get_runtime().authorization.require_role_level(principal, required)

    return _dependency


@router.get("/sessions/stats", response_model=Envelope, response_model_exclude_none=True)
async def session_stats(principal: AuthContext = Depends(require_role(Role.ADMIN))):
    runtime = get_runtime()
    logger.info("session_stats_requested", user_id=principal.user_id)
    return Envelope(
        success=True,
        message="Session statistics retrieved successfully",
        data=runtime.sessions.stats(),
    )
