from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from authcore.service.authorization import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (legacy rows) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: Role = Role.USER
    tenant_id: str = "public"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    two_factor_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if not self.lockout_until:
            return False
        return ensure_utc(self.lockout_until) > (now or utcnow())

    def to_public(self) -> Dict[str, Any]:
        """Client-safe projection; never includes secrets or lockout state."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role.value,
            "tenantId": self.tenant_id,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastLoginAt": _iso(self.last_login_at),
        }

    def to_record(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        for key in ("lockout_until", "created_at", "updated_at", "last_login_at", "password_changed_at"):
            data[key] = _iso(data[key])
        return data

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data.get("role") or Role.USER.value),
            tenant_id=data.get("tenant_id") or "public",
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=bool(data.get("is_active", True)),
            failed_login_attempts=int(data.get("failed_login_attempts") or 0),
            lockout_until=_parse_dt(data.get("lockout_until")),
            two_factor_secret=data.get("two_factor_secret"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            last_login_at=_parse_dt(data.get("last_login_at")),
            password_changed_at=_parse_dt(data.get("password_changed_at")),
        )


@dataclass
class Session:
    """One logged-in device; ``token_id`` is the jti of its live access token."""

    id: str
    user_id: str
    token_id: str
    token_expires_at: datetime
    family_id: str
    refresh_expires_at: datetime
    role: Role = Role.USER
    email: str = ""
    device_info: Optional[str] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    sequence: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        token_id: str,
        token_expires_at: datetime,
        refresh_expires_at: datetime,
        role: Role,
        email: str,
        device_info: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        sid = session_id or str(uuid.uuid4())
        return cls(
            id=sid,
            user_id=user_id,
            token_id=token_id,
            token_expires_at=token_expires_at,
            family_id=sid,
            refresh_expires_at=refresh_expires_at,
            role=role,
            email=email,
            device_info=device_info,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            created_at=now,
            last_accessed_at=now,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """Active and still refreshable; access-token expiry alone does not end a session."""
        return self.is_active and ensure_utc(self.refresh_expires_at) > (now or utcnow())

    def eviction_key(self) -> tuple:
        return (ensure_utc(self.created_at), self.sequence)

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceInfo": self.device_info,
            "ipAddress": self.ip_address,
            "createdAt": _iso(self.created_at),
            "lastAccessedAt": _iso(self.last_accessed_at),
            "isActive": self.is_active,
        }

    def to_record(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        for key in ("token_expires_at", "refresh_expires_at", "created_at", "last_accessed_at"):
            data[key] = _iso(data[key])
        return data

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token_id=str(data["token_id"]),
            token_expires_at=_parse_dt(data["token_expires_at"]),
            family_id=str(data.get("family_id") or data["id"]),
            refresh_expires_at=_parse_dt(data["refresh_expires_at"]),
            role=Role(data.get("role") or Role.USER.value),
            email=data.get("email") or "",
            device_info=data.get("device_info"),
            device_fingerprint=data.get("device_fingerprint"),
            ip_address=str(data["ip_address"]) if data.get("ip_address") else None,
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            last_accessed_at=_parse_dt(data.get("last_accessed_at")) or utcnow(),
            is_active=bool(data.get("is_active", True)),
            sequence=int(data.get("sequence") or 0),
        )


@dataclass
class BlacklistEntry:
    token_id: str
    expires_at: datetime
    revoked_at: datetime = field(default_factory=utcnow)
    reason: str = "revoked"


@dataclass
class PasswordResetToken:
    """Reset token record; only the sha256 of the emailed token is kept."""

    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(cls, token_hash: str, user_id: str, ttl_minutes: int) -> "PasswordResetToken":
        now = utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utcnow())


@dataclass
class SessionInsertResult:
    session: Session
    evicted: list = field(default_factory=list)
    # Fingerprints of the user's other live sessions at insert time
    other_fingerprints: set = field(default_factory=set)
