"""Helpers shared between the memory and postgres store implementations.

Both backends must agree on email normalization, session ordering and how
secrets are sealed at rest, so those rules live here rather than in either
store.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Iterable, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import Session

logger = get_logger(__name__)

# Session fields callers may change after insert
MUTABLE_SESSION_FIELDS = frozenset(
    {
        "token_id",
        "token_expires_at",
        "refresh_expires_at",
        "last_accessed_at",
        "is_active",
        "role",
        "email",
    }
)

# User fields callers may change through update_user
MUTABLE_USER_FIELDS = frozenset(
    {
        "password_hash",
        "role",
        "first_name",
        "last_name",
        "is_active",
        "failed_login_attempts",
        "lockout_until",
        "two_factor_secret",
        "last_login_at",
        "password_changed_at",
    }
)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and compare lowercased."""
    return (email or "").strip().lower()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def plan_eviction(
    live_sessions: Iterable[Session], max_active: int
) -> Tuple[List[Session], List[Session]]:
    """Split a user's live sessions into (kept, evicted) ahead of one insert.

    Oldest go first, ordered by ``created_at`` then insertion ``sequence`` so
    ties break deterministically.
    """
    ordered = sorted(live_sessions, key=lambda s: s.eviction_key())
    overflow = max(0, len(ordered) - max_active + 1)
    return ordered[overflow:], ordered[:overflow]


def build_secret_cipher(key_material: str) -> Fernet:
    if not key_material:
        raise RuntimeError("encryption key material is required to seal secrets")
    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
    return Fernet(key)


def seal_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def open_secret(cipher: Fernet, sealed: Optional[str]) -> Optional[str]:
    if not sealed:
        return sealed
    try:
        return cipher.decrypt(sealed.encode()).decode()
    except InvalidToken:
        logger.warning("sealed_secret_decrypt_failed")
        return None
