from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH
from authcore.logging import get_logger

logger = get_logger(__name__)

_SYMBOL_RE = re.compile(r"[^A-Za-z0-9\s]")


@dataclass
class StrengthResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


class CredentialManager:
    """Hashes, verifies and grades passwords.

    Stateless apart from the configured argon2 parameters. Lockout counting is
    the caller's concern; this class only reports match/no-match.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        min_length: int = MIN_PASSWORD_LENGTH,
        max_length: int = MAX_PASSWORD_LENGTH,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self.min_length = min_length
        self.max_length = max_length
        # Verified against when the user does not exist, to keep timing uniform
        self._dummy_hash = self._hasher.hash("timing-equalizer-placeholder")

    def hash_password(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_password(self, plaintext: str, password_hash: str) -> bool:
        """Return True only when ``plaintext`` matches ``password_hash``.

        Malformed hashes count as a mismatch rather than an error.
        """
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn_verification(self, plaintext: str) -> None:
        """Spend one verification's worth of time without a real hash."""
        self.verify_password(plaintext, self._dummy_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def validate_strength(self, plaintext: str) -> StrengthResult:
        errors: List[str] = []
        if len(plaintext) < self.min_length:
            errors.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if len(plaintext) > self.max_length:
            errors.append(
                f"Password must be no more than {self.max_length} characters long"
            )
        if not any(c.islower() for c in plaintext):
            errors.append("Password must contain at least one lowercase letter")
        if not any(c.isupper() for c in plaintext):
            errors.append("Password must contain at least one uppercase letter")
        if not any(c.isdigit() for c in plaintext):
            errors.append("Password must contain at least one number")
        if not _SYMBOL_RE.search(plaintext):
            errors.append("Password must contain at least one special character")
        return StrengthResult(is_valid=not errors, errors=errors)
