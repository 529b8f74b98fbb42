from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import TokenExpiredError, TokenInvalidError, TokenReusedError
from authcore.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = {
    ACCESS: ("sub", "jti", "sid", "role", "email", "iat", "exp"),
    REFRESH: ("sub", "jti", "sid", "fam", "iat", "exp"),
}


class RefreshConsumptionStore(Protocol):
    def consume_refresh_token(
        self, jti: str, family_id: str, user_id: str, expires_at: datetime
    ) -> bool: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_jti: str
    access_expires_at: datetime
    refresh_jti: str
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_response(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
            "expiresAt": self.access_expires_at.isoformat(),
        }


class TokenIssuer:
    """Mints and verifies HS256 access/refresh tokens.

    ``verify`` is a pure function of the token and the clock; revocation is
    checked by the caller. ``rotate_refresh`` adds the single-use guarantee on
    top by consuming the refresh jti in a durable registry before minting.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        consumption_store: RefreshConsumptionStore,
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 7 * 24 * 60,
        clock_skew_seconds: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.consumption_store = consumption_store
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)
        self._clock_skew_leeway = timedelta(seconds=clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self, user: User, *, session_id: str, family_id: str) -> TokenPair:
        now = self._now()
        iat = int(now.timestamp())
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_jti = str(uuid.uuid4())
        refresh_jti = str(uuid.uuid4())
        access_payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "sid": session_id,
            "role": user.role.value,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "token_type": ACCESS,
            "jti": access_jti,
            "iat": iat,
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "sid": session_id,
            "fam": family_id,
            "token_type": REFRESH,
            "jti": refresh_jti,
            "iat": iat,
            "exp": int(refresh_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            access_jti=access_jti,
            access_expires_at=datetime.fromtimestamp(access_payload["exp"], timezone.utc),
            refresh_jti=refresh_jti,
            refresh_expires_at=datetime.fromtimestamp(refresh_payload["exp"], timezone.utc),
        )

    def verify(self, token: str, expected_type: str = ACCESS) -> dict[str, Any]:
        """Decode ``token`` and check signature, audience, type and expiry.

        Raises:
            TokenExpiredError: signature is valid but ``exp`` has passed.
            TokenInvalidError: anything else is wrong with the token.
        """
        payload = self._decode_jwt(token)
        if payload.get("token_type") != expected_type:
            raise TokenInvalidError()
        missing = [c for c in _REQUIRED_CLAIMS[expected_type] if not payload.get(c)]
        if missing:
            logger.warning("jwt_missing_claims", claims=missing, token_type=expected_type)
            raise TokenInvalidError()
        try:
            exp_ts = float(payload["exp"])
        except (TypeError, ValueError):
            raise TokenInvalidError()
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError()
        return payload

    def verify_for_logout(self, token: str) -> Optional[dict[str, Any]]:
        """Claims of an access token being surrendered, or None once it has expired.

        An expired token has nothing left to revoke, so logout treats it as done.
        """
        try:
            return self.verify(token, ACCESS)
        except TokenExpiredError:
            return None

    def read_token_id(self, token: str) -> Optional[str]:
        """``jti`` of a correctly signed token without checking expiry or type.

        Lets callers consult the revocation registry before full verification.
        """
        try:
            jti = self._decode_jwt(token).get("jti")
        except TokenInvalidError:
            return None
        return jti if isinstance(jti, str) and jti else None

    def decode_unverified_expiry(self, token: str) -> Optional[datetime]:
        """Best-effort ``exp`` of a correctly signed token, ignoring expiry."""
        try:
            payload = self._decode_jwt(token)
            return datetime.fromtimestamp(float(payload["exp"]), timezone.utc)
        except (TokenInvalidError, KeyError, TypeError, ValueError):
            return None

    async def rotate_refresh(
        self,
        old_refresh_token: str,
        mint: Callable[[dict[str, Any]], Awaitable[TokenPair]],
    ) -> TokenPair:
        """Consume ``old_refresh_token`` exactly once and mint its successor.

        ``mint`` receives the verified claims and must return the new pair.
        When the jti was already consumed, ``TokenReusedError`` is raised and
        no pair is minted; the caller owns family revocation.
        """
        claims = self.verify(old_refresh_token, REFRESH)
        expires_at = datetime.fromtimestamp(float(claims["exp"]), timezone.utc)
        first_use = self.consumption_store.consume_refresh_token(
            claims["jti"], claims["fam"], claims["sub"], expires_at
        )
        if not first_use:
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=claims["sub"],
                family_id=claims["fam"],
                jti=claims["jti"],
            )
            raise TokenReusedError(user_id=claims["sub"], family_id=claims["fam"])
        return await mint(claims)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        # Pin the algorithm; never trust the header to pick one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalidError()
        return payload
