from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from authcore.logging import get_logger, sanitize_error_message
from authcore.storage.models import BlacklistEntry
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class BlacklistStore(Protocol):
    def add_blacklist_entry(self, entry: BlacklistEntry) -> None: ...

    def is_blacklisted(self, token_id: str) -> bool: ...

    def prune_blacklist(self, now: datetime) -> int: ...


class RevocationRegistry:
    """Denylist of token ids that must be rejected even if otherwise valid.

    The durable store is the source of truth. Redis, when configured, holds a
    TTL'd mirror so the per-request check rarely reaches the database.
    """

    def __init__(
        self,
        store: BlacklistStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store = store
        self.cache = cache

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def revoke(
        self, token_id: str, natural_expiry: datetime, *, reason: str = "revoked"
    ) -> None:
        """Record ``token_id`` as revoked until ``natural_expiry``. Idempotent."""
        if natural_expiry.tzinfo is None:
            natural_expiry = natural_expiry.replace(tzinfo=timezone.utc)
        self.store.add_blacklist_entry(
            BlacklistEntry(
                token_id=token_id,
                expires_at=natural_expiry,
                revoked_at=self._now(),
                reason=reason,
            )
        )
        if self.cache:
            try:
                await self.cache.denylist_token(token_id, natural_expiry)
            except Exception as exc:
                # The durable entry is already written; the mirror is an optimization
                logger.warning(
                    "denylist_cache_write_failed",
                    jti=token_id,
                    error=sanitize_error_message(str(exc)),
                )
        logger.info("token_revoked", jti=token_id, token_reason=reason)

    async def is_revoked(self, token_id: str) -> bool:
        if self.cache:
            try:
                if await self.cache.is_token_denylisted(token_id):
                    return True
            except Exception as exc:
                logger.warning(
                    "denylist_cache_check_failed",
                    jti=token_id,
                    error=sanitize_error_message(str(exc)),
                )
        try:
            return self.store.is_blacklisted(token_id)
        except Exception as exc:
            # Fail closed: an unreadable registry must not resurrect revoked tokens
            logger.warning(
                "denylist_check_failed_defaulting_to_revoked",
                jti=token_id,
                error=sanitize_error_message(str(exc)),
            )
            return True

    def prune(self) -> int:
        """Drop entries whose token has expired naturally; best effort."""
        try:
            pruned = self.store.prune_blacklist(self._now())
        except Exception as exc:
            logger.warning("blacklist_prune_failed", error=sanitize_error_message(str(exc)))
            return 0
        if pruned:
            logger.info("blacklist_pruned", count=pruned)
        return pruned
