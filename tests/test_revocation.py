"""Tests for the token revocation registry."""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.revocation import RevocationRegistry
from authcore.service.runtime import get_runtime


class _BrokenStore:
    def add_blacklist_entry(self, entry):
        raise RuntimeError("database error: connection refused")

    def is_blacklisted(self, token_id):
        raise RuntimeError("database error: connection refused")

    def prune_blacklist(self, now):
        raise RuntimeError("database error: connection refused")


class _FailingCache:
    async def denylist_token(self, jti, expires_at):
        raise ConnectionError("redis down")

    async def is_token_denylisted(self, jti):
        raise ConnectionError("redis down")


@pytest.fixture
def registry():
    return get_runtime().revocations


def _in(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


class TestRevoke:
    """Tests for revoke / is_revoked."""

    async def test_revoked_token_is_reported(self, registry):
        await registry.revoke("jti-1", _in(15))
        assert await registry.is_revoked("jti-1") is True
        assert await registry.is_revoked("jti-2") is False

    async def test_revoke_is_idempotent(self, registry):
        await registry.revoke("jti-1", _in(15), reason="logout")
        await registry.revoke("jti-1", _in(15), reason="logout")
        assert await registry.is_revoked("jti-1") is True

    async def test_naive_expiry_is_treated_as_utc(self, registry):
        naive = (datetime.now(timezone.utc) + timedelta(minutes=5)).replace(tzinfo=None)
        await registry.revoke("jti-naive", naive)
        assert await registry.is_revoked("jti-naive")

    async def test_revocation_survives_store_reload(self, registry):
        from authcore.storage.memory import MemoryStore

        await registry.revoke("jti-durable", _in(15))
        runtime = get_runtime()
        reloaded = MemoryStore(
            fs_root=runtime.settings.shared_fs_root,
            encryption_key=runtime.settings.jwt_secret,
        )
        assert reloaded.is_blacklisted("jti-durable")


class TestFailureModes:
    """Tests for behavior when a backend misbehaves."""

    async def test_unreadable_store_fails_closed(self):
        registry = RevocationRegistry(_BrokenStore())
        assert await registry.is_revoked("anything") is True

    async def test_cache_failure_falls_back_to_store(self):
        store = get_runtime().store
        registry = RevocationRegistry(store, _FailingCache())

        await registry.revoke("jti-cache", _in(15))

        assert store.is_blacklisted("jti-cache")
        assert await registry.is_revoked("jti-cache") is True
        assert await registry.is_revoked("jti-other") is False

    def test_prune_failure_reports_zero(self):
        assert RevocationRegistry(_BrokenStore()).prune() == 0


class TestPrune:
    """Tests for pruning naturally expired entries."""

    async def test_prune_drops_only_expired_entries(self, registry):
        await registry.revoke("expired", _in(-5))
        await registry.revoke("live", _in(15))

        assert registry.prune() == 1
        assert await registry.is_revoked("live") is True
        assert await registry.is_revoked("expired") is False
