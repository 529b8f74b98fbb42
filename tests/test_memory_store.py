"""Tests for the JSON-persisted memory store."""

import json
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.authorization import Role
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import BlacklistEntry, PasswordResetToken, Session

KEY = "memory-store-test-key"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)


def _session(user_id: str) -> Session:
    now = datetime.now(timezone.utc)
    return Session.new(
        user_id,
        token_id=str(uuid.uuid4()),
        token_expires_at=now + timedelta(minutes=15),
        refresh_expires_at=now + timedelta(days=1),
        role=Role.USER,
        email="a@example.com",
    )


class TestUsers:
    """Tests for user records."""

    def test_email_is_normalized_and_unique(self, store):
        user = store.create_user("  Mixed@Example.COM ", "hash")
        assert user.email == "mixed@example.com"
        assert store.get_user_by_email("MIXED@example.com").id == user.id
        with pytest.raises(ConstraintViolation):
            store.create_user("mixed@example.com", "hash")

    def test_update_rejects_unknown_fields(self, store):
        user = store.create_user("a@example.com", "hash")
        with pytest.raises(ValueError):
            store.update_user(user.id, email="b@example.com")

    def test_update_missing_user_returns_none(self, store):
        assert store.update_user("missing", is_active=False) is None

    def test_returned_records_are_copies(self, store):
        user = store.create_user("a@example.com", "hash")
        user.role = Role.ADMIN
        assert store.get_user(user.id).role is Role.USER

    def test_register_failed_login_locks_at_threshold(self, store):
        user = store.create_user("a@example.com", "hash")
        until = datetime.now(timezone.utc) + timedelta(minutes=15)
        for _ in range(4):
            updated = store.register_failed_login(user.id, max_attempts=5, lockout_until=until)
            assert updated.lockout_until is None
        updated = store.register_failed_login(user.id, max_attempts=5, lockout_until=until)
        assert updated.failed_login_attempts == 5
        assert updated.is_locked()


class TestPersistence:
    """Tests for reload from the state file."""

    def test_state_survives_reload(self, store, tmp_path):
        user = store.create_user("a@example.com", "hash", role=Role.MANAGER)
        store.insert_session_capped(_session(user.id), 5)
        store.add_blacklist_entry(
            BlacklistEntry(token_id="jti", expires_at=datetime.now(timezone.utc) + timedelta(minutes=5))
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)

        assert reloaded.get_user(user.id).role is Role.MANAGER
        assert len(reloaded.list_sessions_for_user(user.id)) == 1
        assert reloaded.is_blacklisted("jti")

    def test_session_sequence_continues_after_reload(self, store, tmp_path):
        user = store.create_user("a@example.com", "hash")
        first = store.insert_session_capped(_session(user.id), 5).session

        reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
        second = reloaded.insert_session_capped(_session(user.id), 5).session

        assert second.sequence > first.sequence

    def test_two_factor_secret_is_sealed_on_disk(self, store, tmp_path):
        user = store.create_user("a@example.com", "hash")
        store.update_user(user.id, two_factor_secret="JBSWY3DPEHPK3PXP")

        raw = (tmp_path / "state" / "auth_store.json").read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw

        reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
        assert reloaded.get_user(user.id).two_factor_secret == "JBSWY3DPEHPK3PXP"

    def test_wrong_key_cannot_open_secret(self, store, tmp_path):
        user = store.create_user("a@example.com", "hash")
        store.update_user(user.id, two_factor_secret="JBSWY3DPEHPK3PXP")

        reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key="another-key")
        assert reloaded.get_user(user.id).two_factor_secret is None

    def test_state_file_is_valid_json(self, store, tmp_path):
        store.create_user("a@example.com", "hash")
        data = json.loads((tmp_path / "state" / "auth_store.json").read_text())
        assert data["users"][0]["email"] == "a@example.com"


class TestAtomicOperations:
    """Tests for the compound operations that must not race."""

    def test_consume_refresh_token_once(self, store):
        exp = datetime.now(timezone.utc) + timedelta(days=1)
        assert store.consume_refresh_token("jti", "fam", "user", exp) is True
        assert store.consume_refresh_token("jti", "fam", "user", exp) is False

    def test_concurrent_refresh_consumption(self, store):
        exp = datetime.now(timezone.utc) + timedelta(days=1)
        results = []
        barrier = threading.Barrier(8)

        def consume():
            barrier.wait()
            results.append(store.consume_refresh_token("jti", "fam", "user", exp))

        threads = [threading.Thread(target=consume) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_reset_completion_consumes_and_sets_password_together(self, store):
        user = store.create_user("a@example.com", "old-hash")
        store.register_failed_login(
            user.id, max_attempts=1, lockout_until=datetime.now(timezone.utc) + timedelta(minutes=15)
        )
        store.put_reset_token(PasswordResetToken.new("h1", user.id, 60))
        now = datetime.now(timezone.utc)

        updated = store.complete_password_reset("h1", now, password_hash="new-hash")

        assert updated.password_hash == "new-hash"
        assert updated.failed_login_attempts == 0
        assert updated.lockout_until is None
        assert store.get_reset_token("h1").consumed_at == now
        assert store.complete_password_reset("h1", now, password_hash="other") is None
        assert store.get_user(user.id).password_hash == "new-hash"
        assert store.complete_password_reset("unknown", now, password_hash="x") is None

    def test_reset_completion_for_missing_user_changes_nothing(self, store):
        user = store.create_user("a@example.com", "old-hash")
        store.put_reset_token(PasswordResetToken.new("h1", user.id, 60))
        store.users.pop(user.id)

        assert store.complete_password_reset(
            "h1", datetime.now(timezone.utc), password_hash="new-hash"
        ) is None
        assert store.get_reset_token("h1").consumed_at is None

    def test_concurrent_reset_completion(self, store):
        user = store.create_user("a@example.com", "old-hash")
        store.put_reset_token(PasswordResetToken.new("h1", user.id, 60))
        results = []
        barrier = threading.Barrier(6)

        def complete(n):
            barrier.wait()
            results.append(
                store.complete_password_reset(
                    "h1", datetime.now(timezone.utc), password_hash=f"hash-{n}"
                )
            )

        threads = [threading.Thread(target=complete, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.get_user(user.id).password_hash == winners[0].password_hash

    def test_capped_insert_under_threads(self, store):
        user = store.create_user("a@example.com", "hash")
        barrier = threading.Barrier(10)

        def insert():
            barrier.wait()
            store.insert_session_capped(_session(user.id), 5)

        threads = [threading.Thread(target=insert) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.list_sessions_for_user(user.id)) == 5

    def test_session_for_unknown_user_is_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.insert_session_capped(_session("ghost"), 5)

    def test_prune_removes_expired_entries(self, store):
        now = datetime.now(timezone.utc)
        user = store.create_user("a@example.com", "hash")
        store.add_blacklist_entry(BlacklistEntry(token_id="old", expires_at=now - timedelta(minutes=1)))
        store.add_blacklist_entry(BlacklistEntry(token_id="new", expires_at=now + timedelta(minutes=1)))
        store.consume_refresh_token("r-old", "fam", user.id, now - timedelta(minutes=1))
        store.put_reset_token(
            PasswordResetToken(
                token_hash="h-old",
                user_id=user.id,
                expires_at=now - timedelta(minutes=1),
            )
        )

        assert store.prune_blacklist(now) == 1
        assert store.prune_reset_tokens(now) == 1
        assert not store.is_blacklisted("old")
        assert store.is_blacklisted("new")
        assert "r-old" not in store.consumed_refresh
