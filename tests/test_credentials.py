"""Unit tests for the credential manager.

Tests for:
- argon2id hashing and verification
- Strength policy reporting
"""

import pytest

from authcore.service.credentials import CredentialManager


@pytest.fixture
def credentials():
    return CredentialManager(time_cost=1, memory_cost=8192, parallelism=1)


class TestPasswordHashing:
    """Tests for hash_password / verify_password."""

    def test_hash_is_argon2id_and_salted(self, credentials):
        first = credentials.hash_password("TestPassword123!")
        second = credentials.hash_password("TestPassword123!")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "TestPassword123!" not in first

    def test_verify_accepts_matching_password(self, credentials):
        hashed = credentials.hash_password("TestPassword123!")
        assert credentials.verify_password("TestPassword123!", hashed) is True

    def test_verify_rejects_wrong_password(self, credentials):
        hashed = credentials.hash_password("TestPassword123!")
        assert credentials.verify_password("testpassword123!", hashed) is False

    def test_verify_treats_garbage_hash_as_mismatch(self, credentials):
        assert credentials.verify_password("TestPassword123!", "not-a-hash") is False
        assert credentials.verify_password("TestPassword123!", "") is False

    def test_burn_verification_does_not_raise(self, credentials):
        credentials.burn_verification("anything")

    def test_needs_rehash_when_parameters_change(self, credentials):
        weak = credentials.hash_password("TestPassword123!")
        stronger = CredentialManager(time_cost=2, memory_cost=8192, parallelism=1)

        assert credentials.needs_rehash(weak) is False
        assert stronger.needs_rehash(weak) is True
        assert credentials.needs_rehash("garbage") is True


class TestStrengthPolicy:
    """Tests for validate_strength."""

    def test_strong_password_passes(self, credentials):
        result = credentials.validate_strength("TestPassword123!")
        assert result.is_valid
        assert result.errors == []

    def test_every_violation_is_reported(self, credentials):
        result = credentials.validate_strength("abc")

        assert not result.is_valid
        assert result.errors == [
            "Password must be at least 8 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    def test_missing_lowercase(self, credentials):
        result = credentials.validate_strength("PASSWORD123!")
        assert result.errors == ["Password must contain at least one lowercase letter"]

    def test_overlong_password(self, credentials):
        result = credentials.validate_strength("Aa1!" + "x" * 200)
        assert result.errors == ["Password must be no more than 128 characters long"]

    @pytest.mark.parametrize("password", ["Password12", "Password 12"])
    def test_whitespace_and_alnum_are_not_special(self, credentials, password):
        result = credentials.validate_strength(password)
        assert "Password must contain at least one special character" in result.errors

    def test_exact_bounds_are_accepted(self, credentials):
        assert credentials.validate_strength("Aa1!aaaa").is_valid
        assert credentials.validate_strength("Aa1!" + "a" * 124).is_valid
