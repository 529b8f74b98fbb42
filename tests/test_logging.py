"""Tests for log redaction helpers."""

from authcore.logging import _redact_pii, sanitize_error_message, set_correlation_id
from authcore.service.runtime import _mask_url_password


class TestRedaction:
    """Tests for the structlog PII processor."""

    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "someone@example.com",
                "refresh_token": "eyJhbGciOi.payload.sig",
                "user_id": "1234-5678",
            },
        )
        assert event["email"] == "so***om"
        assert event["refresh_token"].startswith("ey***")
        assert event["user_id"] == "1234-5678"

    def test_allowed_keys_pass_through(self):
        event = _redact_pii(None, "info", {"token_type": "access", "token_reason": "logout"})
        assert event == {"token_type": "access", "token_reason": "logout"}

    def test_short_and_non_string_values_are_left_alone(self):
        event = _redact_pii(None, "info", {"password": "abc", "secret_count": 3})
        assert event == {"password": "abc", "secret_count": 3}


class TestSanitize:
    """Tests for sanitize_error_message and URL masking."""

    def test_sql_and_paths_are_stripped(self):
        message = sanitize_error_message(
            "database error near SELECT * FROM app_user at /srv/authcore/state"
        )
        assert "app_user" not in message
        assert "/srv/authcore" not in message

    def test_empty_error(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_are_truncated(self):
        assert len(sanitize_error_message("x" * 1000)) == 500

    def test_url_password_is_masked(self):
        assert _mask_url_password("redis://:hunter22@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"

    def test_correlation_id_is_generated(self):
        assert set_correlation_id("abc") == "abc"
        assert len(set_correlation_id()) == 36
