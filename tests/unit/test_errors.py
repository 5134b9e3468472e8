"""Tests for error sanitization and invariant helpers."""

from __future__ import annotations

import pytest

from coder_k8s_operator.utils.errors import (
    InvariantError,
    invariant,
    sanitize_dict,
    sanitize_error_message,
    sanitize_exception,
)


class TestSanitizeErrorMessage:
    """Test cases for sanitize_error_message function."""

    def test_sanitize_postgres_url_password(self):
        """Test that passwords embedded in URLs are redacted."""
        result = sanitize_error_message("dial postgres://coder:s3cr3t@db:5432/coder failed")

        assert "s3cr3t" not in result
        assert "postgres://coder:[REDACTED]@db:5432/coder" in result

    def test_sanitize_dsn_password(self):
        """Test that keyword DSN passwords are redacted."""
        result = sanitize_error_message("host=db user=coder password=hunter2 dbname=coder")

        assert "hunter2" not in result
        assert "[REDACTED]" in result

    def test_sanitize_session_token_header(self):
        """Test that Coder session tokens in headers are redacted."""
        result = sanitize_error_message("header Coder-Session-Token: abc123-def456 rejected")

        assert "abc123-def456" not in result

    def test_sanitize_token_field(self):
        """Test that token=value pairs are redacted."""
        result = sanitize_error_message("bad token=Zq81abcdXY-secretpart")

        assert "secretpart" not in result
        assert "token: [REDACTED]" in result

    def test_sanitize_case_insensitive(self):
        """Test that sanitization is case insensitive."""
        result = sanitize_error_message("PASSWORD=hunter2")

        assert "hunter2" not in result

    def test_no_sanitization_needed(self):
        """Test message without sensitive data is unchanged."""
        message = "organization 'default' returned an empty ID"

        assert sanitize_error_message(message) == message

    def test_sanitize_exception(self):
        """Test sanitizing an exception instance."""
        error = RuntimeError("connect postgres://u:pw@host/db")

        assert "pw@" not in sanitize_exception(error)


class TestSanitizeDict:
    """Test cases for sanitize_dict function."""

    def test_redacts_sensitive_fields(self):
        """Test that credential fields are replaced wholesale."""
        data = {"session_token": "abc", "postgres_url": "postgres://x", "license": "jwt", "name": "cp"}

        result = sanitize_dict(data)

        assert result == {
            "session_token": "[REDACTED]",
            "postgres_url": "[REDACTED]",
            "license": "[REDACTED]",
            "name": "cp",
        }

    def test_identifier_fields_are_kept(self):
        """Test that names and ids of credentials stay visible."""
        data = {"key_name": "k1", "key_id": "id-1", "secret_name": "s", "token_name": "t"}

        assert sanitize_dict(data) == data

    def test_nested_dict(self):
        """Test that nested dicts are sanitized recursively."""
        result = sanitize_dict({"outer": {"password": "p", "host": "db"}})

        assert result == {"outer": {"password": "[REDACTED]", "host": "db"}}

    def test_custom_keys(self):
        """Test additional sensitive keys."""
        result = sanitize_dict({"jwt": "x", "other": "y"}, sensitive_keys={"jwt"})

        assert result == {"jwt": "[REDACTED]", "other": "y"}

    def test_string_values_are_scrubbed(self):
        """Test that free-form values have embedded secrets removed."""
        result = sanitize_dict({"error": "postgres://u:pw@h/db unreachable"})

        assert "pw@" not in result["error"]

    def test_mixed_types(self):
        """Test that non-string values pass through."""
        result = sanitize_dict({"replicas": 2, "ready": True, "items": [1, 2]})

        assert result == {"replicas": 2, "ready": True, "items": [1, 2]}


class TestInvariant:
    """Test cases for the invariant helper."""

    def test_holds(self):
        """Test that a true condition passes silently."""
        invariant(True, "never raised")

    def test_violated(self):
        """Test that a false condition raises InvariantError."""
        with pytest.raises(InvariantError, match="empty ID"):
            invariant("", "returned an empty ID")
