"""
Tests for error normalization and message redaction.
"""

from recordmerge.core.errors import (
    AccessError,
    ErrorCategory,
    ErrorLevel,
    PartialResultError,
    RemoteExecutionError,
    ValidationError,
    handle_error,
    sanitize_message,
)


class TestSanitizeMessage:
    """Tests for sanitize_message."""

    def test_bearer_token_redacted(self):
        """Test bearer tokens are redacted."""
        text = sanitize_message("Request failed: Bearer abc123.def456 rejected")
        assert "abc123" not in text
        assert "Bearer [REDACTED]" in text

    def test_key_value_secrets_redacted(self):
        """Test secret key-value pairs are redacted."""
        text = sanitize_message("login password=hunter2&token: xyz")
        assert "hunter2" not in text
        assert "xyz" not in text
        assert "password=[REDACTED]" in text

    def test_long_ids_redacted(self):
        """Test long record ids are redacted."""
        text = sanitize_message("Record 001ABCDEFGHIJKLMNOPQRS not found")
        assert "[REDACTED_ID]" in text
        assert "001ABCDEFGHIJKLMNOPQRS" not in text

    def test_short_ids_kept(self):
        """Test short ids are kept."""
        assert sanitize_message("Record 001A not found") == "Record 001A not found"

    def test_length_capped(self):
        """Test messages are capped in length."""
        assert len(sanitize_message("word " * 100)) == 150

    def test_none_is_empty(self):
        """Test a missing message becomes empty."""
        assert sanitize_message(None) == ""


class TestHandleError:
    """Tests for handle_error."""

    def test_engine_error_keeps_category(self):
        """Test an engine error keeps its category."""
        record = handle_error("test", "op", AccessError("no read access"))
        assert record.category == ErrorCategory.PERMISSIONS
        assert record.level == ErrorLevel.ERROR
        assert record.id.startswith("err_")

    def test_partial_result_is_warning(self):
        """Test partial results are warnings."""
        record = handle_error("test", "op", PartialResultError("2 failed", errors=["a", "b"]))
        assert record.level == ErrorLevel.WARNING
        assert record.category == ErrorCategory.DATA
        assert record.details == "a\nb"

    def test_builtin_exceptions_categorized(self):
        """Test built-in exceptions get a category."""
        assert handle_error("t", "op", ConnectionError("down")).category == ErrorCategory.NETWORK
        assert handle_error("t", "op", PermissionError("denied")).category == ErrorCategory.PERMISSIONS
        assert handle_error("t", "op", KeyError("x")).category == ErrorCategory.DATA
        assert handle_error("t", "op", RuntimeError("boom")).category == ErrorCategory.SYSTEM

    def test_message_sanitized(self):
        """Test recorded messages are sanitized."""
        record = handle_error("t", "op", RemoteExecutionError("token=supersecret failed"))
        assert "supersecret" not in record.message

    def test_level_override(self):
        """Test overriding the error level."""
        record = handle_error("t", "op", ValueError("bad"), ErrorLevel.CRITICAL)
        assert record.level == ErrorLevel.CRITICAL

    def test_empty_message_uses_type_name(self):
        """Test an empty message falls back to the type name."""
        record = handle_error("t", "op", RuntimeError())
        assert record.message == "RuntimeError"

    def test_to_dict(self):
        """Test the error record as a dict."""
        record = handle_error("source", "operation", ValidationError("missing", ["a"]))
        data = record.to_dict()
        assert data['source'] == "source"
        assert data['category'] == "validation"
        assert data['level'] == "error"


class TestValidationError:
    """Tests for ValidationError."""

    def test_missing_fields(self):
        """Test ValidationError carries its missing fields."""
        error = ValidationError("Missing values", missing_fields=['hour'])
        assert error.missing_fields == ['hour']
        assert error.message == "Missing values"
        assert str(error) == "Missing values"
