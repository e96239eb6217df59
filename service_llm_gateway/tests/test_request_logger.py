"""
Unit tests for the redacting request logger.
"""

import pytest
from structlog.testing import capture_logs

from service_llm_gateway.app.observability.request_logger import (
    GatewayRequestLogger,
    NullRequestLogger,
    RequestLogger,
    get_request_logger,
    is_sensitive,
    sanitize_context,
)


class TestSanitizeContext:
    """Test cases for context redaction."""

    @pytest.mark.parametrize("key", [
        "apiKey", "api_key", "Authorization", "password", "client_secret",
        "bearer_token", "content", "messages", "sourceText", "source_text",
    ])
    def test_sensitive_keys(self, key):
        """Test keys containing a sensitive word are redacted."""
        assert is_sensitive(key)
        assert sanitize_context({key: "value"}) == {key: "[REDACTED]"}

    @pytest.mark.parametrize("key", ["tokens_used", "tokens_available", "max_tokens", "model", "request_id"])
    def test_safe_keys(self, key):
        """Test counters and identifiers are kept."""
        assert not is_sensitive(key)
        assert sanitize_context({key: 42}) == {key: 42}

    def test_long_values_truncated(self):
        """Test long strings are cut at 500 characters."""
        sanitized = sanitize_context({"note": "x" * 600})

        assert sanitized["note"] == "x" * 500 + "..."

    def test_short_values_untouched(self):
        """Test short values pass through."""
        assert sanitize_context({"note": "short", "count": 3}) == {"note": "short", "count": 3}


class TestRequestLogger:
    """Test cases for RequestLogger."""

    @pytest.fixture
    def logger(self):
        return RequestLogger(log_level="debug")

    def test_redacts_sensitive_context(self, logger):
        """Test emitted events never carry sensitive values."""
        with capture_logs() as logs:
            logger.info("calling provider", api_key="sk-secret", messages=[{"role": "user"}], model="m")

        assert len(logs) == 1
        event = logs[0]
        assert event["event"] == "calling provider"
        assert event["api_key"] == "[REDACTED]"
        assert event["messages"] == "[REDACTED]"
        assert event["model"] == "m"
        assert event["service"] == "openrouter"
        assert event["log_level"] == "info"

    def test_warn_maps_to_warning(self, logger):
        """Test the warn level is emitted as a structlog warning."""
        with capture_logs() as logs:
            logger.warn("careful")

        assert logs[0]["log_level"] == "warning"

    def test_level_filtering(self):
        """Test messages below the configured level are dropped."""
        logger = RequestLogger(log_level="warn")

        with capture_logs() as logs:
            logger.debug("d")
            logger.info("i")
            logger.warn("w")
            logger.error("e")

        assert [event["event"] for event in logs] == ["w", "e"]

    def test_critical_level(self):
        """Test a critical logger drops everything below critical."""
        logger = RequestLogger(log_level="critical")

        with capture_logs() as logs:
            logger.warn("w")
            logger.error("e")
            logger.log_request_error(request_id="r", error_type="GatewayError")

        assert logs == []

    def test_unknown_level(self):
        """Test unknown log levels are rejected."""
        with pytest.raises(ValueError):
            RequestLogger(log_level="verbose")

    @pytest.mark.parametrize("development, user_id, expected", [
        (False, "user-1234567890", "user***7890"),
        (False, "abc", "user-***"),
        (False, "12345678", "user-***"),
        (True, "user-1234567890", "user-1234567890"),
        (False, None, None),
    ])
    def test_sanitize_user_id(self, development, user_id, expected):
        """Test user ids are masked outside development."""
        logger = RequestLogger(development=development)

        assert logger.sanitize_user_id(user_id) == expected

    def test_request_lifecycle(self, logger):
        """Test start, success and error events."""
        with capture_logs() as logs:
            logger.log_request_start(
                request_id="req-1", model="m", operation="chat_completion",
                message_count=2, has_schema=True, user_id="user-1234567890"
            )
            logger.log_request_success(
                request_id="req-1", model="m", operation="chat_completion",
                duration=120, tokens_used=30
            )
            logger.log_request_error(
                request_id="req-2", model="m", operation="chat_completion",
                duration=5, error_type="AuthenticationError", status_code=401, attempts=1
            )

        start, success, failure = logs
        assert start["event"] == "OpenRouter request started"
        assert start["user_id"] == "user***7890"
        assert start["message_count"] == 2
        assert success["tokens_used"] == 30
        assert "user_id" not in success
        assert failure["log_level"] == "error"
        assert failure["error_type"] == "AuthenticationError"
        assert failure["status_code"] == 401

    def test_rate_limit_event(self, logger):
        """Test rate limit events are warnings with token counts."""
        with capture_logs() as logs:
            logger.log_rate_limit(request_id="req-1", wait_time=750, tokens_available=0)

        event = logs[0]
        assert event["log_level"] == "warning"
        assert event["tokens_available"] == 0
        assert "retry_after" not in event

    def test_config_change_redacts_secrets(self, logger):
        """Test secret configuration values are never logged."""
        with capture_logs() as logs:
            logger.log_config_change(property="api_key", old_value="sk-old", new_value="sk-new")
            logger.log_config_change(property="timeout_ms", old_value=1000, new_value=2000)

        secret, timeout = logs
        assert secret["old_value"] == "[REDACTED]"
        assert secret["new_value"] == "[REDACTED]"
        assert timeout["old_value"] == 1000
        assert timeout["new_value"] == 2000


class TestLoggerFactory:
    """Test cases for logger construction."""

    def test_development_logger(self):
        """Test development loggers log at debug and keep user ids."""
        logger = get_request_logger(development=True)

        assert logger.log_level == "debug"
        assert logger.development is True

    def test_production_logger(self):
        """Test production loggers log at info."""
        logger = get_request_logger()

        assert logger.log_level == "info"
        assert logger.development is False

    def test_null_logger_accepts_everything(self):
        """Test the no-op logger ignores all calls."""
        logger = NullRequestLogger()

        with capture_logs() as logs:
            logger.info("x", api_key="secret")
            logger.log_request_start(request_id="r", model="m")
            logger.log_config_change(property="p", new_value=1)

        assert logs == []

    @pytest.mark.parametrize("level, expected", [
        ("critical", "critical"),
        ("WARNING", "warn"),
        ("Error", "error"),
    ])
    def test_configured_level_is_normalized(self, level, expected):
        """Test every level accepted by settings maps onto a request logger level."""
        assert get_request_logger(log_level=level).log_level == expected

    @pytest.mark.parametrize("logger", [NullRequestLogger(), RequestLogger()])
    def test_loggers_satisfy_client_protocol(self, logger):
        """Test both bundled loggers can be injected into the client."""
        assert isinstance(logger, GatewayRequestLogger)
