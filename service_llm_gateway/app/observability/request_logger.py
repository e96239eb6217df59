"""
Lifecycle logging for chat-completion calls.

``RequestLogger`` writes structlog events with sensitive values redacted.
``NullRequestLogger`` is the no-op default the gateway client falls back to
when no logger is injected. Any object matching ``GatewayRequestLogger`` can
be injected instead.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from shared.logging import get_logger


LEVELS = ("debug", "info", "warn", "error", "critical")

SENSITIVE_KEYS = (
    "apikey",
    "api_key",
    "token",
    "password",
    "secret",
    "authorization",
    "bearer",
    "content",
    "messages",
    "sourcetext",
    "source_text",
)

# Keys that contain a sensitive substring but only ever hold counts
SAFE_KEYS = {"tokens_used", "tokens_available", "tokens_required", "max_tokens"}

MAX_VALUE_LENGTH = 500


def is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in SAFE_KEYS:
        return False
    return any(sensitive in lowered for sensitive in SENSITIVE_KEYS)


def sanitize_context(context: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in context.items():
        if is_sensitive(key):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            sanitized[key] = value[:MAX_VALUE_LENGTH] + "..."
        else:
            sanitized[key] = value
    return sanitized


@runtime_checkable
class GatewayRequestLogger(Protocol):
    """What the gateway client needs from an injected request logger."""

    def debug(self, message: str, **context: Any) -> None: ...

    def info(self, message: str, **context: Any) -> None: ...

    def warn(self, message: str, **context: Any) -> None: ...

    def error(self, message: str, **context: Any) -> None: ...

    def log_request_start(self, **context: Any) -> None: ...

    def log_request_success(self, **context: Any) -> None: ...

    def log_request_error(self, **context: Any) -> None: ...

    def log_rate_limit(self, **context: Any) -> None: ...

    def log_config_change(self, **context: Any) -> None: ...


class NullRequestLogger:
    """Request logger that discards everything."""

    def debug(self, message: str, **context: Any) -> None:
        pass

    def info(self, message: str, **context: Any) -> None:
        pass

    def warn(self, message: str, **context: Any) -> None:
        pass

    def error(self, message: str, **context: Any) -> None:
        pass

    def log_request_start(self, **context: Any) -> None:
        pass

    def log_request_success(self, **context: Any) -> None:
        pass

    def log_request_error(self, **context: Any) -> None:
        pass

    def log_rate_limit(self, **context: Any) -> None:
        pass

    def log_config_change(self, **context: Any) -> None:
        pass


class RequestLogger(NullRequestLogger):
    """structlog-backed request logger."""

    def __init__(self,
                 name: str = "llm_gateway.openrouter",
                 log_level: str = "info",
                 development: bool = False):
        if log_level not in LEVELS:
            raise ValueError(f"Unknown log level: {log_level!r}")
        self.log_level = log_level
        self.development = development
        self.logger = get_logger(name)

    def _should_log(self, level: str) -> bool:
        return LEVELS.index(level) >= LEVELS.index(self.log_level)

    def _write(self, level: str, message: str, context: Dict[str, Any]) -> None:
        if not self._should_log(level):
            return
        fields = {k: v for k, v in sanitize_context(context).items() if v is not None}
        method = "warning" if level == "warn" else level
        getattr(self.logger, method)(message, service="openrouter", **fields)

    def debug(self, message: str, **context: Any) -> None:
        self._write("debug", message, context)

    def info(self, message: str, **context: Any) -> None:
        self._write("info", message, context)

    def warn(self, message: str, **context: Any) -> None:
        self._write("warn", message, context)

    def error(self, message: str, **context: Any) -> None:
        self._write("error", message, context)

    def sanitize_user_id(self, user_id: Optional[str]) -> Optional[str]:
        """Mask user ids outside development."""
        if not user_id:
            return None
        if self.development:
            return user_id
        if len(user_id) <= 8:
            return "user-***"
        return f"{user_id[:4]}***{user_id[-4:]}"

    def log_request_start(self, *, request_id: str, model: str, operation: str,
                          message_count: int, has_schema: bool,
                          user_id: Optional[str] = None, **extra: Any) -> None:
        self.info(
            "OpenRouter request started",
            request_id=request_id,
            model=model,
            operation=operation,
            message_count=message_count,
            has_schema=has_schema,
            user_id=self.sanitize_user_id(user_id),
            **extra
        )

    def log_request_success(self, *, request_id: str, model: str, operation: str,
                            duration: float, tokens_used: Optional[int] = None,
                            user_id: Optional[str] = None, **extra: Any) -> None:
        self.info(
            "OpenRouter request completed",
            request_id=request_id,
            model=model,
            operation=operation,
            duration=duration,
            tokens_used=tokens_used,
            user_id=self.sanitize_user_id(user_id),
            **extra
        )

    def log_request_error(self, *, request_id: str, model: str, operation: str,
                          duration: float, error_type: str,
                          status_code: Optional[int] = None,
                          attempts: Optional[int] = None,
                          user_id: Optional[str] = None, **extra: Any) -> None:
        self.error(
            "OpenRouter request failed",
            request_id=request_id,
            model=model,
            operation=operation,
            duration=duration,
            error_type=error_type,
            status_code=status_code,
            attempts=attempts,
            user_id=self.sanitize_user_id(user_id),
            **extra
        )

    def log_rate_limit(self, *, request_id: str, wait_time: float, tokens_available: int,
                       retry_after: Optional[float] = None, **extra: Any) -> None:
        self.warn(
            "Rate limit encountered",
            request_id=request_id,
            wait_time=wait_time,
            tokens_available=tokens_available,
            retry_after=retry_after,
            **extra
        )

    def log_config_change(self, *, property: str, new_value: Any, old_value: Any = None) -> None:
        redact = is_sensitive(property)
        self.info(
            "OpenRouter configuration changed",
            property=property,
            old_value="[REDACTED]" if redact and old_value is not None else old_value,
            new_value="[REDACTED]" if redact else new_value
        )


def get_request_logger(development: bool = False, log_level: Optional[str] = None) -> RequestLogger:
    """Build a request logger with the level implied by the environment."""
    level = (log_level or ("debug" if development else "info")).lower()
    if level == "warning":
        level = "warn"
    return RequestLogger(log_level=level, development=development)

