"""
Structured logging for the Flashcards LLM Gateway.

Library code only calls ``get_logger``; applications (the CLI, a host
service) call ``configure_logging`` once at startup. Until then structlog's
defaults apply, which is also what tests rely on.
"""

import sys
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog


def configure_logging(service_name: str = "llm_gateway",
                      log_level: str = "info",
                      json_output: bool = True) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_component,
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Diagnostics go to stderr so CLI output on stdout stays machine-readable
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    structlog.contextvars.bind_contextvars(app=service_name)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive ``component`` from the logger name (``llm_gateway.rate_limiter.x`` -> ``rate_limiter``)."""
    logger_name = event_dict.get("logger", "")
    parts = logger_name.split(".")
    if len(parts) > 1 and "component" not in event_dict:
        event_dict["component"] = parts[1]
    return event_dict


@contextmanager
def request_context(request_id: str, **fields: Optional[str]) -> Iterator[None]:
    """Attach ``request_id`` (and any extra non-empty fields) to every event logged in the block."""
    bound = {"request_id": request_id}
    bound.update({key: value for key, value in fields.items() if value})
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
