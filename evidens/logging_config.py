"""structlog configuration module."""

import logging
import sys
from typing import Any

import structlog

# Keys whose values must never reach the log stream (provider payloads carry
# card data, CPF documents and credentials).
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "card",
        "cvv",
        "document",
        "number",
        "password",
        "phone",
        "secret_key",
    }
)

REDACTED = "[redacted]"


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def redact_sensitive_fields(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """structlog processor that masks sensitive keys at any nesting depth."""
    return _redact(event_dict)


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output so the hosting platform can index
    webhook and billing events.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
    """

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id (from middleware)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # httpx and supabase log through stdlib; keep their output on the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if debug else logging.INFO,
    )
