"""
Structured logging setup (structlog).

Every log line is a JSON object with an ISO timestamp, the level, the
request's correlation id and the event name. Values of sensitive keys are
replaced with "[REDACTED]" before rendering, so card numbers, CVVs and
idempotency keys never reach the log sink even if a call site passes them.
"""

import logging

import structlog
from asgi_correlation_id.context import correlation_id

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset({
    "api_key",
    "card",
    "card_number",
    "cvv",
    "idempotency_key",
    "pan",
    "secret",
    "x-api-key",
})


def redact_sensitive(_logger, _method_name, event_dict: dict) -> dict:
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def add_correlation_id(_logger, _method_name, event_dict: dict) -> dict:
    event_dict.setdefault("correlation_id", correlation_id.get() or "none")
    return event_dict


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for JSON output at the given level."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            add_correlation_id,
            redact_sensitive,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )
