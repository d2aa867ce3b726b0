"""Structured logging configuration for the share links service.

Configures structlog for JSON-formatted, request-ID-correlated logging.
Share tokens and passwords passed as event fields are masked before
rendering.

Usage::

    from share_links.observability.logging import configure_logging, get_logger

    configure_logging()  # Call once at app startup
    logger = get_logger(__name__)
    logger.info("share_resolved", share_id="...", token_prefix="AbCdEfGh...")

Prefer ``token_prefix=redact_token(token)`` for correlation. A full token
under ``token`` or ``share_token`` is cut to its prefix, and any
``password`` field is replaced outright.
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar

import structlog

# Context variable for request-scoped correlation ID.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_configured = False

_TOKEN_FIELDS = ("token", "share_token")
_SECRET_FIELDS = ("password", "provided_password", "new_password")


def _add_request_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Inject the current request_id from context into every log entry."""
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Mask share tokens and passwords so they never reach a log sink."""
    from share_links.app.sharing.tokens import redact_token

    for key in _TOKEN_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = redact_token(value)
    for key in _SECRET_FIELDS:
        if event_dict.get(key) is not None:
            event_dict[key] = "<redacted>"
    return event_dict


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
            Defaults to LOG_LEVEL env var or INFO.
        json_output: If True, emit JSON lines. If False, emit
            human-readable console output. Defaults to LOG_FORMAT
            env var == "json".
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        redact_sensitive_fields,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Quiet noisy libraries.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given name."""
    return structlog.get_logger(name)
