"""Structured logging for chainpulse (structlog over stdlib logging).

Every module logs through get_logger(__name__) with an event name plus
key/value fields. Lines go to stderr, since stdout carries CLI output:
JSON by default, a colored console renderer when logging.json is off.
Webhook secrets and Telegram bot tokens are masked before rendering.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog

_SECRET_KEYS = re.compile(r"(token|secret|signature|authorization)", re.IGNORECASE)
_MASK = "***REDACTED***"

# Telegram bot URLs embed the token in the path
_BOT_URL_RE = re.compile(r"(https://api\.telegram\.org/bot)[^/]+")

_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "aiosqlite", "asyncio")


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _SECRET_KEYS.search(key):
            event_dict[key] = _MASK
        elif isinstance(value, str):
            event_dict[key] = _BOT_URL_RE.sub(r"\1" + _MASK, value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog through one stderr handler at `log_level`."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _mask_secrets,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter_processors: list[structlog.types.Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
    ]
    if json_output:
        # log.exception() tracebacks become a string field
        formatter_processors.append(structlog.processors.format_exc_info)
    formatter_processors.append(renderer)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processors=formatter_processors))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(module=module)
