from __future__ import annotations

import logging
import os
import sys

import structlog
from structlog.typing import Processor

_configured = False


def log_level() -> int:
    raw = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def log_format() -> str:
    raw = os.environ.get("LOG_FORMAT", "console").strip().lower()
    return raw if raw in {"console", "json"} else "console"


def configure_logging(force: bool = False) -> None:
    """Route structlog through the stdlib logging backend once per process."""
    global _configured
    if _configured and not force:
        return

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level(), force=force)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format() == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
