"""structlog setup for Proofline processes.

Every record goes through stdlib logging so third-party libraries share one
stream. Production (any MODE other than ``dev``) renders JSON lines; dev
renders a colored console. HMAC secrets and DSN passwords are redacted
before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

# Order signatures are public tags and stay visible; key names below do not.
_REDACTED_KEYS = re.compile(r"password|secret|token|api[-_]?key|authorization", re.IGNORECASE)
_DSN_PASSWORD = re.compile(r"(?P<prefix>[a-z0-9+]+://[^:/@\s]*:)[^@\s]+@", re.IGNORECASE)
_REDACTED = "***REDACTED***"

_QUIET_LOGGERS = ("aiohttp", "asyncio", "sqlalchemy.engine", "web3", "urllib3")


def _redact(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key, value in event_dict.items():
        if _REDACTED_KEYS.search(key):
            event_dict[key] = _REDACTED
        elif isinstance(value, str) and "://" in value:
            # postgresql+asyncpg://user:pw@host/db, redis://:pw@host
            event_dict[key] = _DSN_PASSWORD.sub(rf"\g<prefix>{_REDACTED}@", value)
    return event_dict


def _build_formatter(json_output: bool) -> structlog.stdlib.ProcessorFormatter:
    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def setup_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Route structlog through a single stdout handler on the root logger.

    ``json_output=None`` picks JSON unless ``MODE=dev``.
    """
    if json_output is None:
        json_output = os.getenv("MODE", "prod") != "dev"

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter(json_output))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Logger bound with ``module=<module>``."""
    return structlog.get_logger(module=module)
