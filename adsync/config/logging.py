"""
Logging Configuration for the Ad Insights Synchronization Engine

Structured logging through structlog, rendered as JSON in production and as
colored console output during development. Graph API access tokens are masked
before any event is rendered.
"""

import logging
import re
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter

from adsync.config.settings import Settings, get_settings

SECRET_KEYS = {"access_token", "token", "appsecret_proof", "authorization"}
_TOKEN_PATTERN = re.compile(r"(access_token=)[^&\s\"']+")

# Loggers of libraries that emit through the stdlib
_LIBRARY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "sqlalchemy.engine")


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask token-bearing fields and ``access_token=`` query parameters"""
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS and value:
            event_dict[key] = "***"
        elif isinstance(value, str) and "access_token=" in value:
            event_dict[key] = _TOKEN_PATTERN.sub(r"\1***", value)
    return event_dict


def _library_level(name: str, level: int, debug: bool) -> int:
    if name == "httpx":
        return max(level, logging.WARNING)
    if name == "sqlalchemy.engine":
        return logging.INFO if debug else logging.WARNING
    return level


def configure_logging(log_level: Optional[str] = None, settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        settings: Settings to read format and level from; defaults to the cached settings
    """
    settings = settings or get_settings()
    level = log_level or settings.monitoring.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = (
        JSONRenderer() if settings.monitoring.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for name in _LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers = [handler]
        library_logger.propagate = False
        library_logger.setLevel(_library_level(name, numeric_level, settings.debug))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
        environment=settings.app_env,
        storage_backend=settings.storage_backend,
    )
