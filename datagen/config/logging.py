"""
Logging Configuration for the Synthetic Store Generator

Routes structlog events and stdlib records (SQLAlchemy, uvicorn, Prefect)
through one stdout handler, rendered as JSON lines or colored console text.
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import ProcessorFormatter, add_log_level

from datagen.config.settings import get_settings

# Loggers whose records go through our handler at the configured level
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Chatty libraries held at WARNING; SQLAlchemy is released when echo is on
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "faker.factory")


def shared_processors() -> List:
    """Processors applied to structlog events and foreign stdlib records alike"""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def build_formatter(log_format: str) -> ProcessorFormatter:
    # Choose renderer based on format: JSON for collectors, colors for terminals
    if log_format == "json":
        renderer = JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    return ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors())


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Handler:
    """
    Configure structured logging for the application.

    Safe to call more than once; previous root handlers are replaced.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_format: Override renderer ("json" or "text")

    Returns:
        The stdout handler installed on the root logger
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    fmt = log_format or settings.monitoring.log_format
    numeric_level = getattr(logging, level, logging.INFO)

    structlog.configure(
        processors=shared_processors() + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(build_formatter(fmt))

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # Also configure uvicorn loggers
    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
        server_logger.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        if name == "sqlalchemy.engine" and settings.database.echo:
            continue
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=fmt,
        environment=settings.app_env,
    )
    return handler
