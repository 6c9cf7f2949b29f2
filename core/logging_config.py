"""Structured logging configuration using structlog.

Every engine module logs through ``structlog.get_logger(__name__)`` with
the workflow id and step bound as fields. Console output is colored in
development (or with ``LOG_FORMAT=text``) and JSON lines otherwise, so CI
runs can be filtered by ``workflow_id``. With ``LOG_FILE`` set, the same
records are also written as JSON next to the run's screenshots.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from app.config import Settings, get_settings

# Playwright's driver and asyncio are chatty below WARNING
_QUIET_LOGGERS = ("asyncio", "playwright")


def _console_renderer(settings: Settings):
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def _formatter(renderer, pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the stdlib root logger for a workflow run."""
    settings = settings or get_settings()

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_formatter(_console_renderer(settings), pre_chain))
    handlers: list[logging.Handler] = [console]

    if settings.LOG_FILE:
        path = Path(settings.LOG_FILE)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
