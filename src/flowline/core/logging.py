# src/flowline/core/logging.py
"""Structured logging setup.

All modules log through structlog with key-value context
(entry_id, flow_id, node_id, attempt). Call configure_logging() once at
process start (the CLI does this); library use without it falls back to
structlog's defaults.
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line instead of console output
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(
        format="%(message)s", stream=sys.stderr, level=log_level, force=True
    )

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None, **initial_values: Any) -> Any:
    """Get a bound structlog logger.

    Args:
        name: Logger name, stored as the ``logger_name`` key
        **initial_values: Context bound to every event from this logger
    """
    if name is not None:
        initial_values["logger_name"] = name
    return structlog.get_logger(**initial_values)
