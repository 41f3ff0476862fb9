"""Logging setup utilities for atvbridge.

Configures logging for the entire application based on the logging
configuration settings.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

from atvbridge.config.settings import LoggingConfig

logger = logging.getLogger("atvbridge")


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Configure logging for the atvbridge application.

    Sets up the 'atvbridge' logger with the specified level, format, and
    optional file handler.

    Args:
        config: Logging configuration. If None, uses defaults
                (INFO level, stderr output).
    """
    if config is None:
        config = LoggingConfig()

    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    formatter = logging.Formatter(config.format)

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (optional)
    if config.file:
        file_handler = logging.FileHandler(config.file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.info("Logging initialized at %s level", config.level)


def log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Event loop exception handler that routes stray errors to our logger."""
    exc = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exc is not None:
        logger.error("%s", message, exc_info=exc)
    else:
        logger.error("%s", message)
