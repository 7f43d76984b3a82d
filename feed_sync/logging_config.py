"""Logging setup for feed_sync.

All output goes to stderr because stdout carries the MCP stdio transport.
"""

import logging
import sys
from typing import Optional

from feed_sync.config import ServerConfig

LOGGER_NAME = "feed_sync"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(config: Optional[ServerConfig] = None) -> logging.Logger:
    """Configure the feed_sync logger.

    Safe to call more than once: the handler is only installed the first time,
    later calls just update the level.

    Args:
        config: Server configuration providing log_level

    Returns:
        The package logger
    """
    level_name = config.log_level if config else "INFO"
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if not any(getattr(h, "_feed_sync_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._feed_sync_handler = True
        logger.addHandler(handler)

    logger.setLevel(level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the feed_sync namespace."""
    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logger.getChild(name)
