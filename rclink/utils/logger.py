"""
Logging setup for rclink

Module loggers (``logging.getLogger(__name__)``) all live under the
``rclink`` logger, so configuring it once covers the link, the transmit
loop and the API routes.
"""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ENV_LEVEL = "RCLINK_LOG_LEVEL"


def _level_from_env(default: int) -> int:
    value = os.environ.get(ENV_LEVEL, "").strip()
    if not value:
        return default
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def get_logger(name: str = None, fmt: str = None, level: int = logging.INFO) -> logging.Logger:
    """
    Return the package logger with a stdout handler attached.

    The handler is installed on the first call only. ``RCLINK_LOG_LEVEL``
    (a level name such as ``DEBUG``) overrides ``level``; at DEBUG every
    vehicle heartbeat and repeated write error is logged.
    """
    logger = logging.getLogger(name or "rclink")
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt or LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    logger.setLevel(_level_from_env(level))
    return logger
