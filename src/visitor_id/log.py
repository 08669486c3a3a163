"""
Logging setup for visitor-id.

Library modules call get_logger(__name__); the CLI and the API server
call setup_logging() once to configure the root logger.
"""

from __future__ import annotations

import logging
import sys

from .config import DEFAULT_LOG_FORMAT

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    """Return a logger writing to stdout, configured only once per name."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    return logger


def setup_logging(level: str = "INFO", fmt: str = DEFAULT_LOG_FORMAT) -> None:
    """Configure the root logger and the visitor_id loggers."""
    log_level = getattr(logging, level.upper())
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=_DATE_FORMAT))
    root.addHandler(handler)

    # Loggers from get_logger() do not propagate; bring them in line too.
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("visitor_id") and isinstance(logger, logging.Logger):
            logger.setLevel(log_level)
            for h in logger.handlers:
                h.setFormatter(logging.Formatter(fmt, datefmt=_DATE_FORMAT))

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
