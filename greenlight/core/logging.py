"""Logging for greenlight: one ``greenlight`` logger tree, console + rotating file."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from greenlight.core.config import get_settings

ROOT_LOGGER = "greenlight"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# httpx logs every request at INFO; the remote loop polls hundreds of times.
_CHATTY_LIBRARIES = ("httpx", "httpcore")

_configured = False


def setup_logging() -> logging.Logger:
    """Attach handlers to the greenlight logger. Safe to call more than once."""
    global _configured
    logger = logging.getLogger(ROOT_LOGGER)
    if _configured:
        return logger

    settings = get_settings()
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    logger.debug("logging    | level=%s | file=%s", settings.log_level, settings.log_file or "none")
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Return ``greenlight.<name>``; names already under the tree pass through."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
