"""
Logging helpers for portfolio_engine.

Components log through a small ``log(msg, level)`` helper with textual
levels, prefixing each message with the component name.
"""

import logging
from typing import Dict, Optional

LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def get_logger(component: str, logger: Optional[logging.Logger] = None) -> logging.Logger:
    """Return the injected logger or the package logger for a component."""
    if logger is not None:
        return logger
    return logging.getLogger(f"portfolio_engine.{component}")


def log_message(logger: logging.Logger, prefix: str, msg: str, level: str = "info") -> None:
    logger.log(LOG_LEVELS.get(level, logging.INFO), f"{prefix}: {msg}")
