"""Centralized logging configuration for the settlement engine."""

import logging
import sys


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the settlement engine logger.

    Every module logs through a child of the ``settlement_engine`` logger,
    so one handler here covers the services, the scheduler and the API.

    Args:
        level: The log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).

    Returns:
        The configured root application logger.
    """
    log_format = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logger = logging.getLogger("settlement_engine")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Prevent duplicate handlers if called multiple times
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger under the settlement_engine namespace.

    Usage:
        from settlement_engine.core.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Settlement generated: id=%s", settlement.id)

    Args:
        name: Usually __name__ of the calling module.

    Returns:
        A child logger with the given name.
    """
    if name.startswith("settlement_engine."):
        return logging.getLogger(name)
    return logging.getLogger(f"settlement_engine.{name}")
