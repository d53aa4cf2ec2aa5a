"""
Logging setup for the cheque intake service.

Log lines carry session keys, transaction ids and field names. Image bytes,
prompts and gateway payloads stay out of the log.
"""
import logging
import os
import sys
from typing import Optional

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Third-party loggers that flood DEBUG output with image and HTTP internals
NOISY_LOGGERS = ("PIL", "urllib3", "multipart", "python_multipart")


def resolve_level(level: Optional[str] = None) -> int:
    """Explicit level, then LOG_LEVEL, then INFO. Unknown names fall back to INFO."""
    name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    return getattr(logging, name if name in LEVELS else "INFO")


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return a logger writing to stdout.

    Args:
        name: Logger name (usually __name__)
        level: Optional level name overriding LOG_LEVEL

    Returns:
        Configured logger instance
    """
    log_level = resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(handler)
        logger.propagate = False

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    return logger
