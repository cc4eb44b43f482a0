"""
Structured logging configuration for the expense pipeline.
Ensures SMS bodies are masked before they reach log output.
"""
import logging
import os
import re
import sys
from typing import Optional

# Runs of 4+ digits cover account numbers, card suffixes and OTPs
_DIGIT_RUN = re.compile(r"\d{4,}")

MAX_LOGGED_CHARS = 80


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return a logger instance.

    Args:
        name: Logger name (usually __name__)
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env LOG_LEVEL or INFO.

    Returns:
        Configured logger instance
    """
    log_level = level or os.getenv("LOG_LEVEL", "INFO")

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Avoid duplicate handlers
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, log_level.upper()))

        formatter = logging.Formatter(
            fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def mask_sensitive(text: Optional[str], max_chars: int = MAX_LOGGED_CHARS) -> str:
    """
    Mask digit runs and truncate a message body for logging.

    Keeps the last two digits of each run so operators can still tell
    accounts apart.

    Args:
        text: Raw SMS text
        max_chars: Maximum number of characters to keep

    Returns:
        Log-safe string
    """
    if not text:
        return ""

    masked = _DIGIT_RUN.sub(lambda m: "*" * (len(m.group()) - 2) + m.group()[-2:], text)
    if len(masked) > max_chars:
        masked = masked[:max_chars] + "..."
    return masked
