"""
Utility functions for PropQueue

Display helpers and logging setup shared by the command line tool.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Worker failures are part of process output and must survive quiet log levels
REPORTING_LOGGERS = ("propqueue.worker",)


def setup_logging(level: str = "INFO"):
    """
    Configure root logging once for a command line invocation.

    Loggers in REPORTING_LOGGERS never go above WARNING, whatever the
    configured level.

    Args:
        level: Logging level name
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric)
    for name in REPORTING_LOGGERS:
        logging.getLogger(name).setLevel(min(numeric, logging.WARNING))


def format_duration(seconds: Union[int, float]) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    elif seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    else:
        return f"{seconds / 86400:.1f}d"


def calculate_age(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    """
    Calculate age from a moment to now.

    Args:
        moment: Aware datetime, or None
        now: Reference time, defaults to the current UTC time

    Returns:
        Human-readable age string
    """
    if moment is None:
        return "Unknown"
    if now is None:
        now = datetime.now(timezone.utc)
    seconds = max((now - moment).total_seconds(), 0)
    return format_duration(seconds)


def truncate_string(text: str, max_length: int = 50, suffix: str = "...") -> str:
    """
    Truncate string to maximum length with suffix.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(text) <= max_length:
        return text

    return text[:max_length - len(suffix)] + suffix
