"""
Logging configuration for the upload client.
Sets up one stdout handler for the whole process.
"""
import logging
import sys


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure application-wide logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)

    Returns:
        The application root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
    return logging.getLogger("src")
