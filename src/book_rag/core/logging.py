"""Logging configuration."""

import logging
import sys

from book_rag.config import get_settings

LOG_FORMAT = "%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("aiohttp.access", "multiprocessing")


def setup_logging(level: str | None = None) -> None:
    """Configure application logging.

    Runs in the API process and again inside the vector index process,
    which is why records carry the process name.

    Args:
        level: Optional level override; defaults to the configured log level.
    """
    resolved = (level or get_settings().log_level).upper()

    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if resolved != "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        logging.Logger: Configured logger instance.
    """
    return logging.getLogger(name)
