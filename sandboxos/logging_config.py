"""Logging configuration for SandboxOS.

Provides console logging with appropriate levels for application
code vs third-party libraries.
"""

import logging
import sys
from typing import Literal

from sandboxos.settings import get_settings

# Third-party loggers that are noisy at INFO/DEBUG
NOISY_LOGGERS = [
    "asyncio",
    "httpcore",
    "httpx",
]


def suppress_noisy_loggers() -> None:
    """Suppress noisy third-party loggers."""
    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.WARNING)
        logger.handlers.clear()


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
) -> None:
    """Configure application logging.

    Args:
        level: Override log level (defaults to settings.log_level)
    """
    settings = get_settings()
    log_level = level or ("DEBUG" if settings.debug else settings.log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level))
    console_handler.setFormatter(
        logging.Formatter(
            "%(levelname)s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root_logger.addHandler(console_handler)

    logging.getLogger("sandboxos").setLevel(getattr(logging, log_level))

    suppress_noisy_loggers()


# Configure logging on module import
configure_logging()
