"""
Centralized logging configuration for grade-router.

Provides structured JSON logging through Loguru. Library code only ever
calls ``logger``; applications call ``setup_structured_logging`` once at
startup.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_structured_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    serialize: bool = True
) -> None:
    """
    Configure structured logging with Loguru.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a rotating log file
        serialize: Emit JSON lines instead of formatted text

    Returns:
        None (Loguru configures its own handlers)
    """
    logger.remove()

    # serialize=True puts bound fields (group_id, batch_id, tier) under record.extra
    logger.add(
        sys.stdout,
        serialize=serialize,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name} | {message}",
        level=level,
        enqueue=True,
        backtrace=True,
        diagnose=False
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_path,
            serialize=True,
            level="DEBUG",
            rotation="10 MB",
            retention="30 days",
            compression="zip"
        )

    # Suppress noisy third-party loggers
    logger.disable("httpx")
    logger.disable("httpcore")
    logger.disable("openai")


def setup_from_settings(settings) -> None:
    """Apply the ``logging`` section of a Settings instance."""
    setup_structured_logging(
        level=settings.logging.level,
        log_file=settings.logging.log_file,
        serialize=settings.logging.serialize,
    )


def get_logger(name: str):
    """
    Get a logger for a specific module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger instance with module binding
    """
    return logger.bind(module=name)
