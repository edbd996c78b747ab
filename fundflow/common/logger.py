"""Logging setup for fundflow.

Configures the ``fundflow`` logger hierarchy with console output and,
optionally, a rotating log file. Modules log through
``logging.getLogger(__name__)`` and inherit these handlers.
"""

import logging
import logging.handlers
import os
from typing import Optional

from fundflow.core.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def setup_logger(
    name: str = "fundflow",
    settings: Optional[Settings] = None,
    *,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """Set up a logger with console and optional rotating file handlers.

    Args:
        name: Logger name, normally the package root so children inherit it
        settings: Application settings (log level, directory, file toggle)
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance

    Raises:
        ValueError: If the configured level is not a logging level name
    """
    settings = settings or get_settings()
    logger = logging.getLogger(name)

    level_upper = settings.log_level.upper()
    if not hasattr(logging, level_upper):
        raise ValueError(
            f"Invalid log level: {settings.log_level}. "
            f"Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )
    logger.setLevel(getattr(logging, level_upper))

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if settings.log_to_file:
        os.makedirs(settings.log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(settings.log_dir, f"{name}.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the fundflow hierarchy."""
    if not name.startswith("fundflow"):
        name = f"fundflow.{name}"
    return logging.getLogger(name)
