"""Logging setup for Machine Gate.

Modules log through ``logging.getLogger(__name__)``; this module configures
the ``machinegate`` parent logger once per process with console output and
optional size-rotated files, using ISO 8601 timestamps.
"""

import logging
import logging.handlers
import os
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def setup_logger(
    name: str = "machinegate",
    level: str = "INFO",
    log_dir: Optional[str] = None,
    file_logging: bool = False,
    console_logging: bool = True,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the named logger and return it.

    Args:
        name: Logger name; child loggers (``machinegate.core...``) propagate to it
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for the rotating log file
        file_logging: Write to ``<log_dir>/<name>.log``
        console_logging: Write to stderr
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    level_upper = level.upper()
    if level_upper not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(
            f"Invalid log level: {level}. "
            f"Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )
    logger.setLevel(getattr(logging, level_upper))

    # Prevent duplicate handlers on repeated app startup
    if logger.handlers:
        return logger

    formatter = logging.Formatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)

    if file_logging:
        if not log_dir:
            raise ValueError("log_dir is required when file_logging is enabled")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, f"{name}.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console_logging:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def configure_from_settings(settings) -> logging.Logger:
    """Configure the package logger from application settings."""
    return setup_logger(
        level=settings.log_level,
        log_dir=settings.log_dir,
        file_logging=settings.log_to_file,
    )
