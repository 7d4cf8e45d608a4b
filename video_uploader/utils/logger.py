"""
Logging configuration with rotating file handlers.

Every module logs through a child of the ``video_uploader`` package logger, so
handlers are attached in one place by :func:`configure_logging`.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from video_uploader.core.config import LoggingConfig

APP_LOGGER_NAME = "video_uploader"

# Define log format
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(
    name: str = APP_LOGGER_NAME,
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    fmt: str = LOG_FORMAT,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
    enable_console: bool = True,
) -> logging.Logger:
    """
    Set up a logger with console and optional rotating file handlers.

    Args:
        name: Logger name
        level: Logging level
        log_dir: Directory for ``app.log`` and ``error.log``; no file output when None
        fmt: Record format
        max_bytes: Rotation threshold per file
        backup_count: Number of rotated files to keep
        enable_console: Whether to log to stdout

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Reconfiguration replaces previous handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level)
    formatter = logging.Formatter(fmt, DATE_FORMAT)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / "app.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        # Errors and above only
        error_handler = RotatingFileHandler(
            log_dir / "error.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        logger.addHandler(error_handler)

    return logger


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Apply a :class:`LoggingConfig` to the package logger."""
    return setup_logger(
        APP_LOGGER_NAME,
        level=getattr(logging, config.level.value),
        log_dir=config.log_dir if config.enable_file else None,
        fmt=config.format,
        max_bytes=config.max_file_size,
        backup_count=config.backup_count,
        enable_console=config.enable_console,
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name, usually ``__name__``; None returns the package logger

    Returns:
        Logger instance
    """
    if name is None or name == APP_LOGGER_NAME:
        return logging.getLogger(APP_LOGGER_NAME)
    if not name.startswith(APP_LOGGER_NAME + "."):
        name = f"{APP_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
