"""Logging configuration for timeshelf.

This module provides logging setup and helpers for backup runs. Console
output mimics a terse command-line tool ("timeshelf: message", with the
level shown for warnings and errors). An optional application log file is
rotated and gzip-compressed. Each rsync transfer additionally writes its
own log file into the configured log directory.
"""

import gzip
import logging
import os
import shutil
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from timeshelf.config import APP_NAME, LoggingConfig, TimeshelfError


# Logger name for the timeshelf package
LOGGER_NAME = APP_NAME

# Default rotation size
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class LoggingError(TimeshelfError):
    """Raised when logging setup fails."""
    pass


class ConsoleFormatter(logging.Formatter):
    """Formats records as ``timeshelf: [LEVEL] message``."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.levelno >= logging.WARNING:
            return f"{APP_NAME}: [{record.levelname}] {message}"
        return f"{APP_NAME}: {message}"


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that compresses rotated files with gzip.

    Rotated files are named with a .gz extension.
    """

    def rotation_filename(self, default_name: str) -> str:
        return default_name + ".gz"

    def rotate(self, source: str, dest: str) -> None:
        """
        Compress the source file into dest and remove the source.

        If compression fails the file is renamed without the .gz suffix.
        """
        if not os.path.exists(source):
            return

        try:
            with open(source, 'rb') as f_in:
                with gzip.open(dest, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError:
            if os.path.exists(source):
                fallback_dest = dest[:-3] if dest.endswith('.gz') else dest
                try:
                    os.rename(source, fallback_dest)
                except OSError:
                    pass  # logging must never fail the backup


def _ensure_log_directory(log_path: Path) -> None:
    """Ensure the parent directory for a log file exists."""
    log_dir = log_path.parent
    if not log_dir.exists():
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")


def _get_log_level(level_str: str) -> int:
    """Convert log level string to logging constant."""
    level_str = level_str.upper()
    if level_str not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{level_str}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, level_str)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    level: Optional[str] = None,
    stream=None,
) -> logging.Logger:
    """
    Configure logging for timeshelf.

    Sets up:
    - Console output on stderr (or the given stream)
    - A rotating, gzip-compressing file handler when ``config.log_file`` is set

    Args:
        config: LoggingConfig with settings. Defaults to LoggingConfig()
        level: Overrides config.level when given
        stream: Stream for console output (default sys.stderr)

    Returns:
        Configured logger instance

    Raises:
        LoggingError: If the log directory cannot be created or level is invalid
    """
    if config is None:
        config = LoggingConfig()
    log_level = _get_log_level(level or config.level)

    logger = logging.getLogger(LOGGER_NAME)

    # Clear any existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)  # handlers filter

    console_handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(ConsoleFormatter())
    logger.addHandler(console_handler)

    if config.log_file is not None:
        log_file = Path(os.path.expanduser(str(config.log_file)))
        _ensure_log_directory(log_file)
        file_handler = GzipRotatingFileHandler(
            log_file,
            maxBytes=config.log_max_bytes or DEFAULT_MAX_BYTES,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the timeshelf logger instance."""
    return logging.getLogger(LOGGER_NAME)


def sync_log_path(log_dir: Path, now: Optional[datetime] = None) -> Path:
    """
    Path of the rsync log for a transfer starting now.

    Creates the log directory if needed. rsync appends to an existing log,
    so a name already in use gets a numeric suffix.
    """
    if now is None:
        now = datetime.now()
    log_dir = Path(log_dir)
    if not log_dir.exists():
        get_logger().info(f"Creating log folder in '{log_dir}'...")
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")

    stem = now.strftime('%Y-%m-%d-%H%M%S')
    path = log_dir / f"{stem}.log"
    counter = 1
    while path.exists():
        path = log_dir / f"{stem}-{counter}.log"
        counter += 1
    return path


def log_backup_start(
    logger: logging.Logger,
    source: str,
    target: str,
) -> None:
    """Log the start of a transfer."""
    logger.info("Starting backup...")
    logger.info(f"From: {source}/")
    logger.info(f"To:   {target}/")


def log_backup_completion(
    logger: logging.Logger,
    duration_seconds: float,
    snapshot: Optional[str] = None,
    expired: int = 0,
) -> None:
    """Log the completion of a backup run."""
    logger.info("Backup completed without errors.")
    logger.debug(f"Duration: {duration_seconds:.2f} seconds")
    if expired:
        logger.debug(f"Expired snapshots: {expired}")
    if snapshot:
        logger.debug(f"Snapshot: {snapshot}")


def log_backup_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
) -> None:
    """
    Log a backup error.

    Args:
        logger: Logger instance
        error: The exception that occurred
        context: What was happening when it failed
    """
    if context:
        logger.error(f"Backup failed during {context}: {error}")
    else:
        logger.error(f"Backup failed: {error}")


def log_rsync_output(logger: logging.Logger, output: str) -> None:
    """Log rsync output, one DEBUG line per output line."""
    if output.strip():
        for line in output.strip().split("\n"):
            logger.debug(f"rsync: {line}")
