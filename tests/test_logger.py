"""Tests for logging setup and helpers."""

import gzip
import io
import logging
from datetime import datetime
from pathlib import Path

import pytest

from timeshelf.config import LoggingConfig
from timeshelf.logger import (
    ConsoleFormatter,
    GzipRotatingFileHandler,
    LoggingError,
    get_logger,
    log_backup_error,
    log_backup_start,
    setup_logging,
    sync_log_path,
)


class TestConsoleOutput:
    """Tests for the console handler."""

    def test_info_and_warning_format(self):
        stream = io.StringIO()
        logger = setup_logging(stream=stream)

        logger.info("Starting backup...")
        logger.warning("No space left on device - removing oldest backup and resuming.")

        assert stream.getvalue().splitlines() == [
            "timeshelf: Starting backup...",
            "timeshelf: [WARNING] No space left on device - removing oldest backup and resuming.",
        ]

    def test_child_loggers_reach_console(self):
        stream = io.StringIO()
        setup_logging(stream=stream)
        logging.getLogger("timeshelf.retention").info("Expiring /b/2024-01-01-000000")
        assert "timeshelf: Expiring /b/2024-01-01-000000" in stream.getvalue()

    def test_level_filters(self):
        stream = io.StringIO()
        logger = setup_logging(LoggingConfig(level="WARNING"), stream=stream)
        logger.info("hidden")
        logger.error("shown")
        assert stream.getvalue() == "timeshelf: [ERROR] shown\n"

    def test_level_override(self):
        stream = io.StringIO()
        logger = setup_logging(LoggingConfig(level="WARNING"), level="DEBUG", stream=stream)
        logger.debug("detail")
        assert "timeshelf: detail" in stream.getvalue()

    def test_invalid_level(self):
        with pytest.raises(LoggingError):
            setup_logging(level="CHATTY")

    def test_repeated_setup_does_not_duplicate(self):
        stream = io.StringIO()
        setup_logging(stream=stream)
        setup_logging(stream=stream)
        get_logger().info("once")
        assert stream.getvalue().count("once") == 1

    def test_formatter_without_handler(self):
        record = logging.LogRecord("timeshelf", logging.ERROR, __file__, 1, "boom %s", ("now",), None)
        assert ConsoleFormatter().format(record) == "timeshelf: [ERROR] boom now"


class TestLogFile:
    def test_log_file_created(self, tmp_path: Path):
        log_file = tmp_path / "nested" / "timeshelf.log"
        logger = setup_logging(LoggingConfig(log_file=log_file), stream=io.StringIO())

        logger.info("written to file")
        for handler in logger.handlers:
            handler.flush()

        content = log_file.read_text()
        assert "INFO" in content
        assert "written to file" in content

    def test_rotation_settings_from_config(self, tmp_path: Path):
        config = LoggingConfig(log_file=tmp_path / "timeshelf.log", log_max_size_mb=1, log_backup_count=0)
        logger = setup_logging(config, stream=io.StringIO())

        handlers = [h for h in logger.handlers if isinstance(h, GzipRotatingFileHandler)]
        assert len(handlers) == 1
        assert handlers[0].backupCount == 0
        assert handlers[0].maxBytes == 1024 * 1024

    def test_rotation_compresses(self, tmp_path: Path):
        log_file = tmp_path / "rotating.log"
        handler = GzipRotatingFileHandler(log_file, maxBytes=200, backupCount=2, encoding="utf-8")
        logger = logging.getLogger("timeshelf.test.rotation")
        logger.propagate = False
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            for i in range(30):
                logger.info(f"line number {i} with some padding to fill the file")
        finally:
            logger.removeHandler(handler)
            handler.close()

        rotated = tmp_path / "rotating.log.1.gz"
        assert rotated.exists()
        with gzip.open(rotated, "rt") as f:
            assert "line number" in f.read()


class TestSyncLogPath:
    def test_creates_directory(self, tmp_path: Path):
        log_dir = tmp_path / "logs"
        path = sync_log_path(log_dir, now=datetime(2024, 5, 1, 12, 0, 0))
        assert log_dir.is_dir()
        assert path == log_dir / "2024-05-01-120000.log"

    def test_name_in_use_gets_suffix(self, tmp_path: Path):
        now = datetime(2024, 5, 1, 12, 0, 0)
        (tmp_path / "2024-05-01-120000.log").write_text("old")
        (tmp_path / "2024-05-01-120000-1.log").write_text("old")
        assert sync_log_path(tmp_path, now=now) == tmp_path / "2024-05-01-120000-2.log"


class TestMessages:
    def test_backup_start(self, caplog):
        with caplog.at_level(logging.INFO, logger="timeshelf"):
            log_backup_start(get_logger(), "/home/me", "/backups/2024-05-01-120000")
        assert caplog.messages == [
            "Starting backup...",
            "From: /home/me/",
            "To:   /backups/2024-05-01-120000/",
        ]

    def test_backup_error(self, caplog):
        with caplog.at_level(logging.ERROR, logger="timeshelf"):
            log_backup_error(get_logger(), ValueError("bad"), "retention")
            log_backup_error(get_logger(), ValueError("worse"))
        assert caplog.messages == [
            "Backup failed during retention: bad",
            "Backup failed: worse",
        ]
