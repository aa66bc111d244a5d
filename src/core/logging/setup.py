"""Logging setup and configuration."""

import logging
import shutil
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "midnight"
DEFAULT_ROTATION_INTERVAL = 1
DEFAULT_BACKUP_COUNT = 7
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiokafka",
    "kafka",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files to an archive folder.

    Example:
        logs/2026-10-18/cnab_worker_1018_1430_brave-golden-tiger.log (current)
        logs/2026-10-18/archive/cnab_worker_1018_1430_brave-golden-tiger.log.2026-10-17
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            self.archive_dir = Path(self.baseFilename).parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        for rotated_file in log_path.parent.glob(f"{log_path.name}.*"):
            if rotated_file == log_path:
                continue

            try:
                shutil.move(str(rotated_file), str(self.archive_dir / rotated_file.name))
            except OSError as e:
                # Can't use logging here, we are inside a handler
                print(f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr)


def get_log_file_path(
    log_dir: Path,
    name: str = "cnab",
    instance_id: str | None = None,
) -> Path:
    """
    Build log file path with a date subfolder.

    Structure: {log_dir}/{YYYY-MM-DD}/{name}_{MMDD}_{HHMM}[_{instance_id}].log

    Args:
        log_dir: Base log directory
        name: Process name (e.g. "cnab_worker")
        instance_id: Worker identifier appended so concurrent workers
            never share a file

    Returns:
        Full path to log file
    """
    now = datetime.now()
    base_name = f"{name}_{now.strftime('%m%d')}_{now.strftime('%H%M')}"
    if instance_id:
        base_name = f"{base_name}_{instance_id}"
    return log_dir / now.strftime("%Y-%m-%d") / f"{base_name}.log"


def setup_logging(
    name: str = "cnab",
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure root logging with a console handler and an optional
    auto-archiving rotating file handler.

    Args:
        name: Logger name and log file prefix
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs, and for stdout when
            log_to_stdout is set (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs - 'midnight', 'H' (hourly), 'M' (minutes)
        rotation_interval: Interval for rotation (default: 1)
        backup_count: Number of backup files to keep (default: 7)
        suppress_noisy: Quiet down Kafka client and SQLAlchemy loggers
        worker_id: Worker identifier appended to the log filename
        log_to_stdout: Send all log output to stdout only, skipping the file
            handler. Containers collect logs from stdout.

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    console_handler = logging.StreamHandler(sys.stdout)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()

    log_file = None
    if log_to_stdout:
        console_handler.setLevel(console_level)
        console_handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)
        console_handler.setFormatter(ConsoleFormatter())

        log_file = get_log_file_path(log_dir, name=name, instance_id=worker_id)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )

        file_handler = ArchivingTimedRotatingFileHandler(
            log_file,
            when=rotation_when,
            interval=rotation_interval,
            backupCount=backup_count,
            encoding="utf-8",
            archive_dir=log_dir / "archive",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(file_formatter)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode", extra={"worker_id": worker_id})
    else:
        logger.debug(
            f"Logging initialized: file={log_file}, json={json_format}",
            extra={"worker_id": worker_id},
        )

    return logger
