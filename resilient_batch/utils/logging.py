"""
Logging configuration and utilities.

Batch runs can last hours, so file logs rotate daily and are cleaned up
after a retention period by a background ``schedule`` job.
"""

import logging
import logging.handlers
import sys
import time
import functools
import threading
from pathlib import Path
from typing import Optional
from datetime import datetime, timedelta

import schedule
import structlog


_cleanup_thread: Optional[threading.Thread] = None
_cleanup_job: Optional[schedule.Job] = None


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    retention_days: int = 7
) -> None:
    """
    Set up structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        retention_days: Number of days to retain rotated log files
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Rotate at midnight, keep one file per day
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_file,
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8'
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
        root_logger.addHandler(file_handler)

        _start_log_cleanup_scheduler(log_path.parent, retention_days)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Standard library logger
    """
    return logging.getLogger(name)


def _start_log_cleanup_scheduler(logs_dir: Path, retention_days: int) -> None:
    """Register the daily cleanup job and start the thread that runs it."""
    global _cleanup_thread, _cleanup_job

    logger = get_logger(__name__)

    def cleanup_job():
        try:
            cleanup_old_logs(logs_dir, retention_days)
        except OSError as e:
            logger.warning(f"Log cleanup failed: {e}")

    # One job at a time; a later call replaces the directory and retention
    if _cleanup_job is not None:
        schedule.cancel_job(_cleanup_job)
    _cleanup_job = schedule.every().day.at("02:00").do(cleanup_job)

    if _cleanup_thread is not None and _cleanup_thread.is_alive():
        return

    def run_scheduler():
        while True:
            schedule.run_pending()
            time.sleep(60)

    _cleanup_thread = threading.Thread(target=run_scheduler, name="log_cleanup", daemon=True)
    _cleanup_thread.start()


def cleanup_old_logs(logs_dir: Path, retention_days: int = 7) -> int:
    """
    Remove log files older than the retention period.

    Args:
        logs_dir: Directory holding the log files
        retention_days: Number of days to keep

    Returns:
        Number of files removed
    """
    logs_dir = Path(logs_dir)
    if not logs_dir.exists():
        return 0

    cleaned_count = 0
    cutoff_date = datetime.now() - timedelta(days=retention_days)

    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
        if file_mtime < cutoff_date:
            log_file.unlink()
            cleaned_count += 1

    if cleaned_count > 0:
        get_logger(__name__).info(f"Removed {cleaned_count} expired log files from {logs_dir}")

    return cleaned_count


def log_operation(operation_name: Optional[str] = None):
    """
    Decorator logging start, completion and duration of an operation.

    Args:
        operation_name: Name used in the log lines (defaults to function name)
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            op_name = operation_name or func.__name__

            logger.info(f"Starting {op_name}")
            start_time = time.time()

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.time() - start_time
                logger.error(f"{op_name} failed after {duration:.2f}s: {e}")
                raise

            duration = time.time() - start_time
            logger.info(f"Finished {op_name} in {duration:.2f}s")
            return result

        return wrapper
    return decorator
