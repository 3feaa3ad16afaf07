"""
Centralized logging configuration for the Dupkite reporting API
Structured JSON logs with rotation, plus dedicated access and database loggers
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

# Structured fields copied from `extra=` onto the JSON payload
STRUCTURED_FIELDS = (
    "request_id",
    "report_id",
    "client_id",
    "endpoint",
    "method",
    "status_code",
    "duration_ms",
    "photo_count",
    "storage_path",
)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents"""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "context"):
            log_data["context"] = record.context

        for key in STRUCTURED_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter,
                      max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    enable_json: bool = True,
    enable_console: bool = True,
    enable_file: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the application

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory to store log files
        enable_json: Use JSON formatting for structured logs
        enable_console: Enable console output
        enable_file: Enable file output with rotation
        max_bytes: Maximum size of each log file before rotation
        backup_count: Number of backup log files to keep

    Returns:
        The configured root logger
    """

    # Serverless filesystems are ephemeral or read-only
    if os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME"):
        enable_file = False

    log_path = None
    if enable_file:
        try:
            log_path = Path(log_dir)
            log_path.mkdir(parents=True, exist_ok=True)
        except (OSError, PermissionError) as e:
            print(f"Warning: Could not create log directory '{log_dir}': {e}. Disabling file logging.")
            enable_file = False

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.handlers.clear()

    if enable_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if enable_file and log_path:
        logger.addHandler(_rotating_handler(log_path / "app.log", logging.DEBUG, formatter, max_bytes, backup_count))
        logger.addHandler(_rotating_handler(log_path / "error.log", logging.ERROR, formatter, max_bytes, backup_count))

        access_logger = get_access_logger()
        access_logger.addHandler(_rotating_handler(log_path / "access.log", logging.INFO, formatter, max_bytes, backup_count))
        access_logger.setLevel(logging.INFO)
        access_logger.propagate = False

        db_logger = get_db_logger()
        db_logger.addHandler(_rotating_handler(log_path / "database.log", logging.DEBUG, formatter, max_bytes, backup_count))
        db_logger.setLevel(logging.DEBUG)
        db_logger.propagate = False

    for noisy in ("httpx", "httpcore", "asyncpg", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


def get_access_logger() -> logging.Logger:
    """Get the access logger for HTTP requests"""
    return logging.getLogger("access")


def get_db_logger() -> logging.Logger:
    """Get the database logger for row store operations"""
    return logging.getLogger("database")
