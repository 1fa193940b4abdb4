"""
Logging setup for the API process and the Celery worker.

JSON output (python-json-logger) in production, plain lines in development.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from app.core.config import settings

# Libraries that log request-level chatter at INFO
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "openai", "boto3", "botocore", "s3transfer")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds timestamp, level and source location to every record."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName

        # Pipeline records may carry the job they belong to
        job_id = getattr(record, "job_id", None)
        if job_id is not None:
            log_record['job_id'] = job_id

        if record.levelno >= logging.WARNING:
            log_record['line'] = record.lineno
            log_record['pathname'] = record.pathname


def setup_logging(log_level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """
    Configure root logging for the current process.

    Args:
        log_level: Logging level name; defaults to settings.LOG_LEVEL
        json_logs: JSON formatting on/off; defaults to settings.JSON_LOGS
    """
    log_level = log_level or settings.LOG_LEVEL
    if json_logs is None:
        json_logs = settings.JSON_LOGS

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if json_logs:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(logger)s %(module)s %(funcName)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)

    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
