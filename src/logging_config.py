"""Logging setup.

Plain text logs by default; set LOG_JSON=true for one JSON object per line.
"""

import logging
import logging.config
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from src.config import settings


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps every record with app metadata."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["app"] = settings.app_name
        log_record["environment"] = settings.environment


def build_logging_config(level: str, json_output: bool) -> Dict[str, Any]:
    formatter = "json" if json_output else "standard"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            },
            "json": {
                "()": ServiceJsonFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "src": {"level": level.upper(), "handlers": ["console"], "propagate": False},
            "main": {"level": level.upper(), "handlers": ["console"], "propagate": False},
            "sqlalchemy.engine": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def setup_logging(level: str = None, json_output: bool = None) -> None:
    """Configure logging for the application (safe to call more than once)."""
    logging.config.dictConfig(build_logging_config(
        level or settings.log_level,
        settings.log_json if json_output is None else json_output,
    ))
