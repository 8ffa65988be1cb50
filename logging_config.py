"""
Centralized logging configuration.

Sets up:
- Console handler at the requested level
- Rotating file handler for LOG_FILE (DEBUG level), when a log file is given
- Separate file handler for errors next to LOG_FILE (ERROR level)
"""

import logging
import logging.config
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging once at application startup."""
    level = (log_level or "INFO").upper()
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "default",
        },
    }
    if log_file:
        root, ext = os.path.splitext(log_file)
        handlers["app_log_handler"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "default",
            "filename": log_file,
            "maxBytes": LOG_MAX_BYTES,
            "backupCount": LOG_BACKUP_COUNT,
            "encoding": "utf8",
        }
        handlers["error_log_handler"] = {
            "class": "logging.FileHandler",
            "level": "ERROR",
            "formatter": "default",
            "filename": f"{root}.errors{ext or '.log'}",
            "encoding": "utf8",
        }

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": LOG_FORMAT,
            },
        },
        "handlers": handlers,
        "root": {
            "level": "DEBUG" if log_file else level,
            "handlers": list(handlers),
        },
    }

    logging.config.dictConfig(logging_config)
    logging.getLogger(__name__).info(f"Logging configured at level {level}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
