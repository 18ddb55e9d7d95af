"""
Logging configuration for SelfMonitor Dashboard Analytics
"""

import logging
import logging.config
import sys
from pathlib import Path
from typing import Any, Dict

from .config import settings

ROOT_LOGGER = "dashboard_analytics"


def setup_logging() -> logging.Logger:
    """Setup logging configuration."""
    handlers = ["console"]
    logging_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": "%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "simple": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.LOG_LEVEL,
                "formatter": "simple",
                "stream": sys.stdout
            },
        },
        "loggers": {
            "": {
                "level": settings.LOG_LEVEL,
                "handlers": handlers
            },
            "uvicorn.access": {
                "level": "WARNING"
            },
            "kafka": {
                "level": "WARNING"
            },
        }
    }

    if settings.LOG_FILE:
        Path(settings.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "INFO",
            "formatter": "detailed",
            "filename": settings.LOG_FILE,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8"
        }
        handlers.append("file")

    logging.config.dictConfig(logging_config)

    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.info(f"🔧 Logging configured with level: {settings.LOG_LEVEL}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
