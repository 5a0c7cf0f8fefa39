import logging
import logging.config
import os
from typing import Any, Dict

from docflow.config import settings


def build_logging_config(log_level: str, log_dir: str | None = None) -> Dict[str, Any]:
    """Build the dictConfig payload; file handlers only when a log dir is set."""
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "default",
            "stream": "ext://sys.stdout",
        },
    }
    root_handlers = ["console"]

    if log_dir:
        handlers["app_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "detailed",
            "filename": os.path.join(log_dir, "app.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 10,
        }
        handlers["error_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "ERROR",
            "formatter": "detailed",
            "filename": os.path.join(log_dir, "error.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 10,
        }
        root_handlers += ["app_file", "error_file"]

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(module)s - %(funcName)s:%(lineno)d - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            "": {  # Root logger
                "level": log_level,
                "handlers": root_handlers,
                "propagate": False,
            },
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "WARNING",  # Reduce DB query noise
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }


def setup_logging() -> None:
    """Setup application logging configuration"""
    if settings.LOG_DIR:
        os.makedirs(settings.LOG_DIR, exist_ok=True)

    logging.config.dictConfig(build_logging_config(settings.LOG_LEVEL, settings.LOG_DIR))

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured (level={settings.LOG_LEVEL}, dir={settings.LOG_DIR or '-'})")
