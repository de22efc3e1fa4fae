import logging
from logging.config import dictConfig
from typing import Optional

from .config import settings

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stdout",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["console"], "level": "INFO"},
        "fastapi": {"handlers": ["console"], "level": "INFO"},
        "referral_ledger": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "analytics": {"handlers": ["console"], "level": "INFO", "propagate": False},
    },
    "root": {
        "level": "INFO",
        "handlers": ["console"],
    },
}


def setup_logging(level: Optional[str] = None):
    """Apply the logging configuration, overriding the package log level if given."""
    dictConfig(LOGGING_CONFIG)
    level = (level or settings.LOG_LEVEL).upper()
    for name in ("referral_ledger", "analytics"):
        logging.getLogger(name).setLevel(level)
