"""Logging setup for the package and its CLI."""

import logging
import os
from logging.config import dictConfig
from typing import Optional

LOG_LEVEL_ENV = "AUTOTUNE_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def configure_logging(level: Optional[str] = None) -> str:
    """Install a console handler on the package logger; returns the level used."""
    log_level = (level or os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL)).upper()
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S%z",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "structured",
                    "stream": "ext://sys.stderr",
                    "level": log_level,
                }
            },
            "loggers": {
                "autotune_prep": {"handlers": ["console"], "level": log_level, "propagate": False},
            },
        }
    )
    logging.getLogger(__name__).debug("Logging configured at %s", log_level)
    return log_level


__all__ = ["configure_logging", "LOG_LEVEL_ENV"]
