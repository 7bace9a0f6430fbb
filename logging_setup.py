"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path

from config import LOG_FILE, LOG_LEVEL

logger = logging.getLogger(__name__)


def configure_logging(
    level: int | None = None,
    *,
    log_file: str | os.PathLike[str] | None = None,
) -> None:
    """Install console and rotating-file handlers on the root logger."""

    log_level = LOG_LEVEL if level is None else level
    log_path = Path(log_file if log_file is not None else LOG_FILE)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                    "stream": "ext://sys.stdout",
                },
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "formatter": "standard",
                    "level": logging.DEBUG,
                    "filename": os.fspath(log_path),
                    "maxBytes": 5 * 1024 * 1024,
                    "backupCount": 5,
                    "encoding": "utf-8",
                },
            },
            "root": {
                "level": log_level,
                "handlers": ["console", "file"],
            },
        }
    )
    logger.debug("Logging configured at level %s", logging.getLevelName(log_level))


__all__ = ["configure_logging"]
