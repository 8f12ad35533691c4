"""Logging bootstrap for the relay service."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _rotating_file(path: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    """
    Route relay logs to the console and two rotated files under ``log_dir``.

    ``relay-runtime.log`` receives everything at ``level``; ``relay-errors.log``
    keeps only warnings and errors (send failures, dead-lettered jobs, session
    teardowns) so delivery problems can be audited without the polling noise.
    Browser automation chatter is held at WARNING and uvicorn access lines stay
    on the console.
    """
    log_dir = Path(log_dir if log_dir is not None else Path.cwd() / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    level = level.upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
                "runtime_file": _rotating_file(log_dir / "relay-runtime.log", level, retention_days),
                "error_file": _rotating_file(log_dir / "relay-errors.log", "WARNING", retention_days),
            },
            "loggers": {
                "playwright": {"level": "WARNING"},
                "uvicorn.access": {"handlers": ["console"], "propagate": False},
            },
            "root": {"level": level, "handlers": ["console", "runtime_file", "error_file"]},
        }
    )
    logging.getLogger(__name__).debug("logging configured level=%s dir=%s", level, log_dir)


__all__ = ["LOG_FORMAT", "configure_logging"]
