import logging
import os
from typing import Optional

from pythonjsonlogger.json import JsonFormatter


class _DefaultFields(logging.Filter):
    """Ensures optional structured fields exist (prevents KeyError in the formatter)."""

    _fields = ("session_id", "operation", "status")

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in self._fields:
            if not hasattr(record, attr):
                setattr(record, attr, "")
        return True


def _make_formatter() -> logging.Formatter:
    """JSON when LOG_FORMAT=json, otherwise key=value."""
    timefmt = os.getenv("LOG_TIMEFMT", "%Y-%m-%dT%H:%M:%S%z")
    if os.getenv("LOG_FORMAT", "structured").lower() == "json":
        return JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(session_id)s %(operation)s %(status)s",
            datefmt=timefmt,
        )
    return logging.Formatter(
        fmt=("time=%(asctime)s level=%(levelname)s logger=%(name)s "
             "msg=%(message)s session_id=%(session_id)s operation=%(operation)s status=%(status)s"),
        datefmt=timefmt,
    )


_LOGGERS = {}


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if name in _LOGGERS:
        return _LOGGERS[name]
    logger = logging.getLogger(name or "onboarding_tracker")
    if not logger.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
        handler = logging.StreamHandler()
        handler.addFilter(_DefaultFields())
        handler.setFormatter(_make_formatter())
        logger.addHandler(handler)
        logger.propagate = False
    _LOGGERS[name] = logger
    return logger


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Shorten a secret (recovery token, access token) for log output."""
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "***"
    return f"{value[:visible]}...{value[-visible:]}"
