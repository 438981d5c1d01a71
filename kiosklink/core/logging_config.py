"""Logging for the agent: readable on a dev console, one JSON object per line on a device."""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict
from kiosklink.core.config import settings

# Chatty at INFO; their warnings still come through
QUIET_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
    "websockets",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for journald and log shippers on the device."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        screen_id = getattr(record, "screen_id", None)
        if screen_id:
            entry["screen_id"] = screen_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class ConsoleFormatter(logging.Formatter):
    """Single-line console output with the thread and, when known, the screen id."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)8s] %(threadName)-16s %(name)s:%(screen_tag)s %(message)s",
            datefmt="%H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        screen_id = getattr(record, "screen_id", None)
        record.screen_tag = f" [{screen_id[:8]}]" if screen_id else ""
        return super().format(record)


def _resolve_level() -> int:
    if settings.log_level:
        return logging.getLevelName(settings.log_level.upper())
    return logging.DEBUG if settings.environment == "development" else logging.INFO


def setup_logging() -> None:
    """
    Configure the root logger once at startup.

    Development gets the console formatter at DEBUG; any other environment
    gets JSON at INFO. KIOSK_LOG_LEVEL overrides the level either way.
    """
    level = _resolve_level()
    formatter = ConsoleFormatter() if settings.environment == "development" else JSONFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Logging configured: environment={settings.environment}, level={logging.getLevelName(level)}"
    )
