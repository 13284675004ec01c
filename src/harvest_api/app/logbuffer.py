"""Logging setup plus an in-memory buffer of recent log records for the dashboard."""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import UTC, datetime
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
PACKAGE_LOGGER = "harvest_api"


class RecentLogHandler(logging.Handler):
    """Keep the newest `capacity` records so the API can show them."""

    def __init__(self, capacity: int = 1000) -> None:
        super().__init__()
        self._records: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._records_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        with self._records_lock:
            self._records.append(entry)

    def recent(self, limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
        """Newest first, optionally only one level."""
        with self._records_lock:
            entries = list(self._records)
        if level:
            entries = [entry for entry in entries if entry["level"] == level.upper()]
        return list(reversed(entries[-limit:])) if limit > 0 else []

    def stats(self) -> dict[str, Any]:
        with self._records_lock:
            entries = list(self._records)
        by_level = {"DEBUG": 0, "INFO": 0, "WARNING": 0, "ERROR": 0, "CRITICAL": 0}
        for entry in entries:
            by_level[entry["level"]] = by_level.get(entry["level"], 0) + 1
        return {
            "total": len(entries),
            "byLevel": by_level,
            "oldestLog": entries[0]["timestamp"] if entries else None,
            "newestLog": entries[-1]["timestamp"] if entries else None,
        }

    def clear(self) -> None:
        with self._records_lock:
            self._records.clear()


def configure_logging(level: str = "INFO", capacity: int = 1000) -> RecentLogHandler:
    """Attach a console handler and a fresh recent-log buffer to the package logger."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level.upper())
    for handler in list(package_logger.handlers):
        if isinstance(handler, RecentLogHandler):
            package_logger.removeHandler(handler)
    if not any(
        type(handler) is logging.StreamHandler for handler in package_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(console)
    buffer = RecentLogHandler(capacity=capacity)
    package_logger.addHandler(buffer)
    return buffer
