from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .models import LogEntry, LogLevel

logger = logging.getLogger(__name__)

FeedSubscriber = Callable[[LogEntry], None]

_LOGGING_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.LOAD: logging.INFO,
    LogLevel.EXEC: logging.DEBUG,
    LogLevel.ERROR: logging.ERROR,
}


class LogFeed:
    """Ordered, append-only feed of operator-facing log lines.

    Subscribers are called synchronously on every append. A subscriber that
    raises is reported through ``logging`` and does not interrupt the caller.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock if clock is not None else datetime.now
        self._entries: list[LogEntry] = []
        self._subscribers: list[FeedSubscriber] = []

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def subscribe(self, callback: FeedSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def append(self, level: LogLevel, message: str) -> LogEntry:
        entry = LogEntry(timestamp=self._clock().strftime("%H:%M:%S"), level=level, message=message)
        self._entries.append(entry)
        logger.log(_LOGGING_LEVELS[level], "[%s] %s", level.value, message)
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception:  # noqa: BLE001
                logger.warning("Log feed subscriber %r failed", callback, exc_info=True)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.append(LogLevel.INFO, message)

    def load(self, message: str) -> LogEntry:
        return self.append(LogLevel.LOAD, message)

    def exec(self, message: str) -> LogEntry:
        return self.append(LogLevel.EXEC, message)

    def error(self, message: str) -> LogEntry:
        return self.append(LogLevel.ERROR, message)
