"""Query audit log for chbot.

Appends one JSON object per line for every query the bot handles:
what was received, what it was rewritten to, and how execution went.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from time import perf_counter
from typing import Any, Optional

from .config import LoggingSettings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events that can be logged."""

    QUERY_RECEIVED = "query_received"
    QUERY_REWRITTEN = "query_rewritten"
    QUERY_REJECTED = "query_rejected"
    QUERY_EXECUTED = "query_executed"
    QUERY_FAILED = "query_failed"


class Timer:
    """Simple timer for measuring durations."""

    def __init__(self):
        self.start_time: float = 0
        self.end_time: float = 0

    def start(self):
        self.start_time = perf_counter()

    def stop(self):
        self.end_time = perf_counter()

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return self.end_time - self.start_time


def _format_received_message(data: dict) -> str:
    return f"Query received from {data.get('source', 'unknown')}"


def _format_rewritten_message(data: dict) -> str:
    return f"Query rewritten to: {data.get('rewritten', '')}"


def _format_rejected_message(data: dict) -> str:
    return f"Query rejected ({data.get('error_type', 'error')}): {data.get('error_message', '')}"


def _format_executed_message(data: dict) -> str:
    duration = data.get("duration", 0)
    return f"Query executed in {duration:.3f}s ({data.get('result_bytes', 0)} bytes)"


def _format_failed_message(data: dict) -> str:
    lines = ["Query failed"]
    if data.get("error_code") is not None:
        lines.append(f"  Code: {data['error_code']}")
    lines.append(f"  Message: {data.get('error_message', '')}")
    return "\n".join(lines)


# Message formatters by event type
_MESSAGE_FORMATTERS = {
    EventType.QUERY_RECEIVED.value: _format_received_message,
    EventType.QUERY_REWRITTEN.value: _format_rewritten_message,
    EventType.QUERY_REJECTED.value: _format_rejected_message,
    EventType.QUERY_EXECUTED.value: _format_executed_message,
    EventType.QUERY_FAILED.value: _format_failed_message,
}


class QueryLog:
    """JSONL audit log shared by all requests of one bot process.

    Thread-safe with immediate flush after each write.
    """

    def __init__(self, settings: LoggingSettings, log_name: Optional[str] = None):
        """Open the log file.

        Args:
            settings: Logging settings (directory, enabled flag)
            log_name: File stem; defaults to a UTC timestamp
        """
        self._lock = threading.Lock()
        self._file = None
        self._closed = False
        self._path: Optional[Path] = None

        self._enabled = settings.query_log_enabled
        if self._enabled:
            name = log_name or datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%SZ")
            self._init_log_file(Path(settings.logs_directory), name)

    def _init_log_file(self, logs_dir: Path, name: str):
        """Initialize the log file."""
        log_path = logs_dir / f"queries_{name}.jsonl"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            self._file = open(log_path, "a", encoding="utf-8")
            self._path = log_path
        except OSError as e:
            logger.warning("Failed to create query log %s: %s", log_path, e)
            self._enabled = False

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _current_timestamp(self) -> str:
        """Get current ISO timestamp."""
        return datetime.now(UTC).isoformat(timespec="milliseconds")

    def _write_event(self, event_type: EventType, **data: Any):
        """Write one event as {event_type, timestamp, message, data}."""
        if not self._enabled or self._file is None or self._closed:
            return

        formatter = _MESSAGE_FORMATTERS.get(event_type.value)
        record = {
            "event_type": event_type.value,
            "timestamp": self._current_timestamp(),
            "message": formatter(data) if formatter else f"Event: {event_type.value}",
            "data": data,
        }

        with self._lock:
            try:
                self._file.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
                self._file.flush()
            except (TypeError, ValueError, OSError) as e:
                logger.warning("Failed to write %s event: %s", event_type.value, e)

    @contextmanager
    def timed_event(self):
        """Context manager for timing events.

        Yields:
            Timer object with duration property after context exits
        """
        timer = Timer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()

    def log_received(self, query: str, source: str):
        self._write_event(EventType.QUERY_RECEIVED, query=query, source=source)

    def log_rewritten(self, query: str, rewritten: str):
        self._write_event(EventType.QUERY_REWRITTEN, query=query, rewritten=rewritten)

    def log_rejected(self, query: str, error: Exception):
        self._write_event(
            EventType.QUERY_REJECTED,
            query=query,
            error_type=type(error).__name__,
            error_message=str(error),
        )

    def log_executed(self, sql: str, duration: float, result_bytes: int):
        self._write_event(EventType.QUERY_EXECUTED, sql=sql, duration=duration, result_bytes=result_bytes)

    def log_failed(self, sql: str, error_code: Optional[int], error_message: str, duration: float):
        self._write_event(
            EventType.QUERY_FAILED,
            sql=sql,
            error_code=error_code,
            error_message=error_message,
            duration=duration,
        )

    def close(self):
        """Close the log file."""
        if self._closed:
            return
        self._closed = True
        if self._file is not None:
            with self._lock:
                self._file.close()
            self._file = None


class NullQueryLog(QueryLog):
    """Query log that records nothing."""

    def __init__(self):
        self._lock = threading.Lock()
        self._file = None
        self._closed = False
        self._path = None
        self._enabled = False

    def _write_event(self, event_type: EventType, **data: Any):
        """No-op write."""
        pass


def create_query_log(settings: LoggingSettings) -> QueryLog:
    """Factory function to create the query log.

    Returns:
        QueryLog if enabled in settings, NullQueryLog otherwise
    """
    if settings.query_log_enabled:
        return QueryLog(settings)
    return NullQueryLog()
