"""
Injectable logger capability for the Graph API layer.

This module provides the small logging interface the core consumes:
- A ServiceLogger protocol (info/warn/error/debug with optional metadata)
- A default implementation backed by the standard logging module
- A null implementation for callers that want silence
- A recording implementation that keeps structured entries in memory

Nothing in the core reaches for a global logger instance; every component
accepts a ServiceLogger and falls back to StdlibServiceLogger.
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class LogLevel(Enum):
    """Severity levels understood by the logger capability."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ServiceLogger(Protocol):
    """Logger interface consumed by the client, limiters and services."""

    def info(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        ...

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        ...

    def error(
        self,
        message: str,
        err: Optional[BaseException] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    def debug(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        ...


@dataclass
class LogEntry:
    """
    A single structured log entry.

    Attributes:
        timestamp: ISO 8601 timestamp of the entry
        level: Severity level value (debug, info, warn, error)
        message: Human readable message
        meta: Structured metadata attached by the caller
        error: String form of the attached exception, if any
    """
    timestamp: str
    level: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to dictionary, dropping an empty error."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        """Convert entry to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_keyvalue(self) -> str:
        """Convert entry to key=value format."""
        pairs = []
        for key, value in self.to_dict().items():
            if isinstance(value, dict):
                for subkey, subval in value.items():
                    pairs.append(f"{key}.{subkey}={subval}")
            else:
                pairs.append(f"{key}={value}")
        return " ".join(pairs)


def create_entry(
    level: LogLevel,
    message: str,
    meta: Optional[Dict[str, Any]] = None,
    err: Optional[BaseException] = None,
) -> LogEntry:
    """Helper to create a log entry stamped with the current UTC time."""
    return LogEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        level=level.value,
        message=message,
        meta=dict(meta) if meta else {},
        error=str(err) if err is not None else None,
    )


class StdlibServiceLogger:
    """
    ServiceLogger that forwards to a standard library logger.

    Metadata is appended to the message either as JSON or as key=value
    pairs, so log aggregation can still pick the fields apart.
    """

    def __init__(
        self,
        name: str = "event_aggregator",
        format_json: bool = True,
        stdlib_logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the logger.

        Args:
            name: Name of the stdlib logger to use when none is given
            format_json: If True, render metadata as JSON; otherwise key=value
            stdlib_logger: Explicit logger instance to forward to
        """
        self._logger = stdlib_logger or logging.getLogger(name)
        self.format_json = format_json

    def _emit(
        self,
        level: LogLevel,
        message: str,
        meta: Optional[Dict[str, Any]],
        err: Optional[BaseException] = None,
    ) -> None:
        stdlib_level = _STDLIB_LEVELS[level]
        if not self._logger.isEnabledFor(stdlib_level):
            return

        text = message
        if meta:
            if self.format_json:
                rendered = json.dumps(meta, default=str)
            else:
                rendered = " ".join(f"{key}={value}" for key, value in meta.items())
            text = f"{message} {rendered}"

        self._logger.log(
            stdlib_level,
            text,
            exc_info=(type(err), err, err.__traceback__) if err is not None else None,
        )

    def info(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.INFO, message, meta)

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.WARN, message, meta)

    def error(
        self,
        message: str,
        err: Optional[BaseException] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._emit(LogLevel.ERROR, message, meta, err)

    def debug(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.DEBUG, message, meta)


class NullServiceLogger:
    """ServiceLogger that discards everything."""

    def info(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        pass

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        pass

    def error(
        self,
        message: str,
        err: Optional[BaseException] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def debug(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        pass


class RecordingLogger:
    """
    ServiceLogger that keeps every entry in memory.

    Features:
    - Thread-safe entry history
    - Per-level counters
    - Optional forwarding to another ServiceLogger
    """

    def __init__(self, forward_to: Optional[ServiceLogger] = None):
        self.forward_to = forward_to
        self._entries: List[LogEntry] = []
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _record(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            self._counts[entry.level] = self._counts.get(entry.level, 0) + 1

    def info(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._record(create_entry(LogLevel.INFO, message, meta))
        if self.forward_to is not None:
            self.forward_to.info(message, meta)

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._record(create_entry(LogLevel.WARN, message, meta))
        if self.forward_to is not None:
            self.forward_to.warn(message, meta)

    def error(
        self,
        message: str,
        err: Optional[BaseException] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._record(create_entry(LogLevel.ERROR, message, meta, err))
        if self.forward_to is not None:
            self.forward_to.error(message, err, meta)

    def debug(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._record(create_entry(LogLevel.DEBUG, message, meta))
        if self.forward_to is not None:
            self.forward_to.debug(message, meta)

    def get_entries(self, level: Optional[LogLevel] = None) -> List[LogEntry]:
        """Get recorded entries, optionally filtered by level."""
        with self._lock:
            if level is None:
                return self._entries.copy()
            return [e for e in self._entries if e.level == level.value]

    def messages(self, level: Optional[LogLevel] = None) -> List[str]:
        """Get the messages of recorded entries."""
        return [e.message for e in self.get_entries(level)]

    def count(self, level: LogLevel) -> int:
        """Number of entries recorded at the given level."""
        with self._lock:
            return self._counts.get(level.value, 0)

    def clear(self) -> None:
        """Clear entry history and counters."""
        with self._lock:
            self._entries.clear()
            self._counts.clear()
