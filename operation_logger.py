"""
OperationLogger - structured logging of dispatched filesystem operations.

Each completed operation becomes an OperationEvent that is:
1. Written as a JSON line to an optional rotating log file
2. Printed as a short human-readable console line
3. Kept in a bounded in-memory buffer for later queries
"""

import errno
import json
import logging
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional


class EventType(Enum):
    """Types of events that can be logged."""
    OPERATION = "operation"
    OPERATION_FAILED = "operation_failed"
    OPERATION_CRASHED = "operation_crashed"

    FILESYSTEM_MOUNTED = "filesystem_mounted"
    FILESYSTEM_UNMOUNTED = "filesystem_unmounted"


@dataclass
class OperationEvent:
    """One logged operation or system event."""
    timestamp: float
    event_type: str
    level: int

    operation: Optional[str] = None
    path: Optional[str] = None
    handle: Optional[int] = None
    status: Optional[int] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        d['timestamp_iso'] = datetime.fromtimestamp(self.timestamp).isoformat()
        d['level'] = logging.getLevelName(self.level)
        return {k: v for k, v in d.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class OperationLogger:
    """
    Operation log for a FlatPass mount.

    Successful operations are logged at DEBUG, failed ones at INFO (most
    failures, such as ENOENT on lookup, are routine) and operations that
    raised an unexpected exception at ERROR.
    """

    DEFAULT_MAX_BYTES = 10 * 1024 * 1024
    DEFAULT_BACKUP_COUNT = 5
    DEFAULT_BUFFER_SIZE = 1000

    def __init__(
        self,
        log_file: Optional[str] = None,
        console_output: bool = True,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        console_level: int = logging.INFO,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        """
        Initialize the OperationLogger.

        Args:
            log_file: Path to the JSON log file (None disables file logging)
            console_output: Whether to print events to the console
            max_bytes: Maximum size per log file before rotation
            backup_count: Number of rotated log files to keep
            console_level: Minimum level printed on the console
            buffer_size: Number of recent events kept in memory
        """
        self.log_file = log_file
        self.console_output = console_output

        self._event_buffer: List[OperationEvent] = []
        self._buffer_max_size = buffer_size
        self._buffer_lock = threading.Lock()

        self._console = logging.getLogger("FlatPass.Operations")
        self._console_level = console_level

        # One JSON logger per log file, so loggers of other mounts are untouched
        self._json: Optional[logging.Logger] = None
        self._file_handler: Optional[RotatingFileHandler] = None

        if log_file:
            log_path = Path(log_file).resolve()
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handler = RotatingFileHandler(
                log_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            self._file_handler.setLevel(logging.DEBUG)
            self._file_handler.setFormatter(logging.Formatter('%(message)s'))

            self._json = logging.getLogger(f"FlatPass.Operations.json[{log_path}]")
            self._json.propagate = False
            self._json.setLevel(logging.DEBUG)
            self._json.addHandler(self._file_handler)

    def close(self) -> None:
        """Detach and close this logger's file handler."""
        if self._file_handler is None:
            return
        self._json.removeHandler(self._file_handler)
        self._file_handler.close()
        self._file_handler = None

    def _add_to_buffer(self, event: OperationEvent) -> None:
        with self._buffer_lock:
            self._event_buffer.append(event)
            if len(self._event_buffer) > self._buffer_max_size:
                self._event_buffer = self._event_buffer[-self._buffer_max_size:]

    def _format_console_message(self, event: OperationEvent) -> str:
        parts = [f"[{event.event_type}]"]

        if event.operation:
            parts.append(f"op={event.operation}")
        if event.path:
            parts.append(f"path={event.path}")
        if event.handle is not None:
            parts.append(f"fh={event.handle}")
        if event.status is not None:
            parts.append(f"status={event.status}")
        if event.error:
            parts.append(f"error={event.error}")
        if event.duration_ms is not None:
            parts.append(f"took={event.duration_ms:.3f}ms")
        if event.details and "message" in event.details:
            parts.append(event.details["message"])

        return " ".join(parts)

    def log(self, event: OperationEvent) -> None:
        self._add_to_buffer(event)

        if self._file_handler is not None:
            self._json.log(event.level, event.to_json())

        if self.console_output and event.level >= self._console_level:
            self._console.log(event.level, self._format_console_message(event))

    def log_operation(
        self,
        operation: str,
        path: Optional[str],
        status: int,
        duration: float,
        handle: Optional[int] = None,
        crashed: bool = False,
    ) -> None:
        """
        Log a completed operation.

        Args:
            operation: Operation name (getattr, read, ...)
            path: Path the operation addressed
            status: Reply status (negative errno on failure)
            duration: Wall time spent in the backend, in seconds
            handle: Handle the operation used, if any
            crashed: True when the backend raised a non-OSError exception
        """
        if crashed:
            event_type, level = EventType.OPERATION_CRASHED, logging.ERROR
        elif status < 0:
            event_type, level = EventType.OPERATION_FAILED, logging.INFO
        else:
            event_type, level = EventType.OPERATION, logging.DEBUG

        event = OperationEvent(
            timestamp=time.time(),
            event_type=event_type.value,
            level=level,
            operation=operation,
            path=path,
            handle=handle,
            status=status,
            error=errno.errorcode.get(-status) if status < 0 else None,
            duration_ms=duration * 1000.0,
        )
        self.log(event)

    def log_system_event(
        self,
        event_type: EventType,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        event = OperationEvent(
            timestamp=time.time(),
            event_type=event_type.value,
            level=logging.INFO,
            details={"message": message, **(details or {})},
        )
        self.log(event)

    def get_recent_events(
        self,
        count: int = 100,
        event_type: Optional[EventType] = None,
        operation: Optional[str] = None,
        since_timestamp: Optional[float] = None,
    ) -> List[OperationEvent]:
        """
        Query recent events from the in-memory buffer.

        Args:
            count: Maximum number of events to return
            event_type: Filter by event type
            operation: Filter by operation name
            since_timestamp: Only return events after this timestamp

        Returns:
            List of matching OperationEvent objects, oldest first
        """
        with self._buffer_lock:
            events = list(self._event_buffer)

        if event_type:
            events = [e for e in events if e.event_type == event_type.value]
        if operation:
            events = [e for e in events if e.operation == operation]
        if since_timestamp:
            events = [e for e in events if e.timestamp >= since_timestamp]

        return events[-count:]

    def get_summary(self) -> dict:
        """Counts of buffered operations and failures, per operation name."""
        with self._buffer_lock:
            events = list(self._event_buffer)

        calls: Dict[str, int] = {}
        failures: Dict[str, int] = {}
        errors: Dict[str, int] = {}

        for event in events:
            if not event.operation:
                continue
            calls[event.operation] = calls.get(event.operation, 0) + 1
            if event.status is not None and event.status < 0:
                failures[event.operation] = failures.get(event.operation, 0) + 1
                if event.error:
                    errors[event.error] = errors.get(event.error, 0) + 1

        return {
            "total_events": len(events),
            "calls_by_operation": calls,
            "failures_by_operation": failures,
            "failures_by_error": errors,
        }
