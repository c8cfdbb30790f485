"""IPC audit log — a bounded record of what happened to which resource.

Every backend keeps one ``Logger``.  The facility classes write to it
when they create, open, attach, detach or remove a resource, so after a
test run (or inside a long-lived service) you can ask "which segments
did this process create, and under which keys?" without re-querying the
kernel.  It plays the role ``dmesg`` plays for the kernel ring buffer.

- **LogLevel** — severity levels ordered for filtering (DEBUG < ERROR).
- **LogEntry** — a single structured record (level, message, source, pid).
- **Logger** — a bounded, append-only log with filtering and clearing.

Design choices:
    - **IntEnum for levels** so they compare naturally with ``<``.
    - **Frozen dataclass for entries** — log records should be immutable.
    - **Bounded deque** — like a ring buffer, the oldest entries fall
      off once ``capacity`` is reached.
"""

import os
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum

DEFAULT_LOG_CAPACITY = 1000


class LogLevel(IntEnum):
    """Severity levels for log entries."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


@dataclass(frozen=True)
class LogEntry:
    """A single structured log record.

    Attributes:
        level: The severity of this event.
        message: A human-readable description of what happened.
        source: The facility that generated the event ("shm", "sem", "mq").
        pid: The process that recorded the event.

    """

    level: LogLevel
    message: str
    source: str
    pid: int = field(default_factory=os.getpid)

    def __str__(self) -> str:
        """Format as ``[LEVEL] source: message``."""
        return f"[{self.level.name}] {self.source}: {self.message}"


class Logger:
    """Bounded append-only log buffer with filtering."""

    def __init__(self, *, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        """Create an empty logger.

        Args:
            capacity: Maximum number of entries retained.  Older entries
                are discarded first.

        Raises:
            ValueError: If capacity is not positive.

        """
        if capacity <= 0:
            msg = f"Log capacity must be positive, got {capacity}"
            raise ValueError(msg)
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        """Return the maximum number of retained entries."""
        assert self._entries.maxlen is not None  # noqa: S101
        return self._entries.maxlen

    @property
    def entries(self) -> list[LogEntry]:
        """Return all retained log entries in chronological order."""
        return list(self._entries)

    def log(self, level: LogLevel, message: str, *, source: str) -> None:
        """Append a new entry to the log.

        Args:
            level: Severity of the event.
            message: Human-readable event description.
            source: Facility that generated the event.

        """
        self._entries.append(LogEntry(level=level, message=message, source=source))

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
    ) -> list[LogEntry]:
        """Return entries matching the given criteria.

        Args:
            min_level: If set, only return entries at or above this level.
            source: If set, only return entries from this source.

        Returns:
            A filtered list of log entries.

        """
        return [
            e
            for e in self._entries
            if (min_level is None or e.level >= min_level) and (source is None or e.source == source)
        ]

    def clear(self) -> None:
        """Remove all log entries."""
        self._entries.clear()
