"""Error taxonomy — one small hierarchy shared by every IPC facility.

The kernel reports failure as a bare errno (``EACCES``, ``EEXIST``,
``EAGAIN`` ...).  The same number can mean different things depending
on which call produced it: ``EINVAL`` from ``shmget`` means "bad size",
while ``EINVAL`` from ``semop`` means "that semaphore no longer exists".
So translation is done per call site, through a small table that maps
errno to an exception class and message.

Callers only ever need to catch a handful of categories:

- **PermissionsError** — the kernel refused access.
- **ExistentialError** — the resource vanished, or already exists.
- **BusyError** — would have blocked under non-blocking semantics.
- **InterruptError** — a signal arrived during a blocking wait.
- **NotAttachedError** — a shared memory op on a detached segment.

Anything the table does not name falls through to a plain ``OSError``
carrying the raw errno.
"""

import errno as errno_codes
import os
from collections.abc import Mapping
from typing import TypeAlias

ErrorTable: TypeAlias = Mapping[int, tuple[type[BaseException], str]]


class Error(Exception):
    """Base class for every failure raised by this package."""


class InternalError(Error):
    """Raise when the library's own invariants are violated."""


class PermissionsError(Error):
    """Raise when the kernel denies access to a resource."""


class ExistentialError(Error):
    """Raise when a resource does not exist, or unexpectedly already exists."""


class KeyAllocationError(ExistentialError):
    """Raise when no unused random key could be found."""


class BusyError(Error):
    """Raise when a resource is unavailable and the caller asked not to wait."""


class InterruptError(Error):
    """Raise when a signal interrupts a blocking wait."""


class NotAttachedError(Error):
    """Raise when a shared memory operation needs an attached segment."""


class ReadOnlyError(OSError, Error):
    """Raise when writing to a segment that was attached read-only."""


def translate(exc: OSError, table: ErrorTable, **details: object) -> BaseException:
    """Convert a backend ``OSError`` into the matching library exception.

    Args:
        exc: The failure reported by the backend (``exc.errno`` is set).
        table: Maps errno values to ``(exception class, message)``.
            Messages may contain ``str.format`` fields filled from
            *details*.
        **details: Values for the message template (key, id, ...).

    Returns:
        The exception to raise.  Unmapped errno values become an
        ``OSError`` carrying the raw code.

    """
    code = exc.errno if exc.errno is not None else errno_codes.EIO
    entry = table.get(code)
    if entry is None:
        return OSError(code, os.strerror(code))
    cls, template = entry
    message = template.format(**details) if details else template
    if issubclass(cls, OSError):
        return cls(code, message)
    return cls(message)
