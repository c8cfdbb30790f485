"""Key and parameter conversion — everything validated before the kernel sees it.

A System V resource is named by a **key**: an integer in an OS-wide
namespace shared by every process on the machine.  Callers either pick a
key themselves (so an unrelated process can find the same resource) or
pass ``None`` and let the library draw a random one.

Drawing random keys is only safe together with ``IPC_CREX``: the kernel
then refuses to hand back somebody else's resource, and on a collision
(``EEXIST``) we simply draw again.  The retry loop is capped, because an
unbounded loop would spin forever on a namespace that is somehow full.

Timeouts get the same treatment: ``None`` means "defer to the blocking
flag", anything else must be a non-negative number and is split into
whole seconds plus nanoseconds, measured *relative* to the call.
"""

import errno
import math
import operator
import os
import random
import time
import warnings
from collections.abc import Callable
from dataclasses import dataclass

from py_ipc.constants import (
    IPC_CREAT,
    IPC_EXCL,
    IPC_PRIVATE,
    KEY_MAX,
    KEY_MIN,
    PERMISSION_BITS,
    RANDOM_KEY_MAX,
    RANDOM_KEY_MIN,
    TIMEOUT_SECONDS_MAX,
)
from py_ipc.errors import KeyAllocationError
from py_ipc.logging import Logger, LogLevel

NANOSECONDS_PER_SECOND = 1_000_000_000

# Seeded once per process from the clock; never reset.
_random = random.Random(time.time_ns())


@dataclass(frozen=True)
class Timeout:
    """A relative wait duration split the way ``struct timespec`` wants it."""

    seconds: int
    nanoseconds: int

    @property
    def is_zero(self) -> bool:
        """Return True for a "test instantly, never wait" timeout."""
        return self.seconds == 0 and self.nanoseconds == 0

    def total_seconds(self) -> float:
        """Return the duration as a float number of seconds."""
        return self.seconds + self.nanoseconds / NANOSECONDS_PER_SECOND


def convert_key(value: object) -> int | None:
    """Validate a caller-supplied key.

    Args:
        value: ``None`` (generate a key for me) or an integer-like object.

    Returns:
        The key as an int, or None.

    Raises:
        TypeError: If the value is neither None nor integer-like.
        ValueError: If the key lies outside ``[KEY_MIN, KEY_MAX]``.

    """
    if value is None:
        return None
    if isinstance(value, bool):
        msg = "Key must be an integer or None"
        raise TypeError(msg)
    try:
        key = operator.index(value)  # type: ignore[arg-type]
    except TypeError:
        msg = "Key must be an integer or None"
        raise TypeError(msg) from None
    if not KEY_MIN <= key <= KEY_MAX:
        msg = f"Key must be between {KEY_MIN} (KEY_MIN) and {KEY_MAX} (KEY_MAX)"
        raise ValueError(msg)
    return key


def generate_random_key() -> int:
    """Return a pseudo-random key in ``[1, SHRT_MAX]``, never ``IPC_PRIVATE``.

    Not cryptographically secure and not guaranteed unique; pair it with
    exclusive creation and retry on ``EEXIST``.
    """
    key = IPC_PRIVATE
    while key == IPC_PRIVATE:
        key = _random.randint(RANDOM_KEY_MIN, RANDOM_KEY_MAX)
    return key


def convert_timeout(value: object) -> Timeout | None:
    """Validate a timeout and split it into seconds and nanoseconds.

    Args:
        value: ``None`` or a non-negative int/float number of seconds.

    Returns:
        None ("use the blocking flag") or a relative ``Timeout``.

    Raises:
        TypeError: If the value is negative, not a finite number, or
            more seconds than a ``time_t`` holds.

    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = "The timeout must be None or a non-negative number"
        raise TypeError(msg)
    if (isinstance(value, float) and not math.isfinite(value)) or value < 0:
        msg = "The timeout must be None or a non-negative number"
        raise TypeError(msg)
    whole = math.floor(value)
    if whole > TIMEOUT_SECONDS_MAX:
        msg = f"The timeout must not exceed {TIMEOUT_SECONDS_MAX} seconds"
        raise TypeError(msg)
    nanoseconds = int((value - whole) * NANOSECONDS_PER_SECOND)
    return Timeout(seconds=int(whole), nanoseconds=min(nanoseconds, NANOSECONDS_PER_SECOND - 1))


def check_creation_flags(key: int | None, flags: int) -> int:
    """Validate a creation flag combination and strip everything else.

    Args:
        key: The converted key (None means "generate one").
        flags: Caller flags; permission bits and unknown bits are ignored.

    Returns:
        ``flags`` masked down to ``IPC_CREAT | IPC_EXCL``.

    Raises:
        ValueError: If ``IPC_EXCL`` is set without ``IPC_CREAT``, or the
            key is None without ``IPC_EXCL``.

    """
    flags &= ~PERMISSION_BITS
    if flags & IPC_EXCL and not flags & IPC_CREAT:
        msg = "IPC_EXCL must be combined with IPC_CREAT"
        raise ValueError(msg)
    if key is None and not flags & IPC_EXCL:
        msg = "Key can only be None if IPC_EXCL is set"
        raise ValueError(msg)
    return flags & (IPC_CREAT | IPC_EXCL)


def create_with_key(
    get: Callable[[int], int],
    key: int | None,
    *,
    attempts: int,
    logger: Logger,
    source: str,
) -> tuple[int, int]:
    """Run a kernel "get" call, drawing random keys when none was given.

    With an explicit key the call is made exactly once and any failure
    propagates.  With ``key=None`` a fresh random key is drawn for every
    attempt until the call stops failing with ``EEXIST``.

    Args:
        get: The backend call; takes a key and returns the new handle.
        key: The caller's key, or None to generate one.
        attempts: Upper bound on random keys tried.
        logger: Where collisions are recorded.
        source: Facility name for log entries.

    Returns:
        ``(key, handle)`` for the resource that was found or created.

    Raises:
        OSError: Whatever ``get`` raised, other than a retried collision.
        KeyAllocationError: If every attempt collided.

    """
    if key is not None:
        return key, get(key)

    for _ in range(attempts):
        candidate = generate_random_key()
        try:
            return candidate, get(candidate)
        except OSError as exc:
            if exc.errno != errno.EEXIST:
                raise
            logger.log(LogLevel.DEBUG, f"Key {candidate} already in use, retrying", source=source)

    msg = f"Could not find an unused key after {attempts} attempts"
    raise KeyAllocationError(msg)


def ftok(path: str | os.PathLike[str], id: int, silence_warning: bool = False) -> int:  # noqa: A002
    """Derive a key from a file's identity, the way ``ftok(3)`` does.

    The result mixes the low 8 bits of *id*, the low 8 bits of the device
    number and the low 16 bits of the inode number, so two different
    files can easily produce the same key.  Prefer ``key=None`` with
    ``IPC_CREX``; a ``UserWarning`` says so unless *silence_warning*.

    Raises:
        OSError: If *path* cannot be stat-ed.

    """
    if not silence_warning:
        warnings.warn(
            "Use of ftok() is not recommended; see the documentation of the key argument",
            UserWarning,
            stacklevel=2,
        )
    st = os.stat(path)
    key = ((id & 0xFF) << 24) | ((st.st_dev & 0xFF) << 16) | (st.st_ino & 0xFFFF)
    # key_t is signed
    if key > KEY_MAX:
        key -= 2**32
    return key
