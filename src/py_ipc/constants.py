"""Module-level constants — flag values, limits, and platform capabilities.

System V IPC exposes its knobs as small integer flags that are OR-ed
together and passed to the kernel.  Most of them have the same value on
every Unix we care about, but a few differ between Linux and Darwin, and
some (huge pages, remapping) only exist on Linux.  This module probes the
platform **once, at import time** and publishes the results as plain
module constants, so nothing above it ever needs to ask "which OS is
this?" again.

Groups:
    - **Creation flags** — ``IPC_CREAT``, ``IPC_EXCL`` and their
      combination ``IPC_CREX``.  Permission bits live in the low nine
      bits and are masked away from the flags.
    - **Operation flags** — ``IPC_NOWAIT`` (non-blocking) and
      ``SEM_UNDO`` (undo on exit).
    - **Attach flags** — ``SHM_RND``, ``SHM_RDONLY`` and the Linux-only
      ``SHM_HUGETLB``, ``SHM_NORESERVE`` and ``SHM_REMAP``.
    - **Limits** — key range, semaphore value ceiling, message sizes.
    - **Capabilities** — ``SEMAPHORE_TIMEOUT_SUPPORTED``.
"""

import ctypes
import os
import resource
import sys

VERSION = "1.2.0"

IS_LINUX = sys.platform.startswith("linux")
IS_DARWIN = sys.platform == "darwin"

# -- Creation flags ----------------------------------------------------------

IPC_PRIVATE = 0
"""Legacy sentinel key: always create a brand new, unnamed resource."""

IPC_CREAT = 0o1000
IPC_EXCL = 0o2000
IPC_CREX = IPC_CREAT | IPC_EXCL
IPC_NOWAIT = 0o4000

PERMISSION_BITS = 0o777
DEFAULT_MODE = 0o600

# -- Control commands --------------------------------------------------------

IPC_RMID = 0
IPC_SET = 1
IPC_STAT = 2

if IS_DARWIN:
    GETNCNT = 3
    GETPID = 4
    GETVAL = 5
    GETZCNT = 7
    SETVAL = 8
else:
    GETPID = 11
    GETVAL = 12
    GETNCNT = 14
    GETZCNT = 15
    SETVAL = 16

# -- Operation and attach flags ----------------------------------------------

SEM_UNDO = 0x1000

SHM_RDONLY = 0o10000
SHM_RND = 0o20000

if IS_LINUX:
    SHM_HUGETLB = 0o4000
    SHM_NORESERVE = 0o10000
    SHM_REMAP = 0o40000

# -- Limits ------------------------------------------------------------------

# key_t is a 32-bit int on every supported platform.
KEY_MIN = -(2**31)
KEY_MAX = 2**31 - 1

# Generated keys stay in a range that fits any plausible key_t.
RANDOM_KEY_MIN = 1
RANDOM_KEY_MAX = 32767

PAGE_SIZE = resource.getpagesize()

SEMAPHORE_VALUE_MAX = 32767

# time_t seconds and message types are C longs.
LONG_MAX = 2 ** (8 * ctypes.sizeof(ctypes.c_long) - 1) - 1
TIMEOUT_SECONDS_MAX = LONG_MAX
MESSAGE_TYPE_MAX = LONG_MAX

# The largest message a receive buffer can hold and still become bytes.
QUEUE_MESSAGE_SIZE_MAX = sys.maxsize
QUEUE_MESSAGE_SIZE_MAX_DEFAULT = 2048

# -- Capabilities ------------------------------------------------------------


def _probe_semtimedop() -> bool:
    """Return True if the C library exports ``semtimedop``."""
    if os.name != "posix":
        return False
    try:
        libc = ctypes.CDLL(None)
    except OSError:
        return False
    return hasattr(libc, "semtimedop")


SEMAPHORE_TIMEOUT_SUPPORTED = _probe_semtimedop()
