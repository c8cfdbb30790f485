"""Semaphores — a counter in the kernel that processes wait on.

The kernel facility manages *sets* of semaphores; this wrapper always
asks for a set of one and operates on member 0, which covers mutual
exclusion and counting without exposing array bookkeeping.

Three operations, all funnelled through one kernel ``semop`` call:

- **ACQUIRE** (P) — subtract ``|delta|``; wait while the value is too low.
- **RELEASE** (V) — add ``|delta|``; never waits.
- **WAIT_FOR_ZERO** (Z) — wait until the value is exactly zero.

Waiting is governed by two things.  The persistent ``block`` attribute
decides whether a would-block operation waits or fails with
``BusyError``.  A per-call ``timeout`` (relative, in seconds) bounds the
wait; ``timeout=0`` tests without waiting.  Where the platform lacks
timed waits a nonzero timeout is ignored and recorded in the audit log;
``SEMAPHORE_TIMEOUT_SUPPORTED`` says which case applies.
"""

import errno
from collections.abc import Callable
from enum import Enum, auto
from types import TracebackType
from typing import Self

from py_ipc.backend import IpcBackend, PermField, SemStat, get_default_backend
from py_ipc.constants import (
    DEFAULT_MODE,
    IPC_CREAT,
    IPC_CREX,
    IPC_EXCL,
    IPC_NOWAIT,
    IPC_PRIVATE,
    PERMISSION_BITS,
    SEM_UNDO,
    SEMAPHORE_VALUE_MAX,
)
from py_ipc.errors import (
    BusyError,
    ErrorTable,
    ExistentialError,
    InterruptError,
    PermissionsError,
    translate,
)
from py_ipc.keys import Timeout, check_creation_flags, convert_key, convert_timeout, create_with_key
from py_ipc.logging import LogLevel

SOURCE = "sem"

_GET_ERRORS: ErrorTable = {
    errno.ENOENT: (ExistentialError, "No semaphore exists with the key {key}"),
    errno.EEXIST: (ExistentialError, "A semaphore with the key {key} already exists"),
    errno.EACCES: (PermissionsError, "Permission {mode:o} cannot be granted on the existing semaphore"),
    errno.EINVAL: (ExistentialError, "No semaphore exists with the key {key}"),
    errno.ENOMEM: (MemoryError, "Not enough memory"),
    errno.ENOSPC: (OSError, "The system limit for semaphores has been reached"),
}

_OP_ERRORS: ErrorTable = {
    errno.ENOENT: (ExistentialError, "The semaphore does not exist"),
    errno.EINVAL: (ExistentialError, "The semaphore does not exist"),
    errno.EACCES: (PermissionsError, "Permission denied"),
    errno.ERANGE: (ValueError, "The semaphore's value must remain between 0 and SEMAPHORE_VALUE_MAX"),
    errno.EAGAIN: (BusyError, "The semaphore is busy"),
    errno.EIDRM: (ExistentialError, "The semaphore was removed"),
    errno.EINTR: (InterruptError, "Signaled while waiting"),
    errno.ENOMEM: (MemoryError, "Not enough memory"),
}

_CTL_ERRORS: ErrorTable = {
    errno.EINVAL: (ExistentialError, "No semaphore with id {id} exists"),
    errno.EIDRM: (ExistentialError, "No semaphore with id {id} exists"),
    errno.EACCES: (PermissionsError, "Permission denied"),
    errno.EPERM: (PermissionsError, "Permission denied"),
    errno.ERANGE: (ValueError, "The value must be between 0 and SEMAPHORE_VALUE_MAX"),
}

_REMOVE_ERRORS: ErrorTable = {
    errno.EINVAL: (ExistentialError, "No semaphore with id {id} exists"),
    errno.EIDRM: (ExistentialError, "No semaphore with id {id} exists"),
    errno.EPERM: (PermissionsError, "You do not have permission to remove the semaphore"),
}


class SemOp(Enum):
    """The three semaphore operations."""

    ACQUIRE = auto()
    RELEASE = auto()
    WAIT_FOR_ZERO = auto()


def _check_value(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = "The value must be an integer"
        raise TypeError(msg)
    if not 0 <= value <= SEMAPHORE_VALUE_MAX:
        msg = f"The value must be between 0 and {SEMAPHORE_VALUE_MAX} (SEMAPHORE_VALUE_MAX)"
        raise ValueError(msg)
    return value


class Semaphore:
    """A single System V semaphore.

    Usable as a context manager: entering acquires, leaving releases,
    and the release happens even if the body raised::

        with Semaphore(key, IPC_CREAT, initial_value=1) as sem:
            ...

    """

    def __init__(
        self,
        key: int | None,
        flags: int = 0,
        mode: int = DEFAULT_MODE,
        initial_value: int = 0,
        *,
        backend: IpcBackend | None = None,
    ) -> None:
        """Find or create a semaphore.

        The initial value is written only when this call created the
        semaphore and *mode* grants the owner write access.  With plain
        ``IPC_CREAT`` an exclusive create is tried first and a collision
        falls back to opening.  Another process can still open the new
        semaphore and see zero before the value is written.

        Args:
            key: The key, or None to generate one (requires ``IPC_EXCL``).
            flags: ``0``, ``IPC_CREAT`` or ``IPC_CREX``.
            mode: Permission bits for a new semaphore.
            initial_value: Starting value for a new semaphore.
            backend: Kernel interface; defaults to the process-wide one.

        Raises:
            ValueError: On a bad key/flag combination or initial value.
            PermissionsError: If the existing semaphore denies access.
            ExistentialError: If the key is taken (``IPC_CREX``) or
                missing (no ``IPC_CREAT``).
            KeyAllocationError: If no free random key was found.

        """
        self._backend = backend if backend is not None else get_default_backend()
        self._op_flags = 0

        converted = convert_key(key)
        create_flags = check_creation_flags(converted, flags)
        mode &= PERMISSION_BITS
        _check_value(initial_value)

        try:
            if create_flags == IPC_CREAT and converted is not None and converted != IPC_PRIVATE:
                self._key = converted
                self._id, created = self._create_or_open(converted, mode)
            else:
                self._key, self._id = create_with_key(
                    lambda k: self._backend.semget(k, 1, create_flags | mode),
                    converted,
                    attempts=self._backend.key_attempts,
                    logger=self._backend.logger,
                    source=SOURCE,
                )
                created = bool(create_flags & IPC_EXCL) or self._key == IPC_PRIVATE
        except OSError as exc:
            raise translate(exc, _GET_ERRORS, key=converted, mode=mode) from exc

        action = "Created" if created else "Opened"
        generated = " (generated key)" if converted is None else ""
        self._log(LogLevel.INFO, f"{action} semaphore key={self._key} id={self._id}{generated}")

        if created and mode & 0o200:
            self.value = initial_value

    @classmethod
    def from_id(cls, semid: int, *, backend: IpcBackend | None = None) -> "Semaphore":
        """Wrap an existing semaphore by handle.

        Raises:
            ExistentialError: If no semaphore has that id.

        """
        sem = cls.__new__(cls)
        sem._backend = backend if backend is not None else get_default_backend()
        sem._id = semid
        sem._op_flags = 0
        sem._key = sem.stat().perm.key
        return sem

    def _create_or_open(self, key: int, mode: int) -> tuple[int, bool]:
        """Return ``(id, created)`` for ``IPC_CREAT`` without an ``IPC_STAT``.

        Exclusive creation settles who created the semaphore; a collision
        falls back to a plain open.
        """
        try:
            return self._backend.semget(key, 1, IPC_CREX | mode), True
        except OSError as exc:
            if exc.errno != errno.EEXIST:
                raise
        return self._backend.semget(key, 1, mode), False

    def _log(self, level: LogLevel, message: str) -> None:
        self._backend.logger.log(level, message, source=SOURCE)

    def stat(self) -> SemStat:
        """Return the semaphore set's kernel metadata."""
        try:
            return self._backend.sem_stat(self._id)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    def _set_perm(self, name: PermField, value: int) -> None:
        if not isinstance(value, int):
            msg = f"The {name} must be an integer"
            raise TypeError(msg)
        # IPC_SET writes all three fields; start from the current ones.
        perm = self.stat().perm.with_field(name, value)
        try:
            self._backend.sem_set(self._id, perm)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    def _ctl(self, query: Callable[[int, int], int]) -> int:
        try:
            return query(self._id, 0)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    # -- Operations ----------------------------------------------------------

    def _op(self, op: SemOp, timeout: object = None, delta: int = 1) -> None:
        """Run one semaphore operation.

        Raises:
            ValueError: If *delta* is zero for ACQUIRE/RELEASE or too large.
            TypeError: If *timeout* is not None or a non-negative number.
            BusyError: If the operation would block and ``block`` is
                False, or the timeout expired.

        """
        wait = convert_timeout(timeout)
        if op is SemOp.WAIT_FOR_ZERO:
            delta = 0
        else:
            if delta == 0:
                msg = "The delta must be non-zero"
                raise ValueError(msg)
            if abs(delta) > SEMAPHORE_VALUE_MAX:
                msg = f"The delta must not exceed {SEMAPHORE_VALUE_MAX} (SEMAPHORE_VALUE_MAX)"
                raise ValueError(msg)
            delta = -abs(delta) if op is SemOp.ACQUIRE else abs(delta)

        flags = self._op_flags
        wait = self._effective_timeout(wait)
        if wait is not None and wait.is_zero and not self._backend.supports_timed_semop:
            flags |= IPC_NOWAIT
            wait = None

        try:
            self._backend.semop(self._id, 0, delta, flags, wait)
        except OSError as exc:
            raise translate(exc, _OP_ERRORS) from exc

    def _effective_timeout(self, wait: Timeout | None) -> Timeout | None:
        if wait is None or self._backend.supports_timed_semop or wait.is_zero:
            return wait
        self._log(LogLevel.WARNING, "Timeout ignored: this platform has no timed semaphore waits")
        return None

    def acquire(self, timeout: float | None = None, delta: int = 1) -> None:
        """Decrement the value by ``|delta|``, waiting while it is too low.

        Args:
            timeout: None to follow ``block``; otherwise the longest wait
                in seconds (0 means "do not wait").
            delta: The amount to subtract; its sign is ignored.

        Raises:
            BusyError: If the semaphore stayed unavailable.
            ExistentialError: If it was removed.
            InterruptError: If a signal arrived while waiting.

        """
        self._op(SemOp.ACQUIRE, timeout, delta)

    def release(self, delta: int = 1) -> None:
        """Increment the value by ``|delta|``.

        Raises:
            ValueError: If the value would exceed ``SEMAPHORE_VALUE_MAX``.

        """
        self._op(SemOp.RELEASE, None, delta)

    def wait_for_zero(self, timeout: float | None = None) -> None:
        """Wait until the value is zero.

        Raises:
            BusyError: If the value stayed nonzero.

        """
        self._op(SemOp.WAIT_FOR_ZERO, timeout)

    P = acquire
    V = release
    Z = wait_for_zero

    def remove(self) -> None:
        """Destroy the semaphore, waking every waiter.

        Raises:
            ExistentialError: If it no longer exists.
            PermissionsError: If the caller is neither owner nor creator.

        """
        remove_semaphore(self._id, backend=self._backend)

    def __enter__(self) -> Self:
        """Acquire with default arguments."""
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release with default arguments, whatever happened in the block."""
        self.release()

    # -- Attributes ----------------------------------------------------------

    @property
    def key(self) -> int:
        """Return the semaphore's key."""
        return self._key

    @property
    def id(self) -> int:
        """Return the kernel handle."""
        return self._id

    @property
    def value(self) -> int:
        """Return the current value."""
        return self._ctl(self._backend.sem_getval)

    @value.setter
    def value(self, value: int) -> None:
        _check_value(value)
        try:
            self._backend.sem_setval(self._id, 0, value)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    @property
    def block(self) -> bool:
        """Return False if would-block operations fail instead of waiting."""
        return not self._op_flags & IPC_NOWAIT

    @block.setter
    def block(self, value: bool) -> None:
        if value:
            self._op_flags &= ~IPC_NOWAIT
        else:
            self._op_flags |= IPC_NOWAIT

    @property
    def undo(self) -> bool:
        """Return True if the kernel reverses this process's operations on exit."""
        return bool(self._op_flags & SEM_UNDO)

    @undo.setter
    def undo(self, value: bool) -> None:
        if value:
            self._op_flags |= SEM_UNDO
        else:
            self._op_flags &= ~SEM_UNDO

    @property
    def last_pid(self) -> int:
        """Return the pid of the last process to operate on the semaphore."""
        return self._ctl(self._backend.sem_getpid)

    @property
    def waiting_for_nonzero(self) -> int:
        """Return how many processes wait for the value to increase."""
        return self._ctl(self._backend.sem_getncnt)

    @property
    def waiting_for_zero(self) -> int:
        """Return how many processes wait for the value to reach zero."""
        return self._ctl(self._backend.sem_getzcnt)

    @property
    def o_time(self) -> int:
        """Return the time of the last operation (epoch seconds, 0 if none)."""
        return self.stat().otime

    @property
    def uid(self) -> int:
        """Return the owner's user id."""
        return self.stat().perm.uid

    @uid.setter
    def uid(self, value: int) -> None:
        self._set_perm(PermField.UID, value)

    @property
    def gid(self) -> int:
        """Return the owner's group id."""
        return self.stat().perm.gid

    @gid.setter
    def gid(self, value: int) -> None:
        self._set_perm(PermField.GID, value)

    @property
    def mode(self) -> int:
        """Return the permission bits."""
        return self.stat().perm.mode

    @mode.setter
    def mode(self, value: int) -> None:
        self._set_perm(PermField.MODE, value)

    @property
    def cuid(self) -> int:
        """Return the creator's user id."""
        return self.stat().perm.cuid

    @property
    def cgid(self) -> int:
        """Return the creator's group id."""
        return self.stat().perm.cgid

    def __str__(self) -> str:
        """Return ``Key=..., id=...``."""
        return f"Key={self._key}, id={self._id}"

    def __repr__(self) -> str:
        """Return a constructor-style representation."""
        return f"py_ipc.Semaphore({self._key})"


def remove_semaphore(semid: int, *, backend: IpcBackend | None = None) -> None:
    """Remove a semaphore by handle.

    Raises:
        ExistentialError: If no semaphore has that id.
        PermissionsError: If the caller may not remove it.

    """
    backend = backend if backend is not None else get_default_backend()
    try:
        backend.sem_remove(semid)
    except OSError as exc:
        raise translate(exc, _REMOVE_ERRORS, id=semid) from exc
    backend.logger.log(LogLevel.INFO, f"Removed semaphore id={semid}", source=SOURCE)
