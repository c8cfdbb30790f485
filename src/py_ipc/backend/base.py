"""The IPC backend contract — the kernel as seen from the facility classes.

Every facility class (``SharedMemory``, ``Semaphore``, ``MessageQueue``)
talks to the kernel through exactly one object implementing
``IpcBackend``.  The contract is deliberately thin: one method per
kernel primitive, integer handles in, integer handles out, and failures
reported as ``OSError`` with ``errno`` set, exactly like the C calls
would.  All *meaning* (which errno is "busy", which is "gone") lives in
the facility modules, not here.

Two implementations exist:

- ``LibcBackend`` calls the real ``shmget``/``semop``/``msgsnd`` family
  through ``ctypes``.
- ``SimulatedBackend`` models the same kernel objects in process
  memory, so the semantics layer can be exercised anywhere.

Kernel metadata comes back as frozen dataclasses (``ShmStat``,
``SemStat``, ``MsgStat``) so that platform differences in the C struct
layouts never leak above this line.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import StrEnum

from py_ipc.config import DEFAULT_KEY_ATTEMPTS
from py_ipc.keys import Timeout
from py_ipc.logging import DEFAULT_LOG_CAPACITY, Logger


class PermField(StrEnum):
    """The three ``ipc_perm`` fields a caller may change with ``IPC_SET``."""

    UID = "uid"
    GID = "gid"
    MODE = "mode"


@dataclass(frozen=True)
class IpcPerm:
    """Ownership and permission metadata common to all three facilities."""

    key: int
    uid: int
    gid: int
    cuid: int
    cgid: int
    mode: int

    def with_field(self, name: PermField, value: int) -> "IpcPerm":
        """Return a copy with one settable field changed."""
        return replace(self, **{name.value: value})


@dataclass(frozen=True)
class ShmStat:
    """Kernel metadata for a shared memory segment (``shmid_ds``)."""

    perm: IpcPerm
    size: int
    atime: int
    dtime: int
    ctime: int
    cpid: int
    lpid: int
    nattch: int


@dataclass(frozen=True)
class SemStat:
    """Kernel metadata for a semaphore set (``semid_ds``)."""

    perm: IpcPerm
    otime: int
    ctime: int
    nsems: int


@dataclass(frozen=True)
class MsgStat:
    """Kernel metadata for a message queue (``msqid_ds``)."""

    perm: IpcPerm
    stime: int
    rtime: int
    ctime: int
    cbytes: int
    qnum: int
    qbytes: int
    lspid: int
    lrpid: int


class IpcBackend(ABC):
    """Abstract kernel interface used by every facility class.

    All methods raise ``OSError`` (with ``errno`` set) on failure.
    Blocking methods must not hold the interpreter lock while they wait.
    """

    name: str = "abstract"

    def __init__(
        self,
        *,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        key_attempts: int = DEFAULT_KEY_ATTEMPTS,
    ) -> None:
        """Create the backend with an empty audit log.

        Args:
            log_capacity: Audit log entries retained.
            key_attempts: Random keys tried before giving up on
                auto-key creation.

        """
        self._logger = Logger(capacity=log_capacity)
        self.key_attempts = key_attempts

    @property
    def logger(self) -> Logger:
        """Return this backend's audit log."""
        return self._logger

    def dmesg(self) -> list[str]:
        """Return the audit log rendered as text lines."""
        return [str(entry) for entry in self._logger.entries]

    @property
    @abstractmethod
    def supports_timed_semop(self) -> bool:
        """Return True if ``semop`` honours a timeout."""

    # -- Shared memory -------------------------------------------------------

    @abstractmethod
    def shmget(self, key: int, size: int, flags: int) -> int:
        """Find or create a segment; return its handle."""

    @abstractmethod
    def shmat(self, shmid: int, address: int | None, flags: int) -> int:
        """Map a segment into this process; return its base address."""

    @abstractmethod
    def shmdt(self, address: int) -> None:
        """Unmap the segment mapped at *address*."""

    @abstractmethod
    def shm_stat(self, shmid: int) -> ShmStat:
        """Return the segment's metadata (``IPC_STAT``)."""

    @abstractmethod
    def shm_set(self, shmid: int, perm: IpcPerm) -> None:
        """Store uid, gid and mode from *perm* (``IPC_SET``)."""

    @abstractmethod
    def shm_remove(self, shmid: int) -> None:
        """Mark the segment for destruction (``IPC_RMID``)."""

    @abstractmethod
    def read_memory(self, address: int, count: int) -> bytes:
        """Copy *count* bytes out of mapped memory."""

    @abstractmethod
    def write_memory(self, address: int, data: bytes) -> None:
        """Copy *data* into mapped memory."""

    @abstractmethod
    def fill_memory(self, address: int, value: int, count: int) -> None:
        """Set *count* bytes of mapped memory to *value*."""

    @abstractmethod
    def memory_view(self, address: int, size: int, *, readonly: bool) -> memoryview:
        """Return a memoryview over *size* bytes of mapped memory."""

    # -- Semaphores ----------------------------------------------------------

    @abstractmethod
    def semget(self, key: int, nsems: int, flags: int) -> int:
        """Find or create a semaphore set; return its handle."""

    @abstractmethod
    def semop(self, semid: int, sem_num: int, delta: int, flags: int, timeout: Timeout | None) -> None:
        """Apply one operation to one semaphore, waiting if required."""

    @abstractmethod
    def sem_getval(self, semid: int, sem_num: int) -> int:
        """Return the semaphore's value (``GETVAL``)."""

    @abstractmethod
    def sem_setval(self, semid: int, sem_num: int, value: int) -> None:
        """Set the semaphore's value (``SETVAL``)."""

    @abstractmethod
    def sem_getpid(self, semid: int, sem_num: int) -> int:
        """Return the pid of the last process to operate on it (``GETPID``)."""

    @abstractmethod
    def sem_getncnt(self, semid: int, sem_num: int) -> int:
        """Return how many processes wait for an increase (``GETNCNT``)."""

    @abstractmethod
    def sem_getzcnt(self, semid: int, sem_num: int) -> int:
        """Return how many processes wait for zero (``GETZCNT``)."""

    @abstractmethod
    def sem_stat(self, semid: int) -> SemStat:
        """Return the set's metadata (``IPC_STAT``)."""

    @abstractmethod
    def sem_set(self, semid: int, perm: IpcPerm) -> None:
        """Store uid, gid and mode from *perm* (``IPC_SET``)."""

    @abstractmethod
    def sem_remove(self, semid: int) -> None:
        """Destroy the set, waking all waiters (``IPC_RMID``)."""

    # -- Message queues ------------------------------------------------------

    @abstractmethod
    def msgget(self, key: int, flags: int) -> int:
        """Find or create a queue; return its handle."""

    @abstractmethod
    def msgsnd(self, msqid: int, mtype: int, payload: bytes, flags: int) -> None:
        """Enqueue one message, waiting for space unless ``IPC_NOWAIT``."""

    @abstractmethod
    def msgrcv(self, msqid: int, max_size: int, mtype: int, flags: int) -> tuple[bytes, int]:
        """Dequeue one message; return ``(payload, type)``."""

    @abstractmethod
    def msg_stat(self, msqid: int) -> MsgStat:
        """Return the queue's metadata (``IPC_STAT``)."""

    @abstractmethod
    def msg_set(self, msqid: int, perm: IpcPerm, qbytes: int) -> None:
        """Store uid, gid, mode and the byte ceiling (``IPC_SET``)."""

    @abstractmethod
    def msg_remove(self, msqid: int) -> None:
        """Destroy the queue, waking all waiters (``IPC_RMID``)."""
