"""Real kernel backend — System V IPC through the C library.

Each method is a thin ``ctypes`` call into libc followed by an errno
check.  ``ctypes.CDLL`` drops the interpreter lock for the duration of
every foreign call, so a ``semop`` or ``msgrcv`` that blocks for an hour
stalls only the calling thread.

``semctl`` is variadic and is therefore called without ``argtypes``;
its optional fourth argument (``union semun``) is passed either as a
plain ``c_int`` (``SETVAL``) or as a pointer (``IPC_STAT``/``IPC_SET``).
"""

import ctypes
import os

from py_ipc.backend.base import IpcBackend, IpcPerm, MsgStat, SemStat, ShmStat
from py_ipc.backend.structs import (
    MsqidDs,
    Sembuf,
    SemidDs,
    ShmidDs,
    Timespec,
    apply_perm,
    message_buffer_type,
    msg_stat_from_struct,
    sem_stat_from_struct,
    shm_stat_from_struct,
)
from py_ipc.config import DEFAULT_KEY_ATTEMPTS
from py_ipc.constants import (
    GETNCNT,
    GETPID,
    GETVAL,
    GETZCNT,
    IPC_RMID,
    IPC_SET,
    IPC_STAT,
    SEMAPHORE_TIMEOUT_SUPPORTED,
    SETVAL,
)
from py_ipc.keys import Timeout
from py_ipc.logging import DEFAULT_LOG_CAPACITY

# shmat() reports failure as (void *) -1.
_SHMAT_FAILED = ctypes.c_void_p(-1).value

_PyBUF_READ = 0x100
_PyBUF_WRITE = 0x200


def _load_libc() -> ctypes.CDLL:
    libc = ctypes.CDLL(None, use_errno=True)

    libc.shmget.argtypes = [ctypes.c_int, ctypes.c_size_t, ctypes.c_int]
    libc.shmget.restype = ctypes.c_int
    libc.shmat.argtypes = [ctypes.c_int, ctypes.c_void_p, ctypes.c_int]
    libc.shmat.restype = ctypes.c_void_p
    libc.shmdt.argtypes = [ctypes.c_void_p]
    libc.shmdt.restype = ctypes.c_int
    libc.shmctl.argtypes = [ctypes.c_int, ctypes.c_int, ctypes.c_void_p]
    libc.shmctl.restype = ctypes.c_int

    libc.semget.argtypes = [ctypes.c_int, ctypes.c_int, ctypes.c_int]
    libc.semget.restype = ctypes.c_int
    libc.semop.argtypes = [ctypes.c_int, ctypes.c_void_p, ctypes.c_size_t]
    libc.semop.restype = ctypes.c_int
    if SEMAPHORE_TIMEOUT_SUPPORTED:
        libc.semtimedop.argtypes = [ctypes.c_int, ctypes.c_void_p, ctypes.c_size_t, ctypes.c_void_p]
        libc.semtimedop.restype = ctypes.c_int
    libc.semctl.restype = ctypes.c_int

    libc.msgget.argtypes = [ctypes.c_int, ctypes.c_int]
    libc.msgget.restype = ctypes.c_int
    libc.msgsnd.argtypes = [ctypes.c_int, ctypes.c_void_p, ctypes.c_size_t, ctypes.c_int]
    libc.msgsnd.restype = ctypes.c_int
    libc.msgrcv.argtypes = [ctypes.c_int, ctypes.c_void_p, ctypes.c_size_t, ctypes.c_long, ctypes.c_int]
    libc.msgrcv.restype = ctypes.c_ssize_t
    libc.msgctl.argtypes = [ctypes.c_int, ctypes.c_int, ctypes.c_void_p]
    libc.msgctl.restype = ctypes.c_int
    return libc


def _raise_errno() -> None:
    code = ctypes.get_errno()
    raise OSError(code, os.strerror(code))


def _check(result: int) -> int:
    if result == -1:
        _raise_errno()
    return result


class LibcBackend(IpcBackend):
    """Talk to the running kernel via ``ctypes``.

    Raises:
        OSError: On construction, if the C library lacks SysV IPC.

    """

    name = "libc"

    def __init__(
        self,
        *,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        key_attempts: int = DEFAULT_KEY_ATTEMPTS,
    ) -> None:
        """Load the C library and declare the IPC function signatures."""
        super().__init__(log_capacity=log_capacity, key_attempts=key_attempts)
        try:
            self._libc = _load_libc()
        except AttributeError as exc:
            msg = f"The C library does not provide System V IPC: {exc}"
            raise OSError(msg) from exc
        self._memview = ctypes.pythonapi.PyMemoryView_FromMemory
        self._memview.argtypes = [ctypes.c_void_p, ctypes.c_ssize_t, ctypes.c_int]
        self._memview.restype = ctypes.py_object

    @property
    def supports_timed_semop(self) -> bool:
        """Return True if libc exports ``semtimedop``."""
        return SEMAPHORE_TIMEOUT_SUPPORTED

    # -- Shared memory -------------------------------------------------------

    def shmget(self, key: int, size: int, flags: int) -> int:
        """Call ``shmget(2)``."""
        return _check(self._libc.shmget(key, size, flags))

    def shmat(self, shmid: int, address: int | None, flags: int) -> int:
        """Call ``shmat(2)``."""
        result = self._libc.shmat(shmid, address, flags)
        if result is None or result == _SHMAT_FAILED:
            _raise_errno()
        return result

    def shmdt(self, address: int) -> None:
        """Call ``shmdt(2)``."""
        _check(self._libc.shmdt(address))

    def _shmid_ds(self, shmid: int) -> ShmidDs:
        ds = ShmidDs()
        _check(self._libc.shmctl(shmid, IPC_STAT, ctypes.addressof(ds)))
        return ds

    def shm_stat(self, shmid: int) -> ShmStat:
        """Call ``shmctl(IPC_STAT)``."""
        return shm_stat_from_struct(self._shmid_ds(shmid))

    def shm_set(self, shmid: int, perm: IpcPerm) -> None:
        """Call ``shmctl(IPC_STAT)`` then ``shmctl(IPC_SET)``."""
        ds = self._shmid_ds(shmid)
        apply_perm(ds.shm_perm, perm)
        _check(self._libc.shmctl(shmid, IPC_SET, ctypes.addressof(ds)))

    def shm_remove(self, shmid: int) -> None:
        """Call ``shmctl(IPC_RMID)``."""
        _check(self._libc.shmctl(shmid, IPC_RMID, None))

    def read_memory(self, address: int, count: int) -> bytes:
        """Copy bytes out of a mapping."""
        return ctypes.string_at(address, count)

    def write_memory(self, address: int, data: bytes) -> None:
        """Copy bytes into a mapping."""
        ctypes.memmove(address, data, len(data))

    def fill_memory(self, address: int, value: int, count: int) -> None:
        """``memset`` a mapping."""
        ctypes.memset(address, value, count)

    def memory_view(self, address: int, size: int, *, readonly: bool) -> memoryview:
        """Wrap a mapping in a memoryview without copying."""
        return self._memview(address, size, _PyBUF_READ if readonly else _PyBUF_WRITE)

    # -- Semaphores ----------------------------------------------------------

    def semget(self, key: int, nsems: int, flags: int) -> int:
        """Call ``semget(2)``."""
        return _check(self._libc.semget(key, nsems, flags))

    def semop(self, semid: int, sem_num: int, delta: int, flags: int, timeout: Timeout | None) -> None:
        """Call ``semtimedop(2)`` when given a timeout, else ``semop(2)``."""
        op = Sembuf(sem_num=sem_num, sem_op=delta, sem_flg=flags)
        if timeout is not None and SEMAPHORE_TIMEOUT_SUPPORTED:
            ts = Timespec(tv_sec=timeout.seconds, tv_nsec=timeout.nanoseconds)
            _check(self._libc.semtimedop(semid, ctypes.addressof(op), 1, ctypes.addressof(ts)))
        else:
            _check(self._libc.semop(semid, ctypes.addressof(op), 1))

    def sem_getval(self, semid: int, sem_num: int) -> int:
        """Call ``semctl(GETVAL)``."""
        return _check(self._libc.semctl(semid, sem_num, GETVAL))

    def sem_setval(self, semid: int, sem_num: int, value: int) -> None:
        """Call ``semctl(SETVAL)``."""
        _check(self._libc.semctl(semid, sem_num, SETVAL, ctypes.c_int(value)))

    def sem_getpid(self, semid: int, sem_num: int) -> int:
        """Call ``semctl(GETPID)``."""
        return _check(self._libc.semctl(semid, sem_num, GETPID))

    def sem_getncnt(self, semid: int, sem_num: int) -> int:
        """Call ``semctl(GETNCNT)``."""
        return _check(self._libc.semctl(semid, sem_num, GETNCNT))

    def sem_getzcnt(self, semid: int, sem_num: int) -> int:
        """Call ``semctl(GETZCNT)``."""
        return _check(self._libc.semctl(semid, sem_num, GETZCNT))

    def _semid_ds(self, semid: int) -> SemidDs:
        ds = SemidDs()
        _check(self._libc.semctl(semid, 0, IPC_STAT, ctypes.byref(ds)))
        return ds

    def sem_stat(self, semid: int) -> SemStat:
        """Call ``semctl(IPC_STAT)``."""
        return sem_stat_from_struct(self._semid_ds(semid))

    def sem_set(self, semid: int, perm: IpcPerm) -> None:
        """Call ``semctl(IPC_STAT)`` then ``semctl(IPC_SET)``."""
        ds = self._semid_ds(semid)
        apply_perm(ds.sem_perm, perm)
        _check(self._libc.semctl(semid, 0, IPC_SET, ctypes.byref(ds)))

    def sem_remove(self, semid: int) -> None:
        """Call ``semctl(IPC_RMID)``."""
        _check(self._libc.semctl(semid, 0, IPC_RMID))

    # -- Message queues ------------------------------------------------------

    def msgget(self, key: int, flags: int) -> int:
        """Call ``msgget(2)``."""
        return _check(self._libc.msgget(key, flags))

    def msgsnd(self, msqid: int, mtype: int, payload: bytes, flags: int) -> None:
        """Call ``msgsnd(2)``."""
        buf = message_buffer_type(len(payload))()
        buf.mtype = mtype
        ctypes.memmove(ctypes.addressof(buf) + type(buf).mtext.offset, payload, len(payload))
        _check(self._libc.msgsnd(msqid, ctypes.addressof(buf), len(payload), flags))

    def msgrcv(self, msqid: int, max_size: int, mtype: int, flags: int) -> tuple[bytes, int]:
        """Call ``msgrcv(2)``."""
        buf = message_buffer_type(max_size)()
        received = _check(self._libc.msgrcv(msqid, ctypes.addressof(buf), max_size, mtype, flags))
        payload = ctypes.string_at(ctypes.addressof(buf) + type(buf).mtext.offset, received)
        return payload, buf.mtype

    def _msqid_ds(self, msqid: int) -> MsqidDs:
        ds = MsqidDs()
        _check(self._libc.msgctl(msqid, IPC_STAT, ctypes.addressof(ds)))
        return ds

    def msg_stat(self, msqid: int) -> MsgStat:
        """Call ``msgctl(IPC_STAT)``."""
        return msg_stat_from_struct(self._msqid_ds(msqid))

    def msg_set(self, msqid: int, perm: IpcPerm, qbytes: int) -> None:
        """Call ``msgctl(IPC_STAT)`` then ``msgctl(IPC_SET)``."""
        ds = self._msqid_ds(msqid)
        apply_perm(ds.msg_perm, perm)
        ds.msg_qbytes = qbytes
        _check(self._libc.msgctl(msqid, IPC_SET, ctypes.addressof(ds)))

    def msg_remove(self, msqid: int) -> None:
        """Call ``msgctl(IPC_RMID)``."""
        _check(self._libc.msgctl(msqid, IPC_RMID, None))
