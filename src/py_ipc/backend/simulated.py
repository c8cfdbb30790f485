"""In-process kernel model — System V IPC without a System V kernel.

``SimulatedBackend`` keeps segments, semaphore sets and message queues in
ordinary Python objects and reproduces the kernel's observable rules:

- **Keys** name resources until they are removed; ``IPC_PRIVATE``
  always creates.  ``IPC_CREAT | IPC_EXCL`` on a taken key is ``EEXIST``,
  opening a missing key without ``IPC_CREAT`` is ``ENOENT``.
- **Permissions** follow the owner/group/other bits of ``mode``, with
  uid 0 allowed everything.  Only the owner or creator may ``IPC_SET``
  or ``IPC_RMID`` (``EPERM``).
- **Shared memory** is backed by a ``bytearray`` and mapped at fake,
  page-aligned addresses.  ``IPC_RMID`` detaches the key immediately
  but the storage lives until the last mapping is detached.
- **Semaphores** and **message queues** block on one shared
  ``threading.Condition``; removal wakes every waiter with ``EIDRM``.

Like the C library, every method fails with ``OSError`` carrying errno.
"""

import errno
import itertools
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from py_ipc.backend.base import IpcBackend, IpcPerm, MsgStat, SemStat, ShmStat
from py_ipc.config import DEFAULT_KEY_ATTEMPTS
from py_ipc.constants import (
    IPC_CREAT,
    IPC_EXCL,
    IPC_NOWAIT,
    IPC_PRIVATE,
    MESSAGE_TYPE_MAX,
    PAGE_SIZE,
    PERMISSION_BITS,
    SEMAPHORE_VALUE_MAX,
    SHM_RDONLY,
    SHM_RND,
)
from py_ipc.keys import Timeout
from py_ipc.logging import DEFAULT_LOG_CAPACITY, LogLevel

SHM_SIZE_MAX = 1 << 30
SEMS_PER_SET_MAX = 250
MESSAGE_SIZE_MAX = 8192
QUEUE_BYTES_DEFAULT = 16384

_READ = 0o4
_WRITE = 0o2

_ADDRESS_BASE = 0x7F0000000000


def _error(code: int) -> OSError:
    return OSError(code, os.strerror(code))


def _now() -> int:
    return int(time.time())


def _page_align(size: int) -> int:
    return (size + PAGE_SIZE - 1) // PAGE_SIZE * PAGE_SIZE


@dataclass
class _Perm:
    """Mutable twin of ``IpcPerm`` held by the model."""

    key: int
    uid: int
    gid: int
    cuid: int
    cgid: int
    mode: int

    def freeze(self) -> IpcPerm:
        return IpcPerm(
            key=self.key,
            uid=self.uid,
            gid=self.gid,
            cuid=self.cuid,
            cgid=self.cgid,
            mode=self.mode,
        )


@dataclass
class _Resource:
    ident: int
    perm: _Perm
    ctime: int = field(default_factory=_now)
    removed: bool = False


@dataclass
class _Segment(_Resource):
    size: int = 0
    storage: bytearray = field(default_factory=bytearray)
    cpid: int = 0
    lpid: int = 0
    atime: int = 0
    dtime: int = 0
    nattch: int = 0


@dataclass
class _Mapping:
    segment: _Segment
    readonly: bool


@dataclass
class _SemaphoreSet(_Resource):
    values: list[int] = field(default_factory=list)
    pids: list[int] = field(default_factory=list)
    ncnt: list[int] = field(default_factory=list)
    zcnt: list[int] = field(default_factory=list)
    otime: int = 0


@dataclass
class _Queue(_Resource):
    messages: deque[tuple[int, bytes]] = field(default_factory=deque)
    qbytes: int = QUEUE_BYTES_DEFAULT
    cbytes: int = 0
    stime: int = 0
    rtime: int = 0
    lspid: int = 0
    lrpid: int = 0


R = TypeVar("R", bound=_Resource)


class _Table(Generic[R]):
    """Resources of one kind, indexed by handle and by key."""

    def __init__(self) -> None:
        self.records: dict[int, R] = {}
        self.keys: dict[int, int] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def add(self, record: R) -> None:
        self.records[record.ident] = record
        if record.perm.key != IPC_PRIVATE:
            self.keys[record.perm.key] = record.ident

    def find_key(self, key: int) -> R | None:
        if key == IPC_PRIVATE:
            return None
        ident = self.keys.get(key)
        return None if ident is None else self.records[ident]

    def lookup(self, ident: int) -> R:
        record = self.records.get(ident)
        if record is None:
            raise _error(errno.EINVAL)
        return record

    def unlink_key(self, record: R) -> None:
        if self.keys.get(record.perm.key) == record.ident:
            del self.keys[record.perm.key]
        record.perm.key = IPC_PRIVATE

    def discard(self, record: R) -> None:
        self.unlink_key(record)
        self.records.pop(record.ident, None)


def _select_message(messages: deque[tuple[int, bytes]], mtype: int) -> int | None:
    """Return the index ``msgrcv`` would take for *mtype*, or None."""
    if mtype == 0:
        return 0 if messages else None
    if mtype > 0:
        return next((i for i, (t, _) in enumerate(messages) if t == mtype), None)
    best: int | None = None
    for i, (t, _) in enumerate(messages):
        if t <= -mtype and (best is None or t < messages[best][0]):
            best = i
    return best


class SimulatedBackend(IpcBackend):
    """System V IPC modelled in process memory.

    Attributes:
        uid: Effective user id used for permission checks.
        gid: Effective group id used for permission checks.

    """

    name = "simulated"

    def __init__(
        self,
        *,
        uid: int | None = None,
        gid: int | None = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        key_attempts: int = DEFAULT_KEY_ATTEMPTS,
    ) -> None:
        """Create an empty model kernel."""
        super().__init__(log_capacity=log_capacity, key_attempts=key_attempts)
        self.uid = os.getuid() if uid is None else uid
        self.gid = os.getgid() if gid is None else gid
        self._cond = threading.Condition()
        self._segments: _Table[_Segment] = _Table()
        self._semaphores: _Table[_SemaphoreSet] = _Table()
        self._queues: _Table[_Queue] = _Table()
        self._mappings: dict[int, _Mapping] = {}
        self._next_address = _ADDRESS_BASE

    @property
    def supports_timed_semop(self) -> bool:
        """Timed waits are always available."""
        return True

    # -- Permission helpers --------------------------------------------------

    def _new_perm(self, key: int, flags: int) -> _Perm:
        return _Perm(
            key=key,
            uid=self.uid,
            gid=self.gid,
            cuid=self.uid,
            cgid=self.gid,
            mode=flags & PERMISSION_BITS,
        )

    def _granted(self, perm: _Perm) -> int:
        if self.uid == 0:
            return 0o7
        if self.uid in (perm.uid, perm.cuid):
            return perm.mode >> 6 & 0o7
        if self.gid in (perm.gid, perm.cgid):
            return perm.mode >> 3 & 0o7
        return perm.mode & 0o7

    def _require(self, perm: _Perm, wanted: int) -> None:
        if wanted & ~self._granted(perm):
            raise _error(errno.EACCES)

    def _require_owner(self, perm: _Perm) -> None:
        if self.uid != 0 and self.uid not in (perm.uid, perm.cuid):
            raise _error(errno.EPERM)

    def _open(self, table: _Table[R], key: int, flags: int) -> R | None:
        """Apply the shared get-call rules; None means "create it"."""
        existing = table.find_key(key)
        if existing is not None:
            if flags & IPC_CREAT and flags & IPC_EXCL:
                raise _error(errno.EEXIST)
            requested = flags & PERMISSION_BITS
            self._require(existing.perm, (requested >> 6 | requested >> 3 | requested) & 0o7)
            return existing
        if key != IPC_PRIVATE and not flags & IPC_CREAT:
            raise _error(errno.ENOENT)
        return None

    # -- Shared memory -------------------------------------------------------

    def shmget(self, key: int, size: int, flags: int) -> int:
        """Find or create a segment."""
        with self._cond:
            segment = self._open(self._segments, key, flags)
            if segment is not None:
                if size > segment.size:
                    raise _error(errno.EINVAL)
                return segment.ident
            if size <= 0 or size > SHM_SIZE_MAX:
                raise _error(errno.EINVAL)
            segment = _Segment(
                ident=self._segments.next_id(),
                perm=self._new_perm(key, flags),
                size=size,
                storage=bytearray(size),
                cpid=os.getpid(),
            )
            self._segments.add(segment)
            return segment.ident

    def shmat(self, shmid: int, address: int | None, flags: int) -> int:
        """Map a segment at a fake address."""
        with self._cond:
            segment = self._segments.lookup(shmid)
            if segment.removed:
                raise _error(errno.EINVAL)
            readonly = bool(flags & SHM_RDONLY)
            self._require(segment.perm, _READ if readonly else _READ | _WRITE)

            if address:
                if flags & SHM_RND:
                    address -= address % PAGE_SIZE
                elif address % PAGE_SIZE:
                    raise _error(errno.EINVAL)
                end = address + segment.size
                for base, mapping in self._mappings.items():
                    if base < end and address < base + mapping.segment.size:
                        raise _error(errno.EINVAL)
            else:
                address = self._next_address
                self._next_address += _page_align(segment.size) + PAGE_SIZE

            self._mappings[address] = _Mapping(segment=segment, readonly=readonly)
            segment.nattch += 1
            segment.atime = _now()
            segment.lpid = os.getpid()
            return address

    def shmdt(self, address: int) -> None:
        """Unmap; free the segment if it was removed and this was the last mapping."""
        with self._cond:
            mapping = self._mappings.pop(address, None)
            if mapping is None:
                raise _error(errno.EINVAL)
            segment = mapping.segment
            segment.nattch -= 1
            segment.dtime = _now()
            segment.lpid = os.getpid()
            if segment.removed and segment.nattch == 0:
                self._segments.discard(segment)
                self.logger.log(LogLevel.DEBUG, f"Segment id={segment.ident} destroyed", source="shm")

    def shm_stat(self, shmid: int) -> ShmStat:
        """Return segment metadata."""
        with self._cond:
            segment = self._segments.lookup(shmid)
            self._require(segment.perm, _READ)
            return ShmStat(
                perm=segment.perm.freeze(),
                size=segment.size,
                atime=segment.atime,
                dtime=segment.dtime,
                ctime=segment.ctime,
                cpid=segment.cpid,
                lpid=segment.lpid,
                nattch=segment.nattch,
            )

    def shm_set(self, shmid: int, perm: IpcPerm) -> None:
        """Change owner and mode."""
        with self._cond:
            segment = self._segments.lookup(shmid)
            self._set_perm(segment, perm)

    def shm_remove(self, shmid: int) -> None:
        """Unlink the key now; free storage once nothing is attached."""
        with self._cond:
            segment = self._segments.lookup(shmid)
            self._require_owner(segment.perm)
            segment.removed = True
            self._segments.unlink_key(segment)
            if segment.nattch == 0:
                self._segments.discard(segment)

    def _locate(self, address: int, count: int) -> tuple[_Mapping, int]:
        for base, mapping in self._mappings.items():
            if base <= address and address + count <= base + mapping.segment.size:
                return mapping, address - base
        raise _error(errno.EFAULT)

    def read_memory(self, address: int, count: int) -> bytes:
        """Copy bytes out of a mapped segment."""
        with self._cond:
            mapping, offset = self._locate(address, count)
            return bytes(mapping.segment.storage[offset : offset + count])

    def write_memory(self, address: int, data: bytes) -> None:
        """Copy bytes into a mapped segment."""
        with self._cond:
            mapping, offset = self._locate(address, len(data))
            if mapping.readonly:
                raise _error(errno.EFAULT)
            mapping.segment.storage[offset : offset + len(data)] = data

    def fill_memory(self, address: int, value: int, count: int) -> None:
        """Set a range of a mapped segment to one byte value."""
        with self._cond:
            mapping, offset = self._locate(address, count)
            if mapping.readonly:
                raise _error(errno.EFAULT)
            mapping.segment.storage[offset : offset + count] = bytes([value]) * count

    def memory_view(self, address: int, size: int, *, readonly: bool) -> memoryview:
        """Return a live view of a mapped segment's storage."""
        with self._cond:
            mapping, offset = self._locate(address, size)
            view = memoryview(mapping.segment.storage)[offset : offset + size]
            if readonly or mapping.readonly:
                return view.toreadonly()
            return view

    # -- Semaphores ----------------------------------------------------------

    def semget(self, key: int, nsems: int, flags: int) -> int:
        """Find or create a semaphore set, all values zero."""
        with self._cond:
            existing = self._open(self._semaphores, key, flags)
            if existing is not None:
                if nsems > len(existing.values):
                    raise _error(errno.EINVAL)
                return existing.ident
            if not 0 < nsems <= SEMS_PER_SET_MAX:
                raise _error(errno.EINVAL)
            sem = _SemaphoreSet(
                ident=self._semaphores.next_id(),
                perm=self._new_perm(key, flags),
                values=[0] * nsems,
                pids=[0] * nsems,
                ncnt=[0] * nsems,
                zcnt=[0] * nsems,
            )
            self._semaphores.add(sem)
            return sem.ident

    def _member(self, semid: int, sem_num: int, wanted: int) -> _SemaphoreSet:
        sem = self._semaphores.lookup(semid)
        self._require(sem.perm, wanted)
        if not 0 <= sem_num < len(sem.values):
            raise _error(errno.EINVAL)
        return sem

    def semop(self, semid: int, sem_num: int, delta: int, flags: int, timeout: Timeout | None) -> None:
        """Apply one operation, waiting on the condition until it can proceed."""
        with self._cond:
            sem = self._semaphores.lookup(semid)
            self._require(sem.perm, _WRITE if delta else _READ)
            if not 0 <= sem_num < len(sem.values):
                raise _error(errno.EFBIG)
            if delta > 0 and sem.values[sem_num] + delta > SEMAPHORE_VALUE_MAX:
                raise _error(errno.ERANGE)

            deadline = None if timeout is None else time.monotonic() + timeout.total_seconds()
            while True:
                if sem.removed:
                    raise _error(errno.EIDRM)
                value = sem.values[sem_num]
                if (delta == 0 and value == 0) or (delta != 0 and value + delta >= 0):
                    sem.values[sem_num] = value + delta
                    sem.pids[sem_num] = os.getpid()
                    sem.otime = _now()
                    self._cond.notify_all()
                    return
                if flags & IPC_NOWAIT:
                    raise _error(errno.EAGAIN)
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise _error(errno.EAGAIN)

                counter = sem.zcnt if delta == 0 else sem.ncnt
                counter[sem_num] += 1
                try:
                    self._cond.wait(remaining)
                finally:
                    counter[sem_num] -= 1

    def sem_getval(self, semid: int, sem_num: int) -> int:
        """Return one member's value."""
        with self._cond:
            return self._member(semid, sem_num, _READ).values[sem_num]

    def sem_setval(self, semid: int, sem_num: int, value: int) -> None:
        """Overwrite one member's value and wake waiters."""
        with self._cond:
            sem = self._member(semid, sem_num, _WRITE)
            if not 0 <= value <= SEMAPHORE_VALUE_MAX:
                raise _error(errno.ERANGE)
            sem.values[sem_num] = value
            sem.ctime = _now()
            self._cond.notify_all()

    def sem_getpid(self, semid: int, sem_num: int) -> int:
        """Return the pid of the last operation."""
        with self._cond:
            return self._member(semid, sem_num, _READ).pids[sem_num]

    def sem_getncnt(self, semid: int, sem_num: int) -> int:
        """Return the number of threads waiting for an increase."""
        with self._cond:
            return self._member(semid, sem_num, _READ).ncnt[sem_num]

    def sem_getzcnt(self, semid: int, sem_num: int) -> int:
        """Return the number of threads waiting for zero."""
        with self._cond:
            return self._member(semid, sem_num, _READ).zcnt[sem_num]

    def sem_stat(self, semid: int) -> SemStat:
        """Return set metadata."""
        with self._cond:
            sem = self._semaphores.lookup(semid)
            self._require(sem.perm, _READ)
            return SemStat(perm=sem.perm.freeze(), otime=sem.otime, ctime=sem.ctime, nsems=len(sem.values))

    def sem_set(self, semid: int, perm: IpcPerm) -> None:
        """Change owner and mode."""
        with self._cond:
            self._set_perm(self._semaphores.lookup(semid), perm)

    def sem_remove(self, semid: int) -> None:
        """Destroy the set; blocked operations fail with ``EIDRM``."""
        with self._cond:
            sem = self._semaphores.lookup(semid)
            self._require_owner(sem.perm)
            sem.removed = True
            self._semaphores.discard(sem)
            self._cond.notify_all()

    # -- Message queues ------------------------------------------------------

    def msgget(self, key: int, flags: int) -> int:
        """Find or create a queue."""
        with self._cond:
            existing = self._open(self._queues, key, flags)
            if existing is not None:
                return existing.ident
            queue = _Queue(ident=self._queues.next_id(), perm=self._new_perm(key, flags))
            self._queues.add(queue)
            return queue.ident

    def msgsnd(self, msqid: int, mtype: int, payload: bytes, flags: int) -> None:
        """Enqueue, waiting for room unless ``IPC_NOWAIT``."""
        with self._cond:
            queue = self._queues.lookup(msqid)
            if not 1 <= mtype <= MESSAGE_TYPE_MAX or len(payload) > MESSAGE_SIZE_MAX:
                raise _error(errno.EINVAL)
            self._require(queue.perm, _WRITE)
            while True:
                if queue.removed:
                    raise _error(errno.EIDRM)
                if queue.cbytes + len(payload) <= queue.qbytes and len(queue.messages) < queue.qbytes:
                    queue.messages.append((mtype, bytes(payload)))
                    queue.cbytes += len(payload)
                    queue.stime = _now()
                    queue.lspid = os.getpid()
                    self._cond.notify_all()
                    return
                if flags & IPC_NOWAIT:
                    raise _error(errno.EAGAIN)
                self._cond.wait()

    def msgrcv(self, msqid: int, max_size: int, mtype: int, flags: int) -> tuple[bytes, int]:
        """Dequeue by type; negative types pick the lowest type not above ``|mtype|``."""
        with self._cond:
            queue = self._queues.lookup(msqid)
            if abs(mtype) > MESSAGE_TYPE_MAX:
                raise _error(errno.EINVAL)
            self._require(queue.perm, _READ)
            while True:
                if queue.removed:
                    raise _error(errno.EIDRM)
                index = _select_message(queue.messages, mtype)
                if index is not None:
                    found_type, payload = queue.messages[index]
                    if len(payload) > max_size:
                        raise _error(errno.E2BIG)
                    del queue.messages[index]
                    queue.cbytes -= len(payload)
                    queue.rtime = _now()
                    queue.lrpid = os.getpid()
                    self._cond.notify_all()
                    return payload, found_type
                if flags & IPC_NOWAIT:
                    raise _error(errno.ENOMSG)
                self._cond.wait()

    def msg_stat(self, msqid: int) -> MsgStat:
        """Return queue metadata."""
        with self._cond:
            queue = self._queues.lookup(msqid)
            self._require(queue.perm, _READ)
            return MsgStat(
                perm=queue.perm.freeze(),
                stime=queue.stime,
                rtime=queue.rtime,
                ctime=queue.ctime,
                cbytes=queue.cbytes,
                qnum=len(queue.messages),
                qbytes=queue.qbytes,
                lspid=queue.lspid,
                lrpid=queue.lrpid,
            )

    def msg_set(self, msqid: int, perm: IpcPerm, qbytes: int) -> None:
        """Change owner, mode and the byte ceiling."""
        with self._cond:
            queue = self._queues.lookup(msqid)
            self._require_owner(queue.perm)
            if qbytes > QUEUE_BYTES_DEFAULT and self.uid != 0:
                raise _error(errno.EPERM)
            self._set_perm(queue, perm)
            queue.qbytes = qbytes
            self._cond.notify_all()

    def msg_remove(self, msqid: int) -> None:
        """Destroy the queue; blocked senders and receivers fail with ``EIDRM``."""
        with self._cond:
            queue = self._queues.lookup(msqid)
            self._require_owner(queue.perm)
            queue.removed = True
            self._queues.discard(queue)
            self._cond.notify_all()

    # -- Shared ---------------------------------------------------------------

    def _set_perm(self, record: _Resource, perm: IpcPerm) -> None:
        self._require_owner(record.perm)
        record.perm.uid = perm.uid
        record.perm.gid = perm.gid
        record.perm.mode = perm.mode & PERMISSION_BITS
        record.ctime = _now()
