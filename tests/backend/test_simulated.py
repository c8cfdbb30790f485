"""Tests for the in-process kernel model.

These drive ``SimulatedBackend`` directly, the way the facility classes
do, and check the errno each misuse produces.
"""

import errno
import threading
import time
from collections.abc import Callable

import pytest

from py_ipc.backend import IpcPerm, SimulatedBackend
from py_ipc.backend.simulated import MESSAGE_SIZE_MAX, QUEUE_BYTES_DEFAULT
from py_ipc.constants import (
    IPC_CREAT,
    IPC_CREX,
    IPC_NOWAIT,
    IPC_PRIVATE,
    MESSAGE_TYPE_MAX,
    PAGE_SIZE,
    SEMAPHORE_VALUE_MAX,
    SHM_RDONLY,
    SHM_RND,
)
from py_ipc.keys import Timeout

OWNER = 1000
STRANGER = 2000


def _errno(excinfo: pytest.ExceptionInfo[OSError]) -> int | None:
    return excinfo.value.errno


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until *predicate* holds or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached")
        time.sleep(0.01)


class TestKeys:
    """Verify the shared get-call rules."""

    def test_exclusive_create_on_taken_key(self) -> None:
        """IPC_CREX on an existing key is EEXIST."""
        backend = SimulatedBackend()
        backend.shmget(5, PAGE_SIZE, IPC_CREX | 0o600)
        with pytest.raises(OSError) as info:
            backend.shmget(5, PAGE_SIZE, IPC_CREX | 0o600)
        assert _errno(info) == errno.EEXIST

    def test_open_missing_key(self) -> None:
        """Opening an unknown key without IPC_CREAT is ENOENT."""
        backend = SimulatedBackend()
        with pytest.raises(OSError) as info:
            backend.msgget(5, 0o600)
        assert _errno(info) == errno.ENOENT

    def test_creat_opens_existing(self) -> None:
        """IPC_CREAT alone returns the existing handle."""
        backend = SimulatedBackend()
        first = backend.semget(5, 1, IPC_CREAT | 0o600)
        assert backend.semget(5, 1, IPC_CREAT | 0o600) == first

    def test_private_always_creates(self) -> None:
        """Every IPC_PRIVATE call yields a new resource."""
        backend = SimulatedBackend()
        first = backend.msgget(IPC_PRIVATE, 0o600)
        second = backend.msgget(IPC_PRIVATE, 0o600)
        assert first != second

    def test_handles_are_per_kind(self) -> None:
        """Segments, sets and queues number their handles independently."""
        backend = SimulatedBackend()
        assert backend.shmget(1, PAGE_SIZE, IPC_CREX | 0o600) == 1
        assert backend.semget(1, 1, IPC_CREX | 0o600) == 1
        assert backend.msgget(1, IPC_CREX | 0o600) == 1

    def test_removed_key_is_free_again(self) -> None:
        """After removal the key can name a new resource."""
        backend = SimulatedBackend()
        first = backend.msgget(9, IPC_CREX | 0o600)
        backend.msg_remove(first)
        assert backend.msgget(9, IPC_CREX | 0o600) != first


class TestPermissions:
    """Verify mode bits and ownership checks."""

    def test_stranger_denied(self) -> None:
        """Other users get the 'other' bits, here none."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        backend.shmget(5, PAGE_SIZE, IPC_CREX | 0o600)
        backend.uid = backend.gid = STRANGER
        with pytest.raises(OSError) as info:
            backend.shmget(5, 0, 0o600)
        assert _errno(info) == errno.EACCES

    def test_group_bits(self) -> None:
        """Members of the owning group get the group bits."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        shmid = backend.shmget(5, PAGE_SIZE, IPC_CREX | 0o640)
        backend.uid = STRANGER
        backend.shmat(shmid, None, SHM_RDONLY)
        with pytest.raises(OSError) as info:
            backend.shmat(shmid, None, 0)
        assert _errno(info) == errno.EACCES

    def test_only_owner_removes(self) -> None:
        """Removal by someone else is EPERM."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        semid = backend.semget(IPC_PRIVATE, 1, 0o666)
        backend.uid = STRANGER
        with pytest.raises(OSError) as info:
            backend.sem_remove(semid)
        assert _errno(info) == errno.EPERM

    def test_root_bypasses_mode(self) -> None:
        """uid 0 is granted everything."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        msqid = backend.msgget(IPC_PRIVATE, 0o000)
        backend.uid = 0
        backend.msgsnd(msqid, 1, b"x", 0)
        backend.msg_remove(msqid)

    def test_set_perm(self) -> None:
        """IPC_SET changes owner and mode but not the creator."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        perm = backend.sem_stat(semid).perm
        backend.sem_set(semid, IpcPerm(key=perm.key, uid=OWNER, gid=42, cuid=0, cgid=0, mode=0o1644))
        changed = backend.sem_stat(semid).perm
        assert changed.gid == 42
        assert changed.mode == 0o644
        assert changed.cuid == OWNER


class TestSharedMemory:
    """Verify segment lifecycle and memory access."""

    def test_invalid_sizes(self) -> None:
        """A zero size on creation, or a larger size on open, is EINVAL."""
        backend = SimulatedBackend()
        with pytest.raises(OSError) as info:
            backend.shmget(5, 0, IPC_CREX | 0o600)
        assert _errno(info) == errno.EINVAL
        backend.shmget(5, PAGE_SIZE, IPC_CREX | 0o600)
        with pytest.raises(OSError) as info:
            backend.shmget(5, PAGE_SIZE + 1, 0o600)
        assert _errno(info) == errno.EINVAL

    def test_new_segment_is_zeroed(self) -> None:
        """Fresh storage reads as zero bytes."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 16, 0o600)
        address = backend.shmat(shmid, None, 0)
        assert backend.read_memory(address, 16) == bytes(16)

    def test_two_mappings_share_storage(self) -> None:
        """Writes through one mapping are visible through another."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 16, 0o600)
        first = backend.shmat(shmid, None, 0)
        second = backend.shmat(shmid, None, 0)
        assert first != second
        backend.write_memory(first + 4, b"data")
        assert backend.read_memory(second + 4, 4) == b"data"
        assert backend.shm_stat(shmid).nattch == 2

    def test_fill(self) -> None:
        """fill_memory() sets every byte."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        address = backend.shmat(shmid, None, 0)
        backend.fill_memory(address, ord("z"), 8)
        assert backend.read_memory(address, 8) == b"z" * 8

    def test_read_only_mapping(self) -> None:
        """Writing through a read-only mapping faults."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        address = backend.shmat(shmid, None, SHM_RDONLY)
        with pytest.raises(OSError) as info:
            backend.write_memory(address, b"x")
        assert _errno(info) == errno.EFAULT
        assert backend.memory_view(address, 8, readonly=False).readonly

    def test_access_outside_mapping(self) -> None:
        """Addresses past the segment fault."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        address = backend.shmat(shmid, None, 0)
        with pytest.raises(OSError) as info:
            backend.read_memory(address + 4, 8)
        assert _errno(info) == errno.EFAULT

    def test_memory_view_is_live(self) -> None:
        """A writable view writes through to the segment."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        address = backend.shmat(shmid, None, 0)
        view = backend.memory_view(address, 8, readonly=False)
        view[0:2] = b"hi"
        assert backend.read_memory(address, 2) == b"hi"

    def test_requested_address(self) -> None:
        """Aligned addresses are honoured, SHM_RND rounds down, misaligned is EINVAL."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        base = 100 * PAGE_SIZE
        assert backend.shmat(shmid, base, 0) == base
        assert backend.shmat(shmid, 10 * PAGE_SIZE + 3, SHM_RND) == 10 * PAGE_SIZE
        with pytest.raises(OSError) as info:
            backend.shmat(shmid, 20 * PAGE_SIZE + 3, 0)
        assert _errno(info) == errno.EINVAL

    def test_overlapping_address(self) -> None:
        """A second mapping on top of the first is EINVAL."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        backend.shmat(shmid, 100 * PAGE_SIZE, 0)
        with pytest.raises(OSError) as info:
            backend.shmat(shmid, 100 * PAGE_SIZE, 0)
        assert _errno(info) == errno.EINVAL

    def test_detach_unknown_address(self) -> None:
        """Detaching something never attached is EINVAL."""
        with pytest.raises(OSError) as info:
            SimulatedBackend().shmdt(12345)
        assert _errno(info) == errno.EINVAL

    def test_removed_segment_lives_until_detached(self) -> None:
        """IPC_RMID frees the key now and the storage on last detach."""
        backend = SimulatedBackend()
        shmid = backend.shmget(5, 8, IPC_CREX | 0o600)
        address = backend.shmat(shmid, None, 0)
        backend.write_memory(address, b"kept")
        backend.shm_remove(shmid)

        assert backend.shm_stat(shmid).perm.key == IPC_PRIVATE
        with pytest.raises(OSError) as info:
            backend.shmget(5, 0, 0o600)
        assert _errno(info) == errno.ENOENT
        with pytest.raises(OSError) as info:
            backend.shmat(shmid, None, 0)
        assert _errno(info) == errno.EINVAL
        assert backend.read_memory(address, 4) == b"kept"

        backend.shmdt(address)
        with pytest.raises(OSError) as info:
            backend.shm_stat(shmid)
        assert _errno(info) == errno.EINVAL
        assert any("destroyed" in line for line in backend.dmesg())

    def test_stat_tracks_attach_and_detach(self) -> None:
        """Attach and detach times and the creator pid are recorded."""
        backend = SimulatedBackend()
        shmid = backend.shmget(IPC_PRIVATE, 8, 0o600)
        before = backend.shm_stat(shmid)
        assert before.atime == 0
        assert before.nattch == 0
        address = backend.shmat(shmid, None, 0)
        backend.shmdt(address)
        after = backend.shm_stat(shmid)
        assert after.atime > 0
        assert after.dtime > 0
        assert after.cpid == after.lpid


class TestSemaphores:
    """Verify the semaphore model."""

    def test_new_set_is_zero(self) -> None:
        """Members start at zero."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 3, 0o600)
        assert [backend.sem_getval(semid, i) for i in range(3)] == [0, 0, 0]
        assert backend.sem_stat(semid).nsems == 3

    def test_bad_member(self) -> None:
        """Operating on a member past the set is EFBIG."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        with pytest.raises(OSError) as info:
            backend.semop(semid, 1, 1, 0, None)
        assert _errno(info) == errno.EFBIG

    def test_overflow(self) -> None:
        """Raising past the maximum value is ERANGE."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        backend.sem_setval(semid, 0, SEMAPHORE_VALUE_MAX)
        with pytest.raises(OSError) as info:
            backend.semop(semid, 0, 1, 0, None)
        assert _errno(info) == errno.ERANGE
        with pytest.raises(OSError) as info:
            backend.sem_setval(semid, 0, SEMAPHORE_VALUE_MAX + 1)
        assert _errno(info) == errno.ERANGE

    def test_nowait_and_timeout(self) -> None:
        """Without waiting, or once the timeout passes, the result is EAGAIN."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        with pytest.raises(OSError) as info:
            backend.semop(semid, 0, -1, IPC_NOWAIT, None)
        assert _errno(info) == errno.EAGAIN
        started = time.monotonic()
        with pytest.raises(OSError) as info:
            backend.semop(semid, 0, -1, 0, Timeout(seconds=0, nanoseconds=50_000_000))
        assert _errno(info) == errno.EAGAIN
        assert time.monotonic() - started >= 0.04

    def test_operation_records_pid_and_time(self) -> None:
        """A successful operation stamps otime and the member's pid."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        assert backend.sem_stat(semid).otime == 0
        backend.semop(semid, 0, 2, 0, None)
        assert backend.sem_getval(semid, 0) == 2
        assert backend.sem_getpid(semid, 0) > 0
        assert backend.sem_stat(semid).otime > 0

    def test_waiters_are_counted_and_woken(self) -> None:
        """A blocked decrement shows in ncnt and completes after an increment."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        worker = threading.Thread(target=backend.semop, args=(semid, 0, -1, 0, None))
        worker.start()
        _wait_until(lambda: backend.sem_getncnt(semid, 0) == 1)
        backend.semop(semid, 0, 1, 0, None)
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert backend.sem_getval(semid, 0) == 0
        assert backend.sem_getncnt(semid, 0) == 0

    def test_wait_for_zero(self) -> None:
        """A zero operation waits in zcnt until the value drops to zero."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        backend.sem_setval(semid, 0, 1)
        worker = threading.Thread(target=backend.semop, args=(semid, 0, 0, 0, None))
        worker.start()
        _wait_until(lambda: backend.sem_getzcnt(semid, 0) == 1)
        backend.semop(semid, 0, -1, 0, None)
        worker.join(timeout=5)
        assert not worker.is_alive()

    def test_removal_wakes_waiters(self) -> None:
        """Waiters on a removed set fail with EIDRM."""
        backend = SimulatedBackend()
        semid = backend.semget(IPC_PRIVATE, 1, 0o600)
        failures: list[OSError] = []

        def wait() -> None:
            try:
                backend.semop(semid, 0, -1, 0, None)
            except OSError as exc:
                failures.append(exc)

        worker = threading.Thread(target=wait)
        worker.start()
        _wait_until(lambda: backend.sem_getncnt(semid, 0) == 1)
        backend.sem_remove(semid)
        worker.join(timeout=5)
        assert [exc.errno for exc in failures] == [errno.EIDRM]


class TestMessageQueues:
    """Verify the message queue model."""

    def test_type_selection(self) -> None:
        """0 takes the oldest, >0 an exact type, <0 the lowest type within the bound."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        for mtype in (5, 3, 4, 3):
            backend.msgsnd(msqid, mtype, str(mtype).encode(), 0)
        assert backend.msgrcv(msqid, 10, 4, 0) == (b"4", 4)
        assert backend.msgrcv(msqid, 10, -4, 0) == (b"3", 3)
        assert backend.msgrcv(msqid, 10, 0, 0) == (b"5", 5)
        assert backend.msgrcv(msqid, 10, 0, 0) == (b"3", 3)

    def test_invalid_send(self) -> None:
        """Types outside 1..LONG_MAX and oversized messages are EINVAL."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        for mtype, payload in ((0, b"x"), (MESSAGE_TYPE_MAX + 1, b"x"), (1, bytes(MESSAGE_SIZE_MAX + 1))):
            with pytest.raises(OSError) as info:
                backend.msgsnd(msqid, mtype, payload, 0)
            assert _errno(info) == errno.EINVAL

    def test_too_big_for_buffer(self) -> None:
        """A message longer than the buffer is E2BIG and stays queued."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        backend.msgsnd(msqid, 1, b"abcdef", 0)
        with pytest.raises(OSError) as info:
            backend.msgrcv(msqid, 3, 0, 0)
        assert _errno(info) == errno.E2BIG
        assert backend.msg_stat(msqid).qnum == 1
        assert backend.msgrcv(msqid, 6, 0, 0) == (b"abcdef", 1)
        assert backend.msg_stat(msqid).qnum == 0

    def test_empty_nowait(self) -> None:
        """A non-blocking receive with nothing matching is ENOMSG."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        backend.msgsnd(msqid, 2, b"x", 0)
        with pytest.raises(OSError) as info:
            backend.msgrcv(msqid, 10, 1, IPC_NOWAIT)
        assert _errno(info) == errno.ENOMSG

    def test_full_queue(self) -> None:
        """Sending past qbytes is EAGAIN without waiting."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        backend.msg_set(msqid, backend.msg_stat(msqid).perm, 4)
        backend.msgsnd(msqid, 1, b"1234", 0)
        with pytest.raises(OSError) as info:
            backend.msgsnd(msqid, 1, b"5", IPC_NOWAIT)
        assert _errno(info) == errno.EAGAIN

    def test_blocked_sender_resumes(self) -> None:
        """A sender waiting for room proceeds once a message is received."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        backend.msg_set(msqid, backend.msg_stat(msqid).perm, 4)
        backend.msgsnd(msqid, 1, b"1234", 0)
        worker = threading.Thread(target=backend.msgsnd, args=(msqid, 1, b"5678", 0))
        worker.start()
        time.sleep(0.05)
        assert backend.msgrcv(msqid, 10, 0, 0) == (b"1234", 1)
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert backend.msgrcv(msqid, 10, 0, 0) == (b"5678", 1)

    def test_raising_qbytes_needs_root(self) -> None:
        """Only uid 0 may raise the ceiling past the default."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        perm = backend.msg_stat(msqid).perm
        with pytest.raises(OSError) as info:
            backend.msg_set(msqid, perm, QUEUE_BYTES_DEFAULT + 1)
        assert _errno(info) == errno.EPERM

    def test_stat_counters(self) -> None:
        """Byte and message counts follow sends and receives."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        backend.msgsnd(msqid, 1, b"abc", 0)
        backend.msgsnd(msqid, 1, b"de", 0)
        stat = backend.msg_stat(msqid)
        assert (stat.qnum, stat.cbytes, stat.qbytes) == (2, 5, QUEUE_BYTES_DEFAULT)
        assert stat.stime > 0
        assert stat.rtime == 0
        backend.msgrcv(msqid, 10, 0, 0)
        stat = backend.msg_stat(msqid)
        assert (stat.qnum, stat.cbytes) == (1, 2)
        assert stat.lrpid == stat.lspid

    def test_removal_wakes_receivers(self) -> None:
        """A blocked receiver fails with EIDRM when the queue goes away."""
        backend = SimulatedBackend()
        msqid = backend.msgget(IPC_PRIVATE, 0o600)
        failures: list[OSError] = []

        def receive() -> None:
            try:
                backend.msgrcv(msqid, 10, 0, 0)
            except OSError as exc:
                failures.append(exc)

        worker = threading.Thread(target=receive)
        worker.start()
        time.sleep(0.05)
        backend.msg_remove(msqid)
        worker.join(timeout=5)
        assert [exc.errno for exc in failures] == [errno.EIDRM]
