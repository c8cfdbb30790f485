"""Tests for SharedMemory.

All tests run on the simulated backend, so they need no kernel support
and each gets a private, empty key namespace.
"""

import dataclasses
import os
import sys
from unittest.mock import MagicMock

import pytest

from py_ipc import keys
from py_ipc.backend import IpcBackend, ShmStat, SimulatedBackend
from py_ipc.constants import IPC_CREAT, IPC_CREX, IPC_EXCL, PAGE_SIZE, RANDOM_KEY_MAX, RANDOM_KEY_MIN
from py_ipc.errors import (
    ExistentialError,
    KeyAllocationError,
    NotAttachedError,
    PermissionsError,
    ReadOnlyError,
)
from py_ipc.logging import LogLevel
from py_ipc.shm import SharedMemory, attach, remove_shared_memory

OWNER = 1000
STRANGER = 2000


def _segment(backend: SimulatedBackend | None = None, **kwargs: object) -> SharedMemory:
    """Create a segment with a generated key."""
    return SharedMemory(None, IPC_CREX, backend=backend or SimulatedBackend(), **kwargs)  # type: ignore[arg-type]


class TestCreation:
    """Verify finding and creating segments."""

    def test_generated_key(self) -> None:
        """key=None with IPC_CREX draws a random key."""
        mem = _segment()
        assert RANDOM_KEY_MIN <= mem.key <= RANDOM_KEY_MAX
        assert mem.attached

    def test_default_size_is_one_page(self) -> None:
        """Creating with size 0 allocates a page."""
        assert _segment().size == PAGE_SIZE

    def test_filled_with_init_character(self) -> None:
        """A new segment is filled with init_character."""
        assert _segment(size=16).read() == b" " * 16
        assert _segment(size=16, init_character=b"x").read() == b"x" * 16

    def test_bad_init_character(self) -> None:
        """init_character must be exactly one byte."""
        with pytest.raises(ValueError, match="single byte"):
            _segment(init_character=b"xy")
        with pytest.raises(ValueError, match="single byte"):
            _segment(init_character="x")

    def test_negative_size(self) -> None:
        """Sizes below zero are rejected."""
        with pytest.raises(ValueError, match="non-negative"):
            _segment(size=-1)

    def test_excl_without_creat(self) -> None:
        """IPC_EXCL on its own is rejected before the kernel is asked."""
        with pytest.raises(ValueError, match="IPC_EXCL"):
            SharedMemory(5, IPC_EXCL, backend=SimulatedBackend())

    def test_exclusive_on_taken_key(self) -> None:
        """IPC_CREX on an existing key is ExistentialError."""
        backend = SimulatedBackend()
        SharedMemory(5, IPC_CREX, backend=backend)
        with pytest.raises(ExistentialError, match="already exists"):
            SharedMemory(5, IPC_CREX, backend=backend)

    def test_open_missing_key(self) -> None:
        """Opening an unknown key is ExistentialError."""
        with pytest.raises(ExistentialError, match="No shared memory"):
            SharedMemory(5, backend=SimulatedBackend())

    def test_open_larger_than_existing(self) -> None:
        """Asking for more than the segment holds is a ValueError."""
        backend = SimulatedBackend()
        SharedMemory(5, IPC_CREX, size=16, backend=backend)
        with pytest.raises(ValueError, match="size"):
            SharedMemory(5, IPC_CREAT, size=32, backend=backend)

    def test_creat_opens_existing(self) -> None:
        """IPC_CREAT on an existing key reuses it without refilling."""
        backend = SimulatedBackend()
        first = SharedMemory(5, IPC_CREX, size=PAGE_SIZE, backend=backend)
        first.write(b"keep")
        second = SharedMemory(5, IPC_CREAT, backend=backend)
        assert second.id == first.id
        assert second.read(4) == b"keep"

    def test_null_key_touches_nothing(self) -> None:
        """A rejected key/flag combination makes no backend call."""
        backend = MagicMock(spec=IpcBackend)
        with pytest.raises(ValueError, match="Key can only be None"):
            SharedMemory(None, IPC_CREAT, backend=backend)
        assert backend.method_calls == []

    def test_key_allocation_exhausted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """When every drawn key collides, KeyAllocationError is raised."""
        backend = SimulatedBackend(key_attempts=3)
        SharedMemory(77, IPC_CREX, backend=backend)
        monkeypatch.setattr(keys, "generate_random_key", lambda: 77)
        with pytest.raises(KeyAllocationError):
            SharedMemory(None, IPC_CREX, backend=backend)
        assert len(backend.logger.filter(source="shm", min_level=LogLevel.DEBUG)) >= 3

    def test_creation_is_logged(self) -> None:
        """Creating and attaching leave entries in the audit log."""
        backend = SimulatedBackend()
        mem = _segment(backend)
        messages = [e.message for e in backend.logger.filter(source="shm")]
        assert f"Created segment key={mem.key} id={mem.id} (generated key)" in messages
        assert any(m.startswith(f"Attached segment id={mem.id}") for m in messages)


class TestReadWrite:
    """Verify reading and writing."""

    def test_round_trip(self) -> None:
        """What is written at an offset reads back."""
        mem = _segment()
        mem.write(b"hello", offset=10)
        assert mem.read(5, offset=10) == b"hello"

    def test_write_str(self) -> None:
        """Strings are encoded as UTF-8."""
        mem = _segment()
        mem.write("héllo")
        assert mem.read(6) == "héllo".encode()

    def test_write_buffer(self) -> None:
        """Any bytes-like object is accepted."""
        mem = _segment()
        mem.write(bytearray(b"abc"))
        mem.write(memoryview(b"de"), offset=3)
        assert mem.read(5) == b"abcde"

    def test_read_defaults_to_the_end(self) -> None:
        """byte_count 0, or too large, reads to the end."""
        mem = _segment(size=8)
        assert len(mem.read()) == 8
        assert len(mem.read(100, offset=6)) == 2

    def test_read_bounds(self) -> None:
        """The offset must lie inside the segment."""
        mem = _segment(size=8)
        assert len(mem.read(offset=7)) == 1
        with pytest.raises(ValueError, match="offset"):
            mem.read(offset=8)
        with pytest.raises(ValueError, match="byte_count"):
            mem.read(-1)

    def test_write_bounds(self) -> None:
        """Writes may fill the segment exactly but not run past it."""
        mem = _segment(size=8)
        mem.write(b"12345678")
        mem.write(b"", offset=8)
        with pytest.raises(ValueError, match="past end"):
            mem.write(b"x", offset=8)
        with pytest.raises(ValueError, match="past end"):
            mem.write(b"123456789")

    def test_read_only(self) -> None:
        """Without owner write permission the segment attaches read-only."""
        mem = _segment(mode=0o400)
        assert mem.read_only
        with pytest.raises(ReadOnlyError) as info:
            mem.write(b"x")
        assert isinstance(info.value, OSError)

    def test_buffer_protocol(self) -> None:
        """memoryview() exposes the segment without copying."""
        mem = _segment(size=8)
        view = memoryview(mem)
        assert len(view) == 8
        view[0:3] = b"abc"
        assert mem.read(3) == b"abc"

    def test_read_only_buffer(self) -> None:
        """A read-only mapping yields a read-only view."""
        assert memoryview(_segment(mode=0o400)).readonly


class _HugeSegmentBackend(SimulatedBackend):
    """A model kernel that can claim a segment is far larger than it is."""

    def __init__(self) -> None:
        super().__init__()
        self.reported_size: int | None = None
        self.reads: list[tuple[int, int]] = []
        self.writes: list[tuple[int, bytes]] = []

    def shm_stat(self, shmid: int) -> ShmStat:
        """Report ``reported_size`` once it is set."""
        stat = super().shm_stat(shmid)
        if self.reported_size is None:
            return stat
        return dataclasses.replace(stat, size=self.reported_size)

    def read_memory(self, address: int, count: int) -> bytes:
        """Record the read instead of touching memory."""
        self.reads.append((address, count))
        return bytes(count)

    def write_memory(self, address: int, data: bytes) -> None:
        """Record the write instead of touching memory."""
        self.writes.append((address, data))


class TestSizeBoundary:
    """Verify bounds checks on segments near the integer-width limit."""

    def test_largest_ssize(self) -> None:
        """A segment of sys.maxsize bytes is bounded without overflow."""
        backend = _HugeSegmentBackend()
        mem = _segment(backend)
        backend.reported_size = sys.maxsize
        assert mem.address is not None
        with pytest.raises(ValueError, match="past end"):
            mem.write(b"x", offset=sys.maxsize)
        with pytest.raises(ValueError, match="offset"):
            mem.read(offset=sys.maxsize)
        assert mem.read(offset=sys.maxsize - 1) == b"\0"
        assert backend.reads == [(mem.address + sys.maxsize - 1, 1)]
        assert backend.writes == []

    def test_larger_than_ssize(self) -> None:
        """A size_t-sized segment refuses a read to the end it cannot return."""
        size = 2**64 - 1
        backend = _HugeSegmentBackend()
        mem = _segment(backend)
        backend.reported_size = size
        with pytest.raises(ValueError, match="too big"):
            mem.read()
        assert mem.read(4, offset=size - 4) == bytes(4)
        with pytest.raises(ValueError, match="past end"):
            mem.write(b"12345", offset=size - 4)


class TestAttachment:
    """Verify the attach/detach state machine."""

    def test_detach_and_reattach(self) -> None:
        """A detached segment refuses I/O until attached again."""
        mem = _segment()
        mem.write(b"data")
        mem.detach()
        assert not mem.attached
        assert mem.address is None
        with pytest.raises(NotAttachedError):
            mem.read()
        with pytest.raises(NotAttachedError):
            mem.write(b"x")
        with pytest.raises(NotAttachedError):
            memoryview(mem)
        with pytest.raises(NotAttachedError):
            mem.detach()
        mem.attach()
        assert mem.read(4) == b"data"

    def test_attach_twice_replaces_mapping(self) -> None:
        """Attaching while attached detaches the old mapping first."""
        mem = _segment()
        mem.attach()
        assert mem.number_attached == 1

    def test_attach_function(self) -> None:
        """attach() wraps an existing segment by id."""
        backend = SimulatedBackend()
        mem = _segment(backend)
        mem.write(b"shared")
        other = attach(mem.id, backend=backend)
        assert other.key == mem.key
        assert other.read(6) == b"shared"
        assert mem.number_attached == 2

    def test_attach_unknown_id(self) -> None:
        """attach() on a missing id is ExistentialError."""
        with pytest.raises(ExistentialError):
            attach(999, backend=SimulatedBackend())

    def test_stats(self) -> None:
        """Kernel bookkeeping is exposed as properties."""
        mem = _segment()
        assert mem.creator_pid == os.getpid()
        assert mem.last_pid == os.getpid()
        assert mem.last_attach_time > 0
        assert mem.last_detach_time == 0
        assert mem.last_change_time > 0
        mem.detach()
        assert mem.last_detach_time > 0
        assert mem.number_attached == 0


class TestRemoval:
    """Verify removal and the end-to-end lifecycle."""

    def test_lifecycle(self) -> None:
        """Two handles share data; after removal the key is gone."""
        backend = SimulatedBackend()
        creator = SharedMemory(4242, IPC_CREX, size=4096, backend=backend)
        creator.write(b"hello")
        reader = SharedMemory(4242, backend=backend)
        assert reader.read(5, 0) == b"hello"

        creator.remove()
        assert reader.read(5) == b"hello"
        with pytest.raises(ExistentialError):
            SharedMemory(4242, backend=backend)

    def test_remove_twice(self) -> None:
        """A second removal of a freed segment is ExistentialError."""
        mem = _segment()
        mem.detach()
        mem.remove()
        with pytest.raises(ExistentialError):
            mem.remove()

    def test_remove_function(self) -> None:
        """remove_shared_memory() works by id and logs it."""
        backend = SimulatedBackend()
        mem = _segment(backend)
        mem.detach()
        remove_shared_memory(mem.id, backend=backend)
        assert f"[INFO] shm: Removed segment id={mem.id}" in backend.dmesg()
        with pytest.raises(ExistentialError):
            mem.stat()


class TestOwnership:
    """Verify permission checks and metadata updates."""

    def test_stranger_cannot_open(self) -> None:
        """Mode 0o600 keeps other users out."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        SharedMemory(5, IPC_CREX, backend=backend)
        backend.uid = backend.gid = STRANGER
        with pytest.raises(PermissionsError):
            SharedMemory(5, backend=backend)

    def test_stranger_cannot_remove(self) -> None:
        """Only the owner or creator may remove."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        mem = SharedMemory(5, IPC_CREX, mode=0o666, backend=backend)
        backend.uid = backend.gid = STRANGER
        with pytest.raises(PermissionsError):
            mem.remove()

    def test_change_mode(self) -> None:
        """Setting mode leaves owner fields alone."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        mem = SharedMemory(5, IPC_CREX, backend=backend)
        mem.mode = 0o644
        assert mem.mode == 0o644
        assert (mem.uid, mem.gid, mem.cuid, mem.cgid) == (OWNER, OWNER, OWNER, OWNER)

    def test_change_owner(self) -> None:
        """uid and gid are settable by the owner."""
        backend = SimulatedBackend(uid=OWNER, gid=OWNER)
        mem = SharedMemory(5, IPC_CREX, backend=backend)
        mem.gid = 55
        assert mem.gid == 55
        assert mem.cgid == OWNER

    def test_setter_type(self) -> None:
        """Non-integers are rejected."""
        mem = _segment()
        with pytest.raises(TypeError):
            mem.uid = "root"  # type: ignore[assignment]


class TestRepresentation:
    """Verify str() and repr()."""

    def test_str_and_repr(self) -> None:
        """str() names key and id; repr() looks like a constructor."""
        mem = SharedMemory(12, IPC_CREX, backend=SimulatedBackend())
        assert str(mem) == f"Key=12, id={mem.id}"
        assert repr(mem) == "py_ipc.SharedMemory(12)"
