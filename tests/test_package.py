"""Tests for the package surface and the process-wide default backend."""

from collections.abc import Iterator

import pytest

import py_ipc
from py_ipc import (
    IPC_CREX,
    MessageQueue,
    Semaphore,
    SharedMemory,
    SimulatedBackend,
    attach,
    get_default_backend,
    remove_message_queue,
    remove_semaphore,
    remove_shared_memory,
    set_default_backend,
)


@pytest.fixture
def simulated_default() -> Iterator[SimulatedBackend]:
    """Install a simulated backend as the process-wide default."""
    backend = SimulatedBackend()
    set_default_backend(backend)
    yield backend
    set_default_backend(None)


class TestExports:
    """Verify the public names."""

    def test_all_names_resolve(self) -> None:
        """Everything in __all__ is importable from the package."""
        for name in py_ipc.__all__:
            assert hasattr(py_ipc, name), name

    def test_version(self) -> None:
        """VERSION is a dotted string."""
        assert py_ipc.VERSION.count(".") == 2

    def test_linux_flags(self) -> None:
        """The Linux-only attach flags are exported exactly on Linux."""
        assert ("SHM_HUGETLB" in py_ipc.__all__) == py_ipc.constants.IS_LINUX


class TestDefaultBackend:
    """Verify that omitting backend= uses the process-wide one."""

    def test_facilities_use_default(self, simulated_default: SimulatedBackend) -> None:
        """All three facilities pick up the installed default."""
        assert get_default_backend() is simulated_default
        mem = SharedMemory(None, IPC_CREX)
        sem = Semaphore(None, IPC_CREX, initial_value=1)
        mq = MessageQueue(None, IPC_CREX)
        sources = {entry.source for entry in simulated_default.logger.entries}
        assert sources == {"shm", "sem", "mq"}

        other = attach(mem.id)
        assert other.attached
        other.detach()
        mem.detach()
        remove_shared_memory(mem.id)
        remove_semaphore(sem.id)
        remove_message_queue(mq.id)
        removed = [line for line in simulated_default.dmesg() if "Removed" in line]
        assert len(removed) == 3
