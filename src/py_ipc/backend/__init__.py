"""IPC backends — the kernel interface behind every facility class.

Re-exports the backend contract and both implementations, and manages
the process-wide default backend used when a caller does not pass one.
"""

import threading

from py_ipc.backend.base import IpcBackend, IpcPerm, MsgStat, PermField, SemStat, ShmStat
from py_ipc.backend.libc import LibcBackend
from py_ipc.backend.simulated import SimulatedBackend
from py_ipc.config import BACKEND_SIMULATED, IpcSettings, load_settings

__all__ = [
    "IpcBackend",
    "IpcPerm",
    "LibcBackend",
    "MsgStat",
    "PermField",
    "SemStat",
    "ShmStat",
    "SimulatedBackend",
    "create_backend",
    "get_default_backend",
    "set_default_backend",
]

_default: IpcBackend | None = None
_default_lock = threading.Lock()


def create_backend(settings: IpcSettings) -> IpcBackend:
    """Build the backend named by *settings*."""
    if settings.backend == BACKEND_SIMULATED:
        return SimulatedBackend(log_capacity=settings.log_capacity, key_attempts=settings.key_attempts)
    return LibcBackend(log_capacity=settings.log_capacity, key_attempts=settings.key_attempts)


def get_default_backend() -> IpcBackend:
    """Return the process-wide backend, creating it from the environment on first use."""
    global _default  # noqa: PLW0603
    with _default_lock:
        if _default is None:
            _default = create_backend(load_settings())
        return _default


def set_default_backend(backend: IpcBackend | None) -> None:
    """Replace the process-wide backend; None re-reads the environment on next use."""
    global _default  # noqa: PLW0603
    with _default_lock:
        _default = backend
