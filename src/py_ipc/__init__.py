"""py-ipc — System V shared memory, semaphores and message queues.

Re-exports public symbols so callers can write::

    from py_ipc import IPC_CREX, SharedMemory, Semaphore, MessageQueue
"""

from py_ipc.backend import (
    IpcBackend,
    LibcBackend,
    SimulatedBackend,
    get_default_backend,
    set_default_backend,
)
from py_ipc.constants import (
    IPC_CREAT,
    IPC_CREX,
    IPC_EXCL,
    IPC_NOWAIT,
    IPC_PRIVATE,
    IS_LINUX,
    KEY_MAX,
    KEY_MIN,
    PAGE_SIZE,
    QUEUE_MESSAGE_SIZE_MAX,
    QUEUE_MESSAGE_SIZE_MAX_DEFAULT,
    SEM_UNDO,
    SEMAPHORE_TIMEOUT_SUPPORTED,
    SEMAPHORE_VALUE_MAX,
    SHM_RDONLY,
    SHM_RND,
    VERSION,
)
from py_ipc.errors import (
    BusyError,
    Error,
    ExistentialError,
    InternalError,
    InterruptError,
    KeyAllocationError,
    NotAttachedError,
    PermissionsError,
    ReadOnlyError,
)
from py_ipc.keys import ftok
from py_ipc.mq import MessageQueue, remove_message_queue
from py_ipc.semaphore import Semaphore, SemOp, remove_semaphore
from py_ipc.shm import SharedMemory, attach, remove_shared_memory

__all__ = [
    "IPC_CREAT",
    "IPC_CREX",
    "IPC_EXCL",
    "IPC_NOWAIT",
    "IPC_PRIVATE",
    "KEY_MAX",
    "KEY_MIN",
    "PAGE_SIZE",
    "QUEUE_MESSAGE_SIZE_MAX",
    "QUEUE_MESSAGE_SIZE_MAX_DEFAULT",
    "SEMAPHORE_TIMEOUT_SUPPORTED",
    "SEMAPHORE_VALUE_MAX",
    "SEM_UNDO",
    "SHM_RDONLY",
    "SHM_RND",
    "VERSION",
    "BusyError",
    "Error",
    "ExistentialError",
    "InternalError",
    "InterruptError",
    "IpcBackend",
    "KeyAllocationError",
    "LibcBackend",
    "MessageQueue",
    "NotAttachedError",
    "PermissionsError",
    "ReadOnlyError",
    "SemOp",
    "Semaphore",
    "SharedMemory",
    "SimulatedBackend",
    "attach",
    "ftok",
    "get_default_backend",
    "remove_message_queue",
    "remove_semaphore",
    "remove_shared_memory",
    "set_default_backend",
]

if IS_LINUX:
    from py_ipc.constants import SHM_HUGETLB, SHM_NORESERVE, SHM_REMAP

    __all__ += ["SHM_HUGETLB", "SHM_NORESERVE", "SHM_REMAP"]
