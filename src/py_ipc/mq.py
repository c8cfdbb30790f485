"""Message queues — discrete, typed messages held by the kernel.

Unlike shared memory (one unstructured region) a message queue carries
separate messages, each a ``(type, payload)`` pair with a positive
integer type.  The queue keeps messages in send order; receivers pick
by type:

- ``type=0`` — the oldest message, whatever its type.
- ``type>0`` — the oldest message of exactly that type.
- ``type<0`` — a message whose type is at most ``|type|``.  Which one
  is kernel-dependent (Linux takes the lowest such type, other kernels
  differ); the value is passed through untouched.

Every receive allocates a buffer of ``max_message_size`` bytes, so that
attribute bounds both what ``send()`` accepts and what ``receive()`` can
return.
"""

import errno
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Buffer

from py_ipc.backend import IpcBackend, MsgStat, PermField, get_default_backend
from py_ipc.constants import (
    DEFAULT_MODE,
    IPC_CREX,
    IPC_NOWAIT,
    MESSAGE_TYPE_MAX,
    PERMISSION_BITS,
    QUEUE_MESSAGE_SIZE_MAX,
    QUEUE_MESSAGE_SIZE_MAX_DEFAULT,
)
from py_ipc.errors import (
    BusyError,
    ErrorTable,
    ExistentialError,
    InterruptError,
    PermissionsError,
    translate,
)
from py_ipc.keys import check_creation_flags, convert_key, create_with_key
from py_ipc.logging import LogLevel

SOURCE = "mq"

_GET_ERRORS: ErrorTable = {
    errno.EACCES: (PermissionsError, "Permission {mode:o} cannot be granted on the existing queue"),
    errno.EEXIST: (ExistentialError, "A queue with the key {key} already exists"),
    errno.ENOENT: (ExistentialError, "No queue exists with the key {key}"),
    errno.ENOMEM: (MemoryError, "Not enough memory"),
    errno.ENOSPC: (OSError, "The system limit for message queues has been reached"),
}

_SEND_ERRORS: ErrorTable = {
    errno.EACCES: (PermissionsError, "Permission denied"),
    errno.EAGAIN: (BusyError, "The queue is full"),
    errno.EIDRM: (ExistentialError, "The queue no longer exists"),
    errno.EINVAL: (ExistentialError, "The queue no longer exists"),
    errno.EINTR: (InterruptError, "Signaled while waiting"),
    errno.ENOMEM: (MemoryError, "Not enough memory"),
}

_RECEIVE_ERRORS: ErrorTable = {
    errno.EACCES: (PermissionsError, "Permission denied"),
    errno.EIDRM: (ExistentialError, "The queue no longer exists"),
    errno.EINVAL: (ExistentialError, "The queue no longer exists"),
    errno.EINTR: (InterruptError, "Signaled while waiting"),
    errno.ENOMSG: (BusyError, "No available messages of the specified type"),
    errno.E2BIG: (ValueError, "The message is longer than max_message_size"),
}

_CTL_ERRORS: ErrorTable = {
    errno.EIDRM: (ExistentialError, "No queue with id {id} exists"),
    errno.EINVAL: (ExistentialError, "No queue with id {id} exists"),
    errno.EACCES: (PermissionsError, "Permission denied"),
    errno.EPERM: (PermissionsError, "Permission denied"),
}

_REMOVE_ERRORS: ErrorTable = {
    errno.EIDRM: (ExistentialError, "No queue with id {id} exists"),
    errno.EINVAL: (ExistentialError, "No queue with id {id} exists"),
    errno.EPERM: (PermissionsError, "You do not have permission to remove the queue"),
}


class MessageQueue:
    """One System V message queue."""

    def __init__(
        self,
        key: int | None,
        flags: int = 0,
        mode: int = DEFAULT_MODE,
        max_message_size: int = QUEUE_MESSAGE_SIZE_MAX_DEFAULT,
        *,
        backend: IpcBackend | None = None,
    ) -> None:
        """Find or create a queue.

        Args:
            key: The key, or None to generate one (requires ``IPC_EXCL``).
            flags: ``0``, ``IPC_CREAT`` or ``IPC_CREX``.
            mode: Permission bits for a new queue.
            max_message_size: Largest payload this object sends or
                receives, at most ``QUEUE_MESSAGE_SIZE_MAX``.
            backend: Kernel interface; defaults to the process-wide one.

        Raises:
            ValueError: On a bad key/flag combination or message size.
            PermissionsError: If the existing queue denies access.
            ExistentialError: If the key is taken (``IPC_CREX``) or
                missing (no ``IPC_CREAT``).
            KeyAllocationError: If no free random key was found.

        """
        self._backend = backend if backend is not None else get_default_backend()

        converted = convert_key(key)
        create_flags = check_creation_flags(converted, flags)
        mode &= PERMISSION_BITS
        if not 0 <= max_message_size <= QUEUE_MESSAGE_SIZE_MAX:
            msg = f"The message length must be between 0 and {QUEUE_MESSAGE_SIZE_MAX} (QUEUE_MESSAGE_SIZE_MAX)"
            raise ValueError(msg)
        self._max_message_size = max_message_size

        try:
            self._key, self._id = create_with_key(
                lambda k: self._backend.msgget(k, create_flags | mode),
                converted,
                attempts=self._backend.key_attempts,
                logger=self._backend.logger,
                source=SOURCE,
            )
        except OSError as exc:
            raise translate(exc, _GET_ERRORS, key=converted, mode=mode) from exc

        action = "Created" if create_flags & IPC_CREX == IPC_CREX else "Opened"
        generated = " (generated key)" if converted is None else ""
        self._backend.logger.log(
            LogLevel.INFO,
            f"{action} queue key={self._key} id={self._id}{generated}",
            source=SOURCE,
        )

    @classmethod
    def from_id(
        cls,
        msqid: int,
        max_message_size: int = QUEUE_MESSAGE_SIZE_MAX_DEFAULT,
        *,
        backend: IpcBackend | None = None,
    ) -> "MessageQueue":
        """Wrap an existing queue by handle.

        Raises:
            ExistentialError: If no queue has that id.

        """
        queue = cls.__new__(cls)
        queue._backend = backend if backend is not None else get_default_backend()
        queue._id = msqid
        queue._max_message_size = max_message_size
        queue._key = queue.stat().perm.key
        return queue

    def stat(self) -> MsgStat:
        """Return the queue's kernel metadata."""
        try:
            return self._backend.msg_stat(self._id)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    def _set(self, *, name: PermField | None = None, value: int = 0, qbytes: int | None = None) -> None:
        if not isinstance(value, int) or (qbytes is not None and not isinstance(qbytes, int)):
            msg = "The value must be an integer"
            raise TypeError(msg)
        # IPC_SET writes every settable field; start from the current ones.
        stat = self.stat()
        perm = stat.perm if name is None else stat.perm.with_field(name, value)
        try:
            self._backend.msg_set(self._id, perm, stat.qbytes if qbytes is None else qbytes)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    # -- Operations ----------------------------------------------------------

    def send(self, message: "str | Buffer", block: bool = True, type: int = 1) -> None:  # noqa: A002
        """Put a message on the queue.

        Args:
            message: Bytes-like payload, or ``str`` (encoded as UTF-8).
            block: Wait for room if the queue is full; otherwise fail.
            type: Message type, a positive integer.

        Raises:
            ValueError: If *type* is not in ``1..MESSAGE_TYPE_MAX`` or the payload is
                longer than ``max_message_size``.
            BusyError: If the queue is full and *block* is False.
            ExistentialError: If the queue was removed.
            InterruptError: If a signal arrived while waiting.

        """
        if not 0 < type <= MESSAGE_TYPE_MAX:
            msg = f"The type must be > 0 and <= {MESSAGE_TYPE_MAX}"
            raise ValueError(msg)
        payload = message.encode() if isinstance(message, str) else memoryview(message).tobytes()
        if len(payload) > self._max_message_size:
            msg = f"The message length exceeds queue's max_message_size ({self._max_message_size})"
            raise ValueError(msg)
        try:
            self._backend.msgsnd(self._id, type, payload, 0 if block else IPC_NOWAIT)
        except OSError as exc:
            raise translate(exc, _SEND_ERRORS) from exc

    def receive(self, block: bool = True, type: int = 0) -> tuple[bytes, int]:  # noqa: A002
        """Take a message off the queue.

        Args:
            block: Wait for a matching message; otherwise fail.
            type: 0 for any, >0 for exactly that type, <0 for a type at
                most ``|type|`` (kernel-dependent choice).

        Returns:
            ``(payload, type)`` of the message received.

        Raises:
            ValueError: If ``|type|`` does not fit in a C long.
            BusyError: If nothing matches and *block* is False.
            ExistentialError: If the queue was removed.
            InterruptError: If a signal arrived while waiting.

        """
        if abs(type) > MESSAGE_TYPE_MAX:
            msg = f"The type must be between -{MESSAGE_TYPE_MAX} and {MESSAGE_TYPE_MAX}"
            raise ValueError(msg)
        try:
            return self._backend.msgrcv(self._id, self._max_message_size, type, 0 if block else IPC_NOWAIT)
        except OSError as exc:
            raise translate(exc, _RECEIVE_ERRORS) from exc

    def remove(self) -> None:
        """Destroy the queue and every message on it.

        Raises:
            ExistentialError: If it no longer exists.
            PermissionsError: If the caller is neither owner nor creator.

        """
        remove_message_queue(self._id, backend=self._backend)

    # -- Attributes ----------------------------------------------------------

    @property
    def key(self) -> int:
        """Return the queue's key."""
        return self._key

    @property
    def id(self) -> int:
        """Return the kernel handle."""
        return self._id

    @property
    def max_message_size(self) -> int:
        """Return the largest payload this object handles."""
        return self._max_message_size

    @property
    def max_size(self) -> int:
        """Return the queue's byte capacity (``msg_qbytes``)."""
        return self.stat().qbytes

    @max_size.setter
    def max_size(self, value: int) -> None:
        self._set(qbytes=value)

    @property
    def current_messages(self) -> int:
        """Return the number of messages waiting."""
        return self.stat().qnum

    @property
    def last_send_time(self) -> int:
        """Return when a message was last sent (epoch seconds)."""
        return self.stat().stime

    @property
    def last_receive_time(self) -> int:
        """Return when a message was last received (epoch seconds)."""
        return self.stat().rtime

    @property
    def last_change_time(self) -> int:
        """Return when the queue's metadata last changed (epoch seconds)."""
        return self.stat().ctime

    @property
    def last_send_pid(self) -> int:
        """Return the pid of the last sender."""
        return self.stat().lspid

    @property
    def last_receive_pid(self) -> int:
        """Return the pid of the last receiver."""
        return self.stat().lrpid

    @property
    def uid(self) -> int:
        """Return the owner's user id."""
        return self.stat().perm.uid

    @uid.setter
    def uid(self, value: int) -> None:
        self._set(name=PermField.UID, value=value)

    @property
    def gid(self) -> int:
        """Return the owner's group id."""
        return self.stat().perm.gid

    @gid.setter
    def gid(self, value: int) -> None:
        self._set(name=PermField.GID, value=value)

    @property
    def mode(self) -> int:
        """Return the permission bits."""
        return self.stat().perm.mode

    @mode.setter
    def mode(self, value: int) -> None:
        self._set(name=PermField.MODE, value=value)

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
        return f"py_ipc.MessageQueue({self._key})"


def remove_message_queue(msqid: int, *, backend: IpcBackend | None = None) -> None:
    """Remove a queue by handle.

    Raises:
        ExistentialError: If no queue has that id.
        PermissionsError: If the caller may not remove it.

    """
    backend = backend if backend is not None else get_default_backend()
    try:
        backend.msg_remove(msqid)
    except OSError as exc:
        raise translate(exc, _REMOVE_ERRORS, id=msqid) from exc
    backend.logger.log(LogLevel.INFO, f"Removed queue id={msqid}", source=SOURCE)
