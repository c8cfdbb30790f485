"""Shared memory — a kernel segment mapped into several address spaces.

Shared memory is the fastest IPC mechanism: once two processes have the
same segment attached, a write by one is visible to the other with no
copying and no kernel call.  The price is that nothing coordinates the
writers; pair a segment with a ``Semaphore`` when several processes
mutate it.

A ``SharedMemory`` object moves through two independent axes:

    Unattached ⇄ Attached        (``attach()`` / ``detach()``)
    Exists → Removed             (``remove()``)

Removal only unlinks the key.  Mappings that already exist stay valid
until they are detached, and the kernel frees the memory after the last
one goes.

Bounds are checked by subtraction (``len(data) > size - offset``), never
by adding ``offset + len(data)``, so the comparison holds at any width.
"""

import errno
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Buffer

from py_ipc.backend import IpcBackend, PermField, ShmStat, get_default_backend
from py_ipc.constants import DEFAULT_MODE, IPC_CREX, PAGE_SIZE, PERMISSION_BITS, SHM_RDONLY
from py_ipc.errors import (
    ErrorTable,
    ExistentialError,
    NotAttachedError,
    PermissionsError,
    ReadOnlyError,
    translate,
)
from py_ipc.keys import check_creation_flags, convert_key, create_with_key
from py_ipc.logging import LogLevel

SOURCE = "shm"

_GET_ERRORS: ErrorTable = {
    errno.EACCES: (PermissionsError, "Permission {mode:o} cannot be granted on the existing segment"),
    errno.EEXIST: (ExistentialError, "Shared memory with the key {key} already exists"),
    errno.ENOENT: (ExistentialError, "No shared memory exists with the key {key}"),
    errno.EINVAL: (ValueError, "The size is invalid"),
    errno.ENOMEM: (MemoryError, "Not enough memory"),
    errno.ENOSPC: (OSError, "Not enough shared memory identifiers available (ENOSPC)"),
}

_ATTACH_ERRORS: ErrorTable = {
    errno.EACCES: (PermissionsError, "No permission to attach"),
    errno.ENOMEM: (MemoryError, "Not enough memory"),
    errno.EINVAL: (ValueError, "Invalid id, address, or flags"),
}

_DETACH_ERRORS: ErrorTable = {
    errno.EINVAL: (NotAttachedError, "Not attached"),
}

_REMOVE_ERRORS: ErrorTable = {
    errno.EIDRM: (ExistentialError, "No shared memory with id {id} exists"),
    errno.EINVAL: (ExistentialError, "No shared memory with id {id} exists"),
    errno.EPERM: (PermissionsError, "You do not have permission to remove the shared memory"),
}

_CTL_ERRORS: ErrorTable = {
    errno.EIDRM: (ExistentialError, "No shared memory with id {id} exists"),
    errno.EINVAL: (ExistentialError, "No shared memory with id {id} exists"),
    errno.EACCES: (PermissionsError, "Permission denied"),
    errno.EPERM: (PermissionsError, "Permission denied"),
}


class SharedMemory:
    """One System V shared memory segment.

    Construction finds or creates the segment and attaches it
    immediately, read-write if *mode* grants the owner write permission
    and read-only otherwise.

    Example::

        mem = SharedMemory(None, IPC_CREX, size=4096)
        mem.write(b"hello")
        mem.read(5)          # b'hello'
        mem.detach()
        mem.remove()

    """

    def __init__(
        self,
        key: int | None,
        flags: int = 0,
        mode: int = DEFAULT_MODE,
        size: int = 0,
        init_character: bytes = b" ",
        *,
        backend: IpcBackend | None = None,
    ) -> None:
        """Find or create a segment and attach it.

        Args:
            key: The segment's key, or None to generate one (requires
                ``IPC_EXCL``).
            flags: ``0`` to open, ``IPC_CREAT`` to open or create,
                ``IPC_CREX`` to create only.
            mode: Permission bits for a new segment.
            size: Segment size in bytes.  0 means one page when creating
                and "whatever it is" when opening.
            init_character: The byte a freshly created segment is filled
                with.
            backend: Kernel interface; defaults to the process-wide one.

        Raises:
            ValueError: On a bad key/flag combination, size, or
                ``init_character``.
            TypeError: If the key is not an integer.
            PermissionsError: If the existing segment denies access.
            ExistentialError: If the key is taken (``IPC_CREX``) or
                missing (no ``IPC_CREAT``).
            KeyAllocationError: If no free random key was found.

        """
        self._backend = backend if backend is not None else get_default_backend()
        self._address: int | None = None
        self._read_only = False

        converted = convert_key(key)
        create_flags = check_creation_flags(converted, flags)
        mode &= PERMISSION_BITS
        if size < 0:
            msg = "The size must be non-negative"
            raise ValueError(msg)
        if not isinstance(init_character, bytes) or len(init_character) != 1:
            msg = "init_character must be a single byte"
            raise ValueError(msg)
        if create_flags & IPC_CREX and size == 0:
            size = PAGE_SIZE

        try:
            self._key, self._id = create_with_key(
                lambda k: self._backend.shmget(k, size, create_flags | mode),
                converted,
                attempts=self._backend.key_attempts,
                logger=self._backend.logger,
                source=SOURCE,
            )
        except OSError as exc:
            raise translate(exc, _GET_ERRORS, key=converted, mode=mode) from exc

        action = "Created" if create_flags & IPC_CREX == IPC_CREX else "Opened"
        generated = " (generated key)" if converted is None else ""
        self._log(f"{action} segment key={self._key} id={self._id}{generated}")

        self.attach(None, 0 if mode & 0o200 else SHM_RDONLY)

        if create_flags & IPC_CREX == IPC_CREX and not self._read_only:
            assert self._address is not None  # noqa: S101
            self._backend.fill_memory(self._address, init_character[0], self.size)

    @classmethod
    def from_id(cls, shmid: int, *, backend: IpcBackend | None = None) -> "SharedMemory":
        """Wrap an existing segment by handle, without attaching it.

        Raises:
            ExistentialError: If no segment has that id.
            PermissionsError: If its metadata cannot be read.

        """
        mem = cls.__new__(cls)
        mem._backend = backend if backend is not None else get_default_backend()
        mem._id = shmid
        mem._address = None
        mem._read_only = False
        mem._key = mem.stat().perm.key
        return mem

    def _log(self, message: str) -> None:
        self._backend.logger.log(LogLevel.INFO, message, source=SOURCE)

    def _require_attached(self) -> int:
        if self._address is None:
            msg = "Not attached"
            raise NotAttachedError(msg)
        return self._address

    def stat(self) -> ShmStat:
        """Return the segment's kernel metadata."""
        try:
            return self._backend.shm_stat(self._id)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    def _set_perm(self, name: PermField, value: int) -> None:
        if not isinstance(value, int):
            msg = f"The {name} must be an integer"
            raise TypeError(msg)
        # IPC_SET writes all three fields; start from the current ones.
        perm = self.stat().perm.with_field(name, value)
        try:
            self._backend.shm_set(self._id, perm)
        except OSError as exc:
            raise translate(exc, _CTL_ERRORS, id=self._id) from exc

    # -- Operations ----------------------------------------------------------

    def attach(self, address: int | None = None, flags: int = 0) -> None:
        """Map the segment into this process.

        Any existing mapping held by this object is detached first.

        Args:
            address: Preferred address, or None to let the kernel pick.
            flags: ``SHM_RND``, ``SHM_RDONLY`` and friends.

        Raises:
            PermissionsError: If the requested access is not allowed.
            ValueError: If the id, address or flags are invalid.
            MemoryError: If the address space is exhausted.

        """
        if self._address is not None:
            self.detach()
        try:
            self._address = self._backend.shmat(self._id, address, flags)
        except OSError as exc:
            raise translate(exc, _ATTACH_ERRORS) from exc
        self._read_only = bool(flags & SHM_RDONLY)
        mode = "read-only" if self._read_only else "read-write"
        self._log(f"Attached segment id={self._id} at {self._address:#x} ({mode})")

    def detach(self) -> None:
        """Unmap the segment.

        Raises:
            NotAttachedError: If this object holds no mapping.

        """
        address = self._require_attached()
        try:
            self._backend.shmdt(address)
        except OSError as exc:
            raise translate(exc, _DETACH_ERRORS) from exc
        self._address = None
        self._log(f"Detached segment id={self._id}")

    def read(self, byte_count: int = 0, offset: int = 0) -> bytes:
        """Copy bytes out of the segment.

        Args:
            byte_count: How many bytes to read.  0, or more than remain
                after *offset*, means "up to the end".
            offset: Where to start.

        Returns:
            The bytes read.

        Raises:
            NotAttachedError: If the segment is not attached.
            ValueError: If *offset* is outside the segment or
                *byte_count* is negative.

        """
        address = self._require_attached()
        if byte_count < 0:
            msg = "The byte_count cannot be negative"
            raise ValueError(msg)
        size = self.size
        if offset < 0 or offset >= size:
            msg = "The offset must be non-negative and less than the segment size"
            raise ValueError(msg)
        available = size - offset
        if byte_count == 0 or byte_count > available:
            if available > sys.maxsize:
                msg = "The segment is too big to read in one piece"
                raise ValueError(msg)
            byte_count = available
        return self._backend.read_memory(address + offset, byte_count)

    def write(self, data: "str | Buffer", offset: int = 0) -> None:
        """Copy bytes into the segment.

        Args:
            data: Bytes-like object, or ``str`` (encoded as UTF-8).
            offset: Where to start writing.

        Raises:
            NotAttachedError: If the segment is not attached.
            ReadOnlyError: If it was attached with ``SHM_RDONLY``.
            ValueError: If the data would run past the end.

        """
        address = self._require_attached()
        if self._read_only:
            raise ReadOnlyError(errno.EACCES, "Write attempt on read-only memory segment")
        payload = data.encode() if isinstance(data, str) else memoryview(data).tobytes()
        size = self.size
        if offset < 0 or offset > size:
            msg = "The offset must be non-negative and no more than the segment size"
            raise ValueError(msg)
        if len(payload) > size - offset:
            msg = "Attempt to write past end of memory segment"
            raise ValueError(msg)
        self._backend.write_memory(address + offset, payload)

    def remove(self) -> None:
        """Mark the segment for destruction (``IPC_RMID``).

        Raises:
            ExistentialError: If it no longer exists.
            PermissionsError: If the caller is neither owner nor creator.

        """
        remove_shared_memory(self._id, backend=self._backend)

    # -- Buffer protocol -----------------------------------------------------

    def __buffer__(self, flags: int, /) -> memoryview:
        """Expose the attached segment to ``memoryview()`` without copying."""
        address = self._require_attached()
        return self._backend.memory_view(address, self.size, readonly=self._read_only)

    # -- Attributes ----------------------------------------------------------

    @property
    def key(self) -> int:
        """Return the key the segment was found or created with."""
        return self._key

    @property
    def id(self) -> int:
        """Return the kernel handle."""
        return self._id

    @property
    def address(self) -> int | None:
        """Return the base address of the mapping, or None."""
        return self._address

    @property
    def attached(self) -> bool:
        """Return True while a mapping exists."""
        return self._address is not None

    @property
    def read_only(self) -> bool:
        """Return True if the current mapping is read-only."""
        return self._read_only

    @property
    def size(self) -> int:
        """Return the segment size in bytes."""
        return self.stat().size

    @property
    def last_attach_time(self) -> int:
        """Return when the segment was last attached (epoch seconds)."""
        return self.stat().atime

    @property
    def last_detach_time(self) -> int:
        """Return when the segment was last detached (epoch seconds)."""
        return self.stat().dtime

    @property
    def last_change_time(self) -> int:
        """Return when the segment's metadata last changed (epoch seconds)."""
        return self.stat().ctime

    @property
    def creator_pid(self) -> int:
        """Return the pid of the creating process."""
        return self.stat().cpid

    @property
    def last_pid(self) -> int:
        """Return the pid of the last process to attach or detach."""
        return self.stat().lpid

    @property
    def number_attached(self) -> int:
        """Return the number of live mappings, across all processes."""
        return self.stat().nattch

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
        return f"py_ipc.SharedMemory({self._key})"


def attach(
    shmid: int,
    address: int | None = None,
    flags: int = 0,
    *,
    backend: IpcBackend | None = None,
) -> SharedMemory:
    """Attach a segment known only by its handle.

    Args:
        shmid: The kernel handle.
        address: Preferred address, or None.
        flags: Attach flags, as for ``SharedMemory.attach``.
        backend: Kernel interface; defaults to the process-wide one.

    Returns:
        A ``SharedMemory`` object, already attached.

    """
    mem = SharedMemory.from_id(shmid, backend=backend)
    mem.attach(address, flags)
    return mem


def remove_shared_memory(shmid: int, *, backend: IpcBackend | None = None) -> None:
    """Remove a segment by handle.

    Raises:
        ExistentialError: If no segment has that id.
        PermissionsError: If the caller may not remove it.

    """
    backend = backend if backend is not None else get_default_backend()
    try:
        backend.shm_remove(shmid)
    except OSError as exc:
        raise translate(exc, _REMOVE_ERRORS, id=shmid) from exc
    backend.logger.log(LogLevel.INFO, f"Removed segment id={shmid}", source=SOURCE)
