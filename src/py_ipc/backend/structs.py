"""C struct layouts for the ``*_ds`` metadata records, one set per platform.

``shmctl``/``semctl``/``msgctl`` with ``IPC_STAT`` fill in a struct whose
layout (and even field names) differs between operating systems.  The
layouts are declared here once per platform and converted into the
platform-neutral dataclasses from ``backend.base``; nothing outside this
module knows that Darwin packs its structs to 4 bytes or that Linux keeps
the key in a field called ``__key``.

Supported: 64-bit Linux (glibc layout) and Darwin.
"""

import ctypes
import platform
import sys

from py_ipc.backend.base import IpcPerm, MsgStat, SemStat, ShmStat

c_time_t = ctypes.c_long

_X86 = platform.machine().lower() in {"x86_64", "amd64", "i386", "i686"}


if sys.platform == "darwin":

    class IpcPermStruct(ctypes.Structure):
        """``struct ipc_perm`` (Darwin, UNIX03)."""

        _fields_ = [
            ("uid", ctypes.c_uint32),
            ("gid", ctypes.c_uint32),
            ("cuid", ctypes.c_uint32),
            ("cgid", ctypes.c_uint32),
            ("mode", ctypes.c_uint16),
            ("_seq", ctypes.c_uint16),
            ("_key", ctypes.c_int32),
        ]

    class ShmidDs(ctypes.Structure):
        """``struct shmid_ds`` (Darwin)."""

        _pack_ = 4
        _fields_ = [
            ("shm_perm", IpcPermStruct),
            ("shm_segsz", ctypes.c_size_t),
            ("shm_lpid", ctypes.c_int32),
            ("shm_cpid", ctypes.c_int32),
            ("shm_nattch", ctypes.c_uint16),
            ("shm_atime", c_time_t),
            ("shm_dtime", c_time_t),
            ("shm_ctime", c_time_t),
            ("shm_internal", ctypes.c_void_p),
        ]

    class SemidDs(ctypes.Structure):
        """``struct semid_ds`` (Darwin)."""

        _pack_ = 4
        _fields_ = [
            ("sem_perm", IpcPermStruct),
            ("sem_base", ctypes.c_int32),
            ("sem_nsems", ctypes.c_uint16),
            ("sem_otime", c_time_t),
            ("sem_pad1", ctypes.c_int32),
            ("sem_ctime", c_time_t),
            ("sem_pad2", ctypes.c_int32),
            ("sem_pad3", ctypes.c_int32 * 4),
        ]

    class MsqidDs(ctypes.Structure):
        """``struct msqid_ds`` (Darwin)."""

        _pack_ = 4
        _fields_ = [
            ("msg_perm", IpcPermStruct),
            ("msg_first", ctypes.c_int32),
            ("msg_last", ctypes.c_int32),
            ("msg_cbytes", ctypes.c_ulong),
            ("msg_qnum", ctypes.c_ulong),
            ("msg_qbytes", ctypes.c_ulong),
            ("msg_lspid", ctypes.c_int32),
            ("msg_lrpid", ctypes.c_int32),
            ("msg_stime", c_time_t),
            ("msg_pad1", ctypes.c_int32),
            ("msg_rtime", c_time_t),
            ("msg_pad2", ctypes.c_int32),
            ("msg_ctime", c_time_t),
            ("msg_pad3", ctypes.c_int32),
            ("msg_pad4", ctypes.c_int32 * 4),
        ]

    def _perm_key(perm: IpcPermStruct) -> int:
        return perm._key

else:

    class IpcPermStruct(ctypes.Structure):  # type: ignore[no-redef]
        """``struct ipc_perm`` (glibc, 64-bit)."""

        _fields_ = [
            ("__key", ctypes.c_int32),
            ("uid", ctypes.c_uint32),
            ("gid", ctypes.c_uint32),
            ("cuid", ctypes.c_uint32),
            ("cgid", ctypes.c_uint32),
            ("mode", ctypes.c_uint16),
            ("__pad1", ctypes.c_uint16),
            ("__seq", ctypes.c_uint16),
            ("__pad2", ctypes.c_uint16),
            ("__glibc_reserved1", ctypes.c_ulong),
            ("__glibc_reserved2", ctypes.c_ulong),
        ]

    class ShmidDs(ctypes.Structure):  # type: ignore[no-redef]
        """``struct shmid_ds`` (glibc, 64-bit)."""

        _fields_ = [
            ("shm_perm", IpcPermStruct),
            ("shm_segsz", ctypes.c_size_t),
            ("shm_atime", c_time_t),
            ("shm_dtime", c_time_t),
            ("shm_ctime", c_time_t),
            ("shm_cpid", ctypes.c_int32),
            ("shm_lpid", ctypes.c_int32),
            ("shm_nattch", ctypes.c_ulong),
            ("__glibc_reserved5", ctypes.c_ulong),
            ("__glibc_reserved6", ctypes.c_ulong),
        ]

    class SemidDs(ctypes.Structure):  # type: ignore[no-redef]
        """``struct semid_ds`` (glibc, 64-bit).

        Only x86 keeps a reserved word after each timestamp.
        """

        _fields_ = [
            ("sem_perm", IpcPermStruct),
            ("sem_otime", c_time_t),
            *([("__glibc_reserved1", ctypes.c_ulong)] if _X86 else []),
            ("sem_ctime", c_time_t),
            *([("__glibc_reserved2", ctypes.c_ulong)] if _X86 else []),
            ("sem_nsems", ctypes.c_ulong),
            ("__glibc_reserved3", ctypes.c_ulong),
            ("__glibc_reserved4", ctypes.c_ulong),
        ]

    class MsqidDs(ctypes.Structure):  # type: ignore[no-redef]
        """``struct msqid_ds`` (glibc, 64-bit)."""

        _fields_ = [
            ("msg_perm", IpcPermStruct),
            ("msg_stime", c_time_t),
            ("msg_rtime", c_time_t),
            ("msg_ctime", c_time_t),
            ("__msg_cbytes", ctypes.c_ulong),
            ("msg_qnum", ctypes.c_ulong),
            ("msg_qbytes", ctypes.c_ulong),
            ("msg_lspid", ctypes.c_int32),
            ("msg_lrpid", ctypes.c_int32),
            ("__glibc_reserved4", ctypes.c_ulong),
            ("__glibc_reserved5", ctypes.c_ulong),
        ]

    def _perm_key(perm: IpcPermStruct) -> int:
        return getattr(perm, "__key")


class Timespec(ctypes.Structure):
    """``struct timespec`` for ``semtimedop``."""

    _fields_ = [("tv_sec", c_time_t), ("tv_nsec", ctypes.c_long)]


class Sembuf(ctypes.Structure):
    """``struct sembuf``: one semaphore operation."""

    _fields_ = [
        ("sem_num", ctypes.c_ushort),
        ("sem_op", ctypes.c_short),
        ("sem_flg", ctypes.c_short),
    ]


def message_buffer_type(size: int) -> type[ctypes.Structure]:
    """Return a ``struct msgbuf`` type with room for *size* payload bytes."""

    class MsgBuf(ctypes.Structure):
        _fields_ = [("mtype", ctypes.c_long), ("mtext", ctypes.c_char * max(size, 1))]

    return MsgBuf


def msg_cbytes(ds: MsqidDs) -> int:
    """Return the queue's current byte count, whatever the field is called."""
    if hasattr(ds, "msg_cbytes"):
        return ds.msg_cbytes
    return getattr(ds, "__msg_cbytes")


# -- Conversions -------------------------------------------------------------


def perm_from_struct(perm: IpcPermStruct) -> IpcPerm:
    """Convert a C ``ipc_perm`` into the neutral dataclass."""
    return IpcPerm(
        key=_perm_key(perm),
        uid=perm.uid,
        gid=perm.gid,
        cuid=perm.cuid,
        cgid=perm.cgid,
        mode=perm.mode,
    )


def apply_perm(target: IpcPermStruct, perm: IpcPerm) -> None:
    """Copy the settable fields of *perm* into a stat-ed C struct."""
    target.uid = perm.uid
    target.gid = perm.gid
    target.mode = perm.mode


def shm_stat_from_struct(ds: ShmidDs) -> ShmStat:
    """Convert a filled ``shmid_ds``."""
    return ShmStat(
        perm=perm_from_struct(ds.shm_perm),
        size=ds.shm_segsz,
        atime=ds.shm_atime,
        dtime=ds.shm_dtime,
        ctime=ds.shm_ctime,
        cpid=ds.shm_cpid,
        lpid=ds.shm_lpid,
        nattch=ds.shm_nattch,
    )


def sem_stat_from_struct(ds: SemidDs) -> SemStat:
    """Convert a filled ``semid_ds``."""
    return SemStat(
        perm=perm_from_struct(ds.sem_perm),
        otime=ds.sem_otime,
        ctime=ds.sem_ctime,
        nsems=ds.sem_nsems,
    )


def msg_stat_from_struct(ds: MsqidDs) -> MsgStat:
    """Convert a filled ``msqid_ds``."""
    return MsgStat(
        perm=perm_from_struct(ds.msg_perm),
        stime=ds.msg_stime,
        rtime=ds.msg_rtime,
        ctime=ds.msg_ctime,
        cbytes=msg_cbytes(ds),
        qnum=ds.msg_qnum,
        qbytes=ds.msg_qbytes,
        lspid=ds.msg_lspid,
        lrpid=ds.msg_lrpid,
    )
