"""
Shared data model for the FlatPass operation contract.

Holds the records that flow between the dispatcher and the backends:
file attributes, directory entries, filesystem statistics, the reply
returned by every operation, and the capability flags negotiated at
mount time.
"""

import errno
import os
import stat
from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import Any, NamedTuple, Optional


# Timestamp sentinels for utimens (Linux values from <sys/stat.h>)
UTIME_NOW = (1 << 30) - 1
UTIME_OMIT = (1 << 30) - 2

# Directory-entry type tags are shifted into the stat mode field by 12 bits
DTYPE_SHIFT = 12

DT_UNKNOWN = 0
DT_FIFO = stat.S_IFIFO >> DTYPE_SHIFT
DT_CHR = stat.S_IFCHR >> DTYPE_SHIFT
DT_DIR = stat.S_IFDIR >> DTYPE_SHIFT
DT_BLK = stat.S_IFBLK >> DTYPE_SHIFT
DT_REG = stat.S_IFREG >> DTYPE_SHIFT
DT_LNK = stat.S_IFLNK >> DTYPE_SHIFT
DT_SOCK = stat.S_IFSOCK >> DTYPE_SHIFT


class FSError(OSError):
    """OSError raised for failures that do not come from a host call."""

    def __init__(self, code: int):
        super().__init__(code, os.strerror(code))


class Reply(NamedTuple):
    """Result of one dispatched operation.

    ``status`` is zero or positive on success (a count or an offset) and a
    negative errno on failure. ``value`` carries any payload.
    """
    status: int
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status >= 0

    @classmethod
    def error(cls, code: int) -> "Reply":
        return cls(-abs(code or errno.EIO))


class Capability(Flag):
    """Optional operations whose availability is negotiated at mount time."""
    NONE = 0
    STATFS = auto()
    FSYNC = auto()
    FALLOCATE = auto()
    XATTR = auto()
    COPY_FILE_RANGE = auto()
    LSEEK = auto()

    @classmethod
    def all(cls) -> "Capability":
        caps = cls.NONE
        for member in cls:
            caps |= member
        return caps

    @classmethod
    def parse(cls, names) -> "Capability":
        """Build a capability set from names such as ``"xattr"``."""
        caps = cls.NONE
        for name in names:
            try:
                caps |= cls[name.strip().upper().replace('-', '_')]
            except KeyError:
                raise ValueError(f"Unknown capability: {name}") from None
        return caps


class ReaddirMode(Enum):
    """How readdir treats offsets."""
    OFFSET_OBLIVIOUS = "oblivious"
    OFFSET_TRACKING = "tracking"


@dataclass
class FileAttributes:
    """Attributes reported by getattr and readdir."""
    st_mode: int = 0
    st_nlink: int = 0
    st_uid: int = 0
    st_gid: int = 0
    st_size: int = 0
    st_atime_ns: int = 0
    st_mtime_ns: int = 0
    st_ctime_ns: int = 0
    st_rdev: int = 0
    st_ino: Optional[int] = None

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "FileAttributes":
        """Create FileAttributes from a host stat result."""
        return cls(
            st_mode=st.st_mode,
            st_nlink=st.st_nlink,
            st_uid=st.st_uid,
            st_gid=st.st_gid,
            st_size=st.st_size,
            st_atime_ns=st.st_atime_ns,
            st_mtime_ns=st.st_mtime_ns,
            st_ctime_ns=st.st_ctime_ns,
            st_rdev=st.st_rdev,
            st_ino=st.st_ino,
        )

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.st_mode)

    @property
    def is_file(self) -> bool:
        return stat.S_ISREG(self.st_mode)


@dataclass
class DirectoryEntry:
    """One name produced during directory enumeration."""
    name: str
    attrs: Optional[FileAttributes] = None
    offset: int = 0


@dataclass
class FilesystemStats:
    """Filesystem statistics returned by statfs."""
    f_bsize: int = 0
    f_frsize: int = 0
    f_blocks: int = 0
    f_bfree: int = 0
    f_bavail: int = 0
    f_files: int = 0
    f_ffree: int = 0
    f_favail: int = 0
    f_namemax: int = 0

    @classmethod
    def from_statvfs(cls, st: os.statvfs_result) -> "FilesystemStats":
        return cls(
            f_bsize=st.f_bsize,
            f_frsize=st.f_frsize,
            f_blocks=st.f_blocks,
            f_bfree=st.f_bfree,
            f_bavail=st.f_bavail,
            f_files=st.f_files,
            f_ffree=st.f_ffree,
            f_favail=st.f_favail,
            f_namemax=st.f_namemax,
        )
