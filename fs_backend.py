"""
Backend interface for the FlatPass operation contract.

Every operation is path-addressed; the ones that work on an open resource
also accept an optional handle. Backends raise OSError (or FSError) on
failure and return plain values on success; the dispatcher turns both into
replies. Operations a backend does not override fail with ENOSYS.
"""

import errno
from typing import Iterator, List, Optional, Tuple

from fs_types import (
    Capability,
    DirectoryEntry,
    FSError,
    FileAttributes,
    FilesystemStats,
)
from handle_manager import FileHandleT, HandleManager


class Backend:
    """Abstract filesystem backend.

    Paths are absolute and '/'-separated, rooted at the mount point.
    """

    name = "abstract"

    def __init__(self):
        self.handles: HandleManager = HandleManager()
        self.dir_handles: HandleManager[str] = HandleManager()

    @property
    def capabilities(self) -> Capability:
        """Optional capabilities this backend can serve."""
        return Capability.NONE

    def destroy(self) -> None:
        """Called once at unmount."""

    # ==================== ATTRIBUTES ====================

    def getattr(self, path: str, fh: Optional[FileHandleT] = None) -> FileAttributes:
        raise FSError(errno.ENOSYS)

    def access(self, path: str, mode: int) -> None:
        raise FSError(errno.ENOSYS)

    def readlink(self, path: str) -> str:
        raise FSError(errno.ENOSYS)

    # ==================== DIRECTORIES ====================

    def opendir(self, path: str) -> FileHandleT:
        """Bind a directory handle to path once it is known to be a directory."""
        attrs = self.getattr(path)
        if not attrs.is_dir:
            raise FSError(errno.ENOTDIR)
        return self.dir_handles.issue(path)

    def releasedir(self, path: str, fh: FileHandleT) -> None:
        self.dir_handles.retire(fh)

    def iter_entries(self, path: str) -> Iterator[DirectoryEntry]:
        """Entries of the directory at path, without "." and ".."."""
        raise FSError(errno.ENOSYS)

    # ==================== CREATION ====================

    def mknod(self, path: str, mode: int, rdev: int) -> None:
        raise FSError(errno.ENOSYS)

    def mkdir(self, path: str, mode: int) -> None:
        raise FSError(errno.ENOSYS)

    def create(self, path: str, mode: int, flags: int) -> FileHandleT:
        raise FSError(errno.ENOSYS)

    def symlink(self, target: str, path: str) -> None:
        raise FSError(errno.ENOSYS)

    def link(self, target: str, path: str) -> None:
        raise FSError(errno.ENOSYS)

    # ==================== REMOVAL, RENAME, METADATA ====================

    def unlink(self, path: str) -> None:
        raise FSError(errno.ENOSYS)

    def rmdir(self, path: str) -> None:
        raise FSError(errno.ENOSYS)

    def rename(self, old: str, new: str, flags: int) -> None:
        raise FSError(errno.ENOSYS)

    def chmod(self, path: str, mode: int, fh: Optional[FileHandleT] = None) -> None:
        raise FSError(errno.ENOSYS)

    def chown(self, path: str, uid: int, gid: int, fh: Optional[FileHandleT] = None) -> None:
        raise FSError(errno.ENOSYS)

    def truncate(self, path: str, size: int, fh: Optional[FileHandleT] = None) -> None:
        raise FSError(errno.ENOSYS)

    def utimens(
        self,
        path: str,
        times: Tuple[int, int],
        fh: Optional[FileHandleT] = None,
    ) -> None:
        raise FSError(errno.ENOSYS)

    # ==================== FILE I/O ====================

    def open(self, path: str, flags: int) -> FileHandleT:
        raise FSError(errno.ENOSYS)

    def read(self, path: str, size: int, offset: int, fh: Optional[FileHandleT] = None) -> bytes:
        raise FSError(errno.ENOSYS)

    def write(self, path: str, data: bytes, offset: int, fh: Optional[FileHandleT] = None) -> int:
        raise FSError(errno.ENOSYS)

    def release(self, path: str, fh: FileHandleT) -> None:
        raise FSError(errno.ENOSYS)

    # ==================== OPTIONAL CAPABILITIES ====================

    def statfs(self, path: str) -> FilesystemStats:
        raise FSError(errno.EOPNOTSUPP)

    def fsync(self, path: str, datasync: bool, fh: Optional[FileHandleT] = None) -> None:
        raise FSError(errno.EOPNOTSUPP)

    def fallocate(
        self,
        path: str,
        mode: int,
        offset: int,
        length: int,
        fh: Optional[FileHandleT] = None,
    ) -> None:
        raise FSError(errno.EOPNOTSUPP)

    def getxattr(self, path: str, name: str) -> bytes:
        raise FSError(errno.EOPNOTSUPP)

    def setxattr(self, path: str, name: str, value: bytes, flags: int) -> None:
        raise FSError(errno.EOPNOTSUPP)

    def listxattr(self, path: str) -> List[str]:
        raise FSError(errno.EOPNOTSUPP)

    def removexattr(self, path: str, name: str) -> None:
        raise FSError(errno.EOPNOTSUPP)

    def copy_file_range(
        self,
        path_in: str,
        fh_in: Optional[FileHandleT],
        offset_in: int,
        path_out: str,
        fh_out: Optional[FileHandleT],
        offset_out: int,
        size: int,
        flags: int,
    ) -> int:
        raise FSError(errno.EOPNOTSUPP)

    def lseek(self, path: str, offset: int, whence: int, fh: Optional[FileHandleT] = None) -> int:
        raise FSError(errno.EOPNOTSUPP)
