"""
PassthroughBackend - forwards every operation to the host filesystem.

The backend is stateless apart from its handle table: each handle owns one
host file descriptor. Paths are mapped onto a source directory on the host
(the host root by default).

Calls that arrive without a handle reopen the path for the duration of that
single call. Such a transient descriptor is not coordinated with handles
other callers hold on the same file, so there is no atomicity between a
handle-based caller and a path-based caller racing on one file.
"""

import errno
import logging
import os
import stat
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from fs_backend import Backend
from fs_types import (
    Capability,
    DirectoryEntry,
    DTYPE_SHIFT,
    DT_DIR,
    DT_LNK,
    DT_REG,
    DT_UNKNOWN,
    FSError,
    FileAttributes,
    FilesystemStats,
    UTIME_NOW,
    UTIME_OMIT,
)
from handle_manager import FileHandleT


logger = logging.getLogger("FlatPass.Passthrough")


def _entry_dtype(entry: os.DirEntry) -> int:
    """Directory-entry type tag of entry, as reported by the host."""
    if entry.is_symlink():
        return DT_LNK
    if entry.is_dir(follow_symlinks=False):
        return DT_DIR
    if entry.is_file(follow_symlinks=False):
        return DT_REG
    # Devices, FIFOs and sockets need a stat to be told apart
    try:
        mode = entry.stat(follow_symlinks=False).st_mode
    except FileNotFoundError:
        return DT_UNKNOWN
    return stat.S_IFMT(mode) >> DTYPE_SHIFT


class PassthroughBackend(Backend):
    """
    Pass-through backend over a host directory.

    Usage:
        backend = PassthroughBackend(source_dir="/srv/data")
        fh = backend.open("/notes.txt", os.O_RDONLY)
        data = backend.read("/notes.txt", 4096, 0, fh)
        backend.release("/notes.txt", fh)
    """

    name = "passthrough"

    def __init__(self, source_dir: str = "/"):
        super().__init__()
        self.source_dir = os.path.abspath(source_dir)

        if not os.path.isdir(self.source_dir):
            raise ValueError(f"Source directory does not exist: {self.source_dir}")

    @property
    def capabilities(self) -> Capability:
        caps = Capability.STATFS | Capability.FSYNC | Capability.LSEEK
        if hasattr(os, "posix_fallocate"):
            caps |= Capability.FALLOCATE
        if hasattr(os, "getxattr"):
            caps |= Capability.XATTR
        if hasattr(os, "copy_file_range"):
            caps |= Capability.COPY_FILE_RANGE
        return caps

    def destroy(self) -> None:
        """Close every descriptor still held by a handle."""
        for fh in self.handles.live_handles():
            fd = self.handles.retire(fh)
            try:
                os.close(fd)
            except OSError as e:
                logger.warning("Failed to close fd %d at unmount: %s", fd, e)

    # ==================== PATH/FD HELPERS ====================

    def _full_path(self, path: str) -> str:
        """Map a mount-relative path onto the host."""
        return os.path.join(self.source_dir, path.lstrip("/"))

    @contextmanager
    def _descriptor(self, path: str, fh: Optional[FileHandleT], flags: int):
        """Yield the handle's fd, or open path transiently and close it after."""
        if fh is not None:
            yield self.handles.get(fh)
            return

        fd = os.open(self._full_path(path), flags)
        logger.debug("Transient open of %s (fd %d)", path, fd)
        try:
            yield fd
        finally:
            os.close(fd)

    # ==================== ATTRIBUTES ====================

    def getattr(self, path: str, fh: Optional[FileHandleT] = None) -> FileAttributes:
        return FileAttributes.from_stat(os.lstat(self._full_path(path)))

    def access(self, path: str, mode: int) -> None:
        full_path = self._full_path(path)
        os.stat(full_path)
        if os.access(full_path, mode):
            return
        # os.access only reports a bool; recover EROFS, everything else is EACCES
        if mode & os.W_OK and os.statvfs(full_path).f_flag & os.ST_RDONLY:
            raise FSError(errno.EROFS)
        raise FSError(errno.EACCES)

    def readlink(self, path: str) -> str:
        return os.readlink(self._full_path(path))

    # ==================== DIRECTORIES ====================

    def iter_entries(self, path: str) -> Iterator[DirectoryEntry]:
        # Open eagerly so a missing directory fails before anything is emitted
        scanner = os.scandir(self._full_path(path))
        return self._stream_entries(scanner)

    def _stream_entries(self, scanner) -> Iterator[DirectoryEntry]:
        with scanner:
            for entry in scanner:
                attrs = FileAttributes(
                    st_ino=entry.inode(),
                    st_mode=_entry_dtype(entry) << DTYPE_SHIFT,
                )
                yield DirectoryEntry(entry.name, attrs)

    # ==================== CREATION ====================

    def mknod(self, path: str, mode: int, rdev: int) -> None:
        full_path = self._full_path(path)
        perms = stat.S_IMODE(mode)
        kind = stat.S_IFMT(mode)

        if kind in (0, stat.S_IFREG):
            fd = os.open(full_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, perms)
            os.close(fd)
        elif kind == stat.S_IFDIR:
            os.mkdir(full_path, perms)
        elif kind == stat.S_IFIFO:
            os.mkfifo(full_path, perms)
        else:
            os.mknod(full_path, mode, rdev)

    def mkdir(self, path: str, mode: int) -> None:
        os.mkdir(self._full_path(path), mode)

    def create(self, path: str, mode: int, flags: int) -> FileHandleT:
        fd = os.open(self._full_path(path), flags | os.O_CREAT, mode)
        return self.handles.issue(fd)

    def symlink(self, target: str, path: str) -> None:
        os.symlink(target, self._full_path(path))

    def link(self, target: str, path: str) -> None:
        os.link(
            self._full_path(target),
            self._full_path(path),
            follow_symlinks=False,
        )

    # ==================== REMOVAL, RENAME, METADATA ====================

    def unlink(self, path: str) -> None:
        os.unlink(self._full_path(path))

    def rmdir(self, path: str) -> None:
        os.rmdir(self._full_path(path))

    def rename(self, old: str, new: str, flags: int) -> None:
        # RENAME_EXCHANGE / RENAME_NOREPLACE are not supported
        if flags:
            raise FSError(errno.EINVAL)
        os.rename(self._full_path(old), self._full_path(new))

    def chmod(self, path: str, mode: int, fh: Optional[FileHandleT] = None) -> None:
        os.chmod(self._full_path(path), mode)

    def chown(self, path: str, uid: int, gid: int, fh: Optional[FileHandleT] = None) -> None:
        os.chown(self._full_path(path), uid, gid, follow_symlinks=False)

    def truncate(self, path: str, size: int, fh: Optional[FileHandleT] = None) -> None:
        if fh is not None:
            os.ftruncate(self.handles.get(fh), size)
        else:
            os.truncate(self._full_path(path), size)

    def utimens(
        self,
        path: str,
        times: Tuple[int, int],
        fh: Optional[FileHandleT] = None,
    ) -> None:
        """
        Set access/modify times in nanoseconds on the link itself.

        Each field may be UTIME_NOW or UTIME_OMIT. An omitted field keeps the
        value read just before the update.
        """
        full_path = self._full_path(path)
        atime, mtime = times

        if UTIME_OMIT in (atime, mtime):
            st = os.lstat(full_path)
            if atime == UTIME_OMIT:
                atime = st.st_atime_ns
            if mtime == UTIME_OMIT:
                mtime = st.st_mtime_ns

        now = time.time_ns()
        if atime == UTIME_NOW:
            atime = now
        if mtime == UTIME_NOW:
            mtime = now

        os.utime(full_path, ns=(atime, mtime), follow_symlinks=False)

    # ==================== FILE I/O ====================

    def open(self, path: str, flags: int) -> FileHandleT:
        fd = os.open(self._full_path(path), flags)
        return self.handles.issue(fd)

    def read(self, path: str, size: int, offset: int, fh: Optional[FileHandleT] = None) -> bytes:
        with self._descriptor(path, fh, os.O_RDONLY) as fd:
            return os.pread(fd, size, offset)

    def write(self, path: str, data: bytes, offset: int, fh: Optional[FileHandleT] = None) -> int:
        with self._descriptor(path, fh, os.O_WRONLY) as fd:
            return os.pwrite(fd, data, offset)

    def release(self, path: str, fh: FileHandleT) -> None:
        os.close(self.handles.retire(fh))

    # ==================== OPTIONAL CAPABILITIES ====================

    def statfs(self, path: str) -> FilesystemStats:
        return FilesystemStats.from_statvfs(os.statvfs(self._full_path(path)))

    def fsync(self, path: str, datasync: bool, fh: Optional[FileHandleT] = None) -> None:
        """Durability is left to the host descriptor."""

    def fallocate(
        self,
        path: str,
        mode: int,
        offset: int,
        length: int,
        fh: Optional[FileHandleT] = None,
    ) -> None:
        # Only "allocate without resizing" semantics via posix_fallocate
        if mode:
            raise FSError(errno.EOPNOTSUPP)
        with self._descriptor(path, fh, os.O_WRONLY) as fd:
            os.posix_fallocate(fd, offset, length)

    def getxattr(self, path: str, name: str) -> bytes:
        return os.getxattr(self._full_path(path), name, follow_symlinks=False)

    def setxattr(self, path: str, name: str, value: bytes, flags: int) -> None:
        os.setxattr(self._full_path(path), name, value, flags, follow_symlinks=False)

    def listxattr(self, path: str) -> List[str]:
        return os.listxattr(self._full_path(path), follow_symlinks=False)

    def removexattr(self, path: str, name: str) -> None:
        os.removexattr(self._full_path(path), name, follow_symlinks=False)

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
        if flags:
            raise FSError(errno.EINVAL)
        with self._descriptor(path_in, fh_in, os.O_RDONLY) as fd_in, \
                self._descriptor(path_out, fh_out, os.O_WRONLY) as fd_out:
            return os.copy_file_range(fd_in, fd_out, size, offset_in, offset_out)

    def lseek(self, path: str, offset: int, whence: int, fh: Optional[FileHandleT] = None) -> int:
        with self._descriptor(path, fh, os.O_RDONLY) as fd:
            return os.lseek(fd, offset, whence)
