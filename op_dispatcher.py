"""
OperationDispatcher - the capability table of a FlatPass mount.

The dispatcher binds every logical operation name to one backend's handler
when init runs, leaving out optional operations whose capability was not
negotiated. Each entry returns a Reply: zero or positive status on success,
negative errno on failure. No exception raised by a backend crosses this
boundary, and no operation is retried.
"""

import errno
import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Tuple

from dir_enumerator import DirectoryEnumerator, FillFunc
from fs_backend import Backend
from fs_config import MountConfiguration
from fs_types import Capability, FSError, FileAttributes, Reply
from handle_manager import FileHandleT
from operation_logger import EventType, OperationLogger


logger = logging.getLogger("FlatPass.Dispatcher")


OPERATIONS = (
    "getattr", "access", "readlink", "opendir", "readdir", "releasedir",
    "mknod", "mkdir", "unlink", "rmdir", "symlink", "rename", "link",
    "chmod", "chown", "truncate", "utimens",
    "open", "create", "read", "write", "release",
    "statfs", "fsync", "fallocate",
    "getxattr", "setxattr", "listxattr", "removexattr",
    "copy_file_range", "lseek",
)

CAPABILITY_OF: Dict[str, Capability] = {
    "statfs": Capability.STATFS,
    "fsync": Capability.FSYNC,
    "fallocate": Capability.FALLOCATE,
    "getxattr": Capability.XATTR,
    "setxattr": Capability.XATTR,
    "listxattr": Capability.XATTR,
    "removexattr": Capability.XATTR,
    "copy_file_range": Capability.COPY_FILE_RANGE,
    "lseek": Capability.LSEEK,
}

# Operations whose integer result is the reply status (a count or an offset)
COUNT_OPERATIONS = frozenset({"write", "copy_file_range", "lseek"})


class OperationDispatcher:
    """
    Dispatches path-addressed operations to one backend.

    Usage:
        dispatcher = OperationDispatcher(MemoryBackend())
        dispatcher.init()
        dispatcher.mkdir("/docs", 0o755)
        reply = dispatcher.getattr("/docs")
    """

    def __init__(
        self,
        backend: Backend,
        op_logger: Optional[OperationLogger] = None,
    ):
        self.backend = backend
        self.op_logger = op_logger or OperationLogger(console_output=False)

        self.config: Optional[MountConfiguration] = None
        self._table: Dict[str, Callable] = {}
        self._enumerator: Optional[DirectoryEnumerator] = None
        self._lock = threading.Lock()

    # ==================== MOUNT LIFECYCLE ====================

    def init(self, config: Optional[MountConfiguration] = None) -> MountConfiguration:
        """
        Resolve the capability table and fix the mount configuration.

        Runs exactly once. Kernel-side entry, attribute and negative-lookup
        caching is disabled so every lookup reaches the backend.
        """
        with self._lock:
            if self.config is not None:
                raise RuntimeError("init has already run for this mount")

            config = (config or MountConfiguration()).without_caching()
            negotiated = self.backend.capabilities & config.capabilities
            config = replace(config, capabilities=negotiated)

            table: Dict[str, Callable] = {
                "getattr": self._getattr,
                "readdir": self._readdir,
                "rename": self._rename,
            }
            for name in OPERATIONS:
                if name in table:
                    continue
                capability = CAPABILITY_OF.get(name)
                if capability is not None and not capability & negotiated:
                    logger.debug("%s disabled: capability not negotiated", name)
                    continue
                table[name] = getattr(self.backend, name)

            self._table = table
            self._enumerator = DirectoryEnumerator(config.readdir_mode)
            self.config = config

        self.op_logger.log_system_event(
            EventType.FILESYSTEM_MOUNTED,
            f"{self.backend.name} backend mounted",
            {
                "capabilities": str(negotiated),
                "use_ino": config.use_ino,
                "readdir_mode": config.readdir_mode.value,
            },
        )
        return config

    def destroy(self) -> None:
        """Release backend resources at unmount."""
        self.backend.destroy()
        self.op_logger.log_system_event(
            EventType.FILESYSTEM_UNMOUNTED,
            f"{self.backend.name} backend unmounted",
        )

    def supports(self, operation: str) -> bool:
        """True if operation is bound in the capability table."""
        return operation in self._table

    # ==================== DISPATCH ====================

    def _dispatch(
        self,
        operation: str,
        path: Optional[str],
        args: Tuple,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        if self.config is None:
            raise RuntimeError(f"{operation} called before init")

        handler = self._table.get(operation)
        if handler is None:
            reply = Reply.error(errno.EOPNOTSUPP)
            self.op_logger.log_operation(operation, path, reply.status, 0.0, handle=fh)
            return reply

        crashed = False
        start = time.monotonic()
        try:
            value = handler(*args)
        except OSError as e:
            reply = Reply.error(e.errno)
        except Exception:
            logger.exception("Unexpected failure in %s(%s)", operation, path)
            reply = Reply.error(errno.EIO)
            crashed = True
        else:
            reply = self._make_reply(operation, value)

        self.op_logger.log_operation(
            operation,
            path,
            reply.status,
            time.monotonic() - start,
            handle=fh,
            crashed=crashed,
        )
        return reply

    @staticmethod
    def _make_reply(operation: str, value) -> Reply:
        if operation == "read":
            data = bytes(value)
            return Reply(len(data), data)
        if operation in COUNT_OPERATIONS:
            return Reply(value)
        return Reply(0, value)

    # ==================== WRAPPED HANDLERS ====================

    def _hide_inode(self, attrs: Optional[FileAttributes]) -> Optional[FileAttributes]:
        if attrs is None or self.config.use_ino:
            return attrs
        return replace(attrs, st_ino=None)

    def _getattr(self, path: str, fh: Optional[FileHandleT]) -> FileAttributes:
        return self._hide_inode(self.backend.getattr(path, fh))

    def _readdir(
        self,
        path: str,
        fill: FillFunc,
        offset: int,
        fh: Optional[FileHandleT],
    ) -> int:
        if fh is not None:
            self.backend.dir_handles.get(fh)

        entries = self.backend.iter_entries(path)
        if not self.config.use_ino:
            entries = (replace(e, attrs=self._hide_inode(e.attrs)) for e in entries)
        return self._enumerator.enumerate(entries, fill, offset)

    def _rename(self, old: str, new: str, flags: int) -> None:
        # Exchange and no-replace renames are rejected before any change
        if flags:
            raise FSError(errno.EINVAL)
        self.backend.rename(old, new, flags)

    # ==================== OPERATION TABLE ====================

    def getattr(self, path: str, fh: Optional[FileHandleT] = None) -> Reply:
        return self._dispatch("getattr", path, (path, fh), fh)

    def access(self, path: str, mode: int) -> Reply:
        return self._dispatch("access", path, (path, mode))

    def readlink(self, path: str) -> Reply:
        return self._dispatch("readlink", path, (path,))

    def opendir(self, path: str) -> Reply:
        return self._dispatch("opendir", path, (path,))

    def readdir(
        self,
        path: str,
        fill: FillFunc,
        offset: int = 0,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("readdir", path, (path, fill, offset, fh), fh)

    def releasedir(self, path: str, fh: FileHandleT) -> Reply:
        return self._dispatch("releasedir", path, (path, fh), fh)

    def mknod(self, path: str, mode: int, rdev: int = 0) -> Reply:
        return self._dispatch("mknod", path, (path, mode, rdev))

    def mkdir(self, path: str, mode: int) -> Reply:
        return self._dispatch("mkdir", path, (path, mode))

    def unlink(self, path: str) -> Reply:
        return self._dispatch("unlink", path, (path,))

    def rmdir(self, path: str) -> Reply:
        return self._dispatch("rmdir", path, (path,))

    def symlink(self, target: str, path: str) -> Reply:
        return self._dispatch("symlink", path, (target, path))

    def rename(self, old: str, new: str, flags: int = 0) -> Reply:
        return self._dispatch("rename", old, (old, new, flags))

    def link(self, target: str, path: str) -> Reply:
        return self._dispatch("link", path, (target, path))

    def chmod(self, path: str, mode: int, fh: Optional[FileHandleT] = None) -> Reply:
        return self._dispatch("chmod", path, (path, mode, fh), fh)

    def chown(
        self,
        path: str,
        uid: int,
        gid: int,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("chown", path, (path, uid, gid, fh), fh)

    def truncate(self, path: str, size: int, fh: Optional[FileHandleT] = None) -> Reply:
        return self._dispatch("truncate", path, (path, size, fh), fh)

    def utimens(
        self,
        path: str,
        times: Tuple[int, int],
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("utimens", path, (path, times, fh), fh)

    def open(self, path: str, flags: int) -> Reply:
        return self._dispatch("open", path, (path, flags))

    def create(self, path: str, mode: int, flags: int) -> Reply:
        return self._dispatch("create", path, (path, mode, flags))

    def read(
        self,
        path: str,
        size: int,
        offset: int,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("read", path, (path, size, offset, fh), fh)

    def write(
        self,
        path: str,
        data: bytes,
        offset: int,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("write", path, (path, data, offset, fh), fh)

    def release(self, path: str, fh: FileHandleT) -> Reply:
        return self._dispatch("release", path, (path, fh), fh)

    def statfs(self, path: str = "/") -> Reply:
        return self._dispatch("statfs", path, (path,))

    def fsync(self, path: str, datasync: bool, fh: Optional[FileHandleT] = None) -> Reply:
        return self._dispatch("fsync", path, (path, datasync, fh), fh)

    def fallocate(
        self,
        path: str,
        mode: int,
        offset: int,
        length: int,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("fallocate", path, (path, mode, offset, length, fh), fh)

    def getxattr(self, path: str, name: str) -> Reply:
        return self._dispatch("getxattr", path, (path, name))

    def setxattr(self, path: str, name: str, value: bytes, flags: int = 0) -> Reply:
        return self._dispatch("setxattr", path, (path, name, value, flags))

    def listxattr(self, path: str) -> Reply:
        return self._dispatch("listxattr", path, (path,))

    def removexattr(self, path: str, name: str) -> Reply:
        return self._dispatch("removexattr", path, (path, name))

    def copy_file_range(
        self,
        path_in: str,
        fh_in: Optional[FileHandleT],
        offset_in: int,
        path_out: str,
        fh_out: Optional[FileHandleT],
        offset_out: int,
        size: int,
        flags: int = 0,
    ) -> Reply:
        return self._dispatch(
            "copy_file_range",
            path_in,
            (path_in, fh_in, offset_in, path_out, fh_out, offset_out, size, flags),
            fh_in,
        )

    def lseek(
        self,
        path: str,
        offset: int,
        whence: int,
        fh: Optional[FileHandleT] = None,
    ) -> Reply:
        return self._dispatch("lseek", path, (path, offset, whence, fh), fh)


def create_dispatcher(settings) -> OperationDispatcher:
    """Build the backend chosen in a FlatPassConfig and wrap it in a dispatcher."""
    from fs_config import BACKEND_MEMORY
    from memory_backend import FlatRecordStore, MemoryBackend
    from passthrough_backend import PassthroughBackend

    if settings.backend == BACKEND_MEMORY:
        store = FlatRecordStore(
            max_directories=settings.max_directories,
            max_files=settings.max_files,
            max_content_bytes=settings.max_content_bytes,
            allow_duplicates=settings.legacy_quirks,
        )
        backend = MemoryBackend(store, legacy_quirks=settings.legacy_quirks)
    else:
        backend = PassthroughBackend(source_dir=settings.source_dir)

    op_logger = OperationLogger(
        log_file=settings.log_file,
        console_output=settings.console_logging,
    )
    return OperationDispatcher(backend, op_logger)
