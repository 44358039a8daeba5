"""
FlatPassFS - pyfuse3 bridge for the FlatPass operation contract.

pyfuse3 addresses requests by inode; the operation contract addresses them
by path. This module keeps the inode <-> path mapping, forwards each request
to the OperationDispatcher, and turns negative reply statuses into
FUSEError.

Usage:
    fs = FlatPassFS(create_dispatcher(settings), settings.mount_configuration())
    pyfuse3.init(fs, mountpoint, options)
    trio.run(pyfuse3.main)
"""

import errno
import logging
import os
import stat
import threading
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Optional

import pyfuse3
from pyfuse3 import FUSEError

from fs_config import MountConfiguration
from fs_types import FileAttributes, ReaddirMode, Reply, UTIME_OMIT
from op_dispatcher import OperationDispatcher


logger = logging.getLogger("FlatPass.Bridge")

InodeT = int
FileHandleT = int


def _check(reply: Reply) -> Reply:
    """Raise FUSEError for a failed reply."""
    if reply.status < 0:
        raise FUSEError(-reply.status)
    return reply


class FlatPassFS(pyfuse3.Operations):
    """pyfuse3 Operations that delegate to an OperationDispatcher."""

    ROOT_INODE = pyfuse3.ROOT_INODE

    def __init__(
        self,
        dispatcher: OperationDispatcher,
        mount_config: Optional[MountConfiguration] = None,
    ):
        super().__init__()
        self.dispatcher = dispatcher

        # pyfuse3 resumes readdir by offset, so offsets must be tracked
        self._requested_config = replace(
            mount_config or MountConfiguration(),
            readdir_mode=ReaddirMode.OFFSET_TRACKING,
        )
        self.mount_config: Optional[MountConfiguration] = None

        # ==================== INODE MANAGEMENT ====================
        self._inode_path_map: Dict[InodeT, str] = {self.ROOT_INODE: "/"}
        self._path_inode_map: Dict[str, InodeT] = {"/": self.ROOT_INODE}
        self._lookup_cnt: Dict[InodeT, int] = defaultdict(int)
        self._lookup_cnt[self.ROOT_INODE] = 1
        self._next_inode = self.ROOT_INODE + 1

        # ==================== HANDLE MANAGEMENT ====================
        # Dispatcher handles are passed to the kernel unchanged
        self._fh_path_map: Dict[FileHandleT, str] = {}
        self._dh_path_map: Dict[FileHandleT, str] = {}

        self._lock = threading.Lock()

    def init(self) -> None:
        """Called by pyfuse3 once the mount is up, before any request."""
        self.mount_config = self.dispatcher.init(self._requested_config)
        logger.info(
            "Mounted %s backend with capabilities %s",
            self.dispatcher.backend.name,
            self.mount_config.capabilities,
        )

    # ==================== PATH/INODE HELPERS ====================

    def _get_path(self, inode: InodeT) -> str:
        path = self._inode_path_map.get(inode)
        if path is None:
            raise FUSEError(errno.ENOENT)
        return path

    def _child_path(self, parent_inode: InodeT, name: bytes) -> str:
        parent = self._get_path(parent_inode)
        return os.path.join(parent, os.fsdecode(name))

    def _get_or_create_inode(self, path: str) -> InodeT:
        with self._lock:
            inode = self._path_inode_map.get(path)
            if inode is None:
                inode = self._next_inode
                self._next_inode += 1
                self._inode_path_map[inode] = path
                self._path_inode_map[path] = inode
            return inode

    def _remember(self, path: str) -> InodeT:
        """Assign an inode to path and count one kernel lookup."""
        inode = self._get_or_create_inode(path)
        with self._lock:
            self._lookup_cnt[inode] += 1
        return inode

    def _move_path(self, old: str, new: str) -> None:
        """Re-key old and everything below it after a rename."""
        with self._lock:
            prefix = old.rstrip("/") + "/"
            moved = [p for p in self._path_inode_map if p == old or p.startswith(prefix)]
            self._path_inode_map.pop(new, None)
            for path in moved:
                inode = self._path_inode_map.pop(path)
                new_path = new + path[len(old):]
                self._path_inode_map[new_path] = inode
                self._inode_path_map[inode] = new_path

    def _forget_path(self, path: str) -> None:
        with self._lock:
            self._path_inode_map.pop(path, None)

    def _make_entry_attributes(
        self,
        attrs: FileAttributes,
        inode: InodeT,
    ) -> pyfuse3.EntryAttributes:
        entry = pyfuse3.EntryAttributes()
        entry.st_ino = inode
        entry.st_mode = attrs.st_mode
        entry.st_nlink = attrs.st_nlink
        entry.st_uid = attrs.st_uid
        entry.st_gid = attrs.st_gid
        entry.st_rdev = attrs.st_rdev
        entry.st_size = attrs.st_size
        entry.st_blksize = 4096
        entry.st_blocks = (attrs.st_size + 511) // 512
        entry.st_atime_ns = attrs.st_atime_ns
        entry.st_mtime_ns = attrs.st_mtime_ns
        entry.st_ctime_ns = attrs.st_ctime_ns
        entry.generation = 0
        entry.entry_timeout = self.mount_config.entry_timeout
        entry.attr_timeout = self.mount_config.attr_timeout
        return entry

    def _entry_for(self, path: str, inode: InodeT) -> pyfuse3.EntryAttributes:
        attrs = _check(self.dispatcher.getattr(path)).value
        return self._make_entry_attributes(attrs, inode)

    # ==================== LOOKUP & ATTRIBUTES ====================

    async def lookup(self, parent_inode, name, ctx):
        path = self._child_path(parent_inode, name)
        attrs = _check(self.dispatcher.getattr(path)).value
        return self._make_entry_attributes(attrs, self._remember(path))

    async def getattr(self, inode, ctx):
        return self._entry_for(self._get_path(inode), inode)

    async def setattr(self, inode, attr, fields, fh, ctx):
        """Apply truncate, chmod, chown and timestamp changes in that order."""
        path = self._get_path(inode)
        if fh not in self._fh_path_map:
            fh = None

        if fields.update_size:
            _check(self.dispatcher.truncate(path, attr.st_size, fh))

        if fields.update_mode:
            _check(self.dispatcher.chmod(path, stat.S_IMODE(attr.st_mode), fh))

        if fields.update_uid or fields.update_gid:
            uid = attr.st_uid if fields.update_uid else -1
            gid = attr.st_gid if fields.update_gid else -1
            _check(self.dispatcher.chown(path, uid, gid, fh))

        if fields.update_atime or fields.update_mtime:
            atime = attr.st_atime_ns if fields.update_atime else UTIME_OMIT
            mtime = attr.st_mtime_ns if fields.update_mtime else UTIME_OMIT
            _check(self.dispatcher.utimens(path, (atime, mtime), fh))

        return self._entry_for(path, inode)

    async def access(self, inode, mode, ctx):
        reply = self.dispatcher.access(self._get_path(inode), mode)
        if reply.status == -errno.EACCES:
            return False
        _check(reply)
        return True

    async def readlink(self, inode, ctx):
        target = _check(self.dispatcher.readlink(self._get_path(inode))).value
        return os.fsencode(target)

    async def forget(self, inode_list):
        for inode, nlookup in inode_list:
            with self._lock:
                if inode in self._lookup_cnt:
                    self._lookup_cnt[inode] -= nlookup
                    if self._lookup_cnt[inode] <= 0:
                        del self._lookup_cnt[inode]

    # ==================== CREATION ====================

    async def mknod(self, parent_inode, name, mode, rdev, ctx):
        path = self._child_path(parent_inode, name)
        _check(self.dispatcher.mknod(path, mode, rdev))
        return self._entry_for(path, self._remember(path))

    async def mkdir(self, parent_inode, name, mode, ctx):
        path = self._child_path(parent_inode, name)
        _check(self.dispatcher.mkdir(path, mode))
        return self._entry_for(path, self._remember(path))

    async def symlink(self, parent_inode, name, target, ctx):
        path = self._child_path(parent_inode, name)
        _check(self.dispatcher.symlink(os.fsdecode(target), path))
        return self._entry_for(path, self._remember(path))

    async def link(self, inode, new_parent_inode, new_name, ctx):
        target = self._get_path(inode)
        path = self._child_path(new_parent_inode, new_name)
        _check(self.dispatcher.link(target, path))
        with self._lock:
            self._path_inode_map[path] = inode
            self._lookup_cnt[inode] += 1
        return self._entry_for(path, inode)

    async def create(self, parent_inode, name, mode, flags, ctx):
        path = self._child_path(parent_inode, name)
        fh = _check(self.dispatcher.create(path, mode, flags)).value
        with self._lock:
            self._fh_path_map[fh] = path
        entry = self._entry_for(path, self._remember(path))
        return pyfuse3.FileInfo(fh=fh), entry

    # ==================== REMOVAL & RENAME ====================

    async def unlink(self, parent_inode, name, ctx):
        path = self._child_path(parent_inode, name)
        _check(self.dispatcher.unlink(path))
        self._forget_path(path)

    async def rmdir(self, parent_inode, name, ctx):
        path = self._child_path(parent_inode, name)
        _check(self.dispatcher.rmdir(path))
        self._forget_path(path)

    async def rename(self, parent_inode_old, name_old, parent_inode_new, name_new, flags, ctx):
        old = self._child_path(parent_inode_old, name_old)
        new = self._child_path(parent_inode_new, name_new)
        _check(self.dispatcher.rename(old, new, flags))
        self._move_path(old, new)

    # ==================== FILE I/O ====================

    async def open(self, inode, flags, ctx):
        path = self._get_path(inode)
        fh = _check(self.dispatcher.open(path, flags)).value
        with self._lock:
            self._fh_path_map[fh] = path
        return pyfuse3.FileInfo(fh=fh)

    def _handle_path(self, fh: FileHandleT) -> str:
        path = self._fh_path_map.get(fh)
        if path is None:
            raise FUSEError(errno.EBADF)
        return path

    async def read(self, fh, off, size):
        return _check(self.dispatcher.read(self._handle_path(fh), size, off, fh)).value

    async def write(self, fh, off, buf):
        return _check(self.dispatcher.write(self._handle_path(fh), buf, off, fh)).status

    async def flush(self, fh):
        pass

    async def fsync(self, fh, datasync):
        _check(self.dispatcher.fsync(self._handle_path(fh), bool(datasync), fh))

    async def release(self, fh):
        path = self._handle_path(fh)
        with self._lock:
            del self._fh_path_map[fh]
        _check(self.dispatcher.release(path, fh))

    # ==================== DIRECTORIES ====================

    async def opendir(self, inode, ctx):
        path = self._get_path(inode)
        dh = _check(self.dispatcher.opendir(path)).value
        with self._lock:
            self._dh_path_map[dh] = path
        return dh

    async def readdir(self, dh, start_id, token):
        path = self._dh_path_map.get(dh)
        if path is None:
            raise FUSEError(errno.EBADF)

        def fill(name: str, attrs: Optional[FileAttributes], next_offset: int) -> bool:
            # The kernel supplies "." and ".." itself
            if name in (".", ".."):
                return False
            entry_path = os.path.join(path, name)
            reply = self.dispatcher.getattr(entry_path)
            if not reply.ok:
                return False
            inode = self._get_or_create_inode(entry_path)
            entry = self._make_entry_attributes(reply.value, inode)
            if not pyfuse3.readdir_reply(token, os.fsencode(name), entry, next_offset):
                return True
            with self._lock:
                self._lookup_cnt[inode] += 1
            return False

        _check(self.dispatcher.readdir(path, fill, start_id, dh))

    async def releasedir(self, dh):
        with self._lock:
            path = self._dh_path_map.pop(dh, None)
        if path is not None:
            _check(self.dispatcher.releasedir(path, dh))

    # ==================== CAPABILITIES ====================

    async def statfs(self, ctx):
        st = _check(self.dispatcher.statfs("/")).value

        data = pyfuse3.StatvfsData()
        data.f_bsize = st.f_bsize
        data.f_frsize = st.f_frsize
        data.f_blocks = st.f_blocks
        data.f_bfree = st.f_bfree
        data.f_bavail = st.f_bavail
        data.f_files = st.f_files
        data.f_ffree = st.f_ffree
        data.f_favail = st.f_favail
        data.f_namemax = st.f_namemax
        return data

    async def getxattr(self, inode, name, ctx):
        reply = self.dispatcher.getxattr(self._get_path(inode), os.fsdecode(name))
        return _check(reply).value

    async def setxattr(self, inode, name, value, ctx):
        reply = self.dispatcher.setxattr(self._get_path(inode), os.fsdecode(name), value)
        _check(reply)

    async def listxattr(self, inode, ctx):
        names = _check(self.dispatcher.listxattr(self._get_path(inode))).value
        return [os.fsencode(n) for n in names]

    async def removexattr(self, inode, name, ctx):
        _check(self.dispatcher.removexattr(self._get_path(inode), os.fsdecode(name)))

    # ==================== STATS ====================

    def get_stats(self) -> dict:
        stats = {
            "backend": self.dispatcher.backend.name,
            "inodes_tracked": len(self._inode_path_map),
            "open_files": len(self._fh_path_map),
            "open_directories": len(self._dh_path_map),
        }
        stats["operations"] = self.dispatcher.op_logger.get_summary()
        return stats
