"""
MemoryBackend - a flat, process-lifetime namespace held in memory.

The store keeps root-level directory records and file records with byte
content. There is no nesting below the mount root, and records are never
removed or renamed: they live until the process exits.

Record identity is the path with its leading separator removed. Records are
kept in name-keyed maps, and listings follow creation order; every access
goes through the store lock, so the backend may be driven by a concurrent
dispatcher.

Legacy quirks mode reproduces the legacy store's defects instead of
correcting them:
- write ignores the offset and replaces the whole content
- files report a constant size
- no inode numbers are reported
- duplicate and nested names are accepted without error, and a name
  created twice is listed twice
"""

import errno
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from attribute_resolver import AttributeResolver, PathKind, ROOT_INODE, flat_name
from fs_backend import Backend
from fs_config import (
    DEFAULT_MAX_CONTENT_BYTES,
    DEFAULT_MAX_DIRECTORIES,
    DEFAULT_MAX_FILES,
)
from fs_types import (
    Capability,
    DirectoryEntry,
    FSError,
    FileAttributes,
    FilesystemStats,
)
from handle_manager import FileHandleT


logger = logging.getLogger("FlatPass.Memory")

NAME_MAX = 255


@dataclass
class DirectoryRecord:
    name: str
    inode: int


@dataclass
class FileRecord:
    name: str
    inode: int
    content: bytearray = field(default_factory=bytearray)


class FlatRecordStore:
    """
    Owned repository of flat directory and file records.

    Capacities are enforced explicitly: a full record table raises ENOSPC
    and content beyond max_content_bytes raises EFBIG.

    With allow_duplicates, creating an existing name appends another
    listing slot for it; lookups keep resolving to the first record.
    """

    def __init__(
        self,
        max_directories: int = DEFAULT_MAX_DIRECTORIES,
        max_files: int = DEFAULT_MAX_FILES,
        max_content_bytes: int = DEFAULT_MAX_CONTENT_BYTES,
        allow_duplicates: bool = False,
    ):
        self.max_directories = max_directories
        self.max_files = max_files
        self.max_content_bytes = max_content_bytes
        self.allow_duplicates = allow_duplicates

        self._directories: Dict[str, DirectoryRecord] = {}
        self._files: Dict[str, FileRecord] = {}
        # Listing order, one slot per creation
        self._directory_slots: List[str] = []
        self._file_slots: List[str] = []
        self._next_inode = ROOT_INODE + 1
        self._lock = threading.Lock()

    def _allocate_inode(self) -> int:
        inode = self._next_inode
        self._next_inode += 1
        return inode

    def _check_new_name(self, name: str) -> None:
        if name in self._directories or name in self._files:
            raise FSError(errno.EEXIST)

    # ==================== CREATION ====================

    def add_directory(self, name: str) -> DirectoryRecord:
        with self._lock:
            if not self.allow_duplicates:
                self._check_new_name(name)
            if len(self._directory_slots) >= self.max_directories:
                raise FSError(errno.ENOSPC)

            self._directory_slots.append(name)
            record = self._directories.get(name)
            if record is None:
                record = DirectoryRecord(name, self._allocate_inode())
                self._directories[name] = record
            return record

    def add_file(self, name: str) -> FileRecord:
        with self._lock:
            return self._add_file(name)

    def open_or_add_file(self, name: str, exclusive: bool = False) -> FileRecord:
        """Return the file record for name, adding it first if it is absent.

        The lookup and the insertion happen under one lock hold, so
        concurrent non-exclusive creators of one name share one record.
        """
        with self._lock:
            existing = self._files.get(name)
            if existing is not None and not exclusive:
                return existing
            return self._add_file(name)

    def _add_file(self, name: str) -> FileRecord:
        if not self.allow_duplicates:
            self._check_new_name(name)
        if len(self._file_slots) >= self.max_files:
            raise FSError(errno.ENOSPC)

        self._file_slots.append(name)
        record = self._files.get(name)
        if record is None:
            record = FileRecord(name, self._allocate_inode())
            self._files[name] = record
        return record

    # ==================== LOOKUP ====================

    def find_directory(self, name: str) -> Optional[DirectoryRecord]:
        with self._lock:
            return self._directories.get(name)

    def find_file(self, name: str) -> Optional[FileRecord]:
        with self._lock:
            return self._files.get(name)

    def directory_names(self) -> List[str]:
        with self._lock:
            return list(self._directory_slots)

    def file_names(self) -> List[str]:
        with self._lock:
            return list(self._file_slots)

    # ==================== CONTENT ====================

    def read_content(self, name: str, offset: int, size: int) -> bytes:
        """Copy up to size bytes starting at offset; empty at or past the end."""
        with self._lock:
            record = self._require_file(name)
            if offset >= len(record.content):
                return b""
            return bytes(record.content[offset:offset + size])

    def write_content(self, name: str, data: bytes, offset: int) -> int:
        """Splice data into the content at offset, zero-filling any gap."""
        end = offset + len(data)
        if end > self.max_content_bytes:
            raise FSError(errno.EFBIG)

        with self._lock:
            record = self._require_file(name)
            if offset > len(record.content):
                record.content.extend(bytes(offset - len(record.content)))
            record.content[offset:end] = data
            return len(data)

    def replace_content(self, name: str, data: bytes) -> None:
        if len(data) > self.max_content_bytes:
            raise FSError(errno.EFBIG)

        with self._lock:
            record = self._require_file(name)
            record.content = bytearray(data)

    def _require_file(self, name: str) -> FileRecord:
        record = self._files.get(name)
        if record is None:
            raise FSError(errno.ENOENT)
        return record

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "directories": len(self._directory_slots),
                "files": len(self._file_slots),
                "content_bytes": sum(len(f.content) for f in self._files.values()),
            }


class MemoryBackend(Backend):
    """
    Flat in-memory backend.

    Supports mkdir, mknod, create, open, read, write and release on
    root-level names, plus getattr, access, readdir, statfs and fsync.
    Removal, rename, links and metadata changes are not implemented.
    """

    name = "memory"

    def __init__(
        self,
        store: Optional[FlatRecordStore] = None,
        legacy_quirks: bool = False,
    ):
        super().__init__()
        self.legacy_quirks = legacy_quirks
        self.store = store or FlatRecordStore(allow_duplicates=legacy_quirks)
        self.resolver = AttributeResolver(self.store, legacy_quirks=legacy_quirks)

    @property
    def capabilities(self) -> Capability:
        return Capability.STATFS | Capability.FSYNC

    def _new_name(self, path: str) -> str:
        """Record name for a creation at path."""
        name = flat_name(path)
        if not name:
            raise FSError(errno.EEXIST)
        if len(name) > NAME_MAX:
            raise FSError(errno.ENAMETOOLONG)
        if "/" in name and not self.legacy_quirks:
            # Only root-level names exist, so the parent cannot be found
            raise FSError(errno.ENOENT)
        return name

    def _file_name(self, path: str, fh: Optional[FileHandleT]) -> str:
        if fh is not None:
            return self.handles.get(fh)

        kind = self.resolver.classify(path)
        if kind is PathKind.FILE:
            return flat_name(path)
        if kind in (PathKind.ROOT, PathKind.DIRECTORY):
            raise FSError(errno.EISDIR)
        raise FSError(errno.ENOENT)

    # ==================== ATTRIBUTES ====================

    def getattr(self, path: str, fh: Optional[FileHandleT] = None) -> FileAttributes:
        return self.resolver.attributes(path)

    def access(self, path: str, mode: int) -> None:
        # Permission bits are synthesized, so only existence is checked
        self.resolver.attributes(path)

    # ==================== DIRECTORIES ====================

    def iter_entries(self, path: str) -> Iterator[DirectoryEntry]:
        kind = self.resolver.classify(path)

        if kind is PathKind.ROOT:
            names = self.store.directory_names() + self.store.file_names()
            return iter([DirectoryEntry(name) for name in names])

        if self.legacy_quirks:
            # The legacy store only ever listed the root
            return iter([])
        if kind is PathKind.DIRECTORY:
            return iter([])
        if kind is PathKind.FILE:
            raise FSError(errno.ENOTDIR)
        raise FSError(errno.ENOENT)

    # ==================== CREATION ====================

    def mkdir(self, path: str, mode: int) -> None:
        record = self.store.add_directory(self._new_name(path))
        logger.debug("Added directory record %r", record.name)

    def mknod(self, path: str, mode: int, rdev: int) -> None:
        record = self.store.add_file(self._new_name(path))
        logger.debug("Added file record %r", record.name)

    def create(self, path: str, mode: int, flags: int) -> FileHandleT:
        name = self._new_name(path)
        self.store.open_or_add_file(name, exclusive=bool(flags & os.O_EXCL))
        return self.handles.issue(name)

    # ==================== FILE I/O ====================

    def open(self, path: str, flags: int) -> FileHandleT:
        return self.handles.issue(self._file_name(path, None))

    def read(self, path: str, size: int, offset: int, fh: Optional[FileHandleT] = None) -> bytes:
        return self.store.read_content(self._file_name(path, fh), offset, size)

    def write(self, path: str, data: bytes, offset: int, fh: Optional[FileHandleT] = None) -> int:
        name = self._file_name(path, fh)
        if self.legacy_quirks:
            self.store.replace_content(name, data)
            return len(data)
        return self.store.write_content(name, data, offset)

    def release(self, path: str, fh: FileHandleT) -> None:
        self.handles.retire(fh)

    # ==================== OPTIONAL CAPABILITIES ====================

    def statfs(self, path: str) -> FilesystemStats:
        stats = self.store.get_stats()
        free_files = self.store.max_files - stats["files"]
        free_records = free_files + self.store.max_directories - stats["directories"]
        return FilesystemStats(
            f_bsize=self.store.max_content_bytes,
            f_frsize=self.store.max_content_bytes,
            f_blocks=self.store.max_files,
            f_bfree=free_files,
            f_bavail=free_files,
            f_files=self.store.max_files + self.store.max_directories,
            f_ffree=free_records,
            f_favail=free_records,
            f_namemax=NAME_MAX,
        )

    def fsync(self, path: str, datasync: bool, fh: Optional[FileHandleT] = None) -> None:
        """Nothing to flush."""
