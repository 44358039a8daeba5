"""
AttributeResolver - classifies paths of the flat in-memory namespace and
synthesizes their attributes.

Classification order is fixed: root, then directory records, then file
records, otherwise absent.
"""

import errno
import os
import stat
import time
from enum import Enum

from fs_types import FSError, FileAttributes


ROOT_INODE = 1

DIRECTORY_MODE = stat.S_IFDIR | 0o755
FILE_MODE = stat.S_IFREG | 0o644

# Size every file reported before sizes were derived from content
LEGACY_FILE_SIZE = 1024


class PathKind(Enum):
    ROOT = "root"
    DIRECTORY = "directory"
    FILE = "file"
    ABSENT = "absent"


def flat_name(path: str) -> str:
    """Strip the leading separator; the remainder is the record name."""
    return path[1:] if path.startswith("/") else path


class AttributeResolver:
    """Resolves paths against a FlatRecordStore."""

    def __init__(self, store, legacy_quirks: bool = False):
        self.store = store
        self.legacy_quirks = legacy_quirks
        self._uid = os.getuid()
        self._gid = os.getgid()

    def classify(self, path: str) -> PathKind:
        if path == "/":
            return PathKind.ROOT
        name = flat_name(path)
        if self.store.find_directory(name) is not None:
            return PathKind.DIRECTORY
        if self.store.find_file(name) is not None:
            return PathKind.FILE
        return PathKind.ABSENT

    def attributes(self, path: str) -> FileAttributes:
        """Synthesize attributes for path, raising ENOENT if it is absent."""
        now = time.time_ns()
        attrs = FileAttributes(
            st_uid=self._uid,
            st_gid=self._gid,
            st_atime_ns=now,
            st_mtime_ns=now,
            st_ctime_ns=now,
        )

        kind = self.classify(path)
        if kind is PathKind.ROOT:
            attrs.st_mode = DIRECTORY_MODE
            attrs.st_nlink = 2
            inode = ROOT_INODE
        elif kind is PathKind.DIRECTORY:
            record = self.store.find_directory(flat_name(path))
            attrs.st_mode = DIRECTORY_MODE
            attrs.st_nlink = 2
            inode = record.inode
        elif kind is PathKind.FILE:
            record = self.store.find_file(flat_name(path))
            attrs.st_mode = FILE_MODE
            attrs.st_nlink = 1
            if self.legacy_quirks:
                attrs.st_size = LEGACY_FILE_SIZE
            else:
                attrs.st_size = len(record.content)
            inode = record.inode
        else:
            raise FSError(errno.ENOENT)

        # The legacy store never reported inode numbers
        if not self.legacy_quirks:
            attrs.st_ino = inode
        return attrs
