"""
HandleManager - issues and retires opaque file handles.

A handle correlates a sequence of calls (open, read, write, ..., release)
with exactly one backing resource: a host file descriptor, an in-memory
record name, or a directory path. Several handles may point at the same
path; each one is retired independently.
"""

import errno
import threading
from typing import Any, Dict, Generic, List, TypeVar

from fs_types import FSError


ResourceT = TypeVar("ResourceT")
FileHandleT = int


class HandleManager(Generic[ResourceT]):
    """Thread-safe table of live handles."""

    def __init__(self):
        self._handles: Dict[FileHandleT, ResourceT] = {}
        self._next_fh = 1
        self._lock = threading.Lock()

    def issue(self, resource: ResourceT) -> FileHandleT:
        """Bind a new handle to resource and return it."""
        with self._lock:
            fh = self._next_fh
            self._next_fh += 1
            self._handles[fh] = resource
        return fh

    def get(self, fh: FileHandleT) -> ResourceT:
        """Return the resource for a live handle.

        Raises FSError(EBADF) for handles that were never issued or have
        already been retired.
        """
        with self._lock:
            try:
                return self._handles[fh]
            except KeyError:
                raise FSError(errno.EBADF) from None

    def retire(self, fh: FileHandleT) -> ResourceT:
        """Remove a handle and return the resource it was bound to."""
        with self._lock:
            try:
                return self._handles.pop(fh)
            except KeyError:
                raise FSError(errno.EBADF) from None

    def __contains__(self, fh: Any) -> bool:
        with self._lock:
            return fh in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def live_handles(self) -> List[FileHandleT]:
        with self._lock:
            return list(self._handles)
