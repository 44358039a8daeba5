"""
DirectoryEnumerator - streams directory entries through a caller's sink.

The sink has the shape ``fill(name, attrs_or_none, next_offset) -> full``.
Two modes are supported:

* offset-oblivious: every entry is passed offset 0 and the whole directory
  is delivered in one call; the requested start offset is ignored.
* offset-tracking: the entry at position i is passed i + 1, and a call with
  offset n resumes after the first n entries.

In both modes "." and ".." come first and enumeration stops as soon as the
sink reports that it is full.
"""

import logging
from typing import Callable, Iterable, Optional

from fs_types import DirectoryEntry, FileAttributes, ReaddirMode


FillFunc = Callable[[str, Optional[FileAttributes], int], bool]

DOT_ENTRIES = (".", "..")

logger = logging.getLogger("FlatPass.Enumerator")


class DirectoryEnumerator:
    """Drives a fill sink over a backend's entries."""

    def __init__(self, mode: ReaddirMode = ReaddirMode.OFFSET_OBLIVIOUS):
        self.mode = mode

    def _all_entries(self, entries: Iterable[DirectoryEntry]):
        for name in DOT_ENTRIES:
            yield DirectoryEntry(name)
        yield from entries

    def enumerate(
        self,
        entries: Iterable[DirectoryEntry],
        fill: FillFunc,
        offset: int = 0,
    ) -> int:
        """
        Feed "." / ".." and then entries to fill.

        Args:
            entries: Backend entries, without the dot entries
            fill: Caller's sink; returns True once its buffer is full
            offset: Resume position (offset-tracking mode only)

        Returns:
            Number of entries the sink accepted
        """
        tracking = self.mode is ReaddirMode.OFFSET_TRACKING
        emitted = 0

        for index, entry in enumerate(self._all_entries(entries)):
            if tracking and index < offset:
                continue

            next_offset = index + 1 if tracking else 0
            entry.offset = next_offset
            if fill(entry.name, entry.attrs, next_offset):
                logger.debug("Sink full after %d entries", emitted)
                break
            emitted += 1

        return emitted
