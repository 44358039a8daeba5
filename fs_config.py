"""
Configuration for FlatPass.

MountConfiguration is the immutable per-mount contract state produced by
init. FlatPassConfig carries the runtime settings chosen on the command line.
"""

from dataclasses import dataclass, replace
from typing import Optional, Iterable

from fs_types import Capability, ReaddirMode


BACKEND_PASSTHROUGH = "passthrough"
BACKEND_MEMORY = "memory"

# In-memory store capacities
DEFAULT_MAX_DIRECTORIES = 256
DEFAULT_MAX_FILES = 256
DEFAULT_MAX_CONTENT_BYTES = 256


@dataclass(frozen=True)
class MountConfiguration:
    """Kernel-facing cache and inode settings, fixed once init has run."""
    entry_timeout: float = 1.0
    attr_timeout: float = 1.0
    negative_timeout: float = 0.0
    use_ino: bool = True
    readdir_mode: ReaddirMode = ReaddirMode.OFFSET_OBLIVIOUS
    capabilities: Capability = Capability.all()

    def without_caching(self) -> "MountConfiguration":
        """Return a copy with every kernel-side cache timeout forced to zero."""
        return replace(
            self,
            entry_timeout=0.0,
            attr_timeout=0.0,
            negative_timeout=0.0,
        )


class FlatPassConfig:
    """Runtime settings for a FlatPass mount."""

    def __init__(
        self,
        # Backend selection
        backend: str = BACKEND_PASSTHROUGH,
        source_dir: str = "/",

        # Contract settings
        use_ino: bool = True,
        readdir_mode: ReaddirMode = ReaddirMode.OFFSET_OBLIVIOUS,
        disabled_capabilities: Iterable[str] = (),

        # In-memory store
        max_directories: int = DEFAULT_MAX_DIRECTORIES,
        max_files: int = DEFAULT_MAX_FILES,
        max_content_bytes: int = DEFAULT_MAX_CONTENT_BYTES,
        legacy_quirks: bool = False,

        # Logging
        log_file: Optional[str] = None,
        console_logging: bool = True,
    ):
        if backend not in (BACKEND_PASSTHROUGH, BACKEND_MEMORY):
            raise ValueError(f"Unknown backend: {backend}")
        self.backend = backend
        self.source_dir = source_dir
        self.use_ino = use_ino
        self.readdir_mode = readdir_mode
        self.disabled_capabilities = tuple(disabled_capabilities)
        self.max_directories = max_directories
        self.max_files = max_files
        self.max_content_bytes = max_content_bytes
        self.legacy_quirks = legacy_quirks
        self.log_file = log_file
        self.console_logging = console_logging

    def requested_capabilities(self) -> Capability:
        """All capabilities except the ones disabled by the user."""
        return Capability.all() & ~Capability.parse(self.disabled_capabilities)

    def mount_configuration(self) -> MountConfiguration:
        return MountConfiguration(
            use_ino=self.use_ino,
            readdir_mode=self.readdir_mode,
            capabilities=self.requested_capabilities(),
        )
