#!/usr/bin/env python3
"""
FlatPass - FUSE filesystem with pass-through and flat in-memory backends

Main entry point for mounting FlatPass.

Usage:
    python main.py MOUNTPOINT [--backend passthrough|memory] [options]

Example:
    # Mirror /srv/data at /mnt/data
    python main.py /mnt/data --source /srv/data

    # Toy in-memory namespace, reproducing the legacy store's defects
    python main.py /mnt/toy --backend memory --legacy-quirks
"""

import argparse
import logging
import os
import signal
import sys

import pyfuse3
import trio

from flatpassfs import FlatPassFS
from fs_config import (
    BACKEND_MEMORY,
    BACKEND_PASSTHROUGH,
    DEFAULT_MAX_CONTENT_BYTES,
    DEFAULT_MAX_DIRECTORIES,
    DEFAULT_MAX_FILES,
    FlatPassConfig,
)
from fs_types import Capability
from op_dispatcher import create_dispatcher


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='flatpass',
        description='FlatPass - pass-through / flat in-memory FUSE filesystem',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /mnt/data --source /srv/data
  %(prog)s /mnt/toy --backend memory
  %(prog)s /mnt/data --disable-capability xattr --disable-capability lseek
        """,
    )

    parser.add_argument(
        'mountpoint',
        help='Mount point for the filesystem',
    )

    backend_group = parser.add_argument_group('Backend')
    backend_group.add_argument(
        '--backend',
        choices=(BACKEND_PASSTHROUGH, BACKEND_MEMORY),
        default=BACKEND_PASSTHROUGH,
        help='Backend serving the mount (default: passthrough)',
    )
    backend_group.add_argument(
        '--source',
        default='/',
        metavar='PATH',
        help='Host directory exposed by the passthrough backend (default: /)',
    )
    backend_group.add_argument(
        '--disable-capability',
        action='append',
        default=[],
        metavar='NAME',
        choices=[c.name.lower() for c in Capability if c.name and c.value],
        help='Do not offer an optional capability (repeatable)',
    )
    backend_group.add_argument(
        '--no-inodes',
        action='store_true',
        help='Do not expose backend inode numbers',
    )

    memory_group = parser.add_argument_group('Memory Backend')
    memory_group.add_argument(
        '--max-directories',
        type=int,
        default=DEFAULT_MAX_DIRECTORIES,
        metavar='N',
        help=f'Directory record capacity (default: {DEFAULT_MAX_DIRECTORIES})',
    )
    memory_group.add_argument(
        '--max-files',
        type=int,
        default=DEFAULT_MAX_FILES,
        metavar='N',
        help=f'File record capacity (default: {DEFAULT_MAX_FILES})',
    )
    memory_group.add_argument(
        '--max-content',
        type=int,
        default=DEFAULT_MAX_CONTENT_BYTES,
        metavar='BYTES',
        help=f'Content capacity per file (default: {DEFAULT_MAX_CONTENT_BYTES})',
    )
    memory_group.add_argument(
        '--legacy-quirks',
        action='store_true',
        help='Reproduce the legacy store defects (offset-ignoring write, '
             'constant file size, no inodes, duplicate names)',
    )

    log_group = parser.add_argument_group('Logging')
    log_group.add_argument(
        '--log-file',
        metavar='PATH',
        help='Path to the JSON operation log',
    )
    log_group.add_argument(
        '--no-console',
        action='store_true',
        help='Disable console operation logging',
    )
    log_group.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug output',
    )

    fuse_group = parser.add_argument_group('FUSE Options')
    fuse_group.add_argument(
        '--allow-other',
        action='store_true',
        help='Allow other users to access the filesystem',
    )
    fuse_group.add_argument(
        '--fuse-debug',
        action='store_true',
        help='Enable FUSE debug output',
    )

    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> bool:
    """Validate command-line arguments."""
    if not os.path.isdir(args.mountpoint):
        print(f"Error: Mountpoint does not exist: {args.mountpoint}")
        return False

    if os.listdir(args.mountpoint):
        print(f"Warning: Mountpoint is not empty: {args.mountpoint}")

    if args.backend == BACKEND_PASSTHROUGH and not os.path.isdir(args.source):
        print(f"Error: Source directory does not exist: {args.source}")
        return False

    for name in ('max_directories', 'max_files', 'max_content'):
        if getattr(args, name) <= 0:
            print(f"Error: --{name.replace('_', '-')} must be positive")
            return False

    return True


def create_config(args: argparse.Namespace) -> FlatPassConfig:
    """Create FlatPass configuration from arguments."""
    return FlatPassConfig(
        backend=args.backend,
        source_dir=os.path.abspath(args.source),
        use_ino=not args.no_inodes,
        disabled_capabilities=args.disable_capability,
        max_directories=args.max_directories,
        max_files=args.max_files,
        max_content_bytes=args.max_content,
        legacy_quirks=args.legacy_quirks,
        log_file=args.log_file,
        console_logging=not args.no_console,
    )


def setup_logging(debug: bool) -> None:
    """Setup Python logging."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(args.debug)
    logger = logging.getLogger('FlatPass')

    if not validate_args(args):
        return 1

    config = create_config(args)

    try:
        dispatcher = create_dispatcher(config)
    except ValueError as e:
        logger.error(f"Failed to create filesystem: {e}")
        return 1

    fs = FlatPassFS(dispatcher, config.mount_configuration())

    fuse_options = set(pyfuse3.default_options)
    fuse_options.add(f'fsname=flatpass:{config.backend}')
    if args.allow_other:
        fuse_options.add('allow_other')
    if args.fuse_debug:
        fuse_options.add('debug')

    mountpoint = os.path.abspath(args.mountpoint)

    try:
        pyfuse3.init(fs, mountpoint, fuse_options)
    except (RuntimeError, OSError) as e:
        logger.error(f"Failed to initialize FUSE: {e}")
        return 1

    closed = False

    def signal_handler(signum, frame):
        nonlocal closed
        if closed:
            return
        logger.info(f"Received signal {signum}, shutting down...")
        closed = True
        pyfuse3.terminate()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Mounted {config.backend} backend at {mountpoint}")

    status = 0
    try:
        trio.run(pyfuse3.main)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception:
        logger.exception("Filesystem error")
        status = 1
    finally:
        pyfuse3.close(unmount=True)
        if dispatcher.config is not None:
            dispatcher.destroy()
        dispatcher.op_logger.close()
        logger.info("Filesystem unmounted")

    return status


if __name__ == '__main__':
    sys.exit(main())
