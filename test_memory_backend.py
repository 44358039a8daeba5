"""Tests for the flat in-memory backend."""

import errno
import os
import stat
import threading
import unittest

from attribute_resolver import LEGACY_FILE_SIZE, ROOT_INODE
from memory_backend import FlatRecordStore, MemoryBackend
from op_dispatcher import OperationDispatcher


FILE_MODE = stat.S_IFREG | 0o644


def list_names(fs, path="/"):
    """Run readdir and return (reply, names in emission order)."""
    names = []

    def fill(name, attrs, offset):
        names.append(name)
        return False

    return fs.readdir(path, fill), names


class TestMemoryBackend(unittest.TestCase):
    def setUp(self):
        self.fs = OperationDispatcher(MemoryBackend())
        self.fs.init()

    def _create(self, path, data=None):
        reply = self.fs.create(path, 0o644, os.O_RDWR)
        self.assertEqual(reply.status, 0)
        if data is not None:
            self.assertEqual(self.fs.write(path, data, 0, reply.value).status, len(data))
        return reply.value

    def test_root_attributes(self):
        reply = self.fs.getattr("/")
        self.assertEqual(reply.status, 0)
        self.assertTrue(stat.S_ISDIR(reply.value.st_mode))
        self.assertEqual(reply.value.st_nlink, 2)
        self.assertEqual(reply.value.st_uid, os.getuid())
        self.assertEqual(reply.value.st_ino, ROOT_INODE)

    def test_absent_path(self):
        self.assertEqual(self.fs.getattr("/missing").status, -errno.ENOENT)
        self.assertEqual(self.fs.access("/missing", os.F_OK).status, -errno.ENOENT)

    def test_access_existing(self):
        self.fs.mkdir("/docs", 0o755)
        self.assertEqual(self.fs.access("/", os.R_OK).status, 0)
        self.assertEqual(self.fs.access("/docs", os.X_OK).status, 0)

    def test_readdir_empty_root(self):
        reply, names = list_names(self.fs)
        self.assertEqual(reply.status, 0)
        self.assertEqual(names, [".", ".."])

    def test_readdir_directories_before_files_in_creation_order(self):
        self.fs.mknod("/b.txt", FILE_MODE, 0)
        self.fs.mkdir("/docs", 0o755)
        self.fs.mkdir("/art", 0o755)
        self.fs.mknod("/a.txt", FILE_MODE, 0)

        _, names = list_names(self.fs)
        self.assertEqual(names, [".", "..", "docs", "art", "b.txt", "a.txt"])

    def test_readdir_non_root(self):
        self.fs.mkdir("/docs", 0o755)
        self.fs.mknod("/a.txt", FILE_MODE, 0)

        reply, names = list_names(self.fs, "/docs")
        self.assertEqual(reply.status, 0)
        self.assertEqual(names, [".", ".."])

        reply, _ = list_names(self.fs, "/a.txt")
        self.assertEqual(reply.status, -errno.ENOTDIR)
        reply, _ = list_names(self.fs, "/missing")
        self.assertEqual(reply.status, -errno.ENOENT)

    def test_mkdir_then_getattr(self):
        self.assertEqual(self.fs.mkdir("/docs", 0o700).status, 0)
        attrs = self.fs.getattr("/docs").value
        # Requested mode is ignored
        self.assertEqual(attrs.st_mode, stat.S_IFDIR | 0o755)

    def test_create_then_getattr(self):
        fh = self._create("/a.txt")
        self.assertIsInstance(fh, int)
        attrs = self.fs.getattr("/a.txt").value
        self.assertTrue(stat.S_ISREG(attrs.st_mode))
        self.assertEqual(attrs.st_nlink, 1)
        self.assertEqual(attrs.st_size, 0)

    def test_write_then_read_at_offset(self):
        fh = self._create("/a.txt", b"hello")
        reply = self.fs.read("/a.txt", 3, 1, fh)
        self.assertEqual(reply.status, 3)
        self.assertEqual(reply.value, b"ell")

    def test_read_without_handle(self):
        self._create("/a.txt", b"hello")
        self.assertEqual(self.fs.read("/a.txt", 10, 0).value, b"hello")

    def test_read_truncated_at_end_of_content(self):
        self._create("/a.txt", b"hello")
        self.assertEqual(self.fs.read("/a.txt", 100, 3).value, b"lo")

    def test_read_at_or_past_end_returns_nothing(self):
        self._create("/a.txt", b"hello")
        self.assertEqual(self.fs.read("/a.txt", 10, 5), (0, b""))
        self.assertEqual(self.fs.read("/a.txt", 10, 50), (0, b""))

    def test_write_honours_offset(self):
        fh = self._create("/a.txt", b"hello")
        self.assertEqual(self.fs.write("/a.txt", b"J", 0, fh).status, 1)
        self.assertEqual(self.fs.read("/a.txt", 10, 0).value, b"Jello")

        self.fs.write("/a.txt", b"!", 7, fh)
        self.assertEqual(self.fs.read("/a.txt", 10, 0).value, b"Jello\x00\x00!")

    def test_size_follows_content(self):
        self._create("/a.txt", b"hello world")
        self.assertEqual(self.fs.getattr("/a.txt").value.st_size, 11)

    def test_inode_numbers_are_unique(self):
        self.fs.mkdir("/docs", 0o755)
        self.fs.mknod("/a.txt", FILE_MODE, 0)
        self.fs.mknod("/b.txt", FILE_MODE, 0)
        inodes = {self.fs.getattr(p).value.st_ino for p in ("/", "/docs", "/a.txt", "/b.txt")}
        self.assertEqual(len(inodes), 4)

    def test_duplicate_creation_rejected(self):
        self.assertEqual(self.fs.mkdir("/docs", 0o755).status, 0)
        self.assertEqual(self.fs.mkdir("/docs", 0o755).status, -errno.EEXIST)
        self.assertEqual(self.fs.mknod("/docs", FILE_MODE, 0).status, -errno.EEXIST)

        _, names = list_names(self.fs)
        self.assertEqual(names.count("docs"), 1)

    def test_create_existing_file_opens_it(self):
        self._create("/a.txt", b"keep")
        fh = self._create("/a.txt")
        self.assertEqual(self.fs.read("/a.txt", 10, 0, fh).value, b"keep")

        reply = self.fs.create("/a.txt", 0o644, os.O_RDWR | os.O_EXCL)
        self.assertEqual(reply.status, -errno.EEXIST)

    def test_nested_path_rejected(self):
        self.fs.mkdir("/docs", 0o755)
        self.assertEqual(self.fs.mknod("/docs/a.txt", FILE_MODE, 0).status, -errno.ENOENT)
        self.assertEqual(self.fs.mkdir("/docs/sub", 0o755).status, -errno.ENOENT)

    def test_creating_root_rejected(self):
        self.assertEqual(self.fs.mkdir("/", 0o755).status, -errno.EEXIST)

    def test_record_capacity(self):
        fs = OperationDispatcher(MemoryBackend(FlatRecordStore(max_directories=2, max_files=1)))
        fs.init()
        self.assertEqual(fs.mkdir("/a", 0o755).status, 0)
        self.assertEqual(fs.mkdir("/b", 0o755).status, 0)
        self.assertEqual(fs.mkdir("/c", 0o755).status, -errno.ENOSPC)
        self.assertEqual(fs.mknod("/x", FILE_MODE, 0).status, 0)
        self.assertEqual(fs.mknod("/y", FILE_MODE, 0).status, -errno.ENOSPC)

    def test_content_capacity(self):
        fh = self._create("/a.txt")
        self.assertEqual(self.fs.write("/a.txt", b"x" * 256, 0, fh).status, 256)
        self.assertEqual(self.fs.write("/a.txt", b"x", 256, fh).status, -errno.EFBIG)
        self.assertEqual(self.fs.getattr("/a.txt").value.st_size, 256)

    def test_independent_handles(self):
        self._create("/a.txt", b"hello")
        fh1 = self.fs.open("/a.txt", os.O_RDONLY).value
        fh2 = self.fs.open("/a.txt", os.O_RDONLY).value
        self.assertNotEqual(fh1, fh2)

        self.assertEqual(self.fs.release("/a.txt", fh1).status, 0)
        self.assertEqual(self.fs.read("/a.txt", 5, 0, fh2).value, b"hello")
        self.assertEqual(self.fs.read("/a.txt", 5, 0, fh1).status, -errno.EBADF)
        self.assertEqual(self.fs.release("/a.txt", fh1).status, -errno.EBADF)
        self.assertEqual(self.fs.release("/a.txt", fh2).status, 0)

    def test_open_errors(self):
        self.fs.mkdir("/docs", 0o755)
        self.assertEqual(self.fs.open("/missing", os.O_RDONLY).status, -errno.ENOENT)
        self.assertEqual(self.fs.open("/docs", os.O_RDONLY).status, -errno.EISDIR)
        self.assertEqual(self.fs.read("/docs", 10, 0).status, -errno.EISDIR)

    def test_opendir_and_releasedir(self):
        self.fs.mkdir("/docs", 0o755)
        self.fs.mknod("/a.txt", FILE_MODE, 0)

        dh = self.fs.opendir("/").value
        reply, names = list_names(self.fs)
        self.assertIn("docs", names)
        self.assertEqual(self.fs.releasedir("/", dh).status, 0)
        self.assertEqual(self.fs.opendir("/a.txt").status, -errno.ENOTDIR)

    def test_unimplemented_operations(self):
        self._create("/a.txt")
        self.assertEqual(self.fs.unlink("/a.txt").status, -errno.ENOSYS)
        self.assertEqual(self.fs.rmdir("/docs").status, -errno.ENOSYS)
        self.assertEqual(self.fs.rename("/a.txt", "/b.txt").status, -errno.ENOSYS)
        self.assertEqual(self.fs.symlink("/a.txt", "/l").status, -errno.ENOSYS)
        self.assertEqual(self.fs.link("/a.txt", "/h").status, -errno.ENOSYS)
        self.assertEqual(self.fs.truncate("/a.txt", 0).status, -errno.ENOSYS)
        self.assertEqual(self.fs.chmod("/a.txt", 0o600).status, -errno.ENOSYS)

    def test_rename_with_flags_rejected(self):
        self._create("/a.txt")
        self.assertEqual(self.fs.rename("/a.txt", "/b.txt", 1).status, -errno.EINVAL)

    def test_fallocate_not_supported(self):
        self._create("/a.txt")
        self.assertEqual(self.fs.fallocate("/a.txt", 1, 0, 10).status, -errno.EOPNOTSUPP)
        self.assertEqual(self.fs.fallocate("/a.txt", 0, 0, 10).status, -errno.EOPNOTSUPP)

    def test_optional_capabilities(self):
        self._create("/a.txt")
        self.assertEqual(self.fs.fsync("/a.txt", False).status, 0)
        self.assertEqual(self.fs.getxattr("/a.txt", "user.x").status, -errno.EOPNOTSUPP)
        self.assertEqual(self.fs.lseek("/a.txt", 0, os.SEEK_END).status, -errno.EOPNOTSUPP)

    def test_statfs(self):
        before = self.fs.statfs("/").value
        self.fs.mknod("/a.txt", FILE_MODE, 0)
        after = self.fs.statfs("/").value
        self.assertEqual(before.f_blocks, 256)
        self.assertEqual(after.f_bfree, before.f_bfree - 1)
        self.assertEqual(after.f_ffree, before.f_ffree - 1)


class TestConcurrentAccess(unittest.TestCase):
    THREADS = 16

    def setUp(self):
        self.fs = OperationDispatcher(MemoryBackend())
        self.fs.init()

    def run_threads(self, target):
        barrier = threading.Barrier(self.THREADS)
        results = [None] * self.THREADS

        def worker(index):
            barrier.wait()
            results[index] = target(index)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(self.THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_concurrent_create_of_one_name(self):
        replies = self.run_threads(lambda i: self.fs.create("/a.txt", 0o644, os.O_RDWR))

        self.assertEqual([r.status for r in replies], [0] * self.THREADS)
        self.assertEqual(len({r.value for r in replies}), self.THREADS)
        _, names = list_names(self.fs)
        self.assertEqual(names, [".", "..", "a.txt"])

    def test_concurrent_exclusive_create(self):
        replies = self.run_threads(
            lambda i: self.fs.create("/a.txt", 0o644, os.O_RDWR | os.O_EXCL)
        )
        statuses = sorted(r.status for r in replies)
        self.assertEqual(statuses.count(0), 1)
        self.assertEqual(statuses.count(-errno.EEXIST), self.THREADS - 1)

    def test_concurrent_writes_to_disjoint_ranges(self):
        fh = self.fs.create("/a.txt", 0o644, os.O_RDWR).value
        self.run_threads(lambda i: self.fs.write("/a.txt", bytes([65 + i]), i, fh))
        expected = bytes(65 + i for i in range(self.THREADS))
        self.assertEqual(self.fs.read("/a.txt", 100, 0).value, expected)

    def test_open_or_add_file_reuses_record(self):
        store = FlatRecordStore()
        first = store.open_or_add_file("a.txt")
        self.assertIs(store.open_or_add_file("a.txt"), first)
        with self.assertRaises(OSError) as ctx:
            store.open_or_add_file("a.txt", exclusive=True)
        self.assertEqual(ctx.exception.errno, errno.EEXIST)


class TestLegacyQuirks(unittest.TestCase):
    def setUp(self):
        self.fs = OperationDispatcher(MemoryBackend(legacy_quirks=True))
        self.fs.init()

    def test_write_ignores_offset(self):
        fh = self.fs.create("/a.txt", 0o644, os.O_RDWR).value
        self.assertEqual(self.fs.write("/a.txt", b"hello", 3, fh).status, 5)
        self.assertEqual(self.fs.read("/a.txt", 10, 0).value, b"hello")

        self.fs.write("/a.txt", b"hi", 2, fh)
        self.assertEqual(self.fs.read("/a.txt", 10, 0).value, b"hi")

    def test_read_offset_still_correct(self):
        fh = self.fs.create("/a.txt", 0o644, os.O_RDWR).value
        self.fs.write("/a.txt", b"hello", 0, fh)
        self.assertEqual(self.fs.read("/a.txt", 3, 1).value, b"ell")

    def test_constant_file_size(self):
        self.fs.mknod("/a.txt", FILE_MODE, 0)
        self.assertEqual(self.fs.getattr("/a.txt").value.st_size, LEGACY_FILE_SIZE)

    def test_no_inode_numbers(self):
        self.fs.mkdir("/docs", 0o755)
        self.assertIsNone(self.fs.getattr("/docs").value.st_ino)
        self.assertIsNone(self.fs.getattr("/").value.st_ino)

    def test_duplicates_accepted_and_listed_per_creation(self):
        self.assertEqual(self.fs.mkdir("/docs", 0o755).status, 0)
        self.assertEqual(self.fs.mkdir("/docs", 0o755).status, 0)
        self.assertEqual(self.fs.mknod("/a.txt", FILE_MODE, 0).status, 0)
        self.assertEqual(self.fs.mknod("/a.txt", FILE_MODE, 0).status, 0)
        _, names = list_names(self.fs)
        self.assertEqual(names, [".", "..", "docs", "docs", "a.txt", "a.txt"])

    def test_duplicates_count_against_capacity(self):
        fs = OperationDispatcher(MemoryBackend(
            FlatRecordStore(max_directories=2, allow_duplicates=True),
            legacy_quirks=True,
        ))
        fs.init()
        fs.mkdir("/docs", 0o755)
        fs.mkdir("/docs", 0o755)
        self.assertEqual(fs.mkdir("/docs", 0o755).status, -errno.ENOSPC)

    def test_duplicate_file_shares_content(self):
        fh = self.fs.create("/a.txt", 0o644, os.O_RDWR).value
        self.fs.write("/a.txt", b"first", 0, fh)
        self.fs.mknod("/a.txt", FILE_MODE, 0)
        self.assertEqual(self.fs.read("/a.txt", 10, 0).value, b"first")

    def test_nested_name_accepted_as_flat(self):
        self.assertEqual(self.fs.mknod("/docs/a.txt", FILE_MODE, 0).status, 0)
        self.assertEqual(self.fs.getattr("/docs/a.txt").status, 0)

    def test_non_root_readdir_lists_dot_entries_only(self):
        reply, names = list_names(self.fs, "/missing")
        self.assertEqual(reply.status, 0)
        self.assertEqual(names, [".", ".."])


if __name__ == "__main__":
    unittest.main()
