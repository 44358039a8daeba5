"""Tests for the structured operation log."""

import errno
import json
import logging
import os
import tempfile
import time
import unittest

from operation_logger import EventType, OperationEvent, OperationLogger


class TestOperationLogger(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_file = os.path.join(self.tmp.name, "logs", "ops.jsonl")
        self.op_logger = OperationLogger(log_file=self.log_file, console_output=False)

    def tearDown(self):
        self.op_logger.close()
        self.tmp.cleanup()

    def read_log(self):
        with open(self.log_file) as f:
            return [json.loads(line) for line in f if line.strip()]

    def test_json_lines_written(self):
        self.op_logger.log_operation("read", "/a.txt", 5, 0.001, handle=3)
        self.op_logger.log_operation("getattr", "/missing", -errno.ENOENT, 0.0)

        records = self.read_log()
        self.assertEqual(len(records), 2)

        self.assertEqual(records[0]["operation"], "read")
        self.assertEqual(records[0]["handle"], 3)
        self.assertEqual(records[0]["level"], "DEBUG")
        self.assertEqual(records[0]["event_type"], EventType.OPERATION.value)
        self.assertNotIn("error", records[0])
        self.assertIn("timestamp_iso", records[0])

        self.assertEqual(records[1]["status"], -errno.ENOENT)
        self.assertEqual(records[1]["error"], "ENOENT")
        self.assertEqual(records[1]["level"], "INFO")
        self.assertEqual(records[1]["event_type"], EventType.OPERATION_FAILED.value)

    def test_crash_logged_at_error(self):
        self.op_logger.log_operation("write", "/a.txt", -errno.EIO, 0.0, crashed=True)
        event = self.op_logger.get_recent_events()[-1]
        self.assertEqual(event.level, logging.ERROR)
        self.assertEqual(event.event_type, EventType.OPERATION_CRASHED.value)

    def test_system_event(self):
        self.op_logger.log_system_event(
            EventType.FILESYSTEM_MOUNTED, "memory backend mounted", {"use_ino": True}
        )
        record = self.read_log()[0]
        self.assertEqual(record["details"]["message"], "memory backend mounted")
        self.assertTrue(record["details"]["use_ino"])

    def test_event_filters(self):
        self.op_logger.log_operation("read", "/a", 1, 0.0)
        self.op_logger.log_operation("write", "/a", -errno.EFBIG, 0.0)
        self.op_logger.log_operation("read", "/b", -errno.ENOENT, 0.0)

        reads = self.op_logger.get_recent_events(operation="read")
        self.assertEqual([e.path for e in reads], ["/a", "/b"])

        failed = self.op_logger.get_recent_events(event_type=EventType.OPERATION_FAILED)
        self.assertEqual([e.operation for e in failed], ["write", "read"])

        self.assertEqual(len(self.op_logger.get_recent_events(count=1)), 1)
        self.assertEqual(self.op_logger.get_recent_events(since_timestamp=time.time() + 60), [])

    def test_buffer_is_bounded(self):
        op_logger = OperationLogger(console_output=False, buffer_size=3)
        for i in range(5):
            op_logger.log_operation("getattr", f"/{i}", 0, 0.0)
        self.assertEqual([e.path for e in op_logger.get_recent_events()], ["/2", "/3", "/4"])

    def test_console_output(self):
        op_logger = OperationLogger(console_output=True)
        with self.assertLogs("FlatPass.Operations", level="INFO") as captured:
            op_logger.log_operation("open", "/missing", -errno.ENOENT, 0.0)
        self.assertIn("op=open", captured.output[0])
        self.assertIn("error=ENOENT", captured.output[0])

    def test_second_logger_leaves_first_file_open(self):
        other_file = os.path.join(self.tmp.name, "other.jsonl")
        OperationLogger(console_output=False)
        other = OperationLogger(log_file=other_file, console_output=False)

        self.op_logger.log_operation("getattr", "/missing", -errno.ENOENT, 0.0)
        other.log_operation("read", "/a", 1, 0.0)
        other.close()

        self.assertEqual([r["operation"] for r in self.read_log()], ["getattr"])
        with open(other_file) as f:
            self.assertEqual([json.loads(line)["operation"] for line in f], ["read"])

    def test_close_stops_file_logging(self):
        self.op_logger.log_operation("read", "/a", 1, 0.0)
        self.op_logger.close()
        self.op_logger.log_operation("read", "/b", 1, 0.0)
        self.op_logger.close()

        self.assertEqual([r["path"] for r in self.read_log()], ["/a"])
        self.assertEqual(len(self.op_logger.get_recent_events()), 2)

    def test_event_to_dict_drops_empty_fields(self):
        event = OperationEvent(timestamp=0.0, event_type="operation", level=logging.DEBUG)
        self.assertEqual(set(event.to_dict()), {"timestamp", "timestamp_iso", "event_type", "level"})


if __name__ == "__main__":
    unittest.main()
