import logging
import threading
import unittest

from dotmesh.core.error_reporter import ErrorReporter, categorize
from dotmesh.core.errors import ExportError, ImageProcessingError, ParseError, TaskCancelledError


class TestCategorize(unittest.TestCase):
    def test_by_exception_type(self):
        self.assertEqual(categorize(ParseError("bad", line=1)), "validation")
        self.assertEqual(categorize(ValueError("x")), "validation")
        self.assertEqual(categorize(FileNotFoundError("x")), "file_io")
        self.assertEqual(categorize(ExportError("x")), "file_io")
        self.assertEqual(categorize(ConnectionError("x")), "network")
        self.assertEqual(categorize(MemoryError()), "memory")
        self.assertEqual(categorize(ImageProcessingError("x")), "processing")

    def test_by_message_keywords(self):
        self.assertEqual(categorize(RuntimeError("out of memory")), "memory")
        self.assertEqual(categorize(RuntimeError("connection reset")), "network")
        self.assertEqual(categorize(RuntimeError("could not read file")), "file_io")
        self.assertEqual(categorize(RuntimeError("something odd")), "unknown")


class TestErrorReporter(unittest.TestCase):
    def test_report_builds_entry(self):
        reporter = ErrorReporter(logger=logging.getLogger("dotmesh.tests.reporter"))
        entry = reporter.report(ParseError("bad token", line=2), {"file": "a.csv"})

        self.assertEqual(entry.category, "validation")
        self.assertEqual(entry.severity, "medium")
        self.assertEqual(entry.error_type, "ParseError")
        self.assertEqual(entry.context, {"file": "a.csv"})
        self.assertTrue(entry.recovery_actions)
        self.assertIn("line 2", entry.message)

    def test_cancellation_is_low_severity(self):
        entry = ErrorReporter().report(TaskCancelledError("t1"))
        self.assertEqual(entry.severity, "low")

    def test_ring_buffer_keeps_most_recent(self):
        reporter = ErrorReporter(capacity=3)
        for i in range(5):
            reporter.report(ValueError(f"error {i}"))

        self.assertEqual(len(reporter), 3)
        self.assertEqual([e.message for e in reporter.recent()], ["error 4", "error 3", "error 2"])
        self.assertEqual([e.message for e in reporter.recent(1)], ["error 4"])

    def test_stats_and_clear(self):
        reporter = ErrorReporter()
        reporter.report(ValueError("a"))
        reporter.report(ValueError("b"))
        reporter.report(OSError("c"))

        stats = reporter.stats()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["by_category"], {"validation": 2, "file_io": 1})

        reporter.clear()
        self.assertEqual(len(reporter), 0)
        self.assertEqual(reporter.stats()["total"], 0)

    def test_ids_are_unique_across_threads(self):
        reporter = ErrorReporter(capacity=1000)

        def worker():
            for _ in range(50):
                reporter.report(ValueError("x"))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ids = [e.id for e in reporter.recent()]
        self.assertEqual(len(ids), 200)
        self.assertEqual(len(set(ids)), 200)

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            ErrorReporter(capacity=0)


if __name__ == "__main__":
    unittest.main()
