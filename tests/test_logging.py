"""
Resume Pipeline — Structured Logging Tests

Verifies JSON log lines, structured extras, level filtering and the
session-scoped adapter.
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from runtime.logging import ROOT_LOGGER, configure_logging, get_logger, session_logger


class _LoggingTestCase(unittest.TestCase):

    def setUp(self):
        self.stream = io.StringIO()
        configure_logging(level="DEBUG", stream=self.stream)

    def tearDown(self):
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.propagate = True
        root.setLevel(logging.NOTSET)

    def lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines() if line.strip()]


class TestLogEntrySchema(_LoggingTestCase):

    def test_required_fields_present(self):
        get_logger("gates").info("Gate registered: %s", "architect_review")
        entry = self.lines()[0]
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "resume_pipeline.gates")
        self.assertEqual(entry["message"], "Gate registered: architect_review")
        self.assertEqual(entry["service.name"], "resume_pipeline")
        self.assertIn("timestamp", entry)

    def test_structured_extra_merged(self):
        get_logger("store").warning("Marked stale", extra={"structured": {"session_id": "s-1"}})
        self.assertEqual(self.lines()[0]["session_id"], "s-1")

    def test_exception_fields(self):
        try:
            raise RuntimeError("db down")
        except RuntimeError:
            get_logger("service").exception("Unexpected pipeline failure")
        entry = self.lines()[0]
        self.assertEqual(entry["exception.type"], "RuntimeError")
        self.assertEqual(entry["exception.message"], "db down")

    def test_non_serializable_values(self):
        get_logger().info("x", extra={"structured": {"when": object()}})
        self.assertIn("when", self.lines()[0])


class TestLogLevelFiltering(_LoggingTestCase):

    def test_warning_hides_info(self):
        configure_logging(level="WARNING", stream=self.stream)
        log = get_logger("orchestrator")
        log.info("Stage complete")
        log.warning("Section writer failed")
        entries = self.lines()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["level"], "WARNING")

    def test_reconfigure_does_not_duplicate(self):
        configure_logging(level="INFO", stream=self.stream)
        get_logger().info("once")
        self.assertEqual(len(self.lines()), 1)


class TestSessionLogger(_LoggingTestCase):

    def test_session_fields_stamped(self):
        log = session_logger("sess-9", component="orchestrator")
        log.info("Stage complete: %s", "intake", extra={"structured": {"duration_ms": 12}})
        entry = self.lines()[0]
        self.assertEqual(entry["logger"], "resume_pipeline.orchestrator")
        self.assertEqual(entry["session_id"], "sess-9")
        self.assertEqual(entry["component"], "orchestrator")
        self.assertEqual(entry["duration_ms"], 12)

    def test_call_fields_win(self):
        log = session_logger("sess-9", stage="intake")
        log.info("moved", extra={"structured": {"stage": "research"}})
        self.assertEqual(self.lines()[0]["stage"], "research")


if __name__ == "__main__":
    unittest.main()
