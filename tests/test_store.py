"""
Resume Pipeline — Durable Session Record Tests
"""

import os
import sys
import time
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from runtime.db import SQLiteBackend
from runtime.store import STALE_PIPELINE_ERROR, PipelineStatus, SessionStore


class TestSessionStore(unittest.TestCase):

    def setUp(self):
        self.db = SQLiteBackend(path=":memory:")
        self.store = SessionStore(self.db)

    def tearDown(self):
        self.db.close()

    def test_ensure_session_creates_idle_record(self):
        record = self.store.ensure_session("s-1", "u-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.IDLE)
        self.assertEqual(record.user_id, "u-1")
        self.assertFalse(record.is_active)

    def test_ensure_session_is_idempotent(self):
        first = self.store.ensure_session("s-1", "u-1")
        second = self.store.ensure_session("s-1", "u-2")
        self.assertEqual(first.created_at, second.created_at)
        self.assertEqual(second.user_id, "u-1")

    def test_get_missing(self):
        self.assertIsNone(self.store.get("nope"))

    def test_mark_running_clears_previous_error_and_gate(self):
        self.store.ensure_session("s-1")
        self.store.set_pending_gate("s-1", "architect_review", 3, {"blueprint": {}})
        self.store.mark_error("s-1", "boom")
        self.store.mark_running("s-1")
        record = self.store.get("s-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.RUNNING)
        self.assertIsNone(record.error)
        self.assertIsNone(record.pending_gate)
        self.assertEqual(record.gate_generation, 3)
        self.assertTrue(record.is_active)

    def test_pending_gate_round_trip(self):
        self.store.mark_running("s-1")
        self.store.set_pending_gate("s-1", "section_review_summary", 4, {"section": "summary"})
        record = self.store.get("s-1")
        self.assertEqual(record.pending_gate, "section_review_summary")
        self.assertEqual(record.pending_gate_data, {"section": "summary"})
        self.assertEqual(record.gate_generation, 4)

    def test_clear_pending_gate_respects_generation(self):
        self.store.mark_running("s-1")
        self.store.set_pending_gate("s-1", "quality_fixes", 5)
        self.assertFalse(self.store.clear_pending_gate("s-1", generation=4))
        self.assertEqual(self.store.get("s-1").pending_gate, "quality_fixes")
        self.assertTrue(self.store.clear_pending_gate("s-1", generation=5))
        self.assertIsNone(self.store.get("s-1").pending_gate)

    def test_update_stage(self):
        self.store.mark_running("s-1")
        before = self.store.get("s-1").updated_at
        time.sleep(0.01)
        self.store.update_stage("s-1", "research")
        record = self.store.get("s-1")
        self.assertEqual(record.pipeline_stage, "research")
        self.assertGreater(record.updated_at, before)

    def test_mark_complete_records_usage(self):
        self.store.mark_running("s-1")
        self.store.mark_complete("s-1", input_tokens=1200, output_tokens=300, estimated_cost_usd=0.042)
        record = self.store.get("s-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.COMPLETE)
        self.assertEqual(record.pipeline_stage, "complete")
        self.assertEqual(record.input_tokens, 1200)
        self.assertEqual(record.output_tokens, 300)
        self.assertAlmostEqual(record.estimated_cost_usd, 0.042)
        self.assertFalse(record.is_active)

    def test_mark_stale_only_flips_active_records(self):
        self.store.mark_running("s-1")
        self.assertTrue(self.store.mark_stale("s-1"))
        record = self.store.get("s-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.ERROR)
        self.assertEqual(record.error, STALE_PIPELINE_ERROR)
        # Second caller loses
        self.assertFalse(self.store.mark_stale("s-1"))

    def test_mark_stale_ignores_completed(self):
        self.store.mark_running("s-1")
        self.store.mark_complete("s-1")
        self.assertFalse(self.store.mark_stale("s-1"))
        self.assertEqual(self.store.get("s-1").pipeline_status, PipelineStatus.COMPLETE)

    def test_list_by_status(self):
        self.store.mark_running("a")
        self.store.mark_running("b")
        self.store.mark_complete("b")
        running = self.store.list_by_status(PipelineStatus.RUNNING)
        self.assertEqual([r.session_id for r in running], ["a"])

    def test_to_dict_uses_status_value(self):
        self.store.mark_running("s-1")
        self.assertEqual(self.store.get("s-1").to_dict()["pipeline_status"], "running")


if __name__ == "__main__":
    unittest.main()
