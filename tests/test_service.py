"""
Resume Pipeline — Pipeline Service Tests

Runs real pipelines over an in-memory SQLite store with fake collaborators.
A second PipelineService over the same store stands in for a restarted process.
"""

import asyncio
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from pipeline.service import (
    CapacityExceeded,
    PipelineAlreadyComplete,
    PipelineAlreadyRunning,
    PipelineNotRunning,
    PipelineService,
    StartRequest,
)
from pipeline.stages import Collaborators
from runtime.config import FeatureFlags, Settings
from runtime.db import SQLiteBackend
from runtime.gates import NoPendingGate, StalePipeline
from runtime.session_lock import SessionLock
from runtime.store import STALE_PIPELINE_ERROR, PipelineStatus, SessionNotFound, SessionStore


def collaborators(fail_at=None):
    async def stage(name, result):
        if name == fail_at:
            raise RuntimeError(f"{name} exploded")
        return result

    async def intake(payload, ctx):
        ctx.record_usage(input_tokens=1200, output_tokens=300, cost_usd=0.02)
        return await stage("intake", {"name": "Jane Doe"})

    def named(name, result):
        async def fn(payload, ctx):
            return await stage(name, result)
        return fn

    return Collaborators(
        intake=intake,
        positioning_questions=named("positioning_questions", []),
        synthesize_positioning=named("synthesize_positioning", {"angle": "platform lead"}),
        research=named("research", {"company": "Acme"}),
        gap_analysis=named("gap_analysis", {"gaps": []}),
        architect=named("architect", {"sections": ["summary"]}),
        plan_sections=named("plan_sections", ["summary"]),
        write_section=named("write_section", "Summary draft"),
        revise_section=named("revise_section", "Summary revised"),
        quality_review=named("quality_review", {"decision": "approve", "scores": {"ats": 88}}),
        compliance_check=named("compliance_check", []),
    )


def request(session_id="sess-1", user_id="user-1"):
    return StartRequest(
        session_id=session_id,
        user_id=user_id,
        raw_resume_text="Ten years building data platforms.",
        job_description="Staff engineer, data platform.",
        company_name="Acme",
    )


async def wait_for_gate(service, session_id, name=None):
    for _ in range(400):
        gate = service.gates.pending(session_id)
        if gate is not None and (name is None or gate.name == name):
            return gate
        await asyncio.sleep(0.005)
    raise AssertionError(f"gate {name or '*'} never registered for {session_id}")


class _ServiceTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = SQLiteBackend(path=":memory:")
        self.store = SessionStore(self.db)
        self.services = []

    async def asyncTearDown(self):
        for service in self.services:
            await service.shutdown()
        self.db.close()

    def service(self, settings=None, fail_at=None, lock=None):
        service = PipelineService(self.store, settings=settings or Settings(),
                                  collaborators=collaborators(fail_at), lock=lock)
        self.services.append(service)
        return service

    async def run_to_end(self, task):
        await asyncio.wait_for(asyncio.shield(task), timeout=2)


class TestStart(_ServiceTestCase):

    async def test_run_completes_and_persists_usage(self):
        settings = Settings(features=FeatureFlags(blueprint_approval=False))
        service = self.service(settings)
        result = await service.start(request())
        task = service._running["sess-1"].task
        self.assertEqual(result, {"status": "started", "session_id": "sess-1"})
        self.assertTrue(service.is_running("sess-1"))

        await wait_for_gate(service, "sess-1", "section_review_summary")
        await service.respond("sess-1", True, gate="section_review_summary")
        await self.run_to_end(task)

        record = self.store.get("sess-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.COMPLETE)
        self.assertEqual(record.pipeline_stage, "complete")
        self.assertEqual(record.input_tokens, 1200)
        self.assertEqual(record.output_tokens, 300)
        self.assertAlmostEqual(record.estimated_cost_usd, 0.02)
        self.assertIsNone(record.pending_gate)
        self.assertFalse(service.is_running("sess-1"))
        self.assertEqual(service.stats()["completed"], 1)
        self.assertEqual(service.events.history("sess-1")[-1]["type"], "pipeline_complete")

    async def test_duplicate_start_rejected(self):
        service = self.service()
        await service.start(request())
        with self.assertRaises(PipelineAlreadyRunning):
            await service.start(request())
        self.assertEqual(service.stats()["started"], 1)

    async def test_capacity_limit(self):
        settings = Settings()
        settings.max_running_pipelines = 1
        service = self.service(settings)
        await service.start(request("sess-1"))
        with self.assertRaises(CapacityExceeded):
            await service.start(request("sess-2"))
        self.assertEqual(service.running_sessions(), ["sess-1"])
        self.assertIsNone(self.store.get("sess-2"))

    async def test_completed_session_cannot_restart(self):
        self.store.ensure_session("sess-1", "user-1")
        self.store.mark_complete("sess-1")
        service = self.service()
        with self.assertRaises(PipelineAlreadyComplete):
            await service.start(request())
        self.assertFalse(service.is_running("sess-1"))

    async def test_session_owned_by_another_user(self):
        self.store.ensure_session("sess-1", "someone-else")
        service = self.service()
        with self.assertRaises(SessionNotFound):
            await service.start(request(user_id="user-1"))
        self.assertEqual(service.running_sessions(), [])

    async def test_stage_is_mirrored_while_waiting(self):
        service = self.service()
        await service.start(request())
        await wait_for_gate(service, "sess-1", "architect_review")
        record = self.store.get("sess-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.RUNNING)
        self.assertEqual(record.pipeline_stage, "architect_review")
        self.assertEqual(record.pending_gate, "architect_review")
        self.assertEqual(record.gate_generation, 1)

    async def test_failure_is_persisted(self):
        service = self.service(fail_at="research")
        await service.start(request())
        task = service._running["sess-1"].task
        await self.run_to_end(task)
        record = self.store.get("sess-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.ERROR)
        self.assertIn("research exploded", record.error)
        self.assertEqual(service.stats()["failed"], 1)
        error = service.events.history("sess-1")[-1]
        self.assertEqual(error["type"], "pipeline_error")
        self.assertEqual(error["stage"], "research")

    async def test_finished_runs_release_event_history(self):
        settings = Settings()
        settings.event_retention_seconds = 0
        service = self.service(settings, fail_at="research")
        for n in range(5):
            await service.start(request(f"sess-{n}"))
            await self.run_to_end(service._running[f"sess-{n}"].task)
        self.assertEqual(service.stats()["failed"], 5)
        self.assertEqual(service.events.stats()["sessions_with_history"], 0)
        self.assertEqual(service.events.stats()["released_sessions"], 5)

    async def test_event_history_kept_for_retention_period(self):
        settings = Settings()
        settings.event_retention_seconds = 0.05
        service = self.service(settings, fail_at="research")
        await service.start(request())
        await self.run_to_end(service._running["sess-1"].task)
        self.assertEqual(service.events.history("sess-1")[-1]["type"], "pipeline_error")
        await asyncio.sleep(0.1)
        self.assertEqual(service.events.history("sess-1"), [])

    async def test_restart_after_error_continues_generations(self):
        service = self.service()
        await service.start(request())
        await wait_for_gate(service, "sess-1", "architect_review")
        await service.cancel("sess-1")

        await service.start(request())
        gate = await wait_for_gate(service, "sess-1", "architect_review")
        self.assertEqual(gate.generation, 2)

    async def test_start_with_session_lock(self):
        lock = SessionLock(self.db, poll_interval_seconds=0.01, max_wait_seconds=1.0)
        service = self.service(lock=lock)
        await service.start(request())
        await wait_for_gate(service, "sess-1", "architect_review")
        self.assertEqual(await lock.active_count(), 0)
        self.assertIs(service._running["sess-1"].context.session_lock, lock)


class TestRespond(_ServiceTestCase):

    async def test_blueprint_approval_moves_run_forward(self):
        service = self.service()
        await service.start(request())
        await wait_for_gate(service, "sess-1", "architect_review")

        result = await service.respond("sess-1", {"approved": True}, gate="architect_review", generation=1)
        self.assertEqual(result, {"status": "ok", "gate": "architect_review", "generation": 1})

        gate = await wait_for_gate(service, "sess-1", "section_review_summary")
        self.assertEqual(gate.generation, 2)
        self.assertEqual(self.store.get("sess-1").pending_gate, "section_review_summary")

    async def test_response_buffered_while_start_waits_for_lock(self):
        holder = SessionLock(self.db, poll_interval_seconds=0.01, max_wait_seconds=2.0)
        owner = await holder.acquire("sess-1")
        lock = SessionLock(self.db, poll_interval_seconds=0.01, max_wait_seconds=2.0)
        service = self.service(lock=lock)

        starting = asyncio.create_task(service.start(request()))
        while not service.is_running("sess-1"):
            await asyncio.sleep(0.005)
        result = await service.respond("sess-1", {"approved": True}, gate="architect_review")
        self.assertEqual(result["status"], "buffered")

        await holder.release("sess-1", owner)
        await asyncio.wait_for(starting, timeout=2)
        await wait_for_gate(service, "sess-1", "section_review_summary")
        self.assertEqual(service.gates.stats()["from_buffer"], 1)

    async def test_unknown_session(self):
        service = self.service()
        with self.assertRaises(SessionNotFound):
            await service.respond("missing", True, gate="architect_review")

    async def test_finished_session_has_no_pending_gate(self):
        self.store.ensure_session("sess-1", "user-1")
        self.store.mark_error("sess-1", "boom")
        service = self.service()
        with self.assertRaises(NoPendingGate):
            await service.respond("sess-1", True, gate="architect_review")


class TestStalePipeline(_ServiceTestCase):

    async def test_response_after_restart_flips_record(self):
        first = self.service()
        await first.start(request())
        await wait_for_gate(first, "sess-1", "architect_review")

        restarted = self.service()
        status = await restarted.status("sess-1")
        self.assertFalse(status["running"])
        self.assertTrue(status["stale_pipeline"])
        self.assertEqual(status["pending_gate"], "architect_review")

        with self.assertRaises(StalePipeline):
            await restarted.respond("sess-1", True, gate="architect_review")

        record = self.store.get("sess-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.ERROR)
        self.assertEqual(record.error, STALE_PIPELINE_ERROR)
        self.assertIsNone(record.pending_gate)
        event = restarted.events.history("sess-1")[-1]
        self.assertEqual(event["type"], "pipeline_error")
        self.assertEqual(event["code"], "STALE_PIPELINE")
        self.assertEqual(restarted.events.stats()["pending_releases"], 1)

    async def test_restart_over_stale_record_is_allowed(self):
        first = self.service()
        await first.start(request())
        await wait_for_gate(first, "sess-1", "architect_review")

        restarted = self.service()
        await restarted.start(request())
        self.assertTrue(restarted.is_running("sess-1"))

    async def test_recent_record_counts_as_running_elsewhere(self):
        first = self.service()
        await first.start(request())
        await wait_for_gate(first, "sess-1", "architect_review")

        settings = Settings()
        settings.single_instance = False
        other = self.service(settings)
        self.assertFalse((await other.status("sess-1"))["stale_pipeline"])
        with self.assertRaises(PipelineAlreadyRunning):
            await other.start(request())
        with self.assertRaises(NoPendingGate):
            await other.respond("sess-1", True, gate="architect_review")
        self.assertEqual(self.store.get("sess-1").pipeline_status, PipelineStatus.RUNNING)


class TestCancelAndShutdown(_ServiceTestCase):

    async def test_cancel_running_pipeline(self):
        service = self.service()
        await service.start(request())
        await wait_for_gate(service, "sess-1", "architect_review")

        result = await service.cancel("sess-1")
        self.assertEqual(result, {"status": "cancelled", "session_id": "sess-1"})
        self.assertFalse(service.is_running("sess-1"))
        self.assertIsNone(service.gates.pending("sess-1"))

        record = self.store.get("sess-1")
        self.assertEqual(record.pipeline_status, PipelineStatus.ERROR)
        self.assertEqual(record.error, "Pipeline cancelled")
        self.assertEqual(service.events.history("sess-1")[-1]["code"], "CANCELLED")
        self.assertEqual(service.stats()["cancelled"], 1)

        with self.assertRaises(PipelineNotRunning):
            await service.cancel("sess-1")

    async def test_cancel_before_first_step(self):
        service = self.service()
        await service.start(request())
        await service.cancel("sess-1")
        self.assertFalse(service.is_running("sess-1"))
        self.assertEqual(self.store.get("sess-1").pipeline_status, PipelineStatus.ERROR)

    async def test_shutdown_cancels_everything(self):
        lock = SessionLock(self.db, poll_interval_seconds=0.01, max_wait_seconds=1.0)
        service = self.service(lock=lock)
        await service.start(request("sess-1"))
        await service.start(request("sess-2"))
        await wait_for_gate(service, "sess-1", "architect_review")
        await wait_for_gate(service, "sess-2", "architect_review")

        await service.shutdown()
        self.assertEqual(service.running_sessions(), [])
        for session_id in ("sess-1", "sess-2"):
            self.assertEqual(self.store.get(session_id).pipeline_status, PipelineStatus.ERROR)
        self.assertEqual(await lock.active_count(), 0)


class TestStatus(_ServiceTestCase):

    async def test_status_of_running_pipeline(self):
        service = self.service()
        await service.start(request())
        await wait_for_gate(service, "sess-1", "architect_review")
        status = await service.status("sess-1")
        self.assertEqual(status["session_id"], "sess-1")
        self.assertTrue(status["running"])
        self.assertEqual(status["pending_gate"], "architect_review")
        self.assertEqual(status["gate_generation"], 1)
        self.assertFalse(status["stale_pipeline"])
        self.assertEqual(status["status"], "running")

    async def test_status_unknown_session(self):
        service = self.service()
        with self.assertRaises(SessionNotFound):
            await service.status("missing")

    async def test_stats_shape(self):
        stats = self.service().stats()
        self.assertEqual(stats["running"], 0)
        self.assertEqual(stats["max_running"], 10)
        self.assertIn("gates", stats)
        self.assertIn("events", stats)
        self.assertIsNone(stats["session_lock"])


if __name__ == "__main__":
    unittest.main()
