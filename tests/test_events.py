"""
Resume Pipeline — Event Stream Tests
"""

import asyncio
import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from pipeline.events import (
    EventHub,
    format_sse,
    make_event,
    pipeline_error,
    stage_complete,
    stage_start,
    transparency,
)


class TestEventConstructors(unittest.TestCase):

    def test_stage_events(self):
        self.assertEqual(stage_start("intake", "Parsing..."),
                         {"type": "stage_start", "stage": "intake", "message": "Parsing..."})
        self.assertEqual(stage_complete("intake", 120)["duration_ms"], 120)
        self.assertEqual(transparency("compliance", "note")["type"], "transparency")

    def test_pipeline_error_code_is_optional(self):
        self.assertNotIn("code", pipeline_error("research", "boom"))
        self.assertEqual(pipeline_error("research", "boom", code="GATE_TIMEOUT")["code"], "GATE_TIMEOUT")

    def test_format_sse(self):
        frame = format_sse({"type": "blueprint_ready", "seq": 3, "blueprint": {"a": 1}})
        lines = frame.split("\n")
        self.assertEqual(lines[0], "id: 3")
        self.assertEqual(lines[1], "event: blueprint_ready")
        self.assertEqual(json.loads(lines[2][len("data: "):])["blueprint"], {"a": 1})
        self.assertTrue(frame.endswith("\n\n"))


class TestEventHub(unittest.IsolatedAsyncioTestCase):

    async def test_publish_stamps_sequence(self):
        hub = EventHub()
        first = hub.publish("s-1", stage_start("intake"))
        second = hub.publish("s-1", stage_complete("intake", 5))
        other = hub.publish("s-2", stage_start("intake"))
        self.assertEqual((first["seq"], second["seq"], other["seq"]), (1, 2, 1))
        self.assertIn("emitted_at", first)

    async def test_subscriber_receives_live_events_until_terminal(self):
        hub = EventHub()
        received = []

        async def consume():
            async for event in hub.subscribe("s-1"):
                received.append(event["type"])

        task = asyncio.create_task(consume())
        for _ in range(100):
            if hub.subscriber_count("s-1"):
                break
            await asyncio.sleep(0.005)

        emit = hub.emitter("s-1")
        emit(stage_start("intake"))
        emit(make_event("intake_complete", intake={}))
        emit(make_event("pipeline_complete", sections={}))
        emit(stage_start("never-seen"))
        await asyncio.wait_for(task, timeout=1)

        self.assertEqual(received, ["stage_start", "intake_complete", "pipeline_complete"])
        self.assertEqual(hub.subscriber_count("s-1"), 0)

    async def test_replay_history_after_seq(self):
        hub = EventHub()
        hub.publish("s-1", stage_start("intake"))
        hub.publish("s-1", stage_complete("intake", 1))
        hub.publish("s-1", pipeline_error("research", "boom"))

        seen = [e["seq"] async for e in hub.subscribe("s-1", after_seq=1)]
        self.assertEqual(seen, [2, 3])

    async def test_history_is_bounded(self):
        hub = EventHub(history_limit=5)
        for n in range(20):
            hub.publish("s-1", make_event("transparency", n=n))
        history = hub.history("s-1")
        self.assertEqual(len(history), 5)
        self.assertEqual(history[0]["n"], 15)

    async def test_reset_forgets_history(self):
        hub = EventHub()
        hub.publish("s-1", stage_start("intake"))
        hub.reset("s-1")
        self.assertEqual(hub.history("s-1"), [])
        self.assertEqual(hub.stats()["published"], 1)

    async def test_reset_cancels_pending_release(self):
        hub = EventHub()
        hub.publish("s-1", pipeline_error("research", "boom"))
        hub.release("s-1", after=0.05)
        hub.reset("s-1")
        hub.publish("s-1", stage_start("intake"))
        await asyncio.sleep(0.1)
        self.assertEqual([e["type"] for e in hub.history("s-1")], ["stage_start"])
        self.assertEqual(hub.history("s-1")[0]["seq"], 2)


class TestEventHubRelease(unittest.IsolatedAsyncioTestCase):

    def finish(self, hub, session_id):
        hub.publish(session_id, stage_start("intake"))
        hub.publish(session_id, make_event("pipeline_complete", sections={}))

    async def test_finished_sessions_do_not_accumulate(self):
        hub = EventHub()
        for n in range(1000):
            self.finish(hub, f"s-{n}")
            hub.release(f"s-{n}")
        stats = hub.stats()
        self.assertEqual(stats["sessions_with_history"], 0)
        self.assertEqual(stats["released_sessions"], 1000)
        self.assertEqual(hub._seq, {})

    async def test_history_replayable_during_grace_period(self):
        hub = EventHub()
        self.finish(hub, "s-1")
        hub.release("s-1", after=0.05)
        self.assertEqual(hub.stats()["pending_releases"], 1)

        replayed = [e["type"] async for e in hub.subscribe("s-1")]
        self.assertEqual(replayed, ["stage_start", "pipeline_complete"])

        await asyncio.sleep(0.1)
        self.assertEqual(hub.history("s-1"), [])
        self.assertEqual(hub.stats()["pending_releases"], 0)

    async def test_open_stream_holds_history_until_it_closes(self):
        hub = EventHub()
        hub.publish("s-1", stage_start("intake"))
        received = []

        async def consume():
            async for event in hub.subscribe("s-1"):
                received.append(event["type"])

        task = asyncio.create_task(consume())
        for _ in range(100):
            if hub.subscriber_count("s-1"):
                break
            await asyncio.sleep(0.005)

        hub.release("s-1")
        self.assertEqual(len(hub.history("s-1")), 1)

        hub.publish("s-1", make_event("pipeline_complete", sections={}))
        await asyncio.wait_for(task, timeout=1)
        self.assertEqual(received, ["stage_start", "pipeline_complete"])
        self.assertEqual(hub.history("s-1"), [])
        self.assertEqual(hub.stats()["sessions_with_history"], 0)

    async def test_last_event_id_from_released_run_replays_new_run(self):
        hub = EventHub()
        for _ in range(5):
            hub.publish("s-1", stage_start("intake"))
        hub.release("s-1")

        hub.publish("s-1", stage_start("intake"))
        hub.publish("s-1", pipeline_error("research", "boom"))
        seen = [e["seq"] async for e in hub.subscribe("s-1", after_seq=5)]
        self.assertEqual(seen, [1, 2])


if __name__ == "__main__":
    unittest.main()
