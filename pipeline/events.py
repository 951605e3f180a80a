"""
Resume Pipeline — Event Stream

Typed progress events and the per-session pub/sub hub that delivers them
to every attached transport (SSE connections).

Events are plain dicts with a `type` key. The hub stamps each with a
per-session sequence number and emission time, keeps a bounded history so
a reconnecting client can catch up, and fans each event out to every
subscriber queue. Publishing never blocks and never raises into the
pipeline: a full or closed subscriber is dropped with a warning.

History is kept per session only while it can still be replayed. The
service calls `release(session_id, after=...)` when a run ends; once the
grace period passes and the last stream closes, history and sequence
numbers for that session are dropped.

Usage:
    hub = EventHub()
    hub.publish("sess-1", stage_start("intake"))

    async for event in hub.subscribe("sess-1"):
        ...  # ends after a terminal event
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger("resume_pipeline.events")

Event = dict[str, Any]

TERMINAL_EVENTS = frozenset({"pipeline_complete", "pipeline_error"})


# ═══════════════════════════════════════════════════════════════════
# Event constructors
# ═══════════════════════════════════════════════════════════════════

def make_event(event_type: str, **fields: Any) -> Event:
    return {"type": event_type, **fields}


def stage_start(stage: str, message: str = "") -> Event:
    return make_event("stage_start", stage=stage, message=message)


def stage_complete(stage: str, duration_ms: int, message: str = "") -> Event:
    return make_event("stage_complete", stage=stage, duration_ms=duration_ms, message=message)


def transparency(stage: str, message: str) -> Event:
    return make_event("transparency", stage=stage, message=message)


def pipeline_error(stage: str, error: str, code: str | None = None) -> Event:
    event = make_event("pipeline_error", stage=stage, error=error)
    if code:
        event["code"] = code
    return event


def format_sse(event: Event) -> str:
    """Render one event as an SSE frame."""
    lines = []
    if "seq" in event:
        lines.append(f"id: {event['seq']}\n")
    lines.append(f"event: {event.get('type', 'message')}\n")
    lines.append(f"data: {json.dumps(event, default=str)}\n\n")
    return "".join(lines)


# ═══════════════════════════════════════════════════════════════════
# Hub
# ═══════════════════════════════════════════════════════════════════

class EventHub:
    """Per-session event queues for SSE streaming."""

    HISTORY_LIMIT = 200
    QUEUE_LIMIT = 1000

    def __init__(self, history_limit: int | None = None):
        self._history_limit = history_limit or self.HISTORY_LIMIT
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._history: dict[str, deque[Event]] = {}
        self._seq: dict[str, int] = {}
        self._finished: set[str] = set()
        self._release_timers: dict[str, asyncio.TimerHandle] = {}
        self._published = 0
        self._dropped = 0
        self._released = 0

    def publish(self, session_id: str, event: Event) -> Event:
        seq = self._seq[session_id] = self._seq.get(session_id, 0) + 1
        stamped = {**event, "seq": seq, "emitted_at": time.time()}
        history = self._history.get(session_id)
        if history is None:
            history = self._history[session_id] = deque(maxlen=self._history_limit)
        history.append(stamped)
        self._published += 1

        for queue in list(self._subscribers.get(session_id, [])):
            try:
                queue.put_nowait(stamped)
            except asyncio.QueueFull:
                self._dropped += 1
                self._subscribers[session_id].remove(queue)
                logger.warning("Dropping slow event subscriber for %s", session_id,
                               extra={"structured": {"session_id": session_id}})
        return stamped

    def emitter(self, session_id: str):
        """A fire-and-forget emit(event) bound to one session."""
        def emit(event: Event) -> None:
            self.publish(session_id, event)
        return emit

    async def subscribe(
        self,
        session_id: str,
        replay: bool = True,
        after_seq: int = 0,
    ) -> AsyncIterator[Event]:
        """
        Yield events for a session. With replay, history newer than
        `after_seq` comes first. Stops after a terminal event.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.QUEUE_LIMIT)
        if after_seq > self._seq.get(session_id, 0):
            # Id from an earlier run whose numbering has been released
            after_seq = 0
        backlog = [e for e in self._history.get(session_id, ()) if e["seq"] > after_seq] if replay else []
        self._subscribers[session_id].append(queue)
        try:
            for event in backlog:
                yield event
                if event.get("type") in TERMINAL_EVENTS:
                    return
            last_seq = backlog[-1]["seq"] if backlog else after_seq
            while True:
                event = await queue.get()
                if event["seq"] <= last_seq:
                    continue
                last_seq = event["seq"]
                yield event
                if event.get("type") in TERMINAL_EVENTS:
                    return
        finally:
            queues = self._subscribers.get(session_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(session_id, None)
                if session_id in self._finished:
                    self._forget(session_id)

    def history(self, session_id: str) -> list[Event]:
        return list(self._history.get(session_id, ()))

    def reset(self, session_id: str) -> None:
        """Forget history for a session before a new run starts. Sequence numbers keep counting."""
        self._cancel_release(session_id)
        self._history.pop(session_id, None)

    def release(self, session_id: str, after: float = 0.0) -> None:
        """
        Drop history and sequence for a session whose run is over.

        With `after`, wait that many seconds first so reconnecting clients
        can still replay the terminal event. Open streams keep the session
        until the last one closes.
        """
        self._cancel_release(session_id)
        if after > 0:
            loop = asyncio.get_running_loop()
            self._release_timers[session_id] = loop.call_later(after, self.release, session_id)
            return
        if self._subscribers.get(session_id):
            self._finished.add(session_id)
            return
        self._forget(session_id)

    def _cancel_release(self, session_id: str) -> None:
        timer = self._release_timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        self._finished.discard(session_id)

    def _forget(self, session_id: str) -> None:
        self._release_timers.pop(session_id, None)
        self._finished.discard(session_id)
        if self._history.pop(session_id, None) is not None:
            self._released += 1
        self._seq.pop(session_id, None)

    def subscriber_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, []))
        return sum(len(q) for q in self._subscribers.values())

    def stats(self) -> dict[str, Any]:
        return {
            "sessions_with_history": len(self._history),
            "pending_releases": len(self._release_timers),
            "released_sessions": self._released,
            "subscribers": self.subscriber_count(),
            "published": self._published,
            "dropped_subscribers": self._dropped,
        }
