"""
Resume Pipeline — Gate Registry

Human-in-the-loop suspension points. The orchestrator calls
`wait_for_user(session_id, name)` and is suspended on an asyncio future
until `respond()` delivers a payload for that gate.

Rules:
  - At most one gate per session. Registering a new one rejects the old
    waiter with GateSuperseded.
  - Every gate gets the next per-session generation number. The name,
    metadata and generation are mirrored to the durable session record so
    another process or a reconnecting client can see what is pending.
  - A response that arrives while no gate is pending (and the run is live
    in this process) is buffered, tagged with the current generation. It
    can only satisfy the very next gate, and only if the names match.
    Once that next gate registers, every older buffered entry is dropped.
  - A gate not answered within the timeout is removed, its mirror
    cleared, and the waiter raises GateTimeout.
  - A response for a session whose durable record claims an active run
    that no longer exists in this process is a stale pipeline: the record
    is flipped to error and StalePipeline is raised.

Usage:
    gates = GateRegistry(store, timeout_seconds=600, is_live=service.is_running)
    payload = await gates.wait_for_user("sess-1", "architect_review", {"blueprint": ...})

    # from the HTTP layer
    result = await gates.respond("sess-1", {"approved": True}, gate="architect_review")
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from runtime.store import SessionNotFound, SessionStore

logger = logging.getLogger("resume_pipeline.gates")

_MISSING = object()


# ═══════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════

class GateTimeout(Exception):
    """Raised in the waiter when nobody responded within the gate timeout."""

    def __init__(self, session_id: str, gate: str, timeout_seconds: float):
        self.session_id = session_id
        self.gate = gate
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Gate '{gate}' timed out after {timeout_seconds:g}s")


class GateSuperseded(Exception):
    """Raised in a waiter whose gate was replaced by a newer one. Never user-facing."""
    pass


class GateMismatch(Exception):
    """Raised when a response names a different gate or generation than the pending one."""
    pass


class NoPendingGate(Exception):
    """Raised when a response has nothing to resolve and cannot be buffered."""
    pass


class StalePipeline(Exception):
    """Raised when durable state claims an active run that no longer exists."""

    code = "STALE_PIPELINE"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            "Pipeline was running but its process is gone (server restarted). "
            "Start a new run."
        )


# ═══════════════════════════════════════════════════════════════════
# Types
# ═══════════════════════════════════════════════════════════════════

@dataclass
class Gate:
    session_id: str
    name: str
    generation: int
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


@dataclass
class BufferedResponse:
    session_id: str
    gate: str
    payload: Any
    generation: int
    buffered_at: float = field(default_factory=time.time)


def _json_size(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return 1 << 62


# ═══════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════

class GateRegistry:
    """
    Per-process gate state. Durable mirrors go through `store`; pass
    store=None to run without persistence.

    `is_live(session_id)` tells the registry whether a run for the session
    is executing in this process. `on_stale(session_id)` is called after a
    stale pipeline is detected so listeners can be notified.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        timeout_seconds: float = 600.0,
        max_buffered: int = 25,
        max_item_bytes: int = 100_000,
        max_total_bytes: int = 300_000,
        is_live: Callable[[str], bool] | None = None,
        on_stale: Callable[[str], None] | None = None,
        stale_after_seconds: float | None = None,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.max_buffered = max_buffered
        self.max_item_bytes = max_item_bytes
        self.max_total_bytes = max_total_bytes
        self._is_live = is_live or (lambda _sid: False)
        self._on_stale = on_stale
        self.stale_after_seconds = stale_after_seconds
        self._gates: dict[str, Gate] = {}
        self._buffered: dict[str, deque[BufferedResponse]] = {}
        self._generations: dict[str, int] = {}
        self._background: set[asyncio.Task] = set()
        self._stats = {"resolved": 0, "buffered": 0, "from_buffer": 0,
                       "timeouts": 0, "superseded": 0, "stale": 0}

    # ─── Session lifecycle ───────────────────────────────────────────

    def begin_session(self, session_id: str, generation: int = 0) -> None:
        """
        Seed the generation counter (from the durable record) for a new run.

        Responses buffered while the run was being claimed are kept and
        re-tagged so they can answer its first gate.
        """
        seeded = max(generation, self._generations.get(session_id, 0))
        self._generations[session_id] = seeded
        for item in self._buffered.get(session_id, ()):
            item.generation = seeded

    def discard_session(self, session_id: str) -> None:
        """Drop every trace of a finished run: pending gate, buffers, counter."""
        gate = self._gates.pop(session_id, None)
        if gate:
            if gate.timer:
                gate.timer.cancel()
            if not gate.future.done():
                gate.future.cancel()
        self._buffered.pop(session_id, None)
        self._generations.pop(session_id, None)

    # ─── Waiting ─────────────────────────────────────────────────────

    async def wait_for_user(
        self,
        session_id: str,
        name: str,
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        """Suspend until a response for `name` arrives. Raises GateTimeout."""
        generation = self._generations.get(session_id, 0) + 1

        payload = self._take_buffered(session_id, name, generation)
        if payload is not _MISSING:
            self._generations[session_id] = generation
            return payload

        await self._mirror_set(session_id, name, generation, metadata)

        # A response may have been buffered while the mirror was written
        payload = self._take_buffered(session_id, name, generation)
        if payload is not _MISSING:
            self._generations[session_id] = generation
            await self._mirror_clear(session_id, generation)
            return payload

        self._generations[session_id] = generation
        gate = self._register(session_id, name, generation, metadata or {})

        try:
            return await gate.future
        except GateTimeout:
            await self._mirror_clear(session_id, generation)
            raise
        except asyncio.CancelledError:
            if self._gates.get(session_id) is gate:
                self._remove(session_id)
                self._clear_mirror_later(session_id, generation)
            raise

    def _register(self, session_id: str, name: str, generation: int, metadata: dict[str, Any]) -> Gate:
        loop = asyncio.get_running_loop()
        existing = self._gates.pop(session_id, None)
        if existing:
            if existing.timer:
                existing.timer.cancel()
            if not existing.future.done():
                existing.future.set_exception(
                    GateSuperseded(f"Gate '{existing.name}' superseded by '{name}'")
                )
            self._stats["superseded"] += 1
            logger.info("Gate superseded: %s → %s", existing.name, name,
                        extra={"structured": {"session_id": session_id, "gate": name}})

        gate = Gate(
            session_id=session_id,
            name=name,
            generation=generation,
            future=loop.create_future(),
            metadata=metadata,
        )
        gate.timer = loop.call_later(self.timeout_seconds, self._expire, gate)
        self._gates[session_id] = gate
        logger.info("Gate registered: %s", name,
                    extra={"structured": {"session_id": session_id, "gate": name,
                                          "generation": generation}})
        return gate

    def _expire(self, gate: Gate) -> None:
        if self._gates.get(gate.session_id) is not gate:
            return
        self._remove(gate.session_id)
        self._stats["timeouts"] += 1
        logger.warning("Gate timed out: %s", gate.name,
                       extra={"structured": {"session_id": gate.session_id, "gate": gate.name,
                                             "generation": gate.generation}})
        if not gate.future.done():
            gate.future.set_exception(GateTimeout(gate.session_id, gate.name, self.timeout_seconds))

    def _remove(self, session_id: str) -> Gate | None:
        gate = self._gates.pop(session_id, None)
        if gate and gate.timer:
            gate.timer.cancel()
        return gate

    # ─── Responding ──────────────────────────────────────────────────

    async def respond(
        self,
        session_id: str,
        payload: Any,
        gate: str | None = None,
        generation: int | None = None,
    ) -> dict[str, Any]:
        """
        Deliver an external response.

        Returns {"status": "ok" | "buffered", "gate", "generation"}.
        Raises GateMismatch, NoPendingGate, StalePipeline or SessionNotFound.
        """
        pending = self._gates.get(session_id)
        if pending is not None:
            if gate and gate != pending.name:
                raise GateMismatch(f"Expected gate '{pending.name}', got '{gate}'")
            if generation is not None and generation != pending.generation:
                raise GateMismatch(
                    f"Expected generation {pending.generation} for gate '{pending.name}', got {generation}"
                )
            self._remove(session_id)
            if not pending.future.done():
                pending.future.set_result(payload)
            self._stats["resolved"] += 1
            await self._mirror_clear(session_id, pending.generation)
            logger.info("Gate resolved: %s", pending.name,
                        extra={"structured": {"session_id": session_id, "gate": pending.name,
                                              "generation": pending.generation}})
            return {"status": "ok", "gate": pending.name, "generation": pending.generation}

        if self._is_live(session_id):
            if not gate:
                raise NoPendingGate(f"No pending gate for session {session_id}")
            current = self._generations.get(session_id, 0)
            if generation is not None and generation != current + 1:
                raise GateMismatch(
                    f"Generation {generation} is not the next gate (next is {current + 1})"
                )
            self._buffer(BufferedResponse(session_id, gate, payload, current))
            self._stats["buffered"] += 1
            logger.info("Buffered early gate response: %s", gate,
                        extra={"structured": {"session_id": session_id, "gate": gate,
                                              "generation": current}})
            return {"status": "buffered", "gate": gate, "generation": current + 1}

        record = await self._load_record(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if self.record_is_stale(record):
            await self._mark_stale(session_id)
            raise StalePipeline(session_id)
        if record.is_active:
            raise NoPendingGate(f"Pipeline for session {session_id} is running in another process")
        raise NoPendingGate(f"No pending gate for session {session_id}")

    def record_is_stale(self, record) -> bool:
        """
        Durable state claims an active run that is not live here. With
        stale_after_seconds set (several instances without sticky sessions),
        the record must also have gone that long without an update.
        """
        if record is None or not record.is_active:
            return False
        if self.stale_after_seconds is None:
            return True
        return time.time() - (record.updated_at or 0) > self.stale_after_seconds

    async def _mark_stale(self, session_id: str) -> None:
        self._stats["stale"] += 1
        if self.store is not None:
            await asyncio.to_thread(self.store.mark_stale, session_id)
        self._buffered.pop(session_id, None)
        if self._on_stale:
            try:
                self._on_stale(session_id)
            except Exception as e:  # listener delivery is best effort
                logger.warning("Stale pipeline notification failed for %s: %s", session_id, e)

    async def check_stale(self, session_id: str) -> bool:
        """
        True when durable state claims an active run that is not live here.
        Read-only; used by the status endpoint.
        """
        if self._is_live(session_id):
            return False
        return self.record_is_stale(await self._load_record(session_id))

    # ─── Buffer ──────────────────────────────────────────────────────

    def _buffer(self, item: BufferedResponse) -> None:
        if _json_size(item.payload) > self.max_item_bytes:
            if isinstance(item.payload, str):
                limit = max(64, int(self.max_item_bytes * 0.75))
                item.payload = item.payload[:limit] + "...[truncated for size]"
            else:
                item.payload = {
                    "truncated": True,
                    "reason": "buffered_response_too_large",
                    "max_bytes": self.max_item_bytes,
                }
        queue = self._buffered.setdefault(item.session_id, deque())
        queue.append(item)
        while len(queue) > self.max_buffered:
            queue.popleft()
        while len(queue) > 1 and sum(_json_size(q.payload) for q in queue) > self.max_total_bytes:
            queue.popleft()

    def _take_buffered(self, session_id: str, name: str, generation: int) -> Any:
        """
        Consume the buffered response for `name` valid at `generation`.
        Older entries can never match a later gate, so they are dropped here.
        """
        queue = self._buffered.get(session_id)
        if not queue:
            return _MISSING
        found = _MISSING
        for item in queue:
            if item.gate == name and item.generation == generation - 1:
                found = item.payload
                break
        # Entries are valid only for this generation; nothing survives it
        self._buffered.pop(session_id, None)
        if found is not _MISSING:
            self._stats["from_buffer"] += 1
            logger.info("Resolved gate from buffered response: %s", name,
                        extra={"structured": {"session_id": session_id, "gate": name,
                                              "generation": generation}})
        return found

    # ─── Durable mirror ──────────────────────────────────────────────

    async def _load_record(self, session_id: str):
        if self.store is None:
            return None
        return await asyncio.to_thread(self.store.get, session_id)

    async def _mirror_set(self, session_id: str, name: str, generation: int,
                          metadata: dict[str, Any] | None) -> None:
        if self.store is None:
            return
        await asyncio.to_thread(self.store.set_pending_gate, session_id, name, generation, metadata)

    async def _mirror_clear(self, session_id: str, generation: int) -> None:
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.clear_pending_gate, session_id, generation)
        except Exception as e:  # mirror is advisory; the run decides the outcome
            logger.warning("Failed to clear gate mirror for %s: %s", session_id, e)

    def _clear_mirror_later(self, session_id: str, generation: int) -> None:
        if self.store is None:
            return
        task = asyncio.get_running_loop().create_task(self._mirror_clear(session_id, generation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ─── Introspection ───────────────────────────────────────────────

    def pending(self, session_id: str) -> Gate | None:
        return self._gates.get(session_id)

    def generation(self, session_id: str) -> int:
        return self._generations.get(session_id, 0)

    def buffered_count(self, session_id: str) -> int:
        return len(self._buffered.get(session_id, ()))

    def stats(self) -> dict[str, Any]:
        return {
            "pending_gates": len(self._gates),
            "buffered_sessions": len(self._buffered),
            **self._stats,
        }
