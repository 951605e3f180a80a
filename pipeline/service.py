"""
Resume Pipeline — Pipeline Service

Owns everything process-local about running pipelines: the running set,
the gate registry, the event hub, and the background task per run. The
HTTP layer talks only to this object.

Lifecycle of one run:
  start()   reserve a slot in the running set (synchronously, so two
            concurrent starts can't both pass the check), then under the
            session lock read the durable record, reject completed runs,
            mark it running and schedule the background task.
  _run()    drive the orchestrator; on the way out write the terminal
            state (complete + token usage, or error) under the session
            lock, then drop the run's gates and its running-set entry.
  cancel()  set the abort event, cancel the task and wait for it.

The running set is advisory; the durable record is authoritative. A
record that claims an active run this process doesn't have is a stale
pipeline (see GateRegistry).
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from pipeline.events import EventHub, pipeline_error
from pipeline.orchestrator import PipelineConfig, StageFailed, run_pipeline
from pipeline.stages import Collaborators, StageContext, load_collaborators
from pipeline.types import PipelineState
from runtime.config import Settings
from runtime.db import create_backend
from runtime.gates import GateRegistry, StalePipeline
from runtime.session_lock import SessionLock
from runtime.store import PipelineStatus, SessionNotFound, SessionRecord, SessionStore

logger = logging.getLogger("resume_pipeline.service")

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════

class PipelineAlreadyRunning(Exception):
    code = "PIPELINE_RUNNING"


class PipelineAlreadyComplete(Exception):
    code = "PIPELINE_COMPLETE"


class CapacityExceeded(Exception):
    code = "CAPACITY_LIMIT"


class PipelineNotRunning(Exception):
    code = "NOT_RUNNING"


# ═══════════════════════════════════════════════════════════════════
# Types
# ═══════════════════════════════════════════════════════════════════

@dataclass
class StartRequest:
    session_id: str
    user_id: str
    raw_resume_text: str
    job_description: str
    company_name: str = ""


@dataclass
class RunHandle:
    request: StartRequest
    context: StageContext
    task: asyncio.Task | None = None
    started_at: float = field(default_factory=time.time)


# ═══════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════

class PipelineService:
    def __init__(
        self,
        store: SessionStore,
        settings: Settings | None = None,
        collaborators: Collaborators | None = None,
        events: EventHub | None = None,
        lock: SessionLock | None = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.collaborators = collaborators or load_collaborators(self.settings.collaborators)
        self.events = events or EventHub()
        self.lock = lock
        self.gates = GateRegistry(
            store,
            timeout_seconds=self.settings.gate_timeout_seconds,
            max_buffered=self.settings.max_buffered_responses,
            max_item_bytes=self.settings.max_buffered_item_bytes,
            max_total_bytes=self.settings.max_buffered_total_bytes,
            is_live=self.is_running,
            on_stale=self._notify_stale,
            stale_after_seconds=None if self.settings.single_instance else self.settings.stale_pipeline_seconds,
        )
        self._running: dict[str, RunHandle] = {}
        self._stats = {"started": 0, "completed": 0, "failed": 0, "cancelled": 0}

    # ─── Queries ─────────────────────────────────────────────────────

    def is_running(self, session_id: str) -> bool:
        return session_id in self._running

    def running_sessions(self) -> list[str]:
        return list(self._running)

    async def status(self, session_id: str) -> dict[str, Any]:
        record = await asyncio.to_thread(self.store.get, session_id)
        running = self.is_running(session_id)
        if record is None and not running:
            raise SessionNotFound(f"Session {session_id} not found")

        gate = self.gates.pending(session_id)
        if gate is not None:
            pending_gate, generation = gate.name, gate.generation
        elif record is not None:
            pending_gate, generation = record.pending_gate, record.gate_generation
        else:
            pending_gate, generation = None, self.gates.generation(session_id)

        return {
            "session_id": session_id,
            "running": running,
            "pending_gate": pending_gate,
            "gate_generation": generation,
            "stale_pipeline": not running and self.gates.record_is_stale(record),
            "stage": record.pipeline_stage if record else "",
            "status": record.pipeline_status.value if record else PipelineStatus.RUNNING.value,
            "error": record.error if record else None,
        }

    # ─── Start ───────────────────────────────────────────────────────

    async def start(self, request: StartRequest) -> dict[str, Any]:
        """
        Begin a run in the background. Raises PipelineAlreadyRunning,
        PipelineAlreadyComplete, CapacityExceeded, SessionNotFound (the
        session belongs to another user), or a session lock error.
        """
        session_id = request.session_id
        if session_id in self._running:
            raise PipelineAlreadyRunning(f"Pipeline already running for session {session_id}")
        if len(self._running) >= self.settings.max_running_pipelines:
            raise CapacityExceeded(
                f"Server is at capacity ({self.settings.max_running_pipelines} running pipelines)"
            )

        handle = RunHandle(
            request=request,
            context=StageContext(session_id, session_lock=self.lock),
        )
        self._running[session_id] = handle
        try:
            record = await self._locked(
                session_id, lambda: asyncio.to_thread(self._claim, request)
            )
        except BaseException:
            self._running.pop(session_id, None)
            self.gates.discard_session(session_id)
            raise

        self.gates.begin_session(session_id, record.gate_generation)
        self.events.reset(session_id)
        handle.task = asyncio.create_task(self._run(handle), name=f"pipeline:{session_id}")
        self._stats["started"] += 1
        logger.info("Pipeline started: %s", session_id,
                    extra={"structured": {"session_id": session_id, "user_id": request.user_id,
                                          "running": len(self._running)}})
        return {"status": "started", "session_id": session_id}

    def _claim(self, request: StartRequest) -> SessionRecord:
        """Check and flip the durable record to running. Runs under the session lock."""
        record = self.store.ensure_session(request.session_id, request.user_id)
        if record.user_id and request.user_id and record.user_id != request.user_id:
            raise SessionNotFound(f"Session {request.session_id} not found")
        if record.pipeline_status == PipelineStatus.COMPLETE:
            raise PipelineAlreadyComplete(f"Pipeline already complete for session {request.session_id}")
        if record.is_active and not self.gates.record_is_stale(record):
            raise PipelineAlreadyRunning(
                f"Pipeline for session {request.session_id} is running in another process"
            )
        if record.is_active:
            logger.warning("Restarting over stale pipeline record: %s", request.session_id,
                           extra={"structured": {"session_id": request.session_id,
                                                 "stage": record.pipeline_stage}})
        self.store.mark_running(request.session_id, request.user_id)
        return record

    # ─── Run ─────────────────────────────────────────────────────────

    async def _run(self, handle: RunHandle) -> None:
        request = handle.request
        session_id = request.session_id
        config = PipelineConfig(
            session_id=session_id,
            user_id=request.user_id,
            raw_resume_text=request.raw_resume_text,
            job_description=request.job_description,
            company_name=request.company_name,
            collaborators=self.collaborators,
            emit=self.events.emitter(session_id),
            wait_for_user=functools.partial(self.gates.wait_for_user, session_id),
            on_transition=self._on_transition,
            context=handle.context,
            settings=self.settings,
        )
        try:
            state = await run_pipeline(config)
        except asyncio.CancelledError:
            self._stats["cancelled"] += 1
            await self._finish_error(session_id, "Pipeline cancelled")
            raise
        except StageFailed as e:
            self._stats["failed"] += 1
            await self._finish_error(session_id, str(e))
        except Exception as e:
            self._stats["failed"] += 1
            logger.exception("Unexpected pipeline failure: %s", session_id)
            await self._finish_error(session_id, str(e))
        else:
            self._stats["completed"] += 1
            await self._finish_complete(state)
        finally:
            self.gates.discard_session(session_id)
            self._running.pop(session_id, None)
            self.events.release(session_id, after=self.settings.event_retention_seconds)

    async def _on_transition(self, state: PipelineState) -> None:
        await asyncio.to_thread(self.store.update_stage, state.session_id, state.current_stage.value)

    async def _finish_complete(self, state: PipelineState) -> None:
        usage = state.token_usage
        write = functools.partial(
            self.store.mark_complete, state.session_id, state.current_stage.value,
            usage.input_tokens, usage.output_tokens, usage.estimated_cost_usd,
        )
        try:
            await self._locked(state.session_id, lambda: asyncio.to_thread(write))
        except Exception as e:
            logger.error("Failed to persist completion for %s: %s", state.session_id, e,
                         extra={"structured": {"session_id": state.session_id}})

    async def _finish_error(self, session_id: str, error: str) -> None:
        try:
            await self._locked(
                session_id, lambda: asyncio.to_thread(self.store.mark_error, session_id, error)
            )
        except Exception as e:
            logger.error("Failed to persist pipeline error for %s: %s", session_id, e,
                         extra={"structured": {"session_id": session_id}})

    async def _locked(self, session_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        if self.lock is None:
            return await fn()
        return await self.lock.with_lock(session_id, fn)

    # ─── Responses ───────────────────────────────────────────────────

    async def respond(
        self,
        session_id: str,
        payload: Any,
        gate: str | None = None,
        generation: int | None = None,
    ) -> dict[str, Any]:
        return await self.gates.respond(session_id, payload, gate=gate, generation=generation)

    def _notify_stale(self, session_id: str) -> None:
        self.events.publish(session_id, pipeline_error(
            "", str(StalePipeline(session_id)), code=StalePipeline.code,
        ))
        if not self.is_running(session_id):
            self.events.release(session_id, after=self.settings.event_retention_seconds)

    # ─── Cancel / shutdown ───────────────────────────────────────────

    async def cancel(self, session_id: str) -> dict[str, Any]:
        handle = self._running.get(session_id)
        if handle is None:
            raise PipelineNotRunning(f"No running pipeline for session {session_id}")
        handle.context.abort.set()
        if handle.task is not None:
            handle.task.cancel()
            await asyncio.wait({handle.task})
            await self._reap(handle)
        logger.info("Pipeline cancelled: %s", session_id,
                    extra={"structured": {"session_id": session_id}})
        return {"status": "cancelled", "session_id": session_id}

    async def _reap(self, handle: RunHandle) -> None:
        # A task cancelled before its first step never enters _run's finally
        session_id = handle.request.session_id
        if self._running.get(session_id) is not handle:
            return
        self._running.pop(session_id, None)
        self.gates.discard_session(session_id)
        self._stats["cancelled"] += 1
        await self._finish_error(session_id, "Pipeline cancelled")
        self.events.release(session_id, after=self.settings.event_retention_seconds)

    async def shutdown(self) -> None:
        """Cancel every run owned by this process and release its locks."""
        handles = []
        for handle in list(self._running.values()):
            handle.context.abort.set()
            if handle.task is not None:
                handle.task.cancel()
                handles.append(handle)
        if handles:
            logger.info("Cancelling %d running pipeline(s) on shutdown", len(handles))
            await asyncio.wait([h.task for h in handles])
            for handle in handles:
                await self._reap(handle)
        if self.lock is not None:
            await self.lock.release_all()

    def stats(self) -> dict[str, Any]:
        return {
            "running": len(self._running),
            "max_running": self.settings.max_running_pipelines,
            **self._stats,
            "gates": self.gates.stats(),
            "events": self.events.stats(),
            "session_lock": self.lock.stats() if self.lock else None,
        }


# ═══════════════════════════════════════════════════════════════════
# Factory
# ═══════════════════════════════════════════════════════════════════

def create_service(settings: Settings, collaborators: Collaborators | None = None) -> PipelineService:
    """Wire a PipelineService to the configured database and session lock."""
    db = create_backend(settings.db_backend, path=settings.db_path, dsn=settings.db_dsn)
    lock = SessionLock(
        db,
        expiry_seconds=settings.lock_expiry_seconds,
        poll_interval_seconds=settings.lock_poll_interval_seconds,
        max_wait_seconds=settings.lock_max_wait_seconds,
        renew_interval_seconds=settings.lock_renew_interval_seconds,
        max_consecutive_errors=settings.lock_max_consecutive_errors,
    )
    logger.info("Pipeline service using %s backend", db.backend_type)
    return PipelineService(SessionStore(db), settings=settings, collaborators=collaborators, lock=lock)
