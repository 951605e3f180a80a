"""
Resume Pipeline — API Server

FastAPI application serving:
  POST /v1/pipeline/start                 — start a run for a session
  POST /v1/pipeline/respond               — answer (or pre-answer) a gate
  POST /v1/pipeline/cancel                — cancel a running pipeline
  GET  /v1/pipeline/status?session_id=    — running / pending gate / stale
  GET  /v1/pipeline/{session_id}/events   — Server-Sent Events stream
  GET  /health                            — liveness
  GET  /ready                             — readiness (session store reachable)
  GET  /v1/stats                          — service, gate, lock and limiter stats

Every error body is {"error": message, "code": CODE}. start is limited to
5 req/min, respond and cancel to 30 req/min each, per identity
(X-User-Id header, else client IP).

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Shared rate limit counters across instances
    FF_REDIS_RATE_LIMIT=true REDIS_URL=redis://localhost:6379 uvicorn api.server:app
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from api.models import CancelPipeline, ErrorBody, GateResponse, PipelineStatusResponse, StartPipeline
from pipeline.events import format_sse
from pipeline.service import (
    CapacityExceeded,
    PipelineAlreadyComplete,
    PipelineAlreadyRunning,
    PipelineNotRunning,
    PipelineService,
    StartRequest,
    create_service,
)
from runtime.config import Settings, load_settings
from runtime.gates import GateMismatch, NoPendingGate, StalePipeline
from runtime.logging import configure_logging
from runtime.rate_limit import RateLimiter, RateLimitExceeded, identity_from_request
from runtime.redis_client import get_redis_client, shutdown_redis
from runtime.session_lock import LockTimeout, LockUnavailable
from runtime.store import SessionNotFound

logger = logging.getLogger("resume_pipeline.api")

RATE_WINDOW_MS = 60_000

# exception → (HTTP status, code used when the exception has none)
_ERROR_MAP: dict[type[Exception], tuple[int, str]] = {
    PipelineAlreadyRunning: (409, "PIPELINE_RUNNING"),
    PipelineAlreadyComplete: (409, "PIPELINE_COMPLETE"),
    StalePipeline: (409, "STALE_PIPELINE"),
    CapacityExceeded: (503, "CAPACITY_LIMIT"),
    GateMismatch: (400, "GATE_MISMATCH"),
    NoPendingGate: (404, "NO_PENDING_GATE"),
    SessionNotFound: (404, "SESSION_NOT_FOUND"),
    PipelineNotRunning: (404, "NOT_RUNNING"),
    LockTimeout: (409, "SESSION_LOCKED"),
    LockUnavailable: (503, "LOCK_UNAVAILABLE"),
}


def create_app(
    settings: Settings | None = None,
    service: PipelineService | None = None,
    limiter: RateLimiter | None = None,
) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances with their own service.
    """
    settings = settings or (service.settings if service else load_settings())
    limiter = limiter or RateLimiter(
        redis_enabled=settings.features.redis_rate_limit,
        client_factory=lambda: get_redis_client(settings.redis_url),
        max_buckets=settings.max_rate_limit_buckets,
    )

    # ── State ────────────────────────────────────────────────

    _service: PipelineService | None = service

    def get_service() -> PipelineService:
        nonlocal _service
        if _service is None:
            _service = create_service(settings)
        return _service

    # ── Lifecycle ─────────────────────────────────────────────

    @asynccontextmanager
    async def lifespan(app):
        configure_logging(settings.log_level)
        logger.info("Resume pipeline API starting")
        yield
        if _service is not None:
            await _service.shutdown()
        await shutdown_redis()
        logger.info("Resume pipeline API stopped")

    app = FastAPI(
        title="Resume Pipeline API",
        version="0.1.0",
        description="Orchestration for the multi-stage resume pipeline",
        lifespan=lifespan,
    )

    # ── Errors ────────────────────────────────────────────────

    def error_response(status_code: int, message: str, code: str,
                       details: list[str] | None = None, headers: dict[str, str] | None = None):
        body = ErrorBody(error=message, code=code, details=details or [])
        return JSONResponse(status_code=status_code, content=body.to_dict(), headers=headers)

    async def handle_pipeline_error(request: Request, exc: Exception):
        for exc_type, (status_code, default_code) in _ERROR_MAP.items():
            if isinstance(exc, exc_type):
                return error_response(status_code, str(exc), getattr(exc, "code", None) or default_code)
        raise exc

    for exc_type in _ERROR_MAP:
        app.add_exception_handler(exc_type, handle_pipeline_error)

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limit(request: Request, exc: RateLimitExceeded):
        return error_response(429, str(exc), exc.code, headers=exc.decision.headers())

    # ── Helpers ───────────────────────────────────────────────

    async def admit(request: Request, route: str, limit: int):
        client_ip = request.client.host if request.client else None
        identity = identity_from_request(request.headers.get("X-User-Id"), client_ip)
        decision = await limiter.decide(identity, route, limit, RATE_WINDOW_MS)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        return decision

    async def read_body(request: Request) -> dict[str, Any] | None:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def invalid(errors: list[str]):
        return error_response(422, "Invalid request", "INVALID_REQUEST", details=errors)

    # ── Pipeline ──────────────────────────────────────────────

    @app.post("/v1/pipeline/start")
    async def start_pipeline(request: Request):
        decision = await admit(request, "POST:/v1/pipeline/start", settings.start_limit_per_minute)
        body = await read_body(request)
        if body is None:
            return invalid(["request body must be a JSON object"])
        submission = StartPipeline.from_body(body)
        errors = submission.validate()
        if errors:
            return invalid(errors)

        result = await get_service().start(StartRequest(
            session_id=submission.session_id,
            user_id=request.headers.get("X-User-Id") or submission.user_id,
            raw_resume_text=submission.raw_resume_text,
            job_description=submission.job_description,
            company_name=submission.company_name,
        ))
        return JSONResponse(content=result, headers=decision.headers())

    @app.post("/v1/pipeline/respond")
    async def respond(request: Request):
        decision = await admit(request, "POST:/v1/pipeline/respond", settings.respond_limit_per_minute)
        body = await read_body(request)
        if body is None:
            return invalid(["request body must be a JSON object"])
        answer = GateResponse.from_body(body)
        errors = answer.validate()
        if errors:
            return invalid(errors)

        result = await get_service().respond(
            answer.session_id, answer.response, gate=answer.gate, generation=answer.generation,
        )
        return JSONResponse(content=result, headers=decision.headers())

    @app.post("/v1/pipeline/cancel")
    async def cancel_pipeline(request: Request):
        decision = await admit(request, "POST:/v1/pipeline/cancel", settings.respond_limit_per_minute)
        body = await read_body(request)
        if body is None:
            return invalid(["request body must be a JSON object"])
        action = CancelPipeline(session_id=body.get("session_id", ""))
        errors = action.validate()
        if errors:
            return invalid(errors)
        result = await get_service().cancel(action.session_id)
        return JSONResponse(content=result, headers=decision.headers())

    @app.get("/v1/pipeline/status")
    async def pipeline_status(session_id: str = ""):
        if not session_id:
            return error_response(400, "Missing session_id", "INVALID_REQUEST")
        status = PipelineStatusResponse(**await get_service().status(session_id))
        return JSONResponse(content=status.to_dict())

    @app.get("/v1/pipeline/{session_id}/events")
    async def pipeline_events(session_id: str, request: Request):
        last_event_id = request.headers.get("Last-Event-ID", "")
        after_seq = int(last_event_id) if last_event_id.isdigit() else 0
        events = get_service().events

        async def stream():
            async for event in events.subscribe(session_id, after_seq=after_seq):
                yield format_sse(event)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # ── Stats ─────────────────────────────────────────────────

    @app.get("/v1/stats")
    async def get_stats():
        service = get_service()
        stats = service.stats()
        stats["rate_limit"] = limiter.metrics
        if service.lock is not None:
            try:
                stats["session_lock"]["active_locks"] = await service.lock.active_count()
            except Exception as e:
                logger.warning("Failed to count active session locks: %s", e)
        return JSONResponse(content=stats)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        # Check the session store is reachable
        try:
            service = get_service()
            await asyncio.to_thread(service.store.db.fetchone, "SELECT 1 AS ok")
            return JSONResponse(content={"status": "ok", "running": len(service.running_sessions())})
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "api.server:app",
        host=os.environ.get("CC_HOST", "0.0.0.0"),
        port=int(os.environ.get("CC_PORT", "8080")),
    )


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
