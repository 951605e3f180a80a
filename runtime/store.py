"""
Resume Pipeline — Durable Session Record

The cross-process source of truth for a session's run: status, current
stage, the pending gate (name + metadata + generation), error, and token
usage. In-process maps (running set, gates, buffered responses) are only
caches; anything another process or a reconnecting client needs to see is
written here.

All methods are synchronous. Async callers wrap them in asyncio.to_thread.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from runtime.db import PIPELINE_SCHEMA, DatabaseBackend, UniqueViolation

logger = logging.getLogger("resume_pipeline.store")


class PipelineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


STALE_PIPELINE_ERROR = "stale_pipeline"


class SessionNotFound(Exception):
    """Raised when no durable record exists for a session id."""
    pass


@dataclass
class SessionRecord:
    session_id: str
    user_id: str = ""
    pipeline_status: PipelineStatus = PipelineStatus.IDLE
    pipeline_stage: str = ""
    pending_gate: str | None = None
    pending_gate_data: dict[str, Any] | None = None
    gate_generation: int = 0
    error: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_active(self) -> bool:
        """Durable state claims a run is in flight or waiting on a gate."""
        return self.pipeline_status == PipelineStatus.RUNNING or self.pending_gate is not None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["pipeline_status"] = self.pipeline_status.value
        return d


class SessionStore:
    """Session record CRUD over a DatabaseBackend."""

    def __init__(self, db: DatabaseBackend):
        self.db = db
        self.db.executescript(PIPELINE_SCHEMA)

    # ─── Reads ───────────────────────────────────────────────────────

    def get(self, session_id: str) -> SessionRecord | None:
        row = self.db.fetchone(
            "SELECT * FROM pipeline_sessions WHERE session_id = ?", (session_id,)
        )
        if not row:
            return None
        return self._row_to_record(row)

    def list_by_status(self, status: PipelineStatus, limit: int = 500) -> list[SessionRecord]:
        rows = self.db.fetchall(
            "SELECT * FROM pipeline_sessions WHERE pipeline_status = ? ORDER BY updated_at DESC LIMIT ?",
            (status.value, limit),
        )
        return [self._row_to_record(r) for r in rows]

    def _row_to_record(self, row: dict[str, Any]) -> SessionRecord:
        data = row.get("pending_gate_data")
        return SessionRecord(
            session_id=row["session_id"],
            user_id=row["user_id"] or "",
            pipeline_status=PipelineStatus(row["pipeline_status"]),
            pipeline_stage=row["pipeline_stage"] or "",
            pending_gate=row["pending_gate"],
            pending_gate_data=json.loads(data) if data else None,
            gate_generation=int(row["gate_generation"] or 0),
            error=row["error"],
            input_tokens=int(row["input_tokens"] or 0),
            output_tokens=int(row["output_tokens"] or 0),
            estimated_cost_usd=float(row["estimated_cost_usd"] or 0.0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ─── Writes ──────────────────────────────────────────────────────

    def ensure_session(self, session_id: str, user_id: str = "") -> SessionRecord:
        """Create an idle record if none exists. Returns the current record."""
        existing = self.get(session_id)
        if existing:
            return existing
        now = time.time()
        try:
            self.db.execute(
                """INSERT INTO pipeline_sessions
                   (session_id, user_id, pipeline_status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (session_id, user_id, PipelineStatus.IDLE.value, now, now),
            )
        except UniqueViolation:
            pass  # created concurrently by another request
        return self.get(session_id)

    def mark_running(self, session_id: str, user_id: str = "", stage: str = "") -> None:
        self.ensure_session(session_id, user_id)
        self.db.execute(
            """UPDATE pipeline_sessions
               SET pipeline_status = ?, pipeline_stage = ?, pending_gate = NULL,
                   pending_gate_data = NULL, error = NULL, updated_at = ?
               WHERE session_id = ?""",
            (PipelineStatus.RUNNING.value, stage, time.time(), session_id),
        )

    def update_stage(self, session_id: str, stage: str) -> None:
        self.db.execute(
            "UPDATE pipeline_sessions SET pipeline_stage = ?, updated_at = ? WHERE session_id = ?",
            (stage, time.time(), session_id),
        )

    def set_pending_gate(
        self,
        session_id: str,
        gate: str,
        generation: int,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.db.execute(
            """UPDATE pipeline_sessions
               SET pending_gate = ?, pending_gate_data = ?, gate_generation = ?, updated_at = ?
               WHERE session_id = ?""",
            (gate, json.dumps(data, default=str) if data is not None else None,
             generation, time.time(), session_id),
        )

    def clear_pending_gate(self, session_id: str, generation: int | None = None) -> bool:
        """
        Clear the gate mirror. With a generation, only clears if the mirror
        still belongs to that gate, so a late cleanup never erases a newer gate.
        """
        sql = """UPDATE pipeline_sessions
                 SET pending_gate = NULL, pending_gate_data = NULL, updated_at = ?
                 WHERE session_id = ?"""
        params: tuple = (time.time(), session_id)
        if generation is not None:
            sql += " AND gate_generation = ?"
            params += (generation,)
        cursor = self.db.execute(sql, params)
        return (cursor.rowcount or 0) > 0

    def mark_complete(
        self,
        session_id: str,
        stage: str = "complete",
        input_tokens: int = 0,
        output_tokens: int = 0,
        estimated_cost_usd: float = 0.0,
    ) -> None:
        self.db.execute(
            """UPDATE pipeline_sessions
               SET pipeline_status = ?, pipeline_stage = ?, pending_gate = NULL,
                   pending_gate_data = NULL, error = NULL,
                   input_tokens = ?, output_tokens = ?, estimated_cost_usd = ?, updated_at = ?
               WHERE session_id = ?""",
            (PipelineStatus.COMPLETE.value, stage, input_tokens, output_tokens,
             estimated_cost_usd, time.time(), session_id),
        )

    def mark_error(self, session_id: str, error: str) -> None:
        self.db.execute(
            """UPDATE pipeline_sessions
               SET pipeline_status = ?, pending_gate = NULL, pending_gate_data = NULL,
                   error = ?, updated_at = ?
               WHERE session_id = ?""",
            (PipelineStatus.ERROR.value, error[:2000], time.time(), session_id),
        )

    def mark_stale(self, session_id: str) -> bool:
        """
        Flip a record whose run no longer exists to error. Conditional on the
        record still claiming to be active, so only one caller wins.
        """
        cursor = self.db.execute(
            """UPDATE pipeline_sessions
               SET pipeline_status = ?, pending_gate = NULL, pending_gate_data = NULL,
                   error = ?, updated_at = ?
               WHERE session_id = ? AND (pipeline_status = ? OR pending_gate IS NOT NULL)""",
            (PipelineStatus.ERROR.value, STALE_PIPELINE_ERROR, time.time(),
             session_id, PipelineStatus.RUNNING.value),
        )
        flipped = (cursor.rowcount or 0) > 0
        if flipped:
            logger.warning("Marked stale pipeline as error: %s", session_id,
                           extra={"structured": {"session_id": session_id}})
        return flipped
