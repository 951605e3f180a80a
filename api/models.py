"""
Resume Pipeline — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server and tests.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

MAX_RESUME_CHARS = 100_000
MIN_RESUME_CHARS = 50
MAX_JOB_DESCRIPTION_CHARS = 50_000
MIN_JOB_DESCRIPTION_CHARS = 20
MAX_COMPANY_NAME_CHARS = 200
MAX_GATE_NAME_CHARS = 100


def _session_id_errors(session_id: Any) -> list[str]:
    if not session_id or not isinstance(session_id, str):
        return ["session_id is required and must be a string"]
    try:
        uuid.UUID(session_id)
    except ValueError:
        return ["session_id must be a UUID"]
    return []


def _text_errors(name: str, value: Any, min_len: int, max_len: int) -> list[str]:
    if not isinstance(value, str):
        return [f"{name} is required and must be a string"]
    if len(value) < min_len or len(value) > max_len:
        return [f"{name} must be between {min_len} and {max_len} characters"]
    return []


@dataclass
class StartPipeline:
    """POST /v1/pipeline/start request body."""
    session_id: str
    raw_resume_text: str
    job_description: str
    company_name: str
    user_id: str = ""

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> StartPipeline:
        return cls(
            session_id=body.get("session_id", ""),
            raw_resume_text=body.get("raw_resume_text", ""),
            job_description=body.get("job_description", ""),
            company_name=body.get("company_name", ""),
            user_id=body.get("user_id") or "",
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = _session_id_errors(self.session_id)
        errors += _text_errors("raw_resume_text", self.raw_resume_text,
                               MIN_RESUME_CHARS, MAX_RESUME_CHARS)
        errors += _text_errors("job_description", self.job_description,
                               MIN_JOB_DESCRIPTION_CHARS, MAX_JOB_DESCRIPTION_CHARS)
        errors += _text_errors("company_name", self.company_name, 1, MAX_COMPANY_NAME_CHARS)
        if not isinstance(self.user_id, str):
            errors.append("user_id must be a string")
        return errors


@dataclass
class GateResponse:
    """POST /v1/pipeline/respond request body. `response` may be any JSON value."""
    session_id: str
    response: Any = None
    gate: str | None = None
    generation: int | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> GateResponse:
        return cls(
            session_id=body.get("session_id", ""),
            response=body.get("response"),
            gate=body.get("gate"),
            generation=body.get("generation"),
        )

    def validate(self) -> list[str]:
        errors = _session_id_errors(self.session_id)
        if self.gate is not None and (
            not isinstance(self.gate, str) or not 1 <= len(self.gate) <= MAX_GATE_NAME_CHARS
        ):
            errors.append(f"gate must be a string of 1 to {MAX_GATE_NAME_CHARS} characters")
        if self.generation is not None and (
            isinstance(self.generation, bool) or not isinstance(self.generation, int) or self.generation < 1
        ):
            errors.append("generation must be a positive integer")
        return errors


@dataclass
class CancelPipeline:
    """POST /v1/pipeline/cancel request body."""
    session_id: str

    def validate(self) -> list[str]:
        return _session_id_errors(self.session_id)


@dataclass
class PipelineStatusResponse:
    """GET /v1/pipeline/status response."""
    session_id: str
    running: bool
    pending_gate: str | None
    gate_generation: int
    stale_pipeline: bool
    stage: str
    status: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ErrorBody:
    """Every non-2xx response: {"error": message, "code": CODE}."""
    error: str
    code: str
    details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        if not self.details:
            d.pop("details")
        return d
