"""
Resume Pipeline — Pipeline Types

Stages, per-run state, and the small value types passed between the
orchestrator and its collaborators. Stage outputs are opaque here: the
orchestrator stores whatever a collaborator returns.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class PipelineStage(str, Enum):
    INTAKE = "intake"
    POSITIONING = "positioning"
    RESEARCH = "research"
    GAP_ANALYSIS = "gap_analysis"
    ARCHITECT = "architect"
    ARCHITECT_REVIEW = "architect_review"
    SECTION_WRITING = "section_writing"
    SECTION_REVIEW = "section_review"
    QUALITY_REVIEW = "quality_review"
    REVISION = "revision"
    COMPLIANCE = "compliance"
    COMPLETE = "complete"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0

    def add(self, input_tokens: int = 0, output_tokens: int = 0, cost_usd: float = 0.0):
        self.input_tokens += int(input_tokens)
        self.output_tokens += int(output_tokens)
        self.estimated_cost_usd = round(self.estimated_cost_usd + float(cost_usd), 6)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RevisionInstruction:
    """One targeted edit: applied to exactly one existing section."""
    target_section: str
    instruction: str
    issue: str = ""
    priority: Priority = Priority.MEDIUM

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RevisionInstruction:
        try:
            priority = Priority(str(d.get("priority", "medium")).lower())
        except ValueError:
            priority = Priority.MEDIUM
        return cls(
            target_section=str(d.get("target_section") or d.get("section") or ""),
            instruction=str(d.get("instruction", "")),
            issue=str(d.get("issue", "")),
            priority=priority,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["priority"] = self.priority.value
        return d


@dataclass
class QualityReview:
    decision: str = "approve"  # approve | revise | redesign
    scores: dict[str, Any] = field(default_factory=dict)
    revision_instructions: list[RevisionInstruction] = field(default_factory=list)
    redesign_reason: str = ""

    @classmethod
    def from_value(cls, value: Any) -> QualityReview:
        if isinstance(value, QualityReview):
            return value
        d = value or {}
        return cls(
            decision=str(d.get("decision", "approve")),
            scores=dict(d.get("scores") or {}),
            revision_instructions=[
                i if isinstance(i, RevisionInstruction) else RevisionInstruction.from_dict(i)
                for i in (d.get("revision_instructions") or [])
            ],
            redesign_reason=str(d.get("redesign_reason") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "scores": self.scores,
            "revision_instructions": [i.to_dict() for i in self.revision_instructions],
            "redesign_reason": self.redesign_reason,
        }


@dataclass
class SectionCall:
    """One independent section generation job, planned before fan-out."""
    section: str
    inputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> SectionCall:
        if isinstance(value, SectionCall):
            return value
        if isinstance(value, str):
            return cls(section=value)
        return cls(section=str(value["section"]), inputs=dict(value.get("inputs") or {}))


@dataclass
class SectionOutcome:
    """Result-or-error capture for one fan-out task."""
    section: str
    ok: bool
    value: Any = None
    error: BaseException | None = None


@dataclass
class PipelineState:
    session_id: str
    user_id: str = ""
    current_stage: PipelineStage = PipelineStage.INTAKE
    intake: Any = None
    positioning: Any = None
    research: Any = None
    gap_analysis: Any = None
    architect: Any = None
    quality_review: QualityReview | None = None
    sections: dict[str, Any] = field(default_factory=dict)
    revision_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    stage_timings_ms: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "current_stage": self.current_stage.value,
            "sections": list(self.sections),
            "revision_count": self.revision_count,
            "token_usage": self.token_usage.to_dict(),
            "stage_timings_ms": dict(self.stage_timings_ms),
        }
