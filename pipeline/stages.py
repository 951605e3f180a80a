"""
Resume Pipeline — Stage Collaborators

The orchestrator owns sequencing; the generation work for each stage is
done by collaborators supplied by the host. Every collaborator has the
same shape:

    async def collaborator(payload: dict, ctx: StageContext) -> Any

`ctx` carries the session id, a cancellation event, the run's token usage
accumulator and a session-scoped logger. Collaborators that issue network
calls should check `ctx.aborted` (or call `ctx.raise_if_aborted()`) and
report usage with `ctx.record_usage(...)`. Retry, if any, belongs inside
the collaborator.

Collaborators can be configured by import path:

    pipeline:
      collaborators: "mypackage.resume_agents:build_collaborators"
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable

from pipeline.types import TokenUsage
from runtime.logging import session_logger

logger = logging.getLogger("resume_pipeline.stages")

StageFn = Callable[[dict[str, Any], "StageContext"], Awaitable[Any]]


class PipelineCancelled(Exception):
    """Raised inside a run after cancel() was requested."""
    pass


class CollaboratorNotConfigured(Exception):
    pass


@dataclass
class StageContext:
    session_id: str
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    usage: TokenUsage = field(default_factory=TokenUsage)
    log: Any = None
    session_lock: Any = None  # runtime.session_lock.SessionLock

    def __post_init__(self):
        if self.log is None:
            self.log = session_logger(self.session_id, component="orchestrator")

    async def with_session_lock(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Serialize a session mutation across processes. Runs fn directly without a lock."""
        if self.session_lock is None:
            return await fn()
        return await self.session_lock.with_lock(self.session_id, fn)

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()

    def raise_if_aborted(self) -> None:
        if self.abort.is_set():
            raise PipelineCancelled(f"Pipeline {self.session_id} was cancelled")

    def record_usage(self, input_tokens: int = 0, output_tokens: int = 0, cost_usd: float = 0.0) -> None:
        self.usage.add(input_tokens, output_tokens, cost_usd)


@dataclass
class Collaborators:
    """
    Generation steps, one per stage.

      intake(raw_resume_text, job_description)         → parsed resume
      positioning_questions(intake)                    → [{"id": ..., ...}]
      follow_up(question, answer)                      → question | None   (optional)
      synthesize_positioning(intake, answers)          → positioning profile
      research(job_description, company_name, intake)  → research
      gap_analysis(intake, positioning, research)      → gap analysis
      architect(intake, positioning, research, gap_analysis) → blueprint
      plan_sections(architect, intake, positioning)    → [SectionCall | {"section", "inputs"} | str]
      write_section(section, inputs, architect)        → section content
      revise_section(section, content, instruction, architect) → revised content
      quality_review(sections, architect, research)    → {"decision", "scores", "revision_instructions", ...}
      compliance_check(sections)                       → [{"section", "issue", "instruction", "priority"}]
    """
    intake: StageFn
    positioning_questions: StageFn
    synthesize_positioning: StageFn
    research: StageFn
    gap_analysis: StageFn
    architect: StageFn
    plan_sections: StageFn
    write_section: StageFn
    revise_section: StageFn
    quality_review: StageFn
    compliance_check: StageFn
    follow_up: StageFn | None = None


def _not_configured(name: str) -> StageFn:
    async def collaborator(payload: dict[str, Any], ctx: StageContext) -> Any:
        raise CollaboratorNotConfigured(
            f"No '{name}' collaborator configured. Set pipeline.collaborators in pipeline_config.yaml."
        )
    return collaborator


def unconfigured_collaborators() -> Collaborators:
    """Collaborators that fail the run at the first stage."""
    kwargs = {f.name: _not_configured(f.name) for f in fields(Collaborators) if f.name != "follow_up"}
    return Collaborators(**kwargs)


def load_collaborators(path: str) -> Collaborators:
    """
    Resolve "module:factory" to a Collaborators instance. An empty path
    gives the unconfigured set.
    """
    if not path:
        logger.warning("No pipeline collaborators configured; runs will fail at intake")
        return unconfigured_collaborators()
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Collaborators path must be 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    collaborators = factory() if callable(factory) else factory
    if not isinstance(collaborators, Collaborators):
        raise TypeError(f"{path} did not produce a Collaborators instance")
    logger.info("Loaded pipeline collaborators from %s", path)
    return collaborators
