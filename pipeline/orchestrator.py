"""
Resume Pipeline — Stage Orchestrator

Walks the fixed stage sequence for one session:

  intake → positioning interview (gates positioning_q_<id>) → research →
  gap analysis → architect → blueprint approval (gate architect_review) →
  section writing (fan-out, gates section_review_<name>) → quality review →
  revision (at most once, gate quality_fixes) → compliance → complete

Every stage emits stage_start, runs its collaborator, stores the output on
PipelineState and emits stage_complete with duration_ms. The state summary
is mirrored through `on_transition` whenever the current stage changes.

Any exception ends the run: a pipeline_error event carrying the stage that
was active is emitted and StageFailed is raised to the caller.

Section fan-out: all section calls are planned first and started at once as
tasks (bounded by a semaphore and a per-section timeout), each wrapped so a
failure becomes a SectionOutcome instead of a stray task exception. Review
then walks the list in its original order; a failed section is fatal only
when its turn comes. Unfinished section tasks are cancelled when the run
ends for any reason.

Usage:
    state = await run_pipeline(PipelineConfig(
        session_id="sess-1", user_id="u-1",
        raw_resume_text=..., job_description=..., company_name=...,
        collaborators=collaborators,
        emit=hub.emitter("sess-1"),
        wait_for_user=functools.partial(gates.wait_for_user, "sess-1"),
    ))
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pipeline.events import Event, make_event, pipeline_error, stage_complete, stage_start, transparency
from pipeline.stages import Collaborators, PipelineCancelled, StageContext
from pipeline.types import (
    PipelineStage,
    PipelineState,
    Priority,
    QualityReview,
    RevisionInstruction,
    SectionCall,
    SectionOutcome,
)
from runtime.config import Settings
from runtime.gates import GateSuperseded, GateTimeout

logger = logging.getLogger("resume_pipeline.orchestrator")

WaitForUser = Callable[..., Awaitable[Any]]


class StageFailed(Exception):
    """The run ended with an error; `stage` is the stage active at that moment."""

    def __init__(self, stage: PipelineStage, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage.value}' failed: {cause}")

    @property
    def code(self) -> str:
        if isinstance(self.cause, GateTimeout):
            return "GATE_TIMEOUT"
        if isinstance(self.cause, PipelineCancelled):
            return "CANCELLED"
        return "STAGE_FAILED"


class SectionGenerationFailed(Exception):
    def __init__(self, section: str, cause: BaseException):
        self.section = section
        self.cause = cause
        super().__init__(f"Section '{section}' failed: {cause}")


@dataclass
class PipelineConfig:
    session_id: str
    user_id: str
    raw_resume_text: str
    job_description: str
    company_name: str
    collaborators: Collaborators
    emit: Callable[[Event], None]
    wait_for_user: WaitForUser
    on_transition: Callable[[PipelineState], Awaitable[None]] | None = None
    context: StageContext | None = None
    settings: Settings = field(default_factory=Settings)


async def run_pipeline(config: PipelineConfig) -> PipelineState:
    """Run the full pipeline. Returns the final state or raises StageFailed."""
    ctx = config.context or StageContext(config.session_id)
    state = PipelineState(
        session_id=config.session_id,
        user_id=config.user_id,
        token_usage=ctx.usage,
    )
    return await _PipelineRun(config, state, ctx).run()


# ═══════════════════════════════════════════════════════════════════
# Run
# ═══════════════════════════════════════════════════════════════════

class _PipelineRun:
    def __init__(self, config: PipelineConfig, state: PipelineState, ctx: StageContext):
        self.config = config
        self.state = state
        self.ctx = ctx
        self.collab = config.collaborators
        self.settings = config.settings
        self.log = ctx.log
        self._section_tasks: list[asyncio.Task] = []
        self._mirrored_stage: PipelineStage | None = None

    async def run(self) -> PipelineState:
        started = time.monotonic()
        try:
            await self._intake()
            await self._positioning()
            await self._research()
            await self._gap_analysis()
            await self._architect()
            await self._section_writing()
            await self._quality_review()
            await self._revision()
            await self._compliance()
            await self._complete()
        except asyncio.CancelledError:
            stage = self.state.current_stage
            self.log.warning("Pipeline task cancelled at %s", stage.value,
                             extra={"structured": {"stage": stage.value}})
            self._emit(pipeline_error(stage.value, "Pipeline cancelled", code="CANCELLED"))
            raise
        except Exception as e:
            stage = self.state.current_stage
            failure = e if isinstance(e, StageFailed) else StageFailed(stage, e)
            self.log.error("Pipeline error at %s: %s", stage.value, e,
                           extra={"structured": {"stage": stage.value, "code": failure.code}})
            self._emit(pipeline_error(stage.value, str(e), code=failure.code))
            if failure is e:
                raise
            raise failure from e
        finally:
            self._cancel_section_tasks()

        self.log.info(
            "Pipeline complete in %.1fs", time.monotonic() - started,
            extra={"structured": {
                "sections": len(self.state.sections),
                "revision_count": self.state.revision_count,
                "stage_timings_ms": self.state.stage_timings_ms,
            }},
        )
        return self.state

    # ─── Helpers ─────────────────────────────────────────────────────

    def _emit(self, event: Event) -> None:
        try:
            self.config.emit(event)
        except Exception as e:  # a closed transport never fails the run
            self.log.warning("Event delivery failed (%s): %s", event.get("type"), e)

    async def _transition(self, stage: PipelineStage) -> None:
        if self._mirrored_stage == stage:
            return
        self.state.current_stage = stage
        self._mirrored_stage = stage
        if self.config.on_transition:
            await self.config.on_transition(self.state)

    async def _begin(self, stage: PipelineStage, message: str = "") -> float:
        self.ctx.raise_if_aborted()
        self._emit(stage_start(stage.value, message))
        await self._transition(stage)
        return time.monotonic()

    def _end(self, stage: PipelineStage, t0: float, message: str = "") -> None:
        duration_ms = int((time.monotonic() - t0) * 1000)
        self.state.stage_timings_ms[stage.value] = duration_ms
        self._emit(stage_complete(stage.value, duration_ms, message))
        self.log.info("Stage complete: %s", stage.value,
                      extra={"structured": {"stage": stage.value, "duration_ms": duration_ms}})

    async def _wait(self, gate: str, metadata: dict[str, Any] | None = None) -> Any:
        return await self.config.wait_for_user(gate, metadata)

    async def _call(self, fn, payload: dict[str, Any]) -> Any:
        self.ctx.raise_if_aborted()
        return await fn(payload, self.ctx)

    # ─── Stages ──────────────────────────────────────────────────────

    async def _intake(self):
        t0 = await self._begin(PipelineStage.INTAKE, "Parsing your resume...")
        self.state.intake = await self._call(self.collab.intake, {
            "raw_resume_text": self.config.raw_resume_text,
            "job_description": self.config.job_description,
        })
        self._end(PipelineStage.INTAKE, t0, "Resume parsed")
        self._emit(make_event("intake_complete", intake=self.state.intake))

    async def _positioning(self):
        t0 = await self._begin(PipelineStage.POSITIONING, "Preparing positioning interview...")
        questions = list(await self._call(self.collab.positioning_questions, {"intake": self.state.intake}) or [])
        answers: list[dict[str, Any]] = []
        follow_ups = 0

        for index, question in enumerate(questions):
            answer = await self._ask(question, index, len(questions))
            if answer is None:
                continue
            answers.append({"question_id": question["id"], "answer": answer})

            if self.collab.follow_up is None or follow_ups >= self.settings.max_positioning_follow_ups:
                continue
            follow_up = await self._call(self.collab.follow_up, {"question": question, "answer": answer})
            if not follow_up:
                continue
            follow_ups += 1
            follow_up = {**follow_up, "is_follow_up": True, "parent_question_id": question["id"]}
            answer = await self._ask(follow_up, index, len(questions))
            if answer is not None:
                answers.append({"question_id": follow_up["id"], "answer": answer})

        self._emit(transparency(PipelineStage.POSITIONING.value, "Synthesizing your positioning profile..."))
        self.state.positioning = await self._call(self.collab.synthesize_positioning, {
            "intake": self.state.intake,
            "answers": answers,
        })
        self._end(PipelineStage.POSITIONING, t0, "Positioning profile ready")

    async def _ask(self, question: dict[str, Any], index: int, total: int) -> Any:
        """Present one interview question. None when its gate was superseded."""
        self._emit(make_event("positioning_question", question=question,
                              question_index=index, questions_total=total))
        try:
            return await self._wait(f"positioning_q_{question['id']}", {"question": question})
        except GateSuperseded:
            self.log.warning("Positioning gate superseded, skipping question %s", question["id"])
            return None

    async def _research(self):
        t0 = await self._begin(PipelineStage.RESEARCH, "Researching the role and company...")
        self.state.research = await self._call(self.collab.research, {
            "job_description": self.config.job_description,
            "company_name": self.config.company_name,
            "intake": self.state.intake,
        })
        self._end(PipelineStage.RESEARCH, t0)
        self._emit(make_event("research_complete", research=self.state.research))

    async def _gap_analysis(self):
        t0 = await self._begin(PipelineStage.GAP_ANALYSIS, "Analyzing requirement gaps...")
        self.state.gap_analysis = await self._call(self.collab.gap_analysis, {
            "intake": self.state.intake,
            "positioning": self.state.positioning,
            "research": self.state.research,
        })
        self._end(PipelineStage.GAP_ANALYSIS, t0)
        self._emit(make_event("gap_analysis_complete", gap_analysis=self.state.gap_analysis))

    async def _architect(self):
        t0 = await self._begin(PipelineStage.ARCHITECT, "Designing resume strategy...")
        self.state.architect = await self._call(self.collab.architect, {
            "intake": self.state.intake,
            "positioning": self.state.positioning,
            "research": self.state.research,
            "gap_analysis": self.state.gap_analysis,
        })
        self._end(PipelineStage.ARCHITECT, t0, "Blueprint ready for review")
        self._emit(make_event("blueprint_ready", blueprint=self.state.architect))

        if not self.settings.features.blueprint_approval:
            return
        await self._transition(PipelineStage.ARCHITECT_REVIEW)
        t1 = time.monotonic()
        await self._wait(PipelineStage.ARCHITECT_REVIEW.value, {"blueprint": self.state.architect})
        self.state.stage_timings_ms[PipelineStage.ARCHITECT_REVIEW.value] = int((time.monotonic() - t1) * 1000)
        self.log.info("Blueprint approved")

    # ─── Section fan-out / fan-in ────────────────────────────────────

    async def _section_writing(self):
        t0 = await self._begin(PipelineStage.SECTION_WRITING, "Writing resume sections...")
        planned = await self._call(self.collab.plan_sections, {
            "architect": self.state.architect,
            "intake": self.state.intake,
            "positioning": self.state.positioning,
        })
        calls = [SectionCall.from_value(c) for c in (planned or [])]
        tasks = self._start_section_tasks(calls)

        for call, task in zip(calls, tasks):
            await self._transition(PipelineStage.SECTION_WRITING)
            outcome: SectionOutcome = await task
            if not outcome.ok:
                self._emit(make_event("section_error", section=call.section, error=str(outcome.error)))
                raise SectionGenerationFailed(call.section, outcome.error)
            self.state.sections[call.section] = outcome.value
            await self._review_section(call.section)

        self._end(PipelineStage.SECTION_WRITING, t0, "All sections written")

    def _start_section_tasks(self, calls: list[SectionCall]) -> list[asyncio.Task]:
        semaphore = asyncio.Semaphore(max(1, self.settings.section_write_concurrency))
        timeout = self.settings.section_timeout_seconds

        async def write(call: SectionCall) -> SectionOutcome:
            try:
                async with semaphore:
                    self.ctx.raise_if_aborted()
                    value = await asyncio.wait_for(
                        self.collab.write_section({
                            "section": call.section,
                            "inputs": call.inputs,
                            "architect": self.state.architect,
                        }, self.ctx),
                        timeout=timeout,
                    )
                return SectionOutcome(call.section, ok=True, value=value)
            except asyncio.TimeoutError:
                return SectionOutcome(call.section, ok=False,
                                      error=TimeoutError(f"Section {call.section} timed out after {timeout:g}s"))
            except Exception as e:
                self.log.warning("Section writer failed: %s: %s", call.section, e)
                return SectionOutcome(call.section, ok=False, error=e)

        self._section_tasks = [
            asyncio.create_task(write(call), name=f"section:{self.state.session_id}:{call.section}")
            for call in calls
        ]
        return self._section_tasks

    def _cancel_section_tasks(self) -> None:
        for task in self._section_tasks:
            if not task.done():
                task.cancel()
        self._section_tasks = []

    async def _review_section(self, section: str) -> None:
        iterations = 0
        while True:
            if iterations >= self.settings.max_section_review_iterations:
                self.log.warning("Max review iterations reached, auto-approving %s", section)
                self._emit(make_event("section_approved", section=section, auto_approved=True))
                return

            iterations += 1
            content = self.state.sections[section]
            self._emit(make_event("section_draft", section=section, content=content, iteration=iterations))
            await self._transition(PipelineStage.SECTION_REVIEW)
            response = await self._wait(f"section_review_{section}",
                                        {"section": section, "iteration": iterations})
            review = _normalize_review(response)

            if review.get("approved"):
                self._emit(make_event("section_approved", section=section))
                return
            if review.get("edited_content") is not None:
                self.state.sections[section] = review["edited_content"]
                self._emit(make_event("section_approved", section=section, edited=True))
                self.log.info("Section directly edited by user: %s", section)
                return
            if review.get("feedback"):
                revised = await self._call(self.collab.revise_section, {
                    "section": section,
                    "content": content,
                    "instruction": review["feedback"],
                    "architect": self.state.architect,
                })
                self.state.sections[section] = revised
                self._emit(make_event("section_revised", section=section, content=revised, source="feedback"))
                continue

            self._emit(transparency(
                PipelineStage.SECTION_REVIEW.value,
                "Unrecognized response. Approve, edit, or send feedback to continue.",
            ))
            self.log.warning("Non-actionable section review response for %s", section)

    # ─── Quality review, revision, compliance ────────────────────────

    async def _quality_review(self):
        t0 = await self._begin(PipelineStage.QUALITY_REVIEW, "Running quality review...")
        review = QualityReview.from_value(await self._call(self.collab.quality_review, {
            "sections": dict(self.state.sections),
            "architect": self.state.architect,
            "research": self.state.research,
        }))
        self.state.quality_review = review
        self._emit(make_event("quality_scores", scores=review.scores, decision=review.decision))
        self._end(PipelineStage.QUALITY_REVIEW, t0, "Quality review complete")

    async def _revision(self):
        review = self.state.quality_review
        if review is None:
            return
        if review.decision == "redesign":
            reason = review.redesign_reason or "The resume structure may not best showcase this candidacy."
            self.log.warning("Quality review suggests redesign; proceeding with current sections")
            self._emit(transparency(
                PipelineStage.QUALITY_REVIEW.value,
                f"Quality review note: {reason} The resume has been optimized as far as possible in this session.",
            ))
            return
        if review.decision != "revise" or not review.revision_instructions:
            return

        t0 = await self._begin(PipelineStage.REVISION, "Applying revisions...")
        self.state.revision_count = 1
        instructions = review.revision_instructions[: self.settings.max_revision_instructions]
        self._emit(make_event("revision_start", instructions=[i.to_dict() for i in instructions]))

        high = [i for i in instructions if i.priority == Priority.HIGH]
        for instruction in instructions:
            if instruction.priority != Priority.HIGH:
                await self._apply(instruction.target_section, instruction.instruction, "quality_review")

        if high:
            selected = {f"fix_{n}": None for n in range(len(high))}
            if self.settings.features.quality_review_approval:
                fixes = [{"id": f"fix_{n}", **inst.to_dict()} for n, inst in enumerate(high)]
                self._emit(make_event("quality_fixes", fixes=fixes))
                submission = await self._wait("quality_fixes", {"fixes": fixes})
                selected = _fix_selection(submission, len(high))
            for n, inst in enumerate(high):
                fix_id = f"fix_{n}"
                if fix_id not in selected:
                    continue
                text = inst.instruction
                if selected[fix_id]:
                    text = f"{text}\n\nUSER MODIFICATION: {selected[fix_id]}"
                await self._apply(inst.target_section, text, "quality_review")

        self._end(PipelineStage.REVISION, t0, "Revisions applied")

    async def _compliance(self):
        t0 = await self._begin(PipelineStage.COMPLIANCE, "Checking ATS compliance...")
        findings = await self._call(self.collab.compliance_check, {"sections": dict(self.state.sections)})
        actionable = [
            RevisionInstruction.from_dict(f) for f in (findings or [])
            if str(f.get("priority", "medium")).lower() != Priority.LOW.value
        ][: self.settings.max_compliance_fixes]

        if actionable:
            self._emit(transparency(
                PipelineStage.COMPLIANCE.value,
                f"Applying {len(actionable)} ATS compliance correction(s) before export...",
            ))
        for finding in actionable:
            text = f"{finding.issue}. {finding.instruction}" if finding.issue else finding.instruction
            await self._apply(finding.target_section, text, "compliance")
        self._end(PipelineStage.COMPLIANCE, t0, "Compliance check complete")

    async def _apply(self, section: str, instruction: str, source: str) -> None:
        """Apply one instruction to one existing section. Unknown sections are skipped."""
        if section not in self.state.sections:
            self.log.warning("Instruction targets unknown section %r, skipping", section)
            return
        revised = await self._call(self.collab.revise_section, {
            "section": section,
            "content": self.state.sections[section],
            "instruction": instruction,
            "architect": self.state.architect,
        })
        self.state.sections[section] = revised
        self._emit(make_event("section_revised", section=section, content=revised, source=source))

    async def _complete(self):
        await self._transition(PipelineStage.COMPLETE)
        review = self.state.quality_review
        self._emit(make_event(
            "pipeline_complete",
            session_id=self.state.session_id,
            company_name=self.config.company_name,
            sections=dict(self.state.sections),
            quality_scores=review.scores if review else {},
            token_usage=self.state.token_usage.to_dict(),
            stage_timings_ms=dict(self.state.stage_timings_ms),
        ))


# ═══════════════════════════════════════════════════════════════════
# Response normalization
# ═══════════════════════════════════════════════════════════════════

def _normalize_review(response: Any) -> dict[str, Any]:
    """
    Section review responses: True / {"approved": true} approves,
    {"edited_content": ...} replaces the draft, {"feedback": ...} (or a
    bare string) asks for a rewrite.
    """
    if isinstance(response, bool):
        return {"approved": response}
    if isinstance(response, str):
        return {"feedback": response.strip()} if response.strip() else {}
    if isinstance(response, dict):
        out: dict[str, Any] = {"approved": response.get("approved") is True}
        edited = response.get("edited_content")
        if isinstance(edited, str) and edited.strip():
            out["edited_content"] = edited
        feedback = response.get("feedback")
        if isinstance(feedback, str) and feedback.strip():
            refinements = response.get("refinement_ids") or []
            out["feedback"] = (
                f"Apply these fixes: {', '.join(refinements)}. User feedback: {feedback.strip()}"
                if refinements else feedback.strip()
            )
        return out
    return {}


def _fix_selection(submission: Any, count: int) -> dict[str, str | None]:
    """
    Which high-priority fixes to apply → {fix_id: custom_text | None}.

    Accepts True/False (all/none), {"apply": ["fix_0", ...]}, or a
    questionnaire submission {"responses": [{"question_id", "selected_option_ids",
    "custom_text"}]} with options apply | modify | skip. Anything else applies all.
    """
    every = {f"fix_{n}": None for n in range(count)}
    if submission is False:
        return {}
    if not isinstance(submission, dict):
        return every
    if isinstance(submission.get("apply"), list):
        return {fid: None for fid in submission["apply"] if fid in every}
    responses = submission.get("responses")
    if not isinstance(responses, list):
        return every
    selected: dict[str, str | None] = {}
    for resp in responses:
        if not isinstance(resp, dict) or resp.get("question_id") not in every:
            continue
        options = resp.get("selected_option_ids") or []
        choice = options[0] if options else None
        if choice == "apply":
            selected[resp["question_id"]] = None
        elif choice == "modify":
            custom = str(resp.get("custom_text") or "").strip()
            selected[resp["question_id"]] = custom or None
    return selected
