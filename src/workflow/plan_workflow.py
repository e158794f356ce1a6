"""Plan phase: specification → development plan → consensus → milestones.

The plan phase runs once per project, before execution. The idea is
expanded into a specification, the generator writes a development plan,
and the plan goes through consensus under the ``plan`` lineage. An
approved plan is broken down into milestones and tasks and the project
moves to the execution phase. Each step is stored as soon as it finishes,
so a re-run skips what is already done and resumes an interrupted review.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Optional

from src.agents.generator import ProposalGenerator
from src.consensus.analysis import (
    REQUIRED_PLAN_SECTIONS,
    detect_unusable_plan,
    extract_plan_from_review,
    format_plan_for_review,
    validate_plan_structure,
)
from src.consensus.loop import ConsensusLoop
from src.core.exceptions import RateLimitError
from src.core.models import Phase, PlanRunResult, ProjectState
from src.state.progress import parse_plan_milestones
from src.state.store import StateStore
from src.workflow.audit import AuditLog

logger = logging.getLogger("concord.workflow.plan")

PLAN_LINEAGE = "plan"


def build_specification_prompt(state: ProjectState) -> str:
    return "\n".join([
        "Expand the following project idea into a detailed specification.",
        "",
        f"## Project: {state.name}",
        f"Language: {state.language}",
        "",
        "## Idea",
        state.idea.strip(),
        "",
        "Cover the purpose, the users, the functional requirements, the data "
        "model, external interfaces and the non-functional requirements. "
        "Do not write an implementation plan yet.",
    ])


def build_project_plan_prompt(state: ProjectState, additional_context: str = "") -> tuple[str, str]:
    sections = ", ".join(REQUIRED_PLAN_SECTIONS)
    prompt = "\n".join([
        "Create a complete development plan for the project described in the context.",
        "",
        f"The plan must contain these sections: {sections}.",
        "Break the work into milestones and tasks using exactly this format:",
        "",
        "## Milestone 1: <name>",
        "### Task 1.1: <imperative task name, e.g. 'Create the data models'>",
        "**Description**: <what the task delivers>",
        "**Acceptance Criteria**:",
        "- <verifiable criterion>",
        "",
        "This plan will be reviewed for consensus before any implementation begins.",
    ])
    context = project_context(state, additional_context)
    return prompt, context


def project_context(state: ProjectState, additional_context: str = "") -> str:
    lines = [
        f"Project: {state.name}",
        f"Language: {state.language}",
        "",
        "## Specification",
        (state.specification or state.idea or "No specification available").strip(),
    ]
    if additional_context.strip():
        lines += ["", "## Additional Guidance", additional_context.strip()]
    return "\n".join(lines)


def write_plan_document(project_dir: Path, plan: str, filename: str = "PLAN.md") -> Path:
    """Write ``docs/<filename>`` plus a timestamped copy for history."""
    docs_dir = project_dir / "docs"
    docs_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now(UTC)
    content = f"# Development Plan\n\nGenerated: {now.isoformat()}\n\n{plan.strip()}\n"

    path = docs_dir / filename
    path.write_text(content, encoding="utf-8")
    (docs_dir / f"{path.stem}-{now.strftime('%Y%m%dT%H%M%S')}.md").write_text(content, encoding="utf-8")
    return path


class PlanWorkflow:
    """Takes a project from its idea to an approved, broken-down plan.

    Injected dependencies:
        store: Project state store.
        generator: Expands the idea and writes the development plan.
        consensus_loop: Reviews the plan under the ``plan`` lineage.
        audit: Optional audit log for events and the workflow log.
    """

    def __init__(
        self,
        store: StateStore,
        generator: ProposalGenerator,
        consensus_loop: ConsensusLoop,
        audit: Optional[AuditLog] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.generator = generator
        self.consensus_loop = consensus_loop
        self.audit = audit
        self._progress_callback = progress_callback

    def _notify(self, message: str) -> None:
        if self._progress_callback is not None:
            self._progress_callback(message)

    def _log(self, stage: str, message: str, **payload) -> None:
        if self.audit is not None:
            self.audit.log(stage, message)
            self.audit.emit_event(f"plan_{stage}", {"message": message, **payload})

    async def run(self, additional_context: str = "") -> PlanRunResult:
        """Run the plan phase.

        Raises:
            RateLimitError: A generator call stayed rate limited; whatever
                finished before it is stored, so a re-run resumes.
        """
        state = self.store.load()
        if state.phase != Phase.PLAN:
            logger.info("Plan phase already finished (phase '%s')", state.phase.value)
            return PlanRunResult(
                success=True,
                approved=True,
                milestone_count=len(state.milestones),
                task_count=sum(len(m.tasks) for m in state.milestones),
            )

        if not state.specification:
            error = await self._specify(state)
            if error:
                return PlanRunResult(success=False, error=error)
            state = self.store.load()

        context = project_context(state, additional_context)
        saved = self.store.get_loop_state(PLAN_LINEAGE)
        if saved is not None and not saved.state.is_terminal:
            logger.info("Resuming plan review at iteration %d", saved.iteration)
            plan = extract_plan_from_review(saved.current_plan)
        elif state.plan:
            plan = state.plan
        else:
            plan, error = await self._draft(state, additional_context)
            if error:
                return PlanRunResult(success=False, error=error)

        missing = validate_plan_structure(plan)
        review_context = context
        if missing:
            logger.warning("Plan is missing section(s): %s", ", ".join(missing))
            review_context += f"\n\nNote: the plan has no {', '.join(missing)} section(s)."

        self._notify("[PLAN] Consensus review of the development plan")
        outcome = await self.consensus_loop.run(
            format_plan_for_review(plan, context), review_context, lineage_id=PLAN_LINEAGE,
        )
        final_plan = extract_plan_from_review(outcome.final_plan)
        result = PlanRunResult(
            success=False,
            approved=outcome.approved,
            score=outcome.final_score,
            iterations=outcome.iterations,
            missing_sections=validate_plan_structure(final_plan),
            concerns=outcome.concerns or outcome.open_issues,
        )

        unusable = detect_unusable_plan(final_plan)
        if unusable:
            write_plan_document(self.store.project_dir, final_plan, "PLAN-FAILED.md")
            self._log("failed", unusable)
            result.error = f"Plan generation failed: {unusable}"
            return result

        self.store.store_plan(final_plan)
        self._log(
            "consensus",
            f"Plan {'approved' if outcome.approved else 'not approved'} "
            f"at {outcome.final_score:.0%} after {outcome.iterations} iteration(s)",
            score=outcome.final_score,
        )

        if not outcome.approved:
            write_plan_document(self.store.project_dir, final_plan, "PLAN-DRAFT.md")
            result.error = (
                f"Plan not approved after {outcome.iterations} iteration(s) "
                f"(best score {outcome.best_score:.0%})"
            )
            return result

        milestones = parse_plan_milestones(final_plan)
        task_count = sum(len(m["tasks"]) for m in milestones)
        result.milestone_count = len(milestones)
        result.task_count = task_count
        # One milestone with two tasks or fewer is too thin to execute
        if len(milestones) <= 1 and task_count <= 2:
            write_plan_document(self.store.project_dir, final_plan, "PLAN-INSUFFICIENT.md")
            result.error = (
                f"Plan parsing found only {len(milestones)} milestone(s) and {task_count} task(s); "
                f"expected '## Milestone N: Name' and '### Task N.N: Name' headers"
            )
            self._log("failed", result.error)
            return result

        write_plan_document(self.store.project_dir, final_plan)
        existing = self.store.load().milestones
        if existing:
            logger.info("Keeping %d milestone(s) already in state", len(existing))
            result.milestone_count = len(existing)
            result.task_count = sum(len(m.tasks) for m in existing)
        else:
            self.store.add_milestones(milestones)
            for milestone in milestones:
                self._notify(f"  [PLAN] {milestone['name']} ({len(milestone['tasks'])} task(s))")

        self.store.set_phase(Phase.EXECUTION)
        self._log(
            "approved",
            f"Plan broken down into {result.milestone_count} milestone(s) "
            f"and {result.task_count} task(s)",
            milestones=result.milestone_count, tasks=result.task_count,
        )
        result.success = True
        return result

    async def _specify(self, state: ProjectState) -> Optional[str]:
        """Expand the idea into a stored specification; returns an error or None."""
        if not state.idea.strip():
            return "Project has neither a specification nor an idea to expand"
        self._notify("[PLAN] Expanding idea into a specification")
        generated = await self.generator.generate(build_specification_prompt(state))
        if generated.rate_limited:
            raise RateLimitError(f"Specification generation rate limited: {generated.error}")
        if not generated.success:
            return f"Failed to create specification: {generated.error}"
        self.store.store_specification(generated.content)
        return None

    async def _draft(self, state: ProjectState, additional_context: str) -> tuple[str, Optional[str]]:
        self._notify("[PLAN] Creating development plan")
        prompt, context = build_project_plan_prompt(state, additional_context)
        generated = await self.generator.generate(prompt, context)
        if generated.rate_limited:
            raise RateLimitError(f"Plan generation rate limited: {generated.error}")
        if not generated.success:
            return "", f"Failed to create plan: {generated.error}"
        self.store.store_plan(generated.content)
        return generated.content, None
