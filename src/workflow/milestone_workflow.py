"""Milestone and project level workflows.

A milestone gets its own plan consensus, runs its tasks in order and ends
with a completion review that also goes through consensus. The project
runner walks the milestones and only marks the project complete once the
completion check agrees that every planned task is tracked and done.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from src.agents.generator import ProposalGenerator
from src.consensus.loop import ConsensusLoop
from src.core.exceptions import RateLimitError
from src.core.models import (
    Milestone,
    MilestoneRunResult,
    Phase,
    ProjectRunResult,
    ProjectState,
    TaskStatus,
)
from src.state.progress import read_plan, reset_incomplete_project, verify_project_completion
from src.state.store import StateStore
from src.workflow.audit import AuditLog
from src.workflow.task_workflow import TaskWorkflow

logger = logging.getLogger("concord.workflow.milestone")


def build_milestone_plan_prompt(milestone: Milestone, state: ProjectState) -> tuple[str, str]:
    done = [f"- {m.name}" for m in state.milestones if m.status == TaskStatus.COMPLETE]
    context = "\n".join([
        "## Project Context",
        f"Project: {state.name}",
        f"Language: {state.language}",
        "",
        "## Project Specification",
        (state.specification or "No specification available")[:2000],
        "",
        "## Overall Project Plan",
        (state.plan or "No overall plan available")[:2000],
        "",
        "## Completed Milestones",
        "\n".join(done) or "None yet",
    ])
    tasks = "\n".join(f"{i}. {t.name}: {t.description}" for i, t in enumerate(milestone.tasks, 1))
    prompt = "\n".join([
        "Create a detailed implementation plan for the following milestone:",
        "",
        f"## Milestone: {milestone.name}",
        milestone.description,
        "",
        "## Tasks in This Milestone",
        tasks,
        "",
        "Please provide: a milestone overview, prerequisites, implementation order, "
        "integration points, risk assessment, success criteria and a test strategy.",
        "",
        "This plan will be reviewed for consensus before any implementation begins.",
    ])
    return prompt, context


def build_completion_review(milestone: Milestone) -> str:
    """Completion review document reviewers vote on."""
    lines = [f"# Milestone Completion Review: {milestone.name}", "", milestone.description, "", "## Tasks", ""]
    for i, task in enumerate(milestone.tasks, 1):
        score = "N/A" if task.consensus_score is None else f"{task.consensus_score:.0%}"
        tests = "Passed" if task.tests_passed else "N/A"
        lines += [
            f"{i}. **{task.name}**",
            f"   - Status: {task.status.value}",
            f"   - Tests: {tests}",
            f"   - Consensus Score: {score}",
            f"   - Remediation attempts: {task.remediation_attempts}",
        ]
    lines += [
        "",
        "## Completion Verification",
        "Are all acceptance criteria met and is the milestone truly complete?",
    ]
    return "\n".join(lines)


class MilestoneWorkflow:
    """Plan consensus, ordered task execution, completion consensus."""

    def __init__(
        self,
        store: StateStore,
        generator: ProposalGenerator,
        consensus_loop: ConsensusLoop,
        task_workflow: TaskWorkflow,
        audit: Optional[AuditLog] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.generator = generator
        self.consensus_loop = consensus_loop
        self.task_workflow = task_workflow
        self.audit = audit
        self._progress_callback = progress_callback

    def _notify(self, message: str) -> None:
        if self._progress_callback is not None:
            self._progress_callback(message)

    async def run(self, milestone_id: str) -> MilestoneRunResult:
        milestone = self.store.get_milestone(milestone_id)
        self._notify(f"[MILESTONE] {milestone.name}")

        if not (milestone.consensus_approved and milestone.plan):
            error = await self._plan(milestone)
            if error:
                return MilestoneRunResult(milestone_id=milestone_id, success=False, error=error)

        task_results = []
        for task in self.store.get_milestone(milestone_id).tasks:
            if task.status == TaskStatus.COMPLETE:
                logger.info("Skipping completed task %s", task.id)
                continue
            result = await self.task_workflow.run(milestone_id, task.id)
            task_results.append(result)
            if not result.success:
                verb = "paused" if result.status == TaskStatus.PAUSED else "failed"
                return MilestoneRunResult(
                    milestone_id=milestone_id,
                    success=False,
                    task_results=task_results,
                    error=f"Task '{task.name}' {verb}: {result.error}",
                )

        milestone = self.store.get_milestone(milestone_id)
        outcome = await self.consensus_loop.run(
            build_completion_review(milestone),
            f"Milestone completion review for: {milestone.name}",
            lineage_id=f"{milestone_id}-completion",
        )
        self.store.update_milestone(
            milestone_id,
            completion_review=outcome.final_plan,
            completion_score=outcome.final_score,
            completion_approved=outcome.approved,
        )
        if self.audit is not None:
            self.audit.log(
                "milestone",
                f"{milestone.name}: completion {'approved' if outcome.approved else 'not approved'} "
                f"({outcome.final_score:.0%})",
            )

        if not outcome.approved:
            return MilestoneRunResult(
                milestone_id=milestone_id,
                success=False,
                completion_score=outcome.final_score,
                task_results=task_results,
                error=f"Milestone completion not approved. Score: {outcome.final_score:.0%}",
            )
        return MilestoneRunResult(
            milestone_id=milestone_id,
            success=True,
            completion_approved=True,
            completion_score=outcome.final_score,
            task_results=task_results,
        )

    async def _plan(self, milestone: Milestone) -> Optional[str]:
        """Plan the milestone and run it through consensus; returns an error or None."""
        state = self.store.load()
        lineage_id = f"{milestone.id}-plan"

        saved = self.store.get_loop_state(lineage_id)
        if saved is not None and not saved.state.is_terminal:
            logger.info("Resuming review of %s plan at iteration %d", milestone.id, saved.iteration)
            plan = saved.current_plan
        else:
            prompt, context = build_milestone_plan_prompt(milestone, state)
            generated = await self.generator.generate(prompt, context)
            if generated.rate_limited:
                raise RateLimitError(f"Milestone plan generation rate limited: {generated.error}")
            if not generated.success:
                return f"Failed to create milestone plan: {generated.error}"
            plan = generated.content

        outcome = await self.consensus_loop.run(
            plan,
            f"Project: {state.name}\nLanguage: {state.language}\n"
            f"Milestone: {milestone.name}\nTasks: {len(milestone.tasks)}",
            lineage_id=lineage_id,
        )
        self.store.update_milestone(
            milestone.id,
            plan=outcome.final_plan,
            consensus_score=outcome.final_score,
            consensus_iterations=outcome.iterations,
            consensus_approved=outcome.approved,
        )
        if not outcome.approved:
            return f"Milestone plan not approved. Score: {outcome.final_score:.0%}"
        return None


class ProjectRunner:
    """Execution phase over every milestone, then completion verification."""

    def __init__(
        self,
        store: StateStore,
        milestone_workflow: MilestoneWorkflow,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.milestone_workflow = milestone_workflow
        self.audit = audit

    async def run(self) -> ProjectRunResult:
        state = self.store.load()
        if state.phase == Phase.COMPLETE:
            verification = verify_project_completion(state, read_plan(state, self.store.project_dir))
            if verification.is_complete:
                return ProjectRunResult(success=True)
            # Marked complete with work outstanding: reset so the next run resumes
            logger.warning("Project marked complete but %s", verification.reason)
            reset = reset_incomplete_project(self.store)
            error = (
                f"Project was marked complete but {verification.reason}; "
                f"reset to phase '{reset.phase.value}'"
            )
            self.store.update_state(error=error)
            return ProjectRunResult(success=False, error=error)
        if not state.milestones:
            return ProjectRunResult(success=False, error="No milestones defined; plan the project first")
        self.store.set_phase(Phase.EXECUTION)

        results = []
        for milestone in state.milestones:
            current = self.store.get_milestone(milestone.id)
            if current.status == TaskStatus.COMPLETE and current.completion_approved:
                continue
            self.store.set_current(milestone.id)
            result = await self.milestone_workflow.run(milestone.id)
            results.append(result)
            if not result.success:
                logger.warning("Stopping at milestone %s: %s", milestone.id, result.error)
                self.store.update_state(error=result.error)
                return ProjectRunResult(success=False, milestone_results=results, error=result.error)

        state = self.store.load()
        verification = verify_project_completion(state, read_plan(state, self.store.project_dir))
        if not verification.is_complete:
            logger.warning("Project not complete: %s", verification.reason)
            self.store.update_state(error=verification.reason)
            return ProjectRunResult(success=False, milestone_results=results, error=verification.reason)

        self.store.complete_project()
        if self.audit is not None:
            self.audit.log("project", f"Project '{state.name}' complete")
            self.audit.emit_event("project_complete", {"project": state.name})
        return ProjectRunResult(success=True, milestone_results=results)
