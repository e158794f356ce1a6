"""Consensus-driven recovery for failed tasks.

One attempt:
1. Refuse once ``max_remediation_attempts`` is used up (no external calls).
2. Count the attempt and persist it before doing anything else.
3. Gather the failure context (task, plan, error, tests, prior feedback,
   prior remediation, milestone).
4. Ask the generator for a root-cause analysis and fix plan.
5. Run consensus on the fix plan with the failure context in view.
6. Apply the approved fix, reset the task to pending and re-run it.

Every attempt is logged in the task's ``remediation_log``, as a markdown
document and as a JSONL audit event.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from src.agents.collaborators import Implementer
from src.agents.generator import ProposalGenerator
from src.consensus.loop import ConsensusLoop
from src.core.config import WorkflowConfig
from src.core.exceptions import ConcordError, RateLimitError, StatePersistenceError
from src.core.models import (
    ExecutionFailure,
    Milestone,
    ProjectState,
    RemediationRecord,
    RemediationResult,
    Task,
    TaskRunResult,
    TaskStatus,
)
from src.llm.response_parser import extract_root_cause
from src.state.store import StateStore
from src.workflow.audit import AuditLog
from src.workflow.task_workflow import is_test_runner_crash

logger = logging.getLogger("concord.workflow.remediation")

Rerun = Callable[[str, str], Awaitable[TaskRunResult]]


def build_failure_context(
    task: Task,
    milestone: Milestone,
    failure: ExecutionFailure,
    state: ProjectState,
    crash_threshold: int = 20,
) -> str:
    """Markdown summary of everything known about why ``task`` failed.

    ``task`` is the task as it was before this attempt was counted, so
    ``remediation_attempts`` refers to earlier attempts only.
    """
    sections = [
        "\n".join([
            "## Failed Task",
            f"- **Name**: {task.name}",
            f"- **Description**: {task.description}",
            f"- **Milestone**: {milestone.name}",
            f"- **Task ID**: {task.id}",
        ])
    ]
    if task.plan:
        sections.append(f"### Task Plan (that was executed)\n{task.plan[:2000]}")

    sections.append(f"## Error Details\n{failure.error or 'No error message available'}")

    results = failure.test_results
    if results is not None:
        lines = [
            "## Test Results",
            f"- **Status**: {'PASSED' if results.success else 'FAILED'}",
            f"- **Passed**: {results.passed}",
            f"- **Failed**: {results.failed}",
            f"- **Total**: {results.total}",
        ]
        if is_test_runner_crash(results, crash_threshold):
            lines.append("- **CRASH DETECTED**: 0 passed with many failures indicates a startup/import error")
        sections.append("\n".join(lines))
        if results.failed_tests:
            sections.append("### Failed Tests\n" + "\n".join(f"- {t}" for t in results.failed_tests[:10]))
        if results.output:
            sections.append(f"### Test Output (truncated)\n```\n{results.output[:3000]}\n```")

    if failure.concerns or failure.recommendations:
        sections.append("\n".join([
            "## Previous Consensus Feedback",
            "### Concerns Raised by Reviewers",
            "\n".join(f"- {c}" for c in failure.concerns) or "None",
            "",
            "### Recommendations from Reviewers",
            "\n".join(f"- {r}" for r in failure.recommendations) or "None",
        ]))

    if task.remediation_attempts > 0:
        sections.append("\n".join([
            f"## Previous Remediation Attempts ({task.remediation_attempts})",
            "### Previous Root Cause Analysis",
            task.last_failure_analysis or "Not available",
            "",
            "### Previous Fix Plan (did not resolve the issue)",
            task.last_remediation_plan or "Not available",
            "",
            "**IMPORTANT**: The previous fix did not work. The new fix must take a DIFFERENT approach.",
        ]))

    completed = [t.name for t in milestone.tasks if t.status == TaskStatus.COMPLETE]
    remaining = [t.name for t in milestone.tasks if t.status != TaskStatus.COMPLETE and t.id != task.id]
    sections.append("\n".join([
        "## Milestone Context",
        f"- **Project**: {state.name}",
        f"- **Language**: {state.language}",
        f"- **Completed Tasks**: {', '.join(completed) or 'None'}",
        f"- **Remaining Tasks**: {', '.join(remaining) or 'None'}",
    ]))
    return "\n\n".join(sections)


def basic_remediation_plan(error: Optional[str]) -> str:
    """Plan used when the generator cannot produce one."""
    return "\n".join([
        "### Root Cause Analysis",
        f"Based on error: {error or 'Unknown error'}",
        "",
        "### Fix Plan",
        "1. Review the error output and identify the failing component",
        "2. Fix the identified issue",
        "3. Re-run tests to verify",
        "",
        "### Files to Modify",
        "See task plan for relevant files.",
        "",
        "### Verification Steps",
        "1. Run tests and verify they pass",
        "2. Check that no regressions were introduced",
    ])


def _remediation_prompt(failure_context: str, retrying: bool) -> str:
    parts = [
        "You are analyzing a task failure and must create a remediation plan.",
        "",
        failure_context,
        "",
        "Based on the failure context above, provide:",
        "",
        "### Root Cause Analysis",
        "Identify the specific root cause of the failure. Don't just restate the error.",
        "",
        "### Fix Plan",
        "Step-by-step plan to fix the issue.",
        "",
        "### Files to Modify",
        "List the exact files that need to be changed and what changes are needed.",
        "",
        "### Verification Steps",
        "How to verify the fix works.",
    ]
    if retrying:
        parts += ["", "IMPORTANT: Previous remediation attempts failed. You MUST take a DIFFERENT approach this time."]
    parts += ["", "Be specific and actionable. This plan will be reviewed before implementation."]
    return "\n".join(parts)


class RemediationLoop:
    """Bounded, consensus-vetted recovery of failed tasks.

    Injected dependencies:
        store: Project state store.
        generator: Writes root-cause analyses and fix plans.
        consensus_loop: Vets fix plans.
        implementer: Applies approved fixes.
        audit: Remediation documents and audit events (optional).
    """

    def __init__(
        self,
        store: StateStore,
        generator: ProposalGenerator,
        consensus_loop: ConsensusLoop,
        implementer: Implementer,
        audit: Optional[AuditLog] = None,
        config: Optional[WorkflowConfig] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.generator = generator
        self.consensus_loop = consensus_loop
        self.implementer = implementer
        self.audit = audit
        self.config = config or WorkflowConfig()
        self._progress_callback = progress_callback

    @property
    def max_attempts(self) -> int:
        return self.config.max_remediation_attempts

    def _notify(self, message: str) -> None:
        if self._progress_callback is not None:
            self._progress_callback(message)

    async def attempt(
        self,
        milestone_id: str,
        task_id: str,
        failure: ExecutionFailure,
        rerun: Rerun,
    ) -> RemediationResult:
        """Run one remediation attempt for a failed task.

        Args:
            milestone_id: Milestone holding the task.
            task_id: The failed task.
            failure: What went wrong (error, test results, reviewer feedback).
            rerun: Re-runs the task workflow after the fix is applied.
        """
        task = self.store.get_task(milestone_id, task_id)
        if task.remediation_attempts >= self.max_attempts:
            reason = f"Max remediation attempts ({self.max_attempts}) reached"
            logger.warning("%s for task %s", reason, task_id)
            if self.audit is not None:
                self.audit.emit_event(
                    "remediation_exhausted",
                    {"milestone_id": milestone_id, "task_id": task_id, "attempts": task.remediation_attempts},
                )
            return RemediationResult(
                success=False, attempt=task.remediation_attempts, exhausted=True, reason=reason,
            )

        attempt = task.remediation_attempts + 1
        self.store.update_task(milestone_id, task_id, remediation_attempts=attempt)
        self._notify(f"  [REMEDIATION] attempt {attempt}/{self.max_attempts} for {task.name}")
        logger.info("Remediation attempt %d/%d for task %s", attempt, self.max_attempts, task_id)

        state = self.store.load()
        milestone = self.store.get_milestone(milestone_id)
        failure_context = build_failure_context(
            task, milestone, failure, state, self.config.crash_failed_threshold,
        )

        plan = await self._build_plan(failure_context, task, failure)
        analysis = extract_root_cause(plan)
        self.store.update_task(
            milestone_id, task_id, last_failure_analysis=analysis, last_remediation_plan=plan,
        )

        record = RemediationRecord(attempt=attempt, analysis=analysis, plan=plan)
        review_context = "\n".join([
            f"Project: {state.name}",
            f"Language: {state.language}",
            f"Phase: REMEDIATION (attempt {attempt}/{self.max_attempts})",
            f"Milestone: {milestone.name}",
            f"Task: {task.name}",
            "",
            "## FAILURE CONTEXT (Why this task needs remediation)",
            failure_context[: self.config.failure_context_max_chars],
        ])

        try:
            outcome = await self.consensus_loop.run(
                plan, review_context, lineage_id=f"{task_id}-remediation-{attempt}",
            )
        except RateLimitError as e:
            return self._paused(milestone_id, task_id, record, failure_context, f"Rate limit during remediation consensus: {e}")
        except StatePersistenceError:
            raise
        except ConcordError as e:
            record.outcome = f"consensus failed: {e}"
            self._record(milestone_id, task_id, record, failure_context)
            return RemediationResult(
                success=False, attempt=attempt, analysis=analysis, reason=f"Consensus failed: {e}",
            )

        record.consensus_score = outcome.final_score
        record.consensus_approved = outcome.approved
        if not outcome.approved:
            record.outcome = "plan not approved"
            self._record(milestone_id, task_id, record, failure_context)
            return RemediationResult(
                success=False,
                attempt=attempt,
                consensus_score=outcome.final_score,
                analysis=analysis,
                reason=f"Remediation plan not approved. Score: {outcome.final_score:.0%}",
            )

        record.plan = outcome.final_plan
        record.outcome = "approved; applying fix"
        self._record(milestone_id, task_id, record, failure_context)

        task = self.store.get_task(milestone_id, task_id)
        applied = await self.implementer.apply(task, outcome.final_plan)
        if applied.rate_limited:
            return self._paused(
                milestone_id, task_id, record, failure_context,
                f"Rate limit during remediation: {applied.error}",
                consensus_score=outcome.final_score,
            )
        if not applied.success:
            record.outcome = f"fix failed: {applied.error}"
            self._record(milestone_id, task_id, record, failure_context)
            return RemediationResult(
                success=False,
                attempt=attempt,
                consensus_approved=True,
                consensus_score=outcome.final_score,
                analysis=analysis,
                reason=f"Remediation fix implementation failed: {applied.error}",
            )

        # Approved plan and consensus fields stay; only execution state is cleared
        self.store.update_task_status(
            milestone_id, task_id, TaskStatus.PENDING,
            reason=f"remediation attempt {attempt} applied",
            tests_passed=None, error=None, implementation_complete=False,
        )
        self._notify(f"  [REMEDIATION] fix applied, retrying {task.name}")

        result = await rerun(milestone_id, task_id)

        record.outcome = "success" if result.success else f"task still failing: {result.error}"
        self._record(milestone_id, task_id, record, failure_context)
        if result.success:
            logger.info("Remediation attempt %d fixed task %s", attempt, task_id)
        else:
            logger.warning("Task %s still failing after remediation attempt %d", task_id, attempt)

        return RemediationResult(
            success=result.success,
            attempt=attempt,
            paused=result.status == TaskStatus.PAUSED,
            consensus_approved=True,
            consensus_score=outcome.final_score,
            analysis=analysis,
            reason=None if result.success else result.error,
            task_result=result,
        )

    async def _build_plan(self, failure_context: str, task: Task, failure: ExecutionFailure) -> str:
        prompt = _remediation_prompt(failure_context, retrying=task.remediation_attempts > 0)
        generated = await self.generator.generate(prompt, "Phase: REMEDIATION")
        if generated.success and generated.content.strip():
            return generated.content
        logger.warning(
            "Remediation analysis failed for %s (%s); using basic plan", task.id, generated.error,
        )
        return basic_remediation_plan(failure.error or task.error)

    def _paused(
        self,
        milestone_id: str,
        task_id: str,
        record: RemediationRecord,
        failure_context: str,
        reason: str,
        consensus_score: Optional[float] = None,
    ) -> RemediationResult:
        """Pause the task; the attempt stays counted."""
        self.store.pause_task(milestone_id, task_id, reason)
        record.outcome = "paused (rate limited)"
        self._record(milestone_id, task_id, record, failure_context)
        logger.warning("Task %s paused during remediation: %s", task_id, reason)
        return RemediationResult(
            success=False,
            attempt=record.attempt,
            paused=True,
            consensus_approved=record.consensus_approved,
            consensus_score=consensus_score,
            analysis=record.analysis,
            reason=reason,
        )

    def _record(
        self, milestone_id: str, task_id: str, record: RemediationRecord, failure_context: str
    ) -> None:
        """Write (or rewrite) the durable log entries for one attempt."""
        if self.audit is not None:
            doc = self.audit.write_remediation_doc(milestone_id, task_id, record, failure_context)
            record.doc_path = str(doc.relative_to(self.store.project_dir))
            self.audit.emit_event(
                "remediation_attempt",
                {
                    "milestone_id": milestone_id,
                    "task_id": task_id,
                    "attempt": record.attempt,
                    "consensus_score": record.consensus_score,
                    "consensus_approved": record.consensus_approved,
                    "outcome": record.outcome,
                },
            )
            self.audit.log("remediation", f"Task {task_id} attempt {record.attempt}: {record.outcome}")

        entry = record.model_copy(deep=True)
        log = [r for r in self.store.get_task(milestone_id, task_id).remediation_log if r.attempt != entry.attempt]
        log.append(entry)
        log.sort(key=lambda r: r.attempt)
        self.store.update_task(milestone_id, task_id, remediation_log=log)
