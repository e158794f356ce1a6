"""Per-task workflow: plan → consensus → implement → test.

Every step is checkpointed in the project state so an interrupted run
resumes where it stopped: an approved plan is reused, a finished
implementation is not redone. Test failures get consensus-vetted fix plans
between runs; a task that still fails is handed to the remediation loop.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Callable, Optional

from src.agents.collaborators import Implementer, TestRunner
from src.agents.generator import ProposalGenerator
from src.consensus.loop import ConsensusLoop
from src.core.config import WorkflowConfig
from src.core.exceptions import ConcordError, RateLimitError, StatePersistenceError
from src.core.models import (
    ConsensusOutcome,
    ExecutionFailure,
    Milestone,
    ProjectState,
    Task,
    TaskRunResult,
    TaskStatus,
    TestResults,
)
from src.state.store import StateStore
from src.workflow.audit import AuditLog

if TYPE_CHECKING:
    from src.workflow.remediation import RemediationLoop

logger = logging.getLogger("concord.workflow.task")

_ERROR_LINE = re.compile(
    r"error|failed to|cannot find|SyntaxError|ImportError|ModuleNotFound", re.IGNORECASE
)


def is_test_runner_crash(results: TestResults, failed_threshold: int = 20) -> bool:
    """Nothing passed and many failed: a startup or import crash, not N bugs."""
    return results.passed == 0 and results.failed > failed_threshold


def describe_test_failure(results: TestResults, failed_threshold: int = 20) -> str:
    if is_test_runner_crash(results, failed_threshold):
        error_lines = [l.strip() for l in results.output.splitlines() if _ERROR_LINE.search(l)]
        root = error_lines[0][:120] if error_lines else "test runner crashed"
        return f"TEST RUNNER CRASH (0/{results.failed} passed) - {root}"
    names = results.failed_tests[:5]
    if names:
        more = "..." if len(results.failed_tests) > 5 else ""
        return f"{results.failed} failed: {', '.join(names)}{more}"
    return results.error or f"{results.passed} passed, {results.failed} failed"


def build_task_plan_prompt(task: Task, milestone: Milestone, state: ProjectState) -> tuple[str, str]:
    """Return (prompt, context) for the initial task plan."""
    done = [f"- {t.name}" for t in milestone.tasks if t.status == TaskStatus.COMPLETE]
    context = "\n".join([
        "## Project Context",
        f"Project: {state.name}",
        f"Language: {state.language}",
        "",
        f"## Milestone: {milestone.name}",
        milestone.description,
        "",
        "## Overall Project Plan",
        (state.plan or "No overall plan available")[:2000],
        "",
        "## Completed Tasks in This Milestone",
        "\n".join(done) or "None yet",
    ])
    prompt = [
        "Create a detailed implementation plan for the following task:",
        "",
        f"## Task: {task.name}",
        task.description,
    ]
    if task.test_plan:
        prompt += ["", "## Test Requirements", task.test_plan]
    prompt += [
        "",
        "Please provide:",
        "1. **Implementation Steps**: Specific code changes needed",
        "2. **Files to Create/Modify**: List all files that will be touched",
        "3. **Dependencies**: Any packages or modules needed",
        "4. **Acceptance Criteria**: How to verify the task is complete",
        "5. **Test Plan**: Specific tests to write",
        "",
        "Be specific and actionable. This plan will be reviewed for consensus before implementation.",
    ]
    return "\n".join(prompt), context


def build_test_fix_plan(
    task: Task, results: TestResults, language: str, failed_threshold: int = 20
) -> str:
    """Fix plan for a failed test run, phrased for reviewers to vet."""
    if is_test_runner_crash(results, failed_threshold):
        return "\n".join([
            "## Test Runner Crash - Fix Plan",
            "",
            f"### Task: {task.name}",
            f"### Language: {language}",
            "",
            f"The test runner crashed with 0 passed out of {results.failed} tests.",
            "This is a startup or import crash, not individual failures.",
            "",
            "### Most Likely Root Causes",
            "1. Import error in a new or changed module",
            "2. Syntax error",
            "3. Missing dependency",
            "4. Circular import",
            "5. Broken test configuration",
            "",
            "### Test Output (look for the FIRST error)",
            "```",
            results.output[:3000],
            "```",
            "",
            "### Fix Approach",
            "1. Find the first error in the output above",
            "2. Fix that single root cause",
            f"3. Do NOT try to fix {results.failed} individual tests",
        ])

    failed = "\n".join(f"- {t}" for t in results.failed_tests) or "(see output)"
    return "\n".join([
        "## Test Failure Fix Plan",
        "",
        f"### Task: {task.name}",
        f"### Language: {language}",
        "",
        "### Test Results",
        f"- Passed: {results.passed}",
        f"- Failed: {results.failed}",
        f"- Total: {results.total}",
        "",
        "### Failed Tests",
        failed,
        "",
        "### Test Output (truncated)",
        "```",
        results.output[:2000],
        "```",
        "",
        "### Proposed Fix Approach",
        "1. Analyze the root cause of each failure from the output above",
        "2. Decide whether the implementation or the test expectation is wrong",
        "3. Fix the implementation to satisfy the assertions",
        "4. Do NOT modify the tests unless they contain clear bugs",
        "5. Ensure fixes don't break other passing tests",
    ])


class TaskWorkflow:
    """Runs one task to completion, failure or pause.

    Injected dependencies:
        store: Project state store (the only place task state is written).
        generator: Writes the initial task plan.
        consensus_loop: Vets task plans and test-fix plans.
        implementer: Applies approved plans and fixes.
        test_runner: Runs the project's tests.
        remediation: Optional remediation loop invoked when a task fails.
    """

    def __init__(
        self,
        store: StateStore,
        generator: ProposalGenerator,
        consensus_loop: ConsensusLoop,
        implementer: Implementer,
        test_runner: TestRunner,
        config: Optional[WorkflowConfig] = None,
        audit: Optional[AuditLog] = None,
        remediation: Optional["RemediationLoop"] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.generator = generator
        self.consensus_loop = consensus_loop
        self.implementer = implementer
        self.test_runner = test_runner
        self.config = config or WorkflowConfig()
        self.audit = audit
        self.remediation = remediation
        self._progress_callback = progress_callback

    def _notify(self, message: str) -> None:
        if self._progress_callback is not None:
            self._progress_callback(message)

    def _log(self, stage: str, message: str, **payload) -> None:
        if self.audit is not None:
            self.audit.log(stage, message)
            self.audit.emit_event(f"task_{stage}", {"message": message, **payload})

    async def run(self, milestone_id: str, task_id: str) -> TaskRunResult:
        """Run the task; on failure, hand it to remediation while attempts remain."""
        result = await self._execute(milestone_id, task_id)
        if result.success or result.status != TaskStatus.FAILED:
            return result
        if self.remediation is None or not self.config.enable_remediation:
            return result

        failure = ExecutionFailure(
            error=result.error or "Task failed",
            test_results=result.test_results,
            concerns=result.concerns,
            recommendations=result.recommendations,
        )
        remediation = await self.remediation.attempt(milestone_id, task_id, failure, rerun=self.run)
        if remediation.task_result is not None:
            return remediation.task_result.model_copy(update={"remediation_attempted": True})

        task = self.store.get_task(milestone_id, task_id)
        return TaskRunResult(
            task_id=task_id,
            success=False,
            status=task.status,
            error=remediation.reason or result.error,
            test_results=result.test_results,
            remediation_attempted=not remediation.exhausted,
        )

    async def _execute(self, milestone_id: str, task_id: str) -> TaskRunResult:
        task = self.store.get_task(milestone_id, task_id)
        if task.status == TaskStatus.COMPLETE:
            logger.info("Skipping completed task %s", task_id)
            return TaskRunResult(task_id=task_id, success=True, status=TaskStatus.COMPLETE)

        if task.status == TaskStatus.PAUSED:
            task = self.store.resume_task(milestone_id, task_id)
        task = self.store.update_task_status(
            milestone_id, task_id, TaskStatus.IN_PROGRESS, reason="task started", error=None,
        )
        self.store.set_current(milestone_id, task_id)
        self._notify(f"[TASK] {task.name}")
        self._log("started", f"Task {task.id}: {task.name}", task_id=task.id)

        outcome: Optional[ConsensusOutcome] = None
        try:
            if task.consensus_approved and task.plan:
                logger.info("Reusing approved plan for %s (score %.2f)", task.id, task.consensus_score or 0.0)
                plan = task.plan
            else:
                outcome = await self._plan(milestone_id, task)
                if not outcome.approved:
                    return self._fail(
                        milestone_id, task,
                        f"Consensus not reached: {outcome.final_score:.0%}"
                        + (f" ({outcome.reason})" if outcome.reason else ""),
                        outcome=outcome,
                    )
                plan = outcome.final_plan

            if task.implementation_complete:
                logger.info("Implementation already complete for %s; going to tests", task.id)
            else:
                applied = await self.implementer.apply(task, plan)
                if applied.rate_limited:
                    return self._pause(milestone_id, task, f"Rate limit: {applied.error}")
                if not applied.success:
                    return self._fail(milestone_id, task, f"Implementation failed: {applied.error}", outcome=outcome)
                task = self.store.update_task(milestone_id, task_id, implementation_complete=True)

            return await self._test(milestone_id, task, outcome)

        except RateLimitError as e:
            return self._pause(milestone_id, task, f"Rate limit: {e}")
        except StatePersistenceError:
            raise
        except ConcordError as e:
            logger.error("Task %s failed: %s", task_id, e)
            return self._fail(milestone_id, task, str(e), outcome=outcome)

    async def _plan(self, milestone_id: str, task: Task) -> ConsensusOutcome:
        state = self.store.load()
        milestone = self.store.get_milestone(milestone_id)
        lineage_id = f"{task.id}-plan"

        saved = self.store.get_loop_state(lineage_id)
        if saved is not None and not saved.state.is_terminal:
            logger.info("Resuming review of %s plan at iteration %d", task.id, saved.iteration)
            plan = saved.current_plan
        else:
            prompt, context = build_task_plan_prompt(task, milestone, state)
            generated = await self.generator.generate(prompt, context)
            if generated.rate_limited:
                raise RateLimitError(f"Plan generation rate limited: {generated.error}")
            if not generated.success:
                raise ConcordError(f"Failed to create task plan: {generated.error}")
            plan = generated.content
            self.store.update_task(milestone_id, task.id, plan=plan)

        review_context = (
            f"Project: {state.name}\nLanguage: {state.language}\n"
            f"Milestone: {milestone.name}\nTask: {task.name}"
        )
        outcome = await self.consensus_loop.run(plan, review_context, lineage_id=lineage_id)
        self.store.update_task(
            milestone_id, task.id,
            plan=outcome.final_plan,
            consensus_score=outcome.final_score,
            consensus_iterations=outcome.iterations,
            consensus_approved=outcome.approved,
        )
        self._log(
            "consensus",
            f"Task {task.id} plan {'approved' if outcome.approved else 'not approved'} "
            f"at {outcome.final_score:.0%} after {outcome.iterations} iteration(s)",
            task_id=task.id, score=outcome.final_score,
        )
        return outcome

    async def _test(
        self, milestone_id: str, task: Task, outcome: Optional[ConsensusOutcome]
    ) -> TaskRunResult:
        language = self.store.load().language
        threshold = self.config.crash_failed_threshold
        retries = 0

        while True:
            results = await self.test_runner.run(task)
            if results.success:
                break

            reason = describe_test_failure(results, threshold)
            if retries >= self.config.max_test_retries:
                logger.warning("Tests for %s still failing after %d fix(es): %s", task.id, retries, reason)
                break

            retries += 1
            self._notify(f"  [TEST] {reason}; planning fix {retries}/{self.config.max_test_retries}")
            fix_plan = build_test_fix_plan(task, results, language, threshold)
            fix = await self.consensus_loop.run(
                fix_plan,
                f"Task: {task.name}\nPhase: Test failure fix (attempt {retries}/{self.config.max_test_retries})",
                lineage_id=f"{task.id}-testfix-{retries}",
            )
            if not fix.approved:
                logger.warning("Fix plan for %s not approved (%.2f); stopping retries", task.id, fix.final_score)
                break

            applied = await self.implementer.apply(task, fix.final_plan)
            if applied.rate_limited:
                return self._pause(
                    milestone_id, task, f"Rate limit during test fix: {applied.error}", results,
                )
            if not applied.success:
                logger.warning("Fix %d for %s failed: %s", retries, task.id, applied.error)
                break

        if not results.success:
            return self._fail(
                milestone_id, task,
                f"Tests failed after {retries} retries: {describe_test_failure(results, threshold)}",
                outcome=outcome, test_results=results,
            )

        self.store.update_task_status(
            milestone_id, task.id, TaskStatus.COMPLETE, reason="tests passed", tests_passed=True,
        )
        self._log("completed", f"Task {task.id} complete ({results.passed} passed)", task_id=task.id)
        return TaskRunResult(task_id=task.id, success=True, status=TaskStatus.COMPLETE, test_results=results)

    def _fail(
        self,
        milestone_id: str,
        task: Task,
        error: str,
        outcome: Optional[ConsensusOutcome] = None,
        test_results: Optional[TestResults] = None,
    ) -> TaskRunResult:
        fields = {"error": error}
        if test_results is not None:
            fields["tests_passed"] = False
        self.store.update_task_status(milestone_id, task.id, TaskStatus.FAILED, reason=error, **fields)
        self._log("failed", f"Task {task.id} failed: {error}", task_id=task.id)
        return TaskRunResult(
            task_id=task.id,
            success=False,
            status=TaskStatus.FAILED,
            error=error,
            test_results=test_results,
            concerns=outcome.concerns if outcome else [],
            recommendations=outcome.recommendations if outcome else [],
        )

    def _pause(
        self,
        milestone_id: str,
        task: Task,
        reason: str,
        test_results: Optional[TestResults] = None,
    ) -> TaskRunResult:
        self.store.pause_task(milestone_id, task.id, reason)
        self._log("paused", f"Task {task.id} paused: {reason}", task_id=task.id)
        self._notify(f"  [PAUSED] {reason}. Progress is saved; resume after the rate limit resets.")
        return TaskRunResult(
            task_id=task.id, success=False, status=TaskStatus.PAUSED, error=reason, test_results=test_results,
        )
