"""Tests for src/workflow/task_workflow.py."""

from __future__ import annotations

import asyncio

import pytest

from src.consensus.loop import ConsensusLoop
from src.core.exceptions import RateLimitError
from src.core.models import ConsensusLoopState, LineageState, TaskStatus, TestResults
from src.workflow.audit import AuditLog
from src.workflow.remediation import RemediationLoop
from src.workflow.task_workflow import (
    TaskWorkflow,
    build_task_plan_prompt,
    build_test_fix_plan,
    describe_test_failure,
    is_test_runner_crash,
)
from tests.conftest import (
    FakeGenerator,
    FakeImplementer,
    FakeTestRunner,
    approving,
    failing_tests,
    passing_tests,
    rejecting,
)

M1 = "milestone-1"
T1 = "milestone-1-task-1"

FIX_PLAN = "### Root Cause Analysis\nMissing import in app.py\n\n### Fix Plan\n1. Add the import"


@pytest.fixture
def make_workflow(store, project_dir, consensus_config, workflow_config):
    def _make(
        reviewers=None,
        generator=None,
        implementer=None,
        test_runner=None,
        with_remediation=False,
        consensus=None,
    ):
        loop = ConsensusLoop(
            reviewers or [approving()], FakeGenerator(), consensus or consensus_config, store=store,
        )
        implementer = implementer or FakeImplementer()
        audit = AuditLog(project_dir)
        remediation = None
        if with_remediation:
            remediation = RemediationLoop(
                store, FakeGenerator([FIX_PLAN]), loop, implementer, audit=audit, config=workflow_config,
            )
        return TaskWorkflow(
            store,
            generator or FakeGenerator(["# Task plan"]),
            loop,
            implementer,
            test_runner or FakeTestRunner(),
            config=workflow_config,
            audit=audit,
            remediation=remediation,
        )

    return _make


def _run(workflow: TaskWorkflow, task_id: str = T1):
    return asyncio.run(workflow.run(M1, task_id))


class TestHappyPath:
    def test_task_completes(self, store, make_workflow):
        implementer = FakeImplementer()
        workflow = make_workflow(implementer=implementer)

        result = _run(workflow)

        assert result.success is True
        assert result.status == TaskStatus.COMPLETE
        task = store.get_task(M1, T1)
        assert task.status == TaskStatus.COMPLETE
        assert task.tests_passed is True
        assert task.implementation_complete is True
        assert task.consensus_approved is True
        assert task.plan == "# Task plan"
        assert implementer.calls == [(T1, "# Task plan")]

        state = store.load()
        assert state.current_task == T1
        assert state.milestones[0].status == TaskStatus.IN_PROGRESS
        assert "milestone-1-task-1-plan" in state.consensus_loops

    def test_audit_events(self, make_workflow):
        workflow = make_workflow()
        _run(workflow)
        kinds = [e["event_type"] for e in workflow.audit.read_events()]
        assert kinds == ["task_started", "task_consensus", "task_completed"]
        assert "**[COMPLETED]**" in workflow.audit.workflow_log_path.read_text()

    def test_completed_task_is_skipped(self, make_workflow):
        implementer = FakeImplementer()
        workflow = make_workflow(implementer=implementer)
        _run(workflow)
        result = _run(workflow)
        assert result.success is True
        assert len(implementer.calls) == 1

    def test_checkpointed_implementation_is_not_redone(self, store, make_workflow):
        store.update_task(M1, T1, plan="# Saved plan", consensus_approved=True, implementation_complete=True)
        generator = FakeGenerator()
        implementer = FakeImplementer()
        runner = FakeTestRunner()
        workflow = make_workflow(generator=generator, implementer=implementer, test_runner=runner)

        result = _run(workflow)

        assert result.success is True
        assert generator.prompts == []
        assert implementer.calls == []
        assert runner.runs == 1

    def test_interrupted_plan_review_resumes_without_regenerating(self, store, make_workflow):
        store.save_loop_state(ConsensusLoopState(
            lineage_id=f"{T1}-plan",
            state=LineageState.REVIEWING,
            iteration=2,
            current_plan="# Checkpointed plan",
            best_plan="# First draft",
            best_score=0.4,
            score_history=[0.4],
        ))
        generator = FakeGenerator()
        implementer = FakeImplementer()

        result = _run(make_workflow(generator=generator, implementer=implementer))

        assert result.success is True
        assert generator.prompts == []
        assert implementer.calls == [(T1, "# Checkpointed plan")]
        assert store.get_task(M1, T1).consensus_iterations == 2

    def test_plan_prompt_includes_milestone_context(self, store, make_workflow):
        generator = FakeGenerator(["# Task plan"])
        _run(make_workflow(generator=generator))
        assert "## Task: Create data models" in generator.prompts[0]


class TestFailures:
    def test_consensus_not_reached(self, store, consensus_config, make_workflow):
        implementer = FakeImplementer()
        workflow = make_workflow(
            reviewers=[rejecting()],
            implementer=implementer,
            consensus=consensus_config.model_copy(update={"max_disagreements": 1}),
        )

        result = _run(workflow)

        assert result.success is False
        assert result.status == TaskStatus.FAILED
        assert result.error.startswith("Consensus not reached: 0%")
        assert result.concerns == ["Missing error handling"]
        assert implementer.calls == []
        task = store.get_task(M1, T1)
        assert task.status == TaskStatus.FAILED
        assert task.consensus_approved is False

    def test_implementation_failure(self, store, make_workflow):
        workflow = make_workflow(implementer=FakeImplementer(["failure"]))
        result = _run(workflow)
        assert result.status == TaskStatus.FAILED
        assert "Implementation failed" in result.error
        assert store.get_task(M1, T1).implementation_complete is False

    def test_plan_generation_failure(self, make_workflow):
        workflow = make_workflow(generator=FakeGenerator([RuntimeError("provider down")]))
        result = _run(workflow)
        assert result.status == TaskStatus.FAILED
        assert "Failed to create task plan" in result.error


class TestTestRetries:
    def test_fix_then_pass(self, store, make_workflow):
        implementer = FakeImplementer()
        runner = FakeTestRunner([failing_tests(), passing_tests()])
        workflow = make_workflow(implementer=implementer, test_runner=runner)

        result = _run(workflow)

        assert result.success is True
        assert runner.runs == 2
        assert len(implementer.calls) == 2
        assert "## Test Failure Fix Plan" in implementer.calls[1][1]
        assert "milestone-1-task-1-testfix-1" in store.load().consensus_loops

    def test_gives_up_after_max_retries(self, store, make_workflow):
        implementer = FakeImplementer()
        runner = FakeTestRunner([failing_tests()])
        workflow = make_workflow(implementer=implementer, test_runner=runner)

        result = _run(workflow)

        assert result.status == TaskStatus.FAILED
        assert "Tests failed after 2 retries" in result.error
        assert result.test_results.failed == 2
        assert runner.runs == 3
        assert len(implementer.calls) == 3
        assert store.get_task(M1, T1).tests_passed is False

    def test_crash_gets_root_cause_fix_plan(self, make_workflow):
        reviewer = approving()
        runner = FakeTestRunner([failing_tests(passed=0, failed=25), passing_tests()])
        workflow = make_workflow(reviewers=[reviewer], test_runner=runner)

        result = _run(workflow)

        assert result.success is True
        fix_plan = reviewer.calls[1][0]
        assert "## Test Runner Crash - Fix Plan" in fix_plan
        assert "Do NOT try to fix 25 individual tests" in fix_plan


class TestPause:
    def test_rate_limited_implementer_pauses_and_resumes(self, store, make_workflow):
        paused = _run(make_workflow(implementer=FakeImplementer(["rate_limited"])))

        assert paused.status == TaskStatus.PAUSED
        task = store.get_task(M1, T1)
        assert task.status == TaskStatus.PAUSED
        assert task.paused_from == TaskStatus.IN_PROGRESS
        assert store.load().status == TaskStatus.PAUSED

        generator = FakeGenerator()
        resumed = _run(make_workflow(generator=generator))

        assert resumed.success is True
        assert generator.prompts == []
        assert store.get_task(M1, T1).status == TaskStatus.COMPLETE

    def test_rate_limited_plan_generation_pauses(self, store, make_workflow):
        result = _run(make_workflow(generator=FakeGenerator([RateLimitError("429")])))
        assert result.status == TaskStatus.PAUSED
        assert store.get_task(M1, T1).error.startswith("Rate limit")

    def test_rate_limited_test_fix_pauses(self, make_workflow):
        runner = FakeTestRunner([failing_tests()])
        workflow = make_workflow(implementer=FakeImplementer(["success", "rate_limited"]), test_runner=runner)
        result = _run(workflow)
        assert result.status == TaskStatus.PAUSED
        assert result.test_results is not None


class TestRemediationHandoff:
    def test_remediation_recovers_task(self, store, make_workflow):
        implementer = FakeImplementer(["failure", "success"])
        workflow = make_workflow(implementer=implementer, with_remediation=True)

        result = _run(workflow)

        assert result.success is True
        assert result.remediation_attempted is True
        task = store.get_task(M1, T1)
        assert task.status == TaskStatus.COMPLETE
        assert task.remediation_attempts == 1
        assert implementer.calls[1] == (T1, FIX_PLAN)

    def test_remediation_is_bounded(self, store, make_workflow):
        implementer = FakeImplementer(["failure", "success", "failure", "success", "failure"])
        workflow = make_workflow(implementer=implementer, with_remediation=True)

        result = _run(workflow)

        assert result.success is False
        assert result.remediation_attempted is True
        assert len(implementer.calls) == 5
        task = store.get_task(M1, T1)
        assert task.status == TaskStatus.FAILED
        assert task.remediation_attempts == 2
        assert [r.attempt for r in task.remediation_log] == [1, 2]
        assert len(workflow.audit.read_events("remediation_exhausted")) == 1

    def test_disabled_remediation(self, workflow_config, make_workflow):
        workflow = make_workflow(implementer=FakeImplementer(["failure"]), with_remediation=True)
        workflow.config = workflow_config.model_copy(update={"enable_remediation": False})
        result = _run(workflow)
        assert result.status == TaskStatus.FAILED
        assert result.remediation_attempted is False


class TestHelpers:
    def test_crash_detection(self):
        assert is_test_runner_crash(TestResults(success=False, passed=0, failed=21)) is True
        assert is_test_runner_crash(TestResults(success=False, passed=0, failed=20)) is False
        assert is_test_runner_crash(TestResults(success=False, passed=1, failed=50)) is False

    def test_describe_crash_uses_first_error_line(self):
        results = TestResults(
            success=False, passed=0, failed=30,
            output="collecting...\nImportError: cannot import name 'App'\nmore noise",
        )
        text = describe_test_failure(results)
        assert text.startswith("TEST RUNNER CRASH (0/30 passed)")
        assert "ImportError: cannot import name 'App'" in text

    def test_describe_lists_failed_tests(self):
        text = describe_test_failure(failing_tests(failed=7))
        assert text.startswith("7 failed: tests/test_app.py::test_case_0")
        assert text.endswith("...")

    def test_fix_plan_lists_failures(self, store):
        task = store.get_task(M1, T1)
        plan = build_test_fix_plan(task, failing_tests(), "python")
        assert "- Failed: 2" in plan
        assert "- tests/test_app.py::test_case_1" in plan

    def test_task_plan_prompt(self, store):
        store.update_task_status(M1, T1, TaskStatus.IN_PROGRESS)
        store.update_task_status(M1, T1, TaskStatus.COMPLETE)
        state = store.load()
        milestone = state.milestones[0]
        prompt, context = build_task_plan_prompt(milestone.tasks[1], milestone, state)
        assert "## Task: Add HTTP endpoints" in prompt
        assert "- Create data models" in context
        assert "Project: demo" in context
