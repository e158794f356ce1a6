"""Tests for src/workflow/milestone_workflow.py."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from src.consensus.loop import ConsensusLoop
from src.core.models import ConsensusLoopState, LineageState, Phase, TaskStatus, Vote
from src.state.store import StateStore
from src.workflow.audit import AuditLog
from src.workflow.milestone_workflow import (
    MilestoneWorkflow,
    ProjectRunner,
    build_completion_review,
    build_milestone_plan_prompt,
)
from src.workflow.task_workflow import TaskWorkflow
from tests.conftest import (
    FakeGenerator,
    FakeImplementer,
    FakeReviewer,
    FakeTestRunner,
    approving,
    make_vote,
    mark_project_complete,
    rejecting,
)

M1 = "milestone-1"


@pytest.fixture
def make_milestone_workflow(store, project_dir, consensus_config, workflow_config):
    def _make(reviewers=None, implementer=None, generator=None, consensus=None):
        loop = ConsensusLoop(reviewers or [approving()], FakeGenerator(), consensus or consensus_config, store=store)
        audit = AuditLog(project_dir)
        task_workflow = TaskWorkflow(
            store, FakeGenerator(["# Task plan"]), loop, implementer or FakeImplementer(),
            FakeTestRunner(), config=workflow_config, audit=audit,
        )
        return MilestoneWorkflow(
            store, generator or FakeGenerator(["# Milestone plan"]), loop, task_workflow, audit=audit,
        )

    return _make


def _run(workflow: MilestoneWorkflow, milestone_id: str = M1):
    return asyncio.run(workflow.run(milestone_id))


class TestMilestoneWorkflow:
    def test_runs_all_tasks_and_completion_review(self, store, make_milestone_workflow):
        result = _run(make_milestone_workflow())

        assert result.success is True
        assert result.completion_approved is True
        assert result.completion_score == pytest.approx(1.0)
        assert [r.task_id for r in result.task_results] == ["milestone-1-task-1", "milestone-1-task-2"]

        milestone = store.get_milestone(M1)
        assert milestone.status == TaskStatus.COMPLETE
        assert milestone.consensus_approved is True
        assert milestone.plan == "# Milestone plan"
        assert milestone.completion_approved is True
        assert milestone.completion_review.startswith("# Milestone Completion Review: Core")
        assert {"milestone-1-plan", "milestone-1-completion"} <= set(store.load().consensus_loops)

    def test_stops_at_failed_task(self, store, make_milestone_workflow):
        workflow = make_milestone_workflow(implementer=FakeImplementer(["success", "failure"]))

        result = _run(workflow)

        assert result.success is False
        assert result.error.startswith("Task 'Add HTTP endpoints' failed: Implementation failed")
        assert len(result.task_results) == 2
        milestone = store.get_milestone(M1)
        assert milestone.status == TaskStatus.IN_PROGRESS
        assert "milestone-1-completion" not in store.load().consensus_loops

    def test_stops_at_paused_task(self, make_milestone_workflow):
        result = _run(make_milestone_workflow(implementer=FakeImplementer(["rate_limited"])))
        assert result.success is False
        assert "paused" in result.error
        assert len(result.task_results) == 1

    def test_plan_not_approved(self, store, consensus_config, make_milestone_workflow):
        implementer = FakeImplementer()
        workflow = make_milestone_workflow(
            reviewers=[rejecting()],
            implementer=implementer,
            consensus=consensus_config.model_copy(update={"max_disagreements": 1}),
        )

        result = _run(workflow)

        assert result.success is False
        assert result.error == "Milestone plan not approved. Score: 0%"
        assert implementer.calls == []
        assert store.get_milestone(M1).consensus_approved is False

    def test_approved_plan_is_reused(self, store, make_milestone_workflow):
        store.update_milestone(M1, plan="# Saved milestone plan", consensus_approved=True)
        generator = FakeGenerator()
        result = _run(make_milestone_workflow(generator=generator))
        assert result.success is True
        assert generator.prompts == []

    def test_interrupted_plan_review_resumes_without_regenerating(self, store, make_milestone_workflow):
        store.save_loop_state(ConsensusLoopState(
            lineage_id=f"{M1}-plan",
            state=LineageState.REVISING,
            iteration=1,
            current_plan="# Milestone draft",
            best_plan="# Milestone draft",
            score_history=[0.0],
        ))
        generator = FakeGenerator()

        result = _run(make_milestone_workflow(generator=generator))

        assert result.success is True
        assert generator.prompts == []
        assert store.get_milestone(M1).consensus_iterations == 2

    def test_completed_tasks_are_skipped(self, store, make_milestone_workflow):
        store.update_task_status(M1, "milestone-1-task-1", TaskStatus.IN_PROGRESS)
        store.update_task_status(M1, "milestone-1-task-1", TaskStatus.COMPLETE)
        result = _run(make_milestone_workflow())
        assert [r.task_id for r in result.task_results] == ["milestone-1-task-2"]

    def test_completion_not_approved(self, store, consensus_config, make_milestone_workflow):
        # milestone plan, two task plans, then the completion review
        reviewer = FakeReviewer("r1", [
            (Vote.APPROVE, 1.0),
            (Vote.APPROVE, 1.0),
            (Vote.APPROVE, 1.0),
            make_vote(Vote.REJECT, 0.9, blocking=["Acceptance criteria unverified"]),
        ])
        workflow = make_milestone_workflow(
            reviewers=[reviewer], consensus=consensus_config.model_copy(update={"max_disagreements": 1}),
        )

        result = _run(workflow)

        assert result.success is False
        assert result.error == "Milestone completion not approved. Score: 0%"
        milestone = store.get_milestone(M1)
        assert milestone.status == TaskStatus.COMPLETE
        assert milestone.completion_approved is False
        assert milestone.completion_score == 0.0


class TestProjectRunner:
    def test_runs_project_to_completion(self, store, project_dir, make_milestone_workflow):
        milestone_workflow = make_milestone_workflow()
        runner = ProjectRunner(store, milestone_workflow, audit=milestone_workflow.audit)

        result = asyncio.run(runner.run())

        assert result.success is True
        assert len(result.milestone_results) == 1
        state = store.load()
        assert state.phase == Phase.COMPLETE
        assert state.status == TaskStatus.COMPLETE
        assert state.current_task is None
        assert len(milestone_workflow.audit.read_events("project_complete")) == 1

    def test_already_complete_project(self, store, make_milestone_workflow):
        milestone_workflow = make_milestone_workflow()
        runner = ProjectRunner(store, milestone_workflow)
        asyncio.run(runner.run())

        again = asyncio.run(runner.run())

        assert again.success is True
        assert again.milestone_results == []

    def test_false_completion_is_reset_not_trusted(self, store, make_milestone_workflow):
        mark_project_complete(store)
        runner = ProjectRunner(store, None)

        result = asyncio.run(runner.run())

        assert result.success is False
        assert "2 task(s) not complete" in result.error
        assert "reset to phase 'execution'" in result.error
        state = store.load()
        assert state.phase == Phase.EXECUTION
        assert state.error == result.error

        resumed = asyncio.run(ProjectRunner(store, make_milestone_workflow()).run())

        assert resumed.success is True
        assert len(resumed.milestone_results) == 1
        assert store.load().phase == Phase.COMPLETE

    def test_plan_mismatch_blocks_completion(self, store, make_milestone_workflow):
        store.store_plan(
            "## Task 1: Create data models\n"
            "## Task 2: Add HTTP endpoints\n"
            "## Task 3: Deploy the service\n"
        )
        runner = ProjectRunner(store, make_milestone_workflow())

        result = asyncio.run(runner.run())

        assert result.success is False
        assert result.error.startswith("Plan mismatch: plan has 3 tasks but state only has 2")
        state = store.load()
        assert state.phase == Phase.EXECUTION
        assert state.error == result.error

    def test_stops_at_failed_milestone(self, store, make_milestone_workflow):
        runner = ProjectRunner(store, make_milestone_workflow(implementer=FakeImplementer(["failure"])))

        result = asyncio.run(runner.run())

        assert result.success is False
        assert store.load().error == result.error
        assert store.load().phase == Phase.EXECUTION

    def test_requires_milestones(self, tmp_path: Path, make_milestone_workflow):
        empty = StateStore(tmp_path / "empty")
        empty.create_project("empty")
        runner = ProjectRunner(empty, make_milestone_workflow())
        result = asyncio.run(runner.run())
        assert result.success is False
        assert "No milestones" in result.error


class TestPrompts:
    def test_milestone_plan_prompt(self, store):
        store.store_specification("A service that stores notes")
        state = store.load()
        prompt, context = build_milestone_plan_prompt(state.milestones[0], state)
        assert "## Milestone: Core" in prompt
        assert "1. Create data models: Pydantic models" in prompt
        assert "A service that stores notes" in context

    def test_completion_review(self, store):
        store.update_task(M1, "milestone-1-task-1", consensus_score=0.96, tests_passed=True)
        review = build_completion_review(store.get_milestone(M1))
        assert "1. **Create data models**" in review
        assert "   - Consensus Score: 96%" in review
        assert "   - Tests: Passed" in review
        assert "   - Consensus Score: N/A" in review
