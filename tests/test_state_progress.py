"""Tests for src/state/progress.py."""

from __future__ import annotations

from src.core.models import Phase, TaskStatus
from src.state.progress import (
    analyze_project_progress,
    count_plan_milestones,
    parse_plan_milestones,
    parse_plan_tasks,
    read_plan,
    reset_incomplete_project,
    verify_project_completion,
)
from tests.conftest import mark_project_complete

M1 = "milestone-1"
T1 = "milestone-1-task-1"
T2 = "milestone-1-task-2"

PLAN = """# Plan

## Milestone 1: Core

### Task 1: Create data models
### Task 2: Add HTTP endpoints

- Implement request validation for every endpoint
- Notes about the architecture
1. Deploy the service to staging
"""


def _complete(store, *task_ids):
    for task_id in task_ids:
        store.update_task_status(M1, task_id, TaskStatus.IN_PROGRESS)
        store.update_task_status(M1, task_id, TaskStatus.COMPLETE)


class TestPlanParsing:
    def test_headers_and_action_items(self):
        assert parse_plan_tasks(PLAN) == [
            "Create data models",
            "Add HTTP endpoints",
            "Implement request validation for every endpoint",
            "Deploy the service to staging",
        ]

    def test_milestones_hold_every_counted_task(self):
        milestones = parse_plan_milestones(PLAN)
        assert [m["name"] for m in milestones] == ["Core"]
        assert [t["name"] for t in milestones[0]["tasks"]] == [
            "Create data models",
            "Add HTTP endpoints",
            "Implement request validation for every endpoint",
            "Deploy the service to staging",
        ]
        assert sum(len(m["tasks"]) for m in milestones) == len(parse_plan_tasks(PLAN))

    def test_tasks_follow_the_closest_milestone_above(self):
        plan = (
            "### Task 1: Set up the repository\n"
            "## Milestone 1: **Core**\n"
            "Core models and storage.\n"
            "### Task 2: Create the models\n"
            "**Description**: Dataclasses for orders\n"
            "## Milestone 2: Docs\n"
            "Nothing to do here.\n"
        )
        milestones = parse_plan_milestones(plan)
        assert len(milestones) == 1
        assert milestones[0]["name"] == "Core"
        assert milestones[0]["description"] == "Core models and storage."
        tasks = milestones[0]["tasks"]
        assert [t["name"] for t in tasks] == ["Set up the repository", "Create the models"]
        assert tasks[1]["description"] == "Dataclasses for orders"
        assert "test_plan" not in tasks[1]

    def test_plan_without_milestones_is_grouped_into_phases(self):
        plan = "\n".join(f"- Implement feature number {i}" for i in range(1, 8))
        milestones = parse_plan_milestones(plan)
        assert [m["name"] for m in milestones] == ["Implementation Phase 1", "Implementation Phase 2"]
        assert [len(m["tasks"]) for m in milestones] == [5, 2]
        assert milestones[1]["description"] == "Tasks 6 to 7"
        assert parse_plan_milestones("") == []

    def test_empty_plan(self):
        assert parse_plan_tasks("") == []
        assert count_plan_milestones("") == 0

    def test_milestone_count_defaults_to_one(self):
        assert count_plan_milestones("just some text") == 1
        assert count_plan_milestones("## Milestone 1: A\n## Phase 2: B") == 2


class TestReadPlan:
    def test_state_plan_wins(self, store, project_dir):
        store.store_plan("# In state")
        (project_dir / "docs").mkdir(parents=True, exist_ok=True)
        (project_dir / "docs" / "PLAN.md").write_text("# On disk")
        assert read_plan(store.load(), project_dir) == "# In state"

    def test_falls_back_to_docs(self, store, project_dir):
        (project_dir / "docs").mkdir(parents=True, exist_ok=True)
        (project_dir / "docs" / "PLAN.md").write_text("# On disk")
        assert read_plan(store.load(), project_dir) == "# On disk"
        assert read_plan(store.load()) == ""


class TestAnalyzeProgress:
    def test_counts(self, store):
        _complete(store, T1)
        report = analyze_project_progress(store.load())
        assert report.total_tasks == 2
        assert report.completed_tasks == 1
        assert report.pending_tasks == 1
        assert report.percent_complete == 50
        assert report.is_actually_complete is False
        assert [t.id for t in report.incomplete_tasks] == [T2]
        assert report.summary == "1/2 tasks complete (50%), 0/1 milestones"

    def test_plan_with_more_tasks_is_mismatch(self, store):
        _complete(store, T1, T2)
        report = analyze_project_progress(store.load(), PLAN)
        assert report.plan_task_count == 4
        assert report.plan_mismatch is True
        assert report.is_actually_complete is False
        assert report.percent_complete == 50
        assert report.missing_from_state == [
            "Implement request validation for every endpoint",
            "Deploy the service to staging",
        ]
        assert report.summary.startswith("PLAN MISMATCH")

    def test_false_completion_flag(self, store):
        store.update_state(status=TaskStatus.COMPLETE)
        report = analyze_project_progress(store.load())
        assert report.status_mismatch is True
        assert report.summary.startswith("WARNING")


class TestVerifyCompletion:
    def test_genuinely_complete(self, store):
        _complete(store, T1, T2)
        result = verify_project_completion(store.load(), "### Task 1: Create data models")
        assert result.is_complete is True
        assert result.reason is None

    def test_incomplete(self, store):
        _complete(store, T1)
        result = verify_project_completion(store.load())
        assert result.is_complete is False
        assert result.reason == "1 task(s) not complete"

    def test_no_tasks(self, tmp_path):
        from src.state.store import StateStore

        store = StateStore(tmp_path / "p")
        store.create_project("p")
        result = verify_project_completion(store.load())
        assert result.is_complete is False
        assert "No tasks defined in the project" in result.issues


class TestResetIncomplete:
    def test_complete_project_is_untouched(self, store):
        _complete(store, T1, T2)
        store.complete_project()
        assert reset_incomplete_project(store).phase == Phase.COMPLETE
        assert store.list_backups() == []

    def test_false_completion_goes_back_to_execution(self, store):
        _complete(store, T1)
        store.update_task_status(M1, T2, TaskStatus.IN_PROGRESS)
        store.update_task_status(M1, T2, TaskStatus.FAILED, error="boom")
        mark_project_complete(store)

        state = reset_incomplete_project(store)

        assert state.phase == Phase.EXECUTION
        assert state.status == TaskStatus.IN_PROGRESS
        assert state.find_task(M1, T2).status == TaskStatus.PENDING
        assert state.find_task(M1, T2).error is None
        assert len(store.list_backups()) == 1

    def test_nothing_done_goes_to_pending_execution(self, store):
        mark_project_complete(store, status=TaskStatus.PENDING)
        state = reset_incomplete_project(store)
        assert state.phase == Phase.EXECUTION
        assert state.status == TaskStatus.PENDING
