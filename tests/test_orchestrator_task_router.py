"""Tests for src/orchestrator/task_router.py: task state machine."""

import pytest

from src.core.exceptions import InvalidTransitionError
from src.core.models import Phase, Task, TaskStatus
from src.orchestrator.task_router import (
    VALID_TRANSITIONS,
    can_transition,
    check_phase_transition,
    derive_milestone_status,
    pause,
    resume,
    summarize_task,
    transition,
)


def _task(status: TaskStatus = TaskStatus.PENDING) -> Task:
    return Task(id="milestone-1-task-1", name="Create data models", status=status)


class TestValidTransitions:
    """Test the state transition graph directly."""

    def test_pending_can_start(self):
        assert TaskStatus.IN_PROGRESS in VALID_TRANSITIONS[TaskStatus.PENDING]

    def test_pending_cannot_complete(self):
        assert not can_transition(TaskStatus.PENDING, TaskStatus.COMPLETE)

    def test_in_progress_outcomes(self):
        for target in (TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.PAUSED):
            assert can_transition(TaskStatus.IN_PROGRESS, target)

    def test_failed_can_return_to_pending_for_remediation(self):
        assert can_transition(TaskStatus.FAILED, TaskStatus.PENDING)

    def test_complete_is_terminal(self):
        assert len(VALID_TRANSITIONS[TaskStatus.COMPLETE]) == 0


class TestTransition:
    def test_moves_status(self):
        task = transition(_task(), TaskStatus.IN_PROGRESS, reason="started")
        assert task.status == TaskStatus.IN_PROGRESS

    def test_same_status_is_noop(self):
        task = _task(TaskStatus.COMPLETE)
        assert transition(task, TaskStatus.COMPLETE).status == TaskStatus.COMPLETE

    def test_illegal_transition_raises(self):
        with pytest.raises(InvalidTransitionError, match="pending → complete"):
            transition(_task(), TaskStatus.COMPLETE)

    def test_complete_cannot_restart(self):
        with pytest.raises(InvalidTransitionError):
            transition(_task(TaskStatus.COMPLETE), TaskStatus.IN_PROGRESS)


class TestPauseResume:
    def test_pause_records_interrupted_status(self):
        task = pause(_task(TaskStatus.IN_PROGRESS), "rate limit")
        assert task.status == TaskStatus.PAUSED
        assert task.paused_from == TaskStatus.IN_PROGRESS

    def test_resume_restores_interrupted_status(self):
        task = resume(pause(_task(TaskStatus.FAILED), "rate limit"))
        assert task.status == TaskStatus.FAILED
        assert task.paused_from is None

    def test_resume_without_record_goes_pending(self):
        task = _task(TaskStatus.PAUSED)
        assert resume(task).status == TaskStatus.PENDING

    def test_resume_requires_paused(self):
        with pytest.raises(InvalidTransitionError, match="not paused"):
            resume(_task(TaskStatus.IN_PROGRESS))


class TestMilestoneStatus:
    def test_all_complete(self):
        tasks = [_task(TaskStatus.COMPLETE), _task(TaskStatus.COMPLETE)]
        assert derive_milestone_status(tasks) == TaskStatus.COMPLETE

    def test_some_progress(self):
        tasks = [_task(TaskStatus.COMPLETE), _task(TaskStatus.FAILED)]
        assert derive_milestone_status(tasks) == TaskStatus.IN_PROGRESS

    def test_in_progress_task(self):
        assert derive_milestone_status([_task(TaskStatus.IN_PROGRESS)]) == TaskStatus.IN_PROGRESS

    def test_nothing_started(self):
        tasks = [_task(TaskStatus.PENDING), _task(TaskStatus.FAILED), _task(TaskStatus.PAUSED)]
        assert derive_milestone_status(tasks) == TaskStatus.PENDING

    def test_empty_milestone_is_pending(self):
        assert derive_milestone_status([]) == TaskStatus.PENDING


class TestPhases:
    def test_forward_and_same_phase_allowed(self):
        check_phase_transition(Phase.PLAN, Phase.EXECUTION)
        check_phase_transition(Phase.EXECUTION, Phase.EXECUTION)

    def test_backward_requires_reset(self):
        with pytest.raises(InvalidTransitionError, match="reset_to_phase"):
            check_phase_transition(Phase.COMPLETE, Phase.EXECUTION)


def test_summarize_task():
    task = _task()
    task.remediation_attempts = 1
    assert summarize_task(task) == (
        "Task 'Create data models' (milestone-1-task-1): status=pending, approved=False, remediation=1"
    )
