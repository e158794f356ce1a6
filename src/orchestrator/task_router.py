"""Task and project state machine for Concord.

Manages legal status transitions for tasks and phases and derives
milestone status from its tasks. Tasks flow:
pending → in-progress → complete | failed | paused, with failed → pending
for remediation retries and paused resuming to whatever it interrupted.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from src.core.exceptions import InvalidTransitionError
from src.core.models import Phase, Task, TaskStatus

logger = logging.getLogger("concord.orchestrator.task_router")

# Legal state transitions: each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.PAUSED, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.COMPLETE,
        TaskStatus.FAILED,
        TaskStatus.PAUSED,
        TaskStatus.PENDING,
    },
    TaskStatus.FAILED: {TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.PAUSED},
    TaskStatus.PAUSED: {TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.COMPLETE: set(),  # Terminal outside an administrative reset
}

PHASE_ORDER: tuple[Phase, ...] = (Phase.PLAN, Phase.EXECUTION, Phase.COMPLETE)


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Check if a transition is legal."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def transition(task: Task, new_status: TaskStatus, reason: Optional[str] = None) -> Task:
    """Move a task to a new status in place.

    Moving to the current status is a no-op. Pausing records the status
    being interrupted so ``resume`` can restore it.

    Raises:
        InvalidTransitionError: If transition is not allowed.
    """
    if task.status == new_status:
        return task
    if not can_transition(task.status, new_status):
        raise InvalidTransitionError(
            f"Invalid transition: {task.status.value} → {new_status.value} "
            f"for task '{task.name}' ({task.id})"
        )

    old_status = task.status
    if new_status == TaskStatus.PAUSED:
        task.paused_from = old_status
    elif old_status == TaskStatus.PAUSED:
        task.paused_from = None
    task.status = new_status

    log_msg = f"Task '{task.name}': {old_status.value} → {new_status.value}"
    if reason:
        log_msg += f" ({reason})"
    logger.info(log_msg)
    return task


def pause(task: Task, reason: str) -> Task:
    return transition(task, TaskStatus.PAUSED, reason=reason)


def resume(task: Task) -> Task:
    """Return a paused task to the status it had when paused."""
    if task.status != TaskStatus.PAUSED:
        raise InvalidTransitionError(f"Task '{task.name}' is not paused ({task.status.value})")
    target = task.paused_from or TaskStatus.PENDING
    return transition(task, target, reason="resumed")


def derive_milestone_status(tasks: Iterable[Task]) -> TaskStatus:
    """Milestone status as a pure function of its tasks."""
    statuses = [t.status for t in tasks]
    if statuses and all(s == TaskStatus.COMPLETE for s in statuses):
        return TaskStatus.COMPLETE
    if any(s in (TaskStatus.COMPLETE, TaskStatus.IN_PROGRESS) for s in statuses):
        return TaskStatus.IN_PROGRESS
    return TaskStatus.PENDING


def check_phase_transition(current: Phase, target: Phase) -> None:
    """Phases only move forward; going back requires an explicit reset.

    Raises:
        InvalidTransitionError: If ``target`` precedes ``current``.
    """
    if PHASE_ORDER.index(target) < PHASE_ORDER.index(current):
        raise InvalidTransitionError(
            f"Invalid phase transition: {current.value} → {target.value} "
            "(use reset_to_phase to roll back)"
        )


def summarize_task(task: Task) -> str:
    """Build a summary of the task's current state for logging."""
    return (
        f"Task '{task.name}' ({task.id}): "
        f"status={task.status.value}, "
        f"approved={task.consensus_approved}, "
        f"remediation={task.remediation_attempts}"
    )
