"""Project progress analysis and completion verification.

A project's ``status == complete`` flag is never trusted on its own: it is
cross-checked against the task statuses in state and against the number of
tasks the authoritative plan describes. A plan that names more tasks than
state tracks is reported as a mismatch.
"""

from __future__ import annotations

import bisect
import logging
import re
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.core.models import Phase, ProjectState, TaskStatus
from src.state.store import StateStore

logger = logging.getLogger("concord.state.progress")

PLAN_FILES = ("docs/PLAN.md", "docs/PLAN-DRAFT.md")

ACTION_VERBS = (
    "implement", "create", "build", "develop", "write", "add", "set up", "setup",
    "configure", "install", "integrate", "design", "define", "establish",
    "generate", "construct", "deploy", "test", "validate", "fix", "update",
    "refactor", "optimize", "extend", "enhance", "modify", "initialize",
)

_TASK_HEADER = re.compile(r"^#{2,4}\s*Task\s+(?:[\d.]+)?[:\s]+(.+)$", re.IGNORECASE | re.MULTILINE)
_BULLET = re.compile(r"^[-*+]\s+(.+)$", re.MULTILINE)
_NUMBERED = re.compile(r"^\d+[.)]\s+(.+)$", re.MULTILINE)
_MILESTONE_HEADER = re.compile(
    r"^#{1,3}\s*(?:Milestone|Phase|Sprint|Stage)\s*[\d.]*[:\s]+", re.IGNORECASE | re.MULTILINE
)
_MILESTONE_TITLE = re.compile(
    r"^#{1,3}\s*(?:Milestone|Phase|Sprint|Stage)\s*[\d.]*[:\t ]+(.+)$", re.IGNORECASE | re.MULTILINE
)
_ANY_HEADER = re.compile(r"^#{1,6}\s", re.MULTILINE)
_LIST_ITEM = re.compile(r"^(?:[-*+]|\d+[.)])\s+")
_DESCRIPTION = re.compile(r"\*\*Description\*\*:?[ \t]*(.+)", re.IGNORECASE)
_CRITERIA = re.compile(r"\*\*Acceptance Criteria\*\*:?", re.IGNORECASE)

TASKS_PER_PHASE = 5


class TaskRef(BaseModel):
    id: str
    name: str
    milestone: str
    status: TaskStatus


class ProgressReport(BaseModel):
    total_milestones: int = 0
    completed_milestones: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    pending_tasks: int = 0
    failed_tasks: int = 0
    paused_tasks: int = 0
    plan_task_count: int = 0
    plan_milestone_count: int = 0
    plan_task_names: list[str] = Field(default_factory=list)
    missing_from_state: list[str] = Field(default_factory=list)
    plan_mismatch: bool = False
    status_mismatch: bool = False
    is_actually_complete: bool = False
    percent_complete: int = 0
    incomplete_tasks: list[TaskRef] = Field(default_factory=list)
    summary: str = ""


class CompletionVerification(BaseModel):
    is_complete: bool
    reason: Optional[str] = None
    issues: list[str] = Field(default_factory=list)
    progress: ProgressReport


def _starts_with_action(text: str) -> bool:
    lower = text.lower()
    return any(lower.startswith(f"{verb} ") or lower.startswith(f"{verb}:") for verb in ACTION_VERBS)


def _clean_name(text: str) -> str:
    return re.sub(r"^\*\*(.+)\*\*$", r"\1", text.strip()).lstrip(":").strip()


def _plan_items(plan: str) -> list[tuple[int, str, bool]]:
    """``(offset, name, is_header)`` for every task the plan describes.

    Explicit ``### Task N:`` headers come first, then bullets and numbered
    items that start with an action verb. Names are unique.
    """
    items: list[tuple[int, str, bool]] = []
    if not plan:
        return items
    seen: set[str] = set()

    for match in _TASK_HEADER.finditer(plan):
        name = _clean_name(match.group(1))[:100]
        if len(name) >= 5 and name not in seen:
            seen.add(name)
            items.append((match.start(), name, True))

    for pattern in (_BULLET, _NUMBERED):
        for match in pattern.finditer(plan):
            text = re.sub(r"^\*\*(.+?)\*\*:?\s*", r"\1: ", match.group(1).strip())
            if _starts_with_action(text) and 10 <= len(text) <= 200:
                text = text[:100]
                if text not in seen:
                    seen.add(text)
                    items.append((match.start(), text, False))

    return items


def parse_plan_tasks(plan: str) -> list[str]:
    """Task names found in a markdown plan.

    Explicit ``### Task N:`` headers are collected first, then bullets and
    numbered items that start with an action verb.
    """
    return [name for _, name, _ in _plan_items(plan)]


def count_plan_tasks(plan: str) -> int:
    return len(parse_plan_tasks(plan))


def count_plan_milestones(plan: str) -> int:
    if not plan:
        return 0
    return len(_MILESTONE_HEADER.findall(plan)) or 1


def _section_body(plan: str, offset: int) -> str:
    """Text between the header line at ``offset`` and the next header."""
    line_end = plan.find("\n", offset)
    if line_end == -1:
        return ""
    following = _ANY_HEADER.search(plan, line_end + 1)
    return plan[line_end + 1:following.start() if following else len(plan)]


def _section_details(body: str) -> tuple[str, Optional[str]]:
    """Description and acceptance criteria (as a test plan) of one plan section."""
    description = ""
    match = _DESCRIPTION.search(body)
    if match:
        description = match.group(1).strip()
    else:
        for line in body.splitlines():
            text = line.strip()
            if text and not _LIST_ITEM.match(text) and not text.startswith("**"):
                description = text
                break

    criteria: list[str] = []
    marker = _CRITERIA.search(body)
    if marker:
        for line in body[marker.end():].splitlines():
            text = line.strip()
            if not text:
                continue
            item = _LIST_ITEM.match(text)
            if item is None:
                break
            criteria.append(text[item.end():].strip())
    return description[:500], "\n".join(criteria) or None


def parse_plan_milestones(plan: str) -> list[dict[str, Any]]:
    """Milestones and tasks in the shape ``StateStore.add_milestones`` takes.

    Every task ``parse_plan_tasks`` counts is placed under the closest
    milestone header above it, so a freshly imported plan never reads as a
    plan mismatch. Tasks above the first header join the first milestone.
    Without milestone headers, tasks are grouped into phases of
    ``TASKS_PER_PHASE``. Milestones that end up without tasks are dropped.
    """
    items = sorted(_plan_items(plan))
    if not items:
        return []

    def _task(offset: int, name: str, is_header: bool) -> dict[str, Any]:
        task: dict[str, Any] = {"name": name, "description": name}
        if is_header:
            description, test_plan = _section_details(_section_body(plan, offset))
            task["description"] = description or name
            if test_plan:
                task["test_plan"] = test_plan
        return task

    headers = list(_MILESTONE_TITLE.finditer(plan))
    if not headers:
        phases = []
        for start in range(0, len(items), TASKS_PER_PHASE):
            chunk = items[start:start + TASKS_PER_PHASE]
            phases.append({
                "name": f"Implementation Phase {start // TASKS_PER_PHASE + 1}",
                "description": f"Tasks {start + 1} to {start + len(chunk)}",
                "tasks": [_task(*item) for item in chunk],
            })
        return phases

    starts = [header.start() for header in headers]
    groups: list[list[tuple[int, str, bool]]] = [[] for _ in headers]
    for item in items:
        groups[max(bisect.bisect_right(starts, item[0]) - 1, 0)].append(item)

    milestones = []
    for header, group in zip(headers, groups):
        if not group:
            continue
        description, _ = _section_details(_section_body(plan, header.start()))
        milestones.append({
            "name": _clean_name(header.group(1)),
            "description": description,
            "tasks": [_task(*item) for item in group],
        })
    return milestones


def read_plan(state: ProjectState, project_dir: Optional[Path] = None) -> str:
    """The authoritative plan text: state.plan, else docs/PLAN.md in the project."""
    if state.plan:
        return state.plan
    if project_dir is not None:
        for relative in PLAN_FILES:
            path = project_dir / relative
            if path.exists():
                return path.read_text(encoding="utf-8")
    return ""


def analyze_project_progress(state: ProjectState, plan: str = "") -> ProgressReport:
    tasks = [(m, t) for m in state.milestones for t in m.tasks]
    counts = {status: 0 for status in TaskStatus}
    for _, task in tasks:
        counts[task.status] += 1

    total = len(tasks)
    completed = counts[TaskStatus.COMPLETE]
    total_milestones = len(state.milestones)
    completed_milestones = sum(1 for m in state.milestones if m.status == TaskStatus.COMPLETE)

    plan_names = parse_plan_tasks(plan)
    plan_task_count = len(plan_names)
    state_names = [t.name.lower() for _, t in tasks]
    missing = [
        name for name in plan_names
        if not any(
            s[:20] in name.lower() or name.lower()[:20] in s for s in state_names
        )
    ]

    plan_mismatch = plan_task_count > total
    is_complete = (
        total_milestones > 0
        and total > 0
        and completed_milestones == total_milestones
        and completed == total
        and not plan_mismatch
    )
    claims_complete = state.status == TaskStatus.COMPLETE or state.phase == Phase.COMPLETE
    status_mismatch = claims_complete and not is_complete

    effective_total = max(total, plan_task_count)
    percent = round(100 * completed / effective_total) if effective_total else 0

    if plan_mismatch:
        summary = (
            f"PLAN MISMATCH: state tracks {total} task(s) ({completed} complete) "
            f"but the plan describes {plan_task_count}"
        )
    elif is_complete:
        summary = f"All {total} tasks complete across {total_milestones} milestones"
    elif status_mismatch:
        summary = f"WARNING: status is 'complete' but only {completed}/{total} tasks are done"
    else:
        summary = (
            f"{completed}/{total} tasks complete ({percent}%), "
            f"{completed_milestones}/{total_milestones} milestones"
        )

    return ProgressReport(
        total_milestones=total_milestones,
        completed_milestones=completed_milestones,
        total_tasks=total,
        completed_tasks=completed,
        in_progress_tasks=counts[TaskStatus.IN_PROGRESS],
        pending_tasks=counts[TaskStatus.PENDING],
        failed_tasks=counts[TaskStatus.FAILED],
        paused_tasks=counts[TaskStatus.PAUSED],
        plan_task_count=plan_task_count,
        plan_milestone_count=count_plan_milestones(plan),
        plan_task_names=plan_names,
        missing_from_state=missing,
        plan_mismatch=plan_mismatch,
        status_mismatch=status_mismatch,
        is_actually_complete=is_complete,
        percent_complete=percent,
        incomplete_tasks=[
            TaskRef(id=t.id, name=t.name, milestone=m.name, status=t.status)
            for m, t in tasks if t.status != TaskStatus.COMPLETE
        ][:20],
        summary=summary,
    )


def verify_project_completion(state: ProjectState, plan: str = "") -> CompletionVerification:
    """Genuine completion: every task complete and the plan describes no untracked work."""
    progress = analyze_project_progress(state, plan)
    issues: list[str] = []

    if progress.plan_mismatch:
        issues.append(
            f"Plan mismatch: plan has {progress.plan_task_count} tasks but state only has "
            f"{progress.total_tasks} ({len(progress.missing_from_state)} not found in state)"
        )
    if progress.total_tasks == 0:
        issues.append("No tasks defined in the project")
    remaining = progress.total_tasks - progress.completed_tasks
    if remaining > 0:
        issues.append(f"{remaining} task(s) not complete")
    if progress.status_mismatch:
        issues.append(
            f"Status mismatch: project marked complete with "
            f"{progress.completed_tasks}/{progress.total_tasks} tasks complete"
        )

    if progress.is_actually_complete:
        return CompletionVerification(is_complete=True, progress=progress)
    return CompletionVerification(
        is_complete=False,
        reason=issues[0] if issues else progress.summary,
        issues=issues,
        progress=progress,
    )


def reset_incomplete_project(store: StateStore) -> ProjectState:
    """Send a falsely-completed project back to planning or execution.

    Failed tasks return to pending so the next run retries them.
    """
    state = store.load()
    verification = verify_project_completion(state, read_plan(state, store.project_dir))
    if verification.is_complete:
        return state

    progress = verification.progress
    if progress.total_tasks == 0:
        phase, status = Phase.PLAN, TaskStatus.PENDING
    elif progress.completed_tasks > 0:
        phase, status = Phase.EXECUTION, TaskStatus.IN_PROGRESS
    else:
        phase, status = Phase.EXECUTION, TaskStatus.PENDING

    def _reset(current: ProjectState) -> None:
        current.phase = phase
        current.status = status
        current.error = None
        for milestone in current.milestones:
            for task in milestone.tasks:
                if task.status == TaskStatus.FAILED:
                    task.status = TaskStatus.PENDING
                    task.error = None

    logger.warning("Resetting incomplete project: %s", verification.reason)
    store.backup_state()
    return store.apply(_reset)
