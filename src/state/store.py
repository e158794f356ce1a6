"""Project state store for Concord.

One JSON document per project (``<project>/.concord/state.json``) is the
single source of truth. Every mutation funnels through ``apply``: load the
full state, run a transform, re-derive milestone statuses, stamp
``updated_at`` and atomically write the full state back. A single active
orchestrator per project directory is assumed; there is no locking.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from src.core.config import StateConfig
from src.core.exceptions import StateError, StateNotFoundError, StatePersistenceError
from src.core.models import (
    ConsensusIteration,
    ConsensusLoopState,
    ConsensusPacket,
    Milestone,
    Phase,
    ProjectState,
    Task,
    TaskStatus,
)
from src.orchestrator import task_router

logger = logging.getLogger("concord.state.store")

Transform = Callable[[ProjectState], Optional[ProjectState]]

# Fields callers may not set through update_task / update_milestone / update_state
_PROTECTED_TASK_FIELDS = {"id", "status", "paused_from"}
_PROTECTED_MILESTONE_FIELDS = {"id", "status", "tasks"}
_PROTECTED_PROJECT_FIELDS = {"phase", "milestones"}


class StateStore:
    """Owns the persisted ProjectState of one project directory."""

    def __init__(self, project_dir: Path, config: Optional[StateConfig] = None):
        self.project_dir = Path(project_dir)
        self.config = config or StateConfig()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def state_dir(self) -> Path:
        return self.project_dir / self.config.dir_name

    @property
    def state_path(self) -> Path:
        return self.state_dir / self.config.state_file

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / "backups"

    # ------------------------------------------------------------------
    # Load / save / apply
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.state_path.exists()

    def load(self) -> ProjectState:
        """Read the full state document.

        Raises:
            StateNotFoundError: No state file in the project directory.
            StateError: The file exists but does not hold a valid state.
        """
        if not self.state_path.exists():
            raise StateNotFoundError(f"No project state found in {self.project_dir}")
        return self._read(self.state_path)

    def save(self, state: ProjectState) -> None:
        """Atomically write the full state (temp file + rename).

        Raises:
            StatePersistenceError: The write failed; the previous file is intact.
        """
        payload = state.model_dump_json(by_alias=True, indent=2)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".state.", suffix=".tmp", dir=self.state_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.state_path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StatePersistenceError(f"Failed to write {self.state_path}: {e}") from e

    def apply(self, transform: Transform) -> ProjectState:
        """The single mutation entry point.

        ``transform`` receives a working copy and may mutate it in place or
        return a replacement. Milestone statuses are re-derived and
        ``updated_at`` is stamped before the write.
        """
        state = self.load().model_copy(deep=True)
        result = transform(state)
        if result is not None:
            state = result
        for milestone in state.milestones:
            milestone.status = task_router.derive_milestone_status(milestone.tasks)
        state.updated_at = datetime.now(UTC)
        self.save(state)
        return state

    def update_state(self, **fields: Any) -> ProjectState:
        """Apply a plain field update to the project root."""
        bad = set(fields) & _PROTECTED_PROJECT_FIELDS
        if bad:
            raise StateError(f"Fields {sorted(bad)} cannot be set directly")
        unknown = set(fields) - set(ProjectState.model_fields)
        if unknown:
            raise StateError(f"Unknown project fields: {sorted(unknown)}")

        def _set(state: ProjectState) -> None:
            for key, value in fields.items():
                setattr(state, key, value)

        return self.apply(_set)

    # ------------------------------------------------------------------
    # Project lifecycle
    # ------------------------------------------------------------------

    def create_project(self, name: str, idea: str = "", language: str = "python") -> ProjectState:
        if self.exists():
            raise StateError(f"Project already exists in {self.project_dir}")
        state = ProjectState(name=name, idea=idea, language=language)
        self.save(state)
        logger.info("Created project '%s' (%s) in %s", name, state.id, self.project_dir)
        return state

    def set_phase(self, phase: Phase) -> ProjectState:
        def _set(state: ProjectState) -> None:
            task_router.check_phase_transition(state.phase, phase)
            if state.phase != phase:
                logger.info("Project phase: %s → %s", state.phase.value, phase.value)
            state.phase = phase

        return self.apply(_set)

    def store_specification(self, specification: str) -> ProjectState:
        return self.update_state(specification=specification)

    def store_plan(self, plan: str) -> ProjectState:
        return self.update_state(plan=plan)

    def complete_project(self) -> ProjectState:
        """Mark the project complete; refused while any task is unfinished."""

        def _complete(state: ProjectState) -> None:
            unfinished = [
                t.id for m in state.milestones for t in m.tasks if t.status != TaskStatus.COMPLETE
            ]
            if unfinished:
                raise StateError(
                    f"Cannot complete project: {len(unfinished)} task(s) not complete "
                    f"({', '.join(unfinished[:5])})"
                )
            state.phase = Phase.COMPLETE
            state.status = TaskStatus.COMPLETE
            state.current_milestone = None
            state.current_task = None
            state.error = None

        return self.apply(_complete)

    def fail_project(self, error: str) -> ProjectState:
        logger.error("Project failed: %s", error)
        return self.update_state(status=TaskStatus.FAILED, error=error)

    def delete_project(self) -> bool:
        if not self.state_dir.exists():
            return False
        shutil.rmtree(self.state_dir)
        logger.info("Deleted project state in %s", self.state_dir)
        return True

    # ------------------------------------------------------------------
    # Milestones and tasks
    # ------------------------------------------------------------------

    def add_milestones(self, milestones: list[dict[str, Any]]) -> ProjectState:
        """Append milestones given as ``{name, description, tasks: [{name, description, test_plan}]}``."""

        def _add(state: ProjectState) -> None:
            for spec in milestones:
                milestone_id = f"milestone-{len(state.milestones) + 1}"
                milestone = Milestone(
                    id=milestone_id,
                    name=spec["name"],
                    description=spec.get("description", ""),
                )
                milestone.tasks = [
                    _new_task(milestone_id, i, task_spec)
                    for i, task_spec in enumerate(spec.get("tasks", []), start=1)
                ]
                state.milestones.append(milestone)

        return self.apply(_add)

    def add_tasks(self, milestone_id: str, tasks: list[dict[str, Any]]) -> ProjectState:
        def _add(state: ProjectState) -> None:
            milestone = _require_milestone(state, milestone_id)
            start = len(milestone.tasks) + 1
            for offset, task_spec in enumerate(tasks):
                milestone.tasks.append(_new_task(milestone_id, start + offset, task_spec))

        return self.apply(_add)

    def get_task(self, milestone_id: str, task_id: str) -> Task:
        return _require_task(self.load(), milestone_id, task_id)

    def get_milestone(self, milestone_id: str) -> Milestone:
        return _require_milestone(self.load(), milestone_id)

    def update_task(self, milestone_id: str, task_id: str, **fields: Any) -> Task:
        """Update task data fields; status changes go through update_task_status."""
        bad = set(fields) & _PROTECTED_TASK_FIELDS
        if bad:
            raise StateError(f"Fields {sorted(bad)} cannot be set directly")
        unknown = set(fields) - set(Task.model_fields)
        if unknown:
            raise StateError(f"Unknown task fields: {sorted(unknown)}")

        def _update(state: ProjectState) -> None:
            task = _require_task(state, milestone_id, task_id)
            for key, value in fields.items():
                setattr(task, key, value)

        state = self.apply(_update)
        return _require_task(state, milestone_id, task_id)

    def update_task_status(
        self,
        milestone_id: str,
        task_id: str,
        status: TaskStatus,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> Task:
        """Transition a task through the state machine, optionally updating data fields too."""
        bad = set(fields) & _PROTECTED_TASK_FIELDS
        if bad:
            raise StateError(f"Fields {sorted(bad)} cannot be set directly")

        def _update(state: ProjectState) -> None:
            task = _require_task(state, milestone_id, task_id)
            task_router.transition(task, status, reason=reason)
            for key, value in fields.items():
                setattr(task, key, value)

        state = self.apply(_update)
        return _require_task(state, milestone_id, task_id)

    def pause_task(self, milestone_id: str, task_id: str, reason: str) -> Task:
        def _pause(state: ProjectState) -> None:
            task = _require_task(state, milestone_id, task_id)
            task_router.pause(task, reason)
            task.error = reason
            state.status = TaskStatus.PAUSED

        state = self.apply(_pause)
        return _require_task(state, milestone_id, task_id)

    def resume_task(self, milestone_id: str, task_id: str) -> Task:
        def _resume(state: ProjectState) -> None:
            task = _require_task(state, milestone_id, task_id)
            task_router.resume(task)
            task.error = None
            if state.status == TaskStatus.PAUSED:
                state.status = TaskStatus.IN_PROGRESS

        state = self.apply(_resume)
        return _require_task(state, milestone_id, task_id)

    def update_milestone(self, milestone_id: str, **fields: Any) -> Milestone:
        """Update milestone data; its status is always derived from its tasks."""
        bad = set(fields) & _PROTECTED_MILESTONE_FIELDS
        if bad:
            raise StateError(f"Fields {sorted(bad)} cannot be set directly")
        unknown = set(fields) - set(Milestone.model_fields)
        if unknown:
            raise StateError(f"Unknown milestone fields: {sorted(unknown)}")

        def _update(state: ProjectState) -> None:
            milestone = _require_milestone(state, milestone_id)
            for key, value in fields.items():
                setattr(milestone, key, value)

        state = self.apply(_update)
        return _require_milestone(state, milestone_id)

    def set_current(self, milestone_id: Optional[str], task_id: Optional[str] = None) -> ProjectState:
        def _set(state: ProjectState) -> None:
            if milestone_id is not None:
                _require_milestone(state, milestone_id)
            state.current_milestone = milestone_id
            state.current_task = task_id
            if state.status == TaskStatus.PENDING and milestone_id is not None:
                state.status = TaskStatus.IN_PROGRESS

        return self.apply(_set)

    # ------------------------------------------------------------------
    # Consensus history and loop checkpoints
    # ------------------------------------------------------------------

    def record_consensus_iteration(
        self,
        lineage_id: str,
        iteration: int,
        packet: ConsensusPacket,
        loop_state: Optional[ConsensusLoopState] = None,
    ) -> ProjectState:
        """Append one round to the append-only consensus history.

        When ``loop_state`` is given the lineage checkpoint is written in the
        same transform, so history and checkpoint never disagree on disk.
        """
        entry = ConsensusIteration(
            lineage_id=lineage_id,
            iteration=iteration,
            score=packet.consensus_result.score,
            weighted_score=packet.consensus_result.weighted_score,
            final_status=packet.final_status,
            packet=packet,
        )

        def _record(state: ProjectState) -> None:
            state.consensus_history.append(entry)
            if loop_state is not None:
                state.consensus_loops[loop_state.lineage_id] = loop_state.model_copy(deep=True)

        return self.apply(_record)

    def get_loop_state(self, lineage_id: str) -> Optional[ConsensusLoopState]:
        if not self.exists():
            return None
        return self.load().consensus_loops.get(lineage_id)

    def save_loop_state(self, loop_state: ConsensusLoopState) -> ProjectState:
        def _save(state: ProjectState) -> None:
            state.consensus_loops[loop_state.lineage_id] = loop_state.model_copy(deep=True)

        return self.apply(_save)

    def clear_loop_state(self, lineage_id: str) -> ProjectState:
        def _clear(state: ProjectState) -> None:
            state.consensus_loops.pop(lineage_id, None)

        return self.apply(_clear)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_progress(self) -> dict[str, Any]:
        state = self.load()
        tasks = [t for m in state.milestones for t in m.tasks]
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETE)
        return {
            "phase": state.phase.value,
            "status": state.status.value,
            "total_milestones": len(state.milestones),
            "completed_milestones": sum(
                1 for m in state.milestones if m.status == TaskStatus.COMPLETE
            ),
            "total_tasks": len(tasks),
            "completed_tasks": completed,
            "failed_tasks": sum(1 for t in tasks if t.status == TaskStatus.FAILED),
            "paused_tasks": sum(1 for t in tasks if t.status == TaskStatus.PAUSED),
            "percent_complete": round(100 * completed / len(tasks)) if tasks else 0,
        }

    def get_next_task(self) -> Optional[tuple[Milestone, Task]]:
        """First task that is not complete, in milestone order."""
        state = self.load()
        for milestone in state.milestones:
            for task in milestone.tasks:
                if task.status != TaskStatus.COMPLETE:
                    return milestone, task
        return None

    # ------------------------------------------------------------------
    # Reset and backups
    # ------------------------------------------------------------------

    def reset_to_phase(self, phase: Phase) -> ProjectState:
        """Administrative rollback. A backup is always taken first."""
        self.backup_state()

        def _reset(state: ProjectState) -> None:
            state.phase = phase
            state.status = TaskStatus.PENDING
            state.error = None
            state.current_milestone = None
            state.current_task = None
            if phase == Phase.PLAN:
                state.milestones = []
                state.plan = None
                state.consensus_loops = {}
            elif phase == Phase.EXECUTION:
                for milestone in state.milestones:
                    for task in milestone.tasks:
                        task.status = TaskStatus.PENDING
                        task.paused_from = None
                        task.tests_passed = None
                        task.error = None
                        task.implementation_complete = False

        state = self.apply(_reset)
        logger.warning("Project reset to phase '%s'", phase.value)
        return state

    def backup_state(self) -> Optional[Path]:
        if not self.exists():
            return None
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self.backups_dir / f"state.backup.{stamp}.json"
        try:
            self.backups_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.state_path, backup_path)
        except OSError as e:
            raise StatePersistenceError(f"Failed to back up state: {e}") from e
        logger.info("State backed up to %s", backup_path)
        return backup_path

    def list_backups(self) -> list[Path]:
        """Backups, newest first."""
        if not self.backups_dir.exists():
            return []
        backups = [p for p in self.backups_dir.glob("state.backup.*.json") if p.is_file()]
        return sorted(backups, key=lambda p: p.name, reverse=True)

    def restore_from_backup(self, backup_path: Path) -> ProjectState:
        """Validate a backup and make it the current state."""
        state = self._read(Path(backup_path))
        self.save(state)
        logger.info("Restored state from %s", backup_path)
        return state

    def cleanup_backups(self, keep: Optional[int] = None) -> int:
        keep = self.config.backups_to_keep if keep is None else keep
        stale = self.list_backups()[keep:]
        for path in stale:
            path.unlink()
        return len(stale)

    def _read(self, path: Path) -> ProjectState:
        try:
            return ProjectState.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise StateError(f"Invalid state file {path}: {e}") from e
        except OSError as e:
            raise StateError(f"Failed to read {path}: {e}") from e


def _new_task(milestone_id: str, number: int, spec: dict[str, Any]) -> Task:
    return Task(
        id=f"{milestone_id}-task-{number}",
        name=spec["name"],
        description=spec.get("description", ""),
        test_plan=spec.get("test_plan"),
    )


def _require_milestone(state: ProjectState, milestone_id: str) -> Milestone:
    milestone = state.find_milestone(milestone_id)
    if milestone is None:
        raise StateError(f"Milestone not found: {milestone_id}")
    return milestone


def _require_task(state: ProjectState, milestone_id: str, task_id: str) -> Task:
    task = state.find_task(milestone_id, task_id)
    if task is None:
        raise StateError(f"Task not found: {milestone_id}/{task_id}")
    return task
