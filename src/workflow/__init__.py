"""Plan, task, milestone and remediation workflows driven by consensus."""

from src.workflow.audit import AuditLog
from src.workflow.milestone_workflow import MilestoneWorkflow, ProjectRunner
from src.workflow.plan_workflow import PlanWorkflow
from src.workflow.remediation import RemediationLoop, build_failure_context
from src.workflow.task_workflow import TaskWorkflow, is_test_runner_crash

__all__ = [
    "AuditLog",
    "MilestoneWorkflow",
    "PlanWorkflow",
    "ProjectRunner",
    "RemediationLoop",
    "TaskWorkflow",
    "build_failure_context",
    "is_test_runner_crash",
]
