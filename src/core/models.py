"""All Pydantic data models for Concord.

Defines the data contracts shared by the consensus engine, the project
state store and the task workflows. Consensus packets are immutable once
built; project state models serialize with camelCase keys so the on-disk
state document keeps its established layout.
"""

from __future__ import annotations

import enum
import math
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Vote(str, enum.Enum):
    APPROVE = "APPROVE"
    CONDITIONAL = "CONDITIONAL"
    REJECT = "REJECT"


class FinalStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ARBITRATED = "ARBITRATED"


class LineageState(str, enum.Enum):
    DRAFT = "DRAFT"
    REVIEWING = "REVIEWING"
    REVISING = "REVISING"
    APPROVED = "APPROVED"
    ESCALATED = "ESCALATED"
    ARBITRATED = "ARBITRATED"
    REJECTED = "REJECTED"  # budget exhausted with arbitration disabled, or timed out

    @property
    def is_terminal(self) -> bool:
        return self in (LineageState.APPROVED, LineageState.ARBITRATED, LineageState.REJECTED)


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"
    PAUSED = "paused"


class Phase(str, enum.Enum):
    PLAN = "plan"
    EXECUTION = "execution"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Consensus packets (immutable)
# ---------------------------------------------------------------------------

class ArtifactRef(BaseModel):
    """Content-addressed reference to a reviewed artifact version."""
    model_config = ConfigDict(frozen=True)

    artifact_id: str
    sha256: str
    version: int = 1
    type: str = "plan"
    path: Optional[str] = None


class ReviewerVote(BaseModel):
    """One reviewer's judgment on one proposal version."""
    model_config = ConfigDict(frozen=True)

    reviewer_id: str
    provider: str
    model: str
    temperature: float = 0.3
    prompt_hash: str = ""
    vote: Vote
    confidence: float
    blocking_issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    evidence_refs: list[ArtifactRef] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def _confidence_in_range(cls, value: float) -> float:
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise ValueError(f"confidence must be a finite number in [0, 1], got {value}")
        return value

    @model_validator(mode="after")
    def _blocking_issues_forbid_approve(self) -> "ReviewerVote":
        if self.blocking_issues and self.vote == Vote.APPROVE:
            raise ValueError("a vote with blocking issues cannot be APPROVE")
        return self


class ConsensusScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = 0.0
    weighted_score: float = 0.0


class ConsensusRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    quorum: int = Field(default=1, ge=0)
    min_reviewers: int = Field(default=1, ge=0)


class ConsensusResult(BaseModel):
    """Scalar review from a single provider (text review format)."""
    score: float = 0.0
    analysis: str = ""
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    approved: bool = False
    raw_response: str = ""


class PacketResult(ConsensusScore):
    approved: bool = False
    analysis: str = ""
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ArbitrationResult(BaseModel):
    """Terminal decision issued after the consensus loop fails to converge."""
    model_config = ConfigDict(frozen=True)

    approved: bool
    score: float = 0.0
    analysis: str = ""
    critical_concerns: list[str] = Field(default_factory=list)
    minor_concerns: list[str] = Field(default_factory=list)
    subjective_concerns: list[str] = Field(default_factory=list)
    reasoning: str = ""
    suggested_changes: list[str] = Field(default_factory=list)
    raw_response: str = ""


class ConsensusPacket(BaseModel):
    """One review round's outcome."""
    model_config = ConfigDict(frozen=True)

    packet_id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_now)
    plan_ref: ArtifactRef
    votes: list[ReviewerVote] = Field(default_factory=list)
    rules: ConsensusRules = Field(default_factory=ConsensusRules)
    consensus_result: PacketResult
    final_status: FinalStatus
    arbitrator_result: Optional[ArbitrationResult] = None


class ArbitrationRequest(BaseModel):
    plan: str
    reviewer_feedback: str = ""
    generator_feedback: str = ""
    iterations: int = 0
    score_history: list[float] = Field(default_factory=list)


class ConsensusOutcome(BaseModel):
    """Result of driving one proposal lineage to a terminal state."""
    lineage_id: str
    approved: bool = False
    lineage_state: LineageState = LineageState.DRAFT
    final_status: Optional[FinalStatus] = None
    final_plan: str = ""
    best_plan: str = ""
    best_score: float = 0.0
    final_score: float = 0.0
    iterations: int = 0
    score_history: list[float] = Field(default_factory=list)
    packets: list[ConsensusPacket] = Field(default_factory=list)
    arbitration: Optional[ArbitrationResult] = None
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    open_issues: list[str] = Field(default_factory=list)
    reason: Optional[str] = None
    average_reviewer_score: Optional[float] = None


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------

class AgentResult(BaseModel):
    """Standardized output from any agent or external collaborator."""
    agent_name: str
    status: str  # "success", "failure", "rate_limited"
    data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def rate_limited(self) -> bool:
        return self.status == "rate_limited"

    @property
    def content(self) -> str:
        return str(self.data.get("content", ""))


class TestResults(BaseModel):
    __test__ = False  # keep pytest from collecting this model

    success: bool
    passed: int = 0
    failed: int = 0
    total: int = 0
    failed_tests: list[str] = Field(default_factory=list)
    output: str = ""
    error: Optional[str] = None


class ExecutionFailure(BaseModel):
    error: str
    test_results: Optional[TestResults] = None
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class TaskRunResult(BaseModel):
    task_id: str
    success: bool
    status: TaskStatus
    error: Optional[str] = None
    test_results: Optional[TestResults] = None
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    remediation_attempted: bool = False


class RemediationResult(BaseModel):
    success: bool
    attempt: int = 0
    exhausted: bool = False
    paused: bool = False
    consensus_approved: bool = False
    consensus_score: Optional[float] = None
    analysis: str = ""
    reason: Optional[str] = None
    task_result: Optional[TaskRunResult] = None


class MilestoneRunResult(BaseModel):
    milestone_id: str
    success: bool
    completion_approved: bool = False
    completion_score: Optional[float] = None
    task_results: list[TaskRunResult] = Field(default_factory=list)
    error: Optional[str] = None


class PlanRunResult(BaseModel):
    success: bool
    approved: bool = False
    score: Optional[float] = None
    iterations: int = 0
    milestone_count: int = 0
    task_count: int = 0
    missing_sections: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class ProjectRunResult(BaseModel):
    success: bool
    milestone_results: list[MilestoneRunResult] = Field(default_factory=list)
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Persisted project state (camelCase on disk)
# ---------------------------------------------------------------------------

class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RemediationRecord(_StateModel):
    attempt: int
    timestamp: datetime = Field(default_factory=_now)
    analysis: str = ""
    plan: str = ""
    consensus_score: Optional[float] = None
    consensus_approved: bool = False
    outcome: str = ""
    doc_path: Optional[str] = None


class Task(_StateModel):
    id: str
    name: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    paused_from: Optional[TaskStatus] = None
    test_plan: Optional[str] = None
    plan: Optional[str] = None
    consensus_score: Optional[float] = None
    consensus_iterations: int = 0
    consensus_approved: bool = False
    implementation_complete: bool = False
    tests_passed: Optional[bool] = None
    error: Optional[str] = None
    remediation_attempts: int = 0
    last_failure_analysis: Optional[str] = None
    last_remediation_plan: Optional[str] = None
    remediation_log: list[RemediationRecord] = Field(default_factory=list)


class Milestone(_StateModel):
    id: str
    name: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING  # derived from tasks by the state store
    tasks: list[Task] = Field(default_factory=list)
    plan: Optional[str] = None
    consensus_score: Optional[float] = None
    consensus_iterations: int = 0
    consensus_approved: bool = False
    completion_review: Optional[str] = None
    completion_score: Optional[float] = None
    completion_approved: bool = False


class ConsensusIteration(_StateModel):
    lineage_id: str
    iteration: int
    timestamp: datetime = Field(default_factory=_now)
    score: float = 0.0
    weighted_score: float = 0.0
    final_status: FinalStatus
    packet: ConsensusPacket


class ConsensusLoopState(_StateModel):
    """Resumable checkpoint of one proposal lineage."""
    lineage_id: str
    state: LineageState = LineageState.DRAFT
    iteration: int = 1
    current_plan: str = ""
    best_plan: str = ""
    best_score: float = 0.0
    score_history: list[float] = Field(default_factory=list)
    last_concerns: list[str] = Field(default_factory=list)
    last_recommendations: list[str] = Field(default_factory=list)
    generator_feedback: str = ""
    started_at: datetime = Field(default_factory=_now)


class ProjectState(_StateModel):
    id: str = Field(default_factory=_new_id)
    name: str
    idea: str = ""
    language: str = "python"
    phase: Phase = Phase.PLAN
    status: TaskStatus = TaskStatus.PENDING
    specification: Optional[str] = None
    plan: Optional[str] = None
    milestones: list[Milestone] = Field(default_factory=list)
    current_milestone: Optional[str] = None
    current_task: Optional[str] = None
    consensus_history: list[ConsensusIteration] = Field(default_factory=list)
    consensus_loops: dict[str, ConsensusLoopState] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def find_milestone(self, milestone_id: str) -> Optional[Milestone]:
        for milestone in self.milestones:
            if milestone.id == milestone_id:
                return milestone
        return None

    def find_task(self, milestone_id: str, task_id: str) -> Optional[Task]:
        milestone = self.find_milestone(milestone_id)
        if milestone is None:
            return None
        for task in milestone.tasks:
            if task.id == task_id:
                return task
        return None
