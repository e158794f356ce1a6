"""Shared fixtures for Concord tests.

Collaborators that would talk to LLM providers, edit code or run a test
suite are replaced by small scripted in-memory implementations of the same
interfaces. Everything else (state store, consensus loop, workflows) is
the real code running against a temporary project directory.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import pytest
from dotenv import load_dotenv

# Load .env from project root so OPENROUTER_API_KEY etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from src.agents.arbitrator import Arbitrator
from src.agents.collaborators import Implementer, TestRunner
from src.agents.generator import ProposalGenerator
from src.agents.reviewer import Reviewer
from src.core.config import (
    AppConfig,
    ConsensusConfig,
    ModelRegistry,
    WorkflowConfig,
    load_config,
    load_model_registry,
)
from src.core.models import (
    AgentResult,
    ArbitrationRequest,
    ArbitrationResult,
    Phase,
    ReviewerVote,
    Task,
    TaskStatus,
    TestResults,
    Vote,
)
from src.state.store import StateStore


def _openrouter_key_set() -> bool:
    return bool(os.getenv("OPENROUTER_API_KEY"))


requires_openrouter = pytest.mark.skipif(
    not _openrouter_key_set(),
    reason="OPENROUTER_API_KEY not set",
)


# ---------------------------------------------------------------------------
# Vote helpers
# ---------------------------------------------------------------------------

def make_vote(
    vote: Union[Vote, str],
    confidence: float = 1.0,
    reviewer_id: str = "reviewer-1",
    blocking: Iterable[str] = (),
    suggestions: Iterable[str] = (),
) -> ReviewerVote:
    return ReviewerVote(
        reviewer_id=reviewer_id,
        provider=reviewer_id.split("-")[0],
        model=f"test/{reviewer_id}",
        vote=Vote(vote),
        confidence=confidence,
        blocking_issues=list(blocking),
        suggestions=list(suggestions),
    )


# ---------------------------------------------------------------------------
# Scripted collaborators
# ---------------------------------------------------------------------------

class FakeReviewer(Reviewer):
    """Returns scripted votes in order; the last entry repeats.

    Script entries may be votes, exceptions (raised) or ``None`` to hang
    until cancelled (a timeout).
    """

    def __init__(self, reviewer_id: str, script: list[Any], delay: float = 0.0):
        self.reviewer_id = reviewer_id
        self.script = list(script)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def review(self, plan: str, context: str) -> ReviewerVote:
        self.calls.append((plan, context))
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if self.delay:
            await asyncio.sleep(self.delay)
        if item is None:
            await asyncio.sleep(3600)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ReviewerVote):
            return item.model_copy(update={"reviewer_id": self.reviewer_id})
        vote, confidence = item
        return make_vote(vote, confidence, reviewer_id=self.reviewer_id)


def approving(reviewer_id: str = "reviewer-1") -> FakeReviewer:
    return FakeReviewer(reviewer_id, [(Vote.APPROVE, 1.0)])


def rejecting(reviewer_id: str = "reviewer-2", issue: str = "Missing error handling") -> FakeReviewer:
    return FakeReviewer(reviewer_id, [make_vote(Vote.REJECT, 0.9, blocking=[issue])])


class FakeGenerator(ProposalGenerator):
    """Scripted generator: strings succeed, exceptions go through BaseAgent.run."""

    def __init__(self, responses: Optional[list[Any]] = None):
        super().__init__(name="FakeGenerator")
        self.responses = list(responses or ["# Revised plan"])
        self.prompts: list[str] = []

    async def process(self, input_data: Any) -> AgentResult:
        self.prompts.append(input_data["prompt"])
        index = min(len(self.prompts) - 1, len(self.responses) - 1)
        item = self.responses[index]
        if isinstance(item, BaseException):
            raise item
        return AgentResult(agent_name=self.name, status="success", data={"content": item})


class FakeArbitrator(Arbitrator):
    def __init__(self, approved: bool = True, suggested_changes: Optional[list[str]] = None):
        self.result = ArbitrationResult(
            approved=approved,
            score=0.9 if approved else 0.6,
            reasoning="Remaining concerns are minor" if approved else "Critical gaps remain",
            suggested_changes=list(suggested_changes or []),
        )
        self.requests: list[ArbitrationRequest] = []

    async def arbitrate(self, request: ArbitrationRequest) -> ArbitrationResult:
        self.requests.append(request)
        return self.result


class FakeImplementer(Implementer):
    """Returns scripted statuses ("success", "failure", "rate_limited"); the last repeats."""

    def __init__(self, statuses: Optional[list[str]] = None):
        self.statuses = list(statuses or ["success"])
        self.calls: list[tuple[str, str]] = []

    async def apply(self, task: Task, plan: str) -> AgentResult:
        self.calls.append((task.id, plan))
        status = self.statuses[min(len(self.calls) - 1, len(self.statuses) - 1)]
        error = None if status == "success" else f"implementer {status}"
        return AgentResult(agent_name="FakeImplementer", status=status, error=error)


class FakeTestRunner(TestRunner):
    __test__ = False

    def __init__(self, results: Optional[list[TestResults]] = None):
        self.results = list(results or [passing_tests()])
        self.runs = 0

    async def run(self, task: Task) -> TestResults:
        self.runs += 1
        return self.results[min(self.runs - 1, len(self.results) - 1)]


def passing_tests(passed: int = 5) -> TestResults:
    return TestResults(success=True, passed=passed, total=passed, output=f"{passed} passed")


def failing_tests(passed: int = 3, failed: int = 2) -> TestResults:
    names = [f"tests/test_app.py::test_case_{i}" for i in range(failed)]
    return TestResults(
        success=False,
        passed=passed,
        failed=failed,
        total=passed + failed,
        failed_tests=names,
        output="\n".join(f"FAILED {n}" for n in names) + f"\n{failed} failed, {passed} passed",
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def model_registry(config_dir: Path) -> ModelRegistry:
    return load_model_registry(config_dir=config_dir)


@pytest.fixture
def consensus_config() -> ConsensusConfig:
    return ConsensusConfig(
        threshold=0.95,
        max_disagreements=3,
        stuck_iterations=3,
        reviewer_timeout_seconds=0.2,
    )


@pytest.fixture
def workflow_config() -> WorkflowConfig:
    return WorkflowConfig(max_test_retries=2)


# ---------------------------------------------------------------------------
# Project state fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    return tmp_path / "project"


@pytest.fixture
def store(project_dir: Path) -> StateStore:
    """Store with a created project and one milestone of two tasks."""
    store = StateStore(project_dir)
    store.create_project("demo", idea="A demo service")
    store.add_milestones([
        {
            "name": "Core",
            "description": "Core functionality",
            "tasks": [
                {"name": "Create data models", "description": "Pydantic models"},
                {"name": "Add HTTP endpoints", "description": "REST API"},
            ],
        }
    ])
    return store


def mark_project_complete(store: StateStore, status: TaskStatus = TaskStatus.COMPLETE) -> None:
    """Write a completed phase straight into the state file, whatever the tasks say."""

    def _mark(state):
        state.phase = Phase.COMPLETE
        state.status = status

    store.apply(_mark)
