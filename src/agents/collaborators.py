"""Execution collaborators used by the task workflow.

``Implementer`` applies an approved plan (or fix) to the codebase and
``TestRunner`` runs the project's tests. Both are external capabilities;
``ShellTestRunner`` is the stock test runner that shells out to a test
command and reads pytest-style summaries.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

from src.core.exceptions import ToolError
from src.core.models import AgentResult, Task, TestResults
from src.tools.shell import run_command

logger = logging.getLogger("concord.agent.collaborators")

_COUNT = r"(\d+)\s+{label}"
_FAILED_NAME = re.compile(r"^(?:FAILED|ERROR)\s+(\S+)", re.MULTILINE)


class Implementer(ABC):
    """Applies a plan to the project.

    Implementations report ``rate_limited`` when an upstream provider
    throttled them, distinct from ``failure``.
    """

    @abstractmethod
    async def apply(self, task: Task, plan: str) -> AgentResult:
        """Apply ``plan`` for ``task``."""


class TestRunner(ABC):
    __test__ = False

    @abstractmethod
    async def run(self, task: Task) -> TestResults:
        """Run the tests relevant to ``task``."""


def parse_test_output(output: str, return_code: int) -> TestResults:
    """Read passed/failed counts and failing test ids from a test run summary."""

    def _count(label: str) -> int:
        return sum(int(n) for n in re.findall(_COUNT.format(label=label), output))

    passed = _count("passed")
    failed = _count("failed") + _count(r"errors?")
    failed_tests = list(dict.fromkeys(_FAILED_NAME.findall(output)))
    return TestResults(
        success=return_code == 0 and failed == 0,
        passed=passed,
        failed=failed,
        total=passed + failed,
        failed_tests=failed_tests,
        output=output[-4000:],
    )


class ShellTestRunner(TestRunner):
    def __init__(self, project_dir: Path, command: str = "pytest -q", timeout: int = 600):
        self.project_dir = Path(project_dir)
        self.command = command
        self.timeout = timeout

    async def run(self, task: Task) -> TestResults:
        logger.info("Running tests for %s: %s", task.id, self.command)
        try:
            result = await asyncio.to_thread(
                run_command, self.command, str(self.project_dir), self.timeout,
            )
        except ToolError as e:
            return TestResults(success=False, error=str(e))

        results = parse_test_output(result.output, result.return_code)
        if not results.success and results.failed == 0:
            results.error = f"Test command exited with code {result.return_code}"
        return results
