"""Abstract base agent for Concord.

An agent wraps one external capability (plan generation, fix generation)
behind an async ``process`` call and reports an AgentResult. ``run`` adds
timing, metrics and structured logging, and turns exceptions into failure
results so that callers can branch on ``status`` instead of catching.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from src.core.exceptions import RateLimitError
from src.core.models import AgentResult


class BaseAgent(ABC):
    """Base class for Concord agents.

    Subclasses implement ``process()`` and receive their dependencies via
    __init__ injection.
    """

    def __init__(self, name: str, role: str):
        """Initialize agent with name and role.

        Args:
            name: Human-readable agent name (e.g., "PlanGenerator").
            role: Model router role key (e.g., "generator").
        """
        self.name = name
        self.role = role
        self.logger = logging.getLogger(f"concord.agent.{name.lower()}")
        self._metrics: dict[str, Any] = {
            "total_processed": 0,
            "total_errors": 0,
            "total_rate_limited": 0,
            "last_duration_seconds": 0.0,
        }

    @abstractmethod
    async def process(self, input_data: Any) -> AgentResult:
        """Process input and return a structured result."""

    async def run(self, input_data: Any) -> AgentResult:
        """Execute the agent with lifecycle logging and metrics.

        A rate limit that outlived the provider retry policy is reported as
        ``rate_limited`` rather than ``failure`` so callers can pause work
        instead of counting it as a failed attempt.
        """
        self.logger.info("[%s] Starting: %s", self.name, _summarize_input(input_data))
        start = time.monotonic()

        try:
            result = await self.process(input_data)
        except RateLimitError as e:
            duration = self._finish(start, "total_rate_limited")
            self.logger.warning("[%s] Rate limited: %s", self.name, e)
            return AgentResult(
                agent_name=self.name, status="rate_limited", error=str(e), duration_seconds=duration,
            )
        except Exception as e:
            duration = self._finish(start, "total_errors")
            self.logger.error("[%s] Error: %s", self.name, e, exc_info=True)
            return AgentResult(
                agent_name=self.name, status="failure", error=str(e), duration_seconds=duration,
            )

        duration = self._finish(start, "total_processed")
        result.duration_seconds = duration
        self.logger.info("[%s] Complete: status=%s (%.2fs)", self.name, result.status, duration)
        return result

    def _finish(self, start: float, counter: str) -> float:
        duration = time.monotonic() - start
        self._metrics[counter] += 1
        self._metrics["last_duration_seconds"] = duration
        return duration

    def get_metrics(self) -> dict[str, Any]:
        """Return a copy of the agent's runtime metrics."""
        return self._metrics.copy()


def _summarize_input(input_data: Any) -> str:
    """Create a short log-safe summary of agent input."""
    if isinstance(input_data, dict) and "prompt" in input_data:
        prompt = str(input_data["prompt"]).strip().splitlines()
        return f"prompt='{prompt[0][:60] if prompt else ''}'"
    return type(input_data).__name__
