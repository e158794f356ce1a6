"""Arbitrator collaborators.

Arbitration is the terminal decision taken once the consensus loop has
used up its revision budget. The arbitrator sees the best plan so far, the
latest reviewer feedback and the full score history.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from src.core.config import PromptLoader
from src.core.models import ArbitrationRequest, ArbitrationResult
from src.llm.client import LLMMessage, OpenRouterClient
from src.llm.response_parser import parse_arbitration_response

logger = logging.getLogger("concord.agent.arbitrator")


class Arbitrator(ABC):

    @abstractmethod
    async def arbitrate(self, request: ArbitrationRequest) -> ArbitrationResult:
        """Issue a final APPROVE or REVISE decision."""


class LLMArbitrator(Arbitrator):
    _DEFAULT_SYSTEM_PROMPT = (
        "You are the final arbitrator for a development plan on which reviewers "
        "could not agree. Separate critical concerns from minor and subjective ones. "
        "Respond with FINAL_SCORE: N%, DECISION: APPROVE or REVISE, and sections "
        "CRITICAL_CONCERNS:, MINOR_CONCERNS:, SUBJECTIVE_CONCERNS:, REASONING:, "
        "SUGGESTED_CHANGES:."
    )

    def __init__(
        self,
        model: str,
        llm_client: OpenRouterClient,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        self.model = model
        self.llm_client = llm_client
        self._prompt_loader = prompt_loader or PromptLoader()

    async def arbitrate(self, request: ArbitrationRequest) -> ArbitrationResult:
        system = self._prompt_loader.load("arbitrator_system.txt", self._DEFAULT_SYSTEM_PROMPT)
        response = await self.llm_client.complete(
            [LLMMessage("system", system), LLMMessage("user", compose_arbitration_prompt(request))],
            model=self.model,
        )
        result = parse_arbitration_response(response.content)
        logger.info(
            "Arbitration: %s at %.0f%% (%d critical concern(s))",
            "APPROVE" if result.approved else "REVISE",
            result.score * 100,
            len(result.critical_concerns),
        )
        return result


def compose_arbitration_prompt(request: ArbitrationRequest) -> str:
    history = ", ".join(f"{s:.0%}" for s in request.score_history) or "none"
    sections = [
        "## Plan",
        "",
        request.plan.strip(),
        "",
        "## Reviewer Feedback",
        "",
        request.reviewer_feedback.strip() or "(none)",
        "",
        "## Generator Feedback",
        "",
        request.generator_feedback.strip() or "(none)",
        "",
        "## Consensus History",
        "",
        f"Iterations: {request.iterations}",
        f"Scores: {history}",
    ]
    return "\n".join(sections)
