"""Reviewer collaborators.

A reviewer judges one plan version and returns a ReviewerVote. Transient
provider failures are retried inside the LLM client; anything that still
fails propagates so the consensus loop can treat it as a missing vote or
abort the round. A reviewer never invents a vote for a failed call.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError

from src.core.config import ConsensusConfig, PromptLoader
from src.core.models import ConsensusResult, ReviewerVote, Vote
from src.llm.client import LLMMessage, OpenRouterClient
from src.llm.response_parser import extract_json_block, parse_consensus_response
from src.llm.router import provider_of

logger = logging.getLogger("concord.agent.reviewer")


class Reviewer(ABC):
    """Interface consumed by the consensus loop."""

    reviewer_id: str = "reviewer"

    @abstractmethod
    async def review(self, plan: str, context: str) -> ReviewerVote:
        """Judge ``plan`` in light of ``context``."""


def prompt_fingerprint(*parts: str) -> str:
    """sha256 over the exact prompt text sent to a provider."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


def vote_from_review(
    result: ConsensusResult,
    approve_cutoff: float,
    conditional_cutoff: float,
) -> tuple[Vote, list[str], list[str]]:
    """Map a scalar review onto (vote, blocking_issues, suggestions).

    Concerns only block when the reviewer rejects; for APPROVE and
    CONDITIONAL they are carried as suggestions.
    """
    if result.score >= approve_cutoff:
        return Vote.APPROVE, [], result.concerns + result.recommendations
    if result.score >= conditional_cutoff:
        return Vote.CONDITIONAL, [], result.concerns + result.recommendations
    return Vote.REJECT, list(result.concerns), list(result.recommendations)


class LLMReviewer(Reviewer):
    """Reviews plans with one OpenRouter model.

    Accepts either a JSON vote (``{"vote": ..., "confidence": ...}``) or the
    labelled text format (``ANALYSIS`` / ``STRENGTHS`` / ``CONCERNS`` /
    ``RECOMMENDATIONS`` / ``CONSENSUS: N%``).
    """

    _DEFAULT_SYSTEM_PROMPT = (
        "You are an independent reviewer of software development plans. "
        "Evaluate completeness, consistency, feasibility and testability. "
        "Respond with sections ANALYSIS:, STRENGTHS:, CONCERNS:, "
        "RECOMMENDATIONS: and finish with a line 'CONSENSUS: N%' giving "
        "your confidence that the plan is ready to implement as written."
    )

    def __init__(
        self,
        model: str,
        llm_client: OpenRouterClient,
        config: Optional[ConsensusConfig] = None,
        prompt_loader: Optional[PromptLoader] = None,
        reviewer_id: Optional[str] = None,
        temperature: Optional[float] = None,
    ):
        self.model = model
        self.provider = provider_of(model)
        self.reviewer_id = reviewer_id or f"reviewer-{self.provider}"
        self.llm_client = llm_client
        self.config = config or ConsensusConfig()
        self.temperature = (
            temperature if temperature is not None else llm_client.config.default_temperature
        )
        self._prompt_loader = prompt_loader or PromptLoader()
        self.last_result: Optional[ConsensusResult] = None

    async def review(self, plan: str, context: str) -> ReviewerVote:
        system = self._prompt_loader.load("reviewer_system.txt", self._DEFAULT_SYSTEM_PROMPT)
        user = self._compose_prompt(plan, context)
        prompt_hash = prompt_fingerprint(system, user)

        response = await self.llm_client.complete(
            [LLMMessage("system", system), LLMMessage("user", user)],
            model=self.model,
            temperature=self.temperature,
        )

        vote = self._vote_from_json(response.content, prompt_hash)
        if vote is not None:
            return vote

        result = parse_consensus_response(response.content, self.config.approve_cutoff)
        self.last_result = result
        decision, blocking, suggestions = vote_from_review(
            result, self.config.approve_cutoff, self.config.conditional_cutoff,
        )
        logger.info(
            "[%s] %s at %.0f%% (%d concern(s))",
            self.reviewer_id, decision.value, result.score * 100, len(result.concerns),
        )
        return ReviewerVote(
            reviewer_id=self.reviewer_id,
            provider=self.provider,
            model=self.model,
            temperature=self.temperature,
            prompt_hash=prompt_hash,
            vote=decision,
            confidence=result.score,
            blocking_issues=blocking,
            suggestions=suggestions,
        )

    def _compose_prompt(self, plan: str, context: str) -> str:
        parts = ["## Plan Under Review", "", plan.strip()]
        if context.strip():
            parts += ["", "## Context", "", context.strip()]
        return "\n".join(parts)

    def _vote_from_json(self, content: str, prompt_hash: str) -> Optional[ReviewerVote]:
        payload = extract_json_block(content)
        if not payload or "vote" not in payload:
            return None
        try:
            return ReviewerVote(
                reviewer_id=self.reviewer_id,
                provider=self.provider,
                model=self.model,
                temperature=self.temperature,
                prompt_hash=prompt_hash,
                vote=str(payload["vote"]).upper(),
                confidence=payload.get("confidence", 0.0),
                blocking_issues=list(payload.get("blocking_issues") or []),
                suggestions=list(payload.get("suggestions") or []),
            )
        except (ValidationError, TypeError) as e:
            logger.warning("[%s] Ignoring malformed JSON vote: %s", self.reviewer_id, e)
            return None
