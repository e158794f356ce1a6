"""Proposal generator: produces initial plans, revisions and fix plans.

The generator is an external capability; the consensus loop, the task
workflow and the remediation loop only depend on ``ProposalGenerator``.
``LLMProposalGenerator`` is the OpenRouter-backed implementation.
"""

from __future__ import annotations

from typing import Any

from src.agents.base_agent import BaseAgent
from src.core.config import PromptLoader
from src.core.models import AgentResult
from src.llm.client import LLMMessage, OpenRouterClient
from src.llm.router import ModelRouter


class ProposalGenerator(BaseAgent):
    """Turns a prompt plus context into proposal text.

    ``generate`` never raises: failures come back as an AgentResult with
    status ``failure`` or ``rate_limited`` and the text in ``data["content"]``
    on success.
    """

    def __init__(self, name: str = "ProposalGenerator"):
        super().__init__(name=name, role="generator")

    async def generate(self, prompt: str, context: str = "") -> AgentResult:
        return await self.run({"prompt": prompt, "context": context})


class LLMProposalGenerator(ProposalGenerator):
    """OpenRouter-backed generator.

    Injected dependencies:
        llm_client: OpenRouter client for LLM calls.
        model_router: Resolves the 'generator' role to a model chain.
        prompt_loader: Loads system prompt from config/prompts/.
    """

    _DEFAULT_SYSTEM_PROMPT = (
        "You are a senior software engineer writing implementation plans. "
        "Produce complete, concrete markdown: background, goals, milestones, "
        "tasks and a test strategy. When revising, address every listed concern "
        "explicitly and keep what reviewers did not object to."
    )

    def __init__(
        self,
        llm_client: OpenRouterClient,
        model_router: ModelRouter,
        prompt_loader: PromptLoader | None = None,
    ):
        super().__init__(name="PlanGenerator")
        self.llm_client = llm_client
        self.model_router = model_router
        self._prompt_loader = prompt_loader or PromptLoader()

    async def process(self, input_data: Any) -> AgentResult:
        prompt = input_data["prompt"]
        context = input_data.get("context", "")
        system = self._prompt_loader.load("generator_system.txt", self._DEFAULT_SYSTEM_PROMPT)

        user = prompt if not context else f"{prompt}\n\n## Context\n\n{context}"
        response = await self.llm_client.complete_with_fallback(
            [LLMMessage("system", system), LLMMessage("user", user)],
            models=self.model_router.get_model_chain(self.role),
        )
        if not response.content.strip():
            return AgentResult(agent_name=self.name, status="failure", error="Empty response from generator")

        return AgentResult(
            agent_name=self.name,
            status="success",
            data={"content": response.content, "model": response.model},
        )
