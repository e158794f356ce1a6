"""Model router for Concord.

Resolves collaborator roles (reviewer, arbitrator, generator) to OpenRouter
model IDs using the user-managed config/models.yaml file.
"""

from __future__ import annotations

import logging

from src.core.config import ModelRegistry

logger = logging.getLogger("concord.llm.router")


class ModelRouter:
    """Maps collaborator roles to LLM model IDs."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def get_model(self, role: str) -> str:
        """Resolve a role to its configured model ID.

        Raises:
            ConfigError: If role not found in models.yaml.
        """
        model = self.registry.get_model(role)
        logger.debug("Resolved role '%s' -> model '%s'", role, model)
        return model

    def get_model_chain(self, role: str) -> list[str]:
        """Resolve a role to [primary, fallbacks...], de-duplicated."""
        primary = self.get_model(role)
        fallbacks = self.registry.get_fallback_models(role)

        chain: list[str] = []
        for model in [primary, *fallbacks]:
            if model and model not in chain:
                chain.append(model)
        return chain

    def get_reviewer_models(self) -> list[str]:
        """Models for the review panel; falls back to the single 'reviewer' role."""
        if self.registry.reviewers:
            return list(dict.fromkeys(self.registry.reviewers))
        return [self.get_model("reviewer")]

    def get_arbitrator_model(self) -> str:
        """Get the arbitrator model, warning when it shares a family with every reviewer.

        Arbitration is only useful as an independent perspective; a model
        from the same provider as the whole panel tends to repeat its verdict.
        """
        arbitrator = self.get_model("arbitrator")
        reviewer_families = {provider_of(m) for m in self.get_reviewer_models()}
        if reviewer_families == {provider_of(arbitrator)}:
            logger.warning(
                "Arbitrator model '%s' is the same family as all reviewers. "
                "Update config/models.yaml to use a different provider for arbitration.",
                arbitrator,
            )
        return arbitrator


def provider_of(model_id: str) -> str:
    """Extract the provider/family from an OpenRouter model ID.

    'openai/gpt-4o' -> 'openai', 'google/gemini-2.0-flash' -> 'google'
    """
    if "/" in model_id:
        return model_id.split("/")[0].lower()
    return model_id.lower()
