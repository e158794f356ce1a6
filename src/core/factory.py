"""Component factory for Concord.

Creates and wires the infrastructure (config, LLM client, model router,
state store, audit log) and the consensus engine so workflows receive
fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from src.agents.arbitrator import LLMArbitrator
from src.agents.collaborators import Implementer, ShellTestRunner, TestRunner
from src.agents.generator import LLMProposalGenerator
from src.agents.reviewer import LLMReviewer
from src.consensus.loop import ConsensusLoop
from src.core.config import (
    AppConfig,
    ModelRegistry,
    PromptLoader,
    load_config,
    load_model_registry,
)
from src.core.exceptions import ConfigError
from src.llm.client import OpenRouterClient
from src.llm.retry import RetryPolicy
from src.llm.router import ModelRouter, provider_of
from src.state.store import StateStore
from src.workflow.audit import AuditLog
from src.workflow.milestone_workflow import MilestoneWorkflow, ProjectRunner
from src.workflow.plan_workflow import PlanWorkflow
from src.workflow.remediation import RemediationLoop
from src.workflow.task_workflow import TaskWorkflow

logger = logging.getLogger("concord.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; callers hand references to the
    workflows and the CLI. The plan workflow is always built; the execution
    workflows are only present when an implementer was supplied.
    """

    config: AppConfig
    model_registry: ModelRegistry
    llm_client: OpenRouterClient
    model_router: ModelRouter
    store: StateStore
    audit: AuditLog
    generator: LLMProposalGenerator
    reviewers: list[LLMReviewer]
    arbitrator: Optional[LLMArbitrator]
    consensus_loop: ConsensusLoop
    test_runner: TestRunner
    plan_workflow: PlanWorkflow
    task_workflow: Optional[TaskWorkflow] = None
    remediation: Optional[RemediationLoop] = None
    milestone_workflow: Optional[MilestoneWorkflow] = None
    project_runner: Optional[ProjectRunner] = None


class ComponentFactory:
    """Factory for creating and wiring Concord components.

    Usage:
        bundle = ComponentFactory.create(project_dir=Path("."), api_key="sk-or-...")
        outcome = await bundle.consensus_loop.run(plan_text)
        await ComponentFactory.close(bundle)
    """

    @staticmethod
    def create(
        project_dir: Path,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        implementer: Optional[Implementer] = None,
        test_runner: Optional[TestRunner] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            project_dir: Project whose state the store owns.
            config_dir: Path to config/ directory. Default: repository config/.
            env: Environment name for config overlay (e.g., "test").
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY env var.
            implementer: Applies plans; without one no workflows are built.
            test_runner: Defaults to a ShellTestRunner on the configured command.
            progress_callback: Receives human-readable progress lines.

        Raises:
            ConfigError: No reviewer models are configured.
        """
        logger.info("Initializing components...")

        config = load_config(config_dir=config_dir, env=env)
        model_registry = load_model_registry(config_dir=config_dir)
        logger.info("Config loaded (%d model roles)", len(model_registry.roles))

        prompts = PromptLoader(config_dir / "prompts" if config_dir else None)
        llm_client = OpenRouterClient(
            config=config.llm, api_key=api_key, retry_policy=RetryPolicy.from_config(config.llm),
        )
        model_router = ModelRouter(model_registry)
        logger.info("LLM client configured (base_url=%s)", config.llm.base_url)

        reviewer_models = model_router.get_reviewer_models()
        if not reviewer_models:
            raise ConfigError("No reviewer models configured. Update config/models.yaml.")
        reviewers = [
            LLMReviewer(model, llm_client, config=config.consensus, prompt_loader=prompts,
                        reviewer_id=f"reviewer-{i}-{provider_of(model)}")
            for i, model in enumerate(reviewer_models, 1)
        ]

        arbitrator = None
        if config.consensus.enable_arbitration and "arbitrator" in model_registry.roles:
            arbitrator = LLMArbitrator(model_router.get_arbitrator_model(), llm_client, prompts)

        store = StateStore(project_dir, config.state)
        audit = AuditLog(Path(project_dir), config.audit, config.state)
        generator = LLMProposalGenerator(llm_client, model_router, prompts)
        consensus_loop = ConsensusLoop(
            reviewers,
            generator,
            config.consensus,
            arbitrator=arbitrator,
            store=store,
            prompt_loader=prompts,
            progress_callback=progress_callback,
        )
        runner = test_runner or ShellTestRunner(
            Path(project_dir), config.workflow.test_command, config.workflow.test_timeout_seconds,
        )

        bundle = ComponentBundle(
            config=config,
            model_registry=model_registry,
            llm_client=llm_client,
            model_router=model_router,
            store=store,
            audit=audit,
            generator=generator,
            reviewers=reviewers,
            arbitrator=arbitrator,
            consensus_loop=consensus_loop,
            test_runner=runner,
            plan_workflow=PlanWorkflow(store, generator, consensus_loop, audit, progress_callback),
        )

        if implementer is not None:
            bundle.remediation = RemediationLoop(
                store, generator, consensus_loop, implementer, audit, config.workflow, progress_callback,
            )
            bundle.task_workflow = TaskWorkflow(
                store, generator, consensus_loop, implementer, runner,
                config=config.workflow,
                audit=audit,
                remediation=bundle.remediation if config.workflow.enable_remediation else None,
                progress_callback=progress_callback,
            )
            bundle.milestone_workflow = MilestoneWorkflow(
                store, generator, consensus_loop, bundle.task_workflow, audit, progress_callback,
            )
            bundle.project_runner = ProjectRunner(store, bundle.milestone_workflow, audit)

        logger.info("All components initialized (%d reviewer(s))", len(reviewers))
        return bundle

    @staticmethod
    async def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        await bundle.llm_client.close()
        logger.info("All components shut down")
