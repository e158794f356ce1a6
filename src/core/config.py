"""Configuration loader for Concord.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from src.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class LLMConfig(BaseModel):
    provider: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    default_temperature: float = 0.3
    default_max_tokens: int = 4096
    timeout_seconds: int = 120
    provider_retries: int = 2
    provider_backoff_seconds: float = 5.0
    max_backoff_seconds: float = 60.0


class ConsensusConfig(BaseModel):
    threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    quorum: int = 1
    min_reviewers: int = 1
    max_disagreements: int = 5
    enable_arbitration: bool = True
    stuck_iterations: int = 3
    # Best weighted score a stalled lineage needs before it may escalate early
    arbitration_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    parallel_reviews: bool = False
    reviewer_timeout_seconds: float = 300.0
    consensus_timeout_seconds: float = 900.0
    # Reviewer score cutoffs used when converting a scalar review into a vote
    approve_cutoff: float = Field(default=0.95, ge=0.0, le=1.0)
    conditional_cutoff: float = Field(default=0.70, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_reviewer_counts(self) -> "ConsensusConfig":
        if self.min_reviewers < 0 or self.quorum < 0:
            raise ValueError("quorum and min_reviewers must be non-negative")
        if self.max_disagreements < 1:
            raise ValueError("max_disagreements must be at least 1")
        return self


class WorkflowConfig(BaseModel):
    max_test_retries: int = 3
    crash_failed_threshold: int = 20
    enable_remediation: bool = True
    max_remediation_attempts: int = 2
    failure_context_max_chars: int = 4000
    test_command: str = "pytest -q"
    test_timeout_seconds: int = 600


class StateConfig(BaseModel):
    dir_name: str = ".concord"
    state_file: str = "state.json"
    backups_to_keep: int = 5


class AuditConfig(BaseModel):
    docs_dir: str = "docs"
    workflow_log: str = "WORKFLOW_LOG.md"
    events_file: str = "events.jsonl"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Model registry (models.yaml)
# ---------------------------------------------------------------------------

class ModelRegistry(BaseModel):
    """Maps collaborator roles to OpenRouter model IDs."""
    roles: dict[str, str] = Field(default_factory=dict)
    fallbacks: dict[str, list[str]] = Field(default_factory=dict)
    reviewers: list[str] = Field(default_factory=list)

    def get_model(self, role: str) -> str:
        if role not in self.roles:
            raise ConfigError(f"No model configured for role '{role}'. Update config/models.yaml.")
        return self.roles[role]

    def get_fallback_models(self, role: str) -> list[str]:
        return list(self.fallbacks.get(role, []))


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _default_config_dir() -> Path:
    return Path(__file__).parent.parent.parent / "config"


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (CONCORD_STATE_DIR, ...)
    """
    if config_dir is None:
        config_dir = _default_config_dir()

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    state_dir = os.getenv("CONCORD_STATE_DIR")
    if state_dir:
        merged.setdefault("state", {})
        merged["state"]["dir_name"] = state_dir

    test_command = os.getenv("CONCORD_TEST_COMMAND")
    if test_command:
        merged.setdefault("workflow", {})
        merged["workflow"]["test_command"] = test_command

    try:
        return AppConfig(**merged)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_model_registry(config_dir: Optional[Path] = None) -> ModelRegistry:
    """Load the model registry from models.yaml."""
    if config_dir is None:
        config_dir = _default_config_dir()

    data = _load_yaml(config_dir / "models.yaml")
    return ModelRegistry(**data)


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt templates from config/prompts/ directory.

    Falls back to hardcoded defaults if the file doesn't exist, so prompt
    text can be iterated on without code changes.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = _default_config_dir() / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        """Load a prompt template by filename.

        Args:
            name: Filename within config/prompts/ (e.g. "reviewer_system.txt").
            default: Fallback text if file doesn't exist.

        Returns:
            Prompt text (stripped of leading/trailing whitespace).
        """
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text().strip()
        return default
