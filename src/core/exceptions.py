"""Custom exception hierarchy for Concord.

All exceptions inherit from ConcordError so callers can catch broadly
or narrowly as needed.
"""


class ConcordError(Exception):
    """Base exception for all Concord errors."""


# ---------------------------------------------------------------------------
# LLM / providers
# ---------------------------------------------------------------------------

class LLMError(ConcordError):
    """Failed LLM operation."""


class TransientError(LLMError):
    """Retryable provider failure (rate limits, timeouts, 5xx)."""


class RateLimitError(TransientError):
    """Hit API rate limit."""


class ProviderTimeoutError(TransientError):
    """Provider did not answer within the configured bound."""


class AuthenticationError(LLMError):
    """Invalid API key or unauthorized."""


class ModelNotFoundError(LLMError):
    """Requested model not available."""


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

class ConsensusError(ConcordError):
    """Consensus loop failure."""


class ConsensusRoundError(ConsensusError):
    """A review round was aborted by a non-transient reviewer failure.

    The loop state up to the last completed round is already persisted,
    so the caller may fix the cause and resume the lineage.
    """

    def __init__(self, lineage_id: str, iteration: int, reason: str):
        self.lineage_id = lineage_id
        self.iteration = iteration
        self.reason = reason
        super().__init__(f"Consensus round {iteration} of '{lineage_id}' aborted: {reason}")


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateError(ConcordError):
    """Invalid project state operation."""


class StateNotFoundError(StateError):
    """No project state exists in the project directory."""


class StatePersistenceError(StateError):
    """Failed to write project state to disk."""


class InvalidTransitionError(StateError):
    """Illegal task status or project phase transition."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(ConcordError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(ConcordError):
    """Invalid or missing configuration."""
