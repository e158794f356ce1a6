"""OpenRouter LLM client for Concord.

Async httpx client for an OpenAI-compatible chat endpoint. Status codes
are mapped onto the exception taxonomy; rate limits, timeouts and server
errors are transient and retried according to a RetryPolicy.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from src.core.config import LLMConfig
from src.core.exceptions import (
    AuthenticationError,
    LLMError,
    ModelNotFoundError,
    ProviderTimeoutError,
    RateLimitError,
    TransientError,
)
from src.llm.retry import RetryPolicy, retry_async

logger = logging.getLogger("concord.llm")


class LLMMessage:
    """A single message in a conversation."""

    def __init__(self, role: str, content: str):
        self.role = role
        self.content = content

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMResponse:
    """Parsed response from the LLM."""

    def __init__(
        self,
        content: str,
        model: str,
        tokens_used: int = 0,
        raw: Optional[dict] = None,
    ):
        self.content = content
        self.model = model
        self.tokens_used = tokens_used
        self.raw = raw or {}


class OpenRouterClient:
    """Async HTTP client for OpenRouter's OpenAI-compatible API.

    Model IDs come from config/models.yaml via ModelRouter; this client
    never hardcodes them.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        api_key: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config or LLMConfig()
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.base_url = self.config.base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    async def complete(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send a chat completion request, retrying transient failures.

        Raises:
            AuthenticationError: Missing or rejected API key.
            ModelNotFoundError: Unknown model ID.
            TransientError: Rate limit / timeout / 5xx persisted past the retry policy.
            LLMError: Any other failure.
        """
        if not self.api_key:
            raise AuthenticationError("OPENROUTER_API_KEY not set")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature if temperature is not None else self.config.default_temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "Concord",
        }

        return await retry_async(
            lambda: self._request_once(payload, headers),
            self.retry_policy,
            label=f"completion ({model})",
        )

    async def complete_with_fallback(
        self,
        messages: list[LLMMessage],
        models: list[str],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Try a model chain in order, retrying each model before failing over.

        Authentication errors abort immediately. When every model fails with
        a transient error the last one is re-raised so callers still see a
        retryable failure.
        """
        chain: list[str] = []
        for model in models:
            if model and model not in chain:
                chain.append(model)
        if not chain:
            raise LLMError("No models provided for completion")

        failures: list[str] = []
        last_transient: Optional[TransientError] = None
        for model in chain:
            try:
                return await self.complete(messages, model, temperature, max_tokens)
            except AuthenticationError:
                raise
            except TransientError as e:
                last_transient = e
                failures.append(f"{model}: {e}")
            except LLMError as e:
                failures.append(f"{model}: {e}")
            logger.warning("Model '%s' failed, trying next fallback", model)

        if last_transient is not None and len(failures) == len(chain):
            raise last_transient
        raise LLMError("All models failed.\n" + "\n".join(failures))

    async def _request_once(self, payload: dict, headers: dict) -> LLMResponse:
        try:
            resp = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Network error: {e}") from e

        if resp.status_code == 401:
            raise AuthenticationError("Invalid API key")
        if resp.status_code == 404:
            raise ModelNotFoundError(f"Model not found: {payload.get('model')}")
        if resp.status_code == 429:
            raise RateLimitError("Rate limited by provider")
        if resp.status_code >= 500:
            raise TransientError(f"Server error {resp.status_code}")
        if resp.status_code >= 400:
            raise LLMError(f"Request rejected with status {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Malformed completion response: {e}") from e

        model = data.get("model", payload.get("model", "unknown"))
        tokens = data.get("usage", {}).get("total_tokens", 0)
        logger.debug("LLM response: model=%s tokens=%d", model, tokens)
        return LLMResponse(content=content or "", model=model, tokens_used=tokens, raw=data)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
