"""Async text-completion client for the generation backend."""
from __future__ import annotations

import logging
import os
from typing import Any

log = logging.getLogger(__name__)

# Used when neither the caller nor LLM_PROVIDER names a backend.
DEFAULT_PROVIDER = "openai"

# provider -> (default model, API key env var)
PROVIDERS: dict[str, tuple[str, str]] = {
    "openai": ("gpt-4o-mini", "OPENAI_API_KEY"),
    "openai_compatible": ("gpt-4o-mini", "OPENAI_API_KEY"),
    "anthropic": ("claude-haiku-4-5-20251001", "ANTHROPIC_API_KEY"),
}


class LLMCallError(Exception):
    """LLM call failed or returned nothing usable."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI.

    ``complete`` returns the raw completion text. Parsing is left to
    ``tenderintel.decoder`` because the backend does not reliably emit
    well-formed JSON.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 2048,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", DEFAULT_PROVIDER)
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r} (expected one of {sorted(PROVIDERS)})")
        default_model, key_var = PROVIDERS[self.provider]
        self.model = self.model or default_model
        api_key = self._api_key or os.environ.get(key_var)
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=api_key)
        else:
            self._client = self._openai_client(api_key)
        log.debug("LLM backend: %s / %s", self.provider, self.model)

    def _openai_client(self, api_key: str | None) -> Any:
        import openai
        base_url = self._base_url or os.environ.get("OPENAI_BASE_URL")
        if self.provider == "openai_compatible" and not base_url:
            raise ValueError("openai_compatible provider needs a base URL (OPENAI_BASE_URL)")
        kwargs: dict[str, Any] = {}
        if api_key:
            kwargs["api_key"] = api_key
        if base_url:
            kwargs["base_url"] = base_url
        return openai.AsyncOpenAI(**kwargs)

    async def complete(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> str:
        """Send system+user message to the LLM, return the raw completion text."""
        limit = max_tokens or self.max_tokens
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=limit,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = "".join(getattr(block, "text", "") for block in response.content)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=limit,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        if not text.strip():
            raise LLMCallError("LLM returned an empty completion", retryable=True)
        return text
