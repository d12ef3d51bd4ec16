"""Concrete LLM providers behind one execute() capability.

Instances are created lazily per provider and reused for the process
lifetime. Transport and API errors are not caught here; the execution
orchestrator decides what they mean for billing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import anthropic
from google import genai
from google.genai import types as genai_types
from openai import AsyncOpenAI

from config import settings
from services.pricing import DEFAULT_MODELS, estimate_tokens
from services.providers.types import ProviderName, ProviderResult, ProviderUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_MAX_TOKENS = 2000


def _usable_key(api_key: Optional[str]) -> Optional[str]:
    """Treat blank and placeholder keys as missing."""
    key = (api_key or "").strip()
    if not key or "your_" in key or key == "test-key":
        return None
    return key


class BaseLLMProvider(ABC):
    name: ProviderName

    @abstractmethod
    async def execute(
        self,
        prompt: str,
        model: str,
        *,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        raise NotImplementedError


class OpenAIProvider(BaseLLMProvider):
    name = ProviderName.OPENAI

    def __init__(self, api_key: Optional[str] = None, client: Any = None) -> None:
        if client is None:
            key = _usable_key(api_key if api_key is not None else settings.OPENAI_API_KEY)
            if key is None:
                raise ProviderUnavailableError("OPENAI_API_KEY is not configured")
            client = AsyncOpenAI(api_key=key)
        self.client = client

    async def execute(
        self,
        prompt: str,
        model: str = DEFAULT_MODELS["openai"],
        *,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_completion_tokens=max_tokens or DEFAULT_PROVIDER_MAX_TOKENS,
        )

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        usage = response.usage
        return ProviderResult(
            content=content,
            tokens_input=int(getattr(usage, "prompt_tokens", 0) or 0),
            tokens_output=int(getattr(usage, "completion_tokens", 0) or 0),
            model=response.model or model,
        )


class AnthropicProvider(BaseLLMProvider):
    name = ProviderName.ANTHROPIC

    def __init__(self, api_key: Optional[str] = None, client: Any = None) -> None:
        if client is None:
            key = _usable_key(api_key if api_key is not None else settings.ANTHROPIC_API_KEY)
            if key is None:
                raise ProviderUnavailableError("ANTHROPIC_API_KEY is not configured")
            client = anthropic.AsyncAnthropic(api_key=key)
        self.client = client

    async def execute(
        self,
        prompt: str,
        model: str = DEFAULT_MODELS["anthropic"],
        *,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        request: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or DEFAULT_PROVIDER_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request["system"] = system_prompt

        response = await self.client.messages.create(**request)

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return ProviderResult(
            content=content,
            tokens_input=int(response.usage.input_tokens),
            tokens_output=int(response.usage.output_tokens),
            model=response.model or model,
        )


class GeminiProvider(BaseLLMProvider):
    name = ProviderName.GEMINI

    def __init__(self, api_key: Optional[str] = None, client: Any = None) -> None:
        if client is None:
            key = _usable_key(api_key if api_key is not None else settings.GOOGLE_AI_API_KEY)
            if key is None:
                raise ProviderUnavailableError("GOOGLE_AI_API_KEY is not configured")
            client = genai.Client(api_key=key)
        self.client = client

    async def execute(
        self,
        prompt: str,
        model: str = DEFAULT_MODELS["gemini"],
        *,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            max_output_tokens=max_tokens or DEFAULT_PROVIDER_MAX_TOKENS,
        )
        response = await self.client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=config,
        )
        content = response.text or ""

        # Gemini does not always report usage; fall back to the estimator.
        usage = response.usage_metadata
        prompt_tokens = getattr(usage, "prompt_token_count", None) if usage else None
        output_tokens = getattr(usage, "candidates_token_count", None) if usage else None
        if prompt_tokens is None or output_tokens is None:
            logger.warning("Gemini response for %s missing usage metadata; estimating tokens", model)
        return ProviderResult(
            content=content,
            tokens_input=int(prompt_tokens if prompt_tokens is not None else estimate_tokens(prompt)),
            tokens_output=int(output_tokens if output_tokens is not None else estimate_tokens(content)),
            model=model,
        )


_provider_cache: Dict[ProviderName, BaseLLMProvider] = {}


def get_provider(name: ProviderName) -> BaseLLMProvider:
    """Return the process-wide provider instance, constructing it on first use."""
    cached = _provider_cache.get(name)
    if cached is not None:
        return cached

    if name is ProviderName.OPENAI:
        provider: BaseLLMProvider = OpenAIProvider()
    elif name is ProviderName.ANTHROPIC:
        provider = AnthropicProvider()
    elif name is ProviderName.GEMINI:
        provider = GeminiProvider()
    else:
        raise ValueError(f"Unknown provider: {name}")

    _provider_cache[name] = provider
    return provider


def reset_provider_cache() -> None:
    _provider_cache.clear()
