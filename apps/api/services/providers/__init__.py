"""LLM provider gateway."""

from .clients import (
    AnthropicProvider,
    BaseLLMProvider,
    GeminiProvider,
    OpenAIProvider,
    get_provider,
    reset_provider_cache,
)
from .types import ProviderName, ProviderResult, ProviderUnavailableError
