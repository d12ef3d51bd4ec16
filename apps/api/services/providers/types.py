"""LLM provider contracts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ProviderName"]:
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return None


class ProviderUnavailableError(RuntimeError):
    """Raised when a provider has no API key configured."""


@dataclass(frozen=True)
class ProviderResult:
    content: str
    tokens_input: int
    tokens_output: int
    model: str
