"""Token-based credit pricing.

1 credit is roughly $0.001 of upstream inference cost. Rates are credits per
1K tokens and every computed cost is rounded up so usage is never undercharged.
"""

from __future__ import annotations

import math
from typing import Dict, List


COST_PER_1K_TOKENS: Dict[str, Dict[str, float]] = {
    # OpenAI GPT-5 series
    "gpt-5": {"input": 5, "output": 20},
    "gpt-5.1": {"input": 6, "output": 24},
    "gpt-5.1-instant": {"input": 2, "output": 8},
    "gpt-5.1-thinking": {"input": 12, "output": 48},
    "gpt-5.1-codex": {"input": 6, "output": 24},
    # OpenAI legacy
    "gpt-4o": {"input": 2.5, "output": 10},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "o3-mini": {"input": 1.1, "output": 4.4},
    # Anthropic Claude 4.5 series
    "claude-opus-4.5": {"input": 20, "output": 80},
    "claude-sonnet-4.5": {"input": 4, "output": 16},
    "claude-haiku-4.5": {"input": 1, "output": 4},
    # Anthropic legacy
    "claude-sonnet-4-20250514": {"input": 3, "output": 15},
    "claude-3-5-sonnet-20241022": {"input": 3, "output": 15},
    "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4},
    # Google Gemini 3 series
    "gemini-3": {"input": 3, "output": 12},
    "gemini-3-thinking": {"input": 8, "output": 32},
    # Google Gemini 2.5 series
    "gemini-2.5-pro": {"input": 2, "output": 8},
    "gemini-2.5-flash": {"input": 0.15, "output": 0.6},
    "gemini-2.5-flash-thinking": {"input": 0.5, "output": 2},
    # Google legacy
    "gemini-2.0-flash": {"input": 0.1, "output": 0.4},
    "gemini-1.5-pro": {"input": 1.25, "output": 5},
    "gemini-1.5-flash": {"input": 0.075, "output": 0.3},
}

UNKNOWN_MODEL_RATE_PER_1K = 2.0
DEFAULT_MAX_OUTPUT_TOKENS = 1000

DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-5.1",
    "anthropic": "claude-sonnet-4.5",
    "gemini": "gemini-3",
}

AVAILABLE_MODELS: Dict[str, List[str]] = {
    "openai": [
        "gpt-5.1",
        "gpt-5.1-thinking",
        "gpt-5.1-instant",
        "gpt-5.1-codex",
        "gpt-5",
        "gpt-4o",
        "gpt-4o-mini",
        "o3-mini",
    ],
    "anthropic": [
        "claude-opus-4.5",
        "claude-sonnet-4.5",
        "claude-haiku-4.5",
        "claude-sonnet-4-20250514",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
    ],
    "gemini": [
        "gemini-3",
        "gemini-3-thinking",
        "gemini-2.5-pro",
        "gemini-2.5-flash",
        "gemini-2.5-flash-thinking",
        "gemini-2.0-flash",
        "gemini-1.5-pro",
        "gemini-1.5-flash",
    ],
}


def estimate_tokens(text: str) -> int:
    """Cheap ~4 characters per token approximation for pre-flight checks."""
    return math.ceil(len(text or "") / 4)


def _ceil_credits(value: float) -> int:
    # Guard against float noise such as 1.3000000000000003 rounding up to 2.
    return math.ceil(round(value, 9))


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> int:
    input_tokens = max(int(input_tokens or 0), 0)
    output_tokens = max(int(output_tokens or 0), 0)
    rates = COST_PER_1K_TOKENS.get(model)
    if rates is None:
        return _ceil_credits((input_tokens + output_tokens) / 1000 * UNKNOWN_MODEL_RATE_PER_1K)

    input_cost = (input_tokens / 1000) * rates["input"]
    output_cost = (output_tokens / 1000) * rates["output"]
    return _ceil_credits(input_cost + output_cost)


def estimate_cost(model: str, prompt_tokens: int, max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS) -> int:
    """Worst-case cost assuming the full output budget is used."""
    return calculate_cost(model, prompt_tokens, max_output_tokens)
