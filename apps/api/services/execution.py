"""Prompt execution: estimate, balance check, provider call, debit, usage record."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.provider_usage import ProviderUsage
from services.credits import get_credit_balance, spend_credits
from services.errors import api_error
from services.pricing import (
    AVAILABLE_MODELS,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_MODELS,
    calculate_cost,
    estimate_cost,
    estimate_tokens,
)
from services.providers import ProviderName, ProviderUnavailableError, get_provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    response: str
    credits_spent: int
    tokens_input: int
    tokens_output: int
    provider: str
    model: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "credits_spent": self.credits_spent,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "provider": self.provider,
            "model": self.model,
        }


def resolve_llm_request(
    provider: Optional[str],
    model: Optional[str],
    prompt: Any,
) -> Tuple[ProviderName, str]:
    """Validate provider, model and prompt, returning the resolved pair."""
    provider_name = ProviderName.parse(provider)
    if provider_name is None:
        raise api_error(400, "INVALID_PROVIDER", "Invalid provider. Use: openai, anthropic, or gemini")

    available = AVAILABLE_MODELS[provider_name.value]
    if model:
        if model not in available:
            raise api_error(
                400,
                "INVALID_MODEL",
                f"Invalid model for {provider_name.value}. Available: {', '.join(available)}",
            )
        selected_model = model
    else:
        selected_model = DEFAULT_MODELS[provider_name.value]

    if not isinstance(prompt, str) or not prompt.strip():
        raise api_error(400, "INVALID_PROMPT", "Prompt is required")

    return provider_name, selected_model


def estimate_prompt_cost(
    *,
    provider: Optional[str],
    model: Optional[str],
    prompt: Any,
    max_tokens: Optional[int] = None,
) -> Dict[str, Any]:
    provider_name, selected_model = resolve_llm_request(provider, model, prompt)
    estimated = estimate_cost(selected_model, estimate_tokens(prompt), max_tokens or DEFAULT_MAX_OUTPUT_TOKENS)
    return {
        "estimated_credits": estimated,
        "provider": provider_name.value,
        "model": selected_model,
    }


async def _record_usage(
    user_id: str,
    db: AsyncSession,
    *,
    provider: ProviderName,
    model: str,
    credits_spent: int,
    tokens_input: int,
    tokens_output: int,
) -> None:
    db.add(
        ProviderUsage(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=provider.value,
            model=model,
            credits_spent=credits_spent,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
        )
    )
    await db.commit()


async def execute_prompt(
    user_id: str,
    db: AsyncSession,
    *,
    provider: Optional[str],
    model: Optional[str],
    prompt: Any,
    max_tokens: Optional[int] = None,
    system_prompt: Optional[str] = None,
) -> ExecutionResult:
    provider_name, selected_model = resolve_llm_request(provider, model, prompt)

    estimated = estimate_cost(selected_model, estimate_tokens(prompt), max_tokens or DEFAULT_MAX_OUTPUT_TOKENS)
    balance = await get_credit_balance(user_id, db)
    # Release the connection; nothing may stay checked out across the provider call.
    await db.commit()
    if balance < estimated:
        raise api_error(
            402,
            "INSUFFICIENT_CREDITS",
            f"Insufficient credits. Need {estimated}, have {balance}",
            required=estimated,
            balance=balance,
        )

    try:
        llm = get_provider(provider_name)
    except ProviderUnavailableError as exc:
        logger.error("Provider %s unavailable: %s", provider_name.value, exc)
        raise api_error(503, "PROVIDER_UNAVAILABLE", f"Provider {provider_name.value} is not configured") from exc

    try:
        result = await llm.execute(
            prompt,
            selected_model,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )
    except Exception as exc:
        logger.exception("Provider %s/%s execution failed for user %s", provider_name.value, selected_model, user_id)
        raise api_error(502, "PROVIDER_ERROR", "The upstream provider request failed") from exc

    actual = calculate_cost(selected_model, result.tokens_input, result.tokens_output)
    spend = await spend_credits(
        user_id,
        db,
        amount=actual,
        description=(
            f"{provider_name.value}/{selected_model}: "
            f"{result.tokens_input}+{result.tokens_output} tokens"
        ),
    )
    if not spend.success:
        # The generation already happened upstream; the operator absorbs it.
        logger.error(
            "Unbilled generation user=%s provider=%s model=%s credits=%s balance=%s",
            user_id,
            provider_name.value,
            selected_model,
            actual,
            spend.new_balance,
        )
        raise api_error(402, "INSUFFICIENT_CREDITS", "Failed to deduct credits", required=actual, balance=spend.new_balance)

    try:
        await _record_usage(
            user_id,
            db,
            provider=provider_name,
            model=selected_model,
            credits_spent=actual,
            tokens_input=result.tokens_input,
            tokens_output=result.tokens_output,
        )
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Usage record failed after billed execution for user %s", user_id)

    logger.info(
        "llm_execute user=%s provider=%s model=%s credits=%s tokens=%s+%s",
        user_id,
        provider_name.value,
        selected_model,
        actual,
        result.tokens_input,
        result.tokens_output,
    )
    return ExecutionResult(
        response=result.content,
        credits_spent=actual,
        tokens_input=result.tokens_input,
        tokens_output=result.tokens_output,
        provider=provider_name.value,
        model=result.model,
    )
