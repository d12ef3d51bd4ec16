from types import SimpleNamespace

import pytest

from config import settings
from services.providers import (
    AnthropicProvider,
    GeminiProvider,
    OpenAIProvider,
    ProviderName,
    ProviderUnavailableError,
    get_provider,
)


class _Recorder:
    """Async callable that records kwargs and returns a canned response."""

    def __init__(self, response):
        self.response = response
        self.calls = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


def test_provider_names_parse_case_insensitively():
    assert ProviderName.parse("OpenAI") is ProviderName.OPENAI
    assert ProviderName.parse(" gemini ") is ProviderName.GEMINI
    assert ProviderName.parse("mistral") is None
    assert ProviderName.parse(None) is None


def test_get_provider_constructs_once_per_process(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-unit-test")

    first = get_provider(ProviderName.OPENAI)
    second = get_provider(ProviderName.OPENAI)

    assert isinstance(first, OpenAIProvider)
    assert first is second


@pytest.mark.parametrize("api_key", ["", "   ", "your_anthropic_key_here", "test-key"])
def test_missing_or_placeholder_key_is_unavailable(monkeypatch, api_key):
    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", api_key)

    with pytest.raises(ProviderUnavailableError):
        get_provider(ProviderName.ANTHROPIC)


@pytest.mark.asyncio
async def test_openai_provider_reports_usage_and_system_prompt():
    create = _Recorder(
        SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="pong"))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
            model="gpt-5.1-2025-11-13",
        )
    )
    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    result = await OpenAIProvider(client=client).execute("ping", "gpt-5.1", system_prompt="terse")

    assert result.content == "pong"
    assert (result.tokens_input, result.tokens_output) == (12, 3)
    assert result.model == "gpt-5.1-2025-11-13"
    assert create.calls[0]["messages"][0] == {"role": "system", "content": "terse"}
    assert create.calls[0]["max_completion_tokens"] == 2000


@pytest.mark.asyncio
async def test_anthropic_provider_joins_text_blocks_and_omits_empty_system():
    create = _Recorder(
        SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Hello "),
                SimpleNamespace(type="tool_use", name="noop"),
                SimpleNamespace(type="text", text="world"),
            ],
            usage=SimpleNamespace(input_tokens=500, output_tokens=200),
            model="claude-haiku-4.5",
        )
    )
    client = SimpleNamespace(messages=SimpleNamespace(create=create))

    result = await AnthropicProvider(client=client).execute("hi", "claude-haiku-4.5", max_tokens=64)

    assert result.content == "Hello world"
    assert (result.tokens_input, result.tokens_output) == (500, 200)
    assert "system" not in create.calls[0]
    assert create.calls[0]["max_tokens"] == 64


@pytest.mark.asyncio
async def test_gemini_provider_reads_usage_metadata():
    generate = _Recorder(
        SimpleNamespace(
            text="answer",
            usage_metadata=SimpleNamespace(prompt_token_count=40, candidates_token_count=9),
        )
    )
    client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate)))

    result = await GeminiProvider(client=client).execute("question", "gemini-2.5-flash", system_prompt="be nice")

    assert result.content == "answer"
    assert (result.tokens_input, result.tokens_output) == (40, 9)
    assert result.model == "gemini-2.5-flash"
    assert generate.calls[0]["config"].system_instruction == "be nice"


@pytest.mark.asyncio
async def test_gemini_provider_estimates_tokens_without_usage_metadata():
    generate = _Recorder(SimpleNamespace(text="x" * 40, usage_metadata=None))
    client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate)))

    result = await GeminiProvider(client=client).execute("y" * 10, "gemini-2.5-flash")

    assert (result.tokens_input, result.tokens_output) == (3, 10)
