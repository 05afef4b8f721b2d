"""LLM service tests.

Uses mocks for the LiteLLM Router so no provider is called.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.app.core.errors import GenerationError
from src.app.services.llm import SUPPORT_MODEL_GROUP, LLMService


def _settings(**keys):
    values = {
        "ANTHROPIC_API_KEY": "",
        "OPENAI_API_KEY": "",
        "GEMINI_API_KEY": "",
        "LLM_TIMEOUT": 30,
        "LLM_MAX_RETRIES": 2,
    }
    values.update(keys)
    return SimpleNamespace(**values)


def _response(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.model = "claude-sonnet-4-20250514"
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 15
    response.usage.total_tokens = 25
    return response


def _service(**keys):
    with (
        patch("src.app.services.llm.get_settings", return_value=_settings(**keys)),
        patch("src.app.services.llm.Router") as router_cls,
    ):
        service = LLMService()
    return service, router_cls


# ── Router Configuration ─────────────────────────────────────────────────────


def test_no_keys_means_unavailable():
    service, router_cls = _service()
    assert service.available is False
    router_cls.assert_not_called()


def test_configured_providers_share_one_model_group():
    service, router_cls = _service(ANTHROPIC_API_KEY="sk-ant", OPENAI_API_KEY="sk-oai")

    assert service.available is True
    model_list = router_cls.call_args.kwargs["model_list"]
    assert [m["model_name"] for m in model_list] == [SUPPORT_MODEL_GROUP, SUPPORT_MODEL_GROUP]
    assert model_list[0]["litellm_params"]["model"].startswith("anthropic/")
    assert model_list[1]["litellm_params"]["model"].startswith("openai/")


# ── Generation ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_generate_returns_stripped_text():
    service, _ = _service(ANTHROPIC_API_KEY="sk-ant")
    service.router.acompletion = AsyncMock(return_value=_response("  Hello there!\n"))

    assert await service.generate("prompt text") == "Hello there!"
    call = service.router.acompletion.call_args.kwargs
    assert call["model"] == SUPPORT_MODEL_GROUP
    assert call["messages"] == [{"role": "user", "content": "prompt text"}]


@pytest.mark.asyncio
async def test_generate_rejects_empty_output():
    service, _ = _service(ANTHROPIC_API_KEY="sk-ant")
    service.router.acompletion = AsyncMock(return_value=_response("   "))

    with pytest.raises(GenerationError):
        await service.generate("prompt")


@pytest.mark.asyncio
async def test_provider_failure_becomes_generation_error():
    service, _ = _service(ANTHROPIC_API_KEY="sk-ant")
    service.router.acompletion = AsyncMock(side_effect=RuntimeError("rate limited"))

    with pytest.raises(GenerationError):
        await service.generate("prompt")


@pytest.mark.asyncio
async def test_generate_without_keys_raises():
    service, _ = _service()
    with pytest.raises(GenerationError):
        await service.generate("prompt")
