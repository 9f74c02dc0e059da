"""Tests for the OpenRouter passthrough adapter."""

import httpx
import pytest

from conftest import Recorder, make_model
from llm_gateway.gateway.endpoint_cache import CHAT_MAX_OUTPUT, RESPONSES_MAX_OUTPUT, EndpointCache
from llm_gateway.gateway.openrouter import OpenRouterAdapter
from llm_gateway.gateway.retry import NO_RETRY
from llm_gateway.gateway.types import LlmRequest
from llm_gateway.unified_config import ProviderConfig

COMPLETION = {
    "id": "gen-1",
    "choices": [{"message": {"content": "routed"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 5, "completion_tokens": 1},
}


def make_adapter(recorder, **config_overrides):
    config = ProviderConfig(provider_kind="openrouter", api_key="or-key", **config_overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return OpenRouterAdapter(
        config, name="openrouter", client=client, retry_policy=NO_RETRY, endpoint_cache=EndpointCache()
    )


class TestOpenRouterAdapter:
    """Full model ids, catalog token field, unified reasoning object."""

    @pytest.mark.asyncio
    async def test_full_model_id_and_headers(self):
        recorder = Recorder(httpx.Response(200, json=COMPLETION))
        adapter = make_adapter(recorder, headers={"HTTP-Referer": "https://example.com", "X-Title": "demo"})

        response = await adapter.call(LlmRequest.from_prompt("x"), make_model("anthropic/claude-sonnet-4"))

        sent = recorder.requests[0]
        assert str(sent.url) == "https://openrouter.ai/api/v1/chat/completions"
        assert sent.headers["http-referer"] == "https://example.com"
        assert sent.headers["x-title"] == "demo"
        assert recorder.payload()["model"] == "anthropic/claude-sonnet-4"
        assert response.text == "routed"
        assert response.provider == "openrouter"

    @pytest.mark.asyncio
    async def test_token_field_from_catalog(self):
        recorder = Recorder(httpx.Response(200, json=COMPLETION))
        adapter = make_adapter(recorder)
        await adapter.call(
            LlmRequest.from_prompt("x", max_output_tokens=300),
            make_model("google/gemini-2.0-flash-001", token_field="max_output_tokens"),
        )
        payload = recorder.payload()
        assert payload["max_output_tokens"] == 300
        assert "max_tokens" not in payload

    @pytest.mark.asyncio
    async def test_rejected_max_tokens_switches_to_max_output_tokens(self):
        recorder = Recorder(
            httpx.Response(400, json={"error": {"message": "Unsupported parameter: 'max_tokens'"}}),
            httpx.Response(200, json=COMPLETION),
        )
        adapter = make_adapter(recorder)
        response = await adapter.call(LlmRequest.from_prompt("x"), make_model("acme/new"))
        assert response.endpoint == "chat:max_output_tokens"
        assert adapter.endpoint_cache.get("openrouter", "acme/new") == CHAT_MAX_OUTPUT

    @pytest.mark.asyncio
    async def test_reasoning_object_for_reasoning_models(self):
        recorder = Recorder(httpx.Response(200, json=COMPLETION))
        adapter = make_adapter(recorder, enable_thinking=True, reasoning_budget_tokens=2000)
        await adapter.call(LlmRequest.from_prompt("x"), make_model("deepseek/deepseek-r1", reasoning=True))
        payload = recorder.payload()
        assert payload["reasoning"] == {"max_tokens": 2000}
        assert "reasoning_effort" not in payload
        assert payload["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_no_reasoning_for_plain_models(self):
        recorder = Recorder(httpx.Response(200, json=COMPLETION))
        adapter = make_adapter(recorder, reasoning_effort="high")
        await adapter.call(LlmRequest.from_prompt("x"), make_model("openai/gpt-4o-mini"))
        assert "reasoning" not in recorder.payload()

    @pytest.mark.asyncio
    async def test_shared_cache_ignores_other_providers_routes(self):
        recorder = Recorder(httpx.Response(200, json=COMPLETION))
        cache = EndpointCache()
        cache.remember("openai", "openai/o3", RESPONSES_MAX_OUTPUT)
        config = ProviderConfig(provider_kind="openrouter", api_key="or-key")
        adapter = OpenRouterAdapter(
            config,
            name="openrouter",
            client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
            retry_policy=NO_RETRY,
            endpoint_cache=cache,
        )

        response = await adapter.call(LlmRequest.from_prompt("x"), make_model("openai/o3"))

        assert str(recorder.requests[0].url).endswith("/chat/completions")
        assert "max_tokens" in recorder.payload()
        assert "max_output_tokens" not in recorder.payload()
        assert response.endpoint == "chat:max_tokens"
