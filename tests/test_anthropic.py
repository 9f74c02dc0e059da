"""Tests for the Anthropic Messages adapter."""

import httpx
import pytest

from conftest import Recorder, make_model, sse_body
from llm_gateway.gateway.anthropic import (
    AnthropicAdapter,
    AnthropicStreamDecoder,
    convert_messages_anthropic,
    supports_thinking,
)
from llm_gateway.gateway.errors import RateLimited
from llm_gateway.gateway.retry import NO_RETRY
from llm_gateway.gateway.types import (
    CanonicalMessage,
    Finished,
    ImageContent,
    LlmRequest,
    ResponseFormat,
    Role,
    TextContent,
    TextDelta,
    ToolCallNormalized,
    ToolChoice,
    ToolDelta,
    ToolResultContent,
    ToolSpec,
    Usage,
)
from llm_gateway.unified_config import ProviderConfig

MESSAGE = {
    "id": "msg_1",
    "type": "message",
    "content": [
        {"type": "text", "text": "Let me check."},
        {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "a.py"}},
    ],
    "stop_reason": "tool_use",
    "usage": {"input_tokens": 30, "output_tokens": 10},
}


def make_adapter(recorder, **config_overrides):
    config = ProviderConfig(provider_kind="anthropic", api_key="sk-ant-test", **config_overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return AnthropicAdapter(config, name="anthropic", client=client, retry_policy=NO_RETRY)


class TestMessageConversion:
    def test_tool_round_trip_and_role_merging(self):
        call = ToolCallNormalized("toolu_1", "read_file", '{"path": "a.py"}')
        request = LlmRequest(
            messages=(
                CanonicalMessage.text(Role.USER, "Read a.py"),
                CanonicalMessage(role=Role.ASSISTANT, content=(TextContent("ok"),), tool_calls=(call,)),
                CanonicalMessage.tool_result(ToolResultContent("toolu_1", "read_file", "print(1)")),
                CanonicalMessage.text(Role.USER, "Now explain"),
            )
        )
        messages = convert_messages_anthropic(request)
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][1] == {
            "type": "tool_use",
            "id": "toolu_1",
            "name": "read_file",
            "input": {"path": "a.py"},
        }
        assert messages[2]["content"][0]["type"] == "tool_result"
        assert messages[2]["content"][1] == {"type": "text", "text": "Now explain"}

    def test_error_result_and_images(self):
        request = LlmRequest(
            messages=(
                CanonicalMessage(
                    role=Role.USER,
                    content=(
                        ImageContent("data:image/png;base64,AAAA"),
                        ImageContent("https://example.com/cat.jpg"),
                    ),
                ),
                CanonicalMessage.tool_result(ToolResultContent("t1", "run", "boom", is_error=True)),
            )
        )
        blocks = convert_messages_anthropic(request)[0]["content"]
        assert blocks[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "AAAA"}
        assert blocks[1]["source"] == {"type": "url", "url": "https://example.com/cat.jpg"}
        assert blocks[2]["is_error"] is True

    def test_thinking_support(self):
        assert supports_thinking(make_model("anthropic/claude-sonnet-4", reasoning=None))
        assert not supports_thinking(make_model("anthropic/claude-3.5-haiku", reasoning=None))
        assert not supports_thinking(make_model("anthropic/claude-sonnet-4", reasoning=False))


class TestPayload:
    def test_system_tools_and_choice(self):
        adapter = make_adapter(Recorder(httpx.Response(200, json=MESSAGE)))
        request = LlmRequest.from_prompt(
            "x",
            system="be terse",
            tools=(ToolSpec("run", "Run"),),
            tool_choice=ToolChoice.REQUIRED,
            response_format=ResponseFormat.JSON,
        )
        payload = adapter.build_payload(request, make_model("anthropic/claude-3.5-haiku"), stream=False)
        assert payload["model"] == "claude-3.5-haiku"
        assert payload["system"] == "be terse"
        assert payload["tools"][0]["input_schema"] == {"type": "object", "properties": {}}
        assert payload["tool_choice"] == {"type": "any"}
        assert "response_format" not in payload
        assert payload["temperature"] == 0.7

    def test_thinking_enabled_drops_temperature(self):
        adapter = make_adapter(Recorder(httpx.Response(200, json=MESSAGE)), enable_thinking=True)
        request = LlmRequest.from_prompt("x", max_output_tokens=8000)
        payload = adapter.build_payload(request, make_model("anthropic/claude-sonnet-4", reasoning=True), stream=False)
        assert payload["thinking"] == {"type": "enabled", "budget_tokens": 4000}
        assert "temperature" not in payload

    def test_thinking_skipped_for_small_budget(self):
        adapter = make_adapter(Recorder(httpx.Response(200, json=MESSAGE)), enable_thinking=True)
        request = LlmRequest.from_prompt("x", max_output_tokens=1024)
        payload = adapter.build_payload(request, make_model("anthropic/claude-sonnet-4", reasoning=True), stream=False)
        assert "thinking" not in payload

    def test_thinking_skipped_for_unsupported_model(self):
        adapter = make_adapter(Recorder(httpx.Response(200, json=MESSAGE)), enable_thinking=True)
        request = LlmRequest.from_prompt("x", max_output_tokens=8000)
        payload = adapter.build_payload(request, make_model("anthropic/claude-3.5-haiku"), stream=False)
        assert "thinking" not in payload


class TestAnthropicAdapter:
    @pytest.mark.asyncio
    async def test_buffered_call(self):
        recorder = Recorder(httpx.Response(200, json=MESSAGE))
        adapter = make_adapter(recorder)

        response = await adapter.call(LlmRequest.from_prompt("x"), make_model("anthropic/claude-sonnet-4"))

        sent = recorder.requests[0]
        assert str(sent.url) == "https://api.anthropic.com/v1/messages"
        assert sent.headers["x-api-key"] == "sk-ant-test"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        assert "authorization" not in sent.headers
        assert response.text == "Let me check."
        assert response.tool_calls[0].parsed_arguments() == {"path": "a.py"}
        assert response.stop_reason == "tool_use"
        assert response.request_id == "msg_1"
        assert response.endpoint == "messages"
        assert response.usage.total_tokens == 40

    @pytest.mark.asyncio
    async def test_overloaded_maps_to_rate_limit(self):
        recorder = Recorder(
            httpx.Response(429, json={"type": "error", "error": {"type": "rate_limit_error", "message": "slow"}})
        )
        adapter = make_adapter(recorder)
        with pytest.raises(RateLimited):
            await adapter.call(LlmRequest.from_prompt("x"), make_model("anthropic/claude-sonnet-4"))

    @pytest.mark.asyncio
    async def test_streaming_tool_use(self):
        body = sse_body(
            {"type": "message_start", "message": {"id": "msg_s", "usage": {"input_tokens": 9}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Checking"}},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_9", "name": "read_file", "input": {}},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"path":'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ' "b.py"}'}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 12}},
            {"type": "message_stop"},
            done=False,
        )
        recorder = Recorder(httpx.Response(200, content=body))
        adapter = make_adapter(recorder)
        events = []

        response = await adapter.call_streaming(
            LlmRequest.from_prompt("x", tools=(ToolSpec("read_file"),)),
            make_model("anthropic/claude-sonnet-4"),
            events.append,
        )

        assert response.text == "Checking"
        assert response.tool_calls[0].call_id == "toolu_9"
        assert response.tool_calls[0].parsed_arguments() == {"path": "b.py"}
        assert response.stop_reason == "tool_use"
        assert response.usage.input_tokens == 9
        assert response.usage.output_tokens == 12
        assert response.request_id == "msg_s"
        assert isinstance(events[-1], Finished)


class TestAnthropicStreamDecoder:
    def test_error_event(self):
        decoder = AnthropicStreamDecoder()
        events = decoder.feed(
            sse_body({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}, done=False)
        )
        assert events[0].code == "overloaded_error"

    def test_usage_and_deltas(self):
        decoder = AnthropicStreamDecoder()
        events = decoder.feed(
            sse_body(
                {"type": "message_start", "message": {"id": "m", "usage": {"input_tokens": 1}}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "a"}},
                {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "t", "name": "n"}},
                done=False,
            )
        )
        assert events == [Usage(input_tokens=1), TextDelta("a"), ToolDelta("t", "n", "")]
