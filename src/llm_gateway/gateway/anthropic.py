"""Anthropic Messages API adapter.

Speaks ``POST {api_base}/v1/messages``. The system prompt is a top-level
field, tool calls and results travel as ``tool_use``/``tool_result`` content
blocks, and extended thinking is attached only for models that support it.
JSON mode has no Anthropic equivalent and is not sent.
"""

import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ..metadata.types import ModelDescriptor
from .base import AdapterCapabilities, ProviderKind
from .errors import MalformedStream
from .http import HttpProviderAdapter, request_id_from_headers
from .streaming import JsonSSEDecoder, StreamSink
from .types import (
    Finished,
    ImageContent,
    LlmRequest,
    LlmResponse,
    Role,
    StreamError,
    StreamEvent,
    TextContent,
    TextDelta,
    TokenUsage,
    ToolCallNormalized,
    ToolChoice,
    ToolDelta,
    ToolResultContent,
    Usage,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_PATH = "/v1/messages"
# Anthropic's minimum thinking budget
MIN_THINKING_BUDGET = 1024
THINKING_MODEL_MARKERS = ("thinking", "claude-3-7", "claude-3.7", "sonnet-4", "opus-4")

_TOOL_CHOICE = {
    ToolChoice.AUTO: {"type": "auto"},
    ToolChoice.REQUIRED: {"type": "any"},
    ToolChoice.NONE: {"type": "none"},
}


def anthropic_model_name(model_id: str) -> str:
    if model_id.startswith("anthropic/"):
        return model_id[len("anthropic/"):]
    return model_id


def supports_thinking(model: ModelDescriptor) -> bool:
    """Catalog metadata wins; otherwise fall back to the model family."""
    if model.capabilities.reasoning is not None:
        return model.capabilities.reasoning
    name = model.id.lower()
    return any(marker in name for marker in THINKING_MODEL_MARKERS)


def _image_block(image: ImageContent) -> Dict[str, Any]:
    if image.url.startswith("data:") and ";base64," in image.url:
        header, data = image.url.split(";base64,", 1)
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.mime_type or header[len("data:"):],
                "data": data,
            },
        }
    return {"type": "image", "source": {"type": "url", "url": image.url}}


def convert_messages_anthropic(request: LlmRequest) -> List[Dict[str, Any]]:
    """Convert canonical messages to Anthropic messages.

    Tool results become user messages; consecutive messages with the same
    role are merged since the API requires alternating roles.
    """
    messages: List[Dict[str, Any]] = []
    for message in request.messages:
        if message.role == Role.SYSTEM:
            # Extra system messages are folded into user text.
            role = "user"
        elif message.role == Role.ASSISTANT:
            role = "assistant"
        else:
            role = "user"

        blocks: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextContent):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageContent):
                blocks.append(_image_block(part))
            elif isinstance(part, ToolResultContent):
                block: Dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": part.call_id,
                    "content": part.content,
                }
                if part.is_error:
                    block["is_error"] = True
                blocks.append(block)
        for call in message.tool_calls:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.call_id,
                    "name": call.name,
                    "input": call.parsed_arguments(),
                }
            )
        if not blocks:
            continue

        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})
    return messages


def parse_anthropic_message(data: Dict[str, Any], provider: str, model_id: str) -> LlmResponse:
    texts: List[str] = []
    calls: List[ToolCallNormalized] = []
    for block in data.get("content") or []:
        block_type = block.get("type")
        if block_type == "text":
            texts.append(block.get("text", ""))
        elif block_type == "tool_use":
            try:
                calls.append(
                    ToolCallNormalized(
                        call_id=block.get("id") or f"toolu_{len(calls)}",
                        name=block.get("name") or "",
                        arguments=json.dumps(block.get("input") or {}),
                    )
                )
            except ValueError as e:
                raise MalformedStream(
                    f"Invalid tool_use block: {e}", provider=provider, model=model_id
                ) from e

    usage = None
    raw_usage = data.get("usage")
    if isinstance(raw_usage, dict):
        usage = TokenUsage.of(
            int(raw_usage.get("input_tokens") or 0),
            int(raw_usage.get("output_tokens") or 0),
        )
    return LlmResponse(
        text="".join(texts),
        tool_calls=tuple(calls),
        usage=usage,
        stop_reason=data.get("stop_reason"),
        request_id=data.get("id"),
        model=model_id,
        provider=provider,
        endpoint="messages",
    )


class AnthropicStreamDecoder(JsonSSEDecoder):
    """Decodes Messages API SSE events."""

    def __init__(self) -> None:
        super().__init__()
        # content block index -> tool_use id
        self._tool_ids: Dict[int, str] = {}
        self._stop_reason: Optional[str] = None

    def handle(self, data: Dict[str, Any]) -> List[StreamEvent]:
        event_type = data.get("type")

        if event_type == "message_start":
            message = data.get("message") or {}
            self.request_id = message.get("id")
            usage = message.get("usage") or {}
            if usage.get("input_tokens") is not None:
                return [Usage(input_tokens=usage["input_tokens"])]
            return []

        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            index = data.get("index", 0)
            if block.get("type") == "tool_use":
                call_id = block.get("id") or f"toolu_{index}"
                self._tool_ids[index] = call_id
                return [ToolDelta(call_id, block.get("name"), "")]
            if block.get("type") == "text" and block.get("text"):
                return [TextDelta(block["text"])]
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [TextDelta(delta.get("text", ""))]
            if delta_type == "input_json_delta":
                index = data.get("index", 0)
                call_id = self._tool_ids.get(index, f"toolu_{index}")
                return [ToolDelta(call_id, None, delta.get("partial_json", ""))]
            return []

        if event_type == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            usage = data.get("usage") or {}
            if usage.get("output_tokens") is not None:
                return [Usage(output_tokens=usage["output_tokens"])]
            return []

        if event_type == "message_stop":
            return [Finished(self._stop_reason)]

        if event_type == "error":
            error = data.get("error") or {}
            return [StreamError(error.get("message", "stream error"), error.get("type"))]

        return []


class AnthropicAdapter(HttpProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    kind = ProviderKind.ANTHROPIC

    @property
    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(supports_vision=True, supports_reasoning=True)

    @property
    def url(self) -> str:
        return f"{self.api_base.rstrip('/')}{MESSAGES_PATH}"

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def thinking_budget(self, model: ModelDescriptor, max_tokens: int) -> Optional[int]:
        """Thinking budget to send, or None to leave thinking off."""
        if not self._config.enable_thinking or not supports_thinking(model):
            return None
        if max_tokens <= MIN_THINKING_BUDGET:
            logger.debug(
                "Output budget %d too small for thinking on %s", max_tokens, model.id
            )
            return None
        budget = self._config.reasoning_budget_tokens or max(MIN_THINKING_BUDGET, max_tokens // 2)
        return max(MIN_THINKING_BUDGET, min(budget, max_tokens - 1))

    def build_payload(self, request: LlmRequest, model: ModelDescriptor, stream: bool) -> Dict[str, Any]:
        max_tokens = self.max_output_tokens(request)
        payload: Dict[str, Any] = {
            "model": anthropic_model_name(model.id),
            "messages": convert_messages_anthropic(request),
            "max_tokens": max_tokens,
        }
        if request.system:
            payload["system"] = request.system

        budget = self.thinking_budget(model, max_tokens)
        if budget is not None:
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
        else:
            temperature = self.temperature(request)
            if temperature is not None:
                payload["temperature"] = min(temperature, 1.0)
            if request.sampling.top_p is not None:
                payload["top_p"] = request.sampling.top_p

        if request.sampling.stop:
            payload["stop_sequences"] = list(request.sampling.stop)
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in request.tools
            ]
            payload["tool_choice"] = _TOOL_CHOICE[request.tool_choice]
        if stream:
            payload["stream"] = True
        return payload

    async def _complete(self, request: LlmRequest, model: ModelDescriptor) -> LlmResponse:
        payload = self.build_payload(request, model, stream=False)
        data, headers = await self._post_json(self.url, payload, self._headers(request), model.id)
        response = parse_anthropic_message(data, self.name, model.id)
        request_id = request_id_from_headers(headers)
        if request_id:
            response = replace(response, request_id=request_id)
        return response

    async def _complete_streaming(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        payload = self.build_payload(request, model, stream=True)
        response = await self._stream(
            self.url,
            payload,
            self._headers(request, stream=True),
            model,
            AnthropicStreamDecoder,
            sink,
        )
        return replace(response, endpoint="messages")
