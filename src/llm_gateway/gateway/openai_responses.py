"""OpenAI Responses API adapter.

Reasoning-family models (o1, o3, o4, gpt-5, codex) are served through
``POST {api_base}/responses`` when ``use_responses_api`` is on; every other
model goes through the Chat Completions path inherited from
OpenAIChatAdapter.

Route switching on a rejected output-token field:

    chat/max_tokens            -> responses/max_output_tokens  (responses on)
    chat/max_tokens            -> chat/max_completion_tokens   (responses off)
    responses/max_output_tokens -> responses/max_completion_tokens
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..metadata.types import ModelDescriptor
from .base import ProviderKind
from .endpoint_cache import (
    CHAT_MAX_TOKENS,
    RESPONSES_MAX_COMPLETION,
    RESPONSES_MAX_OUTPUT,
    EndpointRoute,
)
from .errors import MalformedStream
from .http import request_id_from_headers
from .openai_chat import OpenAIChatAdapter, apply_sampling
from .streaming import JsonSSEDecoder
from .types import (
    Finished,
    ImageContent,
    LlmRequest,
    LlmResponse,
    ResponseFormat,
    Role,
    StreamError,
    StreamEvent,
    TextContent,
    TextDelta,
    TokenUsage,
    ToolCallNormalized,
    ToolDelta,
    ToolResultContent,
    Usage,
)

logger = logging.getLogger(__name__)

RESPONSES_FAMILIES = ("o1", "o3", "o4", "gpt-5", "codex")


def prefers_responses_api(model_name: str) -> bool:
    name = model_name.lower()
    if "codex" in name:
        return True
    return any(name == family or name.startswith(family + "-") for family in RESPONSES_FAMILIES)


def is_o1_family(model_name: str) -> bool:
    name = model_name.lower()
    return name == "o1" or name.startswith("o1-")


def convert_input_items(request: LlmRequest) -> List[Dict[str, Any]]:
    """Convert canonical messages to Responses ``input`` items."""
    items: List[Dict[str, Any]] = []
    for message in request.messages:
        if message.role == Role.TOOL:
            for part in message.content:
                if isinstance(part, ToolResultContent):
                    items.append(
                        {
                            "type": "function_call_output",
                            "call_id": part.call_id,
                            "output": part.content,
                        }
                    )
            continue

        text_type = "output_text" if message.role == Role.ASSISTANT else "input_text"
        content = []
        for part in message.content:
            if isinstance(part, TextContent):
                content.append({"type": text_type, "text": part.text})
            elif isinstance(part, ImageContent):
                content.append({"type": "input_image", "image_url": part.url})
        if content:
            items.append({"role": message.role.value, "content": content})

        for call in message.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": call.call_id,
                    "name": call.name,
                    "arguments": call.arguments,
                }
            )
    return items


def build_responses_payload(
    request: LlmRequest,
    model_name: str,
    token_field: str,
    max_output_tokens: int,
    temperature: Optional[float],
    reasoning_effort: Optional[str] = None,
    stream: bool = False,
) -> Dict[str, Any]:
    """Build a Responses API request body."""
    payload: Dict[str, Any] = {
        "model": model_name,
        "input": convert_input_items(request),
        token_field: max_output_tokens,
    }
    if request.system:
        payload["instructions"] = request.system
    apply_sampling(payload, request, temperature)
    # The Responses API has no stop/seed/penalty parameters.
    for unsupported in ("stop", "seed", "frequency_penalty", "presence_penalty"):
        payload.pop(unsupported, None)
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
                "strict": tool.strict,
            }
            for tool in request.tools
        ]
        payload["tool_choice"] = request.tool_choice.value
    if request.response_format == ResponseFormat.JSON:
        payload["text"] = {"format": {"type": "json_object"}}
    if reasoning_effort:
        payload["reasoning"] = {"effort": reasoning_effort}
    if stream:
        payload["stream"] = True
    return payload


def _stop_reason(response: Dict[str, Any], has_tool_calls: bool) -> Optional[str]:
    status = response.get("status")
    if status == "incomplete":
        details = response.get("incomplete_details") or {}
        return details.get("reason") or "incomplete"
    if has_tool_calls:
        return "tool_calls"
    if status == "completed":
        return "stop"
    return status


def _usage(raw: Any) -> Optional[TokenUsage]:
    if not isinstance(raw, dict):
        return None
    return TokenUsage.of(int(raw.get("input_tokens") or 0), int(raw.get("output_tokens") or 0))


def parse_responses_output(
    data: Dict[str, Any],
) -> Tuple[str, Tuple[ToolCallNormalized, ...], Optional[TokenUsage], Optional[str]]:
    """Extract (text, tool_calls, usage, stop_reason) from a Responses body."""
    texts: List[str] = []
    calls: List[ToolCallNormalized] = []
    for item in data.get("output") or []:
        item_type = item.get("type")
        if item_type == "message":
            for part in item.get("content") or []:
                if part.get("type") == "output_text":
                    texts.append(part.get("text", ""))
        elif item_type == "function_call":
            try:
                calls.append(
                    ToolCallNormalized(
                        call_id=item.get("call_id") or item.get("id") or f"call_{len(calls)}",
                        name=item.get("name") or "",
                        arguments=item.get("arguments") or "{}",
                    )
                )
            except ValueError as e:
                raise MalformedStream(f"Invalid function call in response: {e}") from e
    return "".join(texts), tuple(calls), _usage(data.get("usage")), _stop_reason(data, bool(calls))


class OpenAIResponsesStreamDecoder(JsonSSEDecoder):
    """Decodes Responses API typed SSE events."""

    def __init__(self) -> None:
        super().__init__()
        # output item id -> function call id
        self._call_ids: Dict[str, str] = {}
        self._has_calls = False

    def handle(self, data: Dict[str, Any]) -> List[StreamEvent]:
        event_type = data.get("type", "")
        response = data.get("response") or {}

        if event_type == "response.created":
            self.request_id = response.get("id") or self.request_id
            return []
        if event_type == "response.output_text.delta":
            return [TextDelta(data.get("delta", ""))] if data.get("delta") else []
        if event_type == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") != "function_call":
                return []
            call_id = item.get("call_id") or item.get("id") or f"call_{len(self._call_ids)}"
            self._call_ids[item.get("id", call_id)] = call_id
            self._has_calls = True
            return [ToolDelta(call_id, item.get("name"), item.get("arguments") or "")]
        if event_type == "response.function_call_arguments.delta":
            item_id = data.get("item_id", "")
            call_id = self._call_ids.get(item_id, item_id)
            return [ToolDelta(call_id, None, data.get("delta", ""))]
        if event_type in ("response.completed", "response.incomplete"):
            self.request_id = response.get("id") or self.request_id
            events: List[StreamEvent] = []
            usage = _usage(response.get("usage"))
            if usage is not None:
                events.append(Usage(usage.input_tokens, usage.output_tokens))
            events.append(Finished(_stop_reason(response, self._has_calls)))
            return events
        if event_type == "response.failed":
            error = response.get("error") or {}
            return [StreamError(error.get("message", "response failed"), error.get("code"))]
        if event_type == "error":
            return [StreamError(data.get("message", "stream error"), data.get("code"))]
        return []


class OpenAIResponsesAdapter(OpenAIChatAdapter):
    """OpenAI adapter that prefers ``/responses`` for reasoning families."""

    kind = ProviderKind.OPENAI_RESPONSES

    @property
    def responses_enabled(self) -> bool:
        return self._config.use_responses_api or self._config.provider_kind == "openai_responses"

    def default_route(self, model: ModelDescriptor) -> EndpointRoute:
        name = self.model_name(model)
        if self.responses_enabled and prefers_responses_api(name):
            return RESPONSES_MAX_COMPLETION if is_o1_family(name) else RESPONSES_MAX_OUTPUT
        return super().default_route(model)

    def alternate_route(self, route: EndpointRoute, model: ModelDescriptor) -> Optional[EndpointRoute]:
        if route == CHAT_MAX_TOKENS and self.responses_enabled:
            return RESPONSES_MAX_OUTPUT
        if route == RESPONSES_MAX_OUTPUT:
            return RESPONSES_MAX_COMPLETION
        if route == RESPONSES_MAX_COMPLETION:
            return RESPONSES_MAX_OUTPUT
        return super().alternate_route(route, model)

    def build_payload(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        route: EndpointRoute,
        stream: bool,
    ) -> Dict[str, Any]:
        if route.endpoint != "responses":
            return super().build_payload(request, model, route, stream)
        return build_responses_payload(
            request,
            self.model_name(model),
            route.token_field,
            self.max_output_tokens(request),
            self.sampling_temperature(request, model),
            reasoning_effort=self.reasoning_effort(model),
            stream=stream,
        )

    def url_for(self, route: EndpointRoute) -> str:
        if route.endpoint == "responses":
            return f"{self.api_base.rstrip('/')}/responses"
        return super().url_for(route)

    def parse_response(
        self,
        data: Dict[str, Any],
        headers: httpx.Headers,
        model: ModelDescriptor,
        route: EndpointRoute,
    ) -> LlmResponse:
        if route.endpoint != "responses":
            return super().parse_response(data, headers, model, route)
        try:
            text, calls, usage, stop_reason = parse_responses_output(data)
        except MalformedStream as e:
            e.provider, e.model = self.name, model.id
            raise
        return LlmResponse(
            text=text,
            tool_calls=calls,
            usage=usage,
            stop_reason=stop_reason,
            request_id=request_id_from_headers(headers) or data.get("id"),
            model=model.id,
            provider=self.name,
            endpoint=route.key(),
        )

    def decoder_for(self, route: EndpointRoute) -> JsonSSEDecoder:
        if route.endpoint == "responses":
            return OpenAIResponsesStreamDecoder()
        return super().decoder_for(route)
