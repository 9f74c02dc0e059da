"""OpenAI Chat Completions adapter.

Speaks ``POST {api_base}/chat/completions`` in buffered and SSE modes. The
output-token field starts as ``max_tokens`` (or whatever the catalog says the
model expects); if the provider rejects it, the call is retried once with
``max_completion_tokens`` and the working route is cached per model.

The payload builders and the stream decoder are module-level so the
OpenRouter and mock adapters reuse them.
"""

import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ..metadata.types import ModelDescriptor
from ..observability import GatewayEventType, emit_gateway_event
from ..unified_config import ProviderConfig
from .base import AdapterCapabilities, ProviderKind
from .endpoint_cache import (
    CHAT_MAX_COMPLETION,
    CHAT_MAX_TOKENS,
    EndpointCache,
    EndpointRoute,
)
from .errors import InvalidParameters, MalformedStream
from .http import HttpProviderAdapter, request_id_from_headers
from .retry import RetryPolicy
from .streaming import DEFAULT_OVERALL_CEILING_MS, JsonSSEDecoder, StreamSink
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
    ToolSpec,
    Usage,
)

logger = logging.getLogger(__name__)

REASONING_FAMILIES = ("o1", "o3", "o4", "gpt-5")


def openai_model_name(model_id: str) -> str:
    """Strip the ``openai/`` vendor prefix used by the catalog."""
    if model_id.startswith("openai/"):
        return model_id[len("openai/"):]
    return model_id


def is_reasoning_model(model: ModelDescriptor) -> bool:
    """True when catalog metadata or the model family says it reasons."""
    if model.capabilities.reasoning is not None:
        return model.capabilities.reasoning
    name = openai_model_name(model.id).lower()
    return any(name == family or name.startswith(family + "-") for family in REASONING_FAMILIES)


# =============================================================================
# Payload conversion
# =============================================================================


def convert_messages_openai(request: LlmRequest) -> List[Dict[str, Any]]:
    """Convert canonical messages to Chat Completions messages."""
    messages: List[Dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})

    for message in request.messages:
        if message.role == Role.TOOL:
            for part in message.content:
                if isinstance(part, ToolResultContent):
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": part.call_id,
                            "content": part.content,
                        }
                    )
            continue

        images = [p for p in message.content if isinstance(p, ImageContent)]
        if images:
            content: Any = []
            for part in message.content:
                if isinstance(part, TextContent):
                    content.append({"type": "text", "text": part.text})
                elif isinstance(part, ImageContent):
                    content.append({"type": "image_url", "image_url": {"url": part.url}})
        else:
            content = message.text_content()

        entry: Dict[str, Any] = {"role": message.role.value, "content": content}
        if message.tool_calls:
            entry["content"] = content or None
            entry["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        messages.append(entry)
    return messages


def convert_tools_openai(tools: Tuple[ToolSpec, ...]) -> List[Dict[str, Any]]:
    converted = []
    for tool in tools:
        function: Dict[str, Any] = {"name": tool.name, "parameters": tool.parameters}
        if tool.description:
            function["description"] = tool.description
        if tool.strict:
            function["strict"] = True
        converted.append({"type": "function", "function": function})
    return converted


def apply_sampling(payload: Dict[str, Any], request: LlmRequest, temperature: Optional[float]) -> None:
    sampling = request.sampling
    if temperature is not None:
        payload["temperature"] = temperature
    if sampling.top_p is not None:
        payload["top_p"] = sampling.top_p
    if sampling.stop:
        payload["stop"] = list(sampling.stop)
    if sampling.seed is not None:
        payload["seed"] = sampling.seed
    if sampling.frequency_penalty is not None:
        payload["frequency_penalty"] = sampling.frequency_penalty
    if sampling.presence_penalty is not None:
        payload["presence_penalty"] = sampling.presence_penalty


def build_chat_payload(
    request: LlmRequest,
    model_name: str,
    token_field: str,
    max_output_tokens: int,
    temperature: Optional[float],
    stream: bool = False,
) -> Dict[str, Any]:
    """Build a Chat Completions request body.

    Args:
        request: Canonical request
        model_name: Model name as the upstream knows it
        token_field: Output-token field name to send
        max_output_tokens: Effective output budget
        temperature: Sampling temperature, or None to omit
        stream: Whether to request SSE streaming

    Returns:
        JSON-serializable payload
    """
    payload: Dict[str, Any] = {
        "model": model_name,
        "messages": convert_messages_openai(request),
        token_field: max_output_tokens,
    }
    apply_sampling(payload, request, temperature)
    if request.tools:
        payload["tools"] = convert_tools_openai(request.tools)
        payload["tool_choice"] = request.tool_choice.value
    if request.response_format == ResponseFormat.JSON:
        payload["response_format"] = {"type": "json_object"}
    if stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
    return payload


def parse_chat_completion(
    data: Dict[str, Any],
) -> Tuple[str, Tuple[ToolCallNormalized, ...], Optional[TokenUsage], Optional[str]]:
    """Extract (text, tool_calls, usage, stop_reason) from a completion body."""
    choices = data.get("choices") or []
    if not choices:
        raise MalformedStream("Completion response has no choices")
    choice = choices[0]
    message = choice.get("message") or {}

    content = message.get("content")
    if isinstance(content, list):
        text = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    else:
        text = content or ""

    calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        try:
            calls.append(
                ToolCallNormalized(
                    call_id=raw.get("id") or f"call_{len(calls)}",
                    name=function.get("name") or "",
                    arguments=function.get("arguments") or "{}",
                )
            )
        except ValueError as e:
            raise MalformedStream(f"Invalid tool call in response: {e}") from e

    usage = None
    raw_usage = data.get("usage")
    if isinstance(raw_usage, dict):
        usage = TokenUsage.of(
            int(raw_usage.get("prompt_tokens") or 0),
            int(raw_usage.get("completion_tokens") or 0),
        )
    return text, tuple(calls), usage, choice.get("finish_reason")


class OpenAIChatStreamDecoder(JsonSSEDecoder):
    """Decodes Chat Completions SSE chunks.

    Tool-call fragments are keyed by their ``index``; the first fragment
    carries the call id and function name.
    """

    def __init__(self) -> None:
        super().__init__()
        self._call_ids: Dict[int, str] = {}
        self._finish_reason: Optional[str] = None
        self._done = False

    def handle(self, data: Dict[str, Any]) -> List[StreamEvent]:
        if "error" in data:
            error = data["error"]
            if isinstance(error, dict):
                code = error.get("code") or error.get("type")
                return [StreamError(str(error.get("message", error)), str(code) if code else None)]
            return [StreamError(str(error))]

        if self.request_id is None and data.get("id"):
            self.request_id = data["id"]

        events: List[StreamEvent] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(TextDelta(delta["content"]))
            for fragment in delta.get("tool_calls") or []:
                index = fragment.get("index", 0)
                if index not in self._call_ids:
                    self._call_ids[index] = fragment.get("id") or f"call_{index}"
                function = fragment.get("function") or {}
                events.append(
                    ToolDelta(
                        call_id=self._call_ids[index],
                        name=function.get("name"),
                        partial_arguments=function.get("arguments") or "",
                    )
                )
            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]

        usage = data.get("usage")
        if isinstance(usage, dict):
            events.append(
                Usage(
                    input_tokens=usage.get("prompt_tokens"),
                    output_tokens=usage.get("completion_tokens"),
                )
            )
        return events

    def handle_done(self) -> List[StreamEvent]:
        self._done = True
        return [Finished(self._finish_reason)]

    def close(self) -> List[StreamEvent]:
        events = super().close()
        if not self._done and self._finish_reason is not None:
            events.append(Finished(self._finish_reason))
        return events


# =============================================================================
# Adapter
# =============================================================================


RouteRunner = Callable[[EndpointRoute], Awaitable[LlmResponse]]


class OpenAIChatAdapter(HttpProviderAdapter):
    """Adapter for OpenAI-compatible ``/chat/completions`` endpoints."""

    kind = ProviderKind.OPENAI_CHAT

    def __init__(
        self,
        config: ProviderConfig,
        name: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        overall_ceiling_ms: int = DEFAULT_OVERALL_CEILING_MS,
        endpoint_cache: Optional[EndpointCache] = None,
    ):
        super().__init__(
            config,
            name=name,
            api_key=api_key,
            client=client,
            retry_policy=retry_policy,
            overall_ceiling_ms=overall_ceiling_ms,
        )
        self._endpoint_cache = endpoint_cache or EndpointCache()

    @property
    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_vision=True,
            supports_json_mode=True,
            supports_reasoning=True,
        )

    @property
    def endpoint_cache(self) -> EndpointCache:
        return self._endpoint_cache

    def model_name(self, model: ModelDescriptor) -> str:
        return openai_model_name(model.id)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def default_route(self, model: ModelDescriptor) -> EndpointRoute:
        if model.token_field == "max_completion_tokens":
            return CHAT_MAX_COMPLETION
        return CHAT_MAX_TOKENS

    def initial_route(self, model: ModelDescriptor) -> EndpointRoute:
        """Cached route for the model, or the default one."""
        return self._endpoint_cache.get(self.name, model.id) or self.default_route(model)

    def alternate_route(self, route: EndpointRoute, model: ModelDescriptor) -> Optional[EndpointRoute]:
        """Route to try once after the provider rejected ``route``'s token field."""
        if route == CHAT_MAX_TOKENS:
            return CHAT_MAX_COMPLETION
        if route == CHAT_MAX_COMPLETION:
            return CHAT_MAX_TOKENS
        return None

    async def _with_route_switch(self, model: ModelDescriptor, run: RouteRunner) -> LlmResponse:
        """Run on the initial route, switching once on a token-field rejection."""
        route = self.initial_route(model)
        try:
            return await run(route)
        except InvalidParameters as e:
            if not e.is_unsupported_token_parameter or e.stream_started:
                raise
            alternate = self.alternate_route(route, model)
            if alternate is None:
                raise
            logger.warning(
                "%s rejected %s for %s; retrying with %s",
                self.name,
                e.unsupported_parameter,
                model.id,
                alternate.key(),
            )
            emit_gateway_event(
                GatewayEventType.ENDPOINT_SWITCH,
                {
                    "provider": self.name,
                    "model": model.id,
                    "from": route.key(),
                    "to": alternate.key(),
                    "rejected_parameter": e.unsupported_parameter,
                },
            )
            response = await run(alternate)
            self._endpoint_cache.remember(self.name, model.id, alternate)
            return response

    # ------------------------------------------------------------------
    # Reasoning
    # ------------------------------------------------------------------

    def reasoning_effort(self, model: ModelDescriptor) -> Optional[str]:
        """Effort to send, or None when the model cannot reason."""
        if not is_reasoning_model(model):
            return None
        if self._config.reasoning_effort:
            return self._config.reasoning_effort
        return "medium" if self._config.enable_thinking else None

    def sampling_temperature(self, request: LlmRequest, model: ModelDescriptor) -> Optional[float]:
        # Reasoning models reject temperature.
        if is_reasoning_model(model):
            return None
        return self.temperature(request)

    # ------------------------------------------------------------------
    # Chat endpoint
    # ------------------------------------------------------------------

    def build_payload(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        route: EndpointRoute,
        stream: bool,
    ) -> Dict[str, Any]:
        payload = build_chat_payload(
            request,
            self.model_name(model),
            route.token_field,
            self.max_output_tokens(request),
            self.sampling_temperature(request, model),
            stream=stream,
        )
        effort = self.reasoning_effort(model)
        if effort:
            payload["reasoning_effort"] = effort
        return payload

    def url_for(self, route: EndpointRoute) -> str:
        return f"{self.api_base.rstrip('/')}/chat/completions"

    def parse_response(
        self,
        data: Dict[str, Any],
        headers: httpx.Headers,
        model: ModelDescriptor,
        route: EndpointRoute,
    ) -> LlmResponse:
        try:
            text, calls, usage, stop_reason = parse_chat_completion(data)
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
        return OpenAIChatStreamDecoder()

    async def _complete(self, request: LlmRequest, model: ModelDescriptor) -> LlmResponse:
        async def run(route: EndpointRoute) -> LlmResponse:
            payload = self.build_payload(request, model, route, stream=False)
            data, headers = await self._post_json(
                self.url_for(route), payload, self._headers(request), model.id
            )
            return self.parse_response(data, headers, model, route)

        return await self._with_route_switch(model, run)

    async def _complete_streaming(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        async def run(route: EndpointRoute) -> LlmResponse:
            payload = self.build_payload(request, model, route, stream=True)
            response = await self._stream(
                self.url_for(route),
                payload,
                self._headers(request, stream=True),
                model,
                lambda: self.decoder_for(route),
                sink,
            )
            return replace(response, endpoint=route.key())

        return await self._with_route_switch(model, run)
