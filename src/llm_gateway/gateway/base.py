"""Provider adapter contract.

Every backend protocol is wrapped by a ProviderAdapter subclass. The facade
only talks to this interface:

    response = await adapter.call(request, model)
    response = await adapter.call_streaming(request, model, sink)

``model`` is the ModelDescriptor chosen by selection; adapters read limits,
capabilities and the preferred token field from it. Adapters raise only
GatewayError subclasses.

When a request carries tools but the model is known not to support native
function calling, the adapter switches to the text protocol in wire_tools
transparently.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from ..metadata.types import ModelDescriptor
from ..unified_config import ProviderConfig
from .streaming import StreamSink
from .types import LlmRequest, LlmResponse
from .wire_tools import extract_tool_calls, lower_request

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Closed set of supported backend protocols."""

    OPENAI_CHAT = "openai_chat"
    OPENAI_RESPONSES = "openai_responses"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"
    MOCK = "mock"


@dataclass(frozen=True)
class AdapterCapabilities:
    """What the adapter's protocol can carry (independent of the model)."""

    supports_tools: bool = True
    supports_vision: bool = False
    supports_json_mode: bool = False
    supports_reasoning: bool = False


class ProviderAdapter(ABC):
    """Base class for provider adapters."""

    kind: ProviderKind

    def __init__(self, config: ProviderConfig, name: Optional[str] = None):
        self._config = config
        self._name = name or self.kind.value

    @property
    def name(self) -> str:
        """Configured provider name (e.g. "openrouter")."""
        return self._name

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    @abstractmethod
    def capabilities(self) -> AdapterCapabilities:
        ...

    def uses_wire_protocol(self, request: LlmRequest, model: ModelDescriptor) -> bool:
        """True when tools must travel as text instead of native calls."""
        if not request.tools:
            return False
        return model.capabilities.tools is False or not self.capabilities.supports_tools

    def max_output_tokens(self, request: LlmRequest) -> int:
        return request.max_output_tokens or self._config.max_output_tokens

    def temperature(self, request: LlmRequest) -> Optional[float]:
        if request.sampling.temperature is not None:
            return request.sampling.temperature
        return self._config.temperature

    async def call(self, request: LlmRequest, model: ModelDescriptor) -> LlmResponse:
        """Run a buffered completion."""
        wire = self.uses_wire_protocol(request, model)
        prepared = lower_request(request) if wire else request
        response = await self._complete(prepared, model)
        return self._finalize(response, request, wire)

    async def call_streaming(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        """Run a streamed completion, delivering events to ``sink``.

        Returns the assembled response once the stream finishes.
        """
        wire = self.uses_wire_protocol(request, model)
        prepared = lower_request(request) if wire else request
        response = await self._complete_streaming(prepared, model, sink)
        return self._finalize(response, request, wire)

    def _finalize(self, response: LlmResponse, request: LlmRequest, wire: bool) -> LlmResponse:
        if not wire or response.tool_calls:
            return response
        calls = extract_tool_calls(response.text, request.tool_names)
        if not calls:
            return response
        logger.debug("Extracted %d wire tool calls from %s reply", len(calls), self.name)
        return replace(response, tool_calls=tuple(calls), stop_reason="tool_calls")

    @abstractmethod
    async def _complete(self, request: LlmRequest, model: ModelDescriptor) -> LlmResponse:
        ...

    @abstractmethod
    async def _complete_streaming(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        ...

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
