"""OpenRouter passthrough adapter.

OpenRouter accepts an OpenAI-compatible Chat Completions payload at
``{api_base}/chat/completions`` and routes it to the upstream vendor. Model
ids keep their vendor prefix ("anthropic/claude-sonnet-4").

Differences from the plain OpenAI adapter:
- the output-token field follows the catalog's ``token_field``
  (``max_tokens`` or ``max_output_tokens``, never both)
- reasoning uses OpenRouter's unified ``reasoning`` object
- configured headers such as HTTP-Referer and X-Title are forwarded
"""

import logging
from typing import Any, Dict, Optional

from ..metadata.types import ModelDescriptor
from .base import ProviderKind
from .endpoint_cache import CHAT_MAX_COMPLETION, CHAT_MAX_OUTPUT, CHAT_MAX_TOKENS, EndpointRoute
from .openai_chat import OpenAIChatAdapter
from .types import LlmRequest

logger = logging.getLogger(__name__)


class OpenRouterAdapter(OpenAIChatAdapter):
    """Adapter for OpenRouter and other OpenAI-compatible aggregators."""

    kind = ProviderKind.OPENROUTER

    def model_name(self, model: ModelDescriptor) -> str:
        return model.id

    def default_route(self, model: ModelDescriptor) -> EndpointRoute:
        if model.token_field == "max_output_tokens":
            return CHAT_MAX_OUTPUT
        if model.token_field == "max_completion_tokens":
            return CHAT_MAX_COMPLETION
        return CHAT_MAX_TOKENS

    def alternate_route(self, route: EndpointRoute, model: ModelDescriptor) -> Optional[EndpointRoute]:
        if route == CHAT_MAX_TOKENS:
            return CHAT_MAX_OUTPUT
        if route in (CHAT_MAX_OUTPUT, CHAT_MAX_COMPLETION):
            return CHAT_MAX_TOKENS
        return None

    def sampling_temperature(self, request: LlmRequest, model: ModelDescriptor) -> Optional[float]:
        return self.temperature(request)

    def reasoning_config(self, model: ModelDescriptor) -> Optional[Dict[str, Any]]:
        """Unified reasoning object, only for reasoning-capable models."""
        if model.capabilities.reasoning is not True:
            return None
        if self._config.reasoning_effort:
            return {"effort": self._config.reasoning_effort}
        if self._config.enable_thinking:
            if self._config.reasoning_budget_tokens:
                return {"max_tokens": self._config.reasoning_budget_tokens}
            return {"effort": "medium"}
        return None

    def build_payload(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        route: EndpointRoute,
        stream: bool,
    ) -> Dict[str, Any]:
        payload = super().build_payload(request, model, route, stream)
        payload.pop("reasoning_effort", None)
        reasoning = self.reasoning_config(model)
        if reasoning is not None:
            payload["reasoning"] = reasoning
        elif self._config.enable_thinking:
            logger.debug("Dropping reasoning for %s: not reasoning-capable", model.id)
        return payload
