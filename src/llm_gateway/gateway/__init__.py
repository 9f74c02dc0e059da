"""Provider gateway layer.

Canonical request/response types, the error taxonomy, the streaming engine
and one adapter per backend protocol (OpenAI Chat, OpenAI Responses,
Anthropic Messages, OpenRouter, mock).

Example usage:
    from llm_gateway.gateway import LlmRequest, OpenRouterAdapter

    adapter = OpenRouterAdapter(ProviderConfig(provider_kind="openrouter"))
    response = await adapter.call(LlmRequest.from_prompt("Hello"), model)
"""

from .types import (
    CanonicalMessage,
    Finished,
    ImageContent,
    LlmRequest,
    LlmResponse,
    ResponseFormat,
    Role,
    SamplingParams,
    StreamError,
    StreamEvent,
    TextContent,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolCallNormalized,
    ToolChoice,
    ToolDelta,
    ToolResultContent,
    ToolSpec,
    Usage,
)
from .errors import (
    AuthFailed,
    ErrorCategory,
    GatewayError,
    InvalidParameters,
    MalformedStream,
    ModelUnavailable,
    RateLimited,
    ServerError,
    TimeoutFirstToken,
    TimeoutStall,
    ToolIterationLimitReached,
)
from .tokens import TokenBudget, compute_output_budget, estimate_input_tokens
from .streaming import StreamingEngine, StreamState
from .retry import RetryPolicy, with_backoff
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from . import circuit_breaker_registry
from .endpoint_cache import EndpointCache, EndpointRoute
from .base import AdapterCapabilities, ProviderAdapter, ProviderKind
from .openai_chat import OpenAIChatAdapter
from .openai_responses import OpenAIResponsesAdapter
from .anthropic import AnthropicAdapter
from .openrouter import OpenRouterAdapter
from .mock import MockAdapter, MockTurn
from .tool_loop import ToolRegistry, run_tool_loop

__all__ = [
    # Types
    "CanonicalMessage",
    "Finished",
    "ImageContent",
    "LlmRequest",
    "LlmResponse",
    "ResponseFormat",
    "Role",
    "SamplingParams",
    "StreamError",
    "StreamEvent",
    "TextContent",
    "TextDelta",
    "TokenUsage",
    "ToolCall",
    "ToolCallNormalized",
    "ToolChoice",
    "ToolDelta",
    "ToolResultContent",
    "ToolSpec",
    "Usage",
    # Errors
    "AuthFailed",
    "ErrorCategory",
    "GatewayError",
    "InvalidParameters",
    "MalformedStream",
    "ModelUnavailable",
    "RateLimited",
    "ServerError",
    "TimeoutFirstToken",
    "TimeoutStall",
    "ToolIterationLimitReached",
    # Engine and policies
    "TokenBudget",
    "compute_output_budget",
    "estimate_input_tokens",
    "StreamingEngine",
    "StreamState",
    "RetryPolicy",
    "with_backoff",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "circuit_breaker_registry",
    "EndpointCache",
    "EndpointRoute",
    # Adapters
    "AdapterCapabilities",
    "ProviderAdapter",
    "ProviderKind",
    "OpenAIChatAdapter",
    "OpenAIResponsesAdapter",
    "AnthropicAdapter",
    "OpenRouterAdapter",
    "MockAdapter",
    "MockTurn",
    # Tools
    "ToolRegistry",
    "run_tool_loop",
]
