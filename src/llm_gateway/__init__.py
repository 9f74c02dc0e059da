"""LLM Gateway - provider-neutral LLM calls with intent-driven model selection.

Usage:
    from llm_gateway import LlmGateway, LlmRequest

    async with LlmGateway.from_config() as gateway:
        response = await gateway.resolve_and_call(
            LlmRequest.from_prompt("Summarize this diff"), "review"
        )
        print(response.text)
"""

from llm_gateway.facade import LlmGateway, create_adapter
from llm_gateway.gateway import (
    CanonicalMessage,
    GatewayError,
    LlmRequest,
    LlmResponse,
    Role,
    ToolRegistry,
    ToolSpec,
)
from llm_gateway.metadata import Intent, SelectionConstraints, SelectionResult
from llm_gateway.unified_config import get_config, load_config

__version__ = "0.1.0"

__all__ = [
    "LlmGateway",
    "create_adapter",
    "CanonicalMessage",
    "GatewayError",
    "LlmRequest",
    "LlmResponse",
    "Role",
    "ToolRegistry",
    "ToolSpec",
    "Intent",
    "SelectionConstraints",
    "SelectionResult",
    "get_config",
    "load_config",
]
