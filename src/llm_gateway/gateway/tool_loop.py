"""Tool-call orchestration.

run_tool_loop drives the call / execute / append cycle:

    1. buffered adapter call
    2. no tool calls -> return the response
    3. append the assistant message carrying the calls
    4. run every call through the executor, append one tool message each
    5. repeat, at most ``max_tool_iterations`` model calls

Tool arguments are only ever read from complete buffered responses.
"""

import inspect
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from ..metadata.types import ModelDescriptor
from ..observability import GatewayEventType, emit_gateway_event
from .base import ProviderAdapter
from .errors import ToolIterationLimitReached
from .types import (
    CanonicalMessage,
    LlmRequest,
    LlmResponse,
    TokenUsage,
    ToolCallNormalized,
    ToolResultContent,
    ToolSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 25

ToolOutput = Union[str, ToolResultContent]
ToolExecutor = Callable[[ToolCallNormalized], Union[ToolOutput, Awaitable[ToolOutput]]]
RequestPreparer = Callable[[LlmRequest], LlmRequest]


async def execute_tool_call(executor: ToolExecutor, call: ToolCallNormalized) -> ToolResultContent:
    """Run one tool call, converting executor failures into error results."""
    try:
        result = executor(call)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        logger.warning("Tool %s (%s) failed: %s", call.name, call.call_id, e)
        return ToolResultContent(
            call_id=call.call_id,
            name=call.name,
            content=f"Error: {type(e).__name__}: {e}",
            is_error=True,
        )
    if isinstance(result, ToolResultContent):
        return result
    return ToolResultContent(call_id=call.call_id, name=call.name, content=str(result))


def _add_usage(total: Optional[TokenUsage], usage: Optional[TokenUsage]) -> Optional[TokenUsage]:
    if usage is None:
        return total
    if total is None:
        return usage
    return TokenUsage.of(
        total.input_tokens + usage.input_tokens,
        total.output_tokens + usage.output_tokens,
    )


async def run_tool_loop(
    adapter: ProviderAdapter,
    request: LlmRequest,
    model: ModelDescriptor,
    executor: ToolExecutor,
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
    prepare: Optional[RequestPreparer] = None,
) -> LlmResponse:
    """Run the model until it stops asking for tools.

    Args:
        adapter: Provider adapter to call
        request: Initial request (must declare the tools)
        model: Selected model
        executor: Sync or async callable returning str or ToolResultContent
        max_tool_iterations: Cap on model calls
        prepare: Applied to the request before every model call (the facade
            uses it to recompute the output budget as the history grows)

    Returns:
        The first response without tool calls, with ``iterations`` set and
        usage summed over all rounds

    Raises:
        ToolIterationLimitReached: The cap was hit while the model still
            requested tools
        GatewayError: Any adapter failure
    """
    if max_tool_iterations < 1:
        raise ValueError("max_tool_iterations must be at least 1")

    current = request
    total_usage: Optional[TokenUsage] = None
    for iteration in range(1, max_tool_iterations + 1):
        prepared = prepare(current) if prepare else current
        response = await adapter.call(prepared, model)
        total_usage = _add_usage(total_usage, response.usage)

        if not response.has_tool_calls:
            return replace(response, iterations=iteration, usage=total_usage)

        if iteration == max_tool_iterations:
            logger.warning(
                "Tool loop on %s hit the limit of %d iterations", model.id, max_tool_iterations
            )
            emit_gateway_event(
                GatewayEventType.TOOL_ITERATION_LIMIT,
                {"model": model.id, "provider": adapter.name, "iterations": iteration},
            )
            raise ToolIterationLimitReached(
                iteration,
                last_response=replace(response, iterations=iteration, usage=total_usage),
                provider=adapter.name,
                model=model.id,
            )

        logger.debug(
            "Iteration %d: executing %d tool calls (%s)",
            iteration,
            len(response.tool_calls),
            ", ".join(c.name for c in response.tool_calls),
        )
        results = []
        for call in response.tool_calls:
            result = await execute_tool_call(executor, call)
            results.append(CanonicalMessage.tool_result(result))
        current = current.with_messages(response.to_message(), *results)

    raise RuntimeError("tool loop exited without a response")


ToolHandler = Callable[..., Any]


class ToolRegistry:
    """Maps tool names to handlers and acts as a tool executor.

    Handlers receive the decoded arguments as keyword arguments (JSON
    object) or positional arguments (JSON array, as produced by the text
    tool protocol). They may be sync or async.

    Example:
        registry = ToolRegistry()

        @registry.tool("read_file", "Read a file", {"type": "object", ...})
        def read_file(path: str) -> str:
            ...

        request = LlmRequest.from_prompt("...", tools=registry.specs())
        await gateway.run_tool_loop(request, selection, registry)
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ToolHandler] = {}
        self._specs: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        if spec.name in self._specs:
            raise ValueError(f"tool {spec.name!r} is already registered")
        self._specs[spec.name] = spec
        self._handlers[spec.name] = handler

    def tool(
        self,
        name: str,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering a handler under ``name``."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            spec = ToolSpec(name=name, description=description)
            if parameters is not None:
                spec = replace(spec, parameters=parameters)
            self.register(spec, handler)
            return handler

        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def specs(self) -> Tuple[ToolSpec, ...]:
        return tuple(self._specs.values())

    async def __call__(self, call: ToolCallNormalized) -> ToolResultContent:
        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResultContent(
                call_id=call.call_id,
                name=call.name,
                content=f"Error: unknown tool {call.name!r}",
                is_error=True,
            )
        args = call.parsed_arguments()
        if isinstance(args, dict):
            result = handler(**args)
        elif isinstance(args, list):
            result = handler(*args)
        else:
            result = handler(args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolResultContent):
            return result
        return ToolResultContent(call_id=call.call_id, name=call.name, content=str(result))
