"""Text-level tool protocol for models without native function calling.

Tool calls travel as JSON objects inside the reply text::

    {"tool": "read_file", "args": ["src/main.py"]}

Calls are only extracted from a fully buffered reply, never from a partial
stream, and only for tool names the request declared.
"""

import json
from dataclasses import replace
from typing import Iterable, List, Sequence

from .types import (
    CanonicalMessage,
    LlmRequest,
    Role,
    TextContent,
    ToolCallNormalized,
    ToolResultContent,
    ToolSpec,
)


def render_tool_instructions(tools: Sequence[ToolSpec]) -> str:
    """Describe the available tools and the call format for the system prompt."""
    lines = [
        "You can call tools. To call a tool, reply with a JSON object of the form",
        '{"tool": "<tool name>", "args": [<arguments in order>]}',
        "and nothing else on that line. You will receive the result in the next message.",
        "Available tools:",
    ]
    for tool in tools:
        schema = json.dumps(tool.parameters, sort_keys=True)
        description = f": {tool.description}" if tool.description else ""
        lines.append(f"- {tool.name}{description} (parameters: {schema})")
    return "\n".join(lines)


def format_tool_call(call: ToolCallNormalized) -> str:
    """Render a tool call in wire form."""
    args = call.parsed_arguments()
    if not isinstance(args, list):
        args = [args]
    return json.dumps({"tool": call.name, "args": args})


def format_tool_result(result: ToolResultContent) -> str:
    status = " (error)" if result.is_error else ""
    return f"Result of tool {result.name} [{result.call_id}]{status}:\n{result.content}"


def extract_tool_calls(text: str, allowed_names: Iterable[str]) -> List[ToolCallNormalized]:
    """Find complete ``{"tool": ..., "args": [...]}`` objects in buffered text.

    Args:
        text: The complete reply text
        allowed_names: Declared tool names; objects naming others are ignored

    Returns:
        Tool calls in order of appearance, with ``arguments`` set to the
        JSON-encoded args array
    """
    allowed = set(allowed_names)
    decoder = json.JSONDecoder()
    calls: List[ToolCallNormalized] = []
    index = 0
    while True:
        start = text.find("{", index)
        if start < 0:
            break
        try:
            obj, end = decoder.raw_decode(text, start)
        except ValueError:
            index = start + 1
            continue
        index = end
        if not isinstance(obj, dict) or obj.get("tool") not in allowed:
            continue
        args = obj.get("args", [])
        if not isinstance(args, list):
            continue
        calls.append(
            ToolCallNormalized(
                call_id=f"wire_{len(calls) + 1}",
                name=obj["tool"],
                arguments=json.dumps(args),
            )
        )
    return calls


def lower_request(request: LlmRequest) -> LlmRequest:
    """Rewrite a tool-bearing request for the text protocol.

    Tool specs move into the system prompt, earlier tool calls become wire
    JSON in assistant text, and tool results become user messages.
    """
    instructions = render_tool_instructions(request.tools)
    system = f"{request.system}\n\n{instructions}" if request.system else instructions

    messages: List[CanonicalMessage] = []
    for message in request.messages:
        if message.role == Role.TOOL:
            results = [p for p in message.content if isinstance(p, ToolResultContent)]
            text = "\n\n".join(format_tool_result(r) for r in results) or message.text_content()
            messages.append(CanonicalMessage.text(Role.USER, text))
        elif message.tool_calls:
            wire_lines = "\n".join(format_tool_call(c) for c in message.tool_calls)
            content = tuple(p for p in message.content if not isinstance(p, ToolResultContent))
            messages.append(
                CanonicalMessage(role=message.role, content=content + (TextContent(wire_lines),))
            )
        else:
            messages.append(message)

    return replace(request, system=system, messages=tuple(messages), tools=())
