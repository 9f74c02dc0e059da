"""Canonical request/response types for the LLM Gateway.

These types form the stable internal contract that every consumer uses,
regardless of which backend protocol ends up serving the request. All of
them are frozen dataclasses: a request is immutable once built, and the
``with_*`` helpers return modified copies.

Example:
    >>> request = LlmRequest.from_prompt("Summarize the diff", system="Be terse")
    >>> request = request.with_max_output_tokens(512)
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class Role(str, Enum):
    """Message roles understood by every adapter."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolChoice(str, Enum):
    """How the model may use the declared tools."""

    AUTO = "auto"
    REQUIRED = "required"
    NONE = "none"


class ResponseFormat(str, Enum):
    """Requested shape of the model output."""

    TEXT = "text"
    JSON = "json"


# =============================================================================
# Content parts
# =============================================================================


@dataclass(frozen=True)
class TextContent:
    """Plain text content part."""

    text: str


@dataclass(frozen=True)
class ImageContent:
    """Image referenced by URL (http(s) or data: URL)."""

    url: str
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class ToolResultContent:
    """Result of executing a tool call, sent back to the model."""

    call_id: str
    name: str
    content: str
    is_error: bool = False


ContentPart = Union[TextContent, ImageContent, ToolResultContent]


@dataclass(frozen=True)
class ToolCallNormalized:
    """A complete tool invocation requested by the model.

    ``arguments`` is always a single well-formed JSON document. Construction
    fails with ValueError otherwise, so partial payloads are unrepresentable.
    """

    call_id: str
    name: str
    arguments: str = "{}"

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("tool call name cannot be empty")
        try:
            json.loads(self.arguments)
        except (TypeError, ValueError) as e:
            raise ValueError(
                f"tool call {self.call_id!r} has invalid JSON arguments: {e}"
            ) from e

    def parsed_arguments(self) -> Any:
        """Return the decoded arguments."""
        return json.loads(self.arguments)


@dataclass(frozen=True)
class CanonicalMessage:
    """A single message in the conversation.

    Assistant messages may carry the tool calls they requested so that the
    following tool-role messages can reference them.
    """

    role: Role
    content: Tuple[ContentPart, ...] = ()
    tool_calls: Tuple[ToolCallNormalized, ...] = ()

    @classmethod
    def text(cls, role: Union[Role, str], text: str) -> "CanonicalMessage":
        """Build a message holding a single text part."""
        return cls(role=Role(role), content=(TextContent(text),))

    @classmethod
    def tool_result(cls, result: ToolResultContent) -> "CanonicalMessage":
        """Build a tool-role message carrying one tool result."""
        return cls(role=Role.TOOL, content=(result,))

    def text_content(self) -> str:
        """Return all text parts joined with newlines."""
        return "\n".join(
            part.text for part in self.content if isinstance(part, TextContent)
        )


# =============================================================================
# Tools and sampling
# =============================================================================


def _default_parameters() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may call, described by a JSON schema."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=_default_parameters)
    strict: bool = False


@dataclass(frozen=True)
class SamplingParams:
    """Optional sampling parameters; None means provider default."""

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop: Tuple[str, ...] = ()
    seed: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None


@dataclass(frozen=True)
class LlmRequest:
    """Provider-neutral completion request."""

    messages: Tuple[CanonicalMessage, ...]
    system: Optional[str] = None
    tools: Tuple[ToolSpec, ...] = ()
    tool_choice: ToolChoice = ToolChoice.AUTO
    sampling: SamplingParams = field(default_factory=SamplingParams)
    response_format: ResponseFormat = ResponseFormat.TEXT
    max_output_tokens: Optional[int] = None
    provider_hints: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        names = [tool.name for tool in self.tools]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate tool names: {duplicates}")
        if self.max_output_tokens is not None and self.max_output_tokens < 1:
            raise ValueError("max_output_tokens must be positive")

    @classmethod
    def from_prompt(
        cls,
        prompt: str,
        system: Optional[str] = None,
        **kwargs: Any,
    ) -> "LlmRequest":
        """Build a single-turn request from a user prompt."""
        return cls(
            messages=(CanonicalMessage.text(Role.USER, prompt),),
            system=system,
            **kwargs,
        )

    @property
    def tool_names(self) -> Tuple[str, ...]:
        return tuple(tool.name for tool in self.tools)

    def with_messages(self, *messages: CanonicalMessage) -> "LlmRequest":
        """Return a copy with messages appended."""
        return replace(self, messages=self.messages + tuple(messages))

    def with_max_output_tokens(self, max_output_tokens: int) -> "LlmRequest":
        return replace(self, max_output_tokens=max_output_tokens)


# =============================================================================
# Streaming events
# =============================================================================


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolDelta:
    """A fragment of tool-call arguments; never parsed on its own."""

    call_id: str
    name: Optional[str]
    partial_arguments: str


@dataclass(frozen=True)
class ToolCall:
    """A fully assembled and validated tool call."""

    call: ToolCallNormalized


@dataclass(frozen=True)
class Usage:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass(frozen=True)
class Finished:
    stop_reason: Optional[str] = None


@dataclass(frozen=True)
class StreamError:
    message: str
    code: Optional[str] = None


StreamEvent = Union[TextDelta, ToolDelta, ToolCall, Usage, Finished, StreamError]


# =============================================================================
# Response
# =============================================================================


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, input_tokens: int, output_tokens: int) -> "TokenUsage":
        return cls(input_tokens, output_tokens, input_tokens + output_tokens)


@dataclass(frozen=True)
class LlmResponse:
    """Provider-neutral completion response."""

    text: str = ""
    tool_calls: Tuple[ToolCallNormalized, ...] = ()
    usage: Optional[TokenUsage] = None
    stop_reason: Optional[str] = None
    request_id: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    endpoint: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    iterations: int = 1
    time_to_first_chunk_ms: Optional[int] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_message(self) -> CanonicalMessage:
        """Return the assistant message representing this response."""
        content: Tuple[ContentPart, ...] = (TextContent(self.text),) if self.text else ()
        return CanonicalMessage(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=self.tool_calls,
        )
