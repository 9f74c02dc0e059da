"""Output-token budgeting.

The effective output budget sent to a provider is::

    min(model_max_output, requested, context_window - input_tokens - headroom)

where ``headroom = max(1024, 0.2 * context_window)``. Unknown limits are
skipped. Clamping never fails a call: it produces a warning that is logged
and attached to the response.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .types import ImageContent, LlmRequest, TextContent, ToolResultContent

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MIN_HEADROOM_TOKENS = 1024
HEADROOM_FRACTION = 0.2
# Rough flat cost for an image part.
IMAGE_TOKEN_ESTIMATE = 765


@dataclass(frozen=True)
class TokenBudget:
    """Result of budgeting a single call."""

    requested: int
    effective: int
    headroom: Optional[int] = None
    warnings: Tuple[str, ...] = ()

    @property
    def clamped(self) -> bool:
        return self.effective != self.requested


def headroom_for(context_window: int) -> int:
    return max(MIN_HEADROOM_TOKENS, int(context_window * HEADROOM_FRACTION))


def estimate_tokens(text: str) -> int:
    """Estimate tokens for a piece of text (ceil of chars / 4)."""
    if not text:
        return 0
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def estimate_input_tokens(request: LlmRequest) -> int:
    """Estimate the prompt size of a request.

    Counts the system prompt, every text and tool-result part, tool call
    arguments, and the serialized tool schemas.
    """
    total = estimate_tokens(request.system or "")
    for message in request.messages:
        for part in message.content:
            if isinstance(part, TextContent):
                total += estimate_tokens(part.text)
            elif isinstance(part, ToolResultContent):
                total += estimate_tokens(part.content)
            elif isinstance(part, ImageContent):
                total += IMAGE_TOKEN_ESTIMATE
        for call in message.tool_calls:
            total += estimate_tokens(call.name) + estimate_tokens(call.arguments)
    for tool in request.tools:
        total += estimate_tokens(tool.name + tool.description)
        total += estimate_tokens(json.dumps(tool.parameters))
    return total


def compute_output_budget(
    requested: int,
    model_max_output: Optional[int] = None,
    context_window: Optional[int] = None,
    input_tokens: int = 0,
    model_id: Optional[str] = None,
) -> TokenBudget:
    """Clamp the requested output tokens to what the model can deliver.

    Args:
        requested: Caller's desired maximum output tokens
        model_max_output: Model's output limit (None, 0 or negative if unknown)
        context_window: Model's total context limit (None, 0 or negative if unknown)
        input_tokens: Estimated prompt size
        model_id: Used only in warnings

    Returns:
        TokenBudget; ``effective`` is at least 1 and never above
        ``model_max_output``.
    """
    if model_max_output is not None and model_max_output <= 0:
        model_max_output = None
    if context_window is not None and context_window <= 0:
        context_window = None

    warnings = []
    effective = requested
    headroom = None
    label = model_id or "model"

    if model_max_output is not None and effective > model_max_output:
        effective = model_max_output
        warnings.append(
            f"max_output_tokens clamped from {requested} to {effective}: "
            f"{label} output limit is {model_max_output}"
        )

    if context_window is not None:
        headroom = headroom_for(context_window)
        remaining = context_window - input_tokens - headroom
        if effective > remaining:
            clamped = max(1, remaining)
            warnings.append(
                f"max_output_tokens clamped from {effective} to {clamped}: "
                f"{label} context {context_window} minus input {input_tokens} "
                f"and headroom {headroom}"
            )
            effective = clamped

    if model_max_output is not None:
        effective = min(effective, model_max_output)
    effective = max(1, effective)

    for warning in warnings:
        logger.warning(warning)

    return TokenBudget(
        requested=requested,
        effective=effective,
        headroom=headroom,
        warnings=tuple(warnings),
    )
