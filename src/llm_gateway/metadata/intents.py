"""Built-in intent presets.

Each preset encodes what a class of caller needs (hard capabilities and
context) and how it trades capability fit, context, price and latency.

    orchestration  - tool-driven coordination; tools required, balanced weights
    code_writing   - edits through tools; tools required, large context
    review         - reading diffs; large context, cost-conscious
    planning       - structured output; prefers reasoning and JSON mode
    interactive    - user-facing chat; latency first
"""

from typing import Dict, Union

from .types import Capability, Intent, ScoreWeights

INTENT_PRESETS: Dict[str, Intent] = {
    "orchestration": Intent(
        name="orchestration",
        required_capabilities=frozenset({Capability.TOOLS}),
        preferred_capabilities=frozenset({Capability.JSON_MODE}),
        desired_context_tokens=64_000,
        min_output_tokens=1_024,
        weights=ScoreWeights(capability=0.35, context=0.20, price=0.20, latency=0.25),
    ),
    "code_writing": Intent(
        name="code_writing",
        required_capabilities=frozenset({Capability.TOOLS}),
        preferred_capabilities=frozenset({Capability.REASONING, Capability.JSON_MODE}),
        min_context_tokens=32_000,
        desired_context_tokens=128_000,
        min_output_tokens=4_096,
        weights=ScoreWeights(capability=0.40, context=0.30, price=0.15, latency=0.15),
    ),
    "review": Intent(
        name="review",
        preferred_capabilities=frozenset({Capability.REASONING}),
        min_context_tokens=16_000,
        desired_context_tokens=128_000,
        weights=ScoreWeights(capability=0.25, context=0.40, price=0.25, latency=0.10),
    ),
    "planning": Intent(
        name="planning",
        preferred_capabilities=frozenset({Capability.REASONING, Capability.JSON_MODE}),
        desired_context_tokens=64_000,
        min_output_tokens=2_048,
        weights=ScoreWeights(capability=0.45, context=0.20, price=0.15, latency=0.20),
    ),
    "interactive": Intent(
        name="interactive",
        preferred_capabilities=frozenset({Capability.TOOLS}),
        desired_context_tokens=32_000,
        weights=ScoreWeights(capability=0.15, context=0.15, price=0.25, latency=0.45),
    ),
}


def get_intent(intent: Union[str, Intent]) -> Intent:
    """Return an Intent, resolving preset names.

    Raises:
        KeyError: If a name is given that is not a preset
    """
    if isinstance(intent, Intent):
        return intent
    try:
        return INTENT_PRESETS[intent]
    except KeyError:
        raise KeyError(
            f"unknown intent '{intent}', expected one of {sorted(INTENT_PRESETS)}"
        ) from None
