"""Weighted candidate scoring.

Every dimension scores in [0, 1] (higher is better):
- capability: fraction of the intent's preferred capabilities the model has
- context: adequacy of the context window against the intent's desired size
- price: log-ratio cost score against a reference high price
- latency: reference latency divided by the model's latency

A dimension the catalog knows nothing about scores UNKNOWN_DIMENSION_SCORE,
a penalty rather than an exclusion. The total is the intent-weighted sum.
"""

import math
from dataclasses import dataclass
from typing import Dict

from .types import Intent, ModelDescriptor

UNKNOWN_DIMENSION_SCORE = 0.3
# Partial credit for a preferred capability the catalog does not report.
UNKNOWN_CAPABILITY_CREDIT = 0.5

# Price floor to keep log10 defined
MIN_PRICE = 0.0001
# USD per 1K tokens that scores 0.5 (most expensive frontier models)
REFERENCE_HIGH_PRICE = 0.015
# Time to first token that scores 1.0
REFERENCE_LATENCY_MS = 500.0


@dataclass(frozen=True)
class CandidateScore:
    """Per-dimension scores and weighted total for one model."""

    model_id: str
    scores: Dict[str, float]
    total: float


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def capability_score(model: ModelDescriptor, intent: Intent) -> float:
    preferred = intent.preferred_capabilities
    if not preferred:
        return 1.0
    if all(model.capabilities.is_unknown(c) for c in preferred):
        return UNKNOWN_DIMENSION_SCORE
    credit = 0.0
    for capability in preferred:
        if model.capabilities.has(capability):
            credit += 1.0
        elif model.capabilities.is_unknown(capability):
            credit += UNKNOWN_CAPABILITY_CREDIT
    return credit / len(preferred)


def context_score(model: ModelDescriptor, intent: Intent) -> float:
    if model.context_window is None:
        return UNKNOWN_DIMENSION_SCORE
    if intent.desired_context_tokens <= 0:
        return 1.0
    return _clamp(model.context_window / intent.desired_context_tokens)


def price_score(model: ModelDescriptor) -> float:
    """Log-ratio cost score: 0.5 at the reference price, +0.25 per 10x cheaper."""
    average = model.pricing.average
    if average is None:
        return UNKNOWN_DIMENSION_SCORE
    if average <= 0:
        return 1.0
    price = max(average, MIN_PRICE)
    return _clamp(0.5 - math.log10(price / REFERENCE_HIGH_PRICE) * 0.25)


def latency_score(model: ModelDescriptor) -> float:
    if model.latency_ms is None:
        return UNKNOWN_DIMENSION_SCORE
    if model.latency_ms <= 0:
        return 1.0
    return _clamp(REFERENCE_LATENCY_MS / model.latency_ms)


def score_model(model: ModelDescriptor, intent: Intent) -> CandidateScore:
    """Score a model for an intent.

    Args:
        model: Candidate that already passed the hard filters
        intent: Intent whose weights apply

    Returns:
        CandidateScore with per-dimension scores and the weighted total
    """
    scores = {
        "capability": capability_score(model, intent),
        "context": context_score(model, intent),
        "price": price_score(model),
        "latency": latency_score(model),
    }
    weights = intent.weights.as_dict()
    total = sum(weights[name] * value for name, value in scores.items())
    return CandidateScore(model_id=model.id, scores=scores, total=round(total, 6))
