"""Tests for candidate scoring."""

import pytest

from conftest import make_model
from llm_gateway.metadata.intents import INTENT_PRESETS, get_intent
from llm_gateway.metadata.scoring import (
    UNKNOWN_DIMENSION_SCORE,
    capability_score,
    context_score,
    latency_score,
    price_score,
    score_model,
)
from llm_gateway.metadata.types import Capability, Intent, ScoreWeights


class TestDimensionScores:
    """Each dimension lands in [0, 1]; unknown data gets a penalty score."""

    def test_capability_fraction(self):
        intent = Intent(
            name="x",
            preferred_capabilities=frozenset({Capability.REASONING, Capability.JSON_MODE}),
        )
        assert capability_score(make_model("a", reasoning=True), intent) == 1.0
        assert capability_score(make_model("b", reasoning=False), intent) == 0.5

    def test_capability_all_unknown(self):
        intent = Intent(name="x", preferred_capabilities=frozenset({Capability.REASONING}))
        assert capability_score(make_model("a", reasoning=None), intent) == UNKNOWN_DIMENSION_SCORE

    def test_no_preferences_scores_full(self):
        assert capability_score(make_model("a"), Intent(name="x")) == 1.0

    def test_context_adequacy(self):
        intent = Intent(name="x", desired_context_tokens=100_000)
        assert context_score(make_model("a", context_window=50_000), intent) == 0.5
        assert context_score(make_model("b", context_window=400_000), intent) == 1.0
        assert context_score(make_model("c", context_window=None), intent) == UNKNOWN_DIMENSION_SCORE

    def test_price_log_ratio(self):
        assert price_score(make_model("a", prompt_price=0.015, completion_price=0.015)) == pytest.approx(0.5)
        assert price_score(make_model("b", prompt_price=0.0015, completion_price=0.0015)) == pytest.approx(0.75)
        assert price_score(make_model("c", prompt_price=None)) == UNKNOWN_DIMENSION_SCORE
        assert price_score(make_model("d", prompt_price=0.0, completion_price=0.0)) == 1.0

    def test_cheaper_scores_higher(self):
        cheap = make_model("cheap", prompt_price=0.0001, completion_price=0.0002)
        pricey = make_model("pricey", prompt_price=0.01, completion_price=0.03)
        assert price_score(cheap) > price_score(pricey)

    def test_latency(self):
        assert latency_score(make_model("a", latency_ms=250)) == 1.0
        assert latency_score(make_model("b", latency_ms=1000)) == 0.5
        assert latency_score(make_model("c", latency_ms=None)) == UNKNOWN_DIMENSION_SCORE


class TestScoreModel:
    def test_total_is_weighted_sum(self):
        intent = Intent(
            name="x",
            desired_context_tokens=128_000,
            weights=ScoreWeights(capability=0.5, context=0.5, price=0.0, latency=0.0),
        )
        score = score_model(make_model("a", context_window=64_000), intent)
        assert score.scores["context"] == 0.5
        assert score.total == pytest.approx(0.75)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            ScoreWeights(capability=0.5, context=0.5, price=0.5, latency=0.0)


class TestIntentPresets:
    def test_presets_exist(self):
        assert set(INTENT_PRESETS) == {
            "orchestration",
            "code_writing",
            "review",
            "planning",
            "interactive",
        }

    def test_code_writing_requires_tools(self):
        assert Capability.TOOLS in get_intent("code_writing").required_capabilities

    def test_unknown_intent(self):
        with pytest.raises(KeyError, match="unknown intent"):
            get_intent("dreaming")

    def test_intent_instance_passes_through(self):
        intent = Intent(name="custom")
        assert get_intent(intent) is intent
