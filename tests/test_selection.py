"""Tests for intent-driven model selection and sticky choices."""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_model
from llm_gateway.gateway.errors import ModelUnavailable
from llm_gateway.metadata.catalog import ModelCatalog
from llm_gateway.metadata.selection import STICKY_STORE_KEY, ModelSelectionService
from llm_gateway.metadata.sources import StaticCatalogSource
from llm_gateway.metadata.types import Intent, SelectionConstraints
from llm_gateway.observability import GatewayEventType, get_gateway_events

STRONG = make_model("acme/strong", reasoning=True, latency_ms=300, prompt_price=0.0005, completion_price=0.001)
WEAK = make_model("acme/weak", reasoning=False, latency_ms=2000, prompt_price=0.01, completion_price=0.03)
NO_TOOLS = make_model("acme/chat-only", tools=False, reasoning=True, latency_ms=100)
TINY = make_model("acme/tiny", context_window=8_000, latency_ms=100)


async def build_service(models, store, clock, **kwargs):
    catalog = ModelCatalog(StaticCatalogSource(models), store=store, clock=clock)
    await catalog.refresh()
    service = ModelSelectionService(catalog, store=store, clock=clock, **kwargs)
    return catalog, service


class TestHardFilters:
    """Required capabilities, context and output limits, exclusions."""

    @pytest.mark.asyncio
    async def test_filters_explain_rejections(self, store, clock):
        _, service = await build_service([STRONG, NO_TOOLS, TINY], store, clock)
        from llm_gateway.metadata.intents import get_intent

        candidates, rejected = service.filter_candidates(
            get_intent("code_writing"), SelectionConstraints()
        )
        assert [m.id for m in candidates] == ["acme/strong"]
        assert rejected["acme/chat-only"] == "missing capabilities ['tools']"
        assert rejected["acme/tiny"] == "context 8000 below 32000"

    @pytest.mark.asyncio
    async def test_unknown_required_capability_is_missing(self, store, clock):
        unknown = make_model("acme/unknown", tools=None)
        _, service = await build_service([unknown], store, clock)
        with pytest.raises(ModelUnavailable):
            await service.resolve("orchestration")

    @pytest.mark.asyncio
    async def test_excluded_models(self, store, clock):
        _, service = await build_service([STRONG, WEAK], store, clock)
        result = await service.resolve(
            "orchestration", SelectionConstraints(excluded_models=frozenset({"acme/strong"}))
        )
        assert result.model_id == "acme/weak"


class TestResolve:
    @pytest.mark.asyncio
    async def test_concurrent_resolves_agree(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        results = await asyncio.gather(*(service.resolve("orchestration") for _ in range(8)))
        assert len({r.model_id for r in results}) == 1
        assert sum(not r.via_sticky for r in results) == 1

    @pytest.mark.asyncio
    async def test_best_score_wins_with_rationale(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        result = await service.resolve("code_writing")
        assert result.model_id == "acme/strong"
        assert result.provider == "acme"
        assert result.rationale.startswith("highest weighted score")
        assert set(result.scores) == {"capability", "context", "price", "latency"}
        assert result.sticky_valid_until == clock.now + timedelta(days=7)
        assert not result.via_sticky
        assert get_gateway_events(GatewayEventType.SELECTION_RESOLVED)

    @pytest.mark.asyncio
    async def test_no_candidates_raises(self, store, clock):
        _, service = await build_service([NO_TOOLS], store, clock)
        with pytest.raises(ModelUnavailable, match="No model satisfies"):
            await service.resolve("code_writing")

    @pytest.mark.asyncio
    async def test_pinned_model(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        result = await service.resolve(
            "code_writing", SelectionConstraints(pinned_model="acme/weak")
        )
        assert result.model_id == "acme/weak"
        assert result.rationale == "pinned by caller"

    @pytest.mark.asyncio
    async def test_pin_failing_filters_raises(self, store, clock):
        _, service = await build_service([STRONG, NO_TOOLS], store, clock)
        with pytest.raises(ModelUnavailable, match="cannot serve"):
            await service.resolve(
                "code_writing", SelectionConstraints(pinned_model="acme/chat-only")
            )

    @pytest.mark.asyncio
    async def test_custom_intent(self, store, clock):
        _, service = await build_service([STRONG, NO_TOOLS], store, clock)
        intent = Intent(name="fast_chat", desired_context_tokens=1000)
        result = await service.resolve(intent)
        assert result.intent == "fast_chat"


class TestStickySelection:
    """Same model until expiry, pin change, catalog change or outage."""

    @pytest.mark.asyncio
    async def test_second_resolve_is_sticky(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        first = await service.resolve("review")
        second = await service.resolve("review")
        assert second.model_id == first.model_id
        assert second.via_sticky
        assert get_gateway_events(GatewayEventType.STICKY_HIT)

    @pytest.mark.asyncio
    async def test_sticky_survives_restart(self, store, clock):
        catalog, service = await build_service([WEAK, STRONG], store, clock)
        first = await service.resolve("review")
        assert "review" in store.get(STICKY_STORE_KEY)

        restarted = ModelSelectionService(catalog, store=store, clock=clock)
        result = await restarted.resolve("review")
        assert result.via_sticky
        assert result.model_id == first.model_id

    @pytest.mark.asyncio
    async def test_sticky_beats_better_newcomer(self, store, clock):
        catalog, service = await build_service([WEAK], store, clock)
        await service.resolve("review")
        catalog._source = StaticCatalogSource([WEAK, STRONG])
        await catalog.refresh()
        result = await service.resolve("review")
        assert result.model_id == "acme/weak"
        assert result.via_sticky

    @pytest.mark.asyncio
    async def test_expiry_triggers_reselection(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        await service.resolve("review")
        clock.advance(days=8)
        result = await service.resolve("review")
        assert not result.via_sticky
        invalidated = get_gateway_events(GatewayEventType.STICKY_INVALIDATED)
        assert invalidated[-1].data["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_pin_change_invalidates(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        await service.resolve("review")
        result = await service.resolve("review", SelectionConstraints(pinned_model="acme/weak"))
        assert result.model_id == "acme/weak"
        assert get_gateway_events(GatewayEventType.STICKY_INVALIDATED)[-1].data["reason"] == "pin changed"

    @pytest.mark.asyncio
    async def test_model_removed_from_catalog(self, store, clock):
        catalog, service = await build_service([WEAK, STRONG], store, clock)
        first = await service.resolve("review")
        remaining = [m for m in (WEAK, STRONG) if m.id != first.model_id]
        catalog._source = StaticCatalogSource(remaining)
        await catalog.refresh()
        result = await service.resolve("review")
        assert result.model_id != first.model_id
        assert get_gateway_events(GatewayEventType.STICKY_INVALIDATED)[-1].data["reason"] == (
            "model no longer in catalog"
        )

    @pytest.mark.asyncio
    async def test_capability_regression(self, store, clock):
        catalog, service = await build_service([STRONG], store, clock)
        await service.resolve("review")
        downgraded = make_model("acme/strong", reasoning=False)
        catalog._source = StaticCatalogSource([downgraded, WEAK])
        await catalog.refresh()
        await service.resolve("review")
        reason = get_gateway_events(GatewayEventType.STICKY_INVALIDATED)[-1].data["reason"]
        assert reason == "capability regression ['reasoning']"

    @pytest.mark.asyncio
    async def test_outage_invalidates_sticky(self, store, clock):
        _, service = await build_service([WEAK, STRONG], store, clock)
        first = await service.resolve("review")
        service.report_outage(first.model_id)
        result = await service.resolve("review")
        assert result.model_id != first.model_id
        assert get_gateway_events(GatewayEventType.STICKY_INVALIDATED)[-1].data["reason"] == "outage"

    @pytest.mark.asyncio
    async def test_explicit_invalidate(self, store, clock):
        _, service = await build_service([STRONG], store, clock)
        await service.resolve("review")
        assert service.invalidate("review")
        assert service.sticky_entry("review") is None
        assert not service.invalidate("review")


class TestExternalRanker:
    @pytest.mark.asyncio
    async def test_ranker_choice_used(self, store, clock):
        class PreferWeak:
            async def rank(self, intent, candidates):
                return ["acme/unknown", "acme/weak"]

        _, service = await build_service([WEAK, STRONG], store, clock, ranker=PreferWeak())
        result = await service.resolve("review")
        assert result.model_id == "acme/weak"
        assert result.rationale.startswith("ranked first by external ranker")

    @pytest.mark.asyncio
    async def test_ranker_failure_falls_back(self, store, clock):
        class Broken:
            async def rank(self, intent, candidates):
                raise RuntimeError("ranker down")

        _, service = await build_service([WEAK, STRONG], store, clock, ranker=Broken())
        result = await service.resolve("review")
        assert result.model_id == "acme/strong"
        assert get_gateway_events(GatewayEventType.RANKER_FALLBACK)[0].data["error"] == "ranker down"
