"""Tests for the per-provider endpoint preference cache."""

from llm_gateway.gateway.endpoint_cache import (
    CHAT_MAX_COMPLETION,
    ENDPOINT_CACHE_STORE_KEY,
    RESPONSES_MAX_OUTPUT,
    EndpointCache,
    EndpointRoute,
)


class TestEndpointRoute:
    def test_key_round_trip(self):
        assert CHAT_MAX_COMPLETION.key() == "chat:max_completion_tokens"
        assert EndpointRoute.parse("responses:max_output_tokens") == RESPONSES_MAX_OUTPUT


class TestEndpointCache:
    def test_remember_and_get(self, store, clock):
        cache = EndpointCache(store, clock=clock)
        assert cache.get("openai", "openai/o3") is None
        cache.remember("openai", "openai/o3", CHAT_MAX_COMPLETION)
        assert cache.get("openai", "openai/o3") == CHAT_MAX_COMPLETION
        assert "openai|openai/o3" in store.get(ENDPOINT_CACHE_STORE_KEY)

    def test_routes_are_per_provider(self, clock):
        cache = EndpointCache(clock=clock)
        cache.remember("openai", "openai/o3", RESPONSES_MAX_OUTPUT)
        assert cache.get("openrouter", "openai/o3") is None
        cache.remember("openrouter", "openai/o3", CHAT_MAX_COMPLETION)
        assert cache.get("openai", "openai/o3") == RESPONSES_MAX_OUTPUT
        assert cache.get("openrouter", "openai/o3") == CHAT_MAX_COMPLETION

    def test_entries_expire_after_a_day(self, store, clock):
        cache = EndpointCache(store, clock=clock)
        cache.remember("openai", "openai/o3", CHAT_MAX_COMPLETION)
        clock.advance(hours=23)
        assert cache.get("openai", "openai/o3") == CHAT_MAX_COMPLETION
        clock.advance(hours=2)
        assert cache.get("openai", "openai/o3") is None

    def test_persisted_entries_reload(self, store, clock):
        EndpointCache(store, clock=clock).remember("openai", "openai/o3", RESPONSES_MAX_OUTPUT)
        assert EndpointCache(store, clock=clock).get("openai", "openai/o3") == RESPONSES_MAX_OUTPUT

    def test_forget(self, store, clock):
        cache = EndpointCache(store, clock=clock)
        cache.remember("openai", "m", CHAT_MAX_COMPLETION)
        cache.forget("openai", "m")
        assert cache.get("openai", "m") is None
        assert store.get(ENDPOINT_CACHE_STORE_KEY) == {}

    def test_corrupt_entry_ignored(self, store, clock):
        store.set(ENDPOINT_CACHE_STORE_KEY, {"openai|m": {"route": "nocolon", "expires_at": "x"}})
        assert EndpointCache(store, clock=clock).get("openai", "m") is None

    def test_works_without_store(self, clock):
        cache = EndpointCache(clock=clock)
        cache.remember("openai", "m", CHAT_MAX_COMPLETION)
        assert cache.get("openai", "m") == CHAT_MAX_COMPLETION
