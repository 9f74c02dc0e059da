"""Shared test configuration and fixtures."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from llm_gateway.gateway.circuit_breaker_registry import _reset_registry
from llm_gateway.metadata.types import CapabilitySet, ModelDescriptor, Pricing
from llm_gateway.observability import clear_gateway_events
from llm_gateway.storage import MemoryStore
from llm_gateway.unified_config import _reset_config

# =============================================================================
# Environment Reset
# =============================================================================

GATEWAY_ENV_VARS = (
    "LLM_GATEWAY_CONFIG",
    "LLM_GATEWAY_DEFAULT_PROVIDER",
    "LLM_GATEWAY_CATALOG_SOURCE",
    "LLM_GATEWAY_CATALOG_TTL_HOURS",
    "LLM_GATEWAY_DEFAULT_MODEL",
    "LLM_GATEWAY_STICKY_DAYS",
    "LLM_GATEWAY_MAX_TOOL_ITERATIONS",
    "LLM_GATEWAY_STATE_DIR",
    "LLM_GATEWAY_FIRST_TOKEN_TIMEOUT_MS",
    "LLM_GATEWAY_STALL_TIMEOUT_MS",
    "LLM_GATEWAY_USE_RESPONSES_API",
    "LLM_GATEWAY_MOCK_STREAM_PROFILE",
    "LLM_GATEWAY_MOCK_STALL_AFTER_CHUNKS",
    "LLM_GATEWAY_MOCK_FIRST_CHUNK_DELAY_MS",
    "LLM_GATEWAY_MOCK_INTER_CHUNK_DELAY_MS",
    "LLM_GATEWAY_LOG_CALLS",
    "LLM_GATEWAY_TRANSCRIPTS",
    "LLM_GATEWAY_TRANSCRIPT_DIR",
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch):
    """Clear gateway environment variables and module singletons before each test."""
    for name in GATEWAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    _reset_config()
    _reset_registry()
    clear_gateway_events()
    yield
    _reset_registry()
    clear_gateway_events()


# =============================================================================
# Shared builders
# =============================================================================


class FakeClock:
    """Settable UTC clock for catalog, selection and cache tests."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


def make_model(
    model_id: str,
    tools=True,
    json_mode=True,
    reasoning=False,
    vision=False,
    context_window=128_000,
    max_output_tokens=16_384,
    prompt_price=0.001,
    completion_price=0.002,
    latency_ms=500.0,
    token_field=None,
) -> ModelDescriptor:
    """Descriptor with sensible defaults; pass None to mark a field unknown."""
    return ModelDescriptor(
        id=model_id,
        capabilities=CapabilitySet(
            tools=tools, json_mode=json_mode, reasoning=reasoning, vision=vision
        ),
        context_window=context_window,
        max_output_tokens=max_output_tokens,
        pricing=Pricing(prompt=prompt_price, completion=completion_price),
        latency_ms=latency_ms,
        token_field=token_field,
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


# =============================================================================
# HTTP helpers
# =============================================================================


def sse_body(*chunks, done=True) -> bytes:
    """Encode JSON chunks as an SSE body, optionally closed with [DONE]."""
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class Recorder:
    """MockTransport handler that replays responses and records requests.

    Responses are served in order; the last one repeats.
    """

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(
            template.status_code, headers=template.headers, content=template.content
        )

    def payload(self, index=-1):
        return json.loads(self.requests[index].content)
