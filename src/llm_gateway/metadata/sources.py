"""Catalog sources: where model descriptors come from.

- OpenRouterCatalogSource: live model list from ``GET {api_base}/models``
- StaticCatalogSource: built-in table of well-known models for offline use

Both satisfy the CatalogSource protocol. Sources raise on failure; the
catalog decides how to degrade.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import httpx

from ..gateway.errors import normalize_http_error, normalize_transport_error
from .types import CapabilitySet, ModelDescriptor, Pricing, vendor_of

logger = logging.getLogger(__name__)


@runtime_checkable
class CatalogSource(Protocol):
    """Provides the current list of model descriptors."""

    @property
    def name(self) -> str:
        ...

    async def fetch(self) -> List[ModelDescriptor]:
        ...


def _per_1k(value: Any) -> Optional[float]:
    """Convert an OpenRouter per-token price string to USD per 1K tokens."""
    if value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if price < 0:
        # OpenRouter uses -1 for variable pricing
        return None
    return round(price * 1000, 8)


def _flag(values: Optional[Iterable[str]], *names: str) -> Optional[bool]:
    if values is None:
        return None
    return any(name in values for name in names)


def _token_field(parameters: Optional[List[str]]) -> Optional[str]:
    if parameters is None:
        return None
    for field_name in ("max_tokens", "max_output_tokens", "max_completion_tokens"):
        if field_name in parameters:
            return field_name
    return None


def parse_openrouter_model(item: Dict[str, Any]) -> ModelDescriptor:
    """Build a descriptor from one entry of OpenRouter's /models response.

    A missing ``supported_parameters`` list leaves the parameter-derived
    capabilities unknown; when the list is present, absent entries mean the
    capability is not supported.
    """
    parameters = item.get("supported_parameters")
    if parameters is not None:
        parameters = [str(p) for p in parameters]
    architecture = item.get("architecture") or {}
    input_modalities = architecture.get("input_modalities")
    top_provider = item.get("top_provider") or {}
    pricing = item.get("pricing") or {}

    context_window = item.get("context_length") or top_provider.get("context_length")
    max_output = top_provider.get("max_completion_tokens")

    return ModelDescriptor(
        id=item["id"],
        provider=vendor_of(item["id"]) or "openrouter",
        capabilities=CapabilitySet(
            tools=_flag(parameters, "tools"),
            json_mode=_flag(parameters, "response_format", "structured_outputs"),
            reasoning=_flag(parameters, "reasoning", "include_reasoning"),
            vision=_flag(input_modalities, "image"),
        ),
        context_window=int(context_window) if context_window else None,
        max_output_tokens=int(max_output) if max_output else None,
        pricing=Pricing(_per_1k(pricing.get("prompt")), _per_1k(pricing.get("completion"))),
        token_field=_token_field(parameters),
        display_name=item.get("name"),
    )


class OpenRouterCatalogSource:
    """Fetches the model list from OpenRouter."""

    def __init__(
        self,
        api_base: str = "https://openrouter.ai/api/v1",
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return "openrouter"

    async def fetch(self) -> List[ModelDescriptor]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        url = f"{self._api_base}/models"

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise normalize_transport_error(e, provider=self.name) from e

        if response.status_code >= 400:
            raise normalize_http_error(
                response.status_code, response.text, response.headers, provider=self.name
            )

        data = response.json().get("data")
        if not isinstance(data, list):
            raise ValueError("OpenRouter /models response has no 'data' list")

        models = []
        for item in data:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            try:
                models.append(parse_openrouter_model(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Skipping malformed catalog entry %r: %s", item.get("id"), e)
        if not models:
            raise ValueError("OpenRouter /models returned no usable models")
        return models


# Built-in descriptors for offline operation.
STATIC_MODELS: List[ModelDescriptor] = [
    ModelDescriptor(
        id="openai/gpt-4o",
        capabilities=CapabilitySet(tools=True, json_mode=True, reasoning=False, vision=True),
        context_window=128_000,
        max_output_tokens=16_384,
        pricing=Pricing(0.0025, 0.01),
        latency_ms=600,
        token_field="max_tokens",
    ),
    ModelDescriptor(
        id="openai/gpt-4o-mini",
        capabilities=CapabilitySet(tools=True, json_mode=True, reasoning=False, vision=True),
        context_window=128_000,
        max_output_tokens=16_384,
        pricing=Pricing(0.00015, 0.0006),
        latency_ms=400,
        token_field="max_tokens",
    ),
    ModelDescriptor(
        id="openai/o3-mini",
        capabilities=CapabilitySet(tools=True, json_mode=True, reasoning=True, vision=False),
        context_window=200_000,
        max_output_tokens=100_000,
        pricing=Pricing(0.0011, 0.0044),
        latency_ms=2_000,
        token_field="max_tokens",
    ),
    ModelDescriptor(
        id="anthropic/claude-sonnet-4",
        capabilities=CapabilitySet(tools=True, json_mode=False, reasoning=True, vision=True),
        context_window=200_000,
        max_output_tokens=64_000,
        pricing=Pricing(0.003, 0.015),
        latency_ms=900,
        token_field="max_tokens",
    ),
    ModelDescriptor(
        id="anthropic/claude-3.5-haiku",
        capabilities=CapabilitySet(tools=True, json_mode=False, reasoning=False, vision=True),
        context_window=200_000,
        max_output_tokens=8_192,
        pricing=Pricing(0.0008, 0.004),
        latency_ms=500,
        token_field="max_tokens",
    ),
    ModelDescriptor(
        id="google/gemini-2.0-flash-001",
        capabilities=CapabilitySet(tools=True, json_mode=True, reasoning=False, vision=True),
        context_window=1_048_576,
        max_output_tokens=8_192,
        pricing=Pricing(0.0001, 0.0004),
        latency_ms=350,
        token_field="max_tokens",
    ),
    ModelDescriptor(
        id="deepseek/deepseek-r1",
        capabilities=CapabilitySet(tools=False, json_mode=False, reasoning=True, vision=False),
        context_window=64_000,
        max_output_tokens=8_192,
        pricing=Pricing(0.00055, 0.00219),
        latency_ms=3_000,
        token_field="max_tokens",
    ),
]


class StaticCatalogSource:
    """Serves a fixed list of descriptors."""

    def __init__(self, models: Optional[List[ModelDescriptor]] = None):
        self._models = list(models) if models is not None else list(STATIC_MODELS)

    @property
    def name(self) -> str:
        return "static"

    async def fetch(self) -> List[ModelDescriptor]:
        return list(self._models)
