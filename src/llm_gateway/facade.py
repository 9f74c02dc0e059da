"""Gateway facade: the single entry point for callers.

LlmGateway wires configuration, the model catalog, selection, provider
adapters and the token accountant together:

    async with LlmGateway.from_config() as gateway:
        selection = await gateway.resolve("code_writing")
        response = await gateway.call(request, selection)

Every call is budgeted against the selected model's limits, recorded in the
model's circuit breaker and described by one structured log record.
"""

import logging
import time
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from .config import get_api_key
from .gateway import circuit_breaker_registry
from .gateway.anthropic import AnthropicAdapter
from .gateway.base import ProviderAdapter
from .gateway.circuit_breaker import CircuitBreakerConfig
from .gateway.endpoint_cache import EndpointCache
from .gateway.errors import (
    GatewayError,
    RateLimited,
    ServerError,
    TimeoutFirstToken,
    TimeoutStall,
    ToolIterationLimitReached,
)
from .gateway.mock import MockAdapter
from .gateway.openai_chat import OpenAIChatAdapter
from .gateway.openai_responses import OpenAIResponsesAdapter
from .gateway.openrouter import OpenRouterAdapter
from .gateway.retry import RetryPolicy
from .gateway.streaming import StreamSink
from .gateway.tokens import TokenBudget, compute_output_budget, estimate_input_tokens
from .gateway.tool_loop import ToolExecutor, run_tool_loop
from .gateway.types import LlmRequest, LlmResponse, ToolResultContent
from .metadata.catalog import ModelCatalog
from .metadata.selection import ExternalRanker, ModelSelectionService
from .metadata.sources import CatalogSource, OpenRouterCatalogSource, StaticCatalogSource
from .metadata.types import Intent, ModelDescriptor, SelectionConstraints, SelectionResult
from .metadata.worker import DEFAULT_INTERVAL_SECONDS, CatalogWorker
from .observability import (
    CallRecord,
    GatewayEventType,
    TranscriptLogger,
    emit_gateway_event,
    log_call,
)
from .storage import JsonFileStore, KeyValueStore, MemoryStore
from .unified_config import ProviderConfig, UnifiedConfig, get_config

logger = logging.getLogger(__name__)

# Failures that count against a model's circuit breaker
BREAKER_FAILURES = (RateLimited, ServerError, TimeoutFirstToken, TimeoutStall)


def create_adapter(
    name: str,
    config: ProviderConfig,
    retry_policy: Optional[RetryPolicy] = None,
    endpoint_cache: Optional[EndpointCache] = None,
    client: Optional[httpx.AsyncClient] = None,
    overall_ceiling_ms: int = 600_000,
) -> ProviderAdapter:
    """Build the adapter for a configured provider.

    Args:
        name: Provider name from configuration
        config: Provider configuration
        retry_policy: Backoff policy for network adapters
        endpoint_cache: Shared route cache for OpenAI-compatible adapters
        client: Shared httpx client (optional)
        overall_ceiling_ms: Cap on any single stream wait

    Returns:
        ProviderAdapter for ``config.provider_kind``
    """
    kind = config.provider_kind
    if kind == "mock":
        return MockAdapter(config, name=name, overall_ceiling_ms=overall_ceiling_ms)

    common = dict(
        name=name,
        client=client,
        retry_policy=retry_policy,
        overall_ceiling_ms=overall_ceiling_ms,
    )
    if kind == "anthropic":
        return AnthropicAdapter(config, **common)
    if kind == "openrouter":
        return OpenRouterAdapter(config, endpoint_cache=endpoint_cache, **common)
    if kind == "openai_responses" or (kind == "openai_chat" and config.use_responses_api):
        return OpenAIResponsesAdapter(config, endpoint_cache=endpoint_cache, **common)
    if kind == "openai_chat":
        return OpenAIChatAdapter(config, endpoint_cache=endpoint_cache, **common)
    raise ValueError(f"Unknown provider kind: {kind}")


def build_catalog_source(config: UnifiedConfig, client: Optional[httpx.AsyncClient] = None) -> CatalogSource:
    if config.catalog.source == "static":
        return StaticCatalogSource()
    return OpenRouterCatalogSource(
        api_base=config.catalog.api_base,
        api_key=get_api_key("openrouter", _openrouter_key(config)),
        timeout_seconds=config.catalog.fetch_timeout_seconds,
        client=client,
    )


def _openrouter_key(config: UnifiedConfig) -> Optional[str]:
    for provider in config.providers.values():
        if provider.provider_kind == "openrouter" and provider.api_key:
            return provider.api_key
    return None


def build_store(config: UnifiedConfig) -> KeyValueStore:
    if not config.storage.enabled:
        return MemoryStore()
    return JsonFileStore(Path(config.storage.directory).expanduser())


def render_prompt(request: LlmRequest) -> str:
    """Flatten a request into plain text for transcripts."""
    lines = []
    if request.system:
        lines.append(f"[system] {request.system}")
    for message in request.messages:
        role = message.role.value
        text = message.text_content()
        if text:
            lines.append(f"[{role}] {text}")
        for part in message.content:
            if isinstance(part, ToolResultContent):
                lines.append(f"[tool result {part.name} {part.call_id}] {part.content}")
        for call in message.tool_calls:
            lines.append(f"[{role} tool call {call.call_id}] {call.name} {call.arguments}")
    return "\n".join(lines)


class LlmGateway:
    """Resolve intents to models and run calls against them."""

    def __init__(
        self,
        config: UnifiedConfig,
        catalog: ModelCatalog,
        selection: ModelSelectionService,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        store: Optional[KeyValueStore] = None,
        endpoint_cache: Optional[EndpointCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        worker_interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ):
        """Initialize the gateway.

        Args:
            config: Unified configuration
            catalog: Model catalog
            selection: Selection service over ``catalog``
            adapters: Pre-built adapters by provider name; others are
                created on first use from ``config.providers``
            store: Durable key-value store
            endpoint_cache: Route cache shared by OpenAI-compatible adapters
            http_client: Shared httpx client for adapters created lazily
            worker_interval_seconds: Staleness check interval of the
                background catalog worker
        """
        self._config = config
        self._catalog = catalog
        self._selection = selection
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._store = store
        self._endpoint_cache = endpoint_cache or EndpointCache(store)
        self._http_client = http_client
        self._retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_seconds=config.retry.base_delay_seconds,
            max_delay_seconds=config.retry.max_delay_seconds,
            jitter=config.retry.jitter,
        )
        self._worker = CatalogWorker(catalog, worker_interval_seconds)
        self._transcripts = TranscriptLogger.from_config(config.observability.transcripts)

    @classmethod
    def from_config(
        cls,
        config: Optional[UnifiedConfig] = None,
        *,
        store: Optional[KeyValueStore] = None,
        ranker: Optional[ExternalRanker] = None,
        catalog_source: Optional[CatalogSource] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "LlmGateway":
        """Build the full stack from configuration.

        Args:
            config: Configuration; defaults to ``get_config()``
            store: Key-value store; defaults to the configured state directory
            ranker: Optional external ranker for selection
            catalog_source: Override for the configured catalog source
            http_client: Shared httpx client

        Returns:
            A gateway that still needs ``start()``
        """
        config = config or get_config()
        store = store if store is not None else build_store(config)

        breaker_settings = config.circuit_breaker
        if breaker_settings.enabled:
            circuit_breaker_registry.configure_circuit_breakers(
                CircuitBreakerConfig(
                    failure_threshold=breaker_settings.failure_threshold,
                    min_requests=breaker_settings.min_requests,
                    window_seconds=breaker_settings.window_seconds,
                    cooldown_seconds=breaker_settings.cooldown_seconds,
                )
            )
            outage_check = circuit_breaker_registry.is_model_in_outage
        else:
            outage_check = _never_in_outage

        catalog = ModelCatalog(
            source=catalog_source or build_catalog_source(config, http_client),
            store=store,
            refresh_ttl=timedelta(hours=config.catalog.refresh_ttl_hours),
            default_model_id=config.catalog.default_model,
            max_refresh_retries=config.catalog.max_refresh_retries,
            refresh_backoff_seconds=config.catalog.refresh_backoff_seconds,
        )
        if config.selection.ranking == "external" and ranker is None:
            logger.warning("External ranking configured but no ranker supplied; using internal scores")
        selection = ModelSelectionService(
            catalog,
            store=store,
            sticky_ttl=timedelta(days=config.selection.sticky_days),
            ranker=ranker,
            outage_check=outage_check,
        )
        return cls(config, catalog, selection, store=store, http_client=http_client)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def config(self) -> UnifiedConfig:
        return self._config

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def selection(self) -> ModelSelectionService:
        return self._selection

    async def start(self) -> None:
        """Load the persisted catalog, refresh it if stale, start the worker."""
        self._catalog.load_persisted()
        await self._catalog.ensure_fresh()
        if self._config.catalog.background_refresh:
            self._worker.start()

    async def stop(self) -> None:
        """Stop the worker and close adapters."""
        await self._worker.stop()
        for adapter in self._adapters.values():
            await adapter.aclose()
        if self._transcripts is not None:
            self._transcripts.close()

    async def __aenter__(self) -> "LlmGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def get_health_status(self) -> Dict[str, object]:
        return {
            "catalog": self._catalog.get_health_status(),
            "worker_running": self._worker.running,
            "providers": sorted(self._adapters),
        }

    # ------------------------------------------------------------------
    # Resolution and routing
    # ------------------------------------------------------------------

    async def resolve(
        self,
        intent: Union[str, Intent],
        constraints: Optional[SelectionConstraints] = None,
    ) -> SelectionResult:
        """Resolve an intent (or preset name) to a model."""
        await self._catalog.ensure_fresh()
        return await self._selection.resolve(intent, constraints)

    def adapter_for(self, model_id: str) -> ProviderAdapter:
        """Adapter serving ``model_id``, by routing pattern then default provider."""
        name = self._config.get_provider_for_model(model_id)
        adapter = self._adapters.get(name)
        if adapter is None:
            provider_config = self._config.providers.get(name)
            if provider_config is None:
                raise ValueError(f"No configuration for provider {name!r}")
            adapter = create_adapter(
                name,
                provider_config,
                retry_policy=self._retry_policy,
                endpoint_cache=self._endpoint_cache,
                client=self._http_client,
                overall_ceiling_ms=self._config.streaming.overall_ceiling_ms,
            )
            self._adapters[name] = adapter
        return adapter

    def model_for(self, selection: SelectionResult) -> ModelDescriptor:
        """Descriptor for a selection; unknown limits if it left the catalog."""
        return self._catalog.get(selection.model_id) or ModelDescriptor(id=selection.model_id)

    def budget_request(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        adapter: ProviderAdapter,
    ) -> Tuple[LlmRequest, TokenBudget]:
        """Apply the token accountant to a request."""
        requested = request.max_output_tokens or adapter.config.max_output_tokens
        budget = compute_output_budget(
            requested,
            model_max_output=model.max_output_tokens,
            context_window=model.context_window,
            input_tokens=estimate_input_tokens(request),
            model_id=model.id,
        )
        if budget.clamped:
            emit_gateway_event(
                GatewayEventType.TOKEN_BUDGET_CLAMPED,
                {
                    "model_id": model.id,
                    "requested": budget.requested,
                    "effective": budget.effective,
                },
            )
        return request.with_max_output_tokens(budget.effective), budget

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(self, request: LlmRequest, selection: SelectionResult) -> LlmResponse:
        """Buffered completion against the selected model.

        Raises:
            GatewayError: Normalized provider failure
        """
        model = self.model_for(selection)
        adapter = self.adapter_for(model.id)
        prepared, budget = self.budget_request(request, model, adapter)
        return await self._observe(
            lambda: adapter.call(prepared, model),
            prepared,
            adapter,
            model,
            selection,
            streaming=False,
            warnings=budget.warnings,
        )

    async def call_streaming(
        self,
        request: LlmRequest,
        selection: SelectionResult,
        sink: Optional[StreamSink] = None,
    ) -> LlmResponse:
        """Streamed completion; events go to ``sink`` as they arrive.

        Falls back to a buffered call when the provider has streaming
        disabled.
        """
        model = self.model_for(selection)
        adapter = self.adapter_for(model.id)
        prepared, budget = self.budget_request(request, model, adapter)
        if not adapter.config.enable_streaming:
            logger.debug("Streaming disabled for %s; using buffered call", adapter.name)
            return await self._observe(
                lambda: adapter.call(prepared, model),
                prepared,
                adapter,
                model,
                selection,
                streaming=False,
                warnings=budget.warnings,
            )
        return await self._observe(
            lambda: adapter.call_streaming(prepared, model, sink),
            prepared,
            adapter,
            model,
            selection,
            streaming=True,
            warnings=budget.warnings,
        )

    async def run_tool_loop(
        self,
        request: LlmRequest,
        selection: SelectionResult,
        tool_executor: ToolExecutor,
        max_tool_iterations: Optional[int] = None,
    ) -> LlmResponse:
        """Run the tool loop, budgeting every round against the model."""
        model = self.model_for(selection)
        adapter = self.adapter_for(model.id)
        warnings: List[str] = []

        def prepare(current: LlmRequest) -> LlmRequest:
            # Each round starts from the caller's requested budget.
            current = replace(current, max_output_tokens=request.max_output_tokens)
            prepared, budget = self.budget_request(current, model, adapter)
            warnings.extend(w for w in budget.warnings if w not in warnings)
            return prepared

        limit = max_tool_iterations or self._config.tool_loop.max_tool_iterations
        return await self._observe(
            lambda: run_tool_loop(adapter, request, model, tool_executor, limit, prepare=prepare),
            request,
            adapter,
            model,
            selection,
            streaming=False,
            warnings=warnings,
        )

    async def resolve_and_call(
        self,
        request: LlmRequest,
        intent: Union[str, Intent],
        constraints: Optional[SelectionConstraints] = None,
        sink: Optional[StreamSink] = None,
    ) -> LlmResponse:
        """Resolve the intent, then call (streaming when a sink is given)."""
        selection = await self.resolve(intent, constraints)
        if sink is not None:
            return await self.call_streaming(request, selection, sink)
        return await self.call(request, selection)

    async def _observe(
        self,
        operation: Callable[[], Awaitable[LlmResponse]],
        request: LlmRequest,
        adapter: ProviderAdapter,
        model: ModelDescriptor,
        selection: SelectionResult,
        streaming: bool,
        warnings: Sequence[str],
    ) -> LlmResponse:
        record = CallRecord(
            provider=adapter.name,
            model=model.id,
            streaming=streaming,
            via_sticky=selection.via_sticky,
            intent=selection.intent,
        )
        if self._transcripts is not None:
            self._transcripts.log_request(adapter.name, model.id, render_prompt(request))
        start = time.monotonic()
        try:
            response = await operation()
        except GatewayError as e:
            record.elapsed_ms = int((time.monotonic() - start) * 1000)
            if self._transcripts is not None:
                self._transcripts.log_response(
                    adapter.name, model.id, "", record.elapsed_ms, error=str(e)
                )
            record.error_category = e.category.value
            record.warnings = list(warnings)
            if isinstance(e, ToolIterationLimitReached) and e.last_response is not None:
                self._fill_record(record, e.last_response)
            self._record_breaker(model.id, e)
            self._log(record)
            raise

        record.elapsed_ms = int((time.monotonic() - start) * 1000)
        response = replace(response, warnings=tuple(response.warnings) + tuple(warnings))
        record.warnings = list(response.warnings)
        self._fill_record(record, response)
        self._record_breaker(model.id, None)
        if self._transcripts is not None:
            self._transcripts.log_response(adapter.name, model.id, response.text, record.elapsed_ms)
        self._log(record)
        return response

    @staticmethod
    def _fill_record(record: CallRecord, response: LlmResponse) -> None:
        record.endpoint = response.endpoint
        record.request_id = response.request_id
        record.time_to_first_chunk_ms = response.time_to_first_chunk_ms
        if response.usage is not None:
            record.input_tokens = response.usage.input_tokens
            record.output_tokens = response.usage.output_tokens
            record.total_tokens = response.usage.total_tokens

    def _record_breaker(self, model_id: str, error: Optional[GatewayError]) -> None:
        if not self._config.circuit_breaker.enabled:
            return
        if error is None:
            circuit_breaker_registry.record_model_result(model_id, success=True)
        elif isinstance(error, BREAKER_FAILURES):
            circuit_breaker_registry.record_model_result(model_id, success=False)

    def _log(self, record: CallRecord) -> None:
        if self._config.observability.log_calls:
            log_call(record)


def _never_in_outage(model_id: str) -> bool:
    return False
