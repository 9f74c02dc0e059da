"""Shared HTTP plumbing for network adapters.

HttpProviderAdapter owns (or borrows) an ``httpx.AsyncClient`` and provides:
- ``_post_json``: buffered POST with backoff on RateLimited/ServerError
- ``_stream``: streamed POST driven through a StreamingEngine; retried with
  backoff only if the failure happened before any byte arrived
- header assembly with provider-hint forwarding

HTTP statuses and transport exceptions are normalized into GatewayErrors
here, so subclasses only build payloads and parse responses.
"""

import logging
import time
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

import httpx

from ..config import get_api_key
from ..metadata.types import ModelDescriptor
from ..observability import redact_headers
from ..unified_config import ProviderConfig
from .base import ProviderAdapter
from .errors import GatewayError, MalformedStream, normalize_http_error, normalize_transport_error
from .retry import RetryPolicy, with_backoff
from .streaming import DEFAULT_OVERALL_CEILING_MS, ChunkDecoder, StreamingEngine, StreamSink
from .types import LlmRequest, LlmResponse

logger = logging.getLogger(__name__)

# Never forwarded from configuration or provider hints.
BLOCKED_FORWARD_HEADERS = frozenset(
    {"authorization", "content-type", "accept", "x-api-key", "content-length", "host"}
)
REQUEST_ID_HEADERS = ("x-request-id", "request-id", "x-openrouter-request-id")


def request_id_from_headers(headers: httpx.Headers) -> Optional[str]:
    for name in REQUEST_ID_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


class HttpProviderAdapter(ProviderAdapter):
    """Base class for adapters speaking HTTP+JSON (and SSE for streams)."""

    def __init__(
        self,
        config: ProviderConfig,
        name: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        overall_ceiling_ms: int = DEFAULT_OVERALL_CEILING_MS,
    ):
        """Initialize the adapter.

        Args:
            config: Provider configuration
            name: Provider name used in logs and responses
            api_key: Explicit key; otherwise resolved from config/environment
            client: Shared httpx client (the adapter will not close it)
            retry_policy: Backoff for rate limits and server errors
            overall_ceiling_ms: Last-resort cap on any single stream wait
        """
        super().__init__(config, name)
        self._api_key = api_key if api_key is not None else get_api_key(
            self.kind.value, config.api_key
        )
        self._client = client
        self._owns_client = client is None
        self._retry_policy = retry_policy or RetryPolicy()
        self._overall_ceiling_ms = overall_ceiling_ms

    @property
    def api_base(self) -> str:
        return self._config.api_base or ""

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout_seconds)
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _forwarded_headers(self, request: LlmRequest) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for source in (self._config.headers, request.provider_hints):
            for key, value in source.items():
                if key.lower() in BLOCKED_FORWARD_HEADERS:
                    logger.debug("Not forwarding blocked header %s", key)
                    continue
                headers[key] = value
        return headers

    def _headers(self, request: LlmRequest, stream: bool = False) -> Dict[str, str]:
        headers = self._forwarded_headers(request)
        headers.update(self._auth_headers())
        headers["Content-Type"] = "application/json"
        headers["Accept"] = "text/event-stream" if stream else "application/json"
        return headers

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        model_id: str,
    ) -> Tuple[Dict[str, Any], httpx.Headers]:
        """POST and decode a JSON body, retrying transient failures."""

        async def attempt() -> Tuple[Dict[str, Any], httpx.Headers]:
            start = time.monotonic()
            logger.debug("POST %s headers=%s", url, redact_headers(headers))
            try:
                response = await self._get_client().post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise normalize_transport_error(
                    e,
                    provider=self.name,
                    model=model_id,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                ) from e
            if response.status_code >= 400:
                raise normalize_http_error(
                    response.status_code,
                    response.text,
                    response.headers,
                    provider=self.name,
                    model=model_id,
                )
            try:
                data = response.json()
            except ValueError as e:
                raise MalformedStream(
                    f"Response body is not JSON: {response.text[:120]!r}",
                    provider=self.name,
                    model=model_id,
                    status=response.status_code,
                ) from e
            if not isinstance(data, dict):
                raise MalformedStream(
                    "Response body is not a JSON object", provider=self.name, model=model_id
                )
            return data, response.headers

        return await with_backoff(
            attempt, self._retry_policy, description=f"{self.name} call to {model_id}"
        )

    async def _open_stream(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        model_id: str,
    ) -> AsyncIterator[bytes]:
        """Lazily open the HTTP stream and yield raw body chunks.

        The request is only sent on the first iteration, so connection and
        header wait count against the engine's first-token deadline.
        """
        logger.debug("POST %s (stream) headers=%s", url, redact_headers(headers))
        client = self._get_client()
        async with client.stream("POST", url, json=payload, headers=headers) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise normalize_http_error(
                    response.status_code,
                    body,
                    response.headers,
                    provider=self.name,
                    model=model_id,
                )
            async for chunk in response.aiter_bytes():
                yield chunk

    async def _stream(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        model: ModelDescriptor,
        decoder_factory: Callable[[], ChunkDecoder],
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        """Run one streamed call through a fresh StreamingEngine."""

        async def attempt() -> LlmResponse:
            engine = StreamingEngine(
                first_token_timeout_ms=self._config.first_token_timeout_ms,
                stall_timeout_ms=self._config.stall_timeout_ms,
                overall_ceiling_ms=self._overall_ceiling_ms,
                provider=self.name,
                model=model.id,
            )
            response = await engine.run(
                self._open_stream(url, payload, headers, model.id),
                decoder_factory(),
                sink,
            )
            return replace(response, time_to_first_chunk_ms=engine.time_to_first_chunk_ms)

        def should_retry(error: GatewayError) -> bool:
            return error.retryable and not error.stream_started

        return await with_backoff(
            attempt,
            self._retry_policy,
            description=f"{self.name} stream from {model.id}",
            should_retry=should_retry,
        )
