"""Streaming engine with adaptive first-token and stall deadlines.

State Machine:
    IDLE -> AWAITING_FIRST_CHUNK          (run() called, first-token deadline armed)
    AWAITING_FIRST_CHUNK -> STREAMING     (any byte received, stall deadline armed)
    STREAMING -> STREAMING                (chunk received, stall deadline re-armed)
    AWAITING_FIRST_CHUNK -> ERROR_TIMEOUT_FIRST_TOKEN
    STREAMING -> ERROR_TIMEOUT_STALL
    * -> ERROR_TRANSPORT                  (decoder error event, malformed data)
    * -> FINISHED                         (Finished event or graceful end)

The engine is protocol-agnostic: adapters supply a ChunkDecoder that turns
raw bytes into StreamEvents. Tool-call argument fragments are buffered here
and only surface as ToolCall events once the concatenated arguments are
valid JSON.
"""

import asyncio
import inspect
import json
import logging
import time
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

import httpx

from .errors import (
    GatewayError,
    MalformedStream,
    TimeoutFirstToken,
    TimeoutStall,
    normalize_stream_error,
    normalize_transport_error,
)
from .types import (
    Finished,
    LlmResponse,
    StreamError,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolCallNormalized,
    ToolDelta,
    Usage,
)

logger = logging.getLogger(__name__)

DEFAULT_FIRST_TOKEN_TIMEOUT_MS = 30_000
DEFAULT_STALL_TIMEOUT_MS = 10_000
DEFAULT_OVERALL_CEILING_MS = 600_000

StreamSink = Callable[[StreamEvent], Optional[Awaitable[None]]]


class StreamState(Enum):
    """Streaming engine states."""

    IDLE = "idle"
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    STREAMING = "streaming"
    FINISHED = "finished"
    ERROR_TIMEOUT_FIRST_TOKEN = "error_timeout_first_token"
    ERROR_TIMEOUT_STALL = "error_timeout_stall"
    ERROR_TRANSPORT = "error_transport"


_TERMINAL_STATES = {
    StreamState.FINISHED,
    StreamState.ERROR_TIMEOUT_FIRST_TOKEN,
    StreamState.ERROR_TIMEOUT_STALL,
    StreamState.ERROR_TRANSPORT,
}


@runtime_checkable
class ChunkDecoder(Protocol):
    """Turns raw stream bytes into StreamEvents for one provider protocol."""

    request_id: Optional[str]

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        ...

    def close(self) -> List[StreamEvent]:
        ...


class SSELineBuffer:
    """Splits a Server-Sent Events byte stream into ``data:`` payloads.

    Partial lines (including split UTF-8 sequences) are held until the
    terminating newline arrives. Comment lines and other SSE fields are
    dropped.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += chunk
        payloads = []
        while b"\n" in self._buffer:
            raw_line, self._buffer = self._buffer.split(b"\n", 1)
            payload = self._parse_line(raw_line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> List[str]:
        """Return a trailing payload that lacked a final newline."""
        raw_line, self._buffer = self._buffer, b""
        payload = self._parse_line(raw_line)
        return [payload] if payload is not None else []

    @staticmethod
    def _parse_line(raw_line: bytes) -> Optional[str]:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):]
        if payload.startswith(" "):
            payload = payload[1:]
        return payload if payload.strip() else None


class JsonSSEDecoder:
    """Base decoder for SSE streams whose data lines are JSON objects.

    Subclasses implement ``handle(data)``; ``[DONE]`` calls ``handle_done()``.
    """

    def __init__(self) -> None:
        self._lines = SSELineBuffer()
        self.request_id: Optional[str] = None

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        return self._decode(self._lines.feed(chunk))

    def close(self) -> List[StreamEvent]:
        return self._decode(self._lines.flush())

    def _decode(self, payloads: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for payload in payloads:
            if payload.strip() == "[DONE]":
                events.extend(self.handle_done())
                continue
            try:
                data = json.loads(payload)
            except ValueError as e:
                raise MalformedStream(f"Undecodable stream data: {payload[:120]!r}") from e
            if isinstance(data, dict):
                events.extend(self.handle(data))
        return events

    def handle(self, data: Dict[str, Any]) -> List[StreamEvent]:
        raise NotImplementedError

    def handle_done(self) -> List[StreamEvent]:
        return []


class _ToolBuffer:
    __slots__ = ("call_id", "name", "parts")

    def __init__(self, call_id: str, name: Optional[str]):
        self.call_id = call_id
        self.name = name
        self.parts: List[str] = []


async def emit_event(sink: Optional[StreamSink], event: StreamEvent) -> None:
    """Deliver an event to a sync or async sink."""
    if sink is None:
        return
    result = sink(event)
    if inspect.isawaitable(result):
        await result


class StreamingEngine:
    """Drives one streamed call through the state machine.

    Create one engine per call. After ``run`` returns or raises, ``state``,
    ``time_to_first_chunk_ms``, ``elapsed_ms`` and ``bytes_received`` describe
    what happened.
    """

    def __init__(
        self,
        first_token_timeout_ms: int = DEFAULT_FIRST_TOKEN_TIMEOUT_MS,
        stall_timeout_ms: int = DEFAULT_STALL_TIMEOUT_MS,
        overall_ceiling_ms: int = DEFAULT_OVERALL_CEILING_MS,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.first_token_timeout_ms = first_token_timeout_ms
        self.stall_timeout_ms = stall_timeout_ms
        self.overall_ceiling_ms = overall_ceiling_ms
        self.provider = provider
        self.model = model

        self.state = StreamState.IDLE
        self.bytes_received = 0
        self.time_to_first_chunk_ms: Optional[int] = None
        self.elapsed_ms = 0

        self._started_at = 0.0
        self._text_parts: List[str] = []
        self._tool_buffers: Dict[str, _ToolBuffer] = {}
        self._tool_calls: List[ToolCallNormalized] = []
        self._input_tokens: Optional[int] = None
        self._output_tokens: Optional[int] = None
        self._stop_reason: Optional[str] = None

    def _transition(self, new_state: StreamState) -> None:
        logger.debug(
            "stream %s/%s: %s -> %s",
            self.provider,
            self.model,
            self.state.value,
            new_state.value,
        )
        self.state = new_state

    def _elapsed(self) -> int:
        return int((time.monotonic() - self._started_at) * 1000)

    def _current_wait_seconds(self) -> float:
        if self.state == StreamState.AWAITING_FIRST_CHUNK:
            budget = self.first_token_timeout_ms
        else:
            budget = self.stall_timeout_ms
        return min(budget, self.overall_ceiling_ms) / 1000.0

    async def run(
        self,
        chunks: AsyncIterator[bytes],
        decoder: ChunkDecoder,
        sink: Optional[StreamSink] = None,
    ) -> LlmResponse:
        """Consume the byte stream until it finishes or a deadline fires.

        Args:
            chunks: Raw byte chunks; opening the connection may be deferred
                to the first iteration so it counts against the first-token
                deadline.
            decoder: Provider-specific decoder
            sink: Optional sync or async callable receiving events in order

        Returns:
            LlmResponse assembled from the received events

        Raises:
            TimeoutFirstToken, TimeoutStall, MalformedStream or any
            GatewayError raised while opening or reading the stream.
        """
        if self.state != StreamState.IDLE:
            raise RuntimeError("StreamingEngine instances are single-use")

        iterator = chunks.__aiter__()
        self._started_at = time.monotonic()
        self._transition(StreamState.AWAITING_FIRST_CHUNK)

        try:
            finished = False
            while not finished:
                try:
                    async with asyncio.timeout(self._current_wait_seconds()):
                        chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    raise self._timeout_error()

                if not chunk:
                    continue
                if self.state == StreamState.AWAITING_FIRST_CHUNK:
                    self.time_to_first_chunk_ms = self._elapsed()
                    self._transition(StreamState.STREAMING)
                self.bytes_received += len(chunk)
                finished = await self._dispatch(decoder.feed(chunk), sink)

            if not finished:
                finished = await self._dispatch(decoder.close(), sink)
            if not finished:
                await self._finish(Finished(self._stop_reason), sink)

        except GatewayError as e:
            if self.state not in _TERMINAL_STATES:
                self._transition(StreamState.ERROR_TRANSPORT)
            e.stream_started = self.bytes_received > 0
            e.provider = e.provider or self.provider
            e.model = e.model or self.model
            raise
        except httpx.HTTPError as e:
            self._transition(StreamState.ERROR_TRANSPORT)
            error = normalize_transport_error(
                e, provider=self.provider, model=self.model, elapsed_ms=self._elapsed()
            )
            error.stream_started = self.bytes_received > 0
            raise error from e
        finally:
            self.elapsed_ms = self._elapsed()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        return LlmResponse(
            text="".join(self._text_parts),
            tool_calls=tuple(self._tool_calls),
            usage=self._usage(),
            stop_reason=self._stop_reason,
            request_id=decoder.request_id,
            model=self.model,
            provider=self.provider,
        )

    async def _dispatch(self, events: List[StreamEvent], sink: Optional[StreamSink]) -> bool:
        for event in events:
            if isinstance(event, TextDelta):
                self._text_parts.append(event.text)
            elif isinstance(event, ToolDelta):
                buffer = self._tool_buffers.get(event.call_id)
                if buffer is None:
                    buffer = _ToolBuffer(event.call_id, event.name)
                    self._tool_buffers[event.call_id] = buffer
                elif event.name and not buffer.name:
                    buffer.name = event.name
                buffer.parts.append(event.partial_arguments)
            elif isinstance(event, ToolCall):
                self._tool_calls.append(event.call)
            elif isinstance(event, Usage):
                if event.input_tokens is not None:
                    self._input_tokens = event.input_tokens
                if event.output_tokens is not None:
                    self._output_tokens = event.output_tokens
            elif isinstance(event, StreamError):
                self._transition(StreamState.ERROR_TRANSPORT)
                raise normalize_stream_error(
                    event.message, event.code, provider=self.provider, model=self.model
                )
            elif isinstance(event, Finished):
                await self._finish(event, sink)
                return True
            await emit_event(sink, event)
        return False

    async def _finish(self, event: Finished, sink: Optional[StreamSink]) -> None:
        for buffer in self._tool_buffers.values():
            call = self._assemble(buffer)
            self._tool_calls.append(call)
            await emit_event(sink, ToolCall(call))
        self._tool_buffers.clear()
        if event.stop_reason is not None:
            self._stop_reason = event.stop_reason
        self._transition(StreamState.FINISHED)
        await emit_event(sink, Finished(self._stop_reason))

    def _assemble(self, buffer: _ToolBuffer) -> ToolCallNormalized:
        """Join the argument pieces of one call into a ToolCall.

        The payload is the exact concatenation of the streamed pieces. The
        only exception is a call whose pieces are empty or whitespace, which
        gets "{}".
        """
        arguments = "".join(buffer.parts)
        if not arguments.strip():
            arguments = "{}"
        if not buffer.name:
            raise MalformedStream(
                f"Tool call {buffer.call_id} finished without a name",
                provider=self.provider,
                model=self.model,
            )
        try:
            return ToolCallNormalized(buffer.call_id, buffer.name, arguments)
        except ValueError as e:
            raise MalformedStream(
                f"Tool call {buffer.call_id} ({buffer.name}) arguments are not valid JSON",
                provider=self.provider,
                model=self.model,
            ) from e

    def _usage(self) -> Optional[TokenUsage]:
        if self._input_tokens is None and self._output_tokens is None:
            return None
        return TokenUsage.of(self._input_tokens or 0, self._output_tokens or 0)

    def _timeout_error(self) -> GatewayError:
        elapsed = self._elapsed()
        if self.state == StreamState.AWAITING_FIRST_CHUNK:
            self._transition(StreamState.ERROR_TIMEOUT_FIRST_TOKEN)
            logger.warning(
                "No first chunk from %s/%s within %dms",
                self.provider,
                self.model,
                self.first_token_timeout_ms,
            )
            return TimeoutFirstToken(elapsed, provider=self.provider, model=self.model)
        self._transition(StreamState.ERROR_TIMEOUT_STALL)
        logger.warning(
            "Stream from %s/%s stalled for %dms after %d bytes",
            self.provider,
            self.model,
            self.stall_timeout_ms,
            self.bytes_received,
        )
        return TimeoutStall(
            elapsed,
            self.bytes_received,
            partial_text="".join(self._text_parts),
            partial_tool_arguments={
                call_id: "".join(buffer.parts)
                for call_id, buffer in self._tool_buffers.items()
            },
            provider=self.provider,
            model=self.model,
        )
