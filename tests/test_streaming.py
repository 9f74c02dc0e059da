"""Tests for the streaming engine state machine."""

import asyncio
import json

import pytest

from llm_gateway.gateway.errors import (
    MalformedStream,
    RateLimited,
    TimeoutFirstToken,
    TimeoutStall,
)
from llm_gateway.gateway.streaming import (
    JsonSSEDecoder,
    SSELineBuffer,
    StreamingEngine,
    StreamState,
)
from llm_gateway.gateway.types import (
    Finished,
    StreamError,
    TextDelta,
    ToolCall,
    ToolDelta,
    Usage,
)


class SimpleDecoder(JsonSSEDecoder):
    """Minimal protocol: {"t": text} | {"tool": [id, name, args]} | {"usage": [in, out]} | {"stop": reason} | {"error": msg}."""

    def handle(self, data):
        if "id" in data:
            self.request_id = data["id"]
        if "t" in data:
            return [TextDelta(data["t"])]
        if "tool" in data:
            call_id, name, args = data["tool"]
            return [ToolDelta(call_id, name, args)]
        if "usage" in data:
            return [Usage(*data["usage"])]
        if "stop" in data:
            return [Finished(data["stop"])]
        if "error" in data:
            return [StreamError(data["error"], data.get("code"))]
        return []


def sse(*objects):
    return [f"data: {json.dumps(obj)}\n\n".encode() for obj in objects]


async def chunks_from(items, delay=0.0, hang_after=None):
    for index, item in enumerate(items):
        if hang_after is not None and index >= hang_after:
            await asyncio.Event().wait()
        if delay:
            await asyncio.sleep(delay)
        yield item
    if hang_after is not None and hang_after >= len(items):
        await asyncio.Event().wait()


def engine(**kwargs):
    kwargs.setdefault("first_token_timeout_ms", 200)
    kwargs.setdefault("stall_timeout_ms", 100)
    return StreamingEngine(provider="test", model="test/model", **kwargs)


class TestSSELineBuffer:
    def test_split_lines_are_joined(self):
        buffer = SSELineBuffer()
        assert buffer.feed(b'data: {"a"') == []
        assert buffer.feed(b": 1}\n\n") == ['{"a": 1}']

    def test_comments_and_other_fields_dropped(self):
        buffer = SSELineBuffer()
        assert buffer.feed(b": keepalive\nevent: ping\ndata: x\n") == ["x"]

    def test_flush_returns_unterminated_payload(self):
        buffer = SSELineBuffer()
        buffer.feed(b"data: [DONE]")
        assert buffer.flush() == ["[DONE]"]


class TestStreamingEngine:
    """Happy path, tool assembly and deadline behavior."""

    @pytest.mark.asyncio
    async def test_text_stream_finishes(self):
        events = []
        stream = engine()
        response = await stream.run(
            chunks_from(sse({"id": "r1", "t": "Hel"}, {"t": "lo"}, {"usage": [3, 2]}, {"stop": "stop"})),
            SimpleDecoder(),
            events.append,
        )
        assert response.text == "Hello"
        assert response.stop_reason == "stop"
        assert response.request_id == "r1"
        assert response.usage.total_tokens == 5
        assert stream.state == StreamState.FINISHED
        assert stream.time_to_first_chunk_ms is not None
        assert events[0] == TextDelta("Hel")
        assert events[-1] == Finished("stop")

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited(self):
        seen = []

        async def sink(event):
            seen.append(event)

        await engine().run(chunks_from(sse({"t": "a"}, {"stop": "stop"})), SimpleDecoder(), sink)
        assert seen == [TextDelta("a"), Finished("stop")]

    @pytest.mark.asyncio
    async def test_tool_fragments_assembled_at_finish(self):
        events = []
        response = await engine().run(
            chunks_from(
                sse(
                    {"tool": ["c1", "read_file", '{"pa']},
                    {"tool": ["c1", None, 'th": "a.py"}']},
                    {"stop": "tool_calls"},
                )
            ),
            SimpleDecoder(),
            events.append,
        )
        assert len(response.tool_calls) == 1
        assert response.tool_calls[0].parsed_arguments() == {"path": "a.py"}
        tool_events = [e for e in events if isinstance(e, ToolCall)]
        assert tool_events[0].call.name == "read_file"
        # ToolCall is emitted before Finished
        assert isinstance(events[-1], Finished)

    @pytest.mark.asyncio
    async def test_invalid_tool_arguments_raise_malformed(self):
        with pytest.raises(MalformedStream):
            await engine().run(
                chunks_from(sse({"tool": ["c1", "run", '{"x": ']}, {"stop": "tool_calls"})),
                SimpleDecoder(),
            )

    @pytest.mark.asyncio
    async def test_graceful_end_without_finished(self):
        stream = engine()
        response = await stream.run(chunks_from(sse({"t": "partial"})), SimpleDecoder())
        assert response.text == "partial"
        assert stream.state == StreamState.FINISHED

    @pytest.mark.asyncio
    async def test_first_token_timeout(self):
        stream = engine(first_token_timeout_ms=50)
        with pytest.raises(TimeoutFirstToken) as exc_info:
            await stream.run(chunks_from(sse({"t": "x"}), hang_after=0), SimpleDecoder())
        assert stream.state == StreamState.ERROR_TIMEOUT_FIRST_TOKEN
        assert exc_info.value.stream_started is False
        assert exc_info.value.provider == "test"

    @pytest.mark.asyncio
    async def test_slow_first_chunk_within_budget_succeeds(self):
        stream = engine(first_token_timeout_ms=500, stall_timeout_ms=50)
        response = await stream.run(
            chunks_from(sse({"t": "ok"}, {"stop": "stop"}), delay=0.02), SimpleDecoder()
        )
        assert response.text == "ok"

    @pytest.mark.asyncio
    async def test_stall_carries_partial_output(self):
        stream = engine(stall_timeout_ms=50)
        with pytest.raises(TimeoutStall) as exc_info:
            await stream.run(
                chunks_from(sse({"t": "so far"}, {"tool": ["c1", "run", '{"a"']}), hang_after=2),
                SimpleDecoder(),
            )
        error = exc_info.value
        assert stream.state == StreamState.ERROR_TIMEOUT_STALL
        assert error.partial_text == "so far"
        assert error.partial_tool_arguments == {"c1": '{"a"'}
        assert error.bytes_received > 0
        assert error.stream_started is True

    @pytest.mark.asyncio
    async def test_stream_error_event_is_normalized(self):
        stream = engine()
        with pytest.raises(RateLimited):
            await stream.run(
                chunks_from(sse({"error": "Rate limit", "code": "rate_limit_error"})),
                SimpleDecoder(),
            )
        assert stream.state == StreamState.ERROR_TRANSPORT

    @pytest.mark.asyncio
    async def test_undecodable_data_is_malformed(self):
        with pytest.raises(MalformedStream):
            await engine().run(chunks_from([b"data: {not json\n\n"]), SimpleDecoder())

    @pytest.mark.asyncio
    async def test_engine_is_single_use(self):
        stream = engine()
        await stream.run(chunks_from(sse({"stop": "stop"})), SimpleDecoder())
        with pytest.raises(RuntimeError):
            await stream.run(chunks_from(sse({"stop": "stop"})), SimpleDecoder())

    @pytest.mark.asyncio
    async def test_joined_tool_pieces_equal_payload(self):
        events = []
        response = await engine().run(
            chunks_from(
                sse(
                    {"tool": ["c1", "calc", ' {"a": ']},
                    {"tool": ["c1", None, "1} "]},
                    {"stop": "tool_calls"},
                )
            ),
            SimpleDecoder(),
            events.append,
        )
        pieces = "".join(e.partial_arguments for e in events if isinstance(e, ToolDelta))
        assert response.tool_calls[0].arguments == pieces == ' {"a": 1} '
        assert [e.call.arguments for e in events if isinstance(e, ToolCall)] == [pieces]

    @pytest.mark.asyncio
    async def test_empty_tool_arguments_become_empty_object(self):
        response = await engine().run(
            chunks_from(sse({"tool": ["c1", "ping", ""]}, {"tool": ["c1", None, " "]}, {"stop": "tool_calls"})),
            SimpleDecoder(),
        )
        assert response.tool_calls[0].arguments == "{}"

    @pytest.mark.asyncio
    async def test_first_token_timeout_closes_connection(self):
        closed = []

        async def connection():
            try:
                await asyncio.Event().wait()
                yield b""
            finally:
                closed.append(True)

        with pytest.raises(TimeoutFirstToken):
            await engine(first_token_timeout_ms=30).run(connection(), SimpleDecoder())
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_slow_healthy_stream_outlives_stall_and_ceiling(self):
        """Every gap is under the stall deadline, total time is well over it."""
        stream = engine(first_token_timeout_ms=500, stall_timeout_ms=80, overall_ceiling_ms=100)
        pieces = [{"t": str(i)} for i in range(8)] + [{"stop": "stop"}]

        response = await stream.run(chunks_from(sse(*pieces), delay=0.03), SimpleDecoder())

        assert response.text == "01234567"
        assert stream.state == StreamState.FINISHED
        assert stream.elapsed_ms > 100
