"""Deterministic mock provider.

Replays a script of turns. Each turn is encoded as OpenAI Chat Completions
SSE bytes and decoded by the real StreamingEngine, so timeouts, tool-call
assembly and usage accounting behave exactly as with a network provider.

Stream profiles (``MockConfig.profile``):
    normal              all chunks, paced by the configured delays
    no_first_chunk      never sends a byte (first-token timeout)
    stall_after_chunks  sends N chunks, then goes silent (stall timeout)

Example:
    adapter = MockAdapter(
        ProviderConfig(provider_kind="mock"),
        turns=[
            MockTurn(tool_calls=(ToolCallNormalized("c1", "read_file", '{"path": "a"}'),)),
            MockTurn(text="done"),
        ],
    )
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import AsyncIterator, List, Optional, Sequence, Tuple, Union

from ..metadata.types import ModelDescriptor
from ..unified_config import MockConfig, ProviderConfig
from .base import AdapterCapabilities, ProviderAdapter, ProviderKind
from .openai_chat import OpenAIChatStreamDecoder
from .streaming import DEFAULT_OVERALL_CEILING_MS, StreamingEngine, StreamSink
from .tokens import estimate_input_tokens, estimate_tokens
from .types import LlmRequest, LlmResponse, ToolCallNormalized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MockTurn:
    """One scripted assistant reply."""

    text: str = ""
    tool_calls: Tuple[ToolCallNormalized, ...] = ()
    stop_reason: Optional[str] = None


def _chunks(text: str, size: int) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def _sse(data: dict) -> bytes:
    return f"data: {json.dumps(data)}\n\n".encode("utf-8")


def encode_turn_sse(
    turn: MockTurn,
    request_id: str,
    model_name: str,
    chunk_size: int = 16,
    input_tokens: int = 0,
) -> List[bytes]:
    """Encode a turn as Chat Completions SSE events, one event per element."""

    def chunk(delta: dict, finish_reason: Optional[str] = None) -> bytes:
        return _sse(
            {
                "id": request_id,
                "object": "chat.completion.chunk",
                "model": model_name,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
        )

    events = [chunk({"role": "assistant"})]
    for piece in _chunks(turn.text, chunk_size):
        events.append(chunk({"content": piece}))
    for index, call in enumerate(turn.tool_calls):
        events.append(
            chunk(
                {
                    "tool_calls": [
                        {
                            "index": index,
                            "id": call.call_id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": ""},
                        }
                    ]
                }
            )
        )
        for piece in _chunks(call.arguments, chunk_size):
            events.append(
                chunk({"tool_calls": [{"index": index, "function": {"arguments": piece}}]})
            )

    stop_reason = turn.stop_reason or ("tool_calls" if turn.tool_calls else "stop")
    events.append(chunk({}, finish_reason=stop_reason))
    output_tokens = estimate_tokens(turn.text) + sum(
        estimate_tokens(c.arguments) for c in turn.tool_calls
    )
    events.append(
        _sse(
            {
                "id": request_id,
                "object": "chat.completion.chunk",
                "choices": [],
                "usage": {
                    "prompt_tokens": input_tokens,
                    "completion_tokens": output_tokens,
                    "total_tokens": input_tokens + output_tokens,
                },
            }
        )
    )
    events.append(b"data: [DONE]\n\n")
    return events


class MockAdapter(ProviderAdapter):
    """Scripted provider for tests and offline development."""

    kind = ProviderKind.MOCK

    def __init__(
        self,
        config: ProviderConfig,
        name: Optional[str] = None,
        turns: Optional[Sequence[Union[str, MockTurn]]] = None,
        overall_ceiling_ms: int = DEFAULT_OVERALL_CEILING_MS,
    ):
        """Initialize the mock.

        Args:
            config: Provider configuration; ``config.mock`` sets the profile
            name: Provider name
            turns: Script to replay; defaults to ``config.mock.script``. Once
                exhausted, the last turn repeats.
            overall_ceiling_ms: Last-resort cap on any single stream wait
        """
        super().__init__(config, name)
        script = turns if turns is not None else config.mock.script
        self._turns: List[MockTurn] = [
            MockTurn(text=t) if isinstance(t, str) else t for t in script
        ] or [MockTurn(text="")]
        self._overall_ceiling_ms = overall_ceiling_ms
        self.calls = 0
        self.requests: List[LlmRequest] = []

    @property
    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(supports_json_mode=True)

    @property
    def mock_config(self) -> MockConfig:
        return self._config.mock

    def _next_turn(self) -> MockTurn:
        turn = self._turns[min(self.calls, len(self._turns) - 1)]
        self.calls += 1
        return turn

    async def _byte_stream(self, events: List[bytes]) -> AsyncIterator[bytes]:
        settings = self.mock_config
        if settings.profile == "no_first_chunk":
            await asyncio.Event().wait()
        if settings.first_chunk_delay_ms:
            await asyncio.sleep(settings.first_chunk_delay_ms / 1000.0)
        for sent, event in enumerate(events):
            if settings.profile == "stall_after_chunks" and sent >= settings.stall_after_chunks:
                logger.debug("Mock stream stalling after %d chunks", sent)
                await asyncio.Event().wait()
            if sent and settings.inter_chunk_delay_ms:
                await asyncio.sleep(settings.inter_chunk_delay_ms / 1000.0)
            yield event

    async def _run(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        self.requests.append(request)
        turn = self._next_turn()
        events = encode_turn_sse(
            turn,
            request_id=f"mock-{self.calls}",
            model_name=model.id,
            chunk_size=self.mock_config.chunk_size,
            input_tokens=estimate_input_tokens(request),
        )
        engine = StreamingEngine(
            first_token_timeout_ms=self._config.first_token_timeout_ms,
            stall_timeout_ms=self._config.stall_timeout_ms,
            overall_ceiling_ms=self._overall_ceiling_ms,
            provider=self.name,
            model=model.id,
        )
        response = await engine.run(self._byte_stream(events), OpenAIChatStreamDecoder(), sink)
        return replace(
            response,
            endpoint="mock",
            time_to_first_chunk_ms=engine.time_to_first_chunk_ms,
        )

    async def _complete(self, request: LlmRequest, model: ModelDescriptor) -> LlmResponse:
        return await self._run(request, model, None)

    async def _complete_streaming(
        self,
        request: LlmRequest,
        model: ModelDescriptor,
        sink: Optional[StreamSink],
    ) -> LlmResponse:
        return await self._run(request, model, sink)
