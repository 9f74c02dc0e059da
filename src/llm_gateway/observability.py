"""Structured call logging and gateway events.

Every adapter call produces exactly one CallRecord, logged on the
``llm_gateway.calls`` logger with the record attached as
``extra={"llm_call": {...}}`` so JSON log formatters can pick it up.
Gateway events (catalog refreshes, sticky decisions, endpoint switches,
circuit breaker transitions) are kept in an in-memory list for inspection
and logged on ``llm_gateway.events``.

Opt-in transcripts (TranscriptLogger) write prompts and responses to text
files under a configured directory via the ``llm_gateway.transcripts``
logger, which does not propagate to the application's handlers.

API keys and authorization headers never reach any of these loggers.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

if TYPE_CHECKING:
    from .unified_config import TranscriptConfig

logger = logging.getLogger(__name__)
call_logger = logging.getLogger("llm_gateway.calls")
event_logger = logging.getLogger("llm_gateway.events")

SENSITIVE_HEADERS = frozenset(
    {"authorization", "x-api-key", "api-key", "proxy-authorization", "cookie"}
)
REDACTED = "***"


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Return a copy of headers with credentials masked."""
    return {
        key: (REDACTED if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


@dataclass
class CallRecord:
    """Structured description of one adapter call."""

    provider: str
    model: str
    streaming: bool
    endpoint: Optional[str] = None
    request_id: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    time_to_first_chunk_ms: Optional[int] = None
    elapsed_ms: Optional[int] = None
    via_sticky: bool = False
    intent: Optional[str] = None
    error_category: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_log_dict(self) -> Dict[str, Any]:
        return asdict(self)


def log_call(record: CallRecord) -> None:
    """Emit the per-call log line."""
    level = logging.WARNING if record.error_category else logging.INFO
    call_logger.log(
        level,
        "llm call provider=%s model=%s endpoint=%s streaming=%s request_id=%s "
        "tokens=%s/%s ttfc_ms=%s elapsed_ms=%s sticky=%s error=%s",
        record.provider,
        record.model,
        record.endpoint,
        record.streaming,
        record.request_id,
        record.input_tokens,
        record.output_tokens,
        record.time_to_first_chunk_ms,
        record.elapsed_ms,
        record.via_sticky,
        record.error_category,
        extra={"llm_call": record.to_log_dict()},
    )


class GatewayEventType(Enum):
    """Types of events emitted by gateway components."""

    CATALOG_REFRESH_COMPLETE = "catalog_refresh_complete"
    CATALOG_REFRESH_FAILED = "catalog_refresh_failed"
    CATALOG_STALE_SERVE = "catalog_stale_serve"
    CATALOG_FALLBACK = "catalog_fallback"

    SELECTION_RESOLVED = "selection_resolved"
    STICKY_HIT = "sticky_hit"
    STICKY_INVALIDATED = "sticky_invalidated"
    RANKER_FALLBACK = "ranker_fallback"

    ENDPOINT_SWITCH = "endpoint_switch"
    TOKEN_BUDGET_CLAMPED = "token_budget_clamped"
    TOOL_ITERATION_LIMIT = "tool_iteration_limit"

    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    CIRCUIT_BREAKER_CLOSE = "circuit_breaker_close"


@dataclass
class GatewayEvent:
    event_type: GatewayEventType
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_gateway_events: List[GatewayEvent] = []
MAX_RETAINED_EVENTS = 1000


def emit_gateway_event(event_type: GatewayEventType, data: Dict[str, Any]) -> GatewayEvent:
    """Record and log a gateway event.

    Args:
        event_type: Type of event
        data: Event-specific data (must not contain secrets)

    Returns:
        The emitted GatewayEvent
    """
    event = GatewayEvent(event_type=event_type, data=data)
    _gateway_events.append(event)
    if len(_gateway_events) > MAX_RETAINED_EVENTS:
        del _gateway_events[: len(_gateway_events) - MAX_RETAINED_EVENTS]

    event_logger.info("Gateway event: %s data=%s", event_type.value, data)
    return event


def get_gateway_events(event_type: Optional[GatewayEventType] = None) -> List[GatewayEvent]:
    """Return emitted events in emission order, optionally filtered."""
    if event_type is None:
        return list(_gateway_events)
    return [e for e in _gateway_events if e.event_type == event_type]


def clear_gateway_events() -> None:
    _gateway_events.clear()


# =============================================================================
# Transcripts
# =============================================================================

transcript_logger = logging.getLogger("llm_gateway.transcripts")
transcript_logger.propagate = False

TRANSCRIPT_PREFIX = "llm_log_"
TRANSCRIPT_SUFFIX = ".txt"
SUMMARY_CHARS = 100


def _summarize(text: str) -> str:
    return f"{text[:SUMMARY_CHARS]}..." if len(text) > SUMMARY_CHARS else text


class TranscriptLogger:
    """Writes request and response transcripts to a per-run text file.

    Each instance opens ``llm_log_<timestamp>.txt`` under ``log_dir`` on first
    use, through a FileHandler on the ``llm_gateway.transcripts`` logger,
    and prunes older transcript files beyond ``log_files_to_keep``. Only
    prompts, responses, provider and model names are written.
    """

    def __init__(
        self,
        log_dir: Path,
        console_logging: bool = False,
        include_full_prompts: bool = True,
        include_full_responses: bool = True,
        log_files_to_keep: int = 10,
    ):
        self._log_dir = Path(log_dir).expanduser()
        self._console_logging = console_logging
        self._include_full_prompts = include_full_prompts
        self._include_full_responses = include_full_responses
        self._log_files_to_keep = log_files_to_keep
        self._handlers: List[logging.Handler] = []
        self.path: Optional[Path] = None

    @classmethod
    def from_config(cls, config: "TranscriptConfig") -> Optional["TranscriptLogger"]:
        """Build a logger from configuration, or None when transcripts are off."""
        if not config.enabled:
            return None
        return cls(
            Path(config.log_dir),
            console_logging=config.console_logging,
            include_full_prompts=config.include_full_prompts,
            include_full_responses=config.include_full_responses,
            log_files_to_keep=config.log_files_to_keep,
        )

    def _open(self) -> None:
        if self._handlers:
            return
        self._log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        self.path = self._log_dir / f"{TRANSCRIPT_PREFIX}{stamp}{TRANSCRIPT_SUFFIX}"

        formatter = logging.Formatter("%(message)s")
        file_handler = logging.FileHandler(self.path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        self._handlers.append(file_handler)
        if self._console_logging:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            self._handlers.append(console_handler)
        for handler in self._handlers:
            transcript_logger.addHandler(handler)
        transcript_logger.setLevel(logging.INFO)

        logger.info("Transcript logging to %s", self.path)
        self._clean_old_logs()

    def _clean_old_logs(self) -> None:
        files = [
            p
            for p in self._log_dir.iterdir()
            if p.is_file() and p.name.startswith(TRANSCRIPT_PREFIX) and p.suffix == TRANSCRIPT_SUFFIX
        ]
        files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for stale in files[self._log_files_to_keep:]:
            if stale == self.path:
                continue
            try:
                stale.unlink()
                logger.info("Deleted old transcript %s", stale)
            except OSError as e:
                logger.warning("Failed to delete old transcript %s: %s", stale, e)

    def _write(self, text: str) -> None:
        self._open()
        transcript_logger.info(text)

    def log_request(self, provider: str, model: str, prompt: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        entry = f"\n===== REQUEST: {provider} {model} =====\nTIMESTAMP: {stamp}\n"
        if self._include_full_prompts:
            entry += f"PROMPT:\n{prompt}\n"
        else:
            entry += f"PROMPT SUMMARY: {_summarize(prompt)}\n"
        self._write(entry)

    def log_response(
        self,
        provider: str,
        model: str,
        response: str,
        duration_ms: int,
        error: Optional[str] = None,
    ) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        entry = (
            f"\n===== RESPONSE: {provider} {model} =====\n"
            f"TIMESTAMP: {stamp}\nDURATION: {duration_ms}ms\n"
        )
        if error:
            entry += f"ERROR: {error}\n"
        if self._include_full_responses:
            entry += f"RESPONSE:\n{response}\n"
        else:
            entry += f"RESPONSE SUMMARY: {_summarize(response)}\n"
        self._write(entry)

    def close(self) -> None:
        for handler in self._handlers:
            transcript_logger.removeHandler(handler)
            handler.close()
        self._handlers = []
