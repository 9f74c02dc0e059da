"""Per-provider, per-model cache of which endpoint and token field a provider accepts.

When a provider rejects the output-token field ("Unsupported parameter:
'max_tokens'"), the adapter retries once on an alternate route. The route
that worked is remembered here for 24 hours so later calls go straight to
it. Entries are keyed by provider name and model id, so adapters sharing
one cache never pick up each other's routes. They persist in the
key-value store.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_TTL = timedelta(hours=24)
ENDPOINT_CACHE_STORE_KEY = "endpoint_cache"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def entry_key(provider: str, model_id: str) -> str:
    return f"{provider}|{model_id}"


@dataclass(frozen=True)
class EndpointRoute:
    """An endpoint plus the output-token field to send to it."""

    endpoint: str  # "chat" or "responses"
    token_field: str

    def key(self) -> str:
        return f"{self.endpoint}:{self.token_field}"

    @classmethod
    def parse(cls, value: str) -> "EndpointRoute":
        endpoint, token_field = value.split(":", 1)
        return cls(endpoint, token_field)


CHAT_MAX_TOKENS = EndpointRoute("chat", "max_tokens")
CHAT_MAX_COMPLETION = EndpointRoute("chat", "max_completion_tokens")
CHAT_MAX_OUTPUT = EndpointRoute("chat", "max_output_tokens")
RESPONSES_MAX_OUTPUT = EndpointRoute("responses", "max_output_tokens")
RESPONSES_MAX_COMPLETION = EndpointRoute("responses", "max_completion_tokens")


class EndpointCache:
    """Remembers the working route per (provider, model id)."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        ttl: timedelta = DEFAULT_ENDPOINT_TTL,
        namespace: str = ENDPOINT_CACHE_STORE_KEY,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._ttl = ttl
        self._namespace = namespace
        self._clock = clock
        self._entries: Dict[str, Dict[str, str]] = self._load()

    def _load(self) -> Dict[str, Dict[str, str]]:
        if self._store is None:
            return {}
        data = self._store.get(self._namespace)
        return dict(data) if isinstance(data, dict) else {}

    def get(self, provider: str, model_id: str) -> Optional[EndpointRoute]:
        """Return the cached route, or None if missing or expired."""
        entry = self._entries.get(entry_key(provider, model_id))
        if not entry:
            return None
        try:
            expires_at = datetime.fromisoformat(entry["expires_at"])
            route = EndpointRoute.parse(entry["route"])
        except (KeyError, ValueError):
            return None
        if self._clock() >= expires_at:
            return None
        return route

    def remember(self, provider: str, model_id: str, route: EndpointRoute) -> None:
        entries = dict(self._entries)
        entries[entry_key(provider, model_id)] = {
            "route": route.key(),
            "expires_at": (self._clock() + self._ttl).isoformat(),
        }
        self._entries = entries
        logger.info("Remembering route %s for %s on %s", route.key(), model_id, provider)
        if self._store is not None:
            try:
                self._store.set(self._namespace, entries)
            except OSError as e:
                logger.warning("Failed to persist endpoint cache: %s", e)

    def forget(self, provider: str, model_id: str) -> None:
        key = entry_key(provider, model_id)
        if key not in self._entries:
            return
        entries = dict(self._entries)
        entries.pop(key)
        self._entries = entries
        if self._store is not None:
            self._store.set(self._namespace, entries)
