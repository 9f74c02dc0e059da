"""Model catalog with TTL refresh and stale-while-revalidate.

The catalog holds one immutable CatalogSnapshot at a time. A refresh builds
a complete new snapshot and swaps it in; readers never see a partial one.

Failure handling:
- Refresh fails, a snapshot exists: keep serving it (even if expired)
- Refresh fails, only a persisted snapshot exists: load and serve that
- Refresh fails, nothing exists: serve a fallback snapshot containing only
  the default model, and log a warning

Refresh never raises to callers.

Example:
    >>> catalog = ModelCatalog(OpenRouterCatalogSource(), store=JsonFileStore(path))
    >>> await catalog.ensure_fresh()
    >>> catalog.get("openai/gpt-4o")
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..observability import GatewayEventType, emit_gateway_event
from ..storage import KeyValueStore
from .sources import STATIC_MODELS, CatalogSource
from .types import SCHEMA_VERSION, CapabilitySet, ModelDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "openai/gpt-4o-mini"
DEFAULT_REFRESH_TTL = timedelta(hours=24)
DEFAULT_MAX_RETRIES = 3
# Minimum spacing between refresh attempts after a failure
FAILED_REFRESH_COOLDOWN = timedelta(minutes=5)
SNAPSHOT_STORE_KEY = "catalog_snapshot"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable view of the catalog at one point in time."""

    models: Dict[str, ModelDescriptor]
    fetched_at: datetime
    expires_at: datetime
    source: str
    is_fallback: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "schema_version": SCHEMA_VERSION,
            "source": self.source,
            "fetched_at": self.fetched_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "models": [m.to_dict() for m in self.models.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CatalogSnapshot":
        models = [ModelDescriptor.from_dict(m) for m in data.get("models", [])]
        return cls(
            models={m.id: m for m in models},
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            source=data.get("source", "persisted"),
        )


def fallback_descriptor(model_id: str) -> ModelDescriptor:
    """Conservative descriptor for the default model."""
    for model in STATIC_MODELS:
        if model.id == model_id:
            return model
    return ModelDescriptor(
        id=model_id,
        capabilities=CapabilitySet(tools=True, json_mode=True),
        context_window=128_000,
        max_output_tokens=16_384,
    )


class ModelCatalog:
    """Copy-on-write cache of model descriptors.

    Attributes:
        _snapshot: Current snapshot (None until loaded or refreshed)
        _lock: Serializes refreshes; reads never take it
        _refresh_failures: Consecutive refresh failures
    """

    def __init__(
        self,
        source: CatalogSource,
        store: Optional[KeyValueStore] = None,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        default_model_id: str = DEFAULT_MODEL_ID,
        max_refresh_retries: int = DEFAULT_MAX_RETRIES,
        refresh_backoff_seconds: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._source = source
        self._store = store
        self._refresh_ttl = refresh_ttl
        self._default_model_id = default_model_id
        self._max_refresh_retries = max_refresh_retries
        self._refresh_backoff_seconds = refresh_backoff_seconds
        self._clock = clock

        self._snapshot: Optional[CatalogSnapshot] = None
        self._lock = asyncio.Lock()
        self._refresh_failures = 0
        self._last_failed_attempt: Optional[datetime] = None

    @property
    def default_model_id(self) -> str:
        return self._default_model_id

    @property
    def snapshot(self) -> Optional[CatalogSnapshot]:
        return self._snapshot

    @property
    def is_stale(self) -> bool:
        """True when there is no snapshot or it has expired."""
        snapshot = self._snapshot
        return snapshot is None or snapshot.is_expired(self._clock())

    def models(self) -> List[ModelDescriptor]:
        snapshot = self._snapshot
        return list(snapshot.models.values()) if snapshot else []

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        snapshot = self._snapshot
        return snapshot.models.get(model_id) if snapshot else None

    def load_persisted(self) -> bool:
        """Install the persisted snapshot if nothing is loaded yet.

        Returns:
            True if a snapshot was loaded
        """
        if self._snapshot is not None or self._store is None:
            return False
        data = self._store.get(SNAPSHOT_STORE_KEY)
        if not data:
            return False
        try:
            snapshot = CatalogSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable persisted catalog snapshot: %s", e)
            return False
        if not snapshot.models:
            return False
        self._snapshot = snapshot
        logger.info(
            "Loaded persisted catalog snapshot: %d models (expires %s)",
            len(snapshot.models),
            snapshot.expires_at.isoformat(),
        )
        return True

    async def ensure_fresh(self) -> CatalogSnapshot:
        """Refresh only if the snapshot is stale.

        After a failed refresh, further attempts wait for a cooldown so a
        dead catalog endpoint does not slow every call.
        """
        if not self.is_stale:
            return self._snapshot
        self.load_persisted()
        if not self.is_stale:
            return self._snapshot
        now = self._clock()
        if (
            self._snapshot is not None
            and self._last_failed_attempt is not None
            and now - self._last_failed_attempt < FAILED_REFRESH_COOLDOWN
        ):
            return self._snapshot
        return await self.refresh()

    async def refresh(self) -> CatalogSnapshot:
        """Fetch a new snapshot from the source.

        Retries with exponential backoff (backoff * 2**attempt). On total
        failure the current, persisted or fallback snapshot is served.

        Returns:
            The snapshot in effect after the refresh attempt
        """
        async with self._lock:
            start_time = time.monotonic()
            last_error: Optional[Exception] = None

            for attempt in range(self._max_refresh_retries):
                try:
                    models = await self._source.fetch()
                    if not models:
                        raise ValueError("catalog source returned no models")
                    now = self._clock()
                    snapshot = CatalogSnapshot(
                        models={m.id: m for m in models},
                        fetched_at=now,
                        expires_at=now + self._refresh_ttl,
                        source=self._source.name,
                    )
                    self._snapshot = snapshot
                    self._refresh_failures = 0
                    self._last_failed_attempt = None
                    self._persist(snapshot)

                    emit_gateway_event(
                        GatewayEventType.CATALOG_REFRESH_COMPLETE,
                        {
                            "source": self._source.name,
                            "model_count": len(snapshot.models),
                            "duration_ms": int((time.monotonic() - start_time) * 1000),
                        },
                    )
                    logger.info("Catalog refreshed: %d models", len(snapshot.models))
                    return snapshot

                except Exception as e:
                    last_error = e
                    self._refresh_failures += 1
                    emit_gateway_event(
                        GatewayEventType.CATALOG_REFRESH_FAILED,
                        {
                            "source": self._source.name,
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self._max_refresh_retries,
                        },
                    )
                    logger.warning(
                        "Catalog refresh failed (attempt %d/%d): %s",
                        attempt + 1,
                        self._max_refresh_retries,
                        e,
                    )
                    if attempt < self._max_refresh_retries - 1:
                        await asyncio.sleep(self._refresh_backoff_seconds * (2 ** attempt))

            self._last_failed_attempt = self._clock()
            return self._degrade(last_error)

    def _degrade(self, error: Optional[Exception]) -> CatalogSnapshot:
        self.load_persisted()
        if self._snapshot is not None:
            emit_gateway_event(
                GatewayEventType.CATALOG_STALE_SERVE,
                {
                    "source": self._snapshot.source,
                    "model_count": len(self._snapshot.models),
                    "refresh_failures": self._refresh_failures,
                },
            )
            logger.warning(
                "Catalog refresh failed; serving last good snapshot (%d models, fetched %s)",
                len(self._snapshot.models),
                self._snapshot.fetched_at.isoformat(),
            )
            return self._snapshot

        now = self._clock()
        descriptor = fallback_descriptor(self._default_model_id)
        snapshot = CatalogSnapshot(
            models={descriptor.id: descriptor},
            fetched_at=now,
            expires_at=now + FAILED_REFRESH_COOLDOWN,
            source="fallback",
            is_fallback=True,
        )
        self._snapshot = snapshot
        emit_gateway_event(
            GatewayEventType.CATALOG_FALLBACK,
            {"default_model": descriptor.id, "error": str(error) if error else None},
        )
        logger.warning(
            "Catalog unavailable and no snapshot exists; falling back to default model %s",
            descriptor.id,
        )
        return snapshot

    def _persist(self, snapshot: CatalogSnapshot) -> None:
        if self._store is None:
            return
        try:
            self._store.set(SNAPSHOT_STORE_KEY, snapshot.to_dict())
        except OSError as e:
            logger.warning("Failed to persist catalog snapshot: %s", e)

    def get_health_status(self) -> Dict[str, object]:
        """Get health status for observability."""
        snapshot = self._snapshot
        return {
            "model_count": len(snapshot.models) if snapshot else 0,
            "source": snapshot.source if snapshot else None,
            "fetched_at": snapshot.fetched_at.isoformat() if snapshot else None,
            "expires_at": snapshot.expires_at.isoformat() if snapshot else None,
            "is_stale": self.is_stale,
            "is_fallback": snapshot.is_fallback if snapshot else False,
            "refresh_failures": self._refresh_failures,
        }
