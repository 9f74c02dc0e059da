"""Background catalog refresh worker.

Keeps the catalog snapshot fresh without putting a fetch on the request
path. Each cycle calls ``catalog.ensure_fresh()``, which only hits the
network once the snapshot's TTL has expired.

Example:
    >>> shutdown = asyncio.Event()
    >>> task = asyncio.create_task(run_catalog_worker(catalog, 300, shutdown))
    >>> # Later, to stop:
    >>> shutdown.set()
    >>> await task
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from .catalog import ModelCatalog

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300  # 5 minutes
STOP_TIMEOUT_SECONDS = 5.0


async def run_catalog_worker(
    catalog: "ModelCatalog",
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Refresh the catalog whenever it goes stale, until shut down.

    Args:
        catalog: ModelCatalog to keep fresh
        interval_seconds: Seconds between staleness checks
        shutdown_event: Optional event to signal graceful shutdown

    Raises:
        asyncio.CancelledError: If the worker task is cancelled
    """
    logger.info("Starting catalog worker (interval: %ss)", interval_seconds)

    while True:
        if shutdown_event and shutdown_event.is_set():
            break

        try:
            await catalog.ensure_fresh()
        except asyncio.CancelledError:
            logger.info("Catalog worker cancelled")
            raise
        except Exception as e:
            # Refresh degrades internally; anything else is logged and retried next cycle.
            logger.error("Catalog worker error during refresh: %s", e)

        if shutdown_event:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(interval_seconds)

    logger.info("Catalog worker stopped")


class CatalogWorker:
    """Owns one background ``run_catalog_worker`` task."""

    def __init__(self, catalog: "ModelCatalog", interval_seconds: float = DEFAULT_INTERVAL_SECONDS):
        self._catalog = catalog
        self._interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(
            run_catalog_worker(self._catalog, self._interval_seconds, self._shutdown_event)
        )

    async def stop(self) -> None:
        """Signal shutdown and wait, cancelling if the worker does not stop in time."""
        if self._task is None or self._shutdown_event is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Catalog worker did not stop in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._shutdown_event = None

    def get_status(self) -> Dict[str, object]:
        return {
            "worker_running": self.running,
            "interval_seconds": self._interval_seconds,
            "catalog": self._catalog.get_health_status(),
        }
