import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from .store import ArtifactStore


logger = logging.getLogger("ffmerge.sweeper")
struct_logger = structlog.get_logger("ffmerge.sweeper")


class Sweeper:
    """Periodically evicts expired artifacts from the store.

    Downloads in flight are never evicted: each deletion goes through
    ``ArtifactStore.delete(..., if_idle=True)``, which re-checks the state
    under the store lock.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        interval: float = 60.0,
        ttl: float = 300.0,
        orphan_dirs: Sequence[Path] = (),
        orphan_max_age: float = 3600.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._interval = interval
        self._ttl = ttl
        self._orphan_dirs = list(orphan_dirs)
        self._orphan_max_age = orphan_max_age
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> List[str]:
        now = self._clock()
        evicted: List[str] = []
        for artifact_id in self._store.list_expired(now, self._ttl):
            try:
                if self._store.delete(artifact_id, if_idle=True):
                    evicted.append(artifact_id)
            except Exception as exc:
                logger.warning("Failed to evict expired artifact %s: %s", artifact_id, exc)

        outstanding = self._store.retry_failed_unlinks()
        if outstanding:
            logger.warning("%d artifact files still could not be deleted", outstanding)

        for directory in self._orphan_dirs:
            try:
                self._store.purge_orphans(directory, time.time(), self._orphan_max_age)
            except Exception as exc:
                logger.warning("Orphan cleanup failed for %s: %s", directory, exc)

        if evicted:
            logger.info("Sweep: evicted %d expired artifacts", len(evicted))
            struct_logger.info("sweep_completed", evicted=evicted, remaining=len(self._store))
        return evicted

    async def run(self) -> None:
        """Sweep forever; only cancellation stops the loop."""
        while True:
            await self._sleep(self._interval)
            try:
                self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Periodic artifact sweep failed: %s", exc)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="artifact-sweeper")
        logger.info("Artifact sweeper started (interval=%ss, ttl=%ss)", self._interval, self._ttl)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Artifact sweeper stopped")
