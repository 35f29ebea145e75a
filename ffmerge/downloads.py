import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Tuple

from .errors import AlreadyDownloading, ArtifactExpiredOrMissing, ArtifactNotFound
from .store import ArtifactRecord, ArtifactStore


logger = logging.getLogger("ffmerge.downloads")


@dataclass
class ArtifactDownload:
    record: ArtifactRecord
    release: Callable[[], None]

    @property
    def path(self) -> Path:
        return self.record.path

    @property
    def size_bytes(self) -> int:
        return self.record.size_bytes

    @property
    def display_name(self) -> str:
        return self.record.display_name


class DownloadHandler:
    """Hands out each artifact once and deletes it shortly after the transfer.

    Deletion waits ``grace_seconds`` after ``release()`` so a slow client that
    is still draining buffers is not cut off. A grace task that gets cancelled
    (shutdown) deletes immediately instead of leaking the file.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        grace_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._grace = grace_seconds
        self._sleep = sleep
        self._scheduled: Dict[str, asyncio.Task] = {}

    @property
    def scheduled(self) -> int:
        return len(self._scheduled)

    def open(self, artifact_id: str) -> ArtifactDownload:
        try:
            record = self._store.begin_download(artifact_id)
        except (ArtifactNotFound, AlreadyDownloading) as exc:
            logger.info("Download rejected for %s (%s)", artifact_id, exc.__class__.__name__)
            raise ArtifactExpiredOrMissing() from None

        if not record.path.is_file():
            logger.warning("Artifact %s is registered but %s is missing", artifact_id, record.path)
            self._store.delete(artifact_id)
            raise ArtifactExpiredOrMissing()

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self.schedule_deletion(artifact_id)

        return ArtifactDownload(record=record, release=release)

    async def read_inline(self, artifact_id: str) -> Tuple[ArtifactRecord, bytes]:
        """Read an artifact fully into memory and delete it right away."""
        download = self.open(artifact_id)
        try:
            data = await asyncio.to_thread(download.path.read_bytes)
        finally:
            self._store.delete(artifact_id)
        return download.record, data

    def schedule_deletion(self, artifact_id: str) -> None:
        if artifact_id in self._scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._store.delete(artifact_id)
            return
        task = loop.create_task(self._delete_after(artifact_id))
        self._scheduled[artifact_id] = task
        task.add_done_callback(lambda _t, key=artifact_id: self._scheduled.pop(key, None))

    async def _delete_after(self, artifact_id: str) -> None:
        try:
            await self._sleep(self._grace)
        finally:
            self._store.delete(artifact_id)
            logger.info("Deleted downloaded artifact %s", artifact_id)

    async def shutdown(self) -> None:
        """Run every pending grace deletion now."""
        tasks = list(self._scheduled.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Flushed %d pending artifact deletions", len(tasks))
