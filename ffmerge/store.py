import dataclasses
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List

import structlog

from .errors import AlreadyDownloading, ArtifactNotFound, DuplicateArtifactId


logger = logging.getLogger("ffmerge.store")
struct_logger = structlog.get_logger("ffmerge.store")


class ArtifactState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    DOWNLOADING = "downloading"
    DELETED = "deleted"


@dataclass
class ArtifactRecord:
    id: str
    path: Path
    display_name: str
    created_at: float
    size_bytes: int = 0
    resolution: str = ""
    state: ArtifactState = ArtifactState.READY


class ArtifactStore:
    """In-memory registry of produced videos and their lifecycle state.

    The store is the only place state transitions happen. Every public method
    runs under a single lock, so operations on one identifier are linearizable
    even when the sweeper, a download and a merge job touch it concurrently.
    Callers always receive copies of records; mutating them has no effect.

    Deleting a record also unlinks its file. Unlinks that fail are retried a
    few times, then remembered and retried by ``retry_failed_unlinks`` so no
    file is ever silently abandoned.
    """

    def __init__(self, *, unlink_attempts: int = 3) -> None:
        self._records: Dict[str, ArtifactRecord] = {}
        self._failed_unlinks: Dict[Path, str] = {}
        self._unlink_attempts = max(1, unlink_attempts)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def put(self, record: ArtifactRecord) -> None:
        if record.state not in (ArtifactState.PENDING, ArtifactState.READY):
            raise ValueError(f"Cannot insert artifact in state {record.state.value}")
        with self._lock:
            if record.id in self._records:
                raise DuplicateArtifactId(record.id)
            self._records[record.id] = dataclasses.replace(record)
        if record.state is ArtifactState.READY:
            self._log_registered(record)

    def mark_ready(self, artifact_id: str, *, created_at: float, size_bytes: int) -> ArtifactRecord:
        with self._lock:
            record = self._records.get(artifact_id)
            if record is None or record.state is not ArtifactState.PENDING:
                raise ArtifactNotFound(artifact_id)
            record.state = ArtifactState.READY
            record.created_at = created_at
            record.size_bytes = size_bytes
            snapshot = dataclasses.replace(record)
        self._log_registered(snapshot)
        return snapshot

    def get(self, artifact_id: str) -> ArtifactRecord:
        with self._lock:
            record = self._records.get(artifact_id)
            if record is None:
                raise ArtifactNotFound(artifact_id)
            return dataclasses.replace(record)

    def begin_download(self, artifact_id: str) -> ArtifactRecord:
        with self._lock:
            record = self._records.get(artifact_id)
            if record is None or record.state is ArtifactState.PENDING:
                raise ArtifactNotFound(artifact_id)
            if record.state is ArtifactState.DOWNLOADING:
                raise AlreadyDownloading(artifact_id)
            record.state = ArtifactState.DOWNLOADING
            return dataclasses.replace(record)

    def delete(self, artifact_id: str, *, if_idle: bool = False) -> bool:
        """Remove a record and unlink its file. Unknown ids are a no-op.

        With ``if_idle`` the record is left alone while it is pending or being
        downloaded; the check and the removal happen under the same lock.
        Returns True when a record was removed.
        """
        with self._lock:
            record = self._records.get(artifact_id)
            if record is None:
                return False
            if if_idle and record.state in (ArtifactState.PENDING, ArtifactState.DOWNLOADING):
                return False
            del self._records[artifact_id]
            previous_state = record.state
            record.state = ArtifactState.DELETED
            removed = self._unlink(record.path, artifact_id)
        struct_logger.info(
            "artifact_deleted",
            artifact_id=artifact_id,
            previous_state=previous_state.value,
            file_removed=removed,
        )
        return True

    def list_expired(self, now: float, ttl: float) -> List[str]:
        with self._lock:
            return [
                artifact_id
                for artifact_id, record in self._records.items()
                if record.state is ArtifactState.READY and now - record.created_at >= ttl
            ]

    def retry_failed_unlinks(self) -> int:
        """Retry unlinks that failed earlier. Returns how many are still outstanding."""
        with self._lock:
            for path, artifact_id in list(self._failed_unlinks.items()):
                self._failed_unlinks.pop(path, None)
                if self._unlink(path, artifact_id):
                    logger.info("Deleted previously stuck file %s for %s", path, artifact_id)
            return len(self._failed_unlinks)

    def purge_orphans(self, directory: Path, now: float, max_age: float) -> int:
        """Delete untracked files in ``directory`` whose mtime is older than ``max_age``.

        These are leftovers from a process that died mid-request. Files named
        after a pending job (its staged inputs) are never touched.
        """
        removed = 0
        with self._lock:
            referenced = {record.path for record in self._records.values()}
            pending = tuple(
                record.id for record in self._records.values() if record.state is ArtifactState.PENDING
            )
            try:
                entries = list(directory.iterdir())
            except FileNotFoundError:
                return 0
            for entry in entries:
                if entry in referenced or (pending and entry.name.startswith(pending)):
                    continue
                try:
                    if not entry.is_file() or now - entry.stat().st_mtime < max_age:
                        continue
                    entry.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Failed to delete orphaned file %s: %s", entry, exc)
        if removed:
            logger.info("Removed %d orphaned files from %s", removed, directory)
        return removed

    def _unlink(self, path: Path, artifact_id: str) -> bool:
        last_error: OSError
        for _ in range(self._unlink_attempts):
            try:
                os.unlink(path)
                return True
            except FileNotFoundError:
                logger.info("Artifact file %s for %s was already gone", path, artifact_id)
                return True
            except OSError as exc:
                last_error = exc
        logger.error(
            "Failed to delete %s for %s after %d attempts, will retry: %s",
            path,
            artifact_id,
            self._unlink_attempts,
            last_error,
        )
        self._failed_unlinks[path] = artifact_id
        return False

    @staticmethod
    def _log_registered(record: ArtifactRecord) -> None:
        struct_logger.info(
            "artifact_registered",
            artifact_id=record.id,
            filename=record.display_name,
            size_bytes=record.size_bytes,
            resolution=record.resolution,
        )
