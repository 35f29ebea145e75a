import asyncio
import base64
import binascii
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union
from urllib.parse import urlparse
from uuid import uuid4

from .encoder import EncodeParams, Encoder
from .errors import (
    EncoderOutputMissing,
    InvalidDuration,
    InvalidImageData,
    InvalidResolution,
    InvalidSourceUrl,
    MissingAudioSource,
    MissingImageSource,
)
from .fetch import Fetcher
from .store import ArtifactRecord, ArtifactState, ArtifactStore


logger = logging.getLogger("ffmerge.jobs")

DEFAULT_RESOLUTION = "1920x1080"
MAX_DURATION_SECONDS = 3600

_RESOLUTION_PATTERN = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")

_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", ".png"),
    (b"\xff\xd8\xff", ".jpg"),
    (b"GIF87a", ".gif"),
    (b"GIF89a", ".gif"),
    (b"BM", ".bmp"),
)
_AUDIO_SUFFIXES = {".mp3", ".m4a", ".aac", ".wav", ".ogg", ".oga", ".opus", ".flac"}


@dataclass
class MergeJob:
    audio_url: Optional[str] = None
    image_data: Optional[str] = None
    image_url: Optional[str] = None
    resolution: Optional[str] = None
    duration: Union[str, float, None] = None
    request_id: str = "-"


@dataclass(frozen=True)
class ArtifactHandle:
    id: str
    size_bytes: int
    resolution: str
    display_name: str
    path: Path


def new_artifact_id() -> str:
    return uuid4().hex


def parse_resolution(value: str) -> Tuple[int, int]:
    match = _RESOLUTION_PATTERN.match(value or "")
    if not match:
        raise InvalidResolution(
            "Invalid resolution format, expected WIDTHxHEIGHT (e.g. 1920x1080)"
        )
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise InvalidResolution("Resolution dimensions must be positive integers")
    return width, height


def parse_duration(value: Union[str, float, None]) -> Optional[float]:
    """``None`` or ``"auto"`` means the audio track decides the length."""
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "auto")):
        return None
    if isinstance(value, bool):
        raise InvalidDuration("duration must be 'auto' or a number of seconds")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise InvalidDuration("duration must be 'auto' or a number of seconds") from None
    if not (0 < seconds <= MAX_DURATION_SECONDS):
        raise InvalidDuration(f"duration must be 0..{MAX_DURATION_SECONDS} seconds")
    return seconds


def decode_image_data(data: str) -> bytes:
    payload = data.strip()
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        if ";base64" not in header:
            raise InvalidImageData("image_data data URI must be base64 encoded")
    try:
        decoded = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImageData("image_data is not valid base64") from None
    if not decoded:
        raise InvalidImageData("image_data is empty")
    return decoded


def ensure_http_url(url: str, field: str) -> str:
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidSourceUrl(f"{field} must be an http(s) URL")
    return url.strip()


def image_suffix(data: bytes) -> str:
    for signature, suffix in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return suffix
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp"
    return ".jpg"


def audio_suffix(url: str) -> str:
    suffix = Path(urlparse(url).path).suffix.lower()
    return suffix if suffix in _AUDIO_SUFFIXES else ".mp3"


class JobRunner:
    """Runs one merge request from validation to a registered artifact.

    Every exit path leaves no staged input behind, and failures also remove
    the reserved output so nothing is left registered or on disk.
    """

    def __init__(
        self,
        store: ArtifactStore,
        encoder: Encoder,
        fetcher: Fetcher,
        *,
        work_dir: Path,
        artifact_dir: Path,
        max_image_bytes: int = 50 * 1024 * 1024,
        max_audio_bytes: int = 100 * 1024 * 1024,
        fetch_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = new_artifact_id,
    ) -> None:
        self.store = store
        self.encoder = encoder
        self.fetcher = fetcher
        self.work_dir = work_dir
        self.artifact_dir = artifact_dir
        self.max_image_bytes = max_image_bytes
        self.max_audio_bytes = max_audio_bytes
        self.fetch_timeout = fetch_timeout
        self._clock = clock
        self._id_factory = id_factory

    async def run(self, job: MergeJob) -> ArtifactHandle:
        width, height = parse_resolution(job.resolution or DEFAULT_RESOLUTION)
        resolution = f"{width}x{height}"
        duration = parse_duration(job.duration)

        # image_url wins when both image sources are supplied.
        image_bytes: Optional[bytes] = None
        image_url: Optional[str] = None
        if job.image_url:
            image_url = ensure_http_url(job.image_url, "image_url")
            if job.image_data:
                logger.info("Both image_url and image_data supplied; using image_url")
        elif job.image_data:
            image_bytes = decode_image_data(job.image_data)
        else:
            raise MissingImageSource("Missing parameter: image_data (base64 image) or image_url")

        if not job.audio_url:
            raise MissingAudioSource("Missing parameter: audio_url")
        audio_url = ensure_http_url(job.audio_url, "audio_url")

        artifact_id = self._id_factory()
        label = job.request_id or artifact_id
        output_path = self.artifact_dir / f"{artifact_id}.mp4"
        display_name = f"video_{artifact_id}.mp4"
        staged: List[Path] = []
        reserved = False

        try:
            if image_bytes is None:
                logger.info("[%s] Downloading image: %s", label, image_url[:50])
                image_bytes = await self.fetcher.fetch(
                    image_url, max_bytes=self.max_image_bytes, timeout=self.fetch_timeout
                )
            logger.info("[%s] Image size: %.2f MB", label, len(image_bytes) / 1024 / 1024)

            logger.info("[%s] Downloading audio: %s", label, audio_url[:50])
            audio_bytes = await self.fetcher.fetch(
                audio_url, max_bytes=self.max_audio_bytes, timeout=self.fetch_timeout
            )
            logger.info("[%s] Audio size: %.2f MB", label, len(audio_bytes) / 1024 / 1024)

            image_path = self.work_dir / f"{artifact_id}_cover{image_suffix(image_bytes)}"
            audio_path = self.work_dir / f"{artifact_id}_audio{audio_suffix(audio_url)}"
            staged.append(image_path)
            await asyncio.to_thread(image_path.write_bytes, image_bytes)
            staged.append(audio_path)
            await asyncio.to_thread(audio_path.write_bytes, audio_bytes)
            del image_bytes, audio_bytes

            self.store.put(
                ArtifactRecord(
                    id=artifact_id,
                    path=output_path,
                    display_name=display_name,
                    created_at=self._clock(),
                    resolution=resolution,
                    state=ArtifactState.PENDING,
                )
            )
            reserved = True

            logger.info("[%s] Encoding video (%s)...", label, resolution)
            produced = await self.encoder.encode(
                EncodeParams(
                    image_path=image_path,
                    audio_path=audio_path,
                    output_path=output_path,
                    width=width,
                    height=height,
                    duration=duration,
                    label=label,
                )
            )
            if Path(produced) != output_path:
                raise EncoderOutputMissing(
                    f"Encoder wrote {produced} instead of the reserved {output_path.name}"
                )
            stat = await asyncio.to_thread(output_path.stat)
            record = self.store.mark_ready(
                artifact_id, created_at=self._clock(), size_bytes=stat.st_size
            )
            logger.info("[%s] Video size: %.2f MB", label, record.size_bytes / 1024 / 1024)
        except BaseException:
            # The store unlinks the (possibly partial) output with the record.
            # Without a reservation the output path is not ours to touch.
            if reserved:
                self.store.delete(artifact_id)
            raise
        finally:
            for path in staged:
                _discard(path)

        return ArtifactHandle(
            id=record.id,
            size_bytes=record.size_bytes,
            resolution=resolution,
            display_name=record.display_name,
            path=record.path,
        )


def _discard(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to clean up %s: %s", path, exc)
