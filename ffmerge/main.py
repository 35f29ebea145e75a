import base64
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel
from structlog.contextvars import bind_contextvars, clear_contextvars

from . import __version__
from .downloads import ArtifactDownload, DownloadHandler
from .encoder import Encoder, FFmpegEncoder
from .errors import MergeServiceError, MergeValidationError, NotFoundOrExpired
from .fetch import Fetcher
from .jobs import DEFAULT_RESOLUTION, JobRunner, MergeJob
from .logging_setup import REQUEST_ID_CTX, configure_logging, flush_logs
from .settings import Settings
from .store import ArtifactStore
from .sweeper import Sweeper


logger = logging.getLogger("ffmerge")
struct_logger = structlog.get_logger("ffmerge")

SERVICE_NAME = "ffmpeg-merge-api"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class MergeRequest(BaseModel):
    audio_url: Optional[str] = None
    image_data: Optional[str] = None
    image_url: Optional[str] = None
    resolution: Optional[str] = None
    duration: Optional[Union[float, str]] = None
    inline: bool = False


class ArtifactFileResponse(FileResponse):
    """FileResponse that releases its artifact once sending ends, however it ends."""

    def __init__(self, download: ArtifactDownload) -> None:
        super().__init__(
            download.path,
            media_type="video/mp4",
            filename=download.display_name,
        )
        self._release = download.release

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self._release()


def _current_request_id() -> str:
    return REQUEST_ID_CTX.get(None) or uuid4().hex


def _error_response(status_code: int, message: str, request_id: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": message}
    if request_id is not None:
        content["request_id"] = request_id
    return JSONResponse(status_code=status_code, content=content)


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"Invalid request body: {location}: {message}" if location else f"Invalid request body: {message}"


# ---------- routes ----------
router = APIRouter()


@router.get("/health")
def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/")
def root(request: Request) -> Dict[str, Any]:
    settings: Settings = request.app.state.settings
    return {
        "name": "FFmpeg Merge API",
        "description": "Merges a still image and an audio track into an MP4 video",
        "version": __version__,
        "endpoints": {
            "GET /health": "Health check",
            "GET /": "This document",
            "POST /api/merge": "Merge an image and an audio track into a video",
            "GET /api/download/{request_id}": "Download a merged video (single use)",
        },
        "usage": {
            "endpoint": "POST /api/merge",
            "body": {
                "audio_url": "https://example.com/audio.mp3 (required)",
                "image_url": "https://example.com/cover.jpg (this or image_data)",
                "image_data": "base64 encoded image (this or image_url)",
                "resolution": f"WIDTHxHEIGHT (optional, default {DEFAULT_RESOLUTION})",
                "duration": "auto or seconds (optional, default auto)",
                "inline": "true to receive video_data as base64 instead of a link (optional)",
            },
            "response": {
                "success": True,
                "download_url": "/api/download/{id}",
                "size": "bytes",
                "size_mb": "MB",
                "processing_time_ms": "milliseconds",
                "processing_time_sec": "seconds",
                "resolution": "WIDTHxHEIGHT",
                "request_id": "correlation id",
            },
            "notes": [
                "image_url takes precedence when both image_url and image_data are sent",
                f"download links expire after {settings.ARTIFACT_TTL_SECONDS} seconds "
                "and can be used once",
            ],
        },
    }


@router.post("/api/merge")
async def merge(request: Request, payload: MergeRequest):
    started = time.perf_counter()
    request_id = _current_request_id()
    state = request.app.state
    logger.info("Merge request received")

    job = MergeJob(
        audio_url=payload.audio_url,
        image_data=payload.image_data,
        image_url=payload.image_url,
        resolution=payload.resolution,
        duration=payload.duration,
        request_id=request_id,
    )

    try:
        handle = await state.runner.run(job)
        elapsed_ms = int(round((time.perf_counter() - started) * 1000))
        body: Dict[str, Any] = {"success": True}
        if payload.inline:
            try:
                _, data = await state.downloads.read_inline(handle.id)
            except NotFoundOrExpired:
                raise MergeServiceError("Merged video is no longer available") from None
            body["video_data"] = base64.b64encode(data).decode("ascii")
        else:
            body["download_url"] = f"/api/download/{handle.id}"
            body["expires_in_sec"] = state.settings.ARTIFACT_TTL_SECONDS
        body.update(
            {
                "size": handle.size_bytes,
                "size_mb": round(handle.size_bytes / 1024 / 1024, 2),
                "processing_time_ms": elapsed_ms,
                "processing_time_sec": round(elapsed_ms / 1000, 2),
                "resolution": handle.resolution,
                "request_id": request_id,
            }
        )
    except MergeValidationError as exc:
        logger.warning("Merge request rejected: %s", exc.message)
        return _error_response(exc.status_code, exc.message, request_id)
    except MergeServiceError as exc:
        logger.error("Merge failed: %s", exc.message)
        struct_logger.error("merge_failed", error=exc.code, message=exc.message[:200])
        flush_logs()
        return _error_response(exc.status_code, exc.message, request_id)
    except Exception as exc:
        logger.exception("Merge failed with unexpected error")
        flush_logs()
        return _error_response(500, f"Merge failed: {exc}", request_id)

    logger.info("Merge completed in %.2fs", elapsed_ms / 1000)
    struct_logger.info(
        "merge_completed",
        artifact_id=handle.id,
        size_bytes=handle.size_bytes,
        resolution=handle.resolution,
        duration_ms=elapsed_ms,
        inline=payload.inline,
    )
    return body


@router.get("/api/download/{artifact_id}")
async def download(request: Request, artifact_id: str):
    try:
        artifact = request.app.state.downloads.open(artifact_id)
    except NotFoundOrExpired as exc:
        return _error_response(exc.status_code, exc.message)
    logger.info("Serving %s (%.2f MB)", artifact.display_name, artifact.size_bytes / 1024 / 1024)
    return ArtifactFileResponse(artifact)


# ---------- middleware & handlers ----------
async def cors_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        response = PlainTextResponse("OK", status_code=200)
    else:
        response = await call_next(request)
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    token = REQUEST_ID_CTX.set(request_id)
    bind_contextvars(request_id=request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", request_id)
        logger.info(
            "%s %s -> %s (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response
    finally:
        clear_contextvars()
        REQUEST_ID_CTX.reset(token)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _describe_validation_error(exc)
    logger.warning("Rejected request body: %s", message)
    return _error_response(400, message, _current_request_id())


async def service_exception_handler(request: Request, exc: MergeServiceError) -> JSONResponse:
    return _error_response(exc.status_code, exc.message, _current_request_id())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    flush_logs()
    return _error_response(500, "Internal server error")


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[ArtifactStore] = None,
    encoder: Optional[Encoder] = None,
    fetcher: Optional[Fetcher] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or Settings.load()
    settings.ensure_dirs()
    configure_logging(settings.LOG_LEVEL, settings.LOGS_DIR)

    store = store if store is not None else ArtifactStore()
    runner = JobRunner(
        store,
        encoder if encoder is not None else FFmpegEncoder(
            settings.FFMPEG_BINARY, timeout=settings.FFMPEG_TIMEOUT_SECONDS
        ),
        fetcher if fetcher is not None else Fetcher(),
        work_dir=settings.WORK_DIR,
        artifact_dir=settings.ARTIFACT_DIR,
        max_image_bytes=settings.max_image_bytes,
        max_audio_bytes=settings.max_audio_bytes,
        fetch_timeout=settings.FETCH_TIMEOUT_SECONDS,
        clock=clock,
    )
    downloads = DownloadHandler(store, grace_seconds=settings.DOWNLOAD_GRACE_SECONDS)
    sweeper = Sweeper(
        store,
        interval=settings.SWEEP_INTERVAL_SECONDS,
        ttl=settings.ARTIFACT_TTL_SECONDS,
        orphan_dirs=(settings.WORK_DIR, settings.ARTIFACT_DIR),
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Nothing is tracked yet, so every file left in our directories is a leftover.
        for directory in (settings.WORK_DIR, settings.ARTIFACT_DIR):
            try:
                store.purge_orphans(directory, time.time(), 0)
            except Exception as exc:
                logger.warning("Initial cleanup of %s failed: %s", directory, exc)
        if settings.SWEEP_INTERVAL_SECONDS > 0:
            sweeper.start()
        logger.info("FFmpeg merge service is ready to accept requests")
        flush_logs()

        yield

        logger.info("FFmpeg merge service is shutting down")
        await sweeper.stop()
        await downloads.shutdown()

    app = FastAPI(title="FFmpeg Merge API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.runner = runner
    app.state.downloads = downloads
    app.state.sweeper = sweeper

    app.include_router(router)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(MergeServiceError, service_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    # Registered last so it runs first: every response gets a request id.
    app.middleware("http")(cors_middleware)
    app.middleware("http")(request_context_middleware)
    return app


def run() -> None:
    settings = Settings.load()
    application = create_app(settings)
    logger.info("=" * 60)
    logger.info("FFmpeg merge service starting")
    logger.info("Port: %s", settings.PORT)
    logger.info("Health check: http://localhost:%s/health", settings.PORT)
    logger.info("API endpoint: http://localhost:%s/api/merge", settings.PORT)
    logger.info("WORK_DIR: %s", settings.WORK_DIR)
    logger.info("ARTIFACT_DIR: %s", settings.ARTIFACT_DIR)
    logger.info("Artifact TTL: %ss, sweep every %ss", settings.ARTIFACT_TTL_SECONDS, settings.SWEEP_INTERVAL_SECONDS)
    logger.info("=" * 60)
    uvicorn.run(application, host="0.0.0.0", port=settings.PORT)
