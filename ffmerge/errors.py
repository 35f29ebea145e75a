"""Error taxonomy for the merge service.

Every request-facing error carries the HTTP status it maps to, so the route
layer can turn any of them into the JSON error envelope without a lookup table.
"""

from typing import Optional


class MergeServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# 400: bad or missing input, raised before any external call
# ---------------------------------------------------------------------------


class MergeValidationError(MergeServiceError):
    status_code = 400
    code = "invalid_request"


class InvalidResolution(MergeValidationError):
    code = "invalid_resolution"


class InvalidDuration(MergeValidationError):
    code = "invalid_duration"


class MissingAudioSource(MergeValidationError):
    code = "missing_audio_source"


class MissingImageSource(MergeValidationError):
    code = "missing_image_source"


class InvalidImageData(MergeValidationError):
    code = "invalid_image_data"


class InvalidSourceUrl(MergeValidationError):
    code = "invalid_source_url"


# ---------------------------------------------------------------------------
# 500: remote audio/image could not be fetched
# ---------------------------------------------------------------------------


class UpstreamFetchError(MergeServiceError):
    code = "fetch_failed"

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeout(UpstreamFetchError):
    code = "fetch_timeout"


class FetchTooLarge(UpstreamFetchError):
    code = "fetch_too_large"


class FetchNetworkError(UpstreamFetchError):
    code = "fetch_network_error"


class FetchHTTPStatusError(UpstreamFetchError):
    code = "fetch_http_status"

    def __init__(self, message: str, *, url: Optional[str] = None, status: int = 0) -> None:
        super().__init__(message, url=url)
        self.status = status


# ---------------------------------------------------------------------------
# 500: ffmpeg failures
# ---------------------------------------------------------------------------


class EncodeError(MergeServiceError):
    code = "encode_failed"


class EncoderNotFound(EncodeError):
    code = "encoder_not_found"


class EncoderExitError(EncodeError):
    code = "encoder_exit"

    def __init__(self, returncode: int, diagnostic: str) -> None:
        super().__init__(f"FFmpeg failed (exit code {returncode}): {diagnostic}")
        self.returncode = returncode
        self.diagnostic = diagnostic


class EncoderTimeout(EncodeError):
    code = "encoder_timeout"


class EncoderOutputMissing(EncodeError):
    code = "encoder_output_missing"


# ---------------------------------------------------------------------------
# 404: download lookups
# ---------------------------------------------------------------------------


class NotFoundOrExpired(MergeServiceError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Video not found or expired") -> None:
        super().__init__(message)


ArtifactExpiredOrMissing = NotFoundOrExpired


# ---------------------------------------------------------------------------
# ArtifactStore errors; internal, translated before reaching a client
# ---------------------------------------------------------------------------


class StoreError(Exception):
    def __init__(self, artifact_id: str) -> None:
        super().__init__(artifact_id)
        self.artifact_id = artifact_id


class DuplicateArtifactId(StoreError):
    pass


class ArtifactNotFound(StoreError):
    pass


class AlreadyDownloading(StoreError):
    pass
