import asyncio
import logging
from typing import Optional

import httpx

from .errors import FetchHTTPStatusError, FetchNetworkError, FetchTimeout, FetchTooLarge


logger = logging.getLogger("ffmerge.fetch")


def _make_async_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True)


def _short(url: str, limit: int = 80) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


class Fetcher:
    """Downloads remote media into memory with a hard size ceiling and deadline.

    The ceiling is enforced while streaming: the transfer is aborted as soon as
    the byte count crosses ``max_bytes`` (or the server announces a larger
    ``Content-Length``), so oversized responses are never buffered whole.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        chunk_size: int = 1024 * 1024,
    ) -> None:
        self._client = client
        self._chunk_size = chunk_size

    async def fetch(self, url: str, *, max_bytes: int, timeout: float) -> bytes:
        try:
            return await asyncio.wait_for(self._fetch(url, max_bytes, timeout), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Download timed out after %ss: %s", timeout, _short(url))
            raise FetchTimeout(f"Download timed out after {timeout:g}s: {_short(url)}", url=url) from exc

    async def _fetch(self, url: str, max_bytes: int, timeout: float) -> bytes:
        own_client = self._client is None
        session = self._client if self._client is not None else _make_async_client()
        try:
            async with session.stream("GET", url, timeout=timeout) as response:
                response.raise_for_status()

                declared = response.headers.get("content-length")
                if declared is not None:
                    try:
                        declared_length = int(declared)
                    except ValueError:
                        logger.warning("Invalid content-length from %s: %s", _short(url), declared)
                    else:
                        if declared_length > max_bytes:
                            raise FetchTooLarge(
                                f"Remote file too large ({declared_length} bytes, limit {max_bytes}): {_short(url)}",
                                url=url,
                            )

                buffer = bytearray()
                async for chunk in response.aiter_bytes(self._chunk_size):
                    if len(buffer) + len(chunk) > max_bytes:
                        raise FetchTooLarge(
                            f"Remote file exceeded {max_bytes} bytes: {_short(url)}",
                            url=url,
                        )
                    buffer.extend(chunk)

            logger.info("Download complete: %.2fMB - %s", len(buffer) / 1024 / 1024, _short(url))
            return bytes(buffer)
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"Download timed out: {_short(url)}", url=url) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise FetchHTTPStatusError(
                f"Remote server returned HTTP {status}: {_short(url)}",
                url=url,
                status=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchNetworkError(f"Download failed: {exc}", url=url) from exc
        finally:
            if own_client:
                await session.aclose()
