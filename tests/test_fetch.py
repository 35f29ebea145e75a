import asyncio

import httpx
import pytest

from ffmerge.errors import FetchHTTPStatusError, FetchNetworkError, FetchTimeout, FetchTooLarge
from ffmerge.fetch import Fetcher


URL = "https://media.example.com/track.mp3"


def run_fetch(handler, *, max_bytes=1024, timeout=5.0, chunk_size=16):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = Fetcher(client, chunk_size=chunk_size)
            return await fetcher.fetch(URL, max_bytes=max_bytes, timeout=timeout)

    return asyncio.run(scenario())


def test_fetch_returns_body():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"audio-bytes")

    assert run_fetch(handler) == b"audio-bytes"
    assert seen == [URL]


def test_fetch_rejects_declared_oversize_before_reading():
    def handler(request):
        return httpx.Response(200, content=b"x" * 2048)

    with pytest.raises(FetchTooLarge):
        run_fetch(handler, max_bytes=1024)


def test_fetch_aborts_stream_once_ceiling_is_crossed():
    produced = []

    async def body():
        for _ in range(100):
            produced.append(1)
            yield b"y" * 64

    def handler(request):
        return httpx.Response(200, content=body())

    with pytest.raises(FetchTooLarge):
        run_fetch(handler, max_bytes=256, chunk_size=64)
    assert len(produced) < 100


def test_fetch_maps_http_status():
    def handler(request):
        return httpx.Response(404, content=b"not here")

    with pytest.raises(FetchHTTPStatusError) as exc:
        run_fetch(handler)
    assert exc.value.status == 404
    assert exc.value.status_code == 500


def test_fetch_maps_network_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchNetworkError):
        run_fetch(handler)


def test_fetch_maps_transport_timeout():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(FetchTimeout):
        run_fetch(handler)


def test_fetch_enforces_total_deadline():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"late")

    with pytest.raises(FetchTimeout):
        run_fetch(handler, timeout=0.05)
