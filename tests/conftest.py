import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pytest

from ffmerge.encoder import EncodeParams
from ffmerge.main import create_app
from ffmerge.settings import Settings
from ffmerge.store import ArtifactStore


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEncoder:
    def __init__(
        self,
        payload: bytes = b"\x00\x00\x00\x18ftypmp42 fake video payload",
        *,
        error: Optional[BaseException] = None,
        partial: bytes = b"",
    ) -> None:
        self.payload = payload
        self.error = error
        self.partial = partial
        self.calls: List[EncodeParams] = []
        self.seen_inputs: List[Dict[str, bytes]] = []

    async def encode(self, params: EncodeParams) -> Path:
        self.calls.append(params)
        self.seen_inputs.append(
            {"image": params.image_path.read_bytes(), "audio": params.audio_path.read_bytes()}
        )
        if self.error is not None:
            if self.partial:
                params.output_path.write_bytes(self.partial)
            raise self.error
        params.output_path.write_bytes(self.payload)
        return params.output_path


class FakeFetcher:
    def __init__(self, responses: Optional[Dict[str, Union[bytes, BaseException]]] = None) -> None:
        self.responses = dict(responses or {})
        self.calls: List[Tuple[str, int, float]] = []

    async def fetch(self, url: str, *, max_bytes: int, timeout: float) -> bytes:
        self.calls.append((url, max_bytes, timeout))
        result = self.responses[url]
        if isinstance(result, BaseException):
            raise result
        return result


AUDIO_URL = "https://media.example.com/track.mp3"
IMAGE_URL = "https://media.example.com/cover.png"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
AUDIO_BYTES = b"ID3" + b"\x01" * 64


async def _call_app(app, method: str, path: str, *, headers=None, body: bytes = b"", query: str = "") -> Tuple[int, dict, bytes]:
    headers = headers or []
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("ascii"),
        "query_string": query.encode("ascii"),
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers],
        "client": ("testclient", 123),
        "server": ("testserver", 80),
        "scheme": "http",
        "root_path": "",
    }

    request_complete = False
    response_complete = asyncio.Event()
    response_status = None
    response_headers = []
    response_body = bytearray()

    async def receive():
        nonlocal request_complete
        if request_complete:
            await response_complete.wait()
            return {"type": "http.disconnect"}
        request_complete = True
        return {"type": "http.request", "body": body, "more_body": False}

    async def send(message):
        nonlocal response_status, response_headers
        if message["type"] == "http.response.start":
            response_status = message["status"]
            response_headers = message.get("headers", [])
        elif message["type"] == "http.response.body":
            response_body.extend(message.get("body", b""))
            if not message.get("more_body", False):
                response_complete.set()

    await app(scope, receive, send)

    headers_dict = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in response_headers}
    return response_status or 500, headers_dict, bytes(response_body)


def call_app(app, method: str, path: str, *, headers=None, body: bytes = b"", query: str = "") -> Tuple[int, dict, bytes]:
    return asyncio.run(_call_app(app, method, path, headers=headers, body=body, query=query))


def post_json(app, path: str, payload, *, headers=None) -> Tuple[int, dict, dict]:
    all_headers = [("Content-Type", "application/json")] + list(headers or [])
    status, response_headers, raw = call_app(
        app, "POST", path, headers=all_headers, body=json.dumps(payload).encode("utf-8")
    )
    return status, response_headers, json.loads(raw.decode("utf-8"))


@pytest.fixture()
def settings(monkeypatch, tmp_path) -> Settings:
    env = {
        "WORK_DIR": str(tmp_path / "work"),
        "ARTIFACT_DIR": str(tmp_path / "artifacts"),
        "ARTIFACT_TTL_SECONDS": "300",
        "SWEEP_INTERVAL_SECONDS": "60",
        "DOWNLOAD_GRACE_SECONDS": "2",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("LOGS_DIR", raising=False)
    loaded = Settings.load()
    loaded.ensure_dirs()
    return loaded


@pytest.fixture()
def store() -> ArtifactStore:
    return ArtifactStore()


@pytest.fixture()
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher({AUDIO_URL: AUDIO_BYTES, IMAGE_URL: PNG_BYTES})


@pytest.fixture()
def app(settings, store, encoder, fetcher):
    return create_app(settings, store=store, encoder=encoder, fetcher=fetcher)


def files_in(directory: Path) -> List[str]:
    return sorted(p.name for p in directory.iterdir())
