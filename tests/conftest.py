"""Shared fixtures: in-memory store, mocked origin, and a wired-up app."""
from __future__ import annotations

from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from vidrelay.config import Settings
from vidrelay.main import create_app
from vidrelay.store import MemoryStore

USER_SECRET = "user-secret"
ADMIN_SECRET = "admin-secret"
ORIGIN_URL = "https://cdn.example.com/a.mp4"
VIDEO_BYTES = bytes(range(256)) * 8  # 2048 bytes


class ChunkedBody(httpx.AsyncByteStream):
    """Origin body delivered in small chunks, like a real socket would."""

    def __init__(self, data: bytes, chunk_size: int = 256, fail_after: Optional[int] = None) -> None:
        self.data = data
        self.chunk_size = chunk_size
        self.fail_after = fail_after
        self.closed = False

    async def __aiter__(self):
        for n, i in enumerate(range(0, len(self.data), self.chunk_size)):
            if self.fail_after is not None and n >= self.fail_after:
                raise httpx.ReadError("connection reset by origin")
            yield self.data[i:i + self.chunk_size]

    async def aclose(self) -> None:
        self.closed = True


class FakeOrigin:
    """MockTransport handler serving VIDEO_BYTES with byte-range support."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.bodies: list[ChunkedBody] = []
        self.status_code: Optional[int] = None
        self.error: Optional[Exception] = None
        self.fail_after_chunks: Optional[int] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status_code is not None:
            return httpx.Response(self.status_code, content=b"origin says no")

        headers = {"Content-Type": "video/mp4", "Accept-Ranges": "bytes"}
        range_header = request.headers.get("range")
        if range_header:
            start_s, end_s = range_header.removeprefix("bytes=").split("-")
            start = int(start_s)
            end = int(end_s) if end_s else len(VIDEO_BYTES) - 1
            data = VIDEO_BYTES[start:end + 1]
            headers["Content-Range"] = f"bytes {start}-{end}/{len(VIDEO_BYTES)}"
            status = 206
        else:
            data = VIDEO_BYTES
            status = 200

        headers["Content-Length"] = str(len(data))
        body = ChunkedBody(data, fail_after=self.fail_after_chunks)
        self.bodies.append(body)
        return httpx.Response(status, headers=headers, stream=body)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        user_secrets=(USER_SECRET,),
        admin_secrets=(ADMIN_SECRET,),
        store_backend="memory",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def app(settings, store, origin):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(origin))
    return create_app(settings, store=store, http_client=http_client)


@pytest.fixture
def client(app):
    # https so the Secure session cookie is kept by the client
    with TestClient(app, base_url="https://testserver") as c:
        yield c
