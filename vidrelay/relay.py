"""
Streaming relay from an origin URL to the client.

The relay does not understand video containers. It forwards the client's
Range header, passes the origin status (200/206) and headers through, and
copies body bytes as they arrive. Seeking works because the browser and the
origin negotiate byte ranges directly through it.

Each transfer holds one slot of a bounded pool for its whole lifetime.
When the pool is full new transfers are refused with 503 before the origin
is contacted.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx
from fastapi.responses import StreamingResponse

logger = logging.getLogger(__name__)

# Hop-by-hop headers (RFC 7230 §6.1) apply to the origin connection only.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

CORS_HEADER = "access-control-allow-origin"


class RelayError(Exception):
    """Origin fetch failed before any bytes were sent to the client."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class RelayBusy(RelayError):
    def __init__(self) -> None:
        super().__init__(503, "Too many concurrent streams.")


def _response_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    # Raw bytes as the origin sent them; values are never decoded
    raw = [
        (key.lower(), value)
        for key, value in headers.raw
        if key.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        and key.lower() != CORS_HEADER.encode("latin-1")
    ]
    raw.append((CORS_HEADER.encode("latin-1"), b"*"))
    return raw


class _Transfer:
    """One open origin response and the pool slot it holds. Closed once."""

    def __init__(self, relay: StreamRelay, upstream: httpx.Response) -> None:
        self.relay = relay
        self.upstream = upstream
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.upstream.aclose()
        finally:
            self.relay._release()


class RelayedResponse(StreamingResponse):
    """StreamingResponse that closes its transfer however sending ends.

    The body generator's own cleanup does not run if the client is gone
    before the first chunk is requested, so the transfer is also closed here.
    """

    def __init__(self, transfer: _Transfer, content, status_code: int) -> None:
        super().__init__(content, status_code=status_code)
        self.transfer = transfer

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.transfer.close()


class StreamRelay:
    def __init__(self, client: httpx.AsyncClient, max_concurrent_streams: int = 64) -> None:
        self.client = client
        self.max_concurrent_streams = max_concurrent_streams
        self._slots = asyncio.Semaphore(max_concurrent_streams)
        self._active = 0

    @property
    def active_streams(self) -> int:
        return self._active

    async def open(self, origin_url: str, range_header: Optional[str] = None) -> RelayedResponse:
        """Contact the origin and return a response streaming its body.

        Raises RelayError (or RelayBusy) if nothing can be streamed.
        """
        if self._slots.locked():
            logger.warning("Stream limit reached (%d)", self.max_concurrent_streams)
            raise RelayBusy()

        await self._slots.acquire()
        self._active += 1
        try:
            upstream = await self._fetch(origin_url, range_header)
        except BaseException:
            self._release()
            raise

        transfer = _Transfer(self, upstream)
        try:
            response = RelayedResponse(transfer, self._body(transfer), upstream.status_code)
            response.raw_headers = _response_headers(upstream.headers)
        except BaseException:
            await transfer.close()
            raise
        return response

    async def _fetch(self, origin_url: str, range_header: Optional[str]) -> httpx.Response:
        headers = {}
        if range_header:
            headers["Range"] = range_header

        try:
            request = self.client.build_request("GET", origin_url, headers=headers)
            upstream = await self.client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            logger.warning("Origin timeout for %s: %s", _host(origin_url), exc)
            raise RelayError(504, "Origin did not respond in time.") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Origin unreachable for %s: %s", _host(origin_url), exc)
            raise RelayError(502, "Could not connect to the video source.") from exc

        if not upstream.is_success:
            await upstream.aclose()
            logger.warning(
                "Origin %s answered %d", _host(origin_url), upstream.status_code,
            )
            raise RelayError(upstream.status_code, "Failed to fetch video from source.")
        if upstream.status_code == 204:
            await upstream.aclose()
            logger.warning("Origin %s answered 204 without a body", _host(origin_url))
            raise RelayError(502, "Origin returned no body.")

        return upstream

    async def _body(self, transfer: _Transfer) -> AsyncIterator[bytes]:
        upstream = transfer.upstream
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning("Origin stream from %s broke off: %s", upstream.url.host, exc)
            raise
        finally:
            await transfer.close()

    def _release(self) -> None:
        self._active -= 1
        self._slots.release()


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host or url
    except httpx.InvalidURL:
        return url
