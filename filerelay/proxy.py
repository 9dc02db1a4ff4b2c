import logging
import re
from enum import Enum
from typing import AsyncIterator
from urllib.parse import quote

import httpx
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from filerelay.models import FileRecord
from filerelay.registry import FileRegistry
from filerelay.resolver import LocatorInvalid, UpstreamRateLimited, UpstreamResolver, UpstreamUnavailable

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class Disposition(str, Enum):
    INLINE = "inline"
    ATTACHMENT = "attachment"


class RelayFailure(RuntimeError):
    pass


class RelayResponse(StreamingResponse):
    """StreamingResponse that owns the upstream it relays.

    The upstream is closed however the response ends, including when
    sending the headers fails and the body iterator never starts.
    """

    def __init__(self, content, *, upstream: httpx.Response, **kwargs):
        super().__init__(content, **kwargs)
        self.upstream = upstream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream.aclose()


def content_disposition(disposition: Disposition, filename: str) -> str:
    """Build a Content-Disposition value that survives latin-1 header encoding.

    Control characters are replaced in the quoted name. Non-ASCII names get an
    ASCII fallback plus an RFC 5987 ``filename*``.
    """
    fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
    fallback = CONTROL_CHARS.sub("_", fallback)
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    value = f'{disposition.value}; filename="{fallback}"'
    if not filename.isascii():
        value += f"; filename*=utf-8''{quote(filename, safe='')}"
    return value


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("retry-after", "")
    return int(value) if value.isdigit() else None


async def open_upstream(client: httpx.AsyncClient, url: str, *, timeout: httpx.Timeout) -> httpx.Response:
    """Open a streaming GET against an http or https upstream URL.

    Any failure before the first body byte is reported as a ResolutionError
    subclass, so callers can still answer with an error status.
    """
    try:
        scheme = httpx.URL(url).scheme
    except httpx.InvalidURL as e:
        raise LocatorInvalid("Upstream URL is malformed") from e
    if scheme not in ("http", "https"):
        raise LocatorInvalid(f"Unsupported upstream scheme: {scheme or 'none'}")

    request = client.build_request("GET", url, headers={"Accept-Encoding": "identity"}, timeout=timeout)
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as e:
        raise UpstreamUnavailable(f"Upstream fetch timed out: {type(e).__name__}") from e
    except httpx.TransportError as e:
        raise UpstreamUnavailable(f"Upstream fetch failed: {type(e).__name__}") from e

    if response.status_code == 200:
        return response

    await response.aclose()
    status = response.status_code
    if status == 429:
        raise UpstreamRateLimited("Upstream fetch rate limited", retry_after=_retry_after(response))
    if status in (400, 403, 404, 410):
        raise LocatorInvalid(f"Upstream fetch answered HTTP {status}")
    raise UpstreamUnavailable(f"Upstream fetch answered HTTP {status}")


class StreamProxy:
    def __init__(
        self,
        *,
        registry: FileRegistry,
        resolver: UpstreamResolver,
        client: httpx.AsyncClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        connect_timeout: float = 20.0,
        idle_timeout: float | None = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.client = client
        self.chunk_size = chunk_size
        self.timeout = httpx.Timeout(connect_timeout, read=idle_timeout)

    async def open(self, key: str, disposition: Disposition, *, range_header: str | None = None) -> RelayResponse:
        record = self.registry.lookup(key)
        descriptor = await self.resolver.resolve(record.upstream_locator)
        upstream = await open_upstream(self.client, descriptor.url, timeout=self.timeout)

        if range_header:
            logger.debug("Ignoring Range %r for %s, sending full body", range_header, key)

        try:
            return RelayResponse(
                self.relay(record, upstream),
                upstream=upstream,
                status_code=200,
                headers=self.response_headers(record, disposition, upstream),
            )
        except Exception:
            await upstream.aclose()
            raise

    def response_headers(self, record: FileRecord, disposition: Disposition, upstream: httpx.Response) -> dict:
        headers = {
            "Content-Type": record.mime_type,
            "Content-Disposition": content_disposition(disposition, record.display_name),
            "Accept-Ranges": "bytes",
        }
        length = upstream.headers.get("content-length")
        if length and length.isdigit() and "content-encoding" not in upstream.headers:
            headers["Content-Length"] = length
        return headers

    async def relay(self, record: FileRecord, upstream: httpx.Response) -> AsyncIterator[bytes]:
        transferred = 0
        try:
            async for chunk in upstream.aiter_bytes(self.chunk_size):
                transferred += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            logger.warning(
                "Relay aborted for %s after %d bytes: %s",
                record.key,
                transferred,
                type(e).__name__,
            )
            raise RelayFailure(f"upstream broke off after {transferred} bytes") from e
        finally:
            await upstream.aclose()

        self.registry.record_access(record.key)
        logger.info("Relayed %s (%d bytes)", record.key, transferred)
