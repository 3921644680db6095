"""Relay of a StreamTarget to an HTTP response.

Every RelayStream owns exactly one underlying resource (an upstream httpx
response or an open temp file) and releases it exactly once, whichever of
completion, error or client cancellation comes first.
"""
import asyncio
import logging
import os
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import aiofiles
import anyio
import httpx
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from vidrelay.config.settings import config
from vidrelay.core.policy import is_private_or_local_target
from vidrelay.models.internal import LocalTempFile, RemoteTunnel, StreamTarget
from vidrelay.utils.filename import content_disposition, mime_type_for
from vidrelay.utils.locale import safe_url_for_log

logger = logging.getLogger(__name__)

UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)


class RelayError(Exception):
    """Failure to open a relay source; status_code is what the client gets"""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RedirectRefused(RelayError):
    """An upstream redirect pointed into a private network"""

    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class StreamRelayError(Exception):
    """Read failure after the response has started"""


def parse_content_length(value: Optional[str]) -> Optional[int]:
    """Upstream length, or None when missing, malformed, zero or negative"""
    if not value:
        return None
    try:
        length = int(value.strip())
    except ValueError:
        return None
    return length if length > 0 else None


def build_download_headers(filename: str, content_length: Optional[int]) -> Dict[str, str]:
    headers = {
        "Content-Type": mime_type_for(filename),
        "Content-Disposition": content_disposition(filename),
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
        "X-Content-Type-Options": "nosniff",
    }
    if content_length is not None and content_length > 0:
        headers["Content-Length"] = str(content_length)
    return headers


class RelayStream:
    """A byte source plus the single finalizer that releases it"""

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        finalizer: Callable[[], Awaitable[None]],
        label: str,
        content_length: Optional[int] = None,
        status_code: int = 200,
        extra_headers: Optional[Dict[str, str]] = None,
    ):
        self._chunks = chunks
        self._finalizer = finalizer
        self.label = label
        self.content_length = content_length
        self.status_code = status_code
        self.extra_headers = extra_headers or {}
        self.bytes_sent = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._chunks:
                self.bytes_sent += len(chunk)
                yield chunk
            logger.info(f"Relay of {self.label} completed ({self.bytes_sent} bytes)")
        except asyncio.CancelledError:
            logger.info(f"Relay of {self.label} cancelled after {self.bytes_sent} bytes")
            raise
        except (OSError, httpx.HTTPError) as e:
            logger.error(f"Relay of {self.label} failed after {self.bytes_sent} bytes: {e}")
            raise StreamRelayError(str(e)) from e
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the resource once; cleanup failures are logged, not raised"""
        if self._closed:
            return
        self._closed = True
        with anyio.CancelScope(shield=True):
            try:
                await self._finalizer()
            except Exception as e:
                logger.warning(f"Cleanup of {self.label} failed: {e}")


class RelayResponse(StreamingResponse):
    """StreamingResponse that releases its RelayStream on every exit path"""

    def __init__(self, stream: RelayStream, filename: str):
        headers = build_download_headers(filename, stream.content_length)
        headers.update(stream.extra_headers)
        super().__init__(
            stream.iter_bytes(),
            status_code=stream.status_code,
            headers=headers,
        )
        self.relay_stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # The body iterator may never have started (disconnect before the first chunk)
            await self.relay_stream.aclose()


def remove_file(path) -> None:
    try:
        os.remove(path)
        logger.info(f"Cleaned up {os.path.basename(str(path))}")
    except FileNotFoundError:
        pass


async def open_local(target: LocalTempFile, chunk_size: Optional[int] = None) -> RelayStream:
    """Open a temp file for relaying; the file is deleted when the relay ends"""
    chunk_size = chunk_size or config.relay.chunk_size
    try:
        handle = await aiofiles.open(target.path, "rb")
    except OSError as e:
        logger.error(f"Failed to open {target.path}: {e}")
        remove_file(target.path)
        raise RelayError("Failed to open downloaded file", status_code=500) from e

    async def chunks() -> AsyncIterator[bytes]:
        while True:
            chunk = await handle.read(chunk_size)
            if not chunk:
                break
            yield chunk

    async def finalize() -> None:
        try:
            await handle.close()
        finally:
            remove_file(target.path)

    return RelayStream(
        chunks(),
        finalize,
        label=os.path.basename(str(target.path)),
        content_length=target.size_bytes if target.size_bytes > 0 else None,
    )


def upstream_headers(url: str, range_header: Optional[str] = None) -> Dict[str, str]:
    parsed = urlparse(url)
    headers = {
        "Referer": f"{parsed.scheme}://{parsed.netloc}/",
        "User-Agent": UA,
        "Accept": "*/*",
        "Accept-Encoding": "identity",
        "Connection": "keep-alive",
    }
    # Range transparency (critical for seek)
    if range_header:
        headers["Range"] = range_header
    return headers


async def open_remote(
    client: httpx.AsyncClient,
    target: RemoteTunnel,
    range_header: Optional[str] = None,
) -> RelayStream:
    """Start an upstream GET; the response is closed when the relay ends"""
    req = client.build_request("GET", target.url, headers=upstream_headers(target.url, range_header))
    response = await client.send(req, stream=True)

    if not response.is_success:
        await response.aclose()
        logger.error(f"Upstream responded {response.status_code} for {safe_url_for_log(target.url)}")
        raise RelayError("Upstream request failed", status_code=response.status_code)

    content_length = parse_content_length(response.headers.get("content-length"))
    logger.info(
        f"Upstream {response.status_code} content-type={response.headers.get('content-type')} "
        f"content-length={response.headers.get('content-length')}"
    )

    extra_headers = {"Accept-Ranges": "bytes"}
    if response.status_code == 206 and "content-range" in response.headers:
        extra_headers["Content-Range"] = response.headers["content-range"]
    # Raw bytes are relayed, so the upstream length and encoding describe them as sent
    encoding = response.headers.get("content-encoding", "identity").lower()
    if encoding != "identity":
        extra_headers["Content-Encoding"] = encoding

    return RelayStream(
        response.aiter_raw(),
        response.aclose,
        label=safe_url_for_log(target.url),
        content_length=content_length,
        status_code=response.status_code,
        extra_headers=extra_headers,
    )


async def open_stream(
    target: StreamTarget,
    client: Optional[httpx.AsyncClient] = None,
    range_header: Optional[str] = None,
) -> RelayStream:
    """Open either kind of target; remote tunnels need the shared client"""
    if isinstance(target, LocalTempFile):
        return await open_local(target)
    if client is None:
        raise ValueError("A remote tunnel needs an HTTP client")
    return await open_remote(client, target, range_header)


async def reject_private_redirect(request: httpx.Request) -> None:
    """Request hook: redirect hops may not lead into private networks"""
    if not config.security.enable_ssrf_protection:
        return
    trusted = {h.lower() for h in config.security.trusted_relay_hosts}
    if request.url.host.lower() in trusted:
        return
    if is_private_or_local_target(str(request.url)):
        raise RedirectRefused("Redirect to a private address refused")


def build_http_client(**kwargs) -> httpx.AsyncClient:
    """Shared upstream client (keep-alive) with the redirect guard installed"""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=config.relay.upstream_timeout,
        event_hooks={"request": [reject_private_redirect]},
        **kwargs,
    )
