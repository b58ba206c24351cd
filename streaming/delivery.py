"""
Stream delivery: turns a validated remote path and an optional Range header
into an HTTP response.

Three strategies:
- direct: the remote command's stdout is piped to the client, reading only
  the requested window (block-aligned ``dd`` plus a trim for large files,
  ``tail``/``head`` for small ones).
- cached: the whole file is downloaded once into the local cache and the
  requested window is served from disk.
- external: redirect to the external media engine.

Status, Content-Length and Content-Range are fixed before the first body byte.
The remote read is pulled chunk by chunk as the client consumes, and the
remote command is released when the body ends or the client goes away.
"""

import logging
import math
import posixpath
import re
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from starlette.background import BackgroundTask
from starlette.responses import RedirectResponse, Response, StreamingResponse

from api.enums import DeliveryStrategy, StreamPreference
from api.errors import CacheWriteError, NotFound, RangeNotSatisfiable, RemoteTransportError
from api.metrics import (
    REMOTE_COMMAND_FAILURES_TOTAL,
    STREAM_ABORTED_TOTAL,
    STREAM_BYTES_TOTAL,
    STREAM_REQUESTS_TOTAL,
)
from config import (
    DEFAULT_VIDEO_MIME_TYPE,
    LARGE_FILE_THRESHOLD,
    LARGE_FULL_IDLE_TIMEOUT,
    LARGE_RANGE_IDLE_TIMEOUT,
    PROXY_REDIRECT_LARGE_FILES,
    REMOTE_BLOCK_SIZE,
    SMALL_FILE_IDLE_TIMEOUT,
    STREAM_CACHE_MAX_AGE,
    STREAM_CHUNK_SIZE,
    VIDEO_MIME_TYPES,
)
from streaming.cache import LocalCacheManager
from streaming.inspector import RemoteVideoInspector
from streaming.media_links import MediaUrlBuilder
from streaming.transport import RemoteExecutor, RemoteStream, quote

logger = logging.getLogger(__name__)

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte window within a file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """
    Parse a single-range ``Range`` header against a file of ``size`` bytes.

    Returns None when there is no usable range (missing, malformed, or
    multiple ranges), in which case the full file is served. The end offset
    defaults to, and is clamped at, ``size - 1``. ``bytes=-N`` selects the
    last N bytes.

    Raises:
        RangeNotSatisfiable: if the range starts at or beyond the end of file.
    """
    if not header:
        return None
    match = _RANGE_PATTERN.match(header.strip())
    if not match:
        logger.debug(f"Ignoring unsupported Range header: {header!r}")
        return None

    start_text, end_text = match.groups()
    if not start_text and not end_text:
        return None

    if not start_text:
        suffix = int(end_text)
        if suffix == 0:
            raise RangeNotSatisfiable(size)
        return ByteRange(start=max(0, size - suffix), end=size - 1)

    start = int(start_text)
    if start >= size:
        raise RangeNotSatisfiable(size)
    end = int(end_text) if end_text else size - 1
    if end < start:
        logger.debug(f"Ignoring inverted Range header: {header!r}")
        return None
    return ByteRange(start=start, end=min(end, size - 1))


def content_type_for(filename: str) -> str:
    return VIDEO_MIME_TYPES.get(posixpath.splitext(filename)[1].lower(), DEFAULT_VIDEO_MIME_TYPE)


def stream_headers(filename: str) -> dict:
    """Headers every successful video response carries."""
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
        "Access-Control-Allow-Headers": "Range, Authorization",
        "Accept-Ranges": "bytes",
        "Cache-Control": f"public, max-age={STREAM_CACHE_MAX_AGE}",
        "Content-Type": content_type_for(filename),
    }


def preflight_response() -> Response:
    headers = {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
        "Access-Control-Allow-Headers": "Range, Authorization",
        "Access-Control-Max-Age": "86400",
    }
    return Response(status_code=204, headers=headers)


def build_read_command(
    remote_path: str,
    size: int,
    byte_range: Optional[ByteRange],
    block_size: int = REMOTE_BLOCK_SIZE,
    large_file_threshold: int = LARGE_FILE_THRESHOLD,
) -> str:
    """Shell command whose stdout is exactly the requested bytes of remote_path."""
    path = quote(remote_path)
    large = size > large_file_threshold

    if byte_range is None:
        if large:
            return f"dd if={path} bs={block_size} 2>/dev/null"
        return f"cat -- {path}"

    if large:
        first_block = byte_range.start // block_size
        offset = byte_range.start % block_size
        blocks = math.ceil((offset + byte_range.length) / block_size)
        return (
            f"dd if={path} bs={block_size} skip={first_block} count={blocks} 2>/dev/null"
            f" | tail -c +{offset + 1} | head -c {byte_range.length}"
        )
    return f"tail -c +{byte_range.start + 1} -- {path} | head -c {byte_range.length}"


def idle_timeout_for(
    size: int,
    byte_range: Optional[ByteRange],
    large_file_threshold: int = LARGE_FILE_THRESHOLD,
) -> float:
    if size <= large_file_threshold:
        return SMALL_FILE_IDLE_TIMEOUT
    return LARGE_RANGE_IDLE_TIMEOUT if byte_range is not None else LARGE_FULL_IDLE_TIMEOUT


class LocalFileStream(RemoteStream):
    """A window of a cached file, read with aiofiles."""

    def __init__(self, handle, start: int, length: int, chunk_size: int):
        self._handle = handle
        self._start = start
        self._length = length
        self._chunk_size = chunk_size
        self._closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            await self._handle.seek(self._start)
            remaining = self._length
            while remaining > 0:
                data = await self._handle.read(min(self._chunk_size, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._handle.close()


class StreamDeliveryEngine:
    """Chooses a delivery strategy and builds the response."""

    def __init__(
        self,
        executor: RemoteExecutor,
        inspector: RemoteVideoInspector,
        cache: Optional[LocalCacheManager],
        media_links: MediaUrlBuilder,
        large_file_threshold: int = LARGE_FILE_THRESHOLD,
        block_size: int = REMOTE_BLOCK_SIZE,
        chunk_size: int = STREAM_CHUNK_SIZE,
        proxy_redirect_large_files: bool = PROXY_REDIRECT_LARGE_FILES,
    ):
        self.executor = executor
        self.inspector = inspector
        self.cache = cache
        self.media_links = media_links
        self.large_file_threshold = large_file_threshold
        self.block_size = block_size
        self.chunk_size = chunk_size
        self.proxy_redirect_large_files = proxy_redirect_large_files

    async def resolve_size(self, server_id: int, remote_path: str) -> int:
        """Size of the remote file; NotFound when it is missing or empty."""
        try:
            size = await self.inspector.stat_size(server_id, remote_path)
        except RemoteTransportError as e:
            REMOTE_COMMAND_FAILURES_TOTAL.labels(operation="stat").inc()
            raise RemoteTransportError.for_video(e) from e
        if size == 0:
            raise NotFound()
        return size

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def stream_direct(
        self,
        server_id: int,
        remote_path: str,
        range_header: Optional[str],
        method: str = "GET",
    ) -> Response:
        """Proxy endpoint: always pipes remote bytes, never redirects."""
        size = await self.resolve_size(server_id, remote_path)
        byte_range = parse_range(range_header, size)
        return await self._direct_response(server_id, remote_path, size, byte_range, method, allow_fallback=False)

    async def stream(
        self,
        server_id: int,
        remote_path: str,
        range_header: Optional[str],
        method: str = "GET",
        prefer: StreamPreference = StreamPreference.AUTO,
        proxy_url: Optional[str] = None,
    ) -> Response:
        """General endpoint: redirect, cache or pipe depending on size and configuration."""
        size = await self.resolve_size(server_id, remote_path)

        if prefer == StreamPreference.DIRECT:
            external_url = self.media_links(remote_path)
            if external_url:
                return self._external_redirect(remote_path, external_url, status_code=302)

        byte_range = parse_range(range_header, size)

        if size > self.large_file_threshold:
            if self.proxy_redirect_large_files and proxy_url:
                STREAM_REQUESTS_TOTAL.labels(strategy=DeliveryStrategy.PROXY.value, status="307").inc()
                return RedirectResponse(proxy_url, status_code=307)
            return await self._direct_response(server_id, remote_path, size, byte_range, method, allow_fallback=True)

        if self.cache is not None and self.cache.is_cacheable(size):
            try:
                return await self._cached_response(server_id, remote_path, size, byte_range, method)
            except CacheWriteError as e:
                logger.warning(f"Cache unavailable for {remote_path}, streaming directly: {e}")
            except RemoteTransportError as e:
                REMOTE_COMMAND_FAILURES_TOTAL.labels(operation="download").inc()
                return self._fallback_or_raise(remote_path, e)

        return await self._direct_response(server_id, remote_path, size, byte_range, method, allow_fallback=True)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _response_head(self, remote_path: str, size: int, byte_range: Optional[ByteRange]):
        headers = stream_headers(posixpath.basename(remote_path))
        if byte_range is not None:
            headers["Content-Range"] = byte_range.content_range(size)
            headers["Content-Length"] = str(byte_range.length)
            return 206, headers
        headers["Content-Length"] = str(size)
        return 200, headers

    async def _direct_response(
        self,
        server_id: int,
        remote_path: str,
        size: int,
        byte_range: Optional[ByteRange],
        method: str,
        allow_fallback: bool,
    ) -> Response:
        status_code, headers = self._response_head(remote_path, size, byte_range)
        strategy = DeliveryStrategy.DIRECT
        if method == "HEAD":
            STREAM_REQUESTS_TOTAL.labels(strategy=strategy.value, status=str(status_code)).inc()
            return Response(status_code=status_code, headers=headers)

        command = build_read_command(remote_path, size, byte_range, self.block_size, self.large_file_threshold)
        idle_timeout = idle_timeout_for(size, byte_range, self.large_file_threshold)
        try:
            stream = await self.executor.open_stream(server_id, command, idle_timeout, self.chunk_size)
        except RemoteTransportError as e:
            REMOTE_COMMAND_FAILURES_TOTAL.labels(operation="stream").inc()
            if allow_fallback:
                return self._fallback_or_raise(remote_path, e)
            raise RemoteTransportError.for_video(e) from e

        expected = byte_range.length if byte_range is not None else size
        logger.info(
            f"Streaming {remote_path} from server {server_id} "
            f"({headers.get('Content-Range', f'{size} bytes')}, timeout {idle_timeout:.0f}s)"
        )
        return self._streaming_response(stream, strategy, status_code, headers, expected, remote_path)

    async def _cached_response(
        self,
        server_id: int,
        remote_path: str,
        size: int,
        byte_range: Optional[ByteRange],
        method: str,
    ) -> Response:
        strategy = DeliveryStrategy.CACHED
        if method == "HEAD":
            # Headers come from the remote size; nothing is fetched
            status_code, headers = self._response_head(remote_path, size, byte_range)
            STREAM_REQUESTS_TOTAL.labels(strategy=strategy.value, status=str(status_code)).inc()
            return Response(status_code=status_code, headers=headers)

        handle, cached_size = await self.cache.open(server_id, remote_path, expected_size=size)
        status_code, headers = self._response_head(remote_path, cached_size, byte_range)
        start = byte_range.start if byte_range is not None else 0
        length = byte_range.length if byte_range is not None else cached_size
        stream = LocalFileStream(handle, start, length, self.chunk_size)
        return self._streaming_response(stream, strategy, status_code, headers, length, remote_path)

    def _streaming_response(
        self,
        stream: RemoteStream,
        strategy: DeliveryStrategy,
        status_code: int,
        headers: dict,
        expected: int,
        remote_path: str,
    ) -> StreamingResponse:
        STREAM_REQUESTS_TOTAL.labels(strategy=strategy.value, status=str(status_code)).inc()
        return StreamingResponse(
            self._body(stream, strategy, expected, remote_path),
            status_code=status_code,
            headers=headers,
            background=BackgroundTask(stream.close),
        )

    async def _body(
        self,
        stream: RemoteStream,
        strategy: DeliveryStrategy,
        expected: int,
        remote_path: str,
    ) -> AsyncIterator[bytes]:
        sent = 0
        completed = False
        abort_reason = "client_disconnect"
        try:
            async for chunk in stream.chunks():
                sent += len(chunk)
                yield chunk
            completed = True
        except RemoteTransportError as e:
            # Headers are already sent; the connection is cut short
            abort_reason = "remote_error"
            logger.error(f"Stream of {remote_path} failed after {sent}/{expected} bytes: {e}")
            raise
        finally:
            STREAM_BYTES_TOTAL.labels(strategy=strategy.value).inc(sent)
            await stream.close()
            if not completed:
                STREAM_ABORTED_TOTAL.labels(strategy=strategy.value, reason=abort_reason).inc()
                logger.debug(f"Stream of {remote_path} ended early after {sent}/{expected} bytes")

        if sent != expected:
            logger.warning(f"Stream of {remote_path} sent {sent} bytes, expected {expected}")

    def _external_redirect(self, remote_path: str, url: str, status_code: int = 302) -> RedirectResponse:
        STREAM_REQUESTS_TOTAL.labels(strategy=DeliveryStrategy.EXTERNAL.value, status=str(status_code)).inc()
        logger.info(f"Redirecting {remote_path} to external media engine")
        return RedirectResponse(url, status_code=status_code)

    def _fallback_or_raise(self, remote_path: str, error: RemoteTransportError) -> Response:
        external_url = self.media_links(remote_path)
        if not external_url:
            raise RemoteTransportError.for_video(error) from error
        logger.warning(f"Falling back to external media engine for {remote_path}: {error}")
        return self._external_redirect(remote_path, external_url, status_code=302)
