#!/usr/bin/env python3
"""
Conditional feed fetcher.

Performs one conditional GET per feed, following redirects through the
RedirectInterceptor, classifies the final response and hands every outcome to
the artifact store before reporting whether the feed was updated. 4xx and 5xx
responses are outcomes, not errors; only transport-level failures raise.
"""

from asyncio import TimeoutError
from time import time
from typing import Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector

from config import PollerSettings, get_logger
from errors import ArtifactWriteError, DownloadError, RedirectLoopError, TransportError
from models import FeedRecord, FetchOutcome, NO_ETAG, PollResult
from redirects import RedirectContext, RedirectInterceptor
from telemetry import init_telemetry, trace_span
from validators import build_request_headers, parse_response_validators

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-poller-fetcher")

# HTTP status codes
HTTP_NO_CONTENT = 204
HTTP_NOT_MODIFIED = 304
BODY_STATUSES = frozenset({200, 203, 214})

READ_CHUNK_SIZE = 64 * 1024


class FeedFetcher:
    """Fetch executor: one conditional GET per call, over a shared session."""

    def __init__(self, settings: PollerSettings, writer, interceptor: Optional[RedirectInterceptor] = None) -> None:
        self.settings = settings
        self.writer = writer
        self.interceptor = interceptor or RedirectInterceptor(writer, max_hops=settings.max_redirects)
        self.session: Optional[ClientSession] = None

    async def initialize(self) -> None:
        """Open the HTTP session used for every fetch."""
        if self.session is not None:
            return
        connector = TCPConnector(
            limit=self.settings.concurrency,
            keepalive_timeout=self.settings.pool_idle_timeout,
        )
        self.session = ClientSession(
            connector=connector,
            timeout=ClientTimeout(total=self.settings.request_timeout, connect=self.settings.connect_timeout),
            trace_configs=[self.interceptor.trace_config()],
            auto_decompress=True,
        )
        logger.debug("FeedFetcher initialized")

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None
        logger.debug("FeedFetcher closed")

    async def __aenter__(self) -> "FeedFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def check_feed(self, feed: FeedRecord) -> PollResult:
        return await self.fetch(feed.id, feed.url, feed.last_modified, feed.etag)

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_id, url, *args, **kwargs: {
            "feed.id": int(feed_id),
            "http.url": url,
        },
    )
    async def fetch(self, feed_id: int, url: str, last_modified: int = 0, etag: str = "") -> PollResult:
        """Fetch one feed conditionally and persist the outcome.

        Returns:
            PollResult with the outcome and the updated/not-updated verdict.

        Raises:
            TransportError: the request never produced a response (a
                connection-failure artifact has been written).
            DownloadError: the response body could not be read.
        """
        if self.session is None:
            await self.initialize()

        headers = {'User-Agent': self.settings.user_agent}
        conditional = build_request_headers(last_modified, etag)
        if 'If-Modified-Since' in conditional:
            logger.debug(f"  [{feed_id}|{last_modified}] If-Modified-Since: {conditional['If-Modified-Since']}")
        if 'If-None-Match' in conditional:
            logger.debug(f"  [{feed_id}] If-None-Match: {conditional['If-None-Match']}")
        headers.update(conditional)

        ctx = RedirectContext(feed_id=feed_id, hops=[url])
        try:
            async with self.session.get(
                url,
                headers=headers,
                # One above the interceptor's bound so the interceptor decides
                max_redirects=self.settings.max_redirects + 1,
                trace_request_ctx=ctx,
            ) as response:
                return await self._handle_response(feed_id, url, last_modified, etag, response)
        except (ClientError, TimeoutError, RedirectLoopError) as e:
            detail = self._format_client_error(e)
            logger.error(f"Error: [{detail}] fetching feed {feed_id} from {url}")
            outcome = FetchOutcome.failure(
                feed_id, url, self.settings.connection_failure_code,
                last_modified=last_modified,
                etag=etag if etag else NO_ETAG,
            )
            await self._persist(outcome, "connection error")
            raise TransportError(f"Error downloading feed: [{detail}]", feed_id=feed_id, url=url) from e

    async def _handle_response(self, feed_id: int, url: str, last_modified: int, etag: str, response) -> PollResult:
        status = response.status
        effective_url = str(response.url)
        logger.info(f"  Response Status: [{status}] for feed {feed_id}")

        new_modified, new_etag = parse_response_validators(response.headers, last_modified, etag)
        if new_modified != last_modified:
            logger.debug(f"  [{feed_id}] Last-Modified now {new_modified}")

        body = ""
        if status in BODY_STATUSES:
            raw = await self._read_body(feed_id, url, response)
            if raw is None:
                logger.warning(
                    f"  - Body for feed {feed_id} exceeds {self.settings.max_body_length} bytes, discarded."
                )
                status = self.settings.size_exceeded_code
                updated = False
                label = "oversized"
            else:
                body = self._decode(raw, response)
                logger.info(f"  - Content downloaded ({len(raw)} bytes).")
                updated = True
                label = "OK"
        elif status == HTTP_NO_CONTENT:
            logger.info("  - No content.")
            updated = True
            label = "204"
        elif status == HTTP_NOT_MODIFIED:
            logger.info("  - Content not modified.")
            updated = False
            label = "304"
        elif 400 <= status <= 499:
            logger.info("  - Request error.")
            updated = False
            label = "client error"
        elif 500 <= status <= 999:
            logger.info("  - Server error.")
            updated = False
            label = "server error"
        else:
            logger.warning(f"  - Unhandled status code {status} for feed {feed_id}.")
            updated = False
            label = "unhandled status"

        outcome = FetchOutcome(
            feed_id=feed_id,
            effective_url=effective_url,
            status_code=status,
            last_modified=new_modified,
            etag=new_etag,
            body=body,
            fetched_at=int(time()),
        )
        persisted = await self._persist(outcome, label)
        return PollResult(outcome=outcome, updated=updated, persisted=persisted)

    async def _read_body(self, feed_id: int, url: str, response) -> Optional[bytes]:
        """Read the decompressed body, or return None once it passes the ceiling."""
        limit = self.settings.max_body_length
        if response.content_length is not None and response.content_length > limit and not response.headers.get('Content-Encoding'):
            return None
        buf = bytearray()
        try:
            async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
                buf.extend(chunk)
                if len(buf) > limit:
                    return None
        except (ClientError, TimeoutError) as e:
            raise DownloadError(
                f"Error reading body: [{self._format_client_error(e)}]", feed_id=feed_id, url=url
            ) from e
        return bytes(buf)

    def _decode(self, raw: bytes, response) -> str:
        charset = response.charset or 'utf-8'
        try:
            return raw.decode(charset, errors='replace')
        except LookupError:
            return raw.decode('utf-8', errors='replace')

    async def _persist(self, outcome: FetchOutcome, label: str) -> bool:
        try:
            await self.writer.write(outcome)
            return True
        except ArtifactWriteError as e:
            logger.error(f"Error writing {label} feed file for feed {outcome.feed_id}: {e}")
            return False

    def _format_client_error(self, error: Exception) -> str:
        """Describe transport errors with any available status/errno."""
        parts = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if getattr(os_error, 'strerror', None):
                parts.append(str(os_error.strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
