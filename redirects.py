#!/usr/bin/env python3
"""
Redirect interception for feed fetches.

aiohttp follows redirects itself; this module hooks each hop through a
TraceConfig so the chain length can be bounded and permanent redirects
(301/308) can be recorded as redirect stubs the moment they are seen, even
if the final destination later fails.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Sequence
from urllib.parse import urljoin

from aiohttp import TraceConfig, hdrs

from config import get_logger
from errors import ArtifactWriteError, RedirectLoopError
from models import FetchOutcome, PERMANENT_REDIRECT_CODES

logger = get_logger("redirects")


@dataclass
class RedirectContext:
    """Per-request hop state, passed to aiohttp as ``trace_request_ctx``.

    ``hops`` holds every URL requested so far in the chain, starting with
    the original one.
    """

    feed_id: int
    hops: List[str] = field(default_factory=list)


class RedirectInterceptor:
    """Policy applied to every redirect hop of a fetch."""

    def __init__(self, writer, max_hops: int = 9, permanent_codes: Iterable[int] = PERMANENT_REDIRECT_CODES) -> None:
        self.writer = writer
        self.max_hops = max_hops
        self.permanent_codes = frozenset(permanent_codes)

    async def on_redirect(self, feed_id: int, previous_hops: Sequence[str], status_code: int, location: str) -> None:
        """Decide what to do with one redirect response.

        Returning normally means the redirect is followed.

        Raises:
            RedirectLoopError: once more than ``max_hops`` URLs have been requested.
        """
        if len(previous_hops) > self.max_hops:
            raise RedirectLoopError(
                f"Too many redirects ({len(previous_hops)} requests) for feed {feed_id}",
                feed_id=feed_id,
                url=previous_hops[0] if previous_hops else None,
                hops=previous_hops,
            )

        if status_code in self.permanent_codes:
            logger.info(f"  [{feed_id}] Permanent redirect ({status_code}) to {location}")
            stub = FetchOutcome.redirect_stub(feed_id, location, status_code)
            try:
                await self.writer.write(stub)
            except ArtifactWriteError as e:
                logger.error(f"Error writing redirect file for feed {feed_id}: {e}")

    async def _on_request_redirect(self, session, trace_config_ctx, params) -> None:
        ctx = trace_config_ctx.trace_request_ctx
        if not isinstance(ctx, RedirectContext):
            return
        response = params.response
        location = response.headers.get(hdrs.LOCATION) or response.headers.get(hdrs.URI)
        if not location:
            # aiohttp hands back a redirect without a target as the final response
            return
        target = urljoin(str(params.url), location)
        if not ctx.hops:
            ctx.hops.append(str(params.url))
        try:
            await self.on_redirect(ctx.feed_id, list(ctx.hops), response.status, target)
        except RedirectLoopError:
            response.release()
            raise
        ctx.hops.append(target)

    def trace_config(self) -> TraceConfig:
        """Build the aiohttp TraceConfig that feeds redirect hops to this policy."""
        trace_config = TraceConfig()
        trace_config.on_request_redirect.append(self._on_request_redirect)
        return trace_config
