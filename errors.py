#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
Origin-server error responses (4xx/5xx) are classified outcomes, not
exceptions; everything here is a local failure.
"""

from typing import Optional, Sequence


class PollerError(Exception):
    """Base class for all feed poller failures."""


class FeedListError(PollerError):
    """Raised when the feed catalog cannot be read. Fatal to a run."""


class FetchError(PollerError):
    """A single feed fetch could not produce a classified response.

    Attributes:
        feed_id: The feed being fetched.
        url: The URL that was requested.
    """

    def __init__(self, message: str, feed_id: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.feed_id = feed_id
        self.url = url


class TransportError(FetchError):
    """DNS, connect, TLS, timeout or redirect-loop failure before a response."""


class DownloadError(FetchError):
    """The response headers arrived but the body could not be read."""


class RedirectLoopError(FetchError):
    """Raised by the redirect interceptor when a chain grows too long.

    Attributes:
        hops: The URLs already requested in the chain, original URL first.
    """

    def __init__(self, message: str, feed_id: Optional[int] = None, url: Optional[str] = None,
                 hops: Sequence[str] = ()):
        super().__init__(message, feed_id=feed_id, url=url)
        self.hops = tuple(hops)


class ArtifactWriteError(PollerError):
    """Raised when an artifact store cannot persist an outcome.

    Attributes:
        key: Store key that failed to be written.
    """

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


__all__ = [
    "PollerError",
    "FeedListError",
    "FetchError",
    "TransportError",
    "DownloadError",
    "RedirectLoopError",
    "ArtifactWriteError",
]
