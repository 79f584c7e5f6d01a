#!/usr/bin/env python3
"""
Conditional-request validator handling.

Translates cached validators (unix timestamp, entity tag) into
If-Modified-Since / If-None-Match request headers, and reads Last-Modified /
ETag back out of a response.
"""

from datetime import timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Dict, Mapping, Optional, Tuple

from config import get_logger
from models import NO_ETAG

logger = get_logger("validators")


def format_http_date(timestamp: int) -> str:
    """Format a unix timestamp as an RFC 7231 IMF-fixdate string."""
    return formatdate(timestamp, usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[int]:
    """Parse an HTTP date into a unix timestamp, or None if it can't be used."""
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError, OverflowError) as exc:
        logger.debug(f"Unable to parse HTTP date '{value}': {exc}")
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        timestamp = int(dt.timestamp())
    except (OverflowError, OSError, ValueError):
        return None
    # Dates before the epoch are not representable as stored validators
    if timestamp < 0:
        return None
    return timestamp


def build_request_headers(last_modified: int, etag: str) -> Dict[str, str]:
    """Build conditional request headers from cached validators.

    Headers whose source value is absent are left out entirely. The etag is
    sent exactly as stored, unless it could not be sent as a header value at
    all, in which case it is dropped.
    """
    headers: Dict[str, str] = {}
    if last_modified and last_modified > 0:
        headers['If-Modified-Since'] = format_http_date(last_modified)
    if etag and etag != NO_ETAG:
        if is_sendable_etag(etag):
            headers['If-None-Match'] = etag
        else:
            logger.warning(f"Ignoring malformed cached etag {etag!r}")
    return headers


def is_sendable_etag(etag: str) -> bool:
    """True if ``etag`` is latin-1 text without control characters."""
    try:
        etag.encode('latin-1')
    except UnicodeEncodeError:
        return False
    return not any(ord(c) < 0x20 or ord(c) == 0x7f for c in etag)


def parse_response_validators(
    headers: Mapping[str, str],
    previous_last_modified: int,
    previous_etag: str = "",
) -> Tuple[int, str]:
    """Extract (last_modified, etag) from response headers.

    Header names are matched case-insensitively; with repeated headers the
    last one wins. A malformed Last-Modified keeps ``previous_last_modified``.
    A missing or empty ETag falls back to ``previous_etag`` and then to
    NO_ETAG.
    """
    last_modified = previous_last_modified
    etag = None

    for key, value in headers.items():
        name = key.lower()
        if name == 'last-modified' and value:
            parsed = parse_http_date(value)
            if parsed is not None:
                last_modified = parsed
        elif name == 'etag' and value:
            etag = value

    if etag is None:
        etag = previous_etag if previous_etag and previous_etag != NO_ETAG else NO_ETAG
    return last_modified, etag
