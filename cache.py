#!/usr/bin/env python3
"""
HTTP cache policy for feed refreshes.

Pure functions only: deciding whether a fetch can be skipped, building the
conditional request headers from stored validators, and turning response
headers into the cache metadata stored with the feed. Callers pass "now"
explicitly so nothing here reads the wall clock.
"""

from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Mapping, Optional

from multidict import CIMultiDict

from models import CacheInfo

# Fallback validity when a response has neither Expires nor max-age
DEFAULT_CACHE_TTL = 3600

FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/json;q=0.9, application/xml;q=0.9, text/xml;q=0.9"
)

MAX_AGE_PREFIX = "max-age="


def should_skip_fetch(cache_until: Optional[float], now: float) -> bool:
    """True when the stored cache validity is known and strictly in the future."""
    return cache_until is not None and cache_until > now


def build_request_headers(user_agent: str, etag: Optional[str] = None,
                          last_modified: Optional[str] = None) -> Dict[str, str]:
    """Request headers for a (possibly conditional) feed GET.

    Validators are sent exactly as the server gave them to us.
    """
    headers = {
        'User-Agent': user_agent,
        'Accept': FEED_ACCEPT,
    }
    if etag:
        headers['If-None-Match'] = etag
    if last_modified:
        headers['If-Modified-Since'] = last_modified
    return headers


def _find_max_age(cache_control: Optional[str]) -> Optional[int]:
    for part in (cache_control or "").split(','):
        token = part.strip()
        if not token.lower().startswith(MAX_AGE_PREFIX):
            continue
        value = token[len(MAX_AGE_PREFIX):]
        if value.isascii() and value.isdigit():
            return int(value)
        # Only the first max-age directive counts
        return None
    return None


def parse_max_age(cache_control: Optional[str]) -> int:
    """Seconds from the first max-age directive of a Cache-Control value.

    Returns 0 when there is no usable max-age directive.
    """
    max_age = _find_max_age(cache_control)
    return max_age if max_age is not None else 0


def parse_http_date(value: Optional[str]) -> Optional[int]:
    """Epoch seconds for an HTTP date, or None if it does not parse."""
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def extract_cache_info(headers: Mapping[str, str], now: float,
                       default_ttl: int = DEFAULT_CACHE_TTL) -> CacheInfo:
    """Cache metadata from a 200 response.

    cache_until is, in priority order: a valid Expires date, now + max-age,
    now + default_ttl.
    """
    headers = CIMultiDict(headers)

    cache_until = parse_http_date(headers.get('Expires'))
    if cache_until is None:
        max_age = _find_max_age(headers.get('Cache-Control'))
        ttl = max_age if max_age is not None else default_ttl
        cache_until = int(now) + ttl

    return CacheInfo(
        etag=headers.get('ETag') or None,
        last_modified=headers.get('Last-Modified') or None,
        cache_until=cache_until,
    )
