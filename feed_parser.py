#!/usr/bin/env python3
"""
Feed document parsing.

Turns a fetched RSS/Atom/JSON Feed body into a ParsedFeed: the feed title and
one FeedItem per usable entry. Content is returned raw here; sanitization is
applied once, by the ingestion writer, right before storage.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urljoin

import feedparser

from config import get_logger
from errors import ParseError
from models import FeedItem, ParsedFeed

# Module-specific logger
logger = get_logger("feed_parser")

MAX_TITLE_LENGTH = 1024
MAX_URL_LENGTH = 2048

# Checked in order; the first one that yields a timestamp wins
DATE_FIELDS = ('published', 'updated')


def parse_feed(content: bytes, url: str, response_headers: Optional[Mapping[str, str]] = None,
               clock: Callable[[], float] = time) -> ParsedFeed:
    """Parse a feed document.

    Args:
        content: Raw response body
        url: The feed URL, used to resolve relative item links and in errors
        response_headers: Response headers (content type drives decoding)
        clock: Source of "now" for items without any date

    Raises:
        ParseError: The body is not a feed document feedparser recognizes.
    """
    # Without a base URI feedparser keeps guids verbatim; only item links are
    # resolved, against the feed URL, in entry_to_item
    headers = {k.lower(): v for k, v in (response_headers or {}).items()
               if k.lower() != 'content-location'}

    try:
        feed = feedparser.parse(
            content,
            response_headers=headers,
            sanitize_html=False,         # sanitized once, before storage
            resolve_relative_uris=False,  # content links resolved by sanitize_html
        )
    except (ValueError, TypeError, LookupError) as e:
        raise ParseError("Could not parse feed", url=url, cause=e) from e

    if not feed.get('version'):
        cause = feed.get('bozo_exception') or "unrecognized document format"
        raise ParseError("Not a feed document", url=url, cause=cause)

    logger.debug(f"Feed {url} parsed as {feed.version} format")
    if feed.bozo:
        logger.warning(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

    now = int(clock())
    title = (feed.feed.get('title') or "").strip()[:MAX_TITLE_LENGTH]
    items = []
    for entry in feed.entries:
        item = entry_to_item(entry, now, base_url=url)
        if item is None:
            logger.warning(f"Skipping entry without id or link in {url}")
            continue
        items.append(item)

    return ParsedFeed(title=title, items=items)


def entry_to_item(entry, now: int, base_url: Optional[str] = None) -> Optional[FeedItem]:
    """Normalize one feedparser entry; None when it has neither id nor link.

    The guid is kept exactly as the feed supplies it. A relative link is
    resolved against base_url.
    """
    link = (_get_entry_value(entry, 'link') or "").strip()
    if link and base_url:
        link = urljoin(base_url, link)
    link = link[:MAX_URL_LENGTH]
    guid = (_get_entry_value(entry, 'id') or "").strip()[:MAX_URL_LENGTH]
    if not guid:
        guid = link
    if not guid:
        return None

    title = (_get_entry_value(entry, 'title') or "").strip()[:MAX_TITLE_LENGTH]

    return FeedItem(
        guid=guid,
        title=title,
        link=link,
        published_at=entry_timestamp(entry, now),
        content=extract_content(entry),
    )


def entry_timestamp(entry, now: int) -> int:
    """Best available date: published, then updated, then ``now``."""
    for field in DATE_FIELDS:
        timestamp = _date_value_to_timestamp(_get_entry_value(entry, f"{field}_parsed"))
        if timestamp:
            return timestamp
        timestamp = _date_value_to_timestamp(_get_entry_value(entry, field))
        if timestamp:
            return timestamp
    return now


def extract_content(entry) -> str:
    """Full content if the entry has any, else its summary/description."""
    for content_item in _get_entry_value(entry, 'content') or []:
        value = content_item.get('value') if hasattr(content_item, 'get') else None
        if value:
            return value

    return _get_entry_value(entry, 'summary') or _get_entry_value(entry, 'description') or ""


def _get_entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        value = getter(field)
        if value is not None:
            return value
    return getattr(entry, field, None)


def _date_value_to_timestamp(value: Any) -> Optional[int]:
    """Convert assorted date representations into a Unix timestamp."""
    if value in (None, ''):
        return None

    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    if isinstance(value, (list, tuple)):
        # feedparser *_parsed values are UTC struct_time
        try:
            timestamp = timegm(tuple(value))
        except (OverflowError, ValueError, TypeError):
            return None
        return timestamp if timestamp > 0 else None

    if isinstance(value, str):
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError, OverflowError):
            return None
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    return None
