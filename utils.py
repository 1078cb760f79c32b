#!/usr/bin/env python3
"""
Utility functions shared by the refresh engine and the command line.

Most importantly this holds sanitize_html(), the single place where untrusted
feed markup is turned into HTML that is safe to store and embed.
"""

from datetime import datetime, timezone
from typing import Optional
import re
from urllib.parse import urljoin, urlsplit

import bleach
from bs4 import BeautifulSoup

# Elements removed together with everything inside them
DANGEROUS_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link", "svg", "math",
    "template", "button", "input", "select", "textarea",
]

# User-generated-content policy: text formatting, lists, tables, links and images
ALLOWED_TAGS = frozenset({
    "a", "abbr", "acronym", "b", "blockquote", "br", "caption", "cite", "code",
    "dd", "del", "dfn", "div", "dl", "dt", "em", "figcaption", "figure",
    "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i", "img", "ins", "kbd", "li",
    "mark", "ol", "p", "pre", "q", "s", "samp", "small", "span", "strike",
    "strong", "sub", "sup", "table", "tbody", "td", "tfoot", "th", "thead",
    "time", "tr", "u", "ul",
})

ALLOWED_ATTRIBUTES = {
    "*": ["title", "lang", "dir"],
    "a": ["href", "title", "rel"],
    "abbr": ["title"],
    "img": ["src", "alt", "title", "width", "height"],
    "td": ["colspan", "rowspan"],
    "th": ["colspan", "rowspan", "scope"],
    "time": ["datetime"],
    "q": ["cite"],
    "blockquote": ["cite"],
}

ALLOWED_PROTOCOLS = frozenset({"http", "https", "mailto"})

# Whole file names of well-known tracking and spacer images
_TRACKER_FILE = re.compile(r'^(pixel|tracker|tracking|counter|spacer|blank|trans|transparent|1x1)\.(gif|png)$', re.I)


def _is_tracking_pixel(img) -> bool:
    if img.get('height') in ('0', '1') or img.get('width') in ('0', '1'):
        return True
    try:
        file_name = urlsplit(str(img.get('src', ''))).path.rsplit('/', 1)[-1]
    except ValueError:
        return False
    return bool(_TRACKER_FILE.match(file_name))


def _rewrite_url(value: str, attr: str, base_url: Optional[str]) -> Optional[str]:
    """Return an absolute http(s) URL for value, or None if it cannot be made safe."""
    if not value:
        return None
    if attr == 'href' and value.startswith(('mailto:', '#')):
        return value
    if value.startswith(('http://', 'https://')):
        return value
    if base_url:
        try:
            resolved = urljoin(base_url, value)
        except ValueError:
            return None
        if resolved.startswith(('http://', 'https://')):
            return resolved
    return None


def sanitize_html(html_content: Optional[str], base_url: Optional[str] = None) -> str:
    """Make untrusted feed markup safe for storage and direct embedding in HTML.

    Args:
        html_content: Raw item content from the feed
        base_url: Optional base URL (usually the item link) used to resolve
                  relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.) including their text
    - Removes common tracking pixels
    - Resolves relative href/src against ``base_url``; unresolvable links become
      ``#`` and unresolvable images are dropped
    - Applies an allowlist of tags, attributes and URL schemes (bleach), which
      also strips on* handlers and javascript: URLs
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(DANGEROUS_TAGS):
        tag.decompose()

    for img in soup.find_all('img'):
        if _is_tracking_pixel(img):
            img.decompose()

    for tag in soup.find_all(['a', 'img']):
        attr = 'href' if tag.name == 'a' else 'src'
        if not tag.has_attr(attr):
            continue
        rewritten = _rewrite_url(str(tag[attr]).strip(), attr, base_url)
        if rewritten:
            tag[attr] = rewritten
        elif tag.name == 'a':
            tag[attr] = '#'
        else:
            tag.decompose()

    return bleach.clean(
        str(soup),
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
        strip_comments=True,
    ).strip()


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def format_timestamp(timestamp: Optional[float]) -> str:
    """Return a human-readable UTC timestamp for diagnostics."""
    if timestamp is None:
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)
