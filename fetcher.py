#!/usr/bin/env python3
"""
Conditional feed fetcher.

Performs one HTTP GET per feed, sending the stored validators so unchanged
feeds answer 304, and turns a 200 into a parsed feed plus the cache metadata
that decides when the feed is due again.
"""

from asyncio import get_event_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from time import time
from typing import Any, Callable, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from cache import build_request_headers, extract_cache_info
from config import config, get_logger
from errors import FetchError
from feed_parser import parse_feed
from models import FetchResult
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304


class FeedFetcher:
    """Fetches and parses feeds with HTTP conditional requests.

    The fetcher never touches storage; the caller decides what to persist
    from the returned FetchResult.
    """

    def __init__(self, user_agent: Optional[str] = None, timeout: Optional[int] = None,
                 default_ttl: Optional[int] = None, clock: Callable[[], float] = time) -> None:
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.default_ttl = default_ttl if default_ttl is not None else config.DEFAULT_CACHE_SECONDS
        self.clock = clock
        self.executor = ThreadPoolExecutor()

    @trace_span(
        "fetcher.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, session, url, etag=None, last_modified=None: {
            "feed.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, session: ClientSession, url: str, etag: Optional[str] = None,
                    last_modified: Optional[str] = None) -> FetchResult:
        """Fetch a feed, conditionally when validators are known.

        Returns:
            FetchResult(not_modified=True) on 304, otherwise the parsed feed and
            its cache metadata.

        Raises:
            FetchError: Non-200/304 status, timeout or transport failure.
            ParseError: The 200 body is not a feed.
        """
        headers = build_request_headers(self.user_agent, etag, last_modified)

        try:
            async with session.get(url, headers=headers, timeout=ClientTimeout(total=self.timeout)) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"Feed {url} not modified since last fetch")
                    return FetchResult(not_modified=True)

                if response.status != HTTP_OK:
                    raise FetchError(f"Unexpected HTTP status {response.status}", url=url)

                content = await response.read()
                response_headers = response.headers
        except TimeoutError as e:
            # aiohttp surfaces timeouts as asyncio.TimeoutError
            raise FetchError(f"Timed out after {self.timeout}s", url=url, cause=e) from e
        except ClientError as e:
            raise FetchError("Network error", url=url, cause=self._format_client_error(e)) from e

        now = self.clock()
        cache_info = extract_cache_info(response_headers, now, self.default_ttl)
        parsed = await self.run_in_executor(
            partial(parse_feed, response_headers=dict(response_headers), clock=lambda: now),
            content,
            url,
        )
        logger.debug(f"Fetched {url}: {len(parsed.items)} items, cache until {cache_info.cache_until}")
        return FetchResult(feed=parsed, cache_info=cache_info)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def close(self) -> None:
        """Shut down the parsing thread pool."""
        if not self.executor:
            return
        try:
            await wait_for(
                get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                timeout=30.0
            )
        except TimeoutError:
            logger.warning("Thread pool executor shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)
        self.executor = None
        logger.debug("FeedFetcher closed")

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
