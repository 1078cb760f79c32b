import os
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

os.environ.setdefault("DISABLE_TELEMETRY", "true")

from errors import StorageError  # noqa: E402
from models import Feed, FetchResult  # noqa: E402


class FakeClock:
    """Callable clock returning a settable epoch time."""

    def __init__(self, now: float = 1_760_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryFeedStore:
    """FeedStore double that records every write."""

    def __init__(self):
        self.feeds: Dict[int, Feed] = {}
        self.posts: Dict[Tuple[int, str], dict] = {}
        self.writes: List[Tuple[str, int]] = []
        self.fail_list = False
        self.fail_inserts = False

    def add_feed(self, url: str, **fields) -> Feed:
        feed = Feed(id=len(self.feeds) + 1, url=url, **fields)
        self.feeds[feed.id] = feed
        return feed

    def posts_for(self, feed_id: int) -> List[dict]:
        return [post for (fid, _), post in self.posts.items() if fid == feed_id]

    async def list_all_feeds(self) -> List[Feed]:
        if self.fail_list:
            raise StorageError("feed list unavailable")
        return [replace(feed) for feed in self.feeds.values()]

    async def get_feed_by_url(self, url: str) -> Optional[Feed]:
        for feed in self.feeds.values():
            if feed.url == url:
                return replace(feed)
        return None

    async def insert_item_if_absent(self, feed_id, guid, title, link, published_at, content) -> bool:
        if self.fail_inserts:
            raise StorageError("disk full")
        self.writes.append(("insert_item_if_absent", feed_id))
        key = (feed_id, guid)
        if key in self.posts:
            return False
        self.posts[key] = {
            "guid": guid,
            "title": title,
            "link": link,
            "published_at": published_at,
            "content": content,
        }
        return True

    async def update_feed_title(self, feed_id, title) -> None:
        self.writes.append(("update_feed_title", feed_id))
        self.feeds[feed_id].title = title

    async def update_feed_last_fetched_at(self, feed_id, timestamp) -> None:
        self.writes.append(("update_feed_last_fetched_at", feed_id))
        self.feeds[feed_id].last_fetched_at = timestamp

    async def update_feed_cache_metadata(self, feed_id, etag, last_modified, cache_until, fetched_at=None) -> None:
        self.writes.append(("update_feed_cache_metadata", feed_id))
        feed = self.feeds[feed_id]
        feed.etag = etag
        feed.last_modified = last_modified
        feed.cache_until = cache_until
        if fetched_at is not None:
            feed.last_fetched_at = fetched_at


class ScriptedFetcher:
    """Fetcher double: returns (or raises) whatever was scripted for a URL."""

    def __init__(self):
        self.responses: Dict[str, object] = {}
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.closed = False

    def script(self, url: str, response) -> None:
        self.responses[url] = response

    async def fetch(self, session, url, etag=None, last_modified=None) -> FetchResult:
        self.calls.append((url, etag, last_modified))
        response = self.responses[url]
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


@asynccontextmanager
async def _serve(handler):
    app = web.Application()
    app.router.add_get('/{tail:.*}', handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryFeedStore()


@pytest.fixture
def fetcher_double():
    return ScriptedFetcher()


@pytest.fixture
def serve():
    """Async context manager factory running an aiohttp handler on a local port."""
    return _serve
