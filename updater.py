#!/usr/bin/env python3
"""
Feed refresh and ingestion.

FeedUpdater runs one refresh batch: it loads every subscribed feed, skips the
ones whose cached copy is still valid, fetches the rest conditionally and
writes new items. One feed failing never stops the others.
"""

from asyncio import Semaphore, gather
from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Callable, Dict, Optional

from aiohttp import ClientSession

from cache import should_skip_fetch
from config import config, get_logger
from errors import RefreshError
from fetcher import FeedFetcher
from models import Feed, FeedStore, ParsedFeed
from telemetry import set_span_attributes, trace_span
from utils import format_duration, sanitize_html

# Module-specific logger
logger = get_logger("updater")


class RefreshOutcome(Enum):
    SKIPPED = "skipped"
    NOT_MODIFIED = "not_modified"
    UPDATED = "updated"


@dataclass
class BatchReport:
    """Counters for one refresh batch."""

    total: int = 0
    skipped: int = 0
    not_modified: int = 0
    updated: int = 0
    failed: int = 0
    cancelled: int = 0
    new_items: int = 0
    duration: float = 0.0
    failures: Dict[str, str] = field(default_factory=dict)

    def record(self, outcome: RefreshOutcome) -> None:
        if outcome is RefreshOutcome.SKIPPED:
            self.skipped += 1
        elif outcome is RefreshOutcome.NOT_MODIFIED:
            self.not_modified += 1
        else:
            self.updated += 1

    def record_failure(self, url: str, error: BaseException) -> None:
        self.failed += 1
        self.failures[url] = str(error)

    def summary(self) -> str:
        text = (
            f"{self.total} feeds: {self.updated} updated ({self.new_items} new items), "
            f"{self.not_modified} not modified, {self.skipped} skipped, {self.failed} failed"
        )
        if self.cancelled:
            text += f", {self.cancelled} not started"
        return f"{text} in {format_duration(self.duration)}"


class FeedUpdater:
    """Refreshes feeds from a FeedStore using a FeedFetcher."""

    def __init__(self, store: FeedStore, fetcher: Optional[FeedFetcher] = None,
                 concurrency: Optional[int] = None, clock: Callable[[], float] = time) -> None:
        self.store = store
        self.clock = clock
        self.fetcher = fetcher if fetcher is not None else FeedFetcher(clock=clock)
        self.concurrency = max(1, concurrency if concurrency is not None else config.REFRESH_CONCURRENCY)

    @trace_span(
        "updater.batch",
        tracer_name="updater",
        attr_from_args=lambda self, should_continue=None, session=None: {
            "refresh.concurrency": self.concurrency,
        },
    )
    async def update_feeds(self, should_continue: Optional[Callable[[], bool]] = None,
                           session: Optional[ClientSession] = None) -> BatchReport:
        """Run one refresh batch over every known feed.

        Args:
            should_continue: Checked before each feed; once it returns False no
                             further feeds are started
            session: HTTP session to use; a new one is opened when omitted

        Raises:
            StorageError: The feed list could not be loaded.
        """
        started = self.clock()
        feeds = await self.store.list_all_feeds()
        report = BatchReport(total=len(feeds))
        logger.info(f"Refreshing {len(feeds)} feeds")

        if session is None:
            async with ClientSession() as own_session:
                await self._refresh_all(feeds, own_session, report, should_continue)
        else:
            await self._refresh_all(feeds, session, report, should_continue)

        report.duration = max(0.0, self.clock() - started)
        set_span_attributes({
            "refresh.feeds": report.total,
            "refresh.updated": report.updated,
            "refresh.not_modified": report.not_modified,
            "refresh.skipped": report.skipped,
            "refresh.failed": report.failed,
            "refresh.new_items": report.new_items,
        })
        logger.info(f"Refresh batch finished: {report.summary()}")
        return report

    async def _refresh_all(self, feeds, session: ClientSession, report: BatchReport,
                           should_continue: Optional[Callable[[], bool]]) -> None:
        semaphore = Semaphore(self.concurrency)

        async def refresh_with_semaphore(feed: Feed) -> None:
            async with semaphore:
                if should_continue is not None and not should_continue():
                    report.cancelled += 1
                    return
                try:
                    await self.refresh_feed(feed, session, report)
                except RefreshError as e:
                    logger.error(f"Refresh failed for {feed.url}: {e}")
                    report.record_failure(feed.url, e)
                except Exception as e:
                    logger.exception(f"Unexpected error refreshing {feed.url}: {e}")
                    report.record_failure(feed.url, e)

        await gather(*(refresh_with_semaphore(feed) for feed in feeds))

    @trace_span(
        "updater.refresh_feed",
        tracer_name="updater",
        attr_from_args=lambda self, feed, session, report=None: {"feed.url": feed.url},
    )
    async def refresh_feed(self, feed: Feed, session: ClientSession,
                           report: Optional[BatchReport] = None) -> RefreshOutcome:
        """Refresh a single feed.

        Skips the network entirely while the cached copy is valid. A 304 only
        advances last_fetched_at. A 200 stores new items first and then the
        new cache metadata, so a failed insert leaves the feed due for retry.
        """
        now = self.clock()

        if should_skip_fetch(feed.cache_until, now):
            logger.debug(f"Skipping {feed.url}: cached until {feed.cache_until}")
            outcome = RefreshOutcome.SKIPPED
        else:
            result = await self.fetcher.fetch(session, feed.url, feed.etag, feed.last_modified)
            if result.not_modified:
                await self.store.update_feed_last_fetched_at(feed.id, int(now))
                logger.info(f"Feed {feed.url} not modified")
                outcome = RefreshOutcome.NOT_MODIFIED
            else:
                new_items = await self.ingest_feed(feed, result.feed)
                cache_info = result.cache_info
                await self.store.update_feed_cache_metadata(
                    feed.id,
                    cache_info.etag,
                    cache_info.last_modified,
                    cache_info.cache_until,
                    fetched_at=int(now),
                )
                logger.info(f"Feed {feed.url} updated: {new_items} new of {len(result.feed.items)} items")
                if report is not None:
                    report.new_items += new_items
                outcome = RefreshOutcome.UPDATED

        set_span_attributes({"refresh.outcome": outcome.value})
        if report is not None:
            report.record(outcome)
        return outcome

    async def ingest_feed(self, feed: Feed, parsed: ParsedFeed) -> int:
        """Store the items of a parsed feed that are not stored yet.

        Every item is sanitized here, immediately before the insert. Returns the
        number of newly inserted items.
        """
        new_items = 0
        for item in parsed.items:
            content = sanitize_html(item.content, base_url=item.link or feed.url)
            inserted = await self.store.insert_item_if_absent(
                feed.id, item.guid, item.title, item.link, item.published_at, content
            )
            if inserted:
                new_items += 1

        if parsed.title and parsed.title != feed.title:
            logger.info(f"Feed {feed.url} title changed to {parsed.title!r}")
            await self.store.update_feed_title(feed.id, parsed.title)

        return new_items

    async def close(self) -> None:
        await self.fetcher.close()
