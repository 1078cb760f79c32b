#!/usr/bin/env python3
"""
RSSGrid refresh engine entry point.

By default this seeds the feeds listed in feeds.yaml and then refreshes every
subscribed feed on a fixed interval until SIGINT/SIGTERM. Subscription
management and a single refresh run are available as command line options.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from config import config, get_logger
from errors import RefreshError
from models import DatabaseQueue
from scheduler import RefreshScheduler
from telemetry import init_telemetry, trace_span
from updater import FeedUpdater
from utils import format_timestamp, validate_url

# Module-specific logger
logger = get_logger("main")

SECONDS_PER_MINUTE = 60


class RefreshOrchestrator:
    """Wires storage, updater and scheduler together for the command line."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.updater: Optional[FeedUpdater] = None

    async def __aenter__(self) -> "RefreshOrchestrator":
        await self.db.start()
        self.updater = FeedUpdater(self.db)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.updater:
            await self.updater.close()
        await self.db.stop()

    async def add_feeds(self, urls: List[str]) -> int:
        """Register feeds; invalid URLs are reported and skipped."""
        added = 0
        for url in urls:
            url = url.strip()
            if not validate_url(url):
                logger.warning(f"Ignoring invalid feed URL: {url!r}")
                continue
            existing = await self.db.get_feed_by_url(url)
            feed_id = await self.db.register_feed(url)
            if existing is None:
                logger.info(f"Subscribed to {url} (id {feed_id})")
                added += 1
        return added

    async def seed_feeds(self) -> int:
        """Register every feed listed in feeds.yaml."""
        if not config.FEED_SOURCES:
            return 0
        added = await self.add_feeds(config.FEED_SOURCES)
        if added:
            logger.info(f"Registered {added} feeds from {config.FEEDS_CONFIG_PATH}")
        return added

    async def remove_feed(self, url: str) -> bool:
        feed = await self.db.get_feed_by_url(url)
        if feed is None:
            logger.warning(f"No feed subscribed with URL {url}")
            return False
        removed = await self.db.delete_feed(feed.id)
        if removed:
            logger.info(f"Removed {url} and its posts")
        return removed

    async def print_feeds(self) -> None:
        feeds = await self.db.list_all_feeds()
        if not feeds:
            print("No feeds subscribed")
            return
        for feed in feeds:
            count = await self.db.count_posts(feed.id)
            print(f"[{feed.id}] {feed.title or '(untitled)'}")
            print(f"    URL: {feed.url}")
            print(f"    Posts: {count}")
            print(f"    Last fetched: {format_timestamp(feed.last_fetched_at)}")
            print(f"    Cached until: {format_timestamp(feed.cache_until)}")

    @trace_span("orchestrator.run_once", tracer_name="orchestrator")
    async def run_once(self) -> bool:
        """Run a single refresh batch. Returns False if any feed failed."""
        await self.seed_feeds()
        report = await self.updater.update_feeds()
        for url, error in report.failures.items():
            logger.error(f"  {url}: {error}")
        return report.failed == 0

    async def run_scheduled(self, interval_minutes: int, run_immediately: bool) -> None:
        """Refresh on a fixed interval until a termination signal arrives."""
        await self.seed_feeds()

        scheduler = RefreshScheduler(self.updater, interval_minutes * SECONDS_PER_MINUTE)
        stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; KeyboardInterrupt still works
                pass

        logger.info(f"Refreshing feeds every {interval_minutes} minutes")
        scheduler.start(stop_event=stop_event, run_immediately=run_immediately)
        await scheduler.wait()


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='RSSGrid feed refresh engine')
    parser.add_argument('--once', action='store_true',
                        help='Run a single refresh batch and exit')
    parser.add_argument('--add', nargs='+', metavar='URL',
                        help='Subscribe to one or more feeds')
    parser.add_argument('--remove', metavar='URL',
                        help='Unsubscribe from a feed and delete its posts')
    parser.add_argument('--list', action='store_true',
                        help='List subscribed feeds')
    parser.add_argument('--interval', type=int, metavar='MINUTES',
                        help=f'Refresh interval (default {config.UPDATE_INTERVAL_MINUTES})')
    parser.add_argument('--run-immediately', action='store_true',
                        help='Refresh right away instead of after the first interval')
    parser.add_argument('--database', metavar='PATH',
                        help=f'SQLite database (default {config.DATABASE_PATH})')

    args = parser.parse_args()

    if args.interval is not None and args.interval < 1:
        parser.error("--interval must be at least 1 minute")

    init_telemetry("rssgrid")
    logger.debug(f"Configuration: {config.get_config_summary()}")

    async def run() -> int:
        async with RefreshOrchestrator(args.database) as orchestrator:
            if args.add:
                await orchestrator.add_feeds(args.add)
            if args.remove:
                await orchestrator.remove_feed(args.remove)
            if args.list:
                await orchestrator.print_feeds()
            if args.add or args.remove or args.list:
                return 0

            if args.once:
                return 0 if await orchestrator.run_once() else 1

            await orchestrator.run_scheduled(
                args.interval or config.UPDATE_INTERVAL_MINUTES,
                args.run_immediately or config.SCHEDULER_RUN_IMMEDIATELY,
            )
            return 0

    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("RSSGrid shutting down")
    except RefreshError as e:
        logger.error(f"Refresh engine failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
