import pytest

from errors import FetchError, ParseError, StorageError
from models import CacheInfo, FeedItem, FetchResult, ParsedFeed
from updater import BatchReport, FeedUpdater, RefreshOutcome


URL_A = "https://ex.com/a.xml"
URL_B = "https://ex.com/b.xml"
URL_C = "https://ex.com/c.xml"


def fetched(title="Feed", items=None, etag='"abc123"', last_modified=None, cache_until=0):
    items = items if items is not None else [
        FeedItem(guid="g1", title="One", link="https://ex.com/1", published_at=100,
                 content='<p>one</p><script>alert(1)</script>'),
        FeedItem(guid="g2", title="Two", link="https://ex.com/2", published_at=200,
                 content='<a href="/rel" onclick="x()">two</a>'),
    ]
    return FetchResult(
        feed=ParsedFeed(title=title, items=items),
        cache_info=CacheInfo(etag=etag, last_modified=last_modified, cache_until=cache_until),
    )


def make_updater(store, fetcher, clock, concurrency=1):
    return FeedUpdater(store, fetcher, concurrency=concurrency, clock=clock)


@pytest.mark.asyncio
async def test_valid_cache_skips_network(store, fetcher_double, clock):
    feed = store.add_feed(URL_A, cache_until=int(clock.now) + 100, etag='"v1"')
    updater = make_updater(store, fetcher_double, clock)

    outcome = await updater.refresh_feed(feed, session=None)

    assert outcome is RefreshOutcome.SKIPPED
    assert fetcher_double.calls == []
    assert store.writes == []


@pytest.mark.asyncio
async def test_expired_cache_fetches_with_validators(store, fetcher_double, clock):
    feed = store.add_feed(URL_A, cache_until=int(clock.now), etag='"v1"',
                          last_modified="Wed, 21 Oct 2015 07:28:00 GMT")
    fetcher_double.script(URL_A, FetchResult(not_modified=True))
    updater = make_updater(store, fetcher_double, clock)

    await updater.refresh_feed(feed, session=None)

    assert fetcher_double.calls == [(URL_A, '"v1"', "Wed, 21 Oct 2015 07:28:00 GMT")]


@pytest.mark.asyncio
async def test_not_modified_only_advances_last_fetched(store, fetcher_double, clock):
    feed = store.add_feed(URL_A, title="Kept", etag='"v1"', last_modified="lm", cache_until=10,
                          last_fetched_at=5)
    fetcher_double.script(URL_A, FetchResult(not_modified=True))
    updater = make_updater(store, fetcher_double, clock)

    outcome = await updater.refresh_feed(feed, session=None)

    stored = store.feeds[feed.id]
    assert outcome is RefreshOutcome.NOT_MODIFIED
    assert stored.last_fetched_at == int(clock.now)
    assert (stored.title, stored.etag, stored.last_modified, stored.cache_until) == ("Kept", '"v1"', "lm", 10)
    assert store.posts == {}
    assert store.writes == [("update_feed_last_fetched_at", feed.id)]


@pytest.mark.asyncio
async def test_update_stores_sanitized_items_and_cache(store, fetcher_double, clock):
    feed = store.add_feed(URL_A)
    cache_until = int(clock.now) + 3600
    fetcher_double.script(URL_A, fetched(title="Example", last_modified="lm", cache_until=cache_until))
    updater = make_updater(store, fetcher_double, clock)
    report = BatchReport()

    outcome = await updater.refresh_feed(feed, session=None, report=report)

    stored = store.feeds[feed.id]
    assert outcome is RefreshOutcome.UPDATED
    assert report.updated == 1
    assert report.new_items == 2
    assert stored.title == "Example"
    assert stored.etag == '"abc123"'
    assert stored.last_modified == "lm"
    assert stored.cache_until == cache_until
    assert stored.last_fetched_at == int(clock.now)

    posts = {post["guid"]: post for post in store.posts_for(feed.id)}
    assert posts["g1"]["content"] == "<p>one</p>"
    assert "onclick" not in posts["g2"]["content"]
    assert 'href="https://ex.com/rel"' in posts["g2"]["content"]


@pytest.mark.asyncio
async def test_cache_written_after_items(store, fetcher_double, clock):
    feed = store.add_feed(URL_A)
    fetcher_double.script(URL_A, fetched())
    updater = make_updater(store, fetcher_double, clock)

    await updater.refresh_feed(feed, session=None)

    assert store.writes[-1] == ("update_feed_cache_metadata", feed.id)


@pytest.mark.asyncio
async def test_ingestion_is_idempotent(store, fetcher_double, clock):
    store.add_feed(URL_A)
    fetcher_double.script(URL_A, fetched(cache_until=0))
    updater = make_updater(store, fetcher_double, clock)

    first = await updater.update_feeds()
    clock.advance(60)
    second = await updater.update_feeds()

    assert first.new_items == 2
    assert second.new_items == 0
    assert second.updated == 1
    assert len(store.posts) == 2


@pytest.mark.asyncio
async def test_empty_or_unchanged_title_not_written(store, fetcher_double, clock):
    feed = store.add_feed(URL_A, title="Same")
    updater = make_updater(store, fetcher_double, clock)

    await updater.ingest_feed(feed, ParsedFeed(title="", items=[]))
    await updater.ingest_feed(feed, ParsedFeed(title="Same", items=[]))

    assert ("update_feed_title", feed.id) not in store.writes
    assert store.feeds[feed.id].title == "Same"


@pytest.mark.asyncio
async def test_batch_isolates_failing_feed(store, fetcher_double, clock):
    for url in (URL_A, URL_B, URL_C):
        store.add_feed(url)
    fetcher_double.script(URL_A, fetched())
    fetcher_double.script(URL_B, FetchError("Unexpected HTTP status 500", url=URL_B))
    fetcher_double.script(URL_C, fetched())
    updater = make_updater(store, fetcher_double, clock)

    report = await updater.update_feeds()

    assert report.total == 3
    assert report.updated == 2
    assert report.failed == 1
    assert list(report.failures) == [URL_B]
    assert len(store.posts_for(1)) == 2
    assert len(store.posts_for(2)) == 0
    assert len(store.posts_for(3)) == 2
    assert store.feeds[2].cache_until is None
    assert store.feeds[1].last_fetched_at == int(clock.now)
    assert store.feeds[3].last_fetched_at == int(clock.now)
    assert store.feeds[2].last_fetched_at is None


@pytest.mark.asyncio
async def test_parse_and_unexpected_errors_are_feed_scoped(store, fetcher_double, clock):
    for url in (URL_A, URL_B, URL_C):
        store.add_feed(url)
    fetcher_double.script(URL_A, ParseError("Not a feed document", url=URL_A))
    fetcher_double.script(URL_B, ValueError("surprise"))
    fetcher_double.script(URL_C, fetched())
    updater = make_updater(store, fetcher_double, clock)

    report = await updater.update_feeds()

    assert report.failed == 2
    assert report.updated == 1
    assert set(report.failures) == {URL_A, URL_B}


@pytest.mark.asyncio
async def test_insert_failure_does_not_advance_cache(store, fetcher_double, clock):
    feed = store.add_feed(URL_A)
    store.fail_inserts = True
    fetcher_double.script(URL_A, fetched(cache_until=int(clock.now) + 3600))
    updater = make_updater(store, fetcher_double, clock)

    report = await updater.update_feeds()

    assert report.failed == 1
    assert store.feeds[feed.id].cache_until is None
    assert store.feeds[feed.id].last_fetched_at is None


@pytest.mark.asyncio
async def test_feed_list_failure_propagates(store, fetcher_double, clock):
    store.add_feed(URL_A)
    store.fail_list = True
    updater = make_updater(store, fetcher_double, clock)

    with pytest.raises(StorageError):
        await updater.update_feeds()
    assert fetcher_double.calls == []


@pytest.mark.asyncio
async def test_should_continue_stops_new_work(store, fetcher_double, clock):
    for url in (URL_A, URL_B, URL_C):
        store.add_feed(url)
        fetcher_double.script(url, fetched())
    updater = make_updater(store, fetcher_double, clock)
    checks = []

    def should_continue():
        checks.append(True)
        return len(checks) <= 1

    report = await updater.update_feeds(should_continue=should_continue)

    assert len(fetcher_double.calls) == 1
    assert report.updated == 1
    assert report.cancelled == 2


@pytest.mark.asyncio
async def test_concurrent_batch_refreshes_every_feed(store, fetcher_double, clock):
    for url in (URL_A, URL_B, URL_C):
        store.add_feed(url)
        fetcher_double.script(url, fetched())
    updater = make_updater(store, fetcher_double, clock, concurrency=3)

    report = await updater.update_feeds()

    assert report.updated == 3
    assert len(store.posts) == 6


@pytest.mark.asyncio
async def test_batch_report_summary(store, fetcher_double, clock):
    store.add_feed(URL_A, cache_until=int(clock.now) + 10)
    updater = make_updater(store, fetcher_double, clock)

    report = await updater.update_feeds()

    assert report.skipped == 1
    assert "1 skipped" in report.summary()


@pytest.mark.asyncio
async def test_close_closes_fetcher(store, fetcher_double, clock):
    updater = make_updater(store, fetcher_double, clock)

    await updater.close()

    assert fetcher_double.closed
