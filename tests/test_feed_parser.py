from datetime import datetime, timezone

import pytest

from errors import ParseError
from feed_parser import entry_timestamp, parse_feed


RSS_WITHOUT_GUID = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>Example Feed</title>
    <link>https://x/</link>
    <description>Example</description>
    <item>
      <title>First post</title>
      <link>https://x/y</link>
      <description>&lt;p&gt;Summary text&lt;/p&gt;</description>
      <pubDate>Sat, 15 Nov 2025 16:00:00 +0000</pubDate>
    </item>
    <item>
      <title>Second post</title>
      <guid isPermaLink="false">post-2</guid>
      <link>https://x/z</link>
      <description>No date here</description>
    </item>
    <item>
      <title>Orphan</title>
      <description>Neither guid nor link</description>
    </item>
  </channel>
</rss>
"""

ATOM_WITH_CONTENT = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <id>urn:example:feed</id>
  <updated>2025-11-17T00:00:00Z</updated>
  <entry>
    <id>urn:example:entry:1</id>
    <title>Atom entry</title>
    <link href="https://x/e1"/>
    <updated>2025-11-17T00:00:00Z</updated>
    <summary>Short summary</summary>
    <content type="html">&lt;p&gt;Full body&lt;/p&gt;</content>
  </entry>
</feed>
"""


def test_guid_falls_back_to_link():
    parsed = parse_feed(RSS_WITHOUT_GUID, "https://x/feed.xml")

    assert parsed.title == "Example Feed"
    assert parsed.items[0].guid == "https://x/y"
    assert parsed.items[0].link == "https://x/y"
    assert parsed.items[1].guid == "post-2"


def test_entries_without_guid_or_link_are_skipped():
    parsed = parse_feed(RSS_WITHOUT_GUID, "https://x/feed.xml")

    assert [item.title for item in parsed.items] == ["First post", "Second post"]


def test_content_falls_back_to_summary():
    parsed = parse_feed(RSS_WITHOUT_GUID, "https://x/feed.xml")

    assert parsed.items[0].content == "<p>Summary text</p>"


def test_published_date_from_pub_date():
    parsed = parse_feed(RSS_WITHOUT_GUID, "https://x/feed.xml")

    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert parsed.items[0].published_at == expected


def test_missing_date_uses_clock():
    parsed = parse_feed(RSS_WITHOUT_GUID, "https://x/feed.xml", clock=lambda: 1_700_000_000.5)

    assert parsed.items[1].published_at == 1_700_000_000


def test_atom_full_content_and_updated_date():
    parsed = parse_feed(ATOM_WITH_CONTENT, "https://x/atom.xml")

    item = parsed.items[0]
    assert parsed.title == "Atom Example"
    assert item.guid == "urn:example:entry:1"
    assert item.link == "https://x/e1"
    assert item.content == "<p>Full body</p>"
    assert item.published_at == int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())


def test_parser_does_not_sanitize():
    body = RSS_WITHOUT_GUID.replace(
        b"&lt;p&gt;Summary text&lt;/p&gt;",
        b"&lt;p onclick=&quot;x()&quot;&gt;Hi&lt;/p&gt;",
    )

    parsed = parse_feed(body, "https://x/feed.xml")

    assert 'onclick' in parsed.items[0].content


def test_not_a_feed_raises_parse_error():
    with pytest.raises(ParseError) as excinfo:
        parse_feed(b"this is not a feed", "https://x/feed.xml")

    assert excinfo.value.url == "https://x/feed.xml"


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:
            raise AttributeError(item) from exc


def test_entry_timestamp_parses_raw_date_string():
    entry = DummyEntry(published="17 Nov 2025 00:00:00 +0000")

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert entry_timestamp(entry, now=0) == expected


def test_entry_timestamp_prefers_published_over_updated():
    entry = DummyEntry(
        published="Sat, 15 Nov 2025 16:00:00 +0000",
        updated="Mon, 17 Nov 2025 00:00:00 +0000",
    )

    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert entry_timestamp(entry, now=0) == expected


def test_entry_timestamp_falls_back_to_now():
    assert entry_timestamp(DummyEntry(published="garbage"), now=42) == 42


RSS_WITH_PERMALINK_GUID = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>Guids</title>
    <link>https://ex.com/</link>
    <description>Guids</description>
    <item>
      <title>Plain guid</title>
      <guid>abc-123</guid>
      <link>/posts/abc</link>
    </item>
  </channel>
</rss>
"""


def test_guid_is_kept_verbatim_whatever_the_feed_url():
    one = parse_feed(RSS_WITH_PERMALINK_GUID, "https://ex.com/feed.xml").items[0]
    other = parse_feed(RSS_WITH_PERMALINK_GUID, "https://www.ex.com/rss",
                       response_headers={"Content-Location": "https://cdn.ex.com/rss"}).items[0]

    assert one.guid == "abc-123"
    assert other.guid == "abc-123"


def test_relative_item_link_resolved_against_feed_url():
    item = parse_feed(RSS_WITH_PERMALINK_GUID, "https://ex.com/feed.xml").items[0]

    assert item.link == "https://ex.com/posts/abc"
