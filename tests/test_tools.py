from datetime import datetime, timedelta, timezone

import pytest

from errors import (
    AmbiguousError,
    DuplicateError,
    FetchError,
    InvalidDateError,
    InvalidInputError,
    NotFoundError,
    SerializationError,
)
from fetcher import FetchResult
from helpers import outline_feeds
from models import Entry, Feed, Store
from opml import Document, OutlineStore
from pipeline import FeedSyncer
from sync_config import SyncConfig
from tools import DigestTools
from vault import Syncer
from vault_crypto import derive_keys, new_device_id

URL = "https://example.com/feed.xml"
RSS = (b"<rss version='2.0'><channel><title>Example Feed</title>"
       b"<item><guid>g1</guid><title>One</title><link>https://example.com/1</link>"
       b"<description>&lt;p&gt;Hello &lt;a href='/x'&gt;there&lt;/a&gt;&lt;/p&gt;</description></item>"
       b"</channel></rss>")


class StaticFetcher:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def fetch(self, url, etag=None, last_modified=None):
        if self.error:
            raise self.error
        return self.result


async def make_tools(tmp_path, fetcher=None, replicate=False):
    store = Store(str(tmp_path / "digest.db"))
    await store.start()
    outline = OutlineStore(str(tmp_path / "feeds.opml"))
    feed_syncer = FeedSyncer(store, fetcher or StaticFetcher(FetchResult(not_modified=False, body=RSS)))
    syncer = None
    if replicate:
        syncer = Syncer(store, SyncConfig(
            device_id=new_device_id(),
            derived_key=derive_keys("seed words").to_hex(),
            vault_db=str(tmp_path / "vault.db"),
        ), outline=outline)
        await syncer.start()
    return DigestTools(store, outline, feed_syncer, syncer)


async def shutdown(tools):
    if tools.syncer is not None:
        await tools.syncer.stop()
    tools.feed_syncer.close()
    await tools.store.stop()


@pytest.mark.asyncio
async def test_add_and_list_feeds(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        added = await tools.add_feed(URL, folder="Tech")
        assert added["success"]
        assert added["feed"]["folder"] == "Tech"
        assert "folder 'Tech'" in added["message"]

        await tools.add_feed("https://other.example.com/rss", title="Other")

        listing = await tools.list_feeds()
        assert listing["count"] == 2
        assert listing["folders"] == ["Tech"]
        assert [(f["url"], f["folder"]) for f in listing["feeds"]] == [
            (URL, "Tech"),
            ("https://other.example.com/rss", ""),
        ]
        assert listing["feeds"][0]["title"] == URL
        assert listing["feeds"][1]["title"] == "Other"

        with pytest.raises(DuplicateError, match="feed already exists"):
            await tools.add_feed(URL)
        with pytest.raises(InvalidInputError):
            await tools.add_feed("ftp://example.com/feed")
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_add_feed_rolls_back_when_outline_write_fails(tmp_path):
    store = Store(str(tmp_path / "digest.db"))
    await store.start()
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    tools = DigestTools(store, OutlineStore(str(blocker / "feeds.opml")),
                        FeedSyncer(store, StaticFetcher(FetchResult(not_modified=True))))
    try:
        with pytest.raises(SerializationError):
            await tools.add_feed(URL)
        assert await store.execute('find_feed_by_url', url=URL) is None
        assert URL not in await outline_feeds(tools.outline)
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_remove_cascades_to_entries_and_outline(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        await tools.add_feed(URL, folder="Tech")
        feed = await tools.store.execute('get_feed_by_url', url=URL)
        entries = [Entry(feed_id=feed.id, guid=f"g{i}") for i in range(5)]
        assert await tools.store.execute('ingest_entries', feed_id=feed.id, entries=entries) == 5

        removed = await tools.remove_feed(URL)
        assert removed["message"] == f"Feed '{URL}' and all its entries successfully removed"
        assert (await tools.list_entries())["count"] == 0
        assert URL not in await outline_feeds(tools.outline)
        assert not Document.load(tools.outline.file_path).has_feed(URL)

        with pytest.raises(NotFoundError):
            await tools.remove_feed(URL)
        # The URL can be added again
        assert (await tools.add_feed(URL))["success"]
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_move_is_idempotent(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        await tools.add_feed(URL, folder="Tech")
        await tools.add_feed("https://other.example.com/rss", folder="Tech")
        before = Document.load(tools.outline.file_path).to_bytes()

        same = await tools.move_feed(URL, "Tech")
        assert same["success"]
        assert same["message"] == "Feed is already in folder 'Tech'"
        assert Document.load(tools.outline.file_path).to_bytes() == before

        moved = await tools.move_feed(URL, "News")
        assert moved["message"] == "Feed moved from folder 'Tech' to folder 'News'"
        async with tools.outline.read() as document:
            assert [f.url for f in document.feeds_in_folder("News")] == [URL]
            assert [f.url for f in document.feeds_in_folder("Tech")] == ["https://other.example.com/rss"]
            assert "Tech" in document.folders()
        assert (await tools.store.execute('get_feed_by_url', url=URL)).folder == "News"

        await tools.move_feed("https://other.example.com/rss", "")
        async with tools.outline.read() as document:
            assert "Tech" not in document.folders()

        root = await tools.move_feed("https://other.example.com/rss", "")
        assert root["message"] == "Feed is already in root level"

        with pytest.raises(NotFoundError):
            await tools.move_feed("https://missing.example.com/feed", "News")
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_sync_feeds_and_read_entries(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        with pytest.raises(NotFoundError, match="no feeds found"):
            await tools.sync_feeds()

        await tools.add_feed(URL)
        summary = await tools.sync_feeds()
        assert (summary["total_feeds"], summary["total_new"], summary["total_errors"]) == (1, 1, 0)
        assert summary["results"][0]["feed_title"] == "Example Feed"

        with pytest.raises(NotFoundError):
            await tools.sync_feeds(url="https://missing.example.com/feed")

        listing = await tools.list_entries(unread_only=True)
        assert listing["count"] == 1
        assert listing["filters"] == {"unread_only": True}
        entry_id = listing["entries"][0]["id"]

        entry = await tools.get_entry(entry_id[:8])
        assert entry["feed_title"] == "Example Feed"
        assert "[there](https://example.com/x)" in entry["content"]

        read = await tools.mark_read(entry_id)
        assert read["read"] and read["read_at"]
        assert (await tools.list_entries(unread_only=True))["count"] == 0

        unread = await tools.mark_unread(entry_id)
        assert not unread["read"] and unread["read_at"] is None
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_sync_failures_are_reported_per_feed(tmp_path):
    tools = await make_tools(tmp_path, fetcher=StaticFetcher(error=FetchError("unexpected status code: 500", 500)))
    try:
        await tools.add_feed(URL)
        summary = await tools.sync_feeds()

        assert summary["total_errors"] == 1
        assert "500" in summary["results"][0]["error"]
        listing = await tools.list_feeds()
        assert listing["feeds"][0]["error_count"] == 1
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_list_entries_validation(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        with pytest.raises(InvalidDateError, match="invalid since value"):
            await tools.list_entries(since="someday")
        with pytest.raises(InvalidInputError, match="limit must be non-negative"):
            await tools.list_entries(limit=-1)
        with pytest.raises(InvalidInputError):
            await tools.list_entries(offset="3")
        with pytest.raises(InvalidInputError):
            await tools.get_entry("short")
        with pytest.raises(NotFoundError):
            await tools.get_entry("00000000-0000")

        assert (await tools.list_entries(limit=0))["entries"] == []
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_list_entries_filters(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        await tools.add_feed(URL)
        feed = await tools.store.execute('get_feed_by_url', url=URL)
        base = datetime(2025, 1, 10, tzinfo=timezone.utc)
        await tools.store.execute('ingest_entries', feed_id=feed.id, entries=[
            Entry(feed_id=feed.id, guid=f"g{i}", published_at=base + timedelta(days=i)) for i in range(4)
        ])

        listing = await tools.list_entries(feed_id=feed.id[:8], since="2025-01-11", until="2025-01-13")
        assert [e["guid"] for e in listing["entries"]] == ["g2", "g1"]
        assert listing["filters"]["feed_id"] == feed.id
        assert listing["filters"]["since"] == "2025-01-11T00:00:00Z"

        page = await tools.list_entries(limit=1, offset=1)
        assert [e["guid"] for e in page["entries"]] == ["g2"]
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_ambiguous_entry_prefix(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        feed = await tools.store.execute('create_feed', feed=Feed(url=URL))
        await tools.store.execute('create_entry', entry=Entry(feed_id=feed.id, guid="a", id="abcdefgh-1"))
        await tools.store.execute('create_entry', entry=Entry(feed_id=feed.id, guid="b", id="abcdefgh-2"))

        with pytest.raises(AmbiguousError):
            await tools.mark_read("abcdefgh")
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_bulk_mark_read(tmp_path):
    tools = await make_tools(tmp_path, replicate=True)
    try:
        await tools.add_feed(URL)
        feed = await tools.store.execute('get_feed_by_url', url=URL)
        await tools.store.execute('ingest_entries', feed_id=feed.id, entries=[
            Entry(feed_id=feed.id, guid="old", published_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            Entry(feed_id=feed.id, guid="new", published_at=datetime(2030, 1, 1, tzinfo=timezone.utc)),
        ])

        result = await tools.bulk_mark_read("2025-01-01")
        assert result["count"] == 1
        assert result["before"] == "2025-01-01T00:00:00Z"
        assert result["message"] == "Marked 1 entries as read"

        again = await tools.bulk_mark_read("2025-01-01")
        assert again["count"] == 0

        with pytest.raises(InvalidDateError, match="invalid before value"):
            await tools.bulk_mark_read("soon")
        # feed upsert + one read state
        assert await tools.syncer.queue.execute('pending_count') == 2
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_mutations_are_queued_for_replication(tmp_path):
    tools = await make_tools(tmp_path, replicate=True)
    try:
        await tools.add_feed(URL, folder="Tech")
        await tools.move_feed(URL, "Tech")
        await tools.move_feed(URL, "News")
        await tools.sync_feeds()
        entry_id = (await tools.list_entries())["entries"][0]["id"]
        await tools.mark_read(entry_id)
        await tools.mark_unread(entry_id)
        await tools.remove_feed(URL)

        assert await tools.syncer.queue.execute('pending_count') == 5
    finally:
        await shutdown(tools)
