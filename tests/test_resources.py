from datetime import timedelta

import pytest

from fetcher import FetchResult
from models import Entry, Feed, Store
from opml import OutlineStore
from pipeline import FeedSyncer
from tools import URI_FEEDS, URI_STATS, URI_TODAY, URI_UNREAD, DigestTools
from utils import now_utc, start_of_today


class NoFetch:
    async def fetch(self, url, etag=None, last_modified=None):
        return FetchResult(not_modified=True)


async def make_tools(tmp_path):
    store = Store(str(tmp_path / "digest.db"))
    await store.start()
    return DigestTools(store, OutlineStore(str(tmp_path / "feeds.opml")), FeedSyncer(store, NoFetch()))


async def seed(tools):
    feed = await tools.store.execute('create_feed', feed=Feed(url="https://example.com/feed", title="Example"))
    broken = await tools.store.execute('create_feed', feed=Feed(url="https://broken.example.com/feed"))
    await tools.store.execute('update_feed_fetch_state', feed_id=feed.id, etag='"v1"', last_modified=None)
    await tools.store.execute('update_feed_error', feed_id=broken.id, message="boom")
    now = now_utc()
    await tools.store.execute('ingest_entries', feed_id=feed.id, entries=[
        Entry(feed_id=feed.id, guid="today", content="<p>fresh</p>", published_at=now),
        Entry(feed_id=feed.id, guid="old", published_at=start_of_today() - timedelta(days=3)),
    ])
    old = [e for e in await tools.store.execute('list_entries') if e.guid == "old"][0]
    await tools.store.execute('mark_entry_read', entry_id=old.id)
    return feed, broken


async def shutdown(tools):
    tools.feed_syncer.close()
    await tools.store.stop()


@pytest.mark.asyncio
async def test_feeds_resource(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        feed, _ = await seed(tools)
        resource = await tools.feeds_resource()

        assert resource["metadata"]["resource_uri"] == URI_FEEDS
        assert resource["metadata"]["count"] == 2
        assert resource["links"] == {"unread_entries": URI_UNREAD, "today_entries": URI_TODAY, "stats": URI_STATS}
        first = resource["data"][0]
        assert first["id"] == feed.id
        assert first["etag"] == '"v1"'
        assert first["last_fetched_at"] is not None
        assert resource["data"][1]["last_error"] == "boom"
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_unread_and_today_resources(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        await seed(tools)

        unread = await tools.unread_resource()
        assert unread["metadata"]["filters"] == {"read": False}
        assert [e["guid"] for e in unread["data"]] == ["today"]
        assert unread["data"][0]["content"] == "<p>fresh</p>"
        assert URI_UNREAD not in unread["links"].values()

        today = await tools.today_resource()
        assert [e["guid"] for e in today["data"]] == ["today"]
        assert "published_since" in today["metadata"]["filters"]
    finally:
        await shutdown(tools)


@pytest.mark.asyncio
async def test_stats_resource(tmp_path):
    tools = await make_tools(tmp_path)
    try:
        feed, broken = await seed(tools)
        stats = await tools.stats_resource()

        summary = stats["data"]["summary"]
        assert summary["total_feeds"] == 2
        assert summary["total_entries"] == 2
        assert summary["unread_count"] == 1

        by_feed = {item["feed_id"]: item for item in stats["data"]["by_feed"]}
        assert by_feed[feed.id]["unread_count"] == 1
        assert by_feed[feed.id]["has_errors"] is False
        assert by_feed[broken.id]["has_errors"] is True
        assert by_feed[broken.id]["feed_title"] == "Untitled Feed"
        assert stats["data"]["last_sync"]["feed_id"] == feed.id
    finally:
        await shutdown(tools)
