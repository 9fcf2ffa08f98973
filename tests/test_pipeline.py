import pytest

from errors import ErrorRecordFailure, FetchError, ParseError
from fetcher import FetchResult
from models import EntryFilter, Feed, Store
from pipeline import FeedSyncer


def rss(*guids, title="Example Feed"):
    items = "".join(
        f"<item><title>Item {g}</title><guid>{g}</guid><link>https://example.com/{g}</link></item>"
        for g in guids
    )
    return f"<rss version='2.0'><channel><title>{title}</title>{items}</channel></rss>".encode()


class FakeFetcher:
    """Replays canned responses and records the validators it was given."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def fetch(self, url, etag=None, last_modified=None):
        self.calls.append({"url": url, "etag": etag, "last_modified": last_modified})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        pass


async def setup(tmp_path, responses, url="https://example.com/feed.xml"):
    store = Store(str(tmp_path / "digest.db"))
    await store.start()
    feed = await store.execute('create_feed', feed=Feed(url=url))
    fetcher = FakeFetcher(responses)
    return store, feed, fetcher, FeedSyncer(store, fetcher)


@pytest.mark.asyncio
async def test_fresh_fetch_then_cached(tmp_path):
    store, feed, fetcher, syncer = await setup(tmp_path, [
        FetchResult(not_modified=False, body=rss("g1"), etag='"v1"'),
        FetchResult(not_modified=True, etag='"v1"'),
    ])
    try:
        first = await syncer.sync_feed(feed)
        assert (first.new_entries, first.was_cached) == (1, False)
        stored = await store.execute('get_feed', feed_id=feed.id)
        assert stored.etag == '"v1"'
        assert stored.title == "Example Feed"
        assert stored.last_fetched_at is not None

        second = await syncer.sync_feed(stored)
        assert (second.new_entries, second.was_cached) == (0, True)
        assert fetcher.calls[1]["etag"] == '"v1"'

        after = await store.execute('get_feed', feed_id=feed.id)
        assert after.etag == '"v1"'
        assert after.last_fetched_at == stored.last_fetched_at
        assert len(await store.execute('list_entries')) == 1
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_duplicate_guids_across_runs(tmp_path):
    store, feed, _, syncer = await setup(tmp_path, [
        FetchResult(not_modified=False, body=rss("g1", "g2")),
        FetchResult(not_modified=False, body=rss("g2", "g3")),
    ])
    try:
        assert (await syncer.sync_feed(feed)).new_entries == 2
        assert (await syncer.sync_feed(feed)).new_entries == 1

        entries = await store.execute('list_entries', filter=EntryFilter(feed_id=feed.id))
        assert sorted(e.guid for e in entries) == ["g1", "g2", "g3"]
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_force_ignores_validators(tmp_path):
    store, feed, fetcher, syncer = await setup(tmp_path, [
        FetchResult(not_modified=False, body=rss("g1"), etag='"v1"', last_modified="Sat, 15 Nov 2025 16:00:00 GMT"),
        FetchResult(not_modified=False, body=rss("g1"), etag='"v2"'),
    ])
    try:
        await syncer.sync_feed(feed)
        stored = await store.execute('get_feed', feed_id=feed.id)
        await syncer.sync_feed(stored, force=True)

        assert fetcher.calls[1]["etag"] is None
        assert fetcher.calls[1]["last_modified"] is None
        refreshed = await store.execute('get_feed', feed_id=feed.id)
        assert refreshed.etag == '"v2"'
        assert refreshed.last_modified is None
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_existing_title_is_kept(tmp_path):
    store, feed, _, syncer = await setup(tmp_path, [
        FetchResult(not_modified=False, body=rss("g1", title="Upstream Title")),
    ])
    try:
        feed.title = "My Title"
        await store.execute('update_feed', feed=feed)
        await syncer.sync_feed(feed)
        assert (await store.execute('get_feed', feed_id=feed.id)).title == "My Title"
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_title_adoption_keeps_a_concurrent_folder_move(tmp_path):
    store, feed, _, syncer = await setup(tmp_path, [
        FetchResult(not_modified=False, body=rss("g1", title="Upstream Title")),
    ])
    try:
        moved = await store.execute('get_feed', feed_id=feed.id)
        moved.folder = "News"
        await store.execute('update_feed', feed=moved)

        await syncer.sync_feed(feed)

        stored = await store.execute('get_feed', feed_id=feed.id)
        assert (stored.title, stored.folder) == ("Upstream Title", "News")
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_truncated_feed_keeps_old_validators(tmp_path):
    store, feed, fetcher, syncer = await setup(tmp_path, [
        FetchResult(not_modified=False, body=rss("g1"), etag='"v1"'),
        FetchResult(not_modified=False, body=rss("g1", "g2")[:-30], etag='"v2"'),
    ])
    try:
        await syncer.sync_feed(feed)
        stored = await store.execute('get_feed', feed_id=feed.id)
        with pytest.raises(ParseError, match="malformed XML"):
            await syncer.sync_feed(stored)

        failed = await store.execute('get_feed', feed_id=feed.id)
        assert failed.etag == '"v1"'
        assert failed.error_count == 1
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_fetch_failure_is_recorded_and_raised(tmp_path):
    store, feed, _, syncer = await setup(tmp_path, [
        FetchError("unexpected status code: 500", status=500),
        FetchResult(not_modified=False, body=b"<html>not a feed</html>"),
    ])
    try:
        with pytest.raises(FetchError):
            await syncer.sync_feed(feed)
        failed = await store.execute('get_feed', feed_id=feed.id)
        assert failed.error_count == 1
        assert "500" in failed.last_error

        with pytest.raises(ParseError):
            await syncer.sync_feed(feed)
        failed = await store.execute('get_feed', feed_id=feed.id)
        assert failed.error_count == 2
        assert failed.last_error.startswith("failed to parse feed")
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_unrecordable_failure_reports_both_errors(tmp_path):
    store, feed, _, syncer = await setup(tmp_path, [FetchError("network error: refused")])
    try:
        await store.execute('delete_feed', feed_id=feed.id)
        with pytest.raises(ErrorRecordFailure) as excinfo:
            await syncer.sync_feed(feed)
        assert isinstance(excinfo.value.cause, FetchError)
        assert "error update failed" in str(excinfo.value)
    finally:
        syncer.close()
        await store.stop()


@pytest.mark.asyncio
async def test_sync_all_collects_per_feed_results(tmp_path):
    store = Store(str(tmp_path / "digest.db"))
    await store.start()
    good = await store.execute('create_feed', feed=Feed(url="https://good.example.com/feed"))
    bad = await store.execute('create_feed', feed=Feed(url="https://bad.example.com/feed"))

    class RoutingFetcher(FakeFetcher):
        async def fetch(self, url, etag=None, last_modified=None):
            if "bad" in url:
                raise FetchError("network error: refused")
            return FetchResult(not_modified=False, body=rss("a", "b"))

    syncer = FeedSyncer(store, RoutingFetcher([]))
    try:
        summary = await syncer.sync_all([good, bad])
        assert summary["total_feeds"] == 2
        assert summary["total_new"] == 2
        assert summary["total_errors"] == 1
        assert summary["total_cached"] == 0

        by_id = {r["feed_id"]: r for r in summary["results"]}
        assert by_id[good.id]["error"] is None
        assert by_id[good.id]["feed_title"] == "Example Feed"
        assert "refused" in by_id[bad.id]["error"]
        assert by_id[bad.id]["feed_title"] == bad.url
    finally:
        syncer.close()
        await store.stop()
