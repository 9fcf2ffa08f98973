#!/usr/bin/env python3
"""
Feed sync pipeline.

One run for one feed: conditional fetch, parse, ingest entries whose guid
is new, then record the fetch state. Fetch and parse failures are recorded
on the feed row and re-raised; batch runs capture them per feed instead.
"""

from asyncio import Semaphore, gather, get_running_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import DigestError, ErrorRecordFailure
from feed_parser import ParsedFeed, parse_feed
from fetcher import FeedFetcher
from models import Entry, Feed, Store
from telemetry import trace_span
from utils import now_utc

# Module-specific logger
logger = get_logger("pipeline")


@dataclass
class SyncResult:
    new_entries: int = 0
    was_cached: bool = False


class FeedSyncer:
    """Runs the sync pipeline against a Store with a shared fetcher."""

    def __init__(self, store: Store, fetcher: FeedFetcher, executor: Optional[ThreadPoolExecutor] = None):
        self.store = store
        self.fetcher = fetcher
        self.executor = executor or ThreadPoolExecutor(max_workers=config.SYNC_CONCURRENCY)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def close(self) -> None:
        self.executor.shutdown(wait=False)

    async def _record_failure(self, feed: Feed, stage: str, error: Exception) -> None:
        """Store the failure on the feed; raise a composite error if that fails too."""
        logger.warning(f"{stage.capitalize()} failed for {feed.url}: {error}")
        try:
            await self.store.execute('update_feed_error', feed_id=feed.id, message=str(error))
        except DigestError as record_error:
            logger.error(f"Could not record error for feed {feed.id}: {record_error}")
            raise ErrorRecordFailure(stage, error, record_error) from error

    @trace_span(
        "sync_feed",
        tracer_name="pipeline",
        attr_from_args=lambda self, feed, force=False: {
            "feed.id": feed.id,
            "feed.url": feed.url,
            "sync.force": bool(force),
        },
    )
    async def sync_feed(self, feed: Feed, force: bool = False) -> SyncResult:
        """Fetch, parse and ingest one feed.

        Args:
            feed: The feed row to sync
            force: Ignore stored validators and request the full body

        Returns:
            SyncResult with the number of new entries, or ``was_cached`` on 304

        Raises:
            FetchError, ParseError: after recording the failure on the feed
            ErrorRecordFailure: when the failure could not be recorded
        """
        etag = None if force else feed.etag
        last_modified = None if force else feed.last_modified

        try:
            fetched = await self.fetcher.fetch(feed.url, etag=etag, last_modified=last_modified)
        except DigestError as e:
            await self._record_failure(feed, "fetch", e)
            raise

        if fetched.not_modified:
            return SyncResult(new_entries=0, was_cached=True)

        try:
            parsed: ParsedFeed = await self.run_in_executor(parse_feed, fetched.body)
        except DigestError as e:
            await self._record_failure(feed, "parse", e)
            raise

        entries: List[Entry] = [
            Entry(
                feed_id=feed.id,
                guid=item.guid,
                title=item.title,
                link=item.link,
                author=item.author,
                published_at=item.published_at,
                content=item.content,
                categories=item.categories,
            )
            for item in parsed.entries
        ]
        new_entries = await self.store.execute('ingest_entries', feed_id=feed.id, entries=entries)

        await self.store.execute(
            'update_feed_fetch_state',
            feed_id=feed.id,
            etag=fetched.etag or None,
            last_modified=fetched.last_modified or None,
            fetched_at=now_utc(),
        )
        if not feed.title and parsed.title:
            if await self.store.execute('adopt_feed_title', feed_id=feed.id, title=parsed.title):
                feed.title = parsed.title

        logger.info(f"Synced {feed.url}: {new_entries} new of {len(entries)} entries")
        return SyncResult(new_entries=new_entries, was_cached=False)

    @trace_span(
        "sync_all",
        tracer_name="pipeline",
        attr_from_args=lambda self, feeds, force=False: {"sync.feeds": len(feeds)},
    )
    async def sync_all(self, feeds: List[Feed], force: bool = False) -> Dict[str, Any]:
        """Sync feeds concurrently; per-feed failures are reported, not raised."""
        semaphore = Semaphore(config.SYNC_CONCURRENCY)

        async def sync_with_semaphore(feed: Feed) -> Dict[str, Any]:
            async with semaphore:
                outcome = {
                    "feed_id": feed.id,
                    "feed_title": feed.title or feed.url,
                    "new_entries": 0,
                    "was_cached": False,
                    "error": None,
                }
                try:
                    result = await self.sync_feed(feed, force=force)
                    outcome["new_entries"] = result.new_entries
                    outcome["was_cached"] = result.was_cached
                    outcome["feed_title"] = feed.title or feed.url
                except DigestError as e:
                    outcome["error"] = str(e)
                return outcome

        results = list(await gather(*(sync_with_semaphore(feed) for feed in feeds)))
        summary = {
            "results": results,
            "total_feeds": len(results),
            "total_new": sum(r["new_entries"] for r in results),
            "total_cached": sum(1 for r in results if r["was_cached"]),
            "total_errors": sum(1 for r in results if r["error"]),
        }
        logger.info(
            "Synced %d feeds: %d new entries, %d cached, %d errors",
            summary["total_feeds"], summary["total_new"], summary["total_cached"], summary["total_errors"],
        )
        return summary
