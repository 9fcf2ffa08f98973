#!/usr/bin/env python3
"""
Tool and resource operations exposed to agent hosts.

Each public coroutine validates loosely-typed arguments, coordinates the
Store, the subscription outline, the sync pipeline and change-log
replication, and returns a JSON-ready dict. Nothing here keeps state of its
own; server.py only wires these methods into the protocol.
"""

from typing import Any, Dict, List, Optional

from changes import feed_delete, feed_upsert, read_state_upsert
from config import get_logger
from errors import DigestError, DuplicateError, InvalidDateError, InvalidInputError, NotFoundError
from models import Entry, EntryFilter, Feed, Store
from opml import OutlineStore
from pipeline import FeedSyncer
from telemetry import trace_span
from utils import (
    clean_html_to_markdown,
    format_timestamp,
    now_utc,
    parse_date_string,
    start_of_today,
    validate_feed_url,
)
from vault import Syncer

# Module-specific logger
logger = get_logger("tools")

URI_FEEDS = "digest://feeds"
URI_UNREAD = "digest://entries/unread"
URI_TODAY = "digest://entries/today"
URI_STATS = "digest://stats"

RESOURCE_LINKS = {
    URI_FEEDS: {"unread_entries": URI_UNREAD, "today_entries": URI_TODAY, "stats": URI_STATS},
    URI_UNREAD: {"all_feeds": URI_FEEDS, "today_entries": URI_TODAY, "stats": URI_STATS},
    URI_TODAY: {"all_feeds": URI_FEEDS, "unread_entries": URI_UNREAD, "stats": URI_STATS},
    URI_STATS: {"all_feeds": URI_FEEDS, "unread_entries": URI_UNREAD, "today_entries": URI_TODAY},
}


def describe_folder(folder: str) -> str:
    return f"folder '{folder}'" if folder else "root level"


def _parse_date(value: Any, field: str):
    try:
        return parse_date_string(value)
    except InvalidDateError as e:
        raise InvalidDateError(e.value, field=field) from e


def _non_negative(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{field} must be an integer, got {value!r}")
    if value < 0:
        raise InvalidInputError(f"{field} must be non-negative, got {value}")
    return value


def _feed_output(feed: Feed, folder: Optional[str] = None, title: Optional[str] = None) -> Dict[str, Any]:
    data = feed.to_dict()
    if folder is not None:
        data["folder"] = folder
    if title and not data.get("title"):
        data["title"] = title
    return data


class DigestTools:
    """Operations behind every tool and resource."""

    def __init__(self, store: Store, outline: OutlineStore, feed_syncer: FeedSyncer,
                 syncer: Optional[Syncer] = None):
        self.store = store
        self.outline = outline
        self.feed_syncer = feed_syncer
        self.syncer = syncer

    async def _replicate(self, change) -> None:
        if self.syncer is not None:
            await self.syncer.enqueue(change)

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------
    async def list_feeds(self) -> Dict[str, Any]:
        """Subscriptions in outline order, followed by feeds only the Store knows."""
        feeds: List[Feed] = await self.store.execute('list_feeds')
        by_url = {feed.url: feed for feed in feeds}

        async with self.outline.read() as document:
            outline_feeds = document.all_feeds()
            folders = document.folders()

        outputs: List[Dict[str, Any]] = []
        seen = set()
        for item in outline_feeds:
            seen.add(item.url)
            feed = by_url.get(item.url)
            if feed is None:
                outputs.append({
                    "id": None,
                    "url": item.url,
                    "title": item.title,
                    "folder": item.folder,
                    "last_fetched_at": None,
                    "last_error": None,
                    "error_count": 0,
                    "created_at": None,
                })
            else:
                outputs.append(_feed_output(feed, folder=item.folder, title=item.title))
        for feed in feeds:
            if feed.url not in seen:
                outputs.append(_feed_output(feed))
                if feed.folder and feed.folder not in folders:
                    folders.append(feed.folder)

        return {"feeds": outputs, "count": len(outputs), "folders": folders}

    @trace_span("tools.add_feed", tracer_name="tools", attr_from_args=lambda self, url, title=None, folder=None: {"feed.url": str(url)})
    async def add_feed(self, url: str, title: Optional[str] = None, folder: Optional[str] = None) -> Dict[str, Any]:
        url = validate_feed_url(url)
        folder = (folder or "").strip()
        title = (title or "").strip() or None

        feed = None
        try:
            async with self.outline.edit() as document:
                existing = await self.store.execute('find_feed_by_url', url=url)
                if existing is not None or document.has_feed(url):
                    raise DuplicateError(f"feed already exists: {url}")
                feed = await self.store.execute('create_feed', feed=Feed(url=url, title=title, folder=folder))
                document.add_feed(url, title or url, folder)
        except DigestError:
            # outline write failed; drop the row created above
            if feed is not None:
                await self.store.execute('delete_feed', feed_id=feed.id)
            raise

        await self._replicate(feed_upsert(url, title, folder, feed.created_at))
        logger.info(f"Added feed {url} in {describe_folder(folder)}")
        return {
            "success": True,
            "message": f"Feed '{title or url}' added to {describe_folder(folder)}",
            "feed": _feed_output(feed, folder=folder),
        }

    async def remove_feed(self, url: str) -> Dict[str, Any]:
        url = validate_feed_url(url)
        async with self.outline.edit() as document:
            feed = await self.store.execute('find_feed_by_url', url=url)
            if feed is None:
                raise NotFoundError(f"feed not found: {url}")
            removed = await self.store.execute('delete_feed', feed_id=feed.id)
            if document.has_feed(url):
                document.remove_feed(url)

        await self._replicate(feed_delete(url))
        logger.info(f"Removed feed {url} with {removed} entries")
        return {
            "success": True,
            "message": f"Feed '{feed.title or url}' and all its entries successfully removed",
            "url": url,
        }

    async def move_feed(self, url: str, folder: str) -> Dict[str, Any]:
        url = validate_feed_url(url)
        if folder is None:
            raise InvalidInputError("folder is required (use \"\" for root level)")
        new_folder = folder.strip()

        async with self.outline.edit() as document:
            feed = await self.store.execute('find_feed_by_url', url=url)
            if feed is None:
                raise NotFoundError(f"feed not found: {url}")
            current = document.find_feed(url)
            old_folder = current.folder if current is not None else feed.folder
            if current is not None and old_folder == new_folder:
                return {
                    "success": True,
                    "message": f"Feed is already in {describe_folder(old_folder)}",
                    "url": url,
                    "old_folder": old_folder,
                    "new_folder": new_folder,
                }
            if current is None:
                document.add_feed(url, feed.title or url, new_folder)
            else:
                document.move_feed(url, new_folder)
            feed.folder = new_folder
            await self.store.execute('update_feed', feed=feed)

        await self._replicate(feed_upsert(url, feed.title, new_folder, feed.created_at))
        return {
            "success": True,
            "message": f"Feed moved from {describe_folder(old_folder)} to {describe_folder(new_folder)}",
            "url": url,
            "old_folder": old_folder,
            "new_folder": new_folder,
        }

    async def sync_feeds(self, url: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        feeds: List[Feed] = await self.store.execute('list_feeds')
        if not feeds:
            raise NotFoundError("no feeds found. Add a feed first using add_feed")
        if url:
            feeds = [feed for feed in feeds if feed.url == url.strip()]
            if not feeds:
                raise NotFoundError(f"feed not found: {url}")
        return await self.feed_syncer.sync_all(feeds, force=bool(force))

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    async def list_entries(self, feed_id: Optional[str] = None, unread_only: Optional[bool] = None,
                           since: Optional[str] = None, until: Optional[str] = None,
                           limit: Optional[int] = None, offset: Optional[int] = None) -> Dict[str, Any]:
        since_at = _parse_date(since, "since") if since is not None else None
        until_at = _parse_date(until, "until") if until is not None else None
        offset = _non_negative(offset, "offset")
        limit = _non_negative(limit, "limit")

        filters: Dict[str, Any] = {}
        if feed_id:
            feed = await self.store.execute('get_feed_by_id_or_prefix', value=feed_id)
            feed_id = feed.id
            filters["feed_id"] = feed_id
        if unread_only is not None:
            filters["unread_only"] = bool(unread_only)
        if since_at is not None:
            filters["since"] = format_timestamp(since_at)
        if until_at is not None:
            filters["until"] = format_timestamp(until_at)
        if limit is not None:
            filters["limit"] = limit
        if offset is not None:
            filters["offset"] = offset

        entries: List[Entry] = await self.store.execute('list_entries', filter=EntryFilter(
            feed_id=feed_id,
            unread_only=bool(unread_only),
            since=since_at,
            until=until_at,
            limit=limit,
            offset=offset,
        ))
        return {"entries": [entry.to_dict() for entry in entries], "count": len(entries), "filters": filters}

    async def _resolve_entry(self, entry_id: str) -> Entry:
        if not entry_id or not isinstance(entry_id, str):
            raise InvalidInputError("entry_id is required")
        try:
            return await self.store.execute('get_entry_by_id_or_prefix', value=entry_id.strip())
        except NotFoundError as e:
            raise NotFoundError(f"entry not found: {entry_id}") from e

    async def get_entry(self, entry_id: str) -> Dict[str, Any]:
        entry = await self._resolve_entry(entry_id)
        data = entry.to_dict(include_content=True)
        data["feed_title"] = entry.feed_title or entry.feed_url
        if entry.content:
            data["content"] = clean_html_to_markdown(entry.content, base_url=entry.link)
        return data

    async def mark_read(self, entry_id: str) -> Dict[str, Any]:
        entry = await self._resolve_entry(entry_id)
        updated: Entry = await self.store.execute('mark_entry_read', entry_id=entry.id)
        await self._replicate(read_state_upsert(entry.feed_url, entry.guid, True, updated.read_at))
        return updated.to_dict()

    async def mark_unread(self, entry_id: str) -> Dict[str, Any]:
        entry = await self._resolve_entry(entry_id)
        changed_at = now_utc()
        updated: Entry = await self.store.execute('mark_entry_unread', entry_id=entry.id, changed_at=changed_at)
        await self._replicate(read_state_upsert(entry.feed_url, entry.guid, False, changed_at))
        return updated.to_dict()

    async def bulk_mark_read(self, before: str) -> Dict[str, Any]:
        if before is None:
            raise InvalidInputError("before is required")
        cutoff = _parse_date(before, "before")
        count, keys = await self.store.execute('mark_entries_read_before_with_keys', cutoff=cutoff)
        for key in keys:
            await self._replicate(read_state_upsert(key.feed_url, key.guid, True, key.read_at))
        return {
            "count": count,
            "before": format_timestamp(cutoff),
            "message": f"Marked {count} entries as read" if count else "No entries to mark as read",
        }

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------
    def _resource(self, uri: str, data: Any, count: int, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "timestamp": format_timestamp(now_utc()),
            "count": count,
            "resource_uri": uri,
        }
        if filters:
            metadata["filters"] = filters
        return {"metadata": metadata, "data": data, "links": dict(RESOURCE_LINKS[uri])}

    async def feeds_resource(self) -> Dict[str, Any]:
        feeds: List[Feed] = await self.store.execute('list_feeds')
        data = []
        for feed in feeds:
            item = feed.to_dict()
            item["etag"] = feed.etag
            item["last_modified"] = feed.last_modified
            data.append(item)
        return self._resource(URI_FEEDS, data, len(data))

    async def unread_resource(self) -> Dict[str, Any]:
        entries: List[Entry] = await self.store.execute('list_entries', filter=EntryFilter(unread_only=True))
        data = [entry.to_dict(include_content=True) for entry in entries]
        return self._resource(URI_UNREAD, data, len(data), filters={"read": False})

    async def today_resource(self) -> Dict[str, Any]:
        since = start_of_today()
        entries: List[Entry] = await self.store.execute('list_entries', filter=EntryFilter(since=since))
        data = [entry.to_dict(include_content=True) for entry in entries]
        return self._resource(URI_TODAY, data, len(data), filters={"published_since": format_timestamp(since)})

    async def stats_resource(self) -> Dict[str, Any]:
        overall = await self.store.execute('get_overall_stats')
        per_feed = await self.store.execute('get_feed_stats')

        by_feed = []
        last_sync = None
        for stat in per_feed:
            title = stat.feed_title or "Untitled Feed"
            by_feed.append({
                "feed_id": stat.feed_id,
                "feed_title": title,
                "feed_url": stat.feed_url,
                "entry_count": stat.entry_count,
                "unread_count": stat.unread_count,
                "last_fetched": format_timestamp(stat.last_fetched_at),
                "error_count": stat.error_count,
                "has_errors": stat.last_error is not None,
            })
            if stat.last_fetched_at is not None and (
                last_sync is None or stat.last_fetched_at > last_sync["_at"]
            ):
                last_sync = {"_at": stat.last_fetched_at, "feed_id": stat.feed_id, "feed_title": title}

        if last_sync is not None:
            last_sync = {
                "last_fetched_at": format_timestamp(last_sync.pop("_at")),
                **last_sync,
            }

        data = {
            "summary": {
                "total_feeds": overall.total_feeds,
                "total_entries": overall.total_entries,
                "unread_count": overall.unread_count,
            },
            "by_feed": by_feed,
            "last_sync": last_sync,
        }
        return self._resource(URI_STATS, data, len(by_feed))
