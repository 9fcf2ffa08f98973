#!/usr/bin/env python3
"""
Agent tool server for digest.

Exposes the operations of tools.py over JSON-RPC on stdio with FastMCP:
ten tools, four read-only resources and three workflow prompts. Typed
digest errors become tool errors with a readable message; storage and
outline write failures propagate unchanged.
"""

from functools import wraps
from typing import Any, Dict, Optional
import json

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from config import config, get_logger
from errors import DigestError, SerializationError, StorageError
from fetcher import FeedFetcher
from models import Store
from opml import OutlineStore
from pipeline import FeedSyncer
from sync_config import load_config
from telemetry import init_telemetry
from tools import URI_FEEDS, URI_STATS, URI_TODAY, URI_UNREAD, DigestTools
from vault import Syncer

# Module-specific logger
logger = get_logger("server")

SERVER_NAME = "digest"


class DigestApp:
    """Owns the long-lived collaborators shared by the server and the CLI."""

    def __init__(self, db_path: Optional[str] = None, opml_path: Optional[str] = None,
                 sync_config_path: Optional[str] = None, with_sync: bool = True):
        self.store = Store(db_path or config.DATABASE_PATH)
        self.outline = OutlineStore(opml_path or config.OPML_PATH)
        self.fetcher = FeedFetcher()
        self.feed_syncer = FeedSyncer(self.store, self.fetcher)
        self.syncer: Optional[Syncer] = None
        if with_sync:
            self.syncer = Syncer(self.store, load_config(sync_config_path), outline=self.outline)
        self.tools = DigestTools(self.store, self.outline, self.feed_syncer, self.syncer)

    async def start(self) -> None:
        await self.store.start()
        if self.syncer is not None:
            await self.syncer.start()
        logger.debug(f"digest started with {config.get_config_summary()}")

    async def stop(self) -> None:
        if self.syncer is not None:
            await self.syncer.stop()
        await self.fetcher.close()
        self.feed_syncer.close()
        await self.store.stop()


def _tool_errors(func):
    """Report digest errors to the agent as tool errors."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (StorageError, SerializationError):
            raise
        except DigestError as e:
            logger.info(f"{func.__name__} failed: {e}")
            raise ToolError(str(e)) from e

    return wrapper


def _json(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2)


def register_tools(mcp: FastMCP, tools: DigestTools) -> None:
    """Register digest tools with the MCP server."""

    @mcp.tool(name="list_feeds")
    @_tool_errors
    async def list_feeds() -> dict:
        """List all subscribed feeds with folder placement and fetch status."""
        return await tools.list_feeds()

    @mcp.tool(name="add_feed")
    @_tool_errors
    async def add_feed(url: str, title: Optional[str] = None, folder: Optional[str] = None) -> dict:
        """Subscribe to an RSS/Atom feed.

        Args:
            url: Feed URL (http or https)
            title: Display title; defaults to the URL until the first sync
            folder: Folder to file the feed under; empty for root level
        """
        return await tools.add_feed(url, title=title, folder=folder)

    @mcp.tool(name="remove_feed")
    @_tool_errors
    async def remove_feed(url: str) -> dict:
        """Unsubscribe from a feed and delete all of its entries."""
        return await tools.remove_feed(url)

    @mcp.tool(name="move_feed")
    @_tool_errors
    async def move_feed(url: str, folder: str) -> dict:
        """Move a feed to another folder; use an empty folder for root level."""
        return await tools.move_feed(url, folder)

    @mcp.tool(name="sync_feeds")
    @_tool_errors
    async def sync_feeds(url: Optional[str] = None, force: bool = False) -> dict:
        """Fetch new entries for all feeds, or for one feed when url is given.

        Args:
            url: Only sync the feed with this URL
            force: Ignore cached validators and download every feed in full
        """
        return await tools.sync_feeds(url=url, force=force)

    @mcp.tool(name="list_entries")
    @_tool_errors
    async def list_entries(
        feed_id: Optional[str] = None,
        unread_only: Optional[bool] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> dict:
        """List entries, newest first.

        Args:
            feed_id: Feed id or 8+ character prefix
            unread_only: Only unread entries
            since: Published at or after: today, yesterday, week, month, YYYY-MM-DD or RFC 3339
            until: Published before, same formats as since
            limit: Maximum number of entries
            offset: Number of entries to skip
        """
        return await tools.list_entries(
            feed_id=feed_id, unread_only=unread_only, since=since, until=until, limit=limit, offset=offset,
        )

    @mcp.tool(name="get_entry")
    @_tool_errors
    async def get_entry(entry_id: str) -> dict:
        """Read one entry with its content rendered as Markdown (id or 8+ character prefix)."""
        return await tools.get_entry(entry_id)

    @mcp.tool(name="mark_read")
    @_tool_errors
    async def mark_read(entry_id: str) -> dict:
        """Mark an entry as read."""
        return await tools.mark_read(entry_id)

    @mcp.tool(name="mark_unread")
    @_tool_errors
    async def mark_unread(entry_id: str) -> dict:
        """Mark an entry as unread."""
        return await tools.mark_unread(entry_id)

    @mcp.tool(name="bulk_mark_read")
    @_tool_errors
    async def bulk_mark_read(before: str) -> dict:
        """Mark every entry published before a date as read (today, yesterday, week, month, YYYY-MM-DD)."""
        return await tools.bulk_mark_read(before)


def register_resources(mcp: FastMCP, tools: DigestTools) -> None:
    """Register read-only digest views."""

    @mcp.resource(URI_FEEDS, name="All Feeds", mime_type="application/json",
                  description="All subscribed feeds with title, URL, last fetch time and error status")
    async def feeds_resource() -> str:
        return _json(await tools.feeds_resource())

    @mcp.resource(URI_UNREAD, name="Unread Entries", mime_type="application/json",
                  description="Unread entries across all feeds, newest first")
    async def unread_resource() -> str:
        return _json(await tools.unread_resource())

    @mcp.resource(URI_TODAY, name="Today's Entries", mime_type="application/json",
                  description="Entries published since local midnight, read or not")
    async def today_resource() -> str:
        return _json(await tools.today_resource())

    @mcp.resource(URI_STATS, name="Feed Statistics", mime_type="application/json",
                  description="Feed and entry counts, unread totals, last sync and per-feed breakdown")
    async def stats_resource() -> str:
        return _json(await tools.stats_resource())


def daily_digest_prompt() -> str:
    return (
        "Put together a digest of today's reading.\n\n"
        "1. Run sync_feeds to pick up anything new.\n"
        f"2. Read {URI_TODAY} (or call list_entries with since=\"today\").\n"
        "3. Group the entries by topic and summarize each group in two or three sentences, "
        "linking to the most important entries.\n"
        "4. Offer to mark the covered entries as read with mark_read."
    )


def catch_up_prompt(days: str = "7") -> str:
    try:
        count = max(1, int(days))
    except (TypeError, ValueError):
        count = 7
    period = "week" if count == 7 else f"the last {count} days"
    return (
        f"Help me catch up on unread entries from {period}.\n\n"
        f"1. Call list_entries with unread_only=true and a since date {count} days ago (YYYY-MM-DD).\n"
        "2. Highlight the handful of entries worth reading in full and say why.\n"
        "3. Summarize the rest in a few bullet points per feed.\n"
        "4. When I am done, offer bulk_mark_read with before set to today's date to clear the backlog."
    )


def curate_feeds_prompt() -> str:
    return (
        "Review my subscriptions and suggest improvements.\n\n"
        f"1. Read {URI_STATS} and {URI_FEEDS}.\n"
        "2. Flag feeds with repeated fetch errors, feeds that never publish and feeds whose "
        "entries I never read.\n"
        "3. Suggest folders for unfiled feeds (move_feed) and feeds to drop (remove_feed).\n"
        "4. Make no changes until I confirm."
    )


def register_prompts(mcp: FastMCP) -> None:
    mcp.prompt(name="daily-digest", description="Summarize today's entries from all subscriptions")(daily_digest_prompt)
    mcp.prompt(name="catch-up", description="Work through unread entries from recent days")(catch_up_prompt)
    mcp.prompt(name="curate-feeds", description="Review subscriptions and prune low-value feeds")(curate_feeds_prompt)


def create_server(tools: DigestTools) -> FastMCP:
    mcp = FastMCP(SERVER_NAME)
    register_tools(mcp, tools)
    register_resources(mcp, tools)
    register_prompts(mcp)
    return mcp


async def serve(app: Optional[DigestApp] = None) -> None:
    """Run the stdio server until the host disconnects."""
    init_telemetry("digest-server")
    app = app or DigestApp()
    await app.start()
    try:
        logger.info("digest MCP server listening on stdio")
        await create_server(app.tools).run_async(transport="stdio")
    finally:
        await app.stop()
