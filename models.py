#!/usr/bin/env python3
"""
Database models and operations for digest.

This module owns the SQLite database holding feeds, entries and read state.
All access goes through a single worker coroutine that serializes
operations on one connection; every write runs inside a transaction so a
failed or cancelled operation leaves no partial state behind.
"""

from os import path, access, R_OK
from dataclasses import dataclass, field
from datetime import datetime
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Tuple
import json

from config import config, ensure_parent_dir, get_logger
from errors import AmbiguousError, DigestError, DuplicateError, InvalidInputError, NotFoundError, StorageError
from telemetry import trace_span
from utils import format_timestamp, from_timestamp, now_utc, to_timestamp

# Module-specific logger
logger = get_logger("models")

MIN_PREFIX_LENGTH = 8


@dataclass
class Feed:
    url: str
    title: Optional[str] = None
    id: str = ""
    folder: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_count: int = 0
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "folder": self.folder,
            "last_fetched_at": format_timestamp(self.last_fetched_at),
            "last_error": self.last_error,
            "error_count": self.error_count,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class Entry:
    feed_id: str
    guid: str
    id: str = ""
    title: Optional[str] = None
    link: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    content: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    read: bool = False
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    # Joined from feeds for presentation; not a column of entries
    feed_title: Optional[str] = None
    feed_url: Optional[str] = None

    def to_dict(self, include_content: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "feed_id": self.feed_id,
            "feed_title": self.feed_title,
            "guid": self.guid,
            "title": self.title,
            "link": self.link,
            "author": self.author,
            "published_at": format_timestamp(self.published_at),
            "categories": list(self.categories),
            "read": self.read,
            "read_at": format_timestamp(self.read_at),
            "created_at": format_timestamp(self.created_at),
        }
        if include_content:
            data["content"] = self.content
        return data


@dataclass
class EntryFilter:
    """Listing filter; ``since``/``until`` bound ``published_at`` as [since, until)."""

    feed_id: Optional[str] = None
    guid: Optional[str] = None
    unread_only: bool = False
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None
    offset: Optional[int] = None


@dataclass
class FeedStats:
    feed_id: str
    feed_title: Optional[str]
    feed_url: str
    entry_count: int
    unread_count: int
    last_fetched_at: Optional[datetime]
    error_count: int
    last_error: Optional[str]


@dataclass
class OverallStats:
    total_feeds: int
    total_entries: int
    unread_count: int


@dataclass
class ReadStateKey:
    """Identity of an entry across devices plus its current read state."""

    feed_url: str
    guid: str
    read: bool
    read_at: Optional[datetime]


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
            _run_migrations(conn)

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add columns introduced after a database was first created."""
    cursor = conn.cursor()
    additions = {
        "feeds": [("folder", "TEXT NOT NULL DEFAULT ''")],
        "entries": [("categories", "TEXT"), ("read_state_changed_at", "INTEGER")],
    }

    try:
        for table, columns in additions.items():
            cursor.execute(f"PRAGMA table_info({table})")
            existing = {column[1] for column in cursor.fetchall()}
            for name, ddl in columns:
                if name not in existing:
                    logger.info(f"Adding {name} column to {table} table")
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
        conn.commit()
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _row_to_feed(row: Row) -> Feed:
    return Feed(
        id=row['id'],
        url=row['url'],
        title=row['title'],
        folder=row['folder'] or "",
        etag=row['etag'],
        last_modified=row['last_modified'],
        last_fetched_at=from_timestamp(row['last_fetched_at']),
        last_error=row['last_error'],
        error_count=row['error_count'] or 0,
        created_at=from_timestamp(row['created_at']),
    )


def _row_to_entry(row: Row) -> Entry:
    keys = row.keys()
    categories: List[str] = []
    if row['categories']:
        try:
            categories = list(json.loads(row['categories']))
        except (TypeError, ValueError):
            categories = []
    return Entry(
        id=row['id'],
        feed_id=row['feed_id'],
        guid=row['guid'],
        title=row['title'],
        link=row['link'],
        author=row['author'],
        published_at=from_timestamp(row['published_at']),
        content=row['content'],
        categories=categories,
        read=bool(row['read']),
        read_at=from_timestamp(row['read_at']),
        created_at=from_timestamp(row['created_at']),
        feed_title=row['feed_title'] if 'feed_title' in keys else None,
        feed_url=row['feed_url'] if 'feed_url' in keys else None,
    )


ENTRY_COLUMNS = (
    "e.id, e.feed_id, e.guid, e.title, e.link, e.author, e.published_at, e.content, "
    "e.categories, e.read, e.read_at, e.created_at, f.title AS feed_title, f.url AS feed_url"
)


class DatabaseQueue:
    """A queue for database operations so a single connection serves all callers.

    Operations are plain methods of a subclass, executed by the worker;
    callers use ``await db.execute('operation_name', **params)``. Errors raised
    by an operation are re-raised to the caller unchanged; raw sqlite3 errors
    are surfaced as StorageError.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if self.db_path != ":memory:":
            if not path.isfile(self.db_path):
                logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
                ensure_parent_dir(self.db_path)
            else:
                logger.debug(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode = WAL")
            self._initialize(self.conn)
        except Error as e:
            raise StorageError(f"cannot open database {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation that will never run
        for operation_id, event in list(self.events.items()):
            self.results.setdefault(operation_id, {"error": StorageError("database closed")})
            event.set()

        logger.debug("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith('_'):
                        raise InvalidInputError(f"Unknown operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except DigestError as e:
                    self.results[operation_id] = {"error": e}
                except Error as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": StorageError(f"{operation_name}: {e}")}
                except Exception as e:
                    logger.error(f"Unexpected error in database operation {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise StorageError("database is not open")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    def _initialize(self, conn) -> None:
        """Create or migrate the schema on a freshly opened connection."""
        raise NotImplementedError


class Store(DatabaseQueue):
    """Feeds, entries and read state."""

    def __init__(self, db_path: Optional[str] = None):
        super().__init__(db_path or config.DATABASE_PATH)

    def _initialize(self, conn) -> None:
        initialize_database(conn)

    # ------------------------------------------------------------------
    # Feed operations
    # ------------------------------------------------------------------
    def create_feed(self, feed: Feed) -> Feed:
        """Insert a feed, assigning its identifier and creation time."""
        if not feed.id:
            feed.id = str(uuid4())
        if feed.created_at is None:
            feed.created_at = now_utc()
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT INTO feeds (id, url, title, folder, etag, last_modified, last_fetched_at,
                                          last_error, error_count, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (feed.id, feed.url, feed.title, feed.folder or "", feed.etag, feed.last_modified,
                     to_timestamp(feed.last_fetched_at), feed.last_error, feed.error_count,
                     to_timestamp(feed.created_at)),
                )
        except IntegrityError as e:
            raise DuplicateError(f"feed already exists: {feed.url}") from e
        logger.info(f"Created feed {feed.id} for {feed.url}")
        return feed

    def get_feed(self, feed_id: str) -> Feed:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"feed not found: {feed_id}")
        return _row_to_feed(row)

    def get_feed_by_url(self, url: str) -> Feed:
        row = self.conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        if row is None:
            raise NotFoundError(f"feed not found: {url}")
        return _row_to_feed(row)

    def find_feed_by_url(self, url: str) -> Optional[Feed]:
        """Like get_feed_by_url but returns None when absent."""
        row = self.conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        return _row_to_feed(row) if row else None

    def get_feed_by_id_or_prefix(self, value: str) -> Feed:
        """Resolve a full feed id, or a unique prefix of at least 8 characters."""
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (value,)).fetchone()
        if row is not None:
            return _row_to_feed(row)
        rows = self._prefix_rows("feeds", "SELECT * FROM feeds", value)
        if not rows:
            raise NotFoundError(f"feed not found: {value}")
        if len(rows) > 1:
            raise AmbiguousError(f"ambiguous feed id prefix '{value}' matches {len(rows)} feeds", matches=len(rows))
        return _row_to_feed(rows[0])

    def list_feeds(self) -> List[Feed]:
        """All feeds in creation order."""
        rows = self.conn.execute("SELECT * FROM feeds ORDER BY created_at ASC, rowid ASC").fetchall()
        return [_row_to_feed(row) for row in rows]

    def update_feed(self, feed: Feed) -> Feed:
        """Persist the mutable scalar fields (title, folder)."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE feeds SET title = ?, folder = ? WHERE id = ?",
                (feed.title, feed.folder or "", feed.id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"feed not found: {feed.id}")
        return feed

    def adopt_feed_title(self, feed_id: str, title: str) -> bool:
        """Set the title only while the stored one is still empty; other columns are untouched."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE feeds SET title = ? WHERE id = ? AND (title IS NULL OR title = '')",
                (title, feed_id),
            )
        return cursor.rowcount > 0

    def update_feed_fetch_state(self, feed_id: str, etag: Optional[str], last_modified: Optional[str],
                                fetched_at: Optional[datetime] = None) -> None:
        """Record a successful fetch: new validators, fetch time, error state cleared."""
        with self.conn:
            cursor = self.conn.execute(
                """UPDATE feeds SET etag = ?, last_modified = ?, last_fetched_at = ?,
                                    last_error = NULL, error_count = 0
                   WHERE id = ?""",
                (etag or None, last_modified or None, to_timestamp(fetched_at or now_utc()), feed_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"feed not found: {feed_id}")

    def update_feed_error(self, feed_id: str, message: str) -> None:
        """Record a failed fetch and bump the error counter in one statement."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE feeds SET last_error = ?, error_count = error_count + 1 WHERE id = ?",
                (message, feed_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"feed not found: {feed_id}")

    def delete_feed(self, feed_id: str) -> int:
        """Delete a feed and its entries; returns the number of entries removed."""
        with self.conn:
            removed = self.conn.execute("SELECT COUNT(*) FROM entries WHERE feed_id = ?", (feed_id,)).fetchone()[0]
            cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"feed not found: {feed_id}")
        logger.info(f"Deleted feed {feed_id} and {removed} entries")
        return removed

    def delete_feed_by_url(self, url: str) -> bool:
        """Delete a feed (and its entries) by URL; False when no such feed exists."""
        with self.conn:
            cursor = self.conn.execute("DELETE FROM feeds WHERE url = ?", (url,))
        return cursor.rowcount > 0

    def upsert_feed_from_remote(self, url: str, title: Optional[str], folder: str,
                                created_at: Optional[datetime]) -> Feed:
        """Create or update a feed described by a replicated record."""
        with self.conn:
            row = self.conn.execute("SELECT id FROM feeds WHERE url = ?", (url,)).fetchone()
            if row is not None:
                self.conn.execute(
                    "UPDATE feeds SET title = ?, folder = ? WHERE id = ?",
                    (title, folder or "", row['id']),
                )
                feed_id = row['id']
            else:
                feed_id = str(uuid4())
                self.conn.execute(
                    "INSERT INTO feeds (id, url, title, folder, created_at) VALUES (?, ?, ?, ?, ?)",
                    (feed_id, url, title, folder or "", to_timestamp(created_at or now_utc())),
                )
        return self.get_feed(feed_id)

    # ------------------------------------------------------------------
    # Entry operations
    # ------------------------------------------------------------------
    def entry_exists(self, feed_id: str, guid: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM entries WHERE feed_id = ? AND guid = ?", (feed_id, guid)
        ).fetchone()
        return row is not None

    def _insert_entry(self, entry: Entry) -> None:
        if not entry.id:
            entry.id = str(uuid4())
        if entry.created_at is None:
            entry.created_at = now_utc()
        self.conn.execute(
            """INSERT INTO entries (id, feed_id, guid, title, link, author, published_at, content,
                                    categories, read, read_at, read_state_changed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (entry.id, entry.feed_id, entry.guid, entry.title, entry.link, entry.author,
             to_timestamp(entry.published_at), entry.content,
             json.dumps(entry.categories) if entry.categories else None,
             1 if entry.read else 0, to_timestamp(entry.read_at) if entry.read else None,
             to_timestamp(entry.read_at) if entry.read else None,
             to_timestamp(entry.created_at)),
        )

    def create_entry(self, entry: Entry) -> Entry:
        """Insert one entry; fails with DuplicateError if (feed_id, guid) exists."""
        try:
            with self.conn:
                self._insert_entry(entry)
        except IntegrityError as e:
            if self.entry_exists(entry.feed_id, entry.guid):
                raise DuplicateError(f"entry {entry.guid} already exists for feed {entry.feed_id}") from e
            raise NotFoundError(f"feed not found: {entry.feed_id}") from e
        return entry

    def ingest_entries(self, feed_id: str, entries: List[Entry]) -> int:
        """Insert the entries whose guid is new for the feed, in one transaction.

        Returns:
            Number of entries created
        """
        created = 0
        seen = set()
        with self.conn:
            for entry in entries:
                if entry.guid in seen or self.entry_exists(feed_id, entry.guid):
                    continue
                seen.add(entry.guid)
                entry.feed_id = feed_id
                self._insert_entry(entry)
                created += 1
        return created

    def get_entry(self, entry_id: str) -> Entry:
        row = self.conn.execute(
            f"SELECT {ENTRY_COLUMNS} FROM entries e JOIN feeds f ON f.id = e.feed_id WHERE e.id = ?",
            (entry_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"entry not found: {entry_id}")
        return _row_to_entry(row)

    def _prefix_rows(self, table: str, select: str, prefix: str) -> List[Row]:
        if len(prefix) < MIN_PREFIX_LENGTH:
            raise InvalidInputError(f"id prefix must be at least {MIN_PREFIX_LENGTH} characters, got {len(prefix)}")
        alias = "e." if table == "entries" else ""
        return self.conn.execute(
            f"{select} WHERE substr({alias}id, 1, ?) = ? LIMIT 2",
            (len(prefix), prefix),
        ).fetchall()

    def get_entry_by_prefix(self, prefix: str) -> Entry:
        """Resolve an entry by a unique id prefix of at least 8 characters."""
        rows = self._prefix_rows(
            "entries", f"SELECT {ENTRY_COLUMNS} FROM entries e JOIN feeds f ON f.id = e.feed_id", prefix
        )
        if not rows:
            raise NotFoundError(f"entry not found: {prefix}")
        if len(rows) > 1:
            count = self.conn.execute(
                "SELECT COUNT(*) FROM entries WHERE substr(id, 1, ?) = ?", (len(prefix), prefix)
            ).fetchone()[0]
            raise AmbiguousError(f"ambiguous entry id prefix '{prefix}' matches {count} entries", matches=count)
        return _row_to_entry(rows[0])

    def get_entry_by_id_or_prefix(self, value: str) -> Entry:
        try:
            return self.get_entry(value)
        except NotFoundError:
            return self.get_entry_by_prefix(value)

    def get_entry_by_feed_url_and_guid(self, feed_url: str, guid: str) -> Optional[Entry]:
        row = self.conn.execute(
            f"""SELECT {ENTRY_COLUMNS} FROM entries e JOIN feeds f ON f.id = e.feed_id
                WHERE f.url = ? AND e.guid = ?""",
            (feed_url, guid),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def list_entries(self, filter: Optional[EntryFilter] = None) -> List[Entry]:
        """List entries newest first; undated entries sort last."""
        flt = filter or EntryFilter()
        if flt.limit is not None and flt.limit < 0:
            raise InvalidInputError(f"limit must be non-negative, got {flt.limit}")
        if flt.offset is not None and flt.offset < 0:
            raise InvalidInputError(f"offset must be non-negative, got {flt.offset}")

        clauses: List[str] = []
        params: List[Any] = []
        if flt.feed_id:
            clauses.append("e.feed_id = ?")
            params.append(flt.feed_id)
        if flt.guid:
            clauses.append("e.guid = ?")
            params.append(flt.guid)
        if flt.unread_only:
            clauses.append("e.read = 0")
        if flt.since is not None:
            clauses.append("e.published_at >= ?")
            params.append(to_timestamp(flt.since))
        if flt.until is not None:
            clauses.append("e.published_at < ?")
            params.append(to_timestamp(flt.until))

        query = f"SELECT {ENTRY_COLUMNS} FROM entries e JOIN feeds f ON f.id = e.feed_id"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY e.published_at IS NULL, e.published_at DESC, e.created_at DESC, e.rowid DESC"
        if flt.limit is not None or flt.offset:
            query += " LIMIT ? OFFSET ?"
            params.extend([flt.limit if flt.limit is not None else -1, flt.offset or 0])

        return [_row_to_entry(row) for row in self.conn.execute(query, params).fetchall()]

    def mark_entry_read(self, entry_id: str, read_at: Optional[datetime] = None) -> Entry:
        ts = to_timestamp(read_at or now_utc())
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE entries SET read = 1, read_at = ?, read_state_changed_at = ? WHERE id = ?",
                (ts, ts, entry_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"entry not found: {entry_id}")
        return self.get_entry(entry_id)

    def mark_entry_unread(self, entry_id: str, changed_at: Optional[datetime] = None) -> Entry:
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE entries SET read = 0, read_at = NULL, read_state_changed_at = ? WHERE id = ?",
                (to_timestamp(changed_at or now_utc()), entry_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"entry not found: {entry_id}")
        return self.get_entry(entry_id)

    def get_read_state_changed_at(self, entry_id: str) -> Optional[datetime]:
        """Time of the last read/unread transition (falls back to read_at)."""
        row = self.conn.execute(
            "SELECT read_state_changed_at, read_at FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"entry not found: {entry_id}")
        value = row['read_state_changed_at'] if row['read_state_changed_at'] is not None else row['read_at']
        return from_timestamp(value)

    def set_entry_read_state(self, entry_id: str, read: bool, changed_at: datetime) -> None:
        """Apply a read state carried by a replicated record."""
        ts = to_timestamp(changed_at)
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE entries SET read = ?, read_at = ?, read_state_changed_at = ? WHERE id = ?",
                (1 if read else 0, ts if read else None, ts, entry_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"entry not found: {entry_id}")

    def mark_entries_read_before_with_keys(self, cutoff: datetime,
                                           read_at: Optional[datetime] = None) -> Tuple[int, List[ReadStateKey]]:
        """Mark unread entries published before cutoff as read.

        Entries without a publication date are never considered before a cutoff.

        Returns:
            (affected row count, replication keys of the affected entries)
        """
        ts = to_timestamp(read_at or now_utc())
        with self.conn:
            rows = self.conn.execute(
                """SELECT e.id, e.guid, f.url FROM entries e JOIN feeds f ON f.id = e.feed_id
                   WHERE e.read = 0 AND e.published_at IS NOT NULL AND e.published_at < ?""",
                (to_timestamp(cutoff),),
            ).fetchall()
            if rows:
                ids = [row['id'] for row in rows]
                placeholders = ",".join("?" for _ in ids)
                self.conn.execute(
                    f"UPDATE entries SET read = 1, read_at = ?, read_state_changed_at = ? WHERE id IN ({placeholders})",
                    [ts, ts] + ids,
                )
        stamp = from_timestamp(ts)
        keys = [ReadStateKey(feed_url=row['url'], guid=row['guid'], read=True, read_at=stamp) for row in rows]
        return len(rows), keys

    def mark_entries_read_before(self, cutoff: datetime) -> int:
        count, _ = self.mark_entries_read_before_with_keys(cutoff)
        return count

    def count_unread_entries(self, feed_id: Optional[str] = None) -> int:
        if feed_id:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM entries WHERE read = 0 AND feed_id = ?", (feed_id,)
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM entries WHERE read = 0").fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Statistics and maintenance
    # ------------------------------------------------------------------
    def get_feed_stats(self) -> List[FeedStats]:
        rows = self.conn.execute(
            """SELECT f.id, f.title, f.url, f.last_fetched_at, f.error_count, f.last_error,
                      COUNT(e.id) AS entry_count,
                      COALESCE(SUM(CASE WHEN e.read = 0 THEN 1 ELSE 0 END), 0) AS unread_count
               FROM feeds f LEFT JOIN entries e ON e.feed_id = f.id
               GROUP BY f.id
               ORDER BY f.created_at ASC, f.rowid ASC"""
        ).fetchall()
        return [
            FeedStats(
                feed_id=row['id'],
                feed_title=row['title'],
                feed_url=row['url'],
                entry_count=row['entry_count'],
                unread_count=row['unread_count'],
                last_fetched_at=from_timestamp(row['last_fetched_at']),
                error_count=row['error_count'] or 0,
                last_error=row['last_error'],
            )
            for row in rows
        ]

    def get_overall_stats(self) -> OverallStats:
        total_feeds = self.conn.execute("SELECT COUNT(*) FROM feeds").fetchone()[0]
        total_entries = self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        return OverallStats(
            total_feeds=total_feeds,
            total_entries=total_entries,
            unread_count=self.count_unread_entries(),
        )

    def compact(self) -> None:
        """Reclaim free pages."""
        self.conn.execute("VACUUM")
        logger.info("Database compacted")
