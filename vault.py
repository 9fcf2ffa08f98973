#!/usr/bin/env python3
"""
Encrypted change-log replication.

Local mutations that should reach other devices are sealed into envelopes
and kept in a small SQLite queue until the relay acknowledges them. Pulled
records are opened, checked against their associated data and applied to
the Store; the pull cursor only moves past records that were applied (or
deliberately skipped because this device wrote them).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import json

from changes import (
    ENTITY_FEED,
    ENTITY_READ_STATE,
    Change,
    FeedPayload,
    ReadStatePayload,
)
from config import config, get_logger
from errors import (
    CryptoError,
    InvalidInputError,
    NotConfiguredError,
    NotFoundError,
    SerializationError,
    TransportError,
)
from models import DatabaseQueue, Store
from opml import OutlineStore
from relay import RelayClient
from sync_config import SyncConfig
from telemetry import trace_span
from utils import format_timestamp, now_utc, to_timestamp
from vault_crypto import VaultKeys, build_aad, open_envelope, seal

# Module-specific logger
logger = get_logger("vault")

VAULT_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id TEXT NOT NULL UNIQUE,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    op TEXT NOT NULL,
    ts TEXT NOT NULL,
    envelope TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS sync_rejects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    seq TEXT,
    change_id TEXT,
    device_id TEXT,
    reason TEXT NOT NULL,
    envelope TEXT,
    rejected_at INTEGER NOT NULL
);
"""

STATE_CURSOR = "last_pulled_seq"
STATE_LAST_PUSH = "last_push_at"
STATE_LAST_PULL = "last_pull_at"


class VaultQueue(DatabaseQueue):
    """Pending envelopes, the pull cursor and rejected records."""

    def _initialize(self, conn) -> None:
        conn.executescript(VAULT_SCHEMA)
        conn.commit()

    def enqueue_record(self, change_id: str, entity: str, entity_id: str, op: str, ts: str,
                       envelope: Dict[str, Any]) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT OR IGNORE INTO sync_queue (change_id, entity, entity_id, op, ts, envelope, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (change_id, entity, entity_id, op, ts, json.dumps(envelope), to_timestamp(now_utc())),
            )

    def pending(self, limit: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT change_id, ts, envelope FROM sync_queue ORDER BY seq ASC LIMIT ?", (limit,)
        ).fetchall()
        return [{"change_id": row['change_id'], "ts": row['ts'], "envelope": json.loads(row['envelope'])}
                for row in rows]

    def pending_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    def remove(self, change_ids: List[str]) -> int:
        if not change_ids:
            return 0
        placeholders = ",".join("?" for _ in change_ids)
        with self.conn:
            cursor = self.conn.execute(f"DELETE FROM sync_queue WHERE change_id IN ({placeholders})", change_ids)
        return cursor.rowcount

    def get_state(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO sync_state (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def record_reject(self, seq: str, change_id: str, device_id: str, reason: str,
                      envelope: Optional[Dict[str, Any]]) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT INTO sync_rejects (seq, change_id, device_id, reason, envelope, rejected_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (seq, change_id, device_id, reason, json.dumps(envelope) if envelope is not None else None,
                 to_timestamp(now_utc())),
            )

    def list_rejects(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT seq, change_id, device_id, reason, rejected_at FROM sync_rejects ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]

    def reject_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM sync_rejects").fetchone()[0]


def _seq_key(value: Any):
    text = str(value)
    return (0, int(text), "") if text.isdigit() else (1, 0, text)


@dataclass
class PullResult:
    applied: int = 0
    skipped: int = 0
    cursor: str = ""


class Syncer:
    """Enqueues, pushes, pulls and applies replication records."""

    def __init__(self, store: Store, sync_config: SyncConfig, outline: Optional[OutlineStore] = None,
                 relay: Optional[RelayClient] = None, queue: Optional[VaultQueue] = None):
        self.store = store
        self.sync_config = sync_config
        self.outline = outline
        self.queue = queue or VaultQueue(sync_config.vault_path())
        self._relay = relay
        self._keys: Optional[VaultKeys] = None

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        if self._relay is not None:
            await self._relay.close()
            self._relay = None
        await self.queue.stop()
        self._keys = None

    @property
    def can_encrypt(self) -> bool:
        return bool(self.sync_config.derived_key and self.sync_config.device_id)

    def keys(self) -> VaultKeys:
        if self._keys is None:
            if not self.sync_config.derived_key:
                raise NotConfiguredError("sync is not configured: run sync-init first")
            self._keys = self.sync_config.keys()
        return self._keys

    def relay(self) -> RelayClient:
        if not self.sync_config.is_configured():
            raise NotConfiguredError("sync is not configured: server, user id, token and seed are required")
        if self._relay is None:
            self._relay = RelayClient(
                server=self.sync_config.server,
                user_id=self.sync_config.user_id,
                token=self.sync_config.token,
                device_id=self.sync_config.device_id,
                keys=self.keys(),
            )
        return self._relay

    def _aad(self, user_id: str, device_id: str, change: Change) -> bytes:
        return build_aad(user_id, device_id, change.entity, change.entity_id, change.op, format_timestamp(change.ts))

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------
    async def enqueue(self, change: Change) -> bool:
        """Seal and queue a change; returns False when replication is not set up."""
        if not self.can_encrypt:
            logger.debug(f"Replication not initialized, not queueing {change.entity} {change.entity_id}")
            return False

        aad = self._aad(self.sync_config.user_id, self.sync_config.device_id, change)
        envelope = seal(self.keys(), change.to_json(), aad)
        await self.queue.execute(
            'enqueue_record',
            change_id=change.change_id,
            entity=change.entity,
            entity_id=change.entity_id,
            op=change.op,
            ts=format_timestamp(change.ts),
            envelope=envelope,
        )
        logger.debug(f"Queued {change.op} of {change.entity} {change.entity_id}")

        if self.sync_config.auto_sync and self.sync_config.is_configured():
            try:
                await self.push()
            except (TransportError, NotConfiguredError) as e:
                logger.warning(f"Auto-sync push deferred: {e}")
        return True

    # ------------------------------------------------------------------
    # Relay side
    # ------------------------------------------------------------------
    @trace_span("vault.push", tracer_name="vault")
    async def push(self) -> int:
        """Push queued records until the queue is empty or the relay stops acknowledging.

        Returns:
            Number of records acknowledged and removed
        """
        relay = self.relay()
        pushed = 0
        while True:
            batch = await self.queue.execute('pending', limit=config.VAULT_PUSH_BATCH)
            if not batch:
                break
            records = [
                {
                    "change_id": record["change_id"],
                    "user_id": self.sync_config.user_id,
                    "device_id": self.sync_config.device_id,
                    "ts": record["ts"],
                    "envelope": record["envelope"],
                }
                for record in batch
            ]
            acked = await relay.push(records)
            batch_ids = {record["change_id"] for record in batch}
            removable = [change_id for change_id in acked if change_id in batch_ids]
            removed = await self.queue.execute('remove', change_ids=removable)
            pushed += removed
            if removed < len(batch):
                logger.warning(f"Relay acknowledged {removed} of {len(batch)} records; remaining stay queued")
                break

        await self.queue.execute('set_state', key=STATE_LAST_PUSH, value=format_timestamp(now_utc()))
        logger.info(f"Pushed {pushed} change records")
        return pushed

    def _open_item(self, item: Dict[str, Any]) -> Change:
        """Decrypt a pulled record and verify its associated data."""
        plaintext, carried_aad = open_envelope(self.keys(), item.get("envelope"))
        try:
            change = Change.from_json(plaintext, change_id=str(item.get("change_id") or ""))
        except SerializationError as e:
            raise CryptoError(f"decrypted record is not a change: {e}") from e
        expected = self._aad(str(item.get("user_id") or ""), str(item.get("device_id") or ""), change)
        if carried_aad != expected:
            raise CryptoError("associated data mismatch", details={"change_id": item.get("change_id")})
        return change

    @trace_span("vault.pull", tracer_name="vault")
    async def pull(self) -> PullResult:
        """Pull and apply peer records after the stored cursor.

        Raises:
            CryptoError: when a record cannot be opened or verified; the cursor
                stays on the last record before it
        """
        relay = self.relay()
        cursor = await self.queue.execute('get_state', key=STATE_CURSOR) or "0"
        result = PullResult(cursor=cursor)

        while True:
            page = await relay.pull(cursor)
            for item in sorted(page.items, key=lambda i: _seq_key(i.get("seq"))):
                seq = str(item.get("seq"))
                if item.get("device_id") == self.sync_config.device_id:
                    result.skipped += 1
                else:
                    try:
                        change = self._open_item(item)
                        await self.apply(change)
                    except (CryptoError, InvalidInputError) as e:
                        logger.error(f"Rejecting record seq={seq} change={item.get('change_id')}: {e}")
                        await self.queue.execute(
                            'record_reject',
                            seq=seq,
                            change_id=str(item.get("change_id") or ""),
                            device_id=str(item.get("device_id") or ""),
                            reason=str(e),
                            envelope=item.get("envelope"),
                        )
                        await self.queue.execute('set_state', key=STATE_CURSOR, value=cursor)
                        if isinstance(e, CryptoError):
                            raise
                        raise CryptoError(f"record {seq} rejected: {e}", details={"seq": seq}) from e
                    result.applied += 1
                cursor = seq
                await self.queue.execute('set_state', key=STATE_CURSOR, value=cursor)
            if not page.has_more or not page.items:
                break

        result.cursor = cursor
        await self.queue.execute('set_state', key=STATE_LAST_PULL, value=format_timestamp(now_utc()))
        logger.info(f"Pulled {result.applied} change records ({result.skipped} own), cursor at {cursor}")
        return result

    async def sync(self) -> Dict[str, Any]:
        """Push then pull."""
        pushed = await self.push()
        pulled = await self.pull()
        return {"pushed": pushed, "pulled": pulled.applied, "skipped": pulled.skipped, "cursor": pulled.cursor}

    async def status(self) -> Dict[str, Any]:
        return {
            "configured": self.sync_config.is_configured(),
            "device_id": self.sync_config.device_id,
            "server": self.sync_config.server,
            "user_id": self.sync_config.user_id,
            "auto_sync": self.sync_config.auto_sync,
            "pending": await self.queue.execute('pending_count'),
            "cursor": await self.queue.execute('get_state', key=STATE_CURSOR) or "0",
            "last_push_at": await self.queue.execute('get_state', key=STATE_LAST_PUSH),
            "last_pull_at": await self.queue.execute('get_state', key=STATE_LAST_PULL),
            "rejected": await self.queue.execute('reject_count'),
        }

    async def rejects(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.queue.execute('list_rejects', limit=limit)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------
    async def apply(self, change: Change) -> None:
        """Apply one decoded record to the Store; safe to repeat."""
        if change.entity == ENTITY_FEED:
            if change.is_delete:
                await self._apply_feed_delete(change.entity_id)
            else:
                await self._apply_feed_upsert(change.payload)
        elif change.entity == ENTITY_READ_STATE:
            if change.is_delete:
                logger.debug(f"Ignoring read_state delete for {change.entity_id}")
                return
            await self._apply_read_state(change)
        else:
            logger.debug(f"Ignoring change for unknown entity '{change.entity}'")

    async def _apply_feed_delete(self, url: str) -> None:
        if not url:
            raise InvalidInputError("feed delete requires a url")
        removed = await self.store.execute('delete_feed_by_url', url=url)
        if self.outline is not None:
            async with self.outline.edit() as document:
                if document.has_feed(url):
                    document.remove_feed(url)
        logger.info(f"Applied remote delete of {url}" if removed else f"Remote delete of unknown feed {url}")

    async def _apply_feed_upsert(self, payload: Optional[FeedPayload]) -> None:
        if not isinstance(payload, FeedPayload):
            raise InvalidInputError("feed upsert requires a feed payload")
        await self.store.execute(
            'upsert_feed_from_remote',
            url=payload.url,
            title=payload.title,
            folder=payload.folder,
            created_at=payload.created_at,
        )
        if self.outline is not None:
            async with self.outline.edit() as document:
                current = document.find_feed(payload.url)
                if current is None:
                    document.add_feed(payload.url, payload.title or payload.url, payload.folder)
                elif current.folder != payload.folder:
                    document.move_feed(payload.url, payload.folder)
        logger.info(f"Applied remote upsert of {payload.url}")

    async def _apply_read_state(self, change: Change) -> None:
        payload = change.payload
        if not isinstance(payload, ReadStatePayload):
            raise InvalidInputError("read_state upsert requires a read_state payload")

        entry = await self.store.execute('get_entry_by_feed_url_and_guid', feed_url=payload.feed_url, guid=payload.guid)
        if entry is None:
            logger.debug(f"No local entry for {change.entity_id}; read state ignored")
            return

        incoming_at = payload.read_at or change.ts
        try:
            stored_at = await self.store.execute('get_read_state_changed_at', entry_id=entry.id)
        except NotFoundError:
            return

        if stored_at is not None:
            incoming_ts = to_timestamp(incoming_at)
            stored_ts = to_timestamp(stored_at)
            if stored_ts > incoming_ts:
                logger.debug(f"Stale read state for {change.entity_id} ignored")
                return
            # Equal timestamps: read wins
            if stored_ts == incoming_ts and entry.read and not payload.read:
                return

        await self.store.execute('set_entry_read_state', entry_id=entry.id, read=payload.read, changed_at=incoming_at)

