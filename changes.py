#!/usr/bin/env python3
"""Replication records exchanged between devices.

A Change is tagged by ``entity``; its payload is decoded into the dataclass
registered for that entity. Unknown entities survive decoding with their
raw payload so newer peers never break older ones.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union
from uuid import uuid4
import json

from errors import InvalidInputError, SerializationError
from utils import format_timestamp, now_utc

ENTITY_FEED = "feed"
ENTITY_READ_STATE = "read_state"

OP_UPSERT = "upsert"
OP_DELETE = "delete"


def _parse_time(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidInputError(f"{name} must be an RFC 3339 string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidInputError(f"invalid {name}: {value}") from e
    if parsed.tzinfo is None:
        raise InvalidInputError(f"{name} must carry a timezone: {value}")
    return parsed


@dataclass
class FeedPayload:
    url: str
    title: Optional[str] = None
    folder: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "folder": self.folder,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedPayload":
        url = data.get("url")
        if not url or not isinstance(url, str):
            raise InvalidInputError("feed payload requires a url")
        return cls(
            url=url,
            title=data.get("title") or None,
            folder=data.get("folder") or "",
            created_at=_parse_time(data.get("created_at"), "created_at"),
        )


@dataclass
class ReadStatePayload:
    feed_url: str
    guid: str
    read: bool
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_url": self.feed_url,
            "guid": self.guid,
            "read": self.read,
            "read_at": format_timestamp(self.read_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadStatePayload":
        feed_url = data.get("feed_url")
        guid = data.get("guid")
        if not feed_url or not guid:
            raise InvalidInputError("read_state payload requires feed_url and guid")
        read = data.get("read")
        if not isinstance(read, bool):
            raise InvalidInputError("read_state payload requires a boolean read flag")
        return cls(
            feed_url=feed_url,
            guid=guid,
            read=read,
            read_at=_parse_time(data.get("read_at"), "read_at"),
        )


PAYLOAD_TYPES = {
    ENTITY_FEED: FeedPayload,
    ENTITY_READ_STATE: ReadStatePayload,
}

Payload = Union[FeedPayload, ReadStatePayload, Dict[str, Any], None]


@dataclass
class Change:
    entity: str
    entity_id: str
    op: str
    ts: datetime = field(default_factory=now_utc)
    deleted: bool = False
    payload: Payload = None
    change_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def is_delete(self) -> bool:
        return self.op == OP_DELETE or self.deleted

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.payload, (FeedPayload, ReadStatePayload)):
            payload = self.payload.to_dict()
        else:
            payload = self.payload
        return {
            "entity": self.entity,
            "entity_id": self.entity_id,
            "op": self.op,
            "deleted": self.deleted,
            "ts": format_timestamp(self.ts),
            "payload": payload,
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes, change_id: str = "") -> "Change":
        """Decode a plaintext record.

        Payloads of known entities are validated; unknown entities keep
        their payload as a plain dict.
        """
        try:
            raw = json.loads(data)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"invalid change record: {e}") from e
        if not isinstance(raw, dict):
            raise SerializationError("invalid change record: not an object")

        entity = raw.get("entity") or ""
        payload_raw = raw.get("payload")
        payload: Payload = payload_raw
        payload_type = PAYLOAD_TYPES.get(entity)
        op = raw.get("op") or OP_UPSERT
        deleted = bool(raw.get("deleted", False))
        if payload_type is not None and op != OP_DELETE and not deleted:
            if not isinstance(payload_raw, dict):
                raise InvalidInputError(f"{entity} upsert requires a payload object")
            payload = payload_type.from_dict(payload_raw)

        return cls(
            entity=entity,
            entity_id=raw.get("entity_id") or "",
            op=op,
            ts=_parse_time(raw.get("ts"), "ts") or now_utc(),
            deleted=deleted,
            payload=payload,
            change_id=change_id or str(uuid4()),
        )


def read_state_entity_id(feed_url: str, guid: str) -> str:
    return f"{feed_url}:{guid}"


def feed_upsert(url: str, title: Optional[str], folder: str, created_at: Optional[datetime]) -> Change:
    return Change(
        entity=ENTITY_FEED,
        entity_id=url,
        op=OP_UPSERT,
        payload=FeedPayload(url=url, title=title, folder=folder or "", created_at=created_at),
    )


def feed_delete(url: str) -> Change:
    return Change(entity=ENTITY_FEED, entity_id=url, op=OP_DELETE, deleted=True)


def read_state_upsert(feed_url: str, guid: str, read: bool, read_at: Optional[datetime]) -> Change:
    """Read-state record; ``read_at`` is the transition time for both read and unread."""
    return Change(
        entity=ENTITY_READ_STATE,
        entity_id=read_state_entity_id(feed_url, guid),
        op=OP_UPSERT,
        payload=ReadStatePayload(feed_url=feed_url, guid=guid, read=read, read_at=read_at or now_utc()),
    )
