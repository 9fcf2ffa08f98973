import json
from datetime import datetime, timezone

import pytest

from changes import (
    ENTITY_FEED,
    ENTITY_READ_STATE,
    OP_DELETE,
    Change,
    FeedPayload,
    ReadStatePayload,
    feed_delete,
    feed_upsert,
    read_state_upsert,
)
from errors import InvalidInputError, SerializationError

TS = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)


def test_feed_upsert_record():
    change = feed_upsert("https://example.com/feed", "Example", "Tech", TS)
    decoded = Change.from_json(change.to_json(), change_id=change.change_id)

    assert decoded.entity == ENTITY_FEED
    assert decoded.entity_id == "https://example.com/feed"
    assert decoded.payload == FeedPayload(url="https://example.com/feed", title="Example", folder="Tech", created_at=TS)
    assert decoded.change_id == change.change_id


def test_feed_delete_has_no_payload():
    change = feed_delete("https://example.com/feed")
    decoded = Change.from_json(change.to_json())

    assert decoded.is_delete
    assert decoded.op == OP_DELETE
    assert decoded.payload is None


def test_read_state_record_uses_composite_id():
    change = read_state_upsert("https://example.com/feed", "g1", False, TS)

    assert change.entity == ENTITY_READ_STATE
    assert change.entity_id == "https://example.com/feed:g1"
    decoded = Change.from_json(change.to_json())
    assert decoded.payload == ReadStatePayload(feed_url="https://example.com/feed", guid="g1", read=False, read_at=TS)


def test_serialization_is_canonical():
    change = feed_upsert("https://example.com/feed", None, "", None)
    raw = change.to_json()

    assert raw == json.dumps(json.loads(raw), separators=(",", ":"), sort_keys=True).encode()


def test_unknown_entity_keeps_raw_payload():
    raw = json.dumps({
        "entity": "tag",
        "entity_id": "t1",
        "op": "upsert",
        "ts": "2025-01-01T12:00:00Z",
        "payload": {"name": "python"},
    }).encode()

    change = Change.from_json(raw)
    assert change.entity == "tag"
    assert change.payload == {"name": "python"}


@pytest.mark.parametrize("payload", [
    {"guid": "g1", "read": True},
    {"feed_url": "https://example.com/feed", "guid": "g1", "read": "yes"},
    {"feed_url": "https://example.com/feed", "guid": "g1", "read": True, "read_at": "2025-01-01T12:00:00"},
])
def test_invalid_read_state_payloads(payload):
    raw = json.dumps({"entity": "read_state", "entity_id": "x", "op": "upsert",
                      "ts": "2025-01-01T12:00:00Z", "payload": payload}).encode()

    with pytest.raises(InvalidInputError):
        Change.from_json(raw)


def test_garbage_is_a_serialization_error():
    with pytest.raises(SerializationError):
        Change.from_json(b"not json")
    with pytest.raises(SerializationError):
        Change.from_json(b"[1, 2, 3]")
