import asyncio

import pytest

from errors import DuplicateError, NotFoundError, ParseError, SerializationError
from helpers import outline_feeds
from opml import Document, OutlineStore

SAMPLE = b"""<?xml version="1.0" encoding="UTF-8"?>
<opml version="2.0">
  <head><title>My feeds</title></head>
  <body>
    <outline text="Tech">
      <outline text="Example" title="Example Blog" type="rss" xmlUrl="https://example.com/feed.xml"/>
      <outline text="Deep">
        <outline text="Nested" type="rss" xmlUrl="https://nested.example.com/rss"/>
      </outline>
    </outline>
    <outline text="Loose" type="rss" xmlUrl="https://loose.example.com/atom"/>
    <outline text="Empty folder"/>
  </body>
</opml>
"""


def test_parse_indexes_every_feed():
    document = Document.parse(SAMPLE)

    assert document.title == "My feeds"
    assert document.has_feed("https://example.com/feed.xml")
    assert document.has_feed("https://nested.example.com/rss")
    assert document.has_feed("https://loose.example.com/atom")
    assert document.folders() == ["Tech"]
    assert [f.url for f in document.feeds_in_folder("")] == ["https://loose.example.com/atom"]

    feed = document.find_feed("https://example.com/feed.xml")
    assert (feed.title, feed.folder) == ("Example Blog", "Tech")
    assert document.find_feed("https://nested.example.com/rss").folder == "Deep"


def test_round_trip_preserves_structure():
    document = Document.parse(SAMPLE)
    again = Document.parse(document.to_bytes())

    assert again.title == document.title
    assert again.outlines == document.outlines
    assert again.to_bytes() == document.to_bytes()
    assert document.to_bytes().startswith(b'<?xml version="1.0" encoding="UTF-8"?>\n<opml version="2.0">')


@pytest.mark.parametrize("payload", [b"", b"<opml", b"<rss version='2.0'></rss>"])
def test_parse_rejects_non_opml(payload):
    with pytest.raises(ParseError):
        Document.parse(payload)


def test_add_and_remove_restore_index():
    document = Document()
    url = "https://example.com/feed.xml"

    document.add_feed(url, "", "News")
    assert document.find_feed(url).title == url
    assert document.folders() == ["News"]
    with pytest.raises(DuplicateError):
        document.add_feed(url, "Again")

    document.remove_feed(url)
    assert not document.has_feed(url)
    assert document.all_feeds() == []
    with pytest.raises(NotFoundError):
        document.remove_feed(url)

    document.add_feed(url, "Back")
    assert document.find_feed(url).folder == ""


def test_move_feed_between_folders():
    document = Document()
    document.add_feed("https://a.example.com/feed", "A", "Tech")
    document.add_feed("https://b.example.com/feed", "B", "Tech")

    assert not document.move_feed("https://a.example.com/feed", "Tech")
    assert document.move_feed("https://a.example.com/feed", "News")

    moved = document.find_feed("https://a.example.com/feed")
    assert (moved.title, moved.folder) == ("A", "News")
    assert [f.url for f in document.feeds_in_folder("Tech")] == ["https://b.example.com/feed"]
    assert document.folders() == ["Tech", "News"]

    assert document.move_feed("https://b.example.com/feed", "")
    # A folder with no feeds left is no longer listed
    assert document.folders() == ["News"]
    with pytest.raises(NotFoundError):
        document.move_feed("https://missing.example.com/", "News")


def test_add_folder_is_idempotent():
    document = Document()
    first = document.add_folder("Tech")
    assert document.add_folder("Tech") is first
    assert len(document.outlines) == 1


def test_load_missing_file_is_empty(tmp_path):
    document = Document.load(str(tmp_path / "absent.opml"))
    assert document.all_feeds() == []


def test_write_file_replaces_atomically(tmp_path):
    target = tmp_path / "sub" / "feeds.opml"
    document = Document()
    document.add_feed("https://example.com/feed.xml", "Example", "Tech")

    document.write_file(str(target))

    assert Document.load(str(target)).has_feed("https://example.com/feed.xml")
    assert [p.name for p in target.parent.iterdir()] == ["feeds.opml"]


def test_write_file_failure_is_serialization_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(SerializationError):
        Document().write_file(str(blocker / "feeds.opml"))


@pytest.mark.asyncio
async def test_outline_store_persists_edits(tmp_path):
    file_path = str(tmp_path / "feeds.opml")
    outline = OutlineStore(file_path)

    async with outline.edit() as document:
        document.add_feed("https://example.com/feed.xml", "Example")

    snapshot = await outline_feeds(outline)
    assert list(snapshot) == ["https://example.com/feed.xml"]
    assert Document.load(file_path).has_feed("https://example.com/feed.xml")


@pytest.mark.asyncio
async def test_outline_store_discards_failed_edits(tmp_path):
    file_path = str(tmp_path / "feeds.opml")
    outline = OutlineStore(file_path)
    async with outline.edit() as document:
        document.add_feed("https://example.com/feed.xml", "Example")

    with pytest.raises(DuplicateError):
        async with outline.edit() as document:
            document.add_feed("https://other.example.com/feed", "Other")
            document.add_feed("https://example.com/feed.xml", "Dup")

    snapshot = await outline_feeds(outline)
    assert list(snapshot) == ["https://example.com/feed.xml"]


@pytest.mark.asyncio
async def test_outline_store_serializes_concurrent_edits(tmp_path):
    outline = OutlineStore(str(tmp_path / "feeds.opml"))

    async def add(i):
        async with outline.edit() as document:
            await asyncio.sleep(0)
            document.add_feed(f"https://example.com/{i}", f"Feed {i}", "Bulk")

    await asyncio.gather(*(add(i) for i in range(10)))

    snapshot = await outline_feeds(outline)
    assert len(snapshot) == 10
    assert all(feed.folder == "Bulk" for feed in snapshot.values())
