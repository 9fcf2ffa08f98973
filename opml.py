#!/usr/bin/env python3
"""
Subscription outline (OPML) for digest.

The outline is the authoritative source for folder placement and display
titles. Folders are top-level ``outline`` elements without ``xmlUrl``;
feeds are ``outline`` elements carrying ``type``, ``text``, ``title`` and
``xmlUrl``. Nested folders found in a parsed file are preserved on write,
but folder listing and placement only work one level deep.
"""

from asyncio import Lock
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from os import fsync, path, remove
from typing import List, Optional, Set
import shutil
import tempfile
import xml.etree.ElementTree as ET

from config import ensure_parent_dir, get_logger
from errors import DuplicateError, NotFoundError, ParseError, SerializationError

# Module-specific logger
logger = get_logger("opml")

DEFAULT_TITLE = "digest subscriptions"
XML_HEADER = '<?xml version="1.0" encoding="UTF-8"?>\n'


@dataclass
class Outline:
    """A node of the outline tree: a folder when ``xml_url`` is empty."""

    text: str = ""
    title: str = ""
    type: str = ""
    xml_url: str = ""
    children: List["Outline"] = field(default_factory=list)

    @property
    def is_feed(self) -> bool:
        return bool(self.xml_url)

    @property
    def display_title(self) -> str:
        return self.title or self.text


@dataclass
class OutlineFeed:
    url: str
    title: str
    folder: str = ""


def _feed_outline(url: str, title: str) -> Outline:
    return Outline(text=title, title=title, type="rss", xml_url=url)


def _from_element(element: ET.Element) -> Outline:
    return Outline(
        text=element.get("text", ""),
        title=element.get("title", ""),
        type=element.get("type", ""),
        xml_url=element.get("xmlUrl", ""),
        children=[_from_element(child) for child in element.findall("outline")],
    )


def _to_element(parent: ET.Element, outline: Outline) -> None:
    element = ET.SubElement(parent, "outline", {"text": outline.text})
    if outline.title:
        element.set("title", outline.title)
    if outline.type:
        element.set("type", outline.type)
    if outline.xml_url:
        element.set("xmlUrl", outline.xml_url)
    for child in outline.children:
        _to_element(element, child)


def _collect_feeds(outline: Outline, folder: str) -> List[OutlineFeed]:
    feeds: List[OutlineFeed] = []
    if outline.is_feed:
        feeds.append(OutlineFeed(url=outline.xml_url, title=outline.display_title, folder=folder))
    child_folder = folder
    if not outline.is_feed and outline.children:
        child_folder = outline.text
    for child in outline.children:
        feeds.extend(_collect_feeds(child, child_folder))
    return feeds


class Document:
    """In-memory subscription outline with a URL index.

    Every mutator keeps ``_urls`` in step with the tree; ``parse`` rebuilds
    it from scratch.
    """

    def __init__(self, title: str = DEFAULT_TITLE, outlines: Optional[List[Outline]] = None):
        self.title = title
        self.outlines: List[Outline] = outlines or []
        self._urls: Set[str] = set()
        self._rebuild_url_index()

    def _rebuild_url_index(self) -> None:
        self._urls = {feed.url for feed in self.all_feeds()}

    @classmethod
    def parse(cls, data: bytes) -> "Document":
        """Parse OPML bytes into a Document.

        Raises:
            ParseError: when the payload is not an OPML document
        """
        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            raise ParseError(f"failed to decode OPML: {e}") from e
        if root.tag != "opml":
            raise ParseError(f"failed to decode OPML: unexpected root element <{root.tag}>")

        title = root.findtext("head/title") or ""
        body = root.find("body")
        outlines = [_from_element(element) for element in body.findall("outline")] if body is not None else []
        return cls(title=title, outlines=outlines)

    @classmethod
    def load(cls, file_path: str) -> "Document":
        """Load a Document from disk; a missing file yields an empty outline."""
        if not path.exists(file_path):
            logger.info(f"Outline file {file_path} not found, starting with an empty outline")
            return cls()
        with open(file_path, "rb") as f:
            document = cls.parse(f.read())
        logger.debug(f"Loaded outline from {file_path} with {len(document._urls)} feeds")
        return document

    def to_bytes(self) -> bytes:
        root = ET.Element("opml", {"version": "2.0"})
        head = ET.SubElement(root, "head")
        ET.SubElement(head, "title").text = self.title
        body = ET.SubElement(root, "body")
        for outline in self.outlines:
            _to_element(body, outline)
        ET.indent(root, space="  ")
        return (XML_HEADER + ET.tostring(root, encoding="unicode") + "\n").encode("utf-8")

    def write(self, writer) -> None:
        """Serialize the outline to a binary file-like object."""
        writer.write(self.to_bytes())

    def write_file(self, file_path: str) -> None:
        """Atomically replace ``file_path`` with the serialized outline.

        Raises:
            SerializationError: when the file cannot be written
        """
        temp_path = None
        try:
            ensure_parent_dir(file_path)
            content = self.to_bytes()
            with tempfile.NamedTemporaryFile(mode='wb', suffix='.opml', dir=path.dirname(path.abspath(file_path)),
                                             delete=False) as temp_file:
                temp_path = temp_file.name
                temp_file.write(content)
                temp_file.flush()
                fsync(temp_file.fileno())
            shutil.move(temp_path, file_path)
            temp_path = None
            logger.debug(f"Wrote outline with {len(self._urls)} feeds to {file_path}")
        except OSError as e:
            raise SerializationError(f"failed to write outline {file_path}: {e}") from e
        finally:
            if temp_path and path.exists(temp_path):
                remove(temp_path)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def has_feed(self, url: str) -> bool:
        return url in self._urls

    def all_feeds(self) -> List[OutlineFeed]:
        """All feeds, flattened, with the name of the folder that holds them."""
        feeds: List[OutlineFeed] = []
        for outline in self.outlines:
            feeds.extend(_collect_feeds(outline, ""))
        return feeds

    def find_feed(self, url: str) -> Optional[OutlineFeed]:
        if url not in self._urls:
            return None
        for feed in self.all_feeds():
            if feed.url == url:
                return feed
        return None

    def folders(self) -> List[str]:
        """Names of top-level folders holding at least one feed, in document order."""
        names: List[str] = []
        for outline in self.outlines:
            if outline.is_feed or outline.text in names:
                continue
            if any(child.is_feed for child in outline.children):
                names.append(outline.text)
        return names

    def feeds_in_folder(self, folder: str) -> List[OutlineFeed]:
        """Feeds directly inside a top-level folder; ``""`` selects root-level feeds."""
        if not folder:
            return [OutlineFeed(url=o.xml_url, title=o.display_title) for o in self.outlines if o.is_feed]
        feeds: List[OutlineFeed] = []
        for outline in self.outlines:
            if outline.is_feed or outline.text != folder:
                continue
            for child in outline.children:
                if child.is_feed:
                    feeds.append(OutlineFeed(url=child.xml_url, title=child.display_title, folder=folder))
        return feeds

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _find_folder(self, name: str) -> Optional[Outline]:
        for outline in self.outlines:
            if not outline.is_feed and outline.text == name:
                return outline
        return None

    def add_folder(self, name: str) -> Outline:
        """Return the top-level folder called ``name``, creating it if needed."""
        folder = self._find_folder(name)
        if folder is None:
            folder = Outline(text=name)
            self.outlines.append(folder)
        return folder

    def _insert(self, url: str, title: str, folder: str) -> None:
        feed = _feed_outline(url, title)
        if folder:
            self.add_folder(folder).children.append(feed)
        else:
            self.outlines.append(feed)
        self._urls.add(url)

    def add_feed(self, url: str, title: str, folder: str = "") -> None:
        """Add a feed; an empty folder places it at the root.

        Raises:
            DuplicateError: when the URL is already anywhere in the outline
        """
        if url in self._urls:
            raise DuplicateError(f"feed with URL {url} already exists")
        self._insert(url, title or url, folder)

    def _remove_from(self, outlines: List[Outline], url: str) -> bool:
        for index, outline in enumerate(outlines):
            if outline.xml_url == url:
                del outlines[index]
                return True
            if not outline.is_feed and self._remove_from(outline.children, url):
                return True
        return False

    def remove_feed(self, url: str) -> None:
        """Remove a feed wherever it sits in the tree.

        Raises:
            NotFoundError: when no feed has this URL
        """
        if url not in self._urls or not self._remove_from(self.outlines, url):
            raise NotFoundError(f"feed not found: {url}")
        self._urls.discard(url)

    def move_feed(self, url: str, new_folder: str) -> bool:
        """Move a feed to a top-level folder (``""`` for root), keeping its title.

        Returns:
            False when the feed was already in the target folder
        """
        current = self.find_feed(url)
        if current is None:
            raise NotFoundError(f"feed not found: {url}")
        if current.folder == new_folder and any(f.url == url for f in self.feeds_in_folder(new_folder)):
            return False
        self.remove_feed(url)
        self._insert(url, current.title, new_folder)
        return True


class OutlineStore:
    """Holds the process-wide Document and its file under a single lock.

    Mutations run inside ``async with store.edit() as doc:``; the file is
    rewritten when the block exits without error. On a failed write the
    in-memory document is reloaded from disk so it never diverges from the
    file.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self.lock = Lock()
        self._document: Optional[Document] = None

    def _ensure_loaded(self) -> Document:
        if self._document is None:
            self._document = Document.load(self.file_path)
        return self._document

    @asynccontextmanager
    async def read(self):
        async with self.lock:
            yield self._ensure_loaded()

    @asynccontextmanager
    async def edit(self):
        async with self.lock:
            document = self._ensure_loaded()
            try:
                yield document
                document.write_file(self.file_path)
            except BaseException:
                self._document = None
                raise
