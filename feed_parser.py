#!/usr/bin/env python3
"""
RSS/Atom parsing into digest's normalized feed shape.

feedparser does the heavy lifting; this module picks the fields digest
stores and applies the normalization rules: guid falls back to the link,
author is reduced to a display name, the publication date falls back to the
update date, full content is preferred over the summary, and content is
trimmed. Entries that carry neither a guid nor a link are dropped.
"""

from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Optional
from xml.sax import SAXParseException

import feedparser

from config import get_logger
from errors import ParseError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("feed_parser")

FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': True,
}


@dataclass
class ParsedEntry:
    guid: str
    title: Optional[str] = None
    link: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    content: Optional[str] = None
    categories: List[str] = field(default_factory=list)


@dataclass
class ParsedFeed:
    title: str = ""
    entries: List[ParsedEntry] = field(default_factory=list)
    link: Optional[str] = None


def _get_entry_value(entry, name: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        value = getter(name)
        if value is not None:
            return value
    return getattr(entry, name, None)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _struct_to_datetime(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def _string_to_datetime(value: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def extract_published(entry) -> Optional[datetime]:
    """Publication date, falling back to the update date."""
    for name in ('published', 'updated'):
        parsed = _get_entry_value(entry, f"{name}_parsed")
        if parsed:
            dt = _struct_to_datetime(parsed)
            if dt:
                return dt
        raw = _get_entry_value(entry, name)
        if isinstance(raw, str) and raw.strip():
            dt = _string_to_datetime(raw)
            if dt:
                return dt
    return None


def extract_author(entry) -> Optional[str]:
    """Author display name only (no e-mail address)."""
    detail = _get_entry_value(entry, 'author_detail')
    if detail:
        name = _clean(detail.get('name'))
        if name:
            return name
    return _clean(_get_entry_value(entry, 'author'))


def extract_content(entry) -> Optional[str]:
    """Full content when present, otherwise the summary/description."""
    contents = _get_entry_value(entry, 'content') or []
    for item in contents:
        value = item.get('value') if hasattr(item, 'get') else None
        if value and value.strip():
            return value.strip()
    summary = _get_entry_value(entry, 'summary') or _get_entry_value(entry, 'description')
    return _clean(summary)


def extract_categories(entry) -> List[str]:
    categories = []
    for tag in _get_entry_value(entry, 'tags') or []:
        term = _clean(tag.get('term') if hasattr(tag, 'get') else tag)
        if term and term not in categories:
            categories.append(term)
    return categories


def normalize_entry(entry) -> Optional[ParsedEntry]:
    """Build a ParsedEntry, or None when the item has neither guid nor link."""
    link = _clean(_get_entry_value(entry, 'link'))
    guid = _clean(_get_entry_value(entry, 'id')) or link
    if not guid:
        return None
    return ParsedEntry(
        guid=guid,
        title=_clean(_get_entry_value(entry, 'title')),
        link=link,
        author=extract_author(entry),
        published_at=extract_published(entry),
        content=extract_content(entry),
        categories=extract_categories(entry),
    )


@trace_span(
    "parse_feed",
    tracer_name="parser",
    attr_from_args=lambda data: {"feed.bytes": len(data) if data else 0},
)
def parse_feed(data: bytes) -> ParsedFeed:
    """Decode RSS/Atom bytes into a ParsedFeed.

    Raises:
        ParseError: when the payload is empty, not well-formed XML or not a
            recognizable feed
    """
    if not data or not data.strip():
        raise ParseError("failed to parse feed: empty document")

    parsed = feedparser.parse(data, **FEEDPARSER_OPTIONS)
    if not parsed.get('version'):
        reason = parsed.get('bozo_exception') or "unrecognized feed format"
        raise ParseError(f"failed to parse feed: {reason}")
    if isinstance(parsed.get('bozo_exception'), SAXParseException):
        raise ParseError(f"failed to parse feed: malformed XML: {parsed.bozo_exception}")
    if parsed.get('bozo'):
        logger.warning(f"Feed parsed with warnings ({parsed.version}): {parsed.get('bozo_exception')}")

    feed_info = parsed.get('feed', {})
    result = ParsedFeed(
        title=_clean(feed_info.get('title')) or "",
        link=_clean(feed_info.get('link')),
    )
    rejected = 0
    for raw_entry in parsed.get('entries', []):
        entry = normalize_entry(raw_entry)
        if entry is None:
            rejected += 1
            continue
        result.entries.append(entry)
    if rejected:
        logger.warning(f"Dropped {rejected} entries without guid or link")
    logger.debug(f"Parsed {parsed.version} feed '{result.title}' with {len(result.entries)} entries")
    return result
