#!/usr/bin/env python3
"""
Utility classes and functions shared across digest.

This module contains the retry helper used by the fetcher and the relay
client, URL validation, the date-string grammar accepted by the tool layer,
timestamp conversions, and the HTML sanitizer that renders entry content
to Markdown.
"""

from asyncio import sleep
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address
from typing import Optional
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger
from errors import InvalidDateError, InvalidInputError

# Module-specific logger
logger = get_logger("utils")

SECONDS_PER_DAY = 86400


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            Delay in seconds (with exponential backoff)
        """
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def validate_feed_url(url: str) -> str:
    """Check that a feed URL is absolute http(s) with a host.

    Args:
        url: Candidate URL as supplied by the caller

    Returns:
        The URL, stripped of surrounding whitespace

    Raises:
        InvalidInputError: when the scheme is not http/https or the host is empty
    """
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidInputError("url is required")
    url = url.strip()
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise InvalidInputError(f"invalid URL: {e}") from e
    if parsed.scheme not in ("http", "https"):
        raise InvalidInputError(f"invalid URL scheme: must be http or https, got '{parsed.scheme}'")
    if not parsed.hostname:
        raise InvalidInputError("invalid URL: missing host")
    return url


def is_public_address(address: str) -> bool:
    """Return False for private and link-local addresses.

    Loopback is considered acceptable so a local feed server can be used.
    """
    try:
        ip = ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if ip.is_loopback:
        return True
    return not (ip.is_private or ip.is_link_local or ip.is_multicast or ip.is_unspecified or ip.is_reserved)


# ----------------------------------------------------------------------
# Timestamps
# ----------------------------------------------------------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    """Convert an aware datetime to Unix seconds (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as an RFC 3339 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def start_of_today(now: Optional[datetime] = None) -> datetime:
    """Midnight of the current local day, as an aware datetime."""
    local_now = (now or datetime.now(timezone.utc)).astimezone()
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_date_string(value: str, now: Optional[datetime] = None) -> datetime:
    """Parse the relative and absolute date forms accepted by the tools.

    Accepted values:
        today      start of the local day
        yesterday  start of the local day minus 24 hours
        week       now minus 7 days
        month      now minus 30 days
        YYYY-MM-DD midnight UTC of that date
        RFC 3339   e.g. 2024-05-01T10:00:00Z

    Raises:
        InvalidDateError: for anything else
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidDateError(str(value))
    raw = value.strip()
    current = now or datetime.now(timezone.utc)
    keyword = raw.lower()
    if keyword == "today":
        return start_of_today(current)
    if keyword == "yesterday":
        return start_of_today(current) - timedelta(hours=24)
    if keyword == "week":
        return current - timedelta(days=7)
    if keyword == "month":
        return current - timedelta(days=30)

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", raw):
        try:
            return datetime.strptime(raw, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError as e:
            raise InvalidDateError(raw) from e

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})", raw):
        normalized = raw[:-1] + "+00:00" if raw[-1] in "Zz" else raw
        try:
            return datetime.fromisoformat(normalized.replace("t", "T"))
        except ValueError as e:
            raise InvalidDateError(raw) from e

    raise InvalidDateError(raw)


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')

        for tag in soup([
            "script", "style", "iframe", "form", "object", "embed", "noscript",
            "frame", "frameset", "applet", "meta", "base", "link"
        ]):
            tag.decompose()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if attr.lower().startswith('on'):
                    del tag[attr]
                if attr.lower() in ['href', 'src'] and tag.has_attr(attr):
                    val = str(tag[attr])
                    if val.lower().startswith('javascript:'):
                        del tag[attr]

        for img in soup.find_all('img'):
            src = img.get('src', '')
            if re.search(r'(pixel|tracker|counter|spacer|blank|trans)', src, re.I) or \
               (re.search(r'\.(gif|png)$', src, re.I) and (img.get('height') in ('0', '1'))):
                img.decompose()

        def _rewrite_url(value: str, attr: str) -> Optional[str]:
            if attr == 'href' and value.startswith('mailto:'):
                return value
            if value.startswith(('http://', 'https://')):
                return value
            if base_url:
                try:
                    resolved = urljoin(base_url, value)
                except ValueError:
                    return None
                if resolved.startswith(('http://', 'https://')):
                    return resolved
            return None

        for tag in soup.find_all(['a', 'img']):
            for attr in ['href', 'src']:
                if not tag.has_attr(attr):
                    continue
                val = str(tag[attr])
                if not val:
                    continue
                rewritten = _rewrite_url(val, attr)
                if rewritten:
                    tag[attr] = rewritten
                elif attr == 'href':
                    tag[attr] = '#'
                else:
                    del tag[attr]

        # wrap_width=0 keeps long URLs on one line
        return md(str(soup), heading_style="ATX", wrap_width=0).strip()
    except Exception as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return html_content
