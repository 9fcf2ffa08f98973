#!/usr/bin/env python3
"""
Conditional HTTP fetcher for RSS/Atom feeds.

This module performs exactly one conditional GET per call: it advertises a
stable User-Agent, sends If-None-Match / If-Modified-Since when validators
are known, follows a bounded number of redirects, caps the response size and
refuses hosts that resolve to private or link-local addresses. It keeps no
state between calls beyond the pooled HTTP session.
"""

from asyncio import TimeoutError, get_running_loop
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime, format_datetime
from socket import gaierror
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError
from telemetry import trace_span
from utils import RetryHelper, is_public_address

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304
REDIRECT_STATUSES = (301, 302, 303, 307, 308)

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    """Outcome of a conditional GET.

    ``body`` is empty when ``not_modified`` is set; ``etag`` and
    ``last_modified`` are the validators the server returned (empty strings
    when absent).
    """

    not_modified: bool
    body: bytes = b""
    etag: str = ""
    last_modified: str = ""
    url: str = ""


class FeedFetcher:
    """Performs conditional GETs with a shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self.session = session
        self._owns_session = session is None
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)

    async def _get_session(self) -> ClientSession:
        if self.session is None or self.session.closed:
            self.session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "FeedFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _normalize_http_date(self, date_value: Optional[str]) -> Optional[str]:
        """Normalize HTTP date strings to RFC 7231 format (GMT)."""
        if not date_value:
            return None
        try:
            dt = parsedate_to_datetime(date_value)
            if not dt:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            dt = dt.astimezone(timezone.utc)
            return format_datetime(dt, usegmt=True)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
            return None

    def _prepare_request_headers(self, etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
        """Prepare HTTP headers for conditional requests."""
        headers = {
            'User-Agent': config.USER_AGENT,
            'Accept': 'application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5',
        }

        if etag:
            # Servers should quote ETags; tolerate stored values that are not
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag

        if last_modified:
            normalized_last_modified = self._normalize_http_date(last_modified)
            if normalized_last_modified:
                headers['If-Modified-Since'] = normalized_last_modified
            else:
                logger.warning(f"Invalid Last-Modified value, not sending If-Modified-Since (stored value: {last_modified})")

        return headers

    async def _check_host(self, url: str) -> None:
        """Refuse URLs whose host resolves to a private or link-local address."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise FetchError(f"invalid feed URL: {url}")
        if config.ALLOW_PRIVATE_ADDRESSES:
            return
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        try:
            infos = await get_running_loop().getaddrinfo(parsed.hostname, port)
        except (gaierror, OSError) as e:
            raise FetchError(f"cannot resolve host {parsed.hostname}: {e}") from e
        addresses = {info[4][0] for info in infos}
        blocked: List[str] = [addr for addr in addresses if not is_public_address(addr)]
        if blocked:
            raise FetchError(f"refusing to fetch from private address {blocked[0]} ({parsed.hostname})")

    async def _read_limited(self, response) -> bytes:
        limit = config.MAX_RESPONSE_SIZE
        declared = response.content_length
        if declared is not None and declared > limit:
            raise FetchError(f"response too large: {declared} bytes (limit: {limit} bytes)")
        chunks: List[bytes] = []
        size = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            size += len(chunk)
            if size > limit:
                raise FetchError(f"response too large: exceeds {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def _request(self, url: str, headers: Dict[str, str]) -> FetchResult:
        session = await self._get_session()
        current = url
        for _ in range(config.MAX_REDIRECTS + 1):
            await self._check_host(current)
            async with session.get(current, headers=headers, allow_redirects=False) as response:
                if response.status in REDIRECT_STATUSES and response.headers.get('Location'):
                    current = urljoin(current, response.headers['Location'])
                    logger.debug(f"Following redirect to {current}")
                    continue

                if response.status == HTTP_NOT_MODIFIED:
                    return FetchResult(
                        not_modified=True,
                        etag=response.headers.get('ETag', ''),
                        last_modified=response.headers.get('Last-Modified', ''),
                        url=current,
                    )

                if response.status != HTTP_OK:
                    raise FetchError(f"unexpected status code: {response.status}", status=response.status)

                body = await self._read_limited(response)
                raw_last_modified = response.headers.get('Last-Modified', '')
                return FetchResult(
                    not_modified=False,
                    body=body,
                    etag=response.headers.get('ETag', ''),
                    last_modified=self._normalize_http_date(raw_last_modified) or raw_last_modified,
                    url=current,
                )
        raise FetchError(f"too many redirects (limit: {config.MAX_REDIRECTS})")

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag=None, last_modified=None: {
            "http.url": url,
            "feed.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchResult:
        """Fetch a feed with a conditional GET.

        Args:
            url: Absolute feed URL
            etag: Validator from the previous successful fetch, if any
            last_modified: Validator from the previous successful fetch, if any

        Returns:
            FetchResult with the body and validators, or ``not_modified`` set on 304

        Raises:
            FetchError: on transport failure, a refused host, an oversized body,
                or any status other than 200 and 304
        """
        headers = self._prepare_request_headers(etag, last_modified)
        for attempt in range(config.MAX_RETRIES + 1):
            try:
                result = await self._request(url, headers)
                if result.not_modified:
                    logger.info(f"Feed {url} not modified since last fetch")
                else:
                    logger.info(f"Fetched {len(result.body)} bytes from {url}")
                return result
            except TimeoutError as e:
                if attempt < config.MAX_RETRIES:
                    logger.warning("Timeout fetching %s (attempt %d/%d)", url, attempt + 1, config.MAX_RETRIES + 1)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"timed out after {config.HTTP_TIMEOUT}s") from e
            except ClientError as e:
                detail = self._format_client_error(e)
                if attempt < config.MAX_RETRIES:
                    logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, config.MAX_RETRIES, url, detail)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"network error: {detail}") from e
        raise FetchError(f"failed to fetch {url}")
