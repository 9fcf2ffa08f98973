#!/usr/bin/env python3
"""
Minimal client for the change-log relay.

Only two endpoints are used: ``POST /v1/sync/push`` and
``GET /v1/sync/pull``. Requests carry a bearer token, the device id and an
HMAC-SHA256 signature of the body (or, for GET, of the request target)
made with the key derived from the seed phrase.
"""

from asyncio import TimeoutError
from dataclasses import dataclass, field
from json import dumps
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import NotConfiguredError, TransportError
from telemetry import trace_span
from utils import RetryHelper
from vault_crypto import VaultKeys, sign_body

# Module-specific logger
logger = get_logger("relay")

PUSH_PATH = "/v1/sync/push"
PULL_PATH = "/v1/sync/pull"
AUTH_FAILURE_STATUSES = (401, 403)


@dataclass
class PullPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False


class RelayClient:
    """Talks to the relay on behalf of one device."""

    def __init__(self, server: str, user_id: str, token: str, device_id: str, keys: VaultKeys,
                 session: ClientSession | None = None) -> None:
        if not server or not token:
            raise NotConfiguredError("sync is not configured: server and token are required")
        self.server = server.rstrip("/")
        self.user_id = user_id
        self.token = token
        self.device_id = device_id
        self.keys = keys
        self.session = session
        self._owns_session = session is None
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)

    async def _get_session(self) -> ClientSession:
        if self.session is None or self.session.closed:
            self.session = ClientSession(timeout=ClientTimeout(total=config.VAULT_HTTP_TIMEOUT))
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        """Close the session"""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _headers(self, signed: bytes, headers: dict | None = None) -> dict:
        """Default headers for relay requests"""
        return {
            'Authorization': f'Bearer {self.token}',
            'X-Device-ID': self.device_id,
            'X-Digest-Signature': sign_body(self.keys, signed),
            'User-Agent': config.USER_AGENT,
            **(headers or {}),
        }

    async def _send(self, method: str, target: str, body: bytes | None = None) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.server}{target}"
        if body is None:
            headers = self._headers(f"{method} {target}".encode("utf-8"))
        else:
            headers = self._headers(body, {'Content-Type': 'application/json'})

        for attempt in range(config.MAX_RETRIES + 1):
            try:
                async with session.request(method, url, data=body, headers=headers) as response:
                    if response.status in AUTH_FAILURE_STATUSES:
                        raise NotConfiguredError(f"relay rejected credentials (HTTP {response.status})")
                    if response.status >= 500 and attempt < config.MAX_RETRIES:
                        logger.warning("Relay returned %d for %s (attempt %d/%d)",
                                       response.status, target, attempt + 1, config.MAX_RETRIES + 1)
                        await self.retry_helper.sleep_for_attempt(attempt)
                        continue
                    if response.status < 200 or response.status >= 300:
                        text = await response.text()
                        raise TransportError(f"relay error {response.status}: {text[:200]}", status=response.status)
                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        raise TransportError(f"relay returned invalid JSON: {e}", status=response.status) from e
            except (ClientError, TimeoutError) as e:
                if attempt < config.MAX_RETRIES:
                    logger.warning("Relay request %s %s failed (attempt %d/%d): %s",
                                   method, target, attempt + 1, config.MAX_RETRIES + 1, e)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise TransportError(f"relay unreachable: {e.__class__.__name__} {e}") from e
        raise TransportError(f"relay request {method} {target} failed")

    @trace_span(
        "relay.push",
        tracer_name="relay",
        attr_from_args=lambda self, changes: {"relay.changes": len(changes)},
    )
    async def push(self, changes: List[Dict[str, Any]]) -> List[str]:
        """Send queued records; returns the change ids the relay acknowledged."""
        if not changes:
            return []
        body = dumps({
            "user_id": self.user_id,
            "device_id": self.device_id,
            "changes": changes,
        }, separators=(",", ":")).encode("utf-8")
        data = await self._send("POST", PUSH_PATH, body)
        acked = data.get("acked") if isinstance(data, dict) else None
        if not isinstance(acked, list):
            raise TransportError("relay push response missing 'acked'")
        logger.debug(f"Relay acknowledged {len(acked)} of {len(changes)} changes")
        return [str(change_id) for change_id in acked]

    @trace_span(
        "relay.pull",
        tracer_name="relay",
        attr_from_args=lambda self, since, limit=None: {"relay.since": str(since)},
    )
    async def pull(self, since: str, limit: Optional[int] = None) -> PullPage:
        """Fetch records with a sequence strictly greater than ``since``."""
        query = urlencode({"since": since or "0", "limit": limit or config.VAULT_PULL_LIMIT})
        data = await self._send("GET", f"{PULL_PATH}?{query}")
        if not isinstance(data, dict) or not isinstance(data.get("items", []), list):
            raise TransportError("relay pull response is malformed")
        items = data.get("items") or []
        return PullPage(items=items, has_more=bool(data.get("has_more")))
