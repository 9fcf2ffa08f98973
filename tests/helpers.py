"""Shared assertions for tests that inspect outlines and relay requests."""

from hmac import compare_digest

from vault_crypto import sign_body


def verify_body(keys, body, signature):
    return compare_digest(sign_body(keys, body), signature or "")


async def outline_feeds(outline):
    """URL-keyed view of an OutlineStore's current membership."""
    async with outline.read() as document:
        return {feed.url: feed for feed in document.all_feeds()}
