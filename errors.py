#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Every
error digest raises on purpose derives from DigestError so the tool layer
can map it to a user-visible message.
"""

from typing import Any, Dict, Optional


class DigestError(Exception):
    """Base class for all digest errors."""


class NotFoundError(DigestError):
    """A feed, entry or outline reference does not exist."""


class DuplicateError(DigestError):
    """A feed URL is already subscribed."""


class InvalidInputError(DigestError):
    """Bad URL, bad date, negative pagination or a malformed payload."""


class InvalidDateError(InvalidInputError):
    HINT = "cannot parse date: use yesterday, week, month, today, or YYYY-MM-DD format"

    def __init__(self, value: str = "", field: Optional[str] = None):
        super().__init__(f"invalid {field} value: {self.HINT}" if field else self.HINT)
        self.value = value
        self.field = field


class AmbiguousError(DigestError):
    """An identifier prefix matched more than one row.

    Attributes:
        matches: Number of rows the prefix matched.
    """

    def __init__(self, message: str, matches: int = 0):
        super().__init__(message)
        self.matches = matches


class FetchError(DigestError):
    """Transport failure or unexpected HTTP status while fetching a feed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ParseError(DigestError):
    """Feed bytes could not be decoded as RSS or Atom."""


class NotConfiguredError(DigestError):
    """Change-log replication was requested without usable credentials."""


class CryptoError(DigestError):
    """Decryption or associated-data verification failed.

    Attributes:
        details: Optional context (change id, sequence) for diagnostics.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class TransportError(DigestError):
    """Relay I/O failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StorageError(DigestError):
    """The database rejected or failed an operation."""


class ErrorRecordFailure(StorageError):
    """A feed failure could not be recorded on the feed row.

    Attributes:
        cause: The fetch or parse error that triggered the update.
        record_error: The error raised while recording it.
    """

    def __init__(self, stage: str, cause: Exception, record_error: Exception):
        super().__init__(f"{stage} failed ({cause}) and error update failed: {record_error}")
        self.cause = cause
        self.record_error = record_error


class SerializationError(DigestError):
    """The subscription outline could not be written."""


__all__ = [
    "DigestError",
    "NotFoundError",
    "DuplicateError",
    "InvalidInputError",
    "InvalidDateError",
    "AmbiguousError",
    "FetchError",
    "ParseError",
    "NotConfiguredError",
    "CryptoError",
    "TransportError",
    "StorageError",
    "ErrorRecordFailure",
    "SerializationError",
]
