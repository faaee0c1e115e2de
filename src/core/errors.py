"""Error taxonomy shared by the core and adapters.

Adapters translate library exceptions (aiohttp, telethon, sqlite3, yt-dlp exit
codes) into these types at their boundary so the scheduler only has to reason
about kinds, never about transport details.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RelayError(Exception):
    """Base class for all subrelay errors."""


class ConfigError(RelayError):
    """Invalid or missing configuration. Fatal, startup only."""


class FetchErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class FetchError(RelayError):
    """Listing fetch failed."""

    def __init__(self, kind: FetchErrorKind, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def is_transient(self) -> bool:
        return self.kind == FetchErrorKind.TRANSIENT


class AcquireErrorKind(str, Enum):
    UNSUPPORTED_URL = "unsupported_url"
    TIMEOUT = "timeout"
    TOOL_FAILURE = "tool_failure"


class AcquireError(RelayError):
    """Media acquisition failed. Callers fall back to a text-only message."""

    def __init__(self, kind: AcquireErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SendErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    TRANSIENT = "transient"


class SendError(RelayError):
    """Delivery to the destination chat failed."""

    def __init__(
        self,
        kind: SendErrorKind,
        message: str,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after

    @classmethod
    def rate_limited(cls, retry_after: float, message: str = "rate limited") -> "SendError":
        return cls(SendErrorKind.RATE_LIMITED, message, retry_after=retry_after)

    @classmethod
    def rejected(cls, message: str) -> "SendError":
        return cls(SendErrorKind.REJECTED, message)

    @classmethod
    def transient(cls, message: str) -> "SendError":
        return cls(SendErrorKind.TRANSIENT, message)


class LedgerError(RelayError):
    """Base class for delivery ledger failures."""


class LedgerConflictError(LedgerError):
    """A record for the same (source, item, chat) already exists."""


class LedgerStorageError(LedgerError):
    """The underlying store failed. Fatal for the whole process."""
