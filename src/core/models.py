"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to Reddit or Telegram specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from core.errors import ConfigError


class Listing(str, Enum):
    TOP = "top"
    HOT = "hot"
    NEW = "new"
    RISING = "rising"


class TimeWindow(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


class PostKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    GALLERY = "gallery"
    LINK = "link"
    SELF = "self"
    UNKNOWN = "unknown"


class Outcome(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RankingMode:
    """Listing plus time window. Only ``top`` uses the window."""

    listing: Listing = Listing.TOP
    window: Optional[TimeWindow] = TimeWindow.DAY

    @classmethod
    def parse(cls, raw: str) -> "RankingMode":
        """Parse ``"top"``, ``"top:week"``, ``"hot"`` and friends."""

        listing_raw, _, window_raw = raw.strip().lower().partition(":")
        try:
            listing = Listing(listing_raw)
        except ValueError as exc:
            raise ConfigError(f"Unknown ranking listing: {raw!r}") from exc

        if listing != Listing.TOP:
            if window_raw:
                raise ConfigError(f"Only 'top' accepts a time window: {raw!r}")
            return cls(listing=listing, window=None)

        try:
            window = TimeWindow(window_raw) if window_raw else TimeWindow.DAY
        except ValueError as exc:
            raise ConfigError(f"Unknown time window: {raw!r}") from exc
        return cls(listing=listing, window=window)

    def __str__(self) -> str:
        if self.window is None:
            return self.listing.value
        return f"{self.listing.value}:{self.window.value}"


def normalize_source(subreddit: str) -> str:
    """Return the canonical source name: lowercase, no ``r/`` prefix."""

    name = subreddit.strip()
    for prefix in ("/r/", "r/"):
        if name.lower().startswith(prefix):
            name = name[len(prefix):]
    return name.strip("/").lower()


@dataclass(frozen=True)
class Subscription:
    """One configured subreddit -> chat relay. Owns exactly one periodic cycle."""

    subreddit: str
    chat_id: int
    interval_seconds: float
    ranking: RankingMode = field(default_factory=RankingMode)
    min_score: int = 0
    media_enabled: bool = True
    limit: int = 1
    kind_filter: Optional[PostKind] = None

    @property
    def source(self) -> str:
        return normalize_source(self.subreddit)

    @property
    def label(self) -> str:
        return f"r/{self.source} -> {self.chat_id}"


@dataclass(frozen=True)
class Item:
    """A candidate post, produced fresh by every fetch."""

    id: str
    source: str
    title: str
    author: str
    score: int
    permalink: str
    url: Optional[str]
    created_at: datetime
    kind: PostKind = PostKind.UNKNOWN
    gallery_urls: tuple[str, ...] = ()

    @property
    def needs_media(self) -> bool:
        return self.kind == PostKind.VIDEO and bool(self.url)


@dataclass(frozen=True)
class DeliveryRecord:
    """Persisted ledger row."""

    source: str
    item_id: str
    chat_id: int
    title: str
    delivered_at: datetime
    outcome: Outcome


@dataclass
class MediaAsset:
    """Downloaded media scoped to a single dispatch attempt."""

    path: Path
    size_bytes: int
    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    title: str = ""
