"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from core.models import Subscription


@dataclass(frozen=True)
class RedditConfig:
    """Listing client settings."""

    user_agent: str = "subrelay/0.1"
    timeout_seconds: float = 20.0
    base_url: str = "https://www.reddit.com"


@dataclass(frozen=True)
class MediaConfig:
    """yt-dlp acquisition settings."""

    max_concurrent: int = 2
    timeout_seconds: float = 300.0
    max_upload_bytes: int = 50 * 1024 * 1024
    ytdlp_path: str = "yt-dlp"


@dataclass(frozen=True)
class DispatchConfig:
    """Outbound rate governance for the destination platform."""

    global_rate_per_second: float = 25.0
    burst: int = 25
    per_chat_interval_seconds: float = 1.0


@dataclass(frozen=True)
class SchedulerConfig:
    """Cadence policy shared by all subscription cycles."""

    max_backoff_seconds: float = 6 * 60 * 60
    startup_stagger_seconds: float = 0.0
    skip_initial_send: bool = True


@dataclass(frozen=True)
class NotificationConfig:
    """Message formatting settings consumed by the sender adapter."""

    links_base_url: Optional[str] = None


@dataclass(frozen=True)
class AppConfig:
    """Everything loaded at startup. Immutable for the process lifetime."""

    db_path: str
    subscriptions: tuple[Subscription, ...]
    reddit: RedditConfig = field(default_factory=RedditConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    shutdown_grace_seconds: float = 30.0
    logging: dict = field(default_factory=dict)
