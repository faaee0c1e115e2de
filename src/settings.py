"""Configuration loading for subrelay.

All user-editable settings (subscriptions, cadence, media, logging) live in a
single JSON file; secrets (API_ID, API_HASH, BOT_TOKEN) come from the
environment or a .env file. The result is an immutable AppConfig that the app
passes explicitly to every component.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

from dotenv import load_dotenv

from core.config import (
    AppConfig,
    DispatchConfig,
    MediaConfig,
    NotificationConfig,
    RedditConfig,
    SchedulerConfig,
)
from core.errors import ConfigError
from core.models import PostKind, RankingMode, Subscription, normalize_source

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_ENV = "SUBRELAY_CONFIG"
DEFAULT_CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")
DEFAULT_DB_PATH = os.path.join("data", "subrelay.db")

DEFAULT_INTERVAL_SECONDS = 900
DEFAULT_LIMIT = 1
DEFAULT_RANKING = "top:day"


def resolve_config_path(path: Optional[str] = None) -> str:
    """Pick the config file: explicit path, then $SUBRELAY_CONFIG, then config.json."""

    load_dotenv()
    return path or os.getenv(CONFIG_ENV) or DEFAULT_CONFIG_PATH


def _load_json_config(path: str) -> dict:
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a JSON object")
    return data


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be an object")
    return value


def _number(raw: dict, key: str, default: Any, *, cast=float, minimum: Optional[float] = None, where: str = "") -> Any:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{where}{key} must be a number")
    try:
        value = cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}{key} must be a number, got {value!r}") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"{where}{key} must be >= {minimum}, got {value!r}")
    return value


def _flag(raw: dict, key: str, default: bool, where: str = "") -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{where}{key} must be true or false")
    return value


def _kind(value: Any, where: str) -> Optional[PostKind]:
    if value in (None, ""):
        return None
    try:
        return PostKind(str(value).lower())
    except ValueError as exc:
        choices = ", ".join(kind.value for kind in PostKind)
        raise ConfigError(f"{where}kind must be one of {choices}, got {value!r}") from exc


def _build_subscriptions(raw: dict) -> tuple[Subscription, ...]:
    defaults = _section(raw, "defaults")
    entries = raw.get("subscriptions")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("'subscriptions' must be a non-empty list")

    subscriptions: list[Subscription] = []
    seen: set[tuple[str, int]] = set()
    for index, entry in enumerate(entries):
        where = f"subscriptions[{index}]."
        if not isinstance(entry, dict):
            raise ConfigError(f"subscriptions[{index}] must be an object")
        if not entry.get("enabled", True):
            continue

        subreddit = normalize_source(str(entry.get("subreddit") or ""))
        if not subreddit:
            raise ConfigError(f"{where}subreddit is required")
        if "chat_id" not in entry:
            raise ConfigError(f"{where}chat_id is required")
        chat_id = _number(entry, "chat_id", None, cast=int, where=where)

        # Per-subscription values fall back to the defaults block.
        merged = {**defaults, **entry}
        subscription = Subscription(
            subreddit=subreddit,
            chat_id=chat_id,
            interval_seconds=_number(merged, "interval_seconds", DEFAULT_INTERVAL_SECONDS, minimum=1, where=where),
            ranking=RankingMode.parse(str(merged.get("ranking", DEFAULT_RANKING))),
            min_score=_number(merged, "min_score", 0, cast=int, where=where),
            media_enabled=_flag(merged, "media", True, where=where),
            limit=_number(merged, "limit", DEFAULT_LIMIT, cast=int, minimum=1, where=where),
            kind_filter=_kind(merged.get("kind"), where),
        )
        if subscription.limit > 100:
            raise ConfigError(f"{where}limit must be <= 100 (Reddit listing cap)")

        key = (subscription.source, subscription.chat_id)
        if key in seen:
            raise ConfigError(f"Duplicate subscription r/{key[0]} -> {key[1]}")
        seen.add(key)
        subscriptions.append(subscription)

    if not subscriptions:
        raise ConfigError("No enabled subscriptions")
    return tuple(subscriptions)


def build_config(raw: dict) -> AppConfig:
    """Validate a parsed JSON document into an AppConfig."""

    reddit = _section(raw, "reddit")
    media = _section(raw, "media")
    dispatch = _section(raw, "dispatch")
    scheduler = _section(raw, "scheduler")
    shutdown = _section(raw, "shutdown")
    logging_cfg = _section(raw, "logging")

    links_base_url = raw.get("links_base_url")
    if links_base_url is not None and not str(links_base_url).startswith(("http://", "https://")):
        raise ConfigError("links_base_url must be an http(s) URL")

    return AppConfig(
        db_path=str(raw.get("db_path") or DEFAULT_DB_PATH),
        subscriptions=_build_subscriptions(raw),
        reddit=RedditConfig(
            user_agent=str(reddit.get("user_agent", RedditConfig.user_agent)),
            timeout_seconds=_number(reddit, "timeout_seconds", RedditConfig.timeout_seconds, minimum=1, where="reddit."),
            base_url=str(reddit.get("base_url", RedditConfig.base_url)).rstrip("/"),
        ),
        media=MediaConfig(
            max_concurrent=_number(media, "max_concurrent", MediaConfig.max_concurrent, cast=int, minimum=1, where="media."),
            timeout_seconds=_number(media, "timeout_seconds", MediaConfig.timeout_seconds, minimum=1, where="media."),
            max_upload_bytes=_number(media, "max_upload_bytes", MediaConfig.max_upload_bytes, cast=int, minimum=1, where="media."),
            ytdlp_path=str(media.get("ytdlp_path", MediaConfig.ytdlp_path)),
        ),
        dispatch=DispatchConfig(
            global_rate_per_second=_number(
                dispatch, "global_rate_per_second", DispatchConfig.global_rate_per_second, minimum=0, where="dispatch."
            ),
            burst=_number(dispatch, "burst", DispatchConfig.burst, cast=int, minimum=1, where="dispatch."),
            per_chat_interval_seconds=_number(
                dispatch, "per_chat_interval_seconds", DispatchConfig.per_chat_interval_seconds, minimum=0, where="dispatch."
            ),
        ),
        scheduler=SchedulerConfig(
            max_backoff_seconds=_number(
                scheduler, "max_backoff_seconds", SchedulerConfig.max_backoff_seconds, minimum=1, where="scheduler."
            ),
            startup_stagger_seconds=_number(
                scheduler, "startup_stagger_seconds", SchedulerConfig.startup_stagger_seconds, minimum=0, where="scheduler."
            ),
            skip_initial_send=_flag(raw, "skip_initial_send", True),
        ),
        notifications=NotificationConfig(links_base_url=links_base_url),
        shutdown_grace_seconds=_number(shutdown, "grace_seconds", 30.0, minimum=0, where="shutdown."),
        logging=logging_cfg,
    )


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate the config file. Raises ConfigError."""

    return build_config(_load_json_config(resolve_config_path(path)))
