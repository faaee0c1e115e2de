"""Shared message formatting helpers.

Keeping formatting here prevents drift between message kinds and keeps the
relayed posts consistent regardless of how they are delivered.
"""

from __future__ import annotations

import html
from typing import Optional
from urllib.parse import urlparse, urlunparse

from core.models import Item

REDDIT_BASE_URL = "https://www.reddit.com"
OLD_REDDIT_HOST = "old.reddit.com"

# Telegram caps media captions at 1024 characters.
CAPTION_LIMIT = 1024


def format_url_from_path(path: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or REDDIT_BASE_URL).rstrip('/')}{path}"


def to_old_reddit_url(url: str) -> str:
    parts = urlparse(url)
    return urlunparse(parts._replace(netloc=OLD_REDDIT_HOST))


def format_html_anchor(href: str, text: str) -> str:
    return f'<a href="{html.escape(href, quote=True)}">{html.escape(text)}</a>'


def _format_meta(item: Item, links_base_url: Optional[str]) -> str:
    subreddit = format_html_anchor(
        format_url_from_path(f"/r/{item.source}", links_base_url),
        f"/r/{item.source}",
    )
    comments_url = format_url_from_path(item.permalink, links_base_url)
    comments = format_html_anchor(comments_url, "comments")

    # A custom links base url has no old-reddit counterpart.
    if links_base_url:
        return f"{subreddit} [{comments}]"
    old = format_html_anchor(to_old_reddit_url(comments_url), "old")
    return f"{subreddit} [{comments}, {old}]"


def _clip_title(title: str, meta: str, limit: int) -> str:
    budget = limit - len(meta) - 1
    escaped = html.escape(title)
    if len(escaped) <= budget:
        return escaped
    # Clip on the raw title so no entity is cut in half.
    clipped = title
    while clipped and len(html.escape(clipped)) + 1 > budget:
        clipped = clipped[:-1]
    return html.escape(clipped) + "…"


def format_caption_html(item: Item, links_base_url: Optional[str] = None) -> str:
    """Caption used for media, self posts and the text-only fallback."""

    meta = _format_meta(item, links_base_url)
    return f"{_clip_title(item.title, meta, CAPTION_LIMIT)}\n{meta}"


def format_link_message_html(item: Item, links_base_url: Optional[str] = None) -> str:
    """Message for link posts: the title links to the external URL."""

    if not item.url:
        return format_caption_html(item, links_base_url)
    meta = _format_meta(item, links_base_url)
    title = format_html_anchor(item.url, item.title)
    return f"{title}\n{meta}"
