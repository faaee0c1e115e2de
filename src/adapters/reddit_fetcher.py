"""Reddit listing adapter.

Fetches ``/r/<sub>/<listing>.json`` with aiohttp and maps posts onto core
Items. HTTP failures are classified so the scheduler can tell a struggling
Reddit (retry next tick) from a subreddit that is gone (back off).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

import aiohttp

from core.config import RedditConfig
from core.errors import FetchError, FetchErrorKind
from core.models import Item, Listing, PostKind, RankingMode

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
VIDEO_EXTENSIONS = (".gifv", ".mp4", ".webm")
VIDEO_HOSTS = {
    "v.redd.it",
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "youtu.be",
    "streamable.com",
    "gfycat.com",
    "redgifs.com",
    "www.redgifs.com",
}


def _clean_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url.replace("&amp;", "&")


def classify_post(data: dict[str, Any]) -> PostKind:
    """Derive the post kind from listing fields, falling back to the URL."""

    if data.get("is_gallery"):
        return PostKind.GALLERY
    if data.get("is_self"):
        return PostKind.SELF
    if data.get("is_video"):
        return PostKind.VIDEO

    url = _clean_url(data.get("url")) or ""
    parsed = urlparse(url)
    path = parsed.path.lower()
    host = parsed.netloc.lower()

    hint = data.get("post_hint")
    if hint == "image":
        return PostKind.VIDEO if path.endswith(VIDEO_EXTENSIONS) else PostKind.IMAGE
    if hint in ("hosted:video", "rich:video"):
        return PostKind.VIDEO
    if hint == "self":
        return PostKind.SELF

    if path.endswith(VIDEO_EXTENSIONS) or host in VIDEO_HOSTS:
        return PostKind.VIDEO
    if path.endswith(IMAGE_EXTENSIONS) or host == "i.redd.it":
        return PostKind.IMAGE
    if hint == "link":
        return PostKind.LINK
    # /r/bestof style posts carry no hint at all.
    return PostKind.UNKNOWN


def gallery_urls(data: dict[str, Any]) -> tuple[str, ...]:
    """Return gallery image URLs in display order."""

    items = (data.get("gallery_data") or {}).get("items") or []
    metadata = data.get("media_metadata") or {}
    urls: list[str] = []
    for entry in items:
        media = metadata.get(entry.get("media_id")) or {}
        if media.get("status") not in (None, "valid"):
            continue
        source = media.get("s") or {}
        url = _clean_url(source.get("u") or source.get("gif"))
        if url:
            urls.append(url)
    return tuple(urls)


def post_to_item(data: dict[str, Any]) -> Item:
    """Map one listing ``data`` object onto an Item."""

    # Crossposts carry the actual media on the parent.
    parents = data.get("crosspost_parent_list") or []
    media = parents[0] if parents else data

    kind = classify_post(media)
    created = data.get("created_utc") or data.get("created") or 0
    return Item(
        id=str(data["id"]),
        source=str(data.get("subreddit", "")).lower(),
        title=str(data.get("title", "")),
        author=str(data.get("author", "[deleted]")),
        score=int(data.get("score", data.get("ups", 0)) or 0),
        permalink=str(data.get("permalink", "")),
        url=_clean_url(media.get("url")),
        created_at=datetime.fromtimestamp(float(created), tz=timezone.utc),
        kind=kind,
        gallery_urls=gallery_urls(media) if kind == PostKind.GALLERY else (),
    )


def _classify_status(status: int) -> FetchErrorKind:
    if status == 429 or status >= 500:
        return FetchErrorKind.TRANSIENT
    return FetchErrorKind.PERMANENT


class RedditFetcher:
    """FetcherPort implementation backed by the public JSON listings."""

    def __init__(self, config: RedditConfig) -> None:
        self._config = config
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self._config.user_agent},
            )
        return self._session

    async def fetch_ranked(self, source: str, ranking: RankingMode, limit: int) -> list[Item]:
        """Return the listing in Reddit's own order."""

        params = {"limit": str(limit), "raw_json": "1"}
        if ranking.listing == Listing.TOP and ranking.window is not None:
            params["t"] = ranking.window.value
        url = f"{self._config.base_url}/r/{source}/{ranking.listing.value}.json"

        LOGGER.info("Getting %s posts for r/%s limit=%s", ranking, source, limit)
        payload = await self._get_json(url, params, what=f"r/{source}")
        children = (payload.get("data") or {}).get("children") or []
        items: list[Item] = []
        for child in children:
            if child.get("kind") != "t3":
                continue
            try:
                items.append(post_to_item(child["data"]))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed post in r/%s: %s", source, exc)
        return items

    async def fetch_item(self, item_id: str) -> Item:
        """Fetch a single post by id."""

        post_id = item_id[3:] if item_id.startswith("t3_") else item_id
        url = f"{self._config.base_url}/api/info.json"
        payload = await self._get_json(url, {"id": f"t3_{post_id}", "raw_json": "1"}, what=post_id)
        children = (payload.get("data") or {}).get("children") or []
        if not children:
            raise FetchError(FetchErrorKind.PERMANENT, f"post {post_id} not found")
        return post_to_item(children[0]["data"])

    async def _get_json(self, url: str, params: dict[str, str], what: str) -> dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.get(url, params=params, allow_redirects=False) as resp:
                status = resp.status
                if 300 <= status < 400:
                    # Reddit redirects unknown subreddits to search.
                    raise FetchError(FetchErrorKind.PERMANENT, f"{what}: redirected, no such subreddit", status)
                if status != 200:
                    body = (await resp.text())[:200]
                    raise FetchError(_classify_status(status), f"{what}: HTTP {status}: {body}", status)
                data = await resp.json(content_type=None)
        except FetchError:
            raise
        except asyncio.TimeoutError as exc:
            raise FetchError(FetchErrorKind.TRANSIENT, f"{what}: request timed out") from exc
        except aiohttp.ClientError as exc:
            raise FetchError(FetchErrorKind.TRANSIENT, f"{what}: connection error: {exc}") from exc
        except ValueError as exc:
            raise FetchError(FetchErrorKind.TRANSIENT, f"{what}: invalid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise FetchError(FetchErrorKind.TRANSIENT, f"{what}: unexpected payload")
        return data

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
