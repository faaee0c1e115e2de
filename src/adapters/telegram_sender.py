"""Telegram delivery adapter.

Sends items through a telethon client logged in as a bot and translates
telethon errors into the core SendError kinds. One call is exactly one
delivery attempt; retries and pacing belong to the core dispatcher.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from telethon import TelegramClient, errors
from telethon.tl.types import DocumentAttributeVideo

from adapters.message_formatting import format_caption_html, format_link_message_html
from core.errors import SendError
from core.models import Item, MediaAsset, PostKind

LOGGER = logging.getLogger(__name__)

ALBUM_LIMIT = 10

# The destination itself is unusable: no point sending anything else to it.
_REJECTED = (
    errors.ForbiddenError,
    errors.PeerIdInvalidError,
    errors.ChannelPrivateError,
    errors.ChannelInvalidError,
    errors.ChatIdInvalidError,
    errors.ChatAdminRequiredError,
    errors.UserIsBlockedError,
    errors.InputUserDeactivatedError,
)
# Telegram could not fetch a remote photo/album; the text message still works.
_REMOTE_MEDIA_FAILED = (
    errors.WebpageCurlFailedError,
    errors.WebpageMediaEmptyError,
    errors.MediaEmptyError,
)


class TelegramSender:
    """TransportPort implementation using telethon."""

    def __init__(self, client: TelegramClient, links_base_url: Optional[str] = None) -> None:
        self._client = client
        self._links_base_url = links_base_url

    async def send(self, chat_id: int, item: Item, asset: Optional[MediaAsset]) -> None:
        """Send one item and classify any failure."""

        try:
            await self._deliver(chat_id, item, asset)
        except (errors.FloodWaitError, errors.SlowModeWaitError) as exc:
            raise SendError.rate_limited(float(exc.seconds), str(exc)) from exc
        except _REJECTED as exc:
            raise SendError.rejected(f"chat {chat_id}: {exc}") from exc
        except errors.RPCError as exc:
            raise SendError.transient(f"chat {chat_id}: {exc}") from exc
        except ValueError as exc:
            # telethon cannot resolve the chat id to an entity.
            raise SendError.rejected(f"chat {chat_id}: {exc}") from exc
        except (ConnectionError, asyncio.TimeoutError, OSError) as exc:
            raise SendError.transient(f"chat {chat_id}: connection error: {exc}") from exc

    async def _deliver(self, chat_id: int, item: Item, asset: Optional[MediaAsset]) -> None:
        caption = format_caption_html(item, self._links_base_url)

        if asset is not None:
            await self._client.send_file(
                chat_id,
                str(asset.path),
                caption=caption,
                parse_mode="html",
                supports_streaming=True,
                attributes=_video_attributes(asset),
            )
            LOGGER.info("Video uploaded post_id=%s chat_id=%s", item.id, chat_id)
            return

        if item.kind == PostKind.IMAGE and item.url:
            await self._send_remote(chat_id, item, item.url, caption)
            return

        if item.kind == PostKind.GALLERY and item.gallery_urls:
            await self._send_remote(chat_id, item, list(item.gallery_urls[:ALBUM_LIMIT]), caption)
            return

        if item.kind == PostKind.SELF:
            await self._client.send_message(chat_id, caption, parse_mode="html", link_preview=False)
        else:
            # Unknown posts and videos that could not be downloaded get no preview.
            await self._send_link(chat_id, item, preview=item.kind == PostKind.LINK)
        LOGGER.info("Message sent post_id=%s chat_id=%s", item.id, chat_id)

    async def _send_remote(
        self,
        chat_id: int,
        item: Item,
        files: Union[str, list[str]],
        caption: str,
    ) -> None:
        try:
            await self._client.send_file(chat_id, files, caption=caption, parse_mode="html")
        except _REMOTE_MEDIA_FAILED as exc:
            LOGGER.warning("Telegram could not fetch media for %s (%s), sending link", item.id, exc)
            await self._send_link(chat_id, item)
            return
        LOGGER.info("Media uploaded post_id=%s chat_id=%s", item.id, chat_id)

    async def _send_link(self, chat_id: int, item: Item, preview: bool = True) -> None:
        message = format_link_message_html(item, self._links_base_url)
        await self._client.send_message(chat_id, message, parse_mode="html", link_preview=preview)


def _video_attributes(asset: MediaAsset) -> Optional[list[DocumentAttributeVideo]]:
    if not asset.width or not asset.height:
        return None
    return [
        DocumentAttributeVideo(
            duration=int(asset.duration_seconds or 0),
            w=asset.width,
            h=asset.height,
            supports_streaming=True,
        )
    ]
