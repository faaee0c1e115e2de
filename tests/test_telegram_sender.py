from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pytest
from telethon import errors

from adapters.telegram_sender import TelegramSender
from core.errors import SendError, SendErrorKind
from core.models import MediaAsset, PostKind
from fakes import make_item


class FakeClient:
    def __init__(self, file_error: Optional[Exception] = None, message_error: Optional[Exception] = None) -> None:
        self.files: list[tuple[int, object, dict]] = []
        self.messages: list[tuple[int, str, dict]] = []
        self.file_error = file_error
        self.message_error = message_error

    async def send_file(self, chat_id, file, **kwargs) -> None:
        if self.file_error is not None:
            raise self.file_error
        self.files.append((chat_id, file, kwargs))

    async def send_message(self, chat_id, message, **kwargs) -> None:
        if self.message_error is not None:
            raise self.message_error
        self.messages.append((chat_id, message, kwargs))


def test_video_asset_is_uploaded_with_dimensions() -> None:
    client = FakeClient()
    asset = MediaAsset(path=Path("/tmp/clip.mp4"), size_bytes=10, duration_seconds=3.4, width=640, height=360)

    asyncio.run(TelegramSender(client).send(1, make_item("v", kind=PostKind.VIDEO), asset))

    ((chat_id, file, kwargs),) = client.files
    assert (chat_id, file) == (1, "/tmp/clip.mp4")
    (attribute,) = kwargs["attributes"]
    assert (attribute.w, attribute.h, attribute.duration) == (640, 360, 3)


def test_gallery_is_sent_as_album() -> None:
    client = FakeClient()
    urls = tuple(f"https://i.redd.it/{n}.jpg" for n in range(12))
    item = replace(make_item("g", kind=PostKind.GALLERY), gallery_urls=urls)

    asyncio.run(TelegramSender(client).send(1, item, None))

    ((_, files, _),) = client.files
    assert files == list(urls[:10])


def test_self_post_is_text_without_preview() -> None:
    client = FakeClient()

    asyncio.run(TelegramSender(client).send(1, make_item("s", kind=PostKind.SELF, url=None), None))

    ((_, message, kwargs),) = client.messages
    assert message.startswith("Post s\n")
    assert kwargs["link_preview"] is False


def test_failed_remote_image_falls_back_to_link() -> None:
    client = FakeClient(file_error=errors.WebpageCurlFailedError(request=None))
    item = make_item("i", kind=PostKind.IMAGE, url="https://i.redd.it/i.jpg")

    asyncio.run(TelegramSender(client).send(1, item, None))

    ((_, message, _),) = client.messages
    assert message.startswith('<a href="https://i.redd.it/i.jpg">')


def test_flood_wait_maps_to_rate_limited() -> None:
    client = FakeClient(message_error=errors.FloodWaitError(request=None, capture=12))

    with pytest.raises(SendError) as excinfo:
        asyncio.run(TelegramSender(client).send(1, make_item("a"), None))

    assert excinfo.value.kind == SendErrorKind.RATE_LIMITED
    assert excinfo.value.retry_after == 12.0


def test_private_channel_maps_to_rejected() -> None:
    client = FakeClient(message_error=errors.ChannelPrivateError(request=None))

    with pytest.raises(SendError) as excinfo:
        asyncio.run(TelegramSender(client).send(1, make_item("a"), None))

    assert excinfo.value.kind == SendErrorKind.REJECTED


def test_connection_error_maps_to_transient() -> None:
    client = FakeClient(message_error=ConnectionError("reset"))

    with pytest.raises(SendError) as excinfo:
        asyncio.run(TelegramSender(client).send(1, make_item("a"), None))

    assert excinfo.value.kind == SendErrorKind.TRANSIENT


def test_unresolvable_chat_maps_to_rejected() -> None:
    client = FakeClient(message_error=ValueError('Could not find the input entity for PeerChannel(channel_id=1)'))

    with pytest.raises(SendError) as excinfo:
        asyncio.run(TelegramSender(client).send(-1001, make_item("a"), None))

    assert excinfo.value.kind == SendErrorKind.REJECTED
