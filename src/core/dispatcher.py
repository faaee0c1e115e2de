"""Rate-aware dispatch in front of the destination transport.

Sends to one chat are serialized in arrival order, sends to different chats
proceed concurrently, and every send first takes a token from the global
bucket. A rate-limit response suspends only the caller, then the send is
retried exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from core.config import DispatchConfig
from core.errors import SendError, SendErrorKind
from core.models import Item, MediaAsset
from core.ports import TransportPort
from core.rate_limit import Clock, KeyedSerializer, Sleep, TokenBucket

LOGGER = logging.getLogger(__name__)


class Dispatcher:
    """Serializes per chat and governs the aggregate send rate."""

    def __init__(
        self,
        transport: TransportPort,
        config: DispatchConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._bucket = TokenBucket(
            config.global_rate_per_second,
            config.burst,
            clock=clock,
            sleep=sleep,
        )
        self._chats = KeyedSerializer()
        self._last_sent: dict[int, float] = {}

    async def send(self, chat_id: int, item: Item, asset: Optional[MediaAsset] = None) -> None:
        """Deliver one item. Raises SendError with kind rejected or transient."""

        async with self._chats.hold(chat_id):
            try:
                await self._attempt(chat_id, item, asset)
                return
            except SendError as exc:
                if exc.kind != SendErrorKind.RATE_LIMITED:
                    raise
                retry_after = max(0.0, exc.retry_after or 0.0)

            LOGGER.warning(
                "Rate limited sending %s/%s to %s, retrying in %.1fs",
                item.source,
                item.id,
                chat_id,
                retry_after,
            )
            await self._sleep(retry_after)

            try:
                await self._attempt(chat_id, item, asset)
            except SendError as exc:
                if exc.kind != SendErrorKind.RATE_LIMITED:
                    raise
                raise SendError.transient(
                    f"rate limited twice for {item.source}/{item.id} (retry_after={exc.retry_after})"
                ) from exc

    async def _attempt(self, chat_id: int, item: Item, asset: Optional[MediaAsset]) -> None:
        await self._respect_chat_spacing(chat_id)
        await self._bucket.acquire()
        try:
            await self._transport.send(chat_id, item, asset)
        finally:
            self._last_sent[chat_id] = self._clock()

    async def _respect_chat_spacing(self, chat_id: int) -> None:
        interval = self._config.per_chat_interval_seconds
        last = self._last_sent.get(chat_id)
        if interval <= 0 or last is None:
            return
        remaining = last + interval - self._clock()
        if remaining > 0:
            await self._sleep(remaining)
