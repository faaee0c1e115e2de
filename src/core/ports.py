"""Ports (interfaces) used by the core engine.

Ports define the minimal contracts for the ledger, listing, media and
delivery adapters so that the core can be exercised with fakes in tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol, Sequence

from core.models import Item, MediaAsset, RankingMode


class LedgerPort(Protocol):
    """Durable delivery record. The deduplication authority."""

    def has_delivered(self, source: str, item_id: str, chat_id: int) -> bool:
        ...

    def has_history(self, source: str, chat_id: int) -> bool:
        ...

    def record_delivered(
        self,
        source: str,
        item_id: str,
        chat_id: int,
        timestamp: datetime,
        title: str = "",
    ) -> None:
        ...

    def record_skipped(
        self,
        source: str,
        item_id: str,
        chat_id: int,
        timestamp: datetime,
        title: str = "",
    ) -> None:
        ...


class FetcherPort(Protocol):
    """Ranked listing of candidate items for a source."""

    async def fetch_ranked(self, source: str, ranking: RankingMode, limit: int) -> Sequence[Item]:
        ...


class AcquirerPort(Protocol):
    """Bounded-time media download. Yields an asset released on exit."""

    def acquire(self, url: str, timeout: float) -> AsyncContextManager[MediaAsset]:
        ...


class TransportPort(Protocol):
    """Single delivery attempt to a chat. Raises SendError on failure."""

    async def send(self, chat_id: int, item: Item, asset: Optional[MediaAsset]) -> None:
        ...
