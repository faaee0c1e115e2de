from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core.errors import LedgerConflictError, LedgerStorageError
from core.models import Item, MediaAsset, PostKind


def make_item(
    item_id: str,
    score: int = 100,
    *,
    source: str = "example",
    kind: PostKind = PostKind.LINK,
    url: Optional[str] = "https://example.com/article",
) -> Item:
    return Item(
        id=item_id,
        source=source,
        title=f"Post {item_id}",
        author="someone",
        score=score,
        permalink=f"/r/{source}/comments/{item_id}/post/",
        url=url,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        kind=kind,
    )


class FakeLedger:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str, int], str] = {}
        self.fail_writes = False

    def has_delivered(self, source: str, item_id: str, chat_id: int) -> bool:
        return (source, item_id, chat_id) in self.records

    def has_history(self, source: str, chat_id: int) -> bool:
        return any(key[0] == source and key[2] == chat_id for key in self.records)

    def record_delivered(self, source, item_id, chat_id, timestamp, title="") -> None:
        self._insert((source, item_id, chat_id), "delivered")

    def record_skipped(self, source, item_id, chat_id, timestamp, title="") -> None:
        self._insert((source, item_id, chat_id), "skipped")

    def _insert(self, key: tuple[str, str, int], outcome: str) -> None:
        if self.fail_writes:
            raise LedgerStorageError("disk I/O error")
        if key in self.records:
            raise LedgerConflictError(f"{key} already recorded")
        self.records[key] = outcome

    def outcomes(self, chat_id: int) -> dict[str, str]:
        return {key[1]: outcome for key, outcome in self.records.items() if key[2] == chat_id}


class FakeFetcher:
    """Returns one scripted batch per call; exceptions in the script are raised."""

    def __init__(self, batches: list) -> None:
        self.batches = list(batches)
        self.calls = 0

    async def fetch_ranked(self, source, ranking, limit):
        self.calls += 1
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch


class FakeTransport:
    def __init__(self, failures: Optional[dict[str, list[Exception]]] = None, clock=None) -> None:
        self.sent: list[tuple[int, str, Optional[MediaAsset]]] = []
        self.attempts: list[tuple[int, str]] = []
        self.sent_at: list[float] = []
        self.failures = {key: list(value) for key, value in (failures or {}).items()}
        self._clock = clock

    async def send(self, chat_id: int, item: Item, asset: Optional[MediaAsset]) -> None:
        self.attempts.append((chat_id, item.id))
        pending = self.failures.get(item.id)
        if pending:
            raise pending.pop(0)
        self.sent.append((chat_id, item.id, asset))
        if self._clock is not None:
            self.sent_at.append(self._clock())

    def sent_ids(self) -> list[str]:
        return [item_id for _, item_id, _ in self.sent]


class GatedTransport(FakeTransport):
    """Blocks sends of the given items until ``gate`` is set."""

    def __init__(self, blocked: set[str]) -> None:
        super().__init__()
        self.blocked = blocked
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def send(self, chat_id: int, item: Item, asset: Optional[MediaAsset]) -> None:
        if item.id in self.blocked:
            self.entered.set()
            await self.gate.wait()
        await super().send(chat_id, item, asset)


class FakeAcquirer:
    def __init__(self, failures: Optional[dict[str, Exception]] = None) -> None:
        self.failures = failures or {}
        self.requested: list[str] = []
        self.released: list[str] = []

    @contextlib.asynccontextmanager
    async def acquire(self, url: str, timeout: float):
        self.requested.append(url)
        if url in self.failures:
            raise self.failures[url]
        try:
            yield MediaAsset(path=Path("/tmp/clip.mp4"), size_bytes=1024, width=640, height=360)
        finally:
            self.released.append(url)


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
