"""Per-subscription polling cycles.

Each subscription runs one independent task that repeats a strict cycle:
1) Fetch the ranked listing
2) Filter: ledger lookup, post kind, minimum score (in rank order)
3) Acquire media for video items when the subscription allows it
4) Dispatch in rank order and record each delivery immediately after it
5) Sleep until the next tick on a fixed cadence

The ledger write happens strictly after a successful send. If the write fails
the item stays unrecorded and may be sent again later; a duplicate is preferred
over a silent loss. Ledger calls run in a worker thread so a slow or locked
database only holds up the calling cycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from core.config import MediaConfig, SchedulerConfig
from core.errors import (
    AcquireError,
    FetchError,
    LedgerConflictError,
    LedgerStorageError,
    SendError,
    SendErrorKind,
)
from core.models import Item, MediaAsset, Subscription
from core.ports import AcquirerPort, FetcherPort, LedgerPort
from core.rate_limit import Clock

LOGGER = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FILTERING = "filtering"
    ACQUIRING = "acquiring"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class CycleReport:
    """Outcome of one fetch -> dispatch pass, mostly for logs and tests."""

    fetched: int = 0
    delivered: list[str] = field(default_factory=list)
    already_delivered: list[str] = field(default_factory=list)
    below_threshold: list[str] = field(default_factory=list)
    wrong_kind: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    text_fallback: list[str] = field(default_factory=list)
    seeded: list[str] = field(default_factory=list)
    fetch_error: Optional[FetchError] = None
    aborted: bool = False
    interrupted: bool = False


def next_tick(started: float, delay: float, now: float) -> tuple[float, int]:
    """Return the next tick on a fixed cadence and how many ticks were missed."""

    scheduled = started + delay
    missed = 0
    while scheduled < now:
        scheduled += delay
        missed += 1
    return scheduled, missed


class SubscriptionCycle:
    """Owns the periodic cycle of exactly one subscription."""

    def __init__(
        self,
        subscription: Subscription,
        *,
        fetcher: FetcherPort,
        ledger: LedgerPort,
        dispatcher,
        acquirer: Optional[AcquirerPort],
        stop_event: asyncio.Event,
        scheduler_config: SchedulerConfig = SchedulerConfig(),
        media_config: MediaConfig = MediaConfig(),
        clock: Clock = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.subscription = subscription
        self._fetcher = fetcher
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._acquirer = acquirer
        self._stop = stop_event
        self._config = scheduler_config
        self._media = media_config
        self._clock = clock
        self._now = now
        self._phase = CycleState.IDLE
        self._stopped = False
        self._permanent_failures = 0
        self._history_checked = not scheduler_config.skip_initial_send

    @property
    def state(self) -> CycleState:
        if self._stopped:
            return CycleState.STOPPED
        if self._stop.is_set():
            return CycleState.DRAINING
        return self._phase

    @property
    def permanent_failures(self) -> int:
        return self._permanent_failures

    def current_delay(self) -> float:
        """Inter-tick delay, stretched exponentially after permanent fetch failures."""

        interval = self.subscription.interval_seconds
        if not self._permanent_failures:
            return interval
        cap = max(interval, self._config.max_backoff_seconds)
        return min(cap, interval * (2 ** self._permanent_failures))

    async def run(self, initial_delay: float = 0.0) -> None:
        """Tick until the stop event is set."""

        sub = self.subscription
        tick = self._clock() + initial_delay
        try:
            while not await self._sleep_until(tick):
                started = tick
                try:
                    await self.run_cycle()
                except LedgerStorageError:
                    raise
                except Exception:
                    self._phase = CycleState.IDLE
                    LOGGER.exception("%s: cycle failed, retrying next tick", sub.label)
                tick, missed = next_tick(started, self.current_delay(), self._clock())
                if missed:
                    LOGGER.warning("%s: cycle overran, skipped %s tick(s)", sub.label, missed)
        finally:
            self._phase = CycleState.IDLE
            self._stopped = True
            LOGGER.info("%s: stopped", sub.label)

    async def _sleep_until(self, deadline: float) -> bool:
        """Wait for the deadline. Returns True if stop was requested instead."""

        remaining = deadline - self._clock()
        if remaining <= 0:
            return self._stop.is_set()
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            return self._stop.is_set()
        return True

    async def run_cycle(self) -> CycleReport:
        """Run one fetch -> filter -> acquire -> dispatch pass."""

        sub = self.subscription
        report = CycleReport()

        self._phase = CycleState.FETCHING
        try:
            items = list(await self._fetcher.fetch_ranked(sub.source, sub.ranking, sub.limit))
        except FetchError as exc:
            report.fetch_error = exc
            if exc.is_transient:
                LOGGER.warning("%s: transient fetch failure, retrying next tick: %s", sub.label, exc)
            else:
                self._permanent_failures += 1
                LOGGER.error(
                    "%s: permanent fetch failure (%s in a row), next attempt in %.0fs: %s",
                    sub.label,
                    self._permanent_failures,
                    self.current_delay(),
                    exc,
                )
            self._phase = CycleState.IDLE
            return report

        self._permanent_failures = 0
        report.fetched = len(items)
        LOGGER.debug("%s: fetched %s item(s)", sub.label, len(items))

        self._phase = CycleState.FILTERING
        if await self._needs_seeding():
            await self._seed(items, report)
            self._phase = CycleState.IDLE
            return report

        for item in await self._filter(items, report):
            if self._stop.is_set():
                report.interrupted = True
                LOGGER.info("%s: draining, not starting %s", sub.label, item.id)
                break
            if not await self._deliver(item, report):
                report.aborted = True
                break

        self._phase = CycleState.IDLE
        if report.delivered or report.failed:
            LOGGER.info(
                "%s: cycle done, delivered=%s failed=%s",
                sub.label,
                len(report.delivered),
                len(report.failed),
            )
        return report

    async def deliver_one(self, item: Item) -> CycleReport:
        """Acquire, send and record a single item outside the periodic cycle."""

        report = CycleReport(fetched=1)
        sub = self.subscription
        if await asyncio.to_thread(self._ledger.has_delivered, sub.source, item.id, sub.chat_id):
            report.already_delivered.append(item.id)
            return report
        if not await self._deliver(item, report):
            report.aborted = True
        self._phase = CycleState.IDLE
        return report

    async def _needs_seeding(self) -> bool:
        if self._history_checked:
            return False
        sub = self.subscription
        if await asyncio.to_thread(self._ledger.has_history, sub.source, sub.chat_id):
            self._history_checked = True
            return False
        return True

    async def _seed(self, items: Sequence[Item], report: CycleReport) -> None:
        """First run for a new subscription: mark the eligible backlog seen, send nothing.

        Items that fail the kind or score filter are left unrecorded so they
        can still qualify later.
        """

        sub = self.subscription
        timestamp = self._now()
        for item in await self._filter(items, report):
            try:
                await asyncio.to_thread(
                    self._ledger.record_skipped, sub.source, item.id, sub.chat_id, timestamp, item.title
                )
            except LedgerConflictError:
                continue
            report.seeded.append(item.id)
        if items:
            self._history_checked = True
        LOGGER.info("%s: new subscription, marked %s item(s) as seen", sub.label, len(report.seeded))

    async def _filter(self, items: Iterable[Item], report: CycleReport) -> list[Item]:
        sub = self.subscription
        selected: list[Item] = []
        for item in items:
            if await asyncio.to_thread(self._ledger.has_delivered, sub.source, item.id, sub.chat_id):
                report.already_delivered.append(item.id)
                continue
            if sub.kind_filter is not None and item.kind != sub.kind_filter:
                report.wrong_kind.append(item.id)
                continue
            # Not recorded: the score is re-evaluated on every cycle.
            if item.score < sub.min_score:
                report.below_threshold.append(item.id)
                continue
            selected.append(item)
        return selected

    async def _deliver(self, item: Item, report: CycleReport) -> bool:
        """Acquire, send and record one item. Returns False to abort the cycle."""

        sub = self.subscription
        async with contextlib.AsyncExitStack() as stack:
            asset = await self._acquire(item, stack, report)
            self._phase = CycleState.DISPATCHING
            try:
                await self._dispatcher.send(sub.chat_id, item, asset)
            except SendError as exc:
                report.failed.append(item.id)
                if exc.kind == SendErrorKind.REJECTED:
                    LOGGER.error(
                        "%s: destination rejected %s (%s), aborting cycle: %s",
                        sub.label,
                        item.id,
                        exc.kind.value,
                        exc,
                    )
                    return False
                LOGGER.warning(
                    "%s: failed to send %s (%s), will retry next cycle: %s",
                    sub.label,
                    item.id,
                    exc.kind.value,
                    exc,
                )
                return True

        try:
            await asyncio.to_thread(
                self._ledger.record_delivered, sub.source, item.id, sub.chat_id, self._now(), item.title
            )
        except LedgerConflictError:
            LOGGER.warning("%s: %s was already recorded", sub.label, item.id)
        except LedgerStorageError:
            LOGGER.critical("%s: sent %s but could not record it", sub.label, item.id)
            raise
        report.delivered.append(item.id)
        LOGGER.info("%s: delivered %s %r", sub.label, item.id, item.title)
        return True

    async def _acquire(
        self,
        item: Item,
        stack: contextlib.AsyncExitStack,
        report: CycleReport,
    ) -> Optional[MediaAsset]:
        sub = self.subscription
        if self._acquirer is None or not sub.media_enabled or not item.needs_media:
            return None

        self._phase = CycleState.ACQUIRING
        try:
            return await stack.enter_async_context(
                self._acquirer.acquire(item.url, self._media.timeout_seconds)
            )
        except AcquireError as exc:
            report.text_fallback.append(item.id)
            LOGGER.warning(
                "%s: media for %s unavailable (%s), sending text only: %s",
                sub.label,
                item.id,
                exc.kind.value,
                exc,
            )
            return None


class Scheduler:
    """Starts one task per subscription and reports fatal errors upward."""

    def __init__(
        self,
        cycles: Sequence[SubscriptionCycle],
        *,
        on_fatal: Callable[[BaseException], None],
        startup_stagger_seconds: float = 0.0,
    ) -> None:
        self.cycles = list(cycles)
        self._on_fatal = on_fatal
        self._stagger = startup_stagger_seconds
        self.tasks: list[asyncio.Task] = []

    def start(self) -> list[asyncio.Task]:
        for index, cycle in enumerate(self.cycles):
            task = asyncio.create_task(
                self._guard(cycle, index * self._stagger),
                name=f"cycle:{cycle.subscription.label}",
            )
            self.tasks.append(task)
        LOGGER.info("Started %s subscription cycle(s)", len(self.tasks))
        return self.tasks

    async def _guard(self, cycle: SubscriptionCycle, initial_delay: float) -> None:
        try:
            await cycle.run(initial_delay)
        except LedgerStorageError as exc:
            LOGGER.critical("%s: ledger failure, shutting down: %s", cycle.subscription.label, exc)
            self._on_fatal(exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Only this subscription stops; the others keep running.
            LOGGER.exception("%s: cycle task crashed", cycle.subscription.label)
