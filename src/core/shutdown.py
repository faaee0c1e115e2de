"""Signal-driven shutdown with a bounded drain.

The first SIGINT/SIGTERM broadcasts stop to every subscription cycle. Cycles
finish the item they are sending (including its ledger write) and exit; each
finished task is its acknowledgment. A second signal exits immediately.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Callable, Optional, Sequence

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_STARTUP = 2

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Owns the stop event and the single drain sequence."""

    def __init__(
        self,
        grace_seconds: float,
        *,
        force_exit: Callable[[int], None] = os._exit,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.stop_event = asyncio.Event()
        self.fatal_error: Optional[BaseException] = None
        self._force_exit = force_exit
        self._requested = False

    @property
    def requested(self) -> bool:
        return self._requested

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in _SIGNALS:
            loop.add_signal_handler(sig, self.handle_signal, sig)

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in _SIGNALS:
            loop.remove_signal_handler(sig)

    def handle_signal(self, signum: int) -> None:
        if self._requested:
            LOGGER.warning("Got signal %s while draining, exiting now", signum)
            self._force_exit(EXIT_FAILURE)
            return
        LOGGER.info("Got signal %s, draining (grace %.0fs)", signum, self.grace_seconds)
        self.request_stop()

    def report_fatal(self, exc: BaseException) -> None:
        """Record a fatal runtime error and start the drain if not already running."""

        if self.fatal_error is None:
            self.fatal_error = exc
        self.request_stop()

    def request_stop(self) -> None:
        self._requested = True
        self.stop_event.set()

    async def supervise(self, tasks: Sequence[asyncio.Task]) -> int:
        """Wait for stop, drain the tasks and return the process exit code."""

        await self.stop_event.wait()
        return await self.drain(tasks)

    async def drain(self, tasks: Sequence[asyncio.Task]) -> int:
        pending = [task for task in tasks if not task.done()]
        abandoned = 0
        if pending:
            LOGGER.info("Waiting for %s in-flight cycle(s)", len(pending))
            _, still_running = await asyncio.wait(pending, timeout=self.grace_seconds)
            abandoned = len(still_running)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        if abandoned:
            LOGGER.error("Grace period elapsed, abandoned %s cycle(s)", abandoned)
            return EXIT_FAILURE
        if self.fatal_error is not None:
            LOGGER.error("Stopped after fatal error: %s", self.fatal_error)
            return EXIT_FAILURE
        LOGGER.info("All cycles drained")
        return EXIT_OK
