"""
Polling scheduler shared by the indexer and the settlement watcher.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from walottery.blockchain.client import LedgerError
from walottery.lottery.store import StoreError
from walottery.utils.config import ConfigurationError
from walottery.utils.logger import get_logger

logger = get_logger(__name__)


class PollingLoop:
    """Run `step` repeatedly until stopped.

    `step` returns True when more work is immediately available (run again
    without waiting) and False when the loop should sleep for `interval`
    seconds. Transient ledger/store failures and unexpected errors are logged
    and retried after the interval; only `ConfigurationError` escapes.

    `stop()` never interrupts a running step: the loop finishes it, then
    exits instead of sleeping.
    """

    def __init__(self, name: str, step: Callable[[], Awaitable[bool]], interval: float) -> None:
        self.name = name
        self.interval = float(interval)
        self._step = step
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self.iterations = 0

    @property
    def stopped(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def sleep(self, seconds: float) -> bool:
        """Suspend until the next tick; returns True if stop was requested meanwhile."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        if self._stop_requested:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return self._stop_requested

    async def run(self) -> None:
        # Bind the event to the running loop
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        logger.info("%s loop started (interval %.1fs)", self.name, self.interval)

        while not self._stop_requested:
            self.iterations += 1
            try:
                more = await self._step()
            except ConfigurationError:
                raise
            except (LedgerError, StoreError) as exc:
                logger.error("%s iteration failed, retrying in %.1fs: %s", self.name, self.interval, exc)
                more = False
            except Exception:
                logger.exception("%s iteration crashed, retrying in %.1fs", self.name, self.interval)
                more = False

            if more:
                # let other tasks run between back-to-back pages
                await asyncio.sleep(0)
                continue
            if await self.sleep(self.interval):
                break

        logger.info("%s loop stopped after %d iterations", self.name, self.iterations)
