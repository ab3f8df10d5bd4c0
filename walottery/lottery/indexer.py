"""Event indexer: mirrors LotteryCreated events into the store.

Events are drained in ascending ledger order from the persisted cursor. For
each event the mirror row is upserted first and the cursor saved second, so
a crash in between only causes that one event to be processed again.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from walottery.blockchain.client import LedgerClient
from walottery.lottery.models import EventCursor, EventPage, LedgerEvent, LotteryMirror
from walottery.lottery.scheduler import PollingLoop
from walottery.lottery.store import DEFAULT_STORE_TIMEOUT, LotteryStore, call_store
from walottery.utils.common import shorten_address, utcnow
from walottery.utils.config import get_float, get_int
from walottery.utils.logger import get_logger

logger = get_logger(__name__)


def mirror_from_event(event: LedgerEvent) -> LotteryMirror:
    return LotteryMirror(
        lottery_id=event.lottery_id,
        creator=event.creator,
        deadline_ms=event.deadline_ms,
        total_prize_units=event.total_prize_units,
        tx_digest=event.event_id.tx_digest,
        event_seq=event.event_id.event_seq,
        emitted_at=utcnow(),
        raw_event=event.payload,
    )


class EventIndexer:
    """Polls the ledger for LotteryCreated events and writes mirror rows."""

    def __init__(self, client: LedgerClient, store: LotteryStore, config: Optional[Dict[str, Any]] = None) -> None:
        self.client = client
        self.store = store
        config = config or {}

        self.poll_interval = get_float(config, "indexer.poll_interval_sec", 5.0)
        self.batch_size = max(1, get_int(config, "indexer.batch_size", 50))
        self.pages_per_run = max(1, get_int(config, "indexer.pages_per_run", 10))
        self.store_timeout = get_float(config, "database.timeout_sec", DEFAULT_STORE_TIMEOUT)

        self.loop = PollingLoop("indexer", self.run_iteration, self.poll_interval)
        self.events_stored = 0
        self.events_skipped = 0

    async def run(self) -> None:
        logger.info(
            "Starting lottery indexer for %s (batch %d, poll %.1fs)",
            self.client.event_type, self.batch_size, self.poll_interval,
        )
        await self.loop.run()

    def stop(self) -> None:
        self.loop.stop()

    async def run_iteration(self) -> bool:
        """Fetch and process one page; True when the next page is ready now."""
        cursor = await call_store(self.store.get_cursor, timeout=self.store_timeout)
        page = await self.client.query_events(cursor, self.batch_size)
        if not page.data:
            return False
        await self.process_page(page, cursor)
        return page.has_next_page and len(page.data) >= self.batch_size

    async def run_once(self, max_pages: Optional[int] = None) -> int:
        """Drain up to `max_pages` pages and return; used for cron-style runs.

        Errors propagate to the caller.
        """
        max_pages = max_pages or self.pages_per_run
        stored = 0
        cursor = await call_store(self.store.get_cursor, timeout=self.store_timeout)
        for _ in range(max_pages):
            page = await self.client.query_events(cursor, self.batch_size)
            if not page.data:
                break
            stored += await self.process_page(page, cursor)
            cursor = await call_store(self.store.get_cursor, timeout=self.store_timeout)
            if not page.has_next_page or self.loop.stopped:
                break
        return stored

    async def process_page(self, page: EventPage, cursor: Optional[EventCursor] = None) -> int:
        """Upsert each event in order, saving the cursor after every successful upsert."""
        stored = 0
        for event in page.data:
            if self.loop.stopped:
                logger.info("Stop requested; leaving remaining %d events for next run", len(page.data) - stored)
                break

            if cursor is not None and event.event_id <= cursor:
                logger.warning("Event %s is not after cursor %s; ignoring", event.event_id, cursor)
                continue

            if event.lottery_id:
                await call_store(self.store.upsert_lottery, mirror_from_event(event), timeout=self.store_timeout)
                stored += 1
                self.events_stored += 1
                logger.info(
                    "Stored lottery %s from tx %s",
                    shorten_address(event.lottery_id), event.event_id.tx_digest or "n/a",
                )
            else:
                self.events_skipped += 1
                logger.warning("LotteryCreated missing lottery_id at %s; skipping", event.event_id)

            await call_store(self.store.save_cursor, event.event_id, timeout=self.store_timeout)
            cursor = event.event_id
        return stored
