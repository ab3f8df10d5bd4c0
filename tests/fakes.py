"""Test doubles and builders shared by the test modules."""

import asyncio
from typing import Dict, List, Optional

from walottery.blockchain.client import LedgerError
from walottery.lottery.models import EventCursor, EventPage, LedgerEvent, LotteryOnChain

NOW_MS = 1_760_000_000_000


def lottery_id(n: int) -> str:
    return "0x" + format(n, "x").rjust(64, "0")


def make_event(block: int, seq: int, lid: Optional[str], deadline_ms: int = NOW_MS + 60_000,
               creator: str = "0xCreator", prize_units: int = 3) -> LedgerEvent:
    tx = "0x" + format(block * 1000 + seq, "x").rjust(64, "0")
    return LedgerEvent(
        event_id=EventCursor(block_number=block, event_seq=seq, tx_digest=tx),
        lottery_id=lid,
        creator=creator,
        deadline_ms=deadline_ms,
        total_prize_units=prize_units,
        payload={"parsedJson": {"lottery_id": lid, "deadline_ms": deadline_ms}},
    )


def make_state(lid: str, *, deadline_ms: int = NOW_MS - 1000, settled: bool = False,
               participants: int = 5, creator: str = "0xCreator") -> LotteryOnChain:
    return LotteryOnChain(
        lottery_id=lid,
        creator=creator,
        deadline_ms=deadline_ms,
        settled=settled,
        participants_count=participants,
        total_prize_units=4,
        prize_names=["mug", "tee"],
        raw={"objectId": lid, "fields": {"creator": creator, "deadline_ms": deadline_ms}},
    )


class FakeAccount:
    address = "0x000000000000000000000000000000000000dEaD"


class FakeLedger:
    """In-memory stand-in for LedgerClient."""

    event_type = "0xContract::LotteryCreated"

    def __init__(self) -> None:
        self.events: List[LedgerEvent] = []
        self.lotteries: Dict[str, LotteryOnChain] = {}
        self.ledger_time_ms = NOW_MS
        self.submitted: List[str] = []
        self.failing_ids: set = set()
        self.reject_ids: set = set()
        self.fail_queries = 0
        self.account = FakeAccount()

    async def query_events(self, cursor: Optional[EventCursor], limit: int) -> EventPage:
        if self.fail_queries:
            self.fail_queries -= 1
            raise LedgerError("query_events failed: connection reset")
        after = sorted(
            (e for e in self.events if cursor is None or e.event_id > cursor),
            key=lambda e: e.event_id,
        )
        page = after[:limit]
        return EventPage(
            data=page,
            has_next_page=len(after) > limit,
            next_cursor=page[-1].event_id if page else cursor,
        )

    async def get_lottery(self, lid: str) -> Optional[LotteryOnChain]:
        if lid in self.failing_ids:
            raise LedgerError(f"getLottery({lid}) timed out")
        return self.lotteries.get(lid)

    async def get_ledger_time_ms(self) -> int:
        return self.ledger_time_ms

    async def submit_draw(self, lid: str) -> str:
        if lid in self.reject_ids:
            raise LedgerError("draw transaction failed: rejected")
        self.submitted.append(lid)
        return "0x" + format(len(self.submitted), "x").rjust(64, "0")

    async def health_check(self):
        return {"status": "healthy", "latestBlock": 100}


def run(coro):
    return asyncio.run(coro)
