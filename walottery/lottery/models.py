"""Core data models for the lottery reconciliation services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True, order=True)
class EventCursor:
    """Position of an event in ascending ledger order.

    Ordering is `(block_number, event_seq)`; `tx_digest` is carried for
    traceability only.
    """

    block_number: int
    event_seq: int
    tx_digest: str = field(default="", compare=False)

    def to_json(self) -> Dict[str, Any]:
        return {
            "txDigest": self.tx_digest,
            "eventSeq": self.event_seq,
            "blockNumber": self.block_number,
        }

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> Optional["EventCursor"]:
        if not data:
            return None
        return cls(
            block_number=int(data.get("blockNumber", 0)),
            event_seq=int(data.get("eventSeq", 0)),
            tx_digest=str(data.get("txDigest") or ""),
        )


@dataclass
class LedgerEvent:
    """A decoded `LotteryCreated` event.

    `lottery_id` is None when the payload lacked it; the indexer skips those.
    """

    event_id: EventCursor
    lottery_id: Optional[str]
    creator: str
    deadline_ms: int
    total_prize_units: int
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EventPage:
    """One page of events returned by the ledger's event query."""

    data: List[LedgerEvent]
    has_next_page: bool
    next_cursor: Optional[EventCursor] = None


@dataclass
class LotteryOnChain:
    """Live state of a lottery object as read from the ledger."""

    lottery_id: str
    creator: str
    deadline_ms: int
    settled: bool
    participants_count: int
    total_prize_units: int = 0
    prize_names: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LotteryMirror:
    """One row of the event-sourced read model."""

    lottery_id: str
    creator: str
    deadline_ms: int
    total_prize_units: int
    tx_digest: str
    event_seq: int
    emitted_at: Optional[datetime] = None
    raw_event: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lottery_id": self.lottery_id,
            "creator": self.creator,
            "deadline_ms": self.deadline_ms,
            "total_prize_units": self.total_prize_units,
            "tx_digest": self.tx_digest,
            "event_seq": self.event_seq,
            "emitted_at": self.emitted_at.isoformat() if self.emitted_at else None,
            "raw_event": self.raw_event,
        }


class SettlementOutcome(str, Enum):
    """Result of examining one settlement candidate."""

    SUBMITTED = "submitted"
    NOT_FOUND = "not_found"
    ALREADY_SETTLED = "already_settled"
    NOT_EXPIRED = "not_expired"
    NO_PARTICIPANTS = "no_participants"
    FAILED = "failed"


@dataclass
class BatchReport:
    """Tally of one watcher batch."""

    candidates: int = 0
    outcomes: Dict[SettlementOutcome, int] = field(default_factory=dict)
    tx_hashes: Dict[str, str] = field(default_factory=dict)

    def record(self, outcome: SettlementOutcome) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: SettlementOutcome) -> int:
        return self.outcomes.get(outcome, 0)

    @property
    def submitted(self) -> int:
        return self.count(SettlementOutcome.SUBMITTED)
