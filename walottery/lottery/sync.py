"""On-demand registration of a single lottery, independent of the indexer."""

from __future__ import annotations

from typing import Optional

from walottery.blockchain.client import LedgerClient
from walottery.blockchain.decoding import MalformedPayloadError, normalize_object_id
from walottery.lottery.models import LotteryMirror
from walottery.lottery.store import DEFAULT_STORE_TIMEOUT, LotteryStore, call_store
from walottery.utils.common import utcnow
from walottery.utils.logger import get_logger

logger = get_logger(__name__)


class LotteryNotFoundError(LookupError):
    """The identifier does not resolve to a lottery on-chain."""


class LotterySyncService:
    def __init__(self, client: LedgerClient, store: LotteryStore, *, store_timeout: float = DEFAULT_STORE_TIMEOUT) -> None:
        self._client = client
        self._store = store
        self._store_timeout = store_timeout

    async def sync_lottery(
        self,
        lottery_id: str,
        tx_digest: Optional[str] = None,
        event_seq: Optional[int] = None,
    ) -> LotteryMirror:
        """Fetch live metadata for `lottery_id` and upsert its mirror row.

        Raises LotteryNotFoundError without touching the store when the
        lottery cannot be resolved.
        """
        normalized = normalize_object_id(lottery_id)
        if normalized is None:
            raise LotteryNotFoundError(lottery_id)

        try:
            state = await self._client.get_lottery(normalized)
        except MalformedPayloadError as exc:
            logger.warning("Lottery %s has malformed on-chain state: %s", normalized, exc)
            raise LotteryNotFoundError(lottery_id) from exc
        if state is None:
            raise LotteryNotFoundError(lottery_id)

        mirror = LotteryMirror(
            lottery_id=normalized,
            creator=state.creator,
            deadline_ms=state.deadline_ms,
            total_prize_units=state.total_prize_units,
            tx_digest=tx_digest or "",
            event_seq=int(event_seq or 0),
            emitted_at=utcnow(),
            raw_event=state.raw,
        )
        await call_store(self._store.upsert_lottery, mirror, timeout=self._store_timeout)
        logger.info("Synced lottery %s (%d prize units)", normalized, state.total_prize_units)
        return mirror
