"""
Settlement watcher.

Scans the mirror for lotteries whose deadline has passed and submits a
`draw` transaction for each one that is still live-eligible:
- not settled on-chain
- deadline elapsed by the ledger's own clock
- at least one participant

No confirmation is awaited. A draw that fails to land is retried on the next
cadence because the lottery is still an unsettled, expired candidate.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from walottery.blockchain.client import LedgerClient
from walottery.blockchain.decoding import MalformedPayloadError
from walottery.lottery.models import BatchReport, SettlementOutcome
from walottery.lottery.scheduler import PollingLoop
from walottery.lottery.store import DEFAULT_STORE_TIMEOUT, LotteryStore, call_store
from walottery.utils.common import now_ms, shorten_address
from walottery.utils.config import ConfigurationError, get_float, get_int
from walottery.utils.logger import get_logger

logger = get_logger(__name__)


class SettlementWatcher:
    """Submits settlement transactions for expired lotteries."""

    def __init__(
        self,
        client: LedgerClient,
        store: LotteryStore,
        config: Optional[Dict[str, Any]] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client = client
        self._store = store
        self._clock = clock
        config = config or {}

        self.poll_interval = get_float(config, "watcher.poll_interval_sec", 60.0)
        self.batch_size = max(1, get_int(config, "watcher.batch_size", 25))
        self.store_timeout = get_float(config, "database.timeout_sec", DEFAULT_STORE_TIMEOUT)
        self.loop = PollingLoop("watcher", self._run_iteration, self.poll_interval)
        self.last_report: Optional[BatchReport] = None

    async def run(self) -> None:
        if not getattr(self._client, "account", None):
            raise ConfigurationError("Settlement watcher requires BLOCKCHAIN_OPERATOR_PRIVATE_KEY")
        logger.info(
            "Starting settlement watcher (batch %d, poll %.1fs, operator %s)",
            self.batch_size, self.poll_interval, self._client.account.address,
        )
        await self.loop.run()

    def stop(self) -> None:
        self.loop.stop()

    def get_status(self) -> Dict[str, Any]:
        report = self.last_report
        return {
            "status": "stopped" if self.loop.stopped else "running",
            "iterations": self.loop.iterations,
            "lastBatch": {o.value: n for o, n in report.outcomes.items()} if report else None,
        }

    async def _run_iteration(self) -> bool:
        await self.process_batch()
        return False

    async def process_batch(self) -> BatchReport:
        """Examine up to `batch_size` expired lotteries.

        A store failure while listing candidates propagates (the whole batch
        is retried next cadence); a failure on one candidate does not.
        """
        candidates = await call_store(
            self._store.list_expired, self._clock(), self.batch_size, timeout=self.store_timeout
        )
        report = BatchReport(candidates=len(candidates))
        if not candidates:
            logger.info("No expired lotteries to settle")
            self.last_report = report
            return report

        for candidate in candidates:
            if self.loop.stopped:
                logger.info("Stop requested; remaining candidates wait for the next run")
                break
            outcome = await self.process_candidate(candidate.lottery_id, report)
            report.record(outcome)

        logger.info(
            "Settlement batch done: %d candidates, %d submitted",
            report.candidates, report.submitted,
        )
        self.last_report = report
        return report

    async def process_candidate(self, lottery_id: str, report: Optional[BatchReport] = None) -> SettlementOutcome:
        """Re-verify one candidate against live ledger state and settle it if eligible."""
        short_id = shorten_address(lottery_id)
        try:
            state = await self._client.get_lottery(lottery_id)
            if state is None:
                logger.warning("Unable to load lottery %s from chain", lottery_id)
                return SettlementOutcome.NOT_FOUND

            if state.settled:
                logger.debug("Lottery %s already settled", short_id)
                return SettlementOutcome.ALREADY_SETTLED

            ledger_now = await self._client.get_ledger_time_ms()
            if state.deadline_ms > ledger_now:
                logger.info(
                    "Lottery %s deadline %s not reached by ledger time %s; skipping",
                    short_id, state.deadline_ms, ledger_now,
                )
                return SettlementOutcome.NOT_EXPIRED

            if state.participants_count == 0:
                logger.warning("Lottery %s has no participants, skipping draw.", lottery_id)
                return SettlementOutcome.NO_PARTICIPANTS

            tx_hash = await self._client.submit_draw(lottery_id)
            logger.info("Submitted draw for %s. Digest: %s", lottery_id, tx_hash)
            if report is not None:
                report.tx_hashes[lottery_id] = tx_hash
            return SettlementOutcome.SUBMITTED
        except MalformedPayloadError as exc:
            logger.warning("Lottery %s has malformed on-chain state: %s", lottery_id, exc)
            return SettlementOutcome.NOT_FOUND
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error("Failed to handle lottery %s: %s", lottery_id, exc)
            return SettlementOutcome.FAILED
