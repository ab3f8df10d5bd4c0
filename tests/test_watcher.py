import logging

import pytest

from walottery.lottery.models import LotteryMirror, SettlementOutcome
from walottery.lottery.store import StoreError
from walottery.lottery.watcher import SettlementWatcher
from walottery.utils.config import ConfigurationError

from tests.fakes import NOW_MS, lottery_id, make_state, run


def _mirror(lid, deadline_ms):
    return LotteryMirror(
        lottery_id=lid,
        creator="0xCreator",
        deadline_ms=deadline_ms,
        total_prize_units=1,
        tx_digest="0xabc",
        event_seq=0,
    )


def _watcher(ledger, store, **watcher):
    config = {"watcher": {"batch_size": 25, "poll_interval_sec": 0.01, **watcher}}
    return SettlementWatcher(ledger, store, config, clock=lambda: NOW_MS)


def test_expired_live_lottery_gets_one_draw(ledger, store):
    lid = lottery_id(1)
    store.upsert_lottery(_mirror(lid, NOW_MS - 1000))
    ledger.lotteries[lid] = make_state(lid, settled=False, participants=5)

    report = run(_watcher(ledger, store).process_batch())

    assert ledger.submitted == [lid]
    assert report.submitted == 1
    assert lid in report.tx_hashes


def test_zero_participants_is_skipped_with_warning(ledger, store, caplog):
    lid = lottery_id(2)
    store.upsert_lottery(_mirror(lid, NOW_MS - 1000))
    ledger.lotteries[lid] = make_state(lid, participants=0)

    with caplog.at_level(logging.WARNING):
        report = run(_watcher(ledger, store).process_batch())

    assert ledger.submitted == []
    assert report.count(SettlementOutcome.NO_PARTICIPANTS) == 1
    assert "no participants" in caplog.text


def test_already_settled_never_submits(ledger, store):
    lid = lottery_id(3)
    store.upsert_lottery(_mirror(lid, NOW_MS - 5000))
    ledger.lotteries[lid] = make_state(lid, settled=True)

    report = run(_watcher(ledger, store).process_batch())

    assert ledger.submitted == []
    assert report.count(SettlementOutcome.ALREADY_SETTLED) == 1


def test_future_mirror_deadline_is_not_a_candidate(ledger, store):
    past, future = lottery_id(4), lottery_id(5)
    store.upsert_lottery(_mirror(past, NOW_MS - 1))
    store.upsert_lottery(_mirror(future, NOW_MS + 60_000))
    ledger.lotteries[past] = make_state(past)
    ledger.lotteries[future] = make_state(future)

    report = run(_watcher(ledger, store).process_batch())

    assert report.candidates == 1
    assert ledger.submitted == [past]


def test_live_deadline_ahead_of_ledger_clock_is_skipped(ledger, store):
    lid = lottery_id(6)
    store.upsert_lottery(_mirror(lid, NOW_MS - 1000))
    ledger.lotteries[lid] = make_state(lid, deadline_ms=NOW_MS - 1000)
    ledger.ledger_time_ms = NOW_MS - 2000

    report = run(_watcher(ledger, store).process_batch())

    assert ledger.submitted == []
    assert report.count(SettlementOutcome.NOT_EXPIRED) == 1


def test_lottery_missing_on_chain_is_skipped(ledger, store):
    store.upsert_lottery(_mirror(lottery_id(7), NOW_MS - 1000))

    report = run(_watcher(ledger, store).process_batch())

    assert report.count(SettlementOutcome.NOT_FOUND) == 1
    assert ledger.submitted == []


def test_one_failing_candidate_does_not_block_the_batch(ledger, store):
    broken, rejected, healthy = lottery_id(8), lottery_id(9), lottery_id(10)
    for offset, lid in enumerate((broken, rejected, healthy)):
        store.upsert_lottery(_mirror(lid, NOW_MS - 3000 + offset))
        ledger.lotteries[lid] = make_state(lid)
    ledger.failing_ids.add(broken)
    ledger.reject_ids.add(rejected)

    report = run(_watcher(ledger, store).process_batch())

    assert ledger.submitted == [healthy]
    assert report.count(SettlementOutcome.FAILED) == 2
    assert report.submitted == 1


def test_candidates_are_processed_oldest_deadline_first_up_to_batch_size(ledger, store):
    ids = [lottery_id(20 + i) for i in range(4)]
    for i, lid in enumerate(ids):
        store.upsert_lottery(_mirror(lid, NOW_MS - 1000 * (i + 1)))
        ledger.lotteries[lid] = make_state(lid)

    report = run(_watcher(ledger, store, batch_size=3).process_batch())

    assert report.candidates == 3
    assert ledger.submitted == [ids[3], ids[2], ids[1]]


def test_unsettled_lottery_is_retried_next_cadence(ledger, store):
    lid = lottery_id(30)
    store.upsert_lottery(_mirror(lid, NOW_MS - 1000))
    ledger.lotteries[lid] = make_state(lid)
    watcher = _watcher(ledger, store)

    run(watcher.process_batch())
    run(watcher.process_batch())
    ledger.lotteries[lid] = make_state(lid, settled=True)
    run(watcher.process_batch())

    assert ledger.submitted == [lid, lid]
    assert watcher.get_status()["lastBatch"] == {"already_settled": 1}


def test_store_failure_aborts_the_batch(ledger):
    class BrokenStore:
        def list_expired(self, now_ms, limit):
            raise StoreError("list expired lotteries failed: OperationalError")

    with pytest.raises(StoreError):
        run(_watcher(ledger, BrokenStore()).process_batch())


def test_watcher_refuses_to_run_without_operator(ledger, store):
    ledger.account = None

    with pytest.raises(ConfigurationError):
        run(_watcher(ledger, store).run())
