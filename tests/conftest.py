import pytest

from walottery.lottery.store import LotteryStore

from tests.fakes import FakeLedger


@pytest.fixture
def store(tmp_path):
    s = LotteryStore(f"sqlite:///{tmp_path / 'walottery-test.db'}")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def ledger():
    return FakeLedger()
