import pytest
from fastapi.testclient import TestClient

from walottery.lottery.store import StoreError
from walottery.web_server import LotteryWebServer

from tests.fakes import lottery_id, make_state


def _client(ledger, store, **server):
    config = {"server": {"allowed_origins": "*", **server}}
    return TestClient(LotteryWebServer(config, ledger, store).app)


@pytest.fixture
def client(ledger, store):
    return _client(ledger, store)


def test_banner_and_health(client):
    assert client.get("/").text == "walottery api"

    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["components"]["store"] == {"status": "healthy", "lotteries": 0}


def test_empty_listing(client):
    response = client.get("/lotteries")

    assert response.status_code == 200
    assert response.json() == []


def test_sync_requires_lottery_id(client):
    response = client.post("/lotteries", json={"txDigest": "0xabc"})

    assert response.status_code == 400
    assert response.json() == {"error": "lotteryId is required"}


def test_sync_rejects_malformed_body(client):
    response = client.post("/lotteries", json={"lotteryId": lottery_id(1), "eventSeq": "first"})

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.parametrize("lid", [lottery_id(404), "definitely-not-hex"])
def test_unknown_lottery_is_404_and_writes_nothing(client, store, lid):
    response = client.post("/lotteries", json={"lotteryId": lid})

    assert response.status_code == 404
    assert response.json() == {"error": "Lottery not found on-chain"}
    assert store.count_lotteries() == 0


def test_sync_then_list(client, ledger):
    lid = lottery_id(1)
    ledger.lotteries[lid] = make_state(lid, deadline_ms=123)

    response = client.post("/lotteries", json={"lotteryId": lid, "txDigest": "0xabc", "eventSeq": 2})
    assert response.status_code == 200
    assert response.json() == {"success": True}

    rows = client.get("/lotteries").json()
    assert len(rows) == 1
    assert rows[0]["lottery_id"] == lid
    assert rows[0]["deadline_ms"] == 123
    assert rows[0]["total_prize_units"] == 4
    assert (rows[0]["tx_digest"], rows[0]["event_seq"]) == ("0xabc", 2)
    assert rows[0]["raw_event"]["objectId"] == lid


def test_sync_normalizes_short_ids(client, ledger, store):
    lid = lottery_id(0xAB)
    ledger.lotteries[lid] = make_state(lid)

    assert client.post("/lotteries", json={"lotteryId": "0xAB"}).status_code == 200
    assert store.get_lottery(lid) is not None


def test_ledger_failure_is_500_without_internals(client, ledger):
    lid = lottery_id(2)
    ledger.failing_ids.add(lid)

    response = client.post("/lotteries", json={"lotteryId": lid})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to sync lottery"}


def test_store_failure_on_listing_is_500(ledger):
    class BrokenStore:
        def list_recent(self, limit):
            raise StoreError("list lotteries failed: OperationalError")

    response = _client(ledger, BrokenStore()).get("/lotteries")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to fetch lotteries"}


def test_cors_allows_configured_origin(ledger, store):
    client = _client(ledger, store, allowed_origins="https://app.example, https://admin.example")

    allowed = client.get("/lotteries", headers={"Origin": "https://admin.example"})
    denied = client.get("/lotteries", headers={"Origin": "https://evil.example"})

    assert allowed.headers["access-control-allow-origin"] == "https://admin.example"
    assert "access-control-allow-origin" not in denied.headers


def test_cors_wildcard_by_default(client):
    response = client.get("/lotteries", headers={"Origin": "https://anywhere.example"})

    assert response.headers["access-control-allow-origin"] == "*"
