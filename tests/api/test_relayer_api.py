import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from relayhub.config import settings as app_settings
from relayhub.core.metatx import MetaTransaction, encode_meta_transactions, sign_batch
from relayhub.core.relayer import get_relayer_service
from relayhub.main import app

from conftest import ONE_TOKEN, START_TIME, USER, USER_KEY, XFI_PRICE

HUB_EXECUTOR = "0x00000000000000000000000000000000000b0001"
PING = "0x000000000000000000000000000000000000c0de"


@pytest.fixture
def client(service):
    app.dependency_overrides[get_relayer_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def priced(service):
    network = service.network
    network.oracle.set_price("XFI/USD", XFI_PRICE, caller=service.relayer_address)
    network.executor("crossfi").targets.register(PING, lambda sender, value, data: 21_000)
    return network


@pytest.fixture
def parked(service, network, send_tokens):
    """A transfer that failed because its destination gateway is paused."""
    network.gateway("ethereum").pause(caller=service.relayer_address)
    command_id = send_tokens()

    async def drive():
        await service.poll_once()
        network.ledger("crossfi").mine(1)
        await service.poll_once()
        await service.process_pending()

    asyncio.run(drive())
    return command_id


def batch_payload(nonce=0):
    data = encode_meta_transactions([MetaTransaction(PING, 0, b"ping")])
    deadline = START_TIME + 600
    return {
        "from": USER,
        "targetChain": "crossfi",
        "metaTxs": [{"to": PING, "value": 0, "data": "0x" + b"ping".hex()}],
        "signature": sign_batch(USER_KEY, 4157, HUB_EXECUTOR, USER, data, nonce, deadline),
        "nonce": nonce,
        "deadline": deadline,
    }


# =============================================================================
# Operator endpoints
# =============================================================================

class TestOperatorEndpoints:
    """Health, status and failed-transaction handling."""

    def test_root(self, client):
        assert client.get("/").json()["name"] == "relayhub"

    def test_request_id_is_echoed(self, client):
        assert client.get("/", headers={"x-request-id": "abc123"}).headers["x-request-id"] == "abc123"
        assert len(client.get("/").headers["x-request-id"]) == 12

    def test_health(self, client, service):
        resp = client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "stopped"
        assert body["chains"] == ["crossfi", "ethereum"]
        assert body["relayerAddress"] == service.relayer_address

    def test_status(self, client):
        body = client.get("/status").json()

        assert body["isRunning"] is False
        assert body["failedTransactions"] == 0
        assert set(body["queues"]) == {"crossfi", "ethereum"}
        assert body["metrics"]["totalTransactions"] == 0

    def test_failed_transactions_listing(self, client, parked):
        listing = client.get("/failed-transactions").json()

        assert listing["count"] == 1
        assert listing["transactions"][0]["commandId"] == parked
        detail = client.get(f"/failed-transactions/{parked}").json()
        assert detail["errorCategory"] == "fatal"
        assert detail["command"]["commandType"] == 4

    def test_unknown_failed_transaction(self, client):
        assert client.get("/failed-transactions/0xmissing").status_code == 404
        assert client.post("/compensate/0xmissing").status_code == 404

    def test_compensate_refund(self, client, network, parked):
        resp = client.post(f"/compensate/{parked}", params={"action": "refund"})

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == 5 * ONE_TOKEN
        assert client.post(f"/compensate/{parked}", params={"action": "refund"}).status_code == 409

    def test_compensate_rejects_unknown_action(self, client, parked):
        assert client.post(f"/compensate/{parked}", params={"action": "forget"}).status_code == 422

    def test_cancel_unknown_command(self, client):
        assert client.post("/cancel/0xmissing").status_code == 409

    def test_compensate_while_halted(self, client, network, parked):
        client.post("/emergency-stop")

        resp = client.post(f"/compensate/{parked}", params={"action": "refund"})

        assert resp.status_code == 503
        assert resp.json()["error"]["kind"] == "RelayerHalted"
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == 0

    def test_unpaid_batches_and_settlement(self, client, service, priced, monkeypatch):
        monkeypatch.setattr(service.client, "has_enough_credits", AsyncMock(return_value=True))
        batch = client.post("/batch-meta-tx", json=batch_payload()).json()
        assert batch["paid"] is False

        listing = client.get("/unpaid-batches").json()
        assert listing["count"] == 1
        assert listing["batches"][0]["batchId"] == batch["batchId"]
        assert listing["batches"][0]["owedCents"] == batch["costCents"]

        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)
        resp = client.post(f"/settle/crossfi/{batch['batchId']}")

        assert resp.status_code == 200
        assert resp.json()["settled"] is True
        assert client.get("/unpaid-batches", params={"chain": "crossfi"}).json()["count"] == 0

    def test_settle_unknown_batch(self, client):
        assert client.post("/settle/crossfi/9").status_code == 404
        assert client.post("/settle/nowhere/0").status_code == 404


class TestOperatorAuth:
    """Mutating operator endpoints need the bearer token once one is set."""

    @pytest.fixture(autouse=True)
    def operator_token(self, monkeypatch):
        monkeypatch.setattr(app_settings, "operator_api_token", "s3cret")

    def test_missing_token(self, client):
        assert client.post("/emergency-stop").status_code == 401

    def test_wrong_token(self, client):
        resp = client.post("/emergency-stop", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 403

    def test_valid_token(self, client, service):
        resp = client.post("/emergency-stop", headers={"Authorization": "Bearer s3cret"})

        assert resp.status_code == 200
        assert resp.json()["stopped"] is True
        assert service.emergency_stopped is True

    def test_reads_stay_open(self, client):
        assert client.get("/status").status_code == 200

    def test_unpaid_listing_needs_token(self, client):
        assert client.get("/unpaid-batches").status_code == 401
        assert client.post("/settle/crossfi/0").status_code == 401


# =============================================================================
# Gasless endpoints
# =============================================================================

class TestMetaTxEndpoints:
    """Batch relay, estimates and credit lookups."""

    def test_batch_meta_tx(self, client, priced):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)

        resp = client.post("/batch-meta-tx", json=batch_payload())

        assert resp.status_code == 200, resp.json()
        body = resp.json()
        assert body["success"] is True
        assert body["successes"] == [True]
        assert body["paid"] is True
        assert client.get(f"/nonce/{USER}").json()["nonce"] == 1

    def test_single_meta_tx_is_a_batch_of_one(self, client, priced):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)
        signed = batch_payload()

        resp = client.post(
            "/meta-tx",
            json={
                "from": USER,
                "to": PING,
                "data": "0x" + b"ping".hex(),
                "signature": signed["signature"],
                "nonce": 0,
                "deadline": signed["deadline"],
            },
        )

        assert resp.status_code == 200, resp.json()
        assert resp.json()["successes"] == [True]

    def test_replayed_batch_is_conflict(self, client, priced):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)
        payload = batch_payload()
        client.post("/batch-meta-tx", json=payload)

        resp = client.post("/batch-meta-tx", json=payload)

        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["kind"] == "InvalidNonce"
        assert error["details"] == {"expected": 1, "got": 0}

    def test_batch_without_credits(self, client, priced):
        resp = client.post("/batch-meta-tx", json=batch_payload())

        assert resp.status_code == 402
        assert resp.json()["error"]["kind"] == "InsufficientCredits"

    def test_batch_with_bad_hex(self, client, priced):
        payload = batch_payload()
        payload["metaTxs"][0]["data"] = "0xzz"

        resp = client.post("/batch-meta-tx", json=payload)

        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "MalformedBatch"

    def test_estimate_batch(self, client, priced):
        resp = client.post("/estimate-batch", json={"metaTxs": batch_payload()["metaTxs"]})

        assert resp.status_code == 200
        body = resp.json()
        assert body["calls"] == 1
        assert body["gasLimit"] > 25_000
        assert body["costCents"] >= 1

    def test_estimate_accepts_encoded_calls(self, client, priced):
        data = encode_meta_transactions([MetaTransaction(PING, 0, b"ping")] * 2)

        resp = client.post("/estimate-batch", json={"metaTxData": "0x" + data.hex()})

        assert resp.status_code == 200
        assert resp.json()["calls"] == 2

    def test_empty_batch_is_malformed(self, client, priced):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)
        deadline = START_TIME + 600
        data = encode_meta_transactions([])
        payload = {
            "from": USER,
            "metaTxs": [],
            "signature": sign_batch(USER_KEY, 4157, HUB_EXECUTOR, USER, data, 0, deadline),
            "nonce": 0,
            "deadline": deadline,
        }

        resp = client.post("/batch-meta-tx", json=payload)

        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "MalformedBatch"
        assert client.get(f"/nonce/{USER}").json()["nonce"] == 0

    def test_halted_relayer_answers_503(self, client, priced):
        assert client.post("/emergency-stop").status_code == 200

        resp = client.post("/batch-meta-tx", json=batch_payload())

        assert resp.status_code == 503
        assert resp.json()["error"]["kind"] == "RelayerHalted"

    def test_credits(self, client, priced):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)

        body = client.get(f"/credits/{USER.lower()}").json()

        assert body["address"] == USER
        assert body["balanceCents"] == 200
        assert body["depositBalance"] == str(ONE_TOKEN)

    def test_chains(self, client):
        chains = {c["name"]: c for c in client.get("/chains").json()}

        assert chains["crossfi"]["chainId"] == 4157
        assert chains["ethereum"]["blockConfirmations"] == 12
        assert chains["crossfi"]["isHub"] is True
