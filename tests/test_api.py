"""
HTTP boundary tests. The app runs against the fake cluster through an explicit runtime.
"""

import time

import pytest
from fastapi.testclient import TestClient
from solders.keypair import Keypair

from intentfi.config import DEVNET_USDC_MINT, LAMPORTS_PER_SOL
from intentfi.main import create_app

SOL_MINT = "So11111111111111111111111111111111111111112"
SWAP = {"from_mint": SOL_MINT, "to_mint": DEVNET_USDC_MINT, "amount": 1_000, "max_slippage": 50}


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def wait_terminal(client, intent_id, attempts=200):
    for _ in range(attempts):
        body = client.get(f"/intents/{intent_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"intent {intent_id} never finished")


class TestHealthAndNetwork:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_get_network(self, client):
        body = client.get("/network").json()
        assert body["network"] == "devnet"
        assert body["rpc"]["index"] == 0

    def test_switch_network(self, client):
        r = client.post("/network", json={"network": "mainnet"})
        assert r.status_code == 200
        assert r.json()["is_mainnet"] is True

    def test_unknown_network_is_400(self, client):
        r = client.post("/network", json={"network": "localnet-x"})
        assert r.status_code == 400


class TestWallets:
    def test_acquire_release_status(self, client):
        r = client.post("/wallets/acquire")
        assert r.status_code == 200
        lease = r.json()
        assert lease["pooled"] is True
        assert "secret_key" not in lease

        status = client.get("/wallets/status").json()
        assert status["total"] == 3
        assert status["in_use"] == 1

        r = client.post("/wallets/release", json={"public_key": lease["public_key"]})
        assert r.status_code == 200
        assert client.get("/wallets/status").json()["in_use"] == 0

    def test_release_unknown_is_404(self, client):
        r = client.post("/wallets/release", json={"public_key": str(Keypair().pubkey())})
        assert r.status_code == 404

    def test_ensure_funded(self, client, chain):
        lease = client.post("/wallets/acquire").json()
        chain.balances[lease["public_key"]] = LAMPORTS_PER_SOL
        r = client.post("/wallets/ensure-funded", json={"public_key": lease["public_key"], "min_amount": 0.01})
        assert r.json() == {"public_key": lease["public_key"], "has_funds": True}

    def test_ensure_funded_surfaces_manual_funding(self, client):
        client.post("/network", json={"network": "mainnet"})
        address = str(Keypair().pubkey())
        r = client.post("/wallets/ensure-funded", json={"public_key": address, "min_amount": 0.01})
        assert r.status_code == 200
        body = r.json()
        assert body["has_funds"] is False
        assert body["manual_funding"]["address"] == address
        assert "fund it manually" in body["manual_funding"]["message"]


class TestIntents:
    def test_create_and_complete(self, client):
        lease = client.post("/wallets/acquire").json()
        r = client.post("/intents", json={"type": "swap", "params": SWAP, "wallet": lease["public_key"]})
        assert r.status_code == 200
        intent_id = r.json()["id"]
        assert r.json()["status"] == "pending"
        body = wait_terminal(client, intent_id)
        assert body["status"] == "completed"
        assert body["tx_signature"]

        history = client.get("/intents/history", params={"owner": lease["public_key"]}).json()
        assert [item["id"] for item in history] == [intent_id]

    def test_unknown_wallet_is_404(self, client):
        r = client.post("/intents", json={"type": "swap", "params": SWAP, "wallet": str(Keypair().pubkey())})
        assert r.status_code == 404

    def test_bad_params_are_400(self, client):
        lease = client.post("/wallets/acquire").json()
        bad = dict(SWAP, max_slippage=-1)
        r = client.post("/intents", json={"type": "swap", "params": bad, "wallet": lease["public_key"]})
        assert r.status_code == 400

    def test_cancel(self, client):
        lease = client.post("/wallets/acquire").json()
        intent_id = client.post(
            "/intents", json={"type": "swap", "params": SWAP, "wallet": lease["public_key"]}
        ).json()["id"]
        assert client.delete(f"/intents/{intent_id}").status_code == 200
        assert client.delete(f"/intents/{intent_id}").status_code == 404
        assert client.get(f"/intents/{intent_id}").status_code == 404

    def test_build_unsigned(self, client):
        owner = str(Keypair().pubkey())
        r = client.post("/intents/build", json={"type": "lend", "params": {"mint": SOL_MINT, "amount": 5, "min_apy": 10}, "owner": owner})
        assert r.status_code == 200
        body = r.json()
        assert body["message"]
        assert len(body["instructions"]) == 2
        assert client.get("/intents").json() == []

    def test_profile(self, client):
        r = client.get(f"/profile/{Keypair().pubkey()}")
        assert r.status_code == 200
        assert r.json()["user_account"] is None

    def test_profile_bad_key_is_400(self, client):
        assert client.get("/profile/not-a-key").status_code == 400
