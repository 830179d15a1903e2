"""Shared fixtures: an in-memory fake cluster reachable through the RPC client factory."""

import asyncio
from types import SimpleNamespace
from typing import Dict, List, Optional

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from intentfi.config import Settings, build_networks
from intentfi.rpc import ResilientRpcClient
from intentfi.runtime import build_runtime
from intentfi.storage import SnapshotStore


def rate_limit_error(url: str = "https://rpc.test") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", url)
    response = httpx.Response(429, request=request)
    return httpx.HTTPStatusError("Client error '429 Too Many Requests'", request=request, response=response)


class FakeChain:
    """Cluster state shared by every fake client regardless of endpoint."""

    def __init__(self) -> None:
        self.balances: Dict[str, int] = {}
        self.accounts: Dict[str, SimpleNamespace] = {}
        self.statuses: Dict[str, Optional[SimpleNamespace]] = {}
        self.sent: List[VersionedTransaction] = []
        self.airdrops: List[tuple] = []
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.rate_limited_endpoints: set = set()
        self.failing_methods: Dict[str, Exception] = {}
        self.balance_errors: set = set()
        self.auto_confirm = True
        self.latency = 0.0
        self.tx_error = None

    def fail_next(self, endpoint: str, *errors: Exception) -> None:
        self.failures.setdefault(endpoint, []).extend(errors)

    def set_account(self, address: Pubkey, owner: Pubkey, data: bytes, lamports: int = 1_000_000) -> None:
        self.accounts[str(address)] = SimpleNamespace(lamports=lamports, owner=owner, data=data, executable=False)

    def check(self, endpoint: str, method: str) -> None:
        self.calls.append((endpoint, method))
        if endpoint in self.rate_limited_endpoints:
            raise rate_limit_error(endpoint)
        if method in self.failing_methods:
            raise self.failing_methods[method]
        queue = self.failures.get(endpoint)
        if queue:
            raise queue.pop(0)


class FakeSolanaClient:
    def __init__(self, chain: FakeChain, endpoint: str) -> None:
        self.chain = chain
        self.endpoint = endpoint
        self.closed = False

    async def get_balance(self, pubkey):
        if self.chain.latency:
            await asyncio.sleep(self.chain.latency)
        self.chain.check(self.endpoint, "get_balance")
        if str(pubkey) in self.chain.balance_errors:
            raise RuntimeError("connection reset")
        return SimpleNamespace(value=self.chain.balances.get(str(pubkey), 0))

    async def get_account_info(self, pubkey):
        self.chain.check(self.endpoint, "get_account_info")
        return SimpleNamespace(value=self.chain.accounts.get(str(pubkey)))

    async def get_latest_blockhash(self):
        self.chain.check(self.endpoint, "get_latest_blockhash")
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.new_unique(), last_valid_block_height=100))

    async def send_raw_transaction(self, raw):
        if self.chain.latency:
            await asyncio.sleep(self.chain.latency)
        self.chain.check(self.endpoint, "send_raw_transaction")
        tx = VersionedTransaction.from_bytes(raw)
        self.chain.sent.append(tx)
        signature = tx.signatures[0]
        if self.chain.tx_error is not None:
            self.chain.statuses[str(signature)] = SimpleNamespace(
                confirmation_status="processed", err=self.chain.tx_error, slot=1
            )
        elif self.chain.auto_confirm:
            self.chain.statuses[str(signature)] = SimpleNamespace(confirmation_status="confirmed", err=None, slot=1)
        return SimpleNamespace(value=signature)

    async def get_signature_statuses(self, signatures):
        self.chain.check(self.endpoint, "get_signature_statuses")
        return SimpleNamespace(value=[self.chain.statuses.get(str(sig)) for sig in signatures])

    async def request_airdrop(self, pubkey, lamports):
        self.chain.check(self.endpoint, "request_airdrop")
        signature = Signature.new_unique()
        self.chain.airdrops.append((str(pubkey), lamports))
        self.chain.balances[str(pubkey)] = self.chain.balances.get(str(pubkey), 0) + lamports
        self.chain.statuses[str(signature)] = SimpleNamespace(confirmation_status="finalized", err=None, slot=1)
        return SimpleNamespace(value=signature)

    async def close(self):
        self.closed = True


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        confirm_timeout_seconds=0.3,
        confirm_poll_seconds=0.01,
        duplicate_window_seconds=5.0,
    )


@pytest.fixture
def client_factory(chain):
    def factory(endpoint, network):
        return FakeSolanaClient(chain, endpoint)

    return factory


@pytest.fixture
def rpc(settings, client_factory):
    return ResilientRpcClient(
        build_networks(settings),
        network="devnet",
        client_factory=client_factory,
        confirm_timeout=settings.confirm_timeout_seconds,
        poll_interval=settings.confirm_poll_seconds,
    )


@pytest.fixture
def store():
    return SnapshotStore("sqlite://")


@pytest.fixture
def runtime(settings, client_factory, store):
    return build_runtime(settings, client_factory=client_factory, store=store)


@pytest.fixture
def keypair():
    return Keypair()
