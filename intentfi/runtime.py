import logging
from typing import Any, Dict, Optional

from .config import NetworkConfig, Settings, build_networks
from .intents import IntentTracker
from .launchpad import LaunchpadService
from .rpc import ClientFactory, ResilientRpcClient, default_client_factory
from .signers import LocalSigner
from .storage import SnapshotStore
from .wallet_pool import WalletLease, WalletPool

logger = logging.getLogger("intentfi.runtime")


class Runtime:
    """Service container wiring the RPC client, pool, tracker and launchpad together."""

    def __init__(
        self,
        settings: Settings,
        store: SnapshotStore,
        rpc: ResilientRpcClient,
    ) -> None:
        self.settings = settings
        self.store = store
        self.rpc = rpc
        self.pool = WalletPool(
            rpc,
            store,
            pool_size=settings.pool_size,
            funded_threshold_sol=settings.funded_threshold_sol,
            usable_threshold_sol=settings.usable_threshold_sol,
            practical_minimum_sol=settings.practical_minimum_sol,
            airdrop_sol=settings.airdrop_sol,
        )
        self.tracker = IntentTracker(
            rpc,
            store,
            confirm_timeout=settings.confirm_timeout_seconds,
            duplicate_window=settings.duplicate_window_seconds,
        )
        self.launchpad = LaunchpadService(rpc)
        self._leases: Dict[str, WalletLease] = {}

    async def acquire_wallet(self) -> WalletLease:
        lease = await self.pool.acquire_wallet()
        self._leases[lease.public_key] = lease
        return lease

    async def release_wallet(self, public_key: str) -> bool:
        lease = self._leases.pop(public_key, None)
        released = await self.pool.release_wallet(public_key)
        return released or lease is not None

    def signer_for(self, public_key: str) -> Optional[LocalSigner]:
        lease = self._leases.get(public_key)
        if lease is not None:
            return lease.signer
        wallet = self.pool.get_wallet(public_key)
        if wallet is not None:
            return LocalSigner(wallet.keypair())
        return None

    async def switch_network(self, network: str) -> NetworkConfig:
        return await self.rpc.switch_network(network)

    def get_current_network(self) -> Dict[str, Any]:
        config = self.rpc.network_config
        return {
            "network": config.name,
            "label": config.label,
            "is_mainnet": config.is_mainnet,
            "intent_program_id": config.intent_program_id,
            "launchpad_program_id": config.launchpad_program_id,
            "rpc": self.rpc.status().model_dump(),
        }

    async def close(self) -> None:
        await self.tracker.close()
        await self.rpc.close()


def build_runtime(
    settings: Optional[Settings] = None,
    client_factory: Optional[ClientFactory] = None,
    store: Optional[SnapshotStore] = None,
) -> Runtime:
    settings = settings or Settings()
    rpc = ResilientRpcClient(
        build_networks(settings),
        network=settings.default_network,
        client_factory=client_factory or default_client_factory(settings),
        confirm_timeout=settings.confirm_timeout_seconds,
        poll_interval=settings.confirm_poll_seconds,
    )
    store = store or SnapshotStore(settings.database_url)
    logger.info("runtime_built network=%s db=%s", settings.default_network, settings.database_url)
    return Runtime(settings, store, rpc)


_runtime: Optional[Runtime] = None


def get_runtime(settings: Optional[Settings] = None) -> Runtime:
    """Process-wide runtime; built on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(settings)
    return _runtime
