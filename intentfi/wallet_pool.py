import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .config import lamports_to_sol, sol_to_lamports
from .errors import InsufficientFunds, IntentFiError
from .rpc import ResilientRpcClient
from .signers import LocalSigner
from .storage import SnapshotStore

logger = logging.getLogger("intentfi.wallet_pool")

POOL_STORAGE_KEY = "wallet_pool"
# Anything at or below this is treated as an empty wallet after a failed top-up.
DUST_SOL = 0.00001
DEVNET_FAUCET_URL = "https://faucet.solana.com"


class PooledWallet(BaseModel):
    slot: int
    public_key: str
    secret_key: str
    balance_sol: float = 0.0
    last_checked_at: float = 0.0
    is_in_use: bool = False

    def keypair(self) -> Keypair:
        return Keypair.from_base58_string(self.secret_key)

    @classmethod
    def from_keypair(cls, slot: int, keypair: Keypair, balance_sol: float = 0.0) -> "PooledWallet":
        return cls(
            slot=slot,
            public_key=str(keypair.pubkey()),
            secret_key=str(keypair),
            balance_sol=balance_sol,
        )


@dataclass
class WalletLease:
    public_key: str
    keypair: Keypair
    has_funds: bool
    balance_sol: float
    pooled: bool
    slot: Optional[int] = None

    @property
    def signer(self) -> LocalSigner:
        return LocalSigner(self.keypair)


class PoolStatus(BaseModel):
    total: int
    funded: int
    in_use: int
    total_balance_sol: float


class WalletPool:
    """Arena of pre-generated keypairs handed out one holder at a time."""

    def __init__(
        self,
        rpc: ResilientRpcClient,
        store: SnapshotStore,
        pool_size: int = 3,
        funded_threshold_sol: float = 0.01,
        usable_threshold_sol: float = 0.001,
        practical_minimum_sol: float = 0.0001,
        airdrop_sol: float = 0.005,
    ) -> None:
        self.rpc = rpc
        self.store = store
        self.pool_size = pool_size
        self.funded_threshold_sol = funded_threshold_sol
        self.usable_threshold_sol = usable_threshold_sol
        self.practical_minimum_sol = practical_minimum_sol
        self.airdrop_sol = airdrop_sol
        self._wallets: List[PooledWallet] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def wallets(self) -> List[PooledWallet]:
        return list(self._wallets)

    async def _persist(self) -> None:
        await self.store.save(POOL_STORAGE_KEY, [w.model_dump() for w in self._wallets])

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        raw = await self.store.load(POOL_STORAGE_KEY) or []
        wallets = []
        for item in raw:
            try:
                wallet = PooledWallet.model_validate(item)
            except ValueError as exc:
                logger.error("pool_slot_invalid err=%s", exc)
                continue
            # leases do not survive a restart
            wallet.is_in_use = False
            wallets.append(wallet)
        if not wallets:
            wallets = [PooledWallet.from_keypair(slot, Keypair()) for slot in range(self.pool_size)]
            logger.info("pool_seeded size=%s", len(wallets))
        self._wallets = wallets
        self._loaded = True
        await self._persist()

    async def initialize_pool(self) -> List[PooledWallet]:
        async with self._lock:
            await self._ensure_loaded()
            return self.wallets

    async def _check_balance(self, public_key: str) -> float:
        try:
            lamports = await self.rpc.get_balance(Pubkey.from_string(public_key))
        except IntentFiError as exc:
            logger.warning("pool_balance_check_failed wallet=%s err=%s", public_key, exc)
            return 0.0
        return lamports_to_sol(lamports)

    async def refresh_balances(self) -> None:
        async with self._lock:
            await self._ensure_loaded()
            idle = [w for w in self._wallets if not w.is_in_use]
        for wallet in idle:
            wallet.balance_sol = await self._check_balance(wallet.public_key)
            wallet.last_checked_at = time.time()

    async def acquire_wallet(self) -> WalletLease:
        await self.refresh_balances()
        async with self._lock:
            idle = [w for w in self._wallets if not w.is_in_use]
            funded = [w for w in idle if w.balance_sol >= self.funded_threshold_sol]
            if funded:
                chosen = max(funded, key=lambda w: w.balance_sol)
            elif idle:
                chosen = max(idle, key=lambda w: w.balance_sol)
            else:
                keypair = Keypair()
                logger.warning("pool_exhausted issuing_unpooled wallet=%s", keypair.pubkey())
                return WalletLease(
                    public_key=str(keypair.pubkey()),
                    keypair=keypair,
                    has_funds=False,
                    balance_sol=0.0,
                    pooled=False,
                )
            chosen.is_in_use = True
            await self._persist()
        has_funds = chosen.balance_sol >= self.usable_threshold_sol
        logger.info(
            "pool_acquired slot=%s wallet=%s balance=%.6f has_funds=%s",
            chosen.slot,
            chosen.public_key,
            chosen.balance_sol,
            has_funds,
        )
        return WalletLease(
            public_key=chosen.public_key,
            keypair=chosen.keypair(),
            has_funds=has_funds,
            balance_sol=chosen.balance_sol,
            pooled=True,
            slot=chosen.slot,
        )

    async def release_wallet(self, public_key: str) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            for wallet in self._wallets:
                if wallet.public_key == public_key:
                    wallet.is_in_use = False
                    await self._persist()
                    logger.info("pool_released slot=%s wallet=%s", wallet.slot, public_key)
                    return True
        logger.info("pool_release_unknown wallet=%s", public_key)
        return False

    def get_wallet(self, public_key: str) -> Optional[PooledWallet]:
        for wallet in self._wallets:
            if wallet.public_key == public_key:
                return wallet
        return None

    async def ensure_funded(self, public_key: str, min_amount: float = 0.001) -> bool:
        """Best effort: True when the wallet can reasonably pay for a transaction."""
        practical = min(min_amount, self.practical_minimum_sol)
        balance = await self._check_balance(public_key)
        if balance >= practical:
            return True
        if balance == 0:
            amount = min(max(min_amount, practical), self.airdrop_sol)
            try:
                signature = await self.rpc.request_airdrop(Pubkey.from_string(public_key), sol_to_lamports(amount))
                await self.rpc.confirm_transaction(signature)
                logger.info("pool_airdrop_confirmed wallet=%s amount=%s sig=%s", public_key, amount, signature)
            except IntentFiError as exc:
                logger.warning("pool_airdrop_failed wallet=%s kind=%s err=%s", public_key, exc.kind, exc)
            balance = await self._check_balance(public_key)
            if balance >= practical:
                return True
        if balance > DUST_SOL:
            logger.info("pool_proceeding_low_balance wallet=%s balance=%.6f", public_key, balance)
            return True
        logger.warning("pool_needs_manual_funding wallet=%s faucet=%s", public_key, DEVNET_FAUCET_URL)
        return False

    async def require_funded(self, public_key: str, min_amount: float = 0.001) -> None:
        """Like ``ensure_funded`` but raises ``InsufficientFunds`` carrying the address to fund."""
        if not await self.ensure_funded(public_key, min_amount):
            balance = await self._check_balance(public_key)
            raise InsufficientFunds(public_key, balance, min_amount)

    async def pool_status(self) -> PoolStatus:
        async with self._lock:
            await self._ensure_loaded()
            wallets = list(self._wallets)
        return PoolStatus(
            total=len(wallets),
            funded=sum(1 for w in wallets if w.balance_sol >= self.funded_threshold_sol),
            in_use=sum(1 for w in wallets if w.is_in_use),
            total_balance_sol=sum(w.balance_sol for w in wallets),
        )

    async def add_funded_wallet(self, keypair: Keypair) -> PooledWallet:
        balance = await self._check_balance(str(keypair.pubkey()))
        async with self._lock:
            await self._ensure_loaded()
            existing = self.get_wallet(str(keypair.pubkey()))
            if existing is not None:
                existing.balance_sol = balance
                existing.last_checked_at = time.time()
                wallet = existing
            else:
                slot = max((w.slot for w in self._wallets), default=-1) + 1
                wallet = PooledWallet.from_keypair(slot, keypair, balance)
                wallet.last_checked_at = time.time()
                self._wallets.append(wallet)
            await self._persist()
        logger.info("pool_wallet_added slot=%s wallet=%s balance=%.6f", wallet.slot, wallet.public_key, balance)
        return wallet

    async def funding_instructions(self) -> List[dict]:
        await self.refresh_balances()
        return [
            {
                "slot": w.slot,
                "public_key": w.public_key,
                "balance_sol": w.balance_sol,
                "needs_funding": w.balance_sol < self.funded_threshold_sol,
                "faucet": DEVNET_FAUCET_URL,
            }
            for w in self._wallets
        ]

    async def clear(self) -> None:
        async with self._lock:
            self._wallets = []
            self._loaded = False
            await self.store.delete(POOL_STORAGE_KEY)
        logger.info("pool_cleared")
