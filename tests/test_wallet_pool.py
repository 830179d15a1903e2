"""
Tests for the funded wallet pool.
"""

import asyncio

import pytest
from solders.keypair import Keypair

from intentfi.config import DEVNET_RPC_ENDPOINTS, LAMPORTS_PER_SOL
from intentfi.errors import InsufficientFunds
from intentfi.wallet_pool import POOL_STORAGE_KEY, WalletPool


def make_pool(rpc, store, **kwargs):
    return WalletPool(rpc, store, **kwargs)


def sol(amount):
    return int(amount * LAMPORTS_PER_SOL)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_seeds_and_persists(self, rpc, store):
        pool = make_pool(rpc, store, pool_size=3)
        wallets = await pool.initialize_pool()
        assert [w.slot for w in wallets] == [0, 1, 2]
        saved = await store.load(POOL_STORAGE_KEY)
        assert [w["public_key"] for w in saved] == [w.public_key for w in wallets]

    @pytest.mark.asyncio
    async def test_reload_keeps_keys_and_drops_leases(self, rpc, store):
        first = make_pool(rpc, store)
        await first.initialize_pool()
        lease = await first.acquire_wallet()
        second = make_pool(rpc, store)
        wallets = await second.initialize_pool()
        assert lease.public_key in [w.public_key for w in wallets]
        assert not any(w.is_in_use for w in wallets)
        assert str(wallets[0].keypair().pubkey()) == wallets[0].public_key


class TestAcquire:
    @pytest.mark.asyncio
    async def test_prefers_highest_funded(self, rpc, store, chain):
        pool = make_pool(rpc, store)
        wallets = await pool.initialize_pool()
        chain.balances[wallets[0].public_key] = sol(0.02)
        chain.balances[wallets[1].public_key] = sol(0.5)
        chain.balances[wallets[2].public_key] = sol(0.005)
        lease = await pool.acquire_wallet()
        assert lease.public_key == wallets[1].public_key
        assert lease.has_funds and lease.pooled
        assert str(lease.keypair.pubkey()) == lease.public_key

    @pytest.mark.asyncio
    async def test_falls_back_to_best_small_balance(self, rpc, store, chain):
        pool = make_pool(rpc, store)
        wallets = await pool.initialize_pool()
        chain.balances[wallets[2].public_key] = sol(0.002)
        lease = await pool.acquire_wallet()
        assert lease.public_key == wallets[2].public_key
        assert lease.has_funds is True

    @pytest.mark.asyncio
    async def test_empty_pool_slot_has_no_funds(self, rpc, store):
        pool = make_pool(rpc, store)
        await pool.initialize_pool()
        lease = await pool.acquire_wallet()
        assert lease.pooled is True
        assert lease.has_funds is False

    @pytest.mark.asyncio
    async def test_exhausted_pool_issues_unpooled_keypair(self, rpc, store):
        pool = make_pool(rpc, store, pool_size=1)
        await pool.initialize_pool()
        first = await pool.acquire_wallet()
        second = await pool.acquire_wallet()
        assert second.pooled is False
        assert second.public_key != first.public_key
        assert second.has_funds is False

    @pytest.mark.asyncio
    async def test_concurrent_acquires_get_distinct_slots(self, rpc, store, chain):
        pool = make_pool(rpc, store, pool_size=3)
        wallets = await pool.initialize_pool()
        for w in wallets:
            chain.balances[w.public_key] = sol(1)
        leases = await asyncio.gather(*(pool.acquire_wallet() for _ in range(3)))
        assert len({lease.public_key for lease in leases}) == 3
        assert all(lease.pooled for lease in leases)

    @pytest.mark.asyncio
    async def test_release_makes_slot_available(self, rpc, store):
        pool = make_pool(rpc, store, pool_size=1)
        await pool.initialize_pool()
        lease = await pool.acquire_wallet()
        assert await pool.release_wallet(lease.public_key) is True
        again = await pool.acquire_wallet()
        assert again.public_key == lease.public_key
        assert again.pooled

    @pytest.mark.asyncio
    async def test_release_unknown(self, rpc, store):
        pool = make_pool(rpc, store)
        assert await pool.release_wallet(str(Keypair().pubkey())) is False

    @pytest.mark.asyncio
    async def test_balance_failure_degrades_to_zero(self, rpc, store, chain):
        pool = make_pool(rpc, store)
        wallets = await pool.initialize_pool()
        chain.balances[wallets[0].public_key] = sol(1)
        chain.balance_errors.add(wallets[0].public_key)
        chain.balances[wallets[1].public_key] = sol(0.02)
        lease = await pool.acquire_wallet()
        assert lease.public_key == wallets[1].public_key
        assert pool.get_wallet(wallets[0].public_key).balance_sol == 0.0


class TestEnsureFunded:
    @pytest.mark.asyncio
    async def test_enough_balance_skips_airdrop(self, rpc, store, chain, keypair):
        pool = make_pool(rpc, store)
        chain.balances[str(keypair.pubkey())] = sol(0.0002)
        assert await pool.ensure_funded(str(keypair.pubkey()), 0.01) is True
        assert chain.airdrops == []

    @pytest.mark.asyncio
    async def test_empty_wallet_gets_bounded_airdrop(self, rpc, store, chain, keypair):
        pool = make_pool(rpc, store)
        assert await pool.ensure_funded(str(keypair.pubkey()), 1.0) is True
        assert len(chain.airdrops) == 1
        assert chain.airdrops[0][1] <= sol(0.005)

    @pytest.mark.asyncio
    async def test_low_nonzero_balance_proceeds_without_airdrop(self, rpc, store, chain, keypair):
        pool = make_pool(rpc, store)
        chain.balances[str(keypair.pubkey())] = sol(0.00005)
        assert await pool.ensure_funded(str(keypair.pubkey()), 0.01) is True
        assert chain.airdrops == []

    @pytest.mark.asyncio
    async def test_rate_limited_airdrop_returns_false(self, rpc, store, chain, keypair):
        pool = make_pool(rpc, store)
        chain.rate_limited_endpoints.update(DEVNET_RPC_ENDPOINTS)
        assert await pool.ensure_funded(str(keypair.pubkey()), 0.01) is False

    @pytest.mark.asyncio
    async def test_mainnet_never_airdrops(self, rpc, store, chain, keypair):
        await rpc.switch_network("mainnet")
        pool = make_pool(rpc, store)
        assert await pool.ensure_funded(str(keypair.pubkey()), 0.01) is False
        assert chain.airdrops == []

    @pytest.mark.asyncio
    async def test_require_funded_surfaces_address(self, rpc, store, chain, keypair):
        await rpc.switch_network("mainnet")
        pool = make_pool(rpc, store)
        with pytest.raises(InsufficientFunds) as excinfo:
            await pool.require_funded(str(keypair.pubkey()), 0.01)
        assert excinfo.value.address == str(keypair.pubkey())
        assert excinfo.value.balance_sol == 0.0
        assert excinfo.value.kind == "insufficient_funds"
        assert "fund it manually" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_require_funded_passes_when_funded(self, rpc, store, chain, keypair):
        chain.balances[str(keypair.pubkey())] = sol(0.5)
        await make_pool(rpc, store).require_funded(str(keypair.pubkey()), 0.01)


class TestStatusAndFunding:
    @pytest.mark.asyncio
    async def test_pool_status(self, rpc, store, chain):
        pool = make_pool(rpc, store)
        wallets = await pool.initialize_pool()
        chain.balances[wallets[0].public_key] = sol(0.05)
        await pool.acquire_wallet()
        status = await pool.pool_status()
        assert status.total == 3
        assert status.funded == 1
        assert status.in_use == 1
        assert status.total_balance_sol == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_add_funded_wallet(self, rpc, store, chain, keypair):
        pool = make_pool(rpc, store)
        await pool.initialize_pool()
        chain.balances[str(keypair.pubkey())] = sol(2)
        added = await pool.add_funded_wallet(keypair)
        assert added.slot == 3
        lease = await pool.acquire_wallet()
        assert lease.public_key == str(keypair.pubkey())

    @pytest.mark.asyncio
    async def test_funding_instructions_and_clear(self, rpc, store):
        pool = make_pool(rpc, store)
        await pool.initialize_pool()
        instructions = await pool.funding_instructions()
        assert len(instructions) == 3
        assert all(item["needs_funding"] for item in instructions)
        await pool.clear()
        assert await store.load(POOL_STORAGE_KEY) is None
