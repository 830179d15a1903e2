"""
Tests for the resilient RPC client: rotation, retry, confirmation and network switching.
"""

import asyncio
from types import SimpleNamespace

import pytest
from solders.keypair import Keypair
from solders.signature import Signature

from intentfi.config import (
    DEVNET_INTENT_PROGRAM_ID,
    DEVNET_LAUNCHPAD_PROGRAM_ID,
    DEVNET_RPC_ENDPOINTS,
    MAINNET_RPC_ENDPOINTS,
)
from intentfi.errors import (
    ConfirmationTimeout,
    NotSupportedOnMainnet,
    RateLimited,
    RpcError,
    TransactionFailed,
    UnknownNetwork,
)
from intentfi.rpc import commitment_level, is_rate_limited

from .conftest import rate_limit_error


# =============================================================================
# Rate-limit detection
# =============================================================================


class TestRateLimitDetection:
    def test_http_status(self):
        assert is_rate_limited(rate_limit_error())

    def test_wrapped_cause(self):
        try:
            try:
                raise rate_limit_error()
            except Exception as inner:
                raise RuntimeError("request failed") from inner
        except RuntimeError as outer:
            assert is_rate_limited(outer)

    def test_jsonrpc_code(self):
        assert is_rate_limited(RuntimeError({"code": 429, "message": "slow down"}))

    def test_message_text(self):
        assert is_rate_limited(RuntimeError("Too Many Requests"))

    def test_other_errors(self):
        assert not is_rate_limited(RuntimeError("connection reset by peer"))

    def test_digits_in_signature_text_are_not_a_rate_limit(self):
        assert not is_rate_limited(RuntimeError("Transaction 4294aBc9Kx failed to land"))


# =============================================================================
# Rotation
# =============================================================================


class TestRotation:
    @pytest.mark.asyncio
    async def test_rotates_on_rate_limit(self, rpc, chain, keypair):
        chain.fail_next(DEVNET_RPC_ENDPOINTS[0], rate_limit_error())
        chain.balances[str(keypair.pubkey())] = 42
        assert await rpc.get_balance(keypair.pubkey()) == 42
        assert rpc.index == 1
        assert rpc.endpoint == DEVNET_RPC_ENDPOINTS[1]
        assert rpc.status().rate_limit_count == 1

    @pytest.mark.asyncio
    async def test_rate_limited_at_last_endpoint(self, rpc, chain, keypair):
        chain.rate_limited_endpoints.update(DEVNET_RPC_ENDPOINTS)
        with pytest.raises(RateLimited) as excinfo:
            await rpc.get_balance(keypair.pubkey())
        assert excinfo.value.network == "devnet"
        assert rpc.index == len(DEVNET_RPC_ENDPOINTS) - 1
        # stays parked on the last endpoint
        with pytest.raises(RateLimited):
            await rpc.get_balance(keypair.pubkey())
        assert rpc.index == len(DEVNET_RPC_ENDPOINTS) - 1

    @pytest.mark.asyncio
    async def test_reset_to_primary(self, rpc, chain, keypair):
        chain.fail_next(DEVNET_RPC_ENDPOINTS[0], rate_limit_error())
        await rpc.get_balance(keypair.pubkey())
        rpc.reset_to_primary()
        assert rpc.index == 0

    @pytest.mark.asyncio
    async def test_transport_error_retried_once_on_same_endpoint(self, rpc, chain, keypair):
        chain.fail_next(DEVNET_RPC_ENDPOINTS[0], RuntimeError("connection reset"))
        assert await rpc.get_balance(keypair.pubkey()) == 0
        assert rpc.index == 0
        assert chain.calls == [(DEVNET_RPC_ENDPOINTS[0], "get_balance")] * 2

    @pytest.mark.asyncio
    async def test_transport_error_surfaces_after_retry(self, rpc, chain, keypair):
        chain.fail_next(DEVNET_RPC_ENDPOINTS[0], RuntimeError("reset"), RuntimeError("reset again"))
        with pytest.raises(RpcError) as excinfo:
            await rpc.get_balance(keypair.pubkey())
        assert not isinstance(excinfo.value, RateLimited)
        assert rpc.index == 0

    @pytest.mark.asyncio
    async def test_concurrent_rate_limits_rotate_once(self, rpc, chain, keypair):
        chain.latency = 0.01
        chain.rate_limited_endpoints.add(DEVNET_RPC_ENDPOINTS[0])
        chain.balances[str(keypair.pubkey())] = 7
        results = await asyncio.gather(*(rpc.get_balance(keypair.pubkey()) for _ in range(4)))
        assert results == [7, 7, 7, 7]
        assert rpc.index == 1
        assert {endpoint for endpoint, _ in chain.calls} == set(DEVNET_RPC_ENDPOINTS[:2])


# =============================================================================
# Networks
# =============================================================================


class TestNetworks:
    @pytest.mark.asyncio
    async def test_switch_resets_rotation(self, rpc, chain, keypair):
        chain.fail_next(DEVNET_RPC_ENDPOINTS[0], rate_limit_error())
        await rpc.get_balance(keypair.pubkey())
        assert rpc.index == 1
        config = await rpc.switch_network("mainnet")
        assert config.name == "mainnet"
        assert rpc.index == 0
        assert rpc.endpoint == MAINNET_RPC_ENDPOINTS[0]

    @pytest.mark.asyncio
    async def test_switch_back_restores_devnet_programs(self, rpc, chain, keypair):
        await rpc.switch_network("mainnet")
        chain.fail_next(MAINNET_RPC_ENDPOINTS[0], rate_limit_error())
        await rpc.get_balance(keypair.pubkey())
        assert rpc.index == 1
        config = await rpc.switch_network("devnet")
        assert config.intent_program_id == DEVNET_INTENT_PROGRAM_ID
        assert config.launchpad_program_id == DEVNET_LAUNCHPAD_PROGRAM_ID
        assert config.rpc_endpoints == DEVNET_RPC_ENDPOINTS
        assert rpc.index == 0
        assert rpc.endpoint == DEVNET_RPC_ENDPOINTS[0]

    @pytest.mark.asyncio
    async def test_unknown_network(self, rpc):
        with pytest.raises(UnknownNetwork):
            await rpc.switch_network("testnet-9")
        assert rpc.current_network == "devnet"

    @pytest.mark.asyncio
    async def test_airdrop_rejected_on_mainnet(self, rpc, chain, keypair):
        await rpc.switch_network("mainnet")
        with pytest.raises(NotSupportedOnMainnet):
            await rpc.request_airdrop(keypair.pubkey(), 1000)
        assert chain.airdrops == []

    @pytest.mark.asyncio
    async def test_airdrop_on_devnet(self, rpc, chain, keypair):
        signature = await rpc.request_airdrop(keypair.pubkey(), 1000)
        assert isinstance(signature, Signature)
        assert chain.airdrops == [(str(keypair.pubkey()), 1000)]


# =============================================================================
# Confirmation
# =============================================================================


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_confirmed(self, rpc, chain):
        sig = Signature.new_unique()
        chain.statuses[str(sig)] = SimpleNamespace(confirmation_status="confirmed", err=None, slot=5)
        assert await rpc.confirm_transaction(sig) == sig

    @pytest.mark.asyncio
    async def test_processed_is_not_enough_for_confirmed(self, rpc, chain):
        sig = Signature.new_unique()
        chain.statuses[str(sig)] = SimpleNamespace(confirmation_status="processed", err=None, slot=5)
        with pytest.raises(ConfirmationTimeout):
            await rpc.confirm_transaction(sig, commitment="confirmed", timeout=0.05)

    @pytest.mark.asyncio
    async def test_timeout_carries_signature(self, rpc):
        sig = Signature.new_unique()
        with pytest.raises(ConfirmationTimeout) as excinfo:
            await rpc.confirm_transaction(sig, timeout=0.05)
        assert excinfo.value.signature == str(sig)
        assert "check status again" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_transaction_error(self, rpc, chain):
        sig = Signature.new_unique()
        chain.statuses[str(sig)] = SimpleNamespace(confirmation_status="processed", err="InstructionError", slot=5)
        with pytest.raises(TransactionFailed):
            await rpc.confirm_transaction(sig)

    @pytest.mark.asyncio
    async def test_account_info_missing(self, rpc):
        assert await rpc.get_account_info(Keypair().pubkey()) is None


class TestCommitmentLevel:
    def test_enum_style_names(self):
        assert commitment_level("TransactionConfirmationStatus.Finalized") == "finalized"
        assert commitment_level("confirmed") == "confirmed"
        assert commitment_level(None) is None
