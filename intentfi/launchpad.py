import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .accounts import ContributorState, LaunchpadState, LaunchState, LaunchStatus, decode_account
from .errors import EncodingError
from .rpc import ResilientRpcClient
from .signers import Signer, build_signed_transaction
from .tx_builder import (
    PubkeyLike,
    build_claim_refund_ix,
    build_claim_tokens_ix,
    build_contribute_to_launch_ix,
    build_create_token_launch_ix,
    build_finalize_launch_ix,
    build_initialize_launchpad_ix,
    build_withdraw_funds_ix,
    contributor_state_pda,
    launch_state_pda,
    launchpad_state_pda,
    to_pubkey,
)

logger = logging.getLogger("intentfi.launchpad")

TOKEN_DECIMALS = 9


class LaunchParams(BaseModel):
    token_name: str
    token_symbol: str
    token_uri: str
    soft_cap: int
    hard_cap: int
    token_price: int
    tokens_for_sale: int
    min_contribution: int
    max_contribution: int
    launch_duration: int


def is_launch_ended(launch: LaunchState, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    return now > launch.launch_end


def is_launch_successful(launch: LaunchState) -> bool:
    return launch.total_raised >= launch.soft_cap


def calculate_tokens_for_contribution(contribution: int, token_price: int) -> int:
    """Base units of a 9-decimal token bought by ``contribution`` lamports."""
    if token_price <= 0:
        raise EncodingError(f"token_price must be positive, got {token_price}")
    return contribution * 10**TOKEN_DECIMALS // token_price


def launch_dashboard(
    launch: LaunchState,
    platform: Optional[LaunchpadState] = None,
    network: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    ended = is_launch_ended(launch, now)
    successful = is_launch_successful(launch)
    percentage = min(launch.total_raised / launch.hard_cap * 100, 100.0) if launch.hard_cap else 0.0
    return {
        "launch": launch.to_dict(),
        "platform": platform.to_dict() if platform is not None else None,
        "status": {
            "is_ended": ended,
            "is_successful": successful,
            "can_finalize": ended and launch.status == LaunchStatus.ACTIVE,
            "can_withdraw": successful and launch.status == LaunchStatus.SUCCESSFUL,
        },
        "progress": {
            "percentage": percentage,
            "soft_cap_reached": launch.total_raised >= launch.soft_cap,
            "hard_cap_reached": launch.total_raised >= launch.hard_cap,
        },
        "network": network,
    }


class LaunchpadService:
    def __init__(self, rpc: ResilientRpcClient) -> None:
        self.rpc = rpc

    @property
    def program_id(self) -> Pubkey:
        return Pubkey.from_string(self.rpc.network_config.launchpad_program_id)

    async def _submit(self, signer: Signer, instructions: List[Instruction], label: str) -> str:
        blockhash = await self.rpc.get_latest_blockhash()
        tx = await build_signed_transaction(signer, instructions, blockhash)
        signature = await self.rpc.send_transaction(bytes(tx))
        await self.rpc.confirm_transaction(signature)
        self.rpc.reset_to_primary()
        logger.info("launchpad_%s signer=%s sig=%s", label, signer.pubkey, signature)
        return str(signature)

    async def initialize_launchpad(self, signer: Signer, platform_fee_bps: int, treasury_authority: PubkeyLike) -> str:
        ix = build_initialize_launchpad_ix(self.program_id, signer.pubkey, platform_fee_bps, treasury_authority)
        return await self._submit(signer, [ix], "initialized")

    async def create_token_launch(self, signer: Signer, token_mint: PubkeyLike, params: LaunchParams) -> Tuple[str, str]:
        ix = build_create_token_launch_ix(self.program_id, signer.pubkey, token_mint, params.model_dump())
        signature = await self._submit(signer, [ix], "launch_created")
        return signature, str(launch_state_pda(signer.pubkey, self.program_id)[0])

    async def contribute_to_launch(self, signer: Signer, creator: PubkeyLike, token_mint: PubkeyLike, amount: int) -> str:
        launch = launch_state_pda(creator, self.program_id)[0]
        ix = build_contribute_to_launch_ix(self.program_id, signer.pubkey, launch, token_mint, amount)
        return await self._submit(signer, [ix], "contributed")

    async def finalize_launch(self, signer: Signer, creator: PubkeyLike) -> str:
        launch = launch_state_pda(creator, self.program_id)[0]
        ix = build_finalize_launch_ix(self.program_id, signer.pubkey, launch)
        return await self._submit(signer, [ix], "finalized")

    async def claim_tokens(self, signer: Signer, creator: PubkeyLike, token_mint: PubkeyLike) -> str:
        launch = launch_state_pda(creator, self.program_id)[0]
        ix = build_claim_tokens_ix(self.program_id, signer.pubkey, launch, token_mint)
        return await self._submit(signer, [ix], "tokens_claimed")

    async def claim_refund(self, signer: Signer, creator: PubkeyLike) -> str:
        launch = launch_state_pda(creator, self.program_id)[0]
        ix = build_claim_refund_ix(self.program_id, signer.pubkey, launch)
        return await self._submit(signer, [ix], "refund_claimed")

    async def withdraw_funds(self, signer: Signer, treasury: PubkeyLike) -> str:
        launch = launch_state_pda(signer.pubkey, self.program_id)[0]
        ix = build_withdraw_funds_ix(self.program_id, signer.pubkey, launch, treasury)
        return await self._submit(signer, [ix], "funds_withdrawn")

    async def _read(self, kind: str, address: Pubkey) -> Optional[Any]:
        snapshot = await self.rpc.get_account_info(address)
        if snapshot is None:
            return None
        decoded = decode_account(kind, snapshot.data, snapshot.owner, self.program_id)
        if isinstance(decoded, Exception):
            logger.warning("launchpad_account_invalid kind=%s address=%s err=%s", kind, address, decoded)
            return None
        return decoded

    async def get_launchpad_state(self) -> Optional[LaunchpadState]:
        return await self._read("launchpad_state", launchpad_state_pda(self.program_id)[0])

    async def get_launch_state(self, creator: PubkeyLike) -> Optional[LaunchState]:
        return await self._read("launch_state", launch_state_pda(creator, self.program_id)[0])

    async def get_contributor_state(self, creator: PubkeyLike, contributor: PubkeyLike) -> Optional[ContributorState]:
        launch = launch_state_pda(creator, self.program_id)[0]
        return await self._read("contributor_state", contributor_state_pda(launch, to_pubkey(contributor), self.program_id)[0])

    async def get_launch_dashboard(self, creator: PubkeyLike) -> Optional[Dict[str, Any]]:
        launch = await self.get_launch_state(creator)
        if launch is None:
            return None
        platform = await self.get_launchpad_state()
        return launch_dashboard(launch, platform, self.rpc.current_network)
