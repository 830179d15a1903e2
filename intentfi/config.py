from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


DEVNET_RPC_ENDPOINTS = [
    "https://api.devnet.solana.com",
    "https://devnet.rpcpool.com",
    "https://solana-devnet.rpc.extrnode.com",
    "https://rpc-devnet.solflare.com",
]

MAINNET_RPC_ENDPOINTS = [
    "https://api.mainnet-beta.solana.com",
    "https://rpc.ankr.com/solana",
    "https://mainnet.rpcpool.com",
    "https://rpc.hellomoon.io",
]

DEVNET_INTENT_PROGRAM_ID = "2UPCMZ2LESPx8wU83wdng3Yjhx2yxRLEkEDYDkNUg1jd"
DEVNET_LAUNCHPAD_PROGRAM_ID = "5y2X9WML5ttrWrxzUfGrLSxbXfEcKTyV1dDyw2jXW1Zg"
# Mainnet programs are not deployed yet; the placeholder keeps the table well formed.
MAINNET_PLACEHOLDER_PROGRAM_ID = "11111111111111111111111111111112"

DEVNET_USDC_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
MAINNET_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

LAMPORTS_PER_SOL = 1_000_000_000


class NetworkConfig(BaseModel):
    name: str
    label: str
    rpc_endpoints: List[str]
    ws_endpoint: str
    intent_program_id: str
    launchpad_program_id: str
    usdc_mint: str
    commitment: str = "confirmed"
    airdrop_enabled: bool = False

    @property
    def is_mainnet(self) -> bool:
        return self.name.startswith("mainnet")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="INTENTFI_",
        extra="ignore",
    )

    default_network: str = "devnet"
    devnet_rpc_endpoints: Optional[str] = None  # comma-separated override, ranked
    mainnet_rpc_endpoints: Optional[str] = None  # comma-separated override, ranked
    devnet_ws_endpoint: str = "wss://api.devnet.solana.com"
    mainnet_ws_endpoint: str = "wss://api.mainnet-beta.solana.com"
    devnet_intent_program_id: str = DEVNET_INTENT_PROGRAM_ID
    devnet_launchpad_program_id: str = DEVNET_LAUNCHPAD_PROGRAM_ID
    mainnet_intent_program_id: str = MAINNET_PLACEHOLDER_PROGRAM_ID
    mainnet_launchpad_program_id: str = MAINNET_PLACEHOLDER_PROGRAM_ID
    commitment: str = "confirmed"

    database_url: str = "sqlite:///./intentfi.db"
    log_level: str = "INFO"

    pool_size: int = 3
    funded_threshold_sol: float = 0.01
    usable_threshold_sol: float = 0.001  # "even small amounts can work"
    practical_minimum_sol: float = 0.0001
    airdrop_sol: float = 0.005

    request_timeout_seconds: float = 20.0
    confirm_timeout_seconds: float = 30.0
    confirm_poll_seconds: float = 1.0
    duplicate_window_seconds: float = 5.0

    @staticmethod
    def _split(raw: Optional[str], fallback: List[str]) -> List[str]:
        if not raw:
            return list(fallback)
        items = [part.strip() for part in raw.split(",") if part.strip()]
        return items or list(fallback)

    def devnet_endpoints(self) -> List[str]:
        return self._split(self.devnet_rpc_endpoints, DEVNET_RPC_ENDPOINTS)

    def mainnet_endpoints(self) -> List[str]:
        return self._split(self.mainnet_rpc_endpoints, MAINNET_RPC_ENDPOINTS)


def build_networks(settings: Settings) -> Dict[str, NetworkConfig]:
    """Named network table. Each network owns its ranked endpoint list."""
    return {
        "devnet": NetworkConfig(
            name="devnet",
            label="Devnet",
            rpc_endpoints=settings.devnet_endpoints(),
            ws_endpoint=settings.devnet_ws_endpoint,
            intent_program_id=settings.devnet_intent_program_id,
            launchpad_program_id=settings.devnet_launchpad_program_id,
            usdc_mint=DEVNET_USDC_MINT,
            commitment=settings.commitment,
            airdrop_enabled=True,
        ),
        "mainnet": NetworkConfig(
            name="mainnet",
            label="Mainnet",
            rpc_endpoints=settings.mainnet_endpoints(),
            ws_endpoint=settings.mainnet_ws_endpoint,
            intent_program_id=settings.mainnet_intent_program_id,
            launchpad_program_id=settings.mainnet_launchpad_program_id,
            usdc_mint=MAINNET_USDC_MINT,
            commitment=settings.commitment,
            airdrop_enabled=False,
        ),
    }


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))
