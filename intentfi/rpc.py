import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import httpx
from pydantic import BaseModel
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature

from .config import NetworkConfig, Settings
from .errors import (
    ConfirmationTimeout,
    NotSupportedOnMainnet,
    RateLimited,
    RpcError,
    TransactionFailed,
    UnknownNetwork,
)

logger = logging.getLogger("intentfi.rpc")

T = TypeVar("T")
ClientFactory = Callable[[str, NetworkConfig], Any]

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def is_rate_limited(exc: BaseException) -> bool:
    """True when the error (or anything it was raised from) signals HTTP/JSON-RPC 429."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, httpx.HTTPStatusError) and current.response.status_code == 429:
            return True
        if getattr(current, "status_code", None) == 429 or getattr(current, "code", None) == 429:
            return True
        for arg in getattr(current, "args", ()):
            if isinstance(arg, dict) and arg.get("code") == 429:
                return True
            if getattr(arg, "code", None) == 429:
                return True
        if "too many requests" in str(current).lower():
            return True
        current = current.__cause__ or current.__context__
    return False


def commitment_level(status: Any) -> Optional[str]:
    """Normalize a confirmation status (solders enum, string or None) to processed/confirmed/finalized."""
    if status is None:
        return None
    name = str(status).rsplit(".", 1)[-1].lower()
    return name if name in COMMITMENT_RANK else None


@dataclass
class AccountSnapshot:
    lamports: int
    owner: Pubkey
    data: bytes
    executable: bool = False


@dataclass
class SignatureStatus:
    signature: str
    confirmation_status: Optional[str]
    err: Any = None
    slot: Optional[int] = None


class RpcStatus(BaseModel):
    network: str
    endpoint: str
    index: int
    endpoint_count: int
    rate_limit_count: int


def default_client_factory(settings: Settings) -> ClientFactory:
    def factory(endpoint: str, network: NetworkConfig) -> AsyncClient:
        return AsyncClient(
            endpoint,
            commitment=Commitment(network.commitment),
            timeout=settings.request_timeout_seconds,
        )

    return factory


class ResilientRpcClient:
    """Ranked endpoint list per network with rate-limit rotation.

    The client is the only place RPC calls are retried: a rate-limit signal
    moves to the next endpoint, any other transport error gets one more try on
    the same endpoint before surfacing as ``RpcError``.
    """

    def __init__(
        self,
        networks: Dict[str, NetworkConfig],
        network: str = "devnet",
        client_factory: Optional[ClientFactory] = None,
        confirm_timeout: float = 30.0,
        poll_interval: float = 1.0,
    ) -> None:
        if network not in networks:
            raise UnknownNetwork(network)
        self.networks = networks
        self._network = network
        self._client_factory = client_factory or default_client_factory(Settings())
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._index = 0
        self._rate_limit_count = 0
        self._clients: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Endpoint state
    # ------------------------------------------------------------------

    @property
    def current_network(self) -> str:
        return self._network

    @property
    def network_config(self) -> NetworkConfig:
        return self.networks[self._network]

    @property
    def endpoints(self) -> List[str]:
        return self.network_config.rpc_endpoints

    @property
    def index(self) -> int:
        return self._index

    @property
    def endpoint(self) -> str:
        return self.endpoints[self._index]

    def status(self) -> RpcStatus:
        return RpcStatus(
            network=self._network,
            endpoint=self.endpoint,
            index=self._index,
            endpoint_count=len(self.endpoints),
            rate_limit_count=self._rate_limit_count,
        )

    def reset_to_primary(self) -> None:
        if self._index != 0:
            logger.info("rpc_reset_to_primary network=%s endpoint=%s", self._network, self.endpoints[0])
        self._index = 0

    def _rotate_from(self, index: int) -> None:
        # another caller may already have moved on from this endpoint
        if self._index != index or index >= len(self.endpoints) - 1:
            return
        self._index = index + 1
        logger.warning("rpc_rotated index=%s endpoint=%s", self._index, self.endpoint)

    async def switch_network(self, network: str) -> NetworkConfig:
        if network not in self.networks:
            raise UnknownNetwork(network)
        if network != self._network:
            await self.close()
            logger.info("rpc_network_switched from=%s to=%s", self._network, network)
        self._network = network
        self._index = 0
        return self.network_config

    def _client(self, endpoint: str) -> Any:
        client = self._clients.get(endpoint)
        if client is None:
            client = self._client_factory(endpoint, self.network_config)
            self._clients[endpoint] = client
        return client

    async def close(self) -> None:
        clients, self._clients = self._clients, {}
        for endpoint, client in clients.items():
            try:
                await client.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("rpc_close_failed endpoint=%s err=%s", endpoint, exc)

    async def _call(self, name: str, fn: Callable[[Any], Awaitable[T]]) -> T:
        retried = False
        while True:
            index = self._index
            endpoint = self.endpoints[index]
            try:
                return await fn(self._client(endpoint))
            except Exception as exc:  # noqa: BLE001
                if is_rate_limited(exc):
                    self._rate_limit_count += 1
                    if index >= len(self.endpoints) - 1:
                        logger.error("rpc_rate_limited network=%s endpoint=%s op=%s", self._network, endpoint, name)
                        raise RateLimited(self._network, endpoint) from exc
                    self._rotate_from(index)
                    retried = False
                    continue
                if not retried:
                    retried = True
                    logger.warning("rpc_retry op=%s endpoint=%s err=%s", name, endpoint, exc)
                    continue
                raise RpcError(f"{name} failed on {endpoint}: {exc}") from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_balance(self, address: Pubkey) -> int:
        resp = await self._call("get_balance", lambda c: c.get_balance(address))
        return int(resp.value)

    async def get_account_info(self, address: Pubkey) -> Optional[AccountSnapshot]:
        resp = await self._call("get_account_info", lambda c: c.get_account_info(address))
        value = resp.value
        if value is None:
            return None
        return AccountSnapshot(
            lamports=value.lamports,
            owner=value.owner,
            data=bytes(value.data),
            executable=bool(getattr(value, "executable", False)),
        )

    async def get_latest_blockhash(self) -> Hash:
        resp = await self._call("get_latest_blockhash", lambda c: c.get_latest_blockhash())
        return resp.value.blockhash

    async def send_transaction(self, signed: Union[bytes, Any]) -> Signature:
        raw = signed if isinstance(signed, (bytes, bytearray)) else bytes(signed)
        resp = await self._call("send_transaction", lambda c: c.send_raw_transaction(bytes(raw)))
        return resp.value

    async def get_signature_status(self, signature: Union[Signature, str]) -> Optional[SignatureStatus]:
        sig = signature if isinstance(signature, Signature) else Signature.from_string(signature)
        resp = await self._call("get_signature_statuses", lambda c: c.get_signature_statuses([sig]))
        value = resp.value[0] if resp.value else None
        if value is None:
            return None
        return SignatureStatus(
            signature=str(sig),
            confirmation_status=commitment_level(value.confirmation_status),
            err=value.err,
            slot=getattr(value, "slot", None),
        )

    async def confirm_transaction(
        self,
        signature: Union[Signature, str],
        commitment: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Signature:
        sig = signature if isinstance(signature, Signature) else Signature.from_string(signature)
        wanted = COMMITMENT_RANK.get((commitment or self.network_config.commitment).lower(), 1)
        timeout = self.confirm_timeout if timeout is None else timeout

        async def poll() -> Signature:
            while True:
                status = await self.get_signature_status(sig)
                if status is not None:
                    if status.err is not None:
                        raise TransactionFailed(str(sig), status.err)
                    level = status.confirmation_status
                    if level is not None and COMMITMENT_RANK[level] >= wanted:
                        return sig
                await asyncio.sleep(self.poll_interval)

        try:
            return await asyncio.wait_for(poll(), timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("rpc_confirm_timeout signature=%s timeout=%s", sig, timeout)
            raise ConfirmationTimeout(str(sig), timeout) from exc

    async def request_airdrop(self, address: Pubkey, lamports: int) -> Signature:
        if not self.network_config.airdrop_enabled:
            raise NotSupportedOnMainnet(self._network)
        resp = await self._call("request_airdrop", lambda c: c.request_airdrop(address, lamports))
        return resp.value
