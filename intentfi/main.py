import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import Settings
from .errors import (
    EncodingError,
    InsufficientFunds,
    IntentFiError,
    NotSupportedOnMainnet,
    RateLimited,
    RpcError,
    SignerError,
    UnknownNetwork,
)
from .intents import TrackedIntent
from .runtime import Runtime, get_runtime
from .wallet_pool import DEVNET_FAUCET_URL, PoolStatus

logger = logging.getLogger("intentfi")


class CreateIntentRequest(BaseModel):
    type: str
    params: Dict[str, Any]
    wallet: str


class BuildIntentRequest(BaseModel):
    type: str
    params: Dict[str, Any]
    owner: str


class CreateIntentResponse(BaseModel):
    id: str
    status: str


class WalletRequest(BaseModel):
    public_key: str


class EnsureFundedRequest(BaseModel):
    public_key: str
    min_amount: float = 0.001


class WalletLeaseResponse(BaseModel):
    public_key: str
    has_funds: bool
    balance_sol: float
    pooled: bool
    slot: Optional[int] = None


class NetworkRequest(BaseModel):
    network: str


def http_error(exc: IntentFiError) -> HTTPException:
    if isinstance(exc, (EncodingError, UnknownNetwork, NotSupportedOnMainnet, SignerError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RateLimited):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, RpcError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API around an explicit runtime.

    Run with ``uvicorn intentfi.main:create_app --factory``.
    """
    settings = runtime.settings if runtime is not None else Settings()
    logging.basicConfig(level=settings.log_level.upper())
    rt = runtime if runtime is not None else get_runtime(settings)

    app = FastAPI(title="IntentFi Runtime API", version="0.1.0")
    app.state.runtime = rt

    @app.on_event("startup")
    async def startup_event():
        await rt.pool.initialize_pool()
        logger.info("api_started network=%s", rt.rpc.current_network)

    @app.on_event("shutdown")
    async def shutdown_event():
        await rt.close()

    @app.get("/health")
    def health():
        return {"status": "ok", "network": rt.rpc.current_network}

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    @app.post("/intents", response_model=CreateIntentResponse)
    async def create_intent(req: CreateIntentRequest):
        signer = rt.signer_for(req.wallet)
        if signer is None:
            raise HTTPException(status_code=404, detail=f"Wallet {req.wallet} is not held by this runtime")
        try:
            intent_id = await rt.tracker.create_intent(req.type, req.params, signer)
        except IntentFiError as exc:
            raise http_error(exc) from exc
        record = rt.tracker.get_intent(intent_id)
        return CreateIntentResponse(id=intent_id, status=record.status.value if record else "pending")

    @app.post("/intents/build")
    async def build_intent(req: BuildIntentRequest):
        try:
            return await rt.tracker.build_unsigned(req.type, req.params, req.owner)
        except IntentFiError as exc:
            raise http_error(exc) from exc

    @app.get("/intents/history", response_model=List[TrackedIntent])
    async def intent_history(owner: Optional[str] = None):
        if owner:
            await rt.tracker.load(owner)
        return rt.tracker.get_history(owner)

    @app.get("/intents", response_model=List[TrackedIntent])
    async def list_intents(owner: Optional[str] = None):
        if owner:
            await rt.tracker.load(owner)
        return rt.tracker.get_intents(owner)

    @app.get("/intents/{intent_id}", response_model=TrackedIntent)
    def get_intent(intent_id: str):
        record = rt.tracker.get_intent(intent_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Intent not found")
        return record

    @app.post("/intents/{intent_id}/refresh", response_model=TrackedIntent)
    async def refresh_intent(intent_id: str):
        try:
            record = await rt.tracker.refresh_status(intent_id)
        except IntentFiError as exc:
            raise http_error(exc) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Intent not found")
        return record

    @app.delete("/intents/{intent_id}")
    async def cancel_intent(intent_id: str):
        if not await rt.tracker.cancel_intent(intent_id):
            raise HTTPException(status_code=404, detail="Intent not found")
        return {"ok": True, "id": intent_id}

    @app.get("/profile/{pubkey}")
    async def user_profile(pubkey: str):
        try:
            return await rt.tracker.get_user_profile(pubkey)
        except IntentFiError as exc:
            raise http_error(exc) from exc

    # ------------------------------------------------------------------
    # Wallet pool
    # ------------------------------------------------------------------

    @app.post("/wallets/acquire", response_model=WalletLeaseResponse)
    async def acquire_wallet():
        lease = await rt.acquire_wallet()
        return WalletLeaseResponse(
            public_key=lease.public_key,
            has_funds=lease.has_funds,
            balance_sol=lease.balance_sol,
            pooled=lease.pooled,
            slot=lease.slot,
        )

    @app.post("/wallets/release")
    async def release_wallet(req: WalletRequest):
        if not await rt.release_wallet(req.public_key):
            raise HTTPException(status_code=404, detail="Wallet not found")
        return {"ok": True}

    @app.post("/wallets/ensure-funded")
    async def ensure_funded(req: EnsureFundedRequest):
        try:
            await rt.pool.require_funded(req.public_key, req.min_amount)
        except InsufficientFunds as exc:
            return {
                "public_key": req.public_key,
                "has_funds": False,
                "manual_funding": {
                    "address": exc.address,
                    "balance_sol": exc.balance_sol,
                    "faucet": DEVNET_FAUCET_URL,
                    "message": str(exc),
                },
            }
        return {"public_key": req.public_key, "has_funds": True}

    @app.get("/wallets/status", response_model=PoolStatus)
    async def pool_status():
        return await rt.pool.pool_status()

    @app.get("/wallets/funding")
    async def funding_instructions():
        return await rt.pool.funding_instructions()

    # ------------------------------------------------------------------
    # Launchpad reads
    # ------------------------------------------------------------------

    @app.get("/launchpad/launches/{creator}")
    async def launch_dashboard(creator: str):
        try:
            dashboard = await rt.launchpad.get_launch_dashboard(creator)
        except IntentFiError as exc:
            raise http_error(exc) from exc
        if dashboard is None:
            raise HTTPException(status_code=404, detail="Launch not found")
        return dashboard

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    @app.post("/network")
    async def switch_network(req: NetworkRequest):
        try:
            await rt.switch_network(req.network)
        except IntentFiError as exc:
            raise http_error(exc) from exc
        return rt.get_current_network()

    @app.get("/network")
    def current_network():
        return rt.get_current_network()

    return app
