import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel
from solders.pubkey import Pubkey

from .accounts import IntentAccount, UserAccount, decode_account
from .config import lamports_to_sol
from .errors import ConfirmationTimeout, EncodingError, IntentFiError, TransactionFailed, error_kind
from .rpc import ResilientRpcClient
from .signers import Signer, build_signed_transaction
from .storage import SnapshotStore
from .tx_builder import (
    build_create_lend_intent_ix,
    build_create_swap_intent_ix,
    build_initialize_user_ix,
    encode_instruction,
    instruction_to_dict,
    intent_account_pda,
    message_b64,
    to_pubkey,
    user_account_pda,
)

logger = logging.getLogger("intentfi.intents")

ERROR_KINDS = {"timeout", "rate_limited", "rpc", "encoding", "insufficient_funds", "unknown"}
INSUFFICIENT_FUNDS_MARKERS = ("insufficient", "no record of a prior credit")
MAX_PROFILE_INTENTS = 50


class IntentKind(str, Enum):
    SWAP = "swap"
    LEND = "lend"
    BUY = "buy"


class IntentState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATES = (IntentState.PENDING, IntentState.EXECUTING)
TERMINAL_STATES = (IntentState.COMPLETED, IntentState.FAILED)


class TrackedIntent(BaseModel):
    id: str
    owner: str
    type: IntentKind
    status: IntentState
    params: Dict[str, Any]
    created_at: float
    updated_at: float
    tx_signature: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def classify_failure(exc: BaseException) -> str:
    text = str(exc).lower()
    if any(marker in text for marker in INSUFFICIENT_FUNDS_MARKERS):
        return "insufficient_funds"
    if isinstance(exc, ConfirmationTimeout):
        return "timeout"
    if isinstance(exc, TransactionFailed):
        return "rpc"
    kind = error_kind(exc)
    return kind if kind in ERROR_KINDS else "unknown"


def _pubkey_str(params: Mapping[str, Any], name: str) -> str:
    if name not in params:
        raise EncodingError(f"missing field {name}")
    return str(to_pubkey(params[name]))


def normalize_params(kind: IntentKind, params: Mapping[str, Any], usdc_mint: str) -> Tuple[str, Dict[str, Any], Dict[str, Any]]:
    """Validate caller params; return (method, instruction fields, stored params)."""
    if kind == IntentKind.SWAP:
        stored = {
            "from_mint": _pubkey_str(params, "from_mint"),
            "to_mint": _pubkey_str(params, "to_mint"),
            "amount": params.get("amount"),
            "max_slippage": params.get("max_slippage"),
        }
        method, fields = "create_swap_intent", dict(stored)
    elif kind == IntentKind.LEND:
        stored = {
            "mint": _pubkey_str(params, "mint"),
            "amount": params.get("amount"),
            "min_apy": params.get("min_apy"),
        }
        method, fields = "create_lend_intent", dict(stored)
    elif kind == IntentKind.BUY:
        source = params.get("usdc_mint") or usdc_mint
        stored = {
            "mint": _pubkey_str(params, "mint"),
            "usdc_amount": params.get("usdc_amount"),
            "max_price_impact": params.get("max_price_impact"),
            "usdc_mint": str(to_pubkey(source)),
        }
        # buy = swap out of USDC into the target mint
        method = "create_swap_intent"
        fields = {
            "from_mint": stored["usdc_mint"],
            "to_mint": stored["mint"],
            "amount": stored["usdc_amount"],
            "max_slippage": stored["max_price_impact"],
        }
    else:
        raise EncodingError(f"Unsupported intent type {kind!r}")
    # range and type checks
    encode_instruction(method, fields)
    return method, fields, stored


class IntentTracker:
    """Client-side lifecycle of intents: pending -> executing -> completed/failed.

    Every transition is written through to the snapshot store before the next
    one starts. Records are kept per owner under ``intents:<address>``.
    """

    def __init__(
        self,
        rpc: ResilientRpcClient,
        store: SnapshotStore,
        confirm_timeout: Optional[float] = None,
        duplicate_window: float = 5.0,
    ) -> None:
        self.rpc = rpc
        self.store = store
        self.confirm_timeout = confirm_timeout
        self.duplicate_window = duplicate_window
        self._records: Dict[str, TrackedIntent] = {}
        self._loaded: set = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._load_locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def storage_key(owner: str) -> str:
        return f"intents:{owner}"

    def _owner_lock(self, owner: str) -> asyncio.Lock:
        lock = self._locks.get(owner)
        if lock is None:
            lock = self._locks[owner] = asyncio.Lock()
        return lock

    async def _persist(self, owner: str) -> None:
        async with self._owner_lock(owner):
            records = [r.model_dump(mode="json") for r in self._records.values() if r.owner == owner]
            await self.store.save(self.storage_key(owner), records)

    # ------------------------------------------------------------------
    # Loading / reconciliation
    # ------------------------------------------------------------------

    async def load(self, owner: str) -> List[TrackedIntent]:
        """Load an owner's persisted intents once per process.

        Anything still pending/executing was interrupted by a restart; its
        outcome is unknown, so it is marked failed with ``error_kind="timeout"``.
        """
        if owner in self._loaded:
            return self.get_intents(owner)
        lock = self._load_locks.get(owner)
        if lock is None:
            lock = self._load_locks[owner] = asyncio.Lock()
        async with lock:
            if owner in self._loaded:
                return self.get_intents(owner)
            raw = await self.store.load(self.storage_key(owner)) or []
            reconciled = 0
            for item in raw:
                try:
                    record = TrackedIntent.model_validate(item)
                except ValueError as exc:
                    logger.error("intent_record_invalid owner=%s err=%s", owner, exc)
                    continue
                if record.status in ACTIVE_STATES:
                    record.status = IntentState.FAILED
                    record.error = "Interrupted before confirmation; check status again before retrying"
                    record.error_kind = "timeout"
                    record.updated_at = time.time()
                    reconciled += 1
                self._records.setdefault(record.id, record)
            # only now may other callers persist this owner
            self._loaded.add(owner)
            if reconciled:
                logger.warning("intent_reconciled owner=%s count=%s", owner, reconciled)
                await self._persist(owner)
        return self.get_intents(owner)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_intent(self, intent_id: str) -> Optional[TrackedIntent]:
        return self._records.get(intent_id)

    def get_intents(self, owner: Optional[str] = None) -> List[TrackedIntent]:
        records = [r for r in self._records.values() if owner is None or r.owner == owner]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def get_history(self, owner: Optional[str] = None) -> List[TrackedIntent]:
        return [r for r in self.get_intents(owner) if r.status in TERMINAL_STATES]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _find_duplicate(self, owner: str, kind: IntentKind, params: Dict[str, Any]) -> Optional[TrackedIntent]:
        cutoff = time.time() - self.duplicate_window
        for record in self._records.values():
            if (
                record.owner == owner
                and record.type == kind
                and record.params == params
                and record.status in ACTIVE_STATES
                and record.created_at >= cutoff
            ):
                return record
        return None

    async def create_intent(self, kind: Any, params: Mapping[str, Any], signer: Signer) -> str:
        try:
            kind = IntentKind(kind)
        except ValueError as exc:
            raise EncodingError(f"Unknown intent type {kind!r}") from exc
        method, fields, stored = normalize_params(kind, params, self.rpc.network_config.usdc_mint)
        owner = str(signer.pubkey)
        await self.load(owner)

        duplicate = self._find_duplicate(owner, kind, stored)
        if duplicate is not None:
            logger.info("intent_duplicate_suppressed id=%s owner=%s", duplicate.id, owner)
            return duplicate.id

        now = time.time()
        record = TrackedIntent(
            id=uuid.uuid4().hex,
            owner=owner,
            type=kind,
            status=IntentState.PENDING,
            params=stored,
            created_at=now,
            updated_at=now,
        )
        self._records[record.id] = record
        await self._persist(owner)
        logger.info("intent_created id=%s type=%s owner=%s", record.id, kind.value, owner)
        task = asyncio.create_task(self._execute(record.id, method, fields, signer))
        self._tasks[record.id] = task
        task.add_done_callback(lambda _, intent_id=record.id: self._tasks.pop(intent_id, None))
        return record.id

    async def _transition(self, intent_id: str, status: IntentState, **changes: Any) -> Optional[TrackedIntent]:
        record = self._records.get(intent_id)
        if record is None:
            # cancelled locally while in flight
            logger.info("intent_transition_ignored id=%s status=%s", intent_id, status.value)
            return None
        record.status = status
        for key, value in changes.items():
            setattr(record, key, value)
        record.updated_at = time.time()
        await self._persist(record.owner)
        logger.info("intent_status id=%s status=%s", intent_id, status.value)
        return record

    async def _build_instructions(self, method: str, fields: Dict[str, Any], authority: Pubkey) -> list:
        program = Pubkey.from_string(self.rpc.network_config.intent_program_id)
        user_pda = user_account_pda(authority, program)[0]
        snapshot = await self.rpc.get_account_info(user_pda)
        user = None
        if snapshot is not None:
            user = decode_account("user_account", snapshot.data, snapshot.owner, program)
        instructions = []
        if isinstance(user, UserAccount):
            intent_number = user.total_intents_created + 1
        else:
            instructions.append(build_initialize_user_ix(program, authority))
            intent_number = 1
        if method == "create_swap_intent":
            instructions.append(
                build_create_swap_intent_ix(
                    program,
                    authority,
                    intent_number,
                    fields["from_mint"],
                    fields["to_mint"],
                    fields["amount"],
                    fields["max_slippage"],
                )
            )
        else:
            instructions.append(
                build_create_lend_intent_ix(
                    program, authority, intent_number, fields["mint"], fields["amount"], fields["min_apy"]
                )
            )
        return instructions

    async def _execute(self, intent_id: str, method: str, fields: Dict[str, Any], signer: Signer) -> None:
        if await self._transition(intent_id, IntentState.EXECUTING) is None:
            return
        signature: Optional[str] = None
        try:
            instructions = await self._build_instructions(method, fields, signer.pubkey)
            blockhash = await self.rpc.get_latest_blockhash()
            tx = await build_signed_transaction(signer, instructions, blockhash)
            sent = await self.rpc.send_transaction(bytes(tx))
            signature = str(sent)
            await self.rpc.confirm_transaction(sent, timeout=self.confirm_timeout)
            self.rpc.reset_to_primary()
            await self._transition(intent_id, IntentState.COMPLETED, tx_signature=signature)
        except ConfirmationTimeout as exc:
            await self._transition(
                intent_id,
                IntentState.FAILED,
                tx_signature=exc.signature,
                error=str(exc),
                error_kind="timeout",
            )
        except IntentFiError as exc:
            logger.warning("intent_failed id=%s kind=%s err=%s", intent_id, exc.kind, exc)
            await self._transition(
                intent_id,
                IntentState.FAILED,
                tx_signature=signature,
                error=str(exc),
                error_kind=classify_failure(exc),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("intent_failed_unexpected id=%s", intent_id)
            await self._transition(
                intent_id,
                IntentState.FAILED,
                tx_signature=signature,
                error=str(exc) or type(exc).__name__,
                error_kind=classify_failure(exc),
            )

    async def build_unsigned(self, kind: Any, params: Mapping[str, Any], owner: str) -> Dict[str, Any]:
        """Unsigned v0 message for wallets that sign outside the runtime. Nothing is tracked."""
        try:
            kind = IntentKind(kind)
        except ValueError as exc:
            raise EncodingError(f"Unknown intent type {kind!r}") from exc
        method, fields, _ = normalize_params(kind, params, self.rpc.network_config.usdc_mint)
        authority = to_pubkey(owner)
        instructions = await self._build_instructions(method, fields, authority)
        blockhash = await self.rpc.get_latest_blockhash()
        return {
            "message": message_b64(authority, blockhash, instructions),
            "blockhash": str(blockhash),
            "instructions": [instruction_to_dict(ix) for ix in instructions],
        }

    async def wait_for(self, intent_id: str, timeout: Optional[float] = None) -> Optional[TrackedIntent]:
        task = self._tasks.get(intent_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.get_intent(intent_id)

    async def cancel_intent(self, intent_id: str) -> bool:
        """Forget the intent locally. An in-flight submission is not aborted."""
        record = self._records.pop(intent_id, None)
        if record is None:
            return False
        await self._persist(record.owner)
        logger.info("intent_cancelled id=%s status=%s", intent_id, record.status.value)
        return True

    async def refresh_status(self, intent_id: str) -> Optional[TrackedIntent]:
        """Re-check a timed-out intent's signature and promote it if it landed."""
        record = self._records.get(intent_id)
        if record is None:
            return None
        if record.status != IntentState.FAILED or record.error_kind != "timeout" or not record.tx_signature:
            return record
        status = await self.rpc.get_signature_status(record.tx_signature)
        if status is None:
            return record
        if status.err is not None:
            return await self._transition(
                intent_id,
                IntentState.FAILED,
                error=str(TransactionFailed(record.tx_signature, status.err)),
                error_kind="rpc",
            )
        if status.confirmation_status in ("confirmed", "finalized"):
            return await self._transition(intent_id, IntentState.COMPLETED, error=None, error_kind=None)
        return record

    async def close(self) -> None:
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # On-chain reads
    # ------------------------------------------------------------------

    async def get_user_profile(self, public_key: str) -> Dict[str, Any]:
        authority = to_pubkey(public_key)
        network = self.rpc.network_config
        program = Pubkey.from_string(network.intent_program_id)
        user_pda = user_account_pda(authority, program)[0]
        balance = await self.rpc.get_balance(authority)
        snapshot = await self.rpc.get_account_info(user_pda)
        user = None
        if snapshot is not None:
            decoded = decode_account("user_account", snapshot.data, snapshot.owner, program)
            if isinstance(decoded, UserAccount):
                user = decoded
            else:
                logger.warning("profile_user_account_invalid wallet=%s err=%s", public_key, decoded)
        intents = []
        if user is not None:
            first = max(1, user.total_intents_created - MAX_PROFILE_INTENTS + 1)
            for number in range(user.total_intents_created, first - 1, -1):
                address = intent_account_pda(authority, number, program)[0]
                account = await self.rpc.get_account_info(address)
                if account is None:
                    continue
                decoded = decode_account("intent_account", account.data, account.owner, program)
                if isinstance(decoded, IntentAccount):
                    intents.append({"number": number, "address": str(address), **decoded.to_dict()})
        return {
            "public_key": str(authority),
            "network": network.name,
            "balance_sol": lamports_to_sol(balance),
            "user_account_address": str(user_pda),
            "user_account": user.to_dict() if user is not None else None,
            "intents": intents,
            "rpc": self.rpc.status().model_dump(),
        }
