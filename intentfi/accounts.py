"""Typed views over Anchor account data for the intent and launchpad programs.

Every reader checks the buffer against the kind's minimum length before touching
fixed offsets. ``decode_account`` never raises for bad data: it hands back a
``DecodeError`` value and the caller treats the account as absent.
"""

import hashlib
from dataclasses import dataclass, fields
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Union

from solders.pubkey import Pubkey

from .errors import DecodeError, DecodeReason


class IntentType(str, Enum):
    SWAP = "Swap"
    LEND = "Lend"
    UNKNOWN = "Unknown"


class IntentStatus(str, Enum):
    PENDING = "Pending"
    EXECUTED = "Executed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"
    UNKNOWN = "Unknown"


class LaunchStatus(str, Enum):
    ACTIVE = "Active"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


# On-chain variant order; anything past the end decodes to UNKNOWN.
INTENT_TYPE_TAGS = (IntentType.SWAP, IntentType.LEND)
INTENT_STATUS_TAGS = (IntentStatus.PENDING, IntentStatus.EXECUTED, IntentStatus.CANCELLED, IntentStatus.EXPIRED)
LAUNCH_STATUS_TAGS = (LaunchStatus.ACTIVE, LaunchStatus.SUCCESSFUL, LaunchStatus.FAILED)


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


class _Malformed(Exception):
    pass


class _Reader:
    def __init__(self, data: bytes, offset: int = 8) -> None:
        self.data = data
        self.offset = offset

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise _Malformed(f"read of {size} bytes at offset {self.offset} overruns {len(self.data)}")
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(32))

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "little")

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "little")

    def u64(self) -> int:
        return int.from_bytes(self.take(8), "little")

    def i64(self) -> int:
        return int.from_bytes(self.take(8), "little", signed=True)

    def boolean(self) -> bool:
        return self.u8() != 0

    def string(self) -> str:
        length = self.u32()
        try:
            return self.take(length).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise _Malformed(f"invalid utf-8 string: {exc}") from exc

    def option(self, read: Callable[[], int]) -> Optional[int]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return read()
        raise _Malformed(f"invalid option tag {tag}")

    def enum(self, tags: Sequence[Enum], unknown: Enum) -> Enum:
        idx = self.u8()
        return tags[idx] if idx < len(tags) else unknown


class _Record:
    def to_dict(self) -> dict:
        out = {}
        for field in fields(self):
            key, value = field.name, getattr(self, field.name)
            if isinstance(value, Pubkey):
                value = str(value)
            elif isinstance(value, Enum):
                value = value.value
            out[key] = value
        return out


@dataclass(frozen=True)
class ProtocolState(_Record):
    authority: Pubkey
    treasury_authority: Pubkey
    protocol_fee_bps: int
    total_intents_created: int
    total_intents_executed: int
    is_paused: bool
    bump: int


@dataclass(frozen=True)
class UserAccount(_Record):
    authority: Pubkey
    active_intents: int
    total_intents_created: int
    total_volume: int
    bump: int


@dataclass(frozen=True)
class IntentAccount(_Record):
    authority: Pubkey
    intent_type: IntentType
    status: IntentStatus
    from_mint: Pubkey
    to_mint: Pubkey
    amount: int
    protocol_fee: int
    max_slippage: Optional[int]
    min_apy: Optional[int]
    execution_output: Optional[int]
    execution_apy: Optional[int]
    created_at: int
    expires_at: int
    executed_at: Optional[int]
    cancelled_at: Optional[int]
    bump: int


@dataclass(frozen=True)
class LaunchpadState(_Record):
    authority: Pubkey
    treasury_authority: Pubkey
    platform_fee_bps: int
    total_launches: int
    total_raised: int
    is_paused: bool
    bump: int


@dataclass(frozen=True)
class LaunchState(_Record):
    creator: Pubkey
    token_mint: Pubkey
    token_name: str
    token_symbol: str
    token_uri: str
    soft_cap: int
    hard_cap: int
    token_price: int
    tokens_for_sale: int
    min_contribution: int
    max_contribution: int
    launch_start: int
    launch_end: int
    total_raised: int
    total_contributors: int
    tokens_sold: int
    status: LaunchStatus
    bump: int


@dataclass(frozen=True)
class ContributorState(_Record):
    contributor: Pubkey
    launch: Pubkey
    total_contributed: int
    tokens_owed: int
    claimed: bool


AccountRecord = Union[ProtocolState, UserAccount, IntentAccount, LaunchpadState, LaunchState, ContributorState]


def _read_protocol_state(r: _Reader) -> ProtocolState:
    return ProtocolState(
        authority=r.pubkey(),
        treasury_authority=r.pubkey(),
        protocol_fee_bps=r.u16(),
        total_intents_created=r.u64(),
        total_intents_executed=r.u64(),
        is_paused=r.boolean(),
        bump=r.u8(),
    )


def _read_user_account(r: _Reader) -> UserAccount:
    return UserAccount(
        authority=r.pubkey(),
        active_intents=r.u8(),
        total_intents_created=r.u64(),
        total_volume=r.u64(),
        bump=r.u8(),
    )


def _read_intent_account(r: _Reader) -> IntentAccount:
    return IntentAccount(
        authority=r.pubkey(),
        intent_type=r.enum(INTENT_TYPE_TAGS, IntentType.UNKNOWN),
        status=r.enum(INTENT_STATUS_TAGS, IntentStatus.UNKNOWN),
        from_mint=r.pubkey(),
        to_mint=r.pubkey(),
        amount=r.u64(),
        protocol_fee=r.u64(),
        max_slippage=r.option(r.u16),
        min_apy=r.option(r.u16),
        execution_output=r.option(r.u64),
        execution_apy=r.option(r.u16),
        created_at=r.i64(),
        expires_at=r.i64(),
        executed_at=r.option(r.i64),
        cancelled_at=r.option(r.i64),
        bump=r.u8(),
    )


def _read_launchpad_state(r: _Reader) -> LaunchpadState:
    return LaunchpadState(
        authority=r.pubkey(),
        treasury_authority=r.pubkey(),
        platform_fee_bps=r.u16(),
        total_launches=r.u64(),
        total_raised=r.u64(),
        is_paused=r.boolean(),
        bump=r.u8(),
    )


def _read_launch_state(r: _Reader) -> LaunchState:
    return LaunchState(
        creator=r.pubkey(),
        token_mint=r.pubkey(),
        token_name=r.string(),
        token_symbol=r.string(),
        token_uri=r.string(),
        soft_cap=r.u64(),
        hard_cap=r.u64(),
        token_price=r.u64(),
        tokens_for_sale=r.u64(),
        min_contribution=r.u64(),
        max_contribution=r.u64(),
        launch_start=r.i64(),
        launch_end=r.i64(),
        total_raised=r.u64(),
        total_contributors=r.u32(),
        tokens_sold=r.u64(),
        status=r.enum(LAUNCH_STATUS_TAGS, LaunchStatus.UNKNOWN),
        bump=r.u8(),
    )


def _read_contributor_state(r: _Reader) -> ContributorState:
    return ContributorState(
        contributor=r.pubkey(),
        launch=r.pubkey(),
        total_contributed=r.u64(),
        tokens_owed=r.u64(),
        claimed=r.boolean(),
    )


# kind -> (account struct name, minimum length incl. discriminator, reader)
# Minimums assume empty strings and every Option set to None.
ACCOUNT_LAYOUTS: Dict[str, tuple] = {
    "protocol_state": ("ProtocolState", 8 + 32 + 32 + 2 + 8 + 8 + 1 + 1, _read_protocol_state),
    "user_account": ("UserAccount", 8 + 32 + 1 + 8 + 8 + 1, _read_user_account),
    "intent_account": ("IntentAccount", 8 + 32 + 1 + 1 + 32 + 32 + 8 + 8 + 4 + 8 + 8 + 2 + 1, _read_intent_account),
    "launchpad_state": ("LaunchpadState", 8 + 32 + 32 + 2 + 8 + 8 + 1 + 1, _read_launchpad_state),
    "launch_state": ("LaunchState", 8 + 32 + 32 + 3 * 4 + 6 * 8 + 8 + 8 + 8 + 4 + 8 + 1 + 1, _read_launch_state),
    "contributor_state": ("ContributorState", 8 + 32 + 32 + 8 + 8 + 1, _read_contributor_state),
}


def min_account_length(kind: str) -> int:
    return ACCOUNT_LAYOUTS[kind][1]


def decode_account(
    kind: str,
    data: bytes,
    owner: Optional[Pubkey] = None,
    expected_owner: Optional[Pubkey] = None,
) -> Union[AccountRecord, DecodeError]:
    if kind not in ACCOUNT_LAYOUTS:
        raise KeyError(f"unknown account kind {kind!r}")
    name, min_len, reader = ACCOUNT_LAYOUTS[kind]
    if expected_owner is not None and owner != expected_owner:
        return DecodeError(DecodeReason.OWNER_MISMATCH, name, f"owner {owner} != {expected_owner}")
    data = bytes(data or b"")
    if len(data) < min_len:
        return DecodeError(DecodeReason.TOO_SHORT, name, f"{len(data)} < {min_len} bytes")
    if data[:8] != account_discriminator(name):
        return DecodeError(DecodeReason.DISCRIMINATOR_MISMATCH, name)
    try:
        return reader(_Reader(data))
    except _Malformed as exc:
        return DecodeError(DecodeReason.MALFORMED, name, str(exc))
