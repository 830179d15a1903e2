import base64
import hashlib
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from borsh_construct import Bool, CStruct, I64, String, U16, U32, U64, U8
from construct import ConstructError
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey

from .errors import EncodingError

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSVAR_RENT_PUBKEY = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

PROTOCOL_STATE_SEED = b"protocol_state"
USER_ACCOUNT_SEED = b"user_account"
INTENT_SEED = b"intent"
LAUNCHPAD_STATE_SEED = b"launchpad_state"
LAUNCH_STATE_SEED = b"launch_state"
CONTRIBUTOR_SEED = b"contributor"

MAX_SEEDS = 16
MAX_SEED_LEN = 32

PubkeyLike = Union[Pubkey, str, bytes]

_U_LIMITS = {"u8": 2**8, "u16": 2**16, "u32": 2**32, "u64": 2**64}
_I64_MIN, _I64_MAX = -(2**63), 2**63 - 1

_KIND_LAYOUTS = {
    "u8": U8,
    "u16": U16,
    "u32": U32,
    "u64": U64,
    "i64": I64,
    "bool": Bool,
    "string": String,
    "pubkey": U8[32],
}

# Field order must match the on-chain argument order bit for bit.
METHOD_FIELDS: Dict[str, List[Tuple[str, str]]] = {
    "initialize_protocol": [("treasury_authority", "pubkey")],
    "initialize_user": [],
    "create_swap_intent": [
        ("from_mint", "pubkey"),
        ("to_mint", "pubkey"),
        ("amount", "u64"),
        ("max_slippage", "u16"),
    ],
    "create_lend_intent": [("mint", "pubkey"), ("amount", "u64"), ("min_apy", "u16")],
    "execute_swap_intent": [("expected_output", "u64")],
    "cancel_intent": [],
    "initialize_launchpad": [("platform_fee_bps", "u16"), ("treasury_authority", "pubkey")],
    "create_token_launch": [
        ("token_name", "string"),
        ("token_symbol", "string"),
        ("token_uri", "string"),
        ("soft_cap", "u64"),
        ("hard_cap", "u64"),
        ("token_price", "u64"),
        ("tokens_for_sale", "u64"),
        ("min_contribution", "u64"),
        ("max_contribution", "u64"),
        ("launch_duration", "i64"),
    ],
    "contribute_to_launch": [("amount", "u64")],
    "finalize_launch": [],
    "claim_tokens": [],
    "claim_refund": [],
    "withdraw_funds": [],
}

METHOD_LAYOUTS: Dict[str, Optional[CStruct]] = {
    method: CStruct(*[name / _KIND_LAYOUTS[kind] for name, kind in fields]) if fields else None
    for method, fields in METHOD_FIELDS.items()
}


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


_METHODS_BY_DISCRIMINATOR = {sighash(method): method for method in METHOD_FIELDS}


def to_pubkey(value: PubkeyLike) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        if isinstance(value, (bytes, bytearray)):
            return Pubkey.from_bytes(bytes(value))
        if isinstance(value, str):
            return Pubkey.from_string(value.strip())
    except Exception as exc:  # noqa: BLE001
        raise EncodingError(f"Invalid public key {value!r}: {exc}") from exc
    raise EncodingError(f"Expected a public key, got {type(value).__name__}")


# ---------------------------------------------------------------------------
# Program derived addresses
# ---------------------------------------------------------------------------


@lru_cache(maxsize=2048)
def _find_program_address(seeds: Tuple[bytes, ...], program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(list(seeds), program_id)


def derive_address(seeds: Sequence[bytes], program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    """Derive a program address and its bump from an ordered seed list."""
    if len(seeds) > MAX_SEEDS:
        raise EncodingError(f"Too many seeds: {len(seeds)} > {MAX_SEEDS}")
    normalized = []
    for idx, seed in enumerate(seeds):
        if isinstance(seed, Pubkey):
            seed = bytes(seed)
        if not isinstance(seed, (bytes, bytearray)):
            raise EncodingError(f"Seed {idx} must be bytes, got {type(seed).__name__}")
        if len(seed) > MAX_SEED_LEN:
            raise EncodingError(f"Seed {idx} is {len(seed)} bytes; max is {MAX_SEED_LEN}")
        normalized.append(bytes(seed))
    return _find_program_address(tuple(normalized), to_pubkey(program_id))


def sequence_seed(number: int) -> bytes:
    if not isinstance(number, int) or isinstance(number, bool) or number < 0 or number >= 2**64:
        raise EncodingError(f"Sequence number must be a u64, got {number!r}")
    return number.to_bytes(8, "little")


def protocol_state_pda(program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_address([PROTOCOL_STATE_SEED], program_id)


def user_account_pda(authority: PubkeyLike, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_address([USER_ACCOUNT_SEED, bytes(to_pubkey(authority))], program_id)


def intent_account_pda(authority: PubkeyLike, intent_number: int, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_address([INTENT_SEED, bytes(to_pubkey(authority)), sequence_seed(intent_number)], program_id)


def launchpad_state_pda(program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_address([LAUNCHPAD_STATE_SEED], program_id)


def launch_state_pda(creator: PubkeyLike, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_address([LAUNCH_STATE_SEED, bytes(to_pubkey(creator))], program_id)


def contributor_state_pda(launch: PubkeyLike, contributor: PubkeyLike, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_address(
        [CONTRIBUTOR_SEED, bytes(to_pubkey(launch)), bytes(to_pubkey(contributor))], program_id
    )


def associated_token_address(owner: PubkeyLike, mint: PubkeyLike) -> Pubkey:
    return derive_address(
        [bytes(to_pubkey(owner)), bytes(TOKEN_PROGRAM_ID), bytes(to_pubkey(mint))],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


# ---------------------------------------------------------------------------
# Instruction payloads
# ---------------------------------------------------------------------------


def _check_field(method: str, name: str, kind: str, value: Any) -> Any:
    where = f"{method}.{name}"
    if kind == "pubkey":
        try:
            return list(bytes(to_pubkey(value)))
        except EncodingError as exc:
            raise EncodingError(f"{where}: {exc}") from exc
    if kind == "bool":
        if not isinstance(value, bool):
            raise EncodingError(f"{where} must be a bool, got {value!r}")
        return value
    if kind == "string":
        if not isinstance(value, str):
            raise EncodingError(f"{where} must be a string, got {type(value).__name__}")
        return value
    if not isinstance(value, int) or isinstance(value, bool):
        raise EncodingError(f"{where} must be an integer, got {value!r}")
    if kind == "i64":
        if not _I64_MIN <= value <= _I64_MAX:
            raise EncodingError(f"{where}={value} does not fit in i64")
        return value
    limit = _U_LIMITS[kind]
    if value < 0:
        raise EncodingError(f"{where}={value} is negative but {kind} is unsigned")
    if value >= limit:
        raise EncodingError(f"{where}={value} does not fit in {kind}")
    return value


def encode_instruction(method: str, fields: Optional[Mapping[str, Any]] = None) -> bytes:
    """Discriminator followed by the method's Borsh-encoded fields."""
    if method not in METHOD_FIELDS:
        raise EncodingError(f"Unknown instruction {method!r}")
    fields = fields or {}
    declared = METHOD_FIELDS[method]
    missing = [name for name, _ in declared if name not in fields]
    if missing:
        raise EncodingError(f"{method} missing fields: {', '.join(missing)}")
    layout = METHOD_LAYOUTS[method]
    if layout is None:
        return sighash(method)
    values = {name: _check_field(method, name, kind, fields[name]) for name, kind in declared}
    try:
        return sighash(method) + layout.build(values)
    except ConstructError as exc:
        raise EncodingError(f"{method}: {exc}") from exc


def decode_instruction(data: bytes) -> Tuple[str, Dict[str, Any]]:
    """Inverse of ``encode_instruction`` for the known methods."""
    method = _METHODS_BY_DISCRIMINATOR.get(bytes(data[:8]))
    if method is None:
        raise EncodingError(f"Unknown discriminator {bytes(data[:8]).hex()}")
    layout = METHOD_LAYOUTS[method]
    if layout is None:
        return method, {}
    try:
        parsed = layout.parse(bytes(data[8:]))
    except ConstructError as exc:
        raise EncodingError(f"{method}: {exc}") from exc
    out: Dict[str, Any] = {}
    for name, kind in METHOD_FIELDS[method]:
        value = parsed[name]
        out[name] = Pubkey.from_bytes(bytes(value)) if kind == "pubkey" else value
    return method, out


# ---------------------------------------------------------------------------
# Intent program instructions
# ---------------------------------------------------------------------------


def build_initialize_protocol_ix(program_id: PubkeyLike, authority: Pubkey, treasury_authority: PubkeyLike) -> Instruction:
    program = to_pubkey(program_id)
    protocol_state = protocol_state_pda(program)[0]
    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=protocol_state, is_signer=False, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_instruction("initialize_protocol", {"treasury_authority": treasury_authority})
    return Instruction(program_id=program, data=data, accounts=accounts)


def build_initialize_user_ix(program_id: PubkeyLike, authority: Pubkey) -> Instruction:
    program = to_pubkey(program_id)
    user_account = user_account_pda(authority, program)[0]
    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=user_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program, data=encode_instruction("initialize_user"), accounts=accounts)


def _create_intent_accounts(program: Pubkey, authority: Pubkey, intent_number: int) -> List[AccountMeta]:
    return [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=protocol_state_pda(program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_account_pda(authority, program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=intent_account_pda(authority, intent_number, program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]


def build_create_swap_intent_ix(
    program_id: PubkeyLike,
    authority: Pubkey,
    intent_number: int,
    from_mint: PubkeyLike,
    to_mint: PubkeyLike,
    amount: int,
    max_slippage: int,
) -> Instruction:
    program = to_pubkey(program_id)
    data = encode_instruction(
        "create_swap_intent",
        {"from_mint": from_mint, "to_mint": to_mint, "amount": amount, "max_slippage": max_slippage},
    )
    return Instruction(program_id=program, data=data, accounts=_create_intent_accounts(program, authority, intent_number))


def build_create_lend_intent_ix(
    program_id: PubkeyLike,
    authority: Pubkey,
    intent_number: int,
    mint: PubkeyLike,
    amount: int,
    min_apy: int,
) -> Instruction:
    program = to_pubkey(program_id)
    data = encode_instruction("create_lend_intent", {"mint": mint, "amount": amount, "min_apy": min_apy})
    return Instruction(program_id=program, data=data, accounts=_create_intent_accounts(program, authority, intent_number))


def build_execute_swap_intent_ix(
    program_id: PubkeyLike,
    user: Pubkey,
    intent_account: Pubkey,
    expected_output: int,
    user_source_token: Pubkey,
    user_destination_token: Pubkey,
    treasury_fee_account: Pubkey,
) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=user, is_signer=True, is_writable=True),
        AccountMeta(pubkey=intent_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=protocol_state_pda(program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_account_pda(user, program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_source_token, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_destination_token, is_signer=False, is_writable=True),
        AccountMeta(pubkey=treasury_fee_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_instruction("execute_swap_intent", {"expected_output": expected_output})
    return Instruction(program_id=program, data=data, accounts=accounts)


def build_cancel_intent_ix(program_id: PubkeyLike, authority: Pubkey, intent_account: Pubkey) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=intent_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_account_pda(authority, program)[0], is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=program, data=encode_instruction("cancel_intent"), accounts=accounts)


# ---------------------------------------------------------------------------
# Launchpad program instructions
# ---------------------------------------------------------------------------


def build_initialize_launchpad_ix(
    program_id: PubkeyLike, authority: Pubkey, platform_fee_bps: int, treasury_authority: PubkeyLike
) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=launchpad_state_pda(program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_instruction(
        "initialize_launchpad",
        {"platform_fee_bps": platform_fee_bps, "treasury_authority": treasury_authority},
    )
    return Instruction(program_id=program, data=data, accounts=accounts)


def build_create_token_launch_ix(
    program_id: PubkeyLike, creator: Pubkey, token_mint: PubkeyLike, params: Mapping[str, Any]
) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=launchpad_state_pda(program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=launch_state_pda(creator, program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=to_pubkey(token_mint), is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program, data=encode_instruction("create_token_launch", params), accounts=accounts)


def build_contribute_to_launch_ix(
    program_id: PubkeyLike, contributor: Pubkey, launch_state: Pubkey, token_mint: PubkeyLike, amount: int
) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=contributor, is_signer=True, is_writable=True),
        AccountMeta(pubkey=launch_state, is_signer=False, is_writable=True),
        AccountMeta(pubkey=contributor_state_pda(launch_state, contributor, program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=launchpad_state_pda(program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=to_pubkey(token_mint), is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_instruction("contribute_to_launch", {"amount": amount})
    return Instruction(program_id=program, data=data, accounts=accounts)


def build_finalize_launch_ix(program_id: PubkeyLike, authority: Pubkey, launch_state: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=launch_state, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=to_pubkey(program_id), data=encode_instruction("finalize_launch"), accounts=accounts)


def build_claim_tokens_ix(
    program_id: PubkeyLike, contributor: Pubkey, launch_state: Pubkey, token_mint: PubkeyLike
) -> Instruction:
    program = to_pubkey(program_id)
    mint = to_pubkey(token_mint)
    accounts = [
        AccountMeta(pubkey=contributor, is_signer=True, is_writable=True),
        AccountMeta(pubkey=launch_state, is_signer=False, is_writable=False),
        AccountMeta(pubkey=contributor_state_pda(launch_state, contributor, program)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=associated_token_address(contributor, mint), is_signer=False, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program, data=encode_instruction("claim_tokens"), accounts=accounts)


def build_claim_refund_ix(program_id: PubkeyLike, contributor: Pubkey, launch_state: Pubkey) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=contributor, is_signer=True, is_writable=True),
        AccountMeta(pubkey=launch_state, is_signer=False, is_writable=False),
        AccountMeta(pubkey=contributor_state_pda(launch_state, contributor, program)[0], is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=program, data=encode_instruction("claim_refund"), accounts=accounts)


def build_withdraw_funds_ix(program_id: PubkeyLike, creator: Pubkey, launch_state: Pubkey, treasury: PubkeyLike) -> Instruction:
    program = to_pubkey(program_id)
    accounts = [
        AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=launch_state, is_signer=False, is_writable=False),
        AccountMeta(pubkey=launchpad_state_pda(program)[0], is_signer=False, is_writable=False),
        AccountMeta(pubkey=to_pubkey(treasury), is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=program, data=encode_instruction("withdraw_funds"), accounts=accounts)


# ---------------------------------------------------------------------------
# System / token helpers
# ---------------------------------------------------------------------------


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    ata = associated_token_address(owner, mint)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(ata, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, b"", accounts)


def build_system_transfer_ix(sender: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    # SystemProgram transfer: instruction = 2 (u32 LE) + lamports (u64 LE)
    if lamports < 0 or lamports >= 2**64:
        raise EncodingError(f"transfer lamports={lamports} does not fit in u64")
    data = (2).to_bytes(4, "little") + lamports.to_bytes(8, "little")
    accounts = [
        AccountMeta(pubkey=sender, is_signer=True, is_writable=True),
        AccountMeta(pubkey=recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=SYS_PROGRAM_ID, data=data, accounts=accounts)


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }


def compile_message(payer: Pubkey, blockhash: Union[Hash, str], ixs: List[Instruction]) -> MessageV0:
    if isinstance(blockhash, str):
        blockhash = Hash.from_string(blockhash)
    return MessageV0.try_compile(payer, ixs, [], blockhash)


def message_b64(payer: Pubkey, blockhash: Union[Hash, str], ixs: List[Instruction]) -> str:
    return base64.b64encode(bytes(compile_message(payer, blockhash, ixs))).decode()
