"""Signer variants and transaction assembly.

``LocalSigner`` holds key material in-process (pooled ephemeral wallets,
tests). ``ExternalSigner`` delegates to a wallet the runtime never sees the
keys of: it is handed the serialized message and must return a signature.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Sequence, Union

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .errors import SignerError
from .tx_builder import compile_message

SignCallback = Callable[[bytes], Awaitable[Union[Signature, bytes]]]


@dataclass
class LocalSigner:
    keypair: Keypair
    kind: str = field(default="local", init=False)

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()


@dataclass
class ExternalSigner:
    public_key: Pubkey
    sign_message: SignCallback
    kind: str = field(default="external", init=False)

    @property
    def pubkey(self) -> Pubkey:
        return self.public_key


Signer = Union[LocalSigner, ExternalSigner]


async def build_signed_transaction(
    signer: Signer,
    instructions: List[Instruction],
    blockhash: Union[Hash, str],
    extra_signers: Sequence[Keypair] = (),
) -> VersionedTransaction:
    """Compile a v0 message paid by ``signer`` and attach its signature."""
    message = compile_message(signer.pubkey, blockhash, instructions)
    if signer.kind == "local":
        return VersionedTransaction(message, [signer.keypair, *extra_signers])
    if signer.kind == "external":
        if extra_signers:
            raise SignerError("External signers cannot be combined with extra local signers")
        payload = to_bytes_versioned(message)
        try:
            raw = await signer.sign_message(payload)
        except Exception as exc:  # noqa: BLE001
            raise SignerError(f"External signer failed: {exc}") from exc
        try:
            signature = raw if isinstance(raw, Signature) else Signature.from_bytes(bytes(raw))
        except Exception as exc:  # noqa: BLE001
            raise SignerError(f"External signer returned an invalid signature: {exc}") from exc
        if not signature.verify(signer.pubkey, payload):
            raise SignerError(f"Signature does not verify for {signer.pubkey}")
        return VersionedTransaction.populate(message, [signature])
    raise SignerError(f"Unknown signer kind {signer.kind!r}")
