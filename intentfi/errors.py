"""Error taxonomy shared by the codec, RPC client, wallet pool and tracker."""

from __future__ import annotations

from enum import Enum


class IntentFiError(Exception):
    """Base class for runtime errors."""

    kind = "unknown"


class EncodingError(IntentFiError):
    """Instruction fields or seeds violate their declared encoding. Not retried."""

    kind = "encoding"


class DecodeReason(str, Enum):
    TOO_SHORT = "TooShort"
    OWNER_MISMATCH = "OwnerMismatch"
    DISCRIMINATOR_MISMATCH = "DiscriminatorMismatch"
    MALFORMED = "Malformed"


class DecodeError(IntentFiError):
    """Account data is short, foreign or malformed.

    ``decode_account`` returns instances of this class instead of raising so
    callers can treat the account as absent/invalid.
    """

    kind = "decode"

    def __init__(self, reason: DecodeReason, account_kind: str, detail: str = "") -> None:
        self.reason = reason
        self.account_kind = account_kind
        self.detail = detail
        message = f"{account_kind}: {reason.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RpcError(IntentFiError):
    """Transport or JSON-RPC failure that is not a rate limit."""

    kind = "rpc"


class RateLimited(RpcError):
    """Every endpoint of the active network has signalled a rate limit."""

    kind = "rate_limited"

    def __init__(self, network: str, endpoint: str) -> None:
        self.network = network
        self.endpoint = endpoint
        super().__init__(f"All RPC endpoints for {network} are rate limited (last: {endpoint})")


class NotSupportedOnMainnet(IntentFiError):
    kind = "not_supported"

    def __init__(self, network: str) -> None:
        self.network = network
        super().__init__(f"Airdrop not available on {network}")


class UnknownNetwork(IntentFiError):
    kind = "unknown_network"

    def __init__(self, network: str) -> None:
        self.network = network
        super().__init__(f"Unknown network: {network}")


class ConfirmationTimeout(IntentFiError):
    """Confirmation did not complete in time. The transaction may still land."""

    kind = "timeout"

    def __init__(self, signature: str, timeout: float) -> None:
        self.signature = signature
        self.timeout = timeout
        super().__init__(
            f"Transaction {signature} not confirmed within {timeout:.0f}s; check status again before retrying"
        )


class TransactionFailed(RpcError):
    """The cluster reported an execution error for a submitted transaction."""

    kind = "transaction_failed"

    def __init__(self, signature: str, err: object) -> None:
        self.signature = signature
        self.err = err
        super().__init__(f"Transaction {signature} failed: {err}")


class InsufficientFunds(IntentFiError):
    """Pool could not secure a usable balance; the address needs manual funding."""

    kind = "insufficient_funds"

    def __init__(self, address: str, balance_sol: float, required_sol: float) -> None:
        self.address = address
        self.balance_sol = balance_sol
        self.required_sol = required_sol
        super().__init__(
            f"Wallet {address} has {balance_sol:.6f} SOL, needs {required_sol:.6f}; fund it manually"
        )


class SignerError(IntentFiError):
    kind = "signer"


def error_kind(exc: BaseException) -> str:
    return getattr(exc, "kind", "unknown") if isinstance(exc, IntentFiError) else "unknown"
