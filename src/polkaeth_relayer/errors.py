"""
Exception hierarchy for the relayer.

Errors are grouped by how the pipeline reacts to them:

- TransientError: infrastructure hiccups, retried with a fixed interval
- ProtocolError: the source chain emitted something we cannot decode, fatal
- CodecError: a message does not match its fixed layout
- LedgerError: a business rule rejected a message or the release failed
"""


class RelayerError(Exception):
    """Base class for all relayer errors."""


class TransientError(RelayerError):
    """A retryable infrastructure failure."""


class RpcError(TransientError):
    """JSON-RPC call failed or returned an error object."""

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        self.method = method
        self.code = code
        super().__init__(f"{method} failed: {message}" + (f" (code {code})" if code is not None else ""))


class ProtocolError(RelayerError):
    """The source chain broke an assumed protocol invariant."""


class EventDecodeError(ProtocolError):
    """Event records fetched for a block could not be decoded."""

    def __init__(self, block_number: int, reason: str) -> None:
        self.block_number = block_number
        self.reason = reason
        super().__init__(f"Failed to decode events for block {block_number}: {reason}")


class CodecError(RelayerError):
    """Base class for canonical message encoding errors."""


class EncodeError(CodecError):
    """A RawEvent field does not fit its fixed-width slot."""


class DecodeError(CodecError):
    """Bytes do not form a valid canonical message."""


class LedgerError(RelayerError):
    """Base class for ledger rule violations."""


class InvalidAmountError(LedgerError):
    """Amount is zero or outside the unsigned 256-bit range."""


class InsufficientBalanceError(LedgerError):
    """Unlock amount is not strictly below the locked total."""


class TransferFailedError(LedgerError):
    """The destination transfer failed after the balance was decremented."""
