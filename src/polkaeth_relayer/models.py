"""
Shared data models for the polkaeth relayer.

This module contains the immutable data classes passed between the listener,
the codec, the message channel and the dispatcher.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from eth_typing import ChecksumAddress, HexStr


class AssetClass(str, Enum):
    """Asset class tags used to route messages to destination applications."""
    ETH = "eth"
    ERC20 = "erc20"


class EventKind(str, Enum):
    """Source chain event kinds the relayer understands."""
    ETH_TRANSFER = "eth-transfer"
    ERC20_TRANSFER = "erc20-transfer"


@dataclass(frozen=True, slots=True)
class ETHTransfer:
    """An ETH transfer event emitted by the parachain's ETH app pallet.

    Attributes:
        sender: 32-byte Substrate account id that burned the wrapped ETH
        recipient: 20-byte Ethereum address to release ETH to
        amount: Amount in wei
    """
    sender: bytes
    recipient: bytes
    amount: int

    kind: ClassVar[EventKind] = EventKind.ETH_TRANSFER
    asset: ClassVar[AssetClass] = AssetClass.ETH


@dataclass(frozen=True, slots=True)
class ERC20Transfer:
    """An ERC20 transfer event emitted by the parachain's ERC20 app pallet.

    Attributes:
        token: 20-byte address of the token contract on Ethereum
        sender: 32-byte Substrate account id
        recipient: 20-byte Ethereum address
        amount: Token amount in the token's base unit
    """
    token: bytes
    sender: bytes
    recipient: bytes
    amount: int

    kind: ClassVar[EventKind] = EventKind.ERC20_TRANSFER
    asset: ClassVar[AssetClass] = AssetClass.ERC20


RawEvent = ETHTransfer | ERC20Transfer


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    """A decoded canonical message.

    ``token`` and ``origin_block`` are only carried by the ERC20 layout.
    """
    sender: bytes
    recipient: bytes
    amount: int
    token: bytes | None = None
    origin_block: int | None = None

    def __str__(self) -> str:
        return (
            f"CanonicalMessage(sender=0x{self.sender.hex()[:8]}..., "
            f"recipient=0x{self.recipient.hex()}, amount={self.amount})"
        )


@dataclass(frozen=True, slots=True)
class RelayMessage:
    """A message in flight between the listener and the dispatcher.

    Attributes:
        app_id: Routing id of the destination application
        payload: Canonical message bytes
        block_number: Source block the event was finalized in
    """
    app_id: str
    payload: bytes
    block_number: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "app_id": self.app_id,
            "payload": "0x" + self.payload.hex(),
            "block_number": self.block_number,
        }


@dataclass(frozen=True, slots=True)
class SendETH:
    """Inbound ETH deposit decoded from an Ethereum ``AppEvent`` log."""
    sender: ChecksumAddress
    recipient: bytes
    amount: int
    nonce: int


@dataclass(frozen=True, slots=True)
class SendERC20:
    """Inbound ERC20 deposit decoded from an Ethereum ``AppEvent`` log."""
    sender: ChecksumAddress
    recipient: bytes
    token: ChecksumAddress
    amount: int
    nonce: int


AppEvent = SendETH | SendERC20


@dataclass(frozen=True, slots=True)
class Locked:
    """Notification emitted by a successful lock."""
    sender: bytes
    recipient: bytes
    amount: int
    nonce: int


@dataclass(frozen=True, slots=True)
class Unlocked:
    """Notification emitted by a successful unlock."""
    recipient: bytes
    amount: int
    tx_hash: HexStr | None = None


@dataclass(frozen=True, slots=True)
class Rejection:
    """A message the dispatcher refused to apply.

    Attributes:
        message: The rejected channel message
        reason: Short machine-readable reason (e.g. ``insufficient-balance``)
        detail: Human-readable error text
    """
    message: RelayMessage
    reason: str
    detail: str
