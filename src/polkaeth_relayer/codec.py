"""
Canonical message codec.

Converts parachain RawEvents into the fixed-width binary messages understood
by the Ethereum applications, and decodes them back on the destination side.
Also decodes inbound ``AppEvent`` logs emitted by the Ethereum applications.

Layouts (big-endian integers, fixed offsets):

    ETH   (84 bytes):  sender[0:32] recipient[32:52] amount[52:84]
    ERC20 (112 bytes): sender[0:32] recipient[32:52] token[52:72]
                       amount[72:104] origin_block[104:112]
"""

import logging

import rlp
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from .errors import DecodeError, EncodeError
from .models import (
    AppEvent,
    AssetClass,
    CanonicalMessage,
    ERC20Transfer,
    ETHTransfer,
    RawEvent,
    SendERC20,
    SendETH,
)

logger = logging.getLogger(__name__)

SENDER_SIZE = 32
ADDRESS_SIZE = 20
AMOUNT_SIZE = 32
BLOCK_NUMBER_SIZE = 8

MESSAGE_SIZES: dict[AssetClass, int] = {
    AssetClass.ETH: SENDER_SIZE + ADDRESS_SIZE + AMOUNT_SIZE,
    AssetClass.ERC20: SENDER_SIZE + ADDRESS_SIZE + ADDRESS_SIZE + AMOUNT_SIZE + BLOCK_NUMBER_SIZE,
}

APP_EVENT_SIGNATURE = "AppEvent(uint256,bytes)"
APP_EVENT_TOPIC: bytes = bytes(Web3.keccak(text=APP_EVENT_SIGNATURE))
APP_EVENT_TYPES = ["uint256", "bytes"]
APP_PAYLOAD_TYPES = ["address", "bytes32", "address", "uint256", "uint256"]

TAG_SEND_ETH = 0
TAG_SEND_ERC20 = 1


def _fixed(name: str, value: bytes, size: int) -> bytes:
    if len(value) != size:
        raise EncodeError(f"{name} must be {size} bytes, got {len(value)}")
    return bytes(value)


def _uint(name: str, value: int, size: int) -> bytes:
    try:
        return value.to_bytes(size, byteorder="big", signed=False)
    except OverflowError:
        raise EncodeError(f"{name} {value} does not fit in {size * 8} unsigned bits") from None


def encode(event: RawEvent, origin_block: int) -> bytes:
    """
    Serialize a RawEvent into its canonical fixed-width message.

    No business validation is done here: a zero amount is encoded as-is.

    Args:
        event: Decoded source chain event
        origin_block: Source block number the event was finalized in

    Returns:
        Canonical message bytes for the event's asset class

    Raises:
        EncodeError: If a field does not fit its fixed-width slot
    """
    match event:
        case ETHTransfer(sender=sender, recipient=recipient, amount=amount):
            return (
                _fixed("sender", sender, SENDER_SIZE)
                + _fixed("recipient", recipient, ADDRESS_SIZE)
                + _uint("amount", amount, AMOUNT_SIZE)
            )
        case ERC20Transfer(token=token, sender=sender, recipient=recipient, amount=amount):
            return (
                _fixed("sender", sender, SENDER_SIZE)
                + _fixed("recipient", recipient, ADDRESS_SIZE)
                + _fixed("token", token, ADDRESS_SIZE)
                + _uint("amount", amount, AMOUNT_SIZE)
                + _uint("origin_block", origin_block, BLOCK_NUMBER_SIZE)
            )
        case _:
            raise EncodeError(f"Unsupported event type: {type(event).__name__}")


def decode(payload: bytes, asset: AssetClass = AssetClass.ETH) -> CanonicalMessage:
    """
    Decode a canonical message on the destination side.

    The payload must be exactly the size of the asset's layout. It is never
    truncated or zero-padded.

    Args:
        payload: Raw message bytes
        asset: Asset class selecting the layout

    Returns:
        The decoded CanonicalMessage

    Raises:
        DecodeError: If the payload length does not match the layout
    """
    expected = MESSAGE_SIZES[asset]
    if len(payload) != expected:
        raise DecodeError(
            f"Invalid {asset.value} message length: expected {expected} bytes, got {len(payload)}"
        )

    sender = bytes(payload[0:32])
    recipient = bytes(payload[32:52])

    if asset is AssetClass.ETH:
        return CanonicalMessage(
            sender=sender,
            recipient=recipient,
            amount=int.from_bytes(payload[52:84], byteorder="big", signed=False),
        )

    return CanonicalMessage(
        sender=sender,
        recipient=recipient,
        token=bytes(payload[52:72]),
        amount=int.from_bytes(payload[72:104], byteorder="big", signed=False),
        origin_block=int.from_bytes(payload[104:112], byteorder="big", signed=False),
    )


def decode_app_event(log: bytes | HexBytes) -> AppEvent:
    """
    Decode an RLP-encoded Ethereum log carrying an ``AppEvent``.

    The log is ``[address, [topics...], data]``; ``data`` ABI-encodes
    ``(uint256 tag, bytes payload)`` and the payload ABI-encodes
    ``(address sender, bytes32 recipient, address token, uint256 amount, uint256 nonce)``.

    Args:
        log: RLP bytes of the log entry

    Returns:
        SendETH for tag 0, SendERC20 for tag 1

    Raises:
        DecodeError: On malformed RLP, wrong event signature, bad ABI data or unknown tag
    """
    try:
        fields = rlp.decode(bytes(log))
    except rlp.DecodingError as e:
        raise DecodeError(f"Invalid RLP log: {e}") from e

    match fields:
        case [bytes() as address, list() | tuple() as topics, bytes() as data]:
            pass
        case _:
            raise DecodeError("Log must be a list of [address, topics, data]")

    if len(address) != ADDRESS_SIZE:
        raise DecodeError(f"Invalid log address length: {len(address)}")
    if not topics or topics[0] != APP_EVENT_TOPIC:
        raise DecodeError(f"Log is not an {APP_EVENT_SIGNATURE} event")

    try:
        tag, payload = abi_decode(APP_EVENT_TYPES, data)
        sender, recipient, token, amount, nonce = abi_decode(APP_PAYLOAD_TYPES, payload)
    except (DecodingError, ValueError) as e:
        raise DecodeError(f"Invalid AppEvent data: {e}") from e

    logger.debug(f"Decoded AppEvent from 0x{address.hex()} with tag {tag}")

    if tag == TAG_SEND_ETH:
        return SendETH(
            sender=Web3.to_checksum_address(sender),
            recipient=recipient,
            amount=amount,
            nonce=nonce,
        )
    if tag == TAG_SEND_ERC20:
        return SendERC20(
            sender=Web3.to_checksum_address(sender),
            recipient=recipient,
            token=Web3.to_checksum_address(token),
            amount=amount,
            nonce=nonce,
        )
    raise DecodeError(f"Unknown AppEvent tag: {tag}")
