"""
Decoding of the parachain's ``System.Events`` storage.

Event records are decoded with scalecodec against the runtime metadata
fetched from the node, so events of every pallet are understood. Only the
transfer events of the two bridge pallets become RawEvents; the rest are
dropped. Bytes that do not match the metadata mean the runtime changed
under us, and decoding fails rather than guessing.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from scalecodec.base import RuntimeConfigurationObject, ScaleBytes
from scalecodec.type_registry import load_type_registry_preset
from scalecodec.utils.ss58 import ss58_decode

from .models import ERC20Transfer, ETHTransfer, EventKind, RawEvent

logger = logging.getLogger(__name__)

DEFAULT_ETH_PALLET = "ETH"
DEFAULT_ERC20_PALLET = "ERC20"
TRANSFER_EVENT = "Transfer"


def _to_bytes(value: Any, size: int) -> bytes:
    """Normalize an AccountId/H160 value (bytes, hex or SS58) to raw bytes."""
    match value:
        case bytes():
            raw = value
        case str() if value.startswith("0x"):
            raw = bytes.fromhex(value[2:])
        case str():
            raw = bytes.fromhex(ss58_decode(value))
        case _:
            raise ValueError(f"Unsupported account value {value!r}")

    if len(raw) != size:
        raise ValueError(f"Expected {size} bytes, got {len(raw)}")
    return raw


def _attribute_values(attributes: Any) -> list[Any]:
    """Positional event fields, whatever shape scalecodec returned them in."""
    match attributes:
        case Mapping():
            values = list(attributes.values())
        case list() | tuple():
            values = list(attributes)
        case None:
            values = []
        case _:
            values = [attributes]

    # Pre-V14 metadata wraps each param as {"type": ..., "value": ...}
    return [v["value"] if isinstance(v, Mapping) and "value" in v else v for v in values]


def event_from_record(record: Mapping[str, Any], pallets: Mapping[str, EventKind]) -> RawEvent | None:
    """
    Convert one decoded EventRecord into a RawEvent.

    Args:
        record: EventRecord value as produced by scalecodec
        pallets: Bridge pallet name to the event kind it emits

    Returns:
        The RawEvent, or None if the event is not bridged
    """
    event = record.get("event") or record
    module_id = event.get("module_id")
    event_id = event.get("event_id")

    kind = pallets.get(module_id)
    if kind is None or event_id != TRANSFER_EVENT:
        logger.debug(f"Skipping {module_id}.{event_id} event")
        return None

    values = _attribute_values(event.get("attributes"))
    match kind:
        case EventKind.ETH_TRANSFER:
            sender, recipient, amount = values
            return ETHTransfer(
                sender=_to_bytes(sender, 32),
                recipient=_to_bytes(recipient, 20),
                amount=int(amount),
            )
        case EventKind.ERC20_TRANSFER:
            token, sender, recipient, amount = values
            return ERC20Transfer(
                token=_to_bytes(token, 20),
                sender=_to_bytes(sender, 32),
                recipient=_to_bytes(recipient, 20),
                amount=int(amount),
            )


def events_from_records(
    records: Sequence[Mapping[str, Any]], pallets: Mapping[str, EventKind]
) -> list[RawEvent]:
    """Bridged RawEvents of a block, in the chain's event order."""
    events = []
    for record in records:
        if (event := event_from_record(record, pallets)) is not None:
            events.append(event)
    return events


class RuntimeEventDecoder:
    """Decodes ``Vec<EventRecord>`` storage for one runtime version."""

    def __init__(
        self,
        runtime_config: RuntimeConfigurationObject,
        metadata: Any,
        eth_pallet: str = DEFAULT_ETH_PALLET,
        erc20_pallet: str = DEFAULT_ERC20_PALLET,
    ) -> None:
        """
        Initialize the decoder.

        Args:
            runtime_config: scalecodec runtime configuration with the metadata types loaded
            metadata: Decoded ``MetadataVersioned`` object
            eth_pallet: Name of the ETH app pallet
            erc20_pallet: Name of the ERC20 app pallet
        """
        self.runtime_config = runtime_config
        self.metadata = metadata
        self.pallets = {
            eth_pallet: EventKind.ETH_TRANSFER,
            erc20_pallet: EventKind.ERC20_TRANSFER,
        }

    @classmethod
    def from_metadata(
        cls,
        metadata: bytes | str,
        eth_pallet: str = DEFAULT_ETH_PALLET,
        erc20_pallet: str = DEFAULT_ERC20_PALLET,
    ) -> "RuntimeEventDecoder":
        """
        Build a decoder from the raw ``state_getMetadata`` result.

        Args:
            metadata: SCALE-encoded runtime metadata (bytes or 0x-prefixed hex)
            eth_pallet: Name of the ETH app pallet
            erc20_pallet: Name of the ERC20 app pallet
        """
        if isinstance(metadata, bytes):
            metadata = "0x" + metadata.hex()

        runtime_config = RuntimeConfigurationObject()
        runtime_config.update_type_registry(load_type_registry_preset("core"))

        metadata_obj = runtime_config.create_scale_object("MetadataVersioned", data=ScaleBytes(metadata))
        metadata_obj.decode()
        if metadata_obj.portable_registry:
            runtime_config.add_portable_registry(metadata_obj)

        logger.info(f"Loaded runtime metadata for pallets {eth_pallet}, {erc20_pallet}")
        return cls(runtime_config, metadata_obj, eth_pallet=eth_pallet, erc20_pallet=erc20_pallet)

    def _decode_records(self, raw: bytes) -> list[Mapping[str, Any]]:
        records = self.runtime_config.create_scale_object(
            "Vec<EventRecord>", data=ScaleBytes(bytearray(raw)), metadata=self.metadata
        )
        records.decode()
        return records.value

    def decode(self, raw: bytes) -> list[RawEvent]:
        """
        Decode SCALE ``Vec<EventRecord>`` bytes into bridged RawEvents.

        Args:
            raw: Storage value of ``System.Events``

        Returns:
            Bridged events in chain order

        Raises:
            ValueError: If a bridged event carries malformed fields (scalecodec
                errors propagate when the bytes do not match the metadata)
        """
        return events_from_records(self._decode_records(raw), self.pallets)
