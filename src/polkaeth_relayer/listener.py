"""
Finality-aware block poller for the parachain.

Walks finalized blocks one by one, decodes their events and forwards the
bridged ones to the message channel as canonical messages.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from enum import Enum
from typing import Any, Protocol

from . import codec
from .channel import MessageChannel
from .errors import EventDecodeError, ProtocolError
from .event_records import DEFAULT_ERC20_PALLET, DEFAULT_ETH_PALLET, RuntimeEventDecoder
from .models import AssetClass, RawEvent, RelayMessage


class SourceChain(Protocol):
    """Source chain RPC surface used by the listener."""

    async def get_finalized_head(self) -> int: ...

    async def get_latest_block(self) -> int: ...

    async def get_block_hash(self, block_number: int) -> str: ...

    async def get_events_at(self, block_hash: str) -> bytes: ...

    async def get_metadata(self) -> str: ...


class ListenerState(Enum):
    """States of the polling loop."""
    AWAITING_FINALITY = "awaiting_finality"
    FETCHING = "fetching"
    DECODING = "decoding"
    EMITTING = "emitting"


class ChainListener:
    """
    Polls a source chain for finalized blocks and relays their events.

    The block cursor only moves forward, one block at a time, and never past
    the finalized head. Fetch failures are retried after ``retry_interval``;
    a block whose events cannot be decoded stops the listener.
    """

    def __init__(
        self,
        source: SourceChain,
        channel: MessageChannel,
        targets: Mapping[AssetClass, str],
        retry_interval: float = 10,
        decode_events: Callable[[bytes], list[RawEvent]] | None = None,
        eth_pallet: str = DEFAULT_ETH_PALLET,
        erc20_pallet: str = DEFAULT_ERC20_PALLET,
    ) -> None:
        """
        Initialize the chain listener.

        Args:
            source: Source chain RPC client
            channel: Channel the canonical messages are pushed onto
            targets: Destination app id for each asset class
            retry_interval: Seconds to wait before retrying or re-checking finality
            decode_events: Event envelope decoder (built from the node's metadata if omitted)
            eth_pallet: Name of the ETH app pallet in the runtime
            erc20_pallet: Name of the ERC20 app pallet in the runtime
        """
        self.source = source
        self.channel = channel
        self.targets = dict(targets)
        self.retry_interval = retry_interval

        self.decode_events = decode_events
        self.eth_pallet = eth_pallet
        self.erc20_pallet = erc20_pallet

        self.state = ListenerState.AWAITING_FINALITY
        self.cursor: int | None = None
        self.finalized_head: int | None = None
        self.is_running = False
        self.messages_emitted = 0

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _sleep(self) -> None:
        await asyncio.sleep(self.retry_interval)

    async def resolve_start_block(self) -> int:
        """Return the latest block number, retrying until the node answers."""
        while True:
            try:
                return await self.source.get_latest_block()
            except Exception as e:
                self.logger.error(f"Failed to fetch latest block: {e}")
                await self._sleep()

    async def load_runtime(self) -> Callable[[bytes], list[RawEvent]]:
        """
        Build the event decoder from the node's runtime metadata.

        Fetching is retried like any other transient failure. Metadata that
        cannot be decoded is a protocol error.
        """
        while True:
            try:
                metadata = await self.source.get_metadata()
                break
            except Exception as e:
                self.logger.error(f"Failed to fetch runtime metadata: {e}")
                await self._sleep()

        try:
            decoder = RuntimeEventDecoder.from_metadata(
                metadata, eth_pallet=self.eth_pallet, erc20_pallet=self.erc20_pallet
            )
        except Exception as e:
            raise ProtocolError(f"Failed to decode runtime metadata: {e}") from e
        return decoder.decode

    async def poll_blocks(self, cursor_start: int) -> AsyncIterator[tuple[int, list[RawEvent]]]:
        """
        Yield ``(block_number, events)`` for every finalized block from ``cursor_start``.

        The generator never ends on its own. It suspends while waiting on the
        node or the retry timer, and raises EventDecodeError if a block's
        events do not decode.
        ``decode_events`` must already be set, run() loads it from the node.

        Args:
            cursor_start: First block number to process
        """
        self.cursor = cursor_start
        self.state = ListenerState.AWAITING_FINALITY
        block_hash: str | None = None
        raw_events = b""
        events: list[RawEvent] = []

        while True:
            match self.state:
                case ListenerState.AWAITING_FINALITY:
                    try:
                        self.finalized_head = await self.source.get_finalized_head()
                    except Exception as e:
                        self.logger.error(f"Failed to fetch finalized head: {e}")
                        await self._sleep()
                        continue

                    if self.cursor > self.finalized_head:
                        self.logger.debug(
                            f"Block not yet finalized: block={self.cursor} latest={self.finalized_head}"
                        )
                        await self._sleep()
                        continue

                    self.state = ListenerState.FETCHING

                case ListenerState.FETCHING:
                    self.logger.debug(f"Processing block {self.cursor}")
                    try:
                        block_hash = await self.source.get_block_hash(self.cursor)
                        raw_events = await self.source.get_events_at(block_hash)
                    except Exception as e:
                        self.logger.error(f"Failed to fetch events for block {self.cursor}: {e}")
                        self.state = ListenerState.AWAITING_FINALITY
                        await self._sleep()
                        continue

                    self.logger.debug(f"Fetched event record for block {self.cursor}: 0x{raw_events.hex()}")
                    self.state = ListenerState.DECODING

                case ListenerState.DECODING:
                    try:
                        events = self.decode_events(raw_events)
                    except Exception as e:
                        self.logger.error(f"Failed to decode events for block {self.cursor} ({block_hash}): {e}")
                        raise EventDecodeError(self.cursor, str(e)) from e

                    self.state = ListenerState.EMITTING

                case ListenerState.EMITTING:
                    yield self.cursor, events
                    self.cursor += 1
                    # Blocks below the known head are final, no need to ask again
                    if self.cursor <= self.finalized_head:
                        self.state = ListenerState.FETCHING
                    else:
                        self.state = ListenerState.AWAITING_FINALITY

    async def handle_events(self, block_number: int, events: list[RawEvent]) -> None:
        """
        Encode a block's events and push them onto the channel in log order.

        Args:
            block_number: Block the events were finalized in
            events: Bridged events of the block
        """
        for event in events:
            app_id = self.targets[event.asset]
            payload = codec.encode(event, block_number)

            self.logger.info(f"Handling {event.kind.value} event in block {block_number}")
            await self.channel.send(
                RelayMessage(app_id=app_id, payload=payload, block_number=block_number)
            )
            self.messages_emitted += 1

    async def run(self, cursor_start: int | None = None) -> None:
        """
        Relay events until cancelled or a decode error stops the loop.

        Args:
            cursor_start: First block to process; the latest block if omitted
        """
        if self.is_running:
            self.logger.warning("Listener already running")
            return

        self.is_running = True
        try:
            if self.decode_events is None:
                self.decode_events = await self.load_runtime()
            if cursor_start is None:
                cursor_start = await self.resolve_start_block()
            self.logger.info(f"Starting block polling at block {cursor_start} every {self.retry_interval}s")

            async for block_number, events in self.poll_blocks(cursor_start):
                await self.handle_events(block_number, events)
        except asyncio.CancelledError:
            self.logger.info("Polling cancelled")
            raise
        finally:
            self.is_running = False

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the listener.

        Returns:
            Dictionary with status information
        """
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "cursor": self.cursor,
            "finalized_head": self.finalized_head,
            "messages_emitted": self.messages_emitted,
        }
