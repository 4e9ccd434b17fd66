#!/usr/bin/env python3
"""Unit tests for the ChainListener polling loop."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from polkaeth_relayer import codec
from polkaeth_relayer.channel import MessageChannel
from polkaeth_relayer.errors import EventDecodeError, ProtocolError, RpcError
from polkaeth_relayer.listener import ChainListener, ListenerState
from polkaeth_relayer.models import AssetClass, ERC20Transfer, ETHTransfer

ETH_APP = "0xFc97A6197dc90bef6bbEFD672742Ed75E9768553"
ERC20_APP = "0xEDa338E4dC46038493b885327842fD3E301CaB39"
TARGETS = {AssetClass.ETH: ETH_APP, AssetClass.ERC20: ERC20_APP}

ALICE = b"\x01" * 32
BOB = b"\x02" * 20
TOKEN = b"\x03" * 20


class FakeSource:
    """In-memory source chain.

    ``heads`` is consumed one value per finality check, the last value
    repeats. Entries may be exceptions to simulate RPC failures.
    """

    def __init__(self, heads, latest=0, hash_failures=None, metadata_failures=0):
        self.heads = list(heads)
        self.latest = latest
        self.hash_failures = dict(hash_failures or {})
        self.last_head = None
        self.fetched_blocks: list[int] = []
        self.premature: list[int] = []
        self.metadata_failures = metadata_failures
        self.metadata_requests = 0

    async def get_metadata(self) -> str:
        self.metadata_requests += 1
        if self.metadata_failures > 0:
            self.metadata_failures -= 1
            raise RpcError("state_getMetadata", "connection refused")
        return "0x6d657461"

    async def get_finalized_head(self) -> int:
        head = self.heads.pop(0) if len(self.heads) > 1 else self.heads[0]
        if isinstance(head, Exception):
            raise head
        self.last_head = head
        return head

    async def get_latest_block(self) -> int:
        return self.latest

    async def get_block_hash(self, block_number: int) -> str:
        if self.hash_failures.get(block_number, 0) > 0:
            self.hash_failures[block_number] -= 1
            raise RpcError("chain_getBlockHash", "connection reset")
        if self.last_head is None or block_number > self.last_head:
            self.premature.append(block_number)
        self.fetched_blocks.append(block_number)
        return "0x" + block_number.to_bytes(32, "big").hex()

    async def get_events_at(self, block_hash: str) -> bytes:
        return bytes.fromhex(block_hash[2:])[-8:]


def block_decoder(events_by_block):
    """Decoder mapping the fake raw bytes back to the block's events."""
    def decode(raw: bytes):
        return list(events_by_block.get(int.from_bytes(raw, "big"), []))
    return decode


async def take(generator, count):
    items = []
    async for item in generator:
        items.append(item)
        if len(items) == count:
            break
    await generator.aclose()
    return items


def make_listener(source, channel=None, events_by_block=None, retry_interval=0):
    return ChainListener(
        source=source,
        channel=channel if channel is not None else MessageChannel(),
        targets=TARGETS,
        retry_interval=retry_interval,
        decode_events=block_decoder(events_by_block or {}),
    )


class TestPollBlocks:
    """Tests for ChainListener.poll_blocks."""

    @pytest.mark.asyncio
    async def test_cursor_is_monotonic_without_gaps(self):
        listener = make_listener(FakeSource(heads=[100]))

        blocks = await take(listener.poll_blocks(10), 6)

        assert [number for number, _ in blocks] == [10, 11, 12, 13, 14, 15]

    @pytest.mark.asyncio
    async def test_waits_for_finality(self):
        """Block N is never fetched while the finalized head is below N."""
        source = FakeSource(heads=[3, 3, 4, 4, 4, 6])
        listener = make_listener(source)

        blocks = await take(listener.poll_blocks(4), 3)

        assert [number for number, _ in blocks] == [4, 5, 6]
        assert source.premature == []
        assert source.fetched_blocks == [4, 5, 6]

    @pytest.mark.asyncio
    async def test_finalized_head_errors_are_retried(self):
        source = FakeSource(heads=[RpcError("chain_getFinalizedHead", "timeout"), RpcError("x", "y"), 10])
        listener = make_listener(source)

        blocks = await take(listener.poll_blocks(1), 2)

        assert [number for number, _ in blocks] == [1, 2]

    @pytest.mark.asyncio
    async def test_fetch_errors_are_retried_without_skipping(self):
        source = FakeSource(heads=[50], hash_failures={7: 2})
        listener = make_listener(source)

        blocks = await take(listener.poll_blocks(6), 3)

        assert [number for number, _ in blocks] == [6, 7, 8]
        assert source.fetched_blocks == [6, 7, 8]

    @pytest.mark.asyncio
    async def test_events_yielded_in_log_order(self):
        events = {
            5: [ETHTransfer(ALICE, BOB, 1), ERC20Transfer(TOKEN, ALICE, BOB, 2)],
            6: [],
        }
        listener = make_listener(FakeSource(heads=[10]), events_by_block=events)

        blocks = await take(listener.poll_blocks(5), 2)

        assert blocks == [(5, events[5]), (6, [])]

    @pytest.mark.asyncio
    async def test_decode_failure_is_fatal(self):
        def broken_decoder(raw):
            raise ValueError("unknown event index (42, 0)")

        listener = ChainListener(
            source=FakeSource(heads=[10]),
            channel=MessageChannel(),
            targets=TARGETS,
            retry_interval=0,
            decode_events=broken_decoder,
        )

        with pytest.raises(EventDecodeError) as exc_info:
            await take(listener.poll_blocks(3), 1)

        assert exc_info.value.block_number == 3
        assert "unknown event index" in exc_info.value.reason
        assert listener.state == ListenerState.DECODING


class TestRun:
    """Tests for ChainListener.run."""

    @pytest.mark.asyncio
    async def test_messages_forwarded_in_order(self):
        events = {
            1: [ETHTransfer(ALICE, BOB, 10), ERC20Transfer(TOKEN, ALICE, BOB, 20)],
            2: [ETHTransfer(ALICE, BOB, 30)],
        }
        channel = MessageChannel()
        listener = make_listener(FakeSource(heads=[2]), channel=channel, events_by_block=events)

        task = asyncio.create_task(listener.run(cursor_start=1))
        received = [await asyncio.wait_for(channel.receive(), timeout=1) for _ in range(3)]
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [m.app_id for m in received] == [ETH_APP, ERC20_APP, ETH_APP]
        assert [m.block_number for m in received] == [1, 1, 2]
        assert received[0].payload == codec.encode(events[1][0], 1)
        assert received[1].payload == codec.encode(events[1][1], 1)
        assert codec.decode(received[2].payload).amount == 30
        assert listener.messages_emitted == 3
        assert not listener.is_running

    @pytest.mark.asyncio
    async def test_starts_at_latest_block_by_default(self):
        source = FakeSource(heads=[20], latest=17)
        channel = MessageChannel()
        listener = make_listener(source, channel=channel, events_by_block={17: [ETHTransfer(ALICE, BOB, 1)]})

        task = asyncio.create_task(listener.run())
        message = await asyncio.wait_for(channel.receive(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert message.block_number == 17
        assert source.fetched_blocks[0] == 17

    @pytest.mark.asyncio
    async def test_full_channel_stalls_cursor(self):
        events = {1: [ETHTransfer(ALICE, BOB, n) for n in range(1, 4)], 2: [ETHTransfer(ALICE, BOB, 9)]}
        channel = MessageChannel(capacity=1)
        listener = make_listener(FakeSource(heads=[5]), channel=channel, events_by_block=events)

        task = asyncio.create_task(listener.run(cursor_start=1))
        for _ in range(10):
            await asyncio.sleep(0)

        assert len(channel) == 1
        assert listener.cursor == 1
        assert listener.messages_emitted == 1

        amounts = [codec.decode((await asyncio.wait_for(channel.receive(), timeout=1)).payload).amount
                   for _ in range(4)]
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert amounts == [1, 2, 3, 9]

    @pytest.mark.asyncio
    async def test_retry_sleep_is_interruptible(self):
        listener = make_listener(FakeSource(heads=[0]), retry_interval=3600)

        task = asyncio.create_task(listener.run(cursor_start=5))
        for _ in range(5):
            await asyncio.sleep(0)
        assert listener.state == ListenerState.AWAITING_FINALITY

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_decode_failure_stops_run(self):
        def broken_decoder(raw):
            raise ValueError("bad record")

        listener = ChainListener(
            source=FakeSource(heads=[3]),
            channel=MessageChannel(),
            targets=TARGETS,
            retry_interval=0,
            decode_events=broken_decoder,
        )

        with pytest.raises(EventDecodeError):
            await asyncio.wait_for(listener.run(cursor_start=1), timeout=1)

        assert listener.get_status()["cursor"] == 1
        assert listener.messages_emitted == 0


class TestLoadRuntime:
    """Tests for building the event decoder from the node's metadata."""

    @pytest.mark.asyncio
    async def test_metadata_fetch_is_retried(self):
        source = FakeSource(heads=[0], metadata_failures=2)
        listener = ChainListener(source=source, channel=MessageChannel(), targets=TARGETS, retry_interval=0,
                                 eth_pallet="EthApp", erc20_pallet="Erc20App")

        with patch("polkaeth_relayer.listener.RuntimeEventDecoder.from_metadata") as mock_from_metadata:
            decode = await listener.load_runtime()

        assert source.metadata_requests == 3
        mock_from_metadata.assert_called_once_with("0x6d657461", eth_pallet="EthApp", erc20_pallet="Erc20App")
        assert decode == mock_from_metadata.return_value.decode

    @pytest.mark.asyncio
    async def test_undecodable_metadata_is_a_protocol_error(self):
        listener = ChainListener(source=FakeSource(heads=[0]), channel=MessageChannel(), targets=TARGETS,
                                 retry_interval=0)

        with patch(
            "polkaeth_relayer.listener.RuntimeEventDecoder.from_metadata",
            side_effect=ValueError("Metadata magic number mismatch"),
        ):
            with pytest.raises(ProtocolError, match="Failed to decode runtime metadata"):
                await listener.load_runtime()

    @pytest.mark.asyncio
    async def test_run_loads_decoder_before_polling(self):
        source = FakeSource(heads=[1])
        channel = MessageChannel()
        listener = ChainListener(source=source, channel=channel, targets=TARGETS, retry_interval=0)
        decoder = MagicMock()
        decoder.decode.side_effect = block_decoder({1: [ETHTransfer(ALICE, BOB, 4)]})

        with patch("polkaeth_relayer.listener.RuntimeEventDecoder.from_metadata", return_value=decoder):
            task = asyncio.create_task(listener.run(cursor_start=1))
            message = await asyncio.wait_for(channel.receive(), timeout=1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert source.metadata_requests == 1
        assert message.app_id == ETH_APP
        assert codec.decode(message.payload).amount == 4
