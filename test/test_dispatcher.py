#!/usr/bin/env python3
"""Unit tests for the Dispatcher."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from polkaeth_relayer import codec
from polkaeth_relayer.channel import MessageChannel
from polkaeth_relayer.dispatcher import Dispatcher
from polkaeth_relayer.ledger import LedgerGuard
from polkaeth_relayer.models import (
    AssetClass,
    ERC20Transfer,
    ETHTransfer,
    Locked,
    Rejection,
    RelayMessage,
    Unlocked,
)

ETH_APP = "0xETHAPP"
ERC20_APP = "0xERC20APP"
SENDER = b"\x11" * 32
RECIPIENT = b"\xaa" * 20
TOKEN = b"\x77" * 20
TX_HASH = "0x" + "cd" * 32


def eth_message(amount: int, block: int = 1) -> RelayMessage:
    payload = codec.encode(ETHTransfer(SENDER, RECIPIENT, amount), block)
    return RelayMessage(app_id=ETH_APP, payload=payload, block_number=block)


def erc20_message(amount: int, block: int = 1) -> RelayMessage:
    payload = codec.encode(ERC20Transfer(TOKEN, SENDER, RECIPIENT, amount), block)
    return RelayMessage(app_id=ERC20_APP, payload=payload, block_number=block)


@pytest.fixture
def transfer():
    return AsyncMock(return_value=TX_HASH)


@pytest.fixture
def channel():
    return MessageChannel(capacity=16)


@pytest.fixture
def dispatcher(channel, transfer):
    guards = [
        LedgerGuard(app_id=ETH_APP, transfer=transfer, asset=AssetClass.ETH),
        LedgerGuard(app_id=ERC20_APP, transfer=transfer, asset=AssetClass.ERC20),
    ]
    return Dispatcher(channel=channel, guards=guards)


class TestProcess:
    """Tests for Dispatcher.process."""

    @pytest.mark.asyncio
    async def test_valid_unlock(self, dispatcher, transfer):
        dispatcher.deposit(ETH_APP, SENDER, RECIPIENT, 100)

        result = await dispatcher.process(eth_message(40))

        assert result == Unlocked(recipient=RECIPIENT, amount=40, tx_hash=TX_HASH)
        assert dispatcher.guards[ETH_APP].total_locked == 60
        transfer.assert_awaited_once_with(RECIPIENT, 40, None)
        assert dispatcher.messages_applied == 1

    @pytest.mark.asyncio
    async def test_erc20_unlock_passes_token(self, dispatcher, transfer):
        dispatcher.deposit(ERC20_APP, SENDER, RECIPIENT, 500)

        result = await dispatcher.process(erc20_message(200))

        assert isinstance(result, Unlocked)
        transfer.assert_awaited_once_with(RECIPIENT, 200, TOKEN)
        assert dispatcher.guards[ERC20_APP].total_locked == 300
        assert dispatcher.guards[ETH_APP].total_locked == 0

    @pytest.mark.asyncio
    async def test_malformed_message_is_dropped(self, dispatcher, transfer):
        dispatcher.deposit(ETH_APP, SENDER, RECIPIENT, 100)
        bad = RelayMessage(app_id=ETH_APP, payload=b"\x00" * 90, block_number=3)

        result = await dispatcher.process(bad)

        assert isinstance(result, Rejection)
        assert result.reason == "malformed"
        assert "expected 84 bytes, got 90" in result.detail
        assert dispatcher.messages_dropped == 1
        assert dispatcher.guards[ETH_APP].total_locked == 100
        transfer.assert_not_called()

    @pytest.mark.asyncio
    async def test_zero_amount_is_rejected(self, dispatcher, transfer):
        dispatcher.deposit(ETH_APP, SENDER, RECIPIENT, 100)

        result = await dispatcher.process(eth_message(0))

        assert result.reason == "invalid-amount"
        assert dispatcher.messages_rejected == 1
        assert dispatcher.guards[ETH_APP].total_locked == 100
        transfer.assert_not_called()

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_rejected(self, dispatcher):
        dispatcher.deposit(ETH_APP, SENDER, RECIPIENT, 100)

        result = await dispatcher.process(eth_message(100))

        assert result.reason == "insufficient-balance"
        assert dispatcher.guards[ETH_APP].total_locked == 100

    @pytest.mark.asyncio
    async def test_unknown_application(self, dispatcher):
        message = RelayMessage(app_id="0xNOBODY", payload=b"\x00" * 84, block_number=1)

        result = await dispatcher.process(message)

        assert result.reason == "unknown-app"
        assert dispatcher.messages_dropped == 1

    @pytest.mark.asyncio
    async def test_failed_transfer_is_recorded(self, dispatcher, transfer):
        transfer.side_effect = RuntimeError("reverted")
        dispatcher.deposit(ETH_APP, SENDER, RECIPIENT, 100)

        result = await dispatcher.process(eth_message(30))

        assert result.reason == "transfer-failed"
        assert dispatcher.transfers_failed == 1
        assert dispatcher.guards[ETH_APP].total_locked == 70

    @pytest.mark.asyncio
    async def test_rejection_callback_and_history(self, channel, transfer):
        on_rejected = MagicMock()
        guard = LedgerGuard(app_id=ETH_APP, transfer=transfer)
        dispatcher = Dispatcher(channel=channel, guards=[guard], on_rejected=on_rejected)

        result = await dispatcher.process(eth_message(5))

        on_rejected.assert_called_once_with(result)
        assert list(dispatcher.rejections) == [result]

    @pytest.mark.asyncio
    async def test_rejection_history_is_bounded(self, dispatcher):
        message = RelayMessage(app_id="0xNOBODY", payload=b"", block_number=1)
        for _ in range(Dispatcher.MAX_REJECTIONS + 5):
            await dispatcher.process(message)

        assert len(dispatcher.rejections) == Dispatcher.MAX_REJECTIONS
        assert dispatcher.messages_dropped == Dispatcher.MAX_REJECTIONS + 5


class TestRun:
    """Tests for Dispatcher.run."""

    @pytest.mark.asyncio
    async def test_processing_continues_after_bad_message(self, dispatcher, channel, transfer):
        dispatcher.deposit(ETH_APP, SENDER, RECIPIENT, 1_000)
        for message in (
            eth_message(10, block=1),
            RelayMessage(app_id=ETH_APP, payload=b"\x01" * 90, block_number=2),
            eth_message(20, block=3),
            eth_message(0, block=4),
            eth_message(30, block=5),
        ):
            await channel.send(message)

        task = asyncio.create_task(dispatcher.run())
        for _ in range(20):
            await asyncio.sleep(0)
            if len(channel) == 0 and dispatcher.messages_applied == 3:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [c.args[1] for c in transfer.await_args_list] == [10, 20, 30]
        assert dispatcher.get_metrics() == {
            "messages_applied": 3,
            "messages_dropped": 1,
            "messages_rejected": 1,
            "transfers_failed": 0,
        }
        assert dispatcher.guards[ETH_APP].total_locked == 940


class TestDeposit:
    """Tests for Dispatcher.deposit."""

    def test_deposit_locks_into_app(self, dispatcher):
        event = dispatcher.deposit(ERC20_APP, SENDER, RECIPIENT, 7)

        assert event == Locked(sender=SENDER, recipient=RECIPIENT, amount=7, nonce=1)
        assert dispatcher.guards[ERC20_APP].total_locked == 7

    def test_deposit_to_unknown_app(self, dispatcher):
        with pytest.raises(KeyError):
            dispatcher.deposit("0xNOBODY", SENDER, RECIPIENT, 7)
