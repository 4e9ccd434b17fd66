"""
Polling listener for deposits made on the Ethereum applications.

The bridge applications emit an ``AppEvent`` log whenever value is locked on
the Ethereum side. Each confirmed log is decoded and credited to the
application's ledger through the dispatcher, which is what later allows
releases for the same application.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from hexbytes import HexBytes

from . import codec
from .dispatcher import Dispatcher
from .errors import DecodeError, LedgerError
from .models import AppEvent, AssetClass, SendERC20, SendETH


class DepositSource(Protocol):
    """Destination chain RPC surface used by the deposit listener."""

    async def get_block_number(self) -> int: ...

    async def get_app_logs(self, from_block: int, to_block: int, addresses: list[str]) -> list[bytes]: ...


class DepositListener:
    """
    Polls the Ethereum applications for ``AppEvent`` deposits.

    Only blocks buried under ``confirmations`` blocks are scanned. The
    cursor is advanced only after a whole range has been credited, so a
    failed poll is retried from the same block.
    """

    def __init__(
        self,
        source: DepositSource,
        dispatcher: Dispatcher,
        targets: Mapping[AssetClass, str],
        confirmations: int = 12,
        start_block: int | None = None,
        poll_interval: float = 10,
    ) -> None:
        """
        Initialize the deposit listener.

        Args:
            source: Destination chain client
            dispatcher: Dispatcher owning the ledger guards
            targets: Application id for each asset class
            confirmations: Blocks a log must be buried under before it is credited
            start_block: First block to scan, the confirmed head if omitted
            poll_interval: Seconds between polls
        """
        self.source = source
        self.dispatcher = dispatcher
        self.targets = dict(targets)
        self.confirmations = confirmations
        self.start_block = start_block
        self.poll_interval = poll_interval

        # State tracking
        self.last_processed_block: int | None = None
        self.is_running = False
        self.deposits_credited = 0
        self.deposits_skipped = 0

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _app_for(self, event: AppEvent) -> str:
        match event:
            case SendETH():
                return self.targets[AssetClass.ETH]
            case SendERC20():
                return self.targets[AssetClass.ERC20]

    def credit(self, log: bytes) -> bool:
        """
        Decode one ``AppEvent`` log and lock its amount in the application's ledger.

        Malformed logs and deposits the ledger refuses are logged and skipped.

        Returns:
            True if the deposit was credited
        """
        try:
            event = codec.decode_app_event(log)
        except DecodeError as e:
            self.deposits_skipped += 1
            self.logger.error(f"Skipping undecodable deposit log: {e}")
            return False

        app_id = self._app_for(event)
        try:
            locked = self.dispatcher.deposit(app_id, bytes(HexBytes(event.sender)), event.recipient, event.amount)
        except LedgerError as e:
            self.deposits_skipped += 1
            self.logger.warning(f"Deposit {event} refused: {e}")
            return False

        self.deposits_credited += 1
        self.logger.info(f"Credited deposit of {event.amount} to {app_id} (nonce {locked.nonce})")
        return True

    async def poll_for_deposits(self) -> None:
        """
        Credit every deposit between the last processed block and the confirmed head.

        Raises:
            Exception: Whatever the client raised; the cursor is left unchanged
        """
        head = await self.source.get_block_number()
        confirmed = head - self.confirmations
        if confirmed < 0:
            return

        if self.last_processed_block is None:
            start = self.start_block if self.start_block is not None else confirmed
            self.last_processed_block = start - 1

        if confirmed <= self.last_processed_block:
            return

        from_block = self.last_processed_block + 1
        logs = await self.source.get_app_logs(from_block, confirmed, list(self.targets.values()))
        if logs:
            self.logger.info(f"Found {len(logs)} deposit logs in blocks {from_block}-{confirmed}")
        for log in logs:
            self.credit(log)

        self.last_processed_block = confirmed

    async def run(self) -> None:
        """Poll for deposits until cancelled."""
        if self.is_running:
            self.logger.warning("Deposit polling already running")
            return

        self.is_running = True
        self.logger.info(
            f"Starting deposit polling on {', '.join(self.targets.values())} "
            f"every {self.poll_interval}s with {self.confirmations} confirmations"
        )
        try:
            while True:
                try:
                    await self.poll_for_deposits()
                except Exception as e:
                    self.logger.error(f"Error polling for deposits: {e}")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            self.logger.info("Deposit polling cancelled")
            raise
        finally:
            self.is_running = False

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the deposit listener.

        Returns:
            Dictionary with status information
        """
        return {
            "is_running": self.is_running,
            "last_processed_block": self.last_processed_block,
            "deposits_credited": self.deposits_credited,
            "deposits_skipped": self.deposits_skipped,
        }
