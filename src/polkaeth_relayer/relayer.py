"""
Polkaeth relayer implementation.

This module contains the main relayer service that wires the chain listener,
the deposit listener, the message channel and the dispatcher together and
manages their lifecycle.
"""

import asyncio
import logging
from typing import Optional

from .channel import MessageChannel
from .config import RelayerConfig
from .deposits import DepositListener
from .dispatcher import Dispatcher
from .errors import ProtocolError
from .ledger import LedgerGuard
from .listener import ChainListener, SourceChain
from .models import AssetClass
from .utils.contract_utility import ContractUtility
from .utils.substrate_utility import SubstrateUtility

logger = logging.getLogger(__name__)


class Relayer:
    """
    Main relayer service that orchestrates block polling and message dispatch.

    The listener and the dispatcher run as independent tasks that only share
    the message channel. The deposit listener credits the ledgers through the
    dispatcher. A protocol error in the listener shuts the whole
    relayer down; every other failure is handled inside the tasks.
    """

    def __init__(
        self,
        config: RelayerConfig,
        source: Optional[SourceChain] = None,
        destination: Optional[ContractUtility] = None,
    ):
        """
        Initialize the relayer.

        Args:
            config: Relayer configuration
            source: Source chain client (built from config if omitted)
            destination: Destination chain client (built from config if omitted)
        """
        self.config = config
        self.running = False
        self.fatal_error: Optional[BaseException] = None

        self.source = source or SubstrateUtility(
            config.source_chain.rpc_url,
            timeout=config.monitoring.request_timeout,
        )
        self.destination = destination or ContractUtility(
            rpc_url=config.target_chain.rpc_url,
            secret=config.private_key,
        )

        self.channel = MessageChannel(capacity=config.monitoring.channel_capacity)

        targets = config.targets
        self.guards = [
            LedgerGuard(app_id=targets[asset], transfer=self.destination.transfer, asset=asset)
            for asset in AssetClass
        ]

        self.listener = ChainListener(
            source=self.source,
            channel=self.channel,
            targets=targets,
            retry_interval=config.monitoring.retry_interval,
            eth_pallet=config.source_chain.eth_pallet,
            erc20_pallet=config.source_chain.erc20_pallet,
        )
        self.dispatcher = Dispatcher(channel=self.channel, guards=self.guards)
        self.deposits = DepositListener(
            source=self.destination,
            dispatcher=self.dispatcher,
            targets=targets,
            confirmations=config.target_chain.confirmations,
            start_block=config.target_chain.deposit_start_block,
            poll_interval=config.monitoring.retry_interval,
        )

        # Async coordination
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_env(cls, start_block: int | None = None) -> "Relayer":
        """
        Create a Relayer instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env(start_block=start_block)
        config.log_config()
        return cls(config)

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.config.monitoring.status_log_interval)
            listener = self.listener.get_status()
            channel = self.channel.get_status()
            deposits = self.deposits.get_status()
            logger.info(
                f"Status: block={listener['cursor']} finalized={listener['finalized_head']} "
                f"state={listener['state']} queued={channel['queued']}/{channel['capacity']} "
                f"deposit_block={deposits['last_processed_block']}"
            )
            self.dispatcher.log_metrics()

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except ProtocolError as e:
                    logger.error(f"{name} task hit a protocol error: {e}")
                    self.fatal_error = e
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                    self.fatal_error = e
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Cancel all running tasks and close clients."""
        for name, task in tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        if isinstance(self.source, SubstrateUtility):
            await self.source.close()

    async def run(self) -> None:
        """
        Main event loop for the relayer service.

        Raises:
            ProtocolError: If the listener stopped on undecodable events
        """
        self.running = True
        logger.info("Polkaeth Relayer starting...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            tasks = {
                "listener": asyncio.create_task(
                    self.listener.run(cursor_start=self.config.monitoring.start_block)
                ),
                "dispatcher": asyncio.create_task(self.dispatcher.run()),
                "deposits": asyncio.create_task(self.deposits.run()),
                "status": asyncio.create_task(self._periodic_status_logger()),
            }

            logger.info("Block polling started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            logger.info("Polkaeth Relayer stopped")

        if self.fatal_error is not None:
            raise self.fatal_error

    def stop(self) -> None:
        """Stop the relayer service."""
        self.running = False
        self.shutdown_event.set()
