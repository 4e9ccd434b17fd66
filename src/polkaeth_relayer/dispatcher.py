"""
Destination-side applier for relayed messages.

Consumes the message channel one message at a time, decodes each message
with the application's layout and applies it through the application's
ledger guard.
"""

import logging
from collections import deque
from collections.abc import Callable, Iterable

from . import codec
from .channel import MessageChannel
from .errors import (
    DecodeError,
    InsufficientBalanceError,
    InvalidAmountError,
    TransferFailedError,
)
from .ledger import LedgerGuard
from .models import Locked, Rejection, RelayMessage, Unlocked

logger = logging.getLogger(__name__)


class Dispatcher:
    """Applies channel messages to the ledger guards they are routed to.

    Malformed or rejected messages never stop the dispatcher: they are
    logged, counted and recorded as Rejections.
    """

    MAX_REJECTIONS: int = 1_000

    def __init__(
        self,
        channel: MessageChannel,
        guards: Iterable[LedgerGuard],
        on_rejected: Callable[[Rejection], None] | None = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            channel: Channel to consume
            guards: One ledger guard per destination application
            on_rejected: Callback invoked for every rejected message
        """
        self.channel = channel
        self.guards: dict[str, LedgerGuard] = {guard.app_id: guard for guard in guards}
        self.on_rejected = on_rejected

        # Bounded history of rejections, oldest evicted first
        self.rejections: deque[Rejection] = deque(maxlen=self.MAX_REJECTIONS)

        # Metrics tracking
        self.messages_applied = 0
        self.messages_dropped = 0
        self.messages_rejected = 0
        self.transfers_failed = 0

    def _reject(self, message: RelayMessage, reason: str, detail: str) -> Rejection:
        rejection = Rejection(message=message, reason=reason, detail=detail)
        self.rejections.append(rejection)
        if self.on_rejected:
            self.on_rejected(rejection)
        return rejection

    async def process(self, message: RelayMessage) -> Unlocked | Rejection:
        """
        Decode and apply a single message.

        Args:
            message: Message taken from the channel

        Returns:
            Unlocked on success, otherwise the Rejection describing the outcome
        """
        guard = self.guards.get(message.app_id)
        if guard is None:
            self.messages_dropped += 1
            logger.warning(f"Dropping message for unknown application {message.app_id}")
            return self._reject(message, "unknown-app", f"No application with id {message.app_id}")

        try:
            decoded = codec.decode(message.payload, guard.asset)
        except DecodeError as e:
            self.messages_dropped += 1
            logger.error(f"Dropping malformed message from block {message.block_number}: {e}")
            return self._reject(message, "malformed", str(e))

        try:
            unlocked = await guard.unlock(decoded.recipient, decoded.amount, decoded.token)
        except InvalidAmountError as e:
            self.messages_rejected += 1
            logger.warning(f"Rejected {decoded}: {e}")
            return self._reject(message, "invalid-amount", str(e))
        except InsufficientBalanceError as e:
            self.messages_rejected += 1
            logger.warning(f"Rejected {decoded}: {e}")
            return self._reject(message, "insufficient-balance", str(e))
        except TransferFailedError as e:
            self.transfers_failed += 1
            logger.error(f"Unreconciled release for {decoded}: {e}")
            return self._reject(message, "transfer-failed", str(e))

        self.messages_applied += 1
        return unlocked

    def deposit(self, app_id: str, sender: bytes, recipient: bytes, amount: int) -> Locked:
        """
        Record a deposit into an application's ledger.

        Args:
            app_id: Application receiving the deposit
            sender: Depositor identity
            recipient: Recipient identity on the other chain
            amount: Deposited amount

        Raises:
            KeyError: If the application is unknown
            InvalidAmountError: If the amount is not positive
        """
        return self.guards[app_id].lock(sender, recipient, amount)

    async def run(self) -> None:
        """Consume the channel forever, one message at a time."""
        logger.info(f"Dispatcher started for {len(self.guards)} applications")
        async for message in self.channel:
            await self.process(message)

    def get_metrics(self) -> dict[str, int]:
        """
        Get current processing metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "messages_applied": self.messages_applied,
            "messages_dropped": self.messages_dropped,
            "messages_rejected": self.messages_rejected,
            "transfers_failed": self.transfers_failed,
        }

    def log_metrics(self) -> None:
        """Log current processing metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"Dispatcher Metrics: "
            f"Applied={metrics['messages_applied']}, "
            f"Dropped={metrics['messages_dropped']}, "
            f"Rejected={metrics['messages_rejected']}, "
            f"TransferFailed={metrics['transfers_failed']}"
        )
