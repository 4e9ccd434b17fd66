"""
Ledger guard for the destination applications.

Enforces the locked-balance invariants of an application before value is
released on the destination chain. Each guard is owned by a single dispatcher
task, so the state needs no locking.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import InsufficientBalanceError, InvalidAmountError, TransferFailedError
from .models import AssetClass, Locked, Unlocked

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1

# (recipient, amount, token) -> transaction hash
TransferFn = Callable[[bytes, int, bytes | None], Awaitable[Any]]
EventHook = Callable[[Locked | Unlocked], None]


@dataclass(slots=True)
class LedgerState:
    """Counters of a destination application.

    Attributes:
        total_locked: Value currently held by the application
        nonce: Number of processed lock events (audit only, not a replay guard)
    """
    total_locked: int = 0
    nonce: int = 0


class LedgerGuard:
    """Applies lock and unlock operations to one application's ledger."""

    def __init__(
        self,
        app_id: str,
        transfer: TransferFn,
        asset: AssetClass = AssetClass.ETH,
        state: LedgerState | None = None,
        on_event: EventHook | None = None,
    ) -> None:
        """
        Initialize the guard.

        Args:
            app_id: Routing id of the application this guard protects
            transfer: Destination chain primitive releasing value to a recipient
            asset: Asset class of the application's messages
            state: Initial ledger state (fresh counters if omitted)
            on_event: Callback receiving Locked/Unlocked notifications
        """
        self.app_id = app_id
        self.asset = asset
        self.state = state if state is not None else LedgerState()
        self._transfer = transfer
        self._on_event = on_event

    @property
    def total_locked(self) -> int:
        return self.state.total_locked

    @property
    def nonce(self) -> int:
        return self.state.nonce

    def lock(self, sender: bytes, recipient: bytes, amount: int) -> Locked:
        """
        Record a deposit into the application.

        Args:
            sender: Identity of the depositor
            recipient: Recipient identity on the other chain
            amount: Deposited amount

        Returns:
            The Locked notification

        Raises:
            InvalidAmountError: If amount is zero or the total would overflow 256 bits
        """
        if amount <= 0:
            raise InvalidAmountError(f"Lock amount must be positive, got {amount}")
        if self.state.total_locked + amount > MAX_UINT256:
            raise InvalidAmountError(f"Lock of {amount} overflows the locked total")

        self.state.total_locked += amount
        self.state.nonce += 1

        event = Locked(sender=sender, recipient=recipient, amount=amount, nonce=self.state.nonce)
        logger.info(
            f"[{self.app_id[:10]}] Locked {amount} (nonce={self.state.nonce}, "
            f"total={self.state.total_locked})"
        )
        self._emit(event)
        return event

    async def unlock(self, recipient: bytes, amount: int, token: bytes | None = None) -> Unlocked:
        """
        Release locked value to a recipient on the destination chain.

        The amount must be strictly below the locked total, so the pool can
        never be drained to zero. The total is decremented before the
        transfer and is not restored if the transfer fails.

        Args:
            recipient: 20-byte destination address
            amount: Amount to release
            token: Token contract for ERC20 applications

        Returns:
            The Unlocked notification

        Raises:
            InvalidAmountError: If amount is zero
            InsufficientBalanceError: If amount >= total locked
            TransferFailedError: If the destination transfer raised
        """
        if amount <= 0:
            raise InvalidAmountError(f"Unlock amount must be positive, got {amount}")
        # TODO: confirm with the app contract owners whether draining to zero should be allowed (>=)
        if not self.state.total_locked > amount:
            raise InsufficientBalanceError(
                f"Unlock of {amount} requires more than {self.state.total_locked} locked"
            )

        self.state.total_locked -= amount

        try:
            tx_hash = await self._transfer(recipient, amount, token)
        except Exception as e:
            logger.error(
                f"[{self.app_id[:10]}] Transfer of {amount} to 0x{recipient.hex()} failed after "
                f"decrement, locked total left at {self.state.total_locked}: {e}"
            )
            raise TransferFailedError(f"Transfer to 0x{recipient.hex()} failed: {e}") from e

        event = Unlocked(recipient=recipient, amount=amount, tx_hash=tx_hash if isinstance(tx_hash, str) else None)
        logger.info(
            f"[{self.app_id[:10]}] Unlocked {amount} to 0x{recipient.hex()} "
            f"(total={self.state.total_locked})"
        )
        self._emit(event)
        return event

    def _emit(self, event: Locked | Unlocked) -> None:
        if self._on_event:
            self._on_event(event)
