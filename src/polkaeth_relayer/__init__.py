"""
Polkaeth Relayer package.

Relays finalized parachain events to the Ethereum bridge applications.
"""

from .channel import MessageChannel
from .config import RelayerConfig
from .deposits import DepositListener
from .dispatcher import Dispatcher
from .ledger import LedgerGuard, LedgerState
from .listener import ChainListener, ListenerState
from .models import AssetClass, CanonicalMessage, ERC20Transfer, ETHTransfer, RelayMessage
from .relayer import Relayer

__all__ = [
    "AssetClass",
    "CanonicalMessage",
    "ChainListener",
    "DepositListener",
    "Dispatcher",
    "ERC20Transfer",
    "ETHTransfer",
    "LedgerGuard",
    "LedgerState",
    "ListenerState",
    "MessageChannel",
    "Relayer",
    "RelayMessage",
    "RelayerConfig",
]
__version__ = "0.1.0"
