import asyncio
import logging

import rlp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3
from web3.middleware import SignAndSendRawMiddlewareBuilder
from web3.types import TxReceipt

from ..codec import APP_EVENT_TOPIC

logger = logging.getLogger(__name__)

ERC20_TRANSFER_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


class ContractUtility:
    """
    Utility for releasing value on the Ethereum side.

    Implements the destination chain transfer primitive used by the ledger
    guards: native ETH transfers, or ERC20 ``transfer`` calls when a token
    address is given. Also reads the applications' deposit logs.
    """

    def __init__(self, rpc_url: str, secret: str, receipt_timeout: int = 120, gas: int = 100000):
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: Ethereum RPC endpoint (http(s) or ws)
            secret: Private key of the account releasing funds
            receipt_timeout: Seconds to wait for a transaction receipt
            gas: Gas limit for ERC20 transfers
        """
        self.rpc_url = rpc_url
        self.receipt_timeout = receipt_timeout
        self.gas = gas
        self.w3 = self.setup_web3_middleware(secret)

    def setup_web3_middleware(self, secret: str) -> Web3:
        if not secret:
            raise Warning(
                "Missing required environment variables. Please set PRIVATE_KEY."
            )

        account: LocalAccount = Account.from_key(secret)
        provider = (
            Web3.LegacyWebSocketProvider(self.rpc_url)
            if self.rpc_url.startswith(("ws:", "wss:"))
            else Web3.HTTPProvider(self.rpc_url)
        )
        w3 = Web3(provider)
        w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(account))
        w3.eth.default_account = account.address
        return w3

    def _wait_for_success(self, tx_hash) -> TxReceipt:
        receipt: TxReceipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if (status := receipt.get('status', 0)) != 1:
            raise RuntimeError(f"Transaction {Web3.to_hex(tx_hash)} failed with status={status}")
        logger.info(f"✓ Transaction confirmed in block {receipt['blockNumber']}")
        return receipt

    def _transfer_sync(self, recipient: bytes, amount: int, token: bytes | None) -> str:
        to = Web3.to_checksum_address(recipient)

        match token:
            case None:
                tx_hash = self.w3.eth.send_transaction({
                    'to': to,
                    'value': amount,
                })
            case token_address:
                contract = self.w3.eth.contract(
                    address=Web3.to_checksum_address(token_address),
                    abi=ERC20_TRANSFER_ABI,
                )
                tx_hash = contract.functions.transfer(to, amount).transact({'gas': self.gas})

        logger.info(f"Transfer of {amount} to {to} submitted: {Web3.to_hex(tx_hash)}")
        self._wait_for_success(tx_hash)
        return Web3.to_hex(tx_hash)

    async def transfer(self, recipient: bytes, amount: int, token: bytes | None = None) -> str:
        """
        Release ``amount`` to ``recipient`` and wait for the receipt.

        Args:
            recipient: 20-byte Ethereum address
            amount: Amount in wei or token base units
            token: 20-byte ERC20 contract address, None for native ETH

        Returns:
            Hex transaction hash

        Raises:
            RuntimeError: If the transaction reverted
        """
        return await asyncio.to_thread(self._transfer_sync, recipient, amount, token)

    async def get_block_number(self) -> int:
        """Latest block number of the destination chain."""
        return await asyncio.to_thread(lambda: self.w3.eth.block_number)

    def _get_app_logs_sync(self, from_block: int, to_block: int, addresses: list[str]) -> list[bytes]:
        logs = self.w3.eth.get_logs({
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': [Web3.to_checksum_address(a) for a in addresses],
            'topics': [HexBytes(APP_EVENT_TOPIC)],
        })
        return [
            rlp.encode([
                bytes(HexBytes(log['address'])),
                [bytes(topic) for topic in log['topics']],
                bytes(log['data']),
            ])
            for log in logs
        ]

    async def get_app_logs(self, from_block: int, to_block: int, addresses: list[str]) -> list[bytes]:
        """
        Fetch the ``AppEvent`` logs emitted by the given applications.

        Args:
            from_block: First block of the range, inclusive
            to_block: Last block of the range, inclusive
            addresses: Application contract addresses

        Returns:
            Logs in chain order, each RLP-encoded as ``[address, topics, data]``
        """
        return await asyncio.to_thread(self._get_app_logs_sync, from_block, to_block, addresses)
