#!/usr/bin/env python3
"""Configuration management for the polkaeth relayer.

This module provides type-safe configuration dataclasses with validation
for the relayer. Configuration is loaded from environment variables with
sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from web3 import Web3

from .event_records import DEFAULT_ERC20_PALLET, DEFAULT_ETH_PALLET
from .models import AssetClass

# Get logger for this module
logger = logging.getLogger(__name__)


def _validate_rpc_url(rpc_url: str, env_name: str, schemes: tuple[str, ...] = ('http', 'https', 'ws', 'wss')) -> None:
    if not rpc_url:
        raise ValueError(f"RPC URL is required ({env_name})")

    parsed = urlparse(rpc_url)
    if parsed.scheme not in schemes:
        raise ValueError(
            f"Invalid RPC URL scheme: {parsed.scheme}. "
            f"Expected {', '.join(schemes)} for {env_name}"
        )


def _checksum(address: str, label: str, env_name: str) -> str:
    if not address:
        raise ValueError(f"{label} is required ({env_name})")
    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label.lower()}: {address}")
    return Web3.to_checksum_address(address)


@dataclass(frozen=True, slots=True)
class SourceChainConfig:
    """Configuration for the source parachain.

    Attributes:
        rpc_url: HTTP(S) JSON-RPC endpoint of the parachain node
        eth_pallet: Name of the ETH app pallet in the runtime metadata
        erc20_pallet: Name of the ERC20 app pallet in the runtime metadata
    """

    rpc_url: str
    eth_pallet: str = DEFAULT_ETH_PALLET
    erc20_pallet: str = DEFAULT_ERC20_PALLET

    def __post_init__(self) -> None:
        """Validate source chain configuration."""
        # The node client speaks JSON-RPC over plain HTTP only
        _validate_rpc_url(self.rpc_url, "SOURCE_RPC_URL", schemes=('http', 'https'))

        if not self.eth_pallet or not self.erc20_pallet:
            raise ValueError("Bridge pallet names must not be empty (ETH_PALLET, ERC20_PALLET)")

        if self.eth_pallet == self.erc20_pallet:
            raise ValueError("ETH and ERC20 pallet names must differ")


@dataclass(frozen=True, slots=True)
class TargetChainConfig:
    """Configuration for the destination Ethereum chain.

    Attributes:
        rpc_url: Ethereum RPC endpoint
        eth_app_address: Checksummed address of the ETH application
        erc20_app_address: Checksummed address of the ERC20 application
        deposit_start_block: First block scanned for deposits, latest if unset
        confirmations: Blocks a deposit must be buried under before it is locked
    """

    rpc_url: str
    eth_app_address: str
    erc20_app_address: str
    deposit_start_block: int | None = None
    confirmations: int = 12

    def __post_init__(self) -> None:
        """Validate target chain configuration."""
        _validate_rpc_url(self.rpc_url, "TARGET_RPC_URL")

        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(
            self, 'eth_app_address',
            _checksum(self.eth_app_address, "ETH app address", "ETH_APP_ADDRESS")
        )
        object.__setattr__(
            self, 'erc20_app_address',
            _checksum(self.erc20_app_address, "ERC20 app address", "ERC20_APP_ADDRESS")
        )

        if self.eth_app_address == self.erc20_app_address:
            raise ValueError("ETH and ERC20 app addresses must differ")

        if self.deposit_start_block is not None and self.deposit_start_block < 0:
            raise ValueError(f"Deposit start block must be non-negative, got {self.deposit_start_block}")

        if not 0 <= self.confirmations <= 256:
            raise ValueError(f"Confirmations must be in 0..256, got {self.confirmations}")


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for block polling and message dispatch."""
    retry_interval: int = 10  # seconds between finality checks and retries
    channel_capacity: int = 256  # messages buffered between listener and dispatcher
    request_timeout: int = 30  # HTTP request timeout in seconds
    status_log_interval: int = 30  # seconds between status lines
    start_block: int | None = None  # first block to process, latest if unset

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.retry_interval <= 0:
            raise ValueError(f"Retry interval must be positive, got {self.retry_interval}")
        if self.retry_interval > 300:
            raise ValueError(f"Retry interval too long (max 300s), got {self.retry_interval}")

        if self.channel_capacity <= 0:
            raise ValueError(f"Channel capacity must be positive, got {self.channel_capacity}")
        if self.channel_capacity > 100_000:
            raise ValueError(f"Channel capacity too high (max 100000), got {self.channel_capacity}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.status_log_interval <= 0:
            raise ValueError(f"Status log interval must be positive, got {self.status_log_interval}")

        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the relayer.

    Attributes:
        source_chain: Configuration for the source parachain
        target_chain: Configuration for the destination Ethereum chain
        private_key: Key of the account releasing funds on Ethereum
        monitoring: Configuration for polling and dispatch
    """

    source_chain: SourceChainConfig
    target_chain: TargetChainConfig
    private_key: str
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if not self.private_key:
            raise ValueError("PRIVATE_KEY environment variable is required")

        # Basic private key validation (should be 64 hex chars, optionally with 0x prefix)
        key = self.private_key.removeprefix('0x')
        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )

        try:
            int(key, 16)
        except ValueError:
            raise ValueError(
                "Invalid private key format. Must be hexadecimal"
            ) from None

    @property
    def targets(self) -> dict[AssetClass, str]:
        """Application identifier mapping from asset class to app id."""
        return {
            AssetClass.ETH: self.target_chain.eth_app_address,
            AssetClass.ERC20: self.target_chain.erc20_app_address,
        }

    @classmethod
    def from_env(cls, start_block: int | None = None) -> "RelayerConfig":
        """Load configuration from environment variables.

        Args:
            start_block: Overrides START_BLOCK when given

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        source_config = SourceChainConfig(
            rpc_url=os.environ.get("SOURCE_RPC_URL", "http://localhost:9933"),
            eth_pallet=os.environ.get("ETH_PALLET", DEFAULT_ETH_PALLET),
            erc20_pallet=os.environ.get("ERC20_PALLET", DEFAULT_ERC20_PALLET),
        )

        deposit_start_block = None
        if env_deposit_start := os.environ.get("DEPOSIT_START_BLOCK"):
            deposit_start_block = int(env_deposit_start)

        target_config = TargetChainConfig(
            rpc_url=os.environ.get("TARGET_RPC_URL", "http://localhost:8545"),
            eth_app_address=os.environ.get("ETH_APP_ADDRESS", ""),
            erc20_app_address=os.environ.get("ERC20_APP_ADDRESS", ""),
            deposit_start_block=deposit_start_block,
            confirmations=int(os.environ.get("CONFIRMATIONS", "12")),
        )

        if start_block is None and (env_start := os.environ.get("START_BLOCK")):
            start_block = int(env_start)

        monitoring_config = MonitoringConfig(
            retry_interval=int(os.environ.get("RETRY_INTERVAL", "10")),
            channel_capacity=int(os.environ.get("CHANNEL_CAPACITY", "256")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            status_log_interval=int(os.environ.get("STATUS_LOG_INTERVAL", "30")),
            start_block=start_block,
        )

        return cls(
            source_chain=source_config,
            target_chain=target_config,
            private_key=os.environ.get("PRIVATE_KEY", ""),
            monitoring=monitoring_config,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Polkaeth Relayer Configuration")
        logger.info("=" * 60)

        logger.info("Source Chain (Parachain):")
        logger.info(f"  RPC URL: {self.source_chain.rpc_url}")
        logger.info(f"  ETH Pallet: {self.source_chain.eth_pallet}")
        logger.info(f"  ERC20 Pallet: {self.source_chain.erc20_pallet}")

        logger.info("Target Chain (Ethereum):")
        logger.info(f"  RPC URL: {self.target_chain.rpc_url}")
        logger.info(f"  ETH App: {self.target_chain.eth_app_address}")
        logger.info(f"  ERC20 App: {self.target_chain.erc20_app_address}")
        logger.info(f"  Deposit Start Block: {self.target_chain.deposit_start_block if self.target_chain.deposit_start_block is not None else 'latest'}")
        logger.info(f"  Confirmations: {self.target_chain.confirmations}")
        logger.info("  Private Key: [CONFIGURED]")

        logger.info("Monitoring Settings:")
        logger.info(f"  Retry Interval: {self.monitoring.retry_interval} seconds")
        logger.info(f"  Channel Capacity: {self.monitoring.channel_capacity}")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")
        logger.info(f"  Start Block: {self.monitoring.start_block if self.monitoring.start_block is not None else 'latest'}")

        logger.info("=" * 60)
