#!/usr/bin/env python3
"""Entry point for the polkaeth relayer service.

Relays finalized parachain transfer events to the Ethereum bridge
applications.
"""

import argparse
import asyncio
import logging
import os
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from polkaeth_relayer.errors import ProtocolError
from polkaeth_relayer.relayer import Relayer


async def main() -> None:
    """Main entry point for the relayer.

    Parses startup arguments, loads configuration from environment and runs
    the relayer until interrupted or stopped by a protocol error.

    Raises:
        SystemExit: On configuration or protocol errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Polkaeth Relayer - Relay parachain transfers to Ethereum",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  SOURCE_RPC_URL       - Parachain node HTTP JSON-RPC endpoint (default: http://localhost:9933)
  TARGET_RPC_URL       - Ethereum RPC endpoint (default: http://localhost:8545)
  ETH_APP_ADDRESS      - ETH application contract address
  ERC20_APP_ADDRESS    - ERC20 application contract address
  PRIVATE_KEY          - Key of the account releasing funds on Ethereum
  ETH_PALLET           - ETH app pallet name in the runtime (default: ETH)
  ERC20_PALLET         - ERC20 app pallet name in the runtime (default: ERC20)
  DEPOSIT_START_BLOCK  - First Ethereum block scanned for deposits (default: confirmed head)
  CONFIRMATIONS        - Blocks a deposit must be buried under (default: 12)
  RETRY_INTERVAL       - Seconds between retries and finality checks (default: 10)
  CHANNEL_CAPACITY     - Max buffered messages (default: 256)
  START_BLOCK          - First block to relay (default: latest)
  LOG_LEVEL            - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--start-block",
        type=int,
        default=None,
        help="First parachain block to relay (overrides START_BLOCK)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Polkaeth Relayer Starting ===")

    try:
        relayer = Relayer.from_env(start_block=args.start_block)
        await relayer.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - SOURCE_RPC_URL: Parachain node JSON-RPC endpoint")
        logger.error("  - TARGET_RPC_URL: Ethereum RPC endpoint")
        logger.error("  - ETH_APP_ADDRESS / ERC20_APP_ADDRESS: Bridge application contracts")
        logger.error("  - PRIVATE_KEY: Key of the releasing account")
        sys.exit(1)

    except ProtocolError as e:
        logger.error(f"Protocol Error: {e}")
        logger.error("The parachain runtime no longer matches the relayer, restart after upgrading")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
