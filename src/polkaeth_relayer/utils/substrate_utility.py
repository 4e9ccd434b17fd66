import itertools
import json
import logging
import typing

import httpx

from ..errors import RpcError

logger = logging.getLogger(__name__)


class SubstrateUtility:
    """
    JSON-RPC client for the parachain node.

    Implements the source chain interface used by the ChainListener. Every
    failure is raised as RpcError so the listener can classify it as
    transient.
    """

    # twox128("System") ++ twox128("Events")
    SYSTEM_EVENTS_KEY = "0x26aa394eea5630e07c48ae0c9558cef780d41e5e16056765bc8461851072c9d7"

    def __init__(self, url: str, timeout: float = 30, client: httpx.AsyncClient | None = None):
        """
        Initialize the SubstrateUtility.

        Args:
            url: HTTP(S) RPC endpoint of the parachain node
            timeout: Request timeout in seconds
            client: Pre-built client (mainly for tests)
        """
        self.url = url
        self.timeout = timeout
        self._client = client
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _rpc(self, method: str, params: list | None = None) -> typing.Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        logger.debug(f"Posting to {self.url}: {json.dumps(payload)}")

        try:
            response = await self._get_client().post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RpcError(method, str(e)) from e

        if error := body.get("error"):
            raise RpcError(method, error.get("message", "unknown error"), error.get("code"))
        return body.get("result")

    async def get_finalized_head(self) -> int:
        """Return the number of the most recently finalized block."""
        block_hash = await self._rpc("chain_getFinalizedHead")
        header = await self._rpc("chain_getHeader", [block_hash])
        if not header:
            raise RpcError("chain_getHeader", f"no header for finalized hash {block_hash}")
        return int(header["number"], 16)

    async def get_latest_block(self) -> int:
        """Return the number of the best (possibly unfinalized) block."""
        header = await self._rpc("chain_getHeader")
        if not header:
            raise RpcError("chain_getHeader", "no best header")
        return int(header["number"], 16)

    async def get_block_hash(self, block_number: int) -> str:
        """Return the hash of a block by number."""
        block_hash = await self._rpc("chain_getBlockHash", [block_number])
        if block_hash is None:
            raise RpcError("chain_getBlockHash", f"block {block_number} not found")
        return block_hash

    async def get_events_at(self, block_hash: str) -> bytes:
        """Return the raw SCALE ``System.Events`` storage at a block."""
        value = await self._rpc("state_getStorage", [self.SYSTEM_EVENTS_KEY, block_hash])
        if value is None:
            # Storage is empty: an empty Vec<EventRecord>
            return b"\x00"
        return bytes.fromhex(value.removeprefix("0x"))

    async def get_metadata(self) -> str:
        """Return the SCALE-encoded runtime metadata as a 0x-prefixed hex string."""
        metadata = await self._rpc("state_getMetadata")
        if not metadata:
            raise RpcError("state_getMetadata", "empty metadata")
        return metadata

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
