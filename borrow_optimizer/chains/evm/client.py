"""EVM JSON-RPC client used as the keeper's block source."""
from __future__ import annotations

import itertools
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig

logger = logging.getLogger(__name__)


class RpcError(RuntimeError):
    """The node answered with a JSON-RPC error object."""


class EvmClient:
    """Talks to EVM nodes, rotating to the next endpoint when one fails.

    The endpoint that answered last is remembered and tried first on the
    next call.
    """

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0
        self._request_ids = itertools.count(1)

    def _rotation(self) -> list[int]:
        count = len(self.endpoints)
        return [(self.current_rpc_index + step) % count for step in range(count)]

    async def _post(self, url: str, payload: dict[str, Any]) -> Any:
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.post(
                url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                body = await response.json()
        if "error" in body:
            raise RpcError(f"{payload['method']} failed: {body['error']}")
        return body.get("result")

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Send ``method`` to the first endpoint that answers; return its ``result``."""
        if not self.endpoints:
            raise RuntimeError("No RPC endpoints configured")

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        errors: list[str] = []
        for rpc_index in self._rotation():
            url = self.endpoints[rpc_index]
            try:
                result = await self._post(url, payload)
            except Exception as e:
                logger.warning("%s on %s failed: %s", method, url, e)
                errors.append(f"{url}: {e}")
                continue
            if rpc_index != self.current_rpc_index:
                logger.info("Switched to RPC endpoint: %s", url)
                self.current_rpc_index = rpc_index
            return result

        raise RuntimeError(f"All RPC endpoints failed. Last error: {errors[-1]}")

    async def get_block_number(self) -> int:
        """Current block height (``eth_blockNumber``)."""
        return int(await self.rpc_call("eth_blockNumber", []), 16)
