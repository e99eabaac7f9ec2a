"""
Chain reader - read-only access to chain heads, logs and block times.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3

from chain_indexer.core.config import settings
from chain_indexer.core.exceptions import ConfigurationError, TransportError
from chain_indexer.indexer.core.types import RawLog


logger = structlog.get_logger(__name__)


class ChainReader(ABC):
    """Read-only chain access used by the pollers."""

    @abstractmethod
    async def head_height(self, network_id: int) -> int:
        """Current chain head height."""

    @abstractmethod
    async def get_logs(
        self,
        network_id: int,
        contract_address: str,
        from_height: int,
        to_height: int
    ) -> List[RawLog]:
        """Logs emitted by a contract in an inclusive height range, in chain order."""

    @abstractmethod
    async def block_timestamp(self, network_id: int, block_hash: str) -> datetime:
        """Timestamp of a block."""

    def supports(self, network_id: int) -> bool:
        """Whether this reader can serve the given network."""
        return True

    async def close(self) -> None:
        """Release connections."""


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value).lower()


class Web3ChainReader(ChainReader):
    """
    ChainReader over JSON-RPC using web3.py.

    One AsyncWeb3 client per network id, built from settings.rpc_urls
    unless explicit endpoints are passed. Every RPC call is bounded by
    `timeout`; timeouts and RPC errors surface as TransportError.
    """

    def __init__(
        self,
        endpoints: Optional[Dict[int, str]] = None,
        timeout: Optional[float] = None
    ):
        self.endpoints = dict(endpoints if endpoints is not None else settings.rpc_urls)
        self.timeout = timeout if timeout is not None else settings.indexer_rpc_timeout
        self.logger = logger.bind(service="chain_reader")
        self._clients: Dict[int, AsyncWeb3] = {}

    def supports(self, network_id: int) -> bool:
        return bool(self.endpoints.get(network_id))

    def _client(self, network_id: int) -> AsyncWeb3:
        client = self._clients.get(network_id)
        if client is None:
            endpoint = self.endpoints.get(network_id)
            if not endpoint:
                raise ConfigurationError(
                    f"No RPC endpoint configured for network {network_id}",
                    {"network_id": network_id}
                )
            client = AsyncWeb3(AsyncHTTPProvider(endpoint, request_kwargs={"timeout": self.timeout}))
            self._clients[network_id] = client
            self.logger.info("Created RPC client", network_id=network_id)
        return client

    async def _call(self, operation: str, network_id: int, awaitable) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"RPC {operation} timed out after {self.timeout}s",
                {"network_id": network_id, "operation": operation}
            ) from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(
                f"RPC {operation} failed: {e}",
                {"network_id": network_id, "operation": operation}
            ) from e

    async def head_height(self, network_id: int) -> int:
        w3 = self._client(network_id)
        height = await self._call("eth_blockNumber", network_id, w3.eth.block_number)
        return int(height)

    async def get_logs(
        self,
        network_id: int,
        contract_address: str,
        from_height: int,
        to_height: int
    ) -> List[RawLog]:
        w3 = self._client(network_id)
        entries = await self._call(
            "eth_getLogs",
            network_id,
            w3.eth.get_logs({
                "address": Web3.to_checksum_address(contract_address),
                "fromBlock": from_height,
                "toBlock": to_height,
            })
        )

        try:
            logs = [
                RawLog(
                    tx_hash=_hex(entry["transactionHash"]),
                    log_index=int(entry["logIndex"]),
                    block_number=int(entry["blockNumber"]),
                    block_hash=_hex(entry["blockHash"]),
                    topics=[_hex(topic) for topic in entry["topics"]],
                    data=_hex(entry["data"]),
                    tx_index=int(entry.get("transactionIndex") or 0),
                    address=_hex(entry.get("address") or contract_address),
                )
                for entry in entries
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(
                f"Malformed eth_getLogs response: {e}",
                {"network_id": network_id}
            ) from e

        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return logs

    async def block_timestamp(self, network_id: int, block_hash: str) -> datetime:
        w3 = self._client(network_id)
        block = await self._call("eth_getBlockByHash", network_id, w3.eth.get_block(block_hash))
        return datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc)

    async def close(self) -> None:
        for network_id, client in self._clients.items():
            try:
                await client.provider.disconnect()
            except Exception as e:
                self.logger.warning("Failed to close RPC client", network_id=network_id, error=str(e))
        self._clients.clear()
