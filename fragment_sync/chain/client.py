"""Ethereum JSON-RPC client for trade logs and block metadata."""

import itertools
from typing import Any, Optional, Protocol

import httpx
from eth_utils import to_checksum_address

from fragment_sync.chain.abi import TradeEventAbi
from fragment_sync.schemas import TradeLog
from fragment_sync.utils.logging import get_logger
from fragment_sync.utils.rate_limit import AsyncRateLimiter
from fragment_sync.utils.retry import async_retry

logger = get_logger(__name__)


class RpcError(Exception):
    """Base exception for chain RPC errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        rpc_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.rpc_code = rpc_code


class ChainReader(Protocol):
    """What a reconciliation pass needs from the chain."""

    async def get_block_number(self) -> int: ...

    async def get_block_timestamp(self, block_number: int) -> int: ...

    async def get_logs(
        self, address: str, event: TradeEventAbi, from_block: int, to_block: int
    ) -> list[TradeLog]: ...


class ChainClient:
    """Async JSON-RPC client.

    Handles rate limiting, transport retries and log decoding. JSON-RPC level
    errors are not retried.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 15.0,
        rate_limit_per_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._transport = transport
        self.timeout = timeout
        self._rate_limiter = AsyncRateLimiter(rate_limit_per_sec)
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("RPC client closed")

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Make a JSON-RPC call with rate limiting and retry.

        Raises:
            RpcError: On HTTP, transport or JSON-RPC errors.
        """
        client = await self._ensure_client()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        async def do_request() -> httpx.Response:
            async with self._rate_limiter:
                response = await client.post(self.rpc_url, json=payload)
                response.raise_for_status()
                return response

        try:
            response = await async_retry(
                do_request,
                attempts=3,
                base_wait=0.5,
                max_wait=5.0,
            )
        except httpx.HTTPStatusError as e:
            logger.error(
                "RPC request failed",
                extra={
                    "ctx_method": method,
                    "ctx_status": e.response.status_code,
                    "ctx_body": e.response.text[:500],
                },
            )
            raise RpcError(
                f"RPC HTTP error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            logger.error("RPC transport error", extra={"ctx_method": method, "ctx_error": str(e)})
            raise RpcError(f"Transport error: {e}") from e

        body = response.json()
        if body.get("error"):
            error = body["error"]
            logger.error(
                "RPC returned error",
                extra={"ctx_method": method, "ctx_code": error.get("code"), "ctx_message": error.get("message")},
            )
            raise RpcError(
                f"RPC error {error.get('code')}: {error.get('message')}",
                rpc_code=error.get("code"),
            )
        return body.get("result")

    # ==================== Blocks ====================

    async def get_block_number(self) -> int:
        """Current chain head."""
        return int(await self._call("eth_blockNumber", []), 16)

    async def get_block_timestamp(self, block_number: int) -> int:
        """UNIX timestamp of a block.

        Raises:
            RpcError: If the node does not know the block.
        """
        block = await self._call("eth_getBlockByNumber", [hex(block_number), False])
        if block is None:
            raise RpcError(f"Block {block_number} not found")
        return int(block["timestamp"], 16)

    # ==================== Logs ====================

    async def get_logs(
        self,
        address: str,
        event: TradeEventAbi,
        from_block: int,
        to_block: int,
    ) -> list[TradeLog]:
        """Fetch and decode trade logs in an inclusive block range.

        Returns:
            Decoded logs in the order the node returned them.

        Raises:
            RpcError: On RPC failure.
            LogDecodeError: If a log does not fit the event ABI.
        """
        params = [
            {
                "address": to_checksum_address(address),
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "topics": [event.topic0],
            }
        ]
        raw_logs = await self._call("eth_getLogs", params) or []

        logs = [event.decode_log(raw) for raw in raw_logs]
        logger.debug(
            "Fetched logs",
            extra={
                "ctx_event": event.name,
                "ctx_from_block": from_block,
                "ctx_to_block": to_block,
                "ctx_count": len(logs),
            },
        )
        return logs
