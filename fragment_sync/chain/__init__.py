"""Chain access: JSON-RPC client and event decoding."""

from fragment_sync.chain.abi import LogDecodeError, TradeEventAbi
from fragment_sync.chain.client import ChainClient, ChainReader, RpcError

__all__ = ["ChainClient", "ChainReader", "LogDecodeError", "RpcError", "TradeEventAbi"]
