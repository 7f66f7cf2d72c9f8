"""JSON-RPC helpers for Ethereum-style endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import RpcError

# Per-request timeout
RPC_TIMEOUT = 5.0


async def json_rpc_call(
    url: str,
    method: str,
    params: list[Any] | None = None,
    timeout: float = RPC_TIMEOUT,
) -> Any:
    """Make a JSON-RPC call and return its result.

    Args:
        url: RPC endpoint URL
        method: RPC method name
        params: Method parameters
        timeout: Request timeout in seconds

    Returns:
        The "result" member of the response.

    Raises:
        RpcError: If the response carries an error object or no result.
        httpx.HTTPError: If the request itself fails.
    """
    payload = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": 1}

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, json=payload)
        response.raise_for_status()
        body = response.json()

    if body.get("error") is not None:
        error = body["error"]
        message = error.get("message", "unknown") if isinstance(error, dict) else str(error)
        raise RpcError(
            message=f"RPC error from {method}: {message}",
            data={"url": url, "method": method, "error": error},
        )

    if "result" not in body:
        raise RpcError(
            message=f"No result in {method} response",
            data={"url": url, "method": method},
        )

    return body["result"]


def parse_quantity(value: str | int) -> int:
    """Parse a hex QUANTITY ("0x1a") or plain integer."""
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


async def chain_id(url: str) -> int:
    """Chain id reported by eth_chainId."""
    return parse_quantity(await json_rpc_call(url, "eth_chainId"))


async def block_number(url: str) -> int:
    """Latest block number reported by eth_blockNumber."""
    return parse_quantity(await json_rpc_call(url, "eth_blockNumber"))


async def get_balance(url: str, address: str) -> int:
    """Balance of an address at the latest block, in wei."""
    return parse_quantity(await json_rpc_call(url, "eth_getBalance", [address, "latest"]))


@dataclass
class BlockHeader:
    """Number and timestamp of an L1 block."""

    number: int
    timestamp: int


async def latest_block(url: str) -> BlockHeader:
    """Header of the latest block (eth_getBlockByNumber)."""
    block = await json_rpc_call(url, "eth_getBlockByNumber", ["latest", False])
    if not isinstance(block, dict):
        raise RpcError(message=f"No latest block returned by {url}", data={"url": url})
    return BlockHeader(number=parse_quantity(block["number"]), timestamp=parse_quantity(block["timestamp"]))


@dataclass
class BlockRef:
    """Block number and hash."""

    number: int
    hash: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockRef:
        return cls(number=parse_quantity(data["number"]), hash=data["hash"])


@dataclass
class RollupSyncStatus:
    """Subset of optimism_syncStatus served by consensus nodes."""

    unsafe_l2: BlockRef
    safe_l2: BlockRef
    finalized_l2: BlockRef

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollupSyncStatus:
        return cls(
            unsafe_l2=BlockRef.from_dict(data["unsafe_l2"]),
            safe_l2=BlockRef.from_dict(data["safe_l2"]),
            finalized_l2=BlockRef.from_dict(data["finalized_l2"]),
        )


async def rollup_sync_status(url: str) -> RollupSyncStatus:
    """Query optimism_syncStatus on a consensus node."""
    return RollupSyncStatus.from_dict(await json_rpc_call(url, "optimism_syncStatus"))


@dataclass
class ExecutionSyncStatus:
    """Execution client sync state from eth_syncing + eth_blockNumber."""

    is_syncing: bool
    block_number: int
    highest_block: int | None = None


async def execution_sync_status(url: str) -> ExecutionSyncStatus:
    """Query sync state of an execution client."""
    syncing = await json_rpc_call(url, "eth_syncing")
    number = await block_number(url)

    # eth_syncing returns false when idle, a progress object otherwise
    if syncing is False:
        return ExecutionSyncStatus(is_syncing=False, block_number=number)

    highest = None
    if isinstance(syncing, dict) and "highestBlock" in syncing:
        highest = parse_quantity(syncing["highestBlock"])
    return ExecutionSyncStatus(is_syncing=True, block_number=number, highest_block=highest)
