"""
Ledger capability backed by a Solana JSON-RPC node.

Account, slot and blockhash reads go through solana-py's ``AsyncClient``;
transport failures surface as ``RpcError`` so callers retry uniformly.
"""
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey

from repositioner.config.config import RpcConfig
from repositioner.exceptions import RpcError, ValidationError
from repositioner.monitoring.logger import get_logger

logger = get_logger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class SolanaLedger:
    """``LedgerCapability`` over one shared RPC connection."""

    def __init__(self, config: RpcConfig, client: Optional[AsyncClient] = None):
        self.config = config
        self.client = client or AsyncClient(
            config.rpc_url,
            commitment=Commitment(config.commitment),
            timeout=config.timeout_seconds,
        )

    async def close(self) -> None:
        await self.client.close()

    async def get_account_data(self, address: str) -> Optional[bytes]:
        try:
            pubkey = Pubkey.from_string(address)
        except ValueError as e:
            raise ValidationError("Invalid account address", str(e))
        try:
            resp = await self.client.get_account_info(pubkey)
        except SolanaRpcException as e:
            raise RpcError("Failed to read account", str(e))
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_slot(self) -> int:
        try:
            resp = await self.client.get_slot()
        except SolanaRpcException as e:
            raise RpcError("Failed to read slot", str(e))
        return resp.value

    async def get_latest_blockhash(self) -> str:
        try:
            resp = await self.client.get_latest_blockhash()
        except SolanaRpcException as e:
            raise RpcError("Failed to fetch latest blockhash", str(e))
        return str(resp.value.blockhash)

    async def get_recent_prioritization_fees(self, addresses: Sequence[str] = ()) -> List[int]:
        """Raw ``getRecentPrioritizationFees`` JSON-RPC call."""
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getRecentPrioritizationFees",
            "params": [list(addresses)] if addresses else [],
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.config.rpc_url, json=payload) as response:
                    if response.status != 200:
                        raise RpcError(f"RPC error: HTTP {response.status}", (await response.text())[:200])
                    body = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RpcError("Failed to fetch prioritization fees", str(e))

        if "error" in body:
            raise RpcError("RPC returned an error", str(body["error"]))
        return [int(item.get("prioritizationFee", 0)) for item in body.get("result") or []]
