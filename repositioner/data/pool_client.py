"""
HTTP client for the DLMM pool service.

The service owns bin pricing, position decoding and instruction building;
this client only moves JSON. Records come back in the service's wire shape
(camelCase, raw base-unit amounts) and are typed by the position reader.

Endpoints:
    GET  /pools/{pool}                          pool state
    GET  /positions/{position}                  one position
    GET  /wallets/{wallet}/positions            every position owned by a wallet
    POST /instructions/remove-liquidity         close instructions
    POST /instructions/add-liquidity            open instructions
"""
import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from repositioner.config.config import PoolServiceConfig
from repositioner.exceptions import RpcError
from repositioner.monitoring.logger import get_logger
from repositioner.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

TRANSIENT_HTTP_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class DlmmPoolClient:
    """``PoolCapability`` over HTTP/JSON."""

    def __init__(self, config: PoolServiceConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """JSON request; 404 -> None, other non-2xx -> RpcError."""
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        async with session.request(method, url, json=payload) as response:
            if response.status == 404:
                return None
            if response.status >= 400:
                text = await response.text()
                logger.warning("POOL_SERVICE_HTTP_ERROR", method=method, path=path, status=response.status)
                raise RpcError(f"Pool service error: HTTP {response.status}", text[:200])
            return await response.json(content_type=None)

    async def get_pool(self, pool_address: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/pools/{pool_address}")

    async def get_position(self, position_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/positions/{position_id}")

    async def get_positions_by_owner(self, wallet_address: str) -> List[Dict[str, Any]]:
        body = await self._request("GET", f"/wallets/{wallet_address}/positions")
        if body is None:
            return []
        if isinstance(body, dict):
            body = body.get("positions") or []
        return list(body)

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0, transient_errors=TRANSIENT_HTTP_ERRORS)
    async def build_remove_liquidity(
        self,
        position_id: str,
        owner: str,
        pool_address: str,
        lower_bin: int,
        upper_bin: int,
    ) -> List[Dict[str, Any]]:
        body = await self._request("POST", "/instructions/remove-liquidity", {
            "position": position_id,
            "owner": owner,
            "pool": pool_address,
            "fromBinId": lower_bin,
            "toBinId": upper_bin,
            "bps": 10000,
            "shouldClaimAndClose": True,
        })
        return _instructions(body, "remove-liquidity")

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0, transient_errors=TRANSIENT_HTTP_ERRORS)
    async def build_add_liquidity(
        self,
        owner: str,
        pool_address: str,
        lower_bin: int,
        upper_bin: int,
        amount_x: int,
        amount_y: int,
        strategy: str,
        slippage_bps: int,
    ) -> List[Dict[str, Any]]:
        body = await self._request("POST", "/instructions/add-liquidity", {
            "owner": owner,
            "pool": pool_address,
            "minBinId": lower_bin,
            "maxBinId": upper_bin,
            "totalXAmount": str(amount_x),
            "totalYAmount": str(amount_y),
            "strategy": strategy,
            "slippageBps": slippage_bps,
        })
        return _instructions(body, "add-liquidity")


def _instructions(body: Any, operation: str) -> List[Dict[str, Any]]:
    if not isinstance(body, dict) or not isinstance(body.get("instructions"), list):
        raise RpcError(f"Pool service returned no instructions for {operation}")
    return body["instructions"]
