"""
Live position and pool reads.

Addresses are validated before any network call. Every read carries a
timeout and is retried up to the configured budget with fixed spacing; an
absent account is a terminal answer (None), not a failure. Raw records and
account bytes are mapped to typed snapshots here; malformed data yields None
and never raises past this module.
"""
import asyncio
import struct
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp
from solders.pubkey import Pubkey

from repositioner.config.config import RpcConfig, TokenConfig
from repositioner.domain.models import OnChainSnapshot, PoolState, TokenAccount
from repositioner.domain.protocols import LedgerCapability, PoolCapability
from repositioner.exceptions import NotFoundError, RpcError, wrap_boundary
from repositioner.monitoring.logger import get_logger
from repositioner.utils.retry import RetryPolicy, fixed_backoff, retry_on
from repositioner.utils.validation import validate_address

logger = get_logger(__name__)

# SPL token account: mint (32) | owner (32) | amount (u64 LE) | ...
TOKEN_ACCOUNT_MIN_SIZE = 72
_MINT = slice(0, 32)
_OWNER = slice(32, 64)
_AMOUNT = slice(64, 72)

TRANSPORT_ERRORS = (RpcError, aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


def parse_token_account(data: Optional[bytes]) -> Optional[TokenAccount]:
    """Mint / owner / amount triple from raw token-account bytes, or None if malformed."""
    if data is None or len(data) < TOKEN_ACCOUNT_MIN_SIZE:
        return None
    try:
        mint = str(Pubkey.from_bytes(bytes(data[_MINT])))
        owner = str(Pubkey.from_bytes(bytes(data[_OWNER])))
        (amount,) = struct.unpack("<Q", bytes(data[_AMOUNT]))
    except (ValueError, struct.error):
        return None
    return TokenAccount(mint=mint, owner=owner, amount=amount)


def _first(record: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def _scaled(raw: Any, decimals: int) -> Decimal:
    """Base units -> token units. Missing values count as zero."""
    if raw is None:
        return Decimal("0")
    return Decimal(str(raw)) / (Decimal(10) ** decimals)


class OnChainPositionReader:
    """Typed reads of live pool and position state."""

    def __init__(
        self,
        pool: PoolCapability,
        ledger: LedgerCapability,
        tokens: TokenConfig,
        config: Optional[RpcConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.ledger = ledger
        self.tokens = tokens
        self.config = config or RpcConfig()
        self.policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            backoff=fixed_backoff(self.config.retry_delay_seconds),
            retryable=retry_on(*TRANSPORT_ERRORS),
            sleep=sleep,
        )

    async def _call(self, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` under the per-call timeout and the retry budget."""
        async def attempt():
            return await asyncio.wait_for(fn(), timeout=self.config.timeout_seconds)

        try:
            return await self.policy.run(attempt, operation=operation)
        except TRANSPORT_ERRORS as e:
            raise wrap_boundary(e, RpcError, f"Ledger read failed: {operation}")

    # ---- pools ----

    async def read_pool(self, pool_address: str) -> PoolState:
        """
        Current active bin and price of a pool.

        Raises:
            ValidationError: malformed address (no network call made)
            NotFoundError: no such pool, or the record could not be decoded
            RpcError: transport failure after all attempts
        """
        validate_address(pool_address, "poolAddress")
        raw = await self._call("read_pool", lambda: self.pool.get_pool(pool_address))
        state = self._pool_from_record(pool_address, raw) if raw is not None else None
        if state is None:
            raise NotFoundError("Pool not found", f"No pool account at {pool_address}")
        return state

    def _pool_from_record(self, pool_address: str, raw: Dict[str, Any]) -> Optional[PoolState]:
        try:
            active_bin = int(_first(raw, "activeBinId", "active_bin_id"))
            price = Decimal(str(_first(raw, "price", "currentPrice", "current_price")))
            return PoolState(
                pool_address=pool_address,
                active_bin=active_bin,
                price=price,
                bin_step=int(_first(raw, "binStep", "bin_step") or 0),
                reserve_x=_scaled(_first(raw, "reserveX", "reserve_x_amount"), self.tokens.token_x_decimals),
                reserve_y=_scaled(_first(raw, "reserveY", "reserve_y_amount"), self.tokens.token_y_decimals),
            )
        except (TypeError, ValueError, InvalidOperation) as e:
            logger.warning("POOL_RECORD_MALFORMED", pool=pool_address, error=str(e))
            return None

    # ---- positions ----

    async def read_position(self, position_id: str) -> Optional[OnChainSnapshot]:
        """
        Live snapshot of one position, or None when no such account exists.

        Raises:
            ValidationError: malformed address (no network call made)
            RpcError: transport failure after all attempts
        """
        validate_address(position_id, "positionAddress")
        raw = await self._call("read_position", lambda: self.pool.get_position(position_id))
        if raw is None:
            logger.info("POSITION_NOT_ON_CHAIN", position=position_id)
            return None

        pool_address = _first(raw, "lbPair", "poolAddress", "pool")
        if not isinstance(pool_address, str):
            logger.warning("POSITION_RECORD_MALFORMED", position=position_id, error="missing pool address")
            return None
        pool = await self.read_pool(pool_address)
        return self._snapshot_from_record(raw, pool, position_id)

    async def read_positions_by_owner(self, wallet_address: str) -> List[OnChainSnapshot]:
        """Every live position owned by ``wallet_address``; pools are read concurrently, once each."""
        validate_address(wallet_address, "walletAddress")
        records = await self._call(
            "read_positions_by_owner",
            lambda: self.pool.get_positions_by_owner(wallet_address),
        ) or []

        pool_addresses = {
            p for p in (_first(r, "lbPair", "poolAddress", "pool") for r in records) if isinstance(p, str)
        }
        pools = await self._read_pools(pool_addresses)

        snapshots = []
        for record in records:
            pool = pools.get(_first(record, "lbPair", "poolAddress", "pool"))
            if pool is None:
                continue
            snapshot = self._snapshot_from_record(record, pool)
            if snapshot is not None:
                snapshots.append(snapshot)
        logger.info("LIVE_POSITIONS_READ", wallet=wallet_address, count=len(snapshots), pools=len(pools))
        return snapshots

    async def _read_pools(self, pool_addresses: Iterable[str]) -> Dict[str, PoolState]:
        addresses = list(pool_addresses)
        results = await asyncio.gather(*(self.read_pool(a) for a in addresses), return_exceptions=True)
        pools: Dict[str, PoolState] = {}
        for address, result in zip(addresses, results):
            if isinstance(result, NotFoundError):
                logger.warning("POOL_NOT_FOUND", pool=address)
            elif isinstance(result, BaseException):
                raise result
            else:
                pools[address] = result
        return pools

    def _snapshot_from_record(
        self,
        raw: Dict[str, Any],
        pool: PoolState,
        position_id: Optional[str] = None,
    ) -> Optional[OnChainSnapshot]:
        position_id = position_id or _first(raw, "address", "publicKey", "positionId")
        try:
            lower = _first(raw, "lowerBinId", "lower_bin_id")
            upper = _first(raw, "upperBinId", "upper_bin_id")
            if lower is None or upper is None:
                bin_ids = [int(b["binId"]) for b in raw.get("positionBinData") or []]
                if not bin_ids:
                    logger.debug("POSITION_WITHOUT_BINS", position=position_id)
                    return None
                lower, upper = min(bin_ids), max(bin_ids)
            return OnChainSnapshot(
                position_id=str(position_id),
                pool_address=pool.pool_address,
                owner=str(_first(raw, "owner") or ""),
                lower_bin=int(lower),
                upper_bin=int(upper),
                active_bin=pool.active_bin,
                amount_x=_scaled(_first(raw, "totalXAmount", "amountX"), self.tokens.token_x_decimals),
                amount_y=_scaled(_first(raw, "totalYAmount", "amountY"), self.tokens.token_y_decimals),
                fee_x=_scaled(_first(raw, "feeX", "feesX"), self.tokens.token_x_decimals),
                fee_y=_scaled(_first(raw, "feeY", "feesY"), self.tokens.token_y_decimals),
                price=pool.price,
                reserve_x=pool.reserve_x,
                reserve_y=pool.reserve_y,
            )
        except (TypeError, ValueError, KeyError, InvalidOperation) as e:
            logger.warning("POSITION_RECORD_MALFORMED", position=position_id, error=str(e))
            return None

    # ---- token accounts ----

    async def read_token_account(self, address: str) -> Optional[TokenAccount]:
        """Parsed token account, or None when absent or malformed."""
        validate_address(address, "tokenAccount")
        data = await self._call("read_token_account", lambda: self.ledger.get_account_data(address))
        account = parse_token_account(data)
        if data is not None and account is None:
            logger.warning("TOKEN_ACCOUNT_MALFORMED", account=address, size=len(data))
        return account
