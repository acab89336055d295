"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts that infrastructure adapters must
implement, so the reader, reconciler and decision engine depend on
abstractions rather than a concrete RPC node, pool service or price API.
Tests substitute in-memory fakes.
"""
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from repositioner.domain.models import PricePair


@runtime_checkable
class LedgerCapability(Protocol):
    """
    Raw ledger reads.

    Implemented by ``repositioner.data.solana_ledger.SolanaLedger`` in production.
    """

    async def get_account_data(self, address: str) -> Optional[bytes]:
        """Raw account data, or None when no account exists at ``address``."""
        ...

    async def get_slot(self) -> int: ...

    async def get_latest_blockhash(self) -> str: ...

    async def get_recent_prioritization_fees(self, addresses: Sequence[str] = ()) -> List[int]:
        """Recent priority fees in micro-lamports per compute unit."""
        ...


@runtime_checkable
class PoolCapability(Protocol):
    """
    DLMM pool service. Bin pricing and position decoding live behind it.

    Records are plain dicts in the service's wire shape; the reader maps them
    to typed snapshots.

    Implemented by ``repositioner.data.pool_client.DlmmPoolClient`` in production.
    """

    async def get_pool(self, pool_address: str) -> Optional[Dict[str, Any]]: ...

    async def get_position(self, position_id: str) -> Optional[Dict[str, Any]]: ...

    async def get_positions_by_owner(self, wallet_address: str) -> List[Dict[str, Any]]: ...

    async def build_remove_liquidity(
        self,
        position_id: str,
        owner: str,
        pool_address: str,
        lower_bin: int,
        upper_bin: int,
    ) -> List[Dict[str, Any]]:
        """Instructions (program id, accounts, base64 data) closing the position."""
        ...

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
        """Instructions opening the replacement position."""
        ...


@runtime_checkable
class PriceSource(Protocol):
    """Spot USD prices for the configured pair."""

    async def fetch_prices(
        self,
        max_attempts: Optional[int] = None,
        fallback_pool_price: Optional[Any] = None,
    ) -> PricePair: ...
