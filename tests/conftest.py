"""
Pytest configuration and shared fixtures.

Everything runs against an in-memory SQLite database and in-memory fakes of
the ledger, pool service and price API; nothing touches the network.
"""
import base64
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from solders.hash import Hash

from repositioner.config.config import Config
from repositioner.domain.models import PricePair
from repositioner.exceptions import PriceUnavailableError
from repositioner.services.factory import build_services
from repositioner.storage.db import Database

# Well-known, valid base58 public keys used as stand-in addresses
WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
OTHER_WALLET = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
POOL = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"
OTHER_POOL = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
P1 = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
P2 = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
P3 = "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So"
P_NEW = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
DLMM_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def pool_record(active_bin: int = 100, price: str = "0.5", bin_step: int = 10) -> Dict[str, Any]:
    return {
        "activeBinId": active_bin,
        "price": price,
        "binStep": bin_step,
        "reserveX": "100000000",
        "reserveY": "50000000000",
    }


def position_record(
    address: str,
    pool: str = POOL,
    owner: str = WALLET,
    lower: int = 90,
    upper: int = 110,
    amount_x: str = "100000000",
    amount_y: str = "2000000000",
    fee_x: str = "1000000",
    fee_y: str = "10000000",
) -> Dict[str, Any]:
    """Pool-service wire shape; amounts in base units (X: 8 decimals, Y: 9)."""
    return {
        "address": address,
        "lbPair": pool,
        "owner": owner,
        "lowerBinId": lower,
        "upperBinId": upper,
        "totalXAmount": amount_x,
        "totalYAmount": amount_y,
        "feeX": fee_x,
        "feeY": fee_y,
    }


class FakePool:
    """In-memory ``PoolCapability``. Queue exceptions in ``failures`` to fail the next calls."""

    def __init__(self):
        self.pools: Dict[str, Dict[str, Any]] = {POOL: pool_record()}
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.failures: List[BaseException] = []
        self.calls: List[str] = []

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self.failures:
            raise self.failures.pop(0)

    async def get_pool(self, pool_address: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail("get_pool")
        return self.pools.get(pool_address)

    async def get_position(self, position_id: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail("get_position")
        return self.positions.get(position_id)

    async def get_positions_by_owner(self, wallet_address: str) -> List[Dict[str, Any]]:
        self._maybe_fail("get_positions_by_owner")
        return [p for p in self.positions.values() if p.get("owner") == wallet_address]

    async def build_remove_liquidity(self, position_id, owner, pool_address, lower_bin, upper_bin):
        self._maybe_fail("build_remove_liquidity")
        return [_instruction(owner, position_id, b"remove")]

    async def build_add_liquidity(self, owner, pool_address, lower_bin, upper_bin, amount_x, amount_y,
                                  strategy, slippage_bps):
        self._maybe_fail("build_add_liquidity")
        self.last_add = {
            "lower": lower_bin,
            "upper": upper_bin,
            "amount_x": amount_x,
            "amount_y": amount_y,
            "strategy": strategy,
            "slippage_bps": slippage_bps,
        }
        return [_instruction(owner, pool_address, b"add")]


def _instruction(owner: str, account: str, data: bytes) -> Dict[str, Any]:
    return {
        "programId": DLMM_PROGRAM,
        "keys": [
            {"pubkey": owner, "isSigner": True, "isWritable": True},
            {"pubkey": account, "isSigner": False, "isWritable": True},
        ],
        "data": base64.b64encode(data).decode(),
    }


class FakeLedger:
    """In-memory ``LedgerCapability``."""

    def __init__(self):
        self.accounts: Dict[str, bytes] = {}
        self.priority_fees: List[int] = [1000, 2000, 3000]
        self.fee_error: Optional[BaseException] = None
        self.blockhash_calls = 0

    async def get_account_data(self, address: str) -> Optional[bytes]:
        return self.accounts.get(address)

    async def get_slot(self) -> int:
        return 250_000_000

    async def get_latest_blockhash(self) -> str:
        self.blockhash_calls += 1
        return str(Hash.new_unique())

    async def get_recent_prioritization_fees(self, addresses=()) -> List[int]:
        if self.fee_error is not None:
            raise self.fee_error
        return list(self.priority_fees)


class FakePrices:
    """``PriceSource`` returning a fixed pair, or failing when ``pair`` is None."""

    def __init__(self, price_x: str = "60000", price_y: str = "150"):
        self.pair: Optional[PricePair] = PricePair(price_x=Decimal(price_x), price_y=Decimal(price_y))
        self.calls: List[Optional[Decimal]] = []

    async def fetch_prices(self, max_attempts=None, fallback_pool_price=None) -> PricePair:
        self.calls.append(fallback_pool_price)
        if self.pair is None:
            raise PriceUnavailableError("Failed to fetch token prices after 3 attempts")
        return self.pair


class SleepRecorder:
    """Zero-delay replacement for ``asyncio.sleep`` that remembers requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def fake_pool():
    return FakePool()


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def fake_prices():
    return FakePrices()


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def services(config, db, fake_pool, fake_ledger, fake_prices, no_sleep):
    return build_services(
        config,
        db=db,
        ledger=fake_ledger,
        pool=fake_pool,
        prices=fake_prices,
        sleep=no_sleep,
    )
