"""
Explicit wiring of every service from ``Config``.

One shared RPC connection, one pool-service session and one price client per
``Services`` instance; no module-level singletons. Tests pass fakes for the
capabilities and an in-memory database.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from repositioner.access.gate import AccessGate
from repositioner.access.subscriptions import SubscriptionService
from repositioner.config.config import Config
from repositioner.data.onchain_reader import OnChainPositionReader
from repositioner.data.pool_client import DlmmPoolClient
from repositioner.data.price_oracle import PriceOracleClient
from repositioner.data.solana_ledger import SolanaLedger
from repositioner.domain.protocols import LedgerCapability, PoolCapability, PriceSource
from repositioner.monitoring.logger import get_logger
from repositioner.reconciliation.reconciler import PositionReconciler
from repositioner.reposition.decision_engine import RepositionDecisionEngine
from repositioner.reposition.settings import SettingsService
from repositioner.reposition.transaction_builder import TransactionBuilder
from repositioner.services.tool_service import ToolService
from repositioner.storage.credits import CreditLedger
from repositioner.storage.db import Database
from repositioner.storage.history import RepositionHistory
from repositioner.storage.repository import Repository
from repositioner.utils.cache import TTLCache

logger = get_logger(__name__)


@dataclass
class Services:
    config: Config
    db: Database
    repository: Repository
    ledger: LedgerCapability
    pool: PoolCapability
    prices: PriceSource
    reader: OnChainPositionReader
    reconciler: PositionReconciler
    engine: RepositionDecisionEngine
    settings: SettingsService
    credits: CreditLedger
    subscriptions: SubscriptionService
    history: RepositionHistory
    gate: AccessGate
    tools: ToolService

    async def close(self) -> None:
        """Release network sessions and the connection pool."""
        for client in (self.ledger, self.pool, self.prices):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        await asyncio.to_thread(self.db.dispose)


def build_services(
    config: Config,
    *,
    db: Optional[Database] = None,
    ledger: Optional[LedgerCapability] = None,
    pool: Optional[PoolCapability] = None,
    prices: Optional[PriceSource] = None,
    sleep: Optional[Any] = None,
) -> Services:
    """
    Build the full service graph.

    Raises:
        ValueError: no database given and none configured
    """
    if db is None:
        if not config.database.database_url:
            raise ValueError("DATABASE_URL is not configured")
        db = Database(config.database.database_url)

    ledger = ledger or SolanaLedger(config.rpc)
    pool = pool or DlmmPoolClient(config.pool_service)
    sleep_kwargs = {"sleep": sleep} if sleep is not None else {}
    prices = prices or PriceOracleClient(config.price, config.tokens, **sleep_kwargs)

    repository = Repository(db)
    credits = CreditLedger(db)
    subscriptions = SubscriptionService(db)
    history = RepositionHistory(db)

    reader = OnChainPositionReader(pool, ledger, config.tokens, config.rpc, **sleep_kwargs)
    reconciler = PositionReconciler(repository, reader, prices, config.tokens, config.health)
    engine = RepositionDecisionEngine(
        reader=reader,
        ledger=ledger,
        pool=pool,
        prices=prices,
        repository=repository,
        builder=TransactionBuilder(ledger, compute_unit_limit=config.reposition.default_compute_units),
        tokens=config.tokens,
        config=config.reposition,
        health_config=config.health,
    )
    settings = SettingsService(
        repository,
        TTLCache(ttl_seconds=config.cache.user_ttl_seconds, max_size=config.cache.max_entries),
    )
    gate = AccessGate(subscriptions, credits, config.access)
    tools = ToolService(
        gate=gate,
        reconciler=reconciler,
        engine=engine,
        settings=settings,
        credits=credits,
        subscriptions=subscriptions,
        history=history,
        access_config=config.access,
    )

    logger.info(
        "SERVICES_BUILT",
        environment=config.environment,
        postgres=db.is_postgres,
        tools=len(tools.tool_names),
    )
    return Services(
        config=config,
        db=db,
        repository=repository,
        ledger=ledger,
        pool=pool,
        prices=prices,
        reader=reader,
        reconciler=reconciler,
        engine=engine,
        settings=settings,
        credits=credits,
        subscriptions=subscriptions,
        history=history,
        gate=gate,
        tools=tools,
    )
