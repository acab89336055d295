"""
Hybrid position sync: database history merged with live ledger state.

- Live only: the position is open on-chain but was never recorded -> blockchain / active.
- Database only: recorded but no longer on-chain -> database / closed.
- Both: live amounts, fees and health win for "current" fields; the record
  supplies entry/exit history and claimed fees.

Both sources are queried concurrently and a failure in one does not abort
the other; the summary says which side was missing. Logs RECONCILE_SUMMARY.
"""
import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from repositioner.config.config import HealthConfig, TokenConfig
from repositioner.domain.models import (
    DataSource,
    MergedPosition,
    OnChainSnapshot,
    PositionFees,
    PositionPnL,
    PositionRecord,
    PositionStatus,
    PricePair,
    SyncSummary,
    TokenAmount,
)
from repositioner.domain.protocols import PriceSource
from repositioner.data.onchain_reader import OnChainPositionReader
from repositioner.exceptions import DataIntegrityError, PriceUnavailableError, RepositionerError, error_envelope
from repositioner.monitoring.logger import get_logger
from repositioner.reconciliation.health import compute_health, compute_pnl
from repositioner.storage.repository import Repository
from repositioner.utils.validation import validate_address

logger = get_logger(__name__)

ZERO = Decimal("0")


def _source_error(exc: BaseException) -> str:
    """Caller-safe description of a failed source."""
    return error_envelope(exc)["message"]


class PositionReconciler:
    """Merges database records with live snapshots into one view per position."""

    def __init__(
        self,
        repository: Repository,
        reader: OnChainPositionReader,
        prices: PriceSource,
        tokens: TokenConfig,
        health_config: Optional[HealthConfig] = None,
    ):
        self.repository = repository
        self.reader = reader
        self.prices = prices
        self.tokens = tokens
        self.health_config = health_config or HealthConfig()

    async def get_user_positions(
        self,
        wallet_address: str,
        include_historical: bool = True,
        include_live: bool = True,
        position_id: Optional[str] = None,
    ) -> Tuple[List[MergedPosition], SyncSummary]:
        """
        Merged positions for a wallet plus a per-source summary.

        Order of the returned list is not stable across calls; active
        positions come first, then by liquidity.
        """
        validate_address(wallet_address, "walletAddress")
        summary = SyncSummary()

        db_task = (
            asyncio.to_thread(self.repository.get_positions_by_wallet, wallet_address, True)
            if include_historical else _empty()
        )
        live_task = self.reader.read_positions_by_owner(wallet_address) if include_live else _empty()
        db_result, live_result = await asyncio.gather(db_task, live_task, return_exceptions=True)

        records: List[PositionRecord] = []
        if isinstance(db_result, BaseException):
            if not isinstance(db_result, Exception):
                raise db_result
            logger.error("RECONCILE_DATABASE_FAILED", wallet=wallet_address, error=str(db_result))
            summary.database_error = _source_error(db_result)
        else:
            records = db_result

        snapshots: List[OnChainSnapshot] = []
        live_ok = include_live
        if isinstance(live_result, BaseException):
            if not isinstance(live_result, Exception):
                raise live_result
            logger.error("RECONCILE_LIVE_FAILED", wallet=wallet_address, error=str(live_result))
            summary.live_error = _source_error(live_result)
            live_ok = False
        else:
            snapshots = live_result

        summary.database_positions = len(records)
        summary.blockchain_positions = len(snapshots)

        merged = self.merge(records, snapshots, summary, live_ok=live_ok)
        if position_id is not None:
            merged = [p for p in merged if p.position_id == position_id]

        price_pair = await self._fetch_prices(snapshots, merged)
        by_record = {r.position_id: r for r in records}
        for position in merged:
            self._value(position, price_pair, by_record.get(position.position_id))

        merged.sort(key=lambda p: (p.status != PositionStatus.ACTIVE, -p.total_liquidity_usd))

        summary.total = len(merged)
        summary.active = sum(1 for p in merged if p.status == PositionStatus.ACTIVE)
        summary.closed = sum(1 for p in merged if p.status == PositionStatus.CLOSED)
        summary.merged = sum(1 for p in merged if p.source == DataSource.BOTH)

        logger.info(
            "RECONCILE_SUMMARY",
            wallet=wallet_address,
            total=summary.total,
            active=summary.active,
            closed=summary.closed,
            merged=summary.merged,
            database_positions=summary.database_positions,
            blockchain_positions=summary.blockchain_positions,
            conflicts=summary.conflicts,
            live_error=summary.live_error,
            database_error=summary.database_error,
        )
        return merged, summary

    def merge(
        self,
        records: List[PositionRecord],
        snapshots: List[OnChainSnapshot],
        summary: Optional[SyncSummary] = None,
        live_ok: bool = True,
    ) -> List[MergedPosition]:
        """
        Join records and snapshots on position id.

        ``live_ok`` is False when the live source was skipped or failed; database
        records then keep their recorded status instead of being marked closed.
        """
        summary = summary if summary is not None else SyncSummary()
        by_id: Dict[str, PositionRecord] = {r.position_id: r for r in records}
        live_by_id: Dict[str, OnChainSnapshot] = {s.position_id: s for s in snapshots}

        merged: List[MergedPosition] = []
        for position_id in by_id.keys() | live_by_id.keys():
            record = by_id.get(position_id)
            snapshot = live_by_id.get(position_id)
            if snapshot is not None and record is not None:
                try:
                    merged.append(self._merge_both(record, snapshot))
                except DataIntegrityError as e:
                    summary.conflicts += 1
                    logger.error(
                        "RECONCILE_IDENTITY_CONFLICT",
                        position=position_id,
                        error=e.message,
                        details=e.details,
                    )
            elif snapshot is not None:
                merged.append(self._from_live(snapshot))
            else:
                merged.append(self._from_record(record, live_ok))
        return merged

    def _from_live(self, snapshot: OnChainSnapshot) -> MergedPosition:
        return MergedPosition(
            position_id=snapshot.position_id,
            pool_address=snapshot.pool_address,
            status=PositionStatus.ACTIVE,
            source=DataSource.BLOCKCHAIN,
            token_x=TokenAmount(self.tokens.token_x_symbol, snapshot.amount_x),
            token_y=TokenAmount(self.tokens.token_y_symbol, snapshot.amount_y),
            fees=PositionFees(accrued_x=snapshot.fee_x, accrued_y=snapshot.fee_y),
            health=compute_health(
                snapshot.active_bin, None, snapshot.lower_bin, snapshot.upper_bin, self.health_config
            ),
            entry_bin=None,
            lower_bin=snapshot.lower_bin,
            upper_bin=snapshot.upper_bin,
        )

    def _from_record(self, record: PositionRecord, live_ok: bool) -> MergedPosition:
        if live_ok:
            status = PositionStatus.CLOSED
        else:
            status = PositionStatus.ACTIVE if record.is_active else PositionStatus.CLOSED

        if status == PositionStatus.CLOSED and record.exit_amount_x is not None:
            amount_x, amount_y = record.exit_amount_x, record.exit_amount_y or ZERO
        else:
            amount_x, amount_y = record.entry_amount_x, record.entry_amount_y

        return MergedPosition(
            position_id=record.position_id,
            pool_address=record.pool_address,
            status=status,
            source=DataSource.DATABASE,
            token_x=TokenAmount(self.tokens.token_x_symbol, amount_x),
            token_y=TokenAmount(self.tokens.token_y_symbol, amount_y),
            fees=PositionFees(claimed_x=record.fees_claimed_x, claimed_y=record.fees_claimed_y),
            entry_bin=record.entry_bin,
            exit_bin=record.exit_bin,
            entry_date=record.created_at,
            exit_date=record.closed_at,
        )

    def _merge_both(self, record: PositionRecord, snapshot: OnChainSnapshot) -> MergedPosition:
        if record.pool_address != snapshot.pool_address:
            raise DataIntegrityError(
                "Position identity conflict between database and ledger",
                f"position {record.position_id}: database pool {record.pool_address}, "
                f"ledger pool {snapshot.pool_address}",
            )
        return MergedPosition(
            position_id=snapshot.position_id,
            pool_address=snapshot.pool_address,
            status=PositionStatus.ACTIVE,
            source=DataSource.BOTH,
            token_x=TokenAmount(self.tokens.token_x_symbol, snapshot.amount_x),
            token_y=TokenAmount(self.tokens.token_y_symbol, snapshot.amount_y),
            fees=PositionFees(
                accrued_x=snapshot.fee_x,
                accrued_y=snapshot.fee_y,
                claimed_x=record.fees_claimed_x,
                claimed_y=record.fees_claimed_y,
            ),
            health=compute_health(
                snapshot.active_bin,
                record.entry_bin,
                snapshot.lower_bin,
                snapshot.upper_bin,
                self.health_config,
            ),
            entry_bin=record.entry_bin if record.entry_bin is not None else snapshot.lower_bin,
            lower_bin=snapshot.lower_bin,
            upper_bin=snapshot.upper_bin,
            entry_date=record.created_at,
        )

    async def _fetch_prices(
        self,
        snapshots: List[OnChainSnapshot],
        merged: List[MergedPosition],
    ) -> Optional[PricePair]:
        if not merged:
            return None
        fallback = next((s.price for s in snapshots if s.price and s.price > 0), None)
        try:
            return await self.prices.fetch_prices(fallback_pool_price=fallback)
        except PriceUnavailableError as e:
            logger.warning("RECONCILE_PRICES_UNAVAILABLE", error=e.message, details=e.details)
            return None
        except RepositionerError as e:
            logger.warning("RECONCILE_PRICES_FAILED", error=e.message)
            return None
        except Exception as e:
            # Valuation is optional; both position sources already answered
            logger.error("RECONCILE_PRICES_FAILED", error=str(e), exc_info=True)
            return None

    def _value(self, position: MergedPosition, prices: Optional[PricePair], record: Optional[PositionRecord]) -> None:
        """USD valuation and PnL, in place."""
        if prices is not None:
            px, py = prices.price_x, prices.price_y
            position.token_x.usd_value = position.token_x.amount * px
            position.token_y.usd_value = position.token_y.amount * py
            position.total_liquidity_usd = position.token_x.usd_value + position.token_y.usd_value
            fees = position.fees
            fees.accrued_usd = fees.accrued_x * px + fees.accrued_y * py
            fees.claimed_usd = fees.claimed_x * px + fees.claimed_y * py

        position.pnl = self._pnl(position, prices, record)

    @staticmethod
    def _pnl(
        position: MergedPosition,
        prices: Optional[PricePair],
        record: Optional[PositionRecord],
    ) -> Optional[PositionPnL]:
        if record is None:
            return None
        gas = record.gas_cost_usd or ZERO

        if position.status == PositionStatus.CLOSED:
            if record.realized_pnl_usd is not None:
                percent = record.realized_pnl_percent
                if percent is None and record.deposit_value_usd:
                    percent = record.realized_pnl_usd / record.deposit_value_usd * Decimal("100")
                return PositionPnL(usd=record.realized_pnl_usd, percent=percent or ZERO)
            withdraw = record.withdraw_value_usd
            if withdraw is not None:
                withdraw += position.fees.claimed_usd
            return compute_pnl(withdraw, record.deposit_value_usd, gas)

        if prices is None:
            return None
        current = position.total_liquidity_usd + position.fees.accrued_usd + position.fees.claimed_usd
        return compute_pnl(current, record.deposit_value_usd, gas)


async def _empty() -> list:
    return []
