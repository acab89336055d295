"""
Reposition history: the append-only chain of old -> new position transitions,
plus the audit log of executions reported back by callers.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from repositioner.domain.models import (
    CreditBalance,
    ExecutionRecord,
    PositionChain,
    RepositionChainEntry,
    RepositionReason,
    RepositionStrategy,
)
from repositioner.exceptions import DatabaseError, InsufficientCreditsError
from repositioner.monitoring.logger import get_logger
from repositioner.storage.credits import CreditLedger
from repositioner.storage.db import Database
from repositioner.storage.repository import RepositionExecutionModel, RepositionHistoryModel, as_utc, new_id

logger = get_logger(__name__)

RECENT_REPOSITIONS_LIMIT = 10


@dataclass(frozen=True)
class ExecutionOutcome:
    execution: ExecutionRecord
    reposition: Optional[RepositionChainEntry] = None
    credit_balance: Optional[CreditBalance] = None
    credit_error: Optional[InsufficientCreditsError] = None


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _entry_from_model(m: RepositionHistoryModel) -> RepositionChainEntry:
    return RepositionChainEntry(
        id=m.id,
        wallet_address=m.wallet_address,
        pool_address=m.pool_address,
        old_position_address=m.old_position_address,
        new_position_address=m.new_position_address,
        reason=RepositionReason(m.reposition_reason),
        old_bin_range=m.old_bin_range,
        new_bin_range=m.new_bin_range,
        active_bin_at_reposition=m.active_bin_at_reposition,
        distance_from_range=m.distance_from_range,
        liquidity_recovered_x=_dec(m.liquidity_recovered_x),
        liquidity_recovered_y=_dec(m.liquidity_recovered_y),
        fees_collected_x=_dec(m.fees_collected_x),
        fees_collected_y=_dec(m.fees_collected_y),
        gas_cost_sol=Decimal(str(m.gas_cost_sol)) if m.gas_cost_sol is not None else None,
        transaction_signature=m.transaction_signature,
        strategy=RepositionStrategy(m.strategy) if m.strategy else None,
        created_at=as_utc(m.created_at),
    )


class RepositionHistory:
    """Reposition chain bookkeeping."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _add_reposition(session: Session, entry: RepositionChainEntry) -> RepositionChainEntry:
        m = RepositionHistoryModel(
            id=entry.id or new_id(),
            wallet_address=entry.wallet_address,
            pool_address=entry.pool_address,
            old_position_address=entry.old_position_address,
            new_position_address=entry.new_position_address,
            reposition_reason=entry.reason.value,
            old_bin_range=entry.old_bin_range,
            new_bin_range=entry.new_bin_range,
            active_bin_at_reposition=entry.active_bin_at_reposition,
            distance_from_range=entry.distance_from_range,
            liquidity_recovered_x=entry.liquidity_recovered_x,
            liquidity_recovered_y=entry.liquidity_recovered_y,
            fees_collected_x=entry.fees_collected_x,
            fees_collected_y=entry.fees_collected_y,
            gas_cost_sol=entry.gas_cost_sol,
            transaction_signature=entry.transaction_signature,
            strategy=entry.strategy.value if entry.strategy else None,
            created_at=entry.created_at or datetime.now(timezone.utc),
        )
        session.add(m)
        session.flush()
        return _entry_from_model(m)

    def record_reposition(self, entry: RepositionChainEntry) -> RepositionChainEntry:
        """Append one old -> new transition. Entries are never updated."""
        try:
            with self.db.get_session() as session:
                recorded = self._add_reposition(session, entry)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to record reposition", str(e))

        logger.info(
            "REPOSITION_RECORDED",
            id=recorded.id,
            old_position=recorded.old_position_address,
            new_position=recorded.new_position_address,
            reason=recorded.reason.value,
        )
        return recorded

    def get_position_chain(self, position_address: str) -> Optional[PositionChain]:
        """
        Full chain containing ``position_address``, chronological.

        Links are followed in both directions, so any position in the chain
        yields the same result. Returns None when the position was never
        repositioned.
        """
        try:
            with self.db.get_session() as session:
                entries: Dict[str, RepositionChainEntry] = {}
                visited = set()
                frontier = [position_address]
                while frontier:
                    address = frontier.pop()
                    if address in visited:
                        continue
                    visited.add(address)
                    rows = session.query(RepositionHistoryModel).filter(
                        or_(
                            RepositionHistoryModel.old_position_address == address,
                            RepositionHistoryModel.new_position_address == address,
                        )
                    ).all()
                    for row in rows:
                        if row.id not in entries:
                            entries[row.id] = _entry_from_model(row)
                        frontier.append(row.old_position_address)
                        frontier.append(row.new_position_address)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to retrieve position chain", str(e))

        if not entries:
            logger.info("POSITION_CHAIN_EMPTY", position=position_address)
            return None

        history = sorted(entries.values(), key=lambda e: (e.created_at, e.id))
        chain = PositionChain(
            current_position=history[-1].new_position_address,
            history=history,
            total_fees_x=sum((e.fees_collected_x for e in history), Decimal("0")),
            total_fees_y=sum((e.fees_collected_y for e in history), Decimal("0")),
            total_gas_cost_sol=sum((e.gas_cost_sol or Decimal("0") for e in history), Decimal("0")),
        )
        logger.info(
            "POSITION_CHAIN_LOADED",
            position=position_address,
            chain_length=chain.chain_length,
            repositions=chain.total_repositions,
        )
        return chain

    def get_wallet_reposition_stats(self, wallet_address: str) -> Dict[str, Any]:
        try:
            with self.db.get_session() as session:
                rows = session.query(RepositionHistoryModel).filter(
                    RepositionHistoryModel.wallet_address == wallet_address
                ).order_by(RepositionHistoryModel.created_at.desc()).all()
                entries = [_entry_from_model(r) for r in rows]
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to get reposition stats", str(e))

        reasons = Counter(e.reason.value for e in entries)
        return {
            "totalRepositions": len(entries),
            "reasonBreakdown": dict(reasons),
            "totalFeesCollected": {
                "tokenX": float(sum((e.fees_collected_x for e in entries), Decimal("0"))),
                "tokenY": float(sum((e.fees_collected_y for e in entries), Decimal("0"))),
            },
            "totalGasCost": float(sum((e.gas_cost_sol or Decimal("0") for e in entries), Decimal("0"))),
            "recentRepositions": [e.to_dict() for e in entries[:RECENT_REPOSITIONS_LIMIT]],
        }

    @staticmethod
    def _add_execution(session: Session, record: ExecutionRecord) -> None:
        session.add(RepositionExecutionModel(
            id=record.id,
            wallet_address=record.wallet_address,
            position_address=record.position_id,
            success=record.success,
            transaction_signature=record.transaction_signature,
            error=record.error,
            gas_cost_sol=record.gas_cost_sol,
            fees_collected_usd=record.fees_collected_usd,
            execution_mode=record.execution_mode,
            created_at=record.created_at,
        ))

    def record_execution(
        self,
        wallet_address: str,
        position_address: str,
        success: bool,
        transaction_signature: Optional[str] = None,
        error: Optional[str] = None,
        gas_cost_sol: Optional[Decimal] = None,
        fees_collected_usd: Optional[Decimal] = None,
        execution_mode: str = "auto",
    ) -> ExecutionRecord:
        """Audit row for an executed (or failed) reposition reported by the caller."""
        record = ExecutionRecord(
            id=new_id(),
            wallet_address=wallet_address,
            position_id=position_address,
            success=success,
            transaction_signature=transaction_signature,
            error=error,
            gas_cost_sol=gas_cost_sol,
            fees_collected_usd=fees_collected_usd,
            execution_mode=execution_mode,
            created_at=datetime.now(timezone.utc),
        )
        return self.record_outcome(record).execution

    def record_outcome(
        self,
        execution: ExecutionRecord,
        entry: Optional[RepositionChainEntry] = None,
        credits: Optional[CreditLedger] = None,
        charge: Optional[Decimal] = None,
    ) -> ExecutionOutcome:
        """
        Write an execution, its chain entry and its credit charge in one session.

        A credit shortfall is not an error here: the transaction already landed,
        so the execution and chain entry are kept and the shortfall is returned.
        Any storage failure rolls back all three.
        """
        credit_balance: Optional[CreditBalance] = None
        credit_error: Optional[InsufficientCreditsError] = None
        try:
            with self.db.get_session() as session:
                self._add_execution(session, execution)
                recorded = self._add_reposition(session, entry) if entry is not None else None
                if credits is not None and charge is not None:
                    try:
                        credit_balance = credits.debit(
                            session,
                            execution.wallet_address,
                            charge,
                            execution.transaction_signature or execution.position_id,
                            "Reposition execution",
                        )
                    except InsufficientCreditsError as e:
                        credit_error = e
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to record execution", str(e))

        logger.info(
            "REPOSITION_EXECUTION_RECORDED",
            wallet=execution.wallet_address,
            position=execution.position_id,
            success=execution.success,
            mode=execution.execution_mode,
        )
        if recorded is not None:
            logger.info(
                "REPOSITION_RECORDED",
                id=recorded.id,
                old_position=recorded.old_position_address,
                new_position=recorded.new_position_address,
                reason=recorded.reason.value,
            )
        if credit_balance is not None:
            logger.info(
                "CREDITS_USED",
                wallet=execution.wallet_address,
                amount=str(charge),
                new_balance=str(credit_balance.balance),
            )
        return ExecutionOutcome(execution, recorded, credit_balance, credit_error)

    def list_executions(self, wallet_address: str, limit: int = 50) -> List[ExecutionRecord]:
        try:
            with self.db.get_session() as session:
                rows = session.query(RepositionExecutionModel).filter(
                    RepositionExecutionModel.wallet_address == wallet_address
                ).order_by(RepositionExecutionModel.created_at.desc()).limit(limit).all()
                return [
                    ExecutionRecord(
                        id=r.id,
                        wallet_address=r.wallet_address,
                        position_id=r.position_address,
                        success=bool(r.success),
                        transaction_signature=r.transaction_signature,
                        error=r.error,
                        gas_cost_sol=Decimal(str(r.gas_cost_sol)) if r.gas_cost_sol is not None else None,
                        fees_collected_usd=Decimal(str(r.fees_collected_usd)) if r.fees_collected_usd is not None else None,
                        execution_mode=r.execution_mode,
                        created_at=as_utc(r.created_at),
                    )
                    for r in rows
                ]
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to list executions", str(e))
