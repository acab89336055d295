"""
Persistence for users, positions, settings and pending proposals.

ORM rows are mapped to domain dataclasses inside the session; no ORM object
leaves this module. Storage failures surface as ``DatabaseError``.
Methods are synchronous; async callers run them via ``asyncio.to_thread``.
"""
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String, func
from sqlalchemy.exc import SQLAlchemyError

from repositioner.domain.models import (
    PendingProposal,
    PositionRecord,
    RepositionSettings,
    RepositionStrategy,
    UpdatedFrom,
    Urgency,
    UserRecord,
)
from repositioner.exceptions import DatabaseError
from repositioner.monitoring.logger import get_logger
from repositioner.storage.db import Base, Database

logger = get_logger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


# ORM Models
class UserModel(Base):
    """ORM model for users (Telegram bot and website)."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    telegram_id = Column(String, nullable=True, unique=True)
    username = Column(String, nullable=True)
    linked_wallet_address = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class PositionModel(Base):
    """ORM model for liquidity positions (open and closed)."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_wallet_active", "wallet_address", "is_active"),
    )

    position_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    wallet_address = Column(String, nullable=False)
    pool_address = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    entry_bin = Column(Integer, nullable=True)
    exit_bin = Column(Integer, nullable=True)
    entry_amount_x = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    entry_amount_y = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    exit_amount_x = Column(Numeric(precision=30, scale=12), nullable=True)
    exit_amount_y = Column(Numeric(precision=30, scale=12), nullable=True)
    fees_claimed_x = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    fees_claimed_y = Column(Numeric(precision=30, scale=12), nullable=False, default=0)

    deposit_value_usd = Column(Numeric(precision=20, scale=8), nullable=True)
    withdraw_value_usd = Column(Numeric(precision=20, scale=8), nullable=True)
    gas_cost_usd = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    realized_pnl_usd = Column(Numeric(precision=20, scale=8), nullable=True)
    realized_pnl_percent = Column(Numeric(precision=10, scale=4), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    closed_at = Column(DateTime(timezone=True), nullable=True)


class RepositionSettingsModel(Base):
    """ORM model for per-user auto-reposition settings."""
    __tablename__ = "user_reposition_settings"

    user_id = Column(String, primary_key=True)
    auto_reposition_enabled = Column(Boolean, nullable=False, default=False)
    urgency_threshold = Column(String, nullable=False, default="medium")
    max_gas_cost_sol = Column(Numeric(precision=10, scale=6), nullable=False, default=Decimal("0.02"))
    min_fees_to_collect_usd = Column(Numeric(precision=20, scale=2), nullable=False, default=Decimal("5"))
    allowed_strategies = Column(String, nullable=False)  # JSON list
    telegram_notifications = Column(Boolean, nullable=False, default=True)
    website_notifications = Column(Boolean, nullable=False, default=True)
    updated_from = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class RepositionHistoryModel(Base):
    """ORM model for reposition chain entries (append-only)."""
    __tablename__ = "position_reposition_history"
    __table_args__ = (
        Index("idx_reposition_old", "old_position_address"),
        Index("idx_reposition_new", "new_position_address"),
        Index("idx_reposition_wallet_time", "wallet_address", "created_at"),
    )

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False)
    pool_address = Column(String, nullable=False)
    old_position_address = Column(String, nullable=False)
    new_position_address = Column(String, nullable=False)
    reposition_reason = Column(String, nullable=False)
    old_bin_range = Column(String, nullable=False)
    new_bin_range = Column(String, nullable=False)
    active_bin_at_reposition = Column(Integer, nullable=False)
    distance_from_range = Column(Integer, nullable=False)
    liquidity_recovered_x = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    liquidity_recovered_y = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    fees_collected_x = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    fees_collected_y = Column(Numeric(precision=30, scale=12), nullable=False, default=0)
    gas_cost_sol = Column(Numeric(precision=20, scale=9), nullable=True)
    transaction_signature = Column(String, nullable=True)
    strategy = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class UserCreditsModel(Base):
    """ORM model for per-wallet credit balances."""
    __tablename__ = "user_credits"

    wallet_address = Column(String, primary_key=True)
    balance = Column(Numeric(precision=20, scale=4), nullable=False, default=0)
    total_purchased = Column(Numeric(precision=20, scale=4), nullable=False, default=0)
    total_used = Column(Numeric(precision=20, scale=4), nullable=False, default=0)
    last_purchase_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class CreditTransactionModel(Base):
    """ORM model for immutable credit ledger entries."""
    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("idx_credit_tx_wallet_time", "wallet_address", "created_at"),
    )

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False)
    type = Column(String, nullable=False)
    amount = Column(Numeric(precision=20, scale=4), nullable=False)
    balance_before = Column(Numeric(precision=20, scale=4), nullable=False)
    balance_after = Column(Numeric(precision=20, scale=4), nullable=False)
    description = Column(String, nullable=True)
    related_resource_id = Column(String, nullable=True)
    usdc_amount = Column(Numeric(precision=20, scale=6), nullable=True)
    payment_tx_signature = Column(String, nullable=True, unique=True)
    payment_proof = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class SubscriptionModel(Base):
    """ORM model for subscription periods."""
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index("idx_subscription_wallet_status", "wallet_address", "status"),
    )

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False)
    tier = Column(String, nullable=False, default="premium")
    status = Column(String, nullable=False, default="active")
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    payment_tx_signature = Column(String, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class RepositionExecutionModel(Base):
    """ORM model for executed reposition audit rows."""
    __tablename__ = "reposition_executions"
    __table_args__ = (
        Index("idx_execution_wallet_time", "wallet_address", "created_at"),
    )

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False)
    position_address = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    transaction_signature = Column(String, nullable=True)
    error = Column(String, nullable=True)
    gas_cost_sol = Column(Numeric(precision=20, scale=9), nullable=True)
    fees_collected_usd = Column(Numeric(precision=20, scale=8), nullable=True)
    execution_mode = Column(String, nullable=False, default="auto")
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class PendingTransactionModel(Base):
    """ORM model for prepared, unsigned reposition transactions."""
    __tablename__ = "pending_transactions"
    __table_args__ = (
        Index("idx_pending_wallet_time", "wallet_address", "created_at"),
    )

    tx_hash = Column(String, primary_key=True)
    wallet_address = Column(String, nullable=False)
    position_address = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


# Row mappers
def _user_from_model(m: UserModel) -> UserRecord:
    return UserRecord(
        id=m.id,
        wallet_address=m.linked_wallet_address,
        telegram_id=m.telegram_id,
        username=m.username,
        created_at=as_utc(m.created_at),
    )


def _position_from_model(m: PositionModel) -> PositionRecord:
    return PositionRecord(
        position_id=m.position_id,
        pool_address=m.pool_address,
        wallet_address=m.wallet_address,
        is_active=bool(m.is_active),
        entry_bin=m.entry_bin,
        exit_bin=m.exit_bin,
        entry_amount_x=_dec(m.entry_amount_x) or Decimal("0"),
        entry_amount_y=_dec(m.entry_amount_y) or Decimal("0"),
        exit_amount_x=_dec(m.exit_amount_x),
        exit_amount_y=_dec(m.exit_amount_y),
        fees_claimed_x=_dec(m.fees_claimed_x) or Decimal("0"),
        fees_claimed_y=_dec(m.fees_claimed_y) or Decimal("0"),
        deposit_value_usd=_dec(m.deposit_value_usd),
        withdraw_value_usd=_dec(m.withdraw_value_usd),
        gas_cost_usd=_dec(m.gas_cost_usd) or Decimal("0"),
        realized_pnl_usd=_dec(m.realized_pnl_usd),
        realized_pnl_percent=_dec(m.realized_pnl_percent),
        created_at=as_utc(m.created_at),
        closed_at=as_utc(m.closed_at),
    )


def _settings_from_model(m: RepositionSettingsModel) -> RepositionSettings:
    return RepositionSettings(
        user_id=m.user_id,
        auto_reposition_enabled=bool(m.auto_reposition_enabled),
        urgency_threshold=Urgency(m.urgency_threshold),
        max_gas_cost_sol=_dec(m.max_gas_cost_sol),
        min_fees_to_collect_usd=_dec(m.min_fees_to_collect_usd),
        allowed_strategies=[RepositionStrategy(s) for s in json.loads(m.allowed_strategies)],
        telegram_notifications=bool(m.telegram_notifications),
        website_notifications=bool(m.website_notifications),
        updated_from=UpdatedFrom(m.updated_from) if m.updated_from else None,
        created_at=as_utc(m.created_at),
        updated_at=as_utc(m.updated_at),
    )


class Repository:
    """Typed access to users, positions, settings and pending proposals."""

    def __init__(self, db: Database):
        self.db = db

    # ---- users ----

    def find_user_by_wallet(self, wallet_address: str) -> Optional[UserRecord]:
        try:
            with self.db.get_session() as session:
                m = session.query(UserModel).filter(UserModel.linked_wallet_address == wallet_address).first()
                return _user_from_model(m) if m else None
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to look up user by wallet", str(e))

    def find_user_by_telegram_id(self, telegram_id: str) -> Optional[UserRecord]:
        try:
            with self.db.get_session() as session:
                m = session.query(UserModel).filter(UserModel.telegram_id == str(telegram_id)).first()
                return _user_from_model(m) if m else None
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to look up user by Telegram id", str(e))

    def create_user(
        self,
        wallet_address: Optional[str] = None,
        telegram_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> UserRecord:
        try:
            with self.db.get_session() as session:
                m = UserModel(
                    id=new_id(),
                    linked_wallet_address=wallet_address,
                    telegram_id=str(telegram_id) if telegram_id is not None else None,
                    username=username,
                    created_at=datetime.now(timezone.utc),
                )
                session.add(m)
                session.flush()
                return _user_from_model(m)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to create user", str(e))

    # ---- positions ----

    def get_positions_by_wallet(self, wallet_address: str, include_inactive: bool = True) -> List[PositionRecord]:
        """Positions owned by ``wallet_address``, newest first."""
        try:
            with self.db.get_session() as session:
                query = session.query(PositionModel).filter(PositionModel.wallet_address == wallet_address)
                if not include_inactive:
                    query = query.filter(PositionModel.is_active.is_(True))
                models = query.order_by(PositionModel.created_at.desc()).all()
                return [_position_from_model(m) for m in models]
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load positions", str(e))

    def get_position(self, position_id: str) -> Optional[PositionRecord]:
        try:
            with self.db.get_session() as session:
                m = session.query(PositionModel).filter(PositionModel.position_id == position_id).first()
                return _position_from_model(m) if m else None
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load position", str(e))

    def save_position(self, record: PositionRecord, user_id: Optional[str] = None) -> None:
        """Insert or update a position. Closed positions are never reopened."""
        try:
            with self.db.get_session() as session:
                m = session.query(PositionModel).filter(PositionModel.position_id == record.position_id).first()
                if m is None:
                    m = PositionModel(position_id=record.position_id, user_id=user_id)
                    session.add(m)
                elif not m.is_active and record.is_active:
                    logger.warning("CLOSED_POSITION_REOPEN_IGNORED", position=record.position_id)
                    return

                m.wallet_address = record.wallet_address
                m.pool_address = record.pool_address
                m.is_active = record.is_active
                m.entry_bin = record.entry_bin
                m.exit_bin = record.exit_bin
                m.entry_amount_x = record.entry_amount_x
                m.entry_amount_y = record.entry_amount_y
                m.exit_amount_x = record.exit_amount_x
                m.exit_amount_y = record.exit_amount_y
                m.fees_claimed_x = record.fees_claimed_x
                m.fees_claimed_y = record.fees_claimed_y
                m.deposit_value_usd = record.deposit_value_usd
                m.withdraw_value_usd = record.withdraw_value_usd
                m.gas_cost_usd = record.gas_cost_usd
                m.realized_pnl_usd = record.realized_pnl_usd
                m.realized_pnl_percent = record.realized_pnl_percent
                m.created_at = record.created_at or m.created_at or datetime.now(timezone.utc)
                m.closed_at = record.closed_at
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to save position", str(e))

    # ---- reposition settings ----

    def get_settings(self, user_id: str) -> Optional[RepositionSettings]:
        try:
            with self.db.get_session() as session:
                m = session.query(RepositionSettingsModel).filter(RepositionSettingsModel.user_id == user_id).first()
                return _settings_from_model(m) if m else None
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load reposition settings", str(e))

    def save_settings(self, settings: RepositionSettings) -> RepositionSettings:
        """Insert or update settings and return them as stored."""
        now = datetime.now(timezone.utc)
        try:
            with self.db.get_session() as session:
                m = session.query(RepositionSettingsModel).filter(
                    RepositionSettingsModel.user_id == settings.user_id
                ).with_for_update().first()
                if m is None:
                    m = RepositionSettingsModel(user_id=settings.user_id, created_at=now)
                    session.add(m)
                m.auto_reposition_enabled = settings.auto_reposition_enabled
                m.urgency_threshold = settings.urgency_threshold.value
                m.max_gas_cost_sol = settings.max_gas_cost_sol
                m.min_fees_to_collect_usd = settings.min_fees_to_collect_usd
                m.allowed_strategies = json.dumps([s.value for s in settings.allowed_strategies])
                m.telegram_notifications = settings.telegram_notifications
                m.website_notifications = settings.website_notifications
                m.updated_from = settings.updated_from.value if settings.updated_from else None
                m.updated_at = now
                session.flush()
                return _settings_from_model(m)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to save reposition settings", str(e))

    # ---- pending proposals ----

    def save_pending_proposal(self, proposal: PendingProposal) -> None:
        try:
            with self.db.get_session() as session:
                session.merge(PendingTransactionModel(
                    tx_hash=proposal.tx_hash,
                    wallet_address=proposal.wallet_address,
                    position_address=proposal.position_id,
                    expires_at=proposal.expires_at,
                    created_at=proposal.created_at or datetime.now(timezone.utc),
                ))
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to record pending transaction", str(e))

    def get_pending_proposal(self, tx_hash: str) -> Optional[PendingProposal]:
        try:
            with self.db.get_session() as session:
                m = session.query(PendingTransactionModel).filter(PendingTransactionModel.tx_hash == tx_hash).first()
                if m is None:
                    return None
                return PendingProposal(
                    tx_hash=m.tx_hash,
                    wallet_address=m.wallet_address,
                    position_id=m.position_address,
                    expires_at=as_utc(m.expires_at),
                    created_at=as_utc(m.created_at),
                )
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load pending transaction", str(e))

    def count_proposals_since(self, wallet_address: str, since: datetime) -> int:
        """Proposals prepared for ``wallet_address`` at or after ``since``."""
        try:
            with self.db.get_session() as session:
                return session.query(func.count(PendingTransactionModel.tx_hash)).filter(
                    PendingTransactionModel.wallet_address == wallet_address,
                    PendingTransactionModel.created_at >= since,
                ).scalar() or 0
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to count pending transactions", str(e))

    def delete_expired_proposals(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        try:
            with self.db.get_session() as session:
                return session.query(PendingTransactionModel).filter(
                    PendingTransactionModel.expires_at < now
                ).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to delete expired transactions", str(e))

    def stats(self) -> Dict[str, int]:
        """Row counts for the CLI status view."""
        try:
            with self.db.get_session() as session:
                return {
                    "users": session.query(func.count(UserModel.id)).scalar() or 0,
                    "positions": session.query(func.count(PositionModel.position_id)).scalar() or 0,
                    "pending_transactions": session.query(func.count(PendingTransactionModel.tx_hash)).scalar() or 0,
                }
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to read table stats", str(e))
