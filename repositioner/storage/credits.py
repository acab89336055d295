"""
Pay-per-use credit ledger.

1 credit = 1 reposition, priced at $0.01 USD; credits never expire.

Every mutation runs in one session: the balance row is locked
(``SELECT ... FOR UPDATE``), updated, and the immutable transaction row is
written before the single commit. A debit that would take the balance below
zero is rejected with no mutation.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from repositioner.domain.models import CreditBalance, CreditTransaction, CreditTransactionType
from repositioner.exceptions import DatabaseError, InsufficientCreditsError, ValidationError
from repositioner.monitoring.logger import get_logger
from repositioner.storage.db import Database
from repositioner.storage.repository import CreditTransactionModel, UserCreditsModel, as_utc, new_id

logger = get_logger(__name__)

CREDIT_PRICE_USD = Decimal("0.01")
CREDITS_PER_REPOSITION = Decimal("1")


def _balance_from_model(m: UserCreditsModel) -> CreditBalance:
    return CreditBalance(
        wallet_address=m.wallet_address,
        balance=Decimal(str(m.balance)),
        total_purchased=Decimal(str(m.total_purchased)),
        total_used=Decimal(str(m.total_used)),
        last_purchase_at=as_utc(m.last_purchase_at),
    )


def _require_positive(amount: Decimal, field_name: str = "amount") -> Decimal:
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid {field_name}", f"{field_name} must be greater than 0")
    return amount


class CreditLedger:
    """Per-wallet credit balances with an append-only usage log."""

    def __init__(self, db: Database):
        self.db = db

    def _locked_row(self, session: Session, wallet_address: str) -> UserCreditsModel:
        """Lock the wallet's balance row, creating a zero row on first touch."""
        m = session.query(UserCreditsModel).filter(
            UserCreditsModel.wallet_address == wallet_address
        ).with_for_update().first()
        if m is None:
            now = datetime.now(timezone.utc)
            m = UserCreditsModel(
                wallet_address=wallet_address,
                balance=Decimal("0"),
                total_purchased=Decimal("0"),
                total_used=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            session.add(m)
            session.flush()
        return m

    def get_balance(self, wallet_address: str) -> CreditBalance:
        """Current balance; a zero balance row is created if none exists."""
        try:
            with self.db.get_session() as session:
                return _balance_from_model(self._locked_row(session, wallet_address))
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to get credit balance", str(e))

    def has_credits(self, wallet_address: str, amount: Decimal) -> bool:
        return self.get_balance(wallet_address).balance >= Decimal(str(amount))

    def _credit(
        self,
        wallet_address: str,
        amount: Decimal,
        tx_type: CreditTransactionType,
        description: str,
        usdc_amount: Optional[Decimal] = None,
        payment_tx_signature: Optional[str] = None,
        payment_proof: Optional[str] = None,
    ) -> CreditBalance:
        amount = _require_positive(amount)
        now = datetime.now(timezone.utc)
        try:
            with self.db.get_session() as session:
                m = self._locked_row(session, wallet_address)
                before = Decimal(str(m.balance))
                after = before + amount
                m.balance = after
                m.total_purchased = Decimal(str(m.total_purchased)) + amount
                m.updated_at = now
                if tx_type == CreditTransactionType.PURCHASE:
                    m.last_purchase_at = now
                session.add(CreditTransactionModel(
                    id=new_id(),
                    wallet_address=wallet_address,
                    type=tx_type.value,
                    amount=amount,
                    balance_before=before,
                    balance_after=after,
                    description=description,
                    usdc_amount=usdc_amount,
                    payment_tx_signature=payment_tx_signature,
                    payment_proof=payment_proof,
                    created_at=now,
                ))
                session.flush()
                return _balance_from_model(m)
        except IntegrityError as e:
            # payment_tx_signature is unique: the same payment cannot be credited twice
            raise ValidationError("Payment already credited", str(e.orig) if e.orig else str(e))
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to record {tx_type.value} credits", str(e))

    def purchase_credits(
        self,
        wallet_address: str,
        credits_amount: Decimal,
        usdc_amount_paid: Optional[Decimal] = None,
        payment_tx_signature: Optional[str] = None,
        payment_proof: Optional[str] = None,
    ) -> CreditBalance:
        """Add purchased credits; balance and totalPurchased move together."""
        result = self._credit(
            wallet_address,
            credits_amount,
            CreditTransactionType.PURCHASE,
            f"Purchased {credits_amount} credits",
            usdc_amount=usdc_amount_paid,
            payment_tx_signature=payment_tx_signature,
            payment_proof=payment_proof,
        )
        logger.info(
            "CREDITS_PURCHASED",
            wallet=wallet_address,
            amount=str(credits_amount),
            new_balance=str(result.balance),
        )
        return result

    def give_bonus_credits(self, wallet_address: str, amount: Decimal, reason: str) -> CreditBalance:
        result = self._credit(wallet_address, amount, CreditTransactionType.BONUS, f"Bonus credits: {reason}")
        logger.info("CREDITS_BONUS", wallet=wallet_address, amount=str(amount), reason=reason)
        return result

    def debit(
        self,
        session: Session,
        wallet_address: str,
        amount: Decimal,
        related_resource_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditBalance:
        """
        Debit inside the caller's session; committed with the caller's other writes.

        Raises:
            InsufficientCreditsError: balance would go negative (nothing is changed)
        """
        now = datetime.now(timezone.utc)
        m = self._locked_row(session, wallet_address)
        before = Decimal(str(m.balance))
        if before < amount:
            raise InsufficientCreditsError(
                "Insufficient credits",
                f"Required: {amount}, Available: {before}. Purchase credits or subscribe to continue.",
            )
        after = before - amount
        m.balance = after
        m.total_used = Decimal(str(m.total_used)) + amount
        m.updated_at = now
        session.add(CreditTransactionModel(
            id=new_id(),
            wallet_address=wallet_address,
            type=CreditTransactionType.USAGE.value,
            amount=-amount,
            balance_before=before,
            balance_after=after,
            description=description or "Credit usage",
            related_resource_id=related_resource_id,
            created_at=now,
        ))
        session.flush()
        return _balance_from_model(m)

    def use_credits(
        self,
        wallet_address: str,
        amount: Decimal,
        position_address: Optional[str] = None,
        related_resource_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditBalance:
        """
        Debit credits.

        Raises:
            ValidationError: amount is not strictly positive
            InsufficientCreditsError: balance would go negative (nothing is written)
        """
        amount = _require_positive(amount)
        try:
            with self.db.get_session() as session:
                result = self.debit(
                    session,
                    wallet_address,
                    amount,
                    related_resource_id or position_address,
                    description,
                )
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to use credits", str(e))

        logger.info("CREDITS_USED", wallet=wallet_address, amount=str(amount), new_balance=str(result.balance))
        return result

    def get_transaction_history(self, wallet_address: str, limit: int = 50) -> List[CreditTransaction]:
        try:
            with self.db.get_session() as session:
                rows = session.query(CreditTransactionModel).filter(
                    CreditTransactionModel.wallet_address == wallet_address
                ).order_by(CreditTransactionModel.created_at.desc()).limit(limit).all()
                return [
                    CreditTransaction(
                        id=r.id,
                        wallet_address=r.wallet_address,
                        type=CreditTransactionType(r.type),
                        amount=Decimal(str(r.amount)),
                        balance_before=Decimal(str(r.balance_before)),
                        balance_after=Decimal(str(r.balance_after)),
                        description=r.description,
                        related_resource_id=r.related_resource_id,
                        usdc_amount=Decimal(str(r.usdc_amount)) if r.usdc_amount is not None else None,
                        payment_tx_signature=r.payment_tx_signature,
                        created_at=as_utc(r.created_at),
                    )
                    for r in rows
                ]
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to get credit history", str(e))

    @staticmethod
    def calculate_price(credits: Decimal) -> Decimal:
        """USD price of ``credits``."""
        return Decimal(str(credits)) * CREDIT_PRICE_USD

    def get_stats(self, wallet_address: str) -> Dict[str, Any]:
        balance = self.get_balance(wallet_address)
        return {
            "balance": float(balance.balance),
            "totalPurchased": float(balance.total_purchased),
            "totalUsed": float(balance.total_used),
            "totalSpent": float(self.calculate_price(balance.total_purchased)),
            "averageRepositionCost": float(CREDIT_PRICE_USD),
            "repositionsRemaining": int(balance.balance // CREDITS_PER_REPOSITION),
        }
