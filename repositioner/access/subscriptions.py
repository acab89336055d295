"""
Subscription periods.

A subscription is active when its status is ``active`` and the current
period has not ended. Premium periods run for 30 days.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError

from repositioner.domain.models import SubscriptionStatus, SubscriptionTier
from repositioner.exceptions import DatabaseError, NotFoundError
from repositioner.monitoring.logger import get_logger
from repositioner.storage.db import Database
from repositioner.storage.repository import SubscriptionModel, as_utc, new_id

logger = get_logger(__name__)

SUBSCRIPTION_PERIOD = timedelta(days=30)

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"


class SubscriptionService:
    """Create, query, renew and expire subscription periods."""

    def __init__(self, db: Database, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _latest(self, session, wallet_address: str) -> Optional[SubscriptionModel]:
        """The active period if there is one, else the most recent period."""
        active_first = case((SubscriptionModel.status == STATUS_ACTIVE, 0), else_=1)
        return session.query(SubscriptionModel).filter(
            SubscriptionModel.wallet_address == wallet_address
        ).order_by(active_first, SubscriptionModel.current_period_end.desc()).first()

    def _status_from_model(self, m: Optional[SubscriptionModel]) -> SubscriptionStatus:
        if m is None:
            return SubscriptionStatus.inactive()
        now = self._clock()
        period_end = as_utc(m.current_period_end)
        is_active = m.status == STATUS_ACTIVE and period_end > now
        days_remaining = 0
        if is_active:
            days_remaining = math.ceil((period_end - now).total_seconds() / 86400)
        status = m.status
        if m.status == STATUS_ACTIVE and not is_active:
            status = STATUS_EXPIRED
        return SubscriptionStatus(
            tier=SubscriptionTier(m.tier) if is_active else SubscriptionTier.FREE,
            is_active=is_active,
            status=status,
            expires_at=period_end,
            days_remaining=days_remaining,
        )

    def get_status(self, wallet_address: str) -> SubscriptionStatus:
        try:
            with self.db.get_session() as session:
                return self._status_from_model(self._latest(session, wallet_address))
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to get subscription status", str(e))

    def is_active(self, wallet_address: str) -> bool:
        return self.get_status(wallet_address).is_active

    def create_subscription(
        self,
        wallet_address: str,
        payment_tx_signature: Optional[str] = None,
        tier: SubscriptionTier = SubscriptionTier.PREMIUM,
    ) -> SubscriptionStatus:
        """Start a 30-day period from now."""
        now = self._clock()
        try:
            with self.db.get_session() as session:
                m = SubscriptionModel(
                    id=new_id(),
                    wallet_address=wallet_address,
                    tier=tier.value,
                    status=STATUS_ACTIVE,
                    current_period_start=now,
                    current_period_end=now + SUBSCRIPTION_PERIOD,
                    payment_tx_signature=payment_tx_signature,
                    created_at=now,
                    updated_at=now,
                )
                session.add(m)
                session.flush()
                status = self._status_from_model(m)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to create subscription", str(e))

        logger.info(
            "SUBSCRIPTION_CREATED",
            wallet=wallet_address,
            tier=tier.value,
            expires_at=status.expires_at.isoformat() if status.expires_at else None,
        )
        return status

    def renew_subscription(self, wallet_address: str, payment_tx_signature: Optional[str] = None) -> SubscriptionStatus:
        """Extend by one period from the later of now and the current period end."""
        now = self._clock()
        try:
            with self.db.get_session() as session:
                m = self._latest(session, wallet_address)
                if m is None:
                    raise NotFoundError("Subscription not found", f"No subscription for wallet {wallet_address}")
                current_end = as_utc(m.current_period_end)
                if current_end <= now:
                    m.current_period_start = now
                m.current_period_end = max(now, current_end) + SUBSCRIPTION_PERIOD
                m.status = STATUS_ACTIVE
                m.cancelled_at = None
                if payment_tx_signature:
                    m.payment_tx_signature = payment_tx_signature
                m.updated_at = now
                session.flush()
                status = self._status_from_model(m)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to renew subscription", str(e))

        logger.info("SUBSCRIPTION_RENEWED", wallet=wallet_address, days_remaining=status.days_remaining)
        return status

    def cancel_subscription(self, wallet_address: str) -> SubscriptionStatus:
        now = self._clock()
        try:
            with self.db.get_session() as session:
                m = self._latest(session, wallet_address)
                if m is None:
                    raise NotFoundError("Subscription not found", f"No subscription for wallet {wallet_address}")
                m.status = STATUS_CANCELLED
                m.cancelled_at = now
                m.updated_at = now
                session.flush()
                status = self._status_from_model(m)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to cancel subscription", str(e))

        logger.info("SUBSCRIPTION_CANCELLED", wallet=wallet_address)
        return status

    def expire_old_subscriptions(self) -> int:
        """Mark every active-but-ended period as expired. Returns the count."""
        now = self._clock()
        try:
            with self.db.get_session() as session:
                count = session.query(SubscriptionModel).filter(
                    SubscriptionModel.status == STATUS_ACTIVE,
                    SubscriptionModel.current_period_end <= now,
                ).update(
                    {SubscriptionModel.status: STATUS_EXPIRED, SubscriptionModel.updated_at: now},
                    synchronize_session=False,
                )
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to expire subscriptions", str(e))

        if count:
            logger.info("SUBSCRIPTIONS_EXPIRED", count=count)
        return count
