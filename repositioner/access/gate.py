"""
Subscription / credit gate in front of premium tools.

Tools are statically partitioned into free and premium sets. A premium call
needs a wallet address supplied directly in the arguments; that wallet must
hold an active subscription, or enough credits when credits are accepted.

Lookup failures fail open when ``AccessConfig.fail_open_on_error`` is set:
the gate sits in front of read-mostly tools and an infrastructure fault
should not lock every user out.
"""
import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from repositioner.access.subscriptions import SubscriptionService
from repositioner.config.config import AccessConfig
from repositioner.domain.models import AccessDecision, SubscriptionStatus
from repositioner.exceptions import AccessDeniedError, OperationalError
from repositioner.monitoring.logger import get_logger
from repositioner.storage.credits import CreditLedger

logger = get_logger(__name__)

T = TypeVar("T")

PREMIUM_TOOLS = frozenset({
    "prepare_reposition",
})

FREE_TOOLS = frozenset({
    "get_user_positions_with_sync",
    "analyze_reposition",
    "get_position_chain",
    "get_wallet_reposition_stats",
    "get_reposition_settings",
    "update_reposition_settings",
    "check_subscription",
    "get_credit_balance",
    "purchase_credits",
    "use_credits",
    "record_execution",
})

WALLET_REQUIRED_REASON = (
    "Wallet address required for premium tools. Please provide the walletAddress parameter "
    "(lookup by Telegram account or position address is not supported)."
)


class AccessGate:
    """Authorizes tool calls against subscription status and credit balance."""

    def __init__(
        self,
        subscriptions: SubscriptionService,
        credits: CreditLedger,
        config: Optional[AccessConfig] = None,
        free_tools: frozenset = FREE_TOOLS,
        premium_tools: frozenset = PREMIUM_TOOLS,
    ):
        self.subscriptions = subscriptions
        self.credits = credits
        self.config = config or AccessConfig()
        self.free_tools = free_tools
        self.premium_tools = premium_tools

    def is_premium(self, operation_name: str) -> bool:
        return operation_name in self.premium_tools

    async def check_access(self, operation_name: str, args: Mapping[str, Any]) -> AccessDecision:
        if operation_name in self.free_tools:
            return AccessDecision(allowed=True, reason="Tool is free to use")

        if operation_name not in self.premium_tools:
            if self.config.deny_uncategorized:
                logger.warning("ACCESS_UNCATEGORIZED_TOOL_DENIED", tool=operation_name)
                return AccessDecision(
                    allowed=False,
                    reason=f"Tool '{operation_name}' is not available. Contact support if you believe this is an error.",
                )
            logger.warning("ACCESS_UNCATEGORIZED_TOOL", tool=operation_name)
            return AccessDecision(allowed=True, reason="Tool not categorized, allowing access")

        wallet_address = args.get("walletAddress")
        if not isinstance(wallet_address, str) or not wallet_address:
            if args.get("telegramUserId") or args.get("positionAddress"):
                logger.warning(
                    "ACCESS_WALLET_NOT_RESOLVED",
                    tool=operation_name,
                    has_telegram_id=bool(args.get("telegramUserId")),
                    has_position=bool(args.get("positionAddress")),
                )
            return AccessDecision(allowed=False, reason=WALLET_REQUIRED_REASON)

        try:
            return await self._check_wallet(operation_name, wallet_address)
        except (OperationalError, SQLAlchemyError, OSError) as e:
            if self.config.fail_open_on_error:
                logger.error("ACCESS_CHECK_FAILED_OPEN", tool=operation_name, wallet=wallet_address, error=str(e))
                return AccessDecision(allowed=True, reason="Subscription check failed, allowing access")
            logger.error("ACCESS_CHECK_FAILED_CLOSED", tool=operation_name, wallet=wallet_address, error=str(e))
            return AccessDecision(
                allowed=False,
                reason="Subscription check is temporarily unavailable. Please try again shortly.",
            )

    async def _check_wallet(self, operation_name: str, wallet_address: str) -> AccessDecision:
        status: SubscriptionStatus = await asyncio.to_thread(self.subscriptions.get_status, wallet_address)
        if status.is_active:
            return AccessDecision(allowed=True, subscription_status=status)

        balance: Optional[Decimal] = None
        if self.config.accept_credits:
            balance = (await asyncio.to_thread(self.credits.get_balance, wallet_address)).balance
            if balance >= self.config.credits_per_reposition:
                logger.info("ACCESS_GRANTED_WITH_CREDITS", tool=operation_name, wallet=wallet_address, balance=str(balance))
                return AccessDecision(
                    allowed=True,
                    subscription_status=status,
                    credit_balance=balance,
                    pay_with_credits=True,
                )

        if balance is not None:
            reason = (
                f"Premium feature requires an active subscription or credits. "
                f"Current subscription status: {status.status}. Credit balance: {balance}. "
                f"Purchase credits or subscribe at {self.config.upgrade_url}"
            )
        else:
            reason = (
                f"Premium feature requires an active subscription. "
                f"Current subscription status: {status.status}. Subscribe at {self.config.upgrade_url}"
            )
        logger.info("ACCESS_DENIED", tool=operation_name, wallet=wallet_address, subscription_status=status.status)
        return AccessDecision(allowed=False, reason=reason, subscription_status=status, credit_balance=balance)

    async def with_access_check(
        self,
        operation_name: str,
        args: Mapping[str, Any],
        handler: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``handler`` if the call is allowed.

        Raises:
            AccessDeniedError: with the human-actionable reason
        """
        decision = await self.check_access(operation_name, args)
        if not decision.allowed:
            status: Optional[Dict[str, Any]] = None
            if decision.subscription_status is not None:
                status = decision.subscription_status.to_dict()
            raise AccessDeniedError(decision.reason or "Access denied", subscription_status=status)
        return await handler()
