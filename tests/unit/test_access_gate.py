"""
Unit tests for the subscription / credit gate in front of premium tools.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import P1, WALLET
from repositioner.access.gate import FREE_TOOLS, PREMIUM_TOOLS, WALLET_REQUIRED_REASON, AccessGate
from repositioner.access.subscriptions import SubscriptionService
from repositioner.config.config import AccessConfig
from repositioner.exceptions import AccessDeniedError, DatabaseError


def _expired_subscription(db, wallet=WALLET):
    """A premium period that ended ten days ago."""
    started = datetime.now(timezone.utc) - timedelta(days=40)
    SubscriptionService(db, clock=lambda: started).create_subscription(wallet, "sig-old")


def test_every_tool_is_categorized_once():
    assert PREMIUM_TOOLS.isdisjoint(FREE_TOOLS)
    assert "prepare_reposition" in PREMIUM_TOOLS


@pytest.mark.asyncio
async def test_free_tool_needs_nothing(services):
    decision = await services.gate.check_access("get_user_positions_with_sync", {})
    assert decision.allowed


@pytest.mark.asyncio
async def test_premium_tool_requires_wallet_argument(services):
    decision = await services.gate.check_access("prepare_reposition", {"positionAddress": P1})
    assert not decision.allowed
    assert decision.reason == WALLET_REQUIRED_REASON


@pytest.mark.asyncio
async def test_expired_subscription_without_credits_is_denied(services, db):
    _expired_subscription(db)

    decision = await services.gate.check_access("prepare_reposition", {"walletAddress": WALLET})

    assert not decision.allowed
    assert "subscription" in decision.reason.lower()
    assert "credit" in decision.reason.lower()
    assert decision.subscription_status.status == "expired"
    assert decision.credit_balance == Decimal("0")


@pytest.mark.asyncio
async def test_active_subscription_is_allowed(services):
    services.subscriptions.create_subscription(WALLET, "sig-1")

    decision = await services.gate.check_access("prepare_reposition", {"walletAddress": WALLET})

    assert decision.allowed
    assert decision.subscription_status.is_active
    assert not decision.pay_with_credits


@pytest.mark.asyncio
async def test_credits_stand_in_for_subscription(services):
    services.credits.purchase_credits(WALLET, Decimal("3"), Decimal("0.03"), "pay-1")

    decision = await services.gate.check_access("prepare_reposition", {"walletAddress": WALLET})

    assert decision.allowed
    assert decision.pay_with_credits
    assert decision.credit_balance == Decimal("3")


@pytest.mark.asyncio
async def test_credits_ignored_when_not_accepted(services):
    services.credits.purchase_credits(WALLET, Decimal("3"), Decimal("0.03"), "pay-1")
    gate = AccessGate(services.subscriptions, services.credits, AccessConfig(accept_credits=False))

    decision = await gate.check_access("prepare_reposition", {"walletAddress": WALLET})

    assert not decision.allowed
    assert decision.credit_balance is None


@pytest.mark.asyncio
async def test_lookup_failure_fails_open_by_default():
    subscriptions = MagicMock()
    subscriptions.get_status.side_effect = DatabaseError("Failed to get subscription status", "timeout")
    gate = AccessGate(subscriptions, MagicMock(), AccessConfig())

    decision = await gate.check_access("prepare_reposition", {"walletAddress": WALLET})

    assert decision.allowed


@pytest.mark.asyncio
async def test_lookup_failure_fails_closed_when_configured():
    subscriptions = MagicMock()
    subscriptions.get_status.side_effect = DatabaseError("Failed to get subscription status", "timeout")
    gate = AccessGate(subscriptions, MagicMock(), AccessConfig(fail_open_on_error=False))

    decision = await gate.check_access("prepare_reposition", {"walletAddress": WALLET})

    assert not decision.allowed
    assert "temporarily unavailable" in decision.reason


@pytest.mark.asyncio
async def test_uncategorized_tool_policy(services):
    allowed = await services.gate.check_access("brand_new_tool", {})
    assert allowed.allowed

    strict = AccessGate(services.subscriptions, services.credits, AccessConfig(deny_uncategorized=True))
    denied = await strict.check_access("brand_new_tool", {})
    assert not denied.allowed


@pytest.mark.asyncio
async def test_with_access_check_raises_and_skips_handler(services, db):
    _expired_subscription(db)
    handler = AsyncMock(return_value={"ok": True})

    with pytest.raises(AccessDeniedError) as exc_info:
        await services.gate.with_access_check("prepare_reposition", {"walletAddress": WALLET}, handler)

    handler.assert_not_awaited()
    assert exc_info.value.subscription_status["status"] == "expired"


@pytest.mark.asyncio
async def test_with_access_check_runs_allowed_handler(services):
    handler = AsyncMock(return_value={"ok": True})
    assert await services.gate.with_access_check("check_subscription", {}, handler) == {"ok": True}
    handler.assert_awaited_once()
