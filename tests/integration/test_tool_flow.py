"""
Integration tests: tool calls end to end through the gate, engine and storage.

Everything below ``ToolService`` is real; only the ledger, pool service and
price API are in-memory fakes.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import OTHER_WALLET, P1, P2, P3, P_NEW, POOL, WALLET, pool_record, position_record
from repositioner.domain.models import PositionRecord

pytestmark = pytest.mark.integration


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _prepare_args(**overrides):
    args = {"positionAddress": P1, "walletAddress": WALLET, "timestamp": _now_ms()}
    args.update(overrides)
    return args


@pytest.mark.asyncio
async def test_positions_with_sync(services, fake_pool):
    services.repository.save_position(PositionRecord(
        position_id=P1, pool_address=POOL, wallet_address=WALLET, is_active=True,
        entry_bin=100, entry_amount_x=Decimal("1"), entry_amount_y=Decimal("2"),
        deposit_value_usd=Decimal("60000"),
    ))
    services.repository.save_position(PositionRecord(
        position_id=P2, pool_address=POOL, wallet_address=WALLET, is_active=False,
        entry_bin=95, realized_pnl_usd=Decimal("5"),
    ))
    fake_pool.positions[P1] = position_record(P1)
    fake_pool.positions[P3] = position_record(P3)

    result = await services.tools.call("get_user_positions_with_sync", {"walletAddress": WALLET})

    assert "error" not in result
    assert result["summary"]["total"] == 3
    assert result["summary"]["merged"] == 1
    by_id = {p["positionId"]: p for p in result["positions"]}
    assert by_id[P1]["source"] == "both"
    assert by_id[P1]["health"]["status"] == "healthy"
    assert by_id[P1]["binRange"] == {"min": 90, "max": 110}
    assert by_id[P2]["status"] == "closed"
    assert by_id[P3]["source"] == "blockchain"


@pytest.mark.asyncio
async def test_malformed_wallet_is_validation_error(services, fake_pool):
    result = await services.tools.call("get_user_positions_with_sync", {"walletAddress": "0xdeadbeef"})

    assert result["error"] == "VALIDATION_ERROR"
    assert fake_pool.calls == []


@pytest.mark.asyncio
async def test_unknown_tool(services):
    result = await services.tools.call("drop_tables", {})
    assert result["error"] == "VALIDATION_ERROR"
    assert result["message"] == "Unknown tool"


@pytest.mark.asyncio
async def test_analyze_reposition(services, fake_pool):
    fake_pool.positions[P1] = position_record(P1)
    fake_pool.pools[POOL] = pool_record(active_bin=160)

    result = await services.tools.call("analyze_reposition", {"positionAddress": P1})

    assert result["shouldReposition"] is True
    assert result["urgency"] == "high"
    assert result["recommendedStrategy"] == "one-sided-y"
    assert result["recommendedBinRange"] == {"min": 150, "max": 170}


@pytest.mark.asyncio
async def test_analyze_absent_position_is_not_found(services):
    result = await services.tools.call("analyze_reposition", {"positionAddress": P1})
    assert result["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_prepare_denied_without_subscription_or_credits(services, fake_pool):
    fake_pool.positions[P1] = position_record(P1)

    result = await services.tools.call("prepare_reposition", _prepare_args())

    assert result["error"] == "ACCESS_DENIED"
    assert "subscription" in result["message"].lower()
    assert "credit" in result["message"].lower()
    assert fake_pool.calls == []


@pytest.mark.asyncio
async def test_prepare_with_subscription(services, fake_pool):
    fake_pool.positions[P1] = position_record(P1)
    services.subscriptions.create_subscription(WALLET, "sub-pay-1")

    result = await services.tools.call("prepare_reposition", _prepare_args(slippage=200, binRange=8))

    assert "error" not in result
    assert result["transaction"]
    metadata = result["metadata"]
    assert metadata["oldPosition"] == P1
    assert metadata["newBinRange"] == {"min": 92, "max": 108}
    assert metadata["strategy"] == "balanced"
    assert metadata["slippageProtection"]["maxPrice"] == pytest.approx(0.51)


@pytest.mark.asyncio
async def test_prepare_rejects_invalid_strategy(services, fake_pool):
    fake_pool.positions[P1] = position_record(P1)
    services.subscriptions.create_subscription(WALLET)

    result = await services.tools.call("prepare_reposition", _prepare_args(strategy="spot"))

    assert result["error"] == "VALIDATION_ERROR"
    assert result["message"] == "Invalid strategy"


@pytest.mark.asyncio
async def test_settings_round_trip(services):
    services.repository.create_user(wallet_address=WALLET)

    initial = await services.tools.call("get_reposition_settings", {"walletAddress": WALLET})
    updated = await services.tools.call("update_reposition_settings", {
        "walletAddress": WALLET,
        "settings": {"autoRepositionEnabled": True, "maxGasCostSol": 0.05},
        "updatedFrom": "telegram",
    })

    assert initial["autoRepositionEnabled"] is False
    assert updated["autoRepositionEnabled"] is True
    assert updated["maxGasCostSol"] == pytest.approx(0.05)
    assert updated["updatedFrom"] == "telegram"


@pytest.mark.asyncio
async def test_settings_for_unlinked_wallet(services):
    result = await services.tools.call("get_reposition_settings", {"walletAddress": OTHER_WALLET})
    assert result["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_credit_purchase_use_and_balance(services):
    purchase = await services.tools.call("purchase_credits", {
        "walletAddress": WALLET,
        "creditsAmount": 5,
        "paymentTxSignature": "pay-5",
    })
    assert purchase["balance"] == 5.0
    assert purchase["usdcAmountPaid"] == pytest.approx(0.05)

    used = await services.tools.call("use_credits", {"walletAddress": WALLET, "amount": 5, "positionAddress": P1})
    assert used == {"balance": 0.0, "totalPurchased": 5.0, "totalUsed": 5.0}

    over = await services.tools.call("use_credits", {"walletAddress": WALLET, "amount": 1})
    assert over["error"] == "VALIDATION_ERROR"
    assert over["message"] == "Insufficient credits"

    negative = await services.tools.call("use_credits", {"walletAddress": WALLET, "amount": -1})
    assert negative["error"] == "VALIDATION_ERROR"

    balance = await services.tools.call("get_credit_balance", {"walletAddress": WALLET})
    assert balance["balance"] == 0.0
    assert balance["totalUsed"] == 5.0


@pytest.mark.asyncio
async def test_purchase_requires_payment_signature(services):
    result = await services.tools.call("purchase_credits", {"walletAddress": WALLET, "creditsAmount": 5})
    assert result["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_check_subscription(services):
    before = await services.tools.call("check_subscription", {"walletAddress": WALLET})
    assert before["canReposition"] is False

    services.credits.purchase_credits(WALLET, Decimal("1"), None, "pay-1")
    after = await services.tools.call("check_subscription", {"walletAddress": WALLET})
    assert after["canReposition"] is True
    assert after["subscription"]["isActive"] is False


@pytest.mark.asyncio
async def test_credits_unlock_prepare_and_execution_charges_them(services, fake_pool):
    """Credits stand in for a subscription; a successful execution debits one."""
    fake_pool.positions[P1] = position_record(P1)
    fake_pool.pools[POOL] = pool_record(active_bin=160)
    services.credits.purchase_credits(WALLET, Decimal("2"), Decimal("0.02"), "pay-2")

    proposal = await services.tools.call("prepare_reposition", _prepare_args())
    assert "error" not in proposal
    assert proposal["metadata"]["strategy"] == "one-sided-y"

    executed = await services.tools.call("record_execution", {
        "walletAddress": WALLET,
        "positionAddress": P1,
        "success": True,
        "transactionSignature": "exec-sig-1",
        "gasCostSol": 0.000005,
        "newPositionAddress": P_NEW,
        "poolAddress": POOL,
        "oldBinRange": {"min": 90, "max": 110},
        "newBinRange": proposal["metadata"]["newBinRange"],
        "activeBin": 160,
        "distanceFromRange": 50,
        "strategy": "one-sided-y",
        "feesCollectedX": 0.01,
    })

    assert executed["creditsCharged"] == 1.0
    assert executed["creditBalance"] == 1.0
    assert executed["execution"]["executionMode"] == "manual"
    assert executed["reposition"]["newBinRange"] == "150-170"

    chain = await services.tools.call("get_position_chain", {"positionAddress": P_NEW})
    assert chain["currentPosition"] == P_NEW
    assert chain["totalRepositions"] == 1

    stats = await services.tools.call("get_wallet_reposition_stats", {"walletAddress": WALLET})
    assert stats["totalRepositions"] == 1


@pytest.mark.asyncio
async def test_execution_with_subscription_is_not_charged(services):
    services.subscriptions.create_subscription(WALLET)
    services.credits.purchase_credits(WALLET, Decimal("2"), None, "pay-2")

    executed = await services.tools.call("record_execution", {
        "walletAddress": WALLET,
        "positionAddress": P1,
        "success": True,
        "executionMode": "auto",
    })

    assert executed["creditsCharged"] == 0.0
    assert services.credits.get_balance(WALLET).balance == 2


@pytest.mark.asyncio
async def test_failed_execution_is_recorded_but_not_charged(services):
    services.credits.purchase_credits(WALLET, Decimal("2"), None, "pay-2")

    executed = await services.tools.call("record_execution", {
        "walletAddress": WALLET,
        "positionAddress": P1,
        "success": False,
        "error": "Blockhash not found",
    })

    assert executed["creditsCharged"] == 0.0
    assert executed["execution"]["success"] is False
    assert services.credits.get_balance(WALLET).balance == 2


@pytest.mark.asyncio
async def test_execution_credit_shortfall_is_reported(services):
    executed = await services.tools.call("record_execution", {
        "walletAddress": WALLET,
        "positionAddress": P1,
        "success": True,
    })

    assert executed["creditsCharged"] == 0.0
    assert executed["creditError"] == "Insufficient credits"


@pytest.mark.asyncio
async def test_chain_for_unknown_position(services):
    result = await services.tools.call("get_position_chain", {"positionAddress": P1})
    assert result["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_unexpected_error_is_reported_generically(services, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("connection string postgresql://user:pw@db")

    monkeypatch.setattr(services.history, "get_wallet_reposition_stats", explode)

    result = await services.tools.call("get_wallet_reposition_stats", {"walletAddress": WALLET})

    assert result["error"] == "INTERNAL_ERROR"
    assert "postgresql" not in result["message"]


@pytest.mark.asyncio
async def test_rejected_execution_writes_nothing(services):
    services.credits.purchase_credits(WALLET, Decimal("5"), None, "pay-5")
    report = {
        "walletAddress": WALLET,
        "positionAddress": P1,
        "success": True,
        "transactionSignature": "exec-sig-2",
        "newPositionAddress": P_NEW,
    }

    rejected = await services.tools.call("record_execution", report)

    assert rejected["error"] == "VALIDATION_ERROR"
    assert services.history.list_executions(WALLET) == []
    assert services.history.get_position_chain(P_NEW) is None
    assert services.credits.get_balance(WALLET).balance == 5

    # Corrected resubmission is recorded exactly once
    accepted = await services.tools.call("record_execution", {**report, "poolAddress": POOL})

    assert accepted["creditsCharged"] == 1.0
    assert len(services.history.list_executions(WALLET)) == 1
    assert services.credits.get_balance(WALLET).balance == 4


@pytest.mark.asyncio
async def test_positions_with_sync_reports_entry_drift(services, fake_pool):
    services.repository.save_position(PositionRecord(
        position_id=P1, pool_address=POOL, wallet_address=WALLET, is_active=True, entry_bin=95,
    ))
    services.repository.save_position(PositionRecord(
        position_id=P2, pool_address=POOL, wallet_address=WALLET, is_active=False, entry_bin=85, exit_bin=80,
    ))
    fake_pool.positions[P1] = position_record(P1)

    result = await services.tools.call("get_user_positions_with_sync", {"walletAddress": WALLET})

    assert len(result["positions"]) == 2
    by_id = {p["positionId"]: p for p in result["positions"]}
    assert by_id[P1]["health"] == {"isInRange": True, "status": "healthy", "distanceFromActiveBin": 5}
    assert by_id[P2]["status"] == "closed"
    assert by_id[P2]["exitBin"] == 80
    assert "health" not in by_id[P2]
