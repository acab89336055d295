"""
Unit tests for reposition analysis, auto-reposition policy and proposal building.
"""
import base64
import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from conftest import OTHER_POOL, OTHER_WALLET, P1, POOL, WALLET, pool_record, position_record
from repositioner.domain.models import (
    BinRange,
    PendingProposal,
    RepositionRequest,
    RepositionSettings,
    RepositionStrategy,
    Urgency,
)
from repositioner.exceptions import NotFoundError, RpcError, ValidationError
from repositioner.reposition.decision_engine import (
    classify_urgency,
    parse_request_timestamp,
    recommend_strategy,
)


def _now():
    return datetime.now(timezone.utc)


def _request(**overrides) -> RepositionRequest:
    fields = dict(position_id=P1, wallet_address=WALLET, timestamp=_now())
    fields.update(overrides)
    return RepositionRequest(**fields)


@pytest.fixture
def live_position(fake_pool):
    fake_pool.positions[P1] = position_record(P1)
    return fake_pool


# ---- pure helpers ----

@pytest.mark.parametrize("distance, urgency", [
    (0, Urgency.LOW),
    (1, Urgency.LOW),
    (10, Urgency.LOW),
    (11, Urgency.MEDIUM),
    (20, Urgency.MEDIUM),
    (21, Urgency.HIGH),
    (50, Urgency.HIGH),
])
def test_urgency_bands(distance, urgency):
    assert classify_urgency(distance, 10) == urgency


def test_strategy_follows_side_of_range():
    position_range = BinRange(90, 110)
    assert recommend_strategy(80, position_range) == RepositionStrategy.ONE_SIDED_X
    assert recommend_strategy(120, position_range) == RepositionStrategy.ONE_SIDED_Y
    assert recommend_strategy(100, position_range) == RepositionStrategy.BALANCED


def test_timestamp_forms():
    expected = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    seconds = int(expected.timestamp())
    assert parse_request_timestamp(seconds) == expected
    assert parse_request_timestamp(seconds * 1000) == expected
    assert parse_request_timestamp("2026-03-01T12:00:00Z") == expected
    assert parse_request_timestamp(datetime(2026, 3, 1, 12, 0)) == expected
    with pytest.raises(ValidationError):
        parse_request_timestamp("yesterday")
    with pytest.raises(ValidationError):
        parse_request_timestamp(True)


# ---- analysis ----

@pytest.mark.asyncio
async def test_in_range_position_needs_no_reposition(services, live_position):
    rec = await services.engine.analyze_position(P1)

    assert rec.should_reposition is False
    assert rec.distance_from_range == 0
    assert rec.urgency == Urgency.LOW
    assert rec.recommended_strategy == RepositionStrategy.BALANCED
    assert rec.position_range == BinRange(90, 110)


@pytest.mark.asyncio
async def test_far_out_of_range_is_high_urgency(services, live_position):
    live_position.pools[POOL] = pool_record(active_bin=160)

    rec = await services.engine.analyze_position(P1, POOL)

    assert rec.should_reposition is True
    assert rec.distance_from_range == 50
    assert rec.urgency == Urgency.HIGH
    assert rec.recommended_strategy == RepositionStrategy.ONE_SIDED_Y
    assert rec.recommended_bin_range == BinRange(150, 170)
    assert "above" in rec.reason


@pytest.mark.asyncio
async def test_moderately_below_range_is_medium(services, live_position):
    live_position.pools[POOL] = pool_record(active_bin=75)

    rec = await services.engine.analyze_position(P1)

    assert rec.distance_from_range == 15
    assert rec.urgency == Urgency.MEDIUM
    assert rec.recommended_strategy == RepositionStrategy.ONE_SIDED_X


@pytest.mark.asyncio
async def test_absent_position_is_not_found(services):
    with pytest.raises(NotFoundError):
        await services.engine.analyze_position(P1)


@pytest.mark.asyncio
async def test_pool_mismatch_is_rejected(services, live_position):
    with pytest.raises(ValidationError):
        await services.engine.analyze_position(P1, OTHER_POOL)


@pytest.mark.asyncio
async def test_gas_estimate_uses_median_priority_fee(services):
    # 5000 lamports base + 2000 micro-lamports/CU * 200k CU = 5400 lamports
    assert await services.engine.estimate_gas_cost(POOL) == Decimal("0.0000054")


@pytest.mark.asyncio
async def test_gas_estimate_falls_back_on_ledger_error(services, fake_ledger):
    fake_ledger.fee_error = RpcError("getRecentPrioritizationFees failed")
    assert await services.engine.estimate_gas_cost(POOL) == Decimal("0.01")


# ---- auto-reposition policy ----

@pytest.mark.asyncio
async def test_auto_reposition_allowed_when_every_rule_passes(services, live_position):
    live_position.pools[POOL] = pool_record(active_bin=160)
    rec = await services.engine.analyze_position(P1)
    settings = RepositionSettings(user_id="u1", auto_reposition_enabled=True)

    should_act, reasons = services.engine.evaluate_auto_reposition(rec, settings, Decimal("10"))

    assert should_act is True
    assert reasons == []


@pytest.mark.asyncio
async def test_auto_reposition_lists_every_blocking_rule(services, live_position):
    rec = await services.engine.analyze_position(P1)
    settings = RepositionSettings(
        user_id="u1",
        auto_reposition_enabled=False,
        urgency_threshold=Urgency.HIGH,
        allowed_strategies=[RepositionStrategy.ONE_SIDED_X],
    )

    should_act, reasons = services.engine.evaluate_auto_reposition(rec, settings, Decimal("1"))

    assert should_act is False
    assert len(reasons) == 5


# ---- proposals ----

@pytest.mark.asyncio
async def test_prepare_builds_unsigned_transaction(services, live_position):
    proposal = await services.engine.prepare_reposition(_request())

    tx = Transaction.from_bytes(base64.b64decode(proposal.transaction))
    assert tx.message.account_keys[0] == Pubkey.from_string(WALLET)
    # compute-unit limit + remove + add
    assert len(tx.message.instructions) == 3
    assert hashlib.sha256(bytes(tx.message)).hexdigest() == proposal.tx_hash

    assert proposal.new_bin_range == BinRange(90, 110)
    assert proposal.strategy == RepositionStrategy.BALANCED
    assert proposal.slippage_protection.max_price == Decimal("0.505")
    assert proposal.slippage_protection.min_price == Decimal("0.495")
    assert proposal.estimated_liquidity_recovered.token_x == Decimal("1")
    assert (proposal.expires_at - _now()) <= timedelta(seconds=60)

    # Position amounts plus unclaimed fees, in base units
    assert live_position.last_add["amount_x"] == 101_000_000
    assert live_position.last_add["amount_y"] == 2_010_000_000
    assert live_position.last_add["slippage_bps"] == 100

    pending = services.repository.get_pending_proposal(proposal.tx_hash)
    assert pending.wallet_address == WALLET
    assert pending.position_id == P1


@pytest.mark.asyncio
async def test_prepare_honours_requested_strategy_and_width(services, live_position):
    proposal = await services.engine.prepare_reposition(
        _request(strategy=RepositionStrategy.ONE_SIDED_X, bin_range=5, slippage_bps=250)
    )

    assert proposal.new_bin_range == BinRange(95, 105)
    assert proposal.strategy == RepositionStrategy.ONE_SIDED_X
    assert live_position.last_add["strategy"] == "one-sided-x"
    assert live_position.last_add["slippage_bps"] == 250


@pytest.mark.asyncio
@pytest.mark.parametrize("slippage", [0, -5, 5001, True])
async def test_prepare_rejects_out_of_bounds_slippage(services, live_position, slippage):
    with pytest.raises(ValidationError) as exc_info:
        await services.engine.prepare_reposition(_request(slippage_bps=slippage))
    assert exc_info.value.message == "Invalid slippage"
    assert live_position.calls == []


@pytest.mark.asyncio
async def test_prepare_rejects_stale_timestamp(services, live_position):
    with pytest.raises(ValidationError) as exc_info:
        await services.engine.prepare_reposition(_request(timestamp=_now() - timedelta(minutes=10)))
    assert "expired" in exc_info.value.message


@pytest.mark.asyncio
async def test_prepare_requires_timestamp(services, live_position):
    with pytest.raises(ValidationError):
        await services.engine.prepare_reposition(_request(timestamp=None))


@pytest.mark.asyncio
async def test_prepare_rejects_wallet_that_does_not_own_position(services, live_position):
    with pytest.raises(ValidationError) as exc_info:
        await services.engine.prepare_reposition(_request(wallet_address=OTHER_WALLET))
    assert "not owned" in exc_info.value.message
    assert "build_remove_liquidity" not in live_position.calls


@pytest.mark.asyncio
async def test_prepare_rate_limited_per_wallet(services, live_position):
    now = _now()
    for i in range(services.config.reposition.rate_limit_per_minute):
        services.repository.save_pending_proposal(PendingProposal(
            tx_hash=f"seed-{i}",
            wallet_address=WALLET,
            position_id=P1,
            expires_at=now + timedelta(seconds=60),
            created_at=now,
        ))

    with pytest.raises(ValidationError) as exc_info:
        await services.engine.prepare_reposition(_request())
    assert exc_info.value.message == "Rate limit exceeded"


@pytest.mark.asyncio
async def test_prepare_respects_gas_cap(services, live_position):
    with pytest.raises(ValidationError) as exc_info:
        await services.engine.prepare_reposition(_request(max_gas_cost=Decimal("0.000001")))
    assert exc_info.value.message == "Estimated gas exceeds maximum"


@pytest.mark.asyncio
async def test_prepare_surfaces_pool_service_failure(services, live_position):
    import aiohttp

    async def broken(*args, **kwargs):
        raise aiohttp.ClientConnectionError("pool service down")

    live_position.build_remove_liquidity = broken

    with pytest.raises(RpcError):
        await services.engine.prepare_reposition(_request())


@pytest.mark.asyncio
async def test_prepare_without_prices_still_builds(services, live_position, fake_prices):
    fake_prices.pair = None

    proposal = await services.engine.prepare_reposition(_request())

    assert proposal.estimated_liquidity_recovered.total_usd == Decimal("0")
    assert proposal.transaction


@pytest.mark.asyncio
async def test_prepare_survives_unexpected_price_failure(services, live_position, monkeypatch):
    monkeypatch.setattr(services.engine.prices, "fetch_prices", AsyncMock(side_effect=ValueError("invalid JSON")))

    proposal = await services.engine.prepare_reposition(_request())

    assert proposal.estimated_liquidity_recovered.total_usd == Decimal("0")
    assert proposal.transaction
