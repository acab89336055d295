"""
Reposition decisions: analysis, auto-reposition policy and proposal building.

``analyze_position`` is a pure read. ``prepare_reposition`` produces a
serialized, unsigned transaction with slippage bounds and an expiry; it never
signs or submits anything.

Urgency bands, by bins outside the position's range (T = tolerance):

    0            no reposition (low)
    1 .. T       low
    T+1 .. 2T    medium
    > 2T         high
"""
import asyncio
import statistics
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from repositioner.config.config import HealthConfig, RepositionConfig, TokenConfig
from repositioner.data.onchain_reader import OnChainPositionReader
from repositioner.data.solana_ledger import LAMPORTS_PER_SOL
from repositioner.domain.models import (
    BinRange,
    LiquidityRecovered,
    OnChainSnapshot,
    PendingProposal,
    PricePair,
    Recommendation,
    RepositionRequest,
    RepositionSettings,
    RepositionStrategy,
    SlippageProtection,
    UnsignedTransactionProposal,
    Urgency,
    utc_now,
)
from repositioner.domain.protocols import LedgerCapability, PoolCapability, PriceSource
from repositioner.exceptions import (
    DatabaseError,
    NotFoundError,
    OperationalError,
    RpcError,
    ValidationError,
    wrap_boundary,
)
from repositioner.monitoring.logger import get_logger
from repositioner.reposition.transaction_builder import TransactionBuilder
from repositioner.storage.repository import Repository
from repositioner.utils.validation import validate_address

logger = get_logger(__name__)

BPS = Decimal("10000")
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000
RATE_LIMIT_WINDOW = timedelta(minutes=1)
GAS_ESTIMATE_TIMEOUT_SECONDS = 10

POOL_SERVICE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def classify_urgency(distance_from_range: int, tolerance: int) -> Urgency:
    if distance_from_range <= tolerance:
        return Urgency.LOW
    if distance_from_range <= 2 * tolerance:
        return Urgency.MEDIUM
    return Urgency.HIGH


def recommend_strategy(active_bin: int, position_range: BinRange) -> RepositionStrategy:
    """Below the range the position holds only X, above it only Y."""
    if active_bin < position_range.min:
        return RepositionStrategy.ONE_SIDED_X
    if active_bin > position_range.max:
        return RepositionStrategy.ONE_SIDED_Y
    return RepositionStrategy.BALANCED


def slippage_protection(snapshot: OnChainSnapshot, slippage_bps: int) -> SlippageProtection:
    factor = Decimal(slippage_bps) / BPS
    return SlippageProtection(
        max_price=snapshot.price * (1 + factor),
        min_price=snapshot.price * (1 - factor),
        min_output_x=snapshot.amount_x * (1 - factor),
        min_output_y=snapshot.amount_y * (1 - factor),
    )


def parse_request_timestamp(value: Any) -> datetime:
    """Epoch milliseconds, epoch seconds, ISO-8601 string or datetime -> aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValidationError("Invalid timestamp", repr(value))
    if isinstance(value, (int, float)):
        # Milliseconds are the wallet-side default
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("Invalid timestamp", value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValidationError("Invalid timestamp", repr(value))


def _base_units(amount: Decimal, decimals: int) -> int:
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


class RepositionDecisionEngine:
    """Evaluates live positions and builds unsigned reposition proposals."""

    def __init__(
        self,
        reader: OnChainPositionReader,
        ledger: LedgerCapability,
        pool: PoolCapability,
        prices: PriceSource,
        repository: Repository,
        builder: TransactionBuilder,
        tokens: TokenConfig,
        config: Optional[RepositionConfig] = None,
        health_config: Optional[HealthConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.reader = reader
        self.ledger = ledger
        self.pool = pool
        self.prices = prices
        self.repository = repository
        self.builder = builder
        self.tokens = tokens
        self.config = config or RepositionConfig()
        self.health_config = health_config or HealthConfig()
        self._now = clock or utc_now

    # ---- analysis ----

    async def _live_position(self, position_id: str, pool_address: Optional[str]) -> OnChainSnapshot:
        validate_address(position_id, "positionAddress")
        if pool_address is not None:
            validate_address(pool_address, "poolAddress")

        snapshot = await self.reader.read_position(position_id)
        if snapshot is None:
            raise NotFoundError("Position not found or already closed", f"No live position at {position_id}")
        if pool_address is not None and snapshot.pool_address != pool_address:
            raise ValidationError(
                "Position does not belong to the given pool",
                f"position pool {snapshot.pool_address}, requested {pool_address}",
            )
        return snapshot

    async def analyze_position(self, position_id: str, pool_address: Optional[str] = None) -> Recommendation:
        """
        Recommendation for one live position. Reads only.

        Raises:
            ValidationError: malformed address, or pool mismatch
            NotFoundError: position absent on-chain
            RpcError: ledger read failure after retries
        """
        snapshot = await self._live_position(position_id, pool_address)
        return await self.recommend(snapshot)

    async def recommend(self, snapshot: OnChainSnapshot) -> Recommendation:
        position_range = BinRange(snapshot.lower_bin, snapshot.upper_bin)
        active_bin = snapshot.active_bin
        distance = position_range.distance_outside(active_bin)
        should_reposition = distance > 0
        urgency = classify_urgency(distance, self.health_config.default_range_tolerance_bins)
        strategy = recommend_strategy(active_bin, position_range)
        gas = await self.estimate_gas_cost(snapshot.pool_address)

        if should_reposition:
            side = "below" if active_bin < position_range.min else "above"
            reason = f"Active bin {active_bin} is {distance} bins {side} range {position_range.label()}"
        else:
            reason = f"Active bin {active_bin} is within range {position_range.label()}"

        recommendation = Recommendation(
            position_id=snapshot.position_id,
            pool_address=snapshot.pool_address,
            should_reposition=should_reposition,
            reason=reason,
            current_active_bin=active_bin,
            position_range=position_range,
            distance_from_range=distance,
            urgency=urgency,
            estimated_gas_cost=gas,
            recommended_strategy=strategy,
            recommended_bin_range=BinRange.centered(active_bin, self.config.default_bin_range),
        )
        logger.info(
            "POSITION_ANALYZED",
            position=snapshot.position_id,
            should_reposition=should_reposition,
            distance=distance,
            urgency=urgency.value,
            strategy=strategy.value,
        )
        return recommendation

    async def estimate_gas_cost(self, pool_address: Optional[str] = None) -> Decimal:
        """
        Network fee estimate in SOL.

        ``base fee + median recent priority fee * compute units``; the
        configured conservative default when the ledger cannot answer.
        """
        try:
            fees = await asyncio.wait_for(
                self.ledger.get_recent_prioritization_fees([pool_address] if pool_address else []),
                timeout=GAS_ESTIMATE_TIMEOUT_SECONDS,
            )
        except (OperationalError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("GAS_ESTIMATE_FALLBACK", error=str(e) or e.__class__.__name__)
            return self.config.default_gas_estimate_sol

        median_fee = Decimal(str(statistics.median(fees))) if fees else Decimal("0")
        priority_lamports = median_fee * self.config.default_compute_units / MICRO_LAMPORTS_PER_LAMPORT
        lamports = Decimal(self.config.base_fee_lamports) + priority_lamports
        return lamports / LAMPORTS_PER_SOL

    def evaluate_auto_reposition(
        self,
        recommendation: Recommendation,
        settings: RepositionSettings,
        fees_usd: Decimal,
    ) -> Tuple[bool, List[str]]:
        """
        Apply a user's policy to a recommendation.

        Returns:
            (should_act, reasons) where ``reasons`` lists every blocking rule
        """
        reasons: List[str] = []
        if not settings.auto_reposition_enabled:
            reasons.append("Auto-reposition is disabled")
        if not recommendation.should_reposition:
            reasons.append("Position is in range")
        if recommendation.urgency.rank < settings.urgency_threshold.rank:
            reasons.append(
                f"Urgency {recommendation.urgency.value} is below threshold {settings.urgency_threshold.value}"
            )
        if recommendation.estimated_gas_cost > settings.max_gas_cost_sol:
            reasons.append(
                f"Estimated gas {recommendation.estimated_gas_cost} SOL exceeds cap {settings.max_gas_cost_sol} SOL"
            )
        if fees_usd < settings.min_fees_to_collect_usd:
            reasons.append(f"Fees ${fees_usd} are below minimum ${settings.min_fees_to_collect_usd}")
        if recommendation.recommended_strategy not in settings.allowed_strategies:
            reasons.append(f"Strategy {recommendation.recommended_strategy.value} is not allowed")

        should_act = not reasons
        logger.info(
            "AUTO_REPOSITION_EVALUATED",
            position=recommendation.position_id,
            should_act=should_act,
            blocked_by=len(reasons),
        )
        return should_act, reasons

    # ---- proposals ----

    def _check_freshness(self, timestamp: Optional[Any]) -> None:
        if timestamp is None:
            if self.config.require_fresh_timestamp:
                raise ValidationError(
                    "A recent timestamp is required",
                    "Include the current time with the reposition request",
                )
            return
        sent_at = parse_request_timestamp(timestamp)
        age = (self._now() - sent_at).total_seconds()
        if abs(age) > self.config.signature_max_age_seconds:
            raise ValidationError(
                "Request timestamp expired",
                f"Timestamps must be within {self.config.signature_max_age_seconds}s of server time",
            )

    async def _check_rate_limit(self, wallet_address: str) -> None:
        since = self._now() - RATE_LIMIT_WINDOW
        recent = await asyncio.to_thread(self.repository.count_proposals_since, wallet_address, since)
        if recent >= self.config.rate_limit_per_minute:
            logger.warning("PROPOSAL_RATE_LIMITED", wallet=wallet_address, recent=recent)
            raise ValidationError(
                "Rate limit exceeded",
                f"At most {self.config.rate_limit_per_minute} reposition proposals per minute",
            )

    def _slippage_bps(self, value: Optional[int]) -> int:
        if value is None:
            return self.config.default_slippage_bps
        if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= self.config.max_slippage_bps:
            raise ValidationError(
                "Invalid slippage",
                f"slippage must be an integer number of basis points in 1..{self.config.max_slippage_bps}",
            )
        return value

    def _half_width(self, value: Optional[int]) -> int:
        if value is None:
            return self.config.default_bin_range
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError("Invalid bin range", "binRange must be a positive integer")
        return value

    async def _pool_instructions(self, build: Callable[[], Any], operation: str) -> List[Dict[str, Any]]:
        try:
            return await build()
        except POOL_SERVICE_ERRORS as e:
            raise wrap_boundary(e, RpcError, f"Pool service failed: {operation}")

    async def prepare_reposition(self, request: RepositionRequest) -> UnsignedTransactionProposal:
        """
        Build an unsigned close-and-reopen transaction for the caller to sign.

        Raises:
            ValidationError: bad input, stale timestamp, rate limit, ownership,
                gas above ``max_gas_cost``
            NotFoundError: position absent on-chain
            RpcError: ledger or pool service failure
        """
        wallet = validate_address(request.wallet_address, "walletAddress")
        self._check_freshness(request.timestamp)
        slippage_bps = self._slippage_bps(request.slippage_bps)
        half_width = self._half_width(request.bin_range)

        snapshot = await self._live_position(request.position_id, request.pool_address)
        if snapshot.owner != wallet:
            logger.warning("PROPOSAL_OWNERSHIP_MISMATCH", position=snapshot.position_id, wallet=wallet)
            raise ValidationError("Position is not owned by this wallet")
        await self._check_rate_limit(wallet)

        gas = await self.estimate_gas_cost(snapshot.pool_address)
        if request.max_gas_cost is not None and gas > request.max_gas_cost:
            raise ValidationError(
                "Estimated gas exceeds maximum",
                f"Estimated gas ({gas:.6f} SOL) exceeds maximum ({request.max_gas_cost} SOL)",
            )

        position_range = BinRange(snapshot.lower_bin, snapshot.upper_bin)
        strategy = request.strategy or recommend_strategy(snapshot.active_bin, position_range)
        new_range = BinRange.centered(snapshot.active_bin, half_width)
        protection = slippage_protection(snapshot, slippage_bps)

        recovered_x = snapshot.amount_x + snapshot.fee_x
        recovered_y = snapshot.amount_y + snapshot.fee_y
        remove = await self._pool_instructions(
            lambda: self.pool.build_remove_liquidity(
                snapshot.position_id, wallet, snapshot.pool_address, snapshot.lower_bin, snapshot.upper_bin
            ),
            "remove-liquidity",
        )
        add = await self._pool_instructions(
            lambda: self.pool.build_add_liquidity(
                wallet,
                snapshot.pool_address,
                new_range.min,
                new_range.max,
                _base_units(recovered_x, self.tokens.token_x_decimals),
                _base_units(recovered_y, self.tokens.token_y_decimals),
                strategy.value,
                slippage_bps,
            ),
            "add-liquidity",
        )
        transaction, tx_hash = await self.builder.build_unsigned(wallet, remove + add)

        prices = await self._prices_for(snapshot)
        total_usd = Decimal("0")
        if prices is not None:
            total_usd = recovered_x * prices.price_x + recovered_y * prices.price_y

        now = self._now()
        expires_at = now + timedelta(seconds=self.config.proposal_ttl_seconds)
        await self._record_proposal(PendingProposal(
            tx_hash=tx_hash,
            wallet_address=wallet,
            position_id=snapshot.position_id,
            expires_at=expires_at,
            created_at=now,
        ))

        logger.info(
            "REPOSITION_PREPARED",
            position=snapshot.position_id,
            wallet=wallet,
            strategy=strategy.value,
            new_range=new_range.label(),
            slippage_bps=slippage_bps,
            gas_sol=str(gas),
            expires_at=expires_at.isoformat(),
        )
        return UnsignedTransactionProposal(
            transaction=transaction,
            tx_hash=tx_hash,
            position_id=snapshot.position_id,
            pool_address=snapshot.pool_address,
            estimated_liquidity_recovered=LiquidityRecovered(
                token_x=snapshot.amount_x,
                token_y=snapshot.amount_y,
                fees_x=snapshot.fee_x,
                fees_y=snapshot.fee_y,
                total_usd=total_usd,
            ),
            new_bin_range=new_range,
            strategy=strategy,
            estimated_gas_cost=gas,
            slippage_protection=protection,
            expires_at=expires_at,
            prices_estimated=bool(prices and prices.estimated),
        )

    async def _prices_for(self, snapshot: OnChainSnapshot) -> Optional[PricePair]:
        try:
            return await self.prices.fetch_prices(fallback_pool_price=snapshot.price)
        except OperationalError as e:
            logger.warning("PROPOSAL_PRICES_UNAVAILABLE", position=snapshot.position_id, error=e.message)
            return None
        except Exception as e:
            logger.error("PROPOSAL_PRICES_FAILED", position=snapshot.position_id, error=str(e), exc_info=True)
            return None

    async def _record_proposal(self, proposal: PendingProposal) -> None:
        try:
            await asyncio.to_thread(self.repository.save_pending_proposal, proposal)
        except DatabaseError as e:
            # The rate limit undercounts until storage recovers
            logger.error("PROPOSAL_RECORD_FAILED", tx_hash=proposal.tx_hash, error=e.details or e.message)
