"""
Domain models for the reposition engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; money, token amounts and
prices are Decimals. Response types render camelCase dicts via ``to_dict``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PositionStatus(str, Enum):
    """Lifecycle state of a liquidity position."""
    ACTIVE = "active"
    CLOSED = "closed"


class DataSource(str, Enum):
    """Which source(s) a merged position was assembled from."""
    BLOCKCHAIN = "blockchain"
    DATABASE = "database"
    BOTH = "both"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    AT_EDGE = "at-edge"
    OUT_OF_RANGE = "out-of-range"


class Urgency(str, Enum):
    """Reposition urgency. Ordered: low < medium < high."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return ("low", "medium", "high").index(self.value)


class RepositionStrategy(str, Enum):
    ONE_SIDED_X = "one-sided-x"
    ONE_SIDED_Y = "one-sided-y"
    BALANCED = "balanced"


class RepositionReason(str, Enum):
    OUT_OF_RANGE = "out_of_range"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class UpdatedFrom(str, Enum):
    """Where a settings change came from."""
    TELEGRAM = "telegram"
    WEBSITE = "website"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class CreditTransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"


# ============ STORAGE-SIDE RECORDS ============

@dataclass
class UserRecord:
    """A user as known to the store, resolvable by wallet or Telegram id."""
    id: str
    wallet_address: Optional[str]
    telegram_id: Optional[str] = None
    username: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PositionRecord:
    """
    Historical position truth from the database.

    Immutable once closed; ``exit_*`` and ``closed_at`` are set on close.
    """
    position_id: str
    pool_address: str
    wallet_address: str
    is_active: bool
    entry_bin: Optional[int] = None
    exit_bin: Optional[int] = None
    entry_amount_x: Decimal = Decimal("0")
    entry_amount_y: Decimal = Decimal("0")
    exit_amount_x: Optional[Decimal] = None
    exit_amount_y: Optional[Decimal] = None
    fees_claimed_x: Decimal = Decimal("0")
    fees_claimed_y: Decimal = Decimal("0")
    deposit_value_usd: Optional[Decimal] = None
    withdraw_value_usd: Optional[Decimal] = None
    gas_cost_usd: Decimal = Decimal("0")
    realized_pnl_usd: Optional[Decimal] = None
    realized_pnl_percent: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


# ============ LEDGER-SIDE SNAPSHOTS ============

@dataclass(frozen=True)
class TokenAccount:
    """Parsed token account: which mint, who owns it, raw base-unit amount."""
    mint: str
    owner: str
    amount: int


@dataclass(frozen=True)
class PoolState:
    """Live pool state. ``price`` is token Y per token X at the active bin."""
    pool_address: str
    active_bin: int
    price: Decimal
    bin_step: int = 0
    reserve_x: Decimal = Decimal("0")
    reserve_y: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poolAddress": self.pool_address,
            "activeBin": self.active_bin,
            "price": _num(self.price),
            "binStep": self.bin_step,
            "reserveX": _num(self.reserve_x),
            "reserveY": _num(self.reserve_y),
        }


@dataclass(frozen=True)
class OnChainSnapshot:
    """
    Live position + pool state from one ledger read. Never persisted.

    Amounts are in token units (already scaled by decimals).
    """
    position_id: str
    pool_address: str
    owner: str
    lower_bin: int
    upper_bin: int
    active_bin: int
    amount_x: Decimal
    amount_y: Decimal
    fee_x: Decimal
    fee_y: Decimal
    price: Decimal
    reserve_x: Decimal = Decimal("0")
    reserve_y: Decimal = Decimal("0")
    read_at: datetime = field(default_factory=utc_now)

    @property
    def range_width(self) -> int:
        return self.upper_bin - self.lower_bin


# ============ MERGED VIEW ============

@dataclass
class TokenAmount:
    symbol: str
    amount: Decimal
    usd_value: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "amount": _num(self.amount), "usdValue": _num(self.usd_value)}


@dataclass
class PositionFees:
    """Unclaimed (accrued) fees plus the claimed history."""
    accrued_x: Decimal = Decimal("0")
    accrued_y: Decimal = Decimal("0")
    accrued_usd: Decimal = Decimal("0")
    claimed_x: Decimal = Decimal("0")
    claimed_y: Decimal = Decimal("0")
    claimed_usd: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenX": _num(self.accrued_x),
            "tokenY": _num(self.accrued_y),
            "totalUSD": _num(self.accrued_usd),
            "claimed": {
                "tokenX": _num(self.claimed_x),
                "tokenY": _num(self.claimed_y),
                "totalUSD": _num(self.claimed_usd),
            },
        }


@dataclass(frozen=True)
class PositionPnL:
    usd: Decimal
    percent: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"usd": _num(self.usd), "percent": _num(self.percent)}


@dataclass(frozen=True)
class PositionHealth:
    is_in_range: bool
    status: HealthStatus
    distance_from_active_bin: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isInRange": self.is_in_range,
            "status": self.status.value,
            "distanceFromActiveBin": self.distance_from_active_bin,
        }


@dataclass
class MergedPosition:
    """
    One position after reconciling the database record with the live read.

    ``health`` is set only for active positions; ``pnl`` only when the entry
    value is known.
    """
    position_id: str
    pool_address: str
    status: PositionStatus
    source: DataSource
    token_x: TokenAmount
    token_y: TokenAmount
    total_liquidity_usd: Decimal = Decimal("0")
    fees: PositionFees = field(default_factory=PositionFees)
    pnl: Optional[PositionPnL] = None
    health: Optional[PositionHealth] = None
    entry_bin: Optional[int] = None
    exit_bin: Optional[int] = None
    lower_bin: Optional[int] = None
    upper_bin: Optional[int] = None
    entry_date: Optional[datetime] = None
    exit_date: Optional[datetime] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "positionId": self.position_id,
            "poolAddress": self.pool_address,
            "status": self.status.value,
            "source": self.source.value,
            "tokenX": self.token_x.to_dict(),
            "tokenY": self.token_y.to_dict(),
            "totalLiquidityUSD": _num(self.total_liquidity_usd),
            "fees": self.fees.to_dict(),
            "entryBin": self.entry_bin,
            "exitBin": self.exit_bin,
            "entryDate": _iso(self.entry_date),
            "exitDate": _iso(self.exit_date),
            "timestamp": _iso(self.timestamp),
        }
        if self.lower_bin is not None and self.upper_bin is not None:
            result["binRange"] = {"min": self.lower_bin, "max": self.upper_bin}
        if self.pnl is not None:
            result["pnl"] = self.pnl.to_dict()
        if self.health is not None:
            result["health"] = self.health.to_dict()
        return result


@dataclass
class SyncSummary:
    total: int = 0
    active: int = 0
    closed: int = 0
    merged: int = 0
    database_positions: int = 0
    blockchain_positions: int = 0
    conflicts: int = 0
    live_error: Optional[str] = None
    database_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "total": self.total,
            "active": self.active,
            "closed": self.closed,
            "merged": self.merged,
            "databasePositions": self.database_positions,
            "blockchainPositions": self.blockchain_positions,
            "conflicts": self.conflicts,
        }
        if self.live_error:
            result["liveError"] = self.live_error
        if self.database_error:
            result["databaseError"] = self.database_error
        return result


# ============ PRICES ============

@dataclass(frozen=True)
class PricePair:
    """
    USD prices of token X and token Y.

    ``estimated`` pairs come from the pool's own exchange ratio and are
    approximations for display and sizing only.
    """
    price_x: Decimal
    price_y: Decimal
    estimated: bool = False
    fetched_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priceX": _num(self.price_x),
            "priceY": _num(self.price_y),
            "estimated": self.estimated,
            "timestamp": _iso(self.fetched_at),
        }


# ============ REPOSITION ============

@dataclass(frozen=True)
class BinRange:
    min: int
    max: int

    def __post_init__(self):
        if self.min > self.max:
            raise ValueError(f"Invalid bin range: min ({self.min}) > max ({self.max})")

    @classmethod
    def centered(cls, active_bin: int, half_width: int) -> "BinRange":
        return cls(active_bin - half_width, active_bin + half_width)

    @property
    def width(self) -> int:
        return self.max - self.min

    def contains(self, bin_id: int) -> bool:
        return self.min <= bin_id <= self.max

    def distance_outside(self, bin_id: int) -> int:
        """Bins between ``bin_id`` and the nearest edge; 0 when inside."""
        if bin_id < self.min:
            return self.min - bin_id
        if bin_id > self.max:
            return bin_id - self.max
        return 0

    def label(self) -> str:
        return f"{self.min}-{self.max}"

    def to_dict(self) -> Dict[str, int]:
        return {"min": self.min, "max": self.max}


@dataclass
class Recommendation:
    position_id: str
    pool_address: str
    should_reposition: bool
    reason: str
    current_active_bin: int
    position_range: BinRange
    distance_from_range: int
    urgency: Urgency
    estimated_gas_cost: Decimal
    recommended_strategy: RepositionStrategy
    recommended_bin_range: BinRange

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positionId": self.position_id,
            "poolAddress": self.pool_address,
            "shouldReposition": self.should_reposition,
            "reason": self.reason,
            "currentActiveBin": self.current_active_bin,
            "positionRange": self.position_range.to_dict(),
            "distanceFromRange": self.distance_from_range,
            "urgency": self.urgency.value,
            "estimatedGasCost": _num(self.estimated_gas_cost),
            "recommendedStrategy": self.recommended_strategy.value,
            "recommendedBinRange": self.recommended_bin_range.to_dict(),
        }


@dataclass
class RepositionRequest:
    """Caller input for building a reposition proposal."""
    position_id: str
    wallet_address: str
    pool_address: Optional[str] = None
    strategy: Optional[RepositionStrategy] = None
    bin_range: Optional[int] = None
    slippage_bps: Optional[int] = None
    wallet_signature: Optional[str] = None
    timestamp: Optional[Any] = None  # epoch ms or s, ISO-8601 string, or datetime
    max_gas_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class SlippageProtection:
    max_price: Decimal
    min_price: Decimal
    min_output_x: Decimal
    min_output_y: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxPrice": _num(self.max_price),
            "minPrice": _num(self.min_price),
            "minOutputX": _num(self.min_output_x),
            "minOutputY": _num(self.min_output_y),
        }


@dataclass(frozen=True)
class LiquidityRecovered:
    token_x: Decimal
    token_y: Decimal
    fees_x: Decimal
    fees_y: Decimal
    total_usd: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenX": _num(self.token_x),
            "tokenY": _num(self.token_y),
            "feesX": _num(self.fees_x),
            "feesY": _num(self.fees_y),
            "totalUSD": _num(self.total_usd),
        }


@dataclass
class UnsignedTransactionProposal:
    """
    Serialized, unsigned transaction plus what the signer needs to review.

    The proposal is stale after ``expires_at`` and must be re-derived.
    """
    transaction: str
    tx_hash: str
    position_id: str
    pool_address: str
    estimated_liquidity_recovered: LiquidityRecovered
    new_bin_range: BinRange
    strategy: RepositionStrategy
    estimated_gas_cost: Decimal
    slippage_protection: SlippageProtection
    expires_at: datetime
    prices_estimated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction,
            "txHash": self.tx_hash,
            "metadata": {
                "oldPosition": self.position_id,
                "poolAddress": self.pool_address,
                "estimatedLiquidityRecovered": self.estimated_liquidity_recovered.to_dict(),
                "newBinRange": self.new_bin_range.to_dict(),
                "strategy": self.strategy.value,
                "estimatedGasCost": _num(self.estimated_gas_cost),
                "slippageProtection": self.slippage_protection.to_dict(),
                "expiresAt": _iso(self.expires_at),
                "pricesEstimated": self.prices_estimated,
            },
        }


@dataclass
class RepositionSettings:
    """Per-user auto-reposition policy."""
    user_id: str
    auto_reposition_enabled: bool = False
    urgency_threshold: Urgency = Urgency.MEDIUM
    max_gas_cost_sol: Decimal = Decimal("0.02")
    min_fees_to_collect_usd: Decimal = Decimal("5")
    allowed_strategies: List[RepositionStrategy] = field(
        default_factory=lambda: [
            RepositionStrategy.ONE_SIDED_X,
            RepositionStrategy.ONE_SIDED_Y,
            RepositionStrategy.BALANCED,
        ]
    )
    telegram_notifications: bool = True
    website_notifications: bool = True
    updated_from: Optional[UpdatedFrom] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "autoRepositionEnabled": self.auto_reposition_enabled,
            "urgencyThreshold": self.urgency_threshold.value,
            "maxGasCostSol": _num(self.max_gas_cost_sol),
            "minFeesToCollectUsd": _num(self.min_fees_to_collect_usd),
            "allowedStrategies": [s.value for s in self.allowed_strategies],
            "telegramNotifications": self.telegram_notifications,
            "websiteNotifications": self.website_notifications,
            "updatedFrom": self.updated_from.value if self.updated_from else None,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class RepositionChainEntry:
    id: str
    wallet_address: str
    pool_address: str
    old_position_address: str
    new_position_address: str
    reason: RepositionReason
    old_bin_range: str
    new_bin_range: str
    active_bin_at_reposition: int
    distance_from_range: int
    liquidity_recovered_x: Decimal = Decimal("0")
    liquidity_recovered_y: Decimal = Decimal("0")
    fees_collected_x: Decimal = Decimal("0")
    fees_collected_y: Decimal = Decimal("0")
    gas_cost_sol: Optional[Decimal] = None
    transaction_signature: Optional[str] = None
    strategy: Optional[RepositionStrategy] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "oldPositionAddress": self.old_position_address,
            "newPositionAddress": self.new_position_address,
            "repositionReason": self.reason.value,
            "oldBinRange": self.old_bin_range,
            "newBinRange": self.new_bin_range,
            "activeBinAtReposition": self.active_bin_at_reposition,
            "distanceFromRange": self.distance_from_range,
            "liquidityRecovered": {
                "tokenX": _num(self.liquidity_recovered_x),
                "tokenY": _num(self.liquidity_recovered_y),
            },
            "feesCollected": {
                "tokenX": _num(self.fees_collected_x),
                "tokenY": _num(self.fees_collected_y),
            },
            "transactionSignature": self.transaction_signature,
            "gasCostSol": _num(self.gas_cost_sol),
            "createdAt": _iso(self.created_at),
        }


@dataclass
class PositionChain:
    current_position: str
    history: List[RepositionChainEntry]
    total_fees_x: Decimal = Decimal("0")
    total_fees_y: Decimal = Decimal("0")
    total_fees_usd: Decimal = Decimal("0")
    total_gas_cost_sol: Decimal = Decimal("0")

    @property
    def total_repositions(self) -> int:
        return len(self.history)

    @property
    def chain_length(self) -> int:
        return len(self.history) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentPosition": self.current_position,
            "chainLength": self.chain_length,
            "totalRepositions": self.total_repositions,
            "history": [entry.to_dict() for entry in self.history],
            "totalFeesCollected": {
                "tokenX": _num(self.total_fees_x),
                "tokenY": _num(self.total_fees_y),
                "totalUSD": _num(self.total_fees_usd),
            },
            "totalGasCost": _num(self.total_gas_cost_sol),
        }


# ============ CREDITS / SUBSCRIPTIONS / ACCESS ============

@dataclass(frozen=True)
class CreditBalance:
    """Invariant: balance = total_purchased - total_used >= 0."""
    wallet_address: str
    balance: Decimal
    total_purchased: Decimal
    total_used: Decimal
    last_purchase_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "balance": _num(self.balance),
            "totalPurchased": _num(self.total_purchased),
            "totalUsed": _num(self.total_used),
            "lastPurchaseAt": _iso(self.last_purchase_at),
        }


@dataclass(frozen=True)
class CreditTransaction:
    id: str
    wallet_address: str
    type: CreditTransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    related_resource_id: Optional[str] = None
    usdc_amount: Optional[Decimal] = None
    payment_tx_signature: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": _num(self.amount),
            "balanceBefore": _num(self.balance_before),
            "balanceAfter": _num(self.balance_after),
            "description": self.description,
            "relatedResourceId": self.related_resource_id,
            "usdcAmount": _num(self.usdc_amount),
            "paymentTxSignature": self.payment_tx_signature,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class SubscriptionStatus:
    tier: SubscriptionTier
    is_active: bool
    status: str = "none"
    expires_at: Optional[datetime] = None
    days_remaining: int = 0

    @classmethod
    def inactive(cls) -> "SubscriptionStatus":
        return cls(tier=SubscriptionTier.FREE, is_active=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "isActive": self.is_active,
            "status": self.status,
            "expiresAt": _iso(self.expires_at),
            "daysRemaining": self.days_remaining,
        }


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    credit_balance: Optional[Decimal] = None
    pay_with_credits: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason:
            result["reason"] = self.reason
        if self.subscription_status is not None:
            result["subscriptionStatus"] = self.subscription_status.to_dict()
        if self.credit_balance is not None:
            result["creditBalance"] = _num(self.credit_balance)
        return result


@dataclass(frozen=True)
class PendingProposal:
    """A prepared-but-unsigned transaction awaiting the caller's signature."""
    tx_hash: str
    wallet_address: str
    position_id: str
    expires_at: datetime
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExecutionRecord:
    """Audit row for a reposition the caller reports as executed (or failed)."""
    id: str
    wallet_address: str
    position_id: str
    success: bool
    transaction_signature: Optional[str] = None
    error: Optional[str] = None
    gas_cost_sol: Optional[Decimal] = None
    fees_collected_usd: Optional[Decimal] = None
    execution_mode: str = "auto"
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "executionMode": self.execution_mode,
            "walletAddress": self.wallet_address,
            "positionAddress": self.position_id,
            "success": self.success,
            "transactionSignature": self.transaction_signature,
            "error": self.error,
            "gasCostSol": _num(self.gas_cost_sol),
            "feesCollectedUsd": _num(self.fees_collected_usd),
            "createdAt": _iso(self.created_at),
        }
