"""
Tool-call surface.

``ToolService.call(tool_name, args)`` runs one tool behind the access gate
and always returns a dict: the tool result, or the uniform error envelope
``{error, message, details?}``. Internal errors are logged in full and
reported generically.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from repositioner.access.gate import AccessGate
from repositioner.access.subscriptions import SubscriptionService
from repositioner.config.config import AccessConfig
from repositioner.domain.models import (
    BinRange,
    ExecutionRecord,
    RepositionChainEntry,
    RepositionReason,
    RepositionRequest,
    RepositionStrategy,
)
from repositioner.exceptions import (
    GENERIC_KINDS,
    NotFoundError,
    RepositionerError,
    ValidationError,
    error_envelope,
)
from repositioner.monitoring.logger import get_logger
from repositioner.reconciliation.reconciler import PositionReconciler
from repositioner.reposition.decision_engine import RepositionDecisionEngine
from repositioner.reposition.settings import SettingsService
from repositioner.storage.credits import CreditLedger
from repositioner.storage.history import RepositionHistory
from repositioner.storage.repository import new_id
from repositioner.utils.validation import parse_positive_decimal, to_decimal, validate_address

logger = get_logger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], Awaitable[Dict[str, Any]]]


# ---- argument helpers ----

def _opt_str(args: Mapping[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _bool(args: Mapping[str, Any], key: str, default: bool) -> bool:
    value = args.get(key, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean")
    return value


def _opt_int(args: Mapping[str, Any], key: str) -> Optional[int]:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    return value


def _opt_decimal(args: Mapping[str, Any], key: str) -> Optional[Decimal]:
    if args.get(key) is None:
        return None
    value = to_decimal(args[key], default=None)
    if value is None or not value.is_finite():
        raise ValidationError(f"{key} must be a number")
    return value


def _wallet(args: Mapping[str, Any]) -> str:
    return validate_address(args.get("walletAddress"), "walletAddress")


class ToolService:
    """Dispatches tool calls to the engine components."""

    def __init__(
        self,
        gate: AccessGate,
        reconciler: PositionReconciler,
        engine: RepositionDecisionEngine,
        settings: SettingsService,
        credits: CreditLedger,
        subscriptions: SubscriptionService,
        history: RepositionHistory,
        access_config: Optional[AccessConfig] = None,
    ):
        self.gate = gate
        self.reconciler = reconciler
        self.engine = engine
        self.settings = settings
        self.credits = credits
        self.subscriptions = subscriptions
        self.history = history
        self.access_config = access_config or AccessConfig()
        self.handlers: Dict[str, ToolHandler] = {
            "get_user_positions_with_sync": self.get_user_positions_with_sync,
            "analyze_reposition": self.analyze_reposition,
            "prepare_reposition": self.prepare_reposition,
            "get_reposition_settings": self.get_reposition_settings,
            "update_reposition_settings": self.update_reposition_settings,
            "use_credits": self.use_credits,
            "purchase_credits": self.purchase_credits,
            "get_credit_balance": self.get_credit_balance,
            "check_subscription": self.check_subscription,
            "get_position_chain": self.get_position_chain,
            "get_wallet_reposition_stats": self.get_wallet_reposition_stats,
            "record_execution": self.record_execution,
        }

    def register(self, tool_name: str, handler: ToolHandler) -> None:
        self.handlers[tool_name] = handler

    @property
    def tool_names(self):
        return sorted(self.handlers)

    async def call(self, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        args = args or {}
        handler = self.handlers.get(tool_name)
        try:
            if handler is None:
                raise ValidationError("Unknown tool", tool_name)
            return await self.gate.with_access_check(tool_name, args, lambda: handler(args))
        except RepositionerError as e:
            if e.kind in GENERIC_KINDS:
                logger.error("TOOL_FAILED", tool=tool_name, kind=e.kind.value, error=e.message, details=e.details)
            else:
                logger.info("TOOL_REJECTED", tool=tool_name, kind=e.kind.value, error=e.message)
            return error_envelope(e)
        except Exception as e:
            logger.error("TOOL_INTERNAL_ERROR", tool=tool_name, error=str(e), exc_info=True)
            return error_envelope(e)

    # ---- positions ----

    async def get_user_positions_with_sync(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        positions, summary = await self.reconciler.get_user_positions(
            _wallet(args),
            include_historical=_bool(args, "includeHistorical", True),
            include_live=_bool(args, "includeLive", True),
            position_id=_opt_str(args, "positionId"),
        )
        return {
            "positions": [p.to_dict() for p in positions],
            "summary": summary.to_dict(),
        }

    async def analyze_reposition(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        recommendation = await self.engine.analyze_position(
            args.get("positionAddress"),
            _opt_str(args, "poolAddress"),
        )
        return recommendation.to_dict()

    async def prepare_reposition(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        strategy = _opt_str(args, "strategy")
        try:
            parsed_strategy = RepositionStrategy(strategy) if strategy else None
        except ValueError:
            raise ValidationError(
                "Invalid strategy",
                "Allowed: " + ", ".join(s.value for s in RepositionStrategy),
            )
        proposal = await self.engine.prepare_reposition(RepositionRequest(
            position_id=args.get("positionAddress"),
            wallet_address=args.get("walletAddress"),
            pool_address=_opt_str(args, "poolAddress"),
            strategy=parsed_strategy,
            bin_range=_opt_int(args, "binRange"),
            slippage_bps=_opt_int(args, "slippage"),
            wallet_signature=_opt_str(args, "walletSignature"),
            timestamp=args.get("timestamp"),
            max_gas_cost=_opt_decimal(args, "maxGasCost"),
        ))
        return proposal.to_dict()

    # ---- settings ----

    async def get_reposition_settings(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        settings = await self.settings.get_settings(
            wallet_address=_opt_str(args, "walletAddress"),
            telegram_user_id=args.get("telegramUserId"),
        )
        return settings.to_dict()

    async def update_reposition_settings(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        settings = await self.settings.update_settings(
            args.get("settings") or {},
            args.get("updatedFrom"),
            wallet_address=_opt_str(args, "walletAddress"),
            telegram_user_id=args.get("telegramUserId"),
        )
        return settings.to_dict()

    # ---- credits / subscriptions ----

    async def use_credits(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        wallet = _wallet(args)
        amount = parse_positive_decimal(args.get("amount"), "amount")
        position = _opt_str(args, "positionAddress")
        if position is not None:
            validate_address(position, "positionAddress")
        balance = await asyncio.to_thread(
            self.credits.use_credits,
            wallet,
            amount,
            position,
            _opt_str(args, "relatedResourceId"),
            _opt_str(args, "description"),
        )
        return {
            "balance": float(balance.balance),
            "totalPurchased": float(balance.total_purchased),
            "totalUsed": float(balance.total_used),
        }

    async def purchase_credits(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        """Record a purchase whose payment was verified by the settlement capability."""
        wallet = _wallet(args)
        amount = parse_positive_decimal(args.get("creditsAmount"), "creditsAmount")
        signature = _opt_str(args, "paymentTxSignature")
        if signature is None:
            raise ValidationError("paymentTxSignature is required")
        usdc_paid = _opt_decimal(args, "usdcAmountPaid")
        if usdc_paid is None:
            usdc_paid = self.credits.calculate_price(amount)
        balance = await asyncio.to_thread(
            self.credits.purchase_credits,
            wallet,
            amount,
            usdc_paid,
            signature,
            _opt_str(args, "paymentProof"),
        )
        return {**balance.to_dict(), "usdcAmountPaid": float(usdc_paid)}

    async def get_credit_balance(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        wallet = _wallet(args)
        stats = await asyncio.to_thread(self.credits.get_stats, wallet)
        return {"walletAddress": wallet, **stats}

    async def check_subscription(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        wallet = _wallet(args)
        status = await asyncio.to_thread(self.subscriptions.get_status, wallet)
        balance = await asyncio.to_thread(self.credits.get_balance, wallet)
        return {
            "walletAddress": wallet,
            "subscription": status.to_dict(),
            "credits": {"balance": float(balance.balance)},
            "canReposition": status.is_active or balance.balance >= self.access_config.credits_per_reposition,
        }

    # ---- history ----

    async def get_position_chain(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        position = validate_address(args.get("positionAddress"), "positionAddress")
        chain = await asyncio.to_thread(self.history.get_position_chain, position)
        if chain is None:
            raise NotFoundError("No reposition history for this position", position)
        return chain.to_dict()

    async def get_wallet_reposition_stats(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.history.get_wallet_reposition_stats, _wallet(args))

    async def record_execution(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Caller-reported outcome of a signed reposition.

        Every argument is validated before anything is written. On success the
        transition is appended to the reposition chain (when the new position
        is given) and, without an active subscription, the reposition is paid
        for with credits; the audit row, chain entry and debit commit together.
        """
        wallet = _wallet(args)
        position = validate_address(args.get("positionAddress"), "positionAddress")
        success = _bool(args, "success", False)
        signature = _opt_str(args, "transactionSignature")
        gas = _opt_decimal(args, "gasCostSol")
        fees_usd = _opt_decimal(args, "feesCollectedUsd")
        error = _opt_str(args, "error")
        mode = _opt_str(args, "executionMode") or "manual"
        if mode not in ("auto", "manual"):
            raise ValidationError("executionMode must be 'auto' or 'manual'")

        entry: Optional[RepositionChainEntry] = None
        new_position = _opt_str(args, "newPositionAddress")
        if success and new_position is not None:
            entry = self._chain_entry(
                args, wallet, position, validate_address(new_position, "newPositionAddress"), signature, gas
            )

        charge: Optional[Decimal] = None
        if success:
            status = await asyncio.to_thread(self.subscriptions.get_status, wallet)
            if not status.is_active:
                charge = self.access_config.credits_per_reposition

        execution = ExecutionRecord(
            id=new_id(),
            wallet_address=wallet,
            position_id=position,
            success=success,
            transaction_signature=signature,
            error=error,
            gas_cost_sol=gas,
            fees_collected_usd=fees_usd,
            execution_mode=mode,
            created_at=datetime.now(timezone.utc),
        )
        outcome = await asyncio.to_thread(
            self.history.record_outcome,
            execution,
            entry,
            self.credits if charge is not None else None,
            charge,
        )

        result: Dict[str, Any] = {"execution": outcome.execution.to_dict(), "creditsCharged": 0.0}
        if outcome.reposition is not None:
            result["reposition"] = outcome.reposition.to_dict()
        if outcome.credit_error is not None:
            # Transaction already landed on-chain; the shortfall is only logged
            logger.error(
                "EXECUTION_CREDIT_SHORTFALL",
                wallet=wallet,
                position=position,
                error=outcome.credit_error.details,
            )
            result["creditError"] = outcome.credit_error.message
        elif outcome.credit_balance is not None:
            result["creditsCharged"] = float(charge)
            result["creditBalance"] = float(outcome.credit_balance.balance)
        return result

    @staticmethod
    def _chain_entry(
        args: Mapping[str, Any],
        wallet: str,
        old_position: str,
        new_position: str,
        signature: Optional[str],
        gas: Optional[Decimal],
    ) -> RepositionChainEntry:
        reason = _opt_str(args, "reason") or RepositionReason.OUT_OF_RANGE.value
        strategy = _opt_str(args, "strategy")
        try:
            parsed_reason = RepositionReason(reason)
            parsed_strategy = RepositionStrategy(strategy) if strategy else None
        except ValueError as e:
            raise ValidationError("Invalid reposition details", str(e))

        def bin_range(key: str) -> str:
            raw = args.get(key)
            if isinstance(raw, Mapping):
                try:
                    return BinRange(int(raw["min"]), int(raw["max"])).label()
                except (KeyError, TypeError, ValueError) as e:
                    raise ValidationError(f"Invalid {key}", str(e))
            return str(raw or "")

        return RepositionChainEntry(
            id=new_id(),
            wallet_address=wallet,
            pool_address=validate_address(args.get("poolAddress"), "poolAddress"),
            old_position_address=old_position,
            new_position_address=new_position,
            reason=parsed_reason,
            old_bin_range=bin_range("oldBinRange"),
            new_bin_range=bin_range("newBinRange"),
            active_bin_at_reposition=_opt_int(args, "activeBin") or 0,
            distance_from_range=_opt_int(args, "distanceFromRange") or 0,
            liquidity_recovered_x=_opt_decimal(args, "liquidityRecoveredX") or Decimal("0"),
            liquidity_recovered_y=_opt_decimal(args, "liquidityRecoveredY") or Decimal("0"),
            fees_collected_x=_opt_decimal(args, "feesCollectedX") or Decimal("0"),
            fees_collected_y=_opt_decimal(args, "feesCollectedY") or Decimal("0"),
            gas_cost_sol=gas,
            transaction_signature=signature,
            strategy=parsed_strategy,
        )
