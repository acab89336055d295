"""
Per-user reposition settings: lookup, lazy defaults and partial updates.

Users are resolved by linked wallet or Telegram id; user-by-wallet lookups
go through a short TTL cache.
"""
import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from repositioner.domain.models import (
    RepositionSettings,
    RepositionStrategy,
    UpdatedFrom,
    Urgency,
    UserRecord,
)
from repositioner.exceptions import NotFoundError, ValidationError
from repositioner.monitoring.logger import get_logger
from repositioner.storage.repository import Repository
from repositioner.utils.cache import TTLCache
from repositioner.utils.validation import to_decimal, validate_address

logger = get_logger(__name__)

MAX_GAS_CAP_SOL = Decimal("1")

BOOLEAN_FIELDS = {
    "autoRepositionEnabled": "auto_reposition_enabled",
    "telegramNotifications": "telegram_notifications",
    "websiteNotifications": "website_notifications",
}


def parse_settings_update(update: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate a camelCase partial update and map it to ``RepositionSettings`` fields.

    Raises:
        ValidationError: unknown key or out-of-range value
    """
    if not isinstance(update, Mapping):
        raise ValidationError("settings must be an object")

    changes: Dict[str, Any] = {}
    for key, value in update.items():
        if key in BOOLEAN_FIELDS:
            if not isinstance(value, bool):
                raise ValidationError(f"{key} must be a boolean")
            changes[BOOLEAN_FIELDS[key]] = value
        elif key == "urgencyThreshold":
            try:
                changes["urgency_threshold"] = Urgency(value)
            except ValueError:
                raise ValidationError("Invalid urgency threshold", "Must be one of: low, medium, high")
        elif key == "maxGasCostSol":
            gas = to_decimal(value, default=None)
            if gas is None or not gas.is_finite() or not 0 <= gas <= MAX_GAS_CAP_SOL:
                raise ValidationError("Invalid max gas cost", f"Must be between 0 and {MAX_GAS_CAP_SOL} SOL")
            changes["max_gas_cost_sol"] = gas
        elif key == "minFeesToCollectUsd":
            fees = to_decimal(value, default=None)
            if fees is None or not fees.is_finite() or fees < 0:
                raise ValidationError("Invalid minimum fees", "Must be zero or more")
            changes["min_fees_to_collect_usd"] = fees
        elif key == "allowedStrategies":
            if not isinstance(value, (list, tuple)) or not value:
                raise ValidationError("allowedStrategies must be a non-empty list")
            try:
                strategies = [RepositionStrategy(s) for s in value]
            except ValueError:
                raise ValidationError(
                    "Invalid strategy",
                    "Allowed: " + ", ".join(s.value for s in RepositionStrategy),
                )
            changes["allowed_strategies"] = list(dict.fromkeys(strategies))
        else:
            raise ValidationError("Unknown setting", key)
    return changes


class SettingsService:
    """Read-or-create and update of ``RepositionSettings``."""

    def __init__(self, repository: Repository, user_cache: Optional[TTLCache] = None):
        self.repository = repository
        self.user_cache = user_cache or TTLCache(ttl_seconds=30)

    async def resolve_user(
        self,
        wallet_address: Optional[str] = None,
        telegram_user_id: Optional[Any] = None,
    ) -> UserRecord:
        if wallet_address:
            wallet = validate_address(wallet_address, "walletAddress")
            user = await self.user_cache.get_or_load(
                f"user:wallet:{wallet}",
                lambda: asyncio.to_thread(self.repository.find_user_by_wallet, wallet),
            )
            if user is None:
                raise NotFoundError(
                    "User not found",
                    "No user is linked to this wallet. Link your wallet first.",
                )
            return user

        if telegram_user_id is not None and str(telegram_user_id).strip():
            user = await asyncio.to_thread(self.repository.find_user_by_telegram_id, str(telegram_user_id))
            if user is None:
                raise NotFoundError("User not found", "No user with this Telegram id. Start the bot first.")
            return user

        raise ValidationError("walletAddress or telegramUserId is required")

    async def get_settings(
        self,
        wallet_address: Optional[str] = None,
        telegram_user_id: Optional[Any] = None,
    ) -> RepositionSettings:
        """Settings for a user; defaults are created and stored on first read."""
        user = await self.resolve_user(wallet_address, telegram_user_id)
        settings = await asyncio.to_thread(self.repository.get_settings, user.id)
        if settings is None:
            settings = await asyncio.to_thread(self.repository.save_settings, RepositionSettings(user_id=user.id))
            logger.info("SETTINGS_DEFAULTS_CREATED", user_id=user.id)
        return settings

    async def update_settings(
        self,
        update: Mapping[str, Any],
        updated_from: Any,
        wallet_address: Optional[str] = None,
        telegram_user_id: Optional[Any] = None,
    ) -> RepositionSettings:
        """Apply a partial update on top of the current (or default) settings."""
        try:
            source = UpdatedFrom(updated_from)
        except ValueError:
            raise ValidationError("Invalid updatedFrom", "Must be one of: telegram, website")
        changes = parse_settings_update(update)

        current = await self.get_settings(wallet_address, telegram_user_id)
        saved = await asyncio.to_thread(
            self.repository.save_settings,
            replace(current, updated_from=source, **changes),
        )
        logger.info(
            "SETTINGS_UPDATED",
            user_id=saved.user_id,
            fields=sorted(update.keys()),
            updated_from=source.value,
        )
        return saved
