"""
Deterministic health and PnL calculations for merged positions.

Pure functions: no I/O, no suspension points.
"""
from decimal import Decimal
from typing import Optional

from repositioner.config.config import HealthConfig
from repositioner.domain.models import HealthStatus, PositionHealth, PositionPnL

HUNDRED = Decimal("100")


def range_tolerance(lower_bin: Optional[int], upper_bin: Optional[int], default_bins: int) -> int:
    """
    In-range tolerance of a position in bins.

    The configured default, widened to half the position's width for ranges
    wider than twice the default.
    """
    if lower_bin is None or upper_bin is None or upper_bin < lower_bin:
        return default_bins
    return max((upper_bin - lower_bin) // 2, default_bins)


def compute_health(
    active_bin: int,
    entry_bin: Optional[int],
    lower_bin: Optional[int],
    upper_bin: Optional[int],
    config: Optional[HealthConfig] = None,
) -> PositionHealth:
    """
    Classify how far the active bin has drifted from the position.

    ``distance = active_bin - reference_bin`` (signed), where the reference is
    the recorded entry bin, or the centre of the live range when no entry
    bin was recorded. Healthy within tolerance, at-edge within the extra
    edge band, out-of-range beyond it.
    """
    config = config or HealthConfig()
    if entry_bin is not None:
        reference = entry_bin
    elif lower_bin is not None and upper_bin is not None:
        reference = (lower_bin + upper_bin) // 2
    else:
        reference = active_bin

    distance = active_bin - reference
    tolerance = range_tolerance(lower_bin, upper_bin, config.default_range_tolerance_bins)

    if abs(distance) <= tolerance:
        status = HealthStatus.HEALTHY
    elif abs(distance) <= tolerance + config.at_edge_extra_bins:
        status = HealthStatus.AT_EDGE
    else:
        status = HealthStatus.OUT_OF_RANGE

    return PositionHealth(
        is_in_range=status != HealthStatus.OUT_OF_RANGE,
        status=status,
        distance_from_active_bin=distance,
    )


def compute_pnl(
    current_value_usd: Optional[Decimal],
    entry_value_usd: Optional[Decimal],
    gas_cost_usd: Decimal = Decimal("0"),
) -> Optional[PositionPnL]:
    """
    ``usd = current - entry - gas``; ``percent = usd / entry * 100``.

    Returns None when either value is unknown or the entry value is zero.
    """
    if current_value_usd is None or entry_value_usd is None or entry_value_usd == 0:
        return None
    usd = current_value_usd - entry_value_usd - (gas_cost_usd or Decimal("0"))
    percent = usd / entry_value_usd * HUNDRED
    return PositionPnL(usd=usd.quantize(Decimal("0.01")), percent=percent.quantize(Decimal("0.01")))
