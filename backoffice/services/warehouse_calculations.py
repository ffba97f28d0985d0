"""
Warehouse space maths: usage ratios and over-space pricing.

All functions are pure. Inputs may be int, float, str or Decimal; results
are Decimal, with money rounded half-up to cents and volumes to litres.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from backoffice.errors import ValidationError
from backoffice.schemas.billing import OverSpaceCharge
from backoffice.settings import settings


CENT = Decimal("0.01")
LITRE = Decimal("0.001")

# Usage band (percent of allowance) in which clients are warned before billing starts
WARNING_BAND_PERCENT = (Decimal("90"), Decimal("120"))


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce a stored or user-supplied number to Decimal; None gives ``default``."""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_volume(value: Any) -> Decimal:
    return to_decimal(value).quantize(LITRE, rounding=ROUND_HALF_UP)


def calculate_usage_percent(used_cbm: Any, limit_cbm: Any) -> Optional[Decimal]:
    """Used volume as a percentage of the allowance, None without an allowance."""
    limit = to_decimal(limit_cbm)
    if limit <= 0:
        return None
    return (to_decimal(used_cbm) / limit * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def is_over_limit(used_cbm: Any, limit_cbm: Any) -> bool:
    return to_decimal(used_cbm) > to_decimal(limit_cbm)


def should_show_space_warning(used_cbm: Any, limit_cbm: Any) -> bool:
    """True while usage sits in the 90-120 % band of the allowance."""
    percent = calculate_usage_percent(used_cbm, limit_cbm)
    if percent is None:
        return False
    low, high = WARNING_BAND_PERCENT
    return low <= percent <= high


def calculate_over_space_charge(
    used_cbm: Any,
    limit_cbm: Any,
    rate_eur: Any,
    threshold_ratio: Any = None
) -> OverSpaceCharge:
    """
    Price the volume stored beyond the billing threshold.

    Nothing is charged up to ``limit * threshold_ratio`` (120 % by default);
    every m³ above it is billed at ``rate_eur``.

    Args:
        used_cbm: Volume currently stored
        limit_cbm: Allowance the client has paid for
        rate_eur: Price per m³ above the threshold
        threshold_ratio: Override for ``OVER_SPACE_THRESHOLD_RATIO``

    Returns:
        OverSpaceCharge: Threshold, excess volume and amount

    Raises:
        ValidationError: If any input is negative
    """
    used = to_decimal(used_cbm)
    limit = to_decimal(limit_cbm)
    rate = to_decimal(rate_eur)
    ratio = to_decimal(
        threshold_ratio if threshold_ratio is not None else settings.OVER_SPACE_THRESHOLD_RATIO
    )

    for name, value in (("used_cbm", used), ("limit_cbm", limit), ("rate_eur", rate), ("threshold_ratio", ratio)):
        if value < 0:
            raise ValidationError(f"{name} must be >= 0", field=name, value=str(value))

    threshold = limit * ratio
    excess = used - threshold if used > threshold else Decimal("0")

    return OverSpaceCharge(
        used_cbm=quantize_volume(used),
        limit_cbm=quantize_volume(limit),
        threshold_cbm=quantize_volume(threshold),
        excess_cbm=quantize_volume(excess),
        rate_eur=quantize_money(rate),
        amount_eur=quantize_money(excess * rate),
        usage_percent=calculate_usage_percent(used, limit),
        warning=should_show_space_warning(used, limit),
    )
