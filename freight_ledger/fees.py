"""
fees.py - Service-fee and commission calculation

Pure, deterministic functions with no I/O:
    - calculate_fee_preview: one party's corridor fee (distance x rate, optional promo)
    - calculate_dual_party_fee_preview: shipper and carrier fees, computed independently
    - calculate_commission_breakdown: post-delivery commission split

Rounding: each party's fee is rounded to cents before the platform total is
summed, so the per-party ledger entries always add up to the reported total.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .core import Corridor, Load
from .money import (
    ZERO, HUNDRED, Numeric,
    to_decimal, is_positive_finite, round_money, percent_of,
)


# Commission rates are percentages in (0, MAX_COMMISSION_RATE].
MAX_COMMISSION_RATE = Decimal("10")
DEFAULT_COMMISSION_RATE = Decimal("5")


# ============================================================================
# SERVICE FEES
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeePreview:
    """
    One party's service fee.

    Invariant: base_fee - promo_discount == final_fee, and final_fee >= 0.
    """
    distance_km: Decimal
    price_per_km: Decimal
    base_fee: Decimal
    promo_discount: Decimal
    final_fee: Decimal
    promo_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distanceKm": self.distance_km,
            "pricePerKm": self.price_per_km,
            "baseFee": self.base_fee,
            "promoDiscount": self.promo_discount,
            "finalFee": self.final_fee,
            "promoApplied": self.promo_applied,
        }


@dataclass(frozen=True, slots=True)
class DualPartyFeePreview:
    shipper: FeePreview
    carrier: FeePreview
    total_platform_fee: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipper": self.shipper.to_dict(),
            "carrier": self.carrier.to_dict(),
            "totalPlatformFee": self.total_platform_fee,
        }


def _optional_decimal(value: Optional[Numeric]) -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(value)


def _promo_is_valid(promo_flag: bool, promo_pct: Optional[Decimal]) -> bool:
    return bool(promo_flag) and promo_pct is not None and is_positive_finite(promo_pct) and promo_pct <= HUNDRED


def calculate_fee_preview(
    distance_km: Numeric,
    price_per_km: Numeric,
    promo_flag: bool = False,
    promo_pct: Optional[Numeric] = None,
) -> FeePreview:
    """
    Compute one party's service fee.

    base_fee = distance_km * price_per_km. A promotion applies only when
    promo_flag is set and promo_pct is a positive number no greater than 100.

    Args:
        distance_km: Billable distance.
        price_per_km: Fee rate per km.
        promo_flag: Whether the corridor promotion is active for this party.
        promo_pct: Discount percentage.

    Returns:
        FeePreview. Degenerate input (distance or rate not a finite positive
        number) produces an all-zero fee.
    """
    distance = to_decimal(distance_km)
    rate = to_decimal(price_per_km)
    pct = _optional_decimal(promo_pct)

    if not (is_positive_finite(distance) and is_positive_finite(rate)):
        return FeePreview(
            distance_km=distance if distance.is_finite() else ZERO,
            price_per_km=rate if rate.is_finite() else ZERO,
            base_fee=round_money(ZERO),
            promo_discount=round_money(ZERO),
            final_fee=round_money(ZERO),
        )

    exact_base = distance * rate
    promo_applied = _promo_is_valid(promo_flag, pct)
    exact_discount = percent_of(exact_base, pct) if promo_applied else ZERO

    base_fee = round_money(exact_base)
    final_fee = max(round_money(exact_base - exact_discount), round_money(ZERO))
    return FeePreview(
        distance_km=distance,
        price_per_km=rate,
        base_fee=base_fee,
        promo_discount=base_fee - final_fee,
        final_fee=final_fee,
        promo_applied=promo_applied,
    )


def calculate_dual_party_fee_preview(
    distance_km: Numeric,
    shipper_price_per_km: Numeric,
    shipper_promo_flag: bool,
    shipper_promo_pct: Optional[Numeric],
    carrier_price_per_km: Numeric,
    carrier_promo_flag: bool,
    carrier_promo_pct: Optional[Numeric],
) -> DualPartyFeePreview:
    """
    Compute shipper and carrier fees for the same distance.

    The two sides are independent: a promotion on one never affects the other.
    total_platform_fee is the sum of the two rounded final fees.
    """
    shipper = calculate_fee_preview(
        distance_km, shipper_price_per_km, shipper_promo_flag, shipper_promo_pct
    )
    carrier = calculate_fee_preview(
        distance_km, carrier_price_per_km, carrier_promo_flag, carrier_promo_pct
    )
    return DualPartyFeePreview(
        shipper=shipper,
        carrier=carrier,
        total_platform_fee=shipper.final_fee + carrier.final_fee,
    )


def calculate_fees_from_corridor(
    corridor: Corridor,
    distance_km: Optional[Numeric] = None,
) -> DualPartyFeePreview:
    """Dual-party fees using a corridor's pricing; distance defaults to the corridor's."""
    distance = corridor.distance_km if distance_km is None else distance_km
    return calculate_dual_party_fee_preview(
        distance,
        corridor.shipper_price_per_km,
        corridor.shipper_promo_flag,
        corridor.shipper_promo_pct,
        corridor.carrier_price_per_km,
        corridor.carrier_promo_flag,
        corridor.carrier_promo_pct,
    )


def resolve_trip_distance(load: Load, corridor: Corridor) -> Tuple[Decimal, str]:
    """
    Pick the billable distance for a load.

    Preference: GPS actual km, then estimated km, then declared trip km, then
    the corridor's default distance.

    Returns:
        (distance_km, source) where source names the field that won.
    """
    for source in ("actual_trip_km", "estimated_trip_km", "trip_km"):
        value = getattr(load, source)
        if value is not None and is_positive_finite(value):
            return value, source
    return corridor.distance_km, "corridor.distance_km"


# ============================================================================
# COMMISSIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class CommissionRates:
    """Shipper and carrier commission percentages, each in (0, 10]."""
    shipper_rate: Decimal = DEFAULT_COMMISSION_RATE
    carrier_rate: Decimal = DEFAULT_COMMISSION_RATE

    def __post_init__(self):
        for name in ("shipper_rate", "carrier_rate"):
            value = to_decimal(getattr(self, name))
            if not (is_positive_finite(value) and value <= MAX_COMMISSION_RATE):
                raise ValueError(
                    f"{name} must be in (0, {MAX_COMMISSION_RATE}], got {value}"
                )
            object.__setattr__(self, name, value)


@dataclass(frozen=True, slots=True)
class CommissionBreakdown:
    total_fare: Decimal
    shipper_commission: Decimal
    carrier_commission: Decimal
    platform_revenue: Decimal
    shipper_rate: Decimal
    carrier_rate: Decimal


def calculate_commission(total_fare: Numeric, rate: Numeric) -> Decimal:
    """Commission on a fare at a percentage rate, rounded to cents."""
    return round_money(percent_of(total_fare, rate))


def calculate_commission_breakdown(
    total_fare: Numeric,
    rates: Optional[CommissionRates] = None,
) -> CommissionBreakdown:
    """
    Split commissions for a delivered load.

    Platform revenue is the sum of the shipper and carrier commissions.

    Raises:
        ValueError: If total_fare is not a finite positive amount.
    """
    fare = to_decimal(total_fare)
    if not is_positive_finite(fare):
        raise ValueError(f"Total fare must be positive, got {fare}")
    rates = rates or CommissionRates()
    shipper_commission = calculate_commission(fare, rates.shipper_rate)
    carrier_commission = calculate_commission(fare, rates.carrier_rate)
    return CommissionBreakdown(
        total_fare=fare,
        shipper_commission=shipper_commission,
        carrier_commission=carrier_commission,
        platform_revenue=shipper_commission + carrier_commission,
        shipper_rate=rates.shipper_rate,
        carrier_rate=rates.carrier_rate,
    )
