"""
Pricing Calculator – turns a booking request plus a fee policy snapshot into
the full price breakdown stored on the rental.

Pure and deterministic: no I/O, no shared state, safe to call from any
number of requests at once.

    rental_fee     = price_per_day × days
    insurance_fee  = days × tier rate
    delivery_fee   = distance_km × delivery_fee_per_km
    total_price    = rental_fee + delivery_fee + insurance_fee − discount
    platform_fee   = total_price × platform_fee_ratio
    owner_earning  = total_price − platform_fee
"""
import math
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Tuple

from rentalhub.services.fee_policy import FeeSnapshot
from rentalhub.utils.errors import ValidationFailed
from rentalhub.utils.money import apply_ratio, round_half_up, to_decimal, parse_ratio, ratio_str

SECONDS_PER_DAY = 24 * 60 * 60

TIER_A = "A"
TIER_B = "B"
TIER_C = "C"
TIER_D = "D"
TIER_DEFAULT = "DEFAULT"

# Ordered: first substring match wins
INSURANCE_CLASSIFIERS: Tuple[Tuple[str, str], ...] = (
    ("50cc", TIER_A),
    ("xe số", TIER_A),
    ("tay ga", TIER_B),
    ("xe điện", TIER_B),
    ("electric", TIER_B),
    ("tay côn", TIER_C),
    ("mô tô", TIER_D),
    ("moto", TIER_D),
)

_TIER_RATE_FIELD = {
    TIER_A: "insurance_rate_50cc",
    TIER_B: "insurance_rate_tay_ga",
    TIER_C: "insurance_rate_tay_con",
    TIER_D: "insurance_rate_moto",
    TIER_DEFAULT: "insurance_rate_default",
}


@dataclass(frozen=True)
class PricingRequest:
    vehicle_type: Optional[str]
    price_per_day: int
    deposit_amount: int
    start_date: datetime
    end_date: datetime
    currency: str = "VND"
    delivery_distance_km: Optional[float] = None
    discount_amount: int = 0
    discount_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class PriceBreakdown:
    currency: str
    days: int
    duration_minutes: int
    price_per_day: int
    rental_fee: int
    delivery_fee: int
    insurance_tier: str
    insurance_fee: int
    discount_amount: int
    total_price: int
    deposit_price: int
    platform_fee_ratio: str
    platform_fee: int
    owner_earning: int
    fee_settings_id: str
    fee_settings_version: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_insurance_tier(vehicle_type: Optional[str]) -> str:
    """Unknown or missing vehicle classes fall back to the default tier"""
    t = (vehicle_type or "").lower()
    for needle, tier in INSURANCE_CLASSIFIERS:
        if needle in t:
            return tier
    return TIER_DEFAULT


def insurance_rate_for(tier: str, fees: FeeSnapshot) -> int:
    return getattr(fees, _TIER_RATE_FIELD[tier])


def rental_duration(start_date: datetime, end_date: datetime) -> Tuple[int, int]:
    """(billable days, duration in minutes); any started day is billed"""
    seconds = (end_date - start_date).total_seconds()
    if seconds <= 0:
        raise ValidationFailed("End date must be after start date", "INVALID_DURATION")
    days = max(1, math.ceil(seconds / SECONDS_PER_DAY))
    return days, math.ceil(seconds / 60)


def _require_amount(value, field: str) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationFailed(f"{field} must be a finite number", "NON_FINITE_AMOUNT")
    if value < 0:
        raise ValidationFailed(f"{field} cannot be negative", "NEGATIVE_AMOUNT")


def calculate_price(request: PricingRequest, fees: FeeSnapshot, platform_fee_ratio) -> PriceBreakdown:
    """Price a booking against one fee policy snapshot and commission rate"""
    _require_amount(request.price_per_day, "price_per_day")
    _require_amount(request.discount_amount, "discount_amount")
    if request.deposit_amount < 0:
        raise ValidationFailed("Deposit cannot be negative", "NEGATIVE_DEPOSIT")
    try:
        ratio = parse_ratio(platform_fee_ratio)
        discount_percent = parse_ratio(request.discount_percent)
    except ValueError as e:
        raise ValidationFailed(str(e), "INVALID_RATIO")

    days, duration_minutes = rental_duration(request.start_date, request.end_date)
    rental_fee = request.price_per_day * days

    tier = classify_insurance_tier(request.vehicle_type)
    insurance_fee = days * insurance_rate_for(tier, fees)

    delivery_fee = 0
    if request.delivery_distance_km is not None:
        _require_amount(request.delivery_distance_km, "delivery_distance_km")
        delivery_fee = round_half_up(to_decimal(request.delivery_distance_km) * fees.delivery_fee_per_km)

    pre_discount_total = rental_fee + delivery_fee + insurance_fee
    if pre_discount_total < 0:
        raise ValidationFailed("Total price cannot be negative", "NEGATIVE_TOTAL")

    discount = request.discount_amount + apply_ratio(pre_discount_total, discount_percent)
    discount = min(discount, pre_discount_total)
    total_price = pre_discount_total - discount

    platform_fee = apply_ratio(total_price, ratio)
    owner_earning = total_price - platform_fee

    return PriceBreakdown(
        currency=request.currency,
        days=days,
        duration_minutes=duration_minutes,
        price_per_day=request.price_per_day,
        rental_fee=rental_fee,
        delivery_fee=delivery_fee,
        insurance_tier=tier,
        insurance_fee=insurance_fee,
        discount_amount=discount,
        total_price=total_price,
        deposit_price=request.deposit_amount,
        platform_fee_ratio=ratio_str(ratio),
        platform_fee=platform_fee,
        owner_earning=owner_earning,
        fee_settings_id=fees.id,
        fee_settings_version=fees.version,
    )
