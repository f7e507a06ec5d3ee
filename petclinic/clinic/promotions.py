"""Promotion matching and discount calculation for clinic invoices."""

from __future__ import annotations

import datetime as dt
import math
from typing import Any, Iterable, Sequence

from .membership import LOYAL, VIP, is_eligible_for_promotion

MAX_DISCOUNT_RATE = 50
MIN_PROMOTION_RATE = 5
MAX_PROMOTION_RATE = 15
MAX_DESCRIPTION_LENGTH = 500
LOYALTY_POINT_VALUE = 50_000

TARGET_AUDIENCES = ("All", "Loyal+", "VIP+")
_AUDIENCE_LEVELS = {"All": "all", "Loyal+": LOYAL, "VIP+": VIP}

SERVICE_TYPE_NAMES = {
    "purchase": "Product Purchase",
    "single-vaccine": "Single Dose Vaccine",
    "vaccine-package": "Vaccine Package",
    "medical-exam": "Medical Examination",
}


def service_type_name(service_type: str) -> str:
    return SERVICE_TYPE_NAMES.get(service_type, service_type)


def _as_datetime(value: str | dt.date | dt.datetime) -> dt.datetime:
    """Return a naive local datetime; aware values are converted first."""

    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        value = dt.datetime.fromisoformat(value)
    if not isinstance(value, dt.datetime):
        return dt.datetime.combine(value, dt.time.min)
    if value.tzinfo is not None:
        value = value.astimezone()
    return value.replace(tzinfo=None)


def _end_of_day(value: str | dt.date | dt.datetime) -> dt.datetime:
    return dt.datetime.combine(_as_datetime(value).date(), dt.time.max)


def is_eligible_for_audience(membership_level: str, target_audience: str) -> bool:
    required = _AUDIENCE_LEVELS.get(target_audience)
    if required is None:
        return False
    return is_eligible_for_promotion(membership_level, required)


def is_active_on(promotion: dict, moment: dt.datetime) -> bool:
    """Return whether ``moment`` falls between the start and the end of the last day."""

    start = _as_datetime(promotion["start_date"])
    end = _end_of_day(promotion["end_date"])
    return start <= _as_datetime(moment) <= end


def _matches(
    promotion: dict, *, service_type: str, membership_level: str, moment: dt.datetime
) -> bool:
    return (
        bool(promotion.get("is_active"))
        and is_active_on(promotion, moment)
        and is_eligible_for_audience(membership_level, promotion["target_audience"])
        and service_type in promotion["applicable_service_types"]
    )


def applicable_promotions(
    promotions: Iterable[dict],
    *,
    service_type: str,
    membership_level: str,
    branch_id: int | None,
    moment: dt.datetime,
) -> list[dict]:
    """Filter ``promotions`` down to those that apply to one invoice item.

    Global promotions come first, followed by promotions of ``branch_id``.
    """

    promotions = list(promotions)
    result = [
        promo
        for promo in promotions
        if promo["scope"] == "global"
        and _matches(
            promo,
            service_type=service_type,
            membership_level=membership_level,
            moment=moment,
        )
    ]
    result.extend(
        promo
        for promo in promotions
        if promo["scope"] == "branch"
        and promo.get("branch_id") == branch_id
        and _matches(
            promo,
            service_type=service_type,
            membership_level=membership_level,
            moment=moment,
        )
    )
    return result


def apply_promotions(base_price: float, promotions: Sequence[dict]) -> dict:
    """Stack ``promotions`` on ``base_price``.

    Rates are summed and capped at ``MAX_DISCOUNT_RATE`` percent. Discount
    amounts are rounded down to whole currency units.
    """

    if base_price == 0:
        return {
            "base_price": 0,
            "applied_promotions": [],
            "total_discount_rate": 0,
            "total_discount_amount": 0,
            "final_price": 0,
        }

    total_rate = min(sum(promo["discount_rate"] for promo in promotions), MAX_DISCOUNT_RATE)
    total_discount = math.floor(base_price * total_rate / 100)
    applied = [
        {
            "promotion_id": promo["id"],
            "description": promo["description"],
            "discount_rate": promo["discount_rate"],
            "discount_amount": math.floor(base_price * promo["discount_rate"] / 100),
        }
        for promo in promotions
    ]
    return {
        "base_price": base_price,
        "applied_promotions": applied,
        "total_discount_rate": total_rate,
        "total_discount_amount": total_discount,
        "final_price": base_price - total_discount,
    }


def loyalty_points(final_amount: float) -> int:
    return math.floor(final_amount / LOYALTY_POINT_VALUE)


def item_base_price(item: dict) -> float:
    return (
        item.get("base_price", 0)
        + (item.get("vaccine_cost") or 0)
        + (item.get("package_cost") or 0)
    )


def calculate_invoice_totals(
    items: Sequence[dict],
    promotions: Iterable[dict],
    *,
    membership_level: str,
    branch_id: int | None,
    moment: dt.datetime,
) -> dict:
    """Price every invoice item against the promotions in force at ``moment``."""

    promotions = list(promotions)
    subtotal = 0
    total_discount = 0
    breakdown: list[dict] = []
    promotion_ids: list[Any] = []
    for item in items:
        matched = applicable_promotions(
            promotions,
            service_type=item["service_type"],
            membership_level=membership_level,
            branch_id=branch_id,
            moment=moment,
        )
        calculation = apply_promotions(item_base_price(item), matched)
        subtotal += calculation["base_price"]
        total_discount += calculation["total_discount_amount"]
        for applied in calculation["applied_promotions"]:
            if applied["promotion_id"] not in promotion_ids:
                promotion_ids.append(applied["promotion_id"])
        breakdown.append(
            {
                "service_type": item["service_type"],
                "service_name": item.get("description") or service_type_name(item["service_type"]),
                "base_price": calculation["base_price"],
                "discount_amount": calculation["total_discount_amount"],
                "final_price": calculation["final_price"],
                "applied_promotions": calculation["applied_promotions"],
            }
        )

    final_amount = subtotal - total_discount
    return {
        "subtotal": subtotal,
        "total_discount": total_discount,
        "total_discount_rate": (total_discount / subtotal) * 100 if subtotal > 0 else 0,
        "final_amount": final_amount,
        "loyalty_points": loyalty_points(final_amount),
        "applied_promotion_ids": promotion_ids,
        "breakdown": breakdown,
    }


def promotion_status(promotion: dict, now: dt.datetime | None = None) -> str:
    now = _as_datetime(now or dt.datetime.now())
    if now < _as_datetime(promotion["start_date"]):
        return "upcoming"
    if now > _end_of_day(promotion["end_date"]):
        return "expired"
    return "active"


def validate_promotion(data: dict) -> list[str]:
    """Return the list of problems with a promotion draft; empty means valid."""

    errors: list[str] = []
    start, end = data.get("start_date"), data.get("end_date")
    if not start or not end:
        errors.append("Start date and end date are required")
    else:
        try:
            if _as_datetime(start) >= _as_datetime(end):
                errors.append("End date must be after start date")
        except (TypeError, ValueError):
            errors.append("Start date and end date must be ISO dates")

    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        errors.append("Description is required")
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less")

    rate = data.get("discount_rate")
    if (
        not isinstance(rate, (int, float))
        or isinstance(rate, bool)
        or not MIN_PROMOTION_RATE <= rate <= MAX_PROMOTION_RATE
    ):
        errors.append(
            f"Discount rate must be between {MIN_PROMOTION_RATE}% and {MAX_PROMOTION_RATE}%"
        )

    if not data.get("applicable_service_types"):
        errors.append("At least one service type must be selected")

    if not data.get("target_audience"):
        errors.append("Target audience is required")
    elif data["target_audience"] not in TARGET_AUDIENCES:
        errors.append("Target audience must be one of " + ", ".join(TARGET_AUDIENCES))

    return errors
