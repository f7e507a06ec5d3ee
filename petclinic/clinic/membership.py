"""Customer membership tiers driven by yearly spending."""

from __future__ import annotations

BASIC = "Cơ bản"
LOYAL = "Thân thiết"
VIP = "VIP"

VALID_MEMBERSHIP_LEVELS = (BASIC, LOYAL, VIP)
DEFAULT_MEMBERSHIP_LEVEL = BASIC

# Thresholds in VND of yearly spending.
VIP_UPGRADE = 12_000_000
VIP_MAINTAIN = 8_000_000
LOYAL_UPGRADE = 5_000_000
LOYAL_MAINTAIN = 3_000_000

_ICONS = {BASIC: "🥉", LOYAL: "🥈", VIP: "🥇"}


def is_valid_membership_level(level: str) -> bool:
    return level in VALID_MEMBERSHIP_LEVELS


def membership_rank(level: str) -> int:
    """Return 1, 2 or 3 for basic, loyal and VIP. Unknown levels rank as basic."""

    if level == VIP:
        return 3
    if level == LOYAL:
        return 2
    return 1


def calculate_membership_level(yearly_spending: float) -> str:
    """Return the tier earned by ``yearly_spending``.

    Thresholds are inclusive: spending exactly ``VIP_UPGRADE`` is VIP.
    """

    if yearly_spending >= VIP_UPGRADE:
        return VIP
    if yearly_spending >= LOYAL_UPGRADE:
        return LOYAL
    return BASIC


def next_tier_info(current_level: str, current_spending: float) -> dict | None:
    """Return the next tier and the spending still needed to reach it.

    ``amount_needed`` is not clamped and goes negative once the customer has
    already spent past the threshold. VIP has no next tier.
    """

    if current_level == VIP:
        return None
    if current_level == LOYAL:
        return {"next_tier": VIP, "amount_needed": VIP_UPGRADE - current_spending}
    return {"next_tier": LOYAL, "amount_needed": LOYAL_UPGRADE - current_spending}


def determine_membership_level(current_level: str, yearly_spending: float) -> str:
    """Review a customer's tier against the upgrade and maintenance thresholds.

    Upgrade thresholds are checked first, so a VIP customer spending between
    ``LOYAL_UPGRADE`` and ``VIP_UPGRADE`` is reviewed to loyal. Below
    ``LOYAL_UPGRADE`` a VIP also drops to loyal and a loyal customer needs
    ``LOYAL_MAINTAIN`` to stay.
    """

    if yearly_spending >= VIP_UPGRADE:
        return VIP
    if yearly_spending >= LOYAL_UPGRADE:
        return LOYAL
    if current_level == VIP:
        return VIP if yearly_spending >= VIP_MAINTAIN else LOYAL
    if current_level == LOYAL and yearly_spending >= LOYAL_MAINTAIN:
        return LOYAL
    return BASIC


def next_level_requirement(current_level: str, yearly_spending: float) -> dict:
    if current_level == VIP:
        return {
            "next_level": None,
            "required_spending": 0,
            "remaining_amount": 0,
            "message": "Bạn đang ở cấp độ cao nhất!",
        }
    if current_level == LOYAL:
        next_level, required = VIP, VIP_UPGRADE
    else:
        next_level, required = LOYAL, LOYAL_UPGRADE
    remaining = max(0, required - yearly_spending)
    return {
        "next_level": next_level,
        "required_spending": required,
        "remaining_amount": remaining,
        "message": f"Chi tiêu thêm {remaining:,.0f} VNĐ để đạt {next_level}",
    }


def membership_display(level: str) -> str:
    return f"{_ICONS.get(level, _ICONS[BASIC])} {level}"


def is_eligible_for_promotion(customer_level: str, required_level: str) -> bool:
    """``required_level`` is ``"all"`` or one of the membership levels."""

    if required_level == "all":
        return True
    return membership_rank(customer_level) >= membership_rank(required_level)


__all__ = [
    "BASIC",
    "DEFAULT_MEMBERSHIP_LEVEL",
    "LOYAL",
    "LOYAL_MAINTAIN",
    "LOYAL_UPGRADE",
    "VALID_MEMBERSHIP_LEVELS",
    "VIP",
    "VIP_MAINTAIN",
    "VIP_UPGRADE",
    "calculate_membership_level",
    "determine_membership_level",
    "is_eligible_for_promotion",
    "is_valid_membership_level",
    "membership_display",
    "membership_rank",
    "next_level_requirement",
    "next_tier_info",
]
