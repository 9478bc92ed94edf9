"""Level, membership tier and discount tier tables.

These values MUST match the frontend XP widget and the checkout
redemption panel exactly.
"""

from __future__ import annotations

LEVEL_THRESHOLDS: list[dict] = [
    {"level": 1, "title": "Newcomer", "cumulative": 0},
    {"level": 2, "title": "Explorer", "cumulative": 500},
    {"level": 3, "title": "Practitioner", "cumulative": 1500},
    {"level": 4, "title": "Professional", "cumulative": 3000},
    {"level": 5, "title": "Expert", "cumulative": 5000},
    {"level": 6, "title": "Master", "cumulative": 8000},
    {"level": 7, "title": "Authority", "cumulative": 12000},
    {"level": 8, "title": "Legend", "cumulative": 18000},
    {"level": 9, "title": "Icon", "cumulative": 25000},
    {"level": 10, "title": "Transcendent", "cumulative": 35000},
]

# Ordered lowest to highest. A tier is reached by EITHER spend or XP.
MEMBERSHIP_TIERS: list[dict] = [
    {"tier": "bronze", "label": "Bronze", "min_spend": 0, "min_xp": 0, "discount": 0},
    {"tier": "silver", "label": "Silver", "min_spend": 500, "min_xp": 5000, "discount": 10},
    {"tier": "gold", "label": "Gold", "min_spend": 1500, "min_xp": 15000, "discount": 15},
    {"tier": "platinum", "label": "Platinum", "min_spend": 3000, "min_xp": 30000, "discount": 20},
]

DISCOUNT_TIERS: list[dict] = [
    {"xp": 500, "discount": 5, "label": "$5 off"},
    {"xp": 1000, "discount": 10, "label": "$10 off"},
    {"xp": 1500, "discount": 15, "label": "$15 off"},
    {"xp": 2000, "discount": 20, "label": "$20 off"},
    {"xp": 2500, "discount": 25, "label": "$25 off"},
    {"xp": 5000, "discount": 50, "label": "$50 off"},
]


def compute_level(total_xp: int) -> dict:
    """Compute level info from lifetime XP."""
    current = LEVEL_THRESHOLDS[0]
    next_level: dict | None = None

    for i, entry in enumerate(LEVEL_THRESHOLDS):
        if total_xp >= entry["cumulative"]:
            current = entry
            next_level = LEVEL_THRESHOLDS[i + 1] if i + 1 < len(LEVEL_THRESHOLDS) else None

    if next_level is None:
        return {
            "level": current["level"],
            "title": current["title"],
            "xp_to_next_level": 0,
            "progress": 1.0,
            "next_level": None,
        }

    span = next_level["cumulative"] - current["cumulative"]
    into = total_xp - current["cumulative"]
    return {
        "level": current["level"],
        "title": current["title"],
        "xp_to_next_level": next_level["cumulative"] - total_xp,
        "progress": into / span,
        "next_level": next_level["level"],
    }


def compute_tier(lifetime_spend: float, lifetime_xp: int) -> dict:
    """Highest membership tier reached by lifetime spend or lifetime XP."""
    by_spend = 0
    by_xp = 0
    for i, tier in enumerate(MEMBERSHIP_TIERS):
        if lifetime_spend >= tier["min_spend"]:
            by_spend = i
        if lifetime_xp >= tier["min_xp"]:
            by_xp = i
    return MEMBERSHIP_TIERS[max(by_spend, by_xp)]
