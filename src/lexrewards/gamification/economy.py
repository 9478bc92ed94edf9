"""XP economy calculator: pure functions over ledger totals.

Nothing here touches the database; callers pass in the balances they read
from ``user_gamification``.
"""

from __future__ import annotations

import math
from decimal import ROUND_FLOOR, Decimal

from lexrewards.config import get_settings
from lexrewards.gamification.level_thresholds import DISCOUNT_TIERS, compute_level, compute_tier
from lexrewards.gamification.rewards import RewardRandomizer
from lexrewards.gamification.schemas import (
    NearMissMessage,
    NextDiscountTier,
    PurchaseXPOutcome,
    RedeemableXP,
    UserXPState,
)


def calculate_user_xp_state(
    total_xp: int,
    redeemed_xp: int,
    expired_xp: int,
    lifetime_spend: float,
) -> UserXPState:
    """Derive level, tier and spendable balance from raw ledger totals."""
    lifetime_xp = total_xp
    level_info = compute_level(lifetime_xp)
    tier = compute_tier(float(lifetime_spend), lifetime_xp)

    return UserXPState(
        total_xp=total_xp,
        available_xp=max(0, total_xp - redeemed_xp - expired_xp),
        lifetime_xp=lifetime_xp,
        redeemed_xp=redeemed_xp,
        expired_xp=expired_xp,
        level=level_info["level"],
        level_title=level_info["title"],
        xp_to_next_level=level_info["xp_to_next_level"],
        progress_to_next_level=level_info["progress"],
        tier=tier["tier"],
        tier_discount=tier["discount"],
    )


def xp_to_discount(xp: int, rate: int | None = None) -> int:
    """Whole currency units an XP amount is worth."""
    rate = rate or get_settings().xp_to_currency_rate
    return math.floor(xp / rate)


def discount_to_xp(discount: int, rate: int | None = None) -> int:
    rate = rate or get_settings().xp_to_currency_rate
    return discount * rate


def get_next_discount_tier(available_xp: int) -> NextDiscountTier:
    """Smallest discount threshold strictly above the balance, and the gap to it."""
    for tier in DISCOUNT_TIERS:
        if available_xp < tier["xp"]:
            xp_needed = tier["xp"] - available_xp
            return NextDiscountTier(
                next_tier_xp=tier["xp"],
                discount=tier["discount"],
                label=tier["label"],
                xp_needed=xp_needed,
                message=f"Just {xp_needed} XP to unlock {tier['label']}!",
            )

    return NextDiscountTier(
        next_tier_xp=None,
        discount=0,
        label=None,
        xp_needed=0,
        message="You've unlocked maximum discount potential!",
    )


def calculate_max_redeemable_xp(order_total: float, available_xp: int) -> RedeemableXP:
    """Largest redemption allowed for an order, honoring the minimum and the per-order cap."""
    settings = get_settings()

    if available_xp < settings.min_redemption_xp:
        min_discount = xp_to_discount(settings.min_redemption_xp)
        return RedeemableXP(
            max_xp=0,
            max_discount=0,
            reason=(
                f"Minimum {settings.min_redemption_xp} XP required to redeem "
                f"(${min_discount} off)"
            ),
        )

    max_by_order = math.floor(order_total * settings.max_discount_percentage / 100)
    max_by_balance = xp_to_discount(available_xp)
    max_discount = min(max_by_order, max_by_balance)
    max_xp = discount_to_xp(max_discount)

    if max_discount < max_by_balance:
        return RedeemableXP(
            max_xp=max_xp,
            max_discount=max_discount,
            reason=(
                f"Maximum {settings.max_discount_percentage}% discount applies "
                f"(${max_discount} off this order)"
            ),
        )

    return RedeemableXP(
        max_xp=max_xp,
        max_discount=max_discount,
        reason=f"You can redeem up to {max_xp} XP for ${max_discount} off",
    )


PURCHASE_BONUS_LABELS: dict[str, str] = {
    "jackpot": "JACKPOT!",
    "rare": "Super Bonus!",
    "bonus": "Bonus!",
}


def purchase_base_xp(purchase_amount: Decimal | float) -> int:
    """XP worth ``purchase_xp_rate`` of the amount, floored to whole XP."""
    settings = get_settings()
    xp = Decimal(str(purchase_amount)) * Decimal(str(settings.purchase_xp_rate)) * settings.xp_to_currency_rate
    return int(xp.to_integral_value(rounding=ROUND_FLOOR))


def calculate_purchase_xp(
    purchase_amount: Decimal | float,
    randomizer: RewardRandomizer | None = None,
) -> PurchaseXPOutcome:
    """XP for an order, with a chance of a 2x/3x/5x bonus.

    A $50.00 order at the default 10% rate is worth 500 XP before the bonus.
    """
    if randomizer is None:
        randomizer = RewardRandomizer(multipliers=dict(get_settings().purchase_reward_multipliers))
    outcome = randomizer.classify(purchase_base_xp(purchase_amount))

    label = PURCHASE_BONUS_LABELS.get(outcome.reward_type)
    if label:
        message = f"{label} You earned {outcome.xp_awarded} XP ({outcome.multiplier}x bonus!)"
    else:
        message = f"You earned {outcome.xp_awarded} XP for your purchase"

    return PurchaseXPOutcome(
        base_xp=outcome.base_xp,
        bonus_xp=outcome.xp_awarded - outcome.base_xp,
        total_xp=outcome.xp_awarded,
        reward_type=outcome.reward_type,
        multiplier=outcome.multiplier,
        message=message,
    )


def get_near_miss_message(
    current_xp: int,
    cart_total: Decimal | float,
    purchase_xp: int | None = None,
) -> NearMissMessage:
    """Checkout nudge: does this order unlock, or nearly unlock, the next discount tier?

    ``purchase_xp`` defaults to the order's XP before any bonus.
    """
    if purchase_xp is None:
        purchase_xp = purchase_base_xp(cart_total)
    window = get_settings().near_miss_xp_window
    potential_xp = current_xp + purchase_xp

    for tier in DISCOUNT_TIERS:
        if current_xp >= tier["xp"]:
            continue
        if potential_xp >= tier["xp"]:
            xp_needed = tier["xp"] - current_xp
            return NearMissMessage(
                has_near_miss=True,
                message=(
                    f"Complete this purchase to earn {purchase_xp} XP and unlock {tier['label']}! "
                    f"You need just {xp_needed} more XP."
                ),
                xp_needed=xp_needed,
                discount_unlocked=tier["discount"],
            )
        if tier["xp"] - potential_xp < window:
            xp_needed = tier["xp"] - potential_xp
            return NearMissMessage(
                has_near_miss=True,
                message=(
                    f"You're so close! Just {xp_needed} more XP after this purchase "
                    f"to unlock {tier['label']}!"
                ),
                xp_needed=xp_needed,
                discount_unlocked=tier["discount"],
            )
        break

    return NearMissMessage(
        has_near_miss=False,
        message=f"Complete this purchase to earn {purchase_xp} XP!",
        xp_needed=0,
        discount_unlocked=0,
    )
