"""Variable-ratio reward schedule.

Each award is classified into jackpot / rare / bonus / standard by a
weighted draw.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterable, Iterator

from lexrewards.config import get_settings
from lexrewards.gamification.schemas import RewardOutcome

# Checked rarest first; anything above the cumulative weight is "standard".
TIER_ORDER: tuple[str, ...] = ("jackpot", "rare", "bonus")

# Base XP per website activity
ACTIVITY_REWARDS: dict[str, dict] = {
    "page_view": {"base": 2, "label": "Page View"},
    "document_view": {"base": 5, "label": "Document View"},
    "return_visit": {"base": 10, "label": "Return Visit"},
    "newsletter_signup": {"base": 25, "label": "Newsletter Signup"},
    "intake_complete": {"base": 40, "label": "Intake Complete"},
    "document_purchase": {"base": 50, "label": "Document Purchase"},
    "consultation_booked": {"base": 75, "label": "Consultation Booked"},
}

# streak length -> XP multiplier (highest threshold reached wins)
STREAK_MULTIPLIERS: dict[int, float] = {
    3: 1.1,
    7: 1.25,
    14: 1.5,
    30: 2.0,
    60: 2.5,
    90: 3.0,
}


def get_streak_multiplier(streak: int) -> float:
    multiplier = 1.0
    for threshold, mult in sorted(STREAK_MULTIPLIERS.items()):
        if streak >= threshold:
            multiplier = mult
    return multiplier


def fixed_draws(values: Iterable[float]) -> Callable[[], float]:
    """Draw source that replays a fixed sequence (for deterministic tests and backfills)."""
    it: Iterator[float] = iter(values)
    return lambda: next(it)


class RewardRandomizer:
    """Classifies an XP award into a reinforcement tier."""

    def __init__(
        self,
        draw: Callable[[], float] | None = None,
        weights: dict[str, float] | None = None,
        multipliers: dict[str, int] | None = None,
    ) -> None:
        settings = get_settings()
        self._draw = draw or random.Random().random
        self.weights = weights if weights is not None else dict(settings.reward_weights)
        self.multipliers = multipliers if multipliers is not None else dict(settings.reward_multipliers)

        total = sum(self.weights.get(t, 0.0) for t in TIER_ORDER)
        if total > 1.0:
            raise ValueError(f"Reward weights sum to {total}, must be <= 1")

    def pick_tier(self) -> str:
        roll = self._draw()
        cumulative = 0.0
        for tier in TIER_ORDER:
            cumulative += self.weights.get(tier, 0.0)
            if roll < cumulative:
                return tier
        return "standard"

    def classify(self, base_xp: int) -> RewardOutcome:
        """Draw a tier and scale ``base_xp`` by its multiplier."""
        tier = self.pick_tier()
        multiplier = self.multipliers.get(tier, 1)
        amount = base_xp * multiplier

        if tier == "jackpot":
            message = f"JACKPOT! You earned {amount} XP!"
        elif tier == "rare":
            message = f"Rare reward! You earned {amount} XP!"
        elif tier == "bonus":
            message = f"Bonus! You earned {amount} XP!"
        else:
            message = f"You earned {amount} XP!"

        return RewardOutcome(
            reward_type=tier,  # type: ignore[arg-type]
            base_xp=base_xp,
            xp_awarded=amount,
            multiplier=multiplier,
            message=message,
        )
