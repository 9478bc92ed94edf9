"""Pydantic models for XP, reward and streak results."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field

RewardType = Literal["jackpot", "rare", "bonus", "standard"]


# --- XP ---


class UserXPState(BaseModel):
    total_xp: int
    available_xp: int
    lifetime_xp: int
    redeemed_xp: int
    expired_xp: int
    level: int
    level_title: str
    xp_to_next_level: int
    progress_to_next_level: float
    tier: str
    tier_discount: int


class NextDiscountTier(BaseModel):
    next_tier_xp: int | None
    discount: int
    label: str | None
    xp_needed: int
    message: str


class RedeemableXP(BaseModel):
    max_xp: int
    max_discount: int
    reason: str


class RewardOutcome(BaseModel):
    reward_type: RewardType
    base_xp: int
    xp_awarded: int
    multiplier: int
    message: str


class AwardResult(BaseModel):
    xp_awarded: int
    reward_type: RewardType
    total_xp: int
    message: str
    level: int
    level_up: bool = False
    duplicate: bool = False


class RedeemResult(BaseModel):
    xp_redeemed: int
    discount_amount: int
    remaining_xp: int
    message: str


class PurchaseXPOutcome(BaseModel):
    base_xp: int
    bonus_xp: int
    total_xp: int
    reward_type: RewardType
    multiplier: int
    message: str


class PurchaseAward(BaseModel):
    order_id: str
    xp_awarded: int
    base_xp: int
    reward_type: RewardType
    total_xp: int
    lifetime_spend: Decimal
    tier: str
    message: str
    level: int
    level_up: bool = False
    duplicate: bool = False


class NearMissMessage(BaseModel):
    has_near_miss: bool
    message: str
    xp_needed: int
    discount_unlocked: int


# --- Streak ---


class StreakMilestone(BaseModel):
    days: int
    xp_reward: int
    freeze_token: bool


class StreakUpdate(BaseModel):
    updated: bool
    current_streak: int
    longest_streak: int
    freeze_tokens: int
    milestones_earned: list[StreakMilestone] = []
    message: str | None = None


class StreakStatus(BaseModel):
    current_streak: int
    longest_streak: int
    freeze_tokens: int
    max_freeze_tokens: int
    auto_use_freeze: bool
    last_activity_at: datetime | None
    streak_at_risk: bool
    hours_until_loss: int
    next_milestone: StreakMilestone | None
    is_demo: bool = False


class FreezeResult(BaseModel):
    freeze_tokens_remaining: int
    protected_until: datetime
    message: str


class ScanSummary(BaseModel):
    processed: int = 0
    skipped: int = 0
    broken: int = 0
    frozen: int = 0
    at_risk: int = 0
    milestones_reached: int = 0
    errors: int = 0


# --- Requests ---


class AwardRequest(BaseModel):
    user_email: EmailStr
    activity_type: str
    # Retries with the same id are awarded once; also accepted as metadata["event_id"]
    event_id: str | None = Field(default=None, min_length=1, max_length=128)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RedeemRequest(BaseModel):
    user_id: int
    xp_to_redeem: int = Field(gt=0)
    order_id: str = Field(min_length=1)
    order_total: float = Field(gt=0)


class PurchaseXPRequest(BaseModel):
    user_id: int
    order_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class AutoFreezeRequest(BaseModel):
    enabled: bool
