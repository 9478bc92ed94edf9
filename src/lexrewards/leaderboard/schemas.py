"""Pydantic models for leaderboard snapshots."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel


class ComputeResult(BaseModel):
    period_type: str
    rankings_computed: int
    period_start: date
    period_end: date
    notifications: int = 0


class LeaderboardEntry(BaseModel):
    rank: int
    previous_rank: int | None = None
    rank_change: int = 0
    user_id: int
    display_name: str
    xp_earned_in_period: int
    xp_total: int
    level: int
    streak_days: int


class LeaderboardResponse(BaseModel):
    period_type: str
    period_start: date | None
    period_end: date | None
    computed_at: datetime | None
    entries: list[LeaderboardEntry]
    total: int


class UserRankResponse(BaseModel):
    period_type: str
    rank: int
    xp_earned_in_period: int
    total: int
    percentile: float
