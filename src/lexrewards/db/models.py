"""ORM models for the engagement engine.

Counters on these tables are only ever changed with single
``UPDATE ... SET col = col + :n`` statements, never read-modify-write,
so concurrent requests for the same user cannot lose an update.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lexrewards.db.base import Base, BigIntPK, JSONType


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Website account as seen by the engagement engine."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    show_on_leaderboard: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    lifetime_spend: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    gamification: Mapped[UserGamification | None] = relationship(
        "UserGamification", back_populates="user", uselist=False
    )


# ---------------------------------------------------------------------------
# XP
# ---------------------------------------------------------------------------


class XPLedger(Base):
    """Append-only XP transaction log with idempotency key."""

    __tablename__ = "xp_ledger"
    __table_args__ = (
        Index("idx_xp_ledger_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="earn", server_default="earn")
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reward_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserGamification(Base):
    """Denormalized XP balances: one row per user, O(1) reads."""

    __tablename__ = "user_gamification"
    __table_args__ = (
        CheckConstraint("total_xp - redeemed_xp - expired_xp >= 0", name="ck_user_gamification_available"),
    )

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    total_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    redeemed_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    expired_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    level_title: Mapped[str] = mapped_column(String(64), nullable=False, default="Newcomer", server_default="Newcomer")
    achievements_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="gamification")


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------


class StreakState(Base):
    """Daily activity streak with freeze-token pool."""

    __tablename__ = "streak_states"
    __table_args__ = (
        CheckConstraint("freeze_tokens >= 0 AND freeze_tokens <= 3", name="ck_streak_freeze_tokens"),
        Index("idx_streak_states_current", "current_streak"),
    )

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    freeze_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    auto_use_freeze: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    frozen_through: Mapped[date | None] = mapped_column(Date, nullable=True)
    streak_started_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_scanned_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StreakEvent(Base):
    """Audit trail of streak transitions."""

    __tablename__ = "streak_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    streak_day: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------


class LeaderboardSnapshot(Base):
    """Ranked standings for one period; replaced wholesale on each run."""

    __tablename__ = "leaderboard_snapshots"
    __table_args__ = (
        UniqueConstraint("period_type", "period_start", "user_id", name="lb_snapshots_period_user_key"),
        UniqueConstraint("period_type", "period_start", "rank", name="lb_snapshots_period_rank_key"),
        Index("idx_lb_snapshots_type_computed", "period_type", "computed_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    xp_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    xp_earned_in_period: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    achievements_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class Challenge(Base):
    """Published challenge definition. Read-only to the engine."""

    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    requirements: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ChallengeProgress(Base):
    """Per-user progress towards one challenge."""

    __tablename__ = "challenge_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="challenge_progress_user_challenge_key"),
        CheckConstraint("progress >= 0 AND progress <= target", name="ck_challenge_progress_bounds"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    challenge_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    target: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_progress", server_default="in_progress")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    challenge: Mapped[Challenge] = relationship("Challenge", lazy="joined")


# ---------------------------------------------------------------------------
# Wishlist
# ---------------------------------------------------------------------------


class WishlistItem(Base):
    """A product a user intends to buy later."""

    __tablename__ = "wishlist_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="wishlist_items_user_product_key"),
        Index("idx_wishlist_items_product", "product_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[str] = mapped_column(String(128), nullable=False)
    product_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    price_when_added: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    alert_on_price_drop: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    alert_on_restock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    priority: Mapped[str] = mapped_column(String(8), nullable=False, default="medium", server_default="medium")
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WishlistAlert(Base):
    """Time-limited alert produced by the price sweep; read once."""

    __tablename__ = "wishlist_alerts"
    __table_args__ = (
        Index("idx_wishlist_alerts_user", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    wishlist_item_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("wishlist_items.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(String(256), nullable=False)
    discount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted user notification written by the delivery worker."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    subtype: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notification_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    dedupe_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
