"""Leaderboard compute engine: ranked period snapshots in PostgreSQL.

Each run replaces the snapshot rows for one ``(period_type, period_start)``
in a single transaction, so readers see either the old standings or the
new ones.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.config import get_settings
from lexrewards.db.models import LeaderboardSnapshot, StreakState, User, UserGamification, XPLedger
from lexrewards.leaderboard.schemas import (
    ComputeResult,
    LeaderboardEntry,
    LeaderboardResponse,
    UserRankResponse,
)
from lexrewards.notifications.notifier import Notifier, emit_all
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import as_utc, first_of_next_month, get_sunday, local_date, start_of_day, utcnow

logger = structlog.get_logger()

PERIOD_TYPES = ("daily", "weekly", "monthly", "alltime")
EPOCH = date(1970, 1, 1)


def get_period_bounds(period_type: str, reference_time: datetime | None = None) -> tuple[date, date]:
    """Calendar bounds ``[start, end)`` of the period containing ``reference_time``."""
    if reference_time is None:
        reference_time = utcnow()
    today = local_date(reference_time)

    if period_type == "daily":
        return today, today + timedelta(days=1)
    elif period_type == "weekly":
        start = get_sunday(today)
        return start, start + timedelta(days=7)
    elif period_type == "monthly":
        start = today.replace(day=1)
        return start, first_of_next_month(start)
    elif period_type == "alltime":
        return EPOCH, today + timedelta(days=1)
    raise ValueError(f"Unknown period: {period_type}")


async def _previous_ranks(db: AsyncSession, period_type: str) -> dict[int, int]:
    """Ranks from the most recently computed snapshot of this period type."""
    latest = (await db.execute(
        select(LeaderboardSnapshot.period_start)
        .where(LeaderboardSnapshot.period_type == period_type)
        .order_by(LeaderboardSnapshot.computed_at.desc())
        .limit(1)
    )).scalar_one_or_none()
    if latest is None:
        return {}

    result = await db.execute(
        select(LeaderboardSnapshot.user_id, LeaderboardSnapshot.rank).where(
            LeaderboardSnapshot.period_type == period_type,
            LeaderboardSnapshot.period_start == latest,
        )
    )
    return {row.user_id: row.rank for row in result}


async def _standings(db: AsyncSession, start: date, end: date) -> list:
    """Visible users with their period XP, best first.

    Ties keep ascending user-id order (the sort is stable).
    """
    period_xp = (
        select(XPLedger.user_id, func.sum(XPLedger.amount).label("xp"))
        .where(
            XPLedger.kind == "earn",
            XPLedger.created_at >= start_of_day(start),
            XPLedger.created_at < start_of_day(end),
        )
        .group_by(XPLedger.user_id)
        .subquery()
    )

    result = await db.execute(
        select(
            User.id.label("user_id"),
            UserGamification.total_xp,
            UserGamification.level,
            UserGamification.achievements_count,
            func.coalesce(StreakState.current_streak, 0).label("streak_days"),
            func.coalesce(period_xp.c.xp, 0).label("period_xp"),
        )
        .join(UserGamification, UserGamification.user_id == User.id)
        .outerjoin(StreakState, StreakState.user_id == User.id)
        .outerjoin(period_xp, period_xp.c.user_id == User.id)
        .where(User.show_on_leaderboard.is_(True))
        .order_by(User.id)
    )
    rows = list(result)
    rows.sort(key=lambda r: int(r.period_xp), reverse=True)
    return rows


async def compute_leaderboard(
    db: AsyncSession,
    notifier: Notifier | None = None,
    period_type: str = "daily",
    reference_time: datetime | None = None,
) -> ComputeResult:
    """Rank every visible user for one period and replace its snapshot.

    Emits ``rank_up`` for users who climbed since the previous snapshot of
    this period type, and ``near_miss`` for users just outside the top
    cutoff.
    """
    settings = get_settings()
    now = as_utc(reference_time) if reference_time else utcnow()
    start, end = get_period_bounds(period_type, now)

    try:
        previous = await _previous_ranks(db, period_type)
        rows = await _standings(db, start, end)

        await db.execute(
            delete(LeaderboardSnapshot).where(
                LeaderboardSnapshot.period_type == period_type,
                LeaderboardSnapshot.period_start == start,
            )
        )
        snapshots = [
            LeaderboardSnapshot(
                period_type=period_type,
                period_start=start,
                period_end=end,
                user_id=row.user_id,
                rank=rank,
                previous_rank=previous.get(row.user_id),
                xp_total=row.total_xp,
                xp_earned_in_period=int(row.period_xp),
                level=row.level,
                streak_days=row.streak_days,
                achievements_count=row.achievements_count,
                computed_at=now,
            )
            for rank, row in enumerate(rows, start=1)
        ]
        db.add_all(snapshots)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error("leaderboard_compute_failed", period_type=period_type, exc_info=True)
        raise

    cutoff = settings.leaderboard_top_cutoff
    window = settings.leaderboard_near_miss_window
    outbox: list[NotificationRequest] = []
    for snap in snapshots:
        if snap.previous_rank is not None and snap.rank < snap.previous_rank:
            delta = snap.previous_rank - snap.rank
            outbox.append(NotificationRequest(
                user_id=snap.user_id,
                type="competition",
                subtype="rank_up",
                title=f"Rank Up! #{snap.rank}",
                message=f"You moved up {delta} positions on the {period_type} leaderboard!",
                metadata={
                    "period_type": period_type,
                    "rank": snap.rank,
                    "previous_rank": snap.previous_rank,
                    "delta": delta,
                },
                dedupe_key=f"rank_up:{period_type}:{start.isoformat()}:{snap.user_id}:{snap.rank}",
            ))

        if cutoff < snap.rank <= cutoff + window:
            gap = snap.rank - cutoff
            plural = "s" if gap > 1 else ""
            outbox.append(NotificationRequest(
                user_id=snap.user_id,
                type="competition",
                subtype="near_miss",
                title=f"So Close! You're #{snap.rank}",
                message=f"Just {gap} more position{plural} to reach the Top {cutoff}!",
                metadata={
                    "period_type": period_type,
                    "rank": snap.rank,
                    "target_rank": cutoff,
                    "gap": gap,
                },
                dedupe_key=f"near_miss:{period_type}:{start.isoformat()}:{snap.user_id}:{snap.rank}",
            ))

    sent = await emit_all(notifier, outbox)
    logger.info(
        "leaderboard_computed",
        period_type=period_type,
        period_start=start.isoformat(),
        rankings=len(snapshots),
        notifications=sent,
    )
    return ComputeResult(
        period_type=period_type,
        rankings_computed=len(snapshots),
        period_start=start,
        period_end=end,
        notifications=sent,
    )


async def get_leaderboard(
    db: AsyncSession,
    period_type: str,
    reference_time: datetime | None = None,
    limit: int = 50,
) -> LeaderboardResponse:
    """Read the stored snapshot for the period containing ``reference_time``."""
    start, end = get_period_bounds(period_type, reference_time)

    total = (await db.execute(
        select(func.count()).select_from(LeaderboardSnapshot).where(
            LeaderboardSnapshot.period_type == period_type,
            LeaderboardSnapshot.period_start == start,
        )
    )).scalar_one()

    result = await db.execute(
        select(LeaderboardSnapshot, User.display_name)
        .join(User, User.id == LeaderboardSnapshot.user_id)
        .where(
            LeaderboardSnapshot.period_type == period_type,
            LeaderboardSnapshot.period_start == start,
        )
        .order_by(LeaderboardSnapshot.rank)
        .limit(limit)
    )

    entries = []
    computed_at = None
    for snap, display_name in result:
        computed_at = snap.computed_at
        entries.append(LeaderboardEntry(
            rank=snap.rank,
            previous_rank=snap.previous_rank,
            rank_change=(snap.previous_rank - snap.rank) if snap.previous_rank else 0,
            user_id=snap.user_id,
            display_name=display_name or f"Member-{snap.user_id}",
            xp_earned_in_period=snap.xp_earned_in_period,
            xp_total=snap.xp_total,
            level=snap.level,
            streak_days=snap.streak_days,
        ))

    return LeaderboardResponse(
        period_type=period_type,
        period_start=start if entries else None,
        period_end=end if entries else None,
        computed_at=as_utc(computed_at) if computed_at else None,
        entries=entries,
        total=total,
    )


async def get_user_rank(
    db: AsyncSession,
    period_type: str,
    user_id: int,
    reference_time: datetime | None = None,
) -> UserRankResponse:
    """A single user's standing in the current snapshot (rank 0 if unranked)."""
    start, _ = get_period_bounds(period_type, reference_time)
    base = (
        LeaderboardSnapshot.period_type == period_type,
        LeaderboardSnapshot.period_start == start,
    )

    total = (await db.execute(
        select(func.count()).select_from(LeaderboardSnapshot).where(*base)
    )).scalar_one()
    snap = (await db.execute(
        select(LeaderboardSnapshot).where(*base, LeaderboardSnapshot.user_id == user_id)
    )).scalar_one_or_none()

    if snap is None:
        return UserRankResponse(
            period_type=period_type, rank=0, xp_earned_in_period=0, total=total, percentile=0
        )

    return UserRankResponse(
        period_type=period_type,
        rank=snap.rank,
        xp_earned_in_period=snap.xp_earned_in_period,
        total=total,
        percentile=round(100 - (snap.rank / total * 100), 2) if total > 0 else 0,
    )
