"""Daily streak tracking: check-ins, freeze tokens, milestones and the nightly scan.

A streak survives as long as each check-in lands within 48 hours of the
previous one (or of the end of a frozen day). The nightly scan handles
users who stopped checking in: it spends a freeze token when one is
available, warns when the streak is about to lapse, and otherwise resets.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.config import get_settings
from lexrewards.db.models import StreakEvent, StreakState
from lexrewards.exceptions import NoFreezeTokensError, UserNotFoundError
from lexrewards.gamification.schemas import (
    FreezeResult,
    ScanSummary,
    StreakMilestone,
    StreakStatus,
    StreakUpdate,
)
from lexrewards.gamification.xp_service import grant_xp
from lexrewards.notifications.notifier import Notifier, emit_all
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import as_utc, local_date, reference_midnight, start_of_day, utcnow

logger = structlog.get_logger()

# streak length in days -> XP reward
STREAK_MILESTONES: dict[int, int] = {
    7: 200,
    14: 500,
    30: 1000,
    60: 2000,
    90: 5000,
    180: 10000,
    365: 25000,
}

MAX_FREEZE_TOKENS = 3
STREAK_WINDOW = timedelta(hours=48)
AT_RISK_AFTER = timedelta(hours=20)


def milestone_key(user_id: int, started_on: date | None, days: int) -> str:
    """Idempotency key shared by the check-in path and the nightly scan."""
    lifetime = started_on.isoformat() if started_on else "unknown"
    return f"streak_milestone:{user_id}:{lifetime}:{days}"


def get_next_milestone(current_streak: int) -> StreakMilestone | None:
    settings = get_settings()
    for days, xp in sorted(STREAK_MILESTONES.items()):
        if days > current_streak:
            return StreakMilestone(
                days=days,
                xp_reward=xp,
                freeze_token=days in settings.freeze_token_milestones,
            )
    return None


def streak_anchor(state: StreakState) -> datetime | None:
    """Instant the 48h window counts from: last activity, or the end of a frozen day."""
    anchor = as_utc(state.last_activity_at) if state.last_activity_at else None
    if state.frozen_through is not None:
        frozen_end = start_of_day(state.frozen_through + timedelta(days=1))
        if anchor is None or frozen_end > anchor:
            anchor = frozen_end
    return anchor


def _effective_last_day(state: StreakState) -> date | None:
    last_day = local_date(state.last_activity_at) if state.last_activity_at else None
    if state.frozen_through is not None and (last_day is None or state.frozen_through > last_day):
        last_day = state.frozen_through
    return last_day


async def _load_state(db: AsyncSession, user_id: int) -> StreakState | None:
    result = await db.execute(
        select(StreakState)
        .where(StreakState.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _require_state(db: AsyncSession, user_id: int) -> StreakState:
    state = await _load_state(db, user_id)
    if state is None:
        raise UserNotFoundError("No streak for user", user_id=user_id)
    return state


def _log_event(db: AsyncSession, user_id: int, event_type: str, streak_day: int, now: datetime, reason: str | None = None) -> None:
    db.add(StreakEvent(
        user_id=user_id,
        event_type=event_type,
        streak_day=streak_day,
        reason=reason,
        created_at=now,
    ))


async def _award_milestone(
    db: AsyncSession,
    user_id: int,
    started_on: date | None,
    days: int,
    outbox: list[NotificationRequest],
    now: datetime,
) -> StreakMilestone | None:
    """Pay a milestone once per streak lifetime. Returns None if already paid."""
    xp = STREAK_MILESTONES.get(days)
    if xp is None:
        return None

    key = milestone_key(user_id, started_on, days)
    granted = await grant_xp(
        db, user_id, xp, "streak_milestone",
        str(days),
        f"{days}-day streak milestone",
        key,
        outbox=outbox,
        now=now,
    )
    if not granted:
        return None

    freeze_token = days in get_settings().freeze_token_milestones
    _log_event(db, user_id, "streak_milestone", days, now, reason=f"+{xp} XP")
    if freeze_token:
        # Capped: a full wallet keeps its tokens and nothing is granted
        granted_token = await db.execute(
            update(StreakState)
            .where(StreakState.user_id == user_id, StreakState.freeze_tokens < MAX_FREEZE_TOKENS)
            .values(freeze_tokens=StreakState.freeze_tokens + 1)
        )
        if granted_token.rowcount == 1:
            _log_event(db, user_id, "freeze_token_granted", days, now, reason=f"{days}-day milestone")

    message = f"{days}-day streak! +{xp} XP"
    if freeze_token:
        message += " and a streak freeze"
    outbox.append(NotificationRequest(
        user_id=user_id,
        subtype="streak_milestone",
        title="Streak Milestone",
        message=message,
        metadata={"days": days, "xp_reward": xp, "freeze_token": freeze_token},
        dedupe_key=key,
    ))
    return StreakMilestone(days=days, xp_reward=xp, freeze_token=freeze_token)


async def update_streak(
    db: AsyncSession,
    user_id: int,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> StreakUpdate:
    """Record a check-in.

    At most one increment per calendar day. The write is guarded on the
    ``last_activity_at`` value that was read, so two concurrent check-ins
    for the same user cannot both increment.
    """
    now = as_utc(now) if now else utcnow()
    today = local_date(now)
    outbox: list[NotificationRequest] = []

    state = await _load_state(db, user_id)
    if state is None:
        try:
            async with db.begin_nested():
                db.add(StreakState(
                    user_id=user_id,
                    current_streak=1,
                    longest_streak=1,
                    last_activity_at=now,
                    streak_started_on=today,
                    updated_at=now,
                ))
                _log_event(db, user_id, "streak_started", 1, now)
                await db.flush()
        except IntegrityError:
            # Either a concurrent first check-in created the row, or the user does not exist
            state = await _load_state(db, user_id)
            if state is None:
                await db.rollback()
                raise UserNotFoundError("User not found", user_id=user_id) from None
        else:
            await db.commit()
            logger.info("streak_started", user_id=user_id)
            return StreakUpdate(
                updated=True,
                current_streak=1,
                longest_streak=1,
                freeze_tokens=0,
                message="Streak started!",
            )

    if state.last_activity_at is not None and local_date(state.last_activity_at) == today:
        return StreakUpdate(
            updated=False,
            current_streak=state.current_streak,
            longest_streak=state.longest_streak,
            freeze_tokens=state.freeze_tokens,
            message="Already checked in today",
        )

    anchor = streak_anchor(state)
    continues = (
        state.current_streak > 0
        and anchor is not None
        and now - anchor < STREAK_WINDOW
    )

    if continues:
        new_streak = state.current_streak + 1
        started_on = state.streak_started_on
        values = {"current_streak": new_streak}
        event_type, message = "streak_continued", f"{new_streak}-day streak!"
    else:
        new_streak = 1
        started_on = today
        values = {"current_streak": 1, "streak_started_on": today, "frozen_through": None}
        event_type = "streak_started" if state.current_streak == 0 else "streak_reset"
        message = "Streak started!" if state.current_streak == 0 else "Streak reset. Day 1!"

    longest = max(state.longest_streak, new_streak)
    guard = (
        StreakState.last_activity_at == state.last_activity_at
        if state.last_activity_at is not None
        else StreakState.last_activity_at.is_(None)
    )

    try:
        result = await db.execute(
            update(StreakState)
            .where(StreakState.user_id == user_id, guard)
            .values(**values, longest_streak=longest, last_activity_at=now, updated_at=now)
        )
        if result.rowcount == 0:
            await db.rollback()
            state = await _require_state(db, user_id)
            return StreakUpdate(
                updated=False,
                current_streak=state.current_streak,
                longest_streak=state.longest_streak,
                freeze_tokens=state.freeze_tokens,
                message="Already checked in today",
            )

        _log_event(db, user_id, event_type, new_streak, now)
        milestones: list[StreakMilestone] = []
        if continues:
            milestone = await _award_milestone(db, user_id, started_on, new_streak, outbox, now)
            if milestone is not None:
                milestones.append(milestone)

        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error("streak_update_failed", user_id=user_id, exc_info=True)
        raise

    await emit_all(notifier, outbox)
    state = await _require_state(db, user_id)

    logger.info("streak_updated", user_id=user_id, current_streak=new_streak, event=event_type)
    return StreakUpdate(
        updated=True,
        current_streak=state.current_streak,
        longest_streak=state.longest_streak,
        freeze_tokens=state.freeze_tokens,
        milestones_earned=milestones,
        message=message,
    )


async def _scan_user(
    db: AsyncSession,
    user_id: int,
    today: date,
    outbox: list[NotificationRequest],
    now: datetime,
) -> str:
    """Evaluate one claimed streak. Returns the outcome name."""
    state = await _require_state(db, user_id)
    yesterday = today - timedelta(days=1)
    last_day = _effective_last_day(state)

    if last_day is not None and last_day >= yesterday:
        milestone = await _award_milestone(
            db, user_id, state.streak_started_on, state.current_streak, outbox, now
        )
        return "milestone" if milestone else "active"

    if state.auto_use_freeze and state.freeze_tokens > 0:
        result = await db.execute(
            update(StreakState)
            .where(StreakState.user_id == user_id, StreakState.freeze_tokens > 0)
            .values(
                freeze_tokens=StreakState.freeze_tokens - 1,
                frozen_through=yesterday,
                updated_at=now,
            )
        )
        if result.rowcount == 1:
            remaining = state.freeze_tokens - 1
            _log_event(db, user_id, "freeze_token_used", state.current_streak, now, reason="auto")
            _log_event(db, user_id, "streak_frozen", state.current_streak, now, reason=yesterday.isoformat())
            outbox.append(NotificationRequest(
                user_id=user_id,
                subtype="streak_frozen",
                title="Streak Frozen",
                message=(
                    f"A freeze token saved your {state.current_streak}-day streak. "
                    f"{remaining} left."
                ),
                metadata={"current_streak": state.current_streak, "freeze_tokens": remaining},
                dedupe_key=f"streak_frozen:{user_id}:{yesterday.isoformat()}",
            ))
            return "frozen"

    if last_day == today - timedelta(days=2):
        outbox.append(NotificationRequest(
            user_id=user_id,
            subtype="streak_at_risk",
            title="Streak At Risk",
            message=f"Check in today to keep your {state.current_streak}-day streak",
            metadata={"current_streak": state.current_streak},
            dedupe_key=f"streak_at_risk:{user_id}:{today.isoformat()}",
        ))
        return "at_risk"

    await db.execute(
        update(StreakState)
        .where(StreakState.user_id == user_id)
        .values(current_streak=0, frozen_through=None, updated_at=now)
    )
    _log_event(db, user_id, "streak_broken", state.current_streak, now, reason="inactive")
    outbox.append(NotificationRequest(
        user_id=user_id,
        subtype="streak_broken",
        title="Streak Broken",
        message=f"Your {state.current_streak}-day streak has ended.",
        metadata={"streak_length": state.current_streak},
        dedupe_key=f"streak_broken:{user_id}:{today.isoformat()}",
    ))
    return "broken"


async def run_daily_scan(
    db: AsyncSession,
    notifier: Notifier | None = None,
    reference_time: datetime | None = None,
) -> ScanSummary:
    """Nightly evaluation of every live streak.

    Each row is claimed for the day with a conditional UPDATE on
    ``last_scanned_on``, so re-running the scan for the same day skips
    users that were already handled. Users are processed in their own
    SAVEPOINT; one failure is logged and counted without aborting the batch.
    """
    now = as_utc(reference_time) if reference_time else utcnow()
    today = local_date(reference_midnight(now))
    summary = ScanSummary()
    outbox: list[NotificationRequest] = []

    user_ids = (await db.execute(
        select(StreakState.user_id)
        .where(StreakState.current_streak > 0)
        .order_by(StreakState.user_id)
    )).scalars().all()

    for user_id in user_ids:
        user_outbox: list[NotificationRequest] = []
        try:
            async with db.begin_nested():
                claimed = await db.execute(
                    update(StreakState)
                    .where(
                        StreakState.user_id == user_id,
                        StreakState.current_streak > 0,
                        or_(StreakState.last_scanned_on.is_(None), StreakState.last_scanned_on < today),
                    )
                    .values(last_scanned_on=today)
                )
                if claimed.rowcount == 0:
                    outcome = "skipped"
                else:
                    outcome = await _scan_user(db, user_id, today, user_outbox, now)
        except Exception:
            summary.errors += 1
            logger.error("streak_scan_user_failed", user_id=user_id, exc_info=True)
            continue

        outbox.extend(user_outbox)
        if outcome == "skipped":
            summary.skipped += 1
            continue
        summary.processed += 1
        if outcome == "broken":
            summary.broken += 1
        elif outcome == "frozen":
            summary.frozen += 1
        elif outcome == "at_risk":
            summary.at_risk += 1
        elif outcome == "milestone":
            summary.milestones_reached += 1

    await db.commit()
    await emit_all(notifier, outbox)

    logger.info("streak_scan_complete", day=today.isoformat(), **summary.model_dump())
    return summary


async def use_freeze_token(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> FreezeResult:
    """Spend a token to protect today's check-in."""
    now = as_utc(now) if now else utcnow()
    today = local_date(now)

    result = await db.execute(
        update(StreakState)
        .where(StreakState.user_id == user_id, StreakState.freeze_tokens > 0)
        .values(
            freeze_tokens=StreakState.freeze_tokens - 1,
            frozen_through=today,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NoFreezeTokensError("No freeze tokens available", user_id=user_id)

    state = await _require_state(db, user_id)
    _log_event(db, user_id, "freeze_token_used", state.current_streak, now, reason="manual")
    await db.commit()

    anchor = streak_anchor(state) or start_of_day(today + timedelta(days=1))
    logger.info("freeze_token_used", user_id=user_id, remaining=state.freeze_tokens)
    return FreezeResult(
        freeze_tokens_remaining=state.freeze_tokens,
        protected_until=anchor + STREAK_WINDOW,
        message=f"Streak protected. {state.freeze_tokens} freeze tokens left.",
    )


async def set_auto_use_freeze(db: AsyncSession, user_id: int, enabled: bool) -> bool:
    """Toggle automatic token use. Returns False if the user has no streak yet."""
    result = await db.execute(
        update(StreakState)
        .where(StreakState.user_id == user_id)
        .values(auto_use_freeze=enabled)
    )
    await db.commit()
    return result.rowcount == 1


def _demo_status(now: datetime) -> StreakStatus:
    last_activity = now - timedelta(hours=3)
    return StreakStatus(
        current_streak=7,
        longest_streak=7,
        freeze_tokens=2,
        max_freeze_tokens=MAX_FREEZE_TOKENS,
        auto_use_freeze=True,
        last_activity_at=last_activity,
        streak_at_risk=False,
        hours_until_loss=45,
        next_milestone=get_next_milestone(7),
        is_demo=True,
    )


async def get_streak_status(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> StreakStatus:
    """Current streak summary for display.

    Falls back to a sample state flagged ``is_demo`` when the store is
    unavailable, so the widget can still render.
    """
    now = as_utc(now) if now else utcnow()
    try:
        state = await _load_state(db, user_id)
    except SQLAlchemyError:
        logger.warning("streak_status_unavailable", user_id=user_id, exc_info=True)
        return _demo_status(now)

    if state is None:
        return StreakStatus(
            current_streak=0,
            longest_streak=0,
            freeze_tokens=0,
            max_freeze_tokens=MAX_FREEZE_TOKENS,
            auto_use_freeze=True,
            last_activity_at=None,
            streak_at_risk=False,
            hours_until_loss=0,
            next_milestone=get_next_milestone(0),
        )

    at_risk = False
    hours_until_loss = 0
    anchor = streak_anchor(state)
    if state.current_streak > 0 and anchor is not None:
        elapsed = now - anchor
        at_risk = AT_RISK_AFTER <= elapsed < STREAK_WINDOW
        hours_until_loss = max(0, int((STREAK_WINDOW - elapsed).total_seconds() // 3600))

    return StreakStatus(
        current_streak=state.current_streak,
        longest_streak=state.longest_streak,
        freeze_tokens=state.freeze_tokens,
        max_freeze_tokens=MAX_FREEZE_TOKENS,
        auto_use_freeze=state.auto_use_freeze,
        last_activity_at=as_utc(state.last_activity_at) if state.last_activity_at else None,
        streak_at_risk=at_risk,
        hours_until_loss=hours_until_loss,
        next_milestone=get_next_milestone(state.current_streak),
    )
