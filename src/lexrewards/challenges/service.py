"""Challenge progress tracking driven by engagement events."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.challenges.schemas import ChallengeEventResult, EngagementEvent
from lexrewards.db.models import Challenge, ChallengeProgress
from lexrewards.exceptions import ChallengeNotFoundError, UserNotFoundError
from lexrewards.gamification.xp_service import grant_xp
from lexrewards.notifications.notifier import Notifier, emit_all
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import as_utc, utcnow

logger = structlog.get_logger()

# Challenge types a user is enrolled in automatically on the first matching event
AUTO_ENROLL_TYPES = ("daily", "weekly", "onboarding")


def matches_requirements(requirements: dict[str, Any] | None, event: EngagementEvent) -> bool:
    """True if the event counts towards a challenge.

    The event must match the required name or category, and every
    ``property_match`` pair must equal the event's property.
    """
    if not requirements:
        return False

    name = requirements.get("event_name")
    category = requirements.get("event_category")
    matched = bool(name and name == event.event_name) or bool(
        category and category == event.event_category
    )
    if not matched:
        return False

    for key, value in (requirements.get("property_match") or {}).items():
        if event.properties.get(key) != value:
            return False
    return True


def challenge_target(requirements: dict[str, Any] | None) -> int:
    count = (requirements or {}).get("count", 1)
    return max(1, int(count))


async def _enroll(db: AsyncSession, user_id: int, challenge: Challenge, now: datetime) -> bool:
    """Create the progress row. Returns False if the user was already enrolled."""
    try:
        async with db.begin_nested():
            db.add(ChallengeProgress(
                user_id=user_id,
                challenge_id=challenge.id,
                progress=0,
                target=challenge_target(challenge.requirements),
                status="in_progress",
                started_at=now,
            ))
            await db.flush()
    except IntegrityError:
        # Either already enrolled, or the user does not exist
        existing = await db.execute(
            select(ChallengeProgress.id).where(
                ChallengeProgress.user_id == user_id,
                ChallengeProgress.challenge_id == challenge.id,
            )
        )
        if existing.scalar_one_or_none() is None:
            raise UserNotFoundError(f"User {user_id} not found", user_id=user_id) from None
        return False
    logger.info("challenge_enrolled", user_id=user_id, challenge_id=challenge.id)
    return True


async def enroll(
    db: AsyncSession,
    user_id: int,
    challenge_id: int,
    now: datetime | None = None,
) -> bool:
    """Join an active challenge, e.g. a monthly or special one that is never auto-enrolled.

    Returns False if the user was already enrolled.
    """
    now = as_utc(now) if now else utcnow()
    challenge = await db.get(Challenge, challenge_id)
    if challenge is None or not challenge.is_active:
        raise ChallengeNotFoundError(f"Challenge {challenge_id} not found", challenge_id=challenge_id)

    try:
        enrolled = await _enroll(db, user_id, challenge, now)
        await db.commit()
    except UserNotFoundError:
        await db.rollback()
        raise
    except SQLAlchemyError:
        await db.rollback()
        logger.error("challenge_enroll_failed", user_id=user_id, challenge_id=challenge_id, exc_info=True)
        raise
    return enrolled


async def _advance(
    db: AsyncSession,
    user_id: int,
    challenge: Challenge,
    outbox: list[NotificationRequest],
    now: datetime,
) -> tuple[bool, bool]:
    """Add one step of progress. Returns (incremented, completed)."""
    scope = (
        ChallengeProgress.user_id == user_id,
        ChallengeProgress.challenge_id == challenge.id,
    )
    result = await db.execute(
        update(ChallengeProgress)
        .where(
            *scope,
            ChallengeProgress.status == "in_progress",
            ChallengeProgress.progress < ChallengeProgress.target,
        )
        .values(progress=ChallengeProgress.progress + 1)
    )
    if result.rowcount == 0:
        return False, False

    # Only the request that flips the status pays the reward
    flipped = await db.execute(
        update(ChallengeProgress)
        .where(
            *scope,
            ChallengeProgress.status == "in_progress",
            ChallengeProgress.progress >= ChallengeProgress.target,
        )
        .values(status="completed", completed_at=now)
    )
    if flipped.rowcount == 0:
        return True, False

    if challenge.xp_reward > 0:
        await grant_xp(
            db, user_id, challenge.xp_reward, "challenge",
            str(challenge.id),
            f"Completed challenge: {challenge.title}",
            f"challenge:{user_id}:{challenge.id}",
            outbox=outbox,
            now=now,
        )
    outbox.append(NotificationRequest(
        user_id=user_id,
        subtype="challenge_completed",
        title="Challenge Complete!",
        message=f"You completed \"{challenge.title}\" and earned {challenge.xp_reward} XP",
        metadata={"challenge_id": challenge.id, "xp_reward": challenge.xp_reward},
        dedupe_key=f"challenge_completed:{user_id}:{challenge.id}",
    ))
    logger.info("challenge_completed", user_id=user_id, challenge_id=challenge.id)
    return True, True


async def process_challenge_event(
    db: AsyncSession,
    event: EngagementEvent,
    notifier: Notifier | None = None,
) -> ChallengeEventResult:
    """Advance every challenge the event counts towards.

    Anonymous events are ignored. Matching challenges of an auto-enroll
    type are joined on the fly.
    """
    outcome = ChallengeEventResult()
    if event.user_id is None:
        return outcome

    user_id = event.user_id
    now = as_utc(event.timestamp) if event.timestamp else utcnow()
    outbox: list[NotificationRequest] = []

    try:
        progress_rows = (await db.execute(
            select(ChallengeProgress).where(
                ChallengeProgress.user_id == user_id,
                ChallengeProgress.status == "in_progress",
            )
        )).scalars().unique().all()

        for row in progress_rows:
            challenge = row.challenge
            if not challenge.is_active or not matches_requirements(challenge.requirements, event):
                continue
            incremented, completed = await _advance(db, user_id, challenge, outbox, now)
            if incremented:
                outcome.challenges_updated.append(challenge.id)
            if completed:
                outcome.challenges_completed.append(challenge.id)

        enrolled = set((await db.execute(
            select(ChallengeProgress.challenge_id).where(ChallengeProgress.user_id == user_id)
        )).scalars().all())
        available = (await db.execute(
            select(Challenge)
            .where(Challenge.is_active.is_(True), Challenge.type.in_(AUTO_ENROLL_TYPES))
            .order_by(Challenge.id)
        )).scalars().all()

        for challenge in available:
            if challenge.id in enrolled or not matches_requirements(challenge.requirements, event):
                continue
            if not await _enroll(db, user_id, challenge, now):
                continue
            incremented, completed = await _advance(db, user_id, challenge, outbox, now)
            if incremented:
                outcome.challenges_updated.append(challenge.id)
            if completed:
                outcome.challenges_completed.append(challenge.id)

        await db.commit()
    except UserNotFoundError:
        await db.rollback()
        raise
    except SQLAlchemyError:
        await db.rollback()
        logger.error("challenge_event_failed", user_id=user_id, event_name=event.event_name, exc_info=True)
        raise

    await emit_all(notifier, outbox)
    if outcome.challenges_updated:
        logger.info(
            "challenge_progress_updated",
            user_id=user_id,
            event_name=event.event_name,
            challenges=outcome.challenges_updated,
        )
    return outcome


async def get_user_challenges(db: AsyncSession, user_id: int) -> list[dict[str, Any]]:
    """Progress rows for a user, newest first."""
    result = await db.execute(
        select(ChallengeProgress)
        .where(ChallengeProgress.user_id == user_id)
        .order_by(ChallengeProgress.started_at.desc())
    )
    return [
        {
            "challenge_id": p.challenge_id,
            "slug": p.challenge.slug,
            "title": p.challenge.title,
            "type": p.challenge.type,
            "progress": p.progress,
            "target": p.target,
            "status": p.status,
            "xp_reward": p.challenge.xp_reward,
            "completed_at": as_utc(p.completed_at) if p.completed_at else None,
        }
        for p in result.scalars().unique()
    ]
