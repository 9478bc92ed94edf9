"""XP grant service with idempotency and level-up detection."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.db.models import StreakState, User, UserGamification, XPLedger
from lexrewards.exceptions import (
    InsufficientXPError,
    InvalidActivityError,
    InvalidPurchaseError,
    RedemptionError,
    UserNotFoundError,
)
from lexrewards.gamification.economy import (
    calculate_max_redeemable_xp,
    calculate_purchase_xp,
    calculate_user_xp_state,
    xp_to_discount,
)
from lexrewards.gamification.level_thresholds import compute_level
from lexrewards.gamification.rewards import ACTIVITY_REWARDS, RewardRandomizer, get_streak_multiplier
from lexrewards.gamification.schemas import AwardResult, PurchaseAward, RedeemResult, UserXPState
from lexrewards.notifications.notifier import Notifier, emit_all
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import as_utc, utcnow

logger = structlog.get_logger()


async def get_or_create_user(db: AsyncSession, email: str, display_name: str | None = None) -> User:
    """Resolve a user by (case-insensitive) email, creating the row on first sight."""
    email = email.strip().lower()
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is not None:
        return user

    user = User(email=email, display_name=display_name, created_at=utcnow())
    try:
        async with db.begin_nested():
            db.add(user)
            await db.flush()
    except IntegrityError:
        # Lost the race to a concurrent request
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one()
    return user


async def get_or_create_gamification(db: AsyncSession, user_id: int) -> UserGamification:
    """Get or create the denormalized XP row for a user."""
    result = await db.execute(
        select(UserGamification).where(UserGamification.user_id == user_id)
    )
    gam = result.scalar_one_or_none()
    if gam is not None:
        return gam

    gam = UserGamification(user_id=user_id, updated_at=utcnow())
    try:
        async with db.begin_nested():
            db.add(gam)
            await db.flush()
    except IntegrityError:
        # Either a concurrent grant created the row, or the user does not exist
        result = await db.execute(
            select(UserGamification).where(UserGamification.user_id == user_id)
        )
        gam = result.scalar_one_or_none()
        if gam is None:
            raise UserNotFoundError(f"User {user_id} not found", user_id=user_id) from None
    return gam


async def grant_xp(
    db: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | None,
    description: str,
    idempotency_key: str,
    reward_type: str | None = None,
    outbox: list[NotificationRequest] | None = None,
    now: datetime | None = None,
) -> bool:
    """Grant XP to a user. Returns True if granted, False if duplicate.

    The ledger insert and the balance increment run in one SAVEPOINT:
    either both land or neither does. The unique idempotency key makes a
    retried grant a no-op. Does not commit; a level-up notification is
    appended to ``outbox`` for the caller to emit after its commit.
    """
    now = as_utc(now) if now else utcnow()
    await get_or_create_gamification(db, user_id)

    try:
        async with db.begin_nested():
            db.add(XPLedger(
                user_id=user_id,
                amount=amount,
                kind="earn",
                source=source,
                source_id=source_id,
                reward_type=reward_type,
                description=description,
                idempotency_key=idempotency_key,
                created_at=now,
            ))
            await db.flush()
            await db.execute(
                update(UserGamification)
                .where(UserGamification.user_id == user_id)
                .values(total_xp=UserGamification.total_xp + amount, updated_at=now)
            )
    except IntegrityError:
        logger.debug("xp_grant_duplicate", user_id=user_id, idempotency_key=idempotency_key)
        return False

    await _recompute_level(db, user_id, outbox)
    return True


async def _recompute_level(
    db: AsyncSession, user_id: int, outbox: list[NotificationRequest] | None
) -> None:
    """Raise the stored level if the new total crossed a threshold."""
    row = (await db.execute(
        select(UserGamification.total_xp, UserGamification.level)
        .where(UserGamification.user_id == user_id)
    )).one()
    info = compute_level(row.total_xp)
    if info["level"] <= row.level:
        return

    result = await db.execute(
        update(UserGamification)
        .where(UserGamification.user_id == user_id, UserGamification.level < info["level"])
        .values(level=info["level"], level_title=info["title"])
    )
    if result.rowcount and outbox is not None:
        outbox.append(NotificationRequest(
            user_id=user_id,
            subtype="level_up",
            title="Level Up!",
            message=f"Level {info['level']} - {info['title']}",
            metadata={"old_level": row.level, "new_level": info["level"]},
            dedupe_key=f"level_up:{user_id}:{info['level']}",
        ))


async def _ledger_entry(db: AsyncSession, idempotency_key: str) -> XPLedger | None:
    result = await db.execute(select(XPLedger).where(XPLedger.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def award_xp(
    db: AsyncSession,
    user_email: str,
    activity_type: str,
    metadata: dict[str, Any] | None = None,
    randomizer: RewardRandomizer | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> AwardResult:
    """Award XP for a website activity with variable reinforcement.

    ``metadata["event_id"]`` identifies the triggering event; a retried
    request with the same id returns the original award.
    """
    if activity_type not in ACTIVITY_REWARDS:
        raise InvalidActivityError(f"Unknown activity type: {activity_type}", activity_type=activity_type)

    metadata = metadata or {}
    randomizer = randomizer or RewardRandomizer()
    event_id = metadata.get("event_id")
    if not event_id:
        # A retry of this request cannot be recognized and will be awarded again
        logger.warning("award_xp_without_event_id", email=user_email, activity=activity_type)
        event_id = uuid.uuid4().hex
    event_id = str(event_id)
    outbox: list[NotificationRequest] = []

    try:
        user = await get_or_create_user(db, user_email)
        key = f"award:{user.id}:{activity_type}:{event_id}"

        existing = await _ledger_entry(db, key)
        if existing is not None:
            return await _duplicate_award(db, user.id, existing)

        streak = (await db.execute(
            select(StreakState.current_streak).where(StreakState.user_id == user.id)
        )).scalar_one_or_none() or 0
        base = round(ACTIVITY_REWARDS[activity_type]["base"] * get_streak_multiplier(streak))
        outcome = randomizer.classify(base)

        gam = await get_or_create_gamification(db, user.id)
        old_level = gam.level

        granted = await grant_xp(
            db, user.id, outcome.xp_awarded,
            source=activity_type,
            source_id=event_id,
            description=f"{outcome.reward_type.upper()} reward for {activity_type.replace('_', ' ')}",
            idempotency_key=key,
            reward_type=outcome.reward_type,
            outbox=outbox,
            now=now,
        )
        if not granted:
            existing = await _ledger_entry(db, key)
            return await _duplicate_award(db, user.id, existing)

        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error("award_xp_failed", email=user_email, activity=activity_type, exc_info=True)
        raise

    await emit_all(notifier, outbox)

    row = (await db.execute(
        select(UserGamification.total_xp, UserGamification.level)
        .where(UserGamification.user_id == user.id)
    )).one()

    logger.info(
        "xp_awarded",
        user_id=user.id,
        activity=activity_type,
        amount=outcome.xp_awarded,
        reward_type=outcome.reward_type,
    )
    return AwardResult(
        xp_awarded=outcome.xp_awarded,
        reward_type=outcome.reward_type,
        total_xp=row.total_xp,
        message=outcome.message,
        level=row.level,
        level_up=row.level > old_level,
    )


async def _duplicate_award(db: AsyncSession, user_id: int, entry: XPLedger | None) -> AwardResult:
    row = (await db.execute(
        select(UserGamification.total_xp, UserGamification.level)
        .where(UserGamification.user_id == user_id)
    )).one()
    amount = entry.amount if entry else 0
    return AwardResult(
        xp_awarded=amount,
        reward_type=(entry.reward_type if entry and entry.reward_type else "standard"),  # type: ignore[arg-type]
        total_xp=row.total_xp,
        message=f"You earned {amount} XP!",
        level=row.level,
        duplicate=True,
    )


async def get_user_xp_state(db: AsyncSession, user_id: int) -> UserXPState:
    """Load balances and derive the full XP state for a user."""
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found", user_id=user_id)

    row = (await db.execute(
        select(UserGamification.total_xp, UserGamification.redeemed_xp, UserGamification.expired_xp)
        .where(UserGamification.user_id == user_id)
    )).one_or_none()
    if row is None:
        return calculate_user_xp_state(0, 0, 0, user.lifetime_spend)
    return calculate_user_xp_state(row.total_xp, row.redeemed_xp, row.expired_xp, user.lifetime_spend)


async def redeem_xp(
    db: AsyncSession,
    user_id: int,
    xp_to_redeem: int,
    order_id: str,
    order_total: float,
    now: datetime | None = None,
) -> RedeemResult:
    """Spend XP for a discount on an order.

    The balance check and the decrement are one conditional UPDATE, so
    two concurrent redemptions can never push the available balance
    below zero. Redeeming twice for the same order is a no-op.
    """
    if xp_to_redeem <= 0:
        raise RedemptionError("Invalid XP amount")
    if not order_id:
        raise RedemptionError("Order ID is required")
    if order_total <= 0:
        raise RedemptionError("Invalid order total")

    now = as_utc(now) if now else utcnow()
    key = f"redeem:{user_id}:{order_id}"

    existing = await _ledger_entry(db, key)
    if existing is not None:
        state = await get_user_xp_state(db, user_id)
        redeemed = -existing.amount
        return RedeemResult(
            xp_redeemed=redeemed,
            discount_amount=xp_to_discount(redeemed),
            remaining_xp=state.available_xp,
            message=f"Order {order_id} already redeemed",
        )

    state = await get_user_xp_state(db, user_id)
    if xp_to_redeem > state.available_xp:
        raise InsufficientXPError("Insufficient XP balance", available_xp=state.available_xp)

    limits = calculate_max_redeemable_xp(order_total, state.available_xp)
    if limits.max_xp == 0 or xp_to_redeem > limits.max_xp:
        raise RedemptionError(limits.reason, max_xp=limits.max_xp)

    discount = xp_to_discount(xp_to_redeem)
    try:
        async with db.begin_nested():
            db.add(XPLedger(
                user_id=user_id,
                amount=-xp_to_redeem,
                kind="redeem",
                source="redemption",
                source_id=order_id,
                description=f"Redeemed for ${discount} off order {order_id}",
                idempotency_key=key,
                created_at=now,
            ))
            await db.flush()
            result = await db.execute(
                update(UserGamification)
                .where(
                    UserGamification.user_id == user_id,
                    UserGamification.total_xp - UserGamification.redeemed_xp - UserGamification.expired_xp
                    >= xp_to_redeem,
                )
                .values(redeemed_xp=UserGamification.redeemed_xp + xp_to_redeem, updated_at=now)
            )
            if result.rowcount != 1:
                raise InsufficientXPError("Insufficient XP balance")
    except IntegrityError:
        await db.rollback()
        return await redeem_xp(db, user_id, xp_to_redeem, order_id, order_total, now)

    await db.commit()

    remaining = state.available_xp - xp_to_redeem
    logger.info("xp_redeemed", user_id=user_id, order_id=order_id, xp=xp_to_redeem)
    return RedeemResult(
        xp_redeemed=xp_to_redeem,
        discount_amount=discount,
        remaining_xp=remaining,
        message=f"Successfully redeemed {xp_to_redeem} XP for ${discount:.2f} off",
    )


async def award_purchase_xp(
    db: AsyncSession,
    user_id: int,
    amount: Decimal,
    order_id: str,
    randomizer: RewardRandomizer | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> PurchaseAward:
    """Pay XP for a completed order and add the amount to lifetime spend.

    The ledger row is keyed on the order, and the spend increment runs in
    the same transaction, so a redelivered order pays and counts once.
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise InvalidPurchaseError("Purchase amount must be positive", amount=str(amount))
    if not order_id:
        raise InvalidPurchaseError("Order ID is required")

    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found", user_id=user_id)

    now = as_utc(now) if now else utcnow()
    key = f"purchase:{user_id}:{order_id}"
    outbox: list[NotificationRequest] = []

    existing = await _ledger_entry(db, key)
    if existing is not None:
        return await _duplicate_purchase(db, user_id, order_id, existing)

    outcome = calculate_purchase_xp(amount, randomizer)
    try:
        gam = await get_or_create_gamification(db, user_id)
        old_level = gam.level
        granted = await grant_xp(
            db, user_id, outcome.total_xp,
            source="purchase",
            source_id=order_id,
            description=f"Purchase XP for order {order_id}",
            idempotency_key=key,
            reward_type=outcome.reward_type,
            outbox=outbox,
            now=now,
        )
        if not granted:
            await db.rollback()
            return await _duplicate_purchase(db, user_id, order_id, await _ledger_entry(db, key))

        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(lifetime_spend=User.lifetime_spend + amount)
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error("purchase_xp_failed", user_id=user_id, order_id=order_id, exc_info=True)
        raise

    await emit_all(notifier, outbox)
    state = await get_user_xp_state(db, user_id)

    logger.info(
        "purchase_xp_awarded",
        user_id=user_id,
        order_id=order_id,
        amount=outcome.total_xp,
        reward_type=outcome.reward_type,
    )
    return PurchaseAward(
        order_id=order_id,
        xp_awarded=outcome.total_xp,
        base_xp=outcome.base_xp,
        reward_type=outcome.reward_type,
        total_xp=state.total_xp,
        lifetime_spend=await _lifetime_spend(db, user_id),
        tier=state.tier,
        message=outcome.message,
        level=state.level,
        level_up=state.level > old_level,
    )


async def _lifetime_spend(db: AsyncSession, user_id: int) -> Decimal:
    result = await db.execute(select(User.lifetime_spend).where(User.id == user_id))
    return Decimal(str(result.scalar_one()))


async def _duplicate_purchase(
    db: AsyncSession, user_id: int, order_id: str, entry: XPLedger | None
) -> PurchaseAward:
    state = await get_user_xp_state(db, user_id)
    amount = entry.amount if entry else 0
    return PurchaseAward(
        order_id=order_id,
        xp_awarded=amount,
        base_xp=amount,
        reward_type=(entry.reward_type if entry and entry.reward_type else "standard"),  # type: ignore[arg-type]
        total_xp=state.total_xp,
        lifetime_spend=await _lifetime_spend(db, user_id),
        tier=state.tier,
        message=f"Order {order_id} already rewarded",
        level=state.level,
        duplicate=True,
    )
