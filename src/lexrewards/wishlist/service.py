"""Wishlist alert engine: saved products, price-drop/restock alerts and purchase XP."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.config import get_settings
from lexrewards.db.models import WishlistAlert, WishlistItem
from lexrewards.exceptions import UserNotFoundError
from lexrewards.gamification.xp_service import grant_xp
from lexrewards.notifications.notifier import Notifier, emit_all
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import as_utc, utcnow
from lexrewards.wishlist.schemas import (
    PriceUpdate,
    PurchaseXPResult,
    SweepResult,
    WishlistItemCreate,
    WishlistStats,
)

logger = structlog.get_logger()

WISHLIST_XP_REWARDS: dict[str, int] = {
    "add_to_wishlist": 10,
    "purchase_from_wishlist": 100,  # double the standard document purchase
    "complete_wishlist": 500,
}

_PRIORITY_ORDER = case(
    (WishlistItem.priority == "high", 0),
    (WishlistItem.priority == "medium", 1),
    else_=2,
)


def price_drop_discount(old_price: Decimal, new_price: Decimal) -> int:
    """Whole-percent discount, rounded half up."""
    ratio = (old_price - new_price) / old_price * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def price_drop_message(old_price: Decimal, new_price: Decimal) -> str:
    discount = price_drop_discount(old_price, new_price)
    return f"Price dropped {discount}%! Save ${old_price - new_price:.2f}"


async def add_to_wishlist(
    db: AsyncSession,
    user_id: int,
    data: WishlistItemCreate,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> tuple[WishlistItem, bool]:
    """Save a product. Returns (item, created); re-adding returns the existing item."""
    now = as_utc(now) if now else utcnow()
    outbox: list[NotificationRequest] = []

    item = WishlistItem(
        user_id=user_id,
        product_id=data.product_id,
        product_name=data.product_name,
        price_when_added=data.price,
        current_price=data.price,
        alert_on_price_drop=data.alert_on_price_drop,
        alert_on_restock=data.alert_on_restock,
        priority=data.priority,
        added_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(item)
            await db.flush()
    except IntegrityError:
        # Either the product is already saved, or the user does not exist
        existing = (await db.execute(
            select(WishlistItem).where(
                WishlistItem.user_id == user_id,
                WishlistItem.product_id == data.product_id,
            )
        )).scalar_one_or_none()
        if existing is None:
            await db.rollback()
            raise UserNotFoundError(f"User {user_id} not found", user_id=user_id) from None
        return existing, False

    try:
        await grant_xp(
            db, user_id, WISHLIST_XP_REWARDS["add_to_wishlist"], "add_to_wishlist",
            data.product_id,
            f"Added {data.product_name or data.product_id} to wishlist",
            f"wishlist_add:{user_id}:{data.product_id}",
            outbox=outbox,
            now=now,
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error("wishlist_add_failed", user_id=user_id, product_id=data.product_id, exc_info=True)
        raise

    await emit_all(notifier, outbox)
    logger.info("wishlist_item_added", user_id=user_id, product_id=data.product_id)
    return item, True


async def remove_from_wishlist(db: AsyncSession, user_id: int, item_id: int) -> bool:
    result = await db.execute(
        delete(WishlistItem).where(WishlistItem.id == item_id, WishlistItem.user_id == user_id)
    )
    await db.commit()
    return result.rowcount == 1


async def get_wishlist(db: AsyncSession, user_id: int) -> list[WishlistItem]:
    """Items by priority (high first), then most recently added."""
    result = await db.execute(
        select(WishlistItem)
        .where(WishlistItem.user_id == user_id)
        .order_by(_PRIORITY_ORDER, WishlistItem.added_at.desc(), WishlistItem.id.desc())
    )
    return list(result.scalars().all())


async def get_wishlist_stats(db: AsyncSession, user_id: int, now: datetime | None = None) -> WishlistStats:
    now = as_utc(now) if now else utcnow()
    items = await get_wishlist(db, user_id)

    total_value = sum((i.current_price for i in items), Decimal("0"))
    potential_savings = sum(
        (max(Decimal("0"), i.price_when_added - i.current_price) for i in items), Decimal("0")
    )
    on_sale = sum(1 for i in items if i.current_price < i.price_when_added)
    avg_days = 0
    if items:
        total_days = sum((now - as_utc(i.added_at)).total_seconds() / 86400 for i in items)
        avg_days = round(total_days / len(items))

    return WishlistStats(
        total_items=len(items),
        total_value=total_value,
        potential_savings=potential_savings,
        items_on_sale=on_sale,
        average_days_in_wishlist=avg_days,
    )


async def get_wishlist_alerts(
    db: AsyncSession,
    user_id: int,
    unread_only: bool = False,
    now: datetime | None = None,
) -> list[WishlistAlert]:
    """Unexpired alerts, newest first."""
    now = as_utc(now) if now else utcnow()
    query = select(WishlistAlert).where(
        WishlistAlert.user_id == user_id,
        (WishlistAlert.expires_at.is_(None)) | (WishlistAlert.expires_at > now),
    )
    if unread_only:
        query = query.where(WishlistAlert.read_at.is_(None))
    result = await db.execute(query.order_by(WishlistAlert.created_at.desc(), WishlistAlert.id.desc()))
    return list(result.scalars().all())


async def mark_alert_read(db: AsyncSession, user_id: int, alert_id: int, now: datetime | None = None) -> bool:
    now = as_utc(now) if now else utcnow()
    result = await db.execute(
        update(WishlistAlert)
        .where(
            WishlistAlert.id == alert_id,
            WishlistAlert.user_id == user_id,
            WishlistAlert.read_at.is_(None),
        )
        .values(read_at=now)
    )
    await db.commit()
    return result.rowcount == 1


async def _apply_update(
    db: AsyncSession,
    item: WishlistItem,
    change: PriceUpdate,
    outbox: list[NotificationRequest],
    now: datetime,
    ttl: timedelta,
) -> tuple[int, int]:
    """Create the alerts one update triggers for one item. Returns (price_drops, restocks)."""
    drops = restocks = 0
    old_price = item.current_price

    if change.new_price is not None and change.new_price != old_price:
        await db.execute(
            update(WishlistItem)
            .where(WishlistItem.id == item.id)
            .values(current_price=change.new_price)
        )
        if item.alert_on_price_drop and change.new_price < old_price:
            discount = price_drop_discount(old_price, change.new_price)
            message = price_drop_message(old_price, change.new_price)
            db.add(WishlistAlert(
                user_id=item.user_id,
                wishlist_item_id=item.id,
                type="price_drop",
                message=message,
                discount=discount,
                expires_at=now + ttl,
                created_at=now,
            ))
            outbox.append(NotificationRequest(
                user_id=item.user_id,
                type="commerce",
                subtype="wishlist_price_drop",
                title=f"{item.product_name or 'A wishlist item'} is on sale",
                message=message,
                metadata={
                    "product_id": item.product_id,
                    "wishlist_item_id": item.id,
                    "old_price": str(old_price),
                    "new_price": str(change.new_price),
                    "discount": discount,
                },
                dedupe_key=f"wishlist_price_drop:{item.id}:{change.new_price}",
            ))
            drops += 1

    if change.restocked and item.alert_on_restock:
        message = f"{item.product_name or 'A wishlist item'} is back in stock!"
        db.add(WishlistAlert(
            user_id=item.user_id,
            wishlist_item_id=item.id,
            type="back_in_stock",
            message=message,
            expires_at=now + ttl,
            created_at=now,
        ))
        outbox.append(NotificationRequest(
            user_id=item.user_id,
            type="commerce",
            subtype="wishlist_back_in_stock",
            title="Back in stock",
            message=message,
            metadata={"product_id": item.product_id, "wishlist_item_id": item.id},
            dedupe_key=f"wishlist_back_in_stock:{item.id}:{now.date().isoformat()}",
        ))
        restocks += 1

    await db.flush()
    return drops, restocks


async def check_price_changes(
    db: AsyncSession,
    updates: list[PriceUpdate],
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> SweepResult:
    """Apply catalogue price/stock changes to every wishlist holding the product.

    Each item is handled in its own SAVEPOINT; a failing item is logged
    and counted, the rest of the sweep continues.
    """
    now = as_utc(now) if now else utcnow()
    ttl = timedelta(days=get_settings().wishlist_alert_ttl_days)
    summary = SweepResult()
    if not updates:
        return summary

    # Last update per product wins when the queue held several
    by_product = {u.product_id: u for u in updates}
    items = (await db.execute(
        select(WishlistItem)
        .where(WishlistItem.product_id.in_(list(by_product)))
        .order_by(WishlistItem.id)
    )).scalars().all()

    outbox: list[NotificationRequest] = []
    for item in items:
        item_outbox: list[NotificationRequest] = []
        try:
            async with db.begin_nested():
                drops, restocks = await _apply_update(
                    db, item, by_product[item.product_id], item_outbox, now, ttl
                )
        except Exception:
            summary.errors += 1
            logger.error("wishlist_item_sweep_failed", wishlist_item_id=item.id, exc_info=True)
            continue
        outbox.extend(item_outbox)
        summary.price_drops += drops
        summary.restocks += restocks
        summary.alerts_created += drops + restocks

    await db.commit()
    await emit_all(notifier, outbox)

    logger.info("wishlist_sweep_complete", products=len(by_product), **summary.model_dump())
    return summary


async def calculate_wishlist_purchase_xp(
    db: AsyncSession,
    user_id: int,
    purchased_product_ids: list[str],
    order_id: str,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> PurchaseXPResult:
    """Reward buying saved products and remove them from the wishlist.

    Only items this call actually deletes are paid, and the ledger keys
    derive from ``order_id``, so a retried order pays nothing twice.
    """
    now = as_utc(now) if now else utcnow()
    outbox: list[NotificationRequest] = []
    purchased = set(purchased_product_ids)

    try:
        count_before = (await db.execute(
            select(func.count()).select_from(WishlistItem).where(WishlistItem.user_id == user_id)
        )).scalar_one()

        removed: list[str] = []
        for product_id in sorted(purchased):
            result = await db.execute(
                delete(WishlistItem).where(
                    WishlistItem.user_id == user_id,
                    WishlistItem.product_id == product_id,
                )
            )
            if result.rowcount:
                removed.append(product_id)

        if not removed:
            await db.rollback()
            return PurchaseXPResult(
                items_purchased=0, base_xp=0, bonus_xp=0, completed_wishlist=False, message=""
            )

        remaining = count_before - len(removed)
        completed = count_before > 0 and remaining == 0

        base_xp = 0
        for product_id in removed:
            if await grant_xp(
                db, user_id, WISHLIST_XP_REWARDS["purchase_from_wishlist"], "purchase_from_wishlist",
                order_id,
                f"Purchased wishlist item {product_id}",
                f"wishlist_purchase:{user_id}:{order_id}:{product_id}",
                outbox=outbox,
                now=now,
            ):
                base_xp += WISHLIST_XP_REWARDS["purchase_from_wishlist"]

        bonus_xp = 0
        if completed and await grant_xp(
            db, user_id, WISHLIST_XP_REWARDS["complete_wishlist"], "complete_wishlist",
            order_id,
            "Completed wishlist",
            f"wishlist_complete:{user_id}:{order_id}",
            outbox=outbox,
            now=now,
        ):
            bonus_xp = WISHLIST_XP_REWARDS["complete_wishlist"]
            outbox.append(NotificationRequest(
                user_id=user_id,
                subtype="wishlist_completed",
                title="Wishlist Complete!",
                message=f"You bought everything on your wishlist. +{bonus_xp} XP",
                metadata={"order_id": order_id, "bonus_xp": bonus_xp},
                dedupe_key=f"wishlist_complete:{user_id}:{order_id}",
            ))

        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error("wishlist_purchase_failed", user_id=user_id, order_id=order_id, exc_info=True)
        raise

    await emit_all(notifier, outbox)
    message = (
        "Wishlist completed! Massive XP bonus!"
        if completed
        else f"Purchased {len(removed)} wishlist item(s)!"
    )
    logger.info(
        "wishlist_purchase_rewarded",
        user_id=user_id,
        order_id=order_id,
        items=len(removed),
        base_xp=base_xp,
        bonus_xp=bonus_xp,
    )
    return PurchaseXPResult(
        items_purchased=len(removed),
        base_xp=base_xp,
        bonus_xp=bonus_xp,
        completed_wishlist=completed,
        message=message,
    )
