"""Engagement API endpoints.

Caller identity is established upstream; user ids in paths are trusted.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.challenges.schemas import ChallengeEventResult, EngagementEvent
from lexrewards.challenges.service import enroll, get_user_challenges, process_challenge_event
from lexrewards.config import get_settings
from lexrewards.database import get_session
from lexrewards.dependencies import get_notifier
from lexrewards.exceptions import WishlistItemNotFoundError
from lexrewards.gamification.economy import get_near_miss_message, get_next_discount_tier
from lexrewards.gamification.schemas import (
    AutoFreezeRequest,
    AwardRequest,
    AwardResult,
    FreezeResult,
    NearMissMessage,
    NextDiscountTier,
    PurchaseAward,
    PurchaseXPRequest,
    RedeemRequest,
    RedeemResult,
    StreakStatus,
    StreakUpdate,
    UserXPState,
)
from lexrewards.gamification.streak_service import (
    get_streak_status,
    set_auto_use_freeze,
    update_streak,
    use_freeze_token,
)
from lexrewards.gamification.xp_service import award_purchase_xp, award_xp, get_user_xp_state, redeem_xp
from lexrewards.leaderboard.schemas import LeaderboardResponse, UserRankResponse
from lexrewards.leaderboard.service import get_leaderboard, get_user_rank
from lexrewards.notifications.notifier import Notifier
from lexrewards.notifications.service import get_notifications, mark_all_as_read
from lexrewards.redis_client import get_redis
from lexrewards.wishlist.schemas import (
    PriceUpdate,
    PurchaseRequest,
    PurchaseXPResult,
    WishlistAlertOut,
    WishlistItemCreate,
    WishlistItemOut,
    WishlistStats,
)
from lexrewards.wishlist.service import (
    add_to_wishlist,
    calculate_wishlist_purchase_xp,
    get_wishlist,
    get_wishlist_alerts,
    get_wishlist_stats,
    mark_alert_read,
    remove_from_wishlist,
)

PeriodType = Literal["daily", "weekly", "monthly", "alltime"]

router = APIRouter(prefix="/api/v1/gamification", tags=["Gamification"])


# ── XP ──


@router.post("/xp/award", response_model=AwardResult)
async def award(
    body: AwardRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    metadata = dict(body.metadata)
    if body.event_id:
        metadata["event_id"] = body.event_id
    return await award_xp(db, body.user_email, body.activity_type, metadata, notifier=notifier)


@router.post("/xp/redeem", response_model=RedeemResult)
async def redeem(body: RedeemRequest, db: AsyncSession = Depends(get_session)):
    return await redeem_xp(db, body.user_id, body.xp_to_redeem, body.order_id, body.order_total)


@router.get("/xp/state/{user_id}", response_model=UserXPState)
async def xp_state(user_id: int, db: AsyncSession = Depends(get_session)):
    return await get_user_xp_state(db, user_id)


@router.get("/xp/state/{user_id}/next-tier", response_model=NextDiscountTier)
async def next_discount_tier(user_id: int, db: AsyncSession = Depends(get_session)):
    """Gap between the spendable balance and the next discount threshold."""
    state = await get_user_xp_state(db, user_id)
    return get_next_discount_tier(state.available_xp)


@router.get("/xp/state/{user_id}/near-miss", response_model=NearMissMessage)
async def checkout_near_miss(
    user_id: int,
    cart_total: Decimal = Query(gt=0),
    db: AsyncSession = Depends(get_session),
):
    """Checkout message for a cart: would this order unlock the next discount tier?"""
    state = await get_user_xp_state(db, user_id)
    return get_near_miss_message(state.available_xp, cart_total)


@router.post("/xp/purchase", response_model=PurchaseAward)
async def purchase_xp(
    body: PurchaseXPRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return await award_purchase_xp(db, body.user_id, body.amount, body.order_id, notifier=notifier)


# ── Streaks ──


@router.post("/streak/{user_id}/check-in", response_model=StreakUpdate)
async def check_in(
    user_id: int,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return await update_streak(db, user_id, notifier=notifier)


@router.get("/streak/{user_id}", response_model=StreakStatus)
async def streak_status(user_id: int, db: AsyncSession = Depends(get_session)):
    return await get_streak_status(db, user_id)


@router.post("/streak/{user_id}/freeze", response_model=FreezeResult)
async def freeze(user_id: int, db: AsyncSession = Depends(get_session)):
    return await use_freeze_token(db, user_id)


@router.put("/streak/{user_id}/auto-freeze")
async def auto_freeze(
    user_id: int,
    body: AutoFreezeRequest,
    db: AsyncSession = Depends(get_session),
) -> dict[str, bool]:
    updated = await set_auto_use_freeze(db, user_id, body.enabled)
    return {"updated": updated, "auto_use_freeze": body.enabled}


# ── Challenges ──


@router.post("/challenges/events", response_model=ChallengeEventResult)
async def challenge_event(
    event: EngagementEvent,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return await process_challenge_event(db, event, notifier=notifier)


@router.get("/challenges/{user_id}")
async def user_challenges(user_id: int, db: AsyncSession = Depends(get_session)) -> list[dict[str, Any]]:
    return await get_user_challenges(db, user_id)


@router.post("/challenges/{user_id}/{challenge_id}/enroll")
async def enroll_in_challenge(
    user_id: int, challenge_id: int, db: AsyncSession = Depends(get_session)
) -> dict[str, bool]:
    return {"enrolled": await enroll(db, user_id, challenge_id)}


# ── Leaderboard ──


@router.get("/leaderboard/{period_type}", response_model=LeaderboardResponse)
async def leaderboard(
    period_type: PeriodType,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
):
    return await get_leaderboard(db, period_type, limit=limit)


@router.get("/leaderboard/{period_type}/users/{user_id}", response_model=UserRankResponse)
async def leaderboard_rank(period_type: PeriodType, user_id: int, db: AsyncSession = Depends(get_session)):
    return await get_user_rank(db, period_type, user_id)


# ── Wishlist ──


@router.get("/wishlist/{user_id}", response_model=list[WishlistItemOut])
async def wishlist(user_id: int, db: AsyncSession = Depends(get_session)):
    return await get_wishlist(db, user_id)


@router.get("/wishlist/{user_id}/stats", response_model=WishlistStats)
async def wishlist_stats(user_id: int, db: AsyncSession = Depends(get_session)):
    return await get_wishlist_stats(db, user_id)


@router.post("/wishlist/{user_id}/items", response_model=WishlistItemOut, status_code=201)
async def wishlist_add(
    user_id: int,
    body: WishlistItemCreate,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    item, _created = await add_to_wishlist(db, user_id, body, notifier=notifier)
    return item


@router.delete("/wishlist/{user_id}/items/{item_id}", status_code=204)
async def wishlist_remove(user_id: int, item_id: int, db: AsyncSession = Depends(get_session)) -> None:
    if not await remove_from_wishlist(db, user_id, item_id):
        raise WishlistItemNotFoundError(f"Wishlist item {item_id} not found", item_id=item_id)


@router.get("/wishlist/{user_id}/alerts", response_model=list[WishlistAlertOut])
async def wishlist_alerts(
    user_id: int,
    unread_only: bool = Query(False),
    db: AsyncSession = Depends(get_session),
):
    return await get_wishlist_alerts(db, user_id, unread_only=unread_only)


@router.post("/wishlist/{user_id}/alerts/{alert_id}/read")
async def wishlist_alert_read(user_id: int, alert_id: int, db: AsyncSession = Depends(get_session)) -> dict[str, bool]:
    return {"updated": await mark_alert_read(db, user_id, alert_id)}


@router.post("/wishlist/{user_id}/purchase", response_model=PurchaseXPResult)
async def wishlist_purchase(
    user_id: int,
    body: PurchaseRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return await calculate_wishlist_purchase_xp(
        db, user_id, body.product_ids, body.order_id, notifier=notifier
    )


@router.post("/wishlist/price-updates", status_code=202)
async def queue_price_updates(updates: list[PriceUpdate]) -> dict[str, int]:
    """Queue catalogue changes for the next wishlist sweep."""
    if not updates:
        return {"queued": 0}
    redis = get_redis()
    await redis.rpush(
        get_settings().wishlist_price_updates_key,
        *[json.dumps(u.model_dump(mode="json")) for u in updates],
    )
    return {"queued": len(updates)}


# ── Notifications ──


@router.get("/notifications/{user_id}")
async def notifications(
    user_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    items, total = await get_notifications(db, user_id, page, per_page)
    return {
        "notifications": [
            {
                "id": n.id,
                "type": n.type,
                "subtype": n.subtype,
                "title": n.title,
                "description": n.description,
                "metadata": n.notification_metadata,
                "read": n.read,
                "created_at": n.created_at.isoformat(),
            }
            for n in items
        ],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


@router.post("/notifications/{user_id}/read-all")
async def notifications_read_all(user_id: int, db: AsyncSession = Depends(get_session)) -> dict[str, int]:
    return {"updated": await mark_all_as_read(db, user_id)}
