"""Notification persistence and WebSocket push.

Delivery is:
1. Persisted in the database (deduplicated by ``dedupe_key``)
2. Published on ``ws:user:{id}`` for the realtime bridge
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.db.models import Notification
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import utcnow

logger = structlog.get_logger()


async def deliver_notification(
    db: AsyncSession,
    redis: Any | None,
    request: NotificationRequest,
) -> Notification | None:
    """Persist and push one notification. Returns None if it was already delivered."""
    notification = Notification(
        user_id=request.user_id,
        type=request.type,
        subtype=request.subtype,
        title=request.title,
        description=request.message,
        notification_metadata=request.metadata,
        dedupe_key=request.dedupe_key,
        created_at=utcnow(),
    )

    try:
        async with db.begin_nested():
            db.add(notification)
            await db.flush()
    except IntegrityError:
        logger.info("notification_already_delivered", dedupe_key=request.dedupe_key)
        return None

    await db.commit()

    if redis is not None:
        ws_payload = {
            "event": "notification",
            "data": {
                "id": str(notification.id),
                "type": notification.type,
                "subtype": notification.subtype,
                "title": notification.title,
                "description": notification.description,
                "metadata": notification.notification_metadata,
                "timestamp": notification.created_at.isoformat(),
                "read": False,
            },
        }
        try:
            await redis.publish(f"ws:user:{request.user_id}", json.dumps(ws_payload))
        except Exception:
            logger.warning("notification_push_failed", user_id=request.user_id, exc_info=True)

    return notification


async def get_notifications(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Notification], int]:
    """Get user's notifications (paginated, most recent first)."""
    offset = (page - 1) * per_page

    total_result = await db.execute(
        select(func.count()).select_from(Notification).where(Notification.user_id == user_id)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(per_page)
    )
    return list(result.scalars().all()), total


async def mark_all_as_read(db: AsyncSession, user_id: int) -> int:
    """Mark all unread notifications as read. Returns count updated."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    await db.commit()
    return result.rowcount
