"""arq job that delivers queued notifications with bounded retries."""

from __future__ import annotations

from typing import Any

import structlog
from arq import Retry

from lexrewards.config import get_settings
from lexrewards.database import get_session_factory
from lexrewards.notifications.notifier import incr_metric
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.notifications.service import deliver_notification as _deliver

logger = structlog.get_logger()


async def deliver_notification(ctx: dict[str, Any], payload: dict[str, Any]) -> bool:
    """Persist + push one notification.

    Transient failures are retried with linear backoff up to
    ``notification_max_tries``; after that the request is dropped and
    counted as ``failed``.
    """
    settings = get_settings()
    redis = ctx.get("redis")
    job_try: int = ctx.get("job_try", 1)
    request = NotificationRequest.model_validate(payload)

    try:
        async with get_session_factory()() as db:
            await _deliver(db, redis, request)
    except Exception as exc:
        if job_try < settings.notification_max_tries:
            logger.warning(
                "notification_delivery_retry",
                user_id=request.user_id,
                subtype=request.subtype,
                job_try=job_try,
                error=str(exc),
            )
            raise Retry(defer=settings.notification_retry_delay_seconds * job_try) from exc

        logger.error(
            "notification_delivery_failed",
            user_id=request.user_id,
            subtype=request.subtype,
            job_try=job_try,
            exc_info=True,
        )
        await incr_metric(redis, "failed")
        return False

    await incr_metric(redis, "delivered")
    return True
