"""Notification sink used by every engagement component.

Emitting never raises and never blocks the state transition that caused
it: the request is handed to the arq queue and the delivery worker owns
retries (see ``notifications.worker``). Counters live in the Redis hash
``metrics:notifications`` so failures are observable.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from lexrewards.notifications.schemas import VALID_TYPES, NotificationRequest

logger = structlog.get_logger()

METRICS_KEY = "metrics:notifications"
DELIVER_JOB = "deliver_notification"


class Notifier(Protocol):
    async def emit(self, request: NotificationRequest) -> bool:
        """Queue a notification. Returns False on failure, never raises."""
        ...


async def incr_metric(redis: Any | None, field: str, amount: int = 1) -> None:
    """Bump a notification counter; metric failures are only logged."""
    if redis is None:
        return
    try:
        await redis.hincrby(METRICS_KEY, field, amount)
    except Exception:
        logger.warning("notification_metric_failed", field=field, exc_info=True)


class QueueNotifier:
    """Enqueues ``deliver_notification`` jobs on the arq pool."""

    def __init__(self, arq_pool: Any | None, redis: Any | None = None) -> None:
        self.arq_pool = arq_pool
        self.redis = redis

    async def emit(self, request: NotificationRequest) -> bool:
        if request.type not in VALID_TYPES:
            logger.warning("notification_invalid_type", type=request.type, subtype=request.subtype)
            return False

        if self.arq_pool is None:
            logger.info(
                "notification_dropped_no_queue",
                user_id=request.user_id,
                subtype=request.subtype,
            )
            return False

        try:
            job = await self.arq_pool.enqueue_job(
                DELIVER_JOB,
                request.model_dump(mode="json"),
                _job_id=request.dedupe_key,
            )
        except Exception:
            logger.warning(
                "notification_enqueue_failed",
                user_id=request.user_id,
                subtype=request.subtype,
                exc_info=True,
            )
            await incr_metric(self.redis, "enqueue_failed")
            return False

        # arq returns None when a job with the same id is already queued
        if job is not None:
            await incr_metric(self.redis, "enqueued")
        return True


async def emit_all(notifier: Notifier | None, requests: list[NotificationRequest]) -> int:
    """Emit requests collected during a transaction, after it committed.

    Returns how many were accepted by the sink.
    """
    if notifier is None:
        return 0
    accepted = 0
    for request in requests:
        if await notifier.emit(request):
            accepted += 1
    return accepted
