"""arq worker: notification delivery plus the scheduled batch jobs.

Run with ``arq lexrewards.workers.scheduler.WorkerSettings``.

Every batch job takes an optional ISO ``reference_time`` so a run can be
replayed for a past day; cron invocations leave it empty and use the
time the job started.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from arq import cron
from arq.connections import RedisSettings

from lexrewards.config import get_settings
from lexrewards.database import close_db, get_session_factory, init_db
from lexrewards.gamification.streak_service import run_daily_scan
from lexrewards.leaderboard.service import PERIOD_TYPES, compute_leaderboard
from lexrewards.middleware.logging import setup_logging
from lexrewards.notifications.notifier import QueueNotifier
from lexrewards.notifications.worker import deliver_notification
from lexrewards.timeutils import as_utc, get_zone, reference_midnight, utcnow
from lexrewards.wishlist.schemas import PriceUpdate
from lexrewards.wishlist.service import check_price_changes

logger = structlog.get_logger()

SWEEP_BATCH_SIZE = 500


def _reference(reference_time: str | None) -> datetime:
    if reference_time:
        return as_utc(datetime.fromisoformat(reference_time))
    return utcnow()


def _notifier(ctx: dict[str, Any]) -> QueueNotifier:
    return QueueNotifier(ctx.get("arq_pool"), ctx.get("redis"))


async def scan_streaks(ctx: dict[str, Any], reference_time: str | None = None) -> dict[str, int]:
    """Nightly streak scan for the day starting at the reference midnight."""
    ref = _reference(reference_time)
    async with get_session_factory()() as db:
        summary = await run_daily_scan(db, _notifier(ctx), ref)
    return summary.model_dump()


async def compute_leaderboard_job(
    ctx: dict[str, Any], period_type: str, reference_time: str | None = None
) -> dict[str, Any]:
    """Recompute one period's snapshot (ad-hoc runs and backfills)."""
    ref = _reference(reference_time)
    async with get_session_factory()() as db:
        result = await compute_leaderboard(db, _notifier(ctx), period_type, ref)
    return result.model_dump(mode="json")


async def _close_period(ctx: dict[str, Any], period_type: str) -> dict[str, Any]:
    # One second before local midnight falls inside the period that just ended
    ref = reference_midnight(utcnow()) - timedelta(seconds=1)
    return await compute_leaderboard_job(ctx, period_type, ref.isoformat())


async def close_daily_leaderboard(ctx: dict[str, Any]) -> dict[str, Any]:
    return await _close_period(ctx, "daily")


async def close_weekly_leaderboard(ctx: dict[str, Any]) -> dict[str, Any]:
    return await _close_period(ctx, "weekly")


async def close_monthly_leaderboard(ctx: dict[str, Any]) -> dict[str, Any]:
    return await _close_period(ctx, "monthly")


async def refresh_live_leaderboards(ctx: dict[str, Any]) -> dict[str, int]:
    """Hourly refresh of the periods in progress."""
    ref = utcnow().isoformat()
    counts: dict[str, int] = {}
    for period_type in PERIOD_TYPES:
        try:
            result = await compute_leaderboard_job(ctx, period_type, ref)
        except Exception:
            logger.error("leaderboard_refresh_failed", period_type=period_type, exc_info=True)
            continue
        counts[period_type] = result["rankings_computed"]
    return counts


async def sweep_wishlist_prices(ctx: dict[str, Any], reference_time: str | None = None) -> dict[str, int]:
    """Drain queued catalogue changes and raise wishlist alerts.

    A batch that fails is pushed back onto the queue before re-raising.
    """
    redis: aioredis.Redis = ctx["redis"]
    key = get_settings().wishlist_price_updates_key
    ref = _reference(reference_time)
    totals = {"updates": 0, "alerts_created": 0, "errors": 0}

    while True:
        raw = await redis.lpop(key, SWEEP_BATCH_SIZE)
        if not raw:
            break

        updates = []
        for payload in raw:
            try:
                updates.append(PriceUpdate.model_validate(json.loads(payload)))
            except ValueError:
                logger.warning("wishlist_price_update_invalid", payload=payload)
                totals["errors"] += 1

        try:
            async with get_session_factory()() as db:
                result = await check_price_changes(db, updates, _notifier(ctx), ref)
        except Exception:
            await redis.rpush(key, *raw)
            raise

        totals["updates"] += len(updates)
        totals["alerts_created"] += result.alerts_created
        totals["errors"] += result.errors

    logger.info("wishlist_price_sweep_complete", **totals)
    return totals


async def startup(ctx: dict[str, Any]) -> None:
    """Open DB and Redis; keep arq's own pool for enqueueing notifications."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["arq_pool"] = ctx["redis"]
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    logger.info("worker_started")


async def shutdown(ctx: dict[str, Any]) -> None:
    redis_client = ctx.get("redis")
    if redis_client is not None and redis_client is not ctx.get("arq_pool"):
        await redis_client.aclose()
    await close_db()
    logger.info("worker_shut_down")


class WorkerSettings:
    """arq worker settings: notification delivery and scheduled jobs."""

    functions = [
        deliver_notification,
        scan_streaks,
        compute_leaderboard_job,
        sweep_wishlist_prices,
    ]
    cron_jobs = [
        cron(scan_streaks, hour={0}, minute={5}),
        cron(close_daily_leaderboard, hour={0}, minute={10}),
        cron(close_weekly_leaderboard, weekday="sun", hour={0}, minute={15}),
        cron(close_monthly_leaderboard, day={1}, hour={0}, minute={20}),
        cron(refresh_live_leaderboards, minute={30}),
        cron(sweep_wishlist_prices, minute={0}),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    timezone = get_zone()
    max_tries = get_settings().notification_max_tries
    max_jobs = 10
    job_timeout = 600
