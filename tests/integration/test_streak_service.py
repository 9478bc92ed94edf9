"""Integration tests for streak check-ins, freeze tokens and the nightly scan."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from lexrewards.db.models import StreakEvent, StreakState, UserGamification, XPLedger
from lexrewards.exceptions import NoFreezeTokensError, UserNotFoundError
from lexrewards.gamification.streak_service import (
    get_next_milestone,
    get_streak_status,
    run_daily_scan,
    set_auto_use_freeze,
    update_streak,
    use_freeze_token,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
SCAN_AT = datetime(2026, 3, 10, 0, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def streak_user(db, make_user):
    """Factory: a user with a pre-existing streak row."""

    async def _make(**fields):
        user = await make_user()
        defaults = {
            "current_streak": 0,
            "freeze_tokens": 0,
            "auto_use_freeze": True,
            "updated_at": NOW,
        }
        defaults.update(fields)
        defaults.setdefault("longest_streak", defaults["current_streak"])
        db.add(StreakState(user_id=user.id, **defaults))
        await db.commit()
        return user

    return _make


async def _state(db, user_id):
    return (await db.execute(
        select(
            StreakState.current_streak,
            StreakState.longest_streak,
            StreakState.freeze_tokens,
            StreakState.frozen_through,
        ).where(StreakState.user_id == user_id)
    )).one()


async def _events(db, user_id) -> list[str]:
    return list((await db.execute(
        select(StreakEvent.event_type).where(StreakEvent.user_id == user_id).order_by(StreakEvent.id)
    )).scalars().all())


async def _total_xp(db, user_id) -> int:
    return (await db.execute(
        select(UserGamification.total_xp).where(UserGamification.user_id == user_id)
    )).scalar_one_or_none() or 0


class TestCheckIn:
    @pytest.mark.asyncio
    async def test_first_check_in_starts_streak(self, db, make_user):
        user = await make_user()
        result = await update_streak(db, user.id, now=NOW)
        assert result.updated is True
        assert result.current_streak == 1
        assert result.message == "Streak started!"

    @pytest.mark.asyncio
    async def test_same_day_is_noop(self, db, make_user):
        user = await make_user()
        await update_streak(db, user.id, now=NOW)
        again = await update_streak(db, user.id, now=NOW + timedelta(hours=5))
        assert again.updated is False
        assert again.current_streak == 1
        assert again.message == "Already checked in today"

    @pytest.mark.asyncio
    async def test_next_day_continues(self, db, streak_user):
        user = await streak_user(
            current_streak=3, last_activity_at=NOW - timedelta(hours=26), streak_started_on=date(2026, 3, 7)
        )
        result = await update_streak(db, user.id, now=NOW)
        assert result.updated is True
        assert result.current_streak == 4
        assert result.longest_streak == 4
        assert result.milestones_earned == []

    @pytest.mark.asyncio
    async def test_gap_over_48h_resets(self, db, streak_user):
        user = await streak_user(
            current_streak=12, longest_streak=20, last_activity_at=NOW - timedelta(hours=49),
            streak_started_on=date(2026, 2, 25),
        )
        result = await update_streak(db, user.id, now=NOW)
        assert result.current_streak == 1
        assert result.longest_streak == 20
        assert result.milestones_earned == []
        assert result.message == "Streak reset. Day 1!"

    @pytest.mark.asyncio
    async def test_milestone_on_check_in(self, db, streak_user, notifier):
        """29 days, checks in within 48h: day 30 pays 1000 XP and a freeze token."""
        user = await streak_user(
            current_streak=29, freeze_tokens=1, last_activity_at=NOW - timedelta(hours=30),
            streak_started_on=date(2026, 2, 9),
        )
        result = await update_streak(db, user.id, notifier=notifier, now=NOW)

        assert result.current_streak == 30
        assert result.freeze_tokens == 2
        assert [m.days for m in result.milestones_earned] == [30]
        assert result.milestones_earned[0].xp_reward == 1000
        assert result.milestones_earned[0].freeze_token is True
        assert await _total_xp(db, user.id) == 1000
        assert len(notifier.of("streak_milestone")) == 1

        # The nightly scan sees day 30 again and must not pay twice
        summary = await run_daily_scan(db, notifier, NOW + timedelta(hours=12, minutes=5))
        assert summary.milestones_reached == 0
        assert await _total_xp(db, user.id) == 1000
        assert len(notifier.of("streak_milestone")) == 1

    @pytest.mark.asyncio
    async def test_freeze_tokens_capped(self, db, streak_user):
        user = await streak_user(
            current_streak=29, freeze_tokens=3, last_activity_at=NOW - timedelta(hours=30),
            streak_started_on=date(2026, 2, 9),
        )
        result = await update_streak(db, user.id, now=NOW)
        assert result.current_streak == 30
        assert result.freeze_tokens == 3

    @pytest.mark.asyncio
    async def test_week_milestone_has_no_token(self, db, streak_user):
        user = await streak_user(
            current_streak=6, last_activity_at=NOW - timedelta(hours=20), streak_started_on=date(2026, 3, 4)
        )
        result = await update_streak(db, user.id, now=NOW)
        assert result.milestones_earned[0].days == 7
        assert result.milestones_earned[0].freeze_token is False
        assert result.freeze_tokens == 0
        assert await _total_xp(db, user.id) == 200

    @pytest.mark.asyncio
    async def test_new_streak_can_earn_milestone_again(self, db, streak_user):
        """Milestones are per streak lifetime, keyed on the start date."""
        user = await streak_user(
            current_streak=6, last_activity_at=NOW - timedelta(hours=20), streak_started_on=date(2026, 1, 1)
        )
        db.add(XPLedger(
            user_id=user.id, amount=200, kind="earn", source="streak_milestone",
            idempotency_key=f"streak_milestone:{user.id}:2025-12-01:7", created_at=NOW,
        ))
        await db.commit()

        result = await update_streak(db, user.id, now=NOW)
        assert [m.days for m in result.milestones_earned] == [7]

    @pytest.mark.asyncio
    async def test_events_logged(self, db, streak_user):
        user = await streak_user(
            current_streak=2, last_activity_at=NOW - timedelta(hours=24), streak_started_on=date(2026, 3, 8)
        )
        await update_streak(db, user.id, now=NOW)
        assert await _events(db, user.id) == ["streak_continued"]

    @pytest.mark.asyncio
    async def test_token_grant_logged(self, db, streak_user):
        user = await streak_user(
            current_streak=29, freeze_tokens=1, last_activity_at=NOW - timedelta(hours=30),
            streak_started_on=date(2026, 2, 9),
        )
        await update_streak(db, user.id, now=NOW)
        assert await _events(db, user.id) == ["streak_continued", "streak_milestone", "freeze_token_granted"]

    @pytest.mark.asyncio
    async def test_full_token_wallet_logs_no_grant(self, db, streak_user):
        user = await streak_user(
            current_streak=29, freeze_tokens=3, last_activity_at=NOW - timedelta(hours=30),
            streak_started_on=date(2026, 2, 9),
        )
        await update_streak(db, user.id, now=NOW)
        assert "freeze_token_granted" not in await _events(db, user.id)

    @pytest.mark.asyncio
    @pytest.mark.foreign_keys
    async def test_unknown_user_is_not_found(self, db):
        with pytest.raises(UserNotFoundError):
            await update_streak(db, 999_999, now=NOW)

        count = (await db.execute(select(func.count()).select_from(StreakState))).scalar_one()
        assert count == 0


class TestDailyScan:
    @pytest.mark.asyncio
    async def test_inactive_streak_breaks(self, db, streak_user, notifier):
        """6-day streak, no tokens, last seen 50h before the scan: reset to 0."""
        user = await streak_user(
            current_streak=6, freeze_tokens=0, auto_use_freeze=False,
            last_activity_at=SCAN_AT - timedelta(hours=50), streak_started_on=date(2026, 3, 2),
        )
        summary = await run_daily_scan(db, notifier, SCAN_AT)

        assert summary.broken == 1
        assert (await _state(db, user.id)).current_streak == 0
        broken = notifier.of("streak_broken")
        assert len(broken) == 1
        assert broken[0].user_id == user.id
        assert broken[0].metadata["streak_length"] == 6
        assert await _events(db, user.id) == ["streak_broken"]

    @pytest.mark.asyncio
    async def test_auto_freeze_saves_streak(self, db, streak_user, notifier):
        user = await streak_user(
            current_streak=10, freeze_tokens=2, last_activity_at=SCAN_AT - timedelta(hours=50),
            streak_started_on=date(2026, 2, 28),
        )
        summary = await run_daily_scan(db, notifier, SCAN_AT)

        assert summary.frozen == 1
        state = await _state(db, user.id)
        assert state.current_streak == 10
        assert state.freeze_tokens == 1
        assert state.frozen_through == date(2026, 3, 9)
        assert notifier.subtypes() == ["streak_frozen"]
        assert await _events(db, user.id) == ["freeze_token_used", "streak_frozen"]

        # The frozen day bridges the gap for the next check-in
        result = await update_streak(db, user.id, now=SCAN_AT + timedelta(hours=10))
        assert result.current_streak == 11

    @pytest.mark.asyncio
    async def test_auto_freeze_disabled_breaks(self, db, streak_user, notifier):
        user = await streak_user(
            current_streak=10, freeze_tokens=2, auto_use_freeze=False,
            last_activity_at=SCAN_AT - timedelta(hours=50), streak_started_on=date(2026, 2, 28),
        )
        await run_daily_scan(db, notifier, SCAN_AT)
        state = await _state(db, user.id)
        assert state.current_streak == 0
        assert state.freeze_tokens == 2

    @pytest.mark.asyncio
    async def test_one_missing_day_is_at_risk(self, db, streak_user, notifier):
        user = await streak_user(
            current_streak=4, last_activity_at=datetime(2026, 3, 8, 15, 0, tzinfo=timezone.utc),
            streak_started_on=date(2026, 3, 5),
        )
        summary = await run_daily_scan(db, notifier, SCAN_AT)

        assert summary.at_risk == 1
        assert (await _state(db, user.id)).current_streak == 4
        assert notifier.subtypes() == ["streak_at_risk"]

    @pytest.mark.asyncio
    async def test_rerun_same_day_is_idempotent(self, db, streak_user, notifier):
        await streak_user(
            current_streak=4, last_activity_at=datetime(2026, 3, 8, 15, 0, tzinfo=timezone.utc),
            streak_started_on=date(2026, 3, 5),
        )
        await run_daily_scan(db, notifier, SCAN_AT)
        second = await run_daily_scan(db, notifier, SCAN_AT + timedelta(hours=2))

        assert second.processed == 0
        assert second.skipped == 1
        assert len(notifier.of("streak_at_risk")) == 1

    @pytest.mark.asyncio
    async def test_active_yesterday_untouched(self, db, streak_user, notifier):
        user = await streak_user(
            current_streak=3, last_activity_at=datetime(2026, 3, 9, 20, 0, tzinfo=timezone.utc),
            streak_started_on=date(2026, 3, 7),
        )
        summary = await run_daily_scan(db, notifier, SCAN_AT)
        assert summary.processed == 1
        assert summary.broken == summary.frozen == summary.at_risk == 0
        assert (await _state(db, user.id)).current_streak == 3
        assert notifier.requests == []

    @pytest.mark.asyncio
    async def test_scan_pays_missed_milestone(self, db, streak_user, notifier):
        await streak_user(
            current_streak=14, last_activity_at=datetime(2026, 3, 9, 20, 0, tzinfo=timezone.utc),
            streak_started_on=date(2026, 2, 24),
        )
        summary = await run_daily_scan(db, notifier, SCAN_AT)
        assert summary.milestones_reached == 1
        assert len(notifier.of("streak_milestone")) == 1

    @pytest.mark.asyncio
    async def test_zero_streaks_not_scanned(self, db, streak_user):
        await streak_user(current_streak=0)
        summary = await run_daily_scan(db, None, SCAN_AT)
        assert summary.processed == 0
        assert summary.skipped == 0


class TestFreezeToken:
    @pytest.mark.asyncio
    async def test_manual_freeze(self, db, streak_user):
        user = await streak_user(
            current_streak=5, freeze_tokens=1, last_activity_at=NOW - timedelta(hours=4),
            streak_started_on=date(2026, 3, 6),
        )
        result = await use_freeze_token(db, user.id, now=NOW)
        assert result.freeze_tokens_remaining == 0
        # Today is frozen, so the 48h window runs from tomorrow's midnight
        assert result.protected_until == datetime(2026, 3, 13, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_no_tokens(self, db, streak_user):
        user = await streak_user(current_streak=5, freeze_tokens=0, last_activity_at=NOW)
        with pytest.raises(NoFreezeTokensError):
            await use_freeze_token(db, user.id, now=NOW)

    @pytest.mark.asyncio
    async def test_toggle_auto_freeze(self, db, streak_user, make_user):
        user = await streak_user(current_streak=1, last_activity_at=NOW)
        assert await set_auto_use_freeze(db, user.id, False) is True
        status = await get_streak_status(db, user.id, now=NOW)
        assert status.auto_use_freeze is False

        stranger = await make_user()
        assert await set_auto_use_freeze(db, stranger.id, False) is False


class TestStreakStatus:
    @pytest.mark.asyncio
    async def test_no_streak(self, db, make_user):
        user = await make_user()
        status = await get_streak_status(db, user.id, now=NOW)
        assert status.current_streak == 0
        assert status.next_milestone.days == 7
        assert status.is_demo is False

    @pytest.mark.asyncio
    async def test_at_risk_after_20h(self, db, streak_user):
        user = await streak_user(current_streak=8, last_activity_at=NOW - timedelta(hours=21))
        status = await get_streak_status(db, user.id, now=NOW)
        assert status.streak_at_risk is True
        assert status.hours_until_loss == 27
        assert status.next_milestone.days == 14

    @pytest.mark.asyncio
    async def test_store_unavailable_returns_demo(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        status = await get_streak_status(db, 1, now=NOW)
        assert status.is_demo is True
        assert status.current_streak == 7
        assert status.freeze_tokens == 2


class TestNextMilestone:
    def test_after_last(self):
        assert get_next_milestone(365) is None

    def test_token_flag(self):
        assert get_next_milestone(29).freeze_token is True
        assert get_next_milestone(10).freeze_token is False
