"""Integration tests for challenge enrollment and progress."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from lexrewards.challenges.schemas import EngagementEvent
from lexrewards.challenges.service import enroll, get_user_challenges, process_challenge_event
from lexrewards.db.models import Challenge, ChallengeProgress, UserGamification
from lexrewards.exceptions import ChallengeNotFoundError, UserNotFoundError

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def challenges(db):
    """One auto-enroll challenge per kind of match, plus one that needs manual enrollment."""
    rows = {
        "read_three": Challenge(
            slug="read-three-guides", title="Read three guides", type="daily",
            requirements={"event_name": "document_view", "count": 3}, xp_reward=50,
        ),
        "family_pdf": Challenge(
            slug="family-law-pdf", title="Download a family law PDF", type="onboarding",
            requirements={"event_category": "content", "property_match": {"practice_area": "family"}},
            xp_reward=20,
        ),
        "monthly": Challenge(
            slug="monthly-reader", title="Monthly reader", type="monthly",
            requirements={"event_name": "document_view", "count": 10}, xp_reward=300,
        ),
        "retired": Challenge(
            slug="retired", title="Retired", type="daily",
            requirements={"event_name": "document_view"}, xp_reward=5, is_active=False,
        ),
    }
    for challenge in rows.values():
        challenge.created_at = NOW
    db.add_all(rows.values())
    await db.commit()
    return rows


def _event(user_id, name="document_view", category="content", **properties):
    return EngagementEvent(
        event_name=name, event_category=category, user_id=user_id, properties=properties, timestamp=NOW
    )


async def _progress(db, user_id, challenge_id):
    return (await db.execute(
        select(ChallengeProgress.progress, ChallengeProgress.status)
        .where(ChallengeProgress.user_id == user_id, ChallengeProgress.challenge_id == challenge_id)
    )).one_or_none()


class TestProcessEvent:
    @pytest.mark.asyncio
    async def test_auto_enrolls_and_advances(self, db, make_user, challenges):
        user = await make_user()
        result = await process_challenge_event(db, _event(user.id))

        read_three = challenges["read_three"]
        assert read_three.id in result.challenges_updated
        assert (await _progress(db, user.id, read_three.id)) == (1, "in_progress")

    @pytest.mark.asyncio
    async def test_other_types_not_auto_enrolled(self, db, make_user, challenges):
        user = await make_user()
        await process_challenge_event(db, _event(user.id))
        assert await _progress(db, user.id, challenges["monthly"].id) is None

    @pytest.mark.asyncio
    async def test_inactive_challenge_ignored(self, db, make_user, challenges):
        user = await make_user()
        await process_challenge_event(db, _event(user.id))
        assert await _progress(db, user.id, challenges["retired"].id) is None

    @pytest.mark.asyncio
    async def test_completes_once_and_pays_once(self, db, make_user, challenges, notifier):
        user = await make_user()
        read_three = challenges["read_three"]

        results = [await process_challenge_event(db, _event(user.id), notifier) for _ in range(5)]

        assert [read_three.id in r.challenges_completed for r in results] == [False, False, True, False, False]
        assert read_three.id not in results[3].challenges_updated
        assert (await _progress(db, user.id, read_three.id)) == (3, "completed")

        total_xp = (await db.execute(
            select(UserGamification.total_xp).where(UserGamification.user_id == user.id)
        )).scalar_one()
        assert total_xp == 50
        completed = notifier.of("challenge_completed")
        assert len(completed) == 1
        assert completed[0].metadata["challenge_id"] == read_three.id

    @pytest.mark.asyncio
    async def test_property_match_required(self, db, make_user, challenges):
        user = await make_user()
        family = challenges["family_pdf"]

        await process_challenge_event(db, _event(user.id, name="page_view", practice_area="estate"))
        assert await _progress(db, user.id, family.id) is None

        result = await process_challenge_event(db, _event(user.id, name="page_view", practice_area="family"))
        assert family.id in result.challenges_completed

    @pytest.mark.asyncio
    async def test_manually_enrolled_challenge_advances(self, db, make_user, challenges):
        user = await make_user()
        monthly = challenges["monthly"]
        assert await enroll(db, user.id, monthly.id, NOW)

        result = await process_challenge_event(db, _event(user.id))
        assert monthly.id in result.challenges_updated
        assert (await _progress(db, user.id, monthly.id)) == (1, "in_progress")

    @pytest.mark.asyncio
    async def test_anonymous_event_ignored(self, db, challenges):
        result = await process_challenge_event(db, _event(None))
        assert result.challenges_updated == []
        count = (await db.execute(select(func.count()).select_from(ChallengeProgress))).scalar_one()
        assert count == 0


class TestEnrollment:
    @pytest.mark.asyncio
    async def test_duplicate_enroll_is_noop(self, db, make_user, challenges):
        user = await make_user()
        monthly_id = challenges["monthly"].id
        assert await enroll(db, user.id, monthly_id, NOW) is True
        assert await enroll(db, user.id, monthly_id, NOW) is False

        count = (await db.execute(
            select(func.count()).select_from(ChallengeProgress).where(ChallengeProgress.user_id == user.id)
        )).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_target_from_requirements(self, db, make_user, challenges):
        user = await make_user()
        await enroll(db, user.id, challenges["monthly"].id, NOW)

        listing = await get_user_challenges(db, user.id)
        assert len(listing) == 1
        assert listing[0]["slug"] == "monthly-reader"
        assert listing[0]["target"] == 10
        assert listing[0]["progress"] == 0

    @pytest.mark.asyncio
    async def test_inactive_challenge_not_found(self, db, make_user, challenges):
        user = await make_user()
        with pytest.raises(ChallengeNotFoundError):
            await enroll(db, user.id, challenges["retired"].id, NOW)

    @pytest.mark.asyncio
    async def test_missing_challenge_not_found(self, db, make_user, challenges):
        user = await make_user()
        with pytest.raises(ChallengeNotFoundError):
            await enroll(db, user.id, 999_999, NOW)

    @pytest.mark.asyncio
    @pytest.mark.foreign_keys
    async def test_unknown_user_is_not_found(self, db, challenges):
        monthly_id = challenges["monthly"].id
        with pytest.raises(UserNotFoundError):
            await enroll(db, 999_999, monthly_id, NOW)
        count = (await db.execute(select(func.count()).select_from(ChallengeProgress))).scalar_one()
        assert count == 0
