"""Integration tests for XP grants, activity awards and redemptions."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from lexrewards.db.models import StreakState, User, UserGamification, XPLedger
from lexrewards.exceptions import (
    InsufficientXPError,
    InvalidActivityError,
    InvalidPurchaseError,
    RedemptionError,
    UserNotFoundError,
)
from lexrewards.gamification.rewards import RewardRandomizer, fixed_draws
from lexrewards.gamification.xp_service import (
    award_purchase_xp,
    award_xp,
    get_or_create_user,
    get_user_xp_state,
    grant_xp,
    redeem_xp,
)
from lexrewards.notifications.schemas import NotificationRequest

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _standard() -> RewardRandomizer:
    return RewardRandomizer(draw=fixed_draws([0.99] * 10))


async def _balances(db, user_id):
    return (await db.execute(
        select(UserGamification.total_xp, UserGamification.redeemed_xp, UserGamification.level)
        .where(UserGamification.user_id == user_id)
    )).one()


class TestGetOrCreateUser:
    @pytest.mark.asyncio
    async def test_email_is_case_insensitive(self, db):
        first = await get_or_create_user(db, "Client@Example.com")
        await db.commit()
        second = await get_or_create_user(db, "client@example.com ")
        assert first.id == second.id
        count = (await db.execute(select(func.count()).select_from(User))).scalar_one()
        assert count == 1


class TestGrantXP:
    @pytest.mark.asyncio
    async def test_grant_updates_total(self, db, make_user):
        user = await make_user()
        assert await grant_xp(db, user.id, 40, "test", None, "test grant", "k1", now=NOW)
        await db.commit()
        assert (await _balances(db, user.id)).total_xp == 40

    @pytest.mark.asyncio
    async def test_duplicate_key_is_noop(self, db, make_user):
        user = await make_user()
        assert await grant_xp(db, user.id, 40, "test", None, "first", "same-key", now=NOW)
        assert not await grant_xp(db, user.id, 40, "test", None, "retry", "same-key", now=NOW)
        await db.commit()

        assert (await _balances(db, user.id)).total_xp == 40
        rows = (await db.execute(select(func.count()).select_from(XPLedger))).scalar_one()
        assert rows == 1

    @pytest.mark.asyncio
    @pytest.mark.foreign_keys
    async def test_unknown_user_is_not_found(self, db):
        with pytest.raises(UserNotFoundError):
            await grant_xp(db, 999_999, 40, "test", None, "nobody", "k-nobody", now=NOW)
        count = (await db.execute(select(func.count()).select_from(UserGamification))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_level_up_goes_to_outbox(self, db, make_user):
        user = await make_user()
        outbox: list[NotificationRequest] = []
        await grant_xp(db, user.id, 600, "test", None, "big", "k-big", outbox=outbox, now=NOW)
        await db.commit()

        assert len(outbox) == 1
        assert outbox[0].subtype == "level_up"
        assert outbox[0].metadata == {"old_level": 1, "new_level": 2}
        assert outbox[0].dedupe_key == f"level_up:{user.id}:2"
        assert (await _balances(db, user.id)).level == 2

    @pytest.mark.asyncio
    async def test_no_level_up_within_level(self, db, make_user):
        user = await make_user()
        outbox: list[NotificationRequest] = []
        await grant_xp(db, user.id, 600, "test", None, "a", "k-a", outbox=outbox, now=NOW)
        await grant_xp(db, user.id, 10, "test", None, "b", "k-b", outbox=outbox, now=NOW)
        assert [r.subtype for r in outbox] == ["level_up"]


class TestAwardXP:
    @pytest.mark.asyncio
    async def test_award_creates_user_and_balance(self, db, notifier):
        result = await award_xp(
            db, "new.client@example.com", "document_view",
            {"event_id": "evt-1"}, randomizer=_standard(), notifier=notifier, now=NOW,
        )
        assert result.xp_awarded == 5
        assert result.reward_type == "standard"
        assert result.total_xp == 5
        assert result.duplicate is False
        assert notifier.requests == []

    @pytest.mark.asyncio
    async def test_same_event_id_awards_once(self, db):
        first = await award_xp(db, "a@example.com", "newsletter_signup", {"event_id": "e1"}, randomizer=_standard())
        again = await award_xp(db, "a@example.com", "newsletter_signup", {"event_id": "e1"}, randomizer=_standard())

        assert again.duplicate is True
        assert again.xp_awarded == first.xp_awarded
        assert again.total_xp == first.total_xp == 25

    @pytest.mark.asyncio
    async def test_missing_event_id_is_not_deduplicated(self, db):
        first = await award_xp(db, "noid@example.com", "newsletter_signup", randomizer=_standard())
        again = await award_xp(db, "noid@example.com", "newsletter_signup", randomizer=_standard())
        assert first.duplicate is False
        assert again.duplicate is False
        assert again.total_xp == 50

    @pytest.mark.asyncio
    async def test_jackpot(self, db):
        randomizer = RewardRandomizer(draw=fixed_draws([0.0]))
        result = await award_xp(db, "lucky@example.com", "consultation_booked", randomizer=randomizer)
        assert result.reward_type == "jackpot"
        assert result.xp_awarded == 750
        assert result.level_up is True

    @pytest.mark.asyncio
    async def test_streak_multiplier_applies(self, db, make_user):
        user = await make_user(email="streaker@example.com")
        db.add(StreakState(user_id=user.id, current_streak=7, longest_streak=7, updated_at=NOW))
        await db.commit()

        result = await award_xp(db, "streaker@example.com", "return_visit", randomizer=_standard())
        assert result.xp_awarded == 12  # round(10 * 1.25)

    @pytest.mark.asyncio
    async def test_unknown_activity(self, db):
        with pytest.raises(InvalidActivityError):
            await award_xp(db, "a@example.com", "cartwheel")

    @pytest.mark.asyncio
    async def test_level_up_notification_emitted(self, db, make_user, notifier):
        user = await make_user(email="close@example.com")
        await grant_xp(db, user.id, 490, "seed", None, "seed", "seed-close", now=NOW)
        await db.commit()

        result = await award_xp(db, "close@example.com", "return_visit", randomizer=_standard(), notifier=notifier)
        assert result.level_up is True
        assert result.level == 2
        assert notifier.subtypes() == ["level_up"]


class TestXPState:
    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        with pytest.raises(UserNotFoundError):
            await get_user_xp_state(db, 9999)

    @pytest.mark.asyncio
    async def test_user_without_xp(self, db, make_user):
        user = await make_user(lifetime_spend=600)
        state = await get_user_xp_state(db, user.id)
        assert state.total_xp == 0
        assert state.level == 1
        assert state.tier == "silver"


class TestAwardPurchaseXP:
    @pytest.mark.asyncio
    async def test_standard_purchase(self, db, make_user, notifier):
        user = await make_user()
        result = await award_purchase_xp(
            db, user.id, Decimal("50.00"), "order-p1", randomizer=_standard(), notifier=notifier, now=NOW,
        )
        assert result.xp_awarded == 500
        assert result.base_xp == 500
        assert result.reward_type == "standard"
        assert result.total_xp == 500
        assert result.lifetime_spend == Decimal("50.00")
        assert result.message == "You earned 500 XP for your purchase"
        assert result.duplicate is False
        assert notifier.subtypes() == ["level_up"]

        entry = (await db.execute(select(XPLedger).where(XPLedger.source == "purchase"))).scalar_one()
        assert entry.source_id == "order-p1"
        assert entry.idempotency_key == f"purchase:{user.id}:order-p1"

    @pytest.mark.asyncio
    async def test_jackpot_purchase(self, db, make_user):
        user = await make_user()
        randomizer = RewardRandomizer(draw=fixed_draws([0.0]), multipliers={"jackpot": 5, "standard": 1})
        result = await award_purchase_xp(db, user.id, Decimal("20.00"), "order-p2", randomizer=randomizer)
        assert result.reward_type == "jackpot"
        assert result.base_xp == 200
        assert result.xp_awarded == 1000
        assert result.message == "JACKPOT! You earned 1000 XP (5x bonus!)"

    @pytest.mark.asyncio
    async def test_same_order_rewards_once(self, db, make_user):
        user = await make_user()
        first = await award_purchase_xp(db, user.id, Decimal("30.00"), "order-p3", randomizer=_standard())
        again = await award_purchase_xp(db, user.id, Decimal("30.00"), "order-p3", randomizer=_standard())

        assert again.duplicate is True
        assert again.xp_awarded == first.xp_awarded == 300
        assert again.total_xp == 300
        assert again.lifetime_spend == Decimal("30.00")
        spend = (await db.execute(select(User.lifetime_spend).where(User.id == user.id))).scalar_one()
        assert Decimal(str(spend)) == Decimal("30.00")

    @pytest.mark.asyncio
    async def test_spend_moves_tier(self, db, make_user):
        user = await make_user(lifetime_spend=450)
        assert (await get_user_xp_state(db, user.id)).tier == "bronze"

        result = await award_purchase_xp(db, user.id, Decimal("100.00"), "order-p4", randomizer=_standard())
        assert result.lifetime_spend == Decimal("550.00")
        assert result.tier == "silver"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount, order_id", [(Decimal("0"), "o"), (Decimal("-5"), "o"), (Decimal("10"), "")])
    async def test_invalid_purchase(self, db, make_user, amount, order_id):
        user = await make_user()
        with pytest.raises(InvalidPurchaseError):
            await award_purchase_xp(db, user.id, amount, order_id, randomizer=_standard())

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        with pytest.raises(UserNotFoundError):
            await award_purchase_xp(db, 999_999, Decimal("10.00"), "order-p5", randomizer=_standard())
        count = (await db.execute(select(func.count()).select_from(XPLedger))).scalar_one()
        assert count == 0


class TestRedeemXP:
    @pytest.mark.asyncio
    async def test_redeem(self, db, make_user):
        user = await make_user()
        await grant_xp(db, user.id, 1000, "seed", None, "seed", "seed-r1", now=NOW)
        await db.commit()

        result = await redeem_xp(db, user.id, 500, "order-1", 100.0, now=NOW)
        assert result.xp_redeemed == 500
        assert result.discount_amount == 5
        assert result.remaining_xp == 500
        assert result.message == "Successfully redeemed 500 XP for $5.00 off"

        row = await _balances(db, user.id)
        assert row.total_xp == 1000
        assert row.redeemed_xp == 500

    @pytest.mark.asyncio
    async def test_same_order_redeems_once(self, db, make_user):
        user = await make_user()
        await grant_xp(db, user.id, 1000, "seed", None, "seed", "seed-r2", now=NOW)
        await db.commit()

        await redeem_xp(db, user.id, 500, "order-2", 100.0)
        again = await redeem_xp(db, user.id, 500, "order-2", 100.0)
        assert again.xp_redeemed == 500
        assert again.remaining_xp == 500
        assert (await _balances(db, user.id)).redeemed_xp == 500

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, db, make_user):
        user = await make_user()
        await grant_xp(db, user.id, 1000, "seed", None, "seed", "seed-r3", now=NOW)
        await db.commit()

        with pytest.raises(InsufficientXPError):
            await redeem_xp(db, user.id, 2000, "order-3", 500.0)

    @pytest.mark.asyncio
    async def test_order_cap(self, db, make_user):
        """A $10 order allows at most $2 (200 XP) of discount."""
        user = await make_user()
        await grant_xp(db, user.id, 1000, "seed", None, "seed", "seed-r4", now=NOW)
        await db.commit()

        with pytest.raises(RedemptionError) as exc_info:
            await redeem_xp(db, user.id, 500, "order-4", 10.0)
        assert exc_info.value.context["max_xp"] == 200

    @pytest.mark.asyncio
    async def test_below_minimum_balance(self, db, make_user):
        user = await make_user()
        await grant_xp(db, user.id, 300, "seed", None, "seed", "seed-r5", now=NOW)
        await db.commit()

        with pytest.raises(RedemptionError):
            await redeem_xp(db, user.id, 300, "order-5", 100.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("xp, order_id, total", [(0, "o", 10.0), (100, "", 10.0), (100, "o", 0.0)])
    async def test_invalid_input(self, db, make_user, xp, order_id, total):
        user = await make_user()
        with pytest.raises(RedemptionError):
            await redeem_xp(db, user.id, xp, order_id, total)
