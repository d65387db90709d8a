"""Daily login reward cycle and weekly workout loot box."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from questlog.db.models import DailyRewardClaim, InventoryItem
from questlog.exceptions import ConflictError, InvalidInputError
from questlog.gamification.loot_service import (
    claim_daily_reward,
    claim_weekly_box,
    get_daily_reward_status,
    get_weekly_box_status,
    roll_and_grant,
    use_item,
    weekly_box_rarity,
)
from questlog.gamification.loot_tables import Rarity
from questlog.gamification.xp_service import award_xp, get_or_create_progress

# Monday of ISO week 2026-W10
MONDAY = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def no_cosmetic() -> MagicMock:
    rng = MagicMock()
    rng.random.return_value = 0.99
    return rng


async def claim_days(db, count: int, start: datetime = MONDAY, rng=None):
    results = []
    for offset in range(count):
        results.append(await claim_daily_reward(
            db, None, "user-1", rng=rng or no_cosmetic(), now=start + timedelta(days=offset),
        ))
    return results


async def log_workouts(db, count: int, now: datetime = MONDAY) -> None:
    for i in range(count):
        await award_xp(
            db, None, "user-1", "workout_complete",
            idempotency_key=f"workout:{now.date()}:{i}", rng=no_cosmetic(), now=now,
        )


class TestDailyReward:
    @pytest.mark.asyncio
    async def test_full_week_cycle(self, db_session):
        results = await claim_days(db_session, 7)
        assert [r.day_number for r in results] == [1, 2, 3, 4, 5, 6, 7]
        assert [r.xp_awarded for r in results] == [25, 50, 75, 100, 150, 200, 300]
        assert results[-1].week_complete is True
        assert results[4].bonus_items == ["streak_shield"]
        assert results[4].streak_shields == 1
        assert results[6].bonus_items == ["loot_box_rare"]

        progress = await get_or_create_progress(db_session, "user-1")
        assert progress.total_xp == 900
        assert progress.login_streak == 7
        assert progress.streak_shields == 1
        box = (await db_session.execute(
            select(InventoryItem).where(InventoryItem.item_code == "loot_box_rare")
        )).scalar_one()
        assert box.quantity == 1

    @pytest.mark.asyncio
    async def test_cycle_wraps_after_day_seven(self, db_session):
        results = await claim_days(db_session, 8)
        assert results[-1].day_number == 1
        assert results[-1].login_streak == 8

    @pytest.mark.asyncio
    async def test_same_day_claim_replays(self, db_session):
        first = await claim_daily_reward(db_session, None, "user-1", now=MONDAY)
        again = await claim_daily_reward(db_session, None, "user-1", now=MONDAY + timedelta(hours=6))
        assert again.duplicate is True
        assert again.day_number == first.day_number == 1
        progress = await get_or_create_progress(db_session, "user-1")
        assert progress.total_xp == 25
        count = (await db_session.execute(select(func.count(DailyRewardClaim.id)))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_missed_day_restarts_cycle(self, db_session):
        await claim_days(db_session, 3)
        result = await claim_daily_reward(db_session, None, "user-1", now=MONDAY + timedelta(days=4))
        assert result.day_number == 1
        assert result.login_streak == 1

    @pytest.mark.asyncio
    async def test_shield_bonus_skipped_at_cap(self, db_session):
        progress = await get_or_create_progress(db_session, "user-1")
        progress.streak_shields = 3
        await db_session.flush()
        results = await claim_days(db_session, 5)
        assert results[4].bonus_items == []
        assert results[4].streak_shields == 3

    @pytest.mark.asyncio
    async def test_day_three_cosmetic(self, db_session):
        rng = MagicMock()
        rng.random.return_value = 0.1
        rng.choice.side_effect = lambda options: options[0]
        results = await claim_days(db_session, 3, rng=rng)
        assert results[2].bonus_items == ["frame_bronze"]
        owned = (await db_session.execute(
            select(InventoryItem.item_code).where(InventoryItem.user_id == "user-1")
        )).scalars().all()
        assert owned == ["frame_bronze"]

    @pytest.mark.asyncio
    async def test_status_week_view(self, db_session):
        await claim_days(db_session, 2)
        pending = await get_daily_reward_status(db_session, "user-1", now=MONDAY + timedelta(days=2))
        assert pending.claimed_today is False
        assert pending.login_streak == 2
        assert pending.next_reward.day == 3
        assert [d.claimed for d in pending.week_view] == [True, True, False, False, False, False, False]

        done = await get_daily_reward_status(db_session, "user-1", now=MONDAY + timedelta(days=1))
        assert done.claimed_today is True
        assert done.next_reward is None
        assert [d.current for d in done.week_view].index(True) == 1

    @pytest.mark.asyncio
    async def test_status_after_missed_day(self, db_session):
        await claim_days(db_session, 4)
        status = await get_daily_reward_status(db_session, "user-1", now=MONDAY + timedelta(days=6))
        assert status.login_streak == 0
        assert status.next_reward.day == 1


class TestWeeklyBox:
    def test_thresholds(self):
        assert weekly_box_rarity(2) is None
        assert weekly_box_rarity(3) is Rarity.RARE
        assert weekly_box_rarity(5) is Rarity.EPIC
        assert weekly_box_rarity(7) is Rarity.LEGENDARY
        assert weekly_box_rarity(12) is Rarity.LEGENDARY

    @pytest.mark.asyncio
    async def test_claim_guarantees_tier(self, db_session):
        await log_workouts(db_session, 5)
        result = await claim_weekly_box(db_session, None, "user-1", rng=random.Random(5), now=MONDAY)
        assert Rarity(result.rarity).rank >= Rarity.EPIC.rank
        assert result.bonus_applied == ["weekly_box"]

    @pytest.mark.asyncio
    async def test_one_claim_per_week(self, db_session):
        await log_workouts(db_session, 3)
        first = await claim_weekly_box(db_session, None, "user-1", rng=random.Random(1), now=MONDAY)
        again = await claim_weekly_box(
            db_session, None, "user-1", rng=random.Random(2), now=MONDAY + timedelta(days=3),
        )
        assert again.duplicate is True
        assert again.item_code == first.item_code

    @pytest.mark.asyncio
    async def test_too_few_workouts(self, db_session):
        await log_workouts(db_session, 2)
        with pytest.raises(ConflictError):
            await claim_weekly_box(db_session, None, "user-1", now=MONDAY)

    @pytest.mark.asyncio
    async def test_last_week_workouts_do_not_count(self, db_session):
        await log_workouts(db_session, 4, now=MONDAY - timedelta(days=1))
        status = await get_weekly_box_status(db_session, "user-1", now=MONDAY)
        assert status.week_iso == "2026-W10"
        assert status.workouts_this_week == 0
        assert status.eligible_rarity is None
        assert status.next_threshold == 3
        assert status.next_rarity == "rare"

    @pytest.mark.asyncio
    async def test_status_after_claim(self, db_session):
        await log_workouts(db_session, 7)
        await claim_weekly_box(db_session, None, "user-1", rng=random.Random(3), now=MONDAY)
        status = await get_weekly_box_status(db_session, "user-1", now=MONDAY + timedelta(days=2))
        assert status.workouts_this_week == 7
        assert status.eligible_rarity == "legendary"
        assert status.already_claimed is True
        assert status.next_threshold is None


class TestReservedDropKeys:
    @pytest.mark.asyncio
    async def test_roll_rejects_claim_namespace(self, db_session):
        with pytest.raises(InvalidInputError, match="reserved"):
            await roll_and_grant(db_session, None, "user-1", idempotency_key="weekly_box:2026-W10")

    @pytest.mark.asyncio
    async def test_loot_box_rejects_claim_namespace(self, db_session):
        with pytest.raises(InvalidInputError, match="reserved"):
            await use_item(db_session, None, "user-1", "loot_box_rare", idempotency_key="daily:2026-03-02")
