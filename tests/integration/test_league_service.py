"""League service tests: seating, weekly XP, standings, period finalization."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from questlog.config import get_settings
from questlog.db.models import League, LeagueHistory, LeagueMembership, Notification
from questlog.exceptions import NotFoundError
from questlog.gamification.engine import ProgressionEngine
from questlog.gamification.league_service import (
    add_weekly_xp,
    finalize_period,
    get_due_league_ids,
    get_or_create_league_stats,
    get_standings,
    get_user_league_status,
    join_league,
)
from questlog.gamification.xp_service import award_xp

# Wednesday of ISO week 2026-W10
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
NEXT_WEEK = datetime(2026, 3, 9, 0, 5, tzinfo=timezone.utc)


def no_crit() -> MagicMock:
    rng = MagicMock()
    rng.random.return_value = 0.99
    return rng


async def set_weekly_xp(db, membership_id: int, amount: int) -> None:
    membership = await db.get(LeagueMembership, membership_id)
    membership.weekly_xp = amount
    await db.flush()


async def seat_silver_cohort(db, size: int) -> int:
    """Seat ``size`` silver users; user uNN ends the week with (NN + 1) * 10 XP."""
    league_id = None
    for i in range(size):
        user_id = f"u{i:02d}"
        stats = await get_or_create_league_stats(db, user_id)
        stats.current_tier = "silver"
        stats.highest_tier = "silver"
        info = await join_league(db, user_id, NOW + timedelta(seconds=i))
        await set_weekly_xp(db, info.membership_id, (i + 1) * 10)
        league_id = info.league_id
    return league_id


class TestJoin:
    @pytest.mark.asyncio
    async def test_new_users_share_a_cohort(self, db_session):
        a = await join_league(db_session, "user-a", NOW)
        b = await join_league(db_session, "user-b", NOW)
        assert a.is_new and b.is_new
        assert a.league_id == b.league_id
        assert a.tier == "bronze"
        assert a.week_iso == "2026-W10"

    @pytest.mark.asyncio
    async def test_rejoin_returns_existing_seat(self, db_session):
        first = await join_league(db_session, "user-a", NOW)
        again = await join_league(db_session, "user-a", NOW + timedelta(hours=1))
        assert again.is_new is False
        assert again.membership_id == first.membership_id
        count = (await db_session.execute(select(func.count(LeagueMembership.id)))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_full_cohort_opens_another(self, db_session, monkeypatch):
        monkeypatch.setattr(get_settings(), "league_capacity", 2)
        seats = [await join_league(db_session, f"user-{i}", NOW) for i in range(3)]
        assert seats[0].league_id == seats[1].league_id
        assert seats[2].league_id != seats[0].league_id
        leagues = (await db_session.execute(select(func.count(League.id)))).scalar_one()
        assert leagues == 2

    @pytest.mark.asyncio
    async def test_cohorts_split_by_tier(self, db_session):
        stats = await get_or_create_league_stats(db_session, "gold-user")
        stats.current_tier = "gold"
        bronze = await join_league(db_session, "new-user", NOW)
        gold = await join_league(db_session, "gold-user", NOW)
        assert gold.tier == "gold"
        assert gold.league_id != bronze.league_id


class TestWeeklyXP:
    @pytest.mark.asyncio
    async def test_awarded_xp_credited_to_membership(self, db_session):
        info = await join_league(db_session, "user-1", NOW)
        await award_xp(db_session, None, "user-1", "daily_task", idempotency_key="t", rng=no_crit(), now=NOW)
        membership = await db_session.get(LeagueMembership, info.membership_id)
        assert membership.weekly_xp == 15

    @pytest.mark.asyncio
    async def test_no_membership_no_credit(self, db_session):
        assert await add_weekly_xp(db_session, "loner", 50, NOW) is False

    @pytest.mark.asyncio
    async def test_last_weeks_seat_not_credited(self, db_session):
        await join_league(db_session, "user-1", NOW)
        assert await add_weekly_xp(db_session, "user-1", 50, NEXT_WEEK) is False


class TestStandings:
    @pytest.mark.asyncio
    async def test_ties_broken_by_join_time(self, db_session):
        a = await join_league(db_session, "early", NOW)
        b = await join_league(db_session, "late", NOW + timedelta(minutes=5))
        c = await join_league(db_session, "leader", NOW + timedelta(minutes=10))
        await set_weekly_xp(db_session, a.membership_id, 50)
        await set_weekly_xp(db_session, b.membership_id, 50)
        await set_weekly_xp(db_session, c.membership_id, 80)

        standings = await get_standings(db_session, a.league_id)
        assert [(m.rank, m.user_id) for m in standings.members] == [(1, "leader"), (2, "early"), (3, "late")]
        # Small bronze cohort: every rank is inside the promotion zone
        assert {m.zone for m in standings.members} == {"promotion"}

    @pytest.mark.asyncio
    async def test_missing_league(self, db_session):
        with pytest.raises(NotFoundError):
            await get_standings(db_session, 999)


class TestFinalize:
    @pytest.mark.asyncio
    async def test_top_ten_promoted_bottom_five_demoted(self, db_session, mock_redis):
        league_id = await seat_silver_cohort(db_session, 20)
        result = await finalize_period(db_session, mock_redis, league_id, NEXT_WEEK)

        by_user = {o.user_id: o for o in result.outcomes}
        promoted = {u for u, o in by_user.items() if o.outcome == "promoted"}
        demoted = {u for u, o in by_user.items() if o.outcome == "demoted"}
        assert promoted == {f"u{i:02d}" for i in range(10, 20)}
        assert demoted == {f"u{i:02d}" for i in range(5)}
        assert by_user["u19"].final_rank == 1
        assert by_user["u19"].new_tier == "gold"
        assert by_user["u00"].new_tier == "bronze"
        assert by_user["u07"].new_tier == "silver"

        history = (await db_session.execute(select(func.count(LeagueHistory.id)))).scalar_one()
        assert history == 20
        notes = (await db_session.execute(select(func.count(Notification.id)))).scalar_one()
        assert notes == 15
        assert mock_redis.publish.await_count == 15

    @pytest.mark.asyncio
    async def test_lifetime_stats_updated(self, db_session):
        league_id = await seat_silver_cohort(db_session, 20)
        await finalize_period(db_session, None, league_id, NEXT_WEEK)

        winner = await get_or_create_league_stats(db_session, "u19")
        assert winner.current_tier == "gold"
        assert winner.highest_tier == "gold"
        assert winner.total_promotions == 1
        assert winner.first_place_wins == 1
        assert winner.top_3_finishes == 1
        assert winner.weeks_participated == 1

        last = await get_or_create_league_stats(db_session, "u00")
        assert last.current_tier == "bronze"
        assert last.highest_tier == "silver"

    @pytest.mark.asyncio
    async def test_next_join_uses_new_tier(self, db_session):
        league_id = await seat_silver_cohort(db_session, 20)
        await finalize_period(db_session, None, league_id, NEXT_WEEK)
        seat = await join_league(db_session, "u19", NEXT_WEEK)
        assert seat.tier == "gold"
        assert seat.week_iso == "2026-W11"

    @pytest.mark.asyncio
    async def test_second_finalize_returns_archive(self, db_session, mock_redis):
        league_id = await seat_silver_cohort(db_session, 20)
        first = await finalize_period(db_session, mock_redis, league_id, NEXT_WEEK)
        mock_redis.publish.reset_mock()

        again = await finalize_period(db_session, mock_redis, league_id, NEXT_WEEK)
        assert again.already_finalized is True
        assert [(o.user_id, o.outcome) for o in again.outcomes] == [(o.user_id, o.outcome) for o in first.outcomes]
        mock_redis.publish.assert_not_called()

        history = (await db_session.execute(select(func.count(LeagueHistory.id)))).scalar_one()
        assert history == 20
        stats = await get_or_create_league_stats(db_session, "u19")
        assert stats.weeks_participated == 1

    @pytest.mark.asyncio
    async def test_finalized_league_takes_no_xp(self, db_session):
        info = await join_league(db_session, "user-1", NOW)
        await finalize_period(db_session, None, info.league_id, NOW)
        assert await add_weekly_xp(db_session, "user-1", 20, NOW) is False

    @pytest.mark.asyncio
    async def test_missing_league(self, db_session):
        with pytest.raises(NotFoundError):
            await finalize_period(db_session, None, 404, NEXT_WEEK)


class TestDueLeagues:
    @pytest.mark.asyncio
    async def test_only_past_weeks_are_due(self, db_session):
        old = await join_league(db_session, "user-1", NOW)
        assert await get_due_league_ids(db_session, NOW) == []
        assert await get_due_league_ids(db_session, NEXT_WEEK) == [old.league_id]

    @pytest.mark.asyncio
    async def test_engine_finalizes_each_due_league(self, db_session):
        old = await join_league(db_session, "user-1", NOW)
        await db_session.commit()

        engine = ProgressionEngine(db_session)
        results = await engine.finalize_due_leagues(NEXT_WEEK)
        assert [r.league_id for r in results] == [old.league_id]
        assert await get_due_league_ids(db_session, NEXT_WEEK) == []


class TestUserStatus:
    @pytest.mark.asyncio
    async def test_outside_league(self, db_session):
        status = await get_user_league_status(db_session, "user-1", NOW)
        assert status.in_league is False
        assert status.current_tier == "bronze"
        # Wednesday noon to Monday midnight
        assert status.seconds_until_reset == 4 * 86400 + 12 * 3600

    @pytest.mark.asyncio
    async def test_inside_league(self, db_session):
        await join_league(db_session, "user-1", NOW)
        await join_league(db_session, "user-2", NOW)
        await award_xp(db_session, None, "user-2", "daily_task", idempotency_key="t", rng=no_crit(), now=NOW)

        status = await get_user_league_status(db_session, "user-1", NOW)
        assert status.in_league is True
        assert status.rank == 2
        assert status.membership.weekly_xp == 0
