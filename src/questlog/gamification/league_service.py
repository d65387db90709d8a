"""Weekly leagues: cohort assignment, standings and promotion/demotion.

Users compete in fixed-capacity cohorts of their current tier for one ISO
week. At the end of the week the top ranks move up a tier and the bottom
ranks move down. A league moves active -> finalized exactly once; its
history rows are never rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.config import get_settings
from questlog.db.base import as_utc, insert_if_absent
from questlog.db.models import League, LeagueHistory, LeagueMembership, LeagueStats
from questlog.exceptions import ConflictError, InvalidInputError, NotFoundError
from questlog.gamification import events
from questlog.gamification.schemas import (
    FinalizeResult,
    LeagueStandings,
    MembershipInfo,
    PeriodOutcome,
    StandingEntry,
    UserLeagueStatus,
)
from questlog.gamification.week_utils import get_current_week_iso, get_monday

logger = logging.getLogger(__name__)

TIERS: tuple[str, ...] = ("bronze", "silver", "gold", "platinum", "diamond", "obsidian", "legendary")

PROMOTION_COUNT = 10
DEMOTION_COUNT = 5


@dataclass(frozen=True)
class TierRule:
    promote: int
    demote: int


# Top tier never promotes, bottom tier never demotes
TIER_RULES: dict[str, TierRule] = {
    tier: TierRule(
        promote=0 if tier == TIERS[-1] else PROMOTION_COUNT,
        demote=0 if tier == TIERS[0] else DEMOTION_COUNT,
    )
    for tier in TIERS
}

VALID_TRANSITIONS: dict[str, list[str]] = {
    "active": ["finalized"],
    "finalized": [],
}

_OUTCOME_BY_ZONE = {"promotion": "promoted", "safe": "stayed", "demotion": "demoted"}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a league/membership state transition. Raises ConflictError if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise ConflictError(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


def _check_tier(tier: str) -> None:
    if tier not in TIERS:
        raise InvalidInputError(f"Unknown league tier: {tier!r}")


def next_tier(tier: str) -> str:
    _check_tier(tier)
    return TIERS[min(TIERS.index(tier) + 1, len(TIERS) - 1)]


def previous_tier(tier: str) -> str:
    _check_tier(tier)
    return TIERS[max(TIERS.index(tier) - 1, 0)]


def higher_tier(a: str, b: str) -> str:
    return a if TIERS.index(a) >= TIERS.index(b) else b


def rank_members(members: list[LeagueMembership]) -> list[tuple[int, LeagueMembership]]:
    """Rank members deterministically.

    Weekly XP DESC, then joined_at ASC (earlier wins), then membership id ASC
    so no two members ever share a rank.
    """

    def sort_key(m: LeagueMembership) -> tuple[int, datetime, int]:
        return (-m.weekly_xp, as_utc(m.joined_at), m.id)

    return [(idx + 1, m) for idx, m in enumerate(sorted(members, key=sort_key))]


def zone_for_rank(rank: int, total: int, tier: str) -> str:
    """promotion | safe | demotion. The promotion zone takes precedence in small cohorts."""
    rule = TIER_RULES[tier]
    if rank <= rule.promote:
        return "promotion"
    if rank > total - rule.demote:
        return "demotion"
    return "safe"


def tier_after(tier: str, zone: str) -> str:
    if zone == "promotion":
        return next_tier(tier)
    if zone == "demotion":
        return previous_tier(tier)
    return tier


def seconds_until_reset(now: datetime) -> int:
    """Seconds until the next Monday 00:00 UTC, when the weekly period rolls over."""
    now = now.astimezone(timezone.utc)
    next_monday = get_monday(now) + timedelta(weeks=1)
    reset = datetime(next_monday.year, next_monday.month, next_monday.day, tzinfo=timezone.utc)
    return max(int((reset - now).total_seconds()), 0)


# ---------------------------------------------------------------------------
# Stats and membership lookups
# ---------------------------------------------------------------------------


async def get_or_create_league_stats(
    db: AsyncSession, user_id: str, *, lock: bool = False
) -> LeagueStats:
    stmt = select(LeagueStats).where(LeagueStats.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    stats = result.scalar_one_or_none()
    if stats is None:
        await insert_if_absent(
            db, LeagueStats,
            {
                "user_id": user_id,
                "current_tier": TIERS[0],
                "highest_tier": TIERS[0],
                "weeks_participated": 0,
                "total_promotions": 0,
                "top_3_finishes": 0,
                "first_place_wins": 0,
            },
            index_elements=["user_id"],
        )
        stats = (await db.execute(stmt)).scalar_one()
    return stats


async def _current_membership(
    db: AsyncSession, user_id: str, week_iso: str, *, lock: bool = False
) -> tuple[LeagueMembership, League] | None:
    stmt = (
        select(LeagueMembership, League)
        .join(League, League.id == LeagueMembership.league_id)
        .where(LeagueMembership.user_id == user_id, League.week_iso == week_iso)
    )
    if lock:
        stmt = stmt.with_for_update(of=LeagueMembership)
    row = (await db.execute(stmt)).first()
    return (row[0], row[1]) if row else None


def _membership_info(membership: LeagueMembership, league: League, is_new: bool = False) -> MembershipInfo:
    return MembershipInfo(
        membership_id=membership.id,
        league_id=league.id,
        tier=league.tier,
        week_iso=league.week_iso,
        weekly_xp=membership.weekly_xp,
        status=membership.status,
        is_new=is_new,
    )


async def _member_count(db: AsyncSession, league_id: int) -> int:
    result = await db.execute(
        select(func.count(LeagueMembership.id)).where(LeagueMembership.league_id == league_id)
    )
    return int(result.scalar_one())


async def _open_league(db: AsyncSession, tier: str, week_iso: str, capacity: int) -> League | None:
    """Oldest active cohort of ``tier`` this week with a free seat, locked."""
    member_count = (
        select(func.count(LeagueMembership.id))
        .where(LeagueMembership.league_id == League.id)
        .correlate(League)
        .scalar_subquery()
    )
    result = await db.execute(
        select(League)
        .where(
            League.tier == tier,
            League.week_iso == week_iso,
            League.status == "active",
            member_count < capacity,
        )
        .order_by(League.created_at, League.id)
        .limit(1)
        .with_for_update()
    )
    league = result.scalar_one_or_none()
    # Seat may have been taken between the count and the lock
    if league is not None and await _member_count(db, league.id) >= capacity:
        return None
    return league


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def join_league(db: AsyncSession, user_id: str, now: datetime | None = None) -> MembershipInfo:
    """Seat the user in a cohort for the current week.

    Returns the existing membership if the user already joined this week;
    otherwise takes a seat in the oldest under-capacity cohort of the user's
    tier, creating a new cohort when all are full.
    """
    now = now or datetime.now(timezone.utc)
    week_iso = get_current_week_iso(now)

    # Serializes concurrent joins by the same user
    stats = await get_or_create_league_stats(db, user_id, lock=True)

    existing = await _current_membership(db, user_id, week_iso)
    if existing is not None:
        return _membership_info(*existing)

    tier = stats.current_tier
    league = await _open_league(db, tier, week_iso, get_settings().league_capacity)
    if league is None:
        league = League(tier=tier, week_iso=week_iso, status="active", created_at=now)
        db.add(league)
        await db.flush()
        logger.info("Created %s league %d for %s", tier, league.id, week_iso)

    membership = LeagueMembership(
        league_id=league.id,
        user_id=user_id,
        weekly_xp=0,
        joined_at=now,
        status="active",
    )
    db.add(membership)
    await db.flush()
    return _membership_info(membership, league, is_new=True)


async def add_weekly_xp(
    db: AsyncSession, user_id: str, amount: int, now: datetime | None = None
) -> bool:
    """Credit XP to the user's active membership for the current week.

    Returns False when the user has no active membership this week.
    """
    if amount <= 0:
        return False
    now = now or datetime.now(timezone.utc)
    found = await _current_membership(db, user_id, get_current_week_iso(now), lock=True)
    if found is None:
        return False
    membership, _league = found
    if membership.status != "active":
        return False
    membership.weekly_xp += amount
    await db.flush()
    return True


async def _get_league(db: AsyncSession, league_id: int, *, lock: bool = False) -> League:
    stmt = select(League).where(League.id == league_id)
    if lock:
        stmt = stmt.with_for_update()
    league = (await db.execute(stmt)).scalar_one_or_none()
    if league is None:
        raise NotFoundError(f"League {league_id} not found")
    return league


async def get_standings(db: AsyncSession, league_id: int) -> LeagueStandings:
    """Ranked members of a cohort, read in a single SELECT."""
    league = await _get_league(db, league_id)
    result = await db.execute(
        select(LeagueMembership).where(LeagueMembership.league_id == league_id)
    )
    members = list(result.scalars().all())
    total = len(members)

    return LeagueStandings(
        league_id=league.id,
        tier=league.tier,
        week_iso=league.week_iso,
        status=league.status,
        members=[
            StandingEntry(
                membership_id=m.id,
                user_id=m.user_id,
                weekly_xp=m.weekly_xp,
                joined_at=as_utc(m.joined_at),
                rank=rank,
                zone=zone_for_rank(rank, total, league.tier),
            )
            for rank, m in rank_members(members)
        ],
    )


async def _archived_result(db: AsyncSession, league: League) -> FinalizeResult:
    result = await db.execute(
        select(LeagueHistory)
        .where(LeagueHistory.league_id == league.id)
        .order_by(LeagueHistory.final_rank)
    )
    return FinalizeResult(
        league_id=league.id,
        week_iso=league.week_iso,
        tier=league.tier,
        outcomes=[
            PeriodOutcome(
                user_id=h.user_id,
                final_rank=h.final_rank,
                weekly_xp=h.weekly_xp,
                outcome=h.outcome,
                old_tier=h.tier,
                new_tier=h.new_tier,
            )
            for h in result.scalars()
        ],
        already_finalized=True,
    )


async def _apply_outcome(
    db: AsyncSession, user_id: str, rank: int, outcome: str, new_tier: str, now: datetime
) -> None:
    stats = await get_or_create_league_stats(db, user_id, lock=True)
    stats.current_tier = new_tier
    stats.highest_tier = higher_tier(stats.highest_tier, new_tier)
    stats.weeks_participated += 1
    if outcome == "promoted":
        stats.total_promotions += 1
    if rank <= 3:
        stats.top_3_finishes += 1
    if rank == 1:
        stats.first_place_wins += 1
    stats.updated_at = now


async def finalize_period(
    db: AsyncSession,
    redis: object | None,
    league_id: int,
    now: datetime | None = None,
) -> FinalizeResult:
    """Close a cohort's week and decide promotions and demotions.

    1. Lock the league row; an already finalized league returns its archive
    2. Rank members (same ordering as standings)
    3. Move each membership active -> finalized, write league_history
    4. Update lifetime league stats, which set the tier for the next join
    5. Emit league_promoted / league_demoted
    """
    now = now or datetime.now(timezone.utc)
    league = await _get_league(db, league_id, lock=True)

    if league.status == "finalized":
        logger.info("League %d already finalized", league_id)
        return await _archived_result(db, league)
    validate_transition(league.status, "finalized")

    result = await db.execute(
        select(LeagueMembership)
        .where(LeagueMembership.league_id == league_id)
        .with_for_update()
    )
    members = list(result.scalars().all())
    total = len(members)

    outcomes: list[PeriodOutcome] = []
    for rank, membership in rank_members(members):
        validate_transition(membership.status, "finalized")
        zone = zone_for_rank(rank, total, league.tier)
        outcome = _OUTCOME_BY_ZONE[zone]
        new_tier = tier_after(league.tier, zone)

        membership.status = "finalized"
        membership.final_rank = rank
        membership.outcome = outcome
        db.add(LeagueHistory(
            league_id=league.id,
            user_id=membership.user_id,
            week_iso=league.week_iso,
            tier=league.tier,
            final_rank=rank,
            weekly_xp=membership.weekly_xp,
            outcome=outcome,
            new_tier=new_tier,
            created_at=now,
        ))
        await _apply_outcome(db, membership.user_id, rank, outcome, new_tier, now)
        outcomes.append(PeriodOutcome(
            user_id=membership.user_id,
            final_rank=rank,
            weekly_xp=membership.weekly_xp,
            outcome=outcome,
            old_tier=league.tier,
            new_tier=new_tier,
        ))

    league.status = "finalized"
    league.finalized_at = now
    await db.flush()

    for o in outcomes:
        if o.outcome == "promoted":
            await events.emit_event(
                db, redis, o.user_id, events.LEAGUE_PROMOTED,
                title="Promoted!",
                description=f"You've been promoted to {o.new_tier.title()} League!",
                payload=o.model_dump(),
            )
        elif o.outcome == "demoted":
            await events.emit_event(
                db, redis, o.user_id, events.LEAGUE_DEMOTED,
                title="Demoted",
                description=f"You've dropped to {o.new_tier.title()} League.",
                payload=o.model_dump(),
            )

    logger.info(
        "Finalized league %d (%s %s): %d members, %d promoted, %d demoted",
        league.id, league.tier, league.week_iso, total,
        sum(o.outcome == "promoted" for o in outcomes),
        sum(o.outcome == "demoted" for o in outcomes),
    )
    return FinalizeResult(
        league_id=league.id,
        week_iso=league.week_iso,
        tier=league.tier,
        outcomes=outcomes,
    )


async def get_due_league_ids(db: AsyncSession, now: datetime | None = None) -> list[int]:
    """Active leagues whose week has ended, oldest week first."""
    current_week = get_current_week_iso(now)
    result = await db.execute(
        select(League.id)
        .where(League.status == "active", League.week_iso < current_week)
        .order_by(League.week_iso, League.id)
    )
    return list(result.scalars().all())


async def get_user_league_status(
    db: AsyncSession, user_id: str, now: datetime | None = None
) -> UserLeagueStatus:
    """The user's seat, rank and zone this week plus lifetime league stats."""
    now = now or datetime.now(timezone.utc)
    stats = await get_or_create_league_stats(db, user_id)
    status = UserLeagueStatus(
        in_league=False,
        current_tier=stats.current_tier,
        highest_tier=stats.highest_tier,
        weeks_participated=stats.weeks_participated,
        total_promotions=stats.total_promotions,
        top_3_finishes=stats.top_3_finishes,
        first_place_wins=stats.first_place_wins,
        seconds_until_reset=seconds_until_reset(now),
    )

    found = await _current_membership(db, user_id, get_current_week_iso(now))
    if found is None:
        return status

    membership, league = found
    standings = await get_standings(db, league.id)
    entry = next(e for e in standings.members if e.membership_id == membership.id)
    return status.model_copy(update={
        "in_league": True,
        "membership": _membership_info(membership, league),
        "rank": entry.rank,
        "zone": entry.zone,
    })
