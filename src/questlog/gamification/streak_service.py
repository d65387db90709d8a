"""Daily streak tracking in the user's local timezone."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.db.models import UserProgress
from questlog.exceptions import InvalidInputError
from questlog.gamification import events
from questlog.gamification.schemas import StreakResult, StreakShieldStatus
from questlog.gamification.week_utils import get_zone, local_day
from questlog.gamification.xp_service import get_or_create_progress

logger = logging.getLogger(__name__)

MAX_STREAK_SHIELDS = 3


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: date | None = None
    shields: int = 0


def advance_streak(state: StreakState, day: date) -> tuple[StreakState, StreakResult]:
    """Apply one activity on local calendar ``day`` to a streak.

    - first activity ever  -> streak 1
    - same day as last     -> unchanged
    - the following day    -> +1
    - one day missed       -> +1 if a shield is armed (the shield is spent)
    - later than that      -> reset to 1, streak_broken
    - earlier than last    -> unchanged (stale/backfilled, ignored)
    """
    last = state.last_activity_date

    if last is not None and day <= last:
        return state, StreakResult(
            current_streak=state.current_streak,
            longest_streak=state.longest_streak,
            shields_left=state.shields,
            last_activity_date=last,
        )

    broken = False
    shield_used = False
    shields = state.shields
    if last is None:
        current = 1
    elif day - last == timedelta(days=1):
        current = state.current_streak + 1
    elif day - last == timedelta(days=2) and shields > 0:
        current = state.current_streak + 1
        shields -= 1
        shield_used = True
    else:
        current = 1
        broken = True

    longest = max(state.longest_streak, current)
    new_state = StreakState(
        current_streak=current, longest_streak=longest, last_activity_date=day, shields=shields
    )
    return new_state, StreakResult(
        current_streak=current,
        longest_streak=longest,
        streak_broken=broken,
        shield_used=shield_used,
        shields_left=shields,
        changed=True,
        last_activity_date=day,
    )


async def record_activity(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    activity: date | datetime,
) -> StreakResult:
    """Record activity for a user and update their daily streak.

    ``activity`` is either a local calendar date or an aware timestamp that
    is converted to the user's timezone before comparing days.
    """
    progress = await get_or_create_progress(db, user_id, lock=True)
    day = local_day(activity, progress.timezone)

    state = StreakState(
        current_streak=progress.current_streak,
        longest_streak=progress.longest_streak,
        last_activity_date=progress.last_activity_date,
        shields=progress.streak_shields,
    )
    previous_streak = state.current_streak
    new_state, result = advance_streak(state, day)

    if not result.changed:
        return result

    progress.current_streak = new_state.current_streak
    progress.longest_streak = new_state.longest_streak
    progress.last_activity_date = new_state.last_activity_date
    progress.streak_shields = new_state.shields
    progress.updated_at = datetime.now(timezone.utc)
    await db.flush()

    if result.shield_used:
        logger.info("Streak shield spent: user=%s streak=%d", user_id, result.current_streak)
    if result.streak_broken and previous_streak > 1:
        await events.emit_event(
            db, redis, user_id, events.STREAK_BROKEN,
            title="Streak Broken",
            description=f"Your {previous_streak}-day streak has ended.",
            payload={"streak_length": previous_streak},
        )

    return result


async def arm_streak_shield(db: AsyncSession, user_id: str) -> StreakShieldStatus:
    """Arm one streak shield. Raises InvalidInputError when already at the cap."""
    progress = await get_or_create_progress(db, user_id, lock=True)
    if progress.streak_shields >= MAX_STREAK_SHIELDS:
        raise InvalidInputError(f"Already holding {MAX_STREAK_SHIELDS} streak shields")
    progress.streak_shields += 1
    progress.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return StreakShieldStatus(shields=progress.streak_shields, max_shields=MAX_STREAK_SHIELDS)


async def set_timezone(db: AsyncSession, user_id: str, tz_name: str) -> UserProgress:
    """Change the timezone used for the user's day boundaries."""
    get_zone(tz_name)
    progress = await get_or_create_progress(db, user_id, lock=True)
    progress.timezone = tz_name
    await db.flush()
    return progress


async def find_streaks_at_risk(db: AsyncSession, now: datetime | None = None) -> list[UserProgress]:
    """Users with a live streak whose last activity was yesterday, local time.

    They still have the rest of today to keep the streak going.
    """
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(UserProgress).where(
            UserProgress.current_streak > 0,
            UserProgress.last_activity_date.is_not(None),
        )
    )
    at_risk = []
    for progress in result.scalars():
        today = now.astimezone(get_zone(progress.timezone)).date()
        if progress.last_activity_date == today - timedelta(days=1):
            at_risk.append(progress)
    return at_risk


async def send_streak_warnings(
    db: AsyncSession,
    redis: object | None,
    now: datetime | None = None,
) -> int:
    """Warn users whose streak expires at their local midnight.

    Returns number of warnings sent.
    """
    warnings = 0
    for progress in await find_streaks_at_risk(db, now):
        streak = progress.current_streak
        if progress.streak_shields > 0:
            title = "Streak Shield Ready"
            description = f"Your {streak}-day streak is protected, but why not keep the momentum going?"
        else:
            title = "Streak Expiring Soon"
            description = f"Log an activity today to keep your {streak}-day streak"
        await events.emit_event(
            db, redis, progress.user_id, events.STREAK_WARNING,
            title=title,
            description=description,
            payload={"streak_length": streak, "shielded": progress.streak_shields > 0},
            type_="reminder",
        )
        warnings += 1

    logger.info("Streak warnings sent: %d", warnings)
    return warnings
