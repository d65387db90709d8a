"""Achievement unlocks with duplicate prevention, XP reward and notification."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.db.models import UserAchievement
from questlog.exceptions import InvalidInputError
from questlog.gamification import events
from questlog.gamification.achievements import (
    AchievementDefinition,
    achievement_progress,
    newly_unlocked,
)
from questlog.gamification.schemas import AchievementProgress, UserStats
from questlog.gamification.xp_service import award_xp

logger = logging.getLogger(__name__)


def _parse_stats(stats: UserStats | dict[str, Any]) -> UserStats:
    if isinstance(stats, UserStats):
        return stats
    try:
        return UserStats.model_validate(stats)
    except ValidationError as exc:
        raise InvalidInputError(f"Malformed user stats: {exc.errors()}") from exc


async def get_unlocked_codes(db: AsyncSession, user_id: str) -> set[str]:
    result = await db.execute(
        select(UserAchievement.achievement_code).where(UserAchievement.user_id == user_id)
    )
    return set(result.scalars())


async def evaluate_achievements(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    stats: UserStats | dict[str, Any],
    now: datetime | None = None,
) -> list[AchievementDefinition]:
    """Unlock every achievement the stats now satisfy.

    Returns the newly unlocked definitions (empty if nothing changed).
    Handles:
    1. Load existing unlocks; those codes are skipped
    2. Insert into user_achievements (UNIQUE per user and code)
    3. Grant the reward XP (idempotent via ``achievement:<code>``)
    4. Emit achievement_unlocked

    The caller's transaction covers the unlock rows and their XP together.
    """
    stats = _parse_stats(stats)
    now = now or datetime.now(timezone.utc)

    unlocked = await get_unlocked_codes(db, user_id)
    candidates = newly_unlocked(stats, unlocked)
    if not candidates:
        return []

    granted = []
    for definition in candidates:
        try:
            async with db.begin_nested():
                db.add(UserAchievement(
                    user_id=user_id,
                    achievement_code=definition.code,
                    xp_awarded=definition.xp_reward,
                    unlocked_at=now,
                ))
        except IntegrityError:
            # Race: a concurrent evaluation unlocked it first and paid the XP
            logger.info("Achievement %s already unlocked for user %s", definition.code, user_id)
            continue
        granted.append(definition)

    for definition in granted:
        await award_xp(
            db, redis, user_id, "achievement_unlock",
            {"base_amount": definition.xp_reward, "description": f'Achievement: "{definition.name}"'},
            idempotency_key=f"achievement:{definition.code}",
            now=now,
        )
        await events.emit_event(
            db, redis, user_id, events.ACHIEVEMENT_UNLOCKED,
            title=f'Achievement Unlocked: "{definition.name}"',
            description=f"+{definition.xp_reward} XP: {definition.description}",
            payload={
                "code": definition.code,
                "name": definition.name,
                "tier": definition.tier,
                "category": definition.category,
                "xp_reward": definition.xp_reward,
            },
        )

    logger.info("User %s unlocked %s", user_id, [d.code for d in granted])
    return granted


async def get_achievement_progress(
    db: AsyncSession, user_id: str, stats: UserStats | dict[str, Any]
) -> list[AchievementProgress]:
    """Progress toward every achievement for display."""
    return achievement_progress(_parse_stats(stats), await get_unlocked_codes(db, user_id))
