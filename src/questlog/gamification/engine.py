"""Progression engine: one transaction per operation.

Service functions only flush; this facade owns the commit. Every method
either commits all of its writes or rolls all of them back and re-raises
the typed error to the caller.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from typing import Any, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.exceptions import InvariantViolationError, QuestlogError
from questlog.gamification import (
    achievement_service,
    app_state,
    league_service,
    loot_service,
    streak_service,
    xp_service,
)
from questlog.gamification.achievements import AchievementDefinition
from questlog.gamification.schemas import (
    AwardResult,
    DailyRewardResult,
    DailyRewardStatus,
    FinalizeResult,
    LeagueStandings,
    LootContext,
    LootGrantResult,
    MembershipInfo,
    StreakResult,
    StreakShieldStatus,
    UserStats,
    WeeklyBoxStatus,
    XPBoostStatus,
    XPContext,
)

logger = structlog.get_logger()

T = TypeVar("T")


class ProgressionEngine:
    """Transaction boundary around the progression services."""

    def __init__(self, db: AsyncSession, redis: object | None = None, rng: random.Random | None = None) -> None:
        self.db = db
        self.redis = redis
        self.rng = rng

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]], **log_context: Any) -> T:
        try:
            result = await fn()
            await self.db.commit()
        except InvariantViolationError as exc:
            await self.db.rollback()
            logger.critical("invariant_violation", operation=operation, error=str(exc), **exc.details)
            raise
        except QuestlogError as exc:
            await self.db.rollback()
            logger.info("operation_rejected", operation=operation, error=type(exc).__name__, **log_context)
            raise
        except Exception:
            await self.db.rollback()
            logger.exception("operation_failed", operation=operation, **log_context)
            raise
        return result

    # --- XP ---

    async def award_xp(
        self,
        user_id: str,
        action_type: str,
        context: XPContext | dict[str, Any] | None = None,
        *,
        idempotency_key: str,
        now: datetime | None = None,
    ) -> AwardResult:
        return await self._run(
            "award_xp",
            lambda: xp_service.award_xp(
                self.db, self.redis, user_id, action_type, context,
                idempotency_key=idempotency_key, rng=self.rng, now=now,
            ),
            user_id=user_id, action_type=action_type,
        )

    async def activate_xp_boost(
        self, user_id: str, multiplier: float, duration_minutes: int, now: datetime | None = None
    ) -> XPBoostStatus:
        return await self._run(
            "activate_xp_boost",
            lambda: xp_service.activate_xp_boost(self.db, user_id, multiplier, duration_minutes, now),
            user_id=user_id,
        )

    async def correct_xp(
        self, user_id: str, new_total: int, reason: str, *, idempotency_key: str
    ) -> int:
        async def op() -> int:
            progress = await xp_service.correct_xp(
                self.db, user_id, new_total, reason, idempotency_key=idempotency_key
            )
            return progress.total_xp

        return await self._run("correct_xp", op, user_id=user_id)

    async def recompute_progress(self, user_id: str) -> dict:
        return await self._run(
            "recompute_progress",
            lambda: xp_service.recompute_progress_from_ledger(self.db, user_id),
            user_id=user_id,
        )

    # --- Streaks ---

    async def record_activity(self, user_id: str, activity: date | datetime) -> StreakResult:
        return await self._run(
            "record_activity",
            lambda: streak_service.record_activity(self.db, self.redis, user_id, activity),
            user_id=user_id,
        )

    async def set_timezone(self, user_id: str, tz_name: str) -> str:
        async def op() -> str:
            progress = await streak_service.set_timezone(self.db, user_id, tz_name)
            return progress.timezone

        return await self._run("set_timezone", op, user_id=user_id)

    # --- Loot ---

    async def roll_loot(
        self,
        user_id: str,
        context: LootContext | dict[str, Any] | None = None,
        *,
        idempotency_key: str,
        source: str = "activity",
    ) -> LootGrantResult:
        return await self._run(
            "roll_loot",
            lambda: loot_service.roll_and_grant(
                self.db, self.redis, user_id, context,
                idempotency_key=idempotency_key, source=source, rng=self.rng,
            ),
            user_id=user_id,
        )

    async def use_item(
        self, user_id: str, item_code: str, *, idempotency_key: str | None = None
    ) -> XPBoostStatus | StreakShieldStatus | LootGrantResult:
        return await self._run(
            "use_item",
            lambda: loot_service.use_item(
                self.db, self.redis, user_id, item_code,
                idempotency_key=idempotency_key, rng=self.rng,
            ),
            user_id=user_id, item_code=item_code,
        )

    async def claim_daily_reward(self, user_id: str, now: datetime | None = None) -> DailyRewardResult:
        return await self._run(
            "claim_daily_reward",
            lambda: loot_service.claim_daily_reward(self.db, self.redis, user_id, rng=self.rng, now=now),
            user_id=user_id,
        )

    async def get_daily_reward_status(self, user_id: str, now: datetime | None = None) -> DailyRewardStatus:
        return await self._run(
            "get_daily_reward_status",
            lambda: loot_service.get_daily_reward_status(self.db, user_id, now),
            user_id=user_id,
        )

    async def claim_weekly_box(self, user_id: str, now: datetime | None = None) -> LootGrantResult:
        return await self._run(
            "claim_weekly_box",
            lambda: loot_service.claim_weekly_box(self.db, self.redis, user_id, rng=self.rng, now=now),
            user_id=user_id,
        )

    async def get_weekly_box_status(self, user_id: str, now: datetime | None = None) -> WeeklyBoxStatus:
        return await self._run(
            "get_weekly_box_status",
            lambda: loot_service.get_weekly_box_status(self.db, user_id, now),
            user_id=user_id,
        )

    # --- Achievements ---

    async def evaluate_achievements(
        self, user_id: str, stats: UserStats | dict[str, Any]
    ) -> list[AchievementDefinition]:
        return await self._run(
            "evaluate_achievements",
            lambda: achievement_service.evaluate_achievements(self.db, self.redis, user_id, stats),
            user_id=user_id,
        )

    # --- Leagues ---

    async def join_league(self, user_id: str, now: datetime | None = None) -> MembershipInfo:
        return await self._run(
            "join_league",
            lambda: league_service.join_league(self.db, user_id, now),
            user_id=user_id,
        )

    async def get_standings(self, league_id: int) -> LeagueStandings:
        return await self._run(
            "get_standings",
            lambda: league_service.get_standings(self.db, league_id),
            league_id=league_id,
        )

    async def finalize_period(self, league_id: int, now: datetime | None = None) -> FinalizeResult:
        return await self._run(
            "finalize_period",
            lambda: league_service.finalize_period(self.db, self.redis, league_id, now),
            league_id=league_id,
        )

    async def finalize_due_leagues(self, now: datetime | None = None) -> list[FinalizeResult]:
        """Finalize every league whose week has ended, each in its own transaction.

        A league that fails is logged and left active for the next run.
        """
        league_ids = await league_service.get_due_league_ids(self.db, now)
        await self.db.commit()

        results = []
        for league_id in league_ids:
            try:
                results.append(await self.finalize_period(league_id, now))
            except QuestlogError:
                continue
        logger.info("leagues_finalized", due=len(league_ids), finalized=len(results))
        return results

    # --- App state ---

    async def save_app_state(self, user_id: str, app_id: str, state: Any) -> Any:
        return await self._run(
            "save_app_state",
            lambda: app_state.save_app_state(self.db, user_id, app_id, state),
            user_id=user_id, app_id=app_id,
        )
