"""XP award engine with idempotency, modifiers and level-up detection."""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.config import get_settings
from questlog.db.base import as_utc, insert_if_absent
from questlog.db.models import AppProgress, UserProgress, XPLedger
from questlog.exceptions import InvalidInputError, InvariantViolationError
from questlog.gamification import events
from questlog.gamification.levels import SKILL_CURVE, compute_level, level_for_total_xp
from questlog.gamification.schemas import AwardResult, XPBoostStatus, XPContext, XPHistoryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class XPAction:
    base: int
    app: str | None
    location_scaled: bool = False
    count_scaled: bool = False
    modifiers: bool = True
    variable: bool = False  # amount supplied by the caller (rewards)


XP_ACTIONS: dict[str, XPAction] = {
    # Travel
    "visit": XPAction(25, "travel", location_scaled=True),
    "first_visit": XPAction(50, "travel", location_scaled=True),
    "visit_with_rating": XPAction(40, "travel", location_scaled=True),
    "visit_with_review": XPAction(60, "travel", location_scaled=True),
    "visit_with_photo": XPAction(75, "travel", location_scaled=True),
    "new_location": XPAction(50, "travel", location_scaled=True),
    "new_city": XPAction(200, "travel"),
    "new_country": XPAction(500, "travel"),
    "quest_complete": XPAction(100, "travel"),
    # Fitness
    "workout_set": XPAction(10, "fitness", count_scaled=True),
    "workout_complete": XPAction(50, "fitness"),
    "personal_record": XPAction(100, "fitness"),
    # Life / daily tasks
    "quest_log": XPAction(15, "life", count_scaled=True),
    "daily_task": XPAction(15, "life"),
    # Rewards: fixed amount from the caller, never multiplied
    "achievement_unlock": XPAction(0, None, modifiers=False, variable=True),
    "loot_crystal": XPAction(0, None, modifiers=False, variable=True),
    "daily_reward": XPAction(0, None, modifiers=False, variable=True),
    "admin_correction": XPAction(0, None, modifiers=False, variable=True),
}

# Ledger key namespaces owned by the reward grants
REWARD_KEY_PREFIXES: dict[str, str] = {
    "achievement_unlock": "achievement:",
    "loot_crystal": "loot:",
    "daily_reward": "daily:",
}

# Not awardable through award_xp; only correct_xp writes these.
_INTERNAL_ACTIONS = {"admin_correction"}

LOCATION_TYPE_MULTIPLIERS: dict[str, float] = {
    "RESTAURANT": 1.0,
    "BAR": 1.0,
    "CAFE": 0.8,
    "ATTRACTION": 1.5,
    "HOTEL": 1.2,
    "SHOP": 0.8,
    "NATURE": 1.5,
    "TRANSPORT": 0.5,
    "MUSEUM": 1.5,
    "BEACH": 1.2,
    "NIGHTLIFE": 1.0,
    "OTHER": 0.8,
}

# (minimum streak days, multiplier), highest first
STREAK_MULTIPLIERS: tuple[tuple[int, float], ...] = ((30, 2.0), (14, 1.5), (7, 1.25), (3, 1.1))
MAX_STREAK_MULTIPLIER = 2.0

CRITICAL_HIT_CHANCE = 0.10
CRITICAL_HIT_MULTIPLIER = 2

QUEST_COMPLETE_PER_ITEM = 15
PARTY_MEMBER_BONUS = 50
PARTY_BONUS_MULTIPLIER = 1.25


def streak_multiplier(streak_days: int) -> float:
    """Multiplier for the current streak length, capped at MAX_STREAK_MULTIPLIER."""
    for threshold, multiplier in STREAK_MULTIPLIERS:
        if streak_days >= threshold:
            return min(multiplier, MAX_STREAK_MULTIPLIER)
    return 1.0


def quest_completion_xp(item_count: int, party_size: int = 1) -> int:
    """Base XP for completing a quest; parties get a per-member bonus then x1.25."""
    total: float = XP_ACTIONS["quest_complete"].base + QUEST_COMPLETE_PER_ITEM * item_count
    if party_size > 1:
        total = (total + PARTY_MEMBER_BONUS * party_size) * PARTY_BONUS_MULTIPLIER
    return math.floor(total)


def _parse_context(context: XPContext | dict[str, Any] | None) -> XPContext:
    if context is None:
        return XPContext()
    if isinstance(context, XPContext):
        return context
    try:
        return XPContext.model_validate(context)
    except ValidationError as exc:
        raise InvalidInputError(f"Malformed XP context: {exc.errors()}") from exc


def get_action(action_type: str) -> XPAction:
    action = XP_ACTIONS.get(action_type)
    if action is None or action_type in _INTERNAL_ACTIONS:
        raise InvalidInputError(f"Unknown action type: {action_type!r}")
    return action


def base_xp_for_action(action_type: str, context: XPContext) -> int:
    """Look up the unmodified XP for an action. Raises InvalidInputError on bad input."""
    action = get_action(action_type)

    if action.variable:
        if context.base_amount is None:
            raise InvalidInputError(f"{action_type} requires base_amount")
        return context.base_amount
    if action_type == "quest_complete":
        return quest_completion_xp(context.item_count, context.party_size)
    if action.count_scaled:
        return action.base * max(context.item_count, 1)
    return action.base


def calculate_award(
    action_type: str,
    context: XPContext,
    streak_days: int = 0,
    boost_multiplier: float = 1.0,
    rng: random.Random | None = None,
) -> dict:
    """Apply modifiers in fixed order: location type, streak, critical hit, boost.

    Pure apart from the single critical-hit draw from ``rng``.
    """
    action = get_action(action_type)
    base = base_xp_for_action(action_type, context)

    if not action.modifiers:
        return {"base": base, "amount": base, "critical_hit": False, "boost_multiplier": 1.0}

    rng = rng or random.Random()
    amount: float = base

    if action.location_scaled and context.location_type:
        amount *= LOCATION_TYPE_MULTIPLIERS.get(context.location_type.upper(), 1.0)

    amount *= streak_multiplier(streak_days)

    critical_hit = rng.random() < CRITICAL_HIT_CHANCE
    if critical_hit:
        amount *= CRITICAL_HIT_MULTIPLIER

    amount *= boost_multiplier

    return {
        "base": base,
        "amount": math.floor(amount),
        "critical_hit": critical_hit,
        "boost_multiplier": boost_multiplier,
    }


# ---------------------------------------------------------------------------
# Progress rows
# ---------------------------------------------------------------------------


async def get_or_create_progress(
    db: AsyncSession, user_id: str, *, lock: bool = False
) -> UserProgress:
    """Get or create the progress row for a user.

    ``lock=True`` takes a row lock so concurrent read-modify-writes for the
    same user serialize. The first row for a user is created with an
    insert-if-absent, so two first-time writers both end up on one row.
    """
    stmt = select(UserProgress).where(UserProgress.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    progress = result.scalar_one_or_none()
    if progress is None:
        await insert_if_absent(
            db, UserProgress,
            {
                "user_id": user_id,
                "total_xp": 0,
                "level": 1,
                "current_streak": 0,
                "longest_streak": 0,
                "streak_shields": 0,
                "login_streak": 0,
                "timezone": get_settings().default_timezone,
                "xp_boost_multiplier": 1.0,
            },
            index_elements=["user_id"],
        )
        progress = (await db.execute(stmt)).scalar_one()
    return progress


async def _get_or_create_app_progress(db: AsyncSession, user_id: str, app_id: str) -> AppProgress:
    stmt = (
        select(AppProgress)
        .where(AppProgress.user_id == user_id, AppProgress.app_id == app_id)
        .with_for_update()
    )
    app = (await db.execute(stmt)).scalar_one_or_none()
    if app is None:
        await insert_if_absent(
            db, AppProgress,
            {"user_id": user_id, "app_id": app_id, "xp": 0, "level": 1},
            index_elements=["user_id", "app_id"],
        )
        app = (await db.execute(stmt)).scalar_one()
    return app


def check_level_invariant(progress: UserProgress) -> None:
    """Raise if the cached level is not the level of the stored XP."""
    expected = compute_level(progress.total_xp)
    if progress.level != expected:
        raise InvariantViolationError(
            "Stored level disagrees with stored XP",
            user_id=progress.user_id,
            total_xp=progress.total_xp,
            stored_level=progress.level,
            computed_level=expected,
        )


# ---------------------------------------------------------------------------
# Boosts
# ---------------------------------------------------------------------------


def _boost_status(progress: UserProgress, now: datetime) -> XPBoostStatus:
    expires_at = as_utc(progress.xp_boost_expires_at)
    if expires_at is None or expires_at <= now or progress.xp_boost_multiplier <= 1.0:
        return XPBoostStatus(active=False, multiplier=1.0)
    return XPBoostStatus(
        active=True,
        multiplier=progress.xp_boost_multiplier,
        expires_at=expires_at,
        remaining_seconds=int((expires_at - now).total_seconds()),
    )


async def get_xp_boost(db: AsyncSession, user_id: str, now: datetime | None = None) -> XPBoostStatus:
    """Active XP boost for a user. Expired boosts are cleared."""
    now = now or datetime.now(timezone.utc)
    progress = await get_or_create_progress(db, user_id)
    status = _boost_status(progress, now)
    if not status.active and progress.xp_boost_expires_at is not None:
        progress.xp_boost_multiplier = 1.0
        progress.xp_boost_expires_at = None
        await db.flush()
    return status


async def activate_xp_boost(
    db: AsyncSession,
    user_id: str,
    multiplier: float,
    duration_minutes: int,
    now: datetime | None = None,
) -> XPBoostStatus:
    """Start a time-limited XP multiplier, replacing any current boost."""
    if multiplier < 1.0 or duration_minutes <= 0:
        raise InvalidInputError("Boost multiplier must be >= 1 and duration positive")
    now = now or datetime.now(timezone.utc)
    progress = await get_or_create_progress(db, user_id, lock=True)
    progress.xp_boost_multiplier = multiplier
    progress.xp_boost_expires_at = now + timedelta(minutes=duration_minutes)
    progress.updated_at = now
    await db.flush()
    return _boost_status(progress, now)


# ---------------------------------------------------------------------------
# Awarding
# ---------------------------------------------------------------------------


async def _find_ledger_entry(db: AsyncSession, user_id: str, idempotency_key: str) -> XPLedger | None:
    result = await db.execute(
        select(XPLedger).where(
            XPLedger.user_id == user_id,
            XPLedger.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


def _replayed_result(entry: XPLedger, progress: UserProgress) -> AwardResult:
    skill_leveled_up = (
        entry.skill_level_after is not None
        and entry.skill_level_before is not None
        and entry.skill_level_after > entry.skill_level_before
    )
    return AwardResult(
        xp_awarded=entry.amount,
        leveled_up=entry.level_after > entry.level_before,
        new_level=entry.level_after,
        critical_hit=entry.critical_hit,
        total_xp=progress.total_xp,
        boost_multiplier=entry.boost_multiplier,
        skill_level=entry.skill_level_after,
        skill_leveled_up=skill_leveled_up,
        duplicate=True,
    )


def check_idempotency_key(action_type: str, idempotency_key: str) -> None:
    """Reward keys live in their own namespaces; other actions may not use them."""
    if not idempotency_key:
        raise InvalidInputError("idempotency_key is required")
    for reward_action, prefix in REWARD_KEY_PREFIXES.items():
        if idempotency_key.startswith(prefix) and action_type != reward_action:
            raise InvalidInputError(f"Idempotency keys starting with {prefix!r} are reserved")
        if action_type == reward_action and not idempotency_key.startswith(prefix):
            raise InvalidInputError(f"{action_type} keys must start with {prefix!r}")


async def award_xp(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    action_type: str,
    context: XPContext | dict[str, Any] | None = None,
    *,
    idempotency_key: str,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> AwardResult:
    """Award XP for one logical action, at most once per idempotency key.

    1. Validate action, key and context (no state touched on failure)
    2. Lock the user's progress row
    3. Return the stored result if the key was already applied
    4. Apply modifiers and claim the key with an xp_ledger row (savepoint)
    5. Increment totals; recompute hero and skill levels; emit level_up
    6. Credit the user's weekly league XP
    """
    check_idempotency_key(action_type, idempotency_key)
    ctx = _parse_context(context)
    action = get_action(action_type)
    base_xp_for_action(action_type, ctx)
    now = now or datetime.now(timezone.utc)

    progress = await get_or_create_progress(db, user_id, lock=True)

    existing = await _find_ledger_entry(db, user_id, idempotency_key)
    if existing is not None:
        logger.info("Duplicate XP award ignored: user=%s key=%s", user_id, idempotency_key)
        return _replayed_result(existing, progress)

    check_level_invariant(progress)

    boost = _boost_status(progress, now)
    calc = calculate_award(
        action_type, ctx,
        streak_days=progress.current_streak,
        boost_multiplier=boost.multiplier,
        rng=rng,
    )
    amount = calc["amount"]
    old_level = progress.level
    new_level = compute_level(progress.total_xp + amount)

    app = None
    old_skill = new_skill = None
    if action.app is not None:
        app = await _get_or_create_app_progress(db, user_id, action.app)
        old_skill = app.level
        new_skill = level_for_total_xp(app.xp + amount, SKILL_CURVE)["level"]

    try:
        async with db.begin_nested():
            db.add(XPLedger(
                user_id=user_id,
                action_type=action_type,
                app_id=action.app,
                amount=amount,
                critical_hit=calc["critical_hit"],
                boost_multiplier=calc["boost_multiplier"],
                level_before=old_level,
                level_after=new_level,
                skill_level_before=old_skill,
                skill_level_after=new_skill,
                description=ctx.description,
                idempotency_key=idempotency_key,
                created_at=now,
            ))
    except IntegrityError:
        # Race: the key landed between our check and insert
        existing = await _find_ledger_entry(db, user_id, idempotency_key)
        if existing is None:
            raise
        await db.refresh(progress)
        return _replayed_result(existing, progress)

    progress.total_xp += amount
    progress.level = new_level
    progress.updated_at = now
    if app is not None:
        app.xp += amount
        app.level = new_skill
        app.updated_at = now
    await db.flush()

    from questlog.gamification.league_service import add_weekly_xp

    await add_weekly_xp(db, user_id, amount, now)

    leveled_up = new_level > old_level
    if leveled_up:
        await events.emit_event(
            db, redis, user_id, events.LEVEL_UP,
            title="Level Up!",
            description=f"Level {progress.level}",
            payload={"old_level": old_level, "new_level": progress.level, "total_xp": progress.total_xp},
        )

    return AwardResult(
        xp_awarded=amount,
        leveled_up=leveled_up,
        new_level=progress.level,
        critical_hit=calc["critical_hit"],
        total_xp=progress.total_xp,
        boost_multiplier=calc["boost_multiplier"],
        skill_level=new_skill,
        skill_leveled_up=app is not None and new_skill > old_skill,
    )


# ---------------------------------------------------------------------------
# Admin correction and recomputation
# ---------------------------------------------------------------------------


async def correct_xp(
    db: AsyncSession,
    user_id: str,
    new_total: int,
    reason: str,
    *,
    idempotency_key: str,
    now: datetime | None = None,
) -> UserProgress:
    """Explicit admin correction of total XP. Recorded in the ledger as a delta."""
    if new_total < 0:
        raise InvalidInputError("Total XP cannot be negative")
    now = now or datetime.now(timezone.utc)
    progress = await get_or_create_progress(db, user_id, lock=True)
    if await _find_ledger_entry(db, user_id, idempotency_key) is not None:
        return progress

    old_level = progress.level
    delta = new_total - progress.total_xp
    progress.total_xp = new_total
    progress.level = compute_level(new_total)
    progress.updated_at = now
    db.add(XPLedger(
        user_id=user_id,
        action_type="admin_correction",
        app_id=None,
        amount=delta,
        critical_hit=False,
        boost_multiplier=1.0,
        level_before=old_level,
        level_after=progress.level,
        description=reason,
        idempotency_key=idempotency_key,
        created_at=now,
    ))
    await db.flush()
    logger.warning("XP corrected: user=%s delta=%d reason=%s", user_id, delta, reason)
    return progress


async def recompute_progress_from_ledger(db: AsyncSession, user_id: str) -> dict:
    """Rebuild total XP and level from the ledger, the source of truth."""
    progress = await get_or_create_progress(db, user_id, lock=True)
    result = await db.execute(
        select(func.coalesce(func.sum(XPLedger.amount), 0)).where(XPLedger.user_id == user_id)
    )
    ledger_total = max(int(result.scalar_one()), 0)
    level = compute_level(ledger_total)

    changed = ledger_total != progress.total_xp or level != progress.level
    if changed:
        logger.warning(
            "Progress rebuilt from ledger: user=%s xp %d->%d level %d->%d",
            user_id, progress.total_xp, ledger_total, progress.level, level,
        )
        progress.total_xp = ledger_total
        progress.level = level
        progress.updated_at = datetime.now(timezone.utc)
        await db.flush()

    return {"total_xp": ledger_total, "level": level, "changed": changed}


async def get_xp_history(db: AsyncSession, user_id: str, limit: int = 50) -> list[XPHistoryEntry]:
    """Most recent ledger entries first."""
    result = await db.execute(
        select(XPLedger)
        .where(XPLedger.user_id == user_id)
        .order_by(XPLedger.id.desc())
        .limit(limit)
    )
    return [
        XPHistoryEntry(
            amount=row.amount,
            action_type=row.action_type,
            critical_hit=row.critical_hit,
            description=row.description,
            created_at=as_utc(row.created_at),
        )
        for row in result.scalars()
    ]
