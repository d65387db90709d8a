"""Loot drops: granting rolled items, inventory, item use and reward claims."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.db.base import as_utc, insert_if_absent
from questlog.db.models import DailyRewardClaim, InventoryItem, LootDropRecord, UserProgress, XPLedger
from questlog.exceptions import ConflictError, InvalidInputError, NotFoundError
from questlog.gamification import events
from questlog.gamification.loot_tables import ITEMS, LootRoll, Rarity, get_item, open_loot_box, roll_loot
from questlog.gamification.schemas import (
    DailyRewardDay,
    DailyRewardResult,
    DailyRewardStatus,
    InventoryEntry,
    LootContext,
    LootGrantResult,
    StreakShieldStatus,
    WeeklyBoxStatus,
    XPBoostStatus,
)
from questlog.gamification.streak_service import MAX_STREAK_SHIELDS, arm_streak_shield
from questlog.gamification.week_utils import get_monday, get_week_iso, local_day
from questlog.gamification.xp_service import activate_xp_boost, award_xp, get_or_create_progress

logger = logging.getLogger(__name__)

# Drop keys owned by the reward claims; caller keys may not use them
RESERVED_DROP_PREFIXES = ("daily:", "weekly_box:")


def check_drop_key(idempotency_key: str | None) -> None:
    if idempotency_key and idempotency_key.startswith(RESERVED_DROP_PREFIXES):
        raise InvalidInputError(f"Idempotency key {idempotency_key!r} uses a reserved prefix")


async def _find_drop(db: AsyncSession, user_id: str, idempotency_key: str) -> LootDropRecord | None:
    result = await db.execute(
        select(LootDropRecord).where(
            LootDropRecord.user_id == user_id,
            LootDropRecord.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


def _replayed_drop(record: LootDropRecord) -> LootGrantResult:
    item = ITEMS.get(record.item_code)
    return LootGrantResult(
        item_code=record.item_code,
        item_name=item.name if item else record.item_code,
        rarity=record.rarity,
        quantity=record.quantity,
        instant_xp=record.instant_xp,
        bonus_applied=list(record.bonuses or []),
        duplicate=True,
    )


async def _add_to_inventory(
    db: AsyncSession, user_id: str, roll: LootRoll, source: str, now: datetime
) -> int:
    """Put one unit of the rolled item in the inventory. Returns units added."""
    item = roll.item
    stmt = (
        select(InventoryItem)
        .where(InventoryItem.user_id == user_id, InventoryItem.item_code == item.code)
        .with_for_update()
    )
    row = (await db.execute(stmt)).scalar_one_or_none()

    if row is None:
        inserted = await insert_if_absent(
            db, InventoryItem,
            {"user_id": user_id, "item_code": item.code, "quantity": 1, "source": source, "acquired_at": now},
            index_elements=["user_id", "item_code"],
        )
        if inserted:
            return 1
        row = (await db.execute(stmt)).scalar_one()

    # Cosmetics are owned once; stacks stop at their cap
    if not item.stackable:
        return 0
    if item.max_stack is not None and row.quantity >= item.max_stack:
        return 0
    row.quantity += 1
    return 1


async def grant_loot(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    roll: LootRoll,
    *,
    idempotency_key: str,
    source: str = "activity",
    now: datetime | None = None,
) -> LootGrantResult:
    """Deliver a rolled drop, at most once per idempotency key.

    The loot_drops row is written first and claims the key; XP crystals are
    then awarded as instant XP through the award engine and every other item
    goes to the inventory.
    """
    if not idempotency_key:
        raise InvalidInputError("idempotency_key is required")
    now = now or datetime.now(timezone.utc)

    existing = await _find_drop(db, user_id, idempotency_key)
    if existing is not None:
        logger.info("Duplicate loot grant ignored: user=%s key=%s", user_id, idempotency_key)
        return _replayed_drop(existing)

    record = LootDropRecord(
        user_id=user_id,
        item_code=roll.item.code,
        rarity=roll.rarity.value,
        quantity=0,
        instant_xp=roll.instant_xp,
        bonuses=list(roll.bonus_applied),
        source=source,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(record)
    except IntegrityError:
        existing = await _find_drop(db, user_id, idempotency_key)
        if existing is None:
            raise
        return _replayed_drop(existing)

    xp_result = None
    quantity = 0
    if roll.instant_xp > 0:
        xp_result = await award_xp(
            db, redis, user_id, "loot_crystal",
            {"base_amount": roll.instant_xp, "description": f"Loot: {roll.item.name}"},
            idempotency_key=f"loot:{idempotency_key}",
            now=now,
        )
    else:
        quantity = await _add_to_inventory(db, user_id, roll, source, now)
        record.quantity = quantity
    await db.flush()

    await events.emit_event(
        db, redis, user_id, events.LOOT_DROP,
        title=f"Loot: {roll.item.name}",
        description=roll.item.description,
        payload={
            "item_code": roll.item.code,
            "rarity": roll.rarity.value,
            "instant_xp": roll.instant_xp,
            "bonus_applied": list(roll.bonus_applied),
        },
    )

    return LootGrantResult(
        item_code=roll.item.code,
        item_name=roll.item.name,
        rarity=roll.rarity.value,
        quantity=quantity,
        instant_xp=roll.instant_xp,
        bonus_applied=list(roll.bonus_applied),
        xp_result=xp_result,
    )


def _parse_loot_context(context: LootContext | dict[str, Any] | None) -> LootContext:
    if context is None:
        return LootContext()
    if isinstance(context, LootContext):
        return context
    try:
        return LootContext.model_validate(context)
    except ValidationError as exc:
        raise InvalidInputError(f"Malformed loot context: {exc.errors()}") from exc


async def roll_and_grant(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    context: LootContext | dict[str, Any] | None = None,
    *,
    idempotency_key: str,
    source: str = "activity",
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> LootGrantResult:
    """Roll a drop for a qualifying event and grant it.

    The stored streak is used when the context carries none. A repeated key
    returns the original drop without rolling again.
    """
    check_drop_key(idempotency_key)
    ctx = _parse_loot_context(context)
    existing = await _find_drop(db, user_id, idempotency_key)
    if existing is not None:
        return _replayed_drop(existing)

    if ctx.streak_days == 0:
        progress = await get_or_create_progress(db, user_id)
        ctx = ctx.model_copy(update={"streak_days": progress.current_streak})

    roll = roll_loot(ctx, rng)
    return await grant_loot(db, redis, user_id, roll, idempotency_key=idempotency_key, source=source, now=now)


async def get_inventory(db: AsyncSession, user_id: str) -> list[InventoryEntry]:
    """Items the user holds, rarest first."""
    result = await db.execute(
        select(InventoryItem)
        .where(InventoryItem.user_id == user_id, InventoryItem.quantity > 0)
        .order_by(InventoryItem.acquired_at.desc())
    )
    entries = []
    for row in result.scalars():
        item = get_item(row.item_code)
        if item is None:
            logger.warning("Inventory holds unknown item %s for user %s", row.item_code, user_id)
            continue
        entries.append(InventoryEntry(
            item_code=item.code,
            name=item.name,
            rarity=item.rarity.value,
            item_type=item.item_type,
            quantity=row.quantity,
            acquired_at=as_utc(row.acquired_at),
        ))
    entries.sort(key=lambda e: -Rarity(e.rarity).rank)
    return entries


USABLE_EFFECTS = ("xp_multiplier", "min_rarity", "streak_protection")


async def use_item(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    item_code: str,
    *,
    idempotency_key: str | None = None,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> XPBoostStatus | StreakShieldStatus | LootGrantResult:
    """Consume one unit of an inventory item.

    XP boosts start a timed multiplier. Streak shields arm one missed-day
    protection. Loot boxes roll a drop at or above their minimum rarity,
    which requires an ``idempotency_key``.
    """
    check_drop_key(idempotency_key)
    item = get_item(item_code)
    if item is None:
        raise InvalidInputError(f"Unknown item: {item_code!r}")
    if not any(effect in item.effects for effect in USABLE_EFFECTS):
        raise InvalidInputError(f"{item.name} cannot be used")
    if "min_rarity" in item.effects:
        if not idempotency_key:
            raise InvalidInputError("Opening a loot box requires an idempotency_key")
        existing = await _find_drop(db, user_id, idempotency_key)
        if existing is not None:
            return _replayed_drop(existing)

    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(InventoryItem)
        .where(InventoryItem.user_id == user_id, InventoryItem.item_code == item_code)
        .with_for_update()
    )
    row = result.scalar_one_or_none()
    if row is None or row.quantity <= 0:
        raise NotFoundError(f"{item.name} not in inventory")

    # At the shield cap this raises before the item is consumed
    shield_status = None
    if "streak_protection" in item.effects:
        shield_status = await arm_streak_shield(db, user_id)

    if row.quantity == 1:
        await db.delete(row)
    else:
        row.quantity -= 1
    await db.flush()

    if shield_status is not None:
        logger.info("User %s armed a streak shield (%d held)", user_id, shield_status.shields)
        return shield_status

    if "xp_multiplier" in item.effects:
        logger.info("User %s activated %s", user_id, item_code)
        return await activate_xp_boost(
            db, user_id,
            multiplier=float(item.effects["xp_multiplier"]),
            duration_minutes=int(item.effects["duration_minutes"]),
            now=now,
        )

    roll = open_loot_box(Rarity(item.effects["min_rarity"]), rng)
    return await grant_loot(
        db, redis, user_id, roll,
        idempotency_key=idempotency_key,
        source=f"loot_box:{item_code}",
        now=now,
    )


# ---------------------------------------------------------------------------
# Daily login rewards
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailyReward:
    day: int
    xp: int
    bonus_items: tuple[str, ...] = ()
    cosmetic_chance: float = 0.0


DAILY_REWARDS: tuple[DailyReward, ...] = (
    DailyReward(1, 25),
    DailyReward(2, 50),
    DailyReward(3, 75, cosmetic_chance=0.2),
    DailyReward(4, 100),
    DailyReward(5, 150, ("streak_shield",)),
    DailyReward(6, 200),
    DailyReward(7, 300, ("loot_box_rare",)),
)

DAILY_COSMETICS = ("frame_bronze", "title_adventurer", "frame_silver", "title_champion")


async def _find_daily_claim(db: AsyncSession, user_id: str, day: date) -> DailyRewardClaim | None:
    result = await db.execute(
        select(DailyRewardClaim).where(
            DailyRewardClaim.user_id == user_id,
            DailyRewardClaim.claim_date == day,
        )
    )
    return result.scalar_one_or_none()


def _replayed_claim(claim: DailyRewardClaim, progress: UserProgress) -> DailyRewardResult:
    return DailyRewardResult(
        day_number=claim.day_number,
        xp_awarded=claim.xp_awarded,
        bonus_items=list(claim.bonus_items or []),
        login_streak=claim.login_streak,
        streak_shields=progress.streak_shields,
        week_complete=claim.day_number == len(DAILY_REWARDS),
        duplicate=True,
    )


async def claim_daily_reward(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> DailyRewardResult:
    """Claim today's login reward, at most once per local calendar day.

    Claims on consecutive days walk the 7-day cycle and a missed day starts
    it over. Day 5 arms a streak shield (skipped at the cap), day 7 adds a
    Rare Loot Box to the inventory, and day 3 may add a cosmetic.
    """
    now = now or datetime.now(timezone.utc)
    progress = await get_or_create_progress(db, user_id, lock=True)
    today = local_day(now, progress.timezone)

    existing = await _find_daily_claim(db, user_id, today)
    if existing is not None:
        logger.info("Daily reward already claimed: user=%s day=%s", user_id, today)
        return _replayed_claim(existing, progress)

    if progress.last_daily_claim == today - timedelta(days=1):
        login_streak = progress.login_streak + 1
    else:
        login_streak = 1
    reward = DAILY_REWARDS[(login_streak - 1) % len(DAILY_REWARDS)]

    bonus_items = [
        code for code in reward.bonus_items
        if code != "streak_shield" or progress.streak_shields < MAX_STREAK_SHIELDS
    ]
    if reward.cosmetic_chance:
        rng = rng or random.Random()
        if rng.random() < reward.cosmetic_chance:
            bonus_items.append(rng.choice(DAILY_COSMETICS))

    try:
        async with db.begin_nested():
            db.add(DailyRewardClaim(
                user_id=user_id,
                claim_date=today,
                day_number=reward.day,
                login_streak=login_streak,
                xp_awarded=reward.xp,
                bonus_items=bonus_items,
                created_at=now,
            ))
    except IntegrityError:
        existing = await _find_daily_claim(db, user_id, today)
        if existing is None:
            raise
        return _replayed_claim(existing, progress)

    key = f"daily:{today.isoformat()}"
    await award_xp(
        db, redis, user_id, "daily_reward",
        {"base_amount": reward.xp, "description": f"Daily reward: day {reward.day}"},
        idempotency_key=key,
        now=now,
    )
    for code in bonus_items:
        if code == "streak_shield":
            await arm_streak_shield(db, user_id)
            continue
        item = ITEMS[code]
        await grant_loot(
            db, redis, user_id,
            LootRoll(item=item, rarity=item.rarity, bonus_applied=("daily_reward",)),
            idempotency_key=f"{key}:{code}",
            source="daily_reward",
            now=now,
        )

    progress.login_streak = login_streak
    progress.last_daily_claim = today
    progress.updated_at = now
    await db.flush()

    logger.info("User %s claimed daily reward day %d (+%d XP)", user_id, reward.day, reward.xp)
    return DailyRewardResult(
        day_number=reward.day,
        xp_awarded=reward.xp,
        bonus_items=bonus_items,
        login_streak=login_streak,
        streak_shields=progress.streak_shields,
        week_complete=reward.day == len(DAILY_REWARDS),
    )


async def get_daily_reward_status(
    db: AsyncSession, user_id: str, now: datetime | None = None
) -> DailyRewardStatus:
    """Where the user stands in the 7-day cycle, with a week view for display."""
    now = now or datetime.now(timezone.utc)
    progress = await get_or_create_progress(db, user_id)
    today = local_day(now, progress.timezone)
    last = progress.last_daily_claim

    claimed_today = last == today
    alive = last is not None and last >= today - timedelta(days=1)
    login_streak = progress.login_streak if alive else 0

    if claimed_today:
        current_day = (login_streak - 1) % len(DAILY_REWARDS) + 1
        claimed_days = current_day
    else:
        current_day = login_streak % len(DAILY_REWARDS) + 1
        claimed_days = current_day - 1

    week_view = [
        DailyRewardDay(
            day=reward.day,
            xp=reward.xp,
            bonus_items=list(reward.bonus_items),
            claimed=reward.day <= claimed_days,
            current=reward.day == current_day,
        )
        for reward in DAILY_REWARDS
    ]
    return DailyRewardStatus(
        claimed_today=claimed_today,
        login_streak=login_streak,
        streak_shields=progress.streak_shields,
        next_reward=None if claimed_today else week_view[current_day - 1],
        week_view=week_view,
    )


# ---------------------------------------------------------------------------
# Weekly workout box
# ---------------------------------------------------------------------------

# (workouts this week, guaranteed minimum rarity), highest first
WEEKLY_BOX_THRESHOLDS: tuple[tuple[int, Rarity], ...] = (
    (7, Rarity.LEGENDARY),
    (5, Rarity.EPIC),
    (3, Rarity.RARE),
)


def weekly_box_rarity(workouts: int) -> Rarity | None:
    for threshold, rarity in WEEKLY_BOX_THRESHOLDS:
        if workouts >= threshold:
            return rarity
    return None


async def count_weekly_workouts(db: AsyncSession, user_id: str, now: datetime) -> int:
    """Completed workouts in the ISO week (Monday 00:00 UTC) containing ``now``."""
    start = datetime.combine(get_monday(now.astimezone(timezone.utc)), time.min, tzinfo=timezone.utc)
    result = await db.execute(
        select(func.count(XPLedger.id)).where(
            XPLedger.user_id == user_id,
            XPLedger.action_type == "workout_complete",
            XPLedger.created_at >= start,
            XPLedger.created_at < start + timedelta(days=7),
        )
    )
    return int(result.scalar_one())


def _weekly_box_key(now: datetime) -> str:
    return f"weekly_box:{get_week_iso(now.astimezone(timezone.utc))}"


async def get_weekly_box_status(
    db: AsyncSession, user_id: str, now: datetime | None = None
) -> WeeklyBoxStatus:
    now = now or datetime.now(timezone.utc)
    workouts = await count_weekly_workouts(db, user_id, now)
    rarity = weekly_box_rarity(workouts)
    upcoming = next(((t, r) for t, r in reversed(WEEKLY_BOX_THRESHOLDS) if workouts < t), None)
    return WeeklyBoxStatus(
        week_iso=get_week_iso(now.astimezone(timezone.utc)),
        workouts_this_week=workouts,
        eligible_rarity=rarity.value if rarity else None,
        already_claimed=await _find_drop(db, user_id, _weekly_box_key(now)) is not None,
        next_threshold=upcoming[0] if upcoming else None,
        next_rarity=upcoming[1].value if upcoming else None,
    )


async def claim_weekly_box(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> LootGrantResult:
    """Open this week's workout loot box, once per ISO week.

    3, 5 and 7 completed workouts guarantee rare, epic and legendary drops.
    Raises ConflictError below the first threshold.
    """
    now = now or datetime.now(timezone.utc)
    # Serializes claims by the same user
    await get_or_create_progress(db, user_id, lock=True)

    key = _weekly_box_key(now)
    existing = await _find_drop(db, user_id, key)
    if existing is not None:
        return _replayed_drop(existing)

    workouts = await count_weekly_workouts(db, user_id, now)
    rarity = weekly_box_rarity(workouts)
    if rarity is None:
        raise ConflictError(
            f"Need at least {WEEKLY_BOX_THRESHOLDS[-1][0]} workouts this week to claim, have {workouts}"
        )

    roll = open_loot_box(rarity, rng)
    logger.info("User %s opened weekly box: %d workouts, min %s", user_id, workouts, rarity.value)
    return await grant_loot(
        db, redis, user_id,
        LootRoll(item=roll.item, rarity=roll.rarity, bonus_applied=("weekly_box",)),
        idempotency_key=key,
        source="weekly_box",
        now=now,
    )
