"""Loot catalog, drop tables and the weighted rarity roll.

Every qualifying event drops exactly one item. The rarity is sampled from a
cumulative-weight table with a single draw; the event's performance adds
weight to the higher tiers before sampling. Within a tier the item comes
from a secondary weight table.

Base tier weights keep the relative odds of the standard table
(20 : 7 : 2.5 : 0.5), normalized over a guaranteed drop.
"""

from __future__ import annotations

import bisect
import itertools
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from questlog.exceptions import LootTableError
from questlog.gamification.schemas import LootContext

T = TypeVar("T")


class Rarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"

    @property
    def rank(self) -> int:
        return RARITY_ORDER.index(self)


RARITY_ORDER: tuple[Rarity, ...] = (Rarity.COMMON, Rarity.RARE, Rarity.EPIC, Rarity.LEGENDARY)


@dataclass(frozen=True)
class LootItem:
    code: str
    name: str
    description: str
    item_type: str  # consumable | cosmetic | pet | currency
    rarity: Rarity
    effects: dict[str, Any] = field(default_factory=dict)
    stackable: bool = True
    max_stack: int | None = None

    @property
    def instant_xp(self) -> int:
        """XP granted on drop instead of entering the inventory (XP crystals)."""
        return int(self.effects.get("xp_bonus", 0))


@dataclass(frozen=True)
class LootRoll:
    item: LootItem
    rarity: Rarity
    bonus_applied: tuple[str, ...] = ()

    @property
    def instant_xp(self) -> int:
        return self.item.instant_xp


def _item(code, name, description, item_type, rarity, effects, stackable=True, max_stack=None) -> LootItem:
    return LootItem(code, name, description, item_type, rarity, effects, stackable, max_stack)


ITEMS: dict[str, LootItem] = {
    item.code: item
    for item in (
        # Currency
        _item("xp_crystal_small", "Small XP Crystal", "A glowing crystal containing 10 bonus XP",
              "currency", Rarity.COMMON, {"xp_bonus": 10}),
        _item("xp_crystal_medium", "Medium XP Crystal", "A bright crystal containing 25 bonus XP",
              "currency", Rarity.COMMON, {"xp_bonus": 25}),
        _item("xp_crystal_large", "Large XP Crystal", "A radiant crystal containing 75 bonus XP",
              "currency", Rarity.RARE, {"xp_bonus": 75}),
        _item("xp_crystal_epic", "Epic XP Crystal", "A pulsing crystal containing 200 bonus XP",
              "currency", Rarity.EPIC, {"xp_bonus": 200}),
        _item("xp_crystal_legendary", "Legendary XP Crystal", "An ancient crystal containing 500 bonus XP",
              "currency", Rarity.LEGENDARY, {"xp_bonus": 500}),
        # Consumables
        _item("streak_shield", "Streak Shield", "Protects your streak if you miss a day",
              "consumable", Rarity.RARE, {"streak_protection": 1}, max_stack=3),
        _item("xp_boost_1h", "1-Hour XP Boost", "2x XP for the next hour",
              "consumable", Rarity.RARE, {"xp_multiplier": 2.0, "duration_minutes": 60}, max_stack=5),
        _item("xp_boost_24h", "24-Hour XP Boost", "2x XP for 24 hours",
              "consumable", Rarity.EPIC, {"xp_multiplier": 2.0, "duration_minutes": 1440}, max_stack=3),
        _item("loot_box_rare", "Rare Loot Box", "Contains a guaranteed rare item or better",
              "consumable", Rarity.RARE, {"min_rarity": "rare"}),
        _item("loot_box_epic", "Epic Loot Box", "Contains a guaranteed epic item or better",
              "consumable", Rarity.EPIC, {"min_rarity": "epic"}),
        # Cosmetics
        _item("frame_bronze", "Bronze Frame", "A simple bronze profile frame",
              "cosmetic", Rarity.COMMON, {"frame_style": "bronze"}, stackable=False),
        _item("frame_silver", "Silver Frame", "A polished silver profile frame",
              "cosmetic", Rarity.RARE, {"frame_style": "silver"}, stackable=False),
        _item("frame_gold", "Gold Frame", "A gleaming gold profile frame",
              "cosmetic", Rarity.EPIC, {"frame_style": "gold"}, stackable=False),
        _item("frame_fire", "Flame Frame", "A profile frame with animated flames",
              "cosmetic", Rarity.EPIC, {"frame_style": "fire", "animated": True}, stackable=False),
        _item("frame_diamond", "Diamond Frame", "A legendary diamond-encrusted profile frame",
              "cosmetic", Rarity.LEGENDARY, {"frame_style": "diamond"}, stackable=False),
        _item("title_adventurer", "Adventurer Title", 'Display "Adventurer" before your name',
              "cosmetic", Rarity.COMMON, {"title": "Adventurer"}, stackable=False),
        _item("title_champion", "Champion Title", 'Display "Champion" before your name',
              "cosmetic", Rarity.RARE, {"title": "Champion"}, stackable=False),
        _item("title_legend", "Legend Title", 'Display "Legend" before your name',
              "cosmetic", Rarity.LEGENDARY, {"title": "Legend"}, stackable=False),
        # Pets
        _item("pet_egg_common", "Common Pet Egg", "Hatches into a common companion",
              "pet", Rarity.COMMON, {"hatch_pool": "common"}),
        _item("pet_egg_rare", "Rare Pet Egg", "Hatches into a rare companion",
              "pet", Rarity.RARE, {"hatch_pool": "rare"}),
        _item("pet_egg_golden", "Golden Pet Egg", "Hatches into a legendary companion",
              "pet", Rarity.LEGENDARY, {"hatch_pool": "legendary"}),
    )
}

# Relative item weights within each tier
DROP_TABLE: dict[Rarity, tuple[tuple[str, float], ...]] = {
    Rarity.COMMON: (
        ("xp_crystal_small", 50),
        ("xp_crystal_medium", 30),
        ("frame_bronze", 10),
        ("title_adventurer", 5),
        ("pet_egg_common", 5),
    ),
    Rarity.RARE: (
        ("xp_crystal_large", 40),
        ("streak_shield", 25),
        ("xp_boost_1h", 15),
        ("loot_box_rare", 10),
        ("frame_silver", 10),
        ("title_champion", 5),
        ("pet_egg_rare", 5),
    ),
    Rarity.EPIC: (
        ("xp_crystal_epic", 35),
        ("xp_boost_24h", 20),
        ("frame_gold", 10),
        ("frame_fire", 10),
        ("loot_box_epic", 5),
    ),
    Rarity.LEGENDARY: (
        ("xp_crystal_legendary", 40),
        ("frame_diamond", 25),
        ("title_legend", 20),
        ("pet_egg_golden", 15),
    ),
}

BASE_TIER_WEIGHTS: dict[Rarity, float] = {
    Rarity.COMMON: 20.0,
    Rarity.RARE: 7.0,
    Rarity.EPIC: 2.5,
    Rarity.LEGENDARY: 0.5,
}

# --- Performance bonuses: weight added per tier when the condition holds ---

HIGH_XP_THRESHOLD = 150
HIGH_XP_BONUS: dict[Rarity, float] = {Rarity.RARE: 2.0, Rarity.EPIC: 1.0, Rarity.LEGENDARY: 0.25}

VOLUME_EXERCISE_THRESHOLD = 5
VOLUME_SET_THRESHOLD = 20
VOLUME_BONUS: dict[Rarity, float] = {Rarity.RARE: 1.5, Rarity.EPIC: 0.75, Rarity.LEGENDARY: 0.25}

PR_BONUS: dict[Rarity, float] = {Rarity.RARE: 1.0, Rarity.EPIC: 1.0, Rarity.LEGENDARY: 0.5}
PR_BONUS_MAX_STACKS = 3

STREAK_BONUS_THRESHOLD = 7
STREAK_BONUS: dict[Rarity, float] = {Rarity.RARE: 1.0, Rarity.EPIC: 0.5, Rarity.LEGENDARY: 0.25}


def get_item(code: str) -> LootItem | None:
    return ITEMS.get(code)


def weighted_choice(entries: Sequence[tuple[T, float]], rng: random.Random) -> T:
    """Pick one value from (value, weight) pairs with a single draw.

    Zero-weight entries are never chosen.
    """
    values = [value for value, weight in entries if weight > 0]
    cumulative = list(itertools.accumulate(weight for _, weight in entries if weight > 0))
    if not cumulative:
        raise ValueError("weighted_choice needs at least one positive weight")
    draw = rng.random() * cumulative[-1]
    return values[bisect.bisect_right(cumulative, draw)]


def compute_tier_weights(context: LootContext) -> tuple[dict[Rarity, float], list[str]]:
    """Base tier weights shifted toward higher tiers by the event's performance."""
    weights = dict(BASE_TIER_WEIGHTS)
    applied: list[str] = []

    def add(bonus: dict[Rarity, float], stacks: int = 1) -> None:
        for rarity, extra in bonus.items():
            weights[rarity] += extra * stacks

    if context.total_xp >= HIGH_XP_THRESHOLD:
        add(HIGH_XP_BONUS)
        applied.append("high_xp")
    if context.exercise_count >= VOLUME_EXERCISE_THRESHOLD or context.set_count >= VOLUME_SET_THRESHOLD:
        add(VOLUME_BONUS)
        applied.append("volume")
    if context.prs_hit > 0:
        add(PR_BONUS, min(context.prs_hit, PR_BONUS_MAX_STACKS))
        applied.append("personal_record")
    if context.streak_days >= STREAK_BONUS_THRESHOLD:
        add(STREAK_BONUS)
        applied.append("streak")

    return weights, applied


def pick_item(
    rarity: Rarity,
    rng: random.Random,
    drop_table: dict[Rarity, tuple[tuple[str, float], ...]] = DROP_TABLE,
) -> tuple[LootItem, Rarity]:
    """Choose an item at ``rarity``, stepping down a tier while a tier is empty."""
    for candidate in reversed(RARITY_ORDER[: rarity.rank + 1]):
        entries = [(ITEMS[code], weight) for code, weight in drop_table.get(candidate, ()) if code in ITEMS]
        if any(weight > 0 for _, weight in entries):
            return weighted_choice(entries, rng), candidate
    raise LootTableError(f"No droppable items at or below {rarity.value}")


def roll_loot(
    context: LootContext,
    rng: random.Random | None = None,
    drop_table: dict[Rarity, tuple[tuple[str, float], ...]] = DROP_TABLE,
) -> LootRoll:
    """Roll exactly one drop for a qualifying event."""
    rng = rng or random.Random()
    weights, applied = compute_tier_weights(context)
    rarity = weighted_choice([(tier, weights[tier]) for tier in RARITY_ORDER], rng)
    item, rarity = pick_item(rarity, rng, drop_table)
    return LootRoll(item=item, rarity=rarity, bonus_applied=tuple(applied))


def open_loot_box(
    min_rarity: Rarity,
    rng: random.Random | None = None,
    drop_table: dict[Rarity, tuple[tuple[str, float], ...]] = DROP_TABLE,
) -> LootRoll:
    """Roll among tiers at or above ``min_rarity`` using the base weights."""
    rng = rng or random.Random()
    eligible = [(tier, BASE_TIER_WEIGHTS[tier]) for tier in RARITY_ORDER if tier.rank >= min_rarity.rank]
    rarity = weighted_choice(eligible, rng)
    item, rarity = pick_item(rarity, rng, drop_table)
    return LootRoll(item=item, rarity=rarity, bonus_applied=("loot_box",))
