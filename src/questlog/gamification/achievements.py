"""Achievement definitions and the pure unlock rules.

Every achievement is a threshold over one stat from a fixed set, so adding an
achievement never requires new evaluation code.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from questlog.gamification.schemas import AchievementProgress, UserStats


class StatField(str, Enum):
    LOCATIONS = "locations_count"
    CITIES = "cities_count"
    COUNTRIES = "countries_count"
    VISITS = "visits_count"
    REVIEWS = "reviews_count"
    WORKOUTS = "workouts_count"
    PERSONAL_RECORDS = "prs_count"
    QUESTS_COMPLETED = "quests_completed"
    STREAK_DAYS = "streak_days"
    LEVEL = "level"
    TOTAL_XP = "total_xp"
    LOCATION_TYPE = "location_type_count"


@dataclass(frozen=True)
class AchievementDefinition:
    code: str
    name: str
    description: str
    xp_reward: int
    category: str
    tier: int
    field: StatField
    threshold: int
    location_type: str | None = None


def _def(code, name, description, xp_reward, category, tier, field, threshold, location_type=None):
    return AchievementDefinition(code, name, description, xp_reward, category, tier, field, threshold, location_type)


ACHIEVEMENTS: tuple[AchievementDefinition, ...] = (
    # Exploration
    _def("first_steps", "First Steps", "Log your first location", 100, "exploration", 1, StatField.LOCATIONS, 1),
    _def("explorer", "Explorer", "Visit 10 unique locations", 250, "exploration", 1, StatField.LOCATIONS, 10),
    _def("adventurer", "Adventurer", "Visit 50 unique locations", 500, "exploration", 2, StatField.LOCATIONS, 50),
    _def("globetrotter", "Globetrotter", "Visit 100 unique locations", 1000, "exploration", 3,
         StatField.LOCATIONS, 100),
    # Cities
    _def("city_hopper", "City Hopper", "Visit 3 different cities", 300, "exploration", 1, StatField.CITIES, 3),
    _def("city_slicker", "City Slicker", "Visit 10 different cities", 750, "exploration", 2, StatField.CITIES, 10),
    _def("cosmopolitan", "Cosmopolitan", "Visit 25 different cities", 1500, "exploration", 3, StatField.CITIES, 25),
    # Countries
    _def("border_crosser", "Border Crosser", "Visit 2 different countries", 500, "exploration", 2,
         StatField.COUNTRIES, 2),
    _def("world_traveler", "World Traveler", "Visit 5 different countries", 1000, "exploration", 3,
         StatField.COUNTRIES, 5),
    _def("international", "International", "Visit 10 different countries", 2000, "exploration", 4,
         StatField.COUNTRIES, 10),
    # Foodie
    _def("first_bite", "First Bite", "Rate your first restaurant", 100, "foodie", 1,
         StatField.LOCATION_TYPE, 1, "RESTAURANT"),
    _def("food_critic", "Food Critic", "Rate 25 restaurants", 500, "foodie", 2,
         StatField.LOCATION_TYPE, 25, "RESTAURANT"),
    _def("connoisseur", "Connoisseur", "Rate 100 restaurants", 1500, "foodie", 3,
         StatField.LOCATION_TYPE, 100, "RESTAURANT"),
    _def("critic_voice", "Critic's Voice", "Write 10 reviews", 400, "foodie", 2, StatField.REVIEWS, 10),
    # Nightlife
    _def("bar_hopper", "Bar Hopper", "Visit 10 different bars", 300, "nightlife", 1,
         StatField.LOCATION_TYPE, 10, "BAR"),
    _def("mixologist", "Mixologist", "Visit 50 different bars", 750, "nightlife", 2,
         StatField.LOCATION_TYPE, 50, "BAR"),
    # Nature
    _def("nature_lover", "Nature Lover", "Visit 10 nature spots", 400, "nature", 1,
         StatField.LOCATION_TYPE, 10, "NATURE"),
    _def("wilderness_explorer", "Wilderness Explorer", "Visit 25 nature spots", 800, "nature", 2,
         StatField.LOCATION_TYPE, 25, "NATURE"),
    _def("beach_bum", "Beach Bum", "Visit 5 beaches", 300, "nature", 1, StatField.LOCATION_TYPE, 5, "BEACH"),
    _def("coastal_explorer", "Coastal Explorer", "Visit 15 beaches", 600, "nature", 2,
         StatField.LOCATION_TYPE, 15, "BEACH"),
    # Culture
    _def("culture_vulture", "Culture Vulture", "Visit 10 museums", 400, "culture", 1,
         StatField.LOCATION_TYPE, 10, "MUSEUM"),
    _def("tourist", "Tourist", "Visit 20 attractions", 500, "culture", 2, StatField.LOCATION_TYPE, 20, "ATTRACTION"),
    # Streaks
    _def("consistent", "Consistent", "Maintain a 7-day streak", 300, "streak", 1, StatField.STREAK_DAYS, 7),
    _def("dedicated", "Dedicated", "Maintain a 30-day streak", 1000, "streak", 2, StatField.STREAK_DAYS, 30),
    _def("unstoppable", "Unstoppable", "Maintain a 100-day streak", 3000, "streak", 3, StatField.STREAK_DAYS, 100),
    # Fitness
    _def("first_workout", "First Rep", "Complete your first workout", 100, "fitness", 1, StatField.WORKOUTS, 1),
    _def("gym_regular", "Gym Regular", "Complete 25 workouts", 500, "fitness", 2, StatField.WORKOUTS, 25),
    _def("iron_will", "Iron Will", "Complete 100 workouts", 1500, "fitness", 3, StatField.WORKOUTS, 100),
    _def("record_breaker", "Record Breaker", "Set 10 personal records", 400, "fitness", 2,
         StatField.PERSONAL_RECORDS, 10),
    # Quests
    _def("quest_starter", "Quest Starter", "Complete your first quest", 150, "quest", 1,
         StatField.QUESTS_COMPLETED, 1),
    _def("quest_master", "Quest Master", "Complete 10 quests", 750, "quest", 2, StatField.QUESTS_COMPLETED, 10),
    # Milestones
    _def("level_5", "Rising Star", "Reach Level 5", 300, "milestone", 1, StatField.LEVEL, 5),
    _def("level_10", "Veteran Traveler", "Reach Level 10", 600, "milestone", 2, StatField.LEVEL, 10),
    _def("level_25", "Elite Explorer", "Reach Level 25", 1500, "milestone", 3, StatField.LEVEL, 25),
)

ACHIEVEMENTS_BY_CODE: dict[str, AchievementDefinition] = {a.code: a for a in ACHIEVEMENTS}


def stat_value(stats: UserStats, definition: AchievementDefinition) -> int:
    """The stat an achievement is judged against."""
    if definition.field is StatField.LOCATION_TYPE:
        return stats.location_type_counts.get(definition.location_type or "", 0)
    return int(getattr(stats, definition.field.value))


def is_satisfied(stats: UserStats, definition: AchievementDefinition) -> bool:
    return stat_value(stats, definition) >= definition.threshold


def newly_unlocked(stats: UserStats, unlocked: set[str]) -> list[AchievementDefinition]:
    """Definitions met by ``stats`` that are not in ``unlocked``, in definition order."""
    return [a for a in ACHIEVEMENTS if a.code not in unlocked and is_satisfied(stats, a)]


def achievement_progress(stats: UserStats, unlocked: set[str]) -> list[AchievementProgress]:
    return [
        AchievementProgress(
            code=a.code,
            name=a.name,
            current=min(stat_value(stats, a), a.threshold),
            target=a.threshold,
            unlocked=a.code in unlocked,
        )
        for a in ACHIEVEMENTS
    ]
