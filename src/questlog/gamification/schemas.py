"""Pydantic models for progression inputs and results."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field


# --- XP ---


class XPContext(BaseModel):
    """Contextual inputs to an XP award. Counts may not be negative."""

    model_config = ConfigDict(extra="forbid")

    location_type: str | None = None
    item_count: int = Field(default=0, ge=0)
    party_size: int = Field(default=1, ge=1)
    base_amount: int | None = Field(default=None, ge=0)
    description: str | None = None


class AwardResult(BaseModel):
    xp_awarded: int
    leveled_up: bool
    new_level: int
    critical_hit: bool
    total_xp: int
    boost_multiplier: float = 1.0
    skill_level: int | None = None
    skill_leveled_up: bool = False
    duplicate: bool = False


class XPBoostStatus(BaseModel):
    active: bool
    multiplier: float
    expires_at: datetime | None = None
    remaining_seconds: int = 0


class XPHistoryEntry(BaseModel):
    amount: int
    action_type: str
    critical_hit: bool
    description: str | None = None
    created_at: datetime | None = None


# --- Streak ---


class StreakResult(BaseModel):
    current_streak: int
    longest_streak: int
    streak_broken: bool = False
    shield_used: bool = False
    shields_left: int = 0
    changed: bool = False
    last_activity_date: date | None = None


class StreakShieldStatus(BaseModel):
    shields: int
    max_shields: int


# --- Loot ---


class LootContext(BaseModel):
    """Performance of the event that triggered the roll."""

    model_config = ConfigDict(extra="forbid")

    total_xp: int = Field(default=0, ge=0)
    exercise_count: int = Field(default=0, ge=0)
    set_count: int = Field(default=0, ge=0)
    prs_hit: int = Field(default=0, ge=0)
    streak_days: int = Field(default=0, ge=0)


class LootGrantResult(BaseModel):
    item_code: str
    item_name: str
    rarity: str
    quantity: int = 1
    instant_xp: int = 0
    bonus_applied: list[str] = []
    xp_result: AwardResult | None = None
    duplicate: bool = False


class InventoryEntry(BaseModel):
    item_code: str
    name: str
    rarity: str
    item_type: str
    quantity: int
    acquired_at: datetime | None = None


# --- Daily and weekly rewards ---


class DailyRewardDay(BaseModel):
    day: int
    xp: int
    bonus_items: list[str] = []
    claimed: bool = False
    current: bool = False


class DailyRewardResult(BaseModel):
    day_number: int
    xp_awarded: int
    bonus_items: list[str] = []
    login_streak: int
    streak_shields: int
    week_complete: bool = False
    duplicate: bool = False


class DailyRewardStatus(BaseModel):
    claimed_today: bool
    login_streak: int
    streak_shields: int
    next_reward: DailyRewardDay | None = None
    week_view: list[DailyRewardDay] = []


class WeeklyBoxStatus(BaseModel):
    week_iso: str
    workouts_this_week: int
    eligible_rarity: str | None = None
    already_claimed: bool = False
    next_threshold: int | None = None
    next_rarity: str | None = None


# --- Achievements ---


class UserStats(BaseModel):
    """Snapshot of the counters achievements are judged against."""

    locations_count: int = Field(default=0, ge=0)
    cities_count: int = Field(default=0, ge=0)
    countries_count: int = Field(default=0, ge=0)
    visits_count: int = Field(default=0, ge=0)
    reviews_count: int = Field(default=0, ge=0)
    workouts_count: int = Field(default=0, ge=0)
    prs_count: int = Field(default=0, ge=0)
    quests_completed: int = Field(default=0, ge=0)
    streak_days: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    total_xp: int = Field(default=0, ge=0)
    location_type_counts: dict[str, int] = {}


class AchievementProgress(BaseModel):
    code: str
    name: str
    current: int
    target: int
    unlocked: bool


# --- Leagues ---


class StandingEntry(BaseModel):
    membership_id: int
    user_id: str
    weekly_xp: int
    joined_at: datetime
    rank: int
    zone: str  # promotion | safe | demotion


class LeagueStandings(BaseModel):
    league_id: int
    tier: str
    week_iso: str
    status: str
    members: list[StandingEntry]


class MembershipInfo(BaseModel):
    membership_id: int
    league_id: int
    tier: str
    week_iso: str
    weekly_xp: int
    status: str
    is_new: bool = False


class PeriodOutcome(BaseModel):
    user_id: str
    final_rank: int
    weekly_xp: int
    outcome: str  # promoted | stayed | demoted
    old_tier: str
    new_tier: str


class FinalizeResult(BaseModel):
    league_id: int
    week_iso: str
    tier: str
    outcomes: list[PeriodOutcome]
    already_finalized: bool = False


class UserLeagueStatus(BaseModel):
    in_league: bool
    membership: MembershipInfo | None = None
    rank: int | None = None
    zone: str = "safe"
    current_tier: str
    highest_tier: str
    weeks_participated: int = 0
    total_promotions: int = 0
    top_3_finishes: int = 0
    first_place_wins: int = 0
    seconds_until_reset: int = 0
