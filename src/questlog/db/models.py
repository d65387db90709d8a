"""ORM models for the progression core.

Users are owned by the identity collaborator; ``user_id`` is the opaque
identifier it hands us, so there is no users table here.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from questlog.db.base import Base, BigIntPK, JSONType, utcnow


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class UserProgress(Base):
    """Denormalized progression summary. Single row per user, O(1) reads."""

    __tablename__ = "user_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    streak_shields: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    login_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_claim: Mapped[date | None] = mapped_column(Date, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    xp_boost_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    xp_boost_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AppProgress(Base):
    """Per-app skill XP (travel, fitness, life) on the skill curve."""

    __tablename__ = "app_progress"
    __table_args__ = (UniqueConstraint("user_id", "app_id", name="app_progress_user_app_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    app_id: Mapped[str] = mapped_column(String(16), nullable=False)
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class XPLedger(Base):
    """Immutable XP transaction log with per-user idempotency key."""

    __tablename__ = "xp_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="xp_ledger_user_idempotency_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    app_id: Mapped[str | None] = mapped_column(String(16), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    critical_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    boost_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    level_before: Mapped[int] = mapped_column(Integer, nullable=False)
    level_after: Mapped[int] = mapped_column(Integer, nullable=False)
    skill_level_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    skill_level_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Loot
# ---------------------------------------------------------------------------


class InventoryItem(Base):
    """Items a user owns. Stackable items accumulate quantity on one row."""

    __tablename__ = "user_inventory"
    __table_args__ = (UniqueConstraint("user_id", "item_code", name="user_inventory_user_item_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    item_code: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LootDropRecord(Base):
    """Append-only log of granted drops, keyed for at-most-once delivery."""

    __tablename__ = "loot_drops"
    __table_args__ = (UniqueConstraint("user_id", "idempotency_key", name="loot_drops_user_idempotency_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    item_code: Mapped[str] = mapped_column(String(64), nullable=False)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    instant_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonuses: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class DailyRewardClaim(Base):
    """One row per claimed day of the 7-day login reward cycle."""

    __tablename__ = "daily_reward_claims"
    __table_args__ = (UniqueConstraint("user_id", "claim_date", name="daily_reward_claims_user_date_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    claim_date: Mapped[date] = mapped_column(Date, nullable=False)
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)
    login_streak: Mapped[int] = mapped_column(Integer, nullable=False)
    xp_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_items: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class UserAchievement(Base):
    """Unlock record, one per (user, achievement). Never deleted."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_code", name="user_achievements_user_code_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    achievement_code: Mapped[str] = mapped_column(String(64), nullable=False)
    xp_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Leagues
# ---------------------------------------------------------------------------


class League(Base):
    """A fixed-capacity weekly cohort at one tier."""

    __tablename__ = "leagues"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    week_iso: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LeagueMembership(Base):
    """A user's seat in a cohort for one period."""

    __tablename__ = "league_memberships"
    __table_args__ = (UniqueConstraint("league_id", "user_id", name="league_memberships_league_user_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    league_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("leagues.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    weekly_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    final_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(16), nullable=True)


class LeagueHistory(Base):
    """Archived result of a finalized period. Written once, never updated."""

    __tablename__ = "league_history"
    __table_args__ = (UniqueConstraint("league_id", "user_id", name="league_history_league_user_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    league_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("leagues.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    week_iso: Mapped[str] = mapped_column(String(10), nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    final_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    weekly_xp: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    new_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LeagueStats(Base):
    """Lifetime league record per user; holds the tier used for the next join."""

    __tablename__ = "league_stats"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze")
    highest_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze")
    weeks_participated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_promotions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top_3_finishes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_place_wins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Logical progression events handed to the notification collaborator."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    subtype: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
