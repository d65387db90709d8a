"""Versioned per-app state records stored on app_progress.state.

Each record is tagged with ``kind`` and ``version`` and validated whenever it
crosses the persistence boundary, in either direction. A new layout gets a
new version model added to the union; old rows keep loading.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questlog.db.models import AppProgress
from questlog.exceptions import InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid")


# --- Fitness ---


class WorkoutSet(_Record):
    weight: float = Field(ge=0)
    reps: int = Field(ge=0)
    rpe: float | None = Field(default=None, ge=0, le=10)
    timestamp: datetime
    xp: int = Field(default=0, ge=0)
    is_warmup: bool = False


class WorkoutExercise(_Record):
    id: str
    name: str
    sets: list[WorkoutSet] = []
    superset_group: int | None = None


class ActiveWorkout(_Record):
    id: str
    exercises: list[WorkoutExercise] = []
    started_at: datetime
    exercise_index: int = Field(default=0, ge=0)


class PersonalRecord(_Record):
    value: float
    achieved_on: date


class WorkoutStateV1(_Record):
    kind: Literal["workout"] = "workout"
    version: Literal[1] = 1
    active_workout: ActiveWorkout | None = None
    body_weight: float | None = Field(default=None, gt=0)
    personal_records: dict[str, PersonalRecord] = {}


# --- Daily tasks ---


class TaskRecord(_Record):
    id: str
    title: str
    tier: Literal["tier1", "tier2", "tier3"] = "tier1"
    difficulty: Literal["easy", "medium", "hard", "epic"] = "medium"
    due_date: date | None = None
    is_completed: bool = False
    completed_at: datetime | None = None
    xp_earned: int = Field(default=0, ge=0)
    tags: list[str] = []


class DailyStat(_Record):
    day: date
    tasks_completed: int = Field(default=0, ge=0)
    xp_earned: int = Field(default=0, ge=0)


class TodayStateV1(_Record):
    kind: Literal["today"] = "today"
    version: Literal[1] = 1
    tasks: list[TaskRecord] = []
    daily_stats: list[DailyStat] = []


AppState = Annotated[Union[WorkoutStateV1, TodayStateV1], Field(discriminator="kind")]

_app_state_adapter: TypeAdapter[WorkoutStateV1 | TodayStateV1] = TypeAdapter(AppState)

# Which record kind each app may store
APP_STATE_KINDS: dict[str, str] = {
    "fitness": "workout",
    "life": "today",
}


def parse_app_state(data: dict[str, Any]) -> WorkoutStateV1 | TodayStateV1:
    """Validate a raw state record. Raises InvalidInputError when malformed."""
    try:
        return _app_state_adapter.validate_python(data)
    except ValidationError as exc:
        raise InvalidInputError(f"Malformed app state: {exc.errors()}") from exc


def dump_app_state(state: WorkoutStateV1 | TodayStateV1) -> dict[str, Any]:
    return state.model_dump(mode="json")


async def save_app_state(
    db: AsyncSession,
    user_id: str,
    app_id: str,
    state: WorkoutStateV1 | TodayStateV1 | dict[str, Any],
) -> WorkoutStateV1 | TodayStateV1:
    """Validate and store the app's state record, replacing the previous one."""
    expected = APP_STATE_KINDS.get(app_id)
    if expected is None:
        raise InvalidInputError(f"App {app_id!r} does not store state")
    if isinstance(state, dict):
        state = parse_app_state(state)
    if state.kind != expected:
        raise InvalidInputError(f"App {app_id!r} stores {expected} state, got {state.kind}")

    result = await db.execute(
        select(AppProgress)
        .where(AppProgress.user_id == user_id, AppProgress.app_id == app_id)
        .with_for_update()
    )
    app = result.scalar_one_or_none()
    if app is None:
        app = AppProgress(user_id=user_id, app_id=app_id, xp=0, level=1)
        db.add(app)

    app.state = dump_app_state(state)
    app.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return state


async def load_app_state(db: AsyncSession, user_id: str, app_id: str) -> WorkoutStateV1 | TodayStateV1:
    """Load and validate the stored state record."""
    result = await db.execute(
        select(AppProgress.state).where(AppProgress.user_id == user_id, AppProgress.app_id == app_id)
    )
    raw = result.scalar_one_or_none()
    if raw is None:
        raise NotFoundError(f"No {app_id} state for user {user_id}")
    return parse_app_state(raw)
