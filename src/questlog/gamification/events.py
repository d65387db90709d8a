"""Progression events handed to the notification collaborator.

Each event is persisted as a Notification row (so offline users see it on
next load) and broadcast on ``pubsub:<subtype>`` for live delivery. Delivery
itself (push, email, websocket fan-out) happens outside this package.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from questlog.db.models import Notification
from questlog.redis_client import publish_json

logger = logging.getLogger(__name__)

LEVEL_UP = "level_up"
ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
LEAGUE_PROMOTED = "league_promoted"
LEAGUE_DEMOTED = "league_demoted"
STREAK_BROKEN = "streak_broken"
STREAK_WARNING = "streak_warning"
LOOT_DROP = "loot_drop"


async def emit_event(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    subtype: str,
    title: str,
    description: str | None = None,
    payload: dict[str, Any] | None = None,
    type_: str = "gamification",
) -> Notification:
    """Record a progression event and broadcast it."""
    notification = Notification(
        user_id=user_id,
        type=type_,
        subtype=subtype,
        title=title,
        description=description,
        payload=payload or {},
    )
    db.add(notification)
    await db.flush()

    await publish_json(
        redis,
        f"pubsub:{subtype}",
        {"user_id": user_id, "notification_id": notification.id, **(payload or {})},
    )
    logger.debug("Emitted %s for user %s", subtype, user_id)
    return notification
