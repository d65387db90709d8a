"""Error taxonomy for progression operations.

InvalidInputError is also a ValueError and NotFoundError a LookupError.
"""

from __future__ import annotations


class QuestlogError(Exception):
    """Base class for all progression errors."""


class InvalidInputError(QuestlogError, ValueError):
    """Unknown action type, malformed context, invalid date. Raised before any mutation."""


class NotFoundError(QuestlogError, LookupError):
    """Referenced user, league, achievement or item does not exist."""


class ConflictError(QuestlogError):
    """Operation conflicts with current state (e.g. reactivating a finalized period)."""


class InvariantViolationError(QuestlogError):
    """Stored data disagrees with its source of truth. Needs operator attention."""

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.details = details


class LootTableError(QuestlogError):
    """The loot catalog cannot produce any drop."""
