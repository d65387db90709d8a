"""Week and local-day boundary helpers for leagues and streaks."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from questlog.exceptions import InvalidInputError


def get_week_iso(dt: datetime | date) -> str:
    """Get ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return dt.strftime("%G-W%V")


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def get_current_week_iso(now: datetime | None = None) -> str:
    """Get the ISO week string for the current week."""
    if now is None:
        now = datetime.now(timezone.utc)
    return get_week_iso(now)


def get_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, rejecting unknown names."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidInputError(f"Unknown timezone: {tz_name!r}") from exc


def local_day(moment: datetime | date, tz_name: str) -> date:
    """Calendar day of ``moment`` in the user's timezone.

    Plain dates are taken as already local. Naive datetimes are rejected:
    without an offset the day boundary is ambiguous.
    """
    if not isinstance(moment, datetime):
        if isinstance(moment, date):
            return moment
        raise InvalidInputError(f"Invalid activity date: {moment!r}")
    if moment.tzinfo is None:
        raise InvalidInputError("Activity timestamps must be timezone-aware")
    return moment.astimezone(get_zone(tz_name)).date()
