from __future__ import annotations

import logging
from datetime import date, datetime, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

REFERENCE_ZONE = timezone.utc


@lru_cache(maxsize=256)
def resolve_zone(zone_id: str | None) -> tzinfo:
    """Return the tzinfo for ``zone_id``, falling back to UTC.

    An empty identifier means UTC. An unknown or malformed identifier is logged
    once and also treated as UTC, so one bad event never blocks a sync run.
    """
    text = str(zone_id or "").strip()
    if not text or text.upper() in {"UTC", "Z", "GMT"}:
        return REFERENCE_ZONE
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("Unknown time zone %r, falling back to UTC", text)
        return REFERENCE_ZONE


def to_wall_clock(instant: datetime, zone_id: str | None) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=REFERENCE_ZONE)
    return instant.astimezone(resolve_zone(zone_id))


def format_time_of_day(instant: datetime, zone_id: str | None) -> str:
    return to_wall_clock(instant, zone_id).strftime("%H:%M")


def format_calendar_date(instant: datetime, zone_id: str | None) -> date:
    return to_wall_clock(instant, zone_id).date()
