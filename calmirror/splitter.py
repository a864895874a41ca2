from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from calmirror.models import ScheduleDescriptor, StagedEvent, SyncConfig
from calmirror.timezones import format_calendar_date, format_time_of_day


MIN_DURATION_MINUTES = 5
MINUTES_PER_DAY = 24 * 60
START_OF_DAY = "00:00"
END_OF_DAY = "24:00"


@dataclass(frozen=True)
class EventSchedulePlan:
    duration_minutes: int
    descriptors: tuple[ScheduleDescriptor, ...]

    @property
    def is_split(self) -> bool:
        return len(self.descriptors) > 1


def clock_to_minutes(value: str) -> int:
    hours, _, minutes = value.partition(":")
    return int(hours) * 60 + int(minutes or 0)


def effective_end(start: datetime, end: datetime) -> datetime:
    # Zero-length and inverted events are stretched to the minimum duration.
    floor_end = start + timedelta(minutes=MIN_DURATION_MINUTES)
    return end if end >= floor_end else floor_end


def raw_duration_minutes(start: datetime, end: datetime) -> int:
    end = effective_end(start, end)
    return max(MIN_DURATION_MINUTES, int(round((end - start).total_seconds() / 60)))


def event_duration_minutes(start: datetime, end: datetime, max_minutes: int = MINUTES_PER_DAY) -> int:
    return min(raw_duration_minutes(start, end), max(MIN_DURATION_MINUTES, int(max_minutes)))


def split_schedule(
    start_date: date,
    start_time: str,
    end_date: date,
    end_time: str,
    total_minutes: int,
    max_minutes: int = MINUTES_PER_DAY,
) -> list[ScheduleDescriptor]:
    """Turn a wall-clock start/end pair into rows that never cross midnight.

    Same-day events give one row. An event ending on the next civil date gives
    ``[start, 24:00)`` plus ``[00:00, end)`` whose durations sum to
    ``total_minutes``. The first segment runs to midnight on the start date
    and the second takes the rest, so a clock change on the second day only
    affects the second segment.
    Longer events give one open-ended row on the start date.
    """
    total = max(MIN_DURATION_MINUTES, int(total_minutes))
    day_span = (end_date - start_date).days

    if day_span == 0 and clock_to_minutes(start_time) <= clock_to_minutes(end_time):
        return [ScheduleDescriptor(start_date, start_time, end_time, total)]

    if day_span == 0:
        # Wall clock wrapped without a date change; treat as crossing midnight.
        day_span = 1
        end_date = start_date + timedelta(days=1)

    if day_span == 1:
        first = min(MINUTES_PER_DAY - clock_to_minutes(start_time), total)
        second = total - first
        if second <= 0:
            return [ScheduleDescriptor(start_date, start_time, END_OF_DAY, total)]
        return [
            ScheduleDescriptor(start_date, start_time, END_OF_DAY, first),
            ScheduleDescriptor(end_date, START_OF_DAY, end_time, second),
        ]

    capped = min(total, max(MIN_DURATION_MINUTES, int(max_minutes)))
    return [ScheduleDescriptor(start_date, start_time, None, capped)]


def plan_event_schedule(event: StagedEvent, config: SyncConfig) -> EventSchedulePlan:
    zone_id = event.timezone or config.default_timezone
    start = event.start_time
    end = effective_end(start, event.end_time)
    total = raw_duration_minutes(start, end)
    descriptors = split_schedule(
        format_calendar_date(start, zone_id),
        format_time_of_day(start, zone_id),
        format_calendar_date(end, zone_id),
        format_time_of_day(end, zone_id),
        total,
        max_minutes=config.max_duration_minutes,
    )
    return EventSchedulePlan(
        duration_minutes=event_duration_minutes(start, end, config.max_duration_minutes),
        descriptors=tuple(descriptors),
    )
