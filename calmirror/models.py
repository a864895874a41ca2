from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any


UNTITLED_EVENT_NAME = "Untitled Event"
SCHEDULE_STATUS_SCHEDULED = "scheduled"
CALENDAR_TASK_PRIORITY = 3


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


class Provider(str, enum.Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    APPLE = "apple"

    @classmethod
    def parse(cls, value: "Provider | str") -> "Provider":
        if isinstance(value, Provider):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unsupported calendar provider: {value!r}")


@dataclass
class StorageConfig:
    busy_timeout_seconds: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(busy_timeout_seconds=max(1.0, float(data.get("busy_timeout_seconds", 10.0))))


@dataclass
class SyncConfig:
    default_timezone: str = "UTC"
    max_duration_minutes: int = 1440
    untitled_event_name: str = UNTITLED_EVENT_NAME
    task_priority: int = CALENDAR_TASK_PRIORITY

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        priority = int(data.get("task_priority", CALENDAR_TASK_PRIORITY))
        if priority not in {1, 2, 3, 4}:
            priority = CALENDAR_TASK_PRIORITY
        return cls(
            default_timezone=str(data.get("default_timezone", "UTC")).strip() or "UTC",
            max_duration_minutes=max(5, int(data.get("max_duration_minutes", 1440))),
            untitled_event_name=str(data.get("untitled_event_name", UNTITLED_EVENT_NAME)).strip()
            or UNTITLED_EVENT_NAME,
            task_priority=priority,
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(
            level=level,
            format=str(data.get("format", cls.format)).strip() or cls.format,
        )


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarConnection:
    id: str
    user_id: str
    provider: Provider
    selected_calendar_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider": self.provider.value,
            "selected_calendar_ids": list(self.selected_calendar_ids),
        }


@dataclass
class StagedEvent:
    """A provider event persisted by the fetch layer, awaiting reconciliation.

    Instants are always timezone-aware UTC. ``timezone`` is the provider's zone
    identifier and may be empty or invalid; the normalizer deals with that.
    """

    id: str
    external_event_id: str
    calendar_connection_id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    calendar_id: str = ""
    timezone: str = ""
    summary: str = ""
    description: str = ""
    is_busy: bool = True
    is_synthetic: bool = False
    is_deleted_upstream: bool = False
    external_etag: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagedEvent":
        event_id = str(data.get("id", "") or "").strip()
        external_event_id = str(data.get("external_event_id", "") or "").strip()
        connection_id = str(data.get("calendar_connection_id", "") or "").strip()
        user_id = str(data.get("user_id", "") or "").strip()
        if not event_id or not external_event_id or not connection_id or not user_id:
            raise ValueError("staged event requires id, external_event_id, calendar_connection_id and user_id")
        try:
            start = parse_iso_datetime(data.get("start_time"))
            end = parse_iso_datetime(data.get("end_time"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"staged event {external_event_id} has an invalid start/end: {exc}") from exc
        if start is None or end is None:
            raise ValueError(f"staged event {external_event_id} is missing start_time or end_time")
        return cls(
            id=event_id,
            external_event_id=external_event_id,
            calendar_connection_id=connection_id,
            user_id=user_id,
            start_time=start.astimezone(timezone.utc),
            end_time=end.astimezone(timezone.utc),
            calendar_id=str(data.get("calendar_id", "") or "").strip(),
            timezone=str(data.get("timezone", "") or "").strip(),
            summary=str(data.get("summary", "") or ""),
            description=str(data.get("description", "") or ""),
            is_busy=_as_bool(data.get("is_busy", True)),
            is_synthetic=_as_bool(data.get("is_synthetic", False)),
            is_deleted_upstream=_as_bool(data.get("is_deleted_upstream", False)),
            external_etag=str(data.get("external_etag", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        return payload

    @property
    def label(self) -> str:
        return self.summary.strip() or self.external_event_id


@dataclass
class Task:
    id: str
    user_id: str
    name: str
    idx: int | None = None
    plan_id: str | None = None
    details: str | None = None
    estimated_duration_minutes: int = 60
    priority: int | None = None
    is_calendar_event: bool = False
    calendar_event_id: str | None = None
    is_detached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskSchedule:
    id: str
    task_id: str
    user_id: str
    date: date
    start_time: str | None = None
    end_time: str | None = None
    duration_minutes: int | None = None
    plan_id: str | None = None
    day_index: int = 0
    status: str = SCHEDULE_STATUS_SCHEDULED

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        return payload


@dataclass
class CalendarEventLink:
    id: str
    user_id: str
    calendar_connection_id: str
    calendar_event_id: str
    external_event_id: str
    task_id: str | None = None
    task_schedule_id: str | None = None
    task_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScheduleDescriptor:
    date: date
    start_time: str
    end_time: str | None
    duration_minutes: int

    def matches(self, schedule: TaskSchedule) -> bool:
        return (
            schedule.date == self.date
            and schedule.start_time == self.start_time
            and schedule.end_time == self.end_time
            and schedule.duration_minutes == self.duration_minutes
        )


@dataclass
class SyncEventsResult:
    """Per-batch counters plus one readable message per failed event.

    A non-empty ``errors`` list means partial success, not failure.
    """

    created: int = 0
    updated: int = 0
    skipped: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    def record_created(self) -> None:
        self.created += 1

    def record_updated(self) -> None:
        self.updated += 1

    def record_skipped(self) -> None:
        self.skipped += 1

    def record_unchanged(self) -> None:
        self.unchanged += 1

    def record_deleted(self, count: int) -> None:
        self.deleted += max(0, int(count))

    def add_error(self, message: str) -> None:
        self.errors.append(str(message))

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def changes_applied(self) -> int:
        return self.created + self.updated + self.deleted

    def summary(self) -> str:
        return (
            f"created={self.created} updated={self.updated} skipped={self.skipped} "
            f"unchanged={self.unchanged} deleted={self.deleted} errors={len(self.errors)}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }

