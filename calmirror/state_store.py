from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from calmirror.models import (
    CalendarConnection,
    CalendarEventLink,
    Provider,
    StagedEvent,
    Task,
    TaskSchedule,
    parse_iso_date,
    parse_iso_datetime,
    serialize_datetime,
)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS calendar_connections (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    selected_calendar_ids_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    external_event_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL DEFAULT '',
    summary TEXT,
    description TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    timezone TEXT,
    is_busy INTEGER NOT NULL DEFAULT 1,
    is_synthetic INTEGER NOT NULL DEFAULT 0,
    is_deleted_upstream INTEGER NOT NULL DEFAULT 0,
    external_etag TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (calendar_connection_id, external_event_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_id TEXT,
    idx INTEGER CHECK (idx IS NULL OR idx > 0),
    name TEXT NOT NULL CHECK (TRIM(name) <> ''),
    details TEXT,
    estimated_duration_minutes INTEGER NOT NULL CHECK (estimated_duration_minutes >= 5),
    priority INTEGER CHECK (priority IS NULL OR priority IN (1, 2, 3, 4)),
    is_calendar_event INTEGER NOT NULL DEFAULT 0,
    calendar_event_id TEXT,
    is_detached INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS tasks_calendar_event_idx ON tasks (user_id, calendar_event_id);

CREATE TABLE IF NOT EXISTS task_schedule (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    plan_id TEXT,
    day_index INTEGER NOT NULL DEFAULT 0 CHECK (day_index >= 0),
    date TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT,
    duration_minutes INTEGER CHECK (duration_minutes IS NULL OR duration_minutes > 0),
    status TEXT NOT NULL DEFAULT 'scheduled',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (start_time IS NULL OR end_time IS NULL OR start_time <= end_time)
);

CREATE INDEX IF NOT EXISTS task_schedule_task_idx ON task_schedule (task_id, date);

CREATE TABLE IF NOT EXISTS calendar_event_links (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_connection_id TEXT NOT NULL,
    calendar_event_id TEXT NOT NULL REFERENCES calendar_events(id) ON DELETE CASCADE,
    task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    task_schedule_id TEXT REFERENCES task_schedule(id) ON DELETE SET NULL,
    external_event_id TEXT NOT NULL,
    task_name TEXT,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (calendar_event_id, task_schedule_id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    connection_id TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    created INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    connection_id TEXT NOT NULL,
    subject TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _event_from_row(row: sqlite3.Row) -> StagedEvent:
    return StagedEvent(
        id=row["id"],
        external_event_id=row["external_event_id"],
        calendar_connection_id=row["calendar_connection_id"],
        user_id=row["user_id"],
        start_time=parse_iso_datetime(row["start_time"]),
        end_time=parse_iso_datetime(row["end_time"]),
        calendar_id=row["calendar_id"] or "",
        timezone=row["timezone"] or "",
        summary=row["summary"] or "",
        description=row["description"] or "",
        is_busy=bool(row["is_busy"]),
        is_synthetic=bool(row["is_synthetic"]),
        is_deleted_upstream=bool(row["is_deleted_upstream"]),
        external_etag=row["external_etag"] or "",
    )


def _task_from_row(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        idx=row["idx"],
        plan_id=row["plan_id"],
        details=row["details"],
        estimated_duration_minutes=int(row["estimated_duration_minutes"]),
        priority=row["priority"],
        is_calendar_event=bool(row["is_calendar_event"]),
        calendar_event_id=row["calendar_event_id"],
        is_detached=bool(row["is_detached"]),
    )


def _schedule_from_row(row: sqlite3.Row) -> TaskSchedule:
    return TaskSchedule(
        id=row["id"],
        task_id=row["task_id"],
        user_id=row["user_id"],
        date=parse_iso_date(row["date"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        duration_minutes=row["duration_minutes"],
        plan_id=row["plan_id"],
        day_index=int(row["day_index"]),
        status=row["status"],
    )


def _link_from_row(row: sqlite3.Row) -> CalendarEventLink:
    return CalendarEventLink(
        id=row["id"],
        user_id=row["user_id"],
        calendar_connection_id=row["calendar_connection_id"],
        calendar_event_id=row["calendar_event_id"],
        external_event_id=row["external_event_id"],
        task_id=row["task_id"],
        task_schedule_id=row["task_schedule_id"],
        task_name=row["task_name"] or "",
        metadata=json.loads(row["metadata_json"] or "{}"),
    )


class StoreSession:
    """Storage operations bound to one SQLite connection (one unit of work)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # Connections

    def upsert_connection(self, connection: CalendarConnection) -> None:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO calendar_connections(id, user_id, provider, selected_calendar_ids_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                provider = excluded.provider,
                selected_calendar_ids_json = excluded.selected_calendar_ids_json,
                updated_at = excluded.updated_at
            """,
            (
                connection.id,
                connection.user_id,
                connection.provider.value,
                json.dumps(list(connection.selected_calendar_ids)),
                now,
                now,
            ),
        )

    def get_connection(self, connection_id: str) -> CalendarConnection | None:
        row = self.conn.execute(
            "SELECT id, user_id, provider, selected_calendar_ids_json FROM calendar_connections WHERE id = ?",
            (connection_id,),
        ).fetchone()
        if row is None:
            return None
        return CalendarConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider.parse(row["provider"]),
            selected_calendar_ids=json.loads(row["selected_calendar_ids_json"] or "[]"),
        )

    def connection_belongs_to_user(self, connection_id: str, user_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM calendar_connections WHERE id = ? AND user_id = ?",
            (connection_id, user_id),
        ).fetchone()
        return row is not None

    # Staged events

    def upsert_staged_event(self, event: StagedEvent) -> None:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO calendar_events(
                id, user_id, calendar_connection_id, external_event_id, calendar_id, summary, description,
                start_time, end_time, timezone, is_busy, is_synthetic, is_deleted_upstream, external_etag,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(calendar_connection_id, external_event_id) DO UPDATE SET
                calendar_id = excluded.calendar_id,
                summary = excluded.summary,
                description = excluded.description,
                start_time = excluded.start_time,
                end_time = excluded.end_time,
                timezone = excluded.timezone,
                is_busy = excluded.is_busy,
                is_synthetic = excluded.is_synthetic,
                is_deleted_upstream = excluded.is_deleted_upstream,
                external_etag = excluded.external_etag,
                updated_at = excluded.updated_at
            """,
            (
                event.id,
                event.user_id,
                event.calendar_connection_id,
                event.external_event_id,
                event.calendar_id,
                event.summary,
                event.description,
                serialize_datetime(event.start_time),
                serialize_datetime(event.end_time),
                event.timezone,
                int(event.is_busy),
                int(event.is_synthetic),
                int(event.is_deleted_upstream),
                event.external_etag,
                now,
                now,
            ),
        )

    def get_staged_event(self, connection_id: str, external_event_id: str) -> StagedEvent | None:
        row = self.conn.execute(
            "SELECT * FROM calendar_events WHERE calendar_connection_id = ? AND external_event_id = ?",
            (connection_id, external_event_id),
        ).fetchone()
        return _event_from_row(row) if row else None

    def list_active_events(self, connection_id: str) -> list[StagedEvent]:
        rows = self.conn.execute(
            """
            SELECT * FROM calendar_events
            WHERE calendar_connection_id = ?
              AND is_busy = 1
              AND is_synthetic = 0
              AND is_deleted_upstream = 0
            ORDER BY start_time ASC, id ASC
            """,
            (connection_id,),
        ).fetchall()
        return [_event_from_row(row) for row in rows]

    def list_deleted_upstream_external_ids(self, connection_id: str) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT external_event_id FROM calendar_events
            WHERE calendar_connection_id = ? AND is_deleted_upstream = 1
            """,
            (connection_id,),
        ).fetchall()
        return [row["external_event_id"] for row in rows]

    def list_events_by_external_ids(self, connection_id: str, external_event_ids: list[str]) -> list[StagedEvent]:
        if not external_event_ids:
            return []
        rows = self.conn.execute(
            f"""
            SELECT * FROM calendar_events
            WHERE calendar_connection_id = ? AND external_event_id IN ({_placeholders(external_event_ids)})
            """,
            (connection_id, *external_event_ids),
        ).fetchall()
        return [_event_from_row(row) for row in rows]

    def delete_staged_events(self, connection_id: str, event_ids: list[str]) -> int:
        if not event_ids:
            return 0
        cursor = self.conn.execute(
            f"""
            DELETE FROM calendar_events
            WHERE calendar_connection_id = ? AND id IN ({_placeholders(event_ids)})
            """,
            (connection_id, *event_ids),
        )
        return int(cursor.rowcount)

    # Tasks

    def insert_task(self, task: Task) -> None:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO tasks(
                id, user_id, plan_id, idx, name, details, estimated_duration_minutes, priority,
                is_calendar_event, calendar_event_id, is_detached, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.user_id,
                task.plan_id,
                task.idx,
                task.name,
                task.details,
                int(task.estimated_duration_minutes),
                task.priority,
                int(task.is_calendar_event),
                task.calendar_event_id,
                int(task.is_detached),
                now,
                now,
            ),
        )

    def update_task_content(
        self,
        *,
        task_id: str,
        user_id: str,
        name: str,
        details: str | None,
        estimated_duration_minutes: int,
    ) -> int:
        cursor = self.conn.execute(
            """
            UPDATE tasks
            SET name = ?, details = ?, estimated_duration_minutes = ?, updated_at = ?
            WHERE id = ? AND user_id = ? AND is_detached = 0
            """,
            (name, details, int(estimated_duration_minutes), _utc_now(), task_id, user_id),
        )
        return int(cursor.rowcount)

    def get_task(self, task_id: str) -> Task | None:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _task_from_row(row) if row else None

    def list_connection_tasks(self, connection_id: str, user_id: str) -> list[Task]:
        rows = self.conn.execute(
            """
            SELECT t.* FROM tasks AS t
            JOIN calendar_events AS e ON e.id = t.calendar_event_id
            WHERE e.calendar_connection_id = ?
              AND t.user_id = ?
              AND t.is_calendar_event = 1
              AND t.plan_id IS NULL
            ORDER BY t.idx ASC, t.created_at ASC
            """,
            (connection_id, user_id),
        ).fetchall()
        return [_task_from_row(row) for row in rows]

    def list_user_calendar_tasks(self, user_id: str) -> list[Task]:
        rows = self.conn.execute(
            """
            SELECT * FROM tasks
            WHERE user_id = ? AND is_calendar_event = 1 AND plan_id IS NULL
            ORDER BY idx ASC, created_at ASC
            """,
            (user_id,),
        ).fetchall()
        return [_task_from_row(row) for row in rows]

    def max_calendar_task_idx(self, user_id: str) -> int:
        row = self.conn.execute(
            """
            SELECT MAX(idx) AS max_idx FROM tasks
            WHERE user_id = ? AND is_calendar_event = 1 AND plan_id IS NULL
            """,
            (user_id,),
        ).fetchone()
        return int(row["max_idx"] or 0)

    def find_tasks_for_events(self, user_id: str, calendar_event_ids: list[str]) -> list[Task]:
        if not calendar_event_ids:
            return []
        rows = self.conn.execute(
            f"""
            SELECT * FROM tasks
            WHERE user_id = ?
              AND is_calendar_event = 1
              AND is_detached = 0
              AND calendar_event_id IN ({_placeholders(calendar_event_ids)})
            """,
            (user_id, *calendar_event_ids),
        ).fetchall()
        return [_task_from_row(row) for row in rows]

    def set_task_detached(self, task_id: str, user_id: str, detached: bool) -> int:
        cursor = self.conn.execute(
            """
            UPDATE tasks SET is_detached = ?, updated_at = ?
            WHERE id = ? AND user_id = ? AND is_calendar_event = 1
            """,
            (int(detached), _utc_now(), task_id, user_id),
        )
        return int(cursor.rowcount)

    def delete_tasks(self, user_id: str, task_ids: list[str]) -> int:
        if not task_ids:
            return 0
        cursor = self.conn.execute(
            f"""
            DELETE FROM tasks
            WHERE user_id = ? AND is_calendar_event = 1 AND id IN ({_placeholders(task_ids)})
            """,
            (user_id, *task_ids),
        )
        return int(cursor.rowcount)

    # Schedules

    def insert_schedule(self, schedule: TaskSchedule) -> None:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO task_schedule(
                id, task_id, user_id, plan_id, day_index, date, start_time, end_time,
                duration_minutes, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                schedule.id,
                schedule.task_id,
                schedule.user_id,
                schedule.plan_id,
                int(schedule.day_index),
                schedule.date.isoformat(),
                schedule.start_time,
                schedule.end_time,
                schedule.duration_minutes,
                schedule.status,
                now,
                now,
            ),
        )

    def update_schedule(self, schedule: TaskSchedule) -> int:
        cursor = self.conn.execute(
            """
            UPDATE task_schedule
            SET date = ?, start_time = ?, end_time = ?, duration_minutes = ?, updated_at = ?
            WHERE id = ? AND task_id = ?
            """,
            (
                schedule.date.isoformat(),
                schedule.start_time,
                schedule.end_time,
                schedule.duration_minutes,
                _utc_now(),
                schedule.id,
                schedule.task_id,
            ),
        )
        return int(cursor.rowcount)

    def list_schedules(self, task_id: str) -> list[TaskSchedule]:
        rows = self.conn.execute(
            "SELECT * FROM task_schedule WHERE task_id = ? ORDER BY date ASC, start_time ASC",
            (task_id,),
        ).fetchall()
        return [_schedule_from_row(row) for row in rows]

    def list_schedules_for_tasks(self, task_ids: list[str]) -> dict[str, list[TaskSchedule]]:
        grouped: dict[str, list[TaskSchedule]] = {task_id: [] for task_id in task_ids}
        if not task_ids:
            return grouped
        rows = self.conn.execute(
            f"""
            SELECT * FROM task_schedule
            WHERE task_id IN ({_placeholders(task_ids)})
            ORDER BY date ASC, start_time ASC
            """,
            tuple(task_ids),
        ).fetchall()
        for row in rows:
            schedule = _schedule_from_row(row)
            grouped.setdefault(schedule.task_id, []).append(schedule)
        return grouped

    def delete_schedules(self, schedule_ids: list[str]) -> int:
        if not schedule_ids:
            return 0
        cursor = self.conn.execute(
            f"DELETE FROM task_schedule WHERE id IN ({_placeholders(schedule_ids)})",
            tuple(schedule_ids),
        )
        return int(cursor.rowcount)

    def delete_schedules_for_tasks(self, user_id: str, task_ids: list[str]) -> int:
        if not task_ids:
            return 0
        cursor = self.conn.execute(
            f"""
            DELETE FROM task_schedule
            WHERE user_id = ? AND task_id IN ({_placeholders(task_ids)})
            """,
            (user_id, *task_ids),
        )
        return int(cursor.rowcount)

    # Links

    def upsert_link(self, link: CalendarEventLink) -> None:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO calendar_event_links(
                id, user_id, calendar_connection_id, calendar_event_id, task_id, task_schedule_id,
                external_event_id, task_name, metadata_json, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(calendar_event_id, task_schedule_id) DO UPDATE SET
                task_id = excluded.task_id,
                external_event_id = excluded.external_event_id,
                task_name = excluded.task_name,
                metadata_json = excluded.metadata_json,
                updated_at = excluded.updated_at
            """,
            (
                link.id,
                link.user_id,
                link.calendar_connection_id,
                link.calendar_event_id,
                link.task_id,
                link.task_schedule_id,
                link.external_event_id,
                link.task_name,
                json.dumps(link.metadata, ensure_ascii=False),
                now,
                now,
            ),
        )

    def list_links_for_event(self, calendar_event_id: str) -> list[CalendarEventLink]:
        rows = self.conn.execute(
            "SELECT * FROM calendar_event_links WHERE calendar_event_id = ? ORDER BY created_at ASC",
            (calendar_event_id,),
        ).fetchall()
        return [_link_from_row(row) for row in rows]

    def delete_links_for_schedules(self, schedule_ids: list[str]) -> int:
        if not schedule_ids:
            return 0
        cursor = self.conn.execute(
            f"DELETE FROM calendar_event_links WHERE task_schedule_id IN ({_placeholders(schedule_ids)})",
            tuple(schedule_ids),
        )
        return int(cursor.rowcount)

    def delete_links_for_tasks(self, user_id: str, task_ids: list[str]) -> int:
        if not task_ids:
            return 0
        cursor = self.conn.execute(
            f"""
            DELETE FROM calendar_event_links
            WHERE user_id = ? AND task_id IN ({_placeholders(task_ids)})
            """,
            (user_id, *task_ids),
        )
        return int(cursor.rowcount)


class StateStore:
    def __init__(self, db_path: str, busy_timeout_seconds: float = 10.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = float(busy_timeout_seconds)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA_SQL)
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[StoreSession]:
        """Yield a session whose writes commit together or not at all."""
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield StoreSession(conn)
            finally:
                conn.close()

    def connection_belongs_to_user(self, connection_id: str, user_id: str) -> bool:
        with self.transaction() as session:
            return session.connection_belongs_to_user(connection_id, user_id)

    def upsert_connection(self, connection: CalendarConnection) -> None:
        with self.transaction() as session:
            session.upsert_connection(connection)

    def get_connection(self, connection_id: str) -> CalendarConnection | None:
        with self.transaction() as session:
            return session.get_connection(connection_id)

    def stage_events(self, events: Iterable[StagedEvent]) -> int:
        count = 0
        with self.transaction() as session:
            for event in events:
                session.upsert_staged_event(event)
                count += 1
        return count

    def list_active_events(self, connection_id: str) -> list[StagedEvent]:
        with self.transaction() as session:
            return session.list_active_events(connection_id)

    def calendar_tasks_with_schedules(self, user_id: str) -> list[tuple[Task, list[TaskSchedule]]]:
        with self.transaction() as session:
            tasks = session.list_user_calendar_tasks(user_id)
            schedules = session.list_schedules_for_tasks([task.id for task in tasks])
        return [(task, schedules.get(task.id, [])) for task in tasks]

    def set_task_detached(self, task_id: str, user_id: str, detached: bool) -> bool:
        with self.transaction() as session:
            return session.set_task_detached(task_id, user_id, detached) > 0

    def record_sync_run(
        self,
        *,
        trigger: str,
        connection_id: str,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        deleted: int = 0,
        errors: int = 0,
    ) -> int:
        with self.transaction() as session:
            cursor = session.conn.execute(
                """
                INSERT INTO sync_runs(
                    run_at, trigger, connection_id, status, message, duration_ms,
                    created, updated, skipped, deleted, errors
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _utc_now(),
                    trigger,
                    connection_id,
                    status,
                    message,
                    int(duration_ms),
                    int(created),
                    int(updated),
                    int(skipped),
                    int(deleted),
                    int(errors),
                ),
            )
            return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, connection_id: str, message: str = "running") -> int:
        return self.record_sync_run(
            trigger=trigger,
            connection_id=connection_id,
            status="running",
            message=message,
            duration_ms=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        deleted: int = 0,
        errors: int = 0,
    ) -> None:
        with self.transaction() as session:
            session.conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, message = ?, duration_ms = ?, created = ?, updated = ?,
                    skipped = ?, deleted = ?, errors = ?
                WHERE id = ?
                """,
                (
                    str(status),
                    str(message),
                    int(duration_ms),
                    int(created),
                    int(updated),
                    int(skipped),
                    int(deleted),
                    int(errors),
                    int(run_id),
                ),
            )

    def recent_sync_runs(self, limit: int = 20, connection_id: str | None = None) -> list[dict[str, Any]]:
        with self.transaction() as session:
            if connection_id is None:
                rows = session.conn.execute(
                    """
                    SELECT * FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = session.conn.execute(
                    """
                    SELECT * FROM sync_runs
                    WHERE connection_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (connection_id, max(1, limit)),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        connection_id: str,
        subject: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self.transaction() as session:
            session.conn.execute(
                """
                INSERT INTO audit_events(run_id, created_at, connection_id, subject, action, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, _utc_now(), connection_id, subject, action, json.dumps(details, ensure_ascii=False)),
            )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self.transaction() as session:
            if run_id is None:
                rows = session.conn.execute(
                    """
                    SELECT id, run_id, created_at, connection_id, subject, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = session.conn.execute(
                    """
                    SELECT id, run_id, created_at, connection_id, subject, action, details_json
                    FROM audit_events
                    WHERE run_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (int(run_id), max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
