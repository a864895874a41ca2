import sqlite3
import tempfile
import threading
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from unittest import mock

from calmirror.models import CalendarConnection, Provider, ScheduleDescriptor, StagedEvent, Task, TaskSchedule
from calmirror.reconciler import assign_schedule_rows, reconcile_connection
from calmirror.splitter import END_OF_DAY
from calmirror.state_store import StateStore, StoreSession


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class ReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.store.upsert_connection(CalendarConnection(id="conn-1", user_id="user-1", provider=Provider.GOOGLE))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _stage(self, external_id: str, start: datetime, end: datetime, **fields) -> StagedEvent:
        event = StagedEvent(
            id=f"evt-{external_id}",
            external_event_id=external_id,
            calendar_connection_id="conn-1",
            user_id="user-1",
            start_time=start,
            end_time=end,
            calendar_id=fields.pop("calendar_id", "primary"),
            timezone=fields.pop("timezone", "UTC"),
            summary=fields.pop("summary", f"Event {external_id}"),
            **fields,
        )
        self.store.stage_events([event])
        return event

    def _sync(self, **kwargs):
        return reconcile_connection(
            self.store,
            connection_id="conn-1",
            user_id="user-1",
            provider=Provider.GOOGLE,
            **kwargs,
        )

    def _tasks(self) -> list[tuple[Task, list[TaskSchedule]]]:
        return self.store.calendar_tasks_with_schedules("user-1")

    def test_creates_task_and_schedule_for_new_event(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10, 30), description="Room 4")

        result = self._sync()

        self.assertEqual(result.created, 1)
        self.assertTrue(result.ok)
        rows = self._tasks()
        self.assertEqual(len(rows), 1)
        task, schedules = rows[0]
        self.assertEqual(task.name, "Event a")
        self.assertEqual(task.details, "Room 4")
        self.assertEqual(task.idx, 1)
        self.assertEqual(task.priority, 3)
        self.assertEqual(task.estimated_duration_minutes, 90)
        self.assertTrue(task.is_calendar_event)
        self.assertIsNone(task.plan_id)
        self.assertEqual(task.calendar_event_id, "evt-a")
        self.assertEqual(len(schedules), 1)
        self.assertEqual(schedules[0].date, date(2025, 1, 10))
        self.assertEqual((schedules[0].start_time, schedules[0].end_time), ("09:00", "10:30"))
        self.assertEqual(schedules[0].day_index, 0)
        self.assertEqual(schedules[0].status, "scheduled")

        with self.store.transaction() as session:
            links = session.list_links_for_event("evt-a")
        self.assertEqual(len(links), 1)
        self.assertEqual(links[0].task_schedule_id, schedules[0].id)
        self.assertEqual(links[0].metadata, {"provider": "google", "calendar_id": "primary"})

    def test_second_run_without_changes_is_idempotent(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10))
        self._stage("b", _utc(2025, 1, 10, 23, 30), _utc(2025, 1, 11, 0, 15))
        self._sync()
        before = [(task.to_dict(), [s.to_dict() for s in schedules]) for task, schedules in self._tasks()]

        result = self._sync()

        self.assertEqual((result.created, result.updated, result.unchanged), (0, 0, 2))
        after = [(task.to_dict(), [s.to_dict() for s in schedules]) for task, schedules in self._tasks()]
        self.assertEqual(before, after)

    def test_cross_midnight_event_gets_two_linked_rows(self) -> None:
        self._stage("late", _utc(2025, 1, 1, 23, 30), _utc(2025, 1, 2, 0, 15))

        self._sync()

        task, schedules = self._tasks()[0]
        self.assertEqual(task.estimated_duration_minutes, 45)
        self.assertEqual(
            [(s.date, s.start_time, s.end_time, s.duration_minutes) for s in schedules],
            [
                (date(2025, 1, 1), "23:30", END_OF_DAY, 30),
                (date(2025, 1, 2), "00:00", "00:15", 15),
            ],
        )
        with self.store.transaction() as session:
            links = session.list_links_for_event("evt-late")
        self.assertEqual({link.task_schedule_id for link in links}, {s.id for s in schedules})

    def test_multi_day_event_gets_single_open_row(self) -> None:
        self._stage("retreat", _utc(2025, 1, 1, 8), _utc(2025, 1, 3, 18))

        self._sync()

        task, schedules = self._tasks()[0]
        self.assertEqual(len(schedules), 1)
        self.assertEqual(schedules[0].date, date(2025, 1, 1))
        self.assertIsNone(schedules[0].end_time)
        self.assertEqual(task.estimated_duration_minutes, 1440)

    def test_zero_length_event_uses_minimum_duration(self) -> None:
        self._stage("ping", _utc(2025, 1, 1, 10), _utc(2025, 1, 1, 10), summary="   ")

        self._sync()

        task, schedules = self._tasks()[0]
        self.assertEqual(task.name, "Untitled Event")
        self.assertEqual(task.estimated_duration_minutes, 5)
        self.assertEqual(schedules[0].duration_minutes, 5)
        self.assertEqual(schedules[0].end_time, "10:05")

    def test_moved_event_keeps_schedule_row(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10))
        self._sync()
        _, original = self._tasks()[0]

        self._stage("a", _utc(2025, 1, 12, 14), _utc(2025, 1, 12, 15), summary="Moved")
        result = self._sync()

        self.assertEqual(result.updated, 1)
        task, schedules = self._tasks()[0]
        self.assertEqual(task.name, "Moved")
        self.assertEqual(len(schedules), 1)
        self.assertEqual(schedules[0].id, original[0].id)
        self.assertEqual(schedules[0].date, date(2025, 1, 12))
        self.assertEqual(schedules[0].start_time, "14:00")

    def test_same_day_event_becoming_cross_day_gains_second_row(self) -> None:
        self._stage("a", _utc(2025, 1, 1, 22), _utc(2025, 1, 1, 23))
        self._sync()
        _, original = self._tasks()[0]

        self._stage("a", _utc(2025, 1, 1, 23), _utc(2025, 1, 2, 1))
        result = self._sync()

        self.assertEqual(result.updated, 1)
        task, schedules = self._tasks()[0]
        self.assertEqual(len(schedules), 2)
        self.assertEqual(schedules[0].id, original[0].id)
        self.assertEqual(sum(s.duration_minutes for s in schedules), 120)
        self.assertEqual(task.estimated_duration_minutes, 120)
        with self.store.transaction() as session:
            self.assertEqual(len(session.list_links_for_event("evt-a")), 2)

    def test_cross_day_event_becoming_same_day_drops_stray_row(self) -> None:
        self._stage("a", _utc(2025, 1, 1, 23), _utc(2025, 1, 2, 1))
        self._sync()
        _, original = self._tasks()[0]

        self._stage("a", _utc(2025, 1, 2, 9), _utc(2025, 1, 2, 10))
        self._sync()

        _, schedules = self._tasks()[0]
        self.assertEqual(len(schedules), 1)
        # The row already on 2025-01-02 is the one reused.
        self.assertEqual(schedules[0].id, original[1].id)
        with self.store.transaction() as session:
            links = session.list_links_for_event("evt-a")
        self.assertEqual([link.task_schedule_id for link in links], [schedules[0].id])

    def test_detached_task_is_never_touched(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10), summary="Original")
        self._sync()
        task, schedules = self._tasks()[0]
        self.assertTrue(self.store.set_task_detached(task.id, "user-1", True))

        self._stage("a", _utc(2025, 1, 11, 9), _utc(2025, 1, 11, 11), summary="Renamed upstream")
        result = self._sync()

        self.assertEqual(result.skipped, 1)
        self.assertEqual(result.updated, 0)
        self.assertEqual(result.created, 0)
        after, after_schedules = self._tasks()[0]
        self.assertEqual(after.name, "Original")
        self.assertEqual([s.to_dict() for s in after_schedules], [s.to_dict() for s in schedules])

    def test_calendar_filter_limits_events(self) -> None:
        self._stage("w", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10), calendar_id="work")
        self._stage("p", _utc(2025, 1, 10, 11), _utc(2025, 1, 10, 12), calendar_id="personal")

        result = self._sync(calendar_ids=["work"])

        self.assertEqual(result.created, 1)
        self.assertEqual([task.name for task, _ in self._tasks()], ["Event w"])

    def test_non_busy_and_synthetic_events_are_ignored(self) -> None:
        self._stage("free", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10), is_busy=False)
        self._stage("echo", _utc(2025, 1, 10, 11), _utc(2025, 1, 10, 12), is_synthetic=True)

        result = self._sync()

        self.assertEqual(result.created, 0)
        self.assertEqual(self._tasks(), [])

    def test_new_tasks_get_increasing_idx(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10))
        self._sync()
        self._stage("b", _utc(2025, 1, 11, 9), _utc(2025, 1, 11, 10))
        self._stage("c", _utc(2025, 1, 12, 9), _utc(2025, 1, 12, 10))
        self._sync()

        self.assertEqual([(task.name, task.idx) for task, _ in self._tasks()], [
            ("Event a", 1),
            ("Event b", 2),
            ("Event c", 3),
        ])

    def test_failed_event_leaves_no_partial_rows(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10), summary="Breaks")
        self._stage("b", _utc(2025, 1, 11, 9), _utc(2025, 1, 11, 10), summary="Works")

        original_insert = StoreSession.insert_schedule
        calls: list[str] = []

        def flaky_insert(session: StoreSession, schedule: TaskSchedule) -> None:
            calls.append(schedule.task_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            original_insert(session, schedule)

        with mock.patch.object(StoreSession, "insert_schedule", flaky_insert):
            result = self._sync()

        self.assertEqual(result.created, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Failed to create task for event Breaks", result.errors[0])
        self.assertEqual([task.name for task, _ in self._tasks()], ["Works"])

        retry = self._sync()
        self.assertEqual((retry.created, retry.unchanged), (1, 1))
        self.assertTrue(retry.ok)

    def test_deleted_external_ids_remove_tasks(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10))
        self._stage("b", _utc(2025, 1, 11, 9), _utc(2025, 1, 11, 10))
        self._sync()

        result = self._sync(deleted_external_event_ids=["a"])

        self.assertEqual(result.deleted, 1)
        self.assertEqual([task.name for task, _ in self._tasks()], ["Event b"])

    def test_upstream_deleted_flag_removes_task(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10))
        self._sync()

        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10), is_deleted_upstream=True)
        result = self._sync()

        self.assertEqual(result.deleted, 1)
        self.assertEqual(self._tasks(), [])

    def test_cancelled_run_stops_before_next_event(self) -> None:
        self._stage("a", _utc(2025, 1, 10, 9), _utc(2025, 1, 10, 10))
        cancel = threading.Event()
        cancel.set()

        result = self._sync(cancel_event=cancel)

        self.assertTrue(result.cancelled)
        self.assertEqual(result.created, 0)
        self.assertEqual(self._tasks(), [])

    def test_event_zone_drives_calendar_date(self) -> None:
        self._stage(
            "ny",
            _utc(2025, 1, 2, 3),
            _utc(2025, 1, 2, 4),
            timezone="America/New_York",
        )

        self._sync()

        _, schedules = self._tasks()[0]
        self.assertEqual(schedules[0].date, date(2025, 1, 1))
        self.assertEqual((schedules[0].start_time, schedules[0].end_time), ("22:00", "23:00"))


class AssignScheduleRowsTests(unittest.TestCase):
    def _row(self, row_id: str, day: date) -> TaskSchedule:
        return TaskSchedule(id=row_id, task_id="t1", user_id="u1", date=day, start_time="09:00", end_time="10:00")

    def test_prefers_rows_on_same_date(self) -> None:
        rows = [self._row("first", date(2025, 1, 1)), self._row("second", date(2025, 1, 2))]
        descriptors = [ScheduleDescriptor(date(2025, 1, 2), "09:00", "10:00", 60)]

        pairs, leftovers = assign_schedule_rows(rows, descriptors)

        self.assertEqual(pairs[0][0].id, "second")
        self.assertEqual([row.id for row in leftovers], ["first"])

    def test_reuses_any_row_then_inserts(self) -> None:
        rows = [self._row("only", date(2025, 1, 1))]
        descriptors = [
            ScheduleDescriptor(date(2025, 2, 1), "23:00", END_OF_DAY, 60),
            ScheduleDescriptor(date(2025, 2, 2), "00:00", "01:00", 60),
        ]

        pairs, leftovers = assign_schedule_rows(rows, descriptors)

        self.assertEqual(pairs[0][0].id, "only")
        self.assertIsNone(pairs[1][0])
        self.assertEqual(leftovers, [])


if __name__ == "__main__":
    unittest.main()
