import unittest
from datetime import date, datetime, timezone

from calmirror.models import (
    AppConfig,
    Provider,
    ScheduleDescriptor,
    StagedEvent,
    SyncConfig,
    SyncEventsResult,
    TaskSchedule,
)


def _payload(**overrides):
    payload = {
        "id": "evt-1",
        "external_event_id": "ext-1",
        "calendar_connection_id": "conn-1",
        "user_id": "user-1",
        "start_time": "2025-01-01T09:00:00Z",
        "end_time": "2025-01-01T10:00:00+00:00",
        "summary": "Standup",
    }
    payload.update(overrides)
    return payload


class ProviderTests(unittest.TestCase):
    def test_parse_is_case_insensitive(self) -> None:
        self.assertIs(Provider.parse(" Google "), Provider.GOOGLE)
        self.assertIs(Provider.parse("outlook"), Provider.OUTLOOK)
        self.assertIs(Provider.parse(Provider.APPLE), Provider.APPLE)

    def test_provider_is_a_closed_set_of_plain_values(self) -> None:
        self.assertEqual([member.value for member in Provider], ["google", "outlook", "apple"])
        self.assertEqual(Provider.OUTLOOK, "outlook")

    def test_parse_rejects_unknown_provider(self) -> None:
        with self.assertRaises(ValueError):
            Provider.parse("yahoo")
        with self.assertRaises(ValueError):
            Provider.parse("")


class StagedEventTests(unittest.TestCase):
    def test_from_dict_normalizes_instants_to_utc(self) -> None:
        event = StagedEvent.from_dict(_payload(start_time="2025-01-01T10:00:00+01:00"))
        self.assertEqual(event.start_time, datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.end_time.tzinfo, timezone.utc)
        self.assertTrue(event.is_busy)
        self.assertFalse(event.is_synthetic)

    def test_from_dict_parses_string_flags(self) -> None:
        event = StagedEvent.from_dict(_payload(is_busy="false", is_deleted_upstream="yes"))
        self.assertFalse(event.is_busy)
        self.assertTrue(event.is_deleted_upstream)

    def test_from_dict_rejects_missing_identity(self) -> None:
        with self.assertRaises(ValueError):
            StagedEvent.from_dict(_payload(external_event_id=" "))

    def test_from_dict_rejects_bad_instants(self) -> None:
        with self.assertRaises(ValueError):
            StagedEvent.from_dict(_payload(start_time="not-a-date"))
        with self.assertRaises(ValueError):
            StagedEvent.from_dict(_payload(end_time=None))

    def test_label_falls_back_to_external_id(self) -> None:
        self.assertEqual(StagedEvent.from_dict(_payload(summary="  ")).label, "ext-1")
        self.assertEqual(StagedEvent.from_dict(_payload()).label, "Standup")


class ConfigTests(unittest.TestCase):
    def test_sync_config_normalizes_values(self) -> None:
        config = SyncConfig.from_dict(
            {"default_timezone": " ", "max_duration_minutes": 1, "task_priority": 9, "untitled_event_name": ""}
        )
        self.assertEqual(config.default_timezone, "UTC")
        self.assertEqual(config.max_duration_minutes, 5)
        self.assertEqual(config.task_priority, 3)
        self.assertEqual(config.untitled_event_name, "Untitled Event")

    def test_app_config_round_trips_through_dict(self) -> None:
        config = AppConfig.from_dict({"logging": {"level": "nope"}, "storage": {"busy_timeout_seconds": 0}})
        self.assertEqual(config.logging.level, "INFO")
        self.assertEqual(config.storage.busy_timeout_seconds, 1.0)
        self.assertEqual(AppConfig.from_dict(config.to_dict()), config)


class ScheduleDescriptorTests(unittest.TestCase):
    def test_matches_compares_all_schedule_fields(self) -> None:
        descriptor = ScheduleDescriptor(date(2025, 1, 1), "23:30", "24:00", 30)
        row = TaskSchedule(
            id="s1",
            task_id="t1",
            user_id="u1",
            date=date(2025, 1, 1),
            start_time="23:30",
            end_time="24:00",
            duration_minutes=30,
        )
        self.assertTrue(descriptor.matches(row))
        row.duration_minutes = 31
        self.assertFalse(descriptor.matches(row))


class SyncEventsResultTests(unittest.TestCase):
    def test_errors_mean_partial_success(self) -> None:
        result = SyncEventsResult()
        result.record_created()
        result.record_deleted(2)
        self.assertTrue(result.ok)
        result.add_error("Failed to create task for event Standup: boom")
        self.assertFalse(result.ok)
        self.assertEqual(result.changes_applied, 3)
        self.assertEqual(result.to_dict()["errors"], ["Failed to create task for event Standup: boom"])
        self.assertIn("errors=1", result.summary())


if __name__ == "__main__":
    unittest.main()
