import unittest
from datetime import datetime, timezone

from icsbridge.models import (
    AppConfig,
    CleanupConfig,
    DestinationEvent,
    Invalid,
    MatchingConfig,
    SourceOccurrence,
    SyncConfig,
    SyncTargetConfig,
    Valid,
    month_window,
    planning_window,
    sync_window,
    validate_destination_event,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_defaults_and_clamping(self) -> None:
        cfg = SyncConfig.from_dict({"window_mode": "WEEK", "batch_size": 0, "interval_seconds": 5})
        self.assertEqual(cfg.window_mode, "month")
        self.assertEqual(cfg.batch_size, 1)
        self.assertEqual(cfg.interval_seconds, 30)
        self.assertEqual(cfg.listing_retry.max_attempts, 3)
        self.assertEqual(cfg.feed_timeout_seconds, 30)

    def test_matching_threshold_is_clamped(self) -> None:
        self.assertEqual(MatchingConfig.from_dict({"confidence_threshold": 3}).confidence_threshold, 1.0)
        self.assertEqual(MatchingConfig.from_dict({}).time_tolerance_minutes, 5)

    def test_cleanup_config_drops_blank_skip_patterns(self) -> None:
        cfg = CleanupConfig.from_dict({"skip_patterns": ["board", " ", ""], "max_deletions": -4})
        self.assertEqual(cfg.skip_patterns, ["board"])
        self.assertEqual(cfg.max_deletions, 0)

    def test_target_privacy_level_normalized(self) -> None:
        target = SyncTargetConfig.from_dict({"target_id": " work ", "privacy_level": "BUSY_ONLY"})
        self.assertEqual(target.target_id, "work")
        self.assertEqual(target.name, "work")
        self.assertEqual(target.privacy_level, "busy_only")
        self.assertEqual(SyncTargetConfig.from_dict({"target_id": "x", "privacy_level": "nope"}).privacy_level, "full_details")

    def test_app_config_skips_blank_and_repeated_targets(self) -> None:
        cfg = AppConfig.from_dict(
            {
                "targets": [
                    {"target_id": "a", "calendar_id": "cal-1"},
                    {"target_id": "a", "calendar_id": "cal-2"},
                    {"target_id": ""},
                    "not a mapping",
                ]
            }
        )
        self.assertEqual([target.calendar_id for target in cfg.targets], ["cal-1"])
        self.assertIsNone(cfg.find_target("b"))

    def test_source_occurrence_problem_and_free(self) -> None:
        start = datetime(2024, 8, 15, 10, 0, tzinfo=timezone.utc)
        self.assertEqual(SourceOccurrence(uid="", title="x", start=start, end=start).problem(), "missing uid")
        self.assertEqual(SourceOccurrence(uid="u", title="x", start=None, end=None).problem(), "missing start")
        free = SourceOccurrence(uid="u", title="x", start=start, end=start, transparency="transparent")
        self.assertTrue(free.is_free)
        self.assertEqual(free.problem(), "")


class ValidateDestinationEventTests(unittest.TestCase):
    def test_valid_record(self) -> None:
        checked = validate_destination_event(
            {
                "id": "evt-1",
                "summary": "Standup",
                "start": "2024-08-15T10:00:00Z",
                "created": "2024-08-01T09:00:00+02:00",
                "description": "Original UID: m1",
            },
            "cal-1",
        )
        self.assertIsInstance(checked, Valid)
        event = checked.event
        self.assertEqual(event.title, "Standup")
        self.assertEqual(event.end, event.start)
        self.assertEqual(event.calendar_id, "cal-1")
        self.assertEqual(event.source_uid, "m1")
        self.assertEqual(event.created_at, datetime(2024, 8, 1, 7, 0, tzinfo=timezone.utc))

    def test_invalid_records(self) -> None:
        cases = {
            "payload is not a mapping": ["evt"],
            "missing id": {"title": "x", "start": "2024-08-15T10:00:00Z"},
            "missing title": {"id": "e", "start": "2024-08-15T10:00:00Z"},
            "missing start": {"id": "e", "title": "x"},
            "unparseable datetime": {"id": "e", "title": "x", "start": "yesterday"},
        }
        for reason, raw in cases.items():
            with self.subTest(reason=reason):
                checked = validate_destination_event(raw)
                self.assertIsInstance(checked, Invalid)
                self.assertEqual(checked.reason, reason)

    def test_destination_event_passes_through(self) -> None:
        start = datetime(2024, 8, 15, 10, 0, tzinfo=timezone.utc)
        event = DestinationEvent(id="e", title="x", start=start, end=start)
        self.assertIs(validate_destination_event(event).event, event)


class WindowTests(unittest.TestCase):
    def test_month_window(self) -> None:
        start, end = month_window(datetime(2024, 2, 10, 15, 0, tzinfo=timezone.utc))
        self.assertEqual(start, datetime(2024, 2, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2024, 2, 29, 23, 59, 59, tzinfo=timezone.utc))

    def test_planning_window_covers_whole_days(self) -> None:
        start, end = planning_window(datetime(2024, 8, 15, 15, 0, tzinfo=timezone.utc), 7)
        self.assertEqual(start, datetime(2024, 8, 15, tzinfo=timezone.utc))
        self.assertEqual(end.date().isoformat(), "2024-08-21")

    def test_sync_window_uses_configured_timezone(self) -> None:
        config = SyncConfig(window_mode="days", window_days=1, timezone="Europe/Madrid")
        start, _ = sync_window(datetime(2024, 8, 15, 23, 30, tzinfo=timezone.utc), config)
        self.assertEqual(start.date().isoformat(), "2024-08-16")
        self.assertEqual(start.utcoffset().total_seconds(), 7200)


if __name__ == "__main__":
    unittest.main()
