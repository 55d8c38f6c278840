import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from icsbridge.cleanup import (
    CleanupFilters,
    CleanupOptions,
    DuplicateCleanupAnalyzer,
    event_hash,
    fuzzy_hash,
    fuzzy_title,
    validate_fuzzy_group,
)
from icsbridge.errors import ConfigurationError, TransientApiError
from icsbridge.models import DestinationEvent, validate_destination_event
from icsbridge.state_store import StateStore

from fakes import FakeDestination

START = datetime(2024, 8, 15, 10, 0, tzinfo=timezone.utc)
CREATED = datetime(2024, 7, 1, tzinfo=timezone.utc)


def _seed(destination: FakeDestination, title: str, *, minutes: int = 0, created_days: int = 0, **fields) -> str:
    start = START + timedelta(minutes=minutes)
    fields.setdefault("description", "")
    fields.setdefault("location", "")
    return destination.seed(
        title=title,
        start=start.isoformat(),
        end=(start + timedelta(hours=1)).isoformat(),
        created_at=(CREATED + timedelta(days=created_days)).isoformat(),
        **fields,
    )


def _event(event_id: str, title: str = "Standup", minutes: int = 0) -> DestinationEvent:
    start = START + timedelta(minutes=minutes)
    return DestinationEvent(id=event_id, title=title, start=start, end=start + timedelta(hours=1))


class HashTests(unittest.TestCase):
    def test_exact_hash_normalizes_case_and_whitespace(self) -> None:
        a = DestinationEvent(id="a", title=" Standup ", start=START, end=START, description="Notes", location="HQ")
        b = DestinationEvent(id="b", title="standup", start=START, end=START, description="notes ", location=" hq")
        self.assertEqual(event_hash(a), event_hash(b))

    def test_fuzzy_title_drops_stopwords_and_punctuation(self) -> None:
        self.assertEqual(fuzzy_title("The Review of the Plan!"), "review plan")

    def test_fuzzy_hash_rounds_down_to_the_hour(self) -> None:
        self.assertEqual(fuzzy_hash(_event("a", minutes=5)), fuzzy_hash(_event("b", minutes=55)))
        self.assertNotEqual(fuzzy_hash(_event("a", minutes=5)), fuzzy_hash(_event("b", minutes=65)))
        self.assertEqual(len(fuzzy_hash(_event("a"))), 16)

    def test_fuzzy_guard_rejects_starts_more_than_two_hours_apart(self) -> None:
        self.assertEqual(validate_fuzzy_group([_event("a"), _event("b", minutes=180)]), [])

    def test_fuzzy_guard_keeps_close_members_only(self) -> None:
        kept = validate_fuzzy_group([_event("a"), _event("b", minutes=90), _event("c", minutes=400)])
        self.assertEqual([event.id for event in kept], ["a", "b"])


class GroupingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.analyzer = DuplicateCleanupAnalyzer(FakeDestination())

    def _events(self, destination: FakeDestination) -> list[DestinationEvent]:
        return [validate_destination_event(raw, "cal-1").event for raw in destination.events.values()]

    def test_exact_duplicates_form_one_group(self) -> None:
        destination = FakeDestination()
        newer = _seed(destination, "Standup", created_days=2, description="Daily", location="HQ")
        older = _seed(destination, "standup", created_days=1, description="daily", location="hq")
        groups = self.analyzer.group_duplicates(self._events(destination))
        self.assertEqual(len(groups), 1)
        group = groups[0]
        self.assertEqual(group.match_type, "exact")
        self.assertEqual(group.confidence, 100)
        self.assertEqual(group.primary.id, older)
        self.assertEqual([dup.id for dup in group.duplicates], [newer])
        self.assertTrue(group.group_id.startswith("exact_"))

    def test_preserve_newest_keeps_latest_created(self) -> None:
        destination = FakeDestination()
        _seed(destination, "Standup", created_days=1)
        newest = _seed(destination, "Standup", created_days=5)
        _seed(destination, "Standup", created_days=3)
        groups = self.analyzer.group_duplicates(self._events(destination), preserve_newest=True)
        self.assertEqual(groups[0].primary.id, newest)

    def test_preserve_newest_only_changes_exact_groups(self) -> None:
        destination = FakeDestination()
        _seed(destination, "Standup", created_days=1)
        exact_newest = _seed(destination, "Standup", created_days=5)
        fuzzy_oldest = _seed(destination, "The Review", minutes=125, created_days=1)
        _seed(destination, "Review!", minutes=140, created_days=4)
        pattern_oldest = _seed(destination, "Planning", minutes=300, created_days=1, description="Original UID: abc")
        _seed(destination, "Planning v2", minutes=600, created_days=4, description="Original UID: abc")
        groups = self.analyzer.group_duplicates(self._events(destination), preserve_newest=True)
        primaries = {group.match_type: group.primary.id for group in groups}
        self.assertEqual(primaries, {"exact": exact_newest, "fuzzy": fuzzy_oldest, "pattern": pattern_oldest})

    def test_fuzzy_group_within_the_hour(self) -> None:
        destination = FakeDestination()
        first = _seed(destination, "The Standup", minutes=5, created_days=1)
        second = _seed(destination, "Standup!", minutes=20, created_days=2)
        groups = self.analyzer.group_duplicates(self._events(destination))
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0].match_type, "fuzzy")
        self.assertEqual(groups[0].confidence, 85)
        self.assertEqual(groups[0].primary.id, first)
        self.assertIn(second, groups[0].member_scores)

    def test_fuzzy_bucket_far_apart_is_discarded(self) -> None:
        events = [_event("a"), _event("b", minutes=180)]
        with mock.patch("icsbridge.cleanup.fuzzy_hash", return_value="collision"):
            groups = self.analyzer.group_duplicates(events)
        self.assertEqual(groups, [])

    def test_pattern_group_by_backlink(self) -> None:
        destination = FakeDestination()
        first = _seed(destination, "Planning", created_days=1, description="Original UID: abc")
        _seed(destination, "Planning v2", minutes=300, created_days=2, description="x\nOriginal UID: abc")
        groups = self.analyzer.group_duplicates(self._events(destination))
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0].match_type, "pattern")
        self.assertEqual(groups[0].confidence, 95)
        self.assertEqual(groups[0].primary.id, first)

    def test_events_are_claimed_by_the_first_matching_pass(self) -> None:
        destination = FakeDestination()
        _seed(destination, "Sync", created_days=1, description="Original UID: u1")
        _seed(destination, "Sync", created_days=2, description="Original UID: u1")
        groups = self.analyzer.group_duplicates(self._events(destination))
        self.assertEqual([group.match_type for group in groups], ["exact"])

    def test_unknown_creation_time_sorts_last(self) -> None:
        undated = DestinationEvent(id="undated", title="Standup", start=START, end=START)
        dated = DestinationEvent(id="dated", title="Standup", start=START, end=START, created_at=CREATED)
        groups = self.analyzer.group_duplicates([undated, dated])
        self.assertEqual(groups[0].primary.id, "dated")

    def test_filters_keep_group_with_one_matching_member(self) -> None:
        destination = FakeDestination()
        _seed(destination, "Standup", created_days=1)
        _seed(destination, "Standup", created_days=2)
        _seed(destination, "Lunch", minutes=240, created_days=1)
        _seed(destination, "Lunch", minutes=240, created_days=2)
        groups = self.analyzer.group_duplicates(self._events(destination))
        filtered = self.analyzer.apply_filters(groups, CleanupFilters(title_patterns=["lunch"]))
        self.assertEqual([group.primary.title for group in filtered], ["Lunch"])

    def test_exclude_pattern_filter(self) -> None:
        filters = CleanupFilters.from_dict({"exclude_pattern": "^standup$"})
        self.assertFalse(filters.matches(_event("a")))
        self.assertTrue(filters.matches(_event("b", title="Retro")))

    def test_invalid_filter_pattern_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            CleanupFilters.from_dict({"include_pattern": "("})


class CleanupTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.destination = FakeDestination()
        self.analyzer = DuplicateCleanupAnalyzer(self.destination, state_store=self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _seed_pairs(self, count: int) -> list[str]:
        duplicates = []
        for index in range(count):
            _seed(self.destination, f"Meeting {index}", minutes=index * 240, created_days=1)
            duplicates.append(_seed(self.destination, f"Meeting {index}", minutes=index * 240, created_days=2))
        return duplicates

    async def test_dry_run_never_deletes(self) -> None:
        duplicates = self._seed_pairs(4)
        report = await self.analyzer.cleanup(["cal-1"], CleanupOptions(mode="dry-run"))
        self.assertEqual(report.groups_analyzed, 4)
        self.assertEqual(report.duplicates_found, 4)
        self.assertEqual(report.duplicates_deleted, 0)
        self.assertEqual(report.deleted_event_ids, [])
        self.assertEqual(sorted(report.candidate_event_ids), sorted(duplicates))
        self.assertEqual([call[0] for call in self.destination.calls], ["list"])

    async def test_safety_limit_caps_deletions(self) -> None:
        self._seed_pairs(10)
        options = CleanupOptions(mode="batch", max_deletions=5, create_backup=False)
        report = await self.analyzer.cleanup(["cal-1"], options)
        self.assertEqual(report.duplicates_found, 10)
        self.assertLessEqual(report.duplicates_deleted, 5)
        self.assertEqual(report.duplicates_deleted, 5)
        self.assertTrue(any("limited to 5 deletions" in warning for warning in report.warnings))

    async def test_limit_admits_whole_groups_only(self) -> None:
        _seed(self.destination, "Big", created_days=1)
        _seed(self.destination, "Big", created_days=2)
        _seed(self.destination, "Big", created_days=3)
        _seed(self.destination, "Small", minutes=300, created_days=1)
        small_dup = _seed(self.destination, "Small", minutes=300, created_days=2)
        report = await self.analyzer.cleanup(["cal-1"], CleanupOptions(mode="dry-run", max_deletions=1))
        self.assertEqual(report.candidate_event_ids, [small_dup])

    async def test_skip_patterns_exclude_groups(self) -> None:
        _seed(self.destination, "Board meeting", created_days=1)
        _seed(self.destination, "Board meeting", created_days=2)
        self._seed_pairs(1)
        options = CleanupOptions(mode="batch", create_backup=False, skip_patterns=["board"])
        report = await self.analyzer.cleanup(["cal-1"], options)
        self.assertEqual(report.duplicates_deleted, 1)
        self.assertEqual(len(report.skipped_groups), 1)
        self.assertTrue(any("skip pattern" in warning for warning in report.warnings))
        titles = {event["title"] for event in self.destination.events.values()}
        self.assertEqual(titles, {"Board meeting", "Meeting 0"})
        self.assertEqual(sum(1 for event in self.destination.events.values() if event["title"] == "Board meeting"), 2)

    async def test_failed_delete_does_not_stop_others(self) -> None:
        duplicates = self._seed_pairs(3)
        self.destination.fail_delete_ids.add(duplicates[0])
        report = await self.analyzer.cleanup(["cal-1"], CleanupOptions(mode="batch", create_backup=False))
        self.assertEqual(report.duplicates_deleted, 2)
        self.assertEqual(len(report.errors), 1)
        self.assertIn(duplicates[0], report.errors[0])
        statuses = sorted(row["status"] for row in self.store.resolutions_for_operation(report.operation_id))
        self.assertEqual(statuses, ["deleted", "deleted", "failed"])

    async def test_backup_then_restore(self) -> None:
        duplicates = self._seed_pairs(2)
        self.destination.fail_get_ids.add(duplicates[1])
        report = await self.analyzer.cleanup(["cal-1"], CleanupOptions(mode="batch"))
        self.assertIsNotNone(report.backup_id)
        self.assertTrue(report.backup_id.startswith("backup_"))
        self.assertEqual(report.duplicates_deleted, 2)

        backup = self.store.get_backup(report.backup_id)
        self.assertEqual([item["event_id"] for item in backup["events"]], [duplicates[0]])
        self.assertEqual([item["backup_id"] for item in self.analyzer.list_backups()], [report.backup_id])

        restored = await self.analyzer.restore_backup(report.backup_id)
        self.assertEqual(len(restored.restored_event_ids), 1)
        new_event = self.destination.events[restored.restored_event_ids[0]]
        self.assertEqual(new_event["title"], "Meeting 0")

    async def test_expire_backups(self) -> None:
        self._seed_pairs(1)
        report = await self.analyzer.cleanup(["cal-1"], CleanupOptions(mode="batch", backup_retention_days=1))
        self.assertEqual(self.analyzer.expire_backups(datetime.now(timezone.utc)), [])
        expired = self.analyzer.expire_backups(datetime.now(timezone.utc) + timedelta(days=2))
        self.assertEqual(expired, [report.backup_id])
        self.assertIsNone(self.store.get_backup(report.backup_id))

    async def test_interactive_requires_confirmer(self) -> None:
        self._seed_pairs(1)
        with self.assertRaises(ConfigurationError):
            await self.analyzer.cleanup(["cal-1"], CleanupOptions(mode="interactive"))
        self.assertEqual(self.destination.calls, [])

    async def test_interactive_honours_declined_confirmation(self) -> None:
        duplicates = self._seed_pairs(2)
        confirm = mock.AsyncMock(side_effect=lambda group, duplicate: duplicate.id == duplicates[1])
        report = await self.analyzer.cleanup(
            ["cal-1"], CleanupOptions(mode="interactive", create_backup=False), confirm=confirm
        )
        self.assertEqual(report.deleted_event_ids, [duplicates[1]])
        self.assertEqual(confirm.await_count, 2)

    async def test_unknown_mode_is_rejected(self) -> None:
        with self.assertRaises(ConfigurationError):
            CleanupOptions(mode="everything")

    async def test_fetch_failure_on_one_calendar_is_recorded(self) -> None:
        self._seed_pairs(1)
        self.destination.list_failures.append(TransientApiError("503"))
        analysis = await self.analyzer.analyze(["cal-broken", "cal-1"])
        self.assertEqual(len(analysis.errors), 1)
        self.assertIn("cal-broken", analysis.errors[0])
        self.assertEqual(analysis.summary["exact_matches"], 1)
        self.assertEqual(analysis.total_events, 2)


if __name__ == "__main__":
    unittest.main()
