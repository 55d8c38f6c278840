import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from icsbridge.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "nested" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_sync_runs_round_trip_per_target(self) -> None:
        first = self.store.record_sync_run(
            target_id="work",
            trigger="manual",
            status="partial",
            message="1 error",
            duration_ms=40,
            events_processed=3,
            events_created=2,
            errors=["Failed to sync event \"Retro\": rate limited"],
        )
        self.store.record_sync_run(target_id="home", trigger="scheduled", status="success", message="ok", duration_ms=5)
        runs = self.store.recent_sync_runs(target_id="work")
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["id"], first)
        self.assertEqual(runs[0]["events_created"], 2)
        self.assertEqual(runs[0]["errors"], ["Failed to sync event \"Retro\": rate limited"])
        self.assertEqual([run["target_id"] for run in self.store.recent_sync_runs()], ["home", "work"])

    def test_audit_events_filter_by_run(self) -> None:
        self.store.record_audit_event(calendar_id="cal-1", uid="work", action="sync_run", details={"a": 1}, run_id=7)
        self.store.record_audit_event(calendar_id="cal-1", uid="work", action="run_error", details={})
        self.assertEqual([item["action"] for item in self.store.recent_audit_events()], ["run_error", "sync_run"])
        only = self.store.recent_audit_events(run_id=7)
        self.assertEqual(len(only), 1)
        self.assertEqual(only[0]["details"], {"a": 1})

    def test_mappings_upsert_and_forget(self) -> None:
        self.store.save_mapping(calendar_id="cal-1", source_uid="m1", destination_id="evt-1", event_key="k1")
        self.store.save_mapping(calendar_id="cal-1", source_uid="m1", destination_id="evt-2", event_key="k2")
        self.assertEqual(self.store.get_mapping("cal-1", "m1"), "evt-2")
        self.assertIsNone(self.store.get_mapping("cal-2", "m1"))
        self.assertEqual(self.store.forget_destination("cal-1", "evt-2"), 1)
        self.assertIsNone(self.store.get_mapping("cal-1", "m1"))

    def test_resolutions_are_kept_in_order(self) -> None:
        for event_id, status in (("evt-2", "deleted"), ("evt-3", "failed")):
            self.store.record_resolution(
                operation_id="cleanup_1",
                group_id="exact_abc",
                calendar_id="cal-1",
                primary_event_id="evt-1",
                event_id=event_id,
                match_type="exact",
                confidence=100,
                status=status,
            )
        rows = self.store.resolutions_for_operation("cleanup_1")
        self.assertEqual([(row["event_id"], row["status"]) for row in rows], [("evt-2", "deleted"), ("evt-3", "failed")])
        self.assertEqual(self.store.resolutions_for_operation("other"), [])

    def test_backups_save_list_and_expire(self) -> None:
        now = datetime(2024, 8, 15, 12, 0, tzinfo=timezone.utc)
        self.store.save_backup(
            backup_id="backup_1",
            operation_id="cleanup_1",
            expires_at=now + timedelta(days=1),
            events=[
                {"event_id": "evt-2", "calendar_id": "cal-1", "payload": {"title": "Standup"}, "reason": "dup"},
                {"event_id": "evt-3", "calendar_id": "cal-1", "payload": {"title": "Standup"}, "reason": "dup"},
            ],
        )
        self.store.save_backup(backup_id="backup_2", operation_id="cleanup_2", expires_at=now - timedelta(days=1), events=[])

        backup = self.store.get_backup("backup_1")
        self.assertEqual(backup["operation_id"], "cleanup_1")
        self.assertEqual([item["payload"]["title"] for item in backup["events"]], ["Standup", "Standup"])
        counts = {item["backup_id"]: item["event_count"] for item in self.store.list_backups()}
        self.assertEqual(counts, {"backup_1": 2, "backup_2": 0})

        self.assertEqual(self.store.delete_expired_backups(now), ["backup_2"])
        self.assertIsNone(self.store.get_backup("backup_2"))
        self.assertEqual(self.store.delete_expired_backups(now + timedelta(days=2)), ["backup_1"])
        self.assertEqual(self.store.list_backups(), [])

    def test_expiry_compares_instants_across_offsets(self) -> None:
        expires = datetime(2024, 8, 15, 12, 0, tzinfo=timezone.utc)
        self.store.save_backup(backup_id="b", operation_id="o", expires_at=expires, events=[])
        before = datetime(2024, 8, 15, 13, 30, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(self.store.delete_expired_backups(before), [])
        self.assertEqual(self.store.delete_expired_backups(expires), ["b"])


if __name__ == "__main__":
    unittest.main()
