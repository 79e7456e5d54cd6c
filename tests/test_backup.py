from __future__ import annotations

import shutil
import tempfile
import threading
import unittest
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from store_builders import make_home

from screentime_capsule import backup as backup_module
from screentime_capsule.backup import (
    BackupOrchestrator,
    parse_snapshot_name,
    snapshot_name,
)
from screentime_capsule.config import BackupSettings
from screentime_capsule.exceptions import (
    BackupCancelled,
    BackupInProgress,
    BackupIOError,
    RetentionCleanupError,
    SourceNotFound,
)
from screentime_capsule.models import RetentionPolicy

DiskUsage = namedtuple("DiskUsage", "total used free")
T0 = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class BackupTestCase(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tempdir.name)
        self.locator = make_home(self.base)
        self.backup_root = self.base / "Backups"
        self.clock = FakeClock(T0)
        self.settings = BackupSettings(backup_root=self.backup_root)
        self.orchestrator = BackupOrchestrator(self.locator, self.settings, clock=self.clock)
        self.events = []
        self.orchestrator.subscribe(self.events.append)

    def tearDown(self):
        self.orchestrator.shutdown()
        self.tempdir.cleanup()

    def write_stores(self, *, side_files: bool = True) -> None:
        event_store = self.locator.event_store
        event_store.write_bytes(b"knowledge" * 10)
        self.locator.settings_store.write_bytes(b"settings" * 10)
        (self.locator.settings_store.parent / "RMAdminStore-Cloud.sqlite").write_bytes(b"cloud")
        (self.locator.settings_store.parent / "notes.txt").write_text("ignored")
        if side_files:
            Path(f"{event_store}-wal").write_bytes(b"wal")
            Path(f"{event_store}-shm").write_bytes(b"shm")

    def make_snapshot_dir(self, created_at: datetime) -> Path:
        directory = self.backup_root / snapshot_name(created_at)
        directory.mkdir(parents=True)
        (directory / "knowledgeC.db").write_bytes(b"old")
        return directory


class PerformBackupTests(BackupTestCase):
    def test_copies_primary_and_side_files(self):
        self.write_stores()
        snapshot = self.orchestrator.perform_backup()

        self.assertEqual(snapshot.directory, self.backup_root / snapshot_name(T0))
        self.assertEqual(snapshot.created_at, T0)
        self.assertEqual(
            sorted(path.name for path in snapshot.files),
            [
                "RMAdminStore-Cloud.sqlite",
                "RMAdminStore-Local.sqlite",
                "knowledgeC.db",
                "knowledgeC.db-shm",
                "knowledgeC.db-wal",
            ],
        )
        self.assertEqual(snapshot.total_bytes, 90 + 80 + 5 + 3 + 3)
        self.assertEqual((snapshot.directory / "knowledgeC.db-wal").read_bytes(), b"wal")
        self.assertTrue(snapshot.succeeded)
        self.assertEqual(self.orchestrator.last_success_at, T0)
        self.assertIsNone(self.orchestrator.last_error)
        self.assertEqual([event.kind for event in self.events], ["started", "completed"])

    def test_missing_side_files_are_not_errors(self):
        self.write_stores(side_files=False)
        snapshot = self.orchestrator.perform_backup()
        self.assertNotIn("knowledgeC.db-wal", [path.name for path in snapshot.files])

    def test_snapshot_name_round_trips(self):
        self.assertEqual(snapshot_name(T0), "2024-05-01T08:30:00.000000Z")
        self.assertEqual(parse_snapshot_name(snapshot_name(T0)), T0)
        self.assertIsNone(parse_snapshot_name("exports"))

    def test_no_stores_is_source_not_found(self):
        with self.assertRaises(SourceNotFound):
            self.orchestrator.perform_backup()
        self.assertIsNotNone(self.orchestrator.last_error)
        self.assertIsNone(self.orchestrator.last_success_at)

    def test_copy_failure_aborts_and_removes_snapshot(self):
        self.write_stores()
        real_copy = shutil.copy2

        def failing_copy(source, target, *args, **kwargs):
            if Path(source).name == "RMAdminStore-Local.sqlite":
                raise PermissionError(13, "Permission denied")
            return real_copy(source, target, *args, **kwargs)

        with mock.patch("screentime_capsule.backup.shutil.copy2", side_effect=failing_copy):
            with self.assertRaises(BackupIOError) as ctx:
                self.orchestrator.perform_backup()

        self.assertEqual(ctx.exception.path, self.locator.settings_store)
        self.assertIsInstance(ctx.exception.cause, PermissionError)
        self.assertFalse((self.backup_root / snapshot_name(T0)).exists())
        self.assertIsNone(self.orchestrator.last_success_at)
        self.assertIn("RMAdminStore-Local.sqlite", self.orchestrator.last_error)
        self.assertEqual(self.events[-1].kind, "failed")

    def test_insufficient_space_is_backup_io_error(self):
        self.write_stores()
        orchestrator = BackupOrchestrator(
            self.locator,
            self.settings,
            clock=self.clock,
            disk_usage=lambda path: DiskUsage(100, 100, 0),
        )
        with self.assertRaises(BackupIOError):
            orchestrator.perform_backup()
        self.assertEqual(list(self.backup_root.iterdir()), [])

    def test_retention_runs_after_successful_backup(self):
        self.write_stores()
        old = self.make_snapshot_dir(T0 - timedelta(days=40))
        self.orchestrator.apply_settings(
            BackupSettings(retention_days=30, backup_root=self.backup_root)
        )
        snapshot = self.orchestrator.perform_backup()
        self.assertFalse(old.exists())
        self.assertTrue(snapshot.directory.exists())
        self.assertEqual(self.events[-1].kind, "cleaned")


class BlockingCopy:
    """Copy stand-in that parks the first copy until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self._real_copy = shutil.copy2

    def __call__(self, source, target, *args, **kwargs):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(5)
        return self._real_copy(source, target, *args, **kwargs)


class SingleFlightTests(BackupTestCase):
    def test_second_backup_is_rejected_while_running(self):
        self.write_stores()
        blocker = BlockingCopy()
        with mock.patch("screentime_capsule.backup.shutil.copy2", side_effect=blocker):
            thread = self.orchestrator.request_backup()
            self.assertTrue(blocker.entered.wait(5))
            self.assertTrue(self.orchestrator.is_running)
            with self.assertRaises(BackupInProgress):
                self.orchestrator.perform_backup()
            with self.assertRaises(BackupInProgress):
                self.orchestrator.request_backup()
            self.assertTrue(self.orchestrator.status().is_running)
            blocker.release.set()
            thread.join(5)

        self.assertFalse(self.orchestrator.is_running)
        self.assertEqual(len(self.orchestrator.list_snapshots()), 1)
        self.assertEqual(self.orchestrator.last_success_at, T0)

    def test_retention_is_rejected_while_snapshot_is_written(self):
        self.write_stores()
        old = self.make_snapshot_dir(T0 - timedelta(days=30))
        blocker = BlockingCopy()
        with mock.patch("screentime_capsule.backup.shutil.copy2", side_effect=blocker):
            thread = self.orchestrator.request_backup()
            self.assertTrue(blocker.entered.wait(5))
            with self.assertRaises(BackupInProgress):
                self.orchestrator.enforce_retention(RetentionPolicy(7))
            self.assertTrue(old.exists())
            self.assertTrue((self.backup_root / snapshot_name(T0)).exists())
            blocker.release.set()
            thread.join(5)
        self.assertTrue((self.backup_root / snapshot_name(T0)).exists())
        self.assertEqual(self.orchestrator.enforce_retention(RetentionPolicy(7)), [])
        self.assertFalse(old.exists())

    def test_snapshot_is_protected_from_the_moment_it_is_created(self):
        self.write_stores()
        expected = self.backup_root / snapshot_name(T0)
        seen = []
        real_mkdir = Path.mkdir

        def recording_mkdir(path, *args, **kwargs):
            if path == expected:
                seen.append(self.orchestrator._current_dir)
            return real_mkdir(path, *args, **kwargs)

        with mock.patch.object(Path, "mkdir", autospec=True, side_effect=recording_mkdir):
            self.orchestrator.perform_backup()
        self.assertEqual(seen, [expected])
        self.assertIsNone(self.orchestrator._current_dir)

    def test_cancel_removes_partial_snapshot(self):
        self.write_stores()
        blocker = BlockingCopy()
        with mock.patch("screentime_capsule.backup.shutil.copy2", side_effect=blocker):
            thread = self.orchestrator.request_backup()
            self.assertTrue(blocker.entered.wait(5))
            self.assertTrue(self.orchestrator.cancel_backup())
            blocker.release.set()
            thread.join(5)

        self.assertFalse((self.backup_root / snapshot_name(T0)).exists())
        self.assertEqual(self.orchestrator.last_error, str(BackupCancelled()))
        self.assertIsNone(self.orchestrator.last_success_at)
        self.assertFalse(self.orchestrator.cancel_backup())


class RetentionTests(BackupTestCase):
    def test_zero_horizon_deletes_nothing(self):
        ancient = self.make_snapshot_dir(T0 - timedelta(days=4000))
        self.assertEqual(self.orchestrator.enforce_retention(RetentionPolicy(0)), [])
        self.assertTrue(ancient.exists())

    def test_age_equal_to_horizon_is_kept(self):
        boundary = self.make_snapshot_dir(T0 - timedelta(days=7))
        just_over = self.make_snapshot_dir(T0 - timedelta(days=7, seconds=1))
        recent = self.make_snapshot_dir(T0 - timedelta(days=1))

        self.assertEqual(self.orchestrator.enforce_retention(RetentionPolicy(7)), [])

        self.assertTrue(boundary.exists())
        self.assertFalse(just_over.exists())
        self.assertTrue(recent.exists())

    def test_unparsable_names_use_modification_time(self):
        legacy = self.backup_root / "legacy-backup"
        legacy.mkdir(parents=True)
        self.clock.now = datetime.now(timezone.utc) + timedelta(days=10)
        self.orchestrator.enforce_retention(RetentionPolicy(7))
        self.assertFalse(legacy.exists())

    def test_deletion_failure_is_reported_and_pass_continues(self):
        first = self.make_snapshot_dir(T0 - timedelta(days=20))
        second = self.make_snapshot_dir(T0 - timedelta(days=10))
        real_rmtree = shutil.rmtree

        def failing_rmtree(path, *args, **kwargs):
            if Path(path) == first:
                raise PermissionError(13, "Operation not permitted")
            return real_rmtree(path, *args, **kwargs)

        with mock.patch("screentime_capsule.backup.shutil.rmtree", side_effect=failing_rmtree):
            errors = self.orchestrator.enforce_retention(RetentionPolicy(7))

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], RetentionCleanupError)
        self.assertEqual(errors[0].path, first)
        self.assertTrue(first.exists())
        self.assertFalse(second.exists())
        self.assertIsNotNone(self.orchestrator.last_error)


class StatusAndExportTests(BackupTestCase):
    def test_status_reports_snapshots(self):
        self.make_snapshot_dir(T0 - timedelta(days=2))
        self.make_snapshot_dir(T0 - timedelta(days=1))
        status = self.orchestrator.status()
        self.assertEqual(status.total_backups, 2)
        self.assertEqual(status.total_bytes, 6)
        self.assertEqual(status.oldest_backup_at, T0 - timedelta(days=2))
        self.assertEqual(status.newest_backup_at, T0 - timedelta(days=1))
        self.assertEqual(status.last_backup_at, T0 - timedelta(days=1))
        self.assertFalse(status.is_running)
        self.assertIsNotNone(status.free_bytes)

    def test_snapshot_removed_during_listing_is_skipped(self):
        gone = self.make_snapshot_dir(T0 - timedelta(days=2))
        kept = self.make_snapshot_dir(T0 - timedelta(days=1))
        real_created_at = backup_module._snapshot_created_at

        def vanishing(directory):
            if directory == gone:
                shutil.rmtree(directory)
                raise FileNotFoundError(2, "No such file or directory", str(directory))
            return real_created_at(directory)

        with mock.patch(
            "screentime_capsule.backup._snapshot_created_at", side_effect=vanishing
        ):
            status = self.orchestrator.status()
        self.assertEqual(status.total_backups, 1)
        self.assertEqual(status.oldest_backup_at, T0 - timedelta(days=1))
        self.assertTrue(kept.exists())

    def test_status_without_backup_root(self):
        status = self.orchestrator.status()
        self.assertEqual(status.total_backups, 0)
        self.assertIsNone(status.last_backup_at)
        self.assertIsNone(status.free_bytes)

    def test_export_copies_every_snapshot(self):
        first = self.make_snapshot_dir(T0 - timedelta(days=2))
        second = self.make_snapshot_dir(T0 - timedelta(days=1))
        destination = self.base / "external"
        report = self.orchestrator.export_snapshots(destination)
        self.assertTrue(report.ok)
        self.assertEqual(len(report.copied), 2)
        self.assertTrue((destination / first.name / "knowledgeC.db").exists())
        self.assertTrue((destination / second.name / "knowledgeC.db").exists())

    def test_export_reports_failed_files_without_rollback(self):
        first = self.make_snapshot_dir(T0 - timedelta(days=2))
        second = self.make_snapshot_dir(T0 - timedelta(days=1))
        destination = self.base / "external"
        real_copy = shutil.copy2

        def failing_copy(source, target, *args, **kwargs):
            if Path(source).parent == first:
                raise OSError(28, "No space left on device")
            return real_copy(source, target, *args, **kwargs)

        with mock.patch("screentime_capsule.backup.shutil.copy2", side_effect=failing_copy):
            report = self.orchestrator.export_snapshots(destination)

        self.assertFalse(report.ok)
        self.assertEqual([path for path, _ in report.failed], [first / "knowledgeC.db"])
        self.assertTrue((destination / second.name / "knowledgeC.db").exists())


class ScheduleTests(BackupTestCase):
    def test_reschedule_replaces_timer(self):
        self.orchestrator.apply_settings(
            BackupSettings(
                auto_backup_enabled=True,
                interval=timedelta(hours=1),
                backup_root=self.backup_root,
            )
        )
        self.assertTrue(self.orchestrator.is_scheduled)
        first_thread = self.orchestrator._timer_thread

        self.orchestrator.apply_settings(
            BackupSettings(
                auto_backup_enabled=True,
                interval=timedelta(hours=6),
                backup_root=self.backup_root,
            )
        )
        first_thread.join(5)
        self.assertFalse(first_thread.is_alive())
        self.assertTrue(self.orchestrator.is_scheduled)
        self.assertIsNot(self.orchestrator._timer_thread, first_thread)

        self.orchestrator.apply_settings(BackupSettings(backup_root=self.backup_root))
        self.assertFalse(self.orchestrator.is_scheduled)

    def test_scheduled_backup_runs(self):
        self.write_stores()
        completed = threading.Event()
        self.orchestrator.subscribe(
            lambda event: completed.set() if event.kind == "completed" else None
        )
        self.orchestrator.apply_settings(
            BackupSettings(
                auto_backup_enabled=True,
                interval=timedelta(milliseconds=50),
                backup_root=self.backup_root,
            )
        )
        self.assertTrue(completed.wait(5))
        self.orchestrator.stop_schedule()
        self.assertFalse(self.orchestrator.is_scheduled)
        self.assertEqual(self.orchestrator.last_success_at, T0)


if __name__ == "__main__":
    unittest.main()
