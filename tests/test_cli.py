from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from store_builders import build_event_store, build_settings_store, make_home
from typer.testing import CliRunner

from screentime_capsule.cli import app
from screentime_capsule.config import load_settings
from screentime_capsule.epoch import to_epoch


class CliTests(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tempdir.name)
        self.locator = make_home(self.base)
        self.home = str(self.base / "home")
        self.settings_path = self.base / "settings.json"
        self.runner = CliRunner()
        self.invoke(
            "configure", "--destination", str(self.base / "Backups"), with_home=False
        )

    def tearDown(self):
        self.tempdir.cleanup()

    def invoke(self, *args, with_home=True):
        argv = list(args) + ["--settings", str(self.settings_path)]
        if with_home:
            argv += ["--home", self.home]
        return self.runner.invoke(app, argv)

    def test_usage_prints_top_apps(self):
        build_event_store(
            self.locator.event_store,
            [
                (
                    "/app/usage",
                    to_epoch(datetime(2024, 5, 1, 10)),
                    to_epoch(datetime(2024, 5, 1, 10, 3)),
                    "com.example.editor",
                )
            ],
        )
        result = self.invoke("usage", "--start", "2024-05-01")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Top apps:", result.output)
        self.assertIn("Editor", result.output)
        self.assertIn("3m", result.output)

    def test_usage_filtered_by_category(self):
        start = to_epoch(datetime(2024, 5, 1, 10))
        build_event_store(
            self.locator.event_store,
            [
                ("/app/usage", start, start + 180, "com.example.editor"),
                ("/app/usage", start, start + 600, "com.apple.dt.Xcode"),
            ],
        )
        result = self.invoke("usage", "--start", "2024-05-01", "--category", "Productivity")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Xcode", result.output)
        self.assertNotIn("Editor", result.output)

    def test_usage_without_store_fails(self):
        result = self.invoke("usage", "--start", "2024-05-01")
        self.assertEqual(result.exit_code, 1)

    def test_devices_lists_settings_store_devices(self):
        build_settings_store(
            self.locator.settings_store,
            [("DEVICE-1", "Work Mac", "MacBookPro18,1", 700_000_000.0)],
        )
        result = self.invoke("devices")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Work Mac", result.output)
        self.assertIn("DEVICE-1", result.output)

    def test_configure_persists_settings(self):
        result = self.invoke(
            "configure", "--auto", "--interval-hours", "12", "--retention-days", "30",
            with_home=False,
        )
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("\"retention_days\": 30", result.output)
        settings = load_settings(self.settings_path)
        self.assertTrue(settings.auto_backup_enabled)
        self.assertEqual(settings.interval_hours, 12.0)
        self.assertEqual(settings.backup_root, self.base / "Backups")

    def test_configure_rejects_short_interval(self):
        result = self.invoke("configure", "--interval-hours", "0.5", with_home=False)
        self.assertNotEqual(result.exit_code, 0)

    def test_backup_then_status(self):
        build_event_store(self.locator.event_store, [("/app/usage", 0, 60, "com.example.App")])
        result = self.invoke("backup")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Backup written to", result.output)
        snapshots = list((self.base / "Backups").iterdir())
        self.assertEqual(len(snapshots), 1)
        self.assertTrue((snapshots[0] / "knowledgeC.db").exists())

        result = self.invoke("status")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Full Disk Access: granted", result.output)
        self.assertIn("Snapshots:     1", result.output)

    def test_backup_without_sources_fails(self):
        result = self.invoke("backup")
        self.assertEqual(result.exit_code, 1)
        self.assertFalse((self.base / "Backups").exists())


if __name__ == "__main__":
    unittest.main()
