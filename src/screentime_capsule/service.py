"""Service object wiring the read path and the backup orchestrator together."""

from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .backup import BackupOrchestrator
from .config import BackupSettings, UsagePolicy, save_settings
from .db import verify_access
from .devices import DeviceRegistry
from .exceptions import CapsuleError
from .models import (
    UNATTRIBUTED_DEVICE,
    BackupSnapshot,
    BackupStatus,
    DailyUsage,
    DateRange,
    DeviceRecord,
    ExportReport,
    HourlyUsage,
    UsageCategory,
    UsageRecord,
)
from .paths import SourceLocator
from .usage import UsageAggregator

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOP_APPS_LIMIT = 10


@dataclass(frozen=True, slots=True)
class UsageSummary:
    start: datetime
    end: datetime
    total_time: timedelta
    category_breakdown: dict[UsageCategory, timedelta]
    top_apps: list[UsageRecord]
    device_breakdown: dict[str, timedelta]


@dataclass(frozen=True, slots=True)
class UsageReport:
    usage: list[UsageRecord]
    summary: UsageSummary


def summarize(usage: list[UsageRecord], date_range: DateRange) -> UsageSummary:
    """Totals per category and device plus the top applications."""
    categories: defaultdict[UsageCategory, timedelta] = defaultdict(timedelta)
    devices: defaultdict[str, timedelta] = defaultdict(timedelta)
    for record in usage:
        categories[record.category] += record.total_time
        devices[record.device_id or UNATTRIBUTED_DEVICE] += record.total_time
    return UsageSummary(
        start=date_range.start,
        end=date_range.end,
        total_time=sum((record.total_time for record in usage), timedelta()),
        category_breakdown={
            category: categories[category]
            for category in UsageCategory
            if category in categories
        },
        top_apps=usage[:TOP_APPS_LIMIT],
        device_breakdown=dict(devices),
    )


def usage_for_category(
    usage: list[UsageRecord], category: UsageCategory
) -> list[UsageRecord]:
    return [record for record in usage if record.category is category]


class ScreenTimeService:
    """Constructed once per process and handed to every consumer."""

    def __init__(
        self,
        locator: Optional[SourceLocator] = None,
        settings: Optional[BackupSettings] = None,
        *,
        usage_policy: Optional[UsagePolicy] = None,
        settings_path: Optional[Path] = None,
        tz: Optional[tzinfo] = None,
        orchestrator: Optional[BackupOrchestrator] = None,
    ) -> None:
        self.locator = locator or SourceLocator()
        self.settings_path = settings_path
        self.aggregator = UsageAggregator(
            self.locator.event_store, policy=usage_policy, tz=tz
        )
        self.registry = DeviceRegistry(self.locator)
        self.orchestrator = orchestrator or BackupOrchestrator(
            self.locator, settings or BackupSettings()
        )
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="refresh")
        self.last_error: Optional[str] = None

    @property
    def settings(self) -> BackupSettings:
        return self.orchestrator.settings

    def has_full_disk_access(self) -> bool:
        return verify_access(self.locator.event_store)

    def _record(self, operation: Callable[..., T], *args, **kwargs) -> T:
        try:
            result = operation(*args, **kwargs)
        except CapsuleError as exc:
            self.last_error = str(exc)
            raise
        self.last_error = None
        return result

    # Read path ----------------------------------------------------------------

    def fetch_usage(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[UsageRecord]:
        return self._record(self.aggregator.fetch_usage, date_range, device_filter)

    def fetch_hourly_breakdown(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[HourlyUsage]:
        return self._record(self.aggregator.fetch_hourly_breakdown, date_range, device_filter)

    def fetch_daily_breakdown(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[DailyUsage]:
        return self._record(self.aggregator.fetch_daily_breakdown, date_range, device_filter)

    def fetch_devices(self) -> list[DeviceRecord]:
        devices = self._record(self.registry.fetch_devices)
        if self.registry.last_error is not None:
            self.last_error = str(self.registry.last_error)
        return devices

    def refresh(
        self,
        date_range: DateRange,
        device_filter: Optional[str] = None,
        category: Optional[UsageCategory] = None,
    ) -> UsageReport:
        """Usage plus summary, optionally narrowed to one category.

        Raises :class:`SourceNotFound` when the event store is absent and
        :class:`AccessDenied` when it exists but cannot be read.
        """
        usage = self.fetch_usage(date_range, device_filter)
        if category is not None:
            usage = usage_for_category(usage, category)
        return UsageReport(usage=usage, summary=summarize(usage, date_range))

    def submit_refresh(
        self,
        date_range: DateRange,
        device_filter: Optional[str] = None,
        category: Optional[UsageCategory] = None,
    ) -> "Future[UsageReport]":
        return self._executor.submit(self.refresh, date_range, device_filter, category)

    # Write path ---------------------------------------------------------------

    def perform_backup(self) -> BackupSnapshot:
        return self._record(self.orchestrator.perform_backup)

    def request_backup(self) -> None:
        self._record(self.orchestrator.request_backup)

    def backup_status(self) -> BackupStatus:
        return self.orchestrator.status()

    def enforce_retention(self) -> int:
        errors = self._record(self.orchestrator.enforce_retention)
        if errors:
            self.last_error = str(errors[-1])
        return len(errors)

    def export_snapshots(self, destination: Path) -> ExportReport:
        report = self.orchestrator.export_snapshots(destination)
        if report.failed:
            self.last_error = self.orchestrator.last_error
        return report

    def update_settings(self, settings: BackupSettings, *, persist: bool = True) -> None:
        self.orchestrator.apply_settings(settings)
        if persist:
            save_settings(settings, self.settings_path)
        logger.info(
            "Settings updated: auto=%s interval=%.1fh retention=%dd root=%s",
            settings.auto_backup_enabled,
            settings.interval_hours,
            settings.retention_days,
            settings.backup_root,
        )

    def start(self) -> None:
        self.orchestrator.start_schedule()

    def close(self) -> None:
        self.orchestrator.shutdown()
        self._executor.shutdown(wait=False)
