"""Domain models for usage history, devices and backups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional

UNKNOWN_DEVICE_NAME = "Unknown Device"
UNKNOWN_MODEL = "Unknown"
UNATTRIBUTED_DEVICE = "Unknown"


class UsageCategory(str, Enum):
    """Closed set of usage categories in stacked-chart display order."""

    PRODUCTIVITY = "Productivity"
    CREATIVITY = "Creativity"
    SOCIAL = "Social"
    ENTERTAINMENT = "Entertainment"
    UTILITIES = "Utilities"
    OTHER = "Other"

    @property
    def sort_order(self) -> int:
        return _CATEGORY_ORDER.index(self)


_CATEGORY_ORDER = list(UsageCategory)


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive time window used to filter events by start time."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("end must be on or after start")


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """Total observed time for one application within a query window."""

    bundle_id: str
    app_name: str
    total_time: timedelta
    start: datetime
    end: datetime
    category: UsageCategory = UsageCategory.OTHER
    device_id: Optional[str] = None

    @property
    def total_seconds(self) -> float:
        return self.total_time.total_seconds()


@dataclass(frozen=True, slots=True)
class HourlyUsage:
    hour: int
    category: UsageCategory
    seconds: float


@dataclass(frozen=True, slots=True)
class DailyUsage:
    day: str
    category: UsageCategory
    seconds: float


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    """A device that has contributed usage data."""

    identifier: str
    name: str = UNKNOWN_DEVICE_NAME
    model: str = UNKNOWN_MODEL
    last_seen: Optional[datetime] = None

    @classmethod
    def with_fallbacks(
        cls,
        identifier: str,
        name: Optional[str],
        model: Optional[str],
        last_seen: Optional[datetime],
    ) -> "DeviceRecord":
        return cls(
            identifier=identifier,
            name=(name or "").strip() or UNKNOWN_DEVICE_NAME,
            model=(model or "").strip() or UNKNOWN_MODEL,
            last_seen=last_seen,
        )


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Maximum snapshot age in days; zero keeps snapshots forever."""

    horizon_days: int = 0

    def __post_init__(self) -> None:
        if self.horizon_days < 0:
            raise ValueError("horizon_days must be zero or positive")

    @property
    def unlimited(self) -> bool:
        return self.horizon_days == 0

    @property
    def horizon(self) -> timedelta:
        return timedelta(days=self.horizon_days)


@dataclass(frozen=True, slots=True)
class BackupSnapshot:
    """One completed copy of the Screen Time stores."""

    created_at: datetime
    directory: Path
    files: tuple[Path, ...] = ()
    total_bytes: int = 0
    succeeded: bool = True

    @property
    def name(self) -> str:
        return self.directory.name


@dataclass(frozen=True, slots=True)
class BackupStatus:
    last_backup_at: Optional[datetime]
    total_backups: int
    total_bytes: int
    oldest_backup_at: Optional[datetime]
    newest_backup_at: Optional[datetime]
    is_running: bool
    last_error: Optional[str] = None
    free_bytes: Optional[int] = None


@dataclass(slots=True)
class ExportReport:
    """Outcome of a best-effort export of all snapshots."""

    destination: Path
    copied: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class TimePeriod(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_7_DAYS = "last-7-days"
    LAST_30_DAYS = "last-30-days"
    THIS_WEEK = "this-week"
    THIS_MONTH = "this-month"

    def date_range(self, now: Optional[datetime] = None) -> DateRange:
        """Resolve the period against ``now`` (local time by default)."""
        now = now or datetime.now().astimezone()
        start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # Range ends are inclusive.
        end_of_today = start_of_today + timedelta(days=1) - timedelta(microseconds=1)
        end_of_yesterday = start_of_today - timedelta(microseconds=1)
        if self is TimePeriod.TODAY:
            return DateRange(start_of_today, end_of_today)
        if self is TimePeriod.YESTERDAY:
            return DateRange(start_of_today - timedelta(days=1), end_of_yesterday)
        if self is TimePeriod.LAST_7_DAYS:
            return DateRange(now - timedelta(days=7), now)
        if self is TimePeriod.LAST_30_DAYS:
            return DateRange(now - timedelta(days=30), now)
        if self is TimePeriod.THIS_WEEK:
            start_of_week = start_of_today - timedelta(days=start_of_today.weekday())
            return DateRange(start_of_week, end_of_today)
        return DateRange(start_of_today.replace(day=1), end_of_today)
