"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

from .models import BackupStatus, DeviceRecord, UsageRecord
from .service import UsageSummary

Seconds = Union[float, int, timedelta]


def format_duration(value: Seconds) -> str:
    """Render a duration as ``"1h 1m"`` or ``"2m"``."""
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    total_seconds = max(int(seconds), 0)
    hours, remainder = divmod(total_seconds, 3600)
    minutes = remainder // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_bytes(size: Optional[int]) -> str:
    if size is None:
        return "unknown"
    value = float(size)
    if value < 1000:
        return f"{int(value)} bytes"
    for unit in ("KB", "MB"):
        value /= 1000
        if value < 1000:
            return f"{value:.1f} {unit}"
    value /= 1000
    return f"{value:.1f} GB"


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, echo=print) -> None:
        self._echo = echo

    def print_usage(self, usage: list[UsageRecord], summary: UsageSummary, limit: int = 10) -> None:
        if not usage:
            self._echo("No activity recorded for the selected period.")
            return

        self._echo(
            f"Summary for {_format_time(summary.start)} to {_format_time(summary.end)}"
        )
        self._echo("-" * 40)
        self._echo(f"Total time: {format_duration(summary.total_time)}")
        self._echo("")

        if summary.category_breakdown:
            self._echo("By category:")
            for category, total in summary.category_breakdown.items():
                self._echo(f"  {category.value:<30} {format_duration(total)}")
            self._echo("")

        self._echo("Top apps:")
        for record in usage[:limit]:
            self._echo(
                f"  {record.app_name[:30]:<30} {record.category.value:<14} "
                f"{format_duration(record.total_time)}"
            )

    def print_devices(self, devices: Iterable[DeviceRecord]) -> None:
        for device in devices:
            self._echo(
                f"  {device.name[:30]:<30} {device.model[:20]:<20} "
                f"{device.identifier}  last seen {_format_time(device.last_seen)}"
            )

    def print_backup_status(self, status: BackupStatus) -> None:
        self._echo(f"Last backup:   {_format_time(status.last_backup_at)}")
        self._echo(f"Snapshots:     {status.total_backups}")
        self._echo(f"Total size:    {format_bytes(status.total_bytes)}")
        self._echo(f"Oldest:        {_format_time(status.oldest_backup_at)}")
        self._echo(f"Newest:        {_format_time(status.newest_backup_at)}")
        self._echo(f"Free space:    {format_bytes(status.free_bytes)}")
        self._echo(f"Running:       {'yes' if status.is_running else 'no'}")
        if status.last_error:
            self._echo(f"Last error:    {status.last_error}")
