"""Command-line interface for Screen Time Capsule."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import typer

from .config import SettingsPayload, load_settings, save_settings
from .exceptions import CapsuleError
from .models import DateRange, RetentionPolicy, TimePeriod, UsageCategory
from .paths import SourceLocator, get_settings_path
from .reporting import SummaryPrinter, format_bytes, format_duration
from .service import ScreenTimeService

app = typer.Typer(help="Preserve and explore macOS Screen Time history.")


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


HomeOption = typer.Option(
    None, "--home", help="Home directory containing the Screen Time stores."
)
SettingsOption = typer.Option(
    None, "--settings", help="Location of the settings file."
)


def _build_service(home: Optional[Path], settings_path: Optional[Path]) -> ScreenTimeService:
    settings_path = settings_path or get_settings_path()
    return ScreenTimeService(
        locator=SourceLocator(home),
        settings=load_settings(settings_path),
        settings_path=settings_path,
    )


def _fail(exc: CapsuleError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


def _resolve_range(
    period: Optional[TimePeriod], start: Optional[str], end: Optional[str]
) -> DateRange:
    if start is None:
        return (period or TimePeriod.TODAY).date_range()
    try:
        start_day = datetime.strptime(start, "%Y-%m-%d").astimezone()
        end_day = datetime.strptime(end, "%Y-%m-%d").astimezone() if end else start_day
    except ValueError as exc:
        raise typer.BadParameter("dates must use YYYY-MM-DD") from exc
    if end_day < start_day:
        raise typer.BadParameter("end date must be on or after start date")
    return DateRange(start_day, end_day + timedelta(days=1) - timedelta(microseconds=1))


@app.command()
def usage(
    period: Optional[TimePeriod] = typer.Option(None, "--period", help="Named time period."),
    start: Optional[str] = typer.Option(None, "--start", help="Start date (YYYY-MM-DD)."),
    end: Optional[str] = typer.Option(None, "--end", help="End date (YYYY-MM-DD), inclusive."),
    device: Optional[str] = typer.Option(None, "--device", help="Only show this device."),
    category: Optional[UsageCategory] = typer.Option(
        None, "--category", help="Only show apps in this category."
    ),
    limit: int = typer.Option(10, "--limit", min=1, help="Number of apps to list."),
    home: Optional[Path] = HomeOption,
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Print per-app usage for a period."""
    service = _build_service(home, settings_path)
    try:
        report = service.refresh(_resolve_range(period, start, end), device, category)
    except CapsuleError as exc:
        raise _fail(exc) from exc
    finally:
        service.close()
    SummaryPrinter(typer.echo).print_usage(report.usage, report.summary, limit=limit)


@app.command()
def breakdown(
    by: str = typer.Option("hour", "--by", help="Bucket by 'hour' or 'day'."),
    period: Optional[TimePeriod] = typer.Option(None, "--period"),
    start: Optional[str] = typer.Option(None, "--start"),
    end: Optional[str] = typer.Option(None, "--end"),
    device: Optional[str] = typer.Option(None, "--device"),
    home: Optional[Path] = HomeOption,
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Print usage per hour of day or per calendar day, split by category."""
    if by not in ("hour", "day"):
        raise typer.BadParameter("--by must be 'hour' or 'day'")
    service = _build_service(home, settings_path)
    date_range = _resolve_range(period, start, end)
    try:
        if by == "hour":
            rows = [
                (f"{row.hour:02d}:00", row.category.value, row.seconds)
                for row in service.fetch_hourly_breakdown(date_range, device)
            ]
        else:
            rows = [
                (row.day, row.category.value, row.seconds)
                for row in service.fetch_daily_breakdown(date_range, device)
            ]
    except CapsuleError as exc:
        raise _fail(exc) from exc
    finally:
        service.close()
    if not rows:
        typer.echo("No activity recorded for the selected period.")
    for bucket, category, seconds in rows:
        typer.echo(f"  {bucket:<12} {category:<14} {format_duration(seconds)}")


@app.command()
def devices(
    home: Optional[Path] = HomeOption,
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """List devices that contributed Screen Time data."""
    service = _build_service(home, settings_path)
    try:
        records = service.fetch_devices()
    finally:
        service.close()
    SummaryPrinter(typer.echo).print_devices(records)


@app.command()
def backup(
    home: Optional[Path] = HomeOption,
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Snapshot the Screen Time stores now."""
    service = _build_service(home, settings_path)
    try:
        snapshot = service.perform_backup()
    except CapsuleError as exc:
        raise _fail(exc) from exc
    finally:
        service.close()
    typer.echo(
        f"Backup written to {snapshot.directory} "
        f"({len(snapshot.files)} files, {format_bytes(snapshot.total_bytes)})"
    )


@app.command()
def prune(
    days: Optional[int] = typer.Option(
        None, "--days", min=0, help="Override the retention horizon (0 keeps everything)."
    ),
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Delete snapshots older than the retention horizon."""
    service = _build_service(None, settings_path)
    policy = RetentionPolicy(days) if days is not None else None
    try:
        errors = service.orchestrator.enforce_retention(policy)
    except CapsuleError as exc:
        raise _fail(exc) from exc
    finally:
        service.close()
    for error in errors:
        typer.echo(f"Warning: {error}", err=True)
    if errors:
        raise typer.Exit(code=1)


@app.command()
def export(
    destination: Path = typer.Argument(..., help="Directory to copy snapshots into."),
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Copy every snapshot to another location."""
    service = _build_service(None, settings_path)
    try:
        report = service.export_snapshots(destination)
    finally:
        service.close()
    typer.echo(f"Exported {len(report.copied)} files to {report.destination}")
    for path, error in report.failed:
        typer.echo(f"Failed: {path}: {error}", err=True)
    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def status(
    home: Optional[Path] = HomeOption,
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Show access and backup status."""
    service = _build_service(home, settings_path)
    try:
        access = service.has_full_disk_access()
        backup_status = service.backup_status()
    finally:
        service.close()
    typer.echo(f"Full Disk Access: {'granted' if access else 'missing'}")
    SummaryPrinter(typer.echo).print_backup_status(backup_status)


@app.command()
def configure(
    auto_backup: Optional[bool] = typer.Option(
        None, "--auto/--no-auto", help="Enable or disable scheduled backups."
    ),
    interval_hours: Optional[float] = typer.Option(None, "--interval-hours", min=1.0),
    retention_days: Optional[int] = typer.Option(None, "--retention-days", min=0),
    destination: Optional[Path] = typer.Option(None, "--destination"),
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Update and persist backup settings."""
    settings_path = settings_path or get_settings_path()
    payload = SettingsPayload(
        auto_backup_enabled=auto_backup,
        backup_interval_hours=interval_hours,
        retention_days=retention_days,
        backup_destination=destination,
    )
    settings = payload.apply_to(load_settings(settings_path))
    save_settings(settings, settings_path)
    typer.echo(SettingsPayload.from_settings(settings).model_dump_json(indent=2))


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(8765, "--port", min=1, max=65535, help="TCP port for the API."),
    settings_path: Optional[Path] = SettingsOption,
) -> None:
    """Run the local API with scheduled backups."""
    from .server_runner import run_server

    run_server(host=host, port=port, settings_path=settings_path)
