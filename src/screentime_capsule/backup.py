"""Snapshotting of the Screen Time stores with scheduling and retention."""

from __future__ import annotations

import errno
import logging
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import psutil

from .config import BackupSettings
from .exceptions import (
    BackupCancelled,
    BackupInProgress,
    BackupIOError,
    CapsuleError,
    RetentionCleanupError,
    SourceNotFound,
)
from .models import BackupSnapshot, BackupStatus, ExportReport, RetentionPolicy
from .paths import SourceLocator, side_files

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def snapshot_name(created_at: datetime) -> str:
    """ISO-8601 UTC directory name, e.g. ``2024-05-01T08:30:00.000000Z``."""
    stamp = created_at.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return stamp.replace("+00:00", "Z")


def parse_snapshot_name(name: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(name.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class BackupEvent:
    """Status change published to subscribers: started, completed, failed or cleaned."""

    kind: str
    at: datetime
    snapshot: Optional[BackupSnapshot] = None
    error: Optional[str] = None
    removed: tuple[Path, ...] = ()


class BackupOrchestrator:
    """Creates snapshots one at a time and keeps the recurring schedule."""

    def __init__(
        self,
        locator: SourceLocator,
        settings: BackupSettings,
        *,
        clock: Clock = utc_now,
        disk_usage: Callable[[str], object] = psutil.disk_usage,
    ) -> None:
        self.locator = locator
        self.settings = settings
        self._clock = clock
        self._disk_usage = disk_usage
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._current_dir: Optional[Path] = None
        self._listeners: list[Callable[[BackupEvent], None]] = []
        self._timer_thread: Optional[threading.Thread] = None
        self._timer_stop: Optional[threading.Event] = None
        self.last_error: Optional[str] = None
        self.last_success_at: Optional[datetime] = None

    @property
    def backup_root(self) -> Path:
        return Path(self.settings.backup_root)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # Events -----------------------------------------------------------------

    def subscribe(self, listener: Callable[[BackupEvent], None]) -> Callable[[], None]:
        """Register a listener for backup events; returns an unsubscribe callable."""
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: BackupEvent) -> None:
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Backup event listener failed for %s", event.kind)

    # Backup -----------------------------------------------------------------

    def perform_backup(self) -> BackupSnapshot:
        """Create a snapshot now, or raise :class:`BackupInProgress`."""
        if not self._run_lock.acquire(blocking=False):
            raise BackupInProgress()
        try:
            return self._perform_locked()
        finally:
            self._run_lock.release()

    def request_backup(self) -> threading.Thread:
        """Start a backup in a background thread; rejects while one is running."""
        if not self._run_lock.acquire(blocking=False):
            raise BackupInProgress()
        thread = threading.Thread(
            target=self._run_in_background, name="backup-run", daemon=True
        )
        try:
            thread.start()
        except RuntimeError:
            self._run_lock.release()
            raise
        return thread

    def cancel_backup(self) -> bool:
        if not self.is_running:
            return False
        self._cancel_event.set()
        logger.info("Cancellation requested for running backup.")
        return True

    def _run_in_background(self) -> None:
        try:
            self._perform_locked()
        except CapsuleError as exc:
            logger.warning("Background backup failed: %s", exc)
        finally:
            self._run_lock.release()

    def _perform_locked(self) -> BackupSnapshot:
        self._cancel_event.clear()
        self.last_error = None
        self._emit(BackupEvent(kind="started", at=self._clock()))
        try:
            snapshot = self._create_snapshot()
        except CapsuleError as exc:
            self.last_error = str(exc)
            logger.error("Backup failed: %s", exc)
            self._emit(BackupEvent(kind="failed", at=self._clock(), error=str(exc)))
            raise

        self.last_success_at = snapshot.created_at
        logger.info(
            "Backup completed: %d files, %d bytes in %s",
            len(snapshot.files),
            snapshot.total_bytes,
            snapshot.directory,
        )
        self._emit(BackupEvent(kind="completed", at=self._clock(), snapshot=snapshot))
        self._enforce_retention_locked(self.settings.retention_policy)
        return snapshot

    def _create_snapshot(self) -> BackupSnapshot:
        sources = self.locator.backup_sources()
        if not sources:
            raise SourceNotFound(self.locator.event_store)

        planned: list[tuple[Path, bool]] = []
        required = 0
        for source in sources:
            planned.append((source, True))
            planned.extend((side, False) for side in side_files(source))
        for source, _ in planned:
            try:
                required += source.stat().st_size
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupIOError(source, exc) from exc

        root = self.backup_root
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupIOError(root, exc) from exc
        try:
            free = self._disk_usage(str(root)).free
        except OSError as exc:
            raise BackupIOError(root, exc) from exc
        if free < required:
            raise BackupIOError(
                root,
                OSError(errno.ENOSPC, f"{required} bytes needed, {free} available"),
            )

        created_at = self._clock()
        directory = root / snapshot_name(created_at)
        self._current_dir = directory
        try:
            directory.mkdir()
        except OSError as exc:
            self._current_dir = None
            raise BackupIOError(directory, exc) from exc

        copied: list[Path] = []
        total = 0
        try:
            for source, is_primary in planned:
                if self._cancel_event.is_set():
                    raise BackupCancelled()
                target = directory / source.name
                try:
                    shutil.copy2(source, target)
                    size = target.stat().st_size
                except FileNotFoundError as exc:
                    if is_primary:
                        raise BackupIOError(source, exc) from exc
                    # Checkpointed between listing and copying.
                    logger.debug("Side file vanished before copy: %s", source)
                    continue
                except OSError as exc:
                    raise BackupIOError(source, exc) from exc
                copied.append(target)
                total += size
        except BaseException:
            shutil.rmtree(directory, ignore_errors=True)
            raise
        finally:
            self._current_dir = None

        return BackupSnapshot(
            created_at=created_at,
            directory=directory,
            files=tuple(copied),
            total_bytes=total,
            succeeded=True,
        )

    # Retention --------------------------------------------------------------

    def list_snapshots(self) -> list[BackupSnapshot]:
        root = self.backup_root
        if not root.is_dir():
            return []
        snapshots = []
        for directory in root.iterdir():
            if not directory.is_dir() or directory.name.startswith("."):
                continue
            if directory == self._current_dir:
                continue
            try:
                snapshots.append(_load_snapshot(directory))
            except FileNotFoundError:
                logger.debug("Snapshot vanished while listing: %s", directory)
                continue
        snapshots.sort(key=lambda snapshot: snapshot.created_at)
        return snapshots

    def enforce_retention(
        self, policy: Optional[RetentionPolicy] = None
    ) -> list[RetentionCleanupError]:
        """Delete snapshots older than the horizon; an age equal to it is kept.

        Shares the single-flight lock with backups and raises
        :class:`BackupInProgress` while a snapshot is being written.
        """
        if not self._run_lock.acquire(blocking=False):
            raise BackupInProgress()
        try:
            return self._enforce_retention_locked(policy)
        finally:
            self._run_lock.release()

    def _enforce_retention_locked(
        self, policy: Optional[RetentionPolicy] = None
    ) -> list[RetentionCleanupError]:
        policy = policy or self.settings.retention_policy
        if policy.unlimited:
            return []

        now = self._clock()
        errors: list[RetentionCleanupError] = []
        removed: list[Path] = []
        for snapshot in self.list_snapshots():
            if now - snapshot.created_at <= policy.horizon:
                continue
            try:
                shutil.rmtree(snapshot.directory)
            except OSError as exc:
                error = RetentionCleanupError(snapshot.directory, exc)
                logger.warning("%s", error)
                errors.append(error)
                continue
            removed.append(snapshot.directory)
            logger.info("Deleted old backup: %s", snapshot.name)

        if errors:
            self.last_error = str(errors[-1])
        if removed or errors:
            self._emit(
                BackupEvent(
                    kind="cleaned",
                    at=now,
                    removed=tuple(removed),
                    error=str(errors[-1]) if errors else None,
                )
            )
        return errors

    # Status and export ------------------------------------------------------

    def status(self) -> BackupStatus:
        snapshots = self.list_snapshots()
        free_bytes: Optional[int] = None
        if self.backup_root.is_dir():
            free_bytes = int(self._disk_usage(str(self.backup_root)).free)
        newest = snapshots[-1].created_at if snapshots else None
        return BackupStatus(
            last_backup_at=self.last_success_at or newest,
            total_backups=len(snapshots),
            total_bytes=sum(snapshot.total_bytes for snapshot in snapshots),
            oldest_backup_at=snapshots[0].created_at if snapshots else None,
            newest_backup_at=newest,
            is_running=self.is_running,
            last_error=self.last_error,
            free_bytes=free_bytes,
        )

    def export_snapshots(self, destination: Path) -> ExportReport:
        """Copy every snapshot into ``destination``; failures are reported, not rolled back."""
        destination = Path(destination)
        report = ExportReport(destination=destination)
        for snapshot in self.list_snapshots():
            for source in snapshot.files:
                target = destination / snapshot.name / source.relative_to(snapshot.directory)
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, target)
                except OSError as exc:
                    logger.warning("Failed to export %s: %s", source, exc)
                    report.failed.append((source, str(exc)))
                    continue
                report.copied.append(target)
        if report.failed:
            self.last_error = f"Export failed for {len(report.failed)} file(s)"
        logger.info(
            "Exported %d files to %s (%d failed)",
            len(report.copied),
            destination,
            len(report.failed),
        )
        return report

    # Scheduling -------------------------------------------------------------

    @property
    def is_scheduled(self) -> bool:
        with self._state_lock:
            return bool(self._timer_thread and self._timer_thread.is_alive())

    def apply_settings(self, settings: BackupSettings) -> None:
        """Replace the configuration and re-arm (or drop) the recurring timer."""
        with self._state_lock:
            self.settings = settings
            self._reschedule_locked()

    def start_schedule(self) -> None:
        with self._state_lock:
            self._reschedule_locked()

    def stop_schedule(self) -> None:
        with self._state_lock:
            self._cancel_timer_locked()

    def shutdown(self) -> None:
        self.stop_schedule()
        self.cancel_backup()

    def _reschedule_locked(self) -> None:
        self._cancel_timer_locked()
        if not self.settings.auto_backup_enabled:
            logger.info("Auto backup disabled.")
            return
        stop_event = threading.Event()
        interval = self.settings.interval.total_seconds()
        thread = threading.Thread(
            target=self._schedule_loop,
            args=(stop_event, interval),
            name="backup-schedule",
            daemon=True,
        )
        self._timer_stop = stop_event
        self._timer_thread = thread
        thread.start()
        logger.info("Auto backup started with interval: %.1f hours", interval / 3600)

    def _cancel_timer_locked(self) -> None:
        if self._timer_stop is not None:
            self._timer_stop.set()
        self._timer_stop = None
        self._timer_thread = None

    def _schedule_loop(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.wait(interval):
            try:
                self.perform_backup()
            except BackupInProgress:
                logger.info("Scheduled backup skipped; another backup is running.")
            except CapsuleError as exc:
                logger.warning("Scheduled backup failed: %s", exc)
            except Exception:
                logger.exception("Scheduled backup crashed")


def _snapshot_created_at(directory: Path) -> datetime:
    parsed = parse_snapshot_name(directory.name)
    if parsed is not None:
        return parsed
    return datetime.fromtimestamp(directory.stat().st_mtime, tz=timezone.utc)


def _load_snapshot(directory: Path) -> BackupSnapshot:
    files = tuple(sorted(path for path in directory.rglob("*") if path.is_file()))
    return BackupSnapshot(
        created_at=_snapshot_created_at(directory),
        directory=directory,
        files=files,
        total_bytes=sum(path.stat().st_size for path in files),
    )
