"""Configuration models and helpers for backups and usage queries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import RetentionPolicy
from .paths import get_backup_root, get_settings_path

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION = timedelta(seconds=60)


@dataclass(slots=True)
class UsagePolicy:
    """Policy applied while turning raw events into durations."""

    # Events without an end time are single samples, not zero-length runs.
    default_event_duration: timedelta = DEFAULT_EVENT_DURATION


@dataclass(slots=True)
class BackupSettings:
    """Runtime configuration for the backup orchestrator."""

    auto_backup_enabled: bool = False
    interval: timedelta = timedelta(hours=24)
    retention_days: int = 0
    backup_root: Path = field(default_factory=get_backup_root)

    @classmethod
    def from_intervals(
        cls,
        interval_hours: float,
        retention_days: int = 0,
        auto_backup_enabled: bool = False,
        backup_root: Optional[Path] = None,
    ) -> "BackupSettings":
        if interval_hours < 1:
            raise ValueError("interval_hours must be at least 1")
        if retention_days < 0:
            raise ValueError("retention_days must be zero or positive")
        return cls(
            auto_backup_enabled=auto_backup_enabled,
            interval=timedelta(hours=interval_hours),
            retention_days=retention_days,
            backup_root=Path(backup_root) if backup_root else get_backup_root(),
        )

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(horizon_days=self.retention_days)

    @property
    def interval_hours(self) -> float:
        return self.interval.total_seconds() / 3600.0


class SettingsPayload(BaseModel):
    """Serialized form of :class:`BackupSettings`; also used for API updates."""

    auto_backup_enabled: Optional[bool] = None
    backup_interval_hours: Optional[float] = Field(default=None, ge=1)
    retention_days: Optional[int] = Field(default=None, ge=0)
    backup_destination: Optional[Path] = None

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_settings(cls, settings: BackupSettings) -> "SettingsPayload":
        return cls(
            auto_backup_enabled=settings.auto_backup_enabled,
            backup_interval_hours=settings.interval_hours,
            retention_days=settings.retention_days,
            backup_destination=settings.backup_root,
        )

    def apply_to(self, settings: BackupSettings) -> BackupSettings:
        """Return a copy of ``settings`` with every provided field replaced."""
        return BackupSettings.from_intervals(
            interval_hours=(
                self.backup_interval_hours
                if self.backup_interval_hours is not None
                else settings.interval_hours
            ),
            retention_days=(
                self.retention_days
                if self.retention_days is not None
                else settings.retention_days
            ),
            auto_backup_enabled=(
                self.auto_backup_enabled
                if self.auto_backup_enabled is not None
                else settings.auto_backup_enabled
            ),
            backup_root=self.backup_destination or settings.backup_root,
        )


def load_settings(
    path: Optional[Path] = None, *, default_root: Optional[Path] = None
) -> BackupSettings:
    """Read persisted settings, falling back to defaults for a missing or bad file."""
    path = Path(path or get_settings_path())
    defaults = (
        BackupSettings(backup_root=Path(default_root)) if default_root else BackupSettings()
    )
    if not path.exists():
        return defaults
    try:
        payload = SettingsPayload.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError):
        logger.warning("Ignoring unreadable settings file %s", path, exc_info=True)
        return defaults
    return payload.apply_to(defaults)


def save_settings(settings: BackupSettings, path: Optional[Path] = None) -> Path:
    path = Path(path or get_settings_path())
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = SettingsPayload.from_settings(settings)
    path.write_text(payload.model_dump_json(indent=2), encoding="utf-8")
    return path
