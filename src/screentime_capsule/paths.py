"""Helpers for locating application directories and the Screen Time stores."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from platformdirs import PlatformDirs


APP_NAME = "ScreenTimeCapsule"
APP_AUTHOR = "ScreenTimeCapsule"

KNOWLEDGE_DB_RELATIVE = Path("Library/Application Support/Knowledge/knowledgeC.db")
SCREENTIME_DB_RELATIVE = Path(
    "Library/Application Support/com.apple.screentime/RMAdminStore-Local.sqlite"
)
SETTINGS_STORE_SUFFIX = ".sqlite"
SIDE_FILE_SUFFIXES = ("-wal", "-shm")


def _platform_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)


def get_data_dir() -> Path:
    """Return the base directory for persistent data."""
    path = Path(_platform_dirs().user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_backup_root() -> Path:
    """Default snapshot root; created on first backup."""
    return Path(_platform_dirs().user_data_path) / "Backups"


def get_settings_path() -> Path:
    return get_data_dir() / "settings.json"


def get_log_path() -> Path:
    return get_data_dir() / "capsule.log"


@dataclass(frozen=True, slots=True)
class StoreLocations:
    event_store: Path
    settings_store: Path


class SourceLocator:
    """Resolves the fixed Screen Time store paths under a home directory."""

    def __init__(self, home: Optional[Path] = None) -> None:
        self.home = Path(home) if home is not None else Path.home()

    def locate_primary_stores(self) -> StoreLocations:
        return StoreLocations(
            event_store=self.home / KNOWLEDGE_DB_RELATIVE,
            settings_store=self.home / SCREENTIME_DB_RELATIVE,
        )

    @property
    def event_store(self) -> Path:
        return self.locate_primary_stores().event_store

    @property
    def settings_store(self) -> Path:
        return self.locate_primary_stores().settings_store

    def enumerate_settings_store_files(self) -> list[Path]:
        """List every settings store (including synced per-device copies), sorted by name."""
        directory = self.settings_store.parent
        if not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.iterdir()
            if path.suffix == SETTINGS_STORE_SUFFIX and path.is_file()
        )

    def backup_sources(self) -> list[Path]:
        """Primary store files that a snapshot should contain, without duplicates."""
        stores = self.locate_primary_stores()
        candidates = [stores.event_store, stores.settings_store]
        candidates.extend(self.enumerate_settings_store_files())
        seen: set[Path] = set()
        sources: list[Path] = []
        for path in candidates:
            if path in seen or not path.exists():
                continue
            seen.add(path)
            sources.append(path)
        return sources


def side_files(path: Path) -> list[Path]:
    """Existing write-ahead log and shared-memory files next to ``path``."""
    found = []
    for suffix in SIDE_FILE_SUFFIXES:
        candidate = path.with_name(path.name + suffix)
        if candidate.exists():
            found.append(candidate)
    return found
