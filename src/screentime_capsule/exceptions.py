"""Exception hierarchy for store access and backup operations."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class CapsuleError(Exception):
    """Base exception for Screen Time Capsule errors."""


class SourceUnavailable(CapsuleError):
    """Raised when a data store cannot be opened."""

    def __init__(self, path: Path, message: Optional[str] = None) -> None:
        self.path = Path(path)
        super().__init__(message or f"Data store unavailable: {self.path}")


class SourceNotFound(SourceUnavailable):
    """Raised when an expected data store path does not exist."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, f"Data store not found: {path}")


class AccessDenied(SourceUnavailable):
    """Raised when a store exists but cannot be read (Full Disk Access missing)."""

    def __init__(self, path: Path, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(path, f"Access denied to data store {path}{detail}")


class SchemaMismatch(CapsuleError):
    """Raised when an expected table or column is absent from a store."""

    def __init__(self, path: Optional[Path], detail: str) -> None:
        self.path = Path(path) if path is not None else None
        self.detail = detail
        where = f" in {self.path}" if self.path else ""
        super().__init__(f"Schema mismatch{where}: {detail}")


class QueryFailed(CapsuleError):
    """Raised when a prepared query cannot execute."""

    def __init__(self, path: Path, cause: BaseException) -> None:
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Query against {self.path} failed: {cause}")


class BackupError(CapsuleError):
    """Base exception for snapshot creation failures."""


class BackupIOError(BackupError):
    """Raised when copying a file into a snapshot fails."""

    def __init__(self, path: Path, cause: BaseException) -> None:
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Failed to copy {self.path}: {cause}")


class BackupInProgress(BackupError):
    """Raised when a backup is requested while another one is running."""

    def __init__(self) -> None:
        super().__init__("Backup already in progress")


class BackupCancelled(BackupError):
    """Raised when an in-flight backup is cancelled."""

    def __init__(self) -> None:
        super().__init__("Backup cancelled")


class RetentionCleanupError(BackupError):
    """Raised (and collected) when an expired snapshot cannot be deleted."""

    def __init__(self, path: Path, cause: BaseException) -> None:
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Failed to delete expired snapshot {self.path}: {cause}")


class InvalidTimestamp(CapsuleError, ValueError):
    """Raised when a stored timestamp is not a number or lies outside the datetime range."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid Core Data timestamp: {value!r}")
