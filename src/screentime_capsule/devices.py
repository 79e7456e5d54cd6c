"""Resolution of the set of devices that contributed Screen Time data."""

from __future__ import annotations

import logging
import platform
import re
import socket
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from .db import fetch_device_rows, fetch_linked_devices, fetch_stream_names, store_connection
from .epoch import to_absolute
from .exceptions import CapsuleError, InvalidTimestamp, SchemaMismatch, SourceUnavailable
from .models import DeviceRecord
from .paths import SourceLocator

logger = logging.getLogger(__name__)

DEVICE_STREAM_PREFIX = "/device/"
_DEVICE_TOKEN = re.compile(
    r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$"
)
_PLATFORM_UUID = re.compile(r'"IOPlatformUUID"\s*=\s*"([^"]+)"')


def _newer(candidate: DeviceRecord, current: DeviceRecord) -> bool:
    """Tie-break for duplicate identifiers: latest last-seen wins, later source on a tie."""
    if candidate.last_seen is None:
        return current.last_seen is None
    if current.last_seen is None:
        return True
    return candidate.last_seen >= current.last_seen


def merge_devices(records: Iterable[DeviceRecord]) -> dict[str, DeviceRecord]:
    merged: dict[str, DeviceRecord] = {}
    for record in records:
        current = merged.get(record.identifier)
        if current is None or _newer(record, current):
            merged[record.identifier] = record
    return merged


def extract_stream_device_id(stream_name: Optional[str]) -> Optional[str]:
    """Identifier embedded after :data:`DEVICE_STREAM_PREFIX`, if UUID shaped."""
    if not stream_name or not stream_name.startswith(DEVICE_STREAM_PREFIX):
        return None
    token = stream_name[len(DEVICE_STREAM_PREFIX):].split("/", 1)[0]
    if _DEVICE_TOKEN.match(token):
        return token.upper()
    return None


def platform_hardware_uuid() -> Optional[str]:
    """Hardware UUID reported by IOKit (macOS) or the machine id (Linux)."""
    if sys.platform == "darwin":
        try:
            result = subprocess.run(
                ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True,
                text=True,
                timeout=5,
                check=True,
            )
        except (OSError, subprocess.SubprocessError):
            logger.debug("ioreg lookup failed", exc_info=True)
            return None
        match = _PLATFORM_UUID.search(result.stdout)
        return match.group(1) if match else None
    machine_id = Path("/etc/machine-id")
    try:
        value = machine_id.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def local_device() -> DeviceRecord:
    hostname = socket.gethostname() or platform.node()
    identifier = platform_hardware_uuid() or hostname or "unknown"
    return DeviceRecord.with_fallbacks(
        identifier=identifier,
        name=hostname or "This Mac",
        model="Mac" if sys.platform == "darwin" else platform.machine(),
        last_seen=datetime.now(timezone.utc),
    )


class DeviceRegistry:
    """Reads device records from every settings store with layered fallbacks."""

    def __init__(
        self,
        locator: SourceLocator,
        *,
        local_device_factory: Callable[[], DeviceRecord] = local_device,
    ) -> None:
        self.locator = locator
        self._local_device_factory = local_device_factory
        self.last_error: Optional[CapsuleError] = None

    def fetch_devices(self) -> list[DeviceRecord]:
        """Return every known device sorted by name; never empty."""
        self.last_error = None
        merged = merge_devices(self.read_settings_stores())
        if not merged:
            merged = merge_devices(self.extract_from_event_store())
        if not merged:
            device = self._local_device_factory()
            logger.info("No devices found in any store; using local device %s", device.identifier)
            merged = {device.identifier: device}
        return sorted(
            merged.values(), key=lambda device: (device.name.casefold(), device.identifier)
        )

    def read_settings_stores(self) -> list[DeviceRecord]:
        records: list[DeviceRecord] = []
        for path in self.locator.enumerate_settings_store_files():
            try:
                with store_connection(path) as conn:
                    rows = fetch_device_rows(conn, path)
            except (SchemaMismatch, SourceUnavailable) as exc:
                logger.info("Skipping settings store %s: %s", path, exc)
                self.last_error = exc
                continue
            except CapsuleError as exc:
                logger.warning("Failed to read devices from %s: %s", path, exc)
                self.last_error = exc
                continue
            for row in rows:
                record = _row_to_device(row)
                if record is None:
                    logger.warning("Device row without identifier in %s: %r", path, row)
                    continue
                records.append(record)
        logger.debug("Read %d device rows from settings stores", len(records))
        return records

    def extract_from_event_store(self) -> list[DeviceRecord]:
        """Heuristic device discovery from event linkage and stream names."""
        path = self.locator.event_store
        try:
            with store_connection(path) as conn:
                linked = fetch_linked_devices(conn, path)
                if linked:
                    return [
                        DeviceRecord.with_fallbacks(
                            identifier=str(row["device_id"]),
                            name=None,
                            model=None,
                            last_seen=_epoch_or_none(row["last_seen"]),
                        )
                        for row in linked
                    ]
                streams = fetch_stream_names(conn, path, DEVICE_STREAM_PREFIX)
        except CapsuleError as exc:
            logger.info("Event store device extraction unavailable: %s", exc)
            self.last_error = exc
            return []
        return self._devices_from_streams(streams)

    @staticmethod
    def _devices_from_streams(streams: Iterable) -> list[DeviceRecord]:
        records: list[DeviceRecord] = []
        for row in streams:
            identifier = extract_stream_device_id(row["stream_name"])
            if identifier is None:
                continue
            records.append(
                DeviceRecord.with_fallbacks(
                    identifier=identifier,
                    name=None,
                    model=None,
                    last_seen=_epoch_or_none(row["last_seen"]),
                )
            )
        return records


def _epoch_or_none(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return to_absolute(value)
    except InvalidTimestamp:
        logger.warning("Ignoring malformed last-seen value %r", value)
        return None


def _row_to_device(row: dict) -> Optional[DeviceRecord]:
    identifier = row.get("identifier")
    if identifier is None or str(identifier).strip() == "":
        return None
    return DeviceRecord.with_fallbacks(
        identifier=str(identifier),
        name=row.get("name"),
        model=row.get("model"),
        last_seen=_epoch_or_none(row.get("last_seen")),
    )
