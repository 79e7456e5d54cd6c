"""FastAPI application exposing usage history and backup control as a local JSON API."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, ValidationError

from .backup import BackupEvent
from .config import SettingsPayload
from .exceptions import (
    BackupInProgress,
    CapsuleError,
    SchemaMismatch,
    SourceUnavailable,
)
from .models import (
    BackupSnapshot,
    DateRange,
    DeviceRecord,
    TimePeriod,
    UsageCategory,
    UsageRecord,
)
from .service import ScreenTimeService, UsageSummary

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 50


class ExportPayload(BaseModel):
    destination: Path

    model_config = ConfigDict(extra="forbid")


def create_app(service: ScreenTimeService) -> FastAPI:
    """Instantiate the FastAPI application around an existing service."""
    app = FastAPI(title="Screen Time Capsule", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    recent_events: deque[BackupEvent] = deque(maxlen=RECENT_EVENTS_LIMIT)
    app.state.service = service
    app.state.recent_events = recent_events
    unsubscribe = service.orchestrator.subscribe(recent_events.append)

    @app.on_event("startup")
    async def _startup() -> None:
        service.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        unsubscribe()
        service.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        stores = svc.locator.locate_primary_stores()
        return {
            "full_disk_access": svc.has_full_disk_access(),
            "event_store": str(stores.event_store),
            "settings_store": str(stores.settings_store),
            "backup": _status_payload(svc),
            "last_error": svc.last_error,
        }

    @app.get("/api/usage")
    def usage(
        request: Request,
        start: Optional[str] = Query(default=None, description="Start date YYYY-MM-DD (inclusive)."),
        end: Optional[str] = Query(default=None, description="End date YYYY-MM-DD (inclusive)."),
        period: Optional[TimePeriod] = Query(default=None),
        device: Optional[str] = Query(default=None, description="Device identifier filter."),
        category: Optional[UsageCategory] = Query(default=None, description="Only apps in this category."),
    ) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        date_range = _resolve_range(start, end, period)
        report = _call(svc.refresh, date_range, device, category)
        return {
            "start": date_range.start.isoformat(),
            "end": date_range.end.isoformat(),
            "summary": _summary_payload(report.summary),
            "entries": [_usage_payload(record) for record in report.usage],
        }

    @app.get("/api/usage/hourly")
    def hourly(
        request: Request,
        start: Optional[str] = Query(default=None),
        end: Optional[str] = Query(default=None),
        period: Optional[TimePeriod] = Query(default=None),
        device: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        rows = _call(svc.fetch_hourly_breakdown, _resolve_range(start, end, period), device)
        return {
            "buckets": [
                {"hour": row.hour, "category": row.category.value, "seconds": row.seconds}
                for row in rows
            ]
        }

    @app.get("/api/usage/daily")
    def daily(
        request: Request,
        start: Optional[str] = Query(default=None),
        end: Optional[str] = Query(default=None),
        period: Optional[TimePeriod] = Query(default=None),
        device: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        rows = _call(svc.fetch_daily_breakdown, _resolve_range(start, end, period), device)
        return {
            "buckets": [
                {"day": row.day, "category": row.category.value, "seconds": row.seconds}
                for row in rows
            ]
        }

    @app.get("/api/devices")
    def devices(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        records = _call(svc.fetch_devices)
        return {"devices": [_device_payload(device) for device in records]}

    @app.get("/api/backups")
    def list_backups(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        return {
            "status": _status_payload(svc),
            "snapshots": [
                _snapshot_payload(snapshot) for snapshot in svc.orchestrator.list_snapshots()
            ],
        }

    @app.post("/api/backups", status_code=202)
    def start_backup(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        _call(svc.request_backup)
        return {"accepted": True}

    @app.delete("/api/backups/running")
    def cancel_backup(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        return {"cancelled": svc.orchestrator.cancel_backup()}

    @app.post("/api/backups/retention")
    def run_retention(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        failures = _call(svc.enforce_retention)
        return {"failures": failures, "status": _status_payload(svc)}

    @app.post("/api/backups/export")
    def export_backups(payload: ExportPayload, request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        report = svc.export_snapshots(payload.destination)
        return {
            "destination": str(report.destination),
            "copied": len(report.copied),
            "failed": [{"path": str(path), "error": error} for path, error in report.failed],
        }

    @app.get("/api/backups/events")
    def backup_events(request: Request) -> Dict[str, Any]:
        events = list(request.app.state.recent_events)
        return {
            "events": [
                {
                    "kind": event.kind,
                    "at": event.at.isoformat(),
                    "snapshot": event.snapshot.name if event.snapshot else None,
                    "error": event.error,
                    "removed": [path.name for path in event.removed],
                }
                for event in events
            ]
        }

    @app.get("/api/settings")
    def get_settings(request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        return SettingsPayload.from_settings(svc.settings).model_dump(mode="json")

    @app.patch("/api/settings")
    def update_settings(payload: SettingsPayload, request: Request) -> Dict[str, Any]:
        svc: ScreenTimeService = request.app.state.service
        try:
            updated = payload.apply_to(svc.settings)
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        svc.update_settings(updated)
        return SettingsPayload.from_settings(updated).model_dump(mode="json")

    return app


def _call(operation, *args):
    try:
        return operation(*args)
    except BackupInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except SourceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except SchemaMismatch as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except CapsuleError as exc:
        logger.exception("Request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _resolve_range(
    start: Optional[str], end: Optional[str], period: Optional[TimePeriod]
) -> DateRange:
    if period is not None:
        return period.date_range()
    start_day = _parse_date(start)
    end_day = _parse_date(end) if end else start_day
    if end_day < start_day:
        raise HTTPException(status_code=400, detail="end date must be on or after start date")
    return DateRange(start_day, end_day + timedelta(days=1) - timedelta(microseconds=1))


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        return _start_of_day(datetime.now().astimezone())
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc
    return _start_of_day(parsed.astimezone())


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _usage_payload(record: UsageRecord) -> Dict[str, Any]:
    return {
        "bundle_id": record.bundle_id,
        "app_name": record.app_name,
        "seconds": record.total_seconds,
        "category": record.category.value,
        "device_id": record.device_id,
    }


def _summary_payload(summary: UsageSummary) -> Dict[str, Any]:
    return {
        "total_seconds": summary.total_time.total_seconds(),
        "categories": [
            {"category": category.value, "seconds": total.total_seconds()}
            for category, total in summary.category_breakdown.items()
        ],
        "devices": [
            {"device_id": device_id, "seconds": total.total_seconds()}
            for device_id, total in sorted(summary.device_breakdown.items())
        ],
        "top_apps": [record.bundle_id for record in summary.top_apps],
    }


def _device_payload(device: DeviceRecord) -> Dict[str, Any]:
    return {
        "id": device.identifier,
        "name": device.name,
        "model": device.model,
        "last_seen": device.last_seen.isoformat() if device.last_seen else None,
    }


def _snapshot_payload(snapshot: BackupSnapshot) -> Dict[str, Any]:
    return {
        "name": snapshot.name,
        "created_at": snapshot.created_at.isoformat(),
        "files": [path.name for path in snapshot.files],
        "total_bytes": snapshot.total_bytes,
    }


def _status_payload(service: ScreenTimeService) -> Dict[str, Any]:
    status = service.backup_status()
    return {
        "last_backup_at": status.last_backup_at.isoformat() if status.last_backup_at else None,
        "total_backups": status.total_backups,
        "total_bytes": status.total_bytes,
        "oldest_backup_at": status.oldest_backup_at.isoformat() if status.oldest_backup_at else None,
        "newest_backup_at": status.newest_backup_at.isoformat() if status.newest_backup_at else None,
        "is_running": status.is_running,
        "last_error": status.last_error,
        "free_bytes": status.free_bytes,
        "auto_backup_enabled": service.settings.auto_backup_enabled,
        "interval_hours": service.settings.interval_hours,
        "retention_days": service.settings.retention_days,
    }
