"""Aggregation of knowledgeC usage events into per-app, hourly and daily totals."""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Callable, Iterable, Optional

from .categories import categorize
from .config import UsagePolicy
from .db import fetch_usage_events, store_connection
from .epoch import to_absolute, to_epoch
from .models import (
    DailyUsage,
    DateRange,
    HourlyUsage,
    UsageCategory,
    UsageRecord,
)
from .normalization import display_name_for

logger = logging.getLogger(__name__)

DAY_LABEL_FMT = "%Y-%m-%d"


@dataclass(frozen=True, slots=True)
class UsageEvent:
    """A single raw event with its duration already resolved."""

    bundle_id: str
    started_at: datetime
    duration: timedelta
    device_id: Optional[str]


class UsageAggregator:
    """Queries the event store and folds raw events into usage records."""

    def __init__(
        self,
        event_store: Path,
        *,
        policy: Optional[UsagePolicy] = None,
        categorizer: Callable[[str], UsageCategory] = categorize,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.event_store = Path(event_store)
        self.policy = policy or UsagePolicy()
        self._categorize = categorizer
        self._tz = tz

    def fetch_events(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[UsageEvent]:
        start = to_epoch(date_range.start)
        end = to_epoch(date_range.end)
        with store_connection(self.event_store) as conn:
            rows = fetch_usage_events(
                conn, self.event_store, start, end, device_filter=device_filter
            )
        events = [self._to_event(row) for row in rows]
        logger.debug(
            "Fetched %d usage events between %s and %s (device=%s)",
            len(events),
            date_range.start,
            date_range.end,
            device_filter,
        )
        return events

    def fetch_usage(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[UsageRecord]:
        """Sum event durations per application, longest first."""
        totals: defaultdict[str, timedelta] = defaultdict(timedelta)
        devices: defaultdict[str, set[Optional[str]]] = defaultdict(set)
        for event in self.fetch_events(date_range, device_filter):
            totals[event.bundle_id] += event.duration
            devices[event.bundle_id].add(event.device_id)

        records = [
            UsageRecord(
                bundle_id=bundle_id,
                app_name=display_name_for(bundle_id),
                total_time=total,
                start=date_range.start,
                end=date_range.end,
                category=self._categorize(bundle_id),
                device_id=device_filter or _single_device(devices[bundle_id]),
            )
            for bundle_id, total in totals.items()
        ]
        records.sort(key=lambda record: (-record.total_time, record.bundle_id))
        return records

    def fetch_hourly_breakdown(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[HourlyUsage]:
        buckets = self._bucket(
            self.fetch_events(date_range, device_filter),
            lambda moment: moment.hour,
        )
        return [
            HourlyUsage(hour=hour, category=category, seconds=seconds)
            for hour, category, seconds in buckets
        ]

    def fetch_daily_breakdown(
        self, date_range: DateRange, device_filter: Optional[str] = None
    ) -> list[DailyUsage]:
        buckets = self._bucket(
            self.fetch_events(date_range, device_filter),
            lambda moment: moment.strftime(DAY_LABEL_FMT),
        )
        return [
            DailyUsage(day=day, category=category, seconds=seconds)
            for day, category, seconds in buckets
        ]

    def _bucket(
        self,
        events: Iterable[UsageEvent],
        key: Callable[[datetime], object],
    ) -> list[tuple]:
        totals: defaultdict[tuple, float] = defaultdict(float)
        for event in events:
            local_start = event.started_at.astimezone(self._tz)
            bucket = key(local_start)
            category = self._categorize(event.bundle_id)
            totals[(bucket, category)] += event.duration.total_seconds()
        ordered = sorted(totals, key=lambda item: (item[0], item[1].sort_order))
        return [(bucket, category, totals[(bucket, category)]) for bucket, category in ordered]

    def _to_event(self, row: sqlite3.Row) -> UsageEvent:
        start = row["start_date"]
        end = row["end_date"]
        if end is None:
            duration = self.policy.default_event_duration
        else:
            duration = timedelta(seconds=max(end - start, 0.0))
        return UsageEvent(
            bundle_id=row["bundle_id"],
            started_at=to_absolute(start),
            duration=duration,
            device_id=row["device_id"],
        )


def _single_device(device_ids: set[Optional[str]]) -> Optional[str]:
    known = {device_id for device_id in device_ids if device_id}
    if len(known) == 1 and None not in device_ids:
        return known.pop()
    return None
