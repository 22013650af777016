"""
Refresh policy for locally cached carrier records.

Registry-sourced data changes upstream and is re-verified weekly; manually
entered data is trusted for 30 days. Records with no timestamp at all are
treated as infinitely stale.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime

from .models import DATA_SOURCE_REGISTRY, CarrierRecord, identifier_sort_key
from .utils import parse_iso

REGISTRY_THRESHOLD_HOURS = 168.0
MANUAL_THRESHOLD_HOURS = 720.0


def threshold_hours(record: CarrierRecord) -> float:
    return REGISTRY_THRESHOLD_HOURS if record.data_source == DATA_SOURCE_REGISTRY else MANUAL_THRESHOLD_HOURS


def last_update(record: CarrierRecord) -> datetime | None:
    """Latest of last_verified and updated_at."""
    stamps = [ts for ts in (parse_iso(record.last_verified), parse_iso(record.updated_at)) if ts is not None]
    return max(stamps) if stamps else None


def hours_since_update(record: CarrierRecord, now: datetime) -> float:
    ref = last_update(record)
    if ref is None:
        return math.inf
    return (now - ref).total_seconds() / 3600.0


def needs_refresh(existing: CarrierRecord | None, now: datetime, *, force: bool = False) -> bool:
    if existing is None or force:
        return True
    return hours_since_update(existing, now) >= threshold_hours(existing)


def rank(existing: CarrierRecord | None, now: datetime) -> float:
    """
    Refresh priority: hours since update as a fraction of the source threshold.
    Absent or never-updated records rank highest (inf).
    """
    if existing is None:
        return math.inf
    return hours_since_update(existing, now) / threshold_hours(existing)


def carriers_needing_sync(
    records: Iterable[CarrierRecord],
    limit: int,
    now: datetime,
    *,
    force: bool = False,
) -> list[str]:
    """Up to `limit` identifiers, most stale first, ties by identifier ascending."""
    if limit <= 0:
        return []
    stale = [(rank(r, now), r.dot_number) for r in records if needs_refresh(r, now, force=force)]
    stale.sort(key=lambda item: (-item[0], identifier_sort_key(item[1])))
    return [dot for _, dot in stale[:limit]]
