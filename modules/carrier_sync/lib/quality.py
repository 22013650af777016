from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime

from .models import DATA_SOURCE_MANUAL, CarrierRecord
from .utils import parse_iso

MAX_SCORE = 100
VERIFICATION_THRESHOLD = 70

KEY_FIELDS = ("legal_name", "safety_rating", "insurance_status", "authority_status", "physical_address")
OPTIONAL_FIELDS = ("dba_name", "phone", "vehicle_count", "driver_count", "mc_number", "mcs_150_date")

# Fields never backfilled from an older record.
_BOOKKEEPING_FIELDS = frozenset({
    "dot_number",
    "data_source",
    "last_verified",
    "updated_at",
    "created_at",
    "data_quality_score",
    "sync_error_count",
})


def _present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip()) and value != "Unknown"
    if isinstance(value, tuple):
        return bool(value)
    return True


def _freshness_penalty(record: CarrierRecord, now: datetime) -> int:
    verified = parse_iso(record.last_verified)
    if verified is None:
        return 30
    age_days = (now - verified).total_seconds() / 86400.0
    if age_days > 180:
        return 30
    if age_days > 90:
        return 20
    if age_days > 30:
        return 10
    return 0


def _sync_error_penalty(record: CarrierRecord) -> int:
    errors = record.sync_error_count or 0
    if errors > 5:
        return 25
    if errors > 2:
        return 15
    if errors > 0:
        return 5
    return 0


def score(record: CarrierRecord, now: datetime) -> int:
    """
    Data quality in 0..100: starts at 100 and subtracts for staleness,
    repeated sync errors, missing key fields and manual provenance.
    """
    total = MAX_SCORE
    total -= _freshness_penalty(record, now)
    total -= _sync_error_penalty(record)
    total -= 5 * sum(1 for name in KEY_FIELDS if not _present(getattr(record, name)))
    if record.data_source == DATA_SOURCE_MANUAL:
        total -= 10
    return max(0, min(MAX_SCORE, total))


def needs_verification(record: CarrierRecord, now: datetime) -> bool:
    return score(record, now) < VERIFICATION_THRESHOLD


def completeness(record: CarrierRecord) -> float:
    """Share of populated fields, key fields counting double."""
    have = 2 * sum(1 for n in KEY_FIELDS if _present(getattr(record, n)))
    have += sum(1 for n in OPTIONAL_FIELDS if _present(getattr(record, n)))
    return have / float(2 * len(KEY_FIELDS) + len(OPTIONAL_FIELDS))


def merge(existing: CarrierRecord | None, incoming: CarrierRecord) -> CarrierRecord:
    """
    Decide what gets written for a fresh registry result.

    The incoming record wins. When it is less complete than what is stored
    (a partially rendered page), its gaps are filled from the stored record.
    """
    if existing is None or completeness(incoming) >= completeness(existing):
        return incoming
    backfill = {}
    for f in fields(CarrierRecord):
        if f.name in _BOOKKEEPING_FIELDS:
            continue
        new_value = getattr(incoming, f.name)
        old_value = getattr(existing, f.name)
        if not _present(new_value) and _present(old_value):
            backfill[f.name] = old_value
    return replace(incoming, **backfill) if backfill else incoming
