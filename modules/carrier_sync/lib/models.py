from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

MIN_IDENTIFIER_DIGITS = 6

_NON_DIGITS = re.compile(r"\D+")


# -----------------------------
# Exceptions
# -----------------------------
class InvalidIdentifier(ValueError):
    """Raised when a carrier identifier has fewer than six digits after canonicalization."""


class RegistryUnavailable(Exception):
    """
    Raised to abort a batch or discovery run when the registry is down.

    Carries the identifier that was being looked up and the reason reported
    by the client so callers can surface a 503-style status.
    """

    def __init__(self, reason: str, identifier: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.identifier = identifier


class SyncCancelled(Exception):
    """Raised when a cancellation token fires (caller signal or deadline)."""


class PersistenceError(Exception):
    """Raised by the store when an upsert cannot be written."""


# -----------------------------
# Identifiers
# -----------------------------
def canonicalize(raw: Any) -> str:
    """
    Strip every non-digit character from `raw` and validate the length.

    >>> canonicalize("USDOT 1,174,814")
    '1174814'
    """
    digits = _NON_DIGITS.sub("", "" if raw is None else str(raw))
    if len(digits) < MIN_IDENTIFIER_DIGITS:
        raise InvalidIdentifier(f"Carrier identifier must contain at least {MIN_IDENTIFIER_DIGITS} digits (got {raw!r}).")
    return digits


def identifier_sort_key(identifier: str) -> tuple[int, str]:
    """Numeric ordering for digit strings (shorter numbers sort first)."""
    return (len(identifier), identifier)


# -----------------------------
# Registry lookups
# -----------------------------
@dataclass(frozen=True)
class RegistrySession:
    """Cookie captured from the registry landing page, threaded explicitly into lookups."""

    cookie: str | None = None


@dataclass(frozen=True)
class RegistrySnapshot:
    """
    Raw fields extracted from one registry snapshot page.
    - cells: label -> text for label/value table cells (labels without trailing ':')
    - checked: section label -> labels of the boxes marked 'X'
    - pattern: name of the extraction pattern that matched
    """

    identifier: str
    cells: dict[str, str] = field(default_factory=dict)
    checked: dict[str, tuple[str, ...]] = field(default_factory=dict)
    title: str | None = None
    pattern: str = ""

    def get(self, *labels: str) -> str | None:
        for label in labels:
            value = self.cells.get(label)
            if value:
                return value
        return None


@dataclass(frozen=True)
class Found:
    identifier: str
    snapshot: RegistrySnapshot
    kind: str = "found"


@dataclass(frozen=True)
class NotFound:
    identifier: str
    kind: str = "not_found"


@dataclass(frozen=True)
class SiteDown:
    identifier: str
    reason: str
    kind: str = "site_down"


@dataclass(frozen=True)
class ParseFailure:
    identifier: str
    reason: str
    snippet: str = ""
    kind: str = "parse_failure"


LookupResult = Found | NotFound | SiteDown | ParseFailure


# -----------------------------
# Carrier records
# -----------------------------
DATA_SOURCE_REGISTRY = "registry"
DATA_SOURCE_MANUAL = "manual"


@dataclass
class CarrierRecord:
    """
    Canonical carrier attributes. Every registry field is optional; absence is None
    (or an empty tuple for checkbox sections).
    """

    dot_number: str
    legal_name: str | None = None
    dba_name: str | None = None
    physical_address: str | None = None
    city: str | None = None
    state: str | None = None
    phone: str | None = None
    mc_number: str | None = None
    entity_type: str | None = None
    operating_status: str | None = None
    out_of_service_date: str | None = None
    safety_rating: str | None = None
    safety_rating_date: str | None = None
    safety_review_date: str | None = None
    insurance_status: str | None = None
    authority_status: str | None = None
    vehicle_count: int | None = None
    driver_count: int | None = None
    mcs_150_date: str | None = None
    total_mileage: int | None = None
    carrier_operation: tuple[str, ...] = ()
    operation_classification: tuple[str, ...] = ()
    cargo_carried: tuple[str, ...] = ()
    interstate_operation: bool | None = None
    hazmat_flag: bool | None = None
    private_property_flag: bool | None = None
    data_source: str = DATA_SOURCE_REGISTRY
    last_verified: str | None = None
    updated_at: str | None = None
    created_at: str | None = None
    data_quality_score: int | None = None
    sync_error_count: int = 0


# Fields compared when reporting what a refresh changed.
TRACKED_CHANGE_FIELDS = ("legal_name", "safety_rating", "insurance_status", "authority_status")


# -----------------------------
# Jobs
# -----------------------------
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED})


@dataclass
class SyncJob:
    id: str
    job_type: str
    status: str = JOB_PENDING
    carriers_processed: int = 0
    carriers_updated: int = 0
    carriers_failed: int = 0
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


@dataclass(frozen=True)
class DiscoveryAttempt:
    """One discovery lookup; folded into the job, never stored on its own."""

    identifier: str
    accepted: bool
    record: CarrierRecord | None = None
    error: str | None = None
