from __future__ import annotations

import re
from datetime import datetime

from .models import DATA_SOURCE_REGISTRY, CarrierRecord, RegistrySnapshot

_DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%m-%d-%Y", "%m/%d/%y")
_CITY_STATE_RE = re.compile(r"^(?P<city>[^,]+),\s*(?P<state>[A-Z]{2})\b")
_MC_RE = re.compile(r"MC-?\s*(\d+)", re.IGNORECASE)
_INT_RE = re.compile(r"-?\d[\d,]*")
_NULL_TOKENS = {"", "none", "n/a", "na", "null", "-", "--"}


# -----------------------------
# Field normalizers (all total)
# -----------------------------
def _text(value: str | None) -> str | None:
    if value is None:
        return None
    s = " ".join(value.split())
    return None if s.lower() in _NULL_TOKENS else s


def parse_date(value: str | None) -> str | None:
    """Registry dates (MM/DD/YYYY and friends) to ISO-8601; None when absent or unparseable."""
    s = _text(value)
    if not s:
        return None
    token = s.split()[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(token, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_int(value: str | None) -> int | None:
    """First integer in the text, thousands separators dropped; None on non-numeric."""
    s = _text(value)
    if not s:
        return None
    m = _INT_RE.search(s)
    if not m:
        return None
    try:
        return int(m.group(0).replace(",", ""))
    except ValueError:
        return None


def normalize_safety_rating(value: str | None) -> str | None:
    """None when the page has no rating field; "None" on the page means not rated."""
    if value is None or not value.strip():
        return None
    s = " ".join(value.split()).lower()
    if "unsatisfactory" in s:
        return "unsatisfactory"
    if "satisfactory" in s:
        return "satisfactory"
    if "conditional" in s:
        return "conditional"
    return "not-rated"


def normalize_authority_status(value: str | None) -> str:
    s = (_text(value) or "").lower()
    if not s:
        return "Unknown"
    if "not authorized" in s or "inactive" in s or "out of service" in s or "out-of-service" in s:
        return "Inactive"
    if "authorized" in s or "active" in s:
        return "Active"
    return "Unknown"


def normalize_mc_number(value: str | None) -> str | None:
    s = _text(value)
    if not s:
        return None
    m = _MC_RE.search(s)
    return f"MC-{m.group(1)}" if m else None


def split_address(value: str | None) -> tuple[str | None, str | None, str | None]:
    """
    Return (single-line address, city, state) from a multi-line registry address.
    City/state come from the last line when it looks like 'CITY, ST 12345'.
    """
    if not value:
        return None, None, None
    lines = [" ".join(line.split()) for line in value.splitlines() if line.strip()]
    if not lines:
        return None, None, None
    city = state = None
    m = _CITY_STATE_RE.match(lines[-1])
    if m:
        city = m.group("city").strip() or None
        state = m.group("state")
    return ", ".join(lines), city, state


def _contains(items: tuple[str, ...], needle: str) -> bool:
    n = needle.lower()
    return any(n in item.lower() for item in items)


# -----------------------------
# Public API
# -----------------------------
def map_snapshot(snapshot: RegistrySnapshot) -> CarrierRecord:
    """
    Normalize a parsed registry page into a CarrierRecord.

    Total: any missing or malformed field maps to None rather than raising.
    Write-time timestamps (last_verified, updated_at) are left to the store.
    """
    address, city, state = split_address(snapshot.get("Physical Address"))

    out_of_service_date = parse_date(snapshot.get("Out of Service Date"))
    authority_status = normalize_authority_status(snapshot.get("Operating Authority Status", "Operating Status"))
    insurance_status = "Active" if authority_status == "Active" and not out_of_service_date else "Unknown"

    carrier_operation = tuple(snapshot.checked.get("Carrier Operation", ()))
    operation_classification = tuple(snapshot.checked.get("Operation Classification", ()))
    cargo_carried = tuple(snapshot.checked.get("Cargo Carried", ()))

    return CarrierRecord(
        dot_number=snapshot.identifier,
        legal_name=_text(snapshot.get("Legal Name")),
        dba_name=_text(snapshot.get("DBA Name")),
        physical_address=address,
        city=city,
        state=state,
        phone=_text(snapshot.get("Phone")),
        mc_number=normalize_mc_number(snapshot.get("MC/MX/FF Number(s)")),
        entity_type=_text(snapshot.get("Entity Type")),
        operating_status=_text(snapshot.get("Operating Status")),
        out_of_service_date=out_of_service_date,
        safety_rating=normalize_safety_rating(snapshot.get("Rating")),
        safety_rating_date=parse_date(snapshot.get("Rating Date")),
        safety_review_date=parse_date(snapshot.get("Review Date")),
        insurance_status=insurance_status,
        authority_status=authority_status,
        vehicle_count=parse_int(snapshot.get("Power Units")),
        driver_count=parse_int(snapshot.get("Drivers")),
        mcs_150_date=parse_date(snapshot.get("MCS-150 Form Date")),
        total_mileage=parse_int(snapshot.get("MCS-150 Mileage (Year)")),
        carrier_operation=carrier_operation,
        operation_classification=operation_classification,
        cargo_carried=cargo_carried,
        interstate_operation=_contains(carrier_operation, "interstate") if carrier_operation else None,
        hazmat_flag=_contains(cargo_carried, "hazardous") if cargo_carried else None,
        private_property_flag=_contains(operation_classification, "priv. property") if operation_classification else None,
        data_source=DATA_SOURCE_REGISTRY,
    )
