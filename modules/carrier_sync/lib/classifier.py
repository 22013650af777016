from __future__ import annotations

from .models import CarrierRecord

NON_CARRIER_REASON = "non-carrier entity"

# Registry entity types that never operate vehicles themselves.
BROKER_TYPES = frozenset({
    "broker",
    "freight forwarder",
    "property broker",
    "household goods broker",
    "passenger broker",
})

# Registry-only entity types; accepted only with evidence of an operating fleet.
OTHER_REGISTRY_TYPES = frozenset({
    "shipper",
    "cargo tank",
    "iep",
    "intermodal equipment provider",
    "registrant",
})


def _entity_parts(record: CarrierRecord) -> list[str]:
    raw = (record.entity_type or "").strip().lower()
    return [p.strip() for p in raw.split("/") if p.strip()]


def _operates_fleet(record: CarrierRecord) -> bool:
    has_equipment = (record.vehicle_count or 0) > 0 or (record.driver_count or 0) > 0
    return has_equipment and bool(record.carrier_operation)


def rejection_reason(record: CarrierRecord) -> str | None:
    """
    Return a human-readable reason when the record is not a motor carrier,
    or None when it should be kept.
    """
    parts = _entity_parts(record)
    if not parts:
        return None

    # Combined types ("CARRIER/BROKER"): the first listed role decides.
    if len(parts) > 1:
        if parts[0] == "carrier":
            return None
        if parts[0] == "broker":
            return f"{NON_CARRIER_REASON} (freight broker)"
        if "carrier" in parts:
            return None

    if all(p in BROKER_TYPES for p in parts):
        label = "freight forwarder" if parts[0] == "freight forwarder" else "freight broker"
        return f"{NON_CARRIER_REASON} ({label})"

    if all(p in OTHER_REGISTRY_TYPES or p in BROKER_TYPES for p in parts):
        if _operates_fleet(record):
            return None
        return f"{NON_CARRIER_REASON} ({record.entity_type.strip()})"  # type: ignore[union-attr]

    return None


def is_carrier_entity(record: CarrierRecord) -> bool:
    """True when the record represents a motor carrier (the default for unknown types)."""
    return rejection_reason(record) is None
