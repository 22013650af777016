# modules/carrier_sync/lib/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .config import ConfigError, Settings
from .db import CarrierStore
from .engine import run_once
from .models import (
    CarrierRecord,
    Found,
    InvalidIdentifier,
    LookupResult,
    NotFound,
    ParseFailure,
    SiteDown,
    SyncJob,
    canonicalize,
)
from .orchestrator import JobOrchestrator
from .registry_client import RegistryClient

__all__ = [
    "CarrierRecord",
    "CarrierStore",
    "ConfigError",
    "Found",
    "InvalidIdentifier",
    "JobOrchestrator",
    "LookupResult",
    "NotFound",
    "ParseFailure",
    "RegistryClient",
    "Settings",
    "SiteDown",
    "SyncJob",
    "canonicalize",
    "run_once",
]
