"""
Engine for one 'carrier_sync' run: wires settings to the registry client, the
store and the orchestrator, and dispatches the requested action.

Features:
  - One action per run (sync, discover, lookup, batch, rescore)
  - `skip_network` plans the work and reports it without touching the registry
  - Cooperative cancellation via the runner's `cancel_event` and `deadline_seconds`
  - Dependency injection for testability (`client`, `store`)
"""

from __future__ import annotations

import threading
import time
from typing import Any

from . import logging_bridge
from .cancellation import CancelToken
from .config import ConfigError, Settings
from .db import CarrierStore
from .orchestrator import SYNC_JOB_TYPES, JobOrchestrator
from .registry_client import RegistryClient


def build_client(settings: Settings) -> RegistryClient:
    return RegistryClient(
        base_url=settings.base_url,
        delay_seconds=settings.delay_seconds,
        timeout=settings.request_timeout,
        user_agent=settings.user_agent,
    )


def run_once(
    settings: Settings,
    *,
    client: RegistryClient | None = None,
    store: CarrierStore | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """
    Run the configured action once and return its summary dict.

    Raises:
        RegistryUnavailable is never raised here; outages are reported in the
        summary (`status_code` 503). Unexpected errors propagate to the runner.
    """
    start_ns = time.perf_counter_ns()
    store = store or CarrierStore(settings.sqlite_path)
    cancel = CancelToken(deadline_seconds=settings.deadline_seconds, event=cancel_event)

    if settings.skip_network and settings.action != "rescore":
        summary = _plan_only(settings, store)
    else:
        owns_client = client is None
        client = client or build_client(settings)
        orchestrator = JobOrchestrator(
            client,
            store,
            delay_seconds=settings.delay_seconds,
            progress_every=settings.progress_every,
            created_by=settings.created_by,
        )
        try:
            summary = _dispatch(settings, orchestrator, cancel)
        finally:
            if owns_client:
                client.close()

    summary.setdefault("action", settings.action)
    logging_bridge.activity({
        "component": "carrier_sync.engine",
        "op": "summary",
        "action": settings.action,
        "skip_network": settings.skip_network,
        "status": summary.get("status"),
        "status_code": summary.get("status_code"),
        "total_us": int((time.perf_counter_ns() - start_ns) // 1000),
    })
    return summary


# =============================================================================
# DISPATCH
# =============================================================================
def _dispatch(settings: Settings, orchestrator: JobOrchestrator, cancel: CancelToken) -> dict[str, Any]:
    if settings.action == "sync":
        return orchestrator.run_sync(settings.job_type, settings.limit, force=settings.force_refresh, cancel=cancel)

    if settings.action == "discover":
        return orchestrator.run_discovery(
            settings.strategy,
            settings.limit,
            start_identifier=settings.start_identifier,
            cancel=cancel,
        )

    if settings.action == "batch":
        outcome = orchestrator.run_batch(
            settings.identifiers,
            job_type="batch",
            metadata={"requested": len(settings.identifiers)},
            cancel=cancel,
        )
        return outcome.to_dict()

    if settings.action == "lookup":
        if settings.identifier is None:
            raise ConfigError("'lookup' requires 'identifier'.")
        return orchestrator.lookup_one(settings.identifier, force=settings.force_refresh, cancel=cancel).to_dict()

    if settings.action == "rescore":
        return {"status": "completed", "status_code": 200, **orchestrator.rescore_all()}

    raise ValueError(f"unknown action {settings.action!r}")


def _plan_only(settings: Settings, store: CarrierStore) -> dict[str, Any]:
    """What a networked run would do, without any registry request."""
    planned: list[str] = []
    if settings.action == "sync":
        multiplier = SYNC_JOB_TYPES[settings.job_type]
        if multiplier is None:
            planned = store.list_unverified_manual(settings.limit)
        else:
            planned = store.list_stale_carriers(settings.limit * multiplier, force=settings.force_refresh)
    elif settings.action == "batch":
        planned = list(settings.identifiers)
    elif settings.action == "lookup" and settings.identifier:
        planned = [settings.identifier]

    logging_bridge.activity({
        "component": "carrier_sync.engine",
        "op": "skipped_network",
        "action": settings.action,
        "planned": len(planned),
    })
    return {
        "status": "skipped",
        "status_code": 200,
        "skipped": True,
        "planned": planned,
        "message": "skip_network set; no registry requests made",
    }
