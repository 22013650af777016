from __future__ import annotations

from typing import Any

from .lib.config import Settings
from .lib.engine import run_once as _run_engine
from .lib.logging_bridge import activity as log_activity


def run(**kwargs: Any) -> dict[str, Any]:
    """
    Entry point for the 'carrier_sync' module.

    Accepts kwargs (from scheduler/runner), including:
      action: str = "sync"            # sync | discover | lookup | batch | rescore
      job_type: str = "daily"         # daily | weekly | new-carriers
      limit: int = 50
      strategy: str = "sequential"    # sequential | random
      identifier / identifiers / start_identifier
      sqlite_path: str = "/app/local/state/carriers.db"
      delay_seconds: float = 2.0
      deadline_seconds: float | None
      skip_network: bool = False

      cancel_event: threading.Event   # injected by the runner; set on timeout

    Returns:
      A summary dict (job id, counters, status_code). The runner logs it as meta.
    """
    cancel_event = kwargs.pop("cancel_event", None)

    # Build validated settings from env + kwargs
    settings = Settings.from_env_and_kwargs(kwargs)

    log_activity({
        "component": "carrier_sync.main",
        "op": "start",
        "action": settings.action,
        "job_type": settings.job_type if settings.action == "sync" else None,
        "strategy": settings.strategy if settings.action == "discover" else None,
        "limit": settings.limit,
        "flags": {
            "force_refresh": settings.force_refresh,
            "skip_network": settings.skip_network,
        },
    })

    return _run_engine(settings, cancel_event=cancel_event)
