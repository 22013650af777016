from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .discovery import all_kinds
from .http_client import DEFAULT_USER_AGENT
from .models import InvalidIdentifier, canonicalize
from .registry_client import DEFAULT_BASE_URL, DEFAULT_DELAY_SECONDS
from .utils import truthy

DEFAULT_SQLITE_PATH = "/app/local/state/carriers.db"
ACTIONS = ("sync", "discover", "lookup", "batch", "rescore")
SYNC_JOB_TYPES = ("daily", "weekly", "new-carriers")
MAX_BATCH_IDENTIFIERS = 100


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings."""


# -----------------------------
# Models
# -----------------------------
@dataclass
class Settings:
    """
    Canonical configuration for a 'carrier_sync' run.

    `action` selects the operation:
      - sync:     refresh stale carriers (job_type daily | weekly | new-carriers)
      - discover: search for unknown identifiers (strategy sequential | random)
      - lookup:   one identifier, served from the store while fresh
      - batch:    explicit identifiers (at most 100)
      - rescore:  recompute data quality scores for every stored carrier
    """

    action: str = "sync"

    # sync
    job_type: str = "daily"
    limit: int = 50
    force_refresh: bool = False

    # discover
    strategy: str = "sequential"
    start_identifier: str | None = None

    # lookup / batch
    identifier: str | None = None
    identifiers: list[str] = field(default_factory=list)

    # Runtime behavior
    sqlite_path: str = DEFAULT_SQLITE_PATH
    base_url: str = DEFAULT_BASE_URL
    delay_seconds: float = DEFAULT_DELAY_SECONDS
    request_timeout: float = 30.0
    progress_every: int = 5
    deadline_seconds: float | None = None
    user_agent: str = DEFAULT_USER_AGENT
    created_by: str | None = None
    skip_network: bool = False

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None) -> Settings:
        """
        Build Settings from kwargs with validation.

        Expected kwargs (all optional):

            action: str = "sync"
            job_type: str = "daily"
            limit: int = 50
            force_refresh: bool = false
            strategy: str = "sequential"
            start_identifier: str
            identifier: str
            identifiers: list[str] | "a,b,c"
            sqlite_path: str  # falls back to $CARRIER_SYNC_DB, then /app/local/state/carriers.db
            base_url: str
            delay_seconds: float = 2.0
            request_timeout: float = 30
            progress_every: int = 5
            deadline_seconds: float
            user_agent: str
            created_by: str
            skip_network: bool = false
        """
        kw = dict(kwargs or {})

        action = str(kw.get("action") or "sync").strip().lower()
        sqlite_path = str(kw.get("sqlite_path") or os.getenv("CARRIER_SYNC_DB") or DEFAULT_SQLITE_PATH)

        try:
            limit = int(kw.get("limit") or 50)
            delay_seconds = float(kw["delay_seconds"]) if kw.get("delay_seconds") is not None else DEFAULT_DELAY_SECONDS
            request_timeout = float(kw.get("request_timeout") or 30.0)
            progress_every = int(kw.get("progress_every") or 5)
            deadline = kw.get("deadline_seconds")
            deadline_seconds = float(deadline) if deadline not in (None, "") else None
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        identifier = kw.get("identifier")
        start_identifier = kw.get("start_identifier")

        settings = cls(
            action=action,
            job_type=str(kw.get("job_type") or "daily").strip().lower(),
            limit=limit,
            force_refresh=truthy(kw.get("force_refresh")),
            strategy=str(kw.get("strategy") or "sequential").strip().lower(),
            start_identifier=_identifier_or_none(start_identifier, "start_identifier"),
            identifier=_identifier_or_none(identifier, "identifier"),
            identifiers=_parse_identifiers(kw.get("identifiers")),
            sqlite_path=sqlite_path,
            base_url=str(kw.get("base_url") or DEFAULT_BASE_URL),
            delay_seconds=delay_seconds,
            request_timeout=request_timeout,
            progress_every=progress_every,
            deadline_seconds=deadline_seconds,
            user_agent=str(kw.get("user_agent") or DEFAULT_USER_AGENT),
            created_by=(str(kw["created_by"]).strip() or None) if kw.get("created_by") else None,
            skip_network=truthy(kw.get("skip_network")),
        )
        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _identifier_or_none(value: Any, name: str) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        return canonicalize(value)
    except InvalidIdentifier as e:
        raise ConfigError(f"'{name}': {e}") from e


def _parse_identifiers(value: Any) -> list[str]:
    """Accepts a list or a comma/whitespace separated string."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        items = [p for p in value.replace(",", " ").split() if p]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ConfigError("'identifiers' must be a list or a comma separated string.")
    out: list[str] = []
    for i, item in enumerate(items):
        try:
            out.append(canonicalize(item))
        except InvalidIdentifier as e:
            raise ConfigError(f"identifiers[{i}]: {e}") from e
    return out


def _validate_settings(s: Settings) -> None:
    if s.action not in ACTIONS:
        raise ConfigError(f"'action' must be one of {list(ACTIONS)} (got {s.action!r}).")
    if not s.sqlite_path.strip():
        raise ConfigError("'sqlite_path' cannot be empty.")
    if s.limit <= 0:
        raise ConfigError("'limit' must be >= 1.")
    if s.delay_seconds < 0:
        raise ConfigError("'delay_seconds' must be >= 0.")
    if s.request_timeout <= 0:
        raise ConfigError("'request_timeout' must be > 0.")
    if s.progress_every <= 0:
        raise ConfigError("'progress_every' must be >= 1.")
    if s.deadline_seconds is not None and s.deadline_seconds <= 0:
        raise ConfigError("'deadline_seconds' must be > 0 when given.")
    if not s.base_url.startswith(("http://", "https://")):
        raise ConfigError("'base_url' must be an http(s) URL.")

    if s.action == "sync" and s.job_type not in SYNC_JOB_TYPES:
        raise ConfigError(f"'job_type' must be one of {list(SYNC_JOB_TYPES)} (got {s.job_type!r}).")
    if s.action == "discover" and s.strategy not in all_kinds():
        raise ConfigError(f"'strategy' must be one of {all_kinds()} (got {s.strategy!r}).")
    if s.action == "lookup" and not s.identifier:
        raise ConfigError("action 'lookup' requires 'identifier'.")
    if s.action == "batch":
        if not s.identifiers:
            raise ConfigError("action 'batch' requires 'identifiers'.")
        if len(s.identifiers) > MAX_BATCH_IDENTIFIERS:
            raise ConfigError(f"action 'batch' accepts at most {MAX_BATCH_IDENTIFIERS} identifiers.")
