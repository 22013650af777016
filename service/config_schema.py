# service/config_schema.py
"""
Service configuration: which sync jobs run, when, and with what kwargs.

A config file is JSON or YAML:

    timezone: America/Chicago
    executor_workers: 2
    jobs:
      - id: carrier-sync-daily
        module: modules.carrier_sync
        trigger: {daily_time: {time: "02:00"}}
        kwargs: {action: sync, job_type: daily, limit: 50}
        timeout_sec: 3600

`load_config` reads and normalizes; `validate` raises ConfigError on the first
problem it finds. Module kwargs are checked separately by the module itself.
"""
from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from datetime import datetime
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the config is invalid."""


TRIGGER_KINDS = ("cron", "interval", "date", "daily_time")
_INTERVAL_UNITS = ("weeks", "days", "hours", "minutes", "seconds")
_INTERVAL_EXTRAS = ("jitter", "timezone", "start_date", "end_date")
_CRON_FIELDS = frozenset({"second", "minute", "hour", "day", "day_of_week", "month", "timezone", "start_date", "end_date", "jitter"})
_HHMM_RE =re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")

_BOOLEAN_WORDS = {"1": True, "true": True, "yes": True, "on": True, "0": False, "false": False, "no": False, "off": False}

# field -> minimum accepted value
_INT_FIELDS = {"timeout_sec": 0, "max_instances": 1, "misfire_grace_time": 0}


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Read the config from `path`, else $CONFIG_PATH, else start from an empty
    job list. Fills in `timezone` (from $TZ, then UTC) and a stable `id` per job.
    """
    source = path or os.environ.get("CONFIG_PATH")
    if source:
        cfg = _read_file(source)
    else:
        logger.info("CONFIG_PATH not provided; using empty default config.")
        cfg = {"jobs": []}
    _normalize(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")
    jobs = cfg.get("jobs")
    if jobs is None:
        raise ConfigError("Missing required top-level 'jobs' list.")
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")
    if cfg.get("timezone") is not None and not isinstance(cfg["timezone"], str):
        raise ConfigError("'timezone' must be a string if provided.")
    if "executor_workers" in cfg:
        _as_int(cfg["executor_workers"], "executor_workers", "<top-level>", minimum=1)

    seen: set[str] = set()
    for idx, job in enumerate(jobs):
        job_id = _validate_job(job, idx)
        if job_id in seen:
            raise ConfigError(f"Duplicate job id '{job_id}'.")
        seen.add(job_id)


def _validate_job(job: Any, idx: int) -> str:
    if not isinstance(job, dict):
        raise ConfigError(f"Job at index {idx} must be an object/dict.")
    module = job.get("module")
    if not isinstance(module, str) or not module.strip():
        raise ConfigError(f"Job {idx}: 'module' is required and must be a non-empty string.")
    job_id = job_id_for(job, idx)

    kind, value = trigger_of(job, job_id)
    TRIGGER_CHECKS[kind](value, job_id)

    if "coalesce" in job:
        _as_bool(job["coalesce"], "coalesce", job_id)
    for name, minimum in _INT_FIELDS.items():
        if name in job:
            _as_int(job[name], name, job_id, minimum=minimum)
    if "kwargs" in job and not isinstance(job["kwargs"], dict):
        raise ConfigError(f"Job '{job_id}': 'kwargs' must be a dict if provided.")
    for name in ("summary", "description"):
        if name in job and not isinstance(job[name], str):
            raise ConfigError(f"Job '{job_id}': '{name}' must be a string if provided.")
    return job_id


def job_id_for(job: dict[str, Any], idx: int) -> str:
    """First non-empty of id, name, module; `job_<idx>` otherwise."""
    for key in ("id", "name", "module"):
        v = job.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return f"job_{idx}"


# ---- Triggers ----------------------------------------------------------------


def trigger_of(job: dict[str, Any], job_id: str) -> tuple[str, Any]:
    """The one trigger of a job, nested under "trigger" or at the top level (never both)."""
    container = job
    if "trigger" in job:
        container = job["trigger"]
        if not isinstance(container, dict):
            raise ConfigError(f"Job '{job_id}': 'trigger' must be an object when present.")
        clash = [k for k in TRIGGER_KINDS if k in job]
        if clash:
            raise ConfigError(f"Job '{job_id}': do not mix top-level triggers {clash} with nested 'trigger'.")

    present = [k for k in TRIGGER_KINDS if container.get(k) is not None]
    if len(present) != 1:
        raise ConfigError(f"Job '{job_id}': exactly one trigger required among {', '.join(TRIGGER_KINDS)}.")
    return present[0], container[present[0]]


def _check_interval(value: Any, job_id: str) -> None:
    if not isinstance(value, dict):
        raise ConfigError(f"Job '{job_id}': interval must be an object of time kwargs.")
    unknown = set(value) - set(_INTERVAL_UNITS) - set(_INTERVAL_EXTRAS)
    if unknown:
        raise ConfigError(f"Job '{job_id}': interval has unknown field(s): {sorted(unknown)}")
    total = sum(_as_int(value[u], f"interval.{u}", job_id, minimum=0) for u in _INTERVAL_UNITS if u in value)
    if total == 0:
        raise ConfigError(f"Job '{job_id}': interval must be greater than 0.")


def _check_cron(value: Any, job_id: str) -> None:
    if isinstance(value, str):
        if len(value.split()) not in (5, 6):
            raise ConfigError(f"Job '{job_id}': cron string must have 5 or 6 fields.")
    elif not isinstance(value, dict):
        raise ConfigError(f"Job '{job_id}': cron must be a crontab string or an object.")
    elif set(value) - _CRON_FIELDS:
        raise ConfigError(f"Job '{job_id}': cron has unknown field(s): {sorted(set(value) - _CRON_FIELDS)}")


def _check_date(value: Any, job_id: str) -> None:
    run_at = value.get("run_at") if isinstance(value, dict) else value
    # YAML turns unquoted timestamps into datetimes.
    if isinstance(run_at, datetime):
        return
    if isinstance(run_at, bool) or not isinstance(run_at, (str, int, float)) or (isinstance(run_at, str) and not run_at.strip()):
        raise ConfigError(f"Job '{job_id}': date must be an ISO-8601 string or epoch seconds.")


def _check_daily_time(value: Any, job_id: str) -> None:
    times = value.get("time") if isinstance(value, dict) else value
    if isinstance(times, str):
        times = [times]
    if not isinstance(times, list) or not times:
        raise ConfigError(f"Job '{job_id}': daily_time needs 'time' as 'HH:MM' or a list of them.")
    for t in times:
        m = _HHMM_RE.match(str(t).strip())
        if not m:
            raise ConfigError(f"Job '{job_id}': daily_time must match HH:MM[:SS] (24h), got {t!r}.")
        hour, minute, second = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
        if hour > 23 or minute > 59 or second > 59:
            raise ConfigError(f"Job '{job_id}': daily_time out of range (00:00..23:59), got {t!r}.")


TRIGGER_CHECKS: dict[str, Callable[[Any, str], None]] = {
    "interval": _check_interval,
    "cron": _check_cron,
    "date": _check_date,
    "daily_time": _check_daily_time,
}


# ---- Normalization -------------------------------------------------------------


def _normalize(cfg: dict[str, Any]) -> None:
    jobs = cfg.get("jobs")
    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ", "UTC")

    normalized: list[dict[str, Any]] = []
    for idx, job in enumerate(jobs if isinstance(jobs, list) else []):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")
        out = dict(job)
        out["id"] = job_id_for(out, idx)
        if "coalesce" in out:
            out["coalesce"] = _as_bool(out["coalesce"], "coalesce", out["id"])
        for name, minimum in _INT_FIELDS.items():
            if name in out:
                out[name] = _as_int(out[name], name, out["id"], minimum=minimum)
        normalized.append(out)
    cfg["jobs"] = normalized


def _as_bool(value: Any, name: str, job_id: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _BOOLEAN_WORDS:
        return _BOOLEAN_WORDS[value.strip().lower()]
    raise ConfigError(f"Job '{job_id}': '{name}' must be a boolean (or boolean-like string).")


def _as_int(value: Any, name: str, job_id: str, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Job '{job_id}': '{name}' must be an integer.")
    try:
        n = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Job '{job_id}': '{name}' must be an integer.") from err
    if n < minimum:
        raise ConfigError(f"Job '{job_id}': '{name}' must be >= {minimum} (got {n}).")
    return n


def _read_file(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if path.lower().endswith((".yml", ".yaml")):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level config in {path} must be a mapping/object.")
    return data
