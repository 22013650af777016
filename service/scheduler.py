# service/scheduler.py
"""
APScheduler host for the carrier sync jobs.

Each configured job becomes one APScheduler job whose body is
`runner.run_module_once`. Jobs never overlap with themselves (registry
pacing assumes one session per job) and a missed run is coalesced, not
replayed.
"""
from __future__ import annotations

import logging
import os
import threading
import time as _time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from datetime import tzinfo as _dt_tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config_schema, runner
from .logging_utils import write_activity_log, write_error_log

LOG = logging.getLogger(__name__)

_JOB_DEFAULTS = {"coalesce": True, "max_instances": 1}
_DEFAULT_WORKERS = 4


@dataclass(frozen=True, slots=True)
class JobSpec:
    id: str
    trigger: Any
    module: str
    kwargs: dict[str, Any]
    timeout_sec: int | None
    max_instances: int
    coalesce: bool
    misfire_grace_time: int | None
    summary: str | None

    @property
    def label(self) -> str:
        """`sync/daily`, `discover/sequential`, `rescore`... for log lines."""
        action = str(self.kwargs.get("action") or "sync")
        detail = self.kwargs.get("job_type") if action == "sync" else self.kwargs.get("strategy")
        return f"{action}/{detail}" if detail else action


class SchedulerController:
    """Lifecycle handle the CLI holds while `serve` is running."""

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self._scheduler = scheduler
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        # In-flight syncs are not awaited; their runner timeout cancels them.
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            self._scheduler.shutdown(wait=False)
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        return self._stopped_evt.wait(timeout=timeout)

    def get_job_ids(self) -> Iterable[str]:
        return (job.id for job in self._scheduler.get_jobs())


def start(config_path: str | None = None) -> SchedulerController:
    """
    Load the config, register every valid job and start a BackgroundScheduler.
    A job whose config is broken is logged and skipped; the others still run.
    """
    cfg = config_schema.load_config(config_path)
    scheduler = BackgroundScheduler(
        timezone=_resolve_timezone(cfg),
        job_defaults=dict(_JOB_DEFAULTS),
        executors={"default": ThreadPoolExecutor(_int_or(cfg.get("executor_workers"), _DEFAULT_WORKERS))},
        jobstores={"default": MemoryJobStore()},
    )

    for raw in cfg.get("jobs", []):
        try:
            spec = make_job_spec(raw, default_job_defaults=_JOB_DEFAULTS)
        except ValueError:
            LOG.exception("Skipping job due to config error: %r", raw)
            continue
        _add_job(scheduler, spec)

    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler)


def make_job_spec(raw: dict[str, Any], default_job_defaults: dict[str, Any] | None = None, tz: Any = None) -> JobSpec:
    """Config job dict -> JobSpec. The trigger may be nested under "trigger" or sit at the top level."""
    defaults = default_job_defaults or _JOB_DEFAULTS
    module = raw.get("module")
    if not isinstance(module, str) or not module.strip():
        raise ValueError("Missing required key: module")

    trig_def = raw.get("trigger")
    if trig_def is None:
        trig_def = {k: raw[k] for k in config_schema.TRIGGER_KINDS if k in raw}

    return JobSpec(
        id=str(raw.get("id") or raw.get("name") or module),
        trigger=_build_trigger(trig_def, tz),
        module=module,
        kwargs=dict(raw.get("kwargs") or {}),
        timeout_sec=_int_or(raw.get("timeout_sec"), None),
        max_instances=_int_or(raw.get("max_instances"), defaults.get("max_instances", 1)) or 1,
        coalesce=bool(raw.get("coalesce", defaults.get("coalesce", True))),
        misfire_grace_time=_int_or(raw.get("misfire_grace_time"), None),
        summary=raw.get("summary") or raw.get("description"),
    )


def preview_trigger(trigger, tz, count: int = 6, start: datetime | None = None) -> list[datetime]:
    """Next `count` fire times of `trigger` starting at `start` (default: now)."""
    now = start or datetime.now(tz=tz)
    prev = now
    times: list[datetime] = []
    while len(times) < count:
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        times.append(nxt)
        prev, now = nxt, nxt + timedelta(microseconds=1)
    return times


# ---- Triggers ---------------------------------------------------------------


def _build_trigger(trig_def: dict[str, Any], tz: Any) -> Any:
    """
    Build an APScheduler trigger from a dict holding exactly one of
    interval | cron | date | daily_time. The shapes are the ones
    config_schema accepts; a block's own `timezone` beats `tz`.
    """
    if not isinstance(trig_def, dict):
        raise ValueError("trigger must be a dict")
    kind, value = config_schema.trigger_of(trig_def, "<trigger>")
    config_schema.TRIGGER_CHECKS[kind](value, "<trigger>")
    return _BUILDERS[kind](value, _as_tz(tz))


def _as_tz(z: Any) -> _dt_tzinfo | None:
    if not z:
        return None
    if isinstance(z, _dt_tzinfo):
        return z
    return ZoneInfo(str(z))


def _block_tz(value: Any, default_tz: _dt_tzinfo | None) -> _dt_tzinfo | None:
    return (_as_tz(value.get("timezone")) if isinstance(value, dict) else None) or default_tz


def _interval(value: dict[str, Any], default_tz: _dt_tzinfo | None) -> IntervalTrigger:
    kwargs: dict[str, Any] = {k: int(v) for k, v in value.items() if k in ("weeks", "days", "hours", "minutes", "seconds") and int(v)}
    if int(value.get("jitter") or 0):
        kwargs["jitter"] = int(value["jitter"])
    for bound in ("start_date", "end_date"):
        if bound in value:
            kwargs[bound] = value[bound]
    return IntervalTrigger(timezone=_block_tz(value, default_tz), **kwargs)


def _cron(value: Any, default_tz: _dt_tzinfo | None) -> CronTrigger:
    if isinstance(value, str):
        return CronTrigger.from_crontab(value.strip(), timezone=default_tz)
    fields = {k: value.get(k) for k in ("day", "day_of_week", "month", "start_date", "end_date", "jitter")}
    # An unset second/minute/hour means "at the top", not "every".
    return CronTrigger(
        second=value.get("second", 0),
        minute=value.get("minute", 0),
        hour=value.get("hour", 0),
        timezone=_block_tz(value, default_tz),
        **fields,
    )


def _date(value: Any, default_tz: _dt_tzinfo | None) -> DateTrigger:
    run_at = value.get("run_at") if isinstance(value, dict) else value
    tzinfo = _block_tz(value, default_tz)
    if isinstance(run_at, datetime):
        dt = run_at
    elif isinstance(run_at, (int, float)):
        dt = datetime.fromtimestamp(run_at, tz=tzinfo or timezone.utc)
    else:
        text = str(run_at).strip()
        try:
            dt = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
        except ValueError as e:
            raise ValueError(f"Invalid date.run_at: {run_at!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tzinfo)
    return DateTrigger(run_date=dt, timezone=dt.tzinfo or tzinfo)


def _daily_time(value: Any, default_tz: _dt_tzinfo | None) -> Any:
    """One CronTrigger per distinct time, OR-ed together; never an hour x minute grid."""
    block = value if isinstance(value, dict) else {"time": value}
    times = block["time"] if isinstance(block["time"], list) else [block["time"]]
    hms = sorted({tuple(int(p) for p in (str(t).strip().split(":") + ["0"])[:3]) for t in times})
    tzinfo = _block_tz(block, default_tz)
    triggers = [
        CronTrigger(hour=h, minute=m, second=s, day_of_week=block.get("day_of_week"), timezone=tzinfo)
        for h, m, s in hms
    ]
    return triggers[0] if len(triggers) == 1 else OrTrigger(triggers)


_BUILDERS = {"interval": _interval, "cron": _cron, "date": _date, "daily_time": _daily_time}


# ---- Job wrapper ------------------------------------------------------------


def _resolve_timezone(cfg: dict[str, Any]):
    """pytz zone for the scheduler itself; APScheduler 3.x still prefers pytz there."""
    tz_name = cfg.get("timezone") or os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Falling back to UTC timezone (invalid or missing tz '%s')", tz_name)
        return pytz.UTC


def _add_job(scheduler: BackgroundScheduler, spec: JobSpec) -> None:
    def _job_wrapper():
        started = _time.monotonic()
        LOG.info("Job[%s] starting %s", spec.id, spec.label)
        try:
            meta, run_id = runner.run_module_once(
                spec.module,
                kwargs=dict(spec.kwargs),
                trigger_type="scheduled",
                job_context={"job_id": spec.id, "module": spec.module, "now_iso": datetime.now(timezone.utc).isoformat()},
                timeout_sec=spec.timeout_sec,
            )
        except Exception as e:
            LOG.exception("Job[%s] raised an exception.", spec.id)
            write_error_log({"source": "scheduler", "event": "job_error", "job_id": spec.id, "module": spec.module, "error": repr(e)})
            _record_run(spec, "error", _time.monotonic() - started)
            return

        meta = meta or {}
        duration = _time.monotonic() - started
        LOG.info(
            "Job[%s] finished in %.1fs (run_id=%s status=%s processed=%s ok=%s failed=%s)",
            spec.id, duration, run_id, meta.get("status"), meta.get("processed"), meta.get("successful"), meta.get("failed"),
        )
        if meta.get("site_down"):
            write_error_log({
                "source": "scheduler",
                "event": "registry_down",
                "job_id": spec.id,
                "sync_job_id": meta.get("job_id"),
                "reason": meta.get("site_down"),
            })
        _record_run(spec, "ok", duration, meta)

    if os.getenv("SCHEDULER_PREVIEW") == "1":
        upcoming = preview_trigger(spec.trigger, scheduler.timezone, count=int(os.getenv("SCHEDULER_PREVIEW_COUNT", "6")))
        LOG.info("PREVIEW[%s]: %s", spec.id, ", ".join(t.isoformat() for t in upcoming) or "(none)")

    scheduler.add_job(
        func=_job_wrapper,
        trigger=spec.trigger,
        id=spec.id,
        max_instances=spec.max_instances,
        coalesce=spec.coalesce,
        misfire_grace_time=spec.misfire_grace_time,
        replace_existing=True,
    )
    job = scheduler.get_job(spec.id)
    nrt = getattr(job, "next_run_time", None) if job else None
    LOG.info("Registered job[%s] %s (%r) next_run_time=%s", spec.id, spec.label, spec.summary, nrt.isoformat() if nrt else None)


def _record_run(spec: JobSpec, status: str, duration_s: float, meta: dict[str, Any] | None = None) -> None:
    meta = meta or {}
    try:
        write_activity_log({
            "source": "scheduler",
            "event": "job_run",
            "fields": {
                "job_id": spec.id,
                "label": spec.label,
                "status": status,
                "duration_ms": int(duration_s * 1000),
                "summary": spec.summary,
                "sync_job_id": meta.get("job_id"),
                "sync_status": meta.get("status"),
                "status_code": meta.get("status_code"),
                "processed": meta.get("processed"),
                "successful": meta.get("successful"),
                "failed": meta.get("failed"),
            },
        })
    except OSError:
        LOG.debug("write_activity_log failed for job[%s]", spec.id, exc_info=True)


def _int_or(v: Any, default: int | None) -> int | None:
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default
