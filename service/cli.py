# service/cli.py
"""
User-facing command-line entrypoints for the container.

Subcommands
-----------
serve
    - Fails sync jobs left pending/running by a previous process
    - Starts the APScheduler service loop via service.scheduler.start()
    - Registers signal handlers for graceful shutdown

run MODULE [--kwargs k=v ...] [--print-meta]
    - Executes a module ad-hoc via runner.run_module_once(...)
    - Displays a concise success/failure summary

lookup DOT [--force] [--no-persist]
    - One carrier lookup through the sync engine (served from the store while fresh)

jobs [--limit N]
    - Prints the most recent sync jobs from the carrier database

list-jobs
    - Loads config via config_schema.load_config() and prints configured jobs

validate-config
    - Loads/validates config (including carrier_sync kwargs) and returns nonzero on error
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable
from datetime import datetime
from types import SimpleNamespace
from typing import Any

from service import config_schema as _config_schema
from service import logging_utils as L
from service import runner as _runner
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")

CARRIER_SYNC_MODULE = "modules.carrier_sync"
ABANDONED_JOB_HOURS = float(os.getenv("CARRIER_SYNC_ABANDONED_HOURS", "6"))


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    """Initialize a reasonable logging setup if none exists yet."""
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _parse_kv_pairs(pairs: Iterable[str]) -> dict[str, Any]:
    """
    Parse key=value strings into a dict.
    - Values that look like JSON (true/false/null/number/object/array) are parsed.
    - Identifiers with leading zeros stay strings.
    - Otherwise keep as raw strings.
    """
    out: dict[str, Any] = {}
    for raw in pairs:
        if "=" not in raw:
            raise argparse.ArgumentTypeError(f"--kwargs item must be key=value (got {raw!r})")
        k, v = raw.split("=", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            raise argparse.ArgumentTypeError(f"Invalid key in --kwargs item {raw!r}")
        if len(v) > 1 and v.startswith("0") and v.isdigit():
            out[k] = v
            continue
        try:
            out[k] = json.loads(v)
        except json.JSONDecodeError:
            out[k] = v
    return out


def _print_table(rows: Iterable[tuple[str, ...]], headers: tuple[str, ...] = ("ID", "DETAILS")) -> None:
    """Very simple fixed-width table printer."""
    rows = [tuple(str(c) for c in r) for r in rows]
    widths = [max(len(headers[i]), *(len(r[i]) for r in rows)) if rows else len(headers[i]) for i in range(len(headers))]
    sep = "+" + "+".join("-" * (w + 2) for w in widths) + "+"
    print(sep)
    print("| " + " | ".join(h.ljust(w) for h, w in zip(headers, widths)) + " |")
    print(sep)
    for r in rows:
        print("| " + " | ".join(c.ljust(w) for c, w in zip(r, widths)) + " |")
    print(sep)


def _describe_trigger(job: dict[str, Any]) -> str:
    container = job.get("trigger") if isinstance(job.get("trigger"), dict) else job
    for kind in _config_schema.TRIGGER_KINDS:
        if container.get(kind) is not None:
            return f"{kind}={json.dumps(container[kind], default=str)}"
    return "-"


def _now_iso():
    return datetime.now().astimezone().isoformat()


def _db_path(args: argparse.Namespace) -> str:
    from modules.carrier_sync.lib.config import DEFAULT_SQLITE_PATH

    return args.db or os.getenv("CARRIER_SYNC_DB") or DEFAULT_SQLITE_PATH


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
        _config_schema.validate(cfg)
        _validate_module_kwargs(cfg)
        print("OK: configuration is valid.")
        return 0
    except KeyboardInterrupt:
        return 130
    except ValueError as e:
        LOG.error("Configuration validation failed: %s", e)
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1


def _validate_module_kwargs(cfg: dict[str, Any]) -> None:
    """Build carrier_sync Settings for each of its jobs so bad kwargs fail here, not at 3am."""
    from modules.carrier_sync.lib.config import ConfigError, Settings

    for job in cfg.get("jobs", []):
        if job.get("module") != CARRIER_SYNC_MODULE:
            continue
        kw = _runner._normalize_kwargs_types(job.get("kwargs") or {})
        try:
            Settings.from_env_and_kwargs(kw)
        except ConfigError as e:
            raise _config_schema.ConfigError(f"Job '{job.get('id')}': {e}") from e


def cmd_list_jobs(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
    except ValueError as e:
        print(f"ERROR: failed to list jobs: {e}", file=sys.stderr)
        return 1
    rows = [
        (str(j.get("id")), str(j.get("module")), _describe_trigger(j), str(j.get("summary") or ""))
        for j in cfg.get("jobs", [])
    ]
    if not rows:
        print("No jobs found in config.")
        return 0
    _print_table(rows, headers=("JOB", "MODULE", "TRIGGER", "SUMMARY"))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    start_time = time.monotonic()
    kwargs = _parse_kv_pairs(args.kwargs or [])
    LOG.debug("Run module %s with kwargs=%s", args.module, kwargs)

    try:
        meta, run_id = _runner.run_module_once(
            module=args.module,
            kwargs=kwargs,
            trigger_type="adhoc",
            timeout_sec=args.timeout,
        )
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {e}", file=sys.stderr)
        L.write_error_log({
            "ts": _now_iso(),
            "where": "cli.run",
            "module": args.module,
            "kwargs": kwargs,
            "error": repr(e),
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        })
        return 1

    L.write_activity_log({
        "ts": _now_iso(),
        "event": "cli_run",
        "run_id": run_id,
        "module": args.module,
        "trigger_type": "adhoc",
        "kwargs": kwargs,
        "duration_ms": int((time.monotonic() - start_time) * 1000),
    })

    meta = meta or {}
    if args.print_meta:
        print(json.dumps(meta, indent=2, default=str))
    status_code = meta.get("status_code")
    if isinstance(status_code, int) and status_code >= 500:
        print(f"FAILURE: {meta.get('message') or meta.get('site_down') or 'registry unavailable'}", file=sys.stderr)
        return 1
    print(f"DONE: Module run completed (run_id={run_id}).")
    return 0


def cmd_lookup(args: argparse.Namespace) -> int:
    from modules.carrier_sync.lib import CarrierStore, InvalidIdentifier, JobOrchestrator, RegistryClient

    store = CarrierStore(_db_path(args))
    client = RegistryClient()
    try:
        outcome = JobOrchestrator(client, store, created_by="cli").lookup_one(
            args.dot, force=args.force, persist=not args.no_persist
        )
    except InvalidIdentifier as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()

    print(json.dumps(outcome.to_dict(), indent=2, default=str))
    return 0 if outcome.status in {"found", "cached"} else 1


def cmd_jobs(args: argparse.Namespace) -> int:
    from modules.carrier_sync.lib import CarrierStore

    jobs = CarrierStore(_db_path(args)).recent_jobs(limit=args.limit)
    if not jobs:
        print("No sync jobs recorded.")
        return 0
    _print_table(
        [
            (
                j.id[:12],
                j.job_type,
                j.status,
                f"{j.carriers_updated}/{j.carriers_processed} ok, {j.carriers_failed} failed",
                j.created_at or "",
                j.completed_at or "",
            )
            for j in jobs
        ],
        headers=("JOB", "TYPE", "STATUS", "COUNTS", "CREATED", "COMPLETED"),
    )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run the scheduler loop in a daemon-like fashion until a termination
    signal is received.
    """
    L.write_activity_log({"ts": _now_iso(), "event": "serve_start"})

    stop_event = threading.Event()
    running = SimpleNamespace(sched=None)

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()
        _safe_stop("scheduler", running.sched)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        _sweep_abandoned_jobs(_db_path(args))
        running.sched = _scheduler.start(config_path=args.config)
        LOG.info("Scheduler started: %r", running.sched)

        # Main wait loop (respond quickly to signals)
        while not stop_event.is_set():
            time.sleep(0.3)

        _safe_stop("scheduler", running.sched)
        L.write_activity_log({"ts": _now_iso(), "event": "serve_stop"})
        return 0

    except KeyboardInterrupt:
        _graceful_shutdown("KeyboardInterrupt")
        return 130
    except Exception as e:
        LOG.exception("Fatal error in serve: %s", e)
        _graceful_shutdown("UnhandledException")
        return 1


def _sweep_abandoned_jobs(sqlite_path: str) -> None:
    from modules.carrier_sync.lib import CarrierStore

    swept = CarrierStore(sqlite_path).fail_abandoned_jobs(max_age_hours=ABANDONED_JOB_HOURS)
    if swept:
        LOG.warning("Failed %d abandoned sync job(s): %s", len(swept), ", ".join(swept))
        L.write_activity_log({"ts": _now_iso(), "event": "abandoned_jobs_failed", "job_ids": swept})


def _safe_stop(name: str, handle: Any) -> None:
    """Best-effort stop & join for a controller exposing stop()/join()."""
    if handle is None:
        return
    try:
        handle.stop()
        handle.join(timeout=10.0)
    except Exception:  # pragma: no cover
        LOG.exception("Error stopping %s", name)


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="carrier-sync",
        description="Carrier registry sync service tools",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or an empty config).",
    )
    p.add_argument(
        "--db",
        help="Carrier SQLite path (fallbacks to CARRIER_SYNC_DB env or /app/local/state/carriers.db).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the main scheduler loop.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("run", help="Execute a module ad-hoc via runner.run_module_once().")
    sp.add_argument("module", help="Module path to run (e.g., modules.carrier_sync).")
    sp.add_argument(
        "--kwargs",
        metavar="k=v",
        nargs="*",
        help="Extra keyword arguments for the module (JSON values supported).",
    )
    sp.add_argument("--timeout", type=int, default=None, help="Cancel the run after this many seconds.")
    sp.add_argument("--print-meta", action="store_true", help="Print the run summary as JSON.")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("lookup", help="Look up one carrier by USDOT number.")
    sp.add_argument("dot", help="USDOT number (non-digits are ignored).")
    sp.add_argument("--force", action="store_true", help="Query the registry even if the stored record is fresh.")
    sp.add_argument("--no-persist", action="store_true", help="Do not write the result to the database.")
    sp.set_defaults(func=cmd_lookup)

    sp = sub.add_parser("jobs", help="Print recent sync jobs from the carrier database.")
    sp.add_argument("--limit", type=int, default=20)
    sp.set_defaults(func=cmd_jobs)

    sp = sub.add_parser("list-jobs", help="Print all jobs from config.")
    sp.set_defaults(func=cmd_list_jobs)

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
