# service/runner.py
"""
One-shot execution of a sync module's `run(**kwargs)`.

The scheduler and the CLI both come through `run_module_once`, which:
  - resolves config-style kwargs (string coercion, `*_env` indirection),
  - runs the module in a worker thread bounded by `timeout_sec`,
  - hands the module a `cancel_event` it can poll so a timed-out sync job
    is finalized in the store instead of left "running",
  - writes one activity record per run summarizing the job outcome.
"""
from __future__ import annotations

import importlib
import inspect
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from service import logging_utils

log = logging.getLogger(__name__)

# Seconds a timed-out module gets to notice cancel_event and close its job.
CANCEL_GRACE_SEC = float(os.getenv("RUNNER_CANCEL_GRACE_SEC", "10"))

_TRUE_WORDS = frozenset({"true", "t", "yes", "y", "on"})
_FALSE_WORDS = frozenset({"false", "f", "no", "n", "off"})

# Outcome keys lifted from a module's result into the activity record.
_SUMMARY_KEYS = ("action", "job_id", "status", "status_code", "processed", "successful", "failed", "site_down")


def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _coerce_scalar(text: str) -> Any:
    s = text.strip()
    low = s.lower()
    if low in _TRUE_WORDS:
        return True
    if low in _FALSE_WORDS:
        return False
    # USDOT/MC numbers with a leading zero must survive as strings.
    if len(s) > 1 and s.startswith("0") and s.isdigit():
        return s
    if s.lstrip("-").isdigit() and s not in ("", "-"):
        return int(s)
    try:
        return float(s)
    except ValueError:
        return s


def _looks_like_json(s: str) -> bool:
    return (s[:1], s[-1:]) in (("{", "}"), ("[", "]"))


def _normalize_kwargs_types(kwargs: dict[str, object] | None) -> dict[str, object]:
    """
    Turn config/CLI kwargs into what a module's `run` expects.

    `<name>_env: "VAR"` becomes `<name>: os.getenv("VAR", "")` unless `<name>`
    was given directly. Other string values are parsed as JSON when they look
    like an object or list, otherwise coerced to bool/int/float where that is
    unambiguous.
    """
    out: dict[str, object] = {}
    from_env: dict[str, object] = {}
    for key, value in (kwargs or {}).items():
        if isinstance(key, str) and key.endswith("_env") and isinstance(value, str):
            from_env[key[:-4]] = os.getenv(value.strip(), "")
            continue
        if not isinstance(value, str):
            out[key] = value
            continue
        s = value.strip()
        if _looks_like_json(s):
            try:
                out[key] = json.loads(s)
                continue
            except json.JSONDecodeError:
                pass
        out[key] = _coerce_scalar(s)

    for key, value in from_env.items():
        out.setdefault(key, value)
    return out


def _resolve_callable(module_path: str) -> Callable[..., Any]:
    """Import `module_path` and return its `run`."""
    mod = importlib.import_module(module_path)
    fn = getattr(mod, "run", None)
    if not callable(fn):
        raise AttributeError(f"Module {module_path!r} does not define a callable `run(**kwargs)`.")
    return fn


def _accepts_cancel_event(fn: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(p.name == "cancel_event" or p.kind is inspect.Parameter.VAR_KEYWORD for p in params)


@dataclass
class RunResult:
    ok: bool
    message: str
    meta: dict[str, Any] | None = None
    error: BaseException | None = field(default=None, repr=False)


def _coerce_result(value: Any) -> RunResult:
    """
    Sync modules return None or a result dict. A `status_code` of 500 or more
    (registry down, job aborted) marks the run as not ok.
    """
    if value is None:
        return RunResult(ok=True, message="OK")
    if not isinstance(value, dict):
        raise TypeError("Module return must be None or a dict of run metadata.")
    code = value.get("status_code")
    ok = not (isinstance(code, int) and code >= 500)
    return RunResult(ok=ok, message=str(value.get("message") or ("OK" if ok else "FAILED")), meta=value)


def _await_with_cancel(fut, cancel_event: threading.Event, module: str, timeout_sec: int | None) -> Any:
    try:
        return fut.result(timeout=timeout_sec or None)
    except FutureTimeout:
        pass
    cancel_event.set()
    try:
        fut.result(timeout=CANCEL_GRACE_SEC)
    except FutureTimeout:
        log.warning("Module %s ignored cancellation for %.0fs", module, CANCEL_GRACE_SEC)
    except Exception as e:
        log.info("Module %s stopped after cancellation: %s", module, e)
    raise TimeoutError(f"Module run timed out after {timeout_sec}s")


def _activity_record(run_id: str, module: str, trigger_type: str, context: dict[str, Any], kwargs: dict[str, object],
                     result: RunResult, duration_ms: int, cancelled: bool) -> dict[str, Any]:
    meta = result.meta or {}
    record: dict[str, Any] = {
        "ts": now_iso(),
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "ok": result.ok,
        "message": result.message,
        "duration_ms": duration_ms,
        "cancelled": cancelled,
        "context": context,
        "kwargs": kwargs,
        "meta": meta,
    }
    record.update({k: meta[k] for k in _SUMMARY_KEYS if k in meta})
    return record


def run_module_once(
    module: str,
    kwargs: dict[str, object] | None = None,
    trigger_type: str = "scheduled",
    job_context: dict[str, object] | None = None,
    timeout_sec: int | None = None,
) -> tuple[dict[str, Any] | None, str]:
    """
    Run `module.run(**kwargs)` once and return `(result_dict_or_None, run_id)`.

    Exceptions from the module (and TimeoutError) are re-raised after the
    activity record is written.
    """
    run_id = uuid.uuid4().hex
    context: dict[str, Any] = {"run_id": run_id, "module": module, "trigger_type": trigger_type, "started_at": now_iso()}
    for k, v in (job_context or {}).items():
        context.setdefault(k, v)

    kw = _normalize_kwargs_types(kwargs)
    run = _resolve_callable(module)
    cancel_event = threading.Event()
    call_kw: dict[str, Any] = dict(kw)
    if _accepts_cancel_event(run):
        call_kw["cancel_event"] = cancel_event

    started = time.monotonic()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner")
    try:
        value = _await_with_cancel(pool.submit(run, **call_kw), cancel_event, module, timeout_sec)
        result = _coerce_result(value)
    except TimeoutError as e:
        result = RunResult(ok=False, message=str(e), meta={"timeout_sec": timeout_sec}, error=e)
    except BaseException as e:
        result = RunResult(ok=False, message=str(e), meta={"exception_type": type(e).__name__}, error=e)
    finally:
        pool.shutdown(wait=False)
    duration_ms = int((time.monotonic() - started) * 1000)

    try:
        logging_utils.write_activity_log(
            _activity_record(run_id, module, trigger_type, context, kw, result, duration_ms, cancel_event.is_set())
        )
    except OSError as e:
        log.error("Failed to write activity record for %s: %s", module, e)

    if result.error is not None:
        raise result.error
    return result.meta, run_id
