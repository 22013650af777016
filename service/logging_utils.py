# service/logging_utils.py
"""
Structured JSONL sinks for the sync service.

Two daily files live under LOG_DIR:

    activity-YYYY-MM-DD.jsonl   one line per run, lookup or job milestone
    error-YYYY-MM-DD.jsonl      one line per failure worth paging on

Environment (read on every write so tests can point LOG_DIR at tmp_path):

    LOG_DIR                  base directory, default /app/local/logs
    ACTIVITY_LOG_PREFIX      default "activity"
    ERROR_LOG_PREFIX         default "error"
    ACTIVITY_LOG_MAX_BYTES   roll a file over once it reaches this size; <=0 disables
"""
from __future__ import annotations

import contextlib
import datetime as _dt
import json
import os
import re
import socket
from typing import Any

_DEFAULT_LOG_DIR = "/app/local/logs"
_REDACTED = "***REDACTED***"

# Substrings of record keys whose values are never written. SAFER hands out an
# ASP session cookie that ends up in header dumps.
_DEFAULT_REDACT_KEYS = frozenset({"password", "token", "apikey", "api_key", "secret", "authorization", "cookie"})

_SESSION_COOKIE_RE = re.compile(r"(ASPSESSIONID\w*=)[^;\s]+", re.IGNORECASE)

_HOSTNAME = socket.gethostname()
_PID = os.getpid()


class _DailyJsonl:
    """Append-only JSONL file named `<prefix>-<date>.jsonl`, one sink per stream."""

    def __init__(self, prefix_env: str, default_prefix: str):
        self.prefix_env = prefix_env
        self.default_prefix = default_prefix

    def path(self, day: _dt.date | None = None) -> str:
        prefix = os.getenv(self.prefix_env) or self.default_prefix
        day = day or _dt.date.today()
        return os.path.join(os.getenv("LOG_DIR") or _DEFAULT_LOG_DIR, f"{prefix}-{day.isoformat()}.jsonl")

    def write(self, record: dict[str, Any]) -> None:
        line = _encode(_stamp(redact(record)))
        target = self.path()
        try:
            _append(target, line)
        except OSError:
            # NFS-mounted log volumes occasionally fail a first open.
            _append(target, line)


_ACTIVITY = _DailyJsonl("ACTIVITY_LOG_PREFIX", "activity")
_ERRORS = _DailyJsonl("ERROR_LOG_PREFIX", "error")


def write_activity_log(record: dict[str, Any]) -> None:
    """Append one activity record. Raises OSError if the log volume is unwritable."""
    _ACTIVITY.write(record)


def write_error_log(record: dict[str, Any]) -> None:
    _ERRORS.write(record)


def get_activity_log_path() -> str:
    return _ACTIVITY.path()


def get_error_log_path() -> str:
    return _ERRORS.path()


def redact(record: Any, keys: frozenset[str] | set[str] | None = None) -> Any:
    """
    Deep copy of `record` with secret-looking keys masked and registry session
    cookies stripped from string values. The input is left untouched.
    """
    patterns = tuple(k.lower() for k in (keys or _DEFAULT_REDACT_KEYS))
    return _scrub(record, patterns)


def _scrub(value: Any, patterns: tuple[str, ...]) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            secret = isinstance(k, str) and any(p in k.lower() for p in patterns)
            out[k] = _REDACTED if secret else _scrub(v, patterns)
        return out
    if isinstance(value, (list, tuple)):
        return [_scrub(v, patterns) for v in value]
    if isinstance(value, str):
        return _SESSION_COOKIE_RE.sub(r"\1" + _REDACTED, value)
    return value


def _stamp(record: dict[str, Any]) -> dict[str, Any]:
    out = dict(record)
    out.setdefault("ts", _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="milliseconds"))
    prior = out.get("_meta") if isinstance(out.get("_meta"), dict) else {}
    out["_meta"] = {**prior, "host": _HOSTNAME, "pid": _PID}
    return out


def _encode(record: dict[str, Any]) -> bytes:
    return (json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str) + "\n").encode("utf-8")


def _max_bytes() -> int:
    try:
        return int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0"))
    except ValueError:
        return 0


def _roll_over(path: str) -> None:
    limit = _max_bytes()
    if limit <= 0:
        return
    try:
        if os.path.getsize(path) < limit:
            return
    except FileNotFoundError:
        return
    with contextlib.suppress(FileNotFoundError):
        os.replace(path, f"{path}.{_dt.datetime.now():%Y%m%d-%H%M%S}")


def _append(path: str, line: bytes) -> None:
    # A single O_APPEND write keeps lines whole across scheduler threads.
    os.makedirs(os.path.dirname(path), exist_ok=True)
    _roll_over(path)
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, line)
    finally:
        os.close(fd)
