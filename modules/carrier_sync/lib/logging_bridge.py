"""
Structured log records for carrier_sync.

Records go to the service JSONL writers (service.logging_utils) when the
package runs under the scheduler, and to stdlib logging otherwise (ad-hoc
scripts, a bare `import modules.carrier_sync`). Registry cookies and other
credentials are scrubbed at the top level here; the service writer also
scrubs nested values.
"""

from __future__ import annotations

import logging
from typing import Any

try:
    from service import logging_utils as _backend  # type: ignore
except ImportError:
    _backend = None

_SECRET_KEYS = frozenset({
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
    "cookie",
    "set-cookie",
})
_SECRET_SUFFIXES = ("_secret", "_cookie", "_token")
_MASK = "***REDACTED***"

_STD_LOGGERS = {
    "activity": (logging.getLogger("carrier_sync.activity"), logging.INFO),
    "error": (logging.getLogger("carrier_sync.error"), logging.ERROR),
}


def scrub(record: dict[str, Any]) -> dict[str, Any]:
    """Copy of `record` with credential-looking top-level keys masked."""
    out: dict[str, Any] = {}
    for key, value in record.items():
        name = str(key).lower()
        secret = name in _SECRET_KEYS or name.endswith(_SECRET_SUFFIXES)
        out[key] = _MASK if secret else value
    out.setdefault("component", "carrier_sync")
    return out


def _emit(kind: str, record: dict[str, Any]) -> None:
    payload = scrub(record)
    writer = getattr(_backend, f"write_{kind}_log", None) if _backend is not None else None
    if writer is not None:
        try:
            writer(payload)
            return
        except OSError:
            # Log volume unavailable; keep the record on stderr instead.
            pass
    logger, level = _STD_LOGGERS[kind]
    logger.log(level, payload)


def activity(record: dict[str, Any]) -> None:
    """One activity record (job lifecycle, lookups, summaries)."""
    _emit("activity", record)


def error(record: dict[str, Any]) -> None:
    """One error record (site-down aborts, parse failures, persistence errors)."""
    _emit("error", record)
