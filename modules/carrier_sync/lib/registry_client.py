# modules/carrier_sync/lib/registry_client.py
"""
Two-step client for the FMCSA SAFER company snapshot.

  1. GET the landing page to pick up a session cookie (optional; failures tolerated)
  2. POST the snapshot query form with that cookie, a Referer and a User-Agent

Every upstream behaviour becomes a LookupResult; nothing is raised to the
caller except SyncCancelled when the caller's token fires.
"""

from __future__ import annotations

import time

import requests

from . import logging_bridge
from .cancellation import CancelToken
from .http_client import DEFAULT_USER_AGENT, HttpClient, cookie_header, read_text
from .models import (
    Found,
    LookupResult,
    NotFound,
    ParseFailure,
    RegistrySession,
    SiteDown,
    canonicalize,
)
from .parser import debug_snippet, parse_snapshot

DEFAULT_BASE_URL = "https://safer.fmcsa.dot.gov"
DEFAULT_DELAY_SECONDS = 2.0
SNIPPET_LIMIT = 500
MIN_PAGE_LENGTH = 512

NOT_FOUND_MARKERS = (
    "no records found",
    "record not found",
    "record inactive",
)
# The bare search form comes back when the query matched nothing.
SEARCH_FORM_MARKERS = ("search criteria", "users can search by dot number")
OUTAGE_MARKERS = (
    "undergoing maintenance",
    "scheduled maintenance",
    "temporarily unavailable",
    "service unavailable",
    "currently unavailable",
    "system is unavailable",
)
BLOCKING_STATUSES = frozenset({403, 429})


class RegistryClient:
    """
    Registry lookups with explicit session and pacing.

    `sleep()` is the rate-limit primitive; callers run it between requests.
    `lookup()` only sleeps on its own when it had to open a session first.
    """

    def __init__(
        self,
        http: HttpClient | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._http = http or HttpClient(timeout=timeout, user_agent=user_agent, retries=0)
        self.base_url = base_url.rstrip("/")
        self.delay_seconds = float(delay_seconds)
        self.timeout = float(timeout)

    @property
    def landing_url(self) -> str:
        return f"{self.base_url}/"

    @property
    def query_url(self) -> str:
        return f"{self.base_url}/query.asp"

    # ---- pacing ----
    def sleep(self, seconds: float | None = None, cancel: CancelToken | None = None) -> None:
        """Wait between registry requests; wakes early (raising SyncCancelled) on cancellation."""
        delay = self.delay_seconds if seconds is None else float(seconds)
        if cancel is not None:
            cancel.wait(delay)
        elif delay > 0:
            time.sleep(delay)

    # ---- session ----
    def open_session(self, cancel: CancelToken | None = None) -> RegistrySession:
        """
        Fetch the landing page and capture its cookie.
        Any failure yields an empty session; the registry works without one.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            resp = self._http.get(self.landing_url, timeout=self._timeout(cancel))
            cookie = cookie_header(resp)
        except requests.RequestException as e:
            logging_bridge.activity({
                "component": "carrier_sync.registry_client",
                "op": "open_session_failed",
                "error": repr(e),
            })
            return RegistrySession(cookie=None)
        return RegistrySession(cookie=cookie)

    # ---- lookup ----
    def lookup(
        self,
        identifier: str,
        *,
        session: RegistrySession | None = None,
        cancel: CancelToken | None = None,
    ) -> LookupResult:
        dot = canonicalize(identifier)
        if session is None:
            session = self.open_session(cancel)
            self.sleep(cancel=cancel)
        if cancel is not None:
            cancel.raise_if_cancelled()

        headers = {"Referer": self.landing_url}
        if session.cookie:
            headers["Cookie"] = session.cookie
        form = {
            "searchtype": "ANY",
            "query_type": "queryCarrierSnapshot",
            "query_param": "USDOT",
            "query_string": dot,
        }

        t0 = time.perf_counter_ns()
        try:
            resp = self._http.post_form(self.query_url, form, headers=headers, timeout=self._timeout(cancel))
        except requests.RequestException as e:
            # timeouts, DNS, TLS, connection resets
            return SiteDown(identifier=dot, reason=f"{type(e).__name__}: {e}")

        status = int(resp.status_code)
        html = read_text(resp)
        result = classify_response(dot, status, html)

        logging_bridge.activity({
            "component": "carrier_sync.registry_client",
            "op": "lookup",
            "identifier": dot,
            "status_code": status,
            "result": result.kind,
            "bytes": len(html),
            "duration_us": int((time.perf_counter_ns() - t0) // 1000),
        })
        return result

    def close(self) -> None:
        self._http.close()

    # ---- internal ----
    def _timeout(self, cancel: CancelToken | None) -> float:
        remaining = cancel.remaining() if cancel is not None else None
        if remaining is None:
            return self.timeout
        # Bound by the job deadline, but never hand requests a zero timeout.
        return max(1.0, min(self.timeout, remaining))


def classify_response(identifier: str, status: int, html: str) -> LookupResult:
    """
    Map an HTTP status and body to a LookupResult.

    Order: server/blocking status, outage markers, not-found markers,
    anomalously short body, other HTTP errors, then field extraction.
    """
    body = html or ""
    lower = body.lower()

    if status >= 500 or status in BLOCKING_STATUSES:
        return SiteDown(identifier=identifier, reason=f"HTTP {status}")

    for marker in OUTAGE_MARKERS:
        if marker in lower:
            return SiteDown(identifier=identifier, reason=f"registry reports outage ({marker!r})")

    if any(marker in lower for marker in NOT_FOUND_MARKERS):
        return NotFound(identifier=identifier)
    if all(marker in lower for marker in SEARCH_FORM_MARKERS):
        return NotFound(identifier=identifier)

    if len(body.strip()) < MIN_PAGE_LENGTH:
        return SiteDown(identifier=identifier, reason=f"anomalously short response ({len(body.strip())} bytes)")

    if not 200 <= status < 300:
        return ParseFailure(identifier=identifier, reason=f"HTTP {status}", snippet=debug_snippet(body, SNIPPET_LIMIT))

    snapshot = parse_snapshot(identifier, body)
    if snapshot is None:
        # TODO: distinguish CAPTCHA/IP-block interstitials from layout drift once one has been captured.
        failure = ParseFailure(
            identifier=identifier,
            reason="unrecognized registry page",
            snippet=debug_snippet(body, SNIPPET_LIMIT),
        )
        logging_bridge.error({
            "component": "carrier_sync.registry_client",
            "op": "parse_failure",
            "identifier": identifier,
            "contains_identifier": identifier in body,
            "snippet": failure.snippet,
        })
        return failure

    return Found(identifier=identifier, snapshot=snapshot)
