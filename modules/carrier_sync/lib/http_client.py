# carrier_sync/http_client.py
from __future__ import annotations

import logging
from collections.abc import Mapping
from http.cookiejar import DefaultCookiePolicy
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; CarrierSync/1.0; +registry-sync)"


class HttpClient:
    """
    Shared HTTP client for the registry.

    The session never stores cookies on its own; callers read them from the
    response and pass them back explicitly (see `cookie_header`).
    """

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        retries: int = 0,
    ):
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        })
        self.session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

        # Registry requests are paced and retried by the orchestrator, so the
        # transport sends each request once unless a caller opts in.
        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset(["GET", "HEAD"]),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=2, pool_maxsize=2)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    # ---- convenience ----
    def get(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """GET without raising on HTTP status; callers classify the response."""
        return self.session.get(url, headers=headers, timeout=timeout or self.timeout, **kwargs)

    def post_form(
        self,
        url: str,
        data: Mapping[str, str],
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """POST an urlencoded form and return the raw response."""
        hdrs = {"Content-Type": "application/x-www-form-urlencoded"}
        hdrs.update(headers or {})
        return self.session.post(url, data=dict(data), headers=hdrs, timeout=timeout or self.timeout, **kwargs)

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            LOG.debug("HttpClient.close() swallow", exc_info=True)


def cookie_header(resp: requests.Response) -> str | None:
    """
    Build a Cookie header value from the cookies a response set.
    Falls back to the raw Set-Cookie name=value pair when the jar is empty.
    """
    pairs = [f"{c.name}={c.value}" for c in resp.cookies]
    if pairs:
        return "; ".join(pairs)
    raw = resp.headers.get("set-cookie") if resp.headers is not None else None
    if raw:
        first = raw.split(";", 1)[0].strip()
        return first or None
    return None


def read_text(resp: requests.Response) -> str:
    """Decoded body text with a gentle encoding hint."""
    if not resp.encoding and getattr(resp, "apparent_encoding", None):
        resp.encoding = resp.apparent_encoding
    return resp.text or ""
