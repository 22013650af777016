# tests/conftest.py
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import requests
from freezegun import freeze_time

from modules.carrier_sync.lib.db import CarrierStore
from modules.carrier_sync.lib.registry_client import RegistryClient


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (network calls to the SAFER registry).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "live: marks tests that perform live network calls or hit external services (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch, tmp_path):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    monkeypatch.setenv("LOG_DIR", tempfile.mkdtemp(prefix="cs-pytest-logs-"))
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    # Never touch /app/local from tests
    monkeypatch.setenv("CARRIER_SYNC_DB", str(tmp_path / "default-carriers.db"))
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


@pytest.fixture
def write_min_config(tmp_path, monkeypatch):
    cfg = {
        "timezone": "UTC",
        "jobs": [
            {
                "id": "carrier-rescore-never",
                "module": "modules.carrier_sync",
                "trigger": {"date": "2099-01-01T00:00:00Z"},
                "kwargs": {"action": "rescore", "sqlite_path_env": "CARRIER_SYNC_DB"},
                "summary": "pytest config",
            }
        ],
    }
    p = tmp_path / "config.json"
    p.write_text(json.dumps(cfg), encoding="utf-8")
    monkeypatch.setenv("CONFIG_PATH", str(p))
    return p


# ---------------------------------------------------------------------
# Store + clock
# ---------------------------------------------------------------------
class Clock:
    """Settable UTC clock injected into CarrierStore."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2025, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "carriers.db")


@pytest.fixture
def store(db_path, clock):
    return CarrierStore(db_path, clock=clock)


# ---------------------------------------------------------------------
# SAFER snapshot HTML
# ---------------------------------------------------------------------
_PAGE_FOOTER = (
    "<p>The information below reflects the content of the FMCSA management information "
    "systems as of the date shown. Carriers are advised to review their record regularly "
    "and report any discrepancies through the DataQs system.</p>"
)


def _checkbox_table(section: str, items: tuple[str, ...], unchecked: tuple[str, ...] = ()) -> str:
    cells = "".join(f'<td class="queryfield">X</td><td>{label}</td>' for label in items)
    cells += "".join(f'<td class="queryfield"></td><td>{label}</td>' for label in unchecked)
    return f'<table summary="{section}"><tr>{cells}</tr></table>'


def build_snapshot_html(
    *,
    legal_name: str = "ACME TRUCKING LLC",
    entity_type: str = "CARRIER",
    dba_name: str = "",
    operating_status: str = "ACTIVE",
    authority: str = "AUTHORIZED FOR Property",
    out_of_service: str = "None",
    rating: str | None = "Satisfactory",
    rating_date: str = "03/15/2019",
    power_units: str = "12",
    drivers: str = "14",
    mcs150_date: str = "06/01/2024",
    mileage: str = "1,200,000 (2023)",
    address: tuple[str, ...] = ("123 MAIN ST", "SPRINGFIELD, IL 62701"),
    phone: str = "(217) 555-0100",
    mc_number: str = "MC-123456",
    carrier_operation: tuple[str, ...] = ("Interstate",),
    classification: tuple[str, ...] = ("Auth. For Hire",),
    cargo: tuple[str, ...] = ("General Freight",),
    label_tag: str = "th",
    dot: str = "1174814",
) -> str:
    rows = [
        ("Entity Type:", entity_type),
        ("Operating Status:", operating_status),
        ("Out of Service Date:", out_of_service),
        ("Legal Name:", legal_name),
        ("DBA Name:", dba_name),
        ("Physical Address:", "<br>".join(address)),
        ("Phone:", phone),
        ("USDOT Number:", dot),
        ("MC/MX/FF Number(s):", mc_number),
        ("Power Units:", power_units),
        ("Drivers:", drivers),
        ("MCS-150 Form Date:", mcs150_date),
        ("MCS-150 Mileage (Year):", mileage),
        ("Operating Authority Status:", authority),
    ]
    if rating is not None:
        rows += [("Rating:", rating), ("Rating Date:", rating_date)]
    body = "".join(
        f'<tr><{label_tag} class="querylabelbkg">{label}</{label_tag}><td class="queryfield">{value}</td></tr>'
        for label, value in rows
    )
    return (
        f"<html><head><title>SAFER Web - Company Snapshot {legal_name}</title></head><body>"
        f'<table summary="Company Information">{body}</table>'
        f"<h4>Operation Classification:</h4>{_checkbox_table('Operation Classification', classification, ('Migrant',))}"
        f"<h4>Carrier Operation:</h4>{_checkbox_table('Carrier Operation', carrier_operation, ('Intrastate Only (Non-HM)',))}"
        f"<h4>Cargo Carried:</h4>{_checkbox_table('Cargo Carried', cargo, ('Livestock',))}"
        f"{_PAGE_FOOTER}</body></html>"
    )


def build_unrecognized_html(dot: str) -> str:
    """Long page that mentions the identifier but has no snapshot layout."""
    return (
        "<html><head><title>Please wait</title></head><body>"
        f"<div id='challenge'>Request reference {dot}. Verifying your browser before continuing.</div>"
        f"{_PAGE_FOOTER}{_PAGE_FOOTER}</body></html>"
    )


NOT_FOUND_HTML = (
    "<html><head><title>SAFER Web - Company Snapshot</title></head><body>"
    "<p>Record Not Found</p><p>The record matching USDOT Number you entered was not found.</p>"
    f"{_PAGE_FOOTER}</body></html>"
)


@pytest.fixture
def snapshot_html():
    return build_snapshot_html


@pytest.fixture
def unrecognized_html():
    return build_unrecognized_html


# ---------------------------------------------------------------------
# Fake HTTP layer under the real RegistryClient
# ---------------------------------------------------------------------
def make_response(status: int = 200, text: str = "", headers: dict | None = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = text.encode("utf-8")
    resp.encoding = "utf-8"
    resp.headers.update(headers or {})
    return resp


class FakeHttp:
    """
    Scripted stand-in for HttpClient.

    `calls` holds (method, url, form, headers, timeout) tuples.
    `pages` maps identifier -> (status, html) or an exception instance to raise.
    Identifiers without an entry get the "Record Not Found" page.
    """

    def __init__(self, pages: dict | None = None, landing_cookie: str | None = "ASPSESSIONIDQQ=abc123") -> None:
        self.pages = dict(pages or {})
        self.landing_cookie = landing_cookie
        self.landing_error: Exception | None = None
        self.calls: list[tuple] = []
        self.on_post = None  # optional hook(identifier, n_posts)
        self.closed = False

    @property
    def posted(self) -> list[str]:
        return [c[2]["query_string"] for c in self.calls if c[0] == "POST"]

    def get(self, url, *, headers=None, timeout=None, **kwargs):
        self.calls.append(("GET", url, None, dict(headers or {}), timeout))
        if self.landing_error is not None:
            raise self.landing_error
        hdrs = {"Set-Cookie": f"{self.landing_cookie}; path=/"} if self.landing_cookie else {}
        return make_response(200, "<html><body>SAFER landing</body></html>", hdrs)

    def post_form(self, url, data, *, headers=None, timeout=None, **kwargs):
        self.calls.append(("POST", url, dict(data), dict(headers or {}), timeout))
        identifier = data["query_string"]
        if self.on_post is not None:
            self.on_post(identifier, len(self.posted))
        page = self.pages.get(identifier, (200, NOT_FOUND_HTML))
        if isinstance(page, Exception):
            raise page
        status, html = page
        return make_response(status, html)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def registry_client(fake_http):
    return RegistryClient(fake_http, delay_seconds=0)
