# modules/carrier_sync/lib/parser.py
"""
Extraction of carrier fields from a SAFER "Company Snapshot" page.

The page is a set of nested layout tables where each field is a label cell
("Legal Name:") followed by a value cell. Layout has drifted over the years
(labels in <th> vs <td>), so extraction tries an ordered list of patterns and
the first one that yields a valid legal name wins. Pages with no usable
pattern are reported by the caller as parse failures.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from bs4 import BeautifulSoup
from bs4.element import Tag

from .models import RegistrySnapshot

# Canonical label -> accepted spellings (compared case-insensitively, no trailing ':')
LABELS: dict[str, tuple[str, ...]] = {
    "Entity Type": ("Entity Type",),
    "Operating Status": ("Operating Status", "USDOT Status"),
    "Out of Service Date": ("Out of Service Date",),
    "Legal Name": ("Legal Name",),
    "DBA Name": ("DBA Name",),
    "Physical Address": ("Physical Address",),
    "Mailing Address": ("Mailing Address",),
    "Phone": ("Phone",),
    "USDOT Number": ("USDOT Number",),
    "MC/MX/FF Number(s)": ("MC/MX/FF Number(s)", "MC/MX/FF Number", "MC/MX Number(s)", "MC Number"),
    "Power Units": ("Power Units",),
    "Drivers": ("Drivers",),
    "MCS-150 Form Date": ("MCS-150 Form Date", "MCS-150 Date"),
    "MCS-150 Mileage (Year)": ("MCS-150 Mileage (Year)", "MCS-150 Mileage"),
    "Operating Authority Status": ("Operating Authority Status", "Authority Status"),
    "Rating": ("Rating", "Safety Rating"),
    "Rating Date": ("Rating Date", "Safety Rating Date"),
    "Review Date": ("Review Date", "Safety Review Date"),
}

CHECKBOX_SECTIONS = ("Operation Classification", "Carrier Operation", "Cargo Carried")

_TITLE_RE = re.compile(r"SAFER Web - Company Snapshot\s+(.+)", re.IGNORECASE | re.DOTALL)

# Text that shows up where a legal name should be when a pattern latched onto page chrome.
_INVALID_NAME_MARKERS = (
    "Query Result",
    "SAFER Table Layout",
    "USDOT Number",
    "MC/MX Number",
    "Enter Value",
    "Search Criteria",
)
MAX_NAME_LENGTH = 200

_ALIAS_TO_LABEL = {alias.lower(): label for label, aliases in LABELS.items() for alias in aliases}


# =============================================================================
# TEXT HELPERS
# =============================================================================
def clean_text(s: str | None) -> str:
    """Collapse whitespace (including &nbsp;) and strip."""
    if not s:
        return ""
    return re.sub(r"\s+", " ", s.replace("\xa0", " ")).strip()


def _cell_text(cell: Tag) -> str:
    """Cell text with <br> boundaries preserved as newlines."""
    lines = [clean_text(part) for part in cell.get_text("\n").split("\n")]
    return "\n".join(line for line in lines if line)


def _label_key(text: str) -> str | None:
    norm = clean_text(text).rstrip(":").strip().lower()
    return _ALIAS_TO_LABEL.get(norm)


def is_valid_legal_name(name: str | None) -> bool:
    if not name:
        return False
    n = name.strip()
    if not n or len(n) > MAX_NAME_LENGTH:
        return False
    return not any(marker.lower() in n.lower() for marker in _INVALID_NAME_MARKERS)


def debug_snippet(html: str, limit: int = 500) -> str:
    """Whitespace-collapsed prefix of a page for diagnostics."""
    return clean_text(html)[: max(0, int(limit))]


# =============================================================================
# PATTERNS
# =============================================================================
def _label_adjacent(soup: BeautifulSoup, tag_name: str) -> dict[str, str]:
    cells: dict[str, str] = {}
    for label_cell in soup.find_all(tag_name):
        label = _label_key(label_cell.get_text(" "))
        if not label or label in cells:
            continue
        value_cell = label_cell.find_next_sibling("td") or label_cell.find_next("td")
        if value_cell is None:
            continue
        value = _cell_text(value_cell)
        if value:
            cells[label] = value
    return cells


def _th_label(soup: BeautifulSoup) -> dict[str, str]:
    return _label_adjacent(soup, "th")


def _td_label(soup: BeautifulSoup) -> dict[str, str]:
    return _label_adjacent(soup, "td")


def _title(soup: BeautifulSoup) -> dict[str, str]:
    if soup.title is None:
        return {}
    m = _TITLE_RE.search(soup.title.get_text(" "))
    if not m:
        return {}
    return {"Legal Name": clean_text(m.group(1))}


# Order matters: first pattern producing a valid legal name wins.
PATTERNS: tuple[tuple[str, Callable[[BeautifulSoup], dict[str, str]]], ...] = (
    ("th_label", _th_label),
    ("td_label", _td_label),
    ("title", _title),
)


# =============================================================================
# CHECKBOX SECTIONS
# =============================================================================
def _checked_in_table(table: Tag) -> tuple[str, ...]:
    out: list[str] = []
    for cell in table.find_all("td"):
        if clean_text(cell.get_text()).upper() != "X":
            continue
        label_cell = cell.find_next_sibling("td") or cell.find_next("td")
        if label_cell is None:
            continue
        label = clean_text(label_cell.get_text(" "))
        if label and label not in out:
            out.append(label)
    return tuple(out)


def _checked_section(soup: BeautifulSoup, section: str) -> tuple[str, ...]:
    table = soup.find("table", attrs={"summary": re.compile(rf"^\s*{re.escape(section)}\s*$", re.I)})
    if table is None:
        for cell in soup.find_all(["th", "td"]):
            if clean_text(cell.get_text(" ")).rstrip(":").strip().lower() == section.lower():
                table = cell.find_next("table")
                break
    if table is None:
        return ()
    return _checked_in_table(table)


# =============================================================================
# PUBLIC API
# =============================================================================
def parse_snapshot(identifier: str, html: str) -> RegistrySnapshot | None:
    """
    Extract a RegistrySnapshot from page HTML, or None when no pattern matches.
    Never raises on malformed markup.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    title = clean_text(soup.title.get_text(" ")) if soup.title else None

    for name, pattern in PATTERNS:
        cells = pattern(soup)
        if not is_valid_legal_name(cells.get("Legal Name")):
            continue
        checked = {section: _checked_section(soup, section) for section in CHECKBOX_SECTIONS}
        return RegistrySnapshot(
            identifier=identifier,
            cells=cells,
            checked={k: v for k, v in checked.items() if v},
            title=title,
            pattern=name,
        )
    return None
