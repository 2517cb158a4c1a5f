"""
Generic adapter for run calendars published as an HTML table.

Many kennels keep their hareline as a plain table on their website:

    <table class="future_hashes">
      <tr><td>1/15/2026</td><td>#2100</td><td>Bridge Trail</td><td>Just Jeff</td></tr>
    </table>

The source config says which tables to read and which column holds which
field, so no code is needed per kennel:

    {
        "table_selectors": ["table.future_hashes", "table.past_hashes"],
        "columns": {"date": 0, "run_number": 1, "title": 2, "hares": 3},
        "kennel_tag": "NYCH3"
    }

When there is no kennel_tag column every row gets config["kennel_tag"];
the resolver's default_kennel_tag still applies to tags it can't match.
Each fetch also records the page's structure hash so layout changes
raise STRUCTURE_CHANGE alerts.
"""

import logging
import re
from datetime import date, datetime, timedelta
from typing import Optional

import requests
from bs4 import BeautifulSoup

from hashtracks.config import settings
from hashtracks.db.models import Source
from hashtracks.pipeline.adapters import RawEventData, ScrapeResult, SourceAdapter, default_registry
from hashtracks.pipeline.structure_hash import DEFAULT_TABLE_SELECTORS, generate_structure_hash

logger = logging.getLogger(__name__)


# Date formats tried after ISO and M/D/Y
TEXT_DATE_FORMATS = ("%B %d, %Y", "%b %d, %Y", "%A, %B %d, %Y", "%a, %b %d, %Y", "%d %B %Y")

_NUMERIC_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_RUN_NUMBER_RE = re.compile(r"#?\s*(\d+)")
_TIME_RE = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*([ap])\.?m\.?", re.IGNORECASE)
_TIME_24H_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

TEXT_FIELDS = ("kennel_tag", "title", "description", "hares", "location")


def parse_date_cell(text: str) -> Optional[date]:
    """
    Parse a date cell.

    Examples:
        >>> parse_date_cell("1/15/26")
        datetime.date(2026, 1, 15)
        >>> parse_date_cell("January 15, 2026")
        datetime.date(2026, 1, 15)
        >>> parse_date_cell("TBD") is None
        True
    """
    value = " ".join((text or "").split())
    if not value:
        return None

    try:
        return date.fromisoformat(value)
    except ValueError:
        pass

    m = _NUMERIC_DATE_RE.match(value)
    if m:
        month, day, year = (int(g) for g in m.groups())
        if year < 100:
            year += 2000
        try:
            return date(year, month, day)
        except ValueError:
            return None

    for fmt in TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_time_cell(text: str) -> Optional[str]:
    """
    Normalize a start time to HH:MM (24h).

    Examples:
        >>> parse_time_cell("7pm")
        '19:00'
        >>> parse_time_cell("2:30 PM")
        '14:30'
        >>> parse_time_cell("18:45")
        '18:45'
    """
    value = (text or "").strip()
    if not value:
        return None

    m = _TIME_24H_RE.match(value)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
    else:
        m = _TIME_RE.search(value)
        if not m:
            return None
        hour = int(m.group(1)) % 12
        minute = int(m.group(2) or 0)
        if m.group(3).lower() == "p":
            hour += 12

    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def parse_run_number_cell(text: str) -> Optional[int]:
    m = _RUN_NUMBER_RE.search(text or "")
    return int(m.group(1)) if m else None


class HTMLTableAdapter(SourceAdapter):
    """
    Read events from configured HTML tables.

    Usage:
        adapter = HTMLTableAdapter()
        result = adapter.fetch(source, days=90)
    """

    source_type = "HTML_SCRAPER"

    def __init__(self, session: Optional[requests.Session] = None, today: Optional[date] = None):
        self._session = session
        self._today = today

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"User-Agent": settings.scrape_user_agent})
        return self._session

    def fetch(self, source: Source, days: int) -> ScrapeResult:
        """
        Download source.url and parse its tables.

        Raises:
            requests.RequestException: the page could not be downloaded
        """
        response = self._get_session().get(source.url, timeout=settings.scrape_request_timeout)
        response.raise_for_status()
        return self.parse_page(response.text, source.config or {}, days)

    def parse_page(self, html: str, config: dict, days: int) -> ScrapeResult:
        """Extract events within `days` of today from already-downloaded HTML."""
        selectors = config.get("table_selectors") or list(DEFAULT_TABLE_SELECTORS)
        columns: dict[str, int] = config.get("columns") or {"date": 0, "kennel_tag": 1, "title": 2}
        fixed_tag = config.get("kennel_tag") or ""

        if "date" not in columns:
            return ScrapeResult(errors=["Source config has no date column"])

        today = self._today or date.today()
        window_start = today - timedelta(days=days)
        window_end = today + timedelta(days=days)

        soup = BeautifulSoup(html, "lxml")
        result = ScrapeResult(structure_hash=generate_structure_hash(html, selectors))
        parse_errors = []

        for selector in selectors:
            table = soup.select_one(selector)
            if table is None:
                continue

            for row_number, row in enumerate(table.find_all("tr"), start=1):
                cells = [" ".join(td.get_text(" ").split()) for td in row.find_all("td")]
                if not cells:
                    continue  # header row

                event = self._parse_row(cells, columns, fixed_tag)
                if isinstance(event, str):
                    parse_errors.append(f"{selector} row {row_number}: {event}")
                    continue

                event_date = date.fromisoformat(event.date)
                if window_start <= event_date <= window_end:
                    result.events.append(event)

        if parse_errors:
            result.errors = parse_errors
            result.error_details = {"parse": parse_errors}

        logger.debug(
            "Parsed %d events (%d row errors) from %d table selector(s)",
            len(result.events), len(parse_errors), len(selectors),
        )
        return result

    @staticmethod
    def _parse_row(cells: list[str], columns: dict[str, int], fixed_tag: str):
        """Return RawEventData, or an error message for a row that can't be used."""

        def cell(name: str) -> Optional[str]:
            index = columns.get(name)
            if index is None or index >= len(cells):
                return None
            return cells[index] or None

        raw_date = cell("date")
        event_date = parse_date_cell(raw_date or "")
        if event_date is None:
            return f"unparseable date {raw_date!r}"

        values = {name: cell(name) for name in TEXT_FIELDS}
        kennel_tag = values.pop("kennel_tag") or fixed_tag
        if not kennel_tag:
            return "no kennel tag"

        run_text = cell("run_number")
        return RawEventData(
            date=event_date.isoformat(),
            kennel_tag=kennel_tag,
            run_number=parse_run_number_cell(run_text) if run_text else None,
            start_time=parse_time_cell(cell("start_time") or ""),
            **values,
        )


default_registry.register(HTMLTableAdapter.source_type, HTMLTableAdapter)
