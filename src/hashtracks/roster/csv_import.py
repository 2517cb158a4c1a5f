"""
Attendance spreadsheet import.

Kennels that tracked attendance in a spreadsheet before joining export it
as a CSV matrix:

    Name,1/15/26,1/22/26,#2100
    Alice,X,P,
    Bob,,X,H

Rows are hashers, columns are runs (by date or run number) and each cell
says whether that hasher attended, paid or hared. This module reconciles
the matrix against the kennel's roster and its events and produces the
attendance records to insert. Nothing here decides who may import; the
caller resolves the acting user and commits.

The pure helpers (parse_attendance_csv, match_hasher_names,
match_column_headers, build_import_records) take plain data so they can
be tested without a database.
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hashtracks.config import settings
from hashtracks.db.models import Event, KennelAttendance, KennelHasher, RosterGroupKennel
from hashtracks.kennels.fuzzy import score

logger = logging.getLogger(__name__)

DEFAULT_ATTENDED_MARKERS = ("X", "x", "1", "✓", "true", "yes", "Y", "y")
DEFAULT_PAID_MARKERS = ("P", "p", "$", "paid")
DEFAULT_HARE_MARKERS = ("H", "h", "hare")

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_SHORT_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2}|\d{4})$")
_RUN_NUMBER_RE = re.compile(r"^#?\s*(\d+)$")


class RosterNotFoundError(LookupError):
    """The kennel does not belong to a roster group."""
    pass


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class CSVLayout:
    """Where names, headers and data sit in the matrix (0-based)."""
    name_column: int = 0
    header_row: int = 0
    data_start_row: int = 1
    data_start_column: int = 1


@dataclass
class CellMarkers:
    """
    Cell vocabulary. Any recognized marker means the hasher attended;
    paid and hare markers additionally set those flags.
    """
    attended: tuple[str, ...] = DEFAULT_ATTENDED_MARKERS
    paid: tuple[str, ...] = DEFAULT_PAID_MARKERS
    hare: tuple[str, ...] = DEFAULT_HARE_MARKERS


@dataclass(frozen=True)
class CellFlags:
    attended: bool = False
    paid: bool = False
    hared: bool = False


@dataclass
class DataRow:
    name: str
    cells: list[str]


@dataclass
class ParsedCSV:
    rows: list[list[str]] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    hasher_names: list[str] = field(default_factory=list)
    data_rows: list[DataRow] = field(default_factory=list)


@dataclass
class RosterEntry:
    id: int
    hash_name: Optional[str] = None
    nerd_name: Optional[str] = None

    def display_name(self) -> str:
        return self.hash_name or self.nerd_name or "?"


@dataclass
class HasherMatch:
    csv_name: str
    kennel_hasher_id: int
    match_type: str  # 'exact' or 'fuzzy'
    match_score: float


@dataclass
class EventLookup:
    id: int
    date: date
    run_number: Optional[int] = None


@dataclass
class EventMatch:
    column_index: int  # absolute column in the CSV
    column_header: str
    event_id: int
    date: date


@dataclass(frozen=True)
class AttendanceImportRecord:
    kennel_hasher_id: int
    event_id: int
    paid: bool = False
    hared: bool = False


@dataclass
class CSVImportResult:
    """Everything an importer needs to show before writing."""
    roster_group_id: Optional[int] = None
    matched_hashers: list[HasherMatch] = field(default_factory=list)
    unmatched_hashers: list[str] = field(default_factory=list)
    matched_events: list[EventMatch] = field(default_factory=list)
    unmatched_columns: list[str] = field(default_factory=list)
    records: list[AttendanceImportRecord] = field(default_factory=list)
    duplicate_count: int = 0

    @property
    def fuzzy_matches(self) -> list[HasherMatch]:
        return [m for m in self.matched_hashers if m.match_type == "fuzzy"]

    def summary(self) -> str:
        """Return a human-readable summary of the import."""
        exact = len(self.matched_hashers) - len(self.fuzzy_matches)
        lines = [
            "CSV Import Summary:",
            f"  Hashers matched:    {len(self.matched_hashers)} ({exact} exact, {len(self.fuzzy_matches)} fuzzy)",
            f"  Hashers unmatched:  {len(self.unmatched_hashers)}",
            f"  Columns matched:    {len(self.matched_events)}",
            f"  Columns unmatched:  {len(self.unmatched_columns)}",
            f"  Records to import:  {len(self.records)}",
            f"  Duplicates skipped: {self.duplicate_count}",
            f"  Paid records:       {sum(1 for r in self.records if r.paid)}",
            f"  Hare records:       {sum(1 for r in self.records if r.hared)}",
        ]
        return "\n".join(lines)


# =============================================================================
# Parsing
# =============================================================================

def parse_attendance_csv(text: str, layout: Optional[CSVLayout] = None) -> ParsedCSV:
    """
    Split CSV text into headers and named data rows.

    Handles quoted fields and CRLF line endings. Rows whose name cell is
    blank are skipped.
    """
    layout = layout or CSVLayout()
    rows = [row for row in csv.reader(io.StringIO(text)) if row]
    if not rows:
        return ParsedCSV()

    header_row = rows[layout.header_row] if layout.header_row < len(rows) else []
    headers = header_row[layout.data_start_column:]

    parsed = ParsedCSV(rows=rows, headers=headers)
    for row in rows[layout.data_start_row:]:
        name = row[layout.name_column].strip() if layout.name_column < len(row) else ""
        if not name:
            continue
        parsed.hasher_names.append(name)
        parsed.data_rows.append(DataRow(name=name, cells=row[layout.data_start_column:]))
    return parsed


def parse_cell_value(value: str, markers: Optional[CellMarkers] = None) -> CellFlags:
    """Interpret one cell. Markers compare case-insensitively against the whole cell."""
    markers = markers or CellMarkers()
    v = (value or "").strip().lower()
    if not v:
        return CellFlags()

    is_attended = any(v == m.lower() for m in markers.attended)
    is_paid = any(v == m.lower() for m in markers.paid)
    is_hare = any(v == m.lower() for m in markers.hare)
    return CellFlags(
        attended=is_attended or is_paid or is_hare,
        paid=is_paid,
        hared=is_hare,
    )


def try_parse_date(text: str) -> Optional[date]:
    """
    Parse a column header as a date.

    Accepts YYYY-MM-DD, M/D/YY, M-D-YY and M/D/YYYY (two-digit years are
    20xx). Returns None for anything else, including impossible dates
    like 2/30/26.
    """
    value = (text or "").strip()

    m = _ISO_DATE_RE.match(value)
    if m:
        year, month, day = (int(g) for g in m.groups())
    else:
        m = _SHORT_DATE_RE.match(value)
        if not m:
            return None
        month, day, year = (int(g) for g in m.groups())
        if year < 100:
            year += 2000

    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_run_number(text: str) -> Optional[int]:
    """'#2100' or '2100' -> 2100."""
    m = _RUN_NUMBER_RE.match((text or "").strip())
    return int(m.group(1)) if m else None


# =============================================================================
# Matching
# =============================================================================

def _find_exact(name: str, roster: list[RosterEntry]) -> Optional[RosterEntry]:
    target = name.strip().lower()
    for entry in roster:
        for candidate in (entry.hash_name, entry.nerd_name):
            if candidate and candidate.strip().lower() == target:
                return entry
    return None


def _find_fuzzy(
    name: str,
    roster: list[RosterEntry],
    threshold: float,
) -> Optional[tuple[RosterEntry, float]]:
    best: Optional[tuple[RosterEntry, float]] = None
    for entry in roster:
        scores = [score(name, n) for n in (entry.hash_name, entry.nerd_name) if n]
        entry_score = max(scores, default=0.0)
        if entry_score >= threshold and (best is None or entry_score > best[1]):
            best = (entry, entry_score)
    return best


def match_hasher_names(
    csv_names: list[str],
    roster: list[RosterEntry],
    threshold: Optional[float] = None,
) -> tuple[list[HasherMatch], list[str]]:
    """
    Match CSV names to roster entries.

    Exact case-insensitive match on hash name or nerd name first, then the
    best fuzzy match at or above `threshold`.

    Returns:
        (matched, unmatched_names)
    """
    if threshold is None:
        threshold = settings.csv_fuzzy_threshold

    matched: list[HasherMatch] = []
    unmatched: list[str] = []
    for name in csv_names:
        exact = _find_exact(name, roster)
        if exact is not None:
            matched.append(HasherMatch(name, exact.id, "exact", 1.0))
            continue

        fuzzy = _find_fuzzy(name, roster, threshold)
        if fuzzy is not None:
            entry, entry_score = fuzzy
            matched.append(HasherMatch(name, entry.id, "fuzzy", entry_score))
        else:
            unmatched.append(name)
    return matched, unmatched


def match_column_headers(
    headers: list[str],
    events: list[EventLookup],
    data_start_column: int,
) -> tuple[list[EventMatch], list[str]]:
    """
    Match column headers to events: as a date first, then as a run number.

    Blank headers are ignored. Returns (matched, unmatched_headers).
    """
    by_date = {}
    by_run = {}
    for event in events:
        by_date.setdefault(event.date, event)
        if event.run_number is not None:
            by_run.setdefault(event.run_number, event)

    matched: list[EventMatch] = []
    unmatched: list[str] = []
    for offset, raw_header in enumerate(headers):
        header = raw_header.strip()
        if not header:
            continue
        column_index = data_start_column + offset

        event = None
        header_date = try_parse_date(header)
        if header_date is not None:
            event = by_date.get(header_date)
        if event is None:
            run_number = parse_run_number(header)
            if run_number is not None:
                event = by_run.get(run_number)

        if event is None:
            unmatched.append(header)
        else:
            matched.append(EventMatch(column_index, header, event.id, event.date))
    return matched, unmatched


def build_import_records(
    parsed: ParsedCSV,
    hasher_matches: list[HasherMatch],
    event_matches: list[EventMatch],
    markers: Optional[CellMarkers],
    data_start_column: int,
    existing_attendance: set[tuple[int, int]],
) -> tuple[list[AttendanceImportRecord], int]:
    """
    Cross matched names with matched columns and read each cell.

    Pairs already in `existing_attendance` (kennel_hasher_id, event_id)
    are counted as duplicates instead of emitted. A pair repeated within
    the file is emitted once.

    Returns:
        (records, duplicate_count)
    """
    hasher_by_name = {m.csv_name.strip().lower(): m.kennel_hasher_id for m in hasher_matches}
    event_by_column = {m.column_index: m.event_id for m in event_matches}

    records: list[AttendanceImportRecord] = []
    seen: set[tuple[int, int]] = set()
    duplicate_count = 0

    for row in parsed.data_rows:
        hasher_id = hasher_by_name.get(row.name.strip().lower())
        if hasher_id is None:
            continue

        for offset, cell in enumerate(row.cells):
            event_id = event_by_column.get(data_start_column + offset)
            if event_id is None:
                continue

            flags = parse_cell_value(cell, markers)
            if not flags.attended:
                continue

            key = (hasher_id, event_id)
            if key in existing_attendance:
                duplicate_count += 1
                continue
            if key in seen:
                continue
            seen.add(key)
            records.append(AttendanceImportRecord(hasher_id, event_id, flags.paid, flags.hared))

    return records, duplicate_count


# =============================================================================
# Database Helpers
# =============================================================================

def load_roster(session: Session, kennel_id: int) -> tuple[int, list[RosterEntry]]:
    """
    Roster entries shared by the kennel's roster group.

    Raises:
        RosterNotFoundError: the kennel is not in a roster group
    """
    group_id = session.scalar(
        select(RosterGroupKennel.group_id).where(RosterGroupKennel.kennel_id == kennel_id)
    )
    if group_id is None:
        raise RosterNotFoundError(f"Kennel {kennel_id} has no roster group")

    hashers = session.scalars(
        select(KennelHasher).where(KennelHasher.roster_group_id == group_id).order_by(KennelHasher.id)
    ).all()
    return group_id, [RosterEntry(h.id, h.hash_name, h.nerd_name) for h in hashers]


def load_events(session: Session, kennel_id: int) -> list[EventLookup]:
    """All of the kennel's events; imports are not limited to a date window."""
    rows = session.execute(
        select(Event.id, Event.date, Event.run_number)
        .where(Event.kennel_id == kennel_id)
        .order_by(Event.date)
    ).all()
    return [EventLookup(row.id, row.date, row.run_number) for row in rows]


def load_existing_attendance(session: Session, kennel_id: int) -> set[tuple[int, int]]:
    """(kennel_hasher_id, event_id) pairs already recorded for the kennel's events."""
    rows = session.execute(
        select(KennelAttendance.kennel_hasher_id, KennelAttendance.event_id)
        .join(Event, Event.id == KennelAttendance.event_id)
        .where(Event.kennel_id == kennel_id)
    ).all()
    return {(row.kennel_hasher_id, row.event_id) for row in rows}


def import_attendance_csv(
    session: Session,
    kennel_id: int,
    csv_text: str,
    layout: Optional[CSVLayout] = None,
    markers: Optional[CellMarkers] = None,
    threshold: Optional[float] = None,
) -> CSVImportResult:
    """
    Reconcile a CSV against the kennel's roster and events.

    Read-only: the returned records are what persist_import_records()
    would insert.

    Raises:
        RosterNotFoundError: the kennel is not in a roster group
    """
    layout = layout or CSVLayout()
    parsed = parse_attendance_csv(csv_text, layout)

    group_id, roster = load_roster(session, kennel_id)
    matched_hashers, unmatched_hashers = match_hasher_names(parsed.hasher_names, roster, threshold)

    events = load_events(session, kennel_id)
    matched_events, unmatched_columns = match_column_headers(
        parsed.headers, events, layout.data_start_column
    )

    records, duplicate_count = build_import_records(
        parsed,
        matched_hashers,
        matched_events,
        markers,
        layout.data_start_column,
        load_existing_attendance(session, kennel_id),
    )

    logger.info(
        "CSV import for kennel %s: %d/%d hashers matched, %d/%d columns matched, "
        "%d records, %d duplicates",
        kennel_id, len(matched_hashers), len(parsed.hasher_names),
        len(matched_events), len(matched_events) + len(unmatched_columns),
        len(records), duplicate_count,
    )
    return CSVImportResult(
        roster_group_id=group_id,
        matched_hashers=matched_hashers,
        unmatched_hashers=unmatched_hashers,
        matched_events=matched_events,
        unmatched_columns=unmatched_columns,
        records=records,
        duplicate_count=duplicate_count,
    )


def create_roster_entries(
    session: Session,
    names: list[str],
    roster_group_id: int,
    kennel_id: int,
) -> list[KennelHasher]:
    """Add roster entries for names the import could not match."""
    created = []
    for name in names:
        hasher = KennelHasher(roster_group_id=roster_group_id, kennel_id=kennel_id, hash_name=name)
        session.add(hasher)
        created.append(hasher)
    session.flush()
    logger.info("Created %d roster entries in group %s", len(created), roster_group_id)
    return created


def persist_import_records(
    session: Session,
    records: list[AttendanceImportRecord],
    recorded_by: Optional[str] = None,
) -> int:
    """
    Insert attendance records, skipping pairs that already exist.

    Does not commit. Returns the number of rows inserted.
    """
    inserted = 0
    for record in records:
        try:
            with session.begin_nested():
                session.add(
                    KennelAttendance(
                        kennel_hasher_id=record.kennel_hasher_id,
                        event_id=record.event_id,
                        paid=record.paid,
                        hared=record.hared,
                        recorded_by=recorded_by,
                    )
                )
                session.flush()
        except IntegrityError:
            logger.debug(
                "Attendance for hasher %s at event %s already exists",
                record.kennel_hasher_id, record.event_id,
            )
            continue
        inserted += 1
    return inserted
