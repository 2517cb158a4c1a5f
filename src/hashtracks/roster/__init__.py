"""
Roster tools.

- csv_import: Reconcile an attendance spreadsheet against a kennel's
  roster group and events
"""

from hashtracks.roster.csv_import import (
    CellMarkers,
    CSVImportResult,
    CSVLayout,
    RosterNotFoundError,
    import_attendance_csv,
    persist_import_records,
)

__all__ = [
    "CellMarkers",
    "CSVImportResult",
    "CSVLayout",
    "RosterNotFoundError",
    "import_attendance_csv",
    "persist_import_records",
]
