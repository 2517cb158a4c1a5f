#!/usr/bin/env python3
"""
Import attendance from a CSV matrix into kennel_attendance.

Expected CSV format:
  Name,1/15/26,1/22/26,#2100
  Alice,X,P,
  Bob,,X,H

Usage:
  python scripts/import_attendance_csv.py --file data/attendance.csv --kennel NYCH3 --dry-run
  python scripts/import_attendance_csv.py --file data/attendance.csv --kennel NYCH3 \\
      --recorded-by misman@example.com --create-hashers
"""

import argparse
import logging
import sys
from pathlib import Path

from sqlalchemy import func, select

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hashtracks.config import settings
from hashtracks.db.models import Kennel
from hashtracks.db.session import get_session
from hashtracks.roster.csv_import import (
    CSVLayout,
    RosterNotFoundError,
    create_roster_entries,
    import_attendance_csv,
    persist_import_records,
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Import attendance from a CSV matrix")
    parser.add_argument("--file", required=True, type=Path, help="Path to the CSV file")
    parser.add_argument("--kennel", required=True, help="Kennel short name or kennel code")
    parser.add_argument("--dry-run", action="store_true", help="Preview without writing")
    parser.add_argument(
        "--create-hashers",
        action="store_true",
        help="Create roster entries for names that match nobody",
    )
    parser.add_argument("--recorded-by", default=None, help="Who is importing (stored on each record)")
    parser.add_argument("--name-column", type=int, default=0, help="Column index for names (default: 0)")
    parser.add_argument("--data-start-column", type=int, default=1, help="First data column (default: 1)")
    parser.add_argument("--header-row", type=int, default=0, help="Row index of headers (default: 0)")
    parser.add_argument("--data-start-row", type=int, default=1, help="First data row (default: 1)")
    parser.add_argument(
        "--threshold",
        type=float,
        default=settings.csv_fuzzy_threshold,
        help=f"Fuzzy name match threshold 0-1 (default: {settings.csv_fuzzy_threshold})",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.file.exists():
        print(f"File not found: {args.file}", file=sys.stderr)
        return 1

    csv_text = args.file.read_text(encoding="utf-8-sig")
    layout = CSVLayout(
        name_column=args.name_column,
        header_row=args.header_row,
        data_start_row=args.data_start_row,
        data_start_column=args.data_start_column,
    )

    with get_session() as session:
        kennel = session.scalar(
            select(Kennel)
            .where(
                (func.lower(Kennel.short_name) == args.kennel.lower())
                | (func.lower(Kennel.kennel_code) == args.kennel.lower())
            )
            .order_by(Kennel.id)
            .limit(1)
        )
        if kennel is None:
            print(f"Kennel \"{args.kennel}\" not found.", file=sys.stderr)
            return 1

        try:
            result = import_attendance_csv(session, kennel.id, csv_text, layout, threshold=args.threshold)
        except RosterNotFoundError as e:
            print(str(e), file=sys.stderr)
            return 1

        print(f"Kennel: {kennel.short_name} (id={kennel.id})")
        print(result.summary())

        for name in result.unmatched_hashers:
            print(f"  unmatched name:   {name}")
        for match in result.fuzzy_matches:
            print(f"  fuzzy:            \"{match.csv_name}\" -> hasher {match.kennel_hasher_id} "
                  f"(score {match.match_score:.2f})")
        for header in result.unmatched_columns:
            print(f"  unmatched column: {header}")

        if args.dry_run:
            print("\n[DRY RUN] No changes written.")
            return 0

        if args.create_hashers and result.unmatched_hashers:
            create_roster_entries(session, result.unmatched_hashers, result.roster_group_id, kennel.id)
            result = import_attendance_csv(session, kennel.id, csv_text, layout, threshold=args.threshold)

        if not result.records:
            print("\nNothing to import.")
            return 0

        inserted = persist_import_records(session, result.records, recorded_by=args.recorded_by)
        print(f"\nImported {inserted} attendance record(s).")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
