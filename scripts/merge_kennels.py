#!/usr/bin/env python3
"""
Merge a duplicate kennel into another.

Without --execute only the preview is printed (dependent row counts and
blocking conflicts). Kennels can be given by ID or by kennel code.

Usage:
  python scripts/merge_kennels.py BRH3-OLD BRH3
  python scripts/merge_kennels.py 17 4 --execute
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy import func, select

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hashtracks.db.models import Kennel
from hashtracks.db.session import get_session
from hashtracks.kennels.merge import KennelMergeService


def _lookup_kennel_id(session, ref: str) -> Optional[int]:
    if ref.isdigit():
        return int(ref)
    return session.scalar(select(Kennel.id).where(func.lower(Kennel.kennel_code) == ref.lower()))


def main() -> int:
    parser = argparse.ArgumentParser(description="Merge one kennel into another")
    parser.add_argument("source", help="Kennel to merge away (ID or kennel code)")
    parser.add_argument("target", help="Kennel that survives (ID or kennel code)")
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Perform the merge (default: preview only)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    with get_session() as session:
        source_id = _lookup_kennel_id(session, args.source)
        target_id = _lookup_kennel_id(session, args.target)
        if source_id is None or target_id is None:
            missing = args.source if source_id is None else args.target
            print(f"Kennel not found: {missing}", file=sys.stderr)
            return 1

        service = KennelMergeService(session)
        result = service.merge(source_id, target_id, preview=True)
        if not result.success:
            print(f"Error: {result.error}", file=sys.stderr)
            return 1

        preview = result.preview
        print(f"Merge {preview.source['short_name']} (id={preview.source['id']}) "
              f"-> {preview.target['short_name']} (id={preview.target['id']})")
        for name, count in preview.counts.items():
            print(f"  {name:<16} {count}")

        if preview.conflicts:
            print("\nConflicts (resolve manually before merging):")
            for conflict in preview.conflicts:
                print(f"  - {conflict.message}: {', '.join(conflict.details)}")
            return 1

        if not args.execute:
            print("\nPreview only. Re-run with --execute to merge.")
            return 0

        result = service.merge(source_id, target_id, preview=False)
        if not result.success:
            print(f"Error: {result.error}", file=sys.stderr)
            return 1

    print("\nMerge complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
