#!/usr/bin/env python3
"""
Scrape enabled sources and merge their events.

Each source runs in its own scrape_source() call, so one failing source
never stops the others. Failures are recorded as alerts on the source.

Usage:
  python scripts/scrape_sources.py                  # all enabled sources
  python scripts/scrape_sources.py --source 12      # one source
  python scripts/scrape_sources.py --source 12 --force --days 30
"""

import argparse
import logging
import sys
from pathlib import Path

from sqlalchemy import select

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hashtracks.alerts.service import AlertService
from hashtracks.config import settings
from hashtracks.db.models import Source
from hashtracks.db.session import get_session
from hashtracks.pipeline.scrape import SourceNotFoundError, scrape_source

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Scrape sources and merge events")
    parser.add_argument(
        "--source",
        type=int,
        action="append",
        default=None,
        help="Source ID to scrape (repeatable; default: every enabled source)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Reprocess raw events that were already merged",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help=f"Window in days either side of today (default: per source, then {settings.scrape_default_days})",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    failures = 0
    with get_session() as session:
        # Snoozes that ran out should be visible to this run's dedupe
        AlertService(session, actor="scheduler").wake_expired_snoozes()

        source_ids = args.source or list(
            session.scalars(select(Source.id).where(Source.enabled.is_(True)).order_by(Source.id))
        )
        if not source_ids:
            print("No enabled sources.")
            return 0

        for source_id in source_ids:
            try:
                result = scrape_source(session, source_id, force=args.force, days=args.days)
            except SourceNotFoundError as e:
                print(f"[source {source_id}] {e}", file=sys.stderr)
                failures += 1
                continue

            print(f"[source {source_id}] {result.summary()}")
            if not result.success:
                failures += 1

    print(f"\n{len(source_ids) - failures}/{len(source_ids)} source(s) scraped successfully")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
