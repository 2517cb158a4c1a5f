"""
Stale event reconciliation.

When a kennel cancels a run, most sources simply stop listing it. After a
successful scrape, events that this source alone reported and that are
no longer in its output are marked CANCELLED. Events are never deleted.

An event is cancelled only when it:
- belongs to a kennel linked to this source
- falls inside the scrape window (today +/- days)
- is CONFIRMED and not a manual entry
- was not returned by the current scrape
- has no raw events from any other source
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from hashtracks.db.models import Event, RawEvent, SourceKennel
from hashtracks.kennels.resolver import TagResolver
from hashtracks.pipeline.adapters import RawEventData
from hashtracks.pipeline.merge import parse_event_date

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    cancelled: int = 0
    cancelled_event_ids: list[int] = field(default_factory=list)


def reconcile_stale_events(
    session: Session,
    source_id: int,
    scraped_events: list[RawEventData],
    days: int,
    resolver: TagResolver,
    today: Optional[date] = None,
) -> ReconcileResult:
    """
    Cancel sole-source events that disappeared from a source.

    Args:
        session: SQLAlchemy session (caller commits)
        source_id: Source that was just scraped
        scraped_events: Everything the adapter returned this run
        days: Scrape window in days either side of today
        resolver: Resolver used for the merge (its cache is reused)
        today: Override for the window centre (tests)

    Returns:
        ReconcileResult with the cancelled event IDs
    """
    linked_kennel_ids = list(
        session.scalars(select(SourceKennel.kennel_id).where(SourceKennel.source_id == source_id))
    )
    if not linked_kennel_ids:
        return ReconcileResult()

    scraped_keys = set()
    for data in scraped_events:
        resolution = resolver.resolve(data.kennel_tag, source_id=source_id)
        if not resolution.matched:
            continue
        try:
            scraped_keys.add((resolution.kennel_id, parse_event_date(data.date)))
        except ValueError:
            continue

    today = today or date.today()
    window_start = today - timedelta(days=days)
    window_end = today + timedelta(days=days)

    candidates = session.execute(
        select(Event.id, Event.kennel_id, Event.date).where(
            Event.kennel_id.in_(linked_kennel_ids),
            Event.date >= window_start,
            Event.date <= window_end,
            Event.status == "CONFIRMED",
            Event.is_manual_entry.is_(False),
        )
    ).all()

    orphaned = [row.id for row in candidates if (row.kennel_id, row.date) not in scraped_keys]
    if not orphaned:
        return ReconcileResult()

    shared = set(
        session.scalars(
            select(RawEvent.event_id).where(
                RawEvent.event_id.in_(orphaned),
                RawEvent.source_id != source_id,
            )
        )
    )
    cancelled = [event_id for event_id in orphaned if event_id not in shared]

    if cancelled:
        session.execute(
            update(Event)
            .where(Event.id.in_(cancelled))
            .values(status="CANCELLED")
            .execution_options(synchronize_session="fetch")
        )
        logger.info("Cancelled %d stale event(s) for source %s", len(cancelled), source_id)

    return ReconcileResult(cancelled=len(cancelled), cancelled_event_ids=cancelled)
