"""
Merge pipeline: raw adapter records -> canonical events.

For each RawEventData from an adapter:
1. Fingerprint it; an already processed fingerprint is skipped unless
   the run is forced
2. Store an immutable RawEvent (reused when the fingerprint was seen
   before but never landed)
3. Resolve the kennel tag; unresolved tags are collected for the
   UNMATCHED_TAGS alert and the record is left unprocessed
4. Source-kennel guard: a tag that resolves to a kennel not linked to
   this source is blocked (SOURCE_KENNEL_MISMATCH)
5. Find the canonical event by (kennel, run_number) when a run number is
   present, falling back to (kennel, date); create it if absent, otherwise
   update changed fields when the source's trust level is at least the
   event's. The first source's URL stays on the event; other sources'
   URLs are kept as EventLink rows

Each record runs inside its own SAVEPOINT, so one bad record is rolled
back and counted without affecting the rest of the batch.

Usage:
    resolver = TagResolver(session)
    result = process_raw_events(session, source, scrape_result.events, resolver)
    session.commit()
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hashtracks.config import settings
from hashtracks.db.models import Event, EventLink, RawEvent, Source, SourceKennel
from hashtracks.kennels.resolver import TagResolver
from hashtracks.pipeline.adapters import RawEventData
from hashtracks.pipeline.fingerprint import generate_fingerprint

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Counters and tag lists from one merge batch."""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    unmatched: list[str] = field(default_factory=list)
    blocked: int = 0
    blocked_tags: list[str] = field(default_factory=list)
    event_errors: int = 0
    event_error_messages: list[str] = field(default_factory=list)
    # Canonical event IDs touched (created or updated) in this batch
    event_ids: set[int] = field(default_factory=set)

    def summary(self) -> str:
        """Return a human-readable summary of the merge."""
        lines = [
            "Merge complete:",
            f"  Created:    {self.created}",
            f"  Updated:    {self.updated}",
            f"  Skipped:    {self.skipped}",
            f"  Unmatched:  {len(self.unmatched)} tag(s)",
            f"  Blocked:    {self.blocked} event(s)",
        ]
        if self.event_errors:
            lines.append(f"  Errors: {self.event_errors}")
            for err in self.event_error_messages[:5]:
                lines.append(f"    - {err}")
        return "\n".join(lines)


# Fields copied from a raw record onto the canonical event
def _event_values(data: RawEventData, event_date: date, trust_level: int) -> dict:
    return {
        "date": event_date,
        "run_number": data.run_number,
        "title": data.title,
        "description": data.description,
        "hares_text": data.hares,
        "location_name": data.location,
        "location_address": data.location_url,
        "start_time": data.start_time,
        "source_url": data.source_url,
        "trust_level": trust_level,
    }


def parse_event_date(value: str) -> date:
    """
    Parse an adapter's ISO date ("2024-01-15").

    Raises:
        ValueError: not a valid calendar date
    """
    return date.fromisoformat(value.strip()[:10])


def process_raw_events(
    session: Session,
    source: Source,
    events: list[RawEventData],
    resolver: TagResolver,
    force: bool = False,
) -> MergeResult:
    """
    Merge a batch of raw events from one source.

    Nothing is committed here; the caller owns the outer transaction.

    Args:
        session: SQLAlchemy session
        source: Source the batch came from
        events: Adapter output
        resolver: Tag resolver for this operation (its cache is cleared first)
        force: Reprocess records whose fingerprint was already merged

    Returns:
        MergeResult with counts, unmatched/blocked tags and capped errors
    """
    result = MergeResult()
    trust_level = source.trust_level if source.trust_level is not None else 5
    linked_kennel_ids = set(
        session.scalars(select(SourceKennel.kennel_id).where(SourceKennel.source_id == source.id))
    )

    resolver.clear_cache()

    for data in events:
        try:
            with session.begin_nested():
                _merge_one(session, source, data, resolver, trust_level, linked_kennel_ids, force, result)
        except Exception as e:
            msg = f"{data.date}/{data.kennel_tag}: {e}"
            logger.error("Merge error for source %s: %s", source.name, msg)
            result.event_errors += 1
            if len(result.event_error_messages) < settings.scrape_error_message_cap:
                result.event_error_messages.append(msg)

    logger.info(
        "Merged %d raw event(s) from %s: %d created, %d updated, %d skipped, "
        "%d unmatched tag(s), %d blocked, %d error(s)",
        len(events), source.name, result.created, result.updated, result.skipped,
        len(result.unmatched), result.blocked, result.event_errors,
    )
    return result


def _merge_one(
    session: Session,
    source: Source,
    data: RawEventData,
    resolver: TagResolver,
    trust_level: int,
    linked_kennel_ids: set[int],
    force: bool,
    result: MergeResult,
) -> None:
    """Merge a single raw record (runs inside a SAVEPOINT)."""
    fingerprint = generate_fingerprint(data)

    raw = session.scalar(
        select(RawEvent)
        .where(RawEvent.source_id == source.id, RawEvent.fingerprint == fingerprint)
        .order_by(RawEvent.id.desc())
        .limit(1)
    )
    if raw is not None and raw.processed and not force:
        result.skipped += 1
        return

    event_date = parse_event_date(data.date)

    if raw is None:
        raw = RawEvent(
            source_id=source.id,
            raw_data=data.to_dict(),
            fingerprint=fingerprint,
            processed=False,
        )
        session.add(raw)
        session.flush()

    resolution = resolver.resolve(data.kennel_tag, source_id=source.id)
    if not resolution.matched:
        if data.kennel_tag not in result.unmatched:
            result.unmatched.append(data.kennel_tag)
        return

    kennel_id = resolution.kennel_id
    if kennel_id not in linked_kennel_ids:
        result.blocked += 1
        if data.kennel_tag not in result.blocked_tags:
            result.blocked_tags.append(data.kennel_tag)
        logger.debug(
            "Blocked %r from %s: kennel %s not linked to source",
            data.kennel_tag, source.name, kennel_id,
        )
        return

    event, displaced = _find_event(session, kennel_id, data.run_number, event_date)
    values = _event_values(data, event_date, trust_level)

    created = event is None
    if created:
        event = Event(kennel_id=kennel_id, status="CONFIRMED", **values)
        session.add(event)
        session.flush()
    else:
        if trust_level >= (event.trust_level or 0):
            if displaced is not None:
                _move_run_number(displaced, values, trust_level)
            _apply_changes(event, values)
            session.flush()
        _add_source_link(session, event, data.source_url, source.id)

    raw.processed = True
    raw.event_id = event.id
    session.flush()

    if created:
        result.created += 1
    else:
        result.updated += 1
    result.event_ids.add(event.id)


def _find_event(
    session: Session,
    kennel_id: int,
    run_number: Optional[int],
    event_date: date,
) -> tuple[Optional[Event], Optional[Event]]:
    """
    Locate the canonical event for a raw record.

    A run-number match wins unless moving it to the new date would collide
    with another event the kennel already has on that date; then the
    event on that date is used, and the run-number match comes back as
    the second item so the caller can take its run number away.

    Returns:
        (event or None, displaced run-number match or None)
    """
    on_date = session.scalar(
        select(Event).where(Event.kennel_id == kennel_id, Event.date == event_date)
    )
    if run_number is None:
        return on_date, None

    by_run = session.scalar(
        select(Event)
        .where(Event.kennel_id == kennel_id, Event.run_number == run_number)
        .order_by(Event.id)
        .limit(1)
    )
    if by_run is None:
        return on_date, None
    if on_date is not None and on_date.id != by_run.id:
        return on_date, by_run
    return by_run, None


def _move_run_number(displaced: Event, values: dict, trust_level: int) -> None:
    """
    Keep a run number on one event per kennel.

    The run number moves to the event being updated when the source is
    trusted at least as much as the event that holds it; otherwise the
    update leaves the run number alone.
    """
    if trust_level >= (displaced.trust_level or 0):
        logger.info(
            "Run %s moves from event %s (%s) to %s",
            displaced.run_number, displaced.id, displaced.date, values["date"],
        )
        displaced.run_number = None
    else:
        values["run_number"] = None


def _apply_changes(event: Event, values: dict) -> bool:
    """
    Copy changed fields onto an event.

    run_number and start_time keep their existing value when the new
    record has none; source_url keeps the first source's URL once set
    (see _add_source_link). Other text fields follow the source.
    A cancelled event that shows up again is confirmed.
    """
    changed = False
    for name, value in values.items():
        if value is None and name in ("run_number", "start_time", "source_url"):
            continue
        if name == "source_url" and event.source_url:
            continue
        if getattr(event, name) != value:
            setattr(event, name, value)
            changed = True

    if event.status == "CANCELLED":
        event.status = "CONFIRMED"
        changed = True
    return changed


def _add_source_link(
    session: Session,
    event: Event,
    url: Optional[str],
    source_id: int,
) -> None:
    """Record another source's URL for an event, once per (event, url)."""
    if not url or not event.source_url or url == event.source_url:
        return

    exists = session.scalar(
        select(EventLink.id).where(EventLink.event_id == event.id, EventLink.url == url)
    )
    if exists is not None:
        return

    try:
        with session.begin_nested():
            session.add(EventLink(event_id=event.id, url=url, label="Source", source_id=source_id))
            session.flush()
    except IntegrityError:
        logger.debug("Link %s for event %s already recorded", url, event.id)
