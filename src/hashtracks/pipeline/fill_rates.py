"""
Field fill rates for a batch of scraped events.

A fill rate is the percentage (0-100, rounded) of events in a scrape
that have a field populated. Stored per scrape log and compared against
the rolling baseline to spot a source that silently stopped providing
a field (FIELD_FILL_DROP).
"""

from dataclasses import asdict, dataclass

from hashtracks.pipeline.adapters import RawEventData


# Fields tracked, in the order they appear in alerts
FILL_RATE_FIELDS = ("title", "location", "hares", "start_time", "run_number")


@dataclass
class FieldFillRates:
    title: int = 0
    location: int = 0
    hares: int = 0
    start_time: int = 0
    run_number: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _percent(count: int, total: int) -> int:
    # Half rounds up (round() would round half to even)
    return int(count * 100 / total + 0.5)


def compute_fill_rates(events: list[RawEventData]) -> FieldFillRates:
    """Compute fill rates; an empty batch is all zeros."""
    total = len(events)
    if total == 0:
        return FieldFillRates()

    return FieldFillRates(
        title=_percent(sum(1 for e in events if e.title), total),
        location=_percent(sum(1 for e in events if e.location), total),
        hares=_percent(sum(1 for e in events if e.hares), total),
        start_time=_percent(sum(1 for e in events if e.start_time), total),
        run_number=_percent(sum(1 for e in events if e.run_number is not None), total),
    )
