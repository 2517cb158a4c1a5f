"""
Source adapter contract and common data structures.

An adapter knows how to read one kind of source (an HTML page, a shared
calendar, a spreadsheet) and turn it into RawEventData records. Adapters
do no kennel resolution and no database writes; everything after fetch()
is handled by the merge pipeline.

Key pieces:
- RawEventData: one event exactly as the source described it
- ScrapeResult: everything a single fetch produced, including errors
- SourceAdapter: abstract base class every adapter implements
- AdapterRegistry: maps Source.type (and optionally URL) to an adapter
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from hashtracks.db.models import Source

logger = logging.getLogger(__name__)


@dataclass
class RawEventData:
    """
    One event as extracted from a source, before kennel resolution.

    All fields are plain strings/ints exactly as parsed; validation and
    type conversion happen during merge.
    """

    # Required fields
    # ===============

    date: str  # ISO format: "2024-01-15"
    kennel_tag: str  # Raw kennel identifier from the source ("NYCH3", "Brooklyn")

    # Optional fields
    # ===============

    run_number: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    hares: Optional[str] = None
    location: Optional[str] = None
    location_url: Optional[str] = None
    start_time: Optional[str] = None  # HH:MM, local time
    source_url: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    def __repr__(self) -> str:
        return f"<RawEventData({self.kennel_tag} on {self.date}, run={self.run_number})>"


@dataclass
class ScrapeResult:
    """
    Output of a single adapter fetch.

    errors holds human-readable messages; error_details may carry a
    structured breakdown ({'fetch': [...], 'parse': [...]}) for alerts.
    """
    events: list[RawEventData] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    structure_hash: Optional[str] = None
    error_details: Optional[dict] = None

    def __repr__(self) -> str:
        return f"<ScrapeResult(events={len(self.events)}, errors={len(self.errors)})>"


class SourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    Subclasses implement fetch() for one source type. Network or parse
    problems that affect individual records go in ScrapeResult.errors;
    an exception from fetch() means the whole source could not be read.
    """

    # Source.type handled by this adapter ('HTML_SCRAPER', 'GOOGLE_CALENDAR', ...)
    source_type: str = ""

    @abstractmethod
    def fetch(self, source: Source, days: int) -> ScrapeResult:
        """
        Fetch events from a source.

        Args:
            source: Source row (url and config describe where to read)
            days: Window size; adapters should return events within
                  this many days before and after today

        Returns:
            ScrapeResult with the extracted events and any errors
        """
        pass


class AdapterNotFoundError(LookupError):
    """No adapter is registered for a source type."""
    pass


AdapterFactory = Callable[[], SourceAdapter]


class AdapterRegistry:
    """
    Maps source types to adapter factories.

    HTML sources often need a site-specific adapter, so URL patterns can be
    registered per type and are checked before the type's default adapter.

    Usage:
        registry = AdapterRegistry()
        registry.register("GOOGLE_CALENDAR", GoogleCalendarAdapter)
        registry.register_url("HTML_SCRAPER", r"hashphilly", HashPhillyAdapter)

        adapter = registry.get(source.type, source.url)
    """

    def __init__(self):
        self._by_type: dict[str, AdapterFactory] = {}
        self._by_url: dict[str, list[tuple[re.Pattern, AdapterFactory]]] = {}

    def register(self, source_type: str, factory: AdapterFactory) -> None:
        self._by_type[source_type] = factory

    def register_url(self, source_type: str, url_pattern: str, factory: AdapterFactory) -> None:
        compiled = re.compile(url_pattern, re.IGNORECASE)
        self._by_url.setdefault(source_type, []).append((compiled, factory))

    def get(self, source_type: str, url: Optional[str] = None) -> SourceAdapter:
        """
        Instantiate the adapter for a source.

        Raises:
            AdapterNotFoundError: nothing registered for this type/url
        """
        if url:
            for pattern, factory in self._by_url.get(source_type, []):
                if pattern.search(url):
                    return factory()

        factory = self._by_type.get(source_type)
        if factory is None:
            raise AdapterNotFoundError(f"Adapter not implemented for source type: {source_type}")
        return factory()

    def types(self) -> list[str]:
        return sorted(set(self._by_type) | set(self._by_url))


# Process-wide registry used when callers don't pass their own
default_registry = AdapterRegistry()
