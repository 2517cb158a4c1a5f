"""
Pytest configuration and fixtures.

This file is automatically loaded by pytest and provides shared fixtures
for all tests.

Every test gets a fresh in-memory SQLite database. The services commit
and use SAVEPOINTs, so the pysqlite driver is switched to explicit
transaction control (SQLAlchemy's documented recipe) and foreign keys
are enforced.
"""

from datetime import date, datetime
from typing import Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hashtracks.config import settings
from hashtracks.db.models import (
    Base,
    Event,
    Kennel,
    KennelAlias,
    KennelHasher,
    RosterGroup,
    RosterGroupKennel,
    ScrapeLog,
    Source,
    SourceKennel,
)
from hashtracks.kennels.service import to_kennel_code, to_slug
from hashtracks.pipeline.adapters import AdapterRegistry, RawEventData, ScrapeResult, SourceAdapter


@pytest.fixture
def test_engine():
    """In-memory SQLite engine shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def no_issue_tracker(monkeypatch):
    """Never reach the real issue tracker, even when GITHUB_TOKEN is set."""
    monkeypatch.setattr(settings, "github_token", None)


@pytest.fixture
def db_session(test_engine):
    """A session configured like SessionLocal, on the test database."""
    Session = sessionmaker(bind=test_engine, autoflush=False)
    session = Session()
    yield session
    session.close()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_kennel(db_session):
    def _make(short_name: str, region: str = "New York", aliases: tuple = (), **kwargs) -> Kennel:
        kennel = Kennel(
            short_name=short_name,
            kennel_code=kwargs.pop("kennel_code", to_kennel_code(short_name)),
            slug=kwargs.pop("slug", to_slug(short_name)),
            full_name=kwargs.pop("full_name", f"{short_name} Hash House Harriers"),
            region=region,
            **kwargs,
        )
        db_session.add(kennel)
        db_session.flush()
        for alias in aliases:
            db_session.add(KennelAlias(kennel_id=kennel.id, alias=alias))
        db_session.flush()
        return kennel
    return _make


@pytest.fixture
def make_source(db_session):
    def _make(
        name: str = "Test Calendar",
        type: str = "FAKE",
        trust_level: int = 5,
        config: Optional[dict] = None,
        kennels: tuple = (),
    ) -> Source:
        source = Source(
            name=name,
            url=f"https://example.com/{name.lower().replace(' ', '-')}",
            type=type,
            trust_level=trust_level,
            config=config,
        )
        db_session.add(source)
        db_session.flush()
        for kennel in kennels:
            db_session.add(SourceKennel(source_id=source.id, kennel_id=kennel.id))
        db_session.flush()
        return source
    return _make


@pytest.fixture
def make_event(db_session):
    def _make(kennel: Kennel, on: date, **kwargs) -> Event:
        event = Event(kennel_id=kennel.id, date=on, **kwargs)
        db_session.add(event)
        db_session.flush()
        return event
    return _make


@pytest.fixture
def make_roster(db_session):
    def _make(kennel: Kennel, names: list) -> list:
        group = RosterGroup(name=f"{kennel.short_name} roster")
        db_session.add(group)
        db_session.flush()
        db_session.add(RosterGroupKennel(group_id=group.id, kennel_id=kennel.id))
        hashers = []
        for name in names:
            hash_name, nerd_name = name if isinstance(name, tuple) else (name, None)
            hasher = KennelHasher(
                roster_group_id=group.id,
                kennel_id=kennel.id,
                hash_name=hash_name,
                nerd_name=nerd_name,
            )
            db_session.add(hasher)
            hashers.append(hasher)
        db_session.flush()
        return hashers
    return _make


@pytest.fixture
def make_scrape_logs(db_session):
    """Successful baseline runs, oldest first."""
    def _make(source: Source, counts: list, **kwargs) -> list:
        logs = []
        for i, count in enumerate(counts):
            log = ScrapeLog(
                source_id=source.id,
                status=kwargs.get("status", "SUCCESS"),
                started_at=datetime(2026, 1, 1, 12, 0, i),
                events_found=count,
                unmatched_tags=kwargs.get("unmatched_tags", []),
                blocked_tags=[],
                errors=[],
                fill_rate_title=kwargs.get("fill_rate_title", 100),
                fill_rate_location=kwargs.get("fill_rate_location", 100),
                fill_rate_hares=kwargs.get("fill_rate_hares", 80),
                fill_rate_start_time=kwargs.get("fill_rate_start_time", 90),
                fill_rate_run_number=kwargs.get("fill_rate_run_number", 10),
                structure_hash=kwargs.get("structure_hash"),
            )
            db_session.add(log)
            logs.append(log)
        db_session.flush()
        return logs
    return _make


# =============================================================================
# Fake Adapters
# =============================================================================

class FakeAdapter(SourceAdapter):
    """Returns whatever the test put in `result`, or raises `error`."""
    source_type = "FAKE"

    def __init__(self):
        self.result = ScrapeResult()
        self.error: Optional[Exception] = None
        self.calls = 0

    def fetch(self, source: Source, days: int) -> ScrapeResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ScrapeResult(
            events=list(self.result.events),
            errors=list(self.result.errors),
            structure_hash=self.result.structure_hash,
        )


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def registry(fake_adapter):
    registry = AdapterRegistry()
    registry.register("FAKE", lambda: fake_adapter)
    return registry


def raw(tag: str, on: str, **kwargs) -> RawEventData:
    """Shorthand for a RawEventData record."""
    return RawEventData(date=on, kennel_tag=tag, **kwargs)


@pytest.fixture
def raw_event():
    return raw
