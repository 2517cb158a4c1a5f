"""
Database module for HashTracks.

Provides SQLAlchemy ORM models and session management.

Usage:
    from hashtracks.db import get_session, Kennel, Event

    with get_session() as session:
        kennels = session.query(Kennel).all()
"""

from hashtracks.db.models import (
    Base,
    Kennel,
    KennelAlias,
    Source,
    SourceKennel,
    Event,
    EventLink,
    RawEvent,
    ScrapeLog,
    Alert,
    AlertRepairEntry,
    User,
    UserKennel,
    MismanRequest,
    RosterGroup,
    RosterGroupKennel,
    KennelHasher,
    KennelAttendance,
)
from hashtracks.db.session import get_session, get_engine, SessionLocal

__all__ = [
    # Base
    "Base",
    # Models
    "Kennel",
    "KennelAlias",
    "Source",
    "SourceKennel",
    "Event",
    "EventLink",
    "RawEvent",
    "ScrapeLog",
    "Alert",
    "AlertRepairEntry",
    "User",
    "UserKennel",
    "MismanRequest",
    "RosterGroup",
    "RosterGroupKennel",
    "KennelHasher",
    "KennelAttendance",
    # Session
    "get_session",
    "get_engine",
    "SessionLocal",
]
