"""
SQLAlchemy ORM models for HashTracks.

This module defines all database tables and their relationships.
The schema is designed around a canonical kennel identity system
where every scraped event is attached to exactly one kennel, no matter
which source reported it or how the source spelled the kennel's name.

Key design decisions:
- Kennels have a unique kennel_code and slug, both derived from short_name
- Kennel aliases handle tag variations from different sources
- Sources are linked to the kennels they may legitimately report on
- Events link to kennels via foreign keys (never raw tags)
- Raw adapter output is kept immutable in raw_events
- Alert repair history is an append-only child table

Tables:
- kennels: Canonical kennel records
- kennel_aliases: Tag variations for resolution
- sources: External data origins with adapter config
- source_kennels: Which kennels a source may emit events for
- events: Canonical scheduled runs
- raw_events: Immutable adapter output per source
- scrape_logs: One row per scrape run (health baseline)
- alerts: Data-quality anomalies per source
- alert_repair_entries: Append-only repair log per alert
- users / user_kennels / misman_requests: Kennel memberships and requests
- roster_groups / roster_group_kennels / kennel_hashers: Shared rosters
- kennel_attendance: Who attended which event
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# =============================================================================
# Kennel Models
# =============================================================================

class Kennel(Base):
    """
    Canonical kennel (club) record.

    Each kennel has exactly one record regardless of how many sources
    report its runs. kennel_code and slug are derived from short_name and
    are globally unique; short_name itself is only unique per region
    (several cities have a "City H3").

    Actual tag resolution uses short_name, kennel_code and the
    kennel_aliases table.
    """
    __tablename__ = "kennels"

    id: Mapped[int] = mapped_column(primary_key=True)

    kennel_code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    short_name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)

    region: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Profile metadata
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    founded_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    aliases: Mapped[list["KennelAlias"]] = relationship(
        back_populates="kennel", cascade="all, delete-orphan"
    )
    source_links: Mapped[list["SourceKennel"]] = relationship(back_populates="kennel")

    __table_args__ = (
        UniqueConstraint("short_name", "region", name="uq_kennel_short_name_region"),
        Index("idx_kennels_short_name", "short_name"),
    )

    def __repr__(self) -> str:
        return f"<Kennel(id={self.id}, short_name='{self.short_name}')>"


class KennelAlias(Base):
    """
    Kennel tag variations from different sources.

    Sources spell kennels in many ways:
    - Calendar: "Brooklyn H3"
    - Website: "BrH3"
    - Spreadsheet: "brooklyn"

    Alias text is unique across the whole system (case-insensitively),
    so an alias resolves to at most one kennel.
    """
    __tablename__ = "kennel_aliases"

    id: Mapped[int] = mapped_column(primary_key=True)
    kennel_id: Mapped[int] = mapped_column(ForeignKey("kennels.id", ondelete="CASCADE"))

    # Stored as entered; matching is case-insensitive
    alias: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    kennel: Mapped["Kennel"] = relationship(back_populates="aliases")

    __table_args__ = (
        Index("uq_kennel_aliases_alias_lower", func.lower(alias), unique=True),
        Index("idx_kennel_aliases_kennel", "kennel_id"),
    )

    def __repr__(self) -> str:
        return f"<KennelAlias(alias='{self.alias}', kennel_id={self.kennel_id})>"


# =============================================================================
# Source Models
# =============================================================================

class Source(Base):
    """
    External data origin (website, shared calendar, spreadsheet, ...).

    The config JSON is adapter-specific but a few keys are understood by
    the core pipeline:
    - kennel_patterns: ordered [[regex, kennel_tag], ...] applied by the
      tag resolver when a raw tag does not match directly
    - default_kennel_tag: fallback tag when no pattern matches
    """
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)

    # Adapter type ('HTML_SCRAPER', 'GOOGLE_CALENDAR', 'GOOGLE_SHEETS', 'ICAL_FEED', ...)
    type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Higher trust sources may overwrite events written by lower trust ones
    trust_level: Mapped[int] = mapped_column(Integer, default=5)

    config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    scrape_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # 'UNKNOWN', 'HEALTHY', 'DEGRADED', 'FAILING'
    health_status: Mapped[str] = mapped_column(String(20), default="UNKNOWN")
    last_scrape_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    kennel_links: Mapped[list["SourceKennel"]] = relationship(
        back_populates="source", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("trust_level >= 1 AND trust_level <= 10", name="ck_source_trust_range"),
    )

    def __repr__(self) -> str:
        return f"<Source(id={self.id}, name='{self.name}', type='{self.type}')>"


class SourceKennel(Base):
    """This source may legitimately emit events for this kennel."""
    __tablename__ = "source_kennels"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"))
    kennel_id: Mapped[int] = mapped_column(ForeignKey("kennels.id"))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    source: Mapped["Source"] = relationship(back_populates="kennel_links")
    kennel: Mapped["Kennel"] = relationship(back_populates="source_links")

    __table_args__ = (
        UniqueConstraint("source_id", "kennel_id", name="uq_source_kennel"),
        Index("idx_source_kennels_kennel", "kennel_id"),
    )

    def __repr__(self) -> str:
        return f"<SourceKennel(source_id={self.source_id}, kennel_id={self.kennel_id})>"


# =============================================================================
# Event Models
# =============================================================================

class Event(Base):
    """
    Canonical scheduled run.

    Only the merge pipeline creates and updates events from scraped data.
    One event per kennel per date; run_number is an optional secondary
    natural key used when a source provides it.
    """
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(primary_key=True)
    kennel_id: Mapped[int] = mapped_column(ForeignKey("kennels.id"), nullable=False)

    date: Mapped[date] = mapped_column(Date, nullable=False)
    run_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hares_text: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    location_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    location_address: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    start_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)  # HH:MM
    source_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    # Trust level of the source that last wrote this event
    trust_level: Mapped[int] = mapped_column(Integer, default=5)

    # 'CONFIRMED', 'CANCELLED'
    status: Mapped[str] = mapped_column(String(20), default="CONFIRMED")

    # Provenance: True when entered by hand rather than scraped
    is_manual_entry: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    kennel: Mapped["Kennel"] = relationship()

    __table_args__ = (
        UniqueConstraint("kennel_id", "date", name="uq_event_kennel_date"),
        Index("idx_events_kennel_run_number", "kennel_id", "run_number"),
        Index("idx_events_date", "date"),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, kennel_id={self.kennel_id}, date={self.date})>"


class EventLink(Base):
    """
    Additional link for an event.

    Event.source_url keeps the first source's URL; every other source that
    reports the same event adds its own URL here, once per event.
    """
    __tablename__ = "event_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"))
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    label: Mapped[str] = mapped_column(String(100), default="Source")
    source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sources.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "url", name="uq_event_link_url"),
    )

    def __repr__(self) -> str:
        return f"<EventLink(event_id={self.event_id}, url='{self.url}')>"


class RawEvent(Base):
    """
    Immutable copy of one adapter record.

    The fingerprint lets the pipeline skip records it has already merged;
    processed/event_id record whether and where the record landed.
    """
    __tablename__ = "raw_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"))
    raw_data: Mapped[dict] = mapped_column(JSONType, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    event_id: Mapped[Optional[int]] = mapped_column(ForeignKey("events.id"), nullable=True)

    scraped_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_raw_events_source_fingerprint", "source_id", "fingerprint"),
        Index("idx_raw_events_event", "event_id"),
    )

    def __repr__(self) -> str:
        return f"<RawEvent(id={self.id}, source_id={self.source_id}, processed={self.processed})>"


# =============================================================================
# Operations Models
# =============================================================================

class ScrapeLog(Base):
    """
    One row per scrape run.

    Successful rows form the rolling baseline the health checks compare
    against (event counts, fill rates, structure hash, unmatched tags).
    """
    __tablename__ = "scrape_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"))

    # 'RUNNING', 'SUCCESS', 'FAILED'
    status: Mapped[str] = mapped_column(String(20), default="RUNNING")
    forced: Mapped[bool] = mapped_column(Boolean, default=False)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    events_found: Mapped[int] = mapped_column(Integer, default=0)
    events_created: Mapped[int] = mapped_column(Integer, default=0)
    events_updated: Mapped[int] = mapped_column(Integer, default=0)
    events_skipped: Mapped[int] = mapped_column(Integer, default=0)
    events_cancelled: Mapped[int] = mapped_column(Integer, default=0)

    unmatched_tags: Mapped[list] = mapped_column(JSONType, default=list)
    blocked_tags: Mapped[list] = mapped_column(JSONType, default=list)
    errors: Mapped[list] = mapped_column(JSONType, default=list)

    # Field fill rates (0-100), NULL on failed runs
    fill_rate_title: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fill_rate_location: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fill_rate_hares: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fill_rate_start_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fill_rate_run_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    structure_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_scrape_logs_source_started", "source_id", "started_at"),
        Index("idx_scrape_logs_source_status", "source_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ScrapeLog(id={self.id}, source_id={self.source_id}, status='{self.status}')>"


class Alert(Base):
    """
    Data-quality or operational anomaly tied to one source.

    The context JSON holds a typed payload whose shape depends on the
    alert type (see alerts/context.py). Repair history lives in
    alert_repair_entries and is append-only.
    """
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"))
    scrape_log_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("scrape_logs.id", ondelete="SET NULL"), nullable=True
    )

    type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # 'INFO', 'WARNING', 'CRITICAL'
    status: Mapped[str] = mapped_column(String(20), default="OPEN")

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    snoozed_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    source: Mapped["Source"] = relationship()
    repair_entries: Mapped[list["AlertRepairEntry"]] = relationship(
        back_populates="alert",
        order_by="AlertRepairEntry.sequence",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_alerts_source_type_status", "source_id", "type", "status"),
        Index("idx_alerts_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Alert(id={self.id}, type='{self.type}', status='{self.status}')>"


class AlertRepairEntry(Base):
    """
    One repair action taken against an alert.

    (alert_id, sequence) is unique: two concurrent appends computing the
    same sequence collide and the loser is dropped as a no-op.
    """
    __tablename__ = "alert_repair_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    alert_id: Mapped[int] = mapped_column(ForeignKey("alerts.id", ondelete="CASCADE"))
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    # 'rescrape', 'create_alias', 'create_kennel', 'link_kennel', 'create_issue'
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[dict] = mapped_column(JSONType, default=dict)
    result: Mapped[str] = mapped_column(String(10), nullable=False)  # 'success', 'error'
    result_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    alert: Mapped["Alert"] = relationship(back_populates="repair_entries")

    __table_args__ = (
        UniqueConstraint("alert_id", "sequence", name="uq_alert_repair_sequence"),
    )

    def __repr__(self) -> str:
        return f"<AlertRepairEntry(alert_id={self.alert_id}, seq={self.sequence}, action='{self.action}')>"


# =============================================================================
# Membership Models
# =============================================================================

class User(Base):
    """Site user (authentication handled elsewhere)."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    hash_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    nerd_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class UserKennel(Base):
    """A user's role in a kennel: 'ADMIN' > 'MISMAN' > 'MEMBER'."""
    __tablename__ = "user_kennels"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    kennel_id: Mapped[int] = mapped_column(ForeignKey("kennels.id"))
    role: Mapped[str] = mapped_column(String(20), default="MEMBER")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "kennel_id", name="uq_user_kennel"),
    )

    def __repr__(self) -> str:
        return f"<UserKennel(user_id={self.user_id}, kennel_id={self.kennel_id}, role='{self.role}')>"


class MismanRequest(Base):
    """Pending request from a user to manage a kennel's roster."""
    __tablename__ = "misman_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    kennel_id: Mapped[int] = mapped_column(ForeignKey("kennels.id"))
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # 'PENDING', 'APPROVED', 'REJECTED'
    status: Mapped[str] = mapped_column(String(20), default="PENDING")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<MismanRequest(id={self.id}, kennel_id={self.kennel_id}, status='{self.status}')>"


# =============================================================================
# Roster Models
# =============================================================================

class RosterGroup(Base):
    """Kennels that share one roster of hashers."""
    __tablename__ = "roster_groups"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<RosterGroup(id={self.id}, name='{self.name}')>"


class RosterGroupKennel(Base):
    """Kennel membership in a roster group (at most one group per kennel)."""
    __tablename__ = "roster_group_kennels"

    id: Mapped[int] = mapped_column(primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("roster_groups.id", ondelete="CASCADE"))
    kennel_id: Mapped[int] = mapped_column(ForeignKey("kennels.id"), unique=True)

    def __repr__(self) -> str:
        return f"<RosterGroupKennel(group_id={self.group_id}, kennel_id={self.kennel_id})>"


class KennelHasher(Base):
    """
    Roster entry for one participant.

    Scoped to a roster group; kennel_id records which kennel added the
    entry. hash_name is the display name used for matching.
    """
    __tablename__ = "kennel_hashers"

    id: Mapped[int] = mapped_column(primary_key=True)
    roster_group_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("roster_groups.id"), nullable=True
    )
    kennel_id: Mapped[Optional[int]] = mapped_column(ForeignKey("kennels.id"), nullable=True)

    hash_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    nerd_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_kennel_hashers_group", "roster_group_id"),
        Index("idx_kennel_hashers_kennel", "kennel_id"),
    )

    def __repr__(self) -> str:
        return f"<KennelHasher(id={self.id}, hash_name='{self.hash_name}')>"


class KennelAttendance(Base):
    """One hasher at one event."""
    __tablename__ = "kennel_attendance"

    id: Mapped[int] = mapped_column(primary_key=True)
    kennel_hasher_id: Mapped[int] = mapped_column(
        ForeignKey("kennel_hashers.id", ondelete="CASCADE")
    )
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"))
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    hared: Mapped[bool] = mapped_column(Boolean, default=False)
    recorded_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("kennel_hasher_id", "event_id", name="uq_attendance_hasher_event"),
        Index("idx_kennel_attendance_event", "event_id"),
    )

    def __repr__(self) -> str:
        return f"<KennelAttendance(hasher={self.kennel_hasher_id}, event={self.event_id})>"
