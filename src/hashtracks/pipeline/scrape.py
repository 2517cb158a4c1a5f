"""
Scrape orchestration: fetch -> merge -> reconcile -> health -> log.

scrape_source() is the single entry point used by the CLI, scheduled
jobs and alert repair actions. A run never raises for source problems:
adapter exceptions and empty error-only results are recorded as a failed
ScrapeLog plus SCRAPE_FAILURE / CONSECUTIVE_FAILURES alerts, and the
result comes back with success=False.

After the run is committed, WARNING/CRITICAL failure-type alerts are
exported to the issue tracker (alerts/auto_issue.py); a tracker problem
is logged and never changes the run result.

Usage:
    from hashtracks.pipeline.scrape import scrape_source

    with get_session() as session:
        result = scrape_source(session, source_id, force=True)
        print(result.summary())
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hashtracks.alerts import constants as c
from hashtracks.alerts.auto_issue import auto_file_issues
from hashtracks.alerts.health import HealthInput, analyze_health, persist_alerts
from hashtracks.alerts.issues import GitHubIssueClient
from hashtracks.config import settings
from hashtracks.db.models import Alert, ScrapeLog, Source
from hashtracks.kennels.resolver import TagResolver
from hashtracks.pipeline import html_table  # noqa: F401  registers HTML_SCRAPER
from hashtracks.pipeline.adapters import AdapterRegistry, ScrapeResult, default_registry
from hashtracks.pipeline.fill_rates import compute_fill_rates
from hashtracks.pipeline.merge import process_raw_events
from hashtracks.pipeline.reconcile import reconcile_stale_events

logger = logging.getLogger(__name__)


class SourceNotFoundError(LookupError):
    """The requested source does not exist."""
    pass


@dataclass
class ScrapeRunResult:
    """Outcome of one scrape_source() call."""
    success: bool
    scrape_log_id: int
    forced: bool = False
    events_found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    unmatched: list[str] = field(default_factory=list)
    blocked_tags: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: int = 0

    def summary(self) -> str:
        """Return a human-readable summary of the run."""
        lines = [
            f"Scrape {'succeeded' if self.success else 'FAILED'} (log {self.scrape_log_id}):",
            f"  Events found:  {self.events_found}",
            f"  Created:       {self.created}",
            f"  Updated:       {self.updated}",
            f"  Skipped:       {self.skipped}",
            f"  Cancelled:     {self.cancelled}",
        ]
        if self.unmatched:
            lines.append(f"  Unmatched tags: {', '.join(self.unmatched)}")
        if self.blocked_tags:
            lines.append(f"  Blocked tags:   {', '.join(self.blocked_tags)}")
        if self.errors:
            lines.append(f"  Errors: {len(self.errors)}")
            for err in self.errors[:5]:
                lines.append(f"    - {err}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"<ScrapeRunResult(success={self.success}, found={self.events_found}, "
            f"created={self.created}, updated={self.updated})>"
        )


def scrape_source(
    session: Session,
    source_id: int,
    force: bool = False,
    days: Optional[int] = None,
    registry: Optional[AdapterRegistry] = None,
    resolver: Optional[TagResolver] = None,
    issue_client: Optional[GitHubIssueClient] = None,
) -> ScrapeRunResult:
    """
    Scrape one source and merge its events.

    Commits the ScrapeLog as soon as the run starts and again when it
    finishes, so failed runs still leave a log row behind.

    Args:
        session: SQLAlchemy session
        source_id: Source to scrape
        force: Reprocess raw events whose fingerprint was already merged
        days: Window in days either side of today (default: source.scrape_days,
              then settings.scrape_default_days)
        registry: Adapter registry (default: the process-wide registry)
        resolver: Tag resolver to use (default: a fresh one)
        issue_client: Tracker client for automatic issues (default: from settings)

    Returns:
        ScrapeRunResult

    Raises:
        SourceNotFoundError: no source with this ID
    """
    source = session.get(Source, source_id)
    if source is None:
        raise SourceNotFoundError(f"Source not found: {source_id}")

    days = days or source.scrape_days or settings.scrape_default_days
    registry = registry or default_registry
    resolver = resolver or TagResolver(session)

    started = time.monotonic()
    scrape_log = ScrapeLog(source_id=source_id, forced=force, status="RUNNING", started_at=datetime.utcnow())
    session.add(scrape_log)
    session.commit()
    log_id = scrape_log.id

    logger.info("Scraping %s (id=%s, days=%d, force=%s)", source.name, source_id, days, force)

    # Fetch
    fetch_errors: list[str] = []
    scrape_result: Optional[ScrapeResult] = None
    try:
        adapter = registry.get(source.type, source.url)
        scrape_result = adapter.fetch(source, days)
    except Exception as e:
        logger.error("Fetch failed for %s: %s", source.name, e)
        fetch_errors = [str(e) or e.__class__.__name__]

    if scrape_result is not None and scrape_result.errors and not scrape_result.events:
        fetch_errors = list(scrape_result.errors)

    if fetch_errors:
        return _record_failure(
            session, source_id, log_id, force, fetch_errors, started, issue_client
        )

    # Merge and analyze
    try:
        merge = process_raw_events(session, source, scrape_result.events, resolver, force=force)

        cancelled = 0
        if scrape_result.events:
            cancelled = reconcile_stale_events(
                session, source_id, scrape_result.events, days, resolver
            ).cancelled

        fill_rates = compute_fill_rates(scrape_result.events)
        errors = list(scrape_result.errors) + list(merge.event_error_messages)

        analysis = analyze_health(session, source_id, log_id, HealthInput(
            events_found=len(scrape_result.events),
            scrape_failed=False,
            errors=errors,
            unmatched_tags=merge.unmatched,
            blocked_tags=merge.blocked_tags,
            fill_rates=fill_rates,
            structure_hash=scrape_result.structure_hash,
        ))
        alerts = persist_alerts(session, source_id, log_id, analysis.alerts)

        now = datetime.utcnow()
        scrape_log = session.get(ScrapeLog, log_id)
        scrape_log.status = "SUCCESS"
        scrape_log.completed_at = now
        scrape_log.duration_ms = int((time.monotonic() - started) * 1000)
        scrape_log.events_found = len(scrape_result.events)
        scrape_log.events_created = merge.created
        scrape_log.events_updated = merge.updated
        scrape_log.events_skipped = merge.skipped
        scrape_log.events_cancelled = cancelled
        scrape_log.unmatched_tags = list(merge.unmatched)
        scrape_log.blocked_tags = list(merge.blocked_tags)
        scrape_log.errors = errors
        scrape_log.fill_rate_title = fill_rates.title
        scrape_log.fill_rate_location = fill_rates.location
        scrape_log.fill_rate_hares = fill_rates.hares
        scrape_log.fill_rate_start_time = fill_rates.start_time
        scrape_log.fill_rate_run_number = fill_rates.run_number
        scrape_log.structure_hash = scrape_result.structure_hash

        source.health_status = analysis.health_status
        source.last_scrape_at = now
        source.last_success_at = now

        session.commit()
    except Exception as e:
        session.rollback()
        logger.exception("Scrape of source %s failed after fetch", source_id)
        return _record_failure(
            session, source_id, log_id, force, [str(e)], started, issue_client
        )

    _file_issues(session, source_id, alerts, issue_client)

    result = ScrapeRunResult(
        success=True,
        scrape_log_id=log_id,
        forced=force,
        events_found=len(scrape_result.events),
        created=merge.created,
        updated=merge.updated,
        skipped=merge.skipped,
        unmatched=list(merge.unmatched),
        blocked_tags=list(merge.blocked_tags),
        errors=errors,
        cancelled=cancelled,
    )
    logger.info("Scrape of %s done: %r (health=%s)", source.name, result, analysis.health_status)
    return result


def _record_failure(
    session: Session,
    source_id: int,
    log_id: int,
    force: bool,
    errors: list[str],
    started: float,
    issue_client: Optional[GitHubIssueClient] = None,
) -> ScrapeRunResult:
    """Mark the run failed, raise failure alerts and mark the source FAILING."""
    analysis = analyze_health(session, source_id, log_id, HealthInput(
        events_found=0,
        scrape_failed=True,
        errors=errors,
    ))
    alerts = persist_alerts(session, source_id, log_id, analysis.alerts)

    now = datetime.utcnow()
    scrape_log = session.get(ScrapeLog, log_id)
    scrape_log.status = "FAILED"
    scrape_log.completed_at = now
    scrape_log.duration_ms = int((time.monotonic() - started) * 1000)
    scrape_log.errors = errors

    source = session.get(Source, source_id)
    source.health_status = c.HEALTH_FAILING
    source.last_scrape_at = now
    session.commit()
    _file_issues(session, source_id, alerts, issue_client)

    logger.warning("Scrape of source %s failed: %s", source_id, "; ".join(errors[:3]))
    return ScrapeRunResult(success=False, scrape_log_id=log_id, forced=force, errors=errors)


def _file_issues(
    session: Session,
    source_id: int,
    alerts: list[Alert],
    issue_client: Optional[GitHubIssueClient],
) -> None:
    """Auto-file tracker issues for the run's alerts; never fails the run."""
    try:
        auto_file_issues(session, session.get(Source, source_id), alerts, client=issue_client)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Auto-filing issues for source %s failed", source_id)
