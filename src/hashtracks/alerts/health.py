"""
Source health analysis and alert persistence.

Every scrape run is compared against a rolling baseline of the source's
recent successful runs. Each check below may produce one AlertCandidate;
persist_alerts() then deduplicates candidates against existing alerts.

Checks:
1. SCRAPE_FAILURE (WARNING): the fetch failed
2. CONSECUTIVE_FAILURES (CRITICAL): the previous N-1 runs failed too
3. EVENT_COUNT_ANOMALY: zero events vs a positive baseline (CRITICAL), or
   a drop of more than event_count_drop_percent (WARNING)
4. FIELD_FILL_DROP (WARNING): a usually populated field is now mostly empty
5. STRUCTURE_CHANGE (INFO/WARNING): the page skeleton hash moved
6. UNMATCHED_TAGS (INFO): tags that failed resolution and were not
   already unmatched in the baseline
7. SOURCE_KENNEL_MISMATCH (WARNING): tags resolved to kennels the source
   is not linked to

Checks 3-5 need a successful run and at least one baseline run.
Check 6 needs a successful run; with no baseline every tag is new.
Check 7 always runs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from hashtracks.alerts import constants as c
from hashtracks.alerts.context import (
    AlertContext,
    EventCountContext,
    FailureContext,
    FieldFillContext,
    StructureChangeContext,
    TagListContext,
    dump_context,
)
from hashtracks.config import settings
from hashtracks.db.models import Alert, ScrapeLog
from hashtracks.pipeline.fill_rates import FILL_RATE_FIELDS, FieldFillRates

logger = logging.getLogger(__name__)


# Structure changes count as quality-impacting above these drops
STRUCTURE_COUNT_DROP_PERCENT = 20
STRUCTURE_FILL_DROP_POINTS = 15


@dataclass
class HealthInput:
    """Metrics from the scrape run being analyzed."""
    events_found: int
    scrape_failed: bool
    errors: list[str] = field(default_factory=list)
    unmatched_tags: list[str] = field(default_factory=list)
    blocked_tags: list[str] = field(default_factory=list)
    fill_rates: FieldFillRates = field(default_factory=FieldFillRates)
    structure_hash: Optional[str] = None


@dataclass
class AlertCandidate:
    """An alert the analysis wants raised (before deduplication)."""
    type: str
    severity: str
    title: str
    details: str
    context: Optional[AlertContext] = None

    def __repr__(self) -> str:
        return f"<AlertCandidate(type='{self.type}', severity='{self.severity}')>"


@dataclass
class HealthAnalysis:
    health_status: str
    alerts: list[AlertCandidate] = field(default_factory=list)

    def alert_types(self) -> list[str]:
        return [a.type for a in self.alerts]


# =============================================================================
# Individual Checks
# =============================================================================

def _plural(n: int, word: str) -> str:
    return f"{n} {word}" + ("" if n == 1 else "s")


def _baseline_fill_rate(logs: list[ScrapeLog], name: str) -> Optional[float]:
    rates = [getattr(log, f"fill_rate_{name}") for log in logs]
    rates = [r for r in rates if r is not None]
    if not rates:
        return None
    return sum(rates) / len(rates)


def check_scrape_failure(data: HealthInput) -> Optional[AlertCandidate]:
    if not data.scrape_failed:
        return None
    return AlertCandidate(
        type=c.SCRAPE_FAILURE,
        severity=c.WARNING,
        title="Scrape failed",
        details="; ".join(data.errors[:5]),
        context=FailureContext(error_messages=data.errors[:10], consecutive_count=1),
    )


def check_consecutive_failures(
    data: HealthInput,
    previous_statuses: list[str],
    threshold: int,
) -> Optional[AlertCandidate]:
    """
    Escalate when this failure and the previous threshold-1 runs all failed.

    previous_statuses is most-recent-first and excludes the current run.
    """
    if not data.scrape_failed:
        return None

    needed = threshold - 1
    window = previous_statuses[:needed]
    if len(window) < needed or any(s != "FAILED" for s in window):
        return None

    streak = 1
    for status in previous_statuses:
        if status != "FAILED":
            break
        streak += 1

    return AlertCandidate(
        type=c.CONSECUTIVE_FAILURES,
        severity=c.CRITICAL,
        title=f"{streak} consecutive scrape failures",
        details=(
            "Multiple consecutive scrapes have failed. "
            "The source may be down or its format may have changed."
        ),
        context=FailureContext(error_messages=data.errors[:10], consecutive_count=streak),
    )


def check_event_count(data: HealthInput, baseline: list[ScrapeLog]) -> Optional[AlertCandidate]:
    avg = sum(log.events_found for log in baseline) / len(baseline)
    window = len(baseline)

    if data.events_found == 0 and avg > 0:
        return AlertCandidate(
            type=c.EVENT_COUNT_ANOMALY,
            severity=c.CRITICAL,
            title="Zero events found",
            details=(
                f"Expected ~{round(avg)} events based on rolling average of last "
                f"{window} scrapes, but found 0."
            ),
            context=EventCountContext(
                current_count=0, baseline_avg=round(avg), baseline_window=window, drop_percent=100
            ),
        )

    floor = avg * (1 - settings.event_count_drop_percent / 100)
    if avg > settings.event_count_min_baseline and data.events_found < floor:
        drop = round((avg - data.events_found) / avg * 100)
        return AlertCandidate(
            type=c.EVENT_COUNT_ANOMALY,
            severity=c.WARNING,
            title=f"Event count dropped {drop}%",
            details=(
                f"Found {data.events_found} events vs rolling average of {round(avg)} "
                f"(last {window} scrapes)."
            ),
            context=EventCountContext(
                current_count=data.events_found,
                baseline_avg=round(avg),
                baseline_window=window,
                drop_percent=drop,
            ),
        )

    return None


def check_field_fill_drops(data: HealthInput, baseline: list[ScrapeLog]) -> list[AlertCandidate]:
    alerts = []
    current = data.fill_rates.as_dict()

    for name in FILL_RATE_FIELDS:
        avg = _baseline_fill_rate(baseline, name)
        if avg is None:
            continue
        rate = current[name]
        # Always-sparse fields are noise
        if avg >= settings.fill_rate_min_baseline and avg - rate > settings.fill_rate_drop_points:
            alerts.append(AlertCandidate(
                type=c.FIELD_FILL_DROP,
                severity=c.WARNING,
                title=f"{name} fill rate dropped from {round(avg)}% to {rate}%",
                details=(
                    f"The \"{name}\" field was populated in ~{round(avg)}% of events on "
                    f"average but is now at {rate}%."
                ),
                context=FieldFillContext(field=name, current_rate=rate, baseline_avg=round(avg)),
            ))

    return alerts


def check_structure_change(
    data: HealthInput,
    baseline: list[ScrapeLog],
) -> tuple[Optional[AlertCandidate], bool]:
    """
    Compare the current structure hash with the most recent stored one.

    Returns:
        (candidate, stable) where stable is True when the hash matched the
        previous one (open STRUCTURE_CHANGE alerts can be auto-resolved)
    """
    if not data.structure_hash:
        return None, False

    previous = next((log.structure_hash for log in baseline if log.structure_hash), None)
    if previous is None:
        return None, False
    if previous == data.structure_hash:
        return None, True

    prev_count = round(sum(log.events_found for log in baseline) / len(baseline))
    current_rates = data.fill_rates.as_dict()
    baseline_rates = {}
    for name in FILL_RATE_FIELDS:
        avg = _baseline_fill_rate(baseline, name)
        baseline_rates[name] = round(avg) if avg is not None else 0

    count_drop = round((prev_count - data.events_found) / prev_count * 100) if prev_count > 0 else 0
    fill_drop = max(
        (baseline_rates[n] - current_rates[n] if baseline_rates[n] >= settings.fill_rate_min_baseline else 0)
        for n in FILL_RATE_FIELDS
    )
    impacted = count_drop > STRUCTURE_COUNT_DROP_PERCENT or fill_drop > STRUCTURE_FILL_DROP_POINTS

    if impacted:
        title = "HTML structure changed, data quality may be affected"
        details = (
            f"Structural fingerprint changed and scrape quality has degraded. "
            f"Event count: {prev_count} -> {data.events_found}. "
            f"Investigate the source page for template changes."
        )
    else:
        title = "HTML structure changed (no impact on data quality)"
        details = (
            f"Structural fingerprint changed but event extraction is working normally. "
            f"Event count: {prev_count} -> {data.events_found}."
        )

    candidate = AlertCandidate(
        type=c.STRUCTURE_CHANGE,
        severity=c.WARNING if impacted else c.INFO,
        title=title,
        details=details,
        context=StructureChangeContext(
            previous_hash=previous,
            current_hash=data.structure_hash,
            previous_event_count=prev_count,
            current_event_count=data.events_found,
            fill_rate_baseline=baseline_rates,
            fill_rate_current=current_rates,
            quality_impacted=impacted,
        ),
    )
    return candidate, False


def check_unmatched_tags(data: HealthInput, baseline: list[ScrapeLog]) -> Optional[AlertCandidate]:
    if not data.unmatched_tags:
        return None

    seen = set()
    for log in baseline:
        seen.update(log.unmatched_tags or [])
    novel = [t for t in data.unmatched_tags if t not in seen]
    if not novel:
        return None

    return AlertCandidate(
        type=c.UNMATCHED_TAGS,
        severity=c.INFO,
        title=f"{_plural(len(novel), 'new unmatched kennel tag')}",
        details=f"New tags: {', '.join(novel)}. These need alias mapping in the kennel resolver.",
        context=TagListContext(tags=novel),
    )


def check_source_kennel_mismatch(data: HealthInput) -> Optional[AlertCandidate]:
    if not data.blocked_tags:
        return None
    return AlertCandidate(
        type=c.SOURCE_KENNEL_MISMATCH,
        severity=c.WARNING,
        title=f"{_plural(len(data.blocked_tags), 'kennel tag')} blocked: not linked to source",
        details=(
            f"Tags [{', '.join(data.blocked_tags)}] resolved to valid kennels but are not "
            f"linked to this source."
        ),
        context=TagListContext(tags=list(data.blocked_tags)),
    )


# =============================================================================
# Main Entry Points
# =============================================================================

def analyze_health(
    session: Session,
    source_id: int,
    scrape_log_id: Optional[int],
    data: HealthInput,
) -> HealthAnalysis:
    """
    Analyze a scrape run against the source's recent history.

    Open STRUCTURE_CHANGE alerts are resolved here when the structure hash
    is stable again. Other alerts are only returned; call persist_alerts()
    to store them.

    Args:
        session: SQLAlchemy session
        source_id: Source that was scraped
        scrape_log_id: ScrapeLog of the current run (excluded from the baseline)
        data: Metrics of the current run

    Returns:
        HealthAnalysis with the overall status and alert candidates
    """
    scope = [ScrapeLog.source_id == source_id]
    if scrape_log_id is not None:
        scope.append(ScrapeLog.id != scrape_log_id)

    baseline = session.scalars(
        select(ScrapeLog)
        .where(*scope, ScrapeLog.status == "SUCCESS")
        .order_by(ScrapeLog.started_at.desc(), ScrapeLog.id.desc())
        .limit(settings.health_baseline_window)
    ).all()

    threshold = settings.consecutive_failure_threshold
    previous_statuses = list(
        session.scalars(
            select(ScrapeLog.status)
            .where(*scope, ScrapeLog.status != "RUNNING")
            .order_by(ScrapeLog.started_at.desc(), ScrapeLog.id.desc())
            .limit(max(threshold * 3, 10))
        )
    )

    alerts: list[AlertCandidate] = []

    failure = check_scrape_failure(data)
    if failure:
        alerts.append(failure)

    consecutive = check_consecutive_failures(data, previous_statuses, threshold)
    if consecutive:
        alerts.append(consecutive)

    if not data.scrape_failed and baseline:
        count_alert = check_event_count(data, baseline)
        if count_alert:
            alerts.append(count_alert)

        alerts.extend(check_field_fill_drops(data, baseline))

        structure_alert, stable = check_structure_change(data, baseline)
        if structure_alert:
            alerts.append(structure_alert)
        elif stable:
            auto_resolve_structure_alerts(session, source_id)

    if not data.scrape_failed:
        unmatched_alert = check_unmatched_tags(data, baseline)
        if unmatched_alert:
            alerts.append(unmatched_alert)

    mismatch = check_source_kennel_mismatch(data)
    if mismatch:
        alerts.append(mismatch)

    severities = {a.severity for a in alerts}
    if data.scrape_failed or c.CRITICAL in severities:
        status = c.HEALTH_FAILING
    elif c.WARNING in severities:
        status = c.HEALTH_DEGRADED
    else:
        status = c.HEALTH_HEALTHY

    return HealthAnalysis(health_status=status, alerts=alerts)


def persist_alerts(
    session: Session,
    source_id: int,
    scrape_log_id: Optional[int],
    candidates: list[AlertCandidate],
    now: Optional[datetime] = None,
) -> list[Alert]:
    """
    Store alert candidates, deduplicating against existing alerts.

    For each candidate, in order:
    1. An OPEN/ACKNOWLEDGED alert of the same type is updated in place
    2. A SNOOZED alert whose snooze expired is re-opened with the new data
    3. A SNOOZED alert still within its snooze suppresses the candidate
    4. Otherwise a new OPEN alert is created

    Nothing is committed; the caller owns the transaction.

    Returns:
        Alerts that were created, updated or re-opened
    """
    now = now or datetime.utcnow()
    touched = []

    for candidate in candidates:
        context = dump_context(candidate.context)

        existing = session.scalar(
            select(Alert)
            .where(
                Alert.source_id == source_id,
                Alert.type == candidate.type,
                Alert.status.in_(c.ACTIVE_STATUSES),
            )
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(1)
        )
        if existing is not None:
            existing.title = candidate.title
            existing.details = candidate.details
            existing.severity = candidate.severity
            existing.scrape_log_id = scrape_log_id
            if context is not None:
                existing.context = context
            touched.append(existing)
            continue

        snoozed = session.scalar(
            select(Alert)
            .where(
                Alert.source_id == source_id,
                Alert.type == candidate.type,
                Alert.status == c.SNOOZED,
            )
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(1)
        )
        if snoozed is not None:
            if snoozed.snoozed_until is not None and snoozed.snoozed_until < now:
                snoozed.status = c.OPEN
                snoozed.snoozed_until = None
                snoozed.title = candidate.title
                snoozed.details = candidate.details
                snoozed.severity = candidate.severity
                snoozed.scrape_log_id = scrape_log_id
                if context is not None:
                    snoozed.context = context
                touched.append(snoozed)
                logger.info("Re-opened snoozed %s alert for source %s", candidate.type, source_id)
            continue

        alert = Alert(
            source_id=source_id,
            scrape_log_id=scrape_log_id,
            type=candidate.type,
            severity=candidate.severity,
            status=c.OPEN,
            title=candidate.title,
            details=candidate.details,
            context=context,
        )
        session.add(alert)
        session.flush()
        touched.append(alert)

        log = logger.warning if candidate.severity != c.INFO else logger.info
        log("New %s alert (%s) for source %s: %s", candidate.type, candidate.severity, source_id, candidate.title)

    session.flush()
    return touched


def auto_resolve_structure_alerts(session: Session, source_id: int) -> int:
    """Resolve active STRUCTURE_CHANGE alerts once the structure is stable again."""
    alerts = session.scalars(
        select(Alert).where(
            Alert.source_id == source_id,
            Alert.type == c.STRUCTURE_CHANGE,
            Alert.status.in_(c.ACTIVE_STATUSES),
        )
    ).all()

    now = datetime.utcnow()
    for alert in alerts:
        alert.status = c.RESOLVED
        alert.resolved_at = now
        alert.resolved_by = "system"
        alert.details = (alert.details or "") + " [Auto-resolved: structure stabilized on subsequent scrape]"

    if alerts:
        logger.info("Auto-resolved %d structure alert(s) for source %s", len(alerts), source_id)
    return len(alerts)
