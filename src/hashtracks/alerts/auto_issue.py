"""
Automatic issue filing for failing sources.

After a scrape persists its alerts, the serious ones are exported to the
issue tracker without waiting for an operator:

- only SCRAPE_FAILURE, CONSECUTIVE_FAILURES, STRUCTURE_CHANGE and
  FIELD_FILL_DROP alerts at WARNING or CRITICAL severity qualify
- at most settings.auto_issue_daily_cap issues per source per UTC day
- an alert type already filed for the source within
  settings.auto_issue_cooldown_hours is not filed again

Each filed issue is recorded as an ``auto_file_issue`` entry in the
alert's repair log; those entries are what the cap and cooldown count.
Filing is best effort: tracker errors are logged and skipped, and
nothing is committed here.

Usage:
    alerts = persist_alerts(session, source.id, log_id, analysis.alerts)
    result = auto_file_issues(session, source, alerts)
    session.commit()
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hashtracks.alerts import constants as c
from hashtracks.alerts.issues import GitHubIssueClient, IssueTrackerError, render_issue
from hashtracks.config import settings
from hashtracks.db.models import Alert, AlertRepairEntry, Source

logger = logging.getLogger(__name__)

AUTO_FILE_ALERT_TYPES = (
    c.SCRAPE_FAILURE,
    c.CONSECUTIVE_FAILURES,
    c.STRUCTURE_CHANGE,
    c.FIELD_FILL_DROP,
)
AUTO_FILE_SEVERITIES = (c.WARNING, c.CRITICAL)

# Repair log actor for entries written by the pipeline itself
SYSTEM_ACTOR = "system"


@dataclass
class AutoIssueResult:
    filed: int = 0
    skipped: int = 0
    issue_urls: list[str] = field(default_factory=list)


def is_eligible(alert: Alert) -> bool:
    return alert.type in AUTO_FILE_ALERT_TYPES and alert.severity in AUTO_FILE_SEVERITIES


def auto_file_issues(
    session: Session,
    source: Source,
    alerts: list[Alert],
    client: Optional[GitHubIssueClient] = None,
    now: Optional[datetime] = None,
) -> AutoIssueResult:
    """
    File tracker issues for the eligible alerts of one scrape.

    Args:
        session: SQLAlchemy session (caller commits)
        source: Source the alerts belong to
        alerts: Alerts created or updated by persist_alerts()
        client: Issue tracker client (default: a GitHubIssueClient, or
                nothing at all when no token is configured)
        now: Clock override for the cap and cooldown windows

    Returns:
        AutoIssueResult with filed/skipped counts
    """
    result = AutoIssueResult()
    if not alerts:
        return result

    if client is None:
        if not settings.auto_issue_enabled or not settings.github_token:
            result.skipped = len(alerts)
            return result
        client = GitHubIssueClient()

    now = now or datetime.utcnow()

    for alert in alerts:
        if not is_eligible(alert):
            result.skipped += 1
            continue

        if filed_today(session, source.id, now) >= settings.auto_issue_daily_cap:
            logger.info(
                "Daily issue cap reached for %s; not filing %s alert %s",
                source.name, alert.type, alert.id,
            )
            result.skipped += 1
            continue

        if on_cooldown(session, source.id, alert.type, now):
            logger.debug("%s issue for %s is on cooldown", alert.type, source.name)
            result.skipped += 1
            continue

        try:
            issue = client.create_issue(render_issue(alert, source))
        except IssueTrackerError as e:
            logger.warning("Auto-filing issue for alert %s failed: %s", alert.id, e)
            result.skipped += 1
            continue

        _record_filed(session, alert.id, issue.url, issue.number, now)
        result.filed += 1
        result.issue_urls.append(issue.url)

    if result.filed:
        logger.info("Auto-filed %d issue(s) for %s", result.filed, source.name)
    return result


def filed_today(session: Session, source_id: int, now: datetime) -> int:
    """Count issues auto-filed for a source since UTC midnight."""
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return _count_filed(session, source_id, day_start)


def on_cooldown(session: Session, source_id: int, alert_type: str, now: datetime) -> bool:
    """True when this alert type was auto-filed for the source within the cooldown."""
    cutoff = now - timedelta(hours=settings.auto_issue_cooldown_hours)
    return _count_filed(session, source_id, cutoff, alert_type) > 0


def _count_filed(
    session: Session,
    source_id: int,
    since: datetime,
    alert_type: Optional[str] = None,
) -> int:
    stmt = (
        select(func.count())
        .select_from(AlertRepairEntry)
        .join(Alert, Alert.id == AlertRepairEntry.alert_id)
        .where(
            Alert.source_id == source_id,
            AlertRepairEntry.action == c.REPAIR_AUTO_FILE_ISSUE,
            AlertRepairEntry.result == c.REPAIR_SUCCESS,
            AlertRepairEntry.created_at >= since,
        )
    )
    if alert_type is not None:
        stmt = stmt.where(Alert.type == alert_type)
    return session.scalar(stmt) or 0


def _record_filed(
    session: Session,
    alert_id: int,
    issue_url: str,
    issue_number: int,
    now: datetime,
) -> None:
    sequence = (
        session.scalar(
            select(func.max(AlertRepairEntry.sequence)).where(AlertRepairEntry.alert_id == alert_id)
        )
        or 0
    ) + 1
    try:
        with session.begin_nested():
            session.add(AlertRepairEntry(
                alert_id=alert_id,
                sequence=sequence,
                action=c.REPAIR_AUTO_FILE_ISSUE,
                actor=SYSTEM_ACTOR,
                details={"issue_url": issue_url, "issue_number": issue_number},
                result=c.REPAIR_SUCCESS,
                created_at=now,
            ))
            session.flush()
    except IntegrityError:
        logger.warning(
            "Repair entry %d for alert %s already exists; issue %s not logged",
            sequence, alert_id, issue_url,
        )
