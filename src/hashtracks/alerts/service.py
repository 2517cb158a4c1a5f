"""
Alert lifecycle and repair actions.

Alerts move through OPEN -> ACKNOWLEDGED -> RESOLVED, with SNOOZED as a
temporary parking state (see alerts/constants.py). RESOLVED is terminal.

Repair actions let an operator fix the cause of an alert directly:
- rescrape: run the source again (optionally forced)
- create_alias: map an unmatched tag onto an existing kennel
- create_kennel: create a new kennel for a tag and link it to the source
- link_kennel_to_source: allow the source to report a kennel it names
- file_external_issue: export the alert to the issue tracker

Every repair action appends exactly one entry to the alert's repair log,
whether it succeeded or not. After the three kennel/alias actions the
resolver cache is cleared and every tag in the alert's context is
resolved again; when all of them now resolve (and, for
SOURCE_KENNEL_MISMATCH, to kennels linked to the source) the alert is
resolved.

All methods return ActionResult; validation and not-found problems come
back in ActionResult.error rather than as exceptions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hashtracks.alerts import constants as c
from hashtracks.alerts.context import RepairLogEntry, context_tags
from hashtracks.alerts.issues import GitHubIssueClient, IssueTrackerError, render_issue
from hashtracks.db.models import Alert, AlertRepairEntry, Kennel, Source
from hashtracks.kennels.resolver import TagResolver
from hashtracks.kennels.service import KennelData, KennelService, KennelValidationError
from hashtracks.pipeline.adapters import AdapterRegistry
from hashtracks.pipeline.scrape import SourceNotFoundError, scrape_source

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of an alert action."""
    success: bool
    error: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data: Any) -> "ActionResult":
        return cls(success=False, error=error, data=data)

    def __repr__(self) -> str:
        if self.success:
            return f"<ActionResult(success=True, data={self.data})>"
        return f"<ActionResult(error={self.error!r})>"


class AlertService:
    """
    Manage alerts and run repair actions on behalf of an operator.

    The caller is responsible for authorization; `actor` is recorded in
    the repair log and in resolved_by.

    Usage:
        service = AlertService(session, actor="admin@example.com")
        result = service.create_alias(alert_id, "Brooklyn", kennel_id=brh3.id)
        if not result.success:
            print(result.error)
    """

    def __init__(
        self,
        db: Session,
        actor: str,
        resolver: Optional[TagResolver] = None,
        registry: Optional[AdapterRegistry] = None,
        issue_client: Optional[GitHubIssueClient] = None,
    ):
        self.db = db
        self.actor = actor
        self.resolver = resolver or TagResolver(db)
        self.registry = registry
        self.issue_client = issue_client
        self.kennels = KennelService(db)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def acknowledge(self, alert_id: int) -> ActionResult:
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        if not c.can_transition(alert.status, c.ACKNOWLEDGED):
            return ActionResult.fail("Alert is not open")

        alert.status = c.ACKNOWLEDGED
        self.db.commit()
        return ActionResult.ok()

    def snooze(self, alert_id: int, hours: float, now: Optional[datetime] = None) -> ActionResult:
        """Park an alert until now + hours; new detections are suppressed until then."""
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        if alert.status == c.RESOLVED:
            return ActionResult.fail("Alert is already resolved")
        if not c.can_transition(alert.status, c.SNOOZED):
            return ActionResult.fail("Alert is already snoozed")
        if hours <= 0:
            return ActionResult.fail("Snooze duration must be positive")

        now = now or datetime.utcnow()
        alert.status = c.SNOOZED
        alert.snoozed_until = now + timedelta(hours=hours)
        self.db.commit()
        return ActionResult.ok(snoozed_until=alert.snoozed_until.isoformat())

    def resolve(self, alert_id: int) -> ActionResult:
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        if not c.can_transition(alert.status, c.RESOLVED):
            return ActionResult.fail("Alert is already resolved")

        self._mark_resolved(alert)
        self.db.commit()
        return ActionResult.ok()

    def resolve_all_for_source(self, source_id: int) -> ActionResult:
        """Resolve every OPEN or ACKNOWLEDGED alert of a source."""
        result = self.db.execute(
            update(Alert)
            .where(Alert.source_id == source_id, Alert.status.in_(c.ACTIVE_STATUSES))
            .values(status=c.RESOLVED, resolved_at=datetime.utcnow(), resolved_by=self.actor)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return ActionResult.ok(resolved=result.rowcount)

    def wake_expired_snoozes(self, now: Optional[datetime] = None) -> ActionResult:
        """Return SNOOZED alerts whose snooze has expired to OPEN."""
        now = now or datetime.utcnow()
        result = self.db.execute(
            update(Alert)
            .where(Alert.status == c.SNOOZED, Alert.snoozed_until < now)
            .values(status=c.OPEN, snoozed_until=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.info("Woke %d snoozed alert(s)", result.rowcount)
        return ActionResult.ok(woken=result.rowcount)

    # =========================================================================
    # Repair Actions
    # =========================================================================

    def rescrape(self, alert_id: int, force: bool = False) -> ActionResult:
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        source_id = alert.source_id

        try:
            run = scrape_source(
                self.db, source_id, force=force, registry=self.registry, resolver=self.resolver,
                issue_client=self.issue_client,
            )
        except SourceNotFoundError as e:
            self._record(alert_id, c.REPAIR_RESCRAPE, {"forced": force}, str(e))
            self.db.commit()
            return ActionResult.fail(str(e))

        details = {"forced": force, "events_found": run.events_found, "created": run.created}
        error = None if run.success else ("; ".join(run.errors[:3]) or "unknown error")
        self._record(alert_id, c.REPAIR_RESCRAPE, details, error)
        self.db.commit()

        data = {
            "events_found": run.events_found,
            "created": run.created,
            "updated": run.updated,
            "scrape_log_id": run.scrape_log_id,
        }
        if not run.success:
            return ActionResult.fail(f"Scrape failed: {error}", **data)
        return ActionResult(success=True, data=data)

    def create_alias(
        self,
        alert_id: int,
        tag: str,
        kennel_id: int,
        rescrape_after: bool = False,
    ) -> ActionResult:
        """Map `tag` onto an existing kennel."""
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")

        details: dict[str, Any] = {"tag": tag, "kennel_id": kennel_id}
        try:
            self.kennels.add_alias(kennel_id, tag)
            kennel = self.db.get(Kennel, kennel_id)
            details["kennel_name"] = kennel.short_name
            self._record(alert_id, c.REPAIR_CREATE_ALIAS, details)
            self.db.commit()
        except (KennelValidationError, SQLAlchemyError) as e:
            return self._fail_repair(alert_id, c.REPAIR_CREATE_ALIAS, details, e)

        logger.info("Alias %r -> kennel %s created from alert %s", tag, kennel_id, alert_id)
        return self._after_kennel_repair(alert_id, rescrape_after, force=False, **details)

    def create_kennel(
        self,
        alert_id: int,
        tag: str,
        kennel_data: KennelData,
        rescrape_after: bool = False,
    ) -> ActionResult:
        """
        Create a kennel for `tag` and link it to the alert's source.

        The kennel, its seed alias, the source link and the repair entry are
        committed together. Similar existing kennels are returned as
        warnings in data["similar_kennels"]; they never block creation.
        """
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        source_id = alert.source_id

        similar = [
            {"id": m.id, "short_name": m.short_name, "score": round(m.score, 2)}
            for m in self.kennels.find_similar_kennels(kennel_data.short_name or tag)
        ]
        details: dict[str, Any] = {"tag": tag, "short_name": kennel_data.short_name}
        try:
            kennel = self.kennels.create_kennel(kennel_data, seed_alias=tag)
            self.kennels.link_to_source(source_id, kennel.id)
            details.update(kennel_id=kennel.id, slug=kennel.slug)
            self._record(alert_id, c.REPAIR_CREATE_KENNEL, details)
            self.db.commit()
        except (KennelValidationError, SQLAlchemyError) as e:
            return self._fail_repair(alert_id, c.REPAIR_CREATE_KENNEL, details, e)

        if similar:
            logger.warning(
                "Kennel %s created from alert %s despite similar kennels: %s",
                kennel_data.short_name, alert_id, ", ".join(s["short_name"] for s in similar),
            )
        return self._after_kennel_repair(
            alert_id, rescrape_after, force=False, similar_kennels=similar, **details
        )

    def link_kennel_to_source(
        self,
        alert_id: int,
        tag: str,
        rescrape_after: bool = False,
    ) -> ActionResult:
        """Link the kennel `tag` resolves to with the alert's source."""
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        source_id = alert.source_id

        details: dict[str, Any] = {"tag": tag}
        self.resolver.clear_cache()
        resolution = self.resolver.resolve(tag, source_id=source_id)
        if not resolution.matched:
            return self._fail_repair(
                alert_id, c.REPAIR_LINK_KENNEL, details,
                KennelValidationError(f"Cannot resolve \"{tag}\" to a kennel"),
            )

        details["kennel_id"] = resolution.kennel_id
        try:
            self.kennels.link_to_source(source_id, resolution.kennel_id)
            details["kennel_name"] = self.db.get(Kennel, resolution.kennel_id).short_name
            self._record(alert_id, c.REPAIR_LINK_KENNEL, details)
            self.db.commit()
        except (KennelValidationError, SQLAlchemyError) as e:
            return self._fail_repair(alert_id, c.REPAIR_LINK_KENNEL, details, e)

        # Blocked raw events are already stored; force so they are merged now
        return self._after_kennel_repair(alert_id, rescrape_after, force=True, **details)

    def file_external_issue(self, alert_id: int) -> ActionResult:
        """Export the alert to the issue tracker. Never changes alert status."""
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            return ActionResult.fail("Alert not found")
        source = self.db.get(Source, alert.source_id)

        client = self.issue_client or GitHubIssueClient()
        draft = render_issue(alert, source)
        try:
            issue = client.create_issue(draft)
        except IssueTrackerError as e:
            logger.warning("Could not file issue for alert %s: %s", alert_id, e)
            self._record(alert_id, c.REPAIR_CREATE_ISSUE, {"title": draft.title}, str(e))
            self.db.commit()
            return ActionResult.fail(str(e))

        self._record(
            alert_id, c.REPAIR_CREATE_ISSUE,
            {"issue_url": issue.url, "issue_number": issue.number},
        )
        self.db.commit()
        return ActionResult.ok(issue_url=issue.url, issue_number=issue.number)

    def repair_log(self, alert_id: int) -> list[RepairLogEntry]:
        """The alert's repair log, oldest first."""
        rows = self.db.scalars(
            select(AlertRepairEntry)
            .where(AlertRepairEntry.alert_id == alert_id)
            .order_by(AlertRepairEntry.sequence)
        ).all()
        return [
            RepairLogEntry(
                action=row.action,
                timestamp=row.created_at,
                actor=row.actor,
                details=row.details or {},
                result=row.result,
                result_message=row.result_message,
            )
            for row in rows
        ]

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _mark_resolved(self, alert: Alert) -> None:
        alert.status = c.RESOLVED
        alert.resolved_at = datetime.utcnow()
        alert.resolved_by = self.actor
        alert.snoozed_until = None

    def _record(
        self,
        alert_id: int,
        action: str,
        details: dict[str, Any],
        error: Optional[str] = None,
    ) -> Optional[AlertRepairEntry]:
        """
        Append one repair log entry (inside the caller's transaction).

        A concurrent append that took the same sequence number is dropped
        with a warning; the caller's transaction is unaffected.
        """
        entry = RepairLogEntry(
            action=action,
            timestamp=datetime.utcnow(),
            actor=self.actor,
            details=details,
            result=c.REPAIR_ERROR if error else c.REPAIR_SUCCESS,
            result_message=error,
        )
        sequence = self._next_sequence(alert_id)

        row = AlertRepairEntry(
            alert_id=alert_id,
            sequence=sequence,
            action=entry.action,
            actor=entry.actor,
            details=entry.model_dump(mode="json")["details"],
            result=entry.result,
            result_message=entry.result_message,
            created_at=entry.timestamp,
        )
        try:
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            logger.warning(
                "Repair entry %d for alert %s already exists; treating %s as recorded",
                sequence, alert_id, action,
            )
            return None
        return row

    def _next_sequence(self, alert_id: int) -> int:
        current = self.db.scalar(
            select(func.max(AlertRepairEntry.sequence)).where(AlertRepairEntry.alert_id == alert_id)
        )
        return (current or 0) + 1

    def _fail_repair(
        self,
        alert_id: int,
        action: str,
        details: dict[str, Any],
        error: Exception,
    ) -> ActionResult:
        """Roll back the failed repair, then record the failure on its own."""
        self.db.rollback()
        message = str(error)
        if isinstance(error, SQLAlchemyError):
            logger.error("Repair %s on alert %s failed: %s", action, alert_id, error)
            message = f"{action} failed: database error"

        self._record(alert_id, action, details, message)
        self.db.commit()
        return ActionResult.fail(message)

    def _after_kennel_repair(
        self,
        alert_id: int,
        rescrape_after: bool,
        force: bool,
        **data: Any,
    ) -> ActionResult:
        """Clear the cache, optionally rescrape, then try to auto-resolve."""
        self.resolver.clear_cache()

        if rescrape_after:
            alert = self.db.get(Alert, alert_id)
            run = scrape_source(
                self.db, alert.source_id, force=force, registry=self.registry, resolver=self.resolver,
                issue_client=self.issue_client,
            )
            data["rescrape"] = {
                "success": run.success,
                "events_found": run.events_found,
                "created": run.created,
            }

        data["resolved"] = self._auto_resolve_if_tags_match(alert_id)
        self.db.commit()
        return ActionResult(success=True, data=data)

    def _auto_resolve_if_tags_match(self, alert_id: int) -> bool:
        """
        Resolve the alert when every tag in its context now resolves.

        For SOURCE_KENNEL_MISMATCH each tag must also resolve to a kennel
        linked to the alert's source. Returns True only when this call
        performed the transition.
        """
        alert = self.db.get(Alert, alert_id)
        if alert is None or alert.status == c.RESOLVED:
            return False

        tags = context_tags(alert.context)
        if not tags:
            return False

        self.resolver.clear_cache()
        linked = self.kennels.linked_kennel_ids(alert.source_id)
        for tag in tags:
            resolution = self.resolver.resolve(tag, source_id=alert.source_id)
            if not resolution.matched:
                return False
            if alert.type == c.SOURCE_KENNEL_MISMATCH and resolution.kennel_id not in linked:
                return False

        # Only one caller performs the RESOLVED transition
        self.db.flush()
        result = self.db.execute(
            update(Alert)
            .where(Alert.id == alert_id, Alert.status != c.RESOLVED)
            .values(
                status=c.RESOLVED,
                resolved_at=datetime.utcnow(),
                resolved_by=self.actor,
                snoozed_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.expire(alert)
        if result.rowcount != 1:
            return False

        logger.info("Alert %s auto-resolved: all %d tag(s) now resolve", alert_id, len(tags))
        return True
