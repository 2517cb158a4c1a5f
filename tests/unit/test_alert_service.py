"""
Unit tests for AlertService: lifecycle transitions and repair actions.

Setup data is committed before each action because failed repairs roll
back the session.
"""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select, update

from hashtracks.alerts import constants as c
from hashtracks.alerts.issues import FiledIssue, GitHubIssueClient, IssueTrackerError
from hashtracks.alerts.service import AlertService
from hashtracks.db.models import Alert, AlertRepairEntry, Event, Kennel, KennelAlias
from hashtracks.kennels.service import KennelData


@pytest.fixture
def brooklyn(make_kennel):
    return make_kennel("BrH3")


@pytest.fixture
def source(make_source, brooklyn):
    return make_source(kennels=(brooklyn,))


@pytest.fixture
def make_alert(db_session, source):
    def _make(type: str = c.UNMATCHED_TAGS, tags=("Brooklyn",), status: str = c.OPEN, **kwargs) -> Alert:
        context = {"kind": "tags", "tags": list(tags)} if type in c.TAG_ALERT_TYPES else kwargs.pop("context", None)
        alert = Alert(
            source_id=source.id,
            type=type,
            severity=kwargs.pop("severity", c.WARNING),
            status=status,
            title=kwargs.pop("title", "Test alert"),
            context=context,
            **kwargs,
        )
        db_session.add(alert)
        db_session.commit()
        return alert
    return _make


@pytest.fixture
def service(db_session, registry):
    return AlertService(db_session, actor="admin@example.com", registry=registry)


def _entry_count(session, alert_id: int) -> int:
    return session.scalar(
        select(func.count()).select_from(AlertRepairEntry).where(AlertRepairEntry.alert_id == alert_id)
    )


class FakeIssueClient:
    def __init__(self, error=None):
        self.error = error
        self.drafts = []

    def create_issue(self, draft):
        self.drafts.append(draft)
        if self.error is not None:
            raise self.error
        return FiledIssue(number=42, url="https://github.com/hashtracks/hashtracks-web/issues/42")


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Manual status transitions."""

    def test_acknowledge_open_alert(self, db_session, service, make_alert):
        alert = make_alert()
        result = service.acknowledge(alert.id)
        assert result.success
        assert db_session.get(Alert, alert.id).status == c.ACKNOWLEDGED

    def test_acknowledge_requires_open(self, service, make_alert):
        alert = make_alert(status=c.ACKNOWLEDGED)
        result = service.acknowledge(alert.id)
        assert not result.success
        assert result.error == "Alert is not open"

    def test_unknown_alert(self, service):
        result = service.resolve(9999)
        assert not result.success
        assert result.error == "Alert not found"

    def test_snooze_sets_deadline(self, db_session, service, make_alert):
        alert = make_alert()
        now = datetime(2026, 3, 1, 12, 0)
        result = service.snooze(alert.id, hours=24, now=now)

        assert result.success
        stored = db_session.get(Alert, alert.id)
        assert stored.status == c.SNOOZED
        assert stored.snoozed_until == now + timedelta(hours=24)

    def test_snooze_rejects_non_positive_duration(self, service, make_alert):
        alert = make_alert()
        result = service.snooze(alert.id, hours=0)
        assert result.error == "Snooze duration must be positive"

    def test_snooze_acknowledged_alert(self, db_session, service, make_alert):
        alert = make_alert(status=c.ACKNOWLEDGED)
        assert service.snooze(alert.id, hours=2).success
        assert db_session.get(Alert, alert.id).status == c.SNOOZED

    def test_snoozed_alert_cannot_be_snoozed_again(self, db_session, service, make_alert):
        until = datetime(2026, 3, 2, 12, 0)
        alert = make_alert(status=c.SNOOZED, snoozed_until=until)

        result = service.snooze(alert.id, hours=48)

        assert result.error == "Alert is already snoozed"
        assert db_session.get(Alert, alert.id).snoozed_until == until
        assert not service.acknowledge(alert.id).success
        assert service.resolve(alert.id).success

    def test_resolved_is_terminal(self, db_session, service, make_alert):
        alert = make_alert()
        assert service.resolve(alert.id).success

        stored = db_session.get(Alert, alert.id)
        assert stored.status == c.RESOLVED
        assert stored.resolved_by == "admin@example.com"
        assert stored.resolved_at is not None

        assert service.resolve(alert.id).error == "Alert is already resolved"
        assert service.snooze(alert.id, hours=1).error == "Alert is already resolved"
        assert not service.acknowledge(alert.id).success

    def test_resolve_all_for_source_skips_snoozed(self, db_session, service, make_alert, source):
        open_alert = make_alert()
        acked = make_alert(status=c.ACKNOWLEDGED)
        snoozed = make_alert(status=c.SNOOZED, snoozed_until=datetime.utcnow() + timedelta(days=1))

        result = service.resolve_all_for_source(source.id)

        assert result.data["resolved"] == 2
        db_session.expire_all()
        assert db_session.get(Alert, open_alert.id).status == c.RESOLVED
        assert db_session.get(Alert, acked.id).status == c.RESOLVED
        assert db_session.get(Alert, snoozed.id).status == c.SNOOZED

    def test_wake_expired_snoozes(self, db_session, service, make_alert):
        now = datetime(2026, 3, 1, 12, 0)
        expired = make_alert(status=c.SNOOZED, snoozed_until=now - timedelta(hours=1))
        pending = make_alert(status=c.SNOOZED, snoozed_until=now + timedelta(hours=1))

        result = service.wake_expired_snoozes(now=now)

        assert result.data["woken"] == 1
        db_session.expire_all()
        woken = db_session.get(Alert, expired.id)
        assert woken.status == c.OPEN
        assert woken.snoozed_until is None
        assert db_session.get(Alert, pending.id).status == c.SNOOZED


# =============================================================================
# Create Alias
# =============================================================================

class TestCreateAlias:
    """Mapping an unmatched tag onto an existing kennel."""

    def test_last_tag_fixed_resolves_alert_once(self, db_session, service, make_alert, brooklyn):
        alert = make_alert(tags=["Brooklyn", "BK Hash"])

        first = service.create_alias(alert.id, "Brooklyn", brooklyn.id)
        assert first.success
        assert first.data["resolved"] is False
        assert db_session.get(Alert, alert.id).status == c.OPEN

        second = service.create_alias(alert.id, "BK Hash", brooklyn.id)
        assert second.success
        assert second.data["resolved"] is True
        assert db_session.get(Alert, alert.id).status == c.RESOLVED

        third = service.create_alias(alert.id, "Bklyn", brooklyn.id)
        assert third.success
        assert third.data["resolved"] is False

        log = service.repair_log(alert.id)
        assert [e.action for e in log] == [c.REPAIR_CREATE_ALIAS] * 3
        assert all(e.result == c.REPAIR_SUCCESS for e in log)
        assert log[0].details["kennel_name"] == "BrH3"
        assert log[0].actor == "admin@example.com"

    def test_resolution_by_another_actor_wins(self, db_session, service, make_alert, brooklyn, monkeypatch):
        alert = make_alert(tags=["Brooklyn"])
        resolve_tag = service.resolver.resolve

        def resolve_after_other_actor(tag, source_id=None):
            # Another operator resolves the alert while this repair checks its tags
            db_session.execute(
                update(Alert)
                .where(Alert.id == alert.id)
                .values(status=c.RESOLVED, resolved_by="other@example.com")
                .execution_options(synchronize_session=False)
            )
            return resolve_tag(tag, source_id=source_id)

        monkeypatch.setattr(service.resolver, "resolve", resolve_after_other_actor)
        result = service.create_alias(alert.id, "Brooklyn", brooklyn.id)

        assert result.success
        assert result.data["resolved"] is False
        stored = db_session.get(Alert, alert.id)
        assert stored.status == c.RESOLVED
        assert stored.resolved_by == "other@example.com"

    def test_duplicate_alias_records_error(self, db_session, service, make_alert, make_kennel, brooklyn):
        make_kennel("Brooklyn Full Moon", aliases=("BK Moon",))
        db_session.commit()
        alert = make_alert(tags=["bk moon"])

        result = service.create_alias(alert.id, "bk moon", brooklyn.id)

        assert not result.success
        assert "already exists" in result.error
        aliases = db_session.scalars(select(KennelAlias).where(KennelAlias.kennel_id == brooklyn.id)).all()
        assert aliases == []

        log = service.repair_log(alert.id)
        assert len(log) == 1
        assert log[0].result == c.REPAIR_ERROR
        assert log[0].result_message == result.error
        assert db_session.get(Alert, alert.id).status == c.OPEN

    def test_unknown_kennel(self, service, make_alert):
        alert = make_alert()
        result = service.create_alias(alert.id, "Brooklyn", kennel_id=9999)
        assert result.error == "Kennel not found"

    def test_rescrape_after_merges_previously_unmatched_events(
        self, db_session, service, make_alert, brooklyn, fake_adapter, raw_event
    ):
        on = date.today() + timedelta(days=5)
        fake_adapter.result.events = [raw_event("Brooklyn", on.isoformat(), title="Bridge Trail")]
        alert = make_alert()

        result = service.create_alias(alert.id, "Brooklyn", brooklyn.id, rescrape_after=True)

        assert result.success
        assert result.data["rescrape"]["created"] == 1
        assert result.data["resolved"] is True
        event = db_session.scalar(select(Event).where(Event.kennel_id == brooklyn.id))
        assert event.date == on


# =============================================================================
# Create Kennel
# =============================================================================

class TestCreateKennel:
    """Creating a kennel for an unmatched tag."""

    def test_creates_links_and_resolves(self, db_session, service, make_alert, source):
        alert = make_alert(tags=["QBK"])

        result = service.create_kennel(alert.id, "QBK", KennelData(short_name="Queens Black Knights"))

        assert result.success
        assert result.data["resolved"] is True
        kennel = db_session.get(Kennel, result.data["kennel_id"])
        assert kennel.short_name == "Queens Black Knights"
        assert [a.alias for a in kennel.aliases] == ["QBK"]
        assert kennel.id in service.kennels.linked_kennel_ids(source.id)
        assert service.repair_log(alert.id)[0].action == c.REPAIR_CREATE_KENNEL

    def test_similar_kennels_warn_without_blocking(self, db_session, make_kennel, service, make_alert):
        make_kennel("Brooklyn H3", region="Brooklyn")
        db_session.commit()
        alert = make_alert(tags=["Brooklyn"])

        result = service.create_kennel(alert.id, "Brooklyn", KennelData(short_name="Brooklyn"))

        assert result.success
        assert "Brooklyn H3" in [s["short_name"] for s in result.data["similar_kennels"]]

    def test_collision_rolls_back(self, db_session, service, make_alert):
        alert = make_alert(tags=["Brooklyn"])
        before = db_session.scalar(select(func.count()).select_from(Kennel))

        result = service.create_kennel(alert.id, "Brooklyn", KennelData(short_name="BrH3", region="New York"))

        assert not result.success
        assert db_session.scalar(select(func.count()).select_from(Kennel)) == before
        assert _entry_count(db_session, alert.id) == 1
        assert service.repair_log(alert.id)[0].result == c.REPAIR_ERROR


# =============================================================================
# Link Kennel To Source
# =============================================================================

class TestLinkKennelToSource:
    """Allowing a source to report a kennel it was blocked on."""

    def test_link_resolves_mismatch_alert(self, db_session, make_kennel, service, make_alert, source):
        queens = make_kennel("QBK")
        db_session.commit()
        alert = make_alert(type=c.SOURCE_KENNEL_MISMATCH, tags=["QBK"])

        result = service.link_kennel_to_source(alert.id, "QBK")

        assert result.success
        assert result.data["kennel_id"] == queens.id
        assert result.data["resolved"] is True
        assert queens.id in service.kennels.linked_kennel_ids(source.id)

    def test_mismatch_stays_open_until_every_tag_linked(self, db_session, make_kennel, service, make_alert):
        make_kennel("QBK")
        make_kennel("LIL")
        db_session.commit()
        alert = make_alert(type=c.SOURCE_KENNEL_MISMATCH, tags=["QBK", "LIL"])

        result = service.link_kennel_to_source(alert.id, "QBK")

        assert result.success
        assert result.data["resolved"] is False
        assert db_session.get(Alert, alert.id).status == c.OPEN

    def test_already_linked(self, service, make_alert):
        alert = make_alert(type=c.SOURCE_KENNEL_MISMATCH, tags=["BrH3"])
        result = service.link_kennel_to_source(alert.id, "BrH3")
        assert result.error == "Kennel is already linked to this source"

    def test_unresolvable_tag(self, db_session, service, make_alert):
        alert = make_alert(type=c.SOURCE_KENNEL_MISMATCH, tags=["Nowhere"])

        result = service.link_kennel_to_source(alert.id, "Nowhere")

        assert result.error == 'Cannot resolve "Nowhere" to a kennel'
        assert service.repair_log(alert.id)[0].result == c.REPAIR_ERROR


# =============================================================================
# Rescrape And Issues
# =============================================================================

class TestRescrape:
    """Re-running the alert's source."""

    def test_successful_rescrape(self, db_session, service, make_alert, fake_adapter, raw_event):
        fake_adapter.result.events = [
            raw_event("BrH3", (date.today() + timedelta(days=2)).isoformat(), title="Trail"),
        ]
        alert = make_alert(type=c.EVENT_COUNT_ANOMALY, tags=())

        result = service.rescrape(alert.id, force=True)

        assert result.success
        assert result.data["events_found"] == 1
        assert result.data["created"] == 1
        entry = service.repair_log(alert.id)[0]
        assert entry.action == c.REPAIR_RESCRAPE
        assert entry.details["forced"] is True

    def test_failed_rescrape_is_logged(self, service, make_alert, fake_adapter):
        fake_adapter.error = ConnectionError("calendar unreachable")
        alert = make_alert(type=c.SCRAPE_FAILURE, tags=())

        result = service.rescrape(alert.id)

        assert not result.success
        assert result.error.startswith("Scrape failed: ")
        entry = service.repair_log(alert.id)[0]
        assert entry.result == c.REPAIR_ERROR

    def test_repair_entries_are_sequenced(self, db_session, service, make_alert):
        alert = make_alert(type=c.SCRAPE_FAILURE, tags=())
        service.rescrape(alert.id)
        service.rescrape(alert.id)

        sequences = db_session.scalars(
            select(AlertRepairEntry.sequence)
            .where(AlertRepairEntry.alert_id == alert.id)
            .order_by(AlertRepairEntry.sequence)
        ).all()
        assert sequences == [1, 2]

    def test_duplicate_sequence_is_a_no_op(self, db_session, service, make_alert, monkeypatch):
        alert = make_alert(type=c.SCRAPE_FAILURE, tags=())
        service.rescrape(alert.id)

        # A concurrent append already took sequence 1
        monkeypatch.setattr(service, "_next_sequence", lambda alert_id: 1)
        result = service.rescrape(alert.id)

        assert result.success
        assert _entry_count(db_session, alert.id) == 1
        assert [e.action for e in service.repair_log(alert.id)] == [c.REPAIR_RESCRAPE]


class TestFileExternalIssue:
    """Exporting an alert to the issue tracker."""

    def test_filed_issue(self, db_session, registry, make_alert):
        client = FakeIssueClient()
        service = AlertService(db_session, actor="admin", registry=registry, issue_client=client)
        alert = make_alert()

        result = service.file_external_issue(alert.id)

        assert result.success
        assert result.data["issue_number"] == 42
        assert client.drafts[0].title == "[Alert] Test alert (Test Calendar)"
        assert db_session.get(Alert, alert.id).status == c.OPEN
        assert service.repair_log(alert.id)[0].details["issue_url"].endswith("/42")

    def test_tracker_error_keeps_status(self, db_session, registry, make_alert):
        client = FakeIssueClient(error=IssueTrackerError("GitHub API 502: Bad Gateway"))
        service = AlertService(db_session, actor="admin", registry=registry, issue_client=client)
        alert = make_alert(status=c.ACKNOWLEDGED)

        result = service.file_external_issue(alert.id)

        assert not result.success
        assert result.error == "GitHub API 502: Bad Gateway"
        assert db_session.get(Alert, alert.id).status == c.ACKNOWLEDGED
        entry = service.repair_log(alert.id)[0]
        assert entry.action == c.REPAIR_CREATE_ISSUE
        assert entry.result == c.REPAIR_ERROR

    def test_missing_token(self, db_session, registry, make_alert):
        client = GitHubIssueClient(token="")
        service = AlertService(db_session, actor="admin", registry=registry, issue_client=client)
        alert = make_alert()

        result = service.file_external_issue(alert.id)

        assert result.error == "GITHUB_TOKEN not configured"
