"""
Unit tests for automatic issue filing after scrapes.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from hashtracks.alerts import constants as c
from hashtracks.alerts.auto_issue import SYSTEM_ACTOR, auto_file_issues
from hashtracks.alerts.issues import FiledIssue, IssueTrackerError
from hashtracks.config import settings
from hashtracks.db.models import Alert, AlertRepairEntry
from hashtracks.pipeline.scrape import scrape_source


NOW = datetime(2026, 3, 10, 15, 0)


class FakeIssueClient:
    def __init__(self, error=None):
        self.error = error
        self.drafts = []

    def create_issue(self, draft):
        self.drafts.append(draft)
        if self.error is not None:
            raise self.error
        number = len(self.drafts)
        return FiledIssue(number=number, url=f"https://github.com/hashtracks/hashtracks-web/issues/{number}")


@pytest.fixture
def source(make_source):
    return make_source(name="NYC Calendar")


@pytest.fixture
def make_alert(db_session, source):
    def _make(type: str = c.SCRAPE_FAILURE, severity: str = c.WARNING, **kwargs) -> Alert:
        alert = Alert(
            source_id=source.id,
            type=type,
            severity=severity,
            status=kwargs.pop("status", c.OPEN),
            title=kwargs.pop("title", f"{type} alert"),
            **kwargs,
        )
        db_session.add(alert)
        db_session.flush()
        return alert
    return _make


def _filed_entries(session) -> list[AlertRepairEntry]:
    return session.scalars(
        select(AlertRepairEntry)
        .where(AlertRepairEntry.action == c.REPAIR_AUTO_FILE_ISSUE)
        .order_by(AlertRepairEntry.id)
    ).all()


class TestEligibility:

    def test_files_failure_alert(self, db_session, source, make_alert):
        alert = make_alert(c.SCRAPE_FAILURE, c.CRITICAL, title="Scrape failed")
        client = FakeIssueClient()

        result = auto_file_issues(db_session, source, [alert], client=client, now=NOW)

        assert result.filed == 1
        assert client.drafts[0].title == "[Alert] Scrape failed (NYC Calendar)"
        entry = _filed_entries(db_session)[0]
        assert entry.alert_id == alert.id
        assert entry.actor == SYSTEM_ACTOR
        assert entry.sequence == 1
        assert entry.details == {
            "issue_url": "https://github.com/hashtracks/hashtracks-web/issues/1",
            "issue_number": 1,
        }

    def test_tag_and_info_alerts_not_filed(self, db_session, source, make_alert):
        alerts = [
            make_alert(c.UNMATCHED_TAGS, c.WARNING),
            make_alert(c.EVENT_COUNT_ANOMALY, c.CRITICAL),
            make_alert(c.FIELD_FILL_DROP, c.INFO),
        ]
        client = FakeIssueClient()

        result = auto_file_issues(db_session, source, alerts, client=client, now=NOW)

        assert result.filed == 0
        assert result.skipped == 3
        assert client.drafts == []

    def test_no_token_files_nothing(self, db_session, source, make_alert):
        result = auto_file_issues(db_session, source, [make_alert()], now=NOW)
        assert result.skipped == 1
        assert _filed_entries(db_session) == []

    def test_disabled(self, db_session, source, make_alert, monkeypatch):
        monkeypatch.setattr(settings, "github_token", "t0ken")
        monkeypatch.setattr(settings, "auto_issue_enabled", False)
        result = auto_file_issues(db_session, source, [make_alert()], now=NOW)
        assert result.filed == 0


class TestLimits:

    def test_daily_cap(self, db_session, source, make_alert):
        alerts = [
            make_alert(c.SCRAPE_FAILURE),
            make_alert(c.CONSECUTIVE_FAILURES),
            make_alert(c.STRUCTURE_CHANGE),
            make_alert(c.FIELD_FILL_DROP),
        ]
        client = FakeIssueClient()

        result = auto_file_issues(db_session, source, alerts, client=client, now=NOW)

        assert result.filed == settings.auto_issue_daily_cap == 3
        assert result.skipped == 1
        assert [e.alert_id for e in _filed_entries(db_session)] == [a.id for a in alerts[:3]]

    def test_cap_counts_only_today(self, db_session, source, make_alert):
        yesterday = NOW - timedelta(days=1)
        old = [make_alert(t) for t in (c.SCRAPE_FAILURE, c.CONSECUTIVE_FAILURES, c.STRUCTURE_CHANGE)]
        auto_file_issues(db_session, source, old, client=FakeIssueClient(), now=yesterday)

        fresh = make_alert(c.FIELD_FILL_DROP)
        result = auto_file_issues(db_session, source, [fresh], client=FakeIssueClient(), now=NOW)

        assert result.filed == 1

    def test_same_type_on_cooldown(self, db_session, source, make_alert):
        alert = make_alert(c.STRUCTURE_CHANGE)
        auto_file_issues(db_session, source, [alert], client=FakeIssueClient(), now=NOW - timedelta(hours=47))

        client = FakeIssueClient()
        result = auto_file_issues(db_session, source, [alert], client=client, now=NOW)

        assert result.filed == 0
        assert client.drafts == []

    def test_cooldown_expires(self, db_session, source, make_alert):
        alert = make_alert(c.STRUCTURE_CHANGE)
        auto_file_issues(db_session, source, [alert], client=FakeIssueClient(), now=NOW - timedelta(hours=49))

        result = auto_file_issues(db_session, source, [alert], client=FakeIssueClient(), now=NOW)

        assert result.filed == 1
        assert [e.sequence for e in _filed_entries(db_session)] == [1, 2]

    def test_other_source_does_not_count(self, db_session, source, make_source, make_alert):
        other = make_source(name="Other Calendar")
        other_alert = Alert(
            source_id=other.id, type=c.STRUCTURE_CHANGE, severity=c.WARNING, status=c.OPEN, title="x",
        )
        db_session.add(other_alert)
        db_session.flush()
        auto_file_issues(db_session, other, [other_alert], client=FakeIssueClient(), now=NOW)

        result = auto_file_issues(
            db_session, source, [make_alert(c.STRUCTURE_CHANGE)], client=FakeIssueClient(), now=NOW
        )
        assert result.filed == 1


class TestTrackerErrors:

    def test_error_is_skipped(self, db_session, source, make_alert):
        client = FakeIssueClient(error=IssueTrackerError("GitHub API 502: Bad Gateway"))
        result = auto_file_issues(db_session, source, [make_alert()], client=client, now=NOW)

        assert result.filed == 0
        assert result.skipped == 1
        assert _filed_entries(db_session) == []


class TestScrapeIntegration:

    def test_failed_scrape_files_issue(self, db_session, source, fake_adapter, registry):
        fake_adapter.error = ConnectionError("connection refused")
        client = FakeIssueClient()

        run = scrape_source(db_session, source.id, registry=registry, issue_client=client)

        assert not run.success
        assert len(client.drafts) == 1
        assert "alert:scrape-failure" in client.drafts[0].labels
        alert = db_session.scalar(select(Alert).where(Alert.type == c.SCRAPE_FAILURE))
        assert [e.alert_id for e in _filed_entries(db_session)] == [alert.id]

    def test_repeat_failure_respects_cooldown(self, db_session, source, fake_adapter, registry):
        fake_adapter.error = ConnectionError("connection refused")
        client = FakeIssueClient()

        scrape_source(db_session, source.id, registry=registry, issue_client=client)
        scrape_source(db_session, source.id, registry=registry, issue_client=client)

        assert len(client.drafts) == 1

    def test_tracker_error_does_not_fail_run(self, db_session, source, fake_adapter, registry):
        fake_adapter.error = ConnectionError("connection refused")
        client = FakeIssueClient(error=IssueTrackerError("Failed to create issue: timeout"))

        run = scrape_source(db_session, source.id, registry=registry, issue_client=client)

        assert run.errors == ["connection refused"]
        assert db_session.scalar(select(Alert.type)) == c.SCRAPE_FAILURE
        assert _filed_entries(db_session) == []
