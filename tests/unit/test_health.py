"""
Unit tests for source health analysis and alert deduplication.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from hashtracks.alerts import constants as c
from hashtracks.alerts.health import (
    HealthInput,
    analyze_health,
    check_consecutive_failures,
    persist_alerts,
)
from hashtracks.db.models import Alert
from hashtracks.pipeline.fill_rates import FieldFillRates, compute_fill_rates
from hashtracks.pipeline.adapters import RawEventData


def _steady_rates(**overrides) -> FieldFillRates:
    values = dict(title=100, location=100, hares=80, start_time=90, run_number=10)
    values.update(overrides)
    return FieldFillRates(**values)


def _run(events_found: int, **kwargs) -> HealthInput:
    kwargs.setdefault("fill_rates", _steady_rates())
    return HealthInput(events_found=events_found, scrape_failed=False, **kwargs)


@pytest.fixture
def source(make_source):
    return make_source()


class TestEventCount:

    def test_drop_below_threshold_raises_exactly_one_alert(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 10)

        analysis = analyze_health(db_session, source.id, None, _run(5))
        assert analysis.alert_types() == [c.EVENT_COUNT_ANOMALY]
        assert analysis.health_status == c.HEALTH_DEGRADED
        assert analysis.alerts[0].context.drop_percent == 75

        persist_alerts(db_session, source.id, None, analysis.alerts)
        persist_alerts(db_session, source.id, None, analysis.alerts)
        assert db_session.scalar(
            select(func.count()).select_from(Alert).where(Alert.type == c.EVENT_COUNT_ANOMALY)
        ) == 1

    def test_within_threshold_is_healthy(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 10)
        analysis = analyze_health(db_session, source.id, None, _run(11))
        assert analysis.alerts == []
        assert analysis.health_status == c.HEALTH_HEALTHY

    def test_zero_events_is_critical(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [3, 4])
        analysis = analyze_health(db_session, source.id, None, _run(0))
        assert analysis.alert_types() == [c.EVENT_COUNT_ANOMALY]
        assert analysis.alerts[0].severity == c.CRITICAL
        assert analysis.health_status == c.HEALTH_FAILING

    def test_small_baseline_ignored(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [4, 4, 4])
        analysis = analyze_health(db_session, source.id, None, _run(1))
        assert analysis.alerts == []

    def test_no_baseline_no_count_alert(self, db_session, source):
        analysis = analyze_health(db_session, source.id, None, _run(1))
        assert analysis.alerts == []


class TestFieldFill:

    def test_fill_drop_on_well_populated_field(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 5)
        analysis = analyze_health(db_session, source.id, None, _run(20, fill_rates=_steady_rates(title=20, run_number=0)))

        assert analysis.alert_types() == [c.FIELD_FILL_DROP]
        assert analysis.alerts[0].context.field == "title"

    def test_compute_fill_rates_rounds_half_up(self):
        events = [
            RawEventData(date="2026-01-01", kennel_tag="A", title="x"),
            RawEventData(date="2026-01-02", kennel_tag="A"),
            RawEventData(date="2026-01-03", kennel_tag="A"),
            RawEventData(date="2026-01-04", kennel_tag="A", title="y", run_number=0),
            RawEventData(date="2026-01-05", kennel_tag="A"),
            RawEventData(date="2026-01-06", kennel_tag="A"),
            RawEventData(date="2026-01-07", kennel_tag="A"),
            RawEventData(date="2026-01-08", kennel_tag="A"),
        ]
        rates = compute_fill_rates(events)
        assert rates.title == 25
        assert rates.run_number == 13  # 12.5 rounds up
        assert compute_fill_rates([]) == FieldFillRates()


class TestConsecutiveFailures:

    def test_threshold_reached(self):
        data = HealthInput(events_found=0, scrape_failed=True, errors=["boom"])
        alert = check_consecutive_failures(data, ["FAILED", "FAILED", "SUCCESS"], threshold=3)
        assert alert.type == c.CONSECUTIVE_FAILURES
        assert alert.context.consecutive_count == 3

    def test_broken_streak(self):
        data = HealthInput(events_found=0, scrape_failed=True)
        assert check_consecutive_failures(data, ["FAILED", "SUCCESS", "FAILED"], threshold=3) is None

    def test_success_never_escalates(self):
        data = HealthInput(events_found=5, scrape_failed=False)
        assert check_consecutive_failures(data, ["FAILED"] * 5, threshold=3) is None

    def test_failed_run_reports_failure_only(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 5)
        data = HealthInput(events_found=0, scrape_failed=True, errors=["HTTP 503"])
        analysis = analyze_health(db_session, source.id, None, data)
        assert analysis.alert_types() == [c.SCRAPE_FAILURE]
        assert analysis.health_status == c.HEALTH_FAILING


class TestStructureChange:

    def test_hash_change_without_impact_is_info(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 3, structure_hash="aaa")
        analysis = analyze_health(db_session, source.id, None, _run(20, structure_hash="bbb"))

        assert analysis.alert_types() == [c.STRUCTURE_CHANGE]
        alert = analysis.alerts[0]
        assert alert.severity == c.INFO
        assert alert.context.quality_impacted is False

    def test_hash_change_with_count_drop_is_warning(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 3, structure_hash="aaa")
        analysis = analyze_health(db_session, source.id, None, _run(14, structure_hash="bbb"))
        structure = [a for a in analysis.alerts if a.type == c.STRUCTURE_CHANGE][0]
        assert structure.severity == c.WARNING

    def test_stable_hash_resolves_open_alert(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 3, structure_hash="bbb")
        open_alert = Alert(source_id=source.id, type=c.STRUCTURE_CHANGE, severity=c.INFO,
                           status=c.OPEN, title="HTML structure changed")
        db_session.add(open_alert)
        db_session.flush()

        analyze_health(db_session, source.id, None, _run(20, structure_hash="bbb"))
        assert open_alert.status == c.RESOLVED
        assert open_alert.resolved_by == "system"


class TestTags:

    def test_only_novel_unmatched_tags_alert(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20], unmatched_tags=["Old Tag"])
        analysis = analyze_health(db_session, source.id, None, _run(20, unmatched_tags=["Old Tag", "New Tag"]))

        assert analysis.alert_types() == [c.UNMATCHED_TAGS]
        assert analysis.alerts[0].context.tags == ["New Tag"]

    def test_blocked_tags_raise_mismatch(self, db_session, source):
        analysis = analyze_health(db_session, source.id, None, _run(3, blocked_tags=["Philly H3"]))
        assert analysis.alert_types() == [c.SOURCE_KENNEL_MISMATCH]
        assert analysis.health_status == c.HEALTH_DEGRADED


class TestSnoozeDedupe:

    def _candidates(self, db_session, source, make_scrape_logs):
        make_scrape_logs(source, [20] * 5)
        return analyze_health(db_session, source.id, None, _run(2)).alerts

    def test_active_snooze_suppresses(self, db_session, source, make_scrape_logs):
        candidates = self._candidates(db_session, source, make_scrape_logs)
        snoozed = Alert(source_id=source.id, type=c.EVENT_COUNT_ANOMALY, severity=c.WARNING,
                        status=c.SNOOZED, title="old", snoozed_until=datetime.utcnow() + timedelta(hours=4))
        db_session.add(snoozed)
        db_session.flush()

        touched = persist_alerts(db_session, source.id, None, candidates)
        assert touched == []
        assert db_session.scalar(select(func.count()).select_from(Alert)) == 1
        assert snoozed.status == c.SNOOZED

    def test_expired_snooze_reopens(self, db_session, source, make_scrape_logs):
        candidates = self._candidates(db_session, source, make_scrape_logs)
        snoozed = Alert(source_id=source.id, type=c.EVENT_COUNT_ANOMALY, severity=c.WARNING,
                        status=c.SNOOZED, title="old", snoozed_until=datetime.utcnow() - timedelta(hours=1))
        db_session.add(snoozed)
        db_session.flush()

        touched = persist_alerts(db_session, source.id, None, candidates)
        assert touched == [snoozed]
        assert snoozed.status == c.OPEN
        assert snoozed.snoozed_until is None

    def test_resolved_alert_is_not_reopened(self, db_session, source, make_scrape_logs):
        candidates = self._candidates(db_session, source, make_scrape_logs)
        resolved = Alert(source_id=source.id, type=c.EVENT_COUNT_ANOMALY, severity=c.WARNING,
                         status=c.RESOLVED, title="old")
        db_session.add(resolved)
        db_session.flush()

        persist_alerts(db_session, source.id, None, candidates)
        assert resolved.status == c.RESOLVED
        assert db_session.scalar(select(func.count()).select_from(Alert).where(Alert.status == c.OPEN)) == 1
