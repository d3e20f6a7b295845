from __future__ import annotations

from datetime import datetime, timedelta, timezone

from refund_monitor.alarms import calculate_alarms, days_since, highest_alarm_level
from refund_monitor.models import AlarmThresholds, CanonicalStatus

NOW = datetime(2025, 4, 30, 12, 0, tzinfo=timezone.utc)


def _ago(days: int) -> datetime:
    return NOW - timedelta(days=days)


def test_days_since_counts_whole_days() -> None:
    assert days_since(_ago(3), now=NOW) == 3
    assert days_since(NOW - timedelta(days=3, hours=23), now=NOW) == 3


def test_days_since_future_timestamp_is_zero() -> None:
    assert days_since(NOW + timedelta(days=5), now=NOW) == 0


def test_days_since_treats_naive_as_utc() -> None:
    assert days_since(_ago(2).replace(tzinfo=None), now=NOW) == 2


def test_no_alarm_at_exact_threshold() -> None:
    alarms = calculate_alarms(CanonicalStatus.IN_PROCESS, _ago(25), None, None, now=NOW)
    assert alarms == []


def test_warning_one_day_past_threshold() -> None:
    alarms = calculate_alarms(CanonicalStatus.IN_PROCESS, _ago(26), None, None, now=NOW)
    assert len(alarms) == 1
    a = alarms[0]
    assert a.type == "possible_verification_federal"
    assert a.level == "warning"
    assert a.track == "federal"
    assert a.days_since_status_change == 26
    assert a.threshold == 25
    assert a.message == "Federal: possible verification (26 days in process)"


def test_state_in_process_default_threshold_is_fifty() -> None:
    assert calculate_alarms(None, None, CanonicalStatus.IN_PROCESS, _ago(50), now=NOW) == []
    alarms = calculate_alarms(None, None, CanonicalStatus.IN_PROCESS, _ago(51), now=NOW)
    assert [a.type for a in alarms] == ["possible_verification_state"]


def test_verification_timeout_is_critical_for_both_verification_statuses() -> None:
    for status in (CanonicalStatus.IN_VERIFICATION, CanonicalStatus.VERIFICATION_IN_PROGRESS):
        alarms = calculate_alarms(status, _ago(64), None, None, now=NOW)
        assert [(a.type, a.level) for a in alarms] == [("verification_timeout", "critical")]
        assert alarms[0].threshold == 63


def test_other_statuses_never_alarm() -> None:
    assert calculate_alarms(CanonicalStatus.DIRECT_DEPOSIT, _ago(400), CanonicalStatus.ISSUES, _ago(400), now=NOW) == []


def test_missing_changed_at_never_alarms() -> None:
    assert calculate_alarms(CanonicalStatus.IN_PROCESS, None, None, None, now=NOW) == []


def test_custom_threshold_fires_earlier() -> None:
    t = AlarmThresholds(federal_in_process_days=10)
    alarms = calculate_alarms(CanonicalStatus.IN_PROCESS, _ago(11), None, None, t, now=NOW)
    assert len(alarms) == 1
    assert alarms[0].threshold == 10


def test_disable_federal_only_suppresses_federal() -> None:
    t = AlarmThresholds(disable_federal_alarms=True)
    alarms = calculate_alarms(
        CanonicalStatus.IN_PROCESS,
        _ago(30),
        CanonicalStatus.IN_VERIFICATION,
        _ago(70),
        t,
        now=NOW,
    )
    assert [(a.track, a.type) for a in alarms] == [("state", "verification_timeout")]


def test_future_changed_at_does_not_alarm() -> None:
    alarms = calculate_alarms(CanonicalStatus.IN_PROCESS, NOW + timedelta(days=40), None, None, now=NOW)
    assert alarms == []


def test_highest_alarm_level() -> None:
    assert highest_alarm_level([]) is None
    warn = calculate_alarms(CanonicalStatus.IN_PROCESS, _ago(30), None, None, now=NOW)
    assert highest_alarm_level(warn) == "warning"
    both = calculate_alarms(
        CanonicalStatus.IN_PROCESS,
        _ago(30),
        CanonicalStatus.IN_VERIFICATION,
        _ago(70),
        now=NOW,
    )
    assert highest_alarm_level(both) == "critical"
