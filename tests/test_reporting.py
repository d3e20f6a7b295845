from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from refund_monitor.errors import StorageError
from refund_monitor.models import AlarmThresholds, CanonicalStatus, RefundCheck, TaxCase
from refund_monitor.reporting import (
    CSV_HEADER,
    alarm_dashboard,
    check_history,
    export_checks_csv,
    recent_stats,
    screenshot_url,
)
from refund_monitor.state import CaseStore
from refund_monitor.storage import LocalObjectStorage

NOW = datetime(2025, 4, 30, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def store(tmp_path: Path):
    s = CaseStore(str(tmp_path / "state.db"))
    try:
        yield s
    finally:
        s.close()


def _case(case_id: str, name: str, **kw) -> TaxCase:
    return TaxCase(id=case_id, user_id=f"u-{case_id}", client_name=name, tax_year=2024, **kw)


def _check(check_id: str, created_at: datetime, **kw) -> RefundCheck:
    base = dict(id=check_id, tax_case_id="a", portal="federal", raw_status="Return Received", result="success")
    base.update(kw)
    return RefundCheck(created_at=created_at, **base)


def test_export_csv(store: CaseStore) -> None:
    store.upsert_case(_case("a", "Jane, Doe"))
    store.insert_check(
        _check(
            "c1",
            NOW - timedelta(hours=2),
            raw_status="Refund Sent",
            details='Sent "today"',
            mapped_status=CanonicalStatus.DIRECT_DEPOSIT,
            previous_status=CanonicalStatus.IN_PROCESS,
            status_changed=True,
        )
    )
    store.insert_check(_check("c2", NOW - timedelta(hours=1), raw_status="Error", result="error", error_message="x"))

    buf = io.StringIO()
    assert export_checks_csv(store, portal="federal", out=buf) == 2
    rows = list(csv.reader(io.StringIO(buf.getvalue())))
    assert tuple(rows[0]) == CSV_HEADER
    assert rows[1][2] == "Error"
    assert rows[2][1] == "Jane, Doe"
    assert rows[2][3] == 'Sent "today"'
    assert rows[2][4] == "direct_deposit"
    assert rows[2][6] == "YES"
    assert rows[1][6] == "no"


def test_check_history_clamps_limit(store: CaseStore) -> None:
    store.upsert_case(_case("a", "A"))
    for i in range(3):
        store.insert_check(_check(f"c{i}", NOW + timedelta(minutes=i)))
    assert len(check_history(store, portal="federal", limit=0).checks) == 1
    assert len(check_history(store, portal="federal", limit=1000).checks) == 3


def test_recent_stats_last_24h(store: CaseStore) -> None:
    store.upsert_case(_case("a", "A"))
    store.insert_check(_check("old", NOW - timedelta(hours=30)))
    store.insert_check(_check("ok", NOW - timedelta(hours=1)))
    store.insert_check(_check("bad", NOW - timedelta(hours=2), result="timeout", raw_status="Timeout"))
    store.insert_check(
        _check(
            "chg",
            NOW - timedelta(hours=3),
            mapped_status=CanonicalStatus.IN_PROCESS,
            status_changed=True,
        )
    )
    store.insert_check(_check("nf", NOW - timedelta(hours=4), result="not_found"))
    s = recent_stats(store, portal="federal", now=NOW)
    assert (s.total, s.succeeded, s.failed, s.status_changes) == (4, 2, 1, 1)


def test_screenshot_url(store: CaseStore, tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path / "shots")
    storage.upload("irs", "checks/a.png", b"png", "image/png")
    store.upsert_case(_case("a", "A"))
    store.insert_check(_check("with", NOW, screenshot_path="checks/a.png"))
    store.insert_check(_check("without", NOW))
    assert screenshot_url(store, storage, bucket="irs", check_id="with").startswith("file://")
    with pytest.raises(StorageError):
        screenshot_url(store, storage, bucket="irs", check_id="without")


def test_alarm_dashboard_orders_critical_first(store: CaseStore) -> None:
    store.upsert_case(
        _case("w", "Warn", federal_status=CanonicalStatus.IN_PROCESS, federal_status_changed_at=NOW - timedelta(days=30))
    )
    store.upsert_case(
        _case(
            "c",
            "Crit",
            state_status=CanonicalStatus.IN_VERIFICATION,
            state_status_changed_at=NOW - timedelta(days=70),
        )
    )
    store.upsert_case(_case("q", "Quiet", federal_status=CanonicalStatus.IN_PROCESS, federal_status_changed_at=NOW))
    store.upsert_case(
        _case(
            "m",
            "Muted",
            federal_status=CanonicalStatus.IN_PROCESS,
            federal_status_changed_at=NOW - timedelta(days=90),
        )
    )
    store.set_thresholds("m", AlarmThresholds(disable_federal_alarms=True))

    board = alarm_dashboard(store, now=NOW)
    assert [e.case.id for e in board] == ["c", "w"]
    assert board[0].level == "critical"
    assert board[1].alarms[0].message == "Federal: possible verification (30 days in process)"

    warnings = alarm_dashboard(store, level="warning", now=NOW)
    assert [e.case.id for e in warnings] == ["w"]
