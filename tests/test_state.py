from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from refund_monitor.errors import CaseNotFoundError, CheckNotFoundError
from refund_monitor.models import AlarmThresholds, CanonicalStatus, RefundCheck, TaxCase
from refund_monitor.state import CaseStore


def _case(**kw) -> TaxCase:
    base = dict(id="case-1", user_id="user-1", client_name="Jane Doe", tax_year=2024, encrypted_identifier="123456789")
    base.update(kw)
    return TaxCase(**base)


def _check(check_id: str, created_at: datetime, **kw) -> RefundCheck:
    base = dict(
        id=check_id,
        tax_case_id="case-1",
        portal="federal",
        raw_status="Return Received",
        result="success",
        created_at=created_at,
    )
    base.update(kw)
    return RefundCheck(**base)


@pytest.fixture()
def store(tmp_path: Path):
    s = CaseStore(str(tmp_path / "state.db"))
    try:
        yield s
    finally:
        s.close()


def test_state_creates_backup(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    s = CaseStore(str(db_path))
    try:
        rid = s.record_run_start()
        s.record_run_finish(rid, ok=True, message="test")
    finally:
        s.close()

    bak = tmp_path / "state.db.bak"
    assert db_path.exists()
    assert bak.exists()
    assert bak.stat().st_size > 0


def test_state_restores_from_backup_when_db_corrupted(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"

    s1 = CaseStore(str(db_path))
    try:
        s1.upsert_case(_case())
        rid = s1.record_run_start()
        s1.record_run_finish(rid, ok=True, message="test")
    finally:
        s1.close()

    db_path.write_bytes(b"not a sqlite db")

    s2 = CaseStore(str(db_path))
    try:
        assert s2.get_case("case-1").client_name == "Jane Doe"
    finally:
        s2.close()

    quarantined = list(tmp_path.glob("state.db.corrupt-*"))
    assert quarantined, "expected quarantined corrupted db file to be created"


def test_case_round_trip_keeps_statuses_and_timestamps(store: CaseStore) -> None:
    changed = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    store.upsert_case(
        _case(
            federal_status=CanonicalStatus.IN_PROCESS,
            federal_status_changed_at=changed,
            federal_actual_refund=1234.5,
            payment_method="check",
        )
    )
    got = store.get_case("case-1")
    assert got.federal_status == CanonicalStatus.IN_PROCESS
    assert got.federal_status_changed_at == changed
    assert got.federal_actual_refund == 1234.5
    assert got.payment_method == "check"
    assert got.state_status is None


def test_get_case_missing(store: CaseStore) -> None:
    with pytest.raises(CaseNotFoundError):
        store.get_case("nope")


def test_apply_status_change_updates_case_and_history(store: CaseStore) -> None:
    store.upsert_case(_case(federal_status=CanonicalStatus.IN_PROCESS))
    now = datetime(2025, 4, 1, tzinfo=timezone.utc)
    previous = store.apply_status_change(
        tax_case_id="case-1",
        track="federal",
        new_status=CanonicalStatus.DIRECT_DEPOSIT,
        changed_by=None,
        comment="IRS Monitor: Refund Sent",
        internal_comment="Automatic federal check x",
        now=now,
    )
    assert previous == CanonicalStatus.IN_PROCESS

    case = store.get_case("case-1")
    assert case.federal_status == CanonicalStatus.DIRECT_DEPOSIT
    assert case.federal_status_changed_at == now
    assert case.federal_last_comment == "IRS Monitor: Refund Sent"
    assert case.state_status is None

    history = store.history_for("case-1")
    assert len(history) == 1
    assert history[0].previous_status == CanonicalStatus.IN_PROCESS
    assert history[0].new_status == CanonicalStatus.DIRECT_DEPOSIT
    assert history[0].track == "federal"
    assert store.history_for("case-1", track="state") == []


def test_apply_status_change_unknown_case_writes_nothing(store: CaseStore) -> None:
    with pytest.raises(CaseNotFoundError):
        store.apply_status_change(
            tax_case_id="ghost",
            track="state",
            new_status=CanonicalStatus.IN_PROCESS,
            changed_by=None,
            comment="",
        )
    assert store.history_for("ghost") == []


def test_list_checks_paginates_newest_first(store: CaseStore) -> None:
    store.upsert_case(_case())
    t0 = datetime(2025, 4, 1, tzinfo=timezone.utc)
    for i in range(5):
        store.insert_check(_check(f"c{i}", t0 + timedelta(minutes=i)))
    store.insert_check(_check("s0", t0, portal="state"))

    page1 = store.list_checks(portal="federal", limit=2)
    assert [c.id for c in page1.checks] == ["c4", "c3"]
    assert page1.next_cursor == "c3"

    page2 = store.list_checks(portal="federal", cursor=page1.next_cursor, limit=2)
    assert [c.id for c in page2.checks] == ["c2", "c1"]

    page3 = store.list_checks(portal="federal", cursor=page2.next_cursor, limit=2)
    assert [c.id for c in page3.checks] == ["c0"]
    assert page3.next_cursor is None


def test_list_checks_same_timestamp_uses_id_order(store: CaseStore) -> None:
    store.upsert_case(_case())
    t0 = datetime(2025, 4, 1, tzinfo=timezone.utc)
    for cid in ("a", "b", "c"):
        store.insert_check(_check(cid, t0))
    page1 = store.list_checks(portal="federal", limit=2)
    assert [c.id for c in page1.checks] == ["c", "b"]
    page2 = store.list_checks(portal="federal", cursor=page1.next_cursor, limit=2)
    assert [c.id for c in page2.checks] == ["a"]


def test_list_checks_unknown_cursor(store: CaseStore) -> None:
    with pytest.raises(CheckNotFoundError):
        store.list_checks(portal="federal", cursor="missing")


def test_clear_status_changed(store: CaseStore) -> None:
    store.upsert_case(_case())
    store.insert_check(
        _check(
            "c1",
            datetime(2025, 4, 1, tzinfo=timezone.utc),
            mapped_status=CanonicalStatus.IN_PROCESS,
            status_changed=True,
        )
    )
    store.clear_status_changed("c1")
    assert store.get_check("c1").status_changed is False
    with pytest.raises(CheckNotFoundError):
        store.clear_status_changed("c2")


def test_thresholds_round_trip(store: CaseStore) -> None:
    store.upsert_case(_case())
    assert store.get_thresholds("case-1") is None
    store.set_thresholds("case-1", AlarmThresholds(federal_in_process_days=10, disable_state_alarms=True, reason="x"))
    t = store.get_thresholds("case-1")
    assert t is not None
    assert t.federal_in_process_days == 10
    assert t.state_in_process_days is None
    assert t.disable_state_alarms is True
    store.clear_thresholds("case-1")
    assert store.get_thresholds("case-1") is None


def test_thresholds_require_existing_case(store: CaseStore) -> None:
    with pytest.raises(CaseNotFoundError):
        store.set_thresholds("ghost", AlarmThresholds())
