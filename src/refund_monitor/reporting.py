from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, TextIO

from .alarms import calculate_alarms, highest_alarm_level
from .errors import StorageError
from .models import Alarm, AlarmLevel, StatusHistoryEntry, TaxCase, Track
from .state import CaseStore, CheckPage, CheckStats
from .storage import SCREENSHOT_URL_TTL_S, ObjectStorage


MAX_PAGE_SIZE = 100

CSV_HEADER = (
    "Date",
    "Client",
    "Raw Status",
    "Details",
    "Mapped Status",
    "Previous Status",
    "Changed",
    "Result",
    "Triggered By",
    "Error",
)


def check_history(
    store: CaseStore,
    *,
    portal: Track,
    cursor: Optional[str] = None,
    limit: int = 20,
    tax_case_id: Optional[str] = None,
) -> CheckPage:
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    return store.list_checks(portal=portal, tax_case_id=tax_case_id, cursor=cursor, limit=limit)


def case_history(store: CaseStore, tax_case_id: str, *, track: Optional[Track] = None) -> list[StatusHistoryEntry]:
    store.get_case(tax_case_id)
    return store.history_for(tax_case_id, track=track)


def export_checks_csv(store: CaseStore, *, portal: Track, out: TextIO) -> int:
    """Write every check for `portal` as CSV (newest first). Returns the number of data rows."""
    writer = csv.writer(out)
    writer.writerow(CSV_HEADER)
    rows = 0
    for check, client_name in store.iter_checks(portal=portal):
        writer.writerow(
            (
                check.created_at.astimezone(timezone.utc).isoformat(),
                client_name,
                check.raw_status,
                check.details,
                check.mapped_status.value if check.mapped_status else "",
                check.previous_status.value if check.previous_status else "",
                "YES" if check.status_changed else "no",
                check.result,
                check.triggered_by,
                check.error_message or "",
            )
        )
        rows += 1
    return rows


def screenshot_url(store: CaseStore, storage: ObjectStorage, *, bucket: str, check_id: str) -> str:
    check = store.get_check(check_id)
    if not check.screenshot_path:
        raise StorageError(f"No screenshot for check {check_id}")
    return storage.get_signed_url(bucket, check.screenshot_path, SCREENSHOT_URL_TTL_S)


def recent_stats(store: CaseStore, *, portal: Track, now: Optional[datetime] = None) -> CheckStats:
    """Checks and status changes in the last 24 hours."""
    now = now or datetime.now(timezone.utc)
    return store.check_stats(portal=portal, since=now - timedelta(hours=24))


@dataclass
class CaseAlarms:
    case: TaxCase
    alarms: list[Alarm] = field(default_factory=list)
    level: Optional[AlarmLevel] = None


def alarms_for_case(store: CaseStore, case: TaxCase, *, now: Optional[datetime] = None) -> CaseAlarms:
    alarms = calculate_alarms(
        case.federal_status,
        case.federal_status_changed_at,
        case.state_status,
        case.state_status_changed_at,
        store.get_thresholds(case.id),
        now=now,
    )
    return CaseAlarms(case=case, alarms=alarms, level=highest_alarm_level(alarms))


def alarm_dashboard(
    store: CaseStore,
    *,
    level: Optional[AlarmLevel] = None,
    now: Optional[datetime] = None,
) -> list[CaseAlarms]:
    """
    Cases with at least one active alarm, critical first.

    `level` narrows to cases whose highest alarm has that level.
    """
    out: list[CaseAlarms] = []
    for case in store.list_cases():
        entry = alarms_for_case(store, case, now=now)
        if not entry.alarms:
            continue
        if level and entry.level != level:
            continue
        out.append(entry)

    def _sort_key(e: CaseAlarms) -> tuple[int, int]:
        worst = max(a.days_since_status_change for a in e.alarms)
        return (0 if e.level == "critical" else 1, -worst)

    out.sort(key=_sort_key)
    return out
