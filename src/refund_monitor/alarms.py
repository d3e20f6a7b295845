from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .models import Alarm, AlarmLevel, AlarmThresholds, CanonicalStatus, Track


DEFAULT_FEDERAL_IN_PROCESS_DAYS = 25
DEFAULT_STATE_IN_PROCESS_DAYS = 50
DEFAULT_VERIFICATION_TIMEOUT_DAYS = 63

_VERIFICATION_STATUSES = frozenset({CanonicalStatus.IN_VERIFICATION, CanonicalStatus.VERIFICATION_IN_PROGRESS})
_TRACK_LABEL = {"federal": "Federal", "state": "State"}


def days_since(changed_at: datetime, *, now: datetime) -> int:
    """
    Whole days elapsed since `changed_at`.

    Timestamps in the future (clock skew, bad imports) count as zero days rather than a negative number.
    """
    if changed_at.tzinfo is None:
        changed_at = changed_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    seconds = (now - changed_at).total_seconds()
    return max(0, int(seconds // 86_400))


def _resolve(thresholds: Optional[AlarmThresholds]) -> tuple[int, int, int, bool, bool]:
    t = thresholds or AlarmThresholds()
    return (
        t.federal_in_process_days or DEFAULT_FEDERAL_IN_PROCESS_DAYS,
        t.state_in_process_days or DEFAULT_STATE_IN_PROCESS_DAYS,
        t.verification_timeout_days or DEFAULT_VERIFICATION_TIMEOUT_DAYS,
        bool(t.disable_federal_alarms),
        bool(t.disable_state_alarms),
    )


def _track_alarms(
    track: Track,
    status: Optional[CanonicalStatus],
    changed_at: Optional[datetime],
    *,
    in_process_days: int,
    verification_days: int,
    now: datetime,
) -> list[Alarm]:
    if status is None or changed_at is None:
        return []

    days = days_since(changed_at, now=now)
    label = _TRACK_LABEL[track]
    out: list[Alarm] = []

    if status == CanonicalStatus.IN_PROCESS and days > in_process_days:
        out.append(
            Alarm(
                type="possible_verification_federal" if track == "federal" else "possible_verification_state",
                level="warning",
                track=track,
                message=f"{label}: possible verification ({days} days in process)",
                days_since_status_change=days,
                threshold=in_process_days,
            )
        )

    if status in _VERIFICATION_STATUSES and days > verification_days:
        out.append(
            Alarm(
                type="verification_timeout",
                level="critical",
                track=track,
                message=f"{label}: verification exceeded ({days} days)",
                days_since_status_change=days,
                threshold=verification_days,
            )
        )
    return out


def calculate_alarms(
    federal_status: Optional[CanonicalStatus],
    federal_changed_at: Optional[datetime],
    state_status: Optional[CanonicalStatus],
    state_changed_at: Optional[datetime],
    thresholds: Optional[AlarmThresholds] = None,
    *,
    now: Optional[datetime] = None,
) -> list[Alarm]:
    """
    Derive staleness alarms for one case from its per-track status and status-changed timestamps.

    Pure and recomputed on demand; alarms fire strictly after the threshold (exactly N days is quiet).
    A disable flag only suppresses its own track.
    """
    now = now or datetime.now(timezone.utc)
    federal_days, state_days, verification_days, disable_federal, disable_state = _resolve(thresholds)

    alarms: list[Alarm] = []
    if not disable_federal:
        alarms += _track_alarms(
            "federal",
            federal_status,
            federal_changed_at,
            in_process_days=federal_days,
            verification_days=verification_days,
            now=now,
        )
    if not disable_state:
        alarms += _track_alarms(
            "state",
            state_status,
            state_changed_at,
            in_process_days=state_days,
            verification_days=verification_days,
            now=now,
        )
    return alarms


def highest_alarm_level(alarms: list[Alarm]) -> Optional[AlarmLevel]:
    if not alarms:
        return None
    if any(a.level == "critical" for a in alarms):
        return "critical"
    return "warning"
