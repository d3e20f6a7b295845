from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


Track = Literal["federal", "state"]
PaymentMethod = Literal["direct_deposit", "check"]
CheckResult = Literal["success", "not_found", "error", "timeout"]
CheckTrigger = Literal["manual", "schedule"]
FilingStatus = Literal["single", "married_joint", "married_separate", "head_of_household"]
AlarmLevel = Literal["warning", "critical"]
AlarmType = Literal["possible_verification_federal", "possible_verification_state", "verification_timeout"]

TRACKS: tuple[Track, ...] = ("federal", "state")


class CanonicalStatus(str, Enum):
    """Internal refund-progress status that all portal text is mapped into."""

    IN_PROCESS = "in_process"
    IN_VERIFICATION = "in_verification"
    VERIFICATION_IN_PROGRESS = "verification_in_progress"
    VERIFICATION_REJECTED = "verification_rejected"
    ISSUES = "issues"
    DIRECT_DEPOSIT = "direct_deposit"
    CHECK_IN_TRANSIT = "check_in_transit"
    COMMISSION_PENDING = "commission_pending"
    TAXES_COMPLETED = "taxes_completed"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaxCase(BaseModel):
    id: str
    user_id: str
    client_name: str = ""
    tax_year: int
    case_status: str = "taxes_filed"
    filing_status: FilingStatus = "single"
    work_state: str = ""
    payment_method: PaymentMethod = "direct_deposit"

    # Opaque to the monitor; resolved through an IdentifierResolver.
    encrypted_identifier: Optional[str] = Field(default=None, repr=False)

    federal_status: Optional[CanonicalStatus] = None
    federal_status_changed_at: Optional[datetime] = None
    federal_last_comment: Optional[str] = None
    federal_actual_refund: Optional[float] = None

    state_status: Optional[CanonicalStatus] = None
    state_status_changed_at: Optional[datetime] = None
    state_last_comment: Optional[str] = None
    state_actual_refund: Optional[float] = None

    estimated_refund: Optional[float] = None

    def status_for(self, track: Track) -> Optional[CanonicalStatus]:
        return self.federal_status if track == "federal" else self.state_status

    def changed_at_for(self, track: Track) -> Optional[datetime]:
        return self.federal_status_changed_at if track == "federal" else self.state_status_changed_at


class RefundCheck(BaseModel):
    """One persisted automation attempt (the final one of a `run_check`)."""

    id: str
    tax_case_id: str
    portal: Track
    raw_status: str
    details: str = ""
    screenshot_path: Optional[str] = None
    mapped_status: Optional[CanonicalStatus] = None
    previous_status: Optional[CanonicalStatus] = None
    status_changed: bool = False
    result: CheckResult
    triggered_by: CheckTrigger = "manual"
    triggered_by_user_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _status_changed_requires_a_new_status(self) -> "RefundCheck":
        if self.status_changed and (self.mapped_status is None or self.mapped_status == self.previous_status):
            raise ValueError("status_changed requires a mapped_status that differs from previous_status")
        return self


class StatusHistoryEntry(BaseModel):
    id: int
    tax_case_id: str
    track: Track
    previous_status: Optional[CanonicalStatus] = None
    new_status: CanonicalStatus
    changed_by: Optional[str] = None
    comment: str = ""
    internal_comment: str = ""
    created_at: datetime


class Notification(BaseModel):
    id: int
    user_id: str
    category: str
    title: str
    body: str
    created_at: datetime


class AlarmThresholds(BaseModel):
    """Per-case override of the alarm thresholds. `None` means "use the default"."""

    federal_in_process_days: Optional[int] = Field(default=None, ge=1, le=365)
    state_in_process_days: Optional[int] = Field(default=None, ge=1, le=365)
    verification_timeout_days: Optional[int] = Field(default=None, ge=1, le=365)
    disable_federal_alarms: bool = False
    disable_state_alarms: bool = False
    reason: Optional[str] = None


class Alarm(BaseModel):
    type: AlarmType
    level: AlarmLevel
    track: Track
    message: str
    days_since_status_change: int
    threshold: int


class BatchSummary(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
