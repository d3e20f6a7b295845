from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import PreconditionError
from .extraction.extractor import StatusExtractor
from .identifiers import IdentifierResolver, PlaintextIdentifierResolver
from .mapping import StatusMapper
from .models import BatchSummary, CanonicalStatus, CheckResult, CheckTrigger, RefundCheck, TaxCase, Track, utcnow
from .notifications import STATUS_CHANGE_CATEGORY, Notifier
from .portal.client import PortalAutomator, PortalRequest
from .state import CaseStore
from .util.money import whole_dollars


logger = logging.getLogger(__name__)

_PORTAL_LABEL = {"federal": "IRS", "state": "Colorado"}
_RETRYABLE: frozenset[str] = frozenset({"error", "timeout"})

CaseFilter = Callable[[TaxCase], bool]


def federal_case_filter(case: TaxCase) -> bool:
    return case.case_status == "taxes_filed"


def state_case_filter(state_codes: list[str]) -> CaseFilter:
    codes = {c.strip().lower() for c in state_codes if c and c.strip()}

    def _eligible(case: TaxCase) -> bool:
        if case.case_status not in ("taxes_filed", "case_issues"):
            return False
        return (case.work_state or "").strip().lower() in codes

    return _eligible


class BatchLock:
    """
    At most one batch run per process: `try_acquire` never blocks, a busy lock means "skip".

    This is an in-process `threading.Lock`. Running more than one instance of the monitor against the same
    database needs a distributed lease (e.g. a row in a shared database) in place of this object.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()


@dataclass
class CheckOutcome:
    success: bool
    check: RefundCheck
    status_changed: bool = False
    applied: bool = False
    previous_status: Optional[CanonicalStatus] = None
    new_status: Optional[CanonicalStatus] = None
    error: Optional[str] = None


@dataclass
class ApplyOutcome:
    applied: bool
    reason: Optional[str] = None
    previous_status: Optional[CanonicalStatus] = None
    new_status: Optional[CanonicalStatus] = None


@dataclass
class _Attempt:
    result: CheckResult
    raw_status: str
    details: str = ""
    screenshot_path: Optional[str] = None
    error_message: Optional[str] = None


class CheckOrchestrator:
    """
    Validate a case, drive the portal (one retry on error/timeout), extract, map, persist and apply.

    With `auto_apply=False` a changed status is only proposed on the check row and waits for
    `approve_check` / `dismiss_check`.
    """

    def __init__(
        self,
        *,
        track: Track,
        store: CaseStore,
        automator: PortalAutomator,
        extractor: StatusExtractor,
        notifier: Optional[Notifier] = None,
        resolver: Optional[IdentifierResolver] = None,
        mapper: Optional[StatusMapper] = None,
        case_filter: Optional[CaseFilter] = None,
        auto_apply: bool = True,
        retry_delay_s: float = 5.0,
        lock: Optional[BatchLock] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.track = track
        self.store = store
        self.automator = automator
        self.extractor = extractor
        self.notifier = notifier
        self.resolver = resolver or PlaintextIdentifierResolver()
        self.mapper = mapper or StatusMapper.for_track(track)
        self.case_filter = case_filter or (federal_case_filter if track == "federal" else state_case_filter(["CO"]))
        self.auto_apply = bool(auto_apply)
        self.retry_delay_s = float(retry_delay_s)
        self.lock = lock or BatchLock()
        self._sleep = sleep

    @property
    def portal_label(self) -> str:
        return _PORTAL_LABEL[self.track]

    # -- eligibility ---------------------------------------------------------------------------------------------

    def eligible_cases(self) -> list[TaxCase]:
        return [c for c in self.store.list_cases() if self.case_filter(c)]

    # -- single check --------------------------------------------------------------------------------------------

    def refund_amount_for(self, case: TaxCase) -> int:
        """
        Federal: the filed actual refund, else the pre-filing estimate.
        State: the filed actual refund only; an estimate is never sent to the state portal.
        """
        if self.track == "federal":
            amount = case.federal_actual_refund if case.federal_actual_refund is not None else case.estimated_refund
            missing = "No federal refund amount or estimate on file"
        else:
            amount = case.state_actual_refund
            missing = "No state refund amount on file; set the actual state refund before running state checks"

        if amount is None:
            raise PreconditionError(missing)
        rounded = whole_dollars(amount)
        if rounded <= 0:
            raise PreconditionError(missing)
        return rounded

    def build_request(self, case: TaxCase) -> PortalRequest:
        try:
            identifier = self.resolver.resolve(case.encrypted_identifier)
        except PreconditionError:
            raise
        except Exception as e:
            raise PreconditionError(f"Identifier could not be decrypted: {type(e).__name__}") from e
        return PortalRequest(
            identifier=identifier,
            refund_amount=self.refund_amount_for(case),
            tax_year=case.tax_year,
            filing_status=case.filing_status,
            client_name=case.client_name,
        )

    def run_check(
        self,
        tax_case_id: str,
        actor: Optional[str] = None,
        trigger: CheckTrigger = "manual",
    ) -> CheckOutcome:
        case = self.store.get_case(tax_case_id)
        previous = case.status_for(self.track)

        try:
            request = self.build_request(case)
        except PreconditionError as e:
            logger.warning("[%s] %s check skipped: %s", case.client_name or case.id, self.track, e)
            check = self._persist(
                case,
                _Attempt(result="error", raw_status="Precondition failed", error_message=str(e)),
                mapped=None,
                previous=previous,
                trigger=trigger,
                actor=actor,
            )
            return CheckOutcome(success=False, check=check, previous_status=previous, error=str(e))

        logger.info("%s check for %s (case %s)", self.portal_label, case.client_name or "client", case.id)
        attempt = self._attempt(request)
        if attempt.result in _RETRYABLE:
            logger.warning(
                "[%s] %s check %s; retrying in %.0fs...",
                case.client_name or case.id,
                self.track,
                attempt.result,
                self.retry_delay_s,
            )
            self._sleep(self.retry_delay_s)
            attempt = self._attempt(request)
            logger.info("[%s] Retry result: %s (%s)", case.client_name or case.id, attempt.result, attempt.raw_status)

        mapped: Optional[CanonicalStatus] = None
        if attempt.result == "success":
            mapped = self.mapper.map(attempt.raw_status, case.payment_method)

        check = self._persist(case, attempt, mapped=mapped, previous=previous, trigger=trigger, actor=actor)
        outcome = CheckOutcome(
            success=attempt.result == "success",
            check=check,
            status_changed=check.status_changed,
            previous_status=previous,
            new_status=mapped,
            error=attempt.error_message,
        )

        if check.status_changed and mapped is not None:
            if self.auto_apply:
                applied = self._apply(case, check, mapped, actor=actor, approved=False)
                outcome.applied = applied.applied
            else:
                logger.info(
                    "Recommendation for %s: %s -> %s (pending approval, check %s)",
                    case.client_name or case.id,
                    previous.value if previous else "none",
                    mapped.value,
                    check.id,
                )
        return outcome

    def _attempt(self, request: PortalRequest) -> _Attempt:
        try:
            outcome = self.automator.check_refund_status(request)
        except Exception as e:
            logger.exception("Portal automation raised for %s", request.client_name or "client")
            return _Attempt(result="error", raw_status="Error", error_message=f"{type(e).__name__}: {e}")

        if outcome.result != "success" or outcome.capture is None:
            result: CheckResult = outcome.result if outcome.result != "success" else "error"
            return _Attempt(
                result=result,
                raw_status="Timeout" if result == "timeout" else "Error",
                screenshot_path=outcome.screenshot_path,
                error_message=outcome.error_message or "Result page was not captured",
            )

        extraction = self.extractor.extract(outcome.capture, client_name=request.client_name)
        logger.info(
            "[%s] Extracted %r via %s (%s)",
            request.client_name or "client",
            extraction.raw_status,
            extraction.method,
            extraction.result,
        )
        return _Attempt(
            result=extraction.result,
            raw_status=extraction.raw_status,
            details=extraction.details,
            screenshot_path=outcome.screenshot_path,
            error_message=None if extraction.result in ("success", "not_found") else extraction.raw_status,
        )

    def _persist(
        self,
        case: TaxCase,
        attempt: _Attempt,
        *,
        mapped: Optional[CanonicalStatus],
        previous: Optional[CanonicalStatus],
        trigger: CheckTrigger,
        actor: Optional[str],
    ) -> RefundCheck:
        check = RefundCheck(
            id=str(uuid.uuid4()),
            tax_case_id=case.id,
            portal=self.track,
            raw_status=attempt.raw_status,
            details=attempt.details,
            screenshot_path=attempt.screenshot_path,
            mapped_status=mapped,
            previous_status=previous,
            status_changed=mapped is not None and mapped != previous,
            result=attempt.result,
            triggered_by=trigger,
            triggered_by_user_id=actor,
            error_message=attempt.error_message,
            created_at=utcnow(),
        )
        self.store.insert_check(check)
        return check

    # -- applying changes ----------------------------------------------------------------------------------------

    def _apply(
        self,
        case: TaxCase,
        check: RefundCheck,
        new_status: CanonicalStatus,
        *,
        actor: Optional[str],
        approved: bool,
    ) -> ApplyOutcome:
        if approved:
            comment = f"{self.portal_label} Monitor (approved): {check.raw_status}"
            internal = f"Admin {actor or 'unknown'} approved {self.track} check {check.id}"
        else:
            comment = f"{self.portal_label} Monitor: {check.raw_status}"
            internal = f"Automatic {self.track} check {check.id}"

        previous = self.store.apply_status_change(
            tax_case_id=case.id,
            track=self.track,
            new_status=new_status,
            changed_by=actor,
            comment=comment,
            internal_comment=internal,
        )
        logger.info(
            "Status %s for %s: %s -> %s",
            "APPROVED" if approved else "APPLIED",
            case.client_name or case.id,
            previous.value if previous else "none",
            new_status.value,
        )

        # After commit: a failed notification never rolls back the status change.
        self._notify(case, new_status)
        return ApplyOutcome(applied=True, previous_status=previous, new_status=new_status)

    def _notify(self, case: TaxCase, new_status: CanonicalStatus) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(
                case.user_id,
                STATUS_CHANGE_CATEGORY,
                "Your refund status was updated",
                f"Your {self.track} refund status is now: {new_status.label}",
            )
        except Exception as e:
            logger.warning("Notification failed for user %s: %s", case.user_id, e)

    def approve_check(self, check_id: str, actor: str) -> ApplyOutcome:
        check = self._own_check(check_id)
        if not check.status_changed or check.mapped_status is None:
            return ApplyOutcome(applied=False, reason="No status change to approve")

        case = self.store.get_case(check.tax_case_id)
        current = case.status_for(self.track)
        if check.mapped_status == current:
            return ApplyOutcome(
                applied=False,
                reason="Status already matches recommendation",
                previous_status=current,
                new_status=current,
            )
        return self._apply(case, check, check.mapped_status, actor=actor, approved=True)

    def dismiss_check(self, check_id: str) -> bool:
        self._own_check(check_id)
        self.store.clear_status_changed(check_id)
        logger.info("Dismissed %s check %s.", self.track, check_id)
        return True

    def _own_check(self, check_id: str) -> RefundCheck:
        check = self.store.get_check(check_id)
        if check.portal != self.track:
            raise PreconditionError(f"Check {check_id} belongs to the {check.portal} monitor")
        return check

    # -- batch ---------------------------------------------------------------------------------------------------

    def run_all_checks(self, trigger: CheckTrigger = "schedule", actor: Optional[str] = None) -> BatchSummary:
        if not self.lock.try_acquire():
            logger.warning("%s batch already running; skipping.", self.portal_label)
            return BatchSummary()

        try:
            run_id = self.store.record_run_start(kind=f"{self.track}_batch")
            summary = BatchSummary()
            try:
                cases = self.eligible_cases()
                logger.info("%s batch: %d eligible case(s).", self.portal_label, len(cases))
                for case in cases:
                    summary.total += 1
                    try:
                        outcome = self.run_check(case.id, actor=actor, trigger=trigger)
                    except Exception:
                        logger.exception("%s check crashed for case %s; continuing.", self.portal_label, case.id)
                        summary.failed += 1
                        continue
                    if outcome.success:
                        summary.succeeded += 1
                    else:
                        summary.failed += 1
            except Exception as e:
                self.store.record_run_finish(run_id, ok=False, message=f"{type(e).__name__}: {e}")
                raise

            self.store.record_run_finish(
                run_id,
                ok=True,
                message=f"total={summary.total} succeeded={summary.succeeded} failed={summary.failed}",
            )
            logger.info(
                "%s batch done: total=%d succeeded=%d failed=%d",
                self.portal_label,
                summary.total,
                summary.succeeded,
                summary.failed,
            )
            return summary
        finally:
            self.lock.release()
