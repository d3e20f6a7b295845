from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .models import CanonicalStatus, PaymentMethod, Track


class _DepositPending:
    """Rule outcome resolved by payment method (direct deposit vs. mailed check)."""

    def __repr__(self) -> str:
        return "DEPOSIT_PENDING"


class _NoStatus:
    """Rule outcome that stops matching and maps to nothing."""

    def __repr__(self) -> str:
        return "NO_STATUS"


DEPOSIT_PENDING = _DepositPending()
NO_STATUS = _NoStatus()

RuleOutcome = Union[CanonicalStatus, _DepositPending, _NoStatus]


@dataclass(frozen=True)
class MappingRule:
    keywords: tuple[str, ...]
    outcome: RuleOutcome


# Order matters: the most specific descriptive phrases come first. The portal pages always render
# their progress-bar labels, so the extracted status text (not the whole page) is what gets mapped.
FEDERAL_RULES: tuple[MappingRule, ...] = (
    MappingRule(
        keywords=(
            "return received",
            "still being processed",
            "we received your tax return",
            "refund date will be provided when available",
        ),
        outcome=CanonicalStatus.IN_PROCESS,
    ),
    MappingRule(
        keywords=(
            "refund sent",
            "refund was sent",
            "refund has been sent",
            "sent to your bank",
            "deposited",
            "check was mailed",
            "mailed your refund",
            "refund approved",
            "refund has been approved",
            "approved your refund",
        ),
        outcome=DEPOSIT_PENDING,
    ),
    MappingRule(
        keywords=(
            "take action",
            "action required",
            "we need more information",
            "under review",
            "being reviewed",
            "identity",
            "verification",
        ),
        outcome=CanonicalStatus.IN_VERIFICATION,
    ),
    MappingRule(
        keywords=(
            "cannot provide any information",
            "refund has been reduced",
            "cannot process",
            "could not process",
            "contact us",
            "more information required",
        ),
        outcome=CanonicalStatus.ISSUES,
    ),
)


STATE_RULES: tuple[MappingRule, ...] = (
    # The state has not received the return yet: a valid answer, but nothing to map.
    MappingRule(keywords=("return not received", "not yet processed"), outcome=NO_STATUS),
    MappingRule(
        keywords=("return received", "being processed", "refund reviewed"),
        outcome=CanonicalStatus.IN_PROCESS,
    ),
    MappingRule(keywords=("redeemed",), outcome=CanonicalStatus.TAXES_COMPLETED),
    MappingRule(
        keywords=("refund issued", "refund approved and sent", "refund approved", "deposited", "mailed"),
        outcome=DEPOSIT_PENDING,
    ),
    MappingRule(keywords=("paper check issued", "check issued"), outcome=CanonicalStatus.CHECK_IN_TRANSIT),
    MappingRule(keywords=("direct deposit refund", "direct deposit sent"), outcome=CanonicalStatus.DIRECT_DEPOSIT),
    MappingRule(
        keywords=("identity", "verification", "under review", "being reviewed"),
        outcome=CanonicalStatus.IN_VERIFICATION,
    ),
    MappingRule(
        keywords=("cannot process", "unable to process your return", "contact us", "more information required"),
        outcome=CanonicalStatus.ISSUES,
    ),
)


class StatusMapper:
    """
    Map raw portal status text to a canonical status.

    Pure: case-insensitive substring matching over an ordered rule table, first matching rule wins.
    Returns None when no rule matches; callers must never infer a change from unrecognized text.
    """

    def __init__(self, rules: tuple[MappingRule, ...]) -> None:
        self.rules = rules

    @classmethod
    def for_track(cls, track: Track) -> "StatusMapper":
        return cls(FEDERAL_RULES if track == "federal" else STATE_RULES)

    def map(self, raw_status: str, payment_method: PaymentMethod) -> Optional[CanonicalStatus]:
        lower = (raw_status or "").strip().lower()
        if not lower:
            return None

        for rule in self.rules:
            if not any(k in lower for k in rule.keywords):
                continue
            if rule.outcome is NO_STATUS:
                return None
            if rule.outcome is DEPOSIT_PENDING:
                return resolve_deposit_pending(payment_method)
            return rule.outcome  # type: ignore[return-value]
        return None


def resolve_deposit_pending(payment_method: PaymentMethod) -> CanonicalStatus:
    if payment_method == "check":
        return CanonicalStatus.CHECK_IN_TRANSIT
    return CanonicalStatus.DIRECT_DEPOSIT
