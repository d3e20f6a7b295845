from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from ..models import CheckResult


@dataclass(frozen=True)
class PhraseGroup:
    label: str
    patterns: tuple[re.Pattern[str], ...]
    result: CheckResult = "success"

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _group(label: str, *patterns: str, result: CheckResult = "success") -> PhraseGroup:
    return PhraseGroup(
        label=label,
        patterns=tuple(re.compile(p, re.IGNORECASE | re.DOTALL) for p in patterns),
        result=result,
    )


# First match wins. Error and not-found pages are checked before anything else because the
# status tracker on those pages can still render the ordinary step labels.
FEDERAL_PHRASES: tuple[PhraseGroup, ...] = (
    _group(
        "Service Unavailable",
        r"service (is )?(temporarily )?unavailable",
        r"try again later",
        r"system error",
        result="error",
    ),
    _group(
        "Information Not Available",
        r"cannot provide any information",
        r"no information (is )?available",
        r"information (you entered )?does not match",
        result="not_found",
    ),
    # The tracker always renders "Return Received / Refund Approved / Refund Sent", so only the
    # descriptive sentences under it are matched, never the bare step labels.
    _group(
        "Refund Sent",
        r"refund (was|has been) sent",
        r"sent your refund",
        r"mailed your refund",
        r"check was mailed",
        r"sent to your bank",
    ),
    _group("Refund Approved", r"refund (was|has been) approved", r"approved your refund"),
    _group(
        "Take Action",
        r"verify your identity",
        r"we need more information",
        r"action (is )?required",
        r"take action (to|on|by)",
    ),
    _group(
        "Return Received",
        r"still being processed",
        r"we received your tax return",
        r"return (was|has been) received",
    ),
)

STATE_PHRASES: tuple[PhraseGroup, ...] = (
    _group(
        "Request Unavailable",
        r"request unavailable|unable to process|try again later|service unavailable",
        result="error",
    ),
    _group("Return Not Received", r"return not received", r"not yet processed", result="not_found"),
    _group("Direct Deposit Redeemed", r"direct deposit.*redeemed", r"redeemed.*direct deposit"),
    _group("Paper Check Redeemed", r"paper check.*redeemed", r"redeemed.*paper check"),
    _group("Refund Issued", r"refund (issued|approved and sent)"),
    _group("Refund Reviewed", r"refund reviewed"),
    _group("Return Received & Being Processed", r"return received", r"being processed"),
)

# Page-chrome headings that never carry a status.
_CHROME_HEADING_RE = re.compile(r"where'?s my refund|refund status|check your refund", re.IGNORECASE)

COULD_NOT_EXTRACT = "Could not extract status"


def match_phrases(text: str, groups: Iterable[PhraseGroup]) -> Optional[PhraseGroup]:
    body = text or ""
    for group in groups:
        if group.matches(body):
            return group
    return None


def first_meaningful_heading(headings: Iterable[str]) -> Optional[str]:
    for raw in headings:
        h = " ".join((raw or "").split())
        if len(h) <= 3:
            continue
        if _CHROME_HEADING_RE.search(h):
            continue
        return h
    return None
