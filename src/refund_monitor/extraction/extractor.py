from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional

from ..errors import VisionError
from ..models import CheckResult, Track
from .text import COULD_NOT_EXTRACT, FEDERAL_PHRASES, STATE_PHRASES, PhraseGroup, first_meaningful_heading, match_phrases
from .vision import VisionClient, VisionVerdict


logger = logging.getLogger(__name__)

ExtractionMethod = Literal["vision", "text", "heading", "none"]


@dataclass
class PageCapture:
    """Everything read off the result page before the browser was closed."""

    screenshot: Optional[bytes] = None
    text: str = ""
    headings: tuple[str, ...] = ()
    url: str = ""


@dataclass
class Extraction:
    raw_status: str
    details: str = ""
    result: CheckResult = "success"
    method: ExtractionMethod = "none"


@dataclass(frozen=True)
class PortalProfile:
    track: Track
    title: str
    labels: tuple[str, ...]
    phrases: tuple[PhraseGroup, ...]
    not_found_markers: tuple[str, ...] = ()
    details_limit: int = field(default=500)


FEDERAL_PROFILE = PortalProfile(
    track="federal",
    title='IRS "Where\'s My Refund"',
    labels=(
        "Return Received",
        "Refund Approved",
        "Refund Sent",
        "Take Action",
        "Information Not Available",
        "Error",
    ),
    phrases=FEDERAL_PHRASES,
    not_found_markers=("not found", "information not available", "cannot provide any information"),
)

STATE_PROFILE = PortalProfile(
    track="state",
    title='Colorado Department of Revenue "Where\'s My Refund"',
    labels=(
        "Return Not Received",
        "Return Received & Being Processed",
        "Refund Reviewed",
        "Refund Issued",
        "Direct Deposit Redeemed",
        "Paper Check Redeemed",
        "Request Unavailable",
        "Error",
    ),
    phrases=STATE_PHRASES,
    not_found_markers=("not received", "not found", "not yet processed"),
)


def profile_for(track: Track) -> PortalProfile:
    return FEDERAL_PROFILE if track == "federal" else STATE_PROFILE


def classify_verdict(verdict: VisionVerdict, profile: PortalProfile) -> CheckResult:
    lower = verdict.status.lower()
    not_found = any(m in lower for m in profile.not_found_markers)
    if not verdict.found or "unavailable" in lower or "error" in lower:
        return "not_found" if not_found else "error"
    if not_found:
        return "not_found"
    return "success"


class StatusExtractor:
    """
    Turn a captured result page into (raw status, details, classification).

    Vision model first when a screenshot and credentials are available; the deterministic text scan otherwise.
    `extract` never raises.
    """

    def __init__(self, profile: PortalProfile, vision: Optional[VisionClient] = None) -> None:
        self.profile = profile
        self.vision = vision

    def extract(self, capture: PageCapture, *, client_name: str = "") -> Extraction:
        if capture.screenshot and self.vision is not None and self.vision.available:
            try:
                verdict = self.vision.read_status(
                    capture.screenshot,
                    portal_title=self.profile.title,
                    labels=self.profile.labels,
                    client_name=client_name,
                )
            except VisionError as e:
                logger.warning("Vision extraction failed (%s); falling back to page text.", e)
            else:
                if verdict is not None:
                    return Extraction(
                        raw_status=verdict.status.strip(),
                        details=verdict.details.strip()[: self.profile.details_limit],
                        result=classify_verdict(verdict, self.profile),
                        method="vision",
                    )
                logger.warning("Vision reply was not a valid status verdict; falling back to page text.")

        return self.extract_from_text(capture)

    def extract_from_text(self, capture: PageCapture) -> Extraction:
        group = match_phrases(capture.text, self.profile.phrases)
        if group is not None:
            return Extraction(raw_status=group.label, result=group.result, method="text")

        heading = first_meaningful_heading(capture.headings)
        if heading:
            return Extraction(raw_status=heading, result="success", method="heading")

        return Extraction(raw_status=COULD_NOT_EXTRACT, result="error", method="none")
