from .extractor import FEDERAL_PROFILE, STATE_PROFILE, Extraction, PageCapture, StatusExtractor, profile_for
from .vision import VisionClient, parse_verdict

__all__ = [
    "FEDERAL_PROFILE",
    "STATE_PROFILE",
    "Extraction",
    "PageCapture",
    "StatusExtractor",
    "profile_for",
    "VisionClient",
    "parse_verdict",
]
