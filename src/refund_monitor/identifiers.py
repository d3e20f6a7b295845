from __future__ import annotations

import re
from typing import Optional, Protocol

from .errors import PreconditionError


_NON_DIGIT_RE = re.compile(r"\D")


class IdentifierResolver(Protocol):
    """Turns a case's stored (opaque) identifier into the plaintext 9-digit taxpayer id."""

    def resolve(self, stored: Optional[str]) -> str: ...


def normalize_identifier(value: Optional[str]) -> str:
    """
    Strip separators and validate a taxpayer identifier.

    Raises PreconditionError unless exactly 9 digits remain.
    """
    digits = _NON_DIGIT_RE.sub("", value or "")
    if not digits:
        raise PreconditionError("Missing taxpayer identifier")
    if len(digits) != 9:
        raise PreconditionError(f"Invalid taxpayer identifier: expected 9 digits, got {len(digits)}")
    return digits


def format_dashed(identifier: str) -> str:
    """123456789 -> 123-45-6789 (the state portal's input mask)."""
    d = normalize_identifier(identifier)
    return f"{d[:3]}-{d[3:5]}-{d[5:]}"


def mask_identifier(value: Optional[str]) -> str:
    digits = _NON_DIGIT_RE.sub("", value or "")
    if len(digits) < 4:
        return "***-**-****"
    return f"***-**-{digits[-4:]}"


class PlaintextIdentifierResolver:
    """
    Resolver for stores that keep the identifier unencrypted (local installs, tests).

    Deployments with an encrypted profile store inject their own resolver.
    """

    def resolve(self, stored: Optional[str]) -> str:
        return normalize_identifier(stored)
