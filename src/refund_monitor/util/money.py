from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union


def money_to_cents(value: str) -> int:
    """
    Parse values like:
    - "$3,040.16"
    - "3040.16"
    - "-$12.34"
    - "(12.34)"
    """
    if value is None:
        raise ValueError("money_to_cents: value is None")

    s = value.strip()
    if not s:
        raise ValueError("money_to_cents: empty string")

    s = s.replace("$", "").replace(",", "").strip()

    # Handle parentheses as negative
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1].strip()

    dec = Decimal(s).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(dec * 100)


def parse_amount(value: Union[str, float, int, None]) -> Optional[float]:
    """Lenient amount parsing for imported case rows; blank means unknown."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip()
    if not s:
        return None
    return money_to_cents(s) / 100


def whole_dollars(amount: Union[float, int]) -> int:
    """The portals only accept whole dollars; .5 rounds up."""
    dec = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(dec)
