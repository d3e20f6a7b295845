from .dates import parse_timestamp, to_iso
from .money import money_to_cents, parse_amount, whole_dollars

__all__ = ["parse_timestamp", "to_iso", "money_to_cents", "parse_amount", "whole_dollars"]
