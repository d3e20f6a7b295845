from __future__ import annotations

from dataclasses import dataclass, field

from ..models import FilingStatus


@dataclass(frozen=True)
class FederalSelectors:
    """
    IRS "Where's My Refund" is a SPA; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    identifier_input: str = 'input[name="ssnInput"]'
    # The radio ids are the bare tax year ("2024") and the filing-status codes below.
    tax_year_label: str = 'label[for="{year}"]'
    tax_year_radio: str = 'input[id="{year}"]'
    filing_status_ids: dict[str, str] = field(
        default_factory=lambda: {
            "single": "Single",
            "married_joint": "MFJ",
            "married_separate": "MFS",
            "head_of_household": "HOH",
        }
    )
    filing_status_label: str = 'label[for="{id}"]'
    filing_status_radio: str = 'input[id="{id}"]'
    refund_amount_label: str = r"refund amount"
    submit: str = "a#anchor-ui-0"
    result_headings: str = "main h1, main h2, main h3"

    def filing_status_id(self, filing_status: FilingStatus) -> str:
        return self.filing_status_ids.get(filing_status, "Single")


@dataclass(frozen=True)
class StateSelectors:
    # "Where's My Refund for Individuals" link on the Revenue Online landing page.
    entry_link: str = "#Dg-3-1_c"
    identifier_input: str = "#Dd-d"
    refund_amount_input: str = "#Dd-e"
    submit: str = "#Dd-i"
    result_headings: str = "main h1, main h2, h1, h2"
