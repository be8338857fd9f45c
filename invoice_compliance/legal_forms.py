"""
Company legal forms recognisable in issuer names.
"""

import re
from dataclasses import dataclass
from typing import Final, Optional


@dataclass(frozen=True)
class LegalForm:
    label: str
    pattern: re.Pattern[str]
    uid_required: bool = True


# Longer spellings first so "Gesellschaft mit beschränkter Haftung" wins over a bare "Gesellschaft"
LEGAL_FORMS: Final[list[LegalForm]] = [
    LegalForm("GmbH", re.compile(r"gesellschaft\s+mit\s+beschr(?:ä|ae)nkter\s+haftung", re.IGNORECASE)),
    LegalForm("UG (haftungsbeschränkt)", re.compile(r"\bUG\s*\(haftungsbeschr(?:ä|ae)nkt\)", re.IGNORECASE)),
    LegalForm("GmbH & Co KG", re.compile(r"\bGmbH\s*&\s*Co\.?\s*KG\b", re.IGNORECASE)),
    LegalForm("GmbH", re.compile(r"\bG(?:es\.?\s*)?m\.?\s*b\.?\s*H\.?(?=\s|$|,)", re.IGNORECASE)),
    LegalForm("AG", re.compile(r"\bAG\b")),
    LegalForm("SE", re.compile(r"\bSE\b")),
    LegalForm("eGen", re.compile(r"\beGen\b|\bGenossenschaft\b", re.IGNORECASE)),
    LegalForm("Verein", re.compile(r"\bVerein\b", re.IGNORECASE), uid_required=False),
    LegalForm("Privatstiftung", re.compile(r"\b(?:Privat)?[Ss]tiftung\b")),
    LegalForm("OG", re.compile(r"\bOG\b|\bOHG\b")),
    LegalForm("KG", re.compile(r"\bKG\b")),
    LegalForm("e.U.", re.compile(r"\be\.\s?U\.?(?=\s|$|,)")),
]


def detect_legal_form(company_name: str) -> Optional[LegalForm]:
    """Return the first legal form found in a company name."""
    for form in LEGAL_FORMS:
        if form.pattern.search(company_name):
            return form
    return None
