"""
Configuration constants and enums for the Invoice Compliance Service.
"""

import logging
import os
from enum import Enum
from typing import Final

# ============================================================================
# Amount Classes (§11 UStG)
# ============================================================================

# Reference currency in which the amount-class thresholds are defined
REFERENCE_CURRENCY: Final[str] = os.getenv("REFERENCE_CURRENCY", "EUR")

# Kleinbetragsrechnung: gross amount up to and including this value (§11 Abs 6 UStG)
SMALL_INVOICE_MAX: Final[float] = float(os.getenv("SMALL_INVOICE_MAX", "400"))

# Recipient UID becomes mandatory strictly above this gross amount (§11 Abs 1 Z 2a UStG)
LARGE_INVOICE_MIN: Final[float] = float(os.getenv("LARGE_INVOICE_MIN", "10000"))

# ============================================================================
# Validation Tolerances
# ============================================================================

# Tolerance for amount comparisons (net + vat ≈ gross, net × rate ≈ vat)
AMOUNT_TOLERANCE: Final[float] = float(os.getenv("AMOUNT_TOLERANCE", "0.01"))

# VAT rates recognised in Austria (§10 UStG)
VALID_VAT_RATES: Final[frozenset[float]] = frozenset({20.0, 13.0, 10.0, 0.0})

# ============================================================================
# Date Formats
# ============================================================================

# Date formats accepted for invoice and delivery dates
DATE_FORMATS: Final[list[str]] = [
    "%Y-%m-%d",      # ISO format: 2024-01-15
    "%d.%m.%Y",      # Austrian: 15.01.2024
    "%d.%m.%y",      # Austrian short: 15.01.24
    "%d/%m/%Y",      # European: 15/01/2024
    "%d-%m-%Y",      # European with dashes: 15-01-2024
    "%d %B %Y",      # European long: 15 January 2024
    "%d %b %Y",      # European short: 15 Jan 2024
]

# ============================================================================
# VIES (EU VAT registry)
# ============================================================================

VIES_API_URL: Final[str] = os.getenv(
    "VIES_API_URL",
    "https://ec.europa.eu/taxation_customs/vies/rest-api/check-vat-number",
)
VIES_TIMEOUT_SECONDS: Final[float] = float(os.getenv("VIES_TIMEOUT_SECONDS", "5"))
VIES_CACHE_TTL_SECONDS: Final[float] = float(os.getenv("VIES_CACHE_TTL_SECONDS", "3600"))
VIES_CACHE_MAX_SIZE: Final[int] = int(os.getenv("VIES_CACHE_MAX_SIZE", "1024"))

# Company names match when the similarity score is strictly above this value
NAME_MATCH_THRESHOLD: Final[float] = 0.6
NAME_CONTAINMENT_SCORE: Final[float] = 0.85

# ============================================================================
# Enums
# ============================================================================

class TrafficLightStatus(str, Enum):
    """Per-check and aggregate compliance status."""
    VALID = "VALID"
    PENDING = "PENDING"
    WARNING = "WARNING"
    INVALID = "INVALID"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY: Final[dict[TrafficLightStatus, int]] = {
    TrafficLightStatus.VALID: 0,
    TrafficLightStatus.PENDING: 1,
    TrafficLightStatus.WARNING: 2,
    TrafficLightStatus.INVALID: 3,
}


class AmountClass(str, Enum):
    """Size bucket driving which invoice fields are mandatory."""
    SMALL = "SMALL"
    STANDARD = "STANDARD"
    LARGE = "LARGE"


class Direction(str, Enum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"
    ADVANCE_PAYMENT = "ADVANCE_PAYMENT"
    RECEIPT = "RECEIPT"


class RuleId(str, Enum):
    """Closed set of compliance rules. Every validation emits one check per member."""
    # Mandatory invoice fields
    ISSUER_NAME = "ISSUER_NAME"
    ISSUER_ADDRESS = "ISSUER_ADDRESS"
    ISSUER_UID = "ISSUER_UID"
    RECIPIENT_NAME = "RECIPIENT_NAME"
    RECIPIENT_UID = "RECIPIENT_UID"
    INVOICE_NUMBER = "INVOICE_NUMBER"
    INVOICE_DATE = "INVOICE_DATE"
    DELIVERY_DATE = "DELIVERY_DATE"
    DESCRIPTION = "DESCRIPTION"
    NET_AMOUNT = "NET_AMOUNT"
    VAT_RATE = "VAT_RATE"
    VAT_AMOUNT = "VAT_AMOUNT"
    GROSS_AMOUNT = "GROSS_AMOUNT"
    # Arithmetic and logic
    MATH_CHECK = "MATH_CHECK"
    VAT_RATE_VALID = "VAT_RATE_VALID"
    UID_SYNTAX = "UID_SYNTAX"
    IBAN_SYNTAX = "IBAN_SYNTAX"
    REVERSE_CHARGE = "REVERSE_CHARGE"
    FOREIGN_VAT_CHECK = "FOREIGN_VAT_CHECK"
    PLZ_UID_CHECK = "PLZ_UID_CHECK"
    CURRENCY_INFO = "CURRENCY_INFO"
    HOSPITALITY_CHECK = "HOSPITALITY_CHECK"
    LEGAL_FORM_CHECK = "LEGAL_FORM_CHECK"
    CREDIT_NOTE_CHECK = "CREDIT_NOTE_CHECK"
    DUPLICATE_CHECK = "DUPLICATE_CHECK"
    ISSUER_SELF_CHECK = "ISSUER_SELF_CHECK"
    # Registry lookup
    UID_VIES_CHECK = "UID_VIES_CHECK"


# ============================================================================
# API Configuration
# ============================================================================

API_HOST: Final[str] = os.getenv("API_HOST", "0.0.0.0")
API_PORT: Final[int] = int(os.getenv("API_PORT", "8000"))

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")

def setup_logging() -> logging.Logger:
    """Configure and return the application logger."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("invoice_compliance")


logger = setup_logging()
