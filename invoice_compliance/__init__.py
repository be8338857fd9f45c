"""
Invoice Compliance Service

A Python service that checks already-extracted invoice fields against the
Austrian formal invoice requirements (§11 UStG) and returns a traffic-light
verdict per invoice.
"""

__version__ = "0.1.0"
__author__ = "Invoice Compliance Team"

from .config import AmountClass, RuleId, TrafficLightStatus
from .schemas import ExtractedFields, ValidationCheck, ValidationContext, ValidationOutput
from .validator import InvoiceContractError, validate_invoice, validate_batch
from .vies import ViesCache, ViesClient

__all__ = [
    "AmountClass",
    "RuleId",
    "TrafficLightStatus",
    "ExtractedFields",
    "ValidationCheck",
    "ValidationContext",
    "ValidationOutput",
    "InvoiceContractError",
    "validate_invoice",
    "validate_batch",
    "ViesCache",
    "ViesClient",
]
