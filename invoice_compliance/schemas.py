"""
Pydantic models for invoice compliance validation.

This module defines the core data structures used throughout the service:
- ExtractedFields and Address for the invoice data produced by extraction
- ValidationContext for the non-field metadata of one validation call
- ValidationCheck, ViesValidationInfo and ValidationOutput for the verdict
- ValidationSummary and ValidationReport for batch results
"""

from datetime import date
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import (
    REFERENCE_CURRENCY,
    AmountClass,
    Direction,
    DocumentType,
    RuleId,
    TrafficLightStatus,
)


class Address(BaseModel):
    """
    Postal address as delivered by extraction.

    German keys (``strasse``, ``plz``, ``ort``, ``land``) are accepted as
    aliases since most Austrian invoices are extracted with them.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    street: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("street", "strasse", "straße"),
    )
    zip: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("zip", "plz", "postal_code", "postalCode", "postleitzahl"),
    )
    city: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("city", "ort", "stadt"),
    )
    country: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("country", "land"),
    )

    @field_validator("zip", mode="before")
    @classmethod
    def coerce_zip(cls, v: Any) -> Any:
        """Postal codes sometimes arrive as integers."""
        if isinstance(v, int):
            return str(v)
        return v

    def is_complete(self) -> bool:
        return all(part and part.strip() for part in (self.street, self.zip, self.city))


class VatBreakdownEntry(BaseModel):
    """One line of a multi-rate VAT breakdown."""
    rate: float = Field(..., description="VAT rate in percent")
    net_amount: float = Field(..., description="Net amount taxed at this rate")
    vat_amount: float = Field(..., description="VAT amount for this rate")


class ExtractedFields(BaseModel):
    """
    Invoice fields to validate, as produced by the extraction collaborator.

    Every field is optional: missing data is what the checks report on.
    Dates may be passed as ``date`` objects or as the raw extracted string;
    numeric fields must already be normalised to numbers.
    """
    model_config = ConfigDict(frozen=True)

    # ========================================================================
    # Issuer
    # ========================================================================
    issuer_name: Optional[str] = None
    issuer_uid: Optional[str] = None
    issuer_address: Optional[Address] = None
    issuer_email: Optional[str] = None
    issuer_iban: Optional[str] = None

    # ========================================================================
    # Recipient
    # ========================================================================
    recipient_name: Optional[str] = None
    recipient_uid: Optional[str] = None
    recipient_address: Optional[Address] = None

    # ========================================================================
    # Document identifiers
    # ========================================================================
    invoice_number: Optional[str] = None
    invoice_date: Optional[Union[date, str]] = None
    delivery_date: Optional[Union[date, str]] = None
    description: Optional[str] = None

    # ========================================================================
    # Amounts
    # ========================================================================
    net_amount: Optional[float] = None
    vat_amount: Optional[float] = None
    gross_amount: Optional[float] = None
    vat_rate: Optional[float] = None
    vat_breakdown: list[VatBreakdownEntry] = Field(default_factory=list)
    currency: str = Field(REFERENCE_CURRENCY, min_length=3, max_length=3)
    is_reverse_charge: bool = False

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v: Any) -> Any:
        """Normalize currency code to uppercase; empty means reference currency."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return REFERENCE_CURRENCY
        if isinstance(v, str):
            return v.upper().strip()
        return v

    @field_validator("vat_breakdown", mode="before")
    @classmethod
    def none_breakdown_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class TenantProfile(BaseModel):
    """The tenant's own identity, used to detect swapped issuer/recipient."""
    name: str
    uid: Optional[str] = None
    ibans: list[str] = Field(default_factory=list)


class ValidationContext(BaseModel):
    """
    Non-field context of a validation call.

    ``estimated_reference_gross`` is the gross amount converted to the
    reference currency by the caller; it is only consulted for foreign
    currency invoices.
    """
    tenant_id: str = Field(..., description="Tenant the invoice belongs to")
    invoice_id: str = Field(..., description="Identifier of the invoice being validated")
    direction: Direction = Direction.INCOMING
    document_type: DocumentType = DocumentType.INVOICE

    estimated_reference_gross: Optional[float] = None
    exchange_rate: Optional[float] = None
    exchange_rate_date: Optional[date] = None

    tenant: Optional[TenantProfile] = None
    known_invoice_keys: Optional[set[tuple[str, str]]] = Field(
        None,
        description="(invoice_number, issuer_name) pairs already on file; None skips duplicate detection",
    )

    is_hospitality: bool = False
    hospitality_guests: Optional[str] = None
    hospitality_reason: Optional[str] = None


class ValidationCheck(BaseModel):
    """Outcome of one rule for one invoice."""
    model_config = ConfigDict(frozen=True)

    rule: RuleId
    status: TrafficLightStatus
    message: str
    required: bool = Field(
        ...,
        description="Whether the rule is mandatory for this invoice's amount class",
    )
    legal_basis: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class ViesValidationInfo(BaseModel):
    """Outcome of the registry lookup as reported to the caller."""
    checked: bool = False
    valid: bool = False
    registered_name: Optional[str] = None
    registered_address: Optional[str] = None
    name_match: bool = False
    name_similarity: float = 0.0
    request_date: Optional[str] = None
    error: Optional[str] = None


class ValidationOutput(BaseModel):
    """Full verdict for one invoice."""
    overall_status: TrafficLightStatus
    amount_class: AmountClass
    checks: list[ValidationCheck]
    vies_info: Optional[ViesValidationInfo] = None

    def check_for(self, rule: RuleId) -> ValidationCheck:
        for check in self.checks:
            if check.rule == rule:
                return check
        raise KeyError(rule)


# ============================================================================
# Batch Models
# ============================================================================

class ValidationRequest(BaseModel):
    """Fields plus context for one invoice."""
    fields: ExtractedFields
    context: ValidationContext

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "fields": {
                        "issuer_name": "Muster Handel GmbH",
                        "issuer_uid": "ATU12345678",
                        "issuer_address": {"street": "Ringstraße 1", "zip": "1010", "city": "Wien", "country": "AT"},
                        "issuer_iban": "AT611904300234573201",
                        "recipient_name": "Kunde OG",
                        "recipient_uid": "ATU87654321",
                        "invoice_number": "RE-2024-0815",
                        "invoice_date": "2024-03-15",
                        "delivery_date": "2024-03-10",
                        "description": "Beratungsleistung März 2024",
                        "net_amount": 1000.00,
                        "vat_amount": 200.00,
                        "gross_amount": 1200.00,
                        "vat_rate": 20,
                        "currency": "EUR",
                    },
                    "context": {"tenant_id": "tenant-1", "invoice_id": "inv-1"},
                }
            ]
        }
    }


class InvoiceVerdict(BaseModel):
    """Verdict of one invoice within a batch."""
    invoice_id: str
    output: ValidationOutput


class ValidationSummary(BaseModel):
    """
    Aggregated validation summary for a batch of invoices.

    Counts invoices per overall status and, per rule, how many invoices
    produced a non-valid check for it.
    """
    total_invoices: int = Field(..., ge=0)
    valid_invoices: int = Field(0, ge=0)
    pending_invoices: int = Field(0, ge=0)
    warning_invoices: int = Field(0, ge=0)
    invalid_invoices: int = Field(0, ge=0)
    rule_issue_counts: dict[str, int] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    """Complete validation report containing per-invoice verdicts and summary."""
    summary: ValidationSummary
    per_invoice_results: list[InvoiceVerdict] = Field(default_factory=list)
