"""
Compliance rules for Austrian invoices (§11 UStG).

This module defines the rule registry and the individual checks, organised
by concern:
- Amount classification and the per-rule applicability table
- Presence rules: mandatory invoice fields
- Arithmetic rules: amounts, VAT rates and their consistency
- Identifier rules: UID and IBAN syntax, address/UID plausibility
- Cross-border and context rules: reverse charge, foreign VAT, currency,
  hospitality receipts, legal form, credit notes, duplicates, swapped parties

Every check is a function taking the extracted fields and an optional
``RuleContext`` and returning exactly one ``ValidationCheck``. Checks always
run; whether a rule is mandatory only affects how its result is weighted
when the verdict is aggregated.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Final, Optional, Union

from dateutil import parser as date_parser

from .config import (
    AMOUNT_TOLERANCE,
    DATE_FORMATS,
    LARGE_INVOICE_MIN,
    REFERENCE_CURRENCY,
    SMALL_INVOICE_MAX,
    VALID_VAT_RATES,
    AmountClass,
    Direction,
    DocumentType,
    RuleId,
    TrafficLightStatus,
)
from .identifiers import (
    DOMESTIC_COUNTRY,
    UidCountry,
    Region,
    VendorLocation,
    address_country,
    detect_vendor_location,
    iban_format_error,
    is_valid_uid_syntax,
    normalize_iban,
    normalize_uid,
    uid_country,
    validate_iban_check_digit,
)
from .legal_forms import detect_legal_form
from .schemas import ExtractedFields, TenantProfile, ValidationCheck, ValidationContext

ALL_CLASSES: Final[frozenset[AmountClass]] = frozenset(AmountClass)
STANDARD_AND_LARGE: Final[frozenset[AmountClass]] = frozenset({AmountClass.STANDARD, AmountClass.LARGE})
LARGE_ONLY: Final[frozenset[AmountClass]] = frozenset({AmountClass.LARGE})
NEVER: Final[frozenset[AmountClass]] = frozenset()

# Rules that become mandatory for every amount class when the issuer sits in
# another EU member state (intra-community B2B)
EU_B2B_RULES: Final[frozenset[RuleId]] = frozenset({
    RuleId.ISSUER_UID,
    RuleId.UID_SYNTAX,
    RuleId.UID_VIES_CHECK,
    RuleId.PLZ_UID_CHECK,
    RuleId.REVERSE_CHARGE,
})

REVERSE_CHARGE_MARKERS: Final[tuple[str, ...]] = (
    "reverse charge",
    "reverse-charge",
    "steuerschuldnerschaft",
    "übergang der steuerschuld",
    "uebergang der steuerschuld",
    "steuerschuld geht",
    "§19",
    "§ 19",
    "art 196",
    "art. 196",
)

HOSPITALITY_KEYWORDS: Final[tuple[str, ...]] = (
    "restaurant", "gasthaus", "café", "cafe", "catering", "wirtshaus",
    "pizzeria", "bistro", "trattoria", "gasthof", "hotel",
)


# ============================================================================
# Amount Classification
# ============================================================================

def determine_amount_class(
    gross_amount: Optional[float],
    currency: Optional[str] = None,
    estimated_reference_gross: Optional[float] = None,
) -> AmountClass:
    """
    Classify an invoice by its gross amount in the reference currency.

    Unknown amounts classify as STANDARD. Foreign-currency invoices classify
    on the converted estimate; without one they also fall back to STANDARD
    since the raw foreign figure says nothing about the thresholds.
    """
    if gross_amount is None:
        return AmountClass.STANDARD

    amount = gross_amount
    if currency and currency.upper() != REFERENCE_CURRENCY:
        if estimated_reference_gross is None:
            return AmountClass.STANDARD
        amount = estimated_reference_gross

    if amount <= SMALL_INVOICE_MAX:
        return AmountClass.SMALL
    if amount > LARGE_INVOICE_MIN:
        return AmountClass.LARGE
    return AmountClass.STANDARD


# ============================================================================
# Rule Context
# ============================================================================

@dataclass(frozen=True)
class RuleContext:
    """
    Everything besides the extracted fields that a check may look at.

    Built once per validation by ``RuleContext.build``; tests construct it
    directly to pin an amount class or direction.
    """
    amount_class: AmountClass = AmountClass.STANDARD
    direction: Direction = Direction.INCOMING
    document_type: DocumentType = DocumentType.INVOICE
    location: Optional[VendorLocation] = None
    estimated_reference_gross: Optional[float] = None
    exchange_rate: Optional[float] = None
    exchange_rate_date: Optional[date] = None
    tenant: Optional[TenantProfile] = None
    known_invoice_keys: Optional[frozenset[tuple[str, str]]] = None
    is_hospitality: bool = False
    hospitality_guests: Optional[str] = None
    hospitality_reason: Optional[str] = None

    @classmethod
    def build(cls, fields: ExtractedFields, context: Optional[ValidationContext] = None) -> "RuleContext":
        if context is None:
            return cls(
                amount_class=determine_amount_class(fields.gross_amount, fields.currency),
                location=detect_vendor_location(fields),
            )
        known = None
        if context.known_invoice_keys is not None:
            known = frozenset(_duplicate_key(number, name) for number, name in context.known_invoice_keys)
        return cls(
            amount_class=determine_amount_class(
                fields.gross_amount, fields.currency, context.estimated_reference_gross
            ),
            direction=context.direction,
            document_type=context.document_type,
            location=detect_vendor_location(fields),
            estimated_reference_gross=context.estimated_reference_gross,
            exchange_rate=context.exchange_rate,
            exchange_rate_date=context.exchange_rate_date,
            tenant=context.tenant,
            known_invoice_keys=known,
            is_hospitality=context.is_hospitality,
            hospitality_guests=context.hospitality_guests,
            hospitality_reason=context.hospitality_reason,
        )


RuleCheckFn = Callable[[ExtractedFields, Optional[RuleContext]], ValidationCheck]


@dataclass(frozen=True)
class ValidationRule:
    """
    Represents a single compliance rule.

    Attributes:
        rule_id: Identifier reported on the resulting check
        label: Human-readable name of the invoice feature checked
        legal_basis: Provision the rule derives from
        required_for: Amount classes for which the rule is mandatory
        check: Function performing the check; None for the registry lookup,
            which runs asynchronously in ``vies.check_uid_vies``
    """
    rule_id: RuleId
    label: str
    legal_basis: str
    required_for: frozenset[AmountClass]
    check: Optional[RuleCheckFn] = None


# ============================================================================
# Helpers
# ============================================================================

def _ctx(fields: ExtractedFields, ctx: Optional[RuleContext]) -> RuleContext:
    return ctx if ctx is not None else RuleContext.build(fields)


def _location(fields: ExtractedFields, ctx: RuleContext) -> VendorLocation:
    return ctx.location if ctx.location is not None else detect_vendor_location(fields)


def is_required_for(rule_id: Union[RuleId, str], amount_class: AmountClass) -> bool:
    """Whether a rule is mandatory for an amount class. Unknown rules never are."""
    try:
        rule = RuleId(rule_id)
    except ValueError:
        return False
    return amount_class in RULE_APPLICABILITY.get(rule, NEVER)


def is_rule_required(rule_id: RuleId, fields: ExtractedFields, ctx: RuleContext) -> bool:
    """Applicability including the EU B2B elevation."""
    if is_required_for(rule_id, ctx.amount_class):
        return True
    return rule_id in EU_B2B_RULES and _location(fields, ctx).region == Region.EU


def make_check(
    rule_id: RuleId,
    status: TrafficLightStatus,
    message: str,
    required: bool,
    details: Optional[dict] = None,
) -> ValidationCheck:
    rule = RULES_BY_ID[rule_id]
    return ValidationCheck(
        rule=rule_id,
        status=status,
        message=message,
        required=required,
        legal_basis=rule.legal_basis,
        details=details,
    )


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _missing(rule_id: RuleId, required: bool, message: str) -> ValidationCheck:
    """A missing field: INVALID when mandatory, otherwise reported as optional."""
    label = RULES_BY_ID[rule_id].label
    if required:
        return make_check(rule_id, TrafficLightStatus.INVALID, message, True)
    return make_check(
        rule_id,
        TrafficLightStatus.WARNING,
        f"{label} missing (optional for this amount class)",
        False,
    )


def parse_date(value: Union[date, str, None]) -> Optional[date]:
    """Parse an extracted date using the configured formats."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    # Timestamps such as 2026-01-15T00:00:00.000Z and long-form dates
    try:
        return date_parser.parse(text, dayfirst=True).date()
    except (ValueError, OverflowError):
        return None


def _within_tolerance(a: float, b: float) -> bool:
    # rounding absorbs float noise at the tolerance boundary
    return round(abs(a - b), 6) <= AMOUNT_TOLERANCE


def _normalized_rate(rate: float) -> float:
    return round(float(rate), 2)


def vat_is_charged(fields: ExtractedFields) -> bool:
    if fields.vat_amount is not None and fields.vat_amount > 0:
        return True
    if fields.vat_rate is not None and fields.vat_rate > 0:
        return True
    return any(entry.vat_amount > 0 for entry in fields.vat_breakdown)


def _duplicate_key(invoice_number: str, issuer_name: str) -> tuple[str, str]:
    return invoice_number.strip().lower(), issuer_name.strip().lower()


# ============================================================================
# Presence Rules
# ============================================================================

def check_issuer_name(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """The issuer's name must be stated."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.ISSUER_NAME
    required = is_rule_required(rule_id, fields, ctx)
    if _blank(fields.issuer_name):
        return _missing(rule_id, required, "Issuer name missing")
    return make_check(rule_id, TrafficLightStatus.VALID, f"Issuer name present: {fields.issuer_name}", required)


def check_issuer_address(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """The issuer's address needs street, postal code and city."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.ISSUER_ADDRESS
    required = is_rule_required(rule_id, fields, ctx)
    address = fields.issuer_address
    if address is None or not address.is_complete():
        return _missing(rule_id, required, "Issuer address missing or incomplete (street, postal code, city)")
    return make_check(rule_id, TrafficLightStatus.VALID, "Issuer address present", required)


def check_issuer_uid(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    The issuer's UID must be stated.

    Whether a missing UID is a defect depends on where the issuer sits:
    third-country suppliers have none, domestic suppliers without VAT are
    most likely small businesses (§6 Abs 1 Z 27 UStG), EU suppliers always
    need one for B2B.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.ISSUER_UID
    required = is_rule_required(rule_id, fields, ctx)

    if not _blank(fields.issuer_uid):
        return make_check(rule_id, TrafficLightStatus.VALID, f"Issuer UID present: {fields.issuer_uid.strip()}", required)

    if not required:
        return _missing(rule_id, required, "Issuer UID missing")

    location = _location(fields, ctx)
    vat_charged = vat_is_charged(fields)

    if location.region == Region.THIRD_COUNTRY:
        return make_check(
            rule_id, TrafficLightStatus.VALID,
            f"No issuer UID: third-country supplier ({location.label}), no EU UID required",
            required,
        )
    if location.region == Region.EU:
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            f"Issuer UID missing: EU supplier ({location.label}) must state a UID on B2B invoices",
            required,
            details={"actions": [
                f"Request the UID of the {location.country} supplier",
                "Input VAT deduction is not possible without a valid UID",
            ]},
        )
    if vat_charged:
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            "Issuer UID missing although VAT is charged",
            required,
        )
    if location.region == Region.INLAND:
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            "Issuer UID missing: domestic supplier without VAT, presumably a small business (§6 Abs 1 Z 27 UStG)",
            required,
        )
    return make_check(
        rule_id, TrafficLightStatus.WARNING,
        "Issuer UID missing and the supplier's origin cannot be determined",
        required,
    )


def check_recipient_name(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """The recipient's name must be stated above the large-invoice floor."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.RECIPIENT_NAME
    required = is_rule_required(rule_id, fields, ctx)
    if _blank(fields.recipient_name):
        return _missing(rule_id, required, f"Recipient name missing (mandatory above {LARGE_INVOICE_MIN:,.0f} {REFERENCE_CURRENCY})")
    return make_check(rule_id, TrafficLightStatus.VALID, f"Recipient name present: {fields.recipient_name}", required)


def check_recipient_uid(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """The recipient's UID must be stated above the large-invoice floor."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.RECIPIENT_UID
    required = is_rule_required(rule_id, fields, ctx)
    if _blank(fields.recipient_uid):
        return _missing(rule_id, required, f"Recipient UID missing (mandatory above {LARGE_INVOICE_MIN:,.0f} {REFERENCE_CURRENCY})")
    return make_check(rule_id, TrafficLightStatus.VALID, f"Recipient UID present: {fields.recipient_uid.strip()}", required)


def check_invoice_number(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.INVOICE_NUMBER
    required = is_rule_required(rule_id, fields, ctx)
    if _blank(fields.invoice_number):
        return _missing(rule_id, required, "Invoice number missing")
    return make_check(rule_id, TrafficLightStatus.VALID, f"Invoice number present: {fields.invoice_number}", required)


def check_invoice_date(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """The issue date must be present and a real date."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.INVOICE_DATE
    required = is_rule_required(rule_id, fields, ctx)
    raw = fields.invoice_date
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return _missing(rule_id, required, "Invoice date missing")
    parsed = parse_date(raw)
    if parsed is None:
        return make_check(rule_id, TrafficLightStatus.INVALID, f"Invoice date not parseable: {raw}", required)
    return make_check(rule_id, TrafficLightStatus.VALID, f"Invoice date present: {parsed.isoformat()}", required)


def check_delivery_date(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    The date of delivery or service must be present.

    A missing delivery date is only a warning: it may coincide with the
    invoice date. A delivery date equal to the invoice date is flagged too,
    since extraction falls back to the invoice date when it finds none.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.DELIVERY_DATE
    required = is_rule_required(rule_id, fields, ctx)
    raw = fields.delivery_date
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if not required:
            return _missing(rule_id, required, "Delivery date missing")
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            "Delivery date missing (may be the invoice date)",
            required,
        )
    parsed = parse_date(raw)
    if parsed is None:
        return make_check(rule_id, TrafficLightStatus.INVALID, f"Delivery date not parseable: {raw}", required)
    if parsed == parse_date(fields.invoice_date):
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            "Delivery date equals the invoice date, please confirm",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, f"Delivery date present: {parsed.isoformat()}", required)


def check_description(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Quantity and kind of goods or services supplied."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.DESCRIPTION
    required = is_rule_required(rule_id, fields, ctx)
    if _blank(fields.description):
        return _missing(rule_id, required, "Description of goods or services missing")
    return make_check(rule_id, TrafficLightStatus.VALID, "Description of goods or services present", required)


# ============================================================================
# Amount Rules
# ============================================================================

def _check_amount(
    rule_id: RuleId,
    value: Optional[float],
    fields: ExtractedFields,
    ctx: RuleContext,
    covered_by_breakdown: bool,
) -> ValidationCheck:
    label = RULES_BY_ID[rule_id].label
    required = is_rule_required(rule_id, fields, ctx)
    if value is None:
        if covered_by_breakdown:
            return make_check(rule_id, TrafficLightStatus.VALID, f"{label} stated per rate in the VAT breakdown", required)
        return _missing(rule_id, required, f"{label} missing")
    if not math.isfinite(value):
        return make_check(rule_id, TrafficLightStatus.INVALID, f"{label} is not a number: {value}", required)
    if value < 0 and ctx.document_type != DocumentType.CREDIT_NOTE:
        return make_check(rule_id, TrafficLightStatus.INVALID, f"{label} is negative: {value:.2f}", required)
    return make_check(rule_id, TrafficLightStatus.VALID, f"{label}: {value:.2f}", required)


def check_net_amount(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    ctx = _ctx(fields, ctx)
    return _check_amount(RuleId.NET_AMOUNT, fields.net_amount, fields, ctx, bool(fields.vat_breakdown))


def check_vat_amount(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    ctx = _ctx(fields, ctx)
    if fields.vat_amount is None and fields.is_reverse_charge:
        required = is_rule_required(RuleId.VAT_AMOUNT, fields, ctx)
        return make_check(RuleId.VAT_AMOUNT, TrafficLightStatus.VALID, "No VAT amount stated (reverse charge)", required)
    return _check_amount(RuleId.VAT_AMOUNT, fields.vat_amount, fields, ctx, bool(fields.vat_breakdown))


def check_gross_amount(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    ctx = _ctx(fields, ctx)
    return _check_amount(RuleId.GROSS_AMOUNT, fields.gross_amount, fields, ctx, False)


def check_math(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    Net + VAT must equal gross within the rounding tolerance.

    With a VAT breakdown every entry must satisfy net × rate ≈ VAT and the
    summed entries must reconcile to the gross amount.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.MATH_CHECK
    required = is_rule_required(rule_id, fields, ctx)
    gross = fields.gross_amount

    if fields.vat_breakdown:
        if gross is None:
            return make_check(rule_id, TrafficLightStatus.WARNING, "Arithmetic not verifiable: gross amount missing", required)

        total_net = 0.0
        total_vat = 0.0
        parts = []
        for entry in fields.vat_breakdown:
            expected_vat = round(entry.net_amount * entry.rate / 100, 2)
            if not _within_tolerance(expected_vat, entry.vat_amount):
                return make_check(
                    rule_id, TrafficLightStatus.INVALID,
                    f"VAT error at {entry.rate:g}%: {entry.net_amount:.2f} × {entry.rate:g}% = "
                    f"{expected_vat:.2f}, but VAT is {entry.vat_amount:.2f}",
                    required,
                    details={"rate": entry.rate, "net": entry.net_amount, "vat": entry.vat_amount, "expected_vat": expected_vat},
                )
            total_net += entry.net_amount
            total_vat += entry.vat_amount
            parts.append(f"{entry.rate:g}%: {entry.net_amount:.2f} + {entry.vat_amount:.2f}")

        calculated = round(total_net + total_vat, 2)
        if _within_tolerance(calculated, gross) and fields.net_amount is not None and fields.vat_amount is not None:
            stated = round(fields.net_amount + fields.vat_amount, 2)
            if not _within_tolerance(stated, gross):
                return make_check(
                    rule_id, TrafficLightStatus.INVALID,
                    f"Net ({fields.net_amount:.2f}) + VAT ({fields.vat_amount:.2f}) = {stated:.2f}, "
                    f"but gross is {gross:.2f}",
                    required,
                    details={"net": fields.net_amount, "vat": fields.vat_amount, "gross": gross, "calculated": stated},
                )
        if _within_tolerance(calculated, gross):
            return make_check(
                rule_id, TrafficLightStatus.VALID,
                f"VAT breakdown reconciles: {' | '.join(parts)} = {gross:.2f}",
                required,
            )
        diff = abs(calculated - gross)
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            f"VAT breakdown sums to {calculated:.2f} but gross is {gross:.2f} (difference {diff:.2f})",
            required,
            details={"total_net": round(total_net, 2), "total_vat": round(total_vat, 2), "gross": gross, "difference": round(diff, 2)},
        )

    net = fields.net_amount
    vat = fields.vat_amount
    if vat is None and fields.is_reverse_charge:
        vat = 0.0
    if net is None or vat is None or gross is None:
        return make_check(rule_id, TrafficLightStatus.WARNING, "Arithmetic not verifiable: amounts missing", required)

    calculated = round(net + vat, 2)
    if _within_tolerance(calculated, gross):
        return make_check(
            rule_id, TrafficLightStatus.VALID,
            f"Net ({net:.2f}) + VAT ({vat:.2f}) = gross ({gross:.2f})",
            required,
        )
    diff = abs(calculated - gross)
    return make_check(
        rule_id, TrafficLightStatus.INVALID,
        f"Arithmetic error: {net:.2f} + {vat:.2f} = {calculated:.2f}, but gross is {gross:.2f} (difference {diff:.2f})",
        required,
        details={"net": net, "vat": vat, "gross": gross, "calculated": calculated, "difference": round(diff, 2)},
    )


def check_vat_rate(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """A VAT rate (or a per-rate breakdown) must be stated."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.VAT_RATE
    required = is_rule_required(rule_id, fields, ctx)
    if fields.vat_breakdown:
        rates = " + ".join(f"{entry.rate:g}%" for entry in fields.vat_breakdown)
        return make_check(rule_id, TrafficLightStatus.VALID, f"VAT rates: {rates}", required)
    if fields.vat_rate is None:
        if fields.is_reverse_charge:
            return make_check(rule_id, TrafficLightStatus.VALID, "No VAT rate stated (reverse charge)", required)
        return _missing(rule_id, required, "VAT rate missing")
    return make_check(rule_id, TrafficLightStatus.VALID, f"VAT rate: {fields.vat_rate:g}%", required)


def check_vat_rate_valid(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Every stated rate must be one the law recognises; anything else is INVALID."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.VAT_RATE_VALID
    required = is_rule_required(rule_id, fields, ctx)
    allowed = ", ".join(f"{rate:g}%" for rate in sorted(VALID_VAT_RATES, reverse=True))

    if fields.vat_breakdown:
        invalid = [entry.rate for entry in fields.vat_breakdown if _normalized_rate(entry.rate) not in VALID_VAT_RATES]
        if invalid:
            return make_check(
                rule_id, TrafficLightStatus.INVALID,
                f"Invalid VAT rates: {', '.join(f'{r:g}%' for r in invalid)} (allowed: {allowed})",
                required,
            )
        return make_check(rule_id, TrafficLightStatus.VALID, "All VAT rates in the breakdown are valid", required)

    if fields.vat_rate is None:
        if fields.is_reverse_charge:
            return make_check(rule_id, TrafficLightStatus.VALID, "No VAT rate to validate (reverse charge)", required)
        return make_check(rule_id, TrafficLightStatus.WARNING, "No VAT rate to validate", required)

    if _normalized_rate(fields.vat_rate) in VALID_VAT_RATES:
        return make_check(rule_id, TrafficLightStatus.VALID, f"VAT rate {fields.vat_rate:g}% is valid", required)
    return make_check(
        rule_id, TrafficLightStatus.INVALID,
        f"VAT rate {fields.vat_rate:g}% is not valid in Austria (allowed: {allowed})",
        required,
    )


# ============================================================================
# Identifier Rules
# ============================================================================

def _uid_syntax_problem(party: str, uid: str) -> Optional[str]:
    if is_valid_uid_syntax(uid):
        return None
    clean = normalize_uid(uid)
    if uid_country(clean) is None:
        return f"{party} UID {uid.strip()} has an unknown country prefix '{clean[:2]}'"
    return f"{party} UID {uid.strip()} does not match the {clean[:2]} format"


def check_uid_syntax(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Issuer and recipient UIDs must match their country's pattern."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.UID_SYNTAX
    required = is_rule_required(rule_id, fields, ctx)

    present = [(party, uid) for party, uid in (("Issuer", fields.issuer_uid), ("Recipient", fields.recipient_uid)) if not _blank(uid)]
    if not present:
        return make_check(rule_id, TrafficLightStatus.VALID, "No UID to check", required)

    problems = []
    for party, uid in present:
        problem = _uid_syntax_problem(party, uid)
        if problem:
            problems.append(problem)
    if problems:
        return make_check(rule_id, TrafficLightStatus.INVALID, "; ".join(problems), required)

    checked = ", ".join(normalize_uid(uid) for _, uid in present)
    return make_check(rule_id, TrafficLightStatus.VALID, f"UID syntax correct: {checked}", required)


def check_iban_syntax(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    The issuer's IBAN must be well-formed and pass the mod-97 check.

    On incoming invoices an IBAN belonging to the tenant itself is flagged:
    the supplier's account is expected there.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.IBAN_SYNTAX
    required = is_rule_required(rule_id, fields, ctx)
    iban = fields.issuer_iban

    if _blank(iban):
        if ctx.direction == Direction.OUTGOING:
            return make_check(rule_id, TrafficLightStatus.VALID, "No IBAN on outgoing invoice (optional)", required)
        return make_check(rule_id, TrafficLightStatus.WARNING, "No IBAN present", required)

    format_error = iban_format_error(iban)
    if format_error:
        return make_check(rule_id, TrafficLightStatus.INVALID, format_error, required)

    if not validate_iban_check_digit(iban):
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            f"IBAN check digits do not match: {iban.strip()}",
            required,
        )

    clean = normalize_iban(iban)
    own_ibans = {normalize_iban(own) for own in ctx.tenant.ibans} if ctx.tenant else set()
    if clean in own_ibans:
        if ctx.direction == Direction.OUTGOING:
            return make_check(rule_id, TrafficLightStatus.VALID, f"Own company IBAN correct: {iban.strip()}", required)
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            f"IBAN {iban.strip()} is your own company account; an incoming invoice should carry the supplier's IBAN",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, f"IBAN syntax and check digits correct: {iban.strip()}", required)


def check_plz_uid_consistency(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    The country implied by the issuer address should match the UID prefix.

    This is a plausibility signal only: a mismatch may be a data-entry error
    or a branch abroad, so it never goes beyond WARNING.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.PLZ_UID_CHECK
    required = is_rule_required(rule_id, fields, ctx)

    uid_prefix = normalize_uid(fields.issuer_uid)[:2] if not _blank(fields.issuer_uid) else None
    addr_country = address_country(fields.issuer_address)

    if uid_prefix is None and addr_country is None:
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            "Neither address nor UID available: supplier origin cannot be determined",
            required,
        )
    if uid_prefix is None:
        return make_check(rule_id, TrafficLightStatus.VALID, f"Address points to {addr_country}, no UID to compare", required)
    if addr_country is None:
        return make_check(rule_id, TrafficLightStatus.VALID, f"No postal code or country to compare with UID ({uid_prefix})", required)
    if uid_prefix == UidCountry.EU.value:
        return make_check(rule_id, TrafficLightStatus.VALID, "EU one-stop-shop UID carries no home country", required)

    consistent = uid_prefix == addr_country or (uid_prefix == UidCountry.XI.value and addr_country == "GB")
    if not consistent:
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            f"Address points to {addr_country} but the UID is registered in {uid_prefix}: branch abroad or data-entry error?",
            required,
            details={"address_country": addr_country, "uid_country": uid_prefix},
        )
    return make_check(rule_id, TrafficLightStatus.VALID, f"Address and UID country agree ({uid_prefix})", required)


# ============================================================================
# Cross-border and Context Rules
# ============================================================================

def check_reverse_charge(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    A reverse-charge invoice carries no VAT, a notice and the recipient's UID.

    Inconsistencies are warnings: the flag itself may be an extraction error.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.REVERSE_CHARGE
    required = is_rule_required(rule_id, fields, ctx)

    if ctx.direction == Direction.OUTGOING:
        return make_check(rule_id, TrafficLightStatus.VALID, "Reverse charge check not applicable to outgoing invoices", required)
    if not fields.is_reverse_charge:
        return make_check(rule_id, TrafficLightStatus.VALID, "No reverse charge", required)

    issues = []
    breakdown_vat = sum(entry.vat_amount for entry in fields.vat_breakdown)
    if fields.vat_amount is not None and abs(fields.vat_amount) > AMOUNT_TOLERANCE:
        issues.append(f"VAT amount is {fields.vat_amount:.2f} (should be 0)")
    elif abs(breakdown_vat) > AMOUNT_TOLERANCE:
        issues.append(f"VAT breakdown charges {breakdown_vat:.2f} (should be 0)")

    description = (fields.description or "").lower()
    if not any(marker in description for marker in REVERSE_CHARGE_MARKERS):
        issues.append("no reverse-charge notice found in the description")

    if _blank(fields.recipient_uid):
        issues.append("recipient UID missing")

    if issues:
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            f"Reverse charge flagged, but {'; '.join(issues)}",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, "Reverse charge consistent (no VAT, notice present)", required)


def check_foreign_vat(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    Foreign suppliers must not charge Austrian VAT unless reverse charge applies.

    For outgoing invoices the recipient's UID decides instead: EU business
    customers are normally invoiced without VAT.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.FOREIGN_VAT_CHECK
    required = is_rule_required(rule_id, fields, ctx)
    vat_charged = vat_is_charged(fields)
    vat_desc = f"{fields.vat_rate:g}%" if fields.vat_rate is not None else "?%"
    amount_desc = f"{fields.vat_amount:.2f}" if fields.vat_amount is not None else "?"

    if ctx.direction == Direction.OUTGOING:
        customer = uid_country(fields.recipient_uid)
        if customer is None or customer == DOMESTIC_COUNTRY:
            return make_check(rule_id, TrafficLightStatus.VALID, "VAT treatment plausible for outgoing invoice", required)
        if vat_charged and not fields.is_reverse_charge:
            return make_check(
                rule_id, TrafficLightStatus.WARNING,
                f"EU customer ({customer.value}) charged VAT: reverse charge may apply for B2B",
                required,
            )
        return make_check(rule_id, TrafficLightStatus.VALID, "VAT treatment plausible for outgoing invoice", required)

    location = _location(fields, ctx)

    if location.region == Region.INLAND:
        message = "VAT shown correctly" if vat_charged else "no VAT (small business or exempt)"
        return make_check(rule_id, TrafficLightStatus.VALID, f"Domestic supplier ({location.label}): {message}", required)

    if location.region in (Region.EU, Region.THIRD_COUNTRY):
        kind = "EU supplier" if location.region == Region.EU else "Third-country supplier"
        if not vat_charged:
            return make_check(rule_id, TrafficLightStatus.VALID, f"{kind} ({location.label}) without VAT", required)
        if fields.is_reverse_charge:
            return make_check(
                rule_id, TrafficLightStatus.VALID,
                f"{kind} ({location.label}) with reverse charge asserted",
                required,
            )
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            f"{kind} ({location.label}) charges Austrian VAT ({vat_desc}, {amount_desc}) without reverse charge",
            required,
            details={"actions": [
                "Request a corrected invoice without VAT",
                "Input VAT from this invoice is not deductible",
            ]},
        )

    if vat_charged and _blank(fields.issuer_uid):
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            f"VAT charged ({vat_desc}, {amount_desc}) but the supplier's origin cannot be determined",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, "VAT treatment plausible", required)


def check_currency_info(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Foreign-currency invoices should come with a reference-currency estimate."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.CURRENCY_INFO
    required = is_rule_required(rule_id, fields, ctx)
    currency = fields.currency

    if currency == REFERENCE_CURRENCY:
        return make_check(rule_id, TrafficLightStatus.VALID, f"Invoice in {REFERENCE_CURRENCY}, no conversion needed", required)

    if ctx.estimated_reference_gross is not None and ctx.exchange_rate is not None and ctx.exchange_rate_date:
        gross = f"{fields.gross_amount:.2f} {currency}" if fields.gross_amount is not None else currency
        return make_check(
            rule_id, TrafficLightStatus.VALID,
            f"Foreign-currency invoice: {gross} ≈ {ctx.estimated_reference_gross:.2f} {REFERENCE_CURRENCY} "
            f"(rate of {ctx.exchange_rate_date.isoformat()}, 1 {REFERENCE_CURRENCY} = {ctx.exchange_rate} {currency})",
            required,
        )
    return make_check(
        rule_id, TrafficLightStatus.WARNING,
        f"Foreign-currency invoice in {currency}: no {REFERENCE_CURRENCY} estimate available",
        required,
    )


def check_hospitality(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Hospitality receipts must name the guests and the occasion (§20 Abs 1 Z 3 EStG)."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.HOSPITALITY_CHECK
    required = is_rule_required(rule_id, fields, ctx)

    issuer = (fields.issuer_name or "").lower()
    name_match = any(keyword in issuer for keyword in HOSPITALITY_KEYWORDS)
    rates = {_normalized_rate(entry.rate) for entry in fields.vat_breakdown}
    mixed_gastro_rates = len(fields.vat_breakdown) >= 2 and {10.0, 20.0} <= rates

    if not (ctx.is_hospitality or name_match or mixed_gastro_rates):
        return make_check(rule_id, TrafficLightStatus.VALID, "No hospitality receipt detected", required)

    missing = []
    if _blank(ctx.hospitality_guests):
        missing.append("guests")
    if _blank(ctx.hospitality_reason):
        missing.append("occasion")
    if missing:
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            f"Hospitality receipt detected, missing: {', '.join(missing)}",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, "Hospitality receipt complete", required)


def check_legal_form(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Corporations named on the invoice should also state their UID (§14 UGB)."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.LEGAL_FORM_CHECK
    required = is_rule_required(rule_id, fields, ctx)

    if _blank(fields.issuer_name):
        message = "Legal form not checkable: issuer name missing"
        return make_check(rule_id, TrafficLightStatus.WARNING if required else TrafficLightStatus.VALID, message, required)

    form = detect_legal_form(fields.issuer_name)
    if form is None:
        return make_check(
            rule_id, TrafficLightStatus.VALID,
            f"No legal form recognised in '{fields.issuer_name.strip()}' (possibly a sole trader)",
            required,
        )
    if form.uid_required and _blank(fields.issuer_uid):
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            f"Legal form {form.label} recognised but the UID is missing",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, f"Legal form {form.label} recognised", required)


def check_credit_note(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """Credit notes are expected to carry a negative gross amount."""
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.CREDIT_NOTE_CHECK
    required = is_rule_required(rule_id, fields, ctx)

    if ctx.document_type == DocumentType.CREDIT_NOTE:
        if fields.gross_amount is not None and fields.gross_amount > 0:
            return make_check(
                rule_id, TrafficLightStatus.WARNING,
                "Credit note with a positive gross amount, please check",
                required,
            )
        return make_check(rule_id, TrafficLightStatus.VALID, "Credit note amount consistent", required)
    if ctx.document_type == DocumentType.ADVANCE_PAYMENT:
        return make_check(rule_id, TrafficLightStatus.VALID, "Advance payment invoice", required)
    return make_check(rule_id, TrafficLightStatus.VALID, "Regular invoice, no credit note check needed", required)


def check_duplicate(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    The same invoice number from the same issuer must not be booked twice.

    Known invoices are supplied by the caller; without them the check is
    skipped.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.DUPLICATE_CHECK
    required = is_rule_required(rule_id, fields, ctx)

    if ctx.known_invoice_keys is None:
        return make_check(rule_id, TrafficLightStatus.VALID, "Duplicate check skipped: no reference invoices supplied", required)
    if _blank(fields.invoice_number) or _blank(fields.issuer_name):
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            "Duplicate check not possible: invoice number or issuer missing",
            required,
        )
    if _duplicate_key(fields.invoice_number, fields.issuer_name) in ctx.known_invoice_keys:
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            f"Possible duplicate: invoice {fields.invoice_number.strip()} from {fields.issuer_name.strip()} already exists",
            required,
        )
    return make_check(rule_id, TrafficLightStatus.VALID, "No duplicate found", required)


def _is_tenant(fields: ExtractedFields, tenant: TenantProfile) -> Optional[str]:
    """Return which identifier ties the issuer to the tenant, if any."""
    if tenant.uid and not _blank(fields.issuer_uid):
        if normalize_uid(tenant.uid) == normalize_uid(fields.issuer_uid):
            return "uid"
    if tenant.ibans and not _blank(fields.issuer_iban):
        issuer_iban = normalize_iban(fields.issuer_iban)
        if any(normalize_iban(own) == issuer_iban for own in tenant.ibans):
            return "iban"
    if tenant.name and not _blank(fields.issuer_name):
        own = tenant.name.strip().lower()
        issuer = fields.issuer_name.strip().lower()
        if own in issuer or issuer in own:
            return "name"
    return None


def check_issuer_is_not_self(fields: ExtractedFields, ctx: Optional[RuleContext] = None) -> ValidationCheck:
    """
    Detect swapped issuer and recipient.

    On incoming invoices the tenant must not appear as issuer; on outgoing
    invoices it should. Skipped when no tenant profile is supplied.
    """
    ctx = _ctx(fields, ctx)
    rule_id = RuleId.ISSUER_SELF_CHECK
    required = is_rule_required(rule_id, fields, ctx)

    if ctx.tenant is None:
        return make_check(rule_id, TrafficLightStatus.VALID, "Issuer self check skipped: no tenant profile supplied", required)

    matched_by = _is_tenant(fields, ctx.tenant)

    if ctx.direction == Direction.OUTGOING:
        if matched_by:
            return make_check(rule_id, TrafficLightStatus.VALID, "Issuer is your own company (expected for outgoing invoices)", required)
        return make_check(
            rule_id, TrafficLightStatus.WARNING,
            "Issuer could not be confirmed as your own company on an outgoing invoice",
            required,
        )

    if matched_by:
        return make_check(
            rule_id, TrafficLightStatus.INVALID,
            f"Your own company was recognised as issuer (matched by {matched_by}); issuer and recipient are probably swapped",
            required,
            details={"matched_by": matched_by, "actions": ["Swap issuer and recipient", "Check the letterhead and footer of the invoice"]},
        )
    return make_check(rule_id, TrafficLightStatus.VALID, "Issuer is not your own company", required)


# ============================================================================
# Rule Registry
# ============================================================================

# All rules in reporting order. UID_VIES_CHECK has no synchronous check: it
# is evaluated by vies.check_uid_vies.
VALIDATION_RULES: list[ValidationRule] = [
    # Mandatory invoice fields
    ValidationRule(RuleId.ISSUER_NAME, "Issuer name", "§11 Abs 1 Z 1 UStG", ALL_CLASSES, check_issuer_name),
    ValidationRule(RuleId.ISSUER_ADDRESS, "Issuer address", "§11 Abs 1 Z 1 UStG", STANDARD_AND_LARGE, check_issuer_address),
    ValidationRule(RuleId.ISSUER_UID, "Issuer UID", "§11 Abs 1 Z 2 UStG", STANDARD_AND_LARGE, check_issuer_uid),
    ValidationRule(RuleId.RECIPIENT_NAME, "Recipient name", "§11 Abs 1 Z 3 UStG", LARGE_ONLY, check_recipient_name),
    ValidationRule(RuleId.RECIPIENT_UID, "Recipient UID", "§11 Abs 1 Z 2a UStG", LARGE_ONLY, check_recipient_uid),
    ValidationRule(RuleId.INVOICE_NUMBER, "Invoice number", "§11 Abs 1 Z 5 UStG", STANDARD_AND_LARGE, check_invoice_number),
    ValidationRule(RuleId.INVOICE_DATE, "Invoice date", "§11 Abs 1 Z 4 UStG", ALL_CLASSES, check_invoice_date),
    ValidationRule(RuleId.DELIVERY_DATE, "Delivery date", "§11 Abs 1 Z 4 UStG", STANDARD_AND_LARGE, check_delivery_date),
    ValidationRule(RuleId.DESCRIPTION, "Description", "§11 Abs 1 Z 3 UStG", ALL_CLASSES, check_description),
    ValidationRule(RuleId.NET_AMOUNT, "Net amount", "§11 Abs 1 Z 5 UStG", STANDARD_AND_LARGE, check_net_amount),
    ValidationRule(RuleId.VAT_RATE, "VAT rate", "§11 Abs 1 Z 5 UStG", ALL_CLASSES, check_vat_rate),
    ValidationRule(RuleId.VAT_AMOUNT, "VAT amount", "§11 Abs 1 Z 5 UStG", STANDARD_AND_LARGE, check_vat_amount),
    ValidationRule(RuleId.GROSS_AMOUNT, "Gross amount", "§11 Abs 1 Z 5 UStG", ALL_CLASSES, check_gross_amount),
    # Arithmetic and logic
    ValidationRule(RuleId.MATH_CHECK, "Arithmetic", "§11 UStG", ALL_CLASSES, check_math),
    ValidationRule(RuleId.VAT_RATE_VALID, "Valid VAT rate", "§10 UStG", ALL_CLASSES, check_vat_rate_valid),
    ValidationRule(RuleId.UID_SYNTAX, "UID syntax", "Art 28 MwStSystRL", STANDARD_AND_LARGE, check_uid_syntax),
    ValidationRule(RuleId.IBAN_SYNTAX, "IBAN syntax", "SEPA Regulation", NEVER, check_iban_syntax),
    ValidationRule(RuleId.REVERSE_CHARGE, "Reverse charge", "§19 Abs 1 UStG", STANDARD_AND_LARGE, check_reverse_charge),
    ValidationRule(RuleId.FOREIGN_VAT_CHECK, "Foreign VAT", "§19 Abs 1 UStG / Art 196 MwStSystRL", ALL_CLASSES, check_foreign_vat),
    ValidationRule(RuleId.PLZ_UID_CHECK, "Postal code / UID plausibility", "§11 Abs 1 Z 1-2 UStG", STANDARD_AND_LARGE, check_plz_uid_consistency),
    ValidationRule(RuleId.CURRENCY_INFO, "Foreign currency", "§20 Abs 2 UStG", NEVER, check_currency_info),
    ValidationRule(RuleId.HOSPITALITY_CHECK, "Hospitality receipt", "§20 Abs 1 Z 3 EStG", ALL_CLASSES, check_hospitality),
    ValidationRule(RuleId.LEGAL_FORM_CHECK, "Legal form", "§14 UGB", STANDARD_AND_LARGE, check_legal_form),
    ValidationRule(RuleId.CREDIT_NOTE_CHECK, "Credit note", "§11 Abs 1 UStG", ALL_CLASSES, check_credit_note),
    ValidationRule(RuleId.DUPLICATE_CHECK, "Duplicate", "§132 BAO", ALL_CLASSES, check_duplicate),
    ValidationRule(RuleId.ISSUER_SELF_CHECK, "Issuer/recipient swap", "§11 UStG", ALL_CLASSES, check_issuer_is_not_self),
    # Registry lookup
    ValidationRule(RuleId.UID_VIES_CHECK, "UID registry check (VIES)", "Art 28 MwStSystRL / VO (EU) 904/2010", STANDARD_AND_LARGE),
]

RULES_BY_ID: Final[dict[RuleId, ValidationRule]] = {rule.rule_id: rule for rule in VALIDATION_RULES}

RULE_APPLICABILITY: Final[dict[RuleId, frozenset[AmountClass]]] = {
    rule.rule_id: rule.required_for for rule in VALIDATION_RULES
}

if set(RULES_BY_ID) != set(RuleId) or len(RULES_BY_ID) != len(VALIDATION_RULES):
    raise RuntimeError("Rule registry must hold exactly one rule per RuleId")


def synchronous_rules() -> list[ValidationRule]:
    """Rules evaluated without I/O."""
    return [rule for rule in VALIDATION_RULES if rule.check is not None]


def get_rule_descriptions() -> dict[str, str]:
    """Get a mapping of rule ids to their labels."""
    return {rule.rule_id.value: rule.label for rule in VALIDATION_RULES}
