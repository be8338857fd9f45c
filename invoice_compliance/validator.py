"""
Validation engine for invoice compliance.

This module orchestrates the validation of one invoice against every rule,
folds the check list into a traffic-light verdict and produces batch
summaries for the CLI and API.
"""

import asyncio
from collections import Counter
from typing import Iterable, Optional

from .config import RuleId, TrafficLightStatus, logger
from .rules import RuleContext, ValidationRule, is_rule_required, make_check, synchronous_rules
from .schemas import (
    ExtractedFields,
    InvoiceVerdict,
    ValidationCheck,
    ValidationContext,
    ValidationOutput,
    ValidationReport,
    ValidationRequest,
    ValidationSummary,
)
from .vies import IdentityVerifier, check_uid_vies


class InvoiceContractError(ValueError):
    """Raised when a validation call is structurally unusable (no tenant or invoice id)."""


# ============================================================================
# Verdict Aggregation
# ============================================================================

def capped_contribution(check: ValidationCheck) -> TrafficLightStatus:
    """
    A check's contribution to the overall verdict.

    Rules that are not mandatory for the invoice can flag at most a WARNING.
    """
    if not check.required and check.status == TrafficLightStatus.INVALID:
        return TrafficLightStatus.WARNING
    return check.status


def aggregate_status(checks: Iterable[ValidationCheck]) -> TrafficLightStatus:
    """Most severe contribution of all checks; VALID when there is nothing to report."""
    overall = TrafficLightStatus.VALID
    for check in checks:
        contribution = capped_contribution(check)
        if contribution.severity > overall.severity:
            overall = contribution
    return overall


# ============================================================================
# Single Invoice
# ============================================================================

def _require_contract(fields: ExtractedFields, context: ValidationContext) -> None:
    if fields is None:
        raise InvoiceContractError("fields are required")
    if context is None:
        raise InvoiceContractError("context is required")
    if not context.tenant_id or not context.tenant_id.strip():
        raise InvoiceContractError("tenant_id must not be empty")
    if not context.invoice_id or not context.invoice_id.strip():
        raise InvoiceContractError("invoice_id must not be empty")


def _run_rule(rule: ValidationRule, fields: ExtractedFields, ctx: RuleContext, invoice_id: str) -> ValidationCheck:
    try:
        return rule.check(fields, ctx)
    except Exception as e:
        logger.error(f"Error running rule {rule.rule_id.value} on invoice {invoice_id}: {e}")
        return make_check(
            rule.rule_id,
            TrafficLightStatus.INVALID,
            f"Rule could not be evaluated: {e}",
            is_rule_required(rule.rule_id, fields, ctx),
        )


async def validate_invoice(
    fields: ExtractedFields,
    context: ValidationContext,
    verifier: Optional[IdentityVerifier] = None,
) -> ValidationOutput:
    """
    Validate a single invoice against all rules.

    Args:
        fields: Extracted invoice fields; never modified
        context: Tenant, invoice id, direction and other call metadata
        verifier: Registry client for the UID lookup; without one the lookup
            is reported PENDING

    Returns:
        ValidationOutput with one check per rule and the aggregated status

    Raises:
        InvoiceContractError: if fields or context is missing, or tenant_id or
            invoice_id is empty
    """
    _require_contract(fields, context)

    ctx = RuleContext.build(fields, context)
    logger.debug(f"Validating invoice {context.invoice_id} as {ctx.amount_class.value}")

    checks = [_run_rule(rule, fields, ctx, context.invoice_id) for rule in synchronous_rules()]

    vies_check, vies_info = await check_uid_vies(fields, ctx, verifier)
    checks.append(vies_check)

    emitted = Counter(check.rule for check in checks)
    if set(emitted) != set(RuleId) or any(count != 1 for count in emitted.values()):
        raise RuntimeError(f"Check list for invoice {context.invoice_id} is incomplete")

    overall = aggregate_status(checks)
    logger.info(f"Invoice {context.invoice_id}: {overall.value} ({ctx.amount_class.value})")

    return ValidationOutput(
        overall_status=overall,
        amount_class=ctx.amount_class,
        checks=checks,
        vies_info=vies_info,
    )


# ============================================================================
# Batch Validation
# ============================================================================

def _invoice_key(fields: ExtractedFields) -> Optional[tuple[str, str]]:
    if not fields.invoice_number or not fields.issuer_name:
        return None
    if not fields.invoice_number.strip() or not fields.issuer_name.strip():
        return None
    return fields.invoice_number.strip(), fields.issuer_name.strip()


async def validate_batch(
    requests: list[ValidationRequest],
    verifier: Optional[IdentityVerifier] = None,
) -> tuple[list[InvoiceVerdict], ValidationSummary]:
    """
    Validate a batch of invoices and produce an aggregated summary.

    Invoices are validated concurrently. Each invoice sees the keys of the
    invoices before it in the batch as known, so repeats within a batch are
    reported as duplicates.

    Args:
        requests: Fields plus context per invoice
        verifier: Registry client shared by all invoices

    Returns:
        Tuple of (list of per-invoice verdicts, batch summary)
    """
    logger.info(f"Validating batch of {len(requests)} invoices")

    seen_invoices: set[tuple[str, str]] = set()
    contexts: list[ValidationContext] = []
    for request in requests:
        known = set(request.context.known_invoice_keys or set()) | seen_invoices
        contexts.append(request.context.model_copy(update={"known_invoice_keys": known}))
        key = _invoice_key(request.fields)
        if key is not None:
            seen_invoices.add(key)

    outputs = await asyncio.gather(*(
        validate_invoice(request.fields, context, verifier)
        for request, context in zip(requests, contexts)
    ))

    results = [
        InvoiceVerdict(invoice_id=context.invoice_id, output=output)
        for context, output in zip(contexts, outputs)
    ]
    summary = summarize(results)

    logger.info(
        f"Validation complete: {summary.valid_invoices} valid, {summary.pending_invoices} pending, "
        f"{summary.warning_invoices} warning, {summary.invalid_invoices} invalid"
    )
    return results, summary


def summarize(results: list[InvoiceVerdict]) -> ValidationSummary:
    """Count invoices per overall status and non-valid checks per rule."""
    status_counts = Counter(result.output.overall_status for result in results)
    rule_issue_counts = Counter(
        check.rule.value
        for result in results
        for check in result.output.checks
        if check.status != TrafficLightStatus.VALID
    )
    return ValidationSummary(
        total_invoices=len(results),
        valid_invoices=status_counts[TrafficLightStatus.VALID],
        pending_invoices=status_counts[TrafficLightStatus.PENDING],
        warning_invoices=status_counts[TrafficLightStatus.WARNING],
        invalid_invoices=status_counts[TrafficLightStatus.INVALID],
        rule_issue_counts=dict(rule_issue_counts),
    )


async def create_validation_report(
    requests: list[ValidationRequest],
    verifier: Optional[IdentityVerifier] = None,
) -> ValidationReport:
    """
    Create a complete validation report for a batch of invoices.

    Args:
        requests: Fields plus context per invoice
        verifier: Registry client shared by all invoices

    Returns:
        ValidationReport containing summary and per-invoice verdicts
    """
    results, summary = await validate_batch(requests, verifier)
    return ValidationReport(summary=summary, per_invoice_results=results)


def get_top_issues(summary: ValidationSummary, n: int = 5) -> list[tuple[str, int]]:
    """
    Get the N rules that most often produced a non-valid check.

    Returns:
        List of (rule_id, count) tuples, sorted by count descending
    """
    sorted_issues = sorted(
        summary.rule_issue_counts.items(),
        key=lambda x: x[1],
        reverse=True
    )
    return sorted_issues[:n]


def format_summary_text(summary: ValidationSummary) -> str:
    """
    Format a ValidationSummary as human-readable text for CLI output.

    Args:
        summary: ValidationSummary to format

    Returns:
        Formatted string for display
    """
    lines = [
        "=" * 50,
        "VALIDATION SUMMARY",
        "=" * 50,
        f"Total invoices processed: {summary.total_invoices}",
        f"Valid invoices:           {summary.valid_invoices}",
        f"Pending invoices:         {summary.pending_invoices}",
        f"Warning invoices:         {summary.warning_invoices}",
        f"Invalid invoices:         {summary.invalid_invoices}",
        "",
    ]

    if summary.rule_issue_counts:
        lines.append("Top Issues:")
        lines.append("-" * 40)
        for rule_id, count in get_top_issues(summary):
            lines.append(f"  {rule_id}: {count}")
        lines.append("")

    lines.append("=" * 50)

    return "\n".join(lines)
