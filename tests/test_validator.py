"""
Tests for the validation engine.

These tests verify verdict aggregation, the completeness of the check list
and the overall validation flow for single invoices and batches.
"""

import itertools

import pytest

from invoice_compliance.config import AmountClass, Direction, RuleId, TrafficLightStatus
from invoice_compliance.schemas import (
    ExtractedFields,
    TenantProfile,
    ValidationCheck,
    ValidationContext,
    ValidationRequest,
    ValidationSummary,
)
from invoice_compliance.validator import (
    InvoiceContractError,
    aggregate_status,
    capped_contribution,
    create_validation_report,
    format_summary_text,
    get_top_issues,
    validate_batch,
    validate_invoice,
)
from invoice_compliance.vies import ViesLookupResult


def make_check(status: TrafficLightStatus, required: bool = True, rule: RuleId = RuleId.ISSUER_NAME) -> ValidationCheck:
    return ValidationCheck(rule=rule, status=status, message="test", required=required)


# ============================================================================
# Verdict Aggregation
# ============================================================================

class TestAggregation:
    """Tests for capped contributions and the overall status."""

    @pytest.mark.parametrize("status,required,expected", [
        (TrafficLightStatus.VALID, True, TrafficLightStatus.VALID),
        (TrafficLightStatus.VALID, False, TrafficLightStatus.VALID),
        (TrafficLightStatus.PENDING, True, TrafficLightStatus.PENDING),
        (TrafficLightStatus.PENDING, False, TrafficLightStatus.PENDING),
        (TrafficLightStatus.WARNING, True, TrafficLightStatus.WARNING),
        (TrafficLightStatus.WARNING, False, TrafficLightStatus.WARNING),
        (TrafficLightStatus.INVALID, True, TrafficLightStatus.INVALID),
        (TrafficLightStatus.INVALID, False, TrafficLightStatus.WARNING),
    ])
    def test_capped_contribution(self, status, required, expected):
        assert capped_contribution(make_check(status, required)) == expected

    def test_empty_list_is_valid(self):
        assert aggregate_status([]) == TrafficLightStatus.VALID

    def test_all_valid(self):
        checks = [make_check(TrafficLightStatus.VALID) for _ in range(5)]
        assert aggregate_status(checks) == TrafficLightStatus.VALID

    def test_pending_outranks_valid(self):
        checks = [make_check(TrafficLightStatus.VALID), make_check(TrafficLightStatus.PENDING)]
        assert aggregate_status(checks) == TrafficLightStatus.PENDING

    def test_warning_outranks_pending(self):
        checks = [make_check(TrafficLightStatus.PENDING), make_check(TrafficLightStatus.WARNING)]
        assert aggregate_status(checks) == TrafficLightStatus.WARNING

    def test_required_invalid_wins(self):
        checks = [
            make_check(TrafficLightStatus.WARNING),
            make_check(TrafficLightStatus.INVALID, required=True),
            make_check(TrafficLightStatus.PENDING),
        ]
        assert aggregate_status(checks) == TrafficLightStatus.INVALID

    def test_optional_invalid_only_warns(self):
        checks = [make_check(TrafficLightStatus.VALID), make_check(TrafficLightStatus.INVALID, required=False)]
        assert aggregate_status(checks) == TrafficLightStatus.WARNING

    def test_order_independent(self):
        checks = [
            make_check(TrafficLightStatus.VALID),
            make_check(TrafficLightStatus.PENDING),
            make_check(TrafficLightStatus.INVALID, required=False),
            make_check(TrafficLightStatus.WARNING),
        ]
        results = {aggregate_status(list(order)) for order in itertools.permutations(checks)}
        assert results == {TrafficLightStatus.WARNING}


# ============================================================================
# Single Invoice
# ============================================================================

class TestValidateInvoice:
    """Tests for the validate_invoice entry point."""

    @pytest.mark.asyncio
    async def test_valid_invoice_passes(self, valid_fields, context, verifier):
        output = await validate_invoice(valid_fields, context, verifier)
        non_valid = [c for c in output.checks if c.status != TrafficLightStatus.VALID]
        assert non_valid == []
        assert output.overall_status == TrafficLightStatus.VALID
        assert output.amount_class == AmountClass.STANDARD
        assert output.vies_info.checked is True
        assert output.vies_info.name_match is True

    @pytest.mark.asyncio
    async def test_one_check_per_rule(self, valid_fields, context, verifier):
        output = await validate_invoice(valid_fields, context, verifier)
        rules = [check.rule for check in output.checks]
        assert sorted(rules) == sorted(RuleId)

    @pytest.mark.asyncio
    async def test_empty_fields_do_not_raise(self, context, verifier):
        output = await validate_invoice(ExtractedFields(), context, verifier)
        assert len(output.checks) == len(RuleId)
        assert output.overall_status == TrafficLightStatus.INVALID

    @pytest.mark.asyncio
    async def test_registry_outage_is_pending(self, valid_fields, context, make_verifier):
        verifier = make_verifier(ViesLookupResult(valid=False, error="VIES request timed out"))
        output = await validate_invoice(valid_fields, context, verifier)
        assert output.overall_status == TrafficLightStatus.PENDING
        assert output.check_for(RuleId.UID_VIES_CHECK).status == TrafficLightStatus.PENDING

    @pytest.mark.asyncio
    async def test_pending_never_valid_on_small_invoice(self, valid_fields, context):
        fields = valid_fields.model_copy(update={"net_amount": 100.0, "vat_amount": 20.0, "gross_amount": 120.0})
        output = await validate_invoice(fields, context, verifier=None)
        assert output.amount_class == AmountClass.SMALL
        assert output.overall_status != TrafficLightStatus.VALID

    @pytest.mark.asyncio
    async def test_arithmetic_error_invalidates(self, valid_fields, context, verifier):
        output = await validate_invoice(valid_fields.model_copy(update={"gross_amount": 1201.0}), context, verifier)
        assert output.overall_status == TrafficLightStatus.INVALID
        assert output.check_for(RuleId.MATH_CHECK).status == TrafficLightStatus.INVALID

    @pytest.mark.asyncio
    async def test_large_invoice_requires_recipient_uid(self, valid_fields, context, verifier):
        fields = valid_fields.model_copy(update={
            "recipient_uid": None, "net_amount": 10000.0, "vat_amount": 2000.0, "gross_amount": 12000.0,
        })
        output = await validate_invoice(fields, context, verifier)
        assert output.amount_class == AmountClass.LARGE
        assert output.overall_status == TrafficLightStatus.INVALID

    @pytest.mark.asyncio
    async def test_missing_optional_field_only_warns(self, valid_fields, context, verifier):
        output = await validate_invoice(valid_fields.model_copy(update={"recipient_uid": None}), context, verifier)
        assert output.check_for(RuleId.RECIPIENT_UID).required is False
        assert output.overall_status == TrafficLightStatus.WARNING

    @pytest.mark.asyncio
    async def test_swapped_parties_detected(self, valid_fields, verifier):
        context = ValidationContext(
            tenant_id="tenant-1",
            invoice_id="inv-1",
            tenant=TenantProfile(name="Test GmbH", uid="ATU12345678"),
        )
        output = await validate_invoice(valid_fields, context, verifier)
        assert output.check_for(RuleId.ISSUER_SELF_CHECK).status == TrafficLightStatus.INVALID

    @pytest.mark.asyncio
    async def test_outgoing_invoice_from_tenant(self, valid_fields, verifier):
        context = ValidationContext(
            tenant_id="tenant-1",
            invoice_id="inv-1",
            direction=Direction.OUTGOING,
            tenant=TenantProfile(name="Test GmbH", uid="ATU12345678"),
        )
        output = await validate_invoice(valid_fields, context, verifier)
        assert output.overall_status == TrafficLightStatus.VALID

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tenant_id,invoice_id", [("", "inv-1"), ("   ", "inv-1"), ("tenant-1", "")])
    async def test_contract_error_before_checks(self, valid_fields, verifier, tenant_id, invoice_id):
        context = ValidationContext(tenant_id=tenant_id, invoice_id=invoice_id)
        with pytest.raises(InvoiceContractError):
            await validate_invoice(valid_fields, context, verifier)
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_missing_fields_or_context_rejected(self, valid_fields, context, verifier):
        with pytest.raises(InvoiceContractError, match="fields"):
            await validate_invoice(None, context, verifier)
        with pytest.raises(InvoiceContractError, match="context"):
            await validate_invoice(valid_fields, None, verifier)
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_fields_not_mutated(self, valid_fields, context, verifier):
        before = valid_fields.model_dump()
        await validate_invoice(valid_fields, context, verifier)
        assert valid_fields.model_dump() == before


# ============================================================================
# Batch Validation
# ============================================================================

class TestValidateBatch:
    """Tests for batch validation."""

    @pytest.mark.asyncio
    async def test_batch_with_valid_invoices(self, valid_fields, verifier):
        requests = [
            ValidationRequest(
                fields=valid_fields.model_copy(update={"invoice_number": f"RE-{i}"}),
                context=ValidationContext(tenant_id="tenant-1", invoice_id=f"inv-{i}"),
            )
            for i in range(3)
        ]
        results, summary = await validate_batch(requests, verifier)
        assert summary.total_invoices == 3
        assert summary.valid_invoices == 3
        assert [r.invoice_id for r in results] == ["inv-0", "inv-1", "inv-2"]

    @pytest.mark.asyncio
    async def test_duplicate_detection_in_batch(self, valid_fields, verifier):
        requests = [
            ValidationRequest(fields=valid_fields, context=ValidationContext(tenant_id="t", invoice_id="a")),
            ValidationRequest(fields=valid_fields, context=ValidationContext(tenant_id="t", invoice_id="b")),
        ]
        results, summary = await validate_batch(requests, verifier)

        assert results[0].output.check_for(RuleId.DUPLICATE_CHECK).status == TrafficLightStatus.VALID
        assert results[1].output.check_for(RuleId.DUPLICATE_CHECK).status == TrafficLightStatus.INVALID
        assert summary.valid_invoices == 1
        assert summary.invalid_invoices == 1
        assert summary.rule_issue_counts == {"DUPLICATE_CHECK": 1}

    @pytest.mark.asyncio
    async def test_known_keys_from_caller_kept(self, valid_fields, verifier):
        context = ValidationContext(
            tenant_id="t", invoice_id="a",
            known_invoice_keys={("RE-2024-0815", "Test GmbH")},
        )
        results, _ = await validate_batch([ValidationRequest(fields=valid_fields, context=context)], verifier)
        assert results[0].output.check_for(RuleId.DUPLICATE_CHECK).status == TrafficLightStatus.INVALID

    @pytest.mark.asyncio
    async def test_empty_batch(self, verifier):
        results, summary = await validate_batch([], verifier)
        assert results == []
        assert summary.total_invoices == 0

    @pytest.mark.asyncio
    async def test_report(self, valid_fields, verifier):
        request = ValidationRequest(fields=valid_fields, context=ValidationContext(tenant_id="t", invoice_id="a"))
        report = await create_validation_report([request], verifier)
        assert report.summary.valid_invoices == 1
        assert report.per_invoice_results[0].output.overall_status == TrafficLightStatus.VALID


# ============================================================================
# Summary Formatting
# ============================================================================

class TestFormatSummaryText:
    """Tests for summary text formatting."""

    def test_format_with_issues(self):
        summary = ValidationSummary(
            total_invoices=10,
            valid_invoices=6,
            pending_invoices=1,
            warning_invoices=2,
            invalid_invoices=1,
            rule_issue_counts={"MATH_CHECK": 1, "DELIVERY_DATE": 3},
        )
        text = format_summary_text(summary)
        assert "Total invoices processed: 10" in text
        assert "Pending invoices:         1" in text
        assert "Top Issues:" in text
        assert text.index("DELIVERY_DATE") < text.index("MATH_CHECK")

    def test_format_no_issues(self):
        summary = ValidationSummary(total_invoices=2, valid_invoices=2)
        text = format_summary_text(summary)
        assert "VALIDATION SUMMARY" in text
        assert "Top Issues" not in text

    def test_top_issues(self):
        summary = ValidationSummary(
            total_invoices=1,
            rule_issue_counts={"A": 1, "B": 5, "C": 3},
        )
        assert get_top_issues(summary, n=2) == [("B", 5), ("C", 3)]
