"""
Tests for the VIES registry client, its cache and the UID_VIES_CHECK rule.
"""

import asyncio
import json

import httpx
import pytest

from invoice_compliance.config import AmountClass, RuleId, TrafficLightStatus
from invoice_compliance.rules import RuleContext
from invoice_compliance.schemas import ValidationContext, ValidationRequest
from invoice_compliance.validator import validate_batch
from invoice_compliance.vies import (
    ViesCache,
    ViesClient,
    ViesLookupResult,
    check_uid_vies,
    compare_company_names,
)


def make_client(handler, cache=None) -> ViesClient:
    return ViesClient(
        api_url="https://vies.test/check-vat-number",
        cache=cache,
        transport=httpx.MockTransport(handler),
    )


def registry_answer(valid=True, name="Test GmbH", address="Ringstraße 1, 1010 Wien", **extra):
    payload = {
        "countryCode": "AT",
        "vatNumber": "U12345678",
        "requestDate": "2024-03-15T10:00:00.000Z",
        "valid": valid,
        "name": name,
        "address": address,
    }
    payload.update(extra)
    return payload


# ============================================================================
# Registry Client
# ============================================================================

class TestViesClient:
    """Tests for ViesClient.lookup against a mocked transport."""

    @pytest.mark.asyncio
    async def test_valid_answer(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=registry_answer())

        async with make_client(handler) as client:
            result = await client.lookup("ATU 1234 5678")

        assert result.answered
        assert result.valid is True
        assert result.name == "Test GmbH"
        assert result.request_date == "2024-03-15T10:00:00.000Z"
        assert requests == [{"countryCode": "AT", "vatNumber": "U12345678"}]

    @pytest.mark.asyncio
    async def test_withheld_data_is_none(self):
        def handler(request):
            return httpx.Response(200, json=registry_answer(name="---", address="---"))

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.valid is True
        assert result.name is None
        assert result.address is None

    @pytest.mark.asyncio
    async def test_invalid_answer(self):
        def handler(request):
            return httpx.Response(200, json=registry_answer(valid=False, name="---", userError="INVALID"))

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.answered
        assert result.valid is False

    @pytest.mark.asyncio
    async def test_non_2xx_is_error(self):
        def handler(request):
            return httpx.Response(503, text="Service Unavailable")

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.valid is False
        assert "HTTP 503" in result.error

    @pytest.mark.asyncio
    async def test_malformed_body_is_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.valid is False
        assert "malformed" in result.error

    @pytest.mark.asyncio
    async def test_payload_without_valid_flag_is_error(self):
        def handler(request):
            return httpx.Response(200, json={"name": "Test GmbH"})

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.error is not None

    @pytest.mark.asyncio
    async def test_member_state_unavailable_is_error(self):
        def handler(request):
            return httpx.Response(200, json=registry_answer(valid=False, userError="MS_UNAVAILABLE"))

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.answered is False
        assert "MS_UNAVAILABLE" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert result.valid is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_connection_error_is_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            result = await client.lookup("ATU12345678")

        assert "not reachable" in result.error

    @pytest.mark.asyncio
    async def test_answers_are_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=registry_answer())

        async with make_client(handler) as client:
            await client.lookup("ATU12345678")
            await client.lookup("atu12345678")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_errors_are_not_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        async with make_client(handler) as client:
            await client.lookup("ATU12345678")
            await client.lookup("ATU12345678")

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_request(self):
        calls = []

        async def handler(request):
            calls.append(json.loads(request.content))
            await asyncio.sleep(0.05)
            return httpx.Response(200, json=registry_answer())

        async with make_client(handler) as client:
            results = await asyncio.gather(*(client.lookup("ATU12345678") for _ in range(20)))
            assert client._in_flight == {}

        assert len(calls) == 1
        assert all(result.valid for result in results)

    @pytest.mark.asyncio
    async def test_distinct_uids_queried_separately(self):
        calls = []

        async def handler(request):
            calls.append(json.loads(request.content)["vatNumber"])
            await asyncio.sleep(0.01)
            return httpx.Response(200, json=registry_answer())

        async with make_client(handler) as client:
            await asyncio.gather(client.lookup("ATU12345678"), client.lookup("ATU87654321"))

        assert sorted(calls) == ["U12345678", "U87654321"]

    @pytest.mark.asyncio
    async def test_caller_timeout_does_not_cancel_shared_lookup(self):
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(0.05)
            return httpx.Response(200, json=registry_answer())

        async with make_client(handler) as client:
            impatient = asyncio.wait_for(client.lookup("ATU12345678"), timeout=0.01)
            patient = client.lookup("ATU12345678")
            outcomes = await asyncio.gather(impatient, patient, return_exceptions=True)

        assert isinstance(outcomes[0], asyncio.TimeoutError)
        assert outcomes[1].valid is True
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_batch_with_shared_issuer_queries_once(self, valid_fields):
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(0.05)
            return httpx.Response(200, json=registry_answer())

        requests = [
            ValidationRequest(
                fields=valid_fields.model_copy(update={"invoice_number": f"RE-{i}"}),
                context=ValidationContext(tenant_id="tenant-1", invoice_id=f"inv-{i}"),
            )
            for i in range(20)
        ]
        async with make_client(handler) as client:
            results, summary = await validate_batch(requests, client)

        assert len(calls) == 1
        assert summary.valid_invoices == 20


# ============================================================================
# Cache
# ============================================================================

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestViesCache:
    """Tests for TTL and size bounds of the cache."""

    def test_entry_expires(self):
        clock = FakeClock()
        cache = ViesCache(ttl_seconds=60, max_size=10, clock=clock)
        cache.set("ATU12345678", ViesLookupResult(valid=True))

        clock.now = 59
        assert cache.get("ATU12345678") is not None
        clock.now = 121
        assert cache.get("ATU12345678") is None
        assert len(cache) == 0

    def test_least_recently_used_evicted(self):
        cache = ViesCache(ttl_seconds=60, max_size=2, clock=FakeClock())
        cache.set("A", ViesLookupResult(valid=True))
        cache.set("B", ViesLookupResult(valid=True))
        cache.get("A")
        cache.set("C", ViesLookupResult(valid=True))

        assert cache.get("A") is not None
        assert cache.get("B") is None
        assert cache.get("C") is not None

    def test_failed_lookup_not_stored(self):
        cache = ViesCache(clock=FakeClock())
        cache.set("ATU12345678", ViesLookupResult(valid=False, error="timeout"))
        assert cache.get("ATU12345678") is None


# ============================================================================
# Name Comparison
# ============================================================================

class TestCompareCompanyNames:
    """Tests for the registry name comparison."""

    def test_legal_form_stripped_and_contained(self):
        comparison = compare_company_names("Test GmbH", "Test")
        assert comparison.match is True

    def test_exact_after_normalization(self):
        assert compare_company_names("Muster Bau GmbH", "MUSTER-BAU Ges.m.b.H.") == (True, 1.0)

    def test_containment_score(self):
        assert compare_company_names("Muster", "Muster Bau GmbH") == (True, 0.85)

    def test_different_names(self):
        comparison = compare_company_names("Test GmbH", "Völlig Anders AG")
        assert comparison.match is False
        assert comparison.similarity < 0.6

    def test_empty_names(self):
        assert compare_company_names("", "Test GmbH") == (False, 0.0)
        assert compare_company_names("Test", None) == (False, 0.0)


# ============================================================================
# UID_VIES_CHECK
# ============================================================================

class TestCheckUidVies:
    """Tests for mapping registry outcomes to check statuses."""

    @pytest.mark.asyncio
    async def test_confirmed_and_name_matches(self, valid_fields, verifier):
        check, info = await check_uid_vies(valid_fields, None, verifier)
        assert check.rule == RuleId.UID_VIES_CHECK
        assert check.status == TrafficLightStatus.VALID
        assert info.checked and info.valid and info.name_match
        assert verifier.calls == ["ATU12345678"]

    @pytest.mark.asyncio
    async def test_registry_says_invalid(self, valid_fields, make_verifier):
        check, info = await check_uid_vies(valid_fields, None, make_verifier(ViesLookupResult(valid=False)))
        assert check.status == TrafficLightStatus.INVALID
        assert info.checked is True
        assert info.valid is False

    @pytest.mark.asyncio
    async def test_name_mismatch_is_warning(self, valid_fields, make_verifier):
        verifier = make_verifier(ViesLookupResult(valid=True, name="Völlig Anders AG"))
        check, info = await check_uid_vies(valid_fields, None, verifier)
        assert check.status == TrafficLightStatus.WARNING
        assert info.name_match is False
        assert info.registered_name == "Völlig Anders AG"

    @pytest.mark.asyncio
    async def test_lookup_error_is_pending(self, valid_fields, make_verifier):
        verifier = make_verifier(ViesLookupResult(valid=False, error="VIES returned HTTP 503"))
        check, info = await check_uid_vies(valid_fields, None, verifier)
        assert check.status == TrafficLightStatus.PENDING
        assert info.checked is False
        assert info.error == "VIES returned HTTP 503"

    @pytest.mark.asyncio
    async def test_slow_lookup_is_pending(self, valid_fields, make_verifier):
        check, info = await check_uid_vies(valid_fields, None, make_verifier(delay=1.0), timeout=0.01)
        assert check.status == TrafficLightStatus.PENDING
        assert "timed out" in info.error

    @pytest.mark.asyncio
    async def test_raising_verifier_is_pending(self, valid_fields, make_verifier):
        check, _ = await check_uid_vies(valid_fields, None, make_verifier(error=RuntimeError("boom")))
        assert check.status == TrafficLightStatus.PENDING

    @pytest.mark.asyncio
    async def test_without_verifier_is_pending(self, valid_fields):
        check, info = await check_uid_vies(valid_fields, None, None)
        assert check.status == TrafficLightStatus.PENDING
        assert info.checked is False

    @pytest.mark.asyncio
    async def test_missing_uid(self, valid_fields, verifier):
        check, _ = await check_uid_vies(valid_fields.model_copy(update={"issuer_uid": None}), None, verifier)
        assert check.status == TrafficLightStatus.WARNING
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_invalid_syntax_skips_lookup(self, valid_fields, verifier):
        check, _ = await check_uid_vies(valid_fields.model_copy(update={"issuer_uid": "ATU123"}), None, verifier)
        assert check.status == TrafficLightStatus.WARNING
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_one_stop_shop_uid(self, valid_fields, verifier):
        check, _ = await check_uid_vies(valid_fields.model_copy(update={"issuer_uid": "EU123456789"}), None, verifier)
        assert check.status == TrafficLightStatus.VALID
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_not_required_for_small_domestic_invoice(self, valid_fields, verifier):
        check, _ = await check_uid_vies(valid_fields, RuleContext(amount_class=AmountClass.SMALL), verifier)
        assert check.required is False
