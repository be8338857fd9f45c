"""
Shared fixtures for the invoice compliance tests.
"""

import asyncio
from datetime import date
from typing import Optional

import pytest

from invoice_compliance.schemas import Address, ExtractedFields, ValidationContext
from invoice_compliance.vies import ViesLookupResult


class FakeVerifier:
    """In-memory registry used instead of VIES."""

    def __init__(
        self,
        result: Optional[ViesLookupResult] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.result = result if result is not None else ViesLookupResult(valid=True, name="Test GmbH")
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def lookup(self, uid: str) -> ViesLookupResult:
        self.calls.append(uid)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def valid_fields() -> ExtractedFields:
    """A complete, compliant domestic invoice of the standard amount class."""
    return ExtractedFields(
        issuer_name="Test GmbH",
        issuer_uid="ATU12345678",
        issuer_address=Address(street="Ringstraße 1", zip="1010", city="Wien", country="AT"),
        issuer_iban="AT611904300234573201",
        recipient_name="Kunde OG",
        recipient_uid="ATU87654321",
        invoice_number="RE-2024-0815",
        invoice_date=date(2024, 3, 15),
        delivery_date=date(2024, 3, 10),
        description="Beratungsleistung März 2024",
        net_amount=1000.00,
        vat_amount=200.00,
        gross_amount=1200.00,
        vat_rate=20,
        currency="EUR",
    )


@pytest.fixture
def context() -> ValidationContext:
    return ValidationContext(tenant_id="tenant-1", invoice_id="inv-1")


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def make_verifier():
    """Factory for verifiers with a specific answer, delay or error."""
    return FakeVerifier
