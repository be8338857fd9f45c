"""
Tests for the identifier primitives (IBAN, UID, country detection).
"""

import pytest

from invoice_compliance.identifiers import (
    UID_PATTERNS,
    Region,
    UidCountry,
    detect_country_from_postal_code,
    detect_vendor_location,
    iban_format_error,
    is_valid_uid_syntax,
    resolve_country_name,
    split_uid,
    validate_iban_check_digit,
)
from invoice_compliance.schemas import Address, ExtractedFields


VALID_IBAN = "AT611904300234573201"


class TestIbanCheckDigit:
    """Tests for the ISO 7064 mod-97 check."""

    def test_known_valid_iban(self):
        assert validate_iban_check_digit(VALID_IBAN) is True

    def test_spaces_and_lowercase_accepted(self):
        assert validate_iban_check_digit("at61 1904 3002 3457 3201") is True

    def test_german_iban(self):
        assert validate_iban_check_digit("DE89370400440532013000") is True

    @pytest.mark.parametrize("position", range(4, len(VALID_IBAN)))
    def test_single_digit_change_detected(self, position):
        digit = VALID_IBAN[position]
        replacement = "0" if digit != "0" else "1"
        tampered = VALID_IBAN[:position] + replacement + VALID_IBAN[position + 1:]
        assert validate_iban_check_digit(tampered) is False

    def test_wrong_check_digits(self):
        assert validate_iban_check_digit("AT621904300234573201") is False

    def test_empty_is_invalid(self):
        assert validate_iban_check_digit("") is False


class TestIbanFormat:
    """Malformed IBANs are reported differently from checksum mismatches."""

    def test_well_formed_iban_has_no_format_error(self):
        assert iban_format_error(VALID_IBAN) is None

    def test_checksum_mismatch_is_not_a_format_error(self):
        assert iban_format_error("AT621904300234573201") is None

    def test_illegal_characters(self):
        assert "illegal characters" in iban_format_error("AT61-1904-3002-3457-320!")

    def test_wrong_shape(self):
        assert "shape" in iban_format_error("1234567890123456")

    def test_wrong_country_length(self):
        message = iban_format_error("AT6119043002345732")
        assert "expected 20" in message


class TestUidSyntax:
    """Tests for UID syntax validation."""

    def test_austrian_uid_valid(self):
        assert is_valid_uid_syntax("ATU12345678") is True

    def test_uid_with_spaces_valid(self):
        assert is_valid_uid_syntax("ATU 1234 5678") is True

    def test_austrian_uid_without_u_invalid(self):
        assert is_valid_uid_syntax("AT12345678") is False

    def test_unknown_prefix_invalid(self):
        assert is_valid_uid_syntax("ZZ12345678") is False

    def test_non_eu_prefix_invalid(self):
        assert is_valid_uid_syntax("CHE123456789") is False

    def test_german_uid(self):
        assert is_valid_uid_syntax("DE123456789") is True
        assert is_valid_uid_syntax("DE12345678") is False

    def test_greece_uses_el(self):
        assert is_valid_uid_syntax("EL123456789") is True
        assert is_valid_uid_syntax("GR123456789") is False

    def test_northern_ireland_and_oss(self):
        assert is_valid_uid_syntax("XI123456789") is True
        assert is_valid_uid_syntax("EU123456789") is True

    def test_pattern_table_complete(self):
        assert set(UID_PATTERNS) == set(UidCountry)
        assert len(UidCountry) == 29

    def test_split_uid(self):
        assert split_uid("atu 12345678") == ("AT", "U12345678")


class TestCountryDetection:
    """Tests for postal code and country name heuristics."""

    @pytest.mark.parametrize("zip_code,expected", [
        ("1010", "AT"),
        ("9992", "AT"),
        ("A-5020", "AT"),
        ("D-80331", "DE"),
        ("80331", "DE"),
        ("CH-8001", "CH"),
        ("0999", None),
        ("123", None),
    ])
    def test_postal_code(self, zip_code, expected):
        assert detect_country_from_postal_code(zip_code) == expected

    @pytest.mark.parametrize("zip_code,city,expected", [
        ("8001", "Zürich", "CH"),
        ("1000", "Bruxelles", "BE"),
        ("9490", "Vaduz", "LI"),
        ("8010", "Graz", "AT"),
        ("D-80331", "Zürich", "DE"),
    ])
    def test_postal_code_with_city(self, zip_code, city, expected):
        assert detect_country_from_postal_code(zip_code, city) == expected

    def test_swiss_city_without_country_is_third_country(self):
        fields = ExtractedFields(issuer_address=Address(street="Bahnhofstrasse 1", zip="8001", city="Zürich"))
        location = detect_vendor_location(fields)
        assert location.country == "CH"
        assert location.region == Region.THIRD_COUNTRY

    def test_country_names(self):
        assert resolve_country_name("Österreich") == "AT"
        assert resolve_country_name("Germany") == "DE"
        assert resolve_country_name("Griechenland") == "EL"
        assert resolve_country_name("Atlantis") is None


class TestVendorLocation:
    """Tests for locating the issuer."""

    def test_uid_prefix_wins(self):
        fields = ExtractedFields(
            issuer_uid="DE123456789",
            issuer_address=Address(zip="1010", city="Wien"),
        )
        location = detect_vendor_location(fields)
        assert location.region == Region.EU
        assert location.country == "DE"

    def test_domestic_from_postal_code(self):
        fields = ExtractedFields(issuer_address=Address(zip="1010", city="Wien"))
        assert detect_vendor_location(fields).region == Region.INLAND

    def test_third_country_from_address(self):
        fields = ExtractedFields(issuer_address=Address(city="Zürich", country="Schweiz"))
        location = detect_vendor_location(fields)
        assert location.region == Region.THIRD_COUNTRY
        assert location.country == "CH"

    def test_unknown_without_signals(self):
        assert detect_vendor_location(ExtractedFields()).region == Region.UNKNOWN

    def test_german_address_aliases(self):
        address = Address.model_validate({"strasse": "Hauptplatz 1", "plz": 8010, "ort": "Graz", "land": "AT"})
        assert address.zip == "8010"
        assert address.city == "Graz"
        assert address.is_complete()
