"""
Identifier primitives: IBAN check digits, EU VAT identification numbers (UID)
and country detection from addresses.

All functions here are pure. Country detection from postal codes is a
plausibility heuristic only and never replaces a UID.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

from .schemas import Address, ExtractedFields


# ============================================================================
# UID (VAT identification number)
# ============================================================================

class UidCountry(str, Enum):
    """Prefixes under which an EU VAT identification number can be issued."""
    AT = "AT"
    BE = "BE"
    BG = "BG"
    CY = "CY"
    CZ = "CZ"
    DE = "DE"
    DK = "DK"
    EE = "EE"
    EL = "EL"  # Greece
    ES = "ES"
    FI = "FI"
    FR = "FR"
    HR = "HR"
    HU = "HU"
    IE = "IE"
    IT = "IT"
    LT = "LT"
    LU = "LU"
    LV = "LV"
    MT = "MT"
    NL = "NL"
    PL = "PL"
    PT = "PT"
    RO = "RO"
    SE = "SE"
    SI = "SI"
    SK = "SK"
    EU = "EU"  # One-stop-shop non-union scheme
    XI = "XI"  # Northern Ireland protocol


DOMESTIC_COUNTRY: Final[UidCountry] = UidCountry.AT

# Pattern for the part after the two-character prefix
UID_PATTERNS: Final[dict[UidCountry, re.Pattern[str]]] = {
    UidCountry.AT: re.compile(r"U\d{8}"),
    UidCountry.BE: re.compile(r"[01]\d{9}"),
    UidCountry.BG: re.compile(r"\d{9,10}"),
    UidCountry.CY: re.compile(r"\d{8}[A-Z]"),
    UidCountry.CZ: re.compile(r"\d{8,10}"),
    UidCountry.DE: re.compile(r"\d{9}"),
    UidCountry.DK: re.compile(r"\d{8}"),
    UidCountry.EE: re.compile(r"\d{9}"),
    UidCountry.EL: re.compile(r"\d{9}"),
    UidCountry.ES: re.compile(r"[A-Z0-9]\d{7}[A-Z0-9]"),
    UidCountry.FI: re.compile(r"\d{8}"),
    UidCountry.FR: re.compile(r"[A-Z0-9]{2}\d{9}"),
    UidCountry.HR: re.compile(r"\d{11}"),
    UidCountry.HU: re.compile(r"\d{8}"),
    UidCountry.IE: re.compile(r"\d[A-Z0-9+*]\d{5}[A-Z]{1,2}"),
    UidCountry.IT: re.compile(r"\d{11}"),
    UidCountry.LT: re.compile(r"\d{9}|\d{12}"),
    UidCountry.LU: re.compile(r"\d{8}"),
    UidCountry.LV: re.compile(r"\d{11}"),
    UidCountry.MT: re.compile(r"\d{8}"),
    UidCountry.NL: re.compile(r"\d{9}B\d{2}"),
    UidCountry.PL: re.compile(r"\d{10}"),
    UidCountry.PT: re.compile(r"\d{9}"),
    UidCountry.RO: re.compile(r"\d{2,10}"),
    UidCountry.SE: re.compile(r"\d{12}"),
    UidCountry.SI: re.compile(r"\d{8}"),
    UidCountry.SK: re.compile(r"\d{10}"),
    UidCountry.EU: re.compile(r"\d{9}"),
    UidCountry.XI: re.compile(r"\d{9}|\d{12}"),
}

_missing_patterns = set(UidCountry) - set(UID_PATTERNS)
if _missing_patterns:
    raise RuntimeError(f"UID pattern table incomplete: {sorted(c.value for c in _missing_patterns)}")


def normalize_uid(uid: str) -> str:
    """Uppercase and drop whitespace, dots and dashes."""
    return re.sub(r"[\s.\-]", "", uid).upper()


def uid_country(uid: Optional[str]) -> Optional[UidCountry]:
    """Return the UID's country prefix if it is a known one."""
    if not uid:
        return None
    prefix = normalize_uid(uid)[:2]
    try:
        return UidCountry(prefix)
    except ValueError:
        return None


def is_valid_uid_syntax(uid: str) -> bool:
    """
    Check a UID against the country pattern table.

    A UID is syntactically valid only when its prefix is a known
    ``UidCountry`` and the remainder matches that country's pattern.
    """
    clean = normalize_uid(uid)
    country = uid_country(clean)
    if country is None:
        return False
    return UID_PATTERNS[country].fullmatch(clean[2:]) is not None


def split_uid(uid: str) -> tuple[str, str]:
    """Split a UID into (country code, number) as the registry expects them."""
    clean = normalize_uid(uid)
    return clean[:2], clean[2:]


# ============================================================================
# IBAN
# ============================================================================

# ISO 13616 country-specific IBAN lengths
IBAN_LENGTHS: Final[dict[str, int]] = {
    "AT": 20, "BE": 16, "BG": 22, "CH": 21, "CY": 28, "CZ": 24, "DE": 22,
    "DK": 18, "EE": 20, "ES": 24, "FI": 18, "FR": 27, "GB": 22, "GR": 27,
    "HR": 21, "HU": 28, "IE": 22, "IT": 27, "LI": 21, "LT": 20, "LU": 20,
    "LV": 21, "MT": 31, "NL": 18, "NO": 15, "PL": 28, "PT": 25, "RO": 24,
    "SE": 24, "SI": 19, "SK": 24,
}

IBAN_SHAPE: Final[re.Pattern[str]] = re.compile(r"[A-Z]{2}\d{2}[A-Z0-9]{11,30}")


def normalize_iban(iban: str) -> str:
    return re.sub(r"\s", "", iban).upper()


def iban_format_error(iban: str) -> Optional[str]:
    """
    Describe why an IBAN is malformed, or return None when its shape is fine.

    Malformed input is reported separately from a checksum mismatch so the
    user can tell a typo in the layout from a wrong digit.
    """
    clean = normalize_iban(iban)
    if not clean.isalnum() or not clean.isascii():
        return f"IBAN contains illegal characters: {iban}"
    if not IBAN_SHAPE.fullmatch(clean):
        return f"IBAN does not have the expected shape (country code, check digits, account): {iban}"
    expected = IBAN_LENGTHS.get(clean[:2])
    if expected and len(clean) != expected:
        return f"IBAN length is {len(clean)} characters, expected {expected} for {clean[:2]}"
    return None


def validate_iban_check_digit(iban: str) -> bool:
    """
    ISO 7064 mod-97 check.

    Moves the first four characters to the end, replaces letters by their
    two-digit value (A=10 ... Z=35) and verifies the number mod 97 equals 1.
    """
    clean = normalize_iban(iban)
    if len(clean) < 5 or not clean.isalnum() or not clean.isascii():
        return False
    rearranged = clean[4:] + clean[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(digits) % 97 == 1


# ============================================================================
# Country detection
# ============================================================================

_COUNTRY_NAMES: Final[dict[str, str]] = {
    "ÖSTERREICH": "AT", "OESTERREICH": "AT", "AUSTRIA": "AT", "AT": "AT", "AUT": "AT",
    "DEUTSCHLAND": "DE", "GERMANY": "DE", "DE": "DE", "DEU": "DE", "BRD": "DE",
    "SCHWEIZ": "CH", "SWITZERLAND": "CH", "CH": "CH", "CHE": "CH",
    "ITALIEN": "IT", "ITALY": "IT", "IT": "IT", "ITA": "IT",
    "TSCHECHIEN": "CZ", "CZECH REPUBLIC": "CZ", "CZECHIA": "CZ", "CZ": "CZ",
    "SLOWAKEI": "SK", "SLOVAKIA": "SK", "SK": "SK",
    "UNGARN": "HU", "HUNGARY": "HU", "HU": "HU",
    "SLOWENIEN": "SI", "SLOVENIA": "SI", "SI": "SI",
    "KROATIEN": "HR", "CROATIA": "HR", "HR": "HR",
    "POLEN": "PL", "POLAND": "PL", "PL": "PL",
    "FRANKREICH": "FR", "FRANCE": "FR", "FR": "FR",
    "NIEDERLANDE": "NL", "NETHERLANDS": "NL", "NL": "NL",
    "BELGIEN": "BE", "BELGIUM": "BE", "BE": "BE",
    "LUXEMBURG": "LU", "LUXEMBOURG": "LU", "LU": "LU",
    "SPANIEN": "ES", "SPAIN": "ES", "ES": "ES",
    "PORTUGAL": "PT", "PT": "PT",
    "RUMÄNIEN": "RO", "ROMANIA": "RO", "RO": "RO",
    "BULGARIEN": "BG", "BULGARIA": "BG", "BG": "BG",
    "IRLAND": "IE", "IRELAND": "IE", "IE": "IE",
    "GRIECHENLAND": "EL", "GREECE": "EL", "GR": "EL", "HELLAS": "EL", "EL": "EL",
    "ZYPERN": "CY", "CYPRUS": "CY", "CY": "CY",
    "ESTLAND": "EE", "ESTONIA": "EE", "EE": "EE",
    "LETTLAND": "LV", "LATVIA": "LV", "LV": "LV",
    "LITAUEN": "LT", "LITHUANIA": "LT", "LT": "LT",
    "MALTA": "MT", "MT": "MT",
    "FINNLAND": "FI", "FINLAND": "FI", "FI": "FI",
    "SCHWEDEN": "SE", "SWEDEN": "SE", "SE": "SE",
    "DÄNEMARK": "DK", "DENMARK": "DK", "DK": "DK",
    "NORDIRLAND": "XI", "NORTHERN IRELAND": "XI",
    "SINGAPUR": "SG", "SINGAPORE": "SG", "SG": "SG",
    "USA": "US", "VEREINIGTE STAATEN": "US", "UNITED STATES": "US", "US": "US",
    "GROSSBRITANNIEN": "GB", "VEREINIGTES KÖNIGREICH": "GB", "UNITED KINGDOM": "GB", "UK": "GB", "GB": "GB",
    "NORWEGEN": "NO", "NORWAY": "NO", "NO": "NO",
    "CHINA": "CN", "CN": "CN",
    "JAPAN": "JP", "JP": "JP",
    "INDIEN": "IN", "INDIA": "IN", "IN": "IN",
    "TÜRKEI": "TR", "TURKEY": "TR", "TÜRKIYE": "TR", "TR": "TR",
}

_POSTAL_PREFIXES: Final[dict[str, str]] = {
    "A": "AT", "AT": "AT", "D": "DE", "DE": "DE", "CH": "CH",
    "IT": "IT", "CZ": "CZ", "SK": "SK", "HU": "HU", "SI": "SI",
    "HR": "HR", "PL": "PL", "FR": "FR", "NL": "NL", "BE": "BE", "LU": "LU",
}
_POSTAL_PREFIX_RE: Final[re.Pattern[str]] = re.compile(
    r"^(A|AT|D|DE|CH|IT|CZ|SK|HU|SI|HR|PL|FR|NL|BE|LU)-?(.+)$", re.IGNORECASE
)

# Cities outside Austria and Germany whose bare postal codes share the
# 4- or 5-digit shape of AT/DE codes
_FOREIGN_CITIES: Final[dict[str, str]] = {
    "zürich": "CH", "zurich": "CH", "bern": "CH", "basel": "CH", "genf": "CH",
    "genève": "CH", "geneve": "CH", "lausanne": "CH", "luzern": "CH",
    "st. gallen": "CH", "st.gallen": "CH", "winterthur": "CH", "lugano": "CH",
    "vaduz": "LI", "schaan": "LI",
    "brüssel": "BE", "bruxelles": "BE", "brussel": "BE", "brussels": "BE",
    "antwerpen": "BE", "gent": "BE", "liège": "BE", "lüttich": "BE",
    "luxemburg": "LU", "luxembourg": "LU",
    "budapest": "HU", "ljubljana": "SI", "maribor": "SI",
    "kopenhagen": "DK", "københavn": "DK",
    "mailand": "IT", "milano": "IT", "rom": "IT", "roma": "IT", "bozen": "IT",
    "bolzano": "IT", "triest": "IT", "trieste": "IT",
    "paris": "FR", "straßburg": "FR", "strasbourg": "FR",
    "bratislava": "SK", "zagreb": "HR", "madrid": "ES", "barcelona": "ES",
    "helsinki": "FI", "stockholm": "SE",
}


def resolve_country_name(raw: str) -> Optional[str]:
    """Map a country name or code as found on invoices to ISO-2 (Greece as EL)."""
    return _COUNTRY_NAMES.get(raw.strip().upper())


def detect_country_from_postal_code(zip_code: str, city: Optional[str] = None) -> Optional[str]:
    """
    Guess the country from a postal code.

    An explicit country prefix (A-, D-, CH-, ...) wins. For bare numeric
    codes a well-known foreign city decides; otherwise 4-digit codes in the
    Austrian range are taken as AT and 5-digit codes as DE. Other shapes
    return None.
    """
    clean = re.sub(r"\s", "", zip_code)

    prefix_match = _POSTAL_PREFIX_RE.match(clean)
    if prefix_match:
        return _POSTAL_PREFIXES.get(prefix_match.group(1).upper())

    digits = re.sub(r"\D", "", clean)
    if not digits:
        return None

    if city and city.strip().lower() in _FOREIGN_CITIES:
        return _FOREIGN_CITIES[city.strip().lower()]

    number = int(digits)
    if len(digits) == 4:
        return "AT" if 1010 <= number <= 9992 else None
    if len(digits) == 5:
        return "DE" if 1001 <= number <= 99998 else None
    return None


class Region(str, Enum):
    INLAND = "INLAND"
    EU = "EU"
    THIRD_COUNTRY = "THIRD_COUNTRY"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class VendorLocation:
    region: Region
    country: Optional[str]
    label: str


def _region_for(country: str) -> Region:
    if country == DOMESTIC_COUNTRY.value:
        return Region.INLAND
    if country in UidCountry.__members__:
        return Region.EU
    return Region.THIRD_COUNTRY


def _address_label(address: Optional[Address], country: Optional[str]) -> str:
    parts = []
    if address is not None:
        parts.extend(p.strip() for p in (address.zip, address.city) if p and p.strip())
        if not country and address.country and address.country.strip():
            parts.append(address.country.strip())
    if country:
        parts.append(country)
    return " ".join(parts) or "unknown"


def detect_vendor_location(fields: ExtractedFields) -> VendorLocation:
    """
    Locate the issuer as domestic, EU or third country.

    Signals in order of strength: UID prefix, explicit address country,
    postal-code pattern.
    """
    address = fields.issuer_address
    uid = normalize_uid(fields.issuer_uid) if fields.issuer_uid and fields.issuer_uid.strip() else None

    if uid and len(uid) >= 2:
        country = uid[:2]
        return VendorLocation(_region_for(country), country, _address_label(address, country))

    if address is not None and address.country and address.country.strip():
        country = resolve_country_name(address.country)
        if country:
            return VendorLocation(_region_for(country), country, _address_label(address, country))

    if address is not None and address.zip and address.zip.strip():
        country = detect_country_from_postal_code(address.zip, address.city)
        if country:
            return VendorLocation(_region_for(country), country, _address_label(address, country))

    return VendorLocation(Region.UNKNOWN, None, _address_label(address, None))


def address_country(address: Optional[Address]) -> Optional[str]:
    """Country implied by an address alone: explicit country first, then postal code."""
    if address is None:
        return None
    if address.country and address.country.strip():
        country = resolve_country_name(address.country)
        if country:
            return country
    if address.zip and address.zip.strip():
        return detect_country_from_postal_code(address.zip, address.city)
    return None
