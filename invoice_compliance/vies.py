"""
UID registry lookup against the EU VIES service.

The lookup is the only I/O in a validation. It never raises: transport
failures, timeouts and malformed responses are reported as an unverified
result so the verdict can mark the invoice PENDING instead of failing.
"""

import asyncio
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional, Protocol

import httpx

from .config import (
    NAME_CONTAINMENT_SCORE,
    NAME_MATCH_THRESHOLD,
    VIES_API_URL,
    VIES_CACHE_MAX_SIZE,
    VIES_CACHE_TTL_SECONDS,
    VIES_TIMEOUT_SECONDS,
    RuleId,
    TrafficLightStatus,
    logger,
)
from .identifiers import UidCountry, is_valid_uid_syntax, normalize_uid, split_uid, uid_country
from .rules import RuleContext, is_rule_required, make_check
from .schemas import ExtractedFields, ValidationCheck, ViesValidationInfo


# ============================================================================
# Lookup Results and Cache
# ============================================================================

@dataclass(frozen=True)
class ViesLookupResult:
    """
    Answer of the registry for one UID.

    ``error`` is set when no answer could be obtained; ``valid`` is then
    meaningless and the UID counts as unverified.
    """
    valid: bool
    name: Optional[str] = None
    address: Optional[str] = None
    request_date: Optional[str] = None
    error: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.error is None


class ViesCache:
    """
    Bounded in-memory cache of registry answers.

    Only answered lookups are stored; errors are retried on the next call.
    Entries expire after ``ttl_seconds`` and the least recently used entry is
    evicted once ``max_size`` is reached.
    """

    def __init__(
        self,
        ttl_seconds: float = VIES_CACHE_TTL_SECONDS,
        max_size: int = VIES_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, ViesLookupResult]] = OrderedDict()

    def get(self, uid: str) -> Optional[ViesLookupResult]:
        entry = self._entries.get(uid)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[uid]
            return None
        self._entries.move_to_end(uid)
        return result

    def set(self, uid: str, result: ViesLookupResult) -> None:
        if not result.answered or self.max_size <= 0:
            return
        self._entries[uid] = (self._clock(), result)
        self._entries.move_to_end(uid)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================================
# Registry Client
# ============================================================================

class IdentityVerifier(Protocol):
    """Anything that can look up a UID in a registry."""

    async def lookup(self, uid: str) -> ViesLookupResult:
        ...


def _registry_text(value) -> Optional[str]:
    # VIES reports withheld data as "---"
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or text == "---":
        return None
    return text


class ViesClient:
    """
    Async client for the VIES REST API.

    Args:
        api_url: Endpoint of the check-vat-number service
        timeout: Per-request timeout in seconds
        cache: Cache for answered lookups; a fresh one is created if omitted
        transport: Optional httpx transport, used in tests to mock the service
    """

    def __init__(
        self,
        api_url: str = VIES_API_URL,
        timeout: float = VIES_TIMEOUT_SECONDS,
        cache: Optional[ViesCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.cache = cache if cache is not None else ViesCache()
        self._in_flight: dict[str, asyncio.Task] = {}
        self.http_client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        await self.http_client.aclose()

    async def lookup(self, uid: str) -> ViesLookupResult:
        """Look up a UID; never raises."""
        clean = normalize_uid(uid)
        cached = self.cache.get(clean)
        if cached is not None:
            logger.debug(f"VIES cache hit for {clean}")
            return cached

        # Concurrent callers for the same UID share one outbound request
        task = self._in_flight.get(clean)
        if task is None:
            task = asyncio.create_task(self._query_and_cache(clean))
            self._in_flight[clean] = task
            task.add_done_callback(lambda done: self._forget(clean, done))
        else:
            logger.debug(f"Joining in-flight VIES lookup for {clean}")

        # shield: a caller timing out must not cancel the lookup for the others
        return await asyncio.shield(task)

    async def _query_and_cache(self, uid: str) -> ViesLookupResult:
        result = await self._query(uid)
        self.cache.set(uid, result)
        return result

    def _forget(self, uid: str, task: asyncio.Task) -> None:
        if self._in_flight.get(uid) is task:
            del self._in_flight[uid]

    async def _query(self, uid: str) -> ViesLookupResult:
        country, number = split_uid(uid)
        payload = {"countryCode": country, "vatNumber": number}

        try:
            response = await self.http_client.post(self.api_url, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"VIES lookup for {uid} timed out")
            return ViesLookupResult(valid=False, error="VIES request timed out")
        except httpx.HTTPError as e:
            logger.warning(f"VIES lookup for {uid} failed: {e}")
            return ViesLookupResult(valid=False, error=f"VIES not reachable: {e}")

        if not response.is_success:
            logger.warning(f"VIES lookup for {uid} returned HTTP {response.status_code}")
            return ViesLookupResult(valid=False, error=f"VIES returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"VIES lookup for {uid} returned a non-JSON body")
            return ViesLookupResult(valid=False, error="VIES returned a malformed response")

        if not isinstance(data, dict) or not isinstance(data.get("valid"), bool):
            logger.warning(f"VIES lookup for {uid} returned an unexpected payload")
            return ViesLookupResult(valid=False, error="VIES returned a malformed response")

        # Member-state outages are reported in-band with valid=false
        user_error = data.get("userError")
        if user_error and user_error not in ("VALID", "INVALID"):
            logger.warning(f"VIES lookup for {uid} reported {user_error}")
            return ViesLookupResult(valid=False, error=f"VIES service error: {user_error}")

        return ViesLookupResult(
            valid=data["valid"],
            name=_registry_text(data.get("name")),
            address=_registry_text(data.get("address")),
            request_date=_registry_text(data.get("requestDate")),
        )


# ============================================================================
# Name Comparison
# ============================================================================

_LEGAL_FORM_TOKENS = re.compile(
    r"\b(?:gmbh\s*&\s*co\.?\s*kg|ges\.?\s*m\.?\s*b\.?\s*h\.?|m\.b\.h\.|gmbh|gesellschaft|co\.?\s*kg|kg|og|ohg|ag|se|e\.\s?u\.?)(?=\W|$)",
    re.IGNORECASE,
)
_NON_NAME_CHARS = re.compile(r"[^a-zäöüß0-9]")


class NameComparison(NamedTuple):
    match: bool
    similarity: float


def _normalize_company_name(name: str) -> str:
    text = _LEGAL_FORM_TOKENS.sub(" ", name.lower())
    return _NON_NAME_CHARS.sub("", text)


def compare_company_names(invoice_name: Optional[str], registry_name: Optional[str]) -> NameComparison:
    """
    Compare the issuer name on the invoice with the registered name.

    Legal-form suffixes and punctuation are ignored. Identical names score
    1.0, containment scores ``NAME_CONTAINMENT_SCORE``; otherwise the
    Jaccard ratio of the two character sets decides, matching strictly
    above the threshold.
    """
    a = _normalize_company_name(invoice_name or "")
    b = _normalize_company_name(registry_name or "")
    if not a or not b:
        return NameComparison(False, 0.0)
    if a == b:
        return NameComparison(True, 1.0)
    if a in b or b in a:
        return NameComparison(True, NAME_CONTAINMENT_SCORE)

    chars_a, chars_b = set(a), set(b)
    similarity = round(len(chars_a & chars_b) / len(chars_a | chars_b), 4)
    return NameComparison(similarity > NAME_MATCH_THRESHOLD, similarity)


# ============================================================================
# UID_VIES_CHECK
# ============================================================================

async def check_uid_vies(
    fields: ExtractedFields,
    ctx: Optional[RuleContext],
    verifier: Optional[IdentityVerifier],
    timeout: float = VIES_TIMEOUT_SECONDS,
) -> tuple[ValidationCheck, ViesValidationInfo]:
    """
    Verify the issuer UID against the registry.

    A lookup that does not complete yields PENDING, never VALID. Without a
    verifier the lookup is reported as not performed.
    """
    ctx = ctx if ctx is not None else RuleContext.build(fields)
    rule_id = RuleId.UID_VIES_CHECK
    required = is_rule_required(rule_id, fields, ctx)
    uid = fields.issuer_uid

    if uid is None or not uid.strip():
        return (
            make_check(rule_id, TrafficLightStatus.WARNING, "No issuer UID to verify", required),
            ViesValidationInfo(),
        )

    clean = normalize_uid(uid)
    if not is_valid_uid_syntax(clean):
        return (
            make_check(rule_id, TrafficLightStatus.WARNING, f"Registry lookup skipped: UID {clean} is syntactically invalid", required),
            ViesValidationInfo(),
        )

    if uid_country(clean) == UidCountry.EU:
        return (
            make_check(rule_id, TrafficLightStatus.VALID, f"UID {clean} is a one-stop-shop number and cannot be verified in VIES", required),
            ViesValidationInfo(),
        )

    if verifier is None:
        return (
            make_check(rule_id, TrafficLightStatus.PENDING, f"Registry lookup for {clean} not performed", required),
            ViesValidationInfo(error="Registry lookup disabled"),
        )

    try:
        result = await asyncio.wait_for(verifier.lookup(clean), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Registry lookup for {clean} exceeded {timeout}s")
        result = ViesLookupResult(valid=False, error="Registry lookup timed out")
    except Exception as e:
        logger.warning(f"Registry lookup for {clean} failed: {e}")
        result = ViesLookupResult(valid=False, error=f"Registry lookup failed: {e}")

    if not result.answered:
        return (
            make_check(
                rule_id, TrafficLightStatus.PENDING,
                f"UID {clean} could not be verified: {result.error}",
                required,
            ),
            ViesValidationInfo(checked=False, error=result.error),
        )

    if not result.valid:
        return (
            make_check(rule_id, TrafficLightStatus.INVALID, f"UID {clean} is not valid according to VIES", required),
            ViesValidationInfo(checked=True, valid=False, request_date=result.request_date),
        )

    comparison = compare_company_names(fields.issuer_name, result.name)
    info = ViesValidationInfo(
        checked=True,
        valid=True,
        registered_name=result.name,
        registered_address=result.address,
        name_match=comparison.match,
        name_similarity=comparison.similarity,
        request_date=result.request_date,
    )

    if result.name and not comparison.match:
        return (
            make_check(
                rule_id, TrafficLightStatus.WARNING,
                f"UID {clean} is valid but registered to '{result.name}', "
                f"invoice names '{fields.issuer_name or ''}' ({comparison.similarity:.0%} similar)",
                required,
                details={"registered_name": result.name, "similarity": comparison.similarity},
            ),
            info,
        )

    message = f"UID {clean} is valid"
    if result.name:
        message += f" and registered to '{result.name}'"
    return make_check(rule_id, TrafficLightStatus.VALID, message, required), info
