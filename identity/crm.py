"""
CRM Subject Resolver — maps phone numbers to external CRM profile IDs.

Flow:
    metadata → extract phone → POST {crm_base_url}/customers/lookup
      → hit:      "crm_<profileId>", metadata["customer_profile"] enriched in place
      → miss/err: "phone_<E.164>" (fallback, default) or ResolutionError

The orchestrator copies `customer_profile` into the subject's context so the
execution engine receives a profile summary instead of having to look the
customer up again.
"""
from __future__ import annotations

import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import ResolutionError
from identity.resolver import SubjectResolver, extract_phone, normalize_phone, phone_subject_id
from models.schemas import SubjectId

logger = structlog.get_logger()

_PROFILE_CACHE_TTL_S = 5 * 60


class CrmLookupError(Exception):
    pass


class CrmSubjectResolver(SubjectResolver):
    """Resolve through a remote CRM, falling back to the phone scheme."""

    name = "crm"

    def __init__(
        self,
        crm_base_url: str = "https://api.example-crm.com",
        api_key: str = "",
        fallback_to_phone: bool = True,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.crm_base_url = crm_base_url.rstrip("/")
        self.api_key = api_key
        self.fallback_to_phone = fallback_to_phone
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: dict[str, tuple[float, Optional[dict[str, Any]]]] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.crm_base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_s,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def resolve(self, metadata: dict[str, Any]) -> SubjectId:
        phone = extract_phone(metadata)
        if not phone:
            raise ResolutionError("No phone number found in metadata for CRM resolution")

        try:
            profile = await self.lookup_profile(phone)
        except (CrmLookupError, httpx.HTTPError, ValueError) as e:
            if not self.fallback_to_phone:
                raise ResolutionError(f"CRM lookup failed: {e}") from e
            logger.warning("crm_lookup_failed_fallback", error=str(e))
            return phone_subject_id(phone)

        profile_id = self._profile_id(profile) if profile else None
        if profile_id:
            metadata["customer_profile"] = self._to_customer_profile(profile)
            logger.info("crm_profile_found", traits_count=len(profile.get("traits") or {}))
            return f"crm_{profile_id}"

        if not self.fallback_to_phone:
            raise ResolutionError("Customer not found in CRM")
        logger.info("crm_profile_not_found_fallback")
        return phone_subject_id(phone)

    async def lookup_profile(self, phone: str) -> Optional[dict[str, Any]]:
        """Return the CRM record for a phone number, None on 404."""
        if not self.api_key:
            raise CrmLookupError("CRM API key not configured")

        normalized = normalize_phone(phone)
        cached = self._cache.get(normalized)
        if cached and time.monotonic() - cached[0] < _PROFILE_CACHE_TTL_S:
            return cached[1]

        profile = await self._post_lookup(normalized)
        self._cache[normalized] = (time.monotonic(), profile)
        return profile

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post_lookup(self, normalized_phone: str) -> Optional[dict[str, Any]]:
        client = await self._get_client()
        response = await client.post("/customers/lookup", json={"phone": normalized_phone})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CrmLookupError(f"CRM API error: {response.status_code}")
        data = response.json()
        if not isinstance(data, dict):
            raise CrmLookupError("CRM API returned a non-object body")
        return data

    @staticmethod
    def _profile_id(profile: dict[str, Any]) -> Optional[str]:
        for key in ("profileId", "customerId", "id"):
            if profile.get(key):
                return str(profile[key])
        return None

    @staticmethod
    def _to_customer_profile(profile: dict[str, Any]) -> dict[str, Any]:
        traits = profile.get("traits") or {}
        return {
            "is_existing_customer": True,
            "first_name": traits.get("firstName") or traits.get("first_name"),
            "last_name": traits.get("lastName") or traits.get("last_name"),
            "name": traits.get("name") or profile.get("name"),
            "email": traits.get("email") or profile.get("email"),
            "phone": traits.get("phone") or profile.get("phone"),
            "customer_tier": traits.get("customerTier") or traits.get("tier"),
            "purchase_history": traits.get("purchaseHistory"),
            "support_tickets": traits.get("supportTickets"),
            "preferences": traits.get("preferences"),
            "all_traits": traits,
        }
