"""Tests for the CRM resolver against a mocked CRM API (httpx.MockTransport)."""
import json

import httpx
import pytest

from core.errors import ResolutionError
from identity.crm import CrmSubjectResolver

PROFILE = {
    "profileId": "prof_42",
    "traits": {
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "phone": "+14155550100",
        "customerTier": "gold",
        "purchaseHistory": ["AB12345"],
        "favoriteStore": "Downtown",
    },
}


def _resolver(handler, **kwargs):
    kwargs.setdefault("api_key", "secret")
    return CrmSubjectResolver(crm_base_url="https://crm.test", transport=httpx.MockTransport(handler), **kwargs)


class TestCrmSubjectResolver:

    @pytest.mark.asyncio
    async def test_hit_returns_crm_subject_and_enriches_metadata(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=PROFILE)

        resolver = _resolver(handler)
        metadata = {"From": "(415) 555-0100"}
        subject_id = await resolver.resolve(metadata)

        assert subject_id == "crm_prof_42"
        profile = metadata["customer_profile"]
        assert profile["is_existing_customer"] is True
        assert profile["first_name"] == "Jane"
        assert profile["customer_tier"] == "gold"
        assert profile["all_traits"]["favoriteStore"] == "Downtown"

        sent = requests[0]
        assert sent.method == "POST"
        assert sent.url.path == "/customers/lookup"
        assert sent.headers["Authorization"] == "Bearer secret"
        assert json.loads(sent.content) == {"phone": "+14155550100"}
        await resolver.close()

    @pytest.mark.asyncio
    async def test_customer_id_field_accepted(self):
        resolver = _resolver(lambda request: httpx.Response(200, json={"customerId": 7}))
        assert await resolver.resolve({"phone": "4155550100"}) == "crm_7"

    @pytest.mark.asyncio
    async def test_not_found_falls_back_to_phone(self):
        resolver = _resolver(lambda request: httpx.Response(404))
        metadata = {"phone": "4155550100"}
        assert await resolver.resolve(metadata) == "phone_+14155550100"
        assert "customer_profile" not in metadata

    @pytest.mark.asyncio
    async def test_server_error_falls_back_to_phone(self):
        resolver = _resolver(lambda request: httpx.Response(500))
        assert await resolver.resolve({"phone": "4155550100"}) == "phone_+14155550100"

    @pytest.mark.asyncio
    async def test_non_object_body_falls_back_to_phone(self):
        resolver = _resolver(lambda request: httpx.Response(200, json=["unexpected"]))
        assert await resolver.resolve({"phone": "4155550100"}) == "phone_+14155550100"

    @pytest.mark.asyncio
    async def test_missing_api_key_falls_back_without_calling(self):
        calls = []
        resolver = _resolver(lambda request: calls.append(request) or httpx.Response(200, json=PROFILE), api_key="")
        assert await resolver.resolve({"phone": "4155550100"}) == "phone_+14155550100"
        assert calls == []

    @pytest.mark.asyncio
    async def test_fallback_disabled_raises(self):
        resolver = _resolver(lambda request: httpx.Response(404), fallback_to_phone=False)
        with pytest.raises(ResolutionError):
            await resolver.resolve({"phone": "4155550100"})

    @pytest.mark.asyncio
    async def test_error_with_fallback_disabled_raises(self):
        resolver = _resolver(lambda request: httpx.Response(503), fallback_to_phone=False)
        with pytest.raises(ResolutionError):
            await resolver.resolve({"phone": "4155550100"})

    @pytest.mark.asyncio
    async def test_no_phone_raises(self):
        resolver = _resolver(lambda request: httpx.Response(200, json=PROFILE))
        with pytest.raises(ResolutionError):
            await resolver.resolve({"email": "jane@example.com"})

    @pytest.mark.asyncio
    async def test_lookups_are_cached_per_normalized_phone(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=PROFILE)

        resolver = _resolver(handler)
        await resolver.resolve({"phone": "4155550100"})
        await resolver.resolve({"From": "+1 (415) 555-0100"})
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried_then_fall_back(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        resolver = _resolver(handler)
        assert await resolver.resolve({"phone": "4155550100"}) == "phone_+14155550100"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_transient_transport_error_recovers(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json=PROFILE)

        resolver = _resolver(handler)
        assert await resolver.resolve({"phone": "4155550100"}) == "crm_prof_42"
        assert len(calls) == 2
