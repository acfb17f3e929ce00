"""Tests for AvailityClient: token handling and eligibility mapping."""

import json

import httpx
import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from clinic_scheduling.errors import CollaboratorError
from clinic_scheduling.services.availity import AvailityClient

MEMBER = {
    "client_id": "client_001",
    "name": "John Doe",
    "date_of_birth": "1985-03-15",
    "member_id": "BC123456789",
}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeAvaility:
    """Routes token and eligibility requests; records what it saw."""

    def __init__(self, eligibility=None, token_status=200):
        self.token_requests = 0
        self.eligibility_requests = []
        self.eligibility = eligibility or {
            "active": True,
            "copay_amount": 25,
            "deductible_amount": 1000,
            "deductible_met": False,
        }
        self.token_status = token_status

    def __call__(self, request):
        if request.url.path == "/v1/auth/token":
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={
                "access_token": f"tok-{self.token_requests}",
                "expires_in": 3600,
            })
        if request.url.path == "/v1/eligibility/verify":
            self.eligibility_requests.append({
                "auth": request.headers.get("Authorization"),
                "body": json.loads(request.content),
            })
            return httpx.Response(200, json=self.eligibility)
        return httpx.Response(404)


def _client(fake, clock=None):
    return AvailityClient(
        base_url="https://availity.test/v1",
        api_key="key",
        secret="secret",
        transport=httpx.MockTransport(fake),
        clock=clock or FakeClock(),
    )


class TestEligibility:
    @pytest.mark.asyncio
    async def test_active_coverage(self):
        fake = FakeAvaility()
        result = await _client(fake).verify("blue cross blue shield", MEMBER)
        assert result.verified
        assert result.copay == 25
        assert result.deductible == 1000
        assert result.deductible_met is False

        sent = fake.eligibility_requests[0]
        assert sent["auth"] == "Bearer tok-1"
        assert sent["body"]["member_id"] == "BC123456789"
        assert sent["body"]["first_name"] == "John"
        assert sent["body"]["last_name"] == "Doe"
        assert sent["body"]["insurance_provider"] == "blue cross blue shield"

    @pytest.mark.asyncio
    async def test_inactive_coverage(self):
        fake = FakeAvaility(eligibility={"active": False, "status": "terminated"})
        result = await _client(fake).verify("aetna", MEMBER)
        assert not result.verified
        assert result.error == "terminated"


class TestToken:
    @pytest.mark.asyncio
    async def test_token_reused(self):
        fake = FakeAvaility()
        client = _client(fake)
        await client.verify("aetna", MEMBER)
        await client.verify("aetna", MEMBER)
        assert fake.token_requests == 1

    @pytest.mark.asyncio
    async def test_token_refreshed_before_expiry(self):
        fake = FakeAvaility()
        clock = FakeClock()
        client = _client(fake, clock=clock)
        await client.verify("aetna", MEMBER)
        clock.now += 3590
        await client.verify("aetna", MEMBER)
        assert fake.token_requests == 2
        assert fake.eligibility_requests[-1]["auth"] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        with pytest.raises(CollaboratorError) as exc_info:
            await _client(FakeAvaility(token_status=401)).verify("aetna", MEMBER)
        assert exc_info.value.status_code == 401
