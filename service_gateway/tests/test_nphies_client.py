"""
Unit tests for the NPHIES exchange client.
"""

import json

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.adapters.nphies_client import NphiesClient, should_retry_exchange_call
from service_gateway.app.domain.models import ClaimRequest, EligibilityRequest, PreAuthRequest
from shared.errors import TransientNetworkError, UpstreamBusinessError
from shared.logging import clear_context, set_request_id
from shared.metrics import MetricsCollector
from shared.test_helpers import test_data_factory, test_environment


async def no_sleep(delay):
    return None


class FakeExchange:
    """Scriptable NPHIES transport: queue responses per path."""

    def __init__(self):
        self.calls = []
        self.responses = {}
        self.token_status = 200

    def queue(self, path, *responses):
        self.responses.setdefault(path, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/oauth/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": f"tok-{len(self.token_calls)}", "expires_in": 3600})

        queued = self.responses.get(path)
        if not queued:
            return httpx.Response(500, json={"error": "no scripted response"})
        response = queued.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def token_calls(self):
        return [call for call in self.calls if call.url.path == "/oauth/token"]

    def calls_to(self, path):
        return [call for call in self.calls if call.url.path == path]


class TestNphiesClient:
    """Test cases for NphiesClient."""

    @pytest.fixture
    def exchange(self):
        return FakeExchange()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway-test")

    @pytest.fixture
    def config(self):
        return test_environment.make_config()

    @pytest.fixture
    def client(self, exchange, config, metrics):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(exchange))
        return NphiesClient(config, http_client=http_client, metrics=metrics, sleep=no_sleep)

    @pytest.fixture
    def eligibility_request(self):
        return EligibilityRequest(**test_data_factory.valid_eligibility_request())

    @pytest.mark.asyncio
    async def test_check_eligibility_success(self, client, exchange, eligibility_request, metrics):
        exchange.queue("/eligibility/check", httpx.Response(200, json={
            "eligible": True,
            "coverageDetails": {"policyId": "ABC123456", "coveragePercentage": 80},
        }))

        result = await client.check_eligibility(eligibility_request)

        assert result.success is True
        assert result.http_status == 200
        assert result.data["coverageDetails"]["coveragePercentage"] == 80
        assert result.timestamp.endswith("Z")

        token_request = exchange.token_calls[0]
        assert json.loads(token_request.content) == {
            "grant_type": "client_credentials",
            "client_id": "test-client",
            "client_secret": "test-secret",
            "scope": "eligibility claims preauth",
        }

        call = exchange.calls_to("/eligibility/check")[0]
        assert call.headers["Authorization"] == "Bearer tok-1"
        assert call.headers["X-Provider-ID"] == "1234567"
        assert json.loads(call.content) == test_data_factory.valid_eligibility_request()
        assert metrics.sample_value("nphies_requests_total", operation="check_eligibility", outcome="success") == 1.0

    @pytest.mark.asyncio
    async def test_token_reused_across_operations(self, client, exchange, eligibility_request):
        exchange.queue("/eligibility/check",
                       httpx.Response(200, json={"eligible": True}),
                       httpx.Response(200, json={"eligible": True}))

        await client.check_eligibility(eligibility_request)
        await client.check_eligibility(eligibility_request)

        assert len(exchange.token_calls) == 1

    @pytest.mark.asyncio
    async def test_request_id_forwarded(self, client, exchange, eligibility_request):
        exchange.queue("/eligibility/check", httpx.Response(200, json={"eligible": True}))
        set_request_id("req-123")
        try:
            await client.check_eligibility(eligibility_request)
        finally:
            clear_context()

        assert exchange.calls_to("/eligibility/check")[0].headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_business_error_passes_code_through(self, client, exchange, eligibility_request):
        exchange.queue("/eligibility/check", httpx.Response(
            422, json={"error": "Insurance policy is not active", "code": "E002"}
        ))

        result = await client.check_eligibility(eligibility_request)

        assert result.success is False
        assert result.code == "E002"
        assert result.error == "Insurance policy is not active"
        assert result.suggestion == "Verify policy status and coverage dates"
        assert result.http_status == 422
        # business rejections are never retried
        assert len(exchange.calls_to("/eligibility/check")) == 1

    @pytest.mark.asyncio
    async def test_unknown_upstream_code_and_defaults(self, client, exchange):
        exchange.queue("/claims/submit", httpx.Response(400, json={"error": "Odd", "code": "X-NEW-42"}))
        exchange.queue("/claims/submit", httpx.Response(500, text="upstream exploded"))
        request = ClaimRequest(**test_data_factory.valid_claim_request())

        first = await client.submit_claim(request)
        assert first.code == "X-NEW-42"
        assert first.suggestion is None

        second = await client.submit_claim(request)
        assert second.code == "CLAIM_SUBMISSION_ERROR"
        assert second.error == "Claim submission failed"
        assert second.http_status == 502

    @pytest.mark.asyncio
    async def test_transient_failures_retried_then_succeed(self, client, exchange, eligibility_request, metrics):
        exchange.queue(
            "/eligibility/check",
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            httpx.Response(200, json={"eligible": True}),
        )

        result = await client.check_eligibility(eligibility_request)

        assert result.success is True
        assert len(exchange.calls_to("/eligibility/check")) == 3
        assert metrics.sample_value("nphies_retries_total", operation="check_eligibility") == 2.0

    @pytest.mark.asyncio
    async def test_retries_exhausted_gives_unavailable(self, client, exchange, eligibility_request):
        exchange.queue("/eligibility/check", *[httpx.ConnectError("connection refused")] * 3)

        result = await client.check_eligibility(eligibility_request)

        assert result.success is False
        assert result.code == "SERVICE_UNAVAILABLE"
        assert result.http_status == 503
        assert "temporarily unavailable" in result.error
        assert len(exchange.calls_to("/eligibility/check")) == 3

    @pytest.mark.asyncio
    async def test_undecodable_response_is_normalized(self, client, exchange, eligibility_request):
        exchange.queue("/eligibility/check", httpx.DecodingError("corrupt gzip body"))

        result = await client.check_eligibility(eligibility_request)

        assert result.success is False
        assert result.code == "ELIGIBILITY_ERROR"
        assert result.error == "Eligibility check failed"
        assert result.http_status == 502
        assert len(exchange.calls_to("/eligibility/check")) == 1

    @pytest.mark.asyncio
    async def test_preauth_single_attempt_with_idempotency_key(self, client, exchange):
        exchange.queue("/preauth/submit", httpx.ConnectError("connection refused"))
        request = PreAuthRequest(**test_data_factory.valid_preauth_request(requestId="pa-req-1"))

        result = await client.submit_preauth(request)

        assert result.http_status == 503
        calls = exchange.calls_to("/preauth/submit")
        assert len(calls) == 1
        assert calls[0].headers["Idempotency-Key"] == "pa-req-1"
        assert "requestId" not in json.loads(calls[0].content)

    @pytest.mark.asyncio
    async def test_submit_claim_and_preauth_ids(self, client, exchange):
        exchange.queue("/claims/submit", httpx.Response(200, json={"claimId": "CLM-1", "reference": "REF-1"}))
        exchange.queue("/preauth/submit", httpx.Response(200, json={"preAuthId": "PA-1", "status": "approved"}))

        claim = await client.submit_claim(ClaimRequest(**test_data_factory.valid_claim_request()))
        preauth = await client.submit_preauth(PreAuthRequest(**test_data_factory.valid_preauth_request()))

        assert claim.claim_id == "CLM-1"
        assert claim.model_dump(by_alias=True, exclude_none=True)["claimId"] == "CLM-1"
        assert preauth.pre_auth_id == "PA-1"
        assert exchange.calls_to("/claims/submit")[0].headers["X-Provider-ID"] == "1234567"

    @pytest.mark.asyncio
    async def test_get_claim_status(self, client, exchange):
        exchange.queue("/claims/CLM-1/status", httpx.Response(200, json={"claimId": "CLM-1", "status": "approved"}))

        result = await client.get_claim_status("CLM-1", provider_id="1234567")

        assert result.success is True
        assert result.data["status"] == "approved"
        call = exchange.calls_to("/claims/CLM-1/status")[0]
        assert call.method == "GET"
        assert call.headers["X-Provider-ID"] == "1234567"

    @pytest.mark.asyncio
    async def test_upstream_auth_failure_is_generic_502(self, client, exchange, eligibility_request):
        exchange.token_status = 401

        result = await client.check_eligibility(eligibility_request)

        assert result.success is False
        assert result.code == "UPSTREAM_AUTH_ERROR"
        assert result.http_status == 502
        assert "invalid_client" not in result.error
        assert exchange.calls_to("/eligibility/check") == []

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_cleanly(self, exchange, metrics, eligibility_request):
        config = test_environment.make_config(nphies_client_id=None, nphies_client_secret=None)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(exchange))
        client = NphiesClient(config, http_client=http_client, metrics=metrics, sleep=no_sleep)

        result = await client.check_eligibility(eligibility_request)

        assert result.code == "UPSTREAM_AUTH_ERROR"
        assert exchange.calls == []

    @pytest.mark.asyncio
    async def test_rejected_token_is_invalidated(self, client, exchange, eligibility_request):
        exchange.queue("/eligibility/check",
                       httpx.Response(401, json={"error": "token expired"}),
                       httpx.Response(200, json={"eligible": True}))

        first = await client.check_eligibility(eligibility_request)
        second = await client.check_eligibility(eligibility_request)

        assert first.http_status == 502
        assert second.success is True
        assert len(exchange.token_calls) == 2
        assert exchange.calls_to("/eligibility/check")[1].headers["Authorization"] == "Bearer tok-2"

    def test_retry_predicate(self):
        assert should_retry_exchange_call(TransientNetworkError(), 1) is True
        assert should_retry_exchange_call(UpstreamBusinessError("E001", "timeout talking to payer", 504), 1) is False
        assert should_retry_exchange_call(OSError("Network is unreachable"), 1) is True
