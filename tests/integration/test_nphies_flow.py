"""
Integration tests for the gateway against the mock NPHIES exchange.

The gateway's outbound client is wired to the mock exchange through an
in-process ASGI transport, so every hop (login, session check, validation,
token grant, exchange call, envelope) runs for real.
"""

import pytest
import httpx
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from mocks.nphies.server import MockNphiesServer
from service_gateway.app.main import GatewayService
from shared.test_helpers import test_data_factory, test_environment


class TestNphiesFlow:
    """End-to-end flows through the gateway."""

    @pytest.fixture
    def exchange(self):
        return MockNphiesServer()

    @pytest.fixture
    def gateway(self, exchange):
        http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=exchange.app))
        return GatewayService(test_environment.make_config(), http_client=http_client)

    @pytest.fixture
    def client(self, gateway):
        with TestClient(gateway.app) as test_client:
            yield test_client

    @pytest.fixture
    def auth_headers(self, client):
        response = client.post("/auth/login", json={"username": "demo@healthcare.sa", "password": "demo123"})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.json()['token']}"}

    def test_eligibility_success(self, client, auth_headers, exchange):
        response = client.post("/api/nphies/eligibility", json={
            "patientId": "1234567890",
            "insuranceId": "ABC123456",
            "providerId": "1234567",
            "serviceDate": "2024-01-15",
        }, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert isinstance(data["data"]["coverageDetails"], dict)
        assert "timestamp" in data

        forwarded = exchange.requests[-1]["headers"]
        assert forwarded["x-provider-id"] == "1234567"
        assert forwarded["x-request-id"] == response.headers["X-Request-ID"]

    def test_eligibility_validation_failure(self, client, auth_headers, exchange):
        response = client.post("/api/nphies/eligibility", json={
            "patientId": "123",
            "insuranceId": "AB",
            "providerId": "12345678",
            "serviceDate": "invalid-date",
        }, headers=auth_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Validation failed"
        assert len(data["details"]) >= 4
        # nothing reached the exchange, not even a token grant
        assert exchange.token_requests == 0
        assert exchange.requests == []

    @pytest.mark.parametrize("method, path", [
        ("post", "/api/nphies/eligibility"),
        ("post", "/api/nphies/claims"),
        ("post", "/api/nphies/preauth"),
        ("get", "/api/nphies/claims/CLM-000001/status"),
    ])
    def test_protected_routes_require_token(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_token_cached_across_requests(self, client, auth_headers, exchange):
        for _ in range(3):
            response = client.post("/api/nphies/eligibility", json=test_data_factory.valid_eligibility_request(),
                                   headers=auth_headers)
            assert response.status_code == 200

        assert exchange.token_requests == 1

    def test_inactive_policy_business_error(self, client, auth_headers):
        response = client.post(
            "/api/nphies/eligibility",
            json=test_data_factory.valid_eligibility_request(insuranceId="EXP123456"),
            headers=auth_headers,
        )

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "E002"
        assert data["suggestion"] == "Verify policy status and coverage dates"

    def test_unknown_patient_passes_upstream_code(self, client, auth_headers):
        response = client.post(
            "/api/nphies/eligibility",
            json=test_data_factory.valid_eligibility_request(patientId="0000000000"),
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "PATIENT_NOT_FOUND"

    def test_claim_lifecycle(self, client, auth_headers):
        submitted = client.post("/api/nphies/claims", json=test_data_factory.valid_claim_request(),
                                headers=auth_headers)
        assert submitted.status_code == 200
        claim_id = submitted.json()["claimId"]
        assert submitted.json()["data"]["reference"].startswith("NPHIES-REF-")

        status = client.get(f"/api/nphies/claims/{claim_id}/status", headers=auth_headers)
        assert status.status_code == 200
        assert status.json()["data"]["status"] == "submitted"

        duplicate = client.post("/api/nphies/claims", json=test_data_factory.valid_claim_request(),
                                headers=auth_headers)
        assert duplicate.status_code == 422
        assert duplicate.json()["code"] == "E005"

    def test_unknown_claim_status(self, client, auth_headers):
        response = client.get("/api/nphies/claims/CLM-999999/status", headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["code"] == "CLAIM_NOT_FOUND"

    def test_preauth_idempotent_replay(self, client, auth_headers, exchange):
        body = test_data_factory.valid_preauth_request(requestId="req-42")

        first = client.post("/api/nphies/preauth", json=body, headers=auth_headers)
        second = client.post("/api/nphies/preauth", json=body, headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["preAuthId"] == second.json()["preAuthId"]
        assert len(exchange.preauths) == 1

    def test_revoked_token_recovers_on_next_call(self, client, auth_headers, exchange):
        assert client.post("/api/nphies/eligibility", json=test_data_factory.valid_eligibility_request(),
                           headers=auth_headers).status_code == 200

        exchange.revoke_tokens()
        rejected = client.post("/api/nphies/eligibility", json=test_data_factory.valid_eligibility_request(),
                               headers=auth_headers)
        assert rejected.status_code == 502
        assert rejected.json()["code"] == "UPSTREAM_AUTH_ERROR"

        recovered = client.post("/api/nphies/eligibility", json=test_data_factory.valid_eligibility_request(),
                                headers=auth_headers)
        assert recovered.status_code == 200
        assert exchange.token_requests == 2

    def test_wrong_exchange_credentials(self, exchange):
        config = test_environment.make_config(nphies_client_secret="wrong")
        http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=exchange.app))
        gateway = GatewayService(config, http_client=http_client)

        with TestClient(gateway.app) as client:
            login = client.post("/auth/login", json={"username": "demo@healthcare.sa", "password": "demo123"})
            headers = {"Authorization": f"Bearer {login.json()['token']}"}
            response = client.post("/api/nphies/eligibility", json=test_data_factory.valid_eligibility_request(),
                                   headers=headers)

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "UPSTREAM_AUTH_ERROR"
        assert "secret" not in body["error"].lower()

    def test_metrics_reflect_exchange_calls(self, client, auth_headers, gateway):
        client.post("/api/nphies/eligibility", json=test_data_factory.valid_eligibility_request(),
                    headers=auth_headers)

        assert gateway.metrics.sample_value(
            "nphies_requests_total", operation="check_eligibility", outcome="success"
        ) == 1.0
        assert "token_cache_total" in client.get("/metrics").text
