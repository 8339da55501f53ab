"""
Mock NPHIES exchange providing token, eligibility, claim and pre-authorization endpoints.

Answers are deterministic so the gateway can be exercised end to end:
- patient ``0000000000`` is unknown to the exchange
- insurance IDs starting with ``EXP`` belong to inactive policies (E002)
- resubmitting an identical claim is a duplicate (E005)
- pre-authorizations replay the first answer for a repeated ``Idempotency-Key``
"""

import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from service_gateway.app.domain.models import (
    ClaimResult,
    CoverageDetails,
    EligibilityResult,
    PreAuthResult,
)
from shared.logging import get_logger

UNKNOWN_PATIENT_ID = "0000000000"
INACTIVE_POLICY_PREFIX = "EXP"
AUTO_APPROVE_LIMIT = 5000.0


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


def _payload(result) -> Dict[str, Any]:
    return result.model_dump(by_alias=True, exclude_none=True)


class MockNphiesServer:
    """Mock NPHIES exchange implementation."""

    def __init__(self, client_id: str = "test-client", client_secret: str = "test-secret",
                 token_lifetime: int = 3600, port: int = 8090):
        self.port = port
        self.logger = get_logger("mock.nphies")
        self.app = FastAPI(title="Mock NPHIES", version="1.0.0")

        self.client_id = client_id
        self.client_secret = client_secret
        self.token_lifetime = token_lifetime

        self.issued_tokens: set = set()
        self.token_requests = 0
        self.requests: List[Dict[str, Any]] = []

        self.claims: Dict[str, ClaimResult] = {}
        self._claim_fingerprints: Dict[str, str] = {}
        self.preauths: Dict[str, Dict[str, Any]] = {}
        self._idempotent_preauths: Dict[str, Dict[str, Any]] = {}

        self._setup_routes()

    def revoke_tokens(self):
        """Forget every issued token so the next call answers 401."""
        self.issued_tokens.clear()

    def _check_bearer(self, request: Request) -> Optional[JSONResponse]:
        self.requests.append({
            "method": request.method,
            "path": request.url.path,
            "headers": dict(request.headers),
        })
        authorization = request.headers.get("Authorization", "")
        token = authorization[7:] if authorization.startswith("Bearer ") else ""
        if token not in self.issued_tokens:
            return _error(401, "UNAUTHORIZED", "Invalid access token")
        return None

    def _setup_routes(self):
        """Set up mock NPHIES routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-nphies",
                "message": "Mock NPHIES exchange for gateway development",
                "version": "1.0.0",
            }

        @self.app.post("/oauth/token")
        async def token_endpoint(request: Request):
            """Client credentials grant."""
            self.token_requests += 1
            body = await request.json()
            if body.get("grant_type") != "client_credentials":
                return _error(400, "UNSUPPORTED_GRANT", "Unsupported grant type")
            if body.get("client_id") != self.client_id or body.get("client_secret") != self.client_secret:
                return _error(401, "INVALID_CLIENT", "Invalid client credentials")

            token = f"mock-token-{uuid.uuid4().hex}"
            self.issued_tokens.add(token)
            return {
                "access_token": token,
                "token_type": "Bearer",
                "expires_in": self.token_lifetime,
                "scope": body.get("scope", ""),
            }

        @self.app.post("/eligibility/check")
        async def check_eligibility(request: Request):
            """Eligibility check."""
            denied = self._check_bearer(request)
            if denied:
                return denied
            body = await request.json()

            if body.get("patientId") == UNKNOWN_PATIENT_ID:
                return _error(404, "PATIENT_NOT_FOUND", "Patient not found")
            if str(body.get("insuranceId", "")).startswith(INACTIVE_POLICY_PREFIX):
                return _error(422, "E002", "Insurance policy is not active")

            return _payload(EligibilityResult(
                eligible=True,
                coverage_details=CoverageDetails(
                    policy_id=body.get("insuranceId"),
                    coverage_percentage=80,
                    deductible=500,
                    copayment=50,
                    max_benefit=100000,
                ),
                limitations=["Dental services limited to 2 visits per year"],
                expiry_date="2025-12-31",
            ))

        @self.app.post("/claims/submit")
        async def submit_claim(request: Request):
            """Claim submission."""
            denied = self._check_bearer(request)
            if denied:
                return denied
            body = await request.json()

            fingerprint = self._claim_fingerprint(body)
            if fingerprint in self._claim_fingerprints:
                return _error(409, "E005", "Duplicate claim submission detected")

            sequence = len(self.claims) + 1
            claim_id = f"CLM-{sequence:06d}"
            claim = ClaimResult(claim_id=claim_id, status="submitted", reference=f"NPHIES-REF-{sequence:06d}")
            self.claims[claim_id] = claim
            self._claim_fingerprints[fingerprint] = claim_id
            return _payload(claim)

        @self.app.post("/preauth/submit")
        async def submit_preauth(request: Request):
            """Pre-authorization submission."""
            denied = self._check_bearer(request)
            if denied:
                return denied
            body = await request.json()

            idempotency_key = request.headers.get("Idempotency-Key")
            if idempotency_key and idempotency_key in self._idempotent_preauths:
                return self._idempotent_preauths[idempotency_key]

            sequence = len(self.preauths) + 1
            approved = body.get("urgency") == "emergency" or float(body.get("estimatedCost", 0)) <= AUTO_APPROVE_LIMIT
            result = _payload(PreAuthResult(
                pre_auth_id=f"PA-{sequence:06d}",
                status="approved" if approved else "pending",
                reference=f"NPHIES-PA-{sequence:06d}",
                approved_amount=body.get("estimatedCost") if approved else None,
                valid_until="2025-12-31" if approved else None,
            ))

            self.preauths[result["preAuthId"]] = result
            if idempotency_key:
                self._idempotent_preauths[idempotency_key] = result
            return result

        @self.app.get("/claims/{claim_id}/status")
        async def claim_status(claim_id: str, request: Request):
            """Claim status lookup."""
            denied = self._check_bearer(request)
            if denied:
                return denied
            claim = self.claims.get(claim_id)
            if claim is None:
                return _error(404, "CLAIM_NOT_FOUND", "Claim not found")
            return _payload(claim)

    @staticmethod
    def _claim_fingerprint(body: Dict[str, Any]) -> str:
        patient = (body.get("patientInfo") or {}).get("id", "")
        services = ",".join(
            f"{service.get('code')}@{service.get('date')}" for service in body.get("services") or []
        )
        return f"{patient}|{services}|{body.get('totalAmount')}"


def create_app():
    """Create mock NPHIES application."""
    server = MockNphiesServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8090)
