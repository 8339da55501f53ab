"""
API Gateway service for NPHIES integration.

Routes provider requests to the NPHIES exchange: callers log in for a
session token, submissions are parsed and validated before any network
call, and every exchange outcome comes back as a ``GatewayResponse``.
"""

from typing import Optional

import httpx
from fastapi import Depends, Path, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, GatewayException, ValidationError

from .adapters.ai_proxy import AICompletionProxy
from .adapters.nphies_client import NphiesClient
from .auth.session import SessionAuthenticator, SessionContext
from .domain.models import (
    ClaimRequest,
    EligibilityRequest,
    GatewayResponse,
    LoginRequest,
    LoginResponse,
    PreAuthRequest,
    UserInfo,
)
from .domain.validators import (
    ValidationResult,
    validate_claim_request,
    validate_eligibility_request,
    validate_preauth_request,
)
from .ratelimit.fixed_window import (
    FixedWindowRateLimiter,
    InMemoryWindowStore,
    RateLimitMiddleware,
    RedisWindowStore,
)

SERVICE_NAME = "gateway"
DEFAULT_PORT = 3001
CLAIM_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, *,
                 http_client: Optional[httpx.AsyncClient] = None,
                 ai_http_client: Optional[httpx.AsyncClient] = None,
                 nphies_client: Optional[NphiesClient] = None):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config)
        self.session_auth = SessionAuthenticator(self.config)
        self.nphies_client = nphies_client or NphiesClient(
            self.config, http_client=http_client, metrics=self.metrics
        )
        self.ai_proxy = AICompletionProxy(self.config, http_client=ai_http_client)

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def _setup_service_middleware(self):
        if self.config.token_cache_backend == "redis":
            store = RedisWindowStore(self.config.redis_url)
        else:
            store = InMemoryWindowStore()
        self.rate_limiter = FixedWindowRateLimiter(
            limit=self.config.rate_limit_requests,
            window_seconds=self.config.rate_limit_window_seconds,
            store=store,
        )
        if self.config.rate_limit_enabled:
            self.app.add_middleware(
                RateLimitMiddleware, rate_limiter=self.rate_limiter, metrics=self.metrics
            )

    async def startup(self):
        if not self.config.has_exchange_credentials:
            self.logger.warning("NPHIES credentials not configured; exchange calls will fail")
        self.logger.info(
            "Gateway started",
            environment=self.config.env,
            nphies_api_url=self.config.nphies_api_url,
            token_cache_backend=self.config.token_cache_backend,
        )

    async def shutdown(self):
        await self.nphies_client.aclose()
        await self.ai_proxy.aclose()
        await self.rate_limiter.close()

    def _require_valid(self, operation: str, result: ValidationResult):
        """Stop the request before any exchange call when validation failed."""
        if not result.is_valid:
            self.metrics.increment_counter("validation_failures_total", operation=operation)
            raise ValidationError(result.errors)

    @staticmethod
    def _envelope_response(envelope: GatewayResponse) -> JSONResponse:
        return JSONResponse(
            status_code=envelope.http_status,
            content=envelope.model_dump(by_alias=True, exclude_none=True),
        )

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        async def require_session(request: Request) -> SessionContext:
            return await self.session_auth.authenticate(request)

        @self.app.get("/")
        async def root():
            """Service banner."""
            return {
                "service": "NPHIES Integration Gateway",
                "message": "Saudi NPHIES health insurance gateway is running",
                "version": self.config.version,
            }

        @self.app.post("/auth/login")
        async def login(request: Request):
            """Exchange provider credentials for a session token."""
            try:
                credentials = LoginRequest.model_validate(await request.json())
            except ValueError as exc:
                raise GatewayException("INVALID_REQUEST", "Invalid request format", status_code=400) from exc

            user = self.session_auth.check_credentials(credentials.username, credentials.password)
            if user is None:
                self.logger.warning("Login rejected", username=credentials.username)
                raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")

            token = self.session_auth.issue_token(user)
            self.logger.info("Login succeeded", username=user["username"], provider_id=user["providerId"])
            return LoginResponse(token=token, user=UserInfo.model_validate(user)).model_dump(by_alias=True)

        @self.app.post("/api/nphies/eligibility")
        async def check_eligibility(body: EligibilityRequest,
                                    session: SessionContext = Depends(require_session)):
            """Check patient insurance eligibility."""
            self._require_valid("check_eligibility", validate_eligibility_request(body))
            return self._envelope_response(await self.nphies_client.check_eligibility(body))

        @self.app.post("/api/nphies/claims")
        async def submit_claim(body: ClaimRequest,
                               session: SessionContext = Depends(require_session)):
            """Submit an insurance claim."""
            self._require_valid("submit_claim", validate_claim_request(body))
            return self._envelope_response(await self.nphies_client.submit_claim(body))

        @self.app.post("/api/nphies/preauth")
        async def submit_preauth(body: PreAuthRequest,
                                 session: SessionContext = Depends(require_session)):
            """Submit a pre-authorization request."""
            self._require_valid("submit_preauth", validate_preauth_request(body))
            return self._envelope_response(await self.nphies_client.submit_preauth(body))

        @self.app.get("/api/nphies/claims/{claim_id}/status")
        async def get_claim_status(claim_id: str = Path(..., pattern=CLAIM_ID_PATTERN),
                                   session: SessionContext = Depends(require_session)):
            """Look up the adjudication status of a claim."""
            envelope = await self.nphies_client.get_claim_status(claim_id, provider_id=session.provider_id)
            return self._envelope_response(envelope)

        @self.app.post("/api/copilotkit/{path:path}")
        async def copilotkit_proxy(path: str, request: Request):
            """Forward chat assistant traffic to the AI completion service."""
            body = await request.body()
            return await self.ai_proxy.forward(body, request.headers.get("content-type"))


def create_app(config: Optional[ServiceConfig] = None,
               http_client: Optional[httpx.AsyncClient] = None):
    """Create FastAPI application."""
    service = GatewayService(config, http_client=http_client)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
