"""
NPHIES exchange client for Gateway.

Every operation follows the same shape: ensure a token, build the
authenticated request, call the exchange under the retry policy registered
for the operation, and normalize the outcome into a ``GatewayResponse``.
Upstream and transport failures never escape as exceptions; they come back
as ``success=False`` envelopes carrying the HTTP status the API surface
should answer with.

Callers are expected to run the matching domain validator first; the client
does not re-validate.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from shared.config import BaseConfig
from shared.errors import (
    GatewayException,
    TransientNetworkError,
    UpstreamAuthenticationError,
    UpstreamBusinessError,
    utc_timestamp,
)
from shared.logging import get_logger, get_request_id
from shared.metrics import MetricsCollector
from shared.retry import RetryManager, default_should_retry

from ..caching.token_cache import TokenCache, create_token_store
from ..domain.error_codes import suggestion_for
from ..domain.models import ClaimRequest, EligibilityRequest, GatewayResponse, PreAuthRequest


DEFAULT_TOKEN_LIFETIME = 3600

# operation -> (fallback code, fallback message) when upstream gives neither
OPERATION_DEFAULTS: Dict[str, Tuple[str, str]] = {
    "check_eligibility": ("ELIGIBILITY_ERROR", "Eligibility check failed"),
    "submit_claim": ("CLAIM_SUBMISSION_ERROR", "Claim submission failed"),
    "submit_preauth": ("PREAUTH_SUBMISSION_ERROR", "Pre-authorization submission failed"),
    "get_claim_status": ("CLAIM_STATUS_ERROR", "Claim status check failed"),
}

UNAVAILABLE_MESSAGE = "NPHIES service is temporarily unavailable. Please try again later."
UPSTREAM_AUTH_MESSAGE = "Unable to reach NPHIES at this time. Please try again later."


def should_retry_exchange_call(error: BaseException, attempt: int) -> bool:
    """Transport failures are retried; anything NPHIES actually answered is not."""
    if isinstance(error, TransientNetworkError):
        return True
    if isinstance(error, GatewayException):
        return False
    return default_should_retry(error, attempt)


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"result": body}


class NphiesClient:
    """Client for the NPHIES health information exchange."""

    def __init__(self, config: BaseConfig, *,
                 http_client: Optional[httpx.AsyncClient] = None,
                 token_cache: Optional[TokenCache] = None,
                 retry_manager: Optional[RetryManager] = None,
                 metrics: Optional[MetricsCollector] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self.base_url = config.nphies_api_url.rstrip("/")
        self.logger = get_logger("gateway.nphies_client")
        self.metrics = metrics
        self._sleep = sleep

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout)

        self.token_cache = token_cache or TokenCache(
            self._authenticate,
            create_token_store(config),
            refresh_ratio=config.token_refresh_ratio,
            metrics=metrics,
        )
        self.retry_manager = retry_manager or RetryManager.from_attempts(
            config.retry_policies, should_retry=should_retry_exchange_call
        )

    async def _authenticate(self) -> Tuple[str, float]:
        """Client-credentials grant against the exchange token endpoint."""
        if not self.config.has_exchange_credentials:
            self.logger.error("NPHIES credentials are not configured")
            raise UpstreamAuthenticationError(details={"reason": "missing_credentials"})

        try:
            response = await self.http_client.post(
                f"{self.base_url}/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self.config.nphies_client_id,
                    "client_secret": self.config.nphies_client_secret,
                    "scope": self.config.nphies_token_scope,
                },
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"network error during NPHIES authentication: {e}") from e
        except httpx.HTTPError as e:
            self.logger.error("NPHIES token response unreadable", error=str(e))
            raise UpstreamAuthenticationError(details={"reason": type(e).__name__}) from e

        if not response.is_success:
            self.logger.error(
                "NPHIES authentication failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamAuthenticationError(details={"status_code": response.status_code})

        body = _json_body(response)
        token = body.get("access_token")
        if not token:
            self.logger.error("NPHIES token response missing access_token")
            raise UpstreamAuthenticationError(details={"reason": "missing_access_token"})

        try:
            expires_in = float(body.get("expires_in", DEFAULT_TOKEN_LIFETIME))
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME
        return token, expires_in

    async def _send(self, operation: str, method: str, path: str, *,
                    payload: Optional[Dict[str, Any]] = None,
                    provider_id: Optional[str] = None,
                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """One authenticated attempt. Raises the shared error taxonomy."""
        token = await self.token_cache.get_token()

        headers = {"Authorization": f"Bearer {token}"}
        if provider_id:
            headers["X-Provider-ID"] = provider_id
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self.http_client.request(
                method, f"{self.base_url}{path}", json=payload, headers=headers
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"network error calling NPHIES {path}: {e}") from e
        except httpx.HTTPError as e:
            # answered, but the response body could not be decoded
            default_code, default_message = OPERATION_DEFAULTS[operation]
            raise UpstreamBusinessError(
                code=default_code,
                message=default_message,
                upstream_status=502,
                details={"reason": type(e).__name__},
            ) from e

        if response.status_code == 401:
            await self.token_cache.invalidate()
            self.logger.error("NPHIES rejected the access token", operation=operation)
            raise UpstreamAuthenticationError(
                "NPHIES rejected the access token", details={"status_code": 401}
            )

        body = _json_body(response)
        if response.is_error:
            default_code, default_message = OPERATION_DEFAULTS[operation]
            raise UpstreamBusinessError(
                code=str(body.get("code") or default_code),
                message=str(body.get("error") or default_message),
                upstream_status=response.status_code,
                details={"upstream_status": response.status_code},
            )
        return body

    def _on_retry(self, operation: str) -> Callable[[int, BaseException], None]:
        def _record(attempt: int, error: BaseException):
            if self.metrics:
                self.metrics.increment_counter("nphies_retries_total", operation=operation)
        return _record

    async def _execute(self, operation: str, call: Callable[[], Awaitable[Dict[str, Any]]],
                       id_field: Optional[str] = None) -> GatewayResponse:
        started = time.perf_counter()
        try:
            body = await self.retry_manager.run(
                operation, call, sleep=self._sleep, on_retry=self._on_retry(operation)
            )
        except UpstreamBusinessError as e:
            outcome = "rejected"
            self.logger.warning(
                "NPHIES rejected request",
                operation=operation,
                code=e.code,
                upstream_status=e.upstream_status,
                error=e.message,
            )
            envelope = GatewayResponse(
                success=False,
                error=e.message,
                code=e.code,
                suggestion=suggestion_for(e.code),
                timestamp=utc_timestamp(),
            ).with_status(e.status_code)
        except UpstreamAuthenticationError as e:
            outcome = "auth_failed"
            self.logger.error(
                "NPHIES authentication error", operation=operation, error=e.message, details=e.details
            )
            envelope = GatewayResponse(
                success=False,
                error=UPSTREAM_AUTH_MESSAGE,
                code=e.code,
                timestamp=utc_timestamp(),
            ).with_status(e.status_code)
        except TransientNetworkError as e:
            outcome = "unavailable"
            self.logger.error("NPHIES unreachable, retries exhausted", operation=operation, error=e.message)
            envelope = GatewayResponse(
                success=False,
                error=UNAVAILABLE_MESSAGE,
                code=e.code,
                timestamp=utc_timestamp(),
            ).with_status(e.status_code)
        else:
            outcome = "success"
            envelope = GatewayResponse(success=True, data=body, timestamp=utc_timestamp())
            if id_field == "claim_id":
                envelope.claim_id = body.get("claimId")
            elif id_field == "pre_auth_id":
                envelope.pre_auth_id = body.get("preAuthId")

        duration = time.perf_counter() - started
        if self.metrics:
            self.metrics.record_nphies_call(operation, outcome, duration)
        self.logger.info(
            "NPHIES call completed",
            operation=operation,
            outcome=outcome,
            duration_ms=round(duration * 1000, 2),
        )
        return envelope

    async def check_eligibility(self, request: EligibilityRequest) -> GatewayResponse:
        async def _call():
            return await self._send(
                "check_eligibility", "POST", "/eligibility/check",
                payload=request.to_wire(), provider_id=request.provider_id,
            )
        return await self._execute("check_eligibility", _call)

    async def submit_claim(self, request: ClaimRequest) -> GatewayResponse:
        async def _call():
            return await self._send(
                "submit_claim", "POST", "/claims/submit",
                payload=request.to_wire(), provider_id=request.provider_info.id,
            )
        return await self._execute("submit_claim", _call, id_field="claim_id")

    async def submit_preauth(self, request: PreAuthRequest) -> GatewayResponse:
        # requestId travels as a header, not in the submitted document
        payload = request.model_dump(by_alias=True, exclude_none=True, exclude={"request_id"})

        async def _call():
            return await self._send(
                "submit_preauth", "POST", "/preauth/submit",
                payload=payload, provider_id=request.provider_id,
                idempotency_key=request.request_id,
            )
        return await self._execute("submit_preauth", _call, id_field="pre_auth_id")

    async def get_claim_status(self, claim_id: str, provider_id: Optional[str] = None) -> GatewayResponse:
        path = f"/claims/{quote(claim_id, safe='')}/status"

        async def _call():
            return await self._send("get_claim_status", "GET", path, provider_id=provider_id)
        return await self._execute("get_claim_status", _call)

    async def aclose(self):
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.token_cache.close()
