"""
HTTP hardening shared by the gateway services.

- ``SecurityHeadersMiddleware`` stamps the usual browser security headers on
  every response (content sniffing, framing, referrer, transport security).
- ``BodySizeLimitMiddleware`` refuses request bodies over a byte limit with a
  413 before any route reads them. Declared ``Content-Length`` is checked
  up front; chunked bodies are counted while they arrive.
"""

from typing import Callable, Dict, Iterable, List

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shared.errors import PayloadTooLargeError
from shared.logging import get_logger

HSTS_VALUE = "max-age=15552000; includeSubDomains"

# API responses are JSON only; nothing may be framed, scripted or embedded
API_CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"


def security_headers(hsts_enabled: bool = True) -> Dict[str, str]:
    """Headers applied to every response."""
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "0",
        "X-DNS-Prefetch-Control": "off",
        "X-Download-Options": "noopen",
        "X-Permitted-Cross-Domain-Policies": "none",
        "Referrer-Policy": "no-referrer",
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
    }
    if hsts_enabled:
        headers["Strict-Transport-Security"] = HSTS_VALUE
    return headers


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to all responses.

    The content security policy is left off the interactive docs pages,
    which load their assets from a CDN.
    """

    def __init__(self, app, hsts_enabled: bool = True, docs_paths: Iterable[str] = ()):
        super().__init__(app)
        self.headers = security_headers(hsts_enabled)
        self.docs_paths = tuple(path for path in docs_paths if path)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        for header, value in self.headers.items():
            response.headers[header] = value
        if not any(request.url.path.startswith(path) for path in self.docs_paths):
            response.headers["Content-Security-Policy"] = API_CONTENT_SECURITY_POLICY

        return response


class BodySizeLimitMiddleware:
    """Rejects request bodies larger than ``max_body_bytes`` with 413."""

    def __init__(self, app: ASGIApp, max_body_bytes: int):
        self.app = app
        self.max_body_bytes = max_body_bytes
        self.logger = get_logger("security.body_limit")

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_body_bytes:
            await self._reject(scope, receive, send, int(declared))
            return

        # Read the body up to the limit, then replay it to the application
        buffered: List[Message] = []
        received = 0
        while True:
            message = await receive()
            buffered.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > self.max_body_bytes:
                await self._reject(scope, receive, send, received)
                return
            if not message.get("more_body", False):
                break

        async def replay() -> Message:
            if buffered:
                return buffered.pop(0)
            return await receive()

        await self.app(scope, replay, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send, size: int):
        self.logger.warning(
            "Request body over limit",
            path=scope.get("path"),
            size_bytes=size,
            limit_bytes=self.max_body_bytes,
        )
        error = PayloadTooLargeError(self.max_body_bytes)
        response = JSONResponse(
            status_code=error.status_code,
            content=error.to_response().model_dump(exclude_none=True),
        )
        await response(scope, receive, send)
