"""
Base service class for the NPHIES gateway.

Builds the FastAPI application with the pieces every deployment shares:
CORS, request correlation and timing, ``/health`` and ``/metrics``, and the
exception handlers that turn the shared error taxonomy into HTTP responses.
This is the only place where exceptions become status codes.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, GatewayException, ValidationError, utc_timestamp
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector
from shared.security import BodySizeLimitMiddleware, SecurityHeadersMiddleware


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[str]:
    """Flatten pydantic error entries into ``field.path: message`` strings."""
    messages = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(location)
        message = error.get("msg", "Invalid value")
        messages.append(f"{field}: {message}" if field else message)
    return messages


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)

        # Configure logging
        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name, version=self.config.version)

        # Create FastAPI app
        self.app = self._create_app()

        # Set up middleware
        self._setup_middleware()

        # Set up routes
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.startup()
            try:
                yield
            finally:
                await self.shutdown()

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"NPHIES Integration - {self.service_name.title()} Service",
            version=self.config.version,
            docs_url="/docs" if self.config.env == "development" else None,
            redoc_url="/redoc" if self.config.env == "development" else None,
            lifespan=lifespan,
        )

    async def startup(self):
        """Hook run when the application starts. Override in subclasses."""

    async def shutdown(self):
        """Hook run when the application stops. Override in subclasses."""

    def _setup_service_middleware(self):
        """Middleware that runs inside request correlation. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        self._setup_service_middleware()

        # Body size cap runs before any route or limiter reads the body
        self.app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=self.config.max_body_bytes)

        # CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
            expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
        )

        # Security headers on every response, including early rejections
        self.app.add_middleware(
            SecurityHeadersMiddleware,
            hsts_enabled=self.config.hsts_enabled,
            docs_paths=(self.app.docs_url, self.app.redoc_url),
        )

        # Request correlation and timing middleware
        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()

            try:
                # Process request
                response = await call_next(request)

                # Calculate duration
                duration = time.time() - start_time

                # Route template keeps label cardinality bounded
                route = request.scope.get("route")
                endpoint = getattr(route, "path", request.url.path)

                # Record metrics
                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    duration=duration
                )

                # Log request
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )

                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up common routes and error handlers."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "status": "healthy",
                "timestamp": utc_timestamp(),
                "version": self.config.version,
                "environment": self.config.env,
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=self.metrics.render(),
                media_type=CONTENT_TYPE_LATEST
            )

        # Error handlers
        @self.app.exception_handler(GatewayException)
        async def gateway_exception_handler(request: Request, exc: GatewayException):
            """Handle GatewayException and its subclasses."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log(
                "Request failed",
                code=exc.code,
                message=exc.message,
                details=exc.errors if isinstance(exc, ValidationError) else exc.details,
                status_code=exc.status_code,
                path=request.url.path,
            )
            self.metrics.record_error(exc.code)

            content = exc.to_response().model_dump(exclude_none=True)
            headers = None
            if isinstance(exc, AuthenticationError):
                content["action"] = "reauthenticate"
                headers = {"WWW-Authenticate": "Bearer"}
            return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            """Schema failures share the domain validation response shape."""
            return await gateway_exception_handler(
                request, ValidationError(format_validation_errors(exc.errors()))
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            content = {
                "success": False,
                "error": "Internal server error",
                "code": "INTERNAL_ERROR",
                "timestamp": utc_timestamp(),
            }
            if self.config.env == "development":
                content["message"] = str(exc)
            return JSONResponse(status_code=500, content=content)

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
