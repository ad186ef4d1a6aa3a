"""
Base service class for Bhandara platform services.
"""

import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from platform_shared.config import PlatformSettings, get_settings
from platform_shared.context import ContextStore, RequestContext, generate_request_id, request_context
from platform_shared.errors import PlatformError
from platform_shared.http_auth import REQUEST_ID_HEADER
from platform_shared.logging import configure_logging, get_logger
from platform_shared.metrics import MetricsCollector, get_metrics_collector


def error_envelope(exc: PlatformError, request_id: Optional[str]) -> Dict[str, Any]:
    """Render an error in the ``{data, error}`` response envelope."""
    return {"data": None, "error": exc.to_response(request_id).model_dump(mode="json")}


class BaseService:
    """Base service class with common functionality."""

    def __init__(
        self,
        service_name: str,
        settings: Optional[PlatformSettings] = None,
        store: Optional[ContextStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.service_name = service_name
        self.config = settings or get_settings(service_name=service_name)
        self.store = store or request_context
        self.logger = get_logger(service_name)
        self.metrics = metrics or get_metrics_collector(service_name)
        self._start_time = time.time()

        # Configure logging
        configure_logging(service_name, self.config.log_level, self.store)

        # Create FastAPI app
        self.app = self._create_app()

        # Set up middleware
        self._setup_middleware()

        # Set up routes
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Bhandara Platform - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        # CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        # Request scope middleware
        @self.app.middleware("http")
        async def request_scope(request: Request, call_next):
            request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
            context = RequestContext(request_id=request_id)
            start_time = time.time()
            context.timings["start"] = start_time

            with self.store.scope(context):
                try:
                    response = await call_next(request)
                except Exception as e:
                    # rendered inside the scope so the request id is still bound
                    context.record_error(str(e) or type(e).__name__)
                    response = self._internal_error_response(e, request_id)
                else:
                    if response.status_code >= 500:
                        context.record_error(f"HTTP {response.status_code}")

                duration = time.time() - start_time
                context.record_timing("total_ms", duration * 1000)

                # Record metrics
                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
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

            response.headers[REQUEST_ID_HEADER] = request_id
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
                return {
                    "service": self.service_name,
                    "status": "ok",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            except PlatformError as e:
                self.logger.error("Health check failed", error=e.message)
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                        "error": e.message
                    }
                )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(
                content=self.metrics.render_latest(),
                media_type=CONTENT_TYPE_LATEST
            )

        # Error handlers
        @self.app.exception_handler(PlatformError)
        async def platform_error_handler(request: Request, exc: PlatformError):
            """Handle PlatformError."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log(
                "Platform error",
                kind=exc.kind.value,
                message=exc.message,
                details=exc.details
            )
            self.metrics.record_error(exc.kind.value)
            return JSONResponse(
                status_code=exc.status_code,
                content=error_envelope(exc, self.store.get_request_id())
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            return self._internal_error_response(exc, self.store.get_request_id())

    def _internal_error_response(self, exc: Exception, request_id: Optional[str]) -> JSONResponse:
        """Log an unexpected failure and render it as a 500 envelope."""
        self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
        self.metrics.record_error("INTERNAL_ERROR")
        return JSONResponse(
            status_code=500,
            content={
                "data": None,
                "error": {
                    "request_id": request_id,
                    "kind": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "status": 500,
                    "details": {}
                }
            },
            headers={REQUEST_ID_HEADER: request_id} if request_id else None
        )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
