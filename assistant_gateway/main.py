"""Main FastAPI application for the assistant gateway."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .auth import CredentialValidator, get_api_key_from_request
from .config import GatewayConfig, get_config, set_config
from .errors import Forbidden, GatewayError, LimiterUnavailable
from .gateway import ENDPOINTS, BackendFactory, GatewayHandler, ServiceProvider
from .metrics import MetricsCollector, NamedCounters, RequestLogger
from .models import HealthStatus, RateLimitStatus
from .rate_limiter import TokenBucketLimiter
from .store import BucketStore, RedisBucketStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def _read_json(request: Request) -> Any:
    """Decoded JSON body, or None when it is absent or not JSON."""
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _error_response(error: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_body())


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    store: Optional[BucketStore] = None,
    backend_factory: Optional[BackendFactory] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Optional configuration (read from the environment if not provided)
        store: Bucket store (Redis from configuration if not provided)
        backend_factory: Builds the AI backend from configuration
        metrics: Metrics collector (a fresh registry if not provided)

    Returns:
        Configured FastAPI application
    """
    if config is not None:
        set_config(config)
    config = get_config()
    configure_logging(config.log_level)

    if store is None:
        store = RedisBucketStore.from_config(config)
    if metrics is None:
        metrics = MetricsCollector.from_config(config)
    counters = NamedCounters(debug=config.metrics_debug)
    admin_credentials = CredentialValidator(config.admin_key)
    limiter = TokenBucketLimiter.from_config(store, config)
    services = ServiceProvider(config, metrics, backend_factory)
    handler = GatewayHandler(
        credentials=CredentialValidator(config.service_api_key),
        limiter=limiter,
        metrics=metrics,
        counters=counters,
        services=services,
        request_logger=RequestLogger(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(
            "Assistant gateway started",
            extra={"environment": config.environment.value, "fail_open": limiter.fail_open},
        )
        if not config.service_api_key:
            logger.warning("SERVICE_API_KEY is not set; every request will be rejected")
        if config.admin_api_key and config.admin_key is None:
            logger.warning("ADMIN_API_KEY equals SERVICE_API_KEY; admin routes are disabled")

        yield

        logger.info("Shutting down assistant gateway...")
        await services.aclose()
        await store.close()
        logger.info("Assistant gateway shutdown complete")

    app = FastAPI(
        title="Assistant Gateway",
        description="Admission control and metering in front of the navigation assistant's AI backend",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.limiter = limiter
    app.state.metrics = metrics
    app.state.counters = counters
    app.state.handler = handler

    def register(path: str, endpoint_name: str) -> None:
        endpoint = ENDPOINTS[endpoint_name]

        async def route(request: Request) -> JSONResponse:
            api_key = get_api_key_from_request(request, config.api_key_header)
            body = await _read_json(request)
            result = await handler.handle(endpoint, api_key, body)
            return JSONResponse(
                status_code=result.status_code,
                content=result.body,
                headers=result.headers,
            )

        route.__name__ = f"post_{endpoint_name.replace('-', '_')}"
        app.add_api_route(path, route, methods=["POST"], tags=["Assistant"])

    register("/api/analyze", "analyze")
    register("/api/translate", "translate")
    register("/api/voice-command", "voice-command")
    register("/api/form-help", "form-help")

    # Health and readiness endpoints
    @app.get("/health", tags=["Health"])
    async def health_check() -> HealthStatus:
        """Check gateway health."""
        return HealthStatus(
            status="healthy",
            uptime_seconds=metrics.get_uptime_seconds(),
            environment=config.environment.value,
            backend_configured=services.configured,
        )

    @app.get("/ready", tags=["Health"])
    async def readiness_check():
        """Check if gateway is ready to accept traffic."""
        return {"status": "ready"}

    # Scraped by the collector; neither authenticated nor rate limited.
    @app.get("/metrics", tags=["Metrics"])
    async def get_metrics() -> Response:
        """Prometheus exposition of request, latency and cost metrics."""
        return Response(content=metrics.snapshot(), media_type=metrics.content_type)

    @app.get("/metrics/counters", tags=["Metrics"])
    async def get_named_counters(request: Request):
        """Named counters as JSON."""
        try:
            handler.authenticate(get_api_key_from_request(request, config.api_key_header))
        except GatewayError as e:
            return _error_response(e)
        return counters.snapshot()

    # Rate limit management endpoints
    @app.get("/rate-limits/status", tags=["Rate Limits"])
    async def get_rate_limit_status(request: Request):
        """Get rate limit status for the calling key."""
        try:
            key = handler.authenticate(get_api_key_from_request(request, config.api_key_header))
        except GatewayError as e:
            return _error_response(e)

        try:
            status: RateLimitStatus = await limiter.get_status(key)
        except LimiterUnavailable:
            return JSONResponse(status_code=503, content={"error": "Rate limiter not available"})
        return status

    # Requires the admin credential; the service key is never accepted.
    @app.post("/rate-limits/reset/{client_key}", tags=["Rate Limits"])
    async def reset_rate_limit(client_key: str, request: Request):
        """Reset a caller's bucket to full capacity."""
        if not admin_credentials.validate(request.headers.get(config.admin_key_header)):
            return _error_response(Forbidden())

        if not await limiter.reset(client_key):
            return JSONResponse(status_code=503, content={"error": "Rate limiter not available"})
        logger.info("Rate limit reset", extra={"key": client_key})
        return {"status": "reset", "client_key": client_key}

    return app


def run_server(host: str = "0.0.0.0", port: int = 8080):
    """Run the server with uvicorn."""
    import uvicorn
    uvicorn.run("assistant_gateway.main:create_app", host=host, port=port, factory=True)


if __name__ == "__main__":
    run_server()
