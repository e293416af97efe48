"""
vastunwrap Proxy Server – VAST wrapper unwrapping for OpenRTB bid traffic.

Main entry point for the bid proxy (POST /openrtb2), the single ad-tag
resolver (GET /unwrap) and the health / metrics endpoints.
"""

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vastunwrap.common.cache import ResolutionCache
from vastunwrap.common.config import Settings, get_settings
from vastunwrap.common.exceptions import UnwrapError
from vastunwrap.common.logger import clear_log_context, get_logger, log_context, setup_logging
from vastunwrap.common.utils import generate_request_id
from vastunwrap.proxy_server.dependencies import ProxyServices, build_services
from vastunwrap.proxy_server.middleware.metrics import (
    MetricsMiddleware,
    metrics_endpoint,
    record_fetch_rejection,
)
from vastunwrap.proxy_server.routers import health, openrtb, unwrap
from vastunwrap.schemas.response import ErrorResponse

logger = get_logger(__name__)


async def _sweep_cache(cache: ResolutionCache, interval_ms: int) -> None:
    """Periodically evict expired resolution cache entries."""
    while True:
        await asyncio.sleep(interval_ms / 1000)
        cache.sweep()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    services: ProxyServices = app.state.services
    settings = services.settings

    # Startup
    logger.info(
        "Starting vastunwrap proxy",
        version=settings.app_version,
        env=settings.env,
        max_depth=settings.resolver.max_depth,
        allowlist=settings.upstream.allowlist,
    )

    sweeper: asyncio.Task | None = None
    if settings.resolver.cache_sweep_interval_ms > 0:
        sweeper = asyncio.create_task(
            _sweep_cache(services.cache, settings.resolver.cache_sweep_interval_ms)
        )

    yield

    # Shutdown
    logger.info("Shutting down vastunwrap proxy")
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await services.aclose()
    logger.info("vastunwrap proxy stopped")


def create_app(
    settings: Settings | None = None,
    services: ProxyServices | None = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        settings: Settings to run with (defaults to ``get_settings()``).
        services: Pre-built component graph (tests inject mock transports
            and DNS through ``build_services``).
    """
    if services is not None:
        settings = services.settings
    settings = settings or get_settings()
    setup_logging(settings)
    services = services or build_services(settings)

    app = FastAPI(
        title="vastunwrap",
        description="VAST wrapper-unwrapping OpenRTB bid proxy",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["content-type", "x-bid-endpoint", "x-bid-endpoint-b64"],
        expose_headers=["X-Unwrap-Depth", "X-Unwrap-Cache", "X-Request-ID"],
    )

    if settings.monitoring.enabled:
        # Prometheus metrics middleware
        app.add_middleware(MetricsMiddleware)

        # Prometheus metrics endpoint
        app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], tags=["monitoring"])

    # Request logging middleware
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next: Any) -> Any:
        """Log all requests with timing."""
        request_id = generate_request_id()
        request.state.request_id = request_id
        log_context(request_id=request_id)

        start_time = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        # Add headers
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        clear_log_context()

        return response

    # Exception handlers
    @app.exception_handler(UnwrapError)
    async def unwrap_error_handler(
        request: Request,
        exc: UnwrapError,
    ) -> JSONResponse:
        """Handle unwrap errors."""
        logger.warning(
            "Request refused",
            error=exc.__class__.__name__,
            reason=exc.reason,
            message=exc.message,
            details=exc.details,
        )
        record_fetch_rejection(exc.reason)

        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.__class__.__name__,
                message=exc.message,
                reason=exc.reason,
                details=exc.details or None,
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def general_error_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle unexpected errors."""
        logger.error(
            "Unexpected error",
            error=str(exc),
            error_type=exc.__class__.__name__,
        )

        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="InternalServerError",
                message="An unexpected error occurred",
            ).model_dump(exclude_none=True),
        )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(openrtb.router, tags=["openrtb"])
    app.include_router(unwrap.router, tags=["unwrap"])

    return app


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "vastunwrap.proxy_server.main:app",
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        reload=settings.server.reload,
        log_level=settings.logging.level.lower(),
    )


# Create app instance
app = create_app()


if __name__ == "__main__":
    main()
