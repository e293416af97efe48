"""
Prometheus metrics middleware for monitoring.

Provides:
- Request latency histograms
- Request counters by endpoint
- Active request gauge
- Unwrap metrics (resolutions, depth, rejections, bid outcomes)
"""

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from vastunwrap import __version__
from vastunwrap.common.logger import get_logger

logger = get_logger(__name__)

# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

# Application info
APP_INFO = Info("vastunwrap_app", "vastunwrap application information")
APP_INFO.info({
    "version": __version__,
    "name": "vastunwrap",
    "description": "VAST wrapper-unwrapping OpenRTB proxy",
})

# HTTP request metrics
HTTP_REQUEST_TOTAL = Counter(
    "vastunwrap_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "vastunwrap_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "vastunwrap_http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method", "endpoint"],
)

# Unwrap metrics
RESOLUTIONS_TOTAL = Counter(
    "vastunwrap_resolutions_total",
    "Completed wrapper resolutions",
    ["cache"],
)

UNWRAP_DEPTH = Histogram(
    "vastunwrap_unwrap_depth",
    "Wrapper hops followed per resolution",
    buckets=(0, 1, 2, 3, 4, 5, 6, 8, 10),
)

FETCH_REJECTIONS_TOTAL = Counter(
    "vastunwrap_fetch_rejections_total",
    "Requests refused or failed, by failure kind",
    ["reason"],
)

BID_ANNOTATIONS_TOTAL = Counter(
    "vastunwrap_bid_annotations_total",
    "Annotated bids, by outcome",
    ["outcome"],
)

UPSTREAM_LATENCY = Histogram(
    "vastunwrap_upstream_latency_seconds",
    "Bid endpoint round-trip latency",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


# =============================================================================
# Metrics Middleware
# =============================================================================

class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware that collects Prometheus metrics for all HTTP requests.
    """

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Process request and record metrics."""
        method = request.method
        endpoint = self._get_endpoint(request)

        # Track in-progress requests
        HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=endpoint).inc()

        start_time = time.perf_counter()
        status_code = 500  # Default to error

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception as e:
            logger.error(f"Request error: {e}")
            raise
        finally:
            duration = time.perf_counter() - start_time

            HTTP_REQUEST_TOTAL.labels(
                method=method,
                endpoint=endpoint,
                status=str(status_code),
            ).inc()

            HTTP_REQUEST_DURATION.labels(
                method=method,
                endpoint=endpoint,
            ).observe(duration)

            HTTP_REQUESTS_IN_PROGRESS.labels(
                method=method,
                endpoint=endpoint,
            ).dec()

    def _get_endpoint(self, request: Request) -> str:
        """Get endpoint path; the proxy has no path parameters to normalize."""
        return request.url.path


# =============================================================================
# Metrics Endpoint
# =============================================================================

async def metrics_endpoint() -> StarletteResponse:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return StarletteResponse(
        content=generate_latest(),
        media_type="text/plain; charset=utf-8",
    )


# =============================================================================
# Helper Functions for Recording Unwrap Metrics
# =============================================================================

def record_resolution(cache_status: str, depth: int) -> None:
    """Record a completed resolution."""
    RESOLUTIONS_TOTAL.labels(cache=cache_status).inc()
    UNWRAP_DEPTH.observe(depth)


def record_fetch_rejection(reason: str) -> None:
    """Record a refused or failed request."""
    FETCH_REJECTIONS_TOTAL.labels(reason=reason).inc()


def record_bid_annotation(outcome: str) -> None:
    """Record one bid's unwrap outcome ("ok" or a failure reason)."""
    BID_ANNOTATIONS_TOTAL.labels(outcome=outcome).inc()


def record_upstream_latency(duration: float) -> None:
    """Record bid endpoint latency in seconds."""
    UPSTREAM_LATENCY.observe(duration)
