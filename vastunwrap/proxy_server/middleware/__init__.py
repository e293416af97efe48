"""
Middleware for the proxy server.
"""

from vastunwrap.proxy_server.middleware.metrics import (
    MetricsMiddleware,
    metrics_endpoint,
    record_bid_annotation,
    record_fetch_rejection,
    record_resolution,
    record_upstream_latency,
)

__all__ = [
    "MetricsMiddleware",
    "metrics_endpoint",
    "record_resolution",
    "record_fetch_rejection",
    "record_bid_annotation",
    "record_upstream_latency",
]
