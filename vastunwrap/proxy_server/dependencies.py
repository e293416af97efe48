"""
Application-scoped components and their FastAPI dependency accessors.

Everything is built once per application by ``build_services`` and stored
on ``app.state.services``; routers reach it through ``Depends``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
from fastapi import Depends, Request

from vastunwrap.common.cache import ResolutionCache
from vastunwrap.common.config import Settings
from vastunwrap.proxy_server.services.bid_processor import BidResponseProcessor
from vastunwrap.proxy_server.services.upstream_service import UpstreamService
from vastunwrap.unwrap_engine.address import AddressSafetyChecker, HostResolver
from vastunwrap.unwrap_engine.endpoint import EndpointValidator
from vastunwrap.unwrap_engine.fetcher import SecureFetcher, create_http_client
from vastunwrap.unwrap_engine.merge import MergeEngine
from vastunwrap.unwrap_engine.resolver import WrapperResolver


@dataclass
class ProxyServices:
    """The shared object graph of one running proxy."""

    settings: Settings
    http_client: httpx.AsyncClient
    cache: ResolutionCache
    fetcher: SecureFetcher
    resolver: WrapperResolver
    processor: BidResponseProcessor
    upstream: UpstreamService

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_services(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    host_resolver: HostResolver | None = None,
    clock: Callable[[], float] | None = None,
) -> ProxyServices:
    """
    Wire the proxy's components.

    Args:
        settings: Application settings.
        transport: Optional httpx transport (tests pass a ``MockTransport``).
        host_resolver: Optional DNS resolver for the address checks.
        clock: Optional monotonic clock for the resolution cache.
    """
    http_client = create_http_client(transport)

    validator = EndpointValidator(AddressSafetyChecker(host_resolver))
    fetcher = SecureFetcher(
        http_client,
        validator,
        max_body_bytes=settings.upstream.max_body_bytes,
        max_redirects=settings.upstream.max_redirects,
    )
    cache = ResolutionCache(settings.resolver.cache_ttl_ms, clock or time.monotonic)
    merger = MergeEngine(imp_dedup=settings.resolver.imp_dedup)
    resolver = WrapperResolver(fetcher, merger, cache, settings.resolver)
    processor = BidResponseProcessor(resolver, merger, settings.resolver)
    upstream = UpstreamService(fetcher, validator, processor, settings)

    return ProxyServices(
        settings=settings,
        http_client=http_client,
        cache=cache,
        fetcher=fetcher,
        resolver=resolver,
        processor=processor,
        upstream=upstream,
    )


def get_services(request: Request) -> ProxyServices:
    return request.app.state.services


def get_resolver(services: ProxyServices = Depends(get_services)) -> WrapperResolver:
    return services.resolver


def get_upstream_service(services: ProxyServices = Depends(get_services)) -> UpstreamService:
    return services.upstream
