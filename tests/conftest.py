"""
Pytest configuration and fixtures.

Network is never touched: DNS goes through ``FakeResolver`` and HTTP
through an ``httpx.MockTransport`` routed by ``MockUpstream``.
"""

import inspect
from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from vastunwrap.common.config import ResolverSettings, Settings, UpstreamSettings
from vastunwrap.common.exceptions import NetworkError
from vastunwrap.proxy_server.dependencies import ProxyServices, build_services
from vastunwrap.proxy_server.main import create_app
from vastunwrap.unwrap_engine.address import AddressSafetyChecker
from vastunwrap.unwrap_engine.endpoint import EndpointValidator
from vastunwrap.unwrap_engine.fetcher import SecureFetcher, create_http_client

DNS_RECORDS: dict[str, list[str]] = {
    "ads.example.com": ["93.184.216.34"],
    "wrap1.example.com": ["93.184.216.35"],
    "wrap2.example.com": ["93.184.216.36"],
    "inline.example.com": ["93.184.216.37"],
    "dsp.example.com": ["93.184.216.40"],
    "v6.example.com": ["2606:2800:220:1:248:1893:25c8:1946"],
    "internal.example.com": ["10.0.0.5"],
    "metadata.example.com": ["169.254.169.254"],
    "loopback.example.com": ["127.0.0.1"],
    "cgnat.example.com": ["100.64.1.1"],
    "mixed.example.com": ["93.184.216.41", "192.168.1.10"],
    "mapped.example.com": ["::ffff:127.0.0.1"],
    "ula.example.com": ["fd00::1"],
    "empty.example.com": [],
}


class FakeResolver:
    """Stand-in for getaddrinfo; unknown hosts fail like NXDOMAIN."""

    def __init__(self, records: dict[str, list[str]]):
        self.records = dict(records)
        self.lookups: list[str] = []

    async def __call__(self, hostname: str) -> list[str]:
        self.lookups.append(hostname)
        if hostname not in self.records:
            raise NetworkError(f"DNS resolution failed for {hostname}", {"host": hostname})
        return list(self.records[hostname])


Handler = Callable[[httpx.Request], Any]


class MockUpstream:
    """URL-routed mock transport that records every request it serves."""

    def __init__(self) -> None:
        self.routes: dict[str, Handler] = {}
        self.requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="not found")
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    def route(self, url: str, handler: Handler) -> None:
        self.routes[str(httpx.URL(url))] = handler

    def xml(self, url: str, body: str, status: int = 200) -> None:
        self.route(
            url,
            lambda request: httpx.Response(
                status, text=body, headers={"content-type": "application/xml"}
            ),
        )

    def json(self, url: str, payload: Any, status: int = 200) -> None:
        self.route(url, lambda request: httpx.Response(status, json=payload))

    def redirect(self, url: str, location: str | None, status: int = 302) -> None:
        headers = {"location": location} if location is not None else {}
        self.route(url, lambda request: httpx.Response(status, headers=headers))

    def calls(self, url: str) -> int:
        target = str(httpx.URL(url))
        return sum(1 for r in self.requests if str(r.url) == target)


def build_vast(
    kind: str = "InLine",
    *,
    ad_id: str | None = "ad-1",
    ad_tag_uri: str = "",
    impressions: tuple[str, ...] | list[str] = (),
    errors: tuple[str, ...] | list[str] = (),
    tracking: tuple[tuple[str, str], ...] | list[tuple[str, str]] = (),
    clicks: tuple[str, ...] | list[str] = (),
    verifications: tuple[str, ...] | list[str] = (),
    viewable: dict[str, list[str]] | None = None,
    media_files: tuple[str, ...] | list[str] = (),
    linear: bool = True,
) -> str:
    """Compose a single-Ad VAST 4 document."""
    parts = ['<VAST version="4.2">', f'<Ad id="{ad_id}">' if ad_id else "<Ad>", f"<{kind}>"]
    parts.append("<AdSystem>test</AdSystem>")
    if kind == "InLine":
        parts.append("<AdTitle>test ad</AdTitle>")
    parts += [f"<Impression><![CDATA[{u}]]></Impression>" for u in impressions]
    if kind == "Wrapper":
        parts.append(f"<VASTAdTagURI><![CDATA[{ad_tag_uri}]]></VASTAdTagURI>")
    parts += [f"<Error><![CDATA[{u}]]></Error>" for u in errors]
    if viewable:
        parts.append("<ViewableImpression>")
        parts += [
            f"<{group}><![CDATA[{u}]]></{group}>" for group, urls in viewable.items() for u in urls
        ]
        parts.append("</ViewableImpression>")
    if verifications:
        parts.append("<AdVerifications>")
        parts += [
            f'<Verification vendor="{v}"><JavaScriptResource apiFramework="omid">'
            f"<![CDATA[https://verify.example.com/{v}.js]]></JavaScriptResource></Verification>"
            for v in verifications
        ]
        parts.append("</AdVerifications>")
    if linear:
        parts.append("<Creatives><Creative><Linear>")
        if kind == "InLine":
            parts.append("<Duration>00:00:15</Duration>")
        if tracking:
            parts.append("<TrackingEvents>")
            parts += [f'<Tracking event="{e}"><![CDATA[{u}]]></Tracking>' for e, u in tracking]
            parts.append("</TrackingEvents>")
        if clicks:
            parts.append("<VideoClicks>")
            parts += [f"<ClickTracking><![CDATA[{u}]]></ClickTracking>" for u in clicks]
            parts.append("</VideoClicks>")
        if media_files:
            parts.append("<MediaFiles>")
            parts += [
                f'<MediaFile delivery="progressive" type="video/mp4" width="1920" height="1080">'
                f"<![CDATA[{u}]]></MediaFile>"
                for u in media_files
            ]
            parts.append("</MediaFiles>")
        parts.append("</Linear></Creative></Creatives>")
    parts += [f"</{kind}>", "</Ad>", "</VAST>"]
    return "".join(parts)


@pytest.fixture
def vast() -> Callable[..., str]:
    """VAST document builder."""
    return build_vast


@pytest.fixture
def fake_dns() -> FakeResolver:
    """Resolver over ``DNS_RECORDS``."""
    return FakeResolver(DNS_RECORDS)


@pytest.fixture
def upstream() -> MockUpstream:
    """Empty mock upstream; tests register the routes they need."""
    return MockUpstream()


@pytest.fixture
def settings() -> Settings:
    """Test settings: small limits, no allowlist, cache on."""
    return Settings(
        env="test",
        resolver=ResolverSettings(
            max_depth=5,
            timeout_ms=1000,
            chain_timeout_ms=5000,
            cache_ttl_ms=60000,
        ),
        upstream=UpstreamSettings(
            upstream_timeout_ms=1000,
            max_body_bytes=64_000,
            max_redirects=3,
        ),
    )


@pytest_asyncio.fixture
async def fetcher(
    upstream: MockUpstream,
    fake_dns: FakeResolver,
) -> AsyncGenerator[SecureFetcher, None]:
    """Secure fetcher over the mock transport."""
    async with create_http_client(upstream.transport) as http_client:
        yield SecureFetcher(
            http_client,
            EndpointValidator(AddressSafetyChecker(fake_dns)),
            max_body_bytes=64_000,
            max_redirects=3,
        )


@pytest_asyncio.fixture
async def make_services(
    upstream: MockUpstream,
    fake_dns: FakeResolver,
) -> AsyncGenerator[Callable[..., ProxyServices], None]:
    """Factory for wired component graphs; all are closed on teardown."""
    built: list[ProxyServices] = []

    def _make(settings: Settings, clock: Callable[[], float] | None = None) -> ProxyServices:
        services = build_services(
            settings,
            transport=upstream.transport,
            host_resolver=fake_dns,
            clock=clock,
        )
        built.append(services)
        return services

    yield _make

    for services in built:
        await services.aclose()


@pytest.fixture
def services(
    settings: Settings,
    make_services: Callable[..., ProxyServices],
) -> ProxyServices:
    """Component graph built from the default test settings."""
    return make_services(settings)


@pytest_asyncio.fixture
async def client(services: ProxyServices) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client over the proxy app."""
    app = create_app(services=services)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
