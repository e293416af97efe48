"""
Tests for the POST /openrtb2 bid proxy.
"""

import asyncio
import base64

import httpx
import orjson
import pytest
from httpx import ASGITransport, AsyncClient

from vastunwrap.common.vast import AdDocument
from vastunwrap.proxy_server.main import create_app

BID_URL = "https://dsp.example.com/bid"
AD_TAG = "https://ads.example.com/tag"
INLINE = "https://inline.example.com/ad"

BID_REQUEST = {"id": "req-1", "imp": [{"id": "1", "video": {"mimes": ["video/mp4"]}}]}


@pytest.fixture
def dsp(upstream, vast):
    """Bid endpoint answering with one Wrapper bid and one banner bid."""
    upstream.xml(AD_TAG, vast("Wrapper", ad_tag_uri=INLINE, impressions=["https://imp/tag"]))
    upstream.xml(INLINE, vast("InLine", impressions=["https://imp/inline"]))
    upstream.json(
        BID_URL,
        {
            "id": "req-1",
            "seatbid": [{
                "seat": "dsp",
                "bid": [
                    {"id": "b1", "impid": "1", "price": 2.0, "adm": vast("Wrapper", ad_tag_uri=AD_TAG)},
                    {"id": "b2", "impid": "1", "price": 1.0, "adm": "<div>banner</div>"},
                ],
            }],
        },
    )
    return upstream


def app_client(services) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app(services=services)), base_url="http://test")


class TestForwarding:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_bids_unwrapped(self, client: AsyncClient, dsp) -> None:
        response = await client.post(
            "/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        bids = response.json()["seatbid"][0]["bid"]

        assert bids[0]["ext"]["unwrap"] == {"depth": 2, "cached": False}
        assert AdDocument.parse(bids[0]["adm"]).is_inline
        assert bids[1] == {"id": "b2", "impid": "1", "price": 1.0, "adm": "<div>banner</div>"}

    @pytest.mark.asyncio
    async def test_request_forwarded(self, client: AsyncClient, dsp) -> None:
        await client.post(
            "/openrtb2",
            json=BID_REQUEST,
            headers={"x-bid-endpoint": BID_URL, "user-agent": "Player/2.0"},
        )

        sent = next(r for r in dsp.requests if str(r.url) == BID_URL)
        assert sent.method == "POST"
        assert orjson.loads(sent.content) == BID_REQUEST
        assert sent.headers["content-type"] == "application/json"
        assert sent.headers["user-agent"] == "Player/2.0"

    @pytest.mark.asyncio
    async def test_empty_body_sent_as_object(self, client: AsyncClient, dsp) -> None:
        response = await client.post("/openrtb2", content=b"", headers={"x-bid-endpoint": BID_URL})

        assert response.status_code == 200
        sent = next(r for r in dsp.requests if str(r.url) == BID_URL)
        assert sent.content == b"{}"

    @pytest.mark.asyncio
    async def test_upstream_status_kept(self, client: AsyncClient, upstream) -> None:
        upstream.json(BID_URL, {"id": "req-1", "seatbid": []}, status=202)

        response = await client.post("/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL})
        assert response.status_code == 202
        assert response.json() == {"id": "req-1", "seatbid": []}


class TestEndpointSelection:
    """Tests for choosing the bid endpoint."""

    @pytest.mark.asyncio
    async def test_b64_header_wins(self, client: AsyncClient, dsp) -> None:
        encoded = base64.urlsafe_b64encode(BID_URL.encode()).decode().rstrip("=")

        response = await client.post(
            "/openrtb2",
            json=BID_REQUEST,
            headers={"x-bid-endpoint-b64": encoded, "x-bid-endpoint": "https://other.example.com/"},
        )

        assert response.status_code == 200
        assert dsp.calls(BID_URL) == 1

    @pytest.mark.asyncio
    async def test_bad_b64(self, client: AsyncClient, dsp) -> None:
        response = await client.post(
            "/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint-b64": "%%%not-base64%%%"}
        )

        assert response.status_code == 400
        assert dsp.requests == []

    @pytest.mark.asyncio
    async def test_query_parameter_outside_production(self, client: AsyncClient, dsp) -> None:
        response = await client.post("/openrtb2", params={"bidEndpoint": BID_URL}, json=BID_REQUEST)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_query_parameter_ignored_in_production(
        self, settings, make_services, dsp
    ) -> None:
        prod = settings.model_copy(update={"env": "prod"})

        async with app_client(make_services(prod)) as ac:
            response = await ac.post("/openrtb2", params={"bidEndpoint": BID_URL}, json=BID_REQUEST)

        assert response.status_code == 400
        assert dsp.requests == []

    @pytest.mark.asyncio
    async def test_configured_default(self, settings, make_services, dsp) -> None:
        settings.upstream.default_bid_endpoint = BID_URL

        async with app_client(make_services(settings)) as ac:
            response = await ac.post("/openrtb2", json=BID_REQUEST)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_no_endpoint(self, client: AsyncClient) -> None:
        response = await client.post("/openrtb2", json=BID_REQUEST)

        assert response.status_code == 400
        assert response.json()["reason"] == "validation"


class TestRefusals:
    """Tests for refused requests."""

    @pytest.mark.asyncio
    async def test_not_allowlisted_before_body_parsed(self, settings, make_services, dsp) -> None:
        """An unlisted endpoint is refused with 403 even when the body is invalid."""
        settings.upstream.bid_endpoint_allowlist = "ads.example.com"

        async with app_client(make_services(settings)) as ac:
            response = await ac.post(
                "/openrtb2", content=b"{not json", headers={"x-bid-endpoint": BID_URL}
            )

        assert response.status_code == 403
        assert dsp.requests == []

    @pytest.mark.asyncio
    async def test_private_endpoint(self, client: AsyncClient, upstream) -> None:
        response = await client.post(
            "/openrtb2",
            json=BID_REQUEST,
            headers={"x-bid-endpoint": "https://internal.example.com/bid"},
        )

        assert response.status_code == 403
        assert response.json()["reason"] == "security"
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, client: AsyncClient, dsp) -> None:
        response = await client.post(
            "/openrtb2", content=b"{not json", headers={"x-bid-endpoint": BID_URL}
        )

        assert response.status_code == 400
        assert dsp.requests == []

    @pytest.mark.asyncio
    async def test_upstream_timeout(self, client: AsyncClient, upstream) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        upstream.route(BID_URL, slow)

        response = await client.post("/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL})
        assert response.status_code == 504
        assert response.json()["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_upstream_body_too_large(self, client: AsyncClient, upstream) -> None:
        upstream.route(BID_URL, lambda request: httpx.Response(200, content=b"x" * 70_000))

        response = await client.post("/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL})
        assert response.status_code == 502
        assert response.json()["reason"] == "payload_too_large"


class TestPassthrough:
    """Tests for upstream replies that are not bid responses."""

    @pytest.mark.asyncio
    async def test_no_bid(self, client: AsyncClient, upstream) -> None:
        upstream.route(BID_URL, lambda request: httpx.Response(204))

        response = await client.post("/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL})
        assert response.status_code == 204
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_non_json_passed_through(self, client: AsyncClient, upstream) -> None:
        upstream.route(
            BID_URL,
            lambda request: httpx.Response(
                500, text="upstream exploded", headers={"content-type": "text/plain"}
            ),
        )

        response = await client.post("/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL})
        assert response.status_code == 500
        assert response.text == "upstream exploded"
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_malformed_json_passed_through(self, client: AsyncClient, upstream) -> None:
        upstream.route(
            BID_URL,
            lambda request: httpx.Response(
                200, content=b'{"id": broken', headers={"content-type": "application/json"}
            ),
        )

        response = await client.post("/openrtb2", json=BID_REQUEST, headers={"x-bid-endpoint": BID_URL})
        assert response.status_code == 200
        assert response.content == b'{"id": broken'


class TestOptions:
    """Tests for OPTIONS handling."""

    @pytest.mark.asyncio
    async def test_cors_preflight(self, client: AsyncClient) -> None:
        response = await client.options(
            "/openrtb2",
            headers={
                "origin": "https://player.example.com",
                "access-control-request-method": "POST",
                "access-control-request-headers": "x-bid-endpoint",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_plain_options(self, client: AsyncClient) -> None:
        response = await client.options("/openrtb2")
        assert response.status_code == 204
