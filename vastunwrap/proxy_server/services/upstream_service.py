"""
Upstream Service – chooses the bid endpoint for a request, forwards the
OpenRTB body to it and runs JSON replies through the bid processor.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from vastunwrap.common.config import Settings
from vastunwrap.common.exceptions import ValidationError
from vastunwrap.common.logger import LoggerMixin
from vastunwrap.common.utils import b64decode_text, json_dumps_bytes, json_loads
from vastunwrap.proxy_server.middleware.metrics import record_upstream_latency
from vastunwrap.proxy_server.services.bid_processor import BidResponseProcessor
from vastunwrap.schemas.unwrap import UnwrapAnnotation
from vastunwrap.unwrap_engine.endpoint import EndpointValidator
from vastunwrap.unwrap_engine.fetcher import SecureFetcher

HEADER_ENDPOINT_B64 = "x-bid-endpoint-b64"
HEADER_ENDPOINT = "x-bid-endpoint"
QUERY_ENDPOINT = "bidEndpoint"

DEFAULT_CONTENT_TYPE = "application/json; charset=utf-8"


@dataclass
class UpstreamResult:
    """What goes back to the caller."""

    status_code: int
    content: bytes
    content_type: str
    processed: bool = False
    annotations: list[UnwrapAnnotation] = field(default_factory=list)


class UpstreamService(LoggerMixin):
    """
    Forward OpenRTB bid requests to a validated bid endpoint.

    Endpoint priority:
        1. ``x-bid-endpoint-b64`` header (base64 URL)
        2. ``x-bid-endpoint`` header
        3. ``bidEndpoint`` query parameter (not in production)
        4. ``upstream.default_bid_endpoint``
    """

    def __init__(
        self,
        fetcher: SecureFetcher,
        validator: EndpointValidator,
        processor: BidResponseProcessor,
        settings: Settings,
    ):
        self._fetcher = fetcher
        self._validator = validator
        self._processor = processor
        self._settings = settings

    # ------------------------------------------------------------------
    # Endpoint selection
    # ------------------------------------------------------------------

    def select_candidate(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> str:
        """
        Pick the caller's requested endpoint (unvalidated).

        Raises:
            ValidationError: No endpoint anywhere, or bad base64.
        """
        encoded = (headers.get(HEADER_ENDPOINT_B64) or "").strip()
        if encoded:
            try:
                return b64decode_text(encoded).strip()
            except ValueError as e:
                raise ValidationError(
                    f"Header {HEADER_ENDPOINT_B64} is not valid base64", {"error": str(e)}
                ) from e

        plain = (headers.get(HEADER_ENDPOINT) or "").strip()
        if plain:
            return plain

        if not self._settings.is_production:
            from_query = (query.get(QUERY_ENDPOINT) or "").strip()
            if from_query:
                return from_query

        default = self._settings.upstream.default_bid_endpoint.strip()
        if default:
            return default

        raise ValidationError(
            "No bid endpoint: send x-bid-endpoint or x-bid-endpoint-b64, or configure a default"
        )

    async def resolve_endpoint(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> str:
        """Select and fully validate (policy, allowlist, DNS) the bid endpoint."""
        candidate = self.select_candidate(headers, query)
        return await self._validator.validate(candidate, self._settings.upstream.allowlist)

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    @staticmethod
    def parse_body(raw: bytes) -> Any:
        """Decode the caller's JSON body; an empty body is ``{}``."""
        if not raw.strip():
            return {}
        try:
            return json_loads(raw)
        except ValueError as e:
            raise ValidationError("Request body is not valid JSON", {"error": str(e)}) from e

    async def forward(
        self,
        endpoint: str,
        body: Any,
        user_agent: str | None = None,
    ) -> UpstreamResult:
        """
        POST ``body`` to ``endpoint`` and unwrap the bids of a JSON reply.

        Non-JSON and malformed JSON replies are passed through verbatim.
        """
        upstream = self._settings.upstream
        response = await self._fetcher.fetch(
            endpoint,
            method="POST",
            content=json_dumps_bytes(body),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": user_agent or upstream.user_agent,
            },
            timeout_ms=upstream.upstream_timeout_ms,
            allowlist=upstream.allowlist,
        )
        record_upstream_latency(response.elapsed_ms / 1000)
        self.logger.info(
            "Upstream responded",
            endpoint=endpoint,
            status=response.status_code,
            redirects=response.redirects,
            bytes=len(response.content),
            latency_ms=round(response.elapsed_ms, 2),
        )

        content_type = response.content_type or DEFAULT_CONTENT_TYPE
        passthrough = UpstreamResult(
            status_code=response.status_code,
            content=response.content,
            content_type=content_type,
        )
        if "application/json" not in content_type.lower() or not response.content.strip():
            return passthrough

        try:
            bid_response = json_loads(response.content)
        except ValueError:
            self.logger.warning("Upstream sent malformed JSON; passing through", endpoint=endpoint)
            return passthrough
        if not isinstance(bid_response, dict):
            return passthrough

        annotations = await self._processor.process(bid_response)
        return UpstreamResult(
            status_code=response.status_code,
            content=json_dumps_bytes(bid_response),
            content_type=content_type,
            processed=True,
            annotations=annotations,
        )
