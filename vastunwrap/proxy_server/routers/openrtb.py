"""
OpenRTB Router – bid proxy.

Endpoints:
    POST /openrtb2 – Forward a bid request upstream, unwrap the VAST bids
                     of the reply

The bid endpoint comes from ``x-bid-endpoint-b64`` / ``x-bid-endpoint``,
the ``bidEndpoint`` query parameter (non-production only), or the
configured default.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request, Response, status

from vastunwrap.proxy_server.dependencies import get_upstream_service
from vastunwrap.proxy_server.services.upstream_service import UpstreamService

router = APIRouter()


@router.post(
    "/openrtb2",
    summary="OpenRTB bid proxy",
    description=(
        "Forwards the OpenRTB bid request to the selected bid endpoint and "
        "returns its response with every VAST Wrapper bid resolved to an "
        "InLine ad. Each touched bid is annotated under ext.unwrap."
    ),
    responses={
        200: {"content": {"application/json": {}}, "description": "Processed bid response"},
        204: {"description": "Upstream no-bid, passed through"},
        400: {"description": "No endpoint, bad base64 or invalid JSON body"},
        403: {"description": "Endpoint refused by allowlist or address policy"},
        502: {"description": "Upstream failure"},
        504: {"description": "Upstream deadline elapsed"},
    },
)
async def openrtb2(
    request: Request,
    upstream: UpstreamService = Depends(get_upstream_service),
    user_agent: str | None = Header(None, alias="User-Agent"),
) -> Response:
    """Proxy one bid request."""
    # Endpoint is refused before the body is even read
    endpoint = await upstream.resolve_endpoint(request.headers, request.query_params)
    body = upstream.parse_body(await request.body())

    result = await upstream.forward(endpoint, body, user_agent)

    if result.status_code == status.HTTP_204_NO_CONTENT:
        return Response(status_code=result.status_code)
    return Response(
        content=result.content,
        status_code=result.status_code,
        headers={"Content-Type": result.content_type},
    )


@router.options("/openrtb2", include_in_schema=False)
async def openrtb2_options() -> Response:
    """Plain (non-CORS) OPTIONS requests get an empty 204."""
    return Response(status_code=status.HTTP_204_NO_CONTENT)
